"""
metadata/validator.py - JSON Schema validation for MetaGuard YAML metadata files.

Validates collection and block YAML files against the bundled JSON Schemas.
Schema validation only checks shape; cross-field and cross-collection rules
are enforced when the collections register.

Usage:
    from metaguard.metadata.validator import validate_metadata_dir, validate_yaml_file

    issues = validate_metadata_dir(Path("metadata"))
    for issue in issues:
        print(issue)
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

logger = logging.getLogger(__name__)

_SCHEMAS_DIR = Path(__file__).parent / "schemas"

# Map subdirectory name -> schema filename
_SUBDIR_SCHEMA: dict[str, str] = {
    "collections": "collection.schema.json",
    "blocks": "block.schema.json",
}


@dataclass
class ValidationIssue:
    """A single validation finding for a metadata YAML file."""

    file: Path
    message: str
    path: str = ""  # location within the document, e.g. "fields[0]/name"
    severity: str = "error"  # "error" | "warning"

    def __str__(self) -> str:
        loc = f" at {self.path}" if self.path else ""
        return f"[{self.severity.upper()}] {self.file}{loc}: {self.message}"


def _load_schema(name: str) -> dict[str, Any]:
    schema_path = _SCHEMAS_DIR / name
    with schema_path.open() as fh:
        return json.load(fh)


def _load_registry() -> Registry:
    """Build a jsonschema Registry containing all MetaGuard schemas."""
    schema_names = [
        "_defs.schema.json",
        "collection.schema.json",
        "block.schema.json",
    ]
    resources = []
    for name in schema_names:
        schema = _load_schema(name)
        resources.append((schema["$id"], Resource(contents=schema, specification=DRAFT202012)))
    return Registry().with_resources(resources)


def _json_path(error: ValidationError) -> str:
    """Convert a jsonschema ValidationError path to a readable string."""
    parts = []
    for p in error.absolute_path:
        if isinstance(p, int):
            parts.append(f"[{p}]")
        else:
            parts.append(str(p))
    return "/".join(parts).replace("/[", "[")


def validate_document(
    doc: Any,
    schema_name: str,
    file: Path,
    *,
    registry: Registry | None = None,
) -> list[ValidationIssue]:
    """Validate an already-parsed document against the named schema."""
    if registry is None:
        registry = _load_registry()

    validator = Draft202012Validator(_load_schema(schema_name), registry=registry)
    return [
        ValidationIssue(file=file, message=error.message, path=_json_path(error))
        for error in sorted(validator.iter_errors(doc), key=lambda e: list(e.path))
    ]


def validate_yaml_file(
    yaml_path: Path,
    schema_name: str = "collection.schema.json",
    *,
    registry: Registry | None = None,
) -> list[ValidationIssue]:
    """
    Validate a single YAML file against the named schema.

    Args:
        yaml_path:   Path to the YAML file to validate.
        schema_name: Filename of the schema (e.g. ``"collection.schema.json"``).
        registry:    Pre-built schema registry. Built automatically if omitted.

    Returns:
        A list of :class:`ValidationIssue` objects (empty on success).
    """
    try:
        with yaml_path.open() as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        return [ValidationIssue(file=yaml_path, message=f"YAML parse error: {exc}")]

    if raw is None:
        return [ValidationIssue(file=yaml_path, message="File is empty or contains only whitespace")]

    return validate_document(raw, schema_name, yaml_path, registry=registry)


def validate_metadata_dir(
    metadata_dir: Path,
    *,
    strict: bool = False,
) -> list[ValidationIssue]:
    """
    Validate all YAML files under *metadata_dir*.

    Walks the ``collections/`` and ``blocks/`` subdirectories, validating each
    ``.yaml`` file against the matching JSON Schema.

    Args:
        metadata_dir: Root metadata directory.
        strict:       If ``True``, warnings are escalated to errors.

    Returns:
        A flat list of :class:`ValidationIssue` objects across all files.
        Empty list means all files are valid.
    """
    if not metadata_dir.is_dir():
        return [
            ValidationIssue(
                file=metadata_dir,
                message=f"Metadata directory does not exist: {metadata_dir}",
            )
        ]

    try:
        registry = _load_registry()
    except (FileNotFoundError, json.JSONDecodeError) as exc:
        return [
            ValidationIssue(
                file=_SCHEMAS_DIR,
                message=f"Failed to load JSON Schema files: {exc}",
            )
        ]

    all_issues: list[ValidationIssue] = []

    for subdir, schema_name in _SUBDIR_SCHEMA.items():
        target = metadata_dir / subdir
        if not target.is_dir():
            if subdir == "collections":
                all_issues.append(
                    ValidationIssue(
                        file=target,
                        message="No collections directory",
                        severity="warning",
                    )
                )
            continue
        for yaml_file in sorted(target.glob("*.yaml")):
            all_issues.extend(validate_yaml_file(yaml_file, schema_name, registry=registry))

    if strict:
        for issue in all_issues:
            if issue.severity == "warning":
                issue.severity = "error"

    return all_issues

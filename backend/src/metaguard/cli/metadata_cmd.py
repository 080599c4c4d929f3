"""Metadata CLI commands: validate and show."""

from pathlib import Path

import click

from metaguard.auth.modes import mode_string
from metaguard.core.config import Settings
from metaguard.core.errors import ConfigurationError
from metaguard.hooks.types import HOOK_POINTS
from metaguard.metadata.loader import load_registry
from metaguard.metadata.validator import _SUBDIR_SCHEMA, validate_metadata_dir, validate_yaml_file


def _load(settings: Settings):
    try:
        return load_registry(
            settings.metadata_path,
            strict_ids=settings.strict_ids,
            hook_modules=settings.hook_modules,
        )
    except ConfigurationError as e:
        click.echo(click.style(f"\nSemantic validation failed: {e}", fg="red"), err=True)
        raise SystemExit(1)


@click.group()
def metadata():
    """Metadata commands."""
    pass


@metadata.command()
@click.option(
    "--strict",
    is_flag=True,
    default=False,
    help="Treat warnings as errors.",
)
@click.option(
    "--path",
    "target_path",
    default=None,
    type=click.Path(exists=True, path_type=Path),
    help="Validate a single YAML file instead of the whole metadata directory.",
)
def validate(strict: bool, target_path: Path | None):
    """Validate metadata YAML files against JSON Schemas."""
    settings = Settings.from_env()
    metadata_path = settings.metadata_path

    # ── Schema (JSON Schema) validation ─────────────────────────────────────
    if target_path is not None:
        # Single-file mode: infer schema from parent directory name
        parent = target_path.parent.name
        schema_name = _SUBDIR_SCHEMA.get(parent)
        if schema_name is None:
            click.echo(
                f"Warning: cannot determine schema for directory '{parent}'. "
                "Expected one of: collections, blocks.",
                err=True,
            )
            schema_issues = []
        else:
            schema_issues = validate_yaml_file(target_path, schema_name)
    else:
        if not metadata_path.exists():
            click.echo(f"Error: Metadata directory not found at {metadata_path}", err=True)
            raise SystemExit(1)
        schema_issues = validate_metadata_dir(metadata_path, strict=strict)

    errors = [i for i in schema_issues if i.severity == "error"]
    warnings = [i for i in schema_issues if i.severity == "warning"]

    for issue in schema_issues:
        colour = "red" if issue.severity == "error" else "yellow"
        click.echo(click.style(str(issue), fg=colour))

    if errors:
        click.echo(
            click.style(
                f"\n{len(errors)} schema error(s) found"
                + (f", {len(warnings)} warning(s)" if warnings else ""),
                fg="red",
                bold=True,
            )
        )
        raise SystemExit(1)

    if warnings:
        click.echo(click.style(f"{len(warnings)} warning(s) found.", fg="yellow"))

    # ── Semantic (registry) validation ──────────────────────────────────────
    # Only runs when validating the full directory (target_path is None)
    if target_path is None:
        registry = _load(settings)
        collections = registry.list_collections()
        click.echo(f"\nLoaded {len(collections)} collections:")
        for name in sorted(collections):
            meta = registry.require(name)
            roles = ", ".join(r.role for r in meta.roles)
            click.echo(f"  ✓ {name} ({len(meta.fields)} fields, roles: {roles})")

    click.echo(click.style("\nAll metadata is valid.", fg="green", bold=True))


@metadata.command()
@click.argument("collection")
def show(collection: str):
    """Show the derived field subsets, roles and hooks of a collection."""
    registry = _load(Settings.from_env())
    meta = registry.get(collection)
    if meta is None:
        click.echo(f"Error: unknown collection '{collection}'", err=True)
        raise SystemExit(1)

    click.echo(click.style(meta.collection, bold=True))
    if meta.primary_keys:
        click.echo(f"  primary keys: {', '.join(meta.primary_keys)}")
    if meta.user_field:
        click.echo(f"  user field: {meta.user_field}")
    if meta.ref_label:
        click.echo(f"  ref label: {meta.ref_label}")

    click.echo("\nFields:")
    for f in meta.fields:
        extra = []
        if f.ref:
            extra.append(f"ref={f.ref}")
        if f.link:
            extra.append(f"link={f.link}")
        if f.delete:
            extra.append(f"delete={f.delete}")
        if f.required:
            extra.append("required")
        if f.sys:
            extra.append("sys")
        if f.secure:
            extra.append("secure")
        suffix = f" [{', '.join(extra)}]" if extra else ""
        click.echo(f"  {f.name}: {f.type}{suffix}")

    click.echo("\nSubsets:")
    subsets = meta.subsets
    for label in (
        "client_fields",
        "property_fields",
        "create_fields",
        "update_fields",
        "clone_fields",
        "search_fields",
        "list_fields",
    ):
        click.echo(f"  {label}: {', '.join(getattr(subsets, label))}")

    click.echo("\nRoles:")
    for rule in meta.roles:
        view = f" (view: {rule.view})" if rule.view else ""
        click.echo(f"  {rule.role}: {mode_string(rule.mode)}{view}")

    hooks = [(point, meta.hooks.get(point)) for point in HOOK_POINTS]
    hooks = [(point, fn) for point, fn in hooks if fn is not None]
    if hooks:
        click.echo("\nHooks:")
        for point, fn in hooks:
            click.echo(f"  {point}: {fn.__name__}")

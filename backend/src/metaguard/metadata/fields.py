"""Field normalization and subset calculation.

Subsets are computed once, when a collection registers, and stored on the
Meta. Every per-request field restriction reads these precomputed tuples.
"""

from typing import Any, Iterable

from metaguard.core.errors import ConfigurationError
from metaguard.core.types import is_registered
from metaguard.metadata.types import DELETE_MODES, FieldDefinition, FieldSubsets

_FLAG_KEYS = ("create", "update", "clone", "search", "list")
_BOOL_KEYS = _FLAG_KEYS + ("sys", "secure", "required")
_KNOWN_KEYS = set(_BOOL_KEYS) | {"name", "type", "default", "ref", "link", "delete", "view"}


def normalize_field(
    collection: str, config: dict[str, Any], user_field: str | None = None
) -> FieldDefinition:
    """Build a FieldDefinition from a raw field config.

    A sys field, or the collection's user_field, is never client-writable:
    create/update/clone are forced to False and list/search default to False
    unless set explicitly.

    Raises:
        ConfigurationError: If the config is malformed or a protected field
            explicitly enables create, update or clone
    """
    name = config.get("name")
    if not name or not isinstance(name, str):
        raise ConfigurationError(f"{collection}: every field needs a string 'name'")

    unknown = set(config) - _KNOWN_KEYS
    if unknown:
        raise ConfigurationError(
            f"{collection}.{name}: unknown field keys {sorted(unknown)}"
        )

    for key in _BOOL_KEYS:
        if key in config and not isinstance(config[key], bool):
            raise ConfigurationError(f"{collection}.{name}: '{key}' must be a boolean")

    field_type = config.get("type") or ("ref" if config.get("ref") else "string")
    if not is_registered(field_type):
        raise ConfigurationError(f"{collection}.{name}: unknown type '{field_type}'")

    delete_mode = config.get("delete")
    if delete_mode is not None:
        if delete_mode not in DELETE_MODES:
            raise ConfigurationError(
                f"{collection}.{name}: delete must be one of {DELETE_MODES}, got '{delete_mode}'"
            )
        if not config.get("ref"):
            raise ConfigurationError(f"{collection}.{name}: delete is only valid on ref fields")

    flags = {key: config.get(key, True) for key in _FLAG_KEYS}

    protected = config.get("sys", False) or name == user_field
    if protected:
        for key in ("create", "update", "clone"):
            if config.get(key) is True:
                kind = "sys field" if config.get("sys") else "user_field"
                raise ConfigurationError(
                    f"{collection}.{name}: {kind} cannot set {key}: true"
                )
            flags[key] = False
        flags["list"] = config.get("list", False)
        flags["search"] = config.get("search", False)

    # Link fields are filled in from the referenced record on read
    if config.get("link"):
        for key in ("create", "update", "clone", "search"):
            if config.get(key) is True:
                raise ConfigurationError(f"{collection}.{name}: link field cannot set {key}: true")
            flags[key] = False

    return FieldDefinition(
        name=name,
        type=field_type,
        sys=config.get("sys", False),
        secure=config.get("secure", False),
        required=config.get("required", False),
        default=config.get("default"),
        ref=config.get("ref"),
        link=config.get("link"),
        delete=delete_mode,
        view=config.get("view"),
        **flags,
    )


def compute_subsets(fields: Iterable[FieldDefinition]) -> FieldSubsets:
    """Derive the named field groups, preserving declaration order."""
    fields = list(fields)
    return FieldSubsets(
        client_fields=tuple(f.name for f in fields if not f.sys),
        property_fields=tuple(f.name for f in fields if not f.secure),
        create_fields=tuple(f.name for f in fields if f.create),
        update_fields=tuple(f.name for f in fields if f.create and f.update),
        clone_fields=tuple(f.name for f in fields if f.clone),
        search_fields=tuple(f.name for f in fields if f.search),
        list_fields=tuple(f.name for f in fields if f.list and not f.secure),
    )


def normalize_fields(
    collection: str, configs: Iterable[dict[str, Any]], user_field: str | None = None
) -> tuple[FieldDefinition, ...]:
    """Normalize a collection's field list and check names are unique."""
    fields = tuple(normalize_field(collection, c, user_field) for c in configs)

    seen: set[str] = set()
    for f in fields:
        if f.name in seen:
            raise ConfigurationError(f"{collection}: duplicate field '{f.name}'")
        seen.add(f.name)

    by_name = {f.name: f for f in fields}
    for f in fields:
        if f.link:
            target = by_name.get(f.link)
            if target is None or not target.ref:
                raise ConfigurationError(
                    f"{collection}.{f.name}: link '{f.link}' must name a ref field"
                )

    if user_field and user_field not in by_name:
        raise ConfigurationError(f"{collection}: user_field '{user_field}' is not a field")

    return fields

"""Registry of collection metadata.

Collections register once during startup. Sealing the registry checks
cross-collection references, builds the reverse reference index used by
deletes, and closes registration; from then on the registry is read-only
and safe to share between concurrent requests.
"""

import logging
from types import MappingProxyType
from typing import Any, Callable

from metaguard.auth.modes import parse_mode
from metaguard.core.errors import Code, ConfigurationError, EntityError
from metaguard.hooks.registry import HookRegistry
from metaguard.hooks.types import HOOK_POINTS, HookSet
from metaguard.metadata.fields import compute_subsets, normalize_fields
from metaguard.metadata.types import FieldDefinition, Meta, RoleRule

logger = logging.getLogger(__name__)

_KNOWN_KEYS = {
    "collection",
    "fields",
    "roles",
    "user_field",
    "ref_filter",
    "ref_label",
    "primary_keys",
    "creatable",
    "readable",
    "updatable",
    "deleteable",
    "cloneable",
    "hooks",
}


def parse_role_rule(collection: str, rule: Any) -> RoleRule:
    """Parse a role rule given as ``"role:mode[:view]"`` or a mapping."""
    if isinstance(rule, str):
        parts = rule.split(":")
        if len(parts) not in (2, 3) or not parts[0]:
            raise ConfigurationError(
                f"{collection}: role rule '{rule}' must look like 'role:mode' or 'role:mode:view'"
            )
        role, mode = parts[0], parts[1]
        view = parts[2] if len(parts) == 3 else None
    elif isinstance(rule, dict):
        role = rule.get("role", "")
        mode = rule.get("mode", "")
        view = rule.get("view")
        if not role:
            raise ConfigurationError(f"{collection}: role rule {rule} has no role")
    else:
        raise ConfigurationError(f"{collection}: unsupported role rule {rule!r}")

    try:
        permission = parse_mode(mode)
    except ConfigurationError as e:
        raise ConfigurationError(f"{collection}: {e}") from e
    return RoleRule(role=role, mode=permission, view=view or None)


def resolve_hooks(collection: str, hooks: dict[str, Any] | None) -> HookSet:
    """Resolve hook callables or registered hook names into a HookSet."""
    if not hooks:
        return HookSet()

    resolved: dict[str, Callable] = {}
    for point, value in hooks.items():
        if point not in HOOK_POINTS:
            raise ConfigurationError(
                f"{collection}: unknown hook point '{point}'. Valid: {', '.join(HOOK_POINTS)}"
            )
        if value is None:
            continue
        if isinstance(value, str):
            try:
                value = HookRegistry.get(value)
            except ValueError as e:
                raise ConfigurationError(f"{collection}: {e}") from e
        if not callable(value):
            raise ConfigurationError(f"{collection}: hook '{point}' is not callable")
        resolved[point] = value
    return HookSet(**resolved)


def _freeze_ref_filter(collection: str, ref_filter: Any) -> MappingProxyType:
    if ref_filter is None:
        return MappingProxyType({})
    if not isinstance(ref_filter, dict):
        raise ConfigurationError(f"{collection}: ref_filter must be a mapping")
    frozen = {}
    for key, value in ref_filter.items():
        if not isinstance(value, dict):
            raise ConfigurationError(f"{collection}: ref_filter['{key}'] must be a mapping")
        frozen[key] = MappingProxyType(dict(value))
    return MappingProxyType(frozen)


def build_meta(meta_config: dict[str, Any]) -> Meta:
    """Build an immutable Meta from a collection config.

    Raises:
        ConfigurationError: For any defect in the config
    """
    collection = meta_config.get("collection")
    if not collection or not isinstance(collection, str):
        raise ConfigurationError("Collection config needs a string 'collection'")

    unknown = set(meta_config) - _KNOWN_KEYS
    if unknown:
        raise ConfigurationError(f"{collection}: unknown config keys {sorted(unknown)}")

    user_field = meta_config.get("user_field")
    fields = normalize_fields(collection, meta_config.get("fields") or [], user_field)
    if not fields:
        raise ConfigurationError(f"{collection}: at least one field is required")
    field_names = {f.name for f in fields}

    roles = tuple(parse_role_rule(collection, r) for r in meta_config.get("roles") or [])
    role_names = [r.role for r in roles]
    if len(role_names) != len(set(role_names)):
        raise ConfigurationError(f"{collection}: duplicate role rules")

    ref_label = meta_config.get("ref_label") or fields[0].name
    if ref_label not in field_names:
        raise ConfigurationError(f"{collection}: ref_label '{ref_label}' is not a field")

    primary_keys = tuple(meta_config.get("primary_keys") or ())
    for key in primary_keys:
        if key not in field_names:
            raise ConfigurationError(f"{collection}: primary key '{key}' is not a field")

    return Meta(
        collection=collection,
        fields=fields,
        roles=roles,
        subsets=compute_subsets(fields),
        hooks=resolve_hooks(collection, meta_config.get("hooks")),
        user_field=user_field,
        ref_filter=_freeze_ref_filter(collection, meta_config.get("ref_filter")),
        ref_label=ref_label,
        primary_keys=primary_keys,
        creatable=meta_config.get("creatable", True),
        readable=meta_config.get("readable", True),
        updatable=meta_config.get("updatable", True),
        deleteable=meta_config.get("deleteable", True),
        cloneable=meta_config.get("cloneable", True),
    )


class MetadataRegistry:
    """Holds one Meta per collection.

    Example:
        registry = MetadataRegistry()
        registry.register({"collection": "product", "fields": [...], "roles": [...]})
        registry.seal()
        meta = registry.get("product")
    """

    def __init__(self, *, strict_ids: bool = False):
        self._metas: dict[str, Meta] = {}
        self._referencing: dict[str, tuple[tuple[Meta, FieldDefinition], ...]] = {}
        self._sealed = False
        self.strict_ids = strict_ids

    @property
    def sealed(self) -> bool:
        return self._sealed

    def register(self, meta_config: dict[str, Any]) -> Meta:
        """Register a collection.

        Raises:
            ConfigurationError: If the config is invalid, the collection is
                already registered, or the registry is sealed
        """
        if self._sealed:
            raise ConfigurationError("Registry is sealed; register collections at startup")

        meta = build_meta(meta_config)
        if meta.collection in self._metas:
            raise ConfigurationError(f"Collection '{meta.collection}' is already registered")

        self._metas[meta.collection] = meta
        logger.debug(
            "Registered collection '%s' with %d fields", meta.collection, len(meta.fields)
        )
        return meta

    def validate_all(self) -> None:
        """Check references between registered collections.

        Raises:
            ConfigurationError: If a ref names an unknown collection or a
                ref_filter key names an unknown requesting collection
        """
        for meta in self._metas.values():
            for f in meta.ref_fields:
                if f.ref not in self._metas:
                    raise ConfigurationError(
                        f"{meta.collection}.{f.name}: ref '{f.ref}' is not a registered collection"
                    )
            for key in meta.ref_filter:
                if key != "*" and key not in self._metas:
                    raise ConfigurationError(
                        f"{meta.collection}: ref_filter key '{key}' is not a registered collection"
                    )

    def seal(self) -> None:
        """Validate and close registration. Idempotent."""
        if self._sealed:
            return
        self.validate_all()

        referencing: dict[str, list[tuple[Meta, FieldDefinition]]] = {}
        for meta in self._metas.values():
            for f in meta.ref_fields:
                referencing.setdefault(f.ref, []).append((meta, f))
        self._referencing = {k: tuple(v) for k, v in referencing.items()}
        self._sealed = True
        logger.info("Metadata registry sealed with %d collections", len(self._metas))

    def get(self, collection: str) -> Meta | None:
        return self._metas.get(collection)

    def require(self, collection: str) -> Meta:
        """Get a collection's Meta or raise NOT_FOUND."""
        meta = self._metas.get(collection)
        if meta is None:
            raise EntityError(Code.NOT_FOUND, f"Collection '{collection}' not found")
        return meta

    def list_collections(self) -> list[str]:
        return list(self._metas.keys())

    def referencing_fields(self, collection: str) -> tuple[tuple[Meta, FieldDefinition], ...]:
        """All (meta, field) pairs whose ref targets the given collection."""
        return self._referencing.get(collection, ())

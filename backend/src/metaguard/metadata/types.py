"""Collection metadata types.

All types here are frozen: a Meta is built once during startup
registration and only read afterwards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

from metaguard.auth.modes import Permission
from metaguard.hooks.types import HookSet

DELETE_KEEP = "keep"
DELETE_CASCADE = "cascade"
DELETE_MODES = (DELETE_KEEP, DELETE_CASCADE)


@dataclass(frozen=True)
class FieldDefinition:
    """A single field of a collection.

    Attributes:
        name: Field name, unique within the collection
        type: Registered value type name (see metaguard.core.types)
        create/update/clone/search/list: Participation flags
        sys: Server-managed, never settable by a client
        secure: Never leaves the server
        required: Must be present after before_create hooks have run
        default: Applied on create when the payload omits the field
        ref: Target collection of a reference
        link: Name of a ref field this field denormalizes a label from
        delete: "keep" or "cascade" policy when the ref target is removed
        view: UI context tag
    """

    name: str
    type: str = "string"
    create: bool = True
    update: bool = True
    clone: bool = True
    search: bool = True
    list: bool = True
    sys: bool = False
    secure: bool = False
    required: bool = False
    default: Any = None
    ref: str | None = None
    link: str | None = None
    delete: str | None = None
    view: str | None = None


@dataclass(frozen=True)
class RoleRule:
    role: str
    mode: Permission
    view: str | None = None


@dataclass(frozen=True)
class FieldSubsets:
    """Named, ordered field groups derived from field flags."""

    client_fields: tuple[str, ...]
    property_fields: tuple[str, ...]
    create_fields: tuple[str, ...]
    update_fields: tuple[str, ...]
    clone_fields: tuple[str, ...]
    search_fields: tuple[str, ...]
    list_fields: tuple[str, ...]


@dataclass(frozen=True)
class Meta:
    collection: str
    fields: tuple[FieldDefinition, ...]
    roles: tuple[RoleRule, ...]
    subsets: FieldSubsets
    hooks: HookSet = field(default_factory=HookSet)
    user_field: str | None = None
    ref_filter: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    ref_label: str | None = None
    primary_keys: tuple[str, ...] = ()
    creatable: bool = True
    readable: bool = True
    updatable: bool = True
    deleteable: bool = True
    cloneable: bool = True

    def get_field(self, name: str) -> FieldDefinition | None:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)

    @property
    def ref_fields(self) -> tuple[FieldDefinition, ...]:
        return tuple(f for f in self.fields if f.ref)

    @property
    def link_fields(self) -> tuple[FieldDefinition, ...]:
        return tuple(f for f in self.fields if f.link)

"""Hook system types for MetaGuard.

Each lifecycle stage gets its own context type exposing only what that
stage needs. A context is created per request and passed to every hook of
that request's operation, so a before/after pair shares state through the
context instead of through module globals.

- ListQueryContext: list_query (returns a server filter)
- CreateContext: before_create / after_create
- CloneContext: before_clone / after_clone
- UpdateContext: before_update / after_update
- DeleteContext: before_delete / after_delete
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from metaguard.core.errors import Code

if TYPE_CHECKING:
    from metaguard.auth.types import Identity
    from metaguard.persistence.adapter import DocumentStore


@dataclass
class HookResult:
    """Optional return value from a hook.

    Attributes:
        update: Fields to merge into the context payload
        abort: Error message; a before-hook aborting stops the operation
        code: Response code used when aborting
    """

    update: dict[str, Any] | None = None
    abort: str | None = None
    code: Code = Code.ERROR


@dataclass
class HookContextBase:
    collection: str
    identity: "Identity | None"
    store: "DocumentStore"

    @property
    def subject(self) -> str | None:
        return self.identity.subject if self.identity else None

    @property
    def role(self) -> str | None:
        return self.identity.role if self.identity else None


@dataclass
class ListQueryContext(HookContextBase):
    """Context for list_query hooks.

    Attributes:
        params: The client's list parameters (read-only by convention)
        ref_by_entity: Requesting collection when listing for a reference
    """

    params: dict[str, Any] = field(default_factory=dict)
    ref_by_entity: str | None = None


@dataclass
class CreateContext(HookContextBase):
    """Context for before_create / after_create.

    Attributes:
        payload: The record to insert. before_create may mutate it freely,
            including sys and user_field values.
        record: The inserted record (after_create only)
    """

    payload: dict[str, Any] = field(default_factory=dict)
    record: dict[str, Any] | None = None


@dataclass
class CloneContext(CreateContext):
    """Context for before_clone / after_clone.

    Attributes:
        source: The record being cloned
    """

    source: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateContext(HookContextBase):
    """Context for before_update / after_update.

    Attributes:
        id: The id of the record being updated
        original: Record state before the update
        payload: The fields to set. before_update may stamp derived fields.
        record: The updated record (after_update only)
    """

    id: str = ""
    original: dict[str, Any] = field(default_factory=dict)
    payload: dict[str, Any] = field(default_factory=dict)
    record: dict[str, Any] | None = None

    @property
    def changes(self) -> dict[str, Any]:
        return compute_changes(self.payload, self.original)


@dataclass
class DeleteContext(HookContextBase):
    """Context for before_delete / after_delete.

    The same instance is passed to both hooks of one delete call.

    Attributes:
        ids: Ids of the records being deleted
        records: The records as they were before deletion
        state: Scratch space shared between before_delete and after_delete
        cascaded: Dependents removed by cascade, as (collection, id) pairs
    """

    ids: list[str] = field(default_factory=list)
    records: list[dict[str, Any]] = field(default_factory=list)
    state: dict[str, Any] = field(default_factory=dict)
    cascaded: list[tuple[str, str]] = field(default_factory=list)


HookContext = Union[ListQueryContext, CreateContext, CloneContext, UpdateContext, DeleteContext]

# Hooks may be sync or async and may return None, a HookResult, or
# (list_query only) a filter dict.
HookFn = Callable[[Any], Union[Awaitable[Any], Any]]


HOOK_POINTS = (
    "list_query",
    "before_create",
    "after_create",
    "before_clone",
    "after_clone",
    "before_update",
    "after_update",
    "before_delete",
    "after_delete",
)


@dataclass(frozen=True)
class HookSet:
    """The hooks attached to one collection, resolved at registration."""

    list_query: HookFn | None = None
    before_create: HookFn | None = None
    after_create: HookFn | None = None
    before_clone: HookFn | None = None
    after_clone: HookFn | None = None
    before_update: HookFn | None = None
    after_update: HookFn | None = None
    before_delete: HookFn | None = None
    after_delete: HookFn | None = None

    def get(self, point: str) -> HookFn | None:
        return getattr(self, point, None)


def compute_changes(
    record: dict[str, Any], original: dict[str, Any] | None
) -> dict[str, Any]:
    """Compute the fields of record that differ from original."""
    if original is None:
        return dict(record)

    changes: dict[str, Any] = {}
    for key, value in record.items():
        if key not in original or original[key] != value:
            changes[key] = value
    return changes

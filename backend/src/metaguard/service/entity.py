"""Entity operations.

EntityService is the single entry point for collection operations. Every
public method runs the same pipeline:

    validate -> authorize -> filter/convert payload -> before hook
        -> read or write -> after hook -> project -> envelope

and returns a response envelope ``{code, err?, data?, total?}``. A failure
at any stage ends the pipeline; nothing after it runs.
"""

import asyncio
import copy
import functools
import logging
from typing import Any, Iterable

from bson import ObjectId

from metaguard.auth.modes import Permission, effective_mode, find_role_rule, mode_string, require_permission
from metaguard.auth.types import Identity
from metaguard.core.errors import Code, EntityError, error_response, ok
from metaguard.core.types import convert_value
from metaguard.hooks.service import HookService
from metaguard.hooks.types import (
    CloneContext,
    CreateContext,
    DeleteContext,
    ListQueryContext,
    UpdateContext,
)
from metaguard.metadata.registry import MetadataRegistry
from metaguard.metadata.types import DELETE_CASCADE, FieldDefinition, Meta
from metaguard.persistence.adapter import DocumentStore
from metaguard.query.filters import (
    MAX_LIMIT,
    REQUIRED_PARAMS,
    RESERVED_PARAMS,
    build_query,
    merge_filters,
    require_params,
    resolve_ref_filter,
    sanitize_client_filter,
)
from metaguard.query.ids import find_by_id, is_object_id, to_id_queries, to_id_query

logger = logging.getLogger(__name__)

_TEXT_TYPES = ("string", "text", "password")


def _envelope(fn):
    """Turn EntityError and unexpected exceptions into failure envelopes."""

    @functools.wraps(fn)
    async def wrapper(self, collection: str, *args, **kwargs) -> dict[str, Any]:
        try:
            return await fn(self, collection, *args, **kwargs)
        except EntityError as e:
            return e.to_response()
        except Exception:
            logger.exception("%s on '%s' failed", fn.__name__, collection)
            return error_response(Code.ERROR, "Internal error")

    return wrapper


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == []


def _abort(result) -> EntityError:
    return EntityError(result.code, result.abort or "")


class EntityService:
    """Runs list/read/create/clone/update/batch/delete/reference operations.

    The registry is sealed on construction; every collection must be
    registered before the service is built.

    Example:
        service = EntityService(registry, MemoryStore())
        result = await service.list_entity("product", params, identity)
    """

    def __init__(
        self,
        registry: MetadataRegistry,
        store: DocumentStore,
        hook_service: HookService | None = None,
        max_limit: int = MAX_LIMIT,
    ):
        registry.seal()
        self.registry = registry
        self.store = store
        self.hooks = hook_service or HookService()
        self.max_limit = max_limit

    # --- Authorization ---

    def _authorize(
        self,
        meta: Meta,
        identity: Identity | None,
        needed: Permission,
        mode: str | None = None,
        enabled: bool = True,
    ) -> Permission:
        if identity is None:
            raise EntityError(Code.NO_SESSION, "Authentication required")
        if not enabled:
            raise EntityError(
                Code.NO_RIGHTS,
                f"Operation '{mode_string(needed)}' is disabled for '{meta.collection}'",
            )
        permission = effective_mode(meta.roles, identity.role, mode)
        require_permission(permission, needed)
        return permission

    # --- Field helpers ---

    @staticmethod
    def _read_fields(meta: Meta) -> list[str]:
        """Fields returned from single-record operations: client visible and not secure."""
        visible = set(meta.subsets.property_fields)
        return [name for name in meta.subsets.client_fields if name in visible]

    @staticmethod
    def _to_client(record: dict[str, Any], fields: Iterable[str]) -> dict[str, Any]:
        result: dict[str, Any] = {"_id": str(record["_id"])}
        for name in fields:
            if name in record:
                result[name] = record[name]
        return result

    @staticmethod
    def _fetch_fields(meta: Meta, fields: Iterable[str]) -> list[str]:
        """Stored fields to read for a projection.

        Link fields are not stored; their ref field is read instead.
        """
        fetch: list[str] = []
        for name in fields:
            field_def = meta.get_field(name)
            target = field_def.link if field_def and field_def.link else name
            if target not in fetch:
                fetch.append(target)
        return fetch

    @staticmethod
    def _prepare_values(
        meta: Meta,
        payload: dict[str, Any] | None,
        allowed: tuple[str, ...],
        keep_none: bool = False,
    ) -> dict[str, Any]:
        """Restrict a payload to allowed fields and convert each value.

        Raises:
            EntityError: INVALID_PARAMS if a value does not fit its field type
        """
        values: dict[str, Any] = {}
        for name, value in (payload or {}).items():
            if name not in allowed:
                continue
            field_def = meta.get_field(name)
            if value == "" and field_def.type not in _TEXT_TYPES:
                value = None
            if value is None:
                if keep_none:
                    values[name] = None
                continue
            try:
                values[name] = convert_value(field_def.type, value)
            except ValueError as e:
                raise EntityError(Code.INVALID_PARAMS, f"Invalid value for '{name}': {e}")
        return values

    @staticmethod
    def _check_required(meta: Meta, record: dict[str, Any], names: Iterable[str] | None = None) -> None:
        only = set(names) if names is not None else None
        missing = [
            f.name
            for f in meta.fields
            if f.required and (only is None or f.name in only) and _is_blank(record.get(f.name))
        ]
        if missing:
            raise EntityError(Code.NO_PARAMS, f"Missing required fields: {', '.join(missing)}")

    async def _check_unique(
        self, meta: Meta, record: dict[str, Any], exclude_id: ObjectId | None = None
    ) -> None:
        if not meta.primary_keys:
            return
        filter: dict[str, Any] = {key: record.get(key) for key in meta.primary_keys}
        if exclude_id is not None:
            filter["_id"] = {"$ne": exclude_id}
        if await self.store.count(meta.collection, filter) > 0:
            keys = ", ".join(meta.primary_keys)
            raise EntityError(Code.DUPLICATE_UNIQUE, f"A '{meta.collection}' with the same {keys} exists")

    async def _resolve_ref_value(self, meta: Meta, field_def: FieldDefinition, value: str) -> str:
        """Resolve a reference given as an id or a label to the target's id string.

        Raises:
            EntityError: REF_NOT_FOUND when nothing matches, REF_NOT_UNIQUE
                when a label matches more than one record
        """
        target = self.registry.require(field_def.ref)
        context = resolve_ref_filter(target, meta.collection)

        if is_object_id(value):
            if await self.store.count(target.collection, {**context, "_id": ObjectId(value)}) > 0:
                return value

        matches = await self.store.find(
            target.collection, {**context, target.ref_label: value}, ["_id"], limit=2
        )
        if not matches:
            raise EntityError(
                Code.REF_NOT_FOUND, f"'{field_def.name}': no '{target.collection}' matches '{value}'"
            )
        if len(matches) > 1:
            raise EntityError(
                Code.REF_NOT_UNIQUE,
                f"'{field_def.name}': more than one '{target.collection}' matches '{value}'",
            )
        return str(matches[0]["_id"])

    async def _resolve_refs(self, meta: Meta, record: dict[str, Any]) -> None:
        for field_def in meta.ref_fields:
            value = record.get(field_def.name)
            if _is_blank(value):
                continue
            record[field_def.name] = await self._resolve_ref_value(meta, field_def, value)

    async def _resolve_links(
        self, meta: Meta, rows: list[dict[str, Any]], fields: Iterable[str]
    ) -> None:
        """Fill link fields in place with their referenced record's label.

        One lookup per referenced collection.
        """
        links = [f for f in meta.link_fields if f.name in set(fields)]
        if not links or not rows:
            return

        by_target: dict[str, set[str]] = {}
        for link in links:
            ref_field = meta.get_field(link.link)
            ids = by_target.setdefault(ref_field.ref, set())
            ids.update(row.get(ref_field.name) for row in rows if is_object_id(row.get(ref_field.name)))

        labels: dict[str, dict[str, Any]] = {}
        for target_name, ids in by_target.items():
            query = to_id_queries(sorted(ids))
            if query is None:
                labels[target_name] = {}
                continue
            target = self.registry.require(target_name)
            targets = await self.store.find(target_name, query, [target.ref_label])
            labels[target_name] = {str(t["_id"]): t.get(target.ref_label) for t in targets}

        for row in rows:
            for link in links:
                ref_field = meta.get_field(link.link)
                row[link.name] = labels[ref_field.ref].get(row.get(ref_field.name))

    # --- Read operations ---

    @_envelope
    async def list_entity(
        self,
        collection: str,
        params: dict[str, Any],
        identity: Identity | None,
        ref_by_entity: str | None = None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        """List one page of a collection.

        Client search values are honoured only when the caller's mode
        includes search; otherwise they are dropped.
        """
        meta = self.registry.require(collection)
        permission = self._authorize(meta, identity, Permission.READ, mode, meta.readable)

        params = dict(params or {})
        require_params(params, REQUIRED_PARAMS)
        ref_by_entity = ref_by_entity or params.get("ref_by_entity")
        client_params = {}
        if Permission.SEARCH in permission:
            client_params = {k: v for k, v in params.items() if k not in RESERVED_PARAMS}

        context = ListQueryContext(
            collection=collection,
            identity=identity,
            store=self.store,
            params=params,
            ref_by_entity=ref_by_entity,
        )
        server_filter = await self.hooks.run_list_query(meta.hooks, context)

        query = build_query(
            meta, params, server_filter, client_params, ref_by_entity, self.max_limit
        )
        fetch = self._fetch_fields(meta, query.projection)
        total, rows = await asyncio.gather(
            self.store.count(collection, query.filter),
            self.store.find(collection, query.filter, fetch, query.sort, query.skip, query.limit),
        )
        await self._resolve_links(meta, rows, query.projection)
        return ok(data=[self._to_client(row, query.projection) for row in rows], total=total)

    @_envelope
    async def read_entity(
        self,
        collection: str,
        id: str,
        identity: Identity | None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        """Read one record by id.

        The list_query hook's filter applies here too, so a record hidden
        from a caller's list is also hidden from a direct read.
        """
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.READ, mode, meta.readable)

        id_query = to_id_query(id)
        if id_query is None:
            raise EntityError(Code.NOT_FOUND, f"'{collection}' record not found")

        context = ListQueryContext(collection=collection, identity=identity, store=self.store)
        server_filter = await self.hooks.run_list_query(meta.hooks, context)

        fields = self._read_fields(meta)
        record = await self.store.find_one(
            collection, {**server_filter, **id_query}, self._fetch_fields(meta, fields)
        )
        if record is None:
            raise EntityError(Code.NOT_FOUND, f"'{collection}' record not found")

        await self._resolve_links(meta, [record], fields)
        return ok(data=self._to_client(record, fields))

    @_envelope
    async def resolve_reference(
        self,
        collection: str,
        ref_by_entity: str | None,
        identity: Identity | None,
        query: dict[str, Any] | str | None = None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        """List ``{value, label}`` options of a collection for a referencing collection.

        ``query`` is either search values (sanitized like list search) or a
        label fragment.
        """
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.READ, mode, meta.readable)

        if isinstance(query, str):
            client_filter = sanitize_client_filter(meta, {meta.ref_label: query}) if query else {}
            if query and meta.ref_label not in client_filter:
                # The label field is not searchable; match on it directly
                client_filter = {meta.ref_label: query}
        else:
            client_filter = sanitize_client_filter(meta, query)

        context = ListQueryContext(
            collection=collection,
            identity=identity,
            store=self.store,
            params=dict(query) if isinstance(query, dict) else {},
            ref_by_entity=ref_by_entity,
        )
        server_filter = await self.hooks.run_list_query(meta.hooks, context)

        filter = merge_filters(client_filter, resolve_ref_filter(meta, ref_by_entity), server_filter)
        rows = await self.store.find(
            collection, filter, [meta.ref_label], sort=[(meta.ref_label, 1)], limit=self.max_limit
        )
        return ok(data=[{"value": str(row["_id"]), "label": row.get(meta.ref_label)} for row in rows])

    # --- Create / clone ---

    async def _insert(
        self,
        meta: Meta,
        context: CreateContext,
        allowed: tuple[str, ...],
        before: str,
        after: str,
    ) -> dict[str, Any]:
        record = context.payload
        for name in allowed:
            field_def = meta.get_field(name)
            if name not in record and field_def.default is not None:
                record[name] = copy.deepcopy(field_def.default)
        if meta.user_field:
            record[meta.user_field] = context.subject

        result = await self.hooks.run_before(before, meta.hooks, context)
        if result is not None:
            raise _abort(result)

        record = context.payload
        self._check_required(meta, record)
        await self._resolve_refs(meta, record)
        await self._check_unique(meta, record)

        stored = await self.store.insert(meta.collection, record)
        logger.info("Created '%s' record %s", meta.collection, stored["_id"])

        context.record = stored
        await self.hooks.run_after(after, meta.hooks, context)
        return ok(data=self._to_client(stored, self._read_fields(meta)))

    @_envelope
    async def create_entity(
        self,
        collection: str,
        payload: dict[str, Any],
        identity: Identity | None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.CREATE, mode, meta.creatable)

        record = self._prepare_values(meta, payload, meta.subsets.create_fields)
        context = CreateContext(
            collection=collection, identity=identity, store=self.store, payload=record
        )
        return await self._insert(
            meta, context, meta.subsets.create_fields, "before_create", "after_create"
        )

    @_envelope
    async def clone_entity(
        self,
        collection: str,
        id: str,
        payload: dict[str, Any] | None,
        identity: Identity | None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        """Create a record from an existing one's clone fields, overlaid with payload."""
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.CLONE, mode, meta.cloneable)

        source = await find_by_id(self.store, collection, id)
        if source is None:
            raise EntityError(Code.NOT_FOUND, f"'{collection}' record not found")

        record = {name: copy.deepcopy(source[name]) for name in meta.subsets.clone_fields if name in source}
        record.update(self._prepare_values(meta, payload, meta.subsets.clone_fields))
        context = CloneContext(
            collection=collection,
            identity=identity,
            store=self.store,
            payload=record,
            source=source,
        )
        return await self._insert(
            meta, context, meta.subsets.clone_fields, "before_clone", "after_clone"
        )

    # --- Update ---

    async def _update_records(
        self,
        meta: Meta,
        identity: Identity,
        originals: list[dict[str, Any]],
        changes: dict[str, Any],
    ) -> list[dict[str, Any]]:
        """Apply changes to each original record.

        Every record passes its before hook and checks before any record is
        written.
        """
        if len(originals) > 1 and any(key in changes for key in meta.primary_keys):
            raise EntityError(
                Code.DUPLICATE_UNIQUE, "Cannot set primary key fields on more than one record"
            )

        contexts: list[UpdateContext] = []
        for original in originals:
            context = UpdateContext(
                collection=meta.collection,
                identity=identity,
                store=self.store,
                id=str(original["_id"]),
                original=original,
                payload=dict(changes),
            )
            result = await self.hooks.run_before("before_update", meta.hooks, context)
            if result is not None:
                raise _abort(result)

            merged = {**original, **context.payload}
            self._check_required(meta, merged, context.payload.keys())
            await self._resolve_refs(meta, context.payload)
            if any(key in context.payload for key in meta.primary_keys):
                merged = {**original, **context.payload}
                await self._check_unique(meta, merged, exclude_id=original["_id"])
            contexts.append(context)

        fields = self._read_fields(meta)
        updated: list[dict[str, Any]] = []
        for context in contexts:
            await self.store.update(meta.collection, {"_id": context.original["_id"]}, context.payload)
            context.record = {**context.original, **context.payload}
            await self.hooks.run_after("after_update", meta.hooks, context)
            updated.append(self._to_client(context.record, fields))

        logger.info("Updated %d '%s' record(s)", len(updated), meta.collection)
        return updated

    @_envelope
    async def update_entity(
        self,
        collection: str,
        id: str,
        payload: dict[str, Any],
        identity: Identity | None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.UPDATE, mode, meta.updatable)

        changes = self._prepare_values(meta, payload, meta.subsets.update_fields, keep_none=True)
        if not changes:
            raise EntityError(Code.NO_PARAMS, "No updatable fields in payload")

        original = await find_by_id(self.store, collection, id)
        if original is None:
            raise EntityError(Code.NOT_FOUND, f"'{collection}' record not found")

        updated = await self._update_records(meta, identity, [original], changes)
        return ok(data=updated[0])

    def _ids_query(self, collection: str, ids: Any) -> dict[str, Any]:
        """Build the ``$in`` query for a batch, honouring the registry's id policy."""
        if isinstance(ids, str):
            ids = [part.strip() for part in ids.split(",") if part.strip()]
        if not ids:
            raise EntityError(Code.NO_PARAMS, "No ids given")

        query = to_id_queries(ids, strict=self.registry.strict_ids)
        if query is None:
            if self.registry.strict_ids and not all(is_object_id(i) for i in ids):
                raise EntityError(Code.INVALID_PARAMS, "Malformed id in batch")
            raise EntityError(Code.NOT_FOUND, f"'{collection}' records not found")
        return query

    @_envelope
    async def batch_update(
        self,
        collection: str,
        ids: list[str] | str,
        payload: dict[str, Any],
        identity: Identity | None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.BATCH, mode, meta.updatable)

        changes = self._prepare_values(meta, payload, meta.subsets.update_fields, keep_none=True)
        if not changes:
            raise EntityError(Code.NO_PARAMS, "No updatable fields in payload")

        originals = await self.store.find(collection, self._ids_query(collection, ids))
        if not originals:
            raise EntityError(Code.NOT_FOUND, f"'{collection}' records not found")

        updated = await self._update_records(meta, identity, originals, changes)
        return ok(data=updated, total=len(updated))

    # --- Delete ---

    async def _plan_delete(self, meta: Meta, ids: set[str]) -> dict[str, set[str]]:
        """Collect every record a delete removes, by collection.

        Cascades are followed transitively. Afterwards, any referencing
        field without a delete policy that still points at a doomed record
        from outside the doomed set blocks the delete.

        Raises:
            EntityError: HAS_REF
        """
        doomed: dict[str, set[str]] = {meta.collection: set(ids)}
        frontier: list[tuple[str, set[str]]] = [(meta.collection, set(ids))]
        while frontier:
            collection, batch = frontier.pop()
            for ref_meta, field_def in self.registry.referencing_fields(collection):
                if field_def.delete != DELETE_CASCADE:
                    continue
                dependents = await self.store.find(
                    ref_meta.collection, {field_def.name: {"$in": sorted(batch)}}, ["_id"]
                )
                seen = doomed.setdefault(ref_meta.collection, set())
                new = {str(d["_id"]) for d in dependents} - seen
                if new:
                    seen.update(new)
                    frontier.append((ref_meta.collection, new))

        for collection, collection_ids in doomed.items():
            for ref_meta, field_def in self.registry.referencing_fields(collection):
                if field_def.delete is not None:
                    continue
                filter: dict[str, Any] = {field_def.name: {"$in": sorted(collection_ids)}}
                excluded = doomed.get(ref_meta.collection)
                if excluded:
                    filter["_id"] = {"$nin": [ObjectId(i) for i in excluded]}
                if await self.store.count(ref_meta.collection, filter) > 0:
                    raise EntityError(
                        Code.HAS_REF,
                        f"'{collection}' record is referenced by '{ref_meta.collection}.{field_def.name}'",
                    )
        return doomed

    @_envelope
    async def delete_entity(
        self,
        collection: str,
        ids: list[str] | str,
        identity: Identity | None,
        mode: str | None = None,
    ) -> dict[str, Any]:
        """Delete records and apply the referencing fields' delete policies.

        Nothing is removed when a HAS_REF check or before_delete fails.
        Dependent removal is best-effort and runs no hooks of the dependent
        collections.
        """
        meta = self.registry.require(collection)
        self._authorize(meta, identity, Permission.DELETE, mode, meta.deleteable)

        records = await self.store.find(collection, self._ids_query(collection, ids))
        if not records:
            raise EntityError(Code.NOT_FOUND, f"'{collection}' records not found")

        found = [str(r["_id"]) for r in records]
        doomed = await self._plan_delete(meta, set(found))

        context = DeleteContext(
            collection=collection,
            identity=identity,
            store=self.store,
            ids=found,
            records=records,
        )
        result = await self.hooks.run_before("before_delete", meta.hooks, context)
        if result is not None:
            raise _abort(result)

        deleted = await self.store.delete(collection, {"_id": {"$in": [r["_id"] for r in records]}})
        for dependent, dependent_ids in doomed.items():
            if dependent == collection:
                dependent_ids = dependent_ids - set(found)
                if not dependent_ids:
                    continue
            ordered = sorted(dependent_ids)
            await self.store.delete(dependent, {"_id": {"$in": [ObjectId(i) for i in ordered]}})
            context.cascaded.extend((dependent, i) for i in ordered)

        logger.info(
            "Deleted %d '%s' record(s), %d cascaded", deleted, collection, len(context.cascaded)
        )
        await self.hooks.run_after("after_delete", meta.hooks, context)
        return ok(total=deleted)

    # --- Introspection ---

    @_envelope
    async def get_mode(
        self, collection: str, identity: Identity | None, mode: str | None = None
    ) -> dict[str, Any]:
        """Return the caller's effective mode string for a collection."""
        meta = self.registry.require(collection)
        if identity is None:
            raise EntityError(Code.NO_SESSION, "Authentication required")
        return ok(data=mode_string(effective_mode(meta.roles, identity.role, mode)))

    @_envelope
    async def describe_collection(
        self, collection: str, identity: Identity | None
    ) -> dict[str, Any]:
        """Return the client-visible field definitions of a collection."""
        meta = self.registry.require(collection)
        if identity is None:
            raise EntityError(Code.NO_SESSION, "Authentication required")

        visible = set(self._read_fields(meta))
        fields = [
            {
                "name": f.name,
                "type": f.type,
                "required": f.required,
                "ref": f.ref,
                "link": f.link,
                "view": f.view,
                "create": f.create,
                "update": f.update,
                "clone": f.clone,
                "search": f.search,
                "list": f.list,
            }
            for f in meta.fields
            if f.name in visible
        ]
        rule = find_role_rule(meta.roles, identity.role)
        return ok(
            data={
                "collection": meta.collection,
                "ref_label": meta.ref_label,
                "mode": mode_string(effective_mode(meta.roles, identity.role)),
                "view": rule.view if rule else None,
                "fields": fields,
            }
        )

"""End-to-end tests for EntityService over the in-memory store."""

import logging
from unittest.mock import AsyncMock

import pytest

from metaguard.auth.types import Identity
from metaguard.core.errors import Code
from metaguard.hooks import HookResult
from metaguard.metadata.registry import MetadataRegistry
from metaguard.persistence import MemoryStore
from metaguard.service.entity import EntityService

ADMIN = Identity(subject="507f1f77bcf86cd799439099", role="admin")
USER = Identity(subject="507f1f77bcf86cd799439098", role="user")
CLERK = Identity(subject="507f1f77bcf86cd799439097", role="clerk")

MISSING_ID = "507f1f77bcf86cd799439011"

LIST = {"attr_names": ["name", "price"], "sort_by": ["name"], "desc": [False]}


# =============================================================================
# Fixtures
# =============================================================================


def build_registry(hooks: dict | None = None, strict_ids: bool = False) -> MetadataRegistry:
    hooks = hooks or {}
    registry = MetadataRegistry(strict_ids=strict_ids)
    registry.register(
        {
            "collection": "category",
            "primary_keys": ["name"],
            "fields": [
                {"name": "name", "required": True},
                {"name": "active", "type": "boolean", "default": True},
            ],
            "roles": ["admin:*", "user:rs"],
            "ref_filter": {"product": {"active": True}},
            "hooks": hooks.get("category"),
        }
    )
    registry.register(
        {
            "collection": "product",
            "primary_keys": ["name"],
            "user_field": "owner",
            "fields": [
                {"name": "sku", "sys": True},
                {"name": "name", "required": True},
                {"name": "price", "type": "number"},
                {"name": "category", "ref": "category"},
                {"name": "categoryName", "link": "category"},
                {"name": "secret", "secure": True},
                {"name": "owner"},
                {"name": "stock", "type": "number", "default": 0},
            ],
            "roles": ["admin:*", "user:rs", "clerk:crudbo"],
            "hooks": hooks.get("product"),
        }
    )
    registry.register(
        {
            "collection": "review",
            "ref_label": "text",
            "fields": [
                {"name": "product", "ref": "product", "delete": "cascade"},
                {"name": "related", "ref": "product", "delete": "keep"},
                {"name": "text"},
            ],
            "roles": ["admin:*"],
        }
    )
    registry.register(
        {
            "collection": "reply",
            "fields": [
                {"name": "review", "ref": "review", "delete": "cascade"},
                {"name": "body"},
            ],
            "roles": ["admin:*"],
        }
    )
    registry.register(
        {
            "collection": "audit",
            "cloneable": False,
            "fields": [
                {"name": "product", "ref": "product", "delete": "keep"},
                {"name": "action"},
            ],
            "roles": ["admin:*"],
        }
    )
    return registry


def make_service(hooks: dict | None = None, strict_ids: bool = False) -> EntityService:
    return EntityService(build_registry(hooks, strict_ids), MemoryStore())


@pytest.fixture
def service():
    return make_service()


async def insert(service: EntityService, collection: str, **values) -> str:
    record = await service.store.insert(collection, values)
    return str(record["_id"])


# =============================================================================
# Authorization
# =============================================================================


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_no_identity(self, service):
        result = await service.list_entity("product", LIST, None)
        assert result["code"] == Code.NO_SESSION

    @pytest.mark.asyncio
    async def test_unknown_collection(self, service):
        result = await service.list_entity("invoice", LIST, ADMIN)
        assert result["code"] == Code.NOT_FOUND

    @pytest.mark.asyncio
    async def test_role_without_create(self, service):
        result = await service.create_entity("product", {"name": "Lamp"}, USER)
        assert result["code"] == Code.NO_RIGHTS

    @pytest.mark.asyncio
    async def test_unknown_role(self, service):
        result = await service.list_entity("product", LIST, Identity(subject="x", role="guest"))
        assert result["code"] == Code.NO_RIGHTS

    @pytest.mark.asyncio
    async def test_client_mode_narrows(self, service):
        result = await service.create_entity("product", {"name": "Lamp"}, ADMIN, mode="r")
        assert result["code"] == Code.NO_RIGHTS

    @pytest.mark.asyncio
    async def test_disabled_operation(self, service):
        audit_id = await insert(service, "audit", action="x")
        result = await service.clone_entity("audit", audit_id, {}, ADMIN)
        assert result["code"] == Code.NO_RIGHTS

    @pytest.mark.asyncio
    async def test_checks_run_before_storage(self):
        store = AsyncMock()
        service = EntityService(build_registry(), store)

        assert (await service.create_entity("product", {"name": "Lamp"}, USER))["code"] == Code.NO_RIGHTS
        assert (await service.list_entity("product", {"attr_names": ["name"]}, ADMIN))["code"] == Code.NO_PARAMS
        assert (await service.read_entity("product", "not-an-id", ADMIN))["code"] == Code.NOT_FOUND
        assert store.mock_calls == []

    @pytest.mark.asyncio
    async def test_product_example(self):
        registry = MetadataRegistry()
        registry.register(
            {
                "collection": "product",
                "fields": [{"name": "sku", "sys": True}, {"name": "name"}, {"name": "price", "search": True}],
                "roles": ["admin:*", "user:rs"],
            }
        )
        service = EntityService(registry, MemoryStore())
        await service.store.insert("product", {"sku": "A-1", "name": "Lamp", "price": 30})
        await service.store.insert("product", {"sku": "B-2", "name": "Desk", "price": 120})

        mode = await service.get_mode("product", USER, "crsud")
        assert mode["data"] == "rs"

        created = await service.create_entity("product", {"name": "Pen"}, USER, mode="crsud")
        assert created["code"] == Code.NO_RIGHTS

        listed = await service.list_entity(
            "product",
            {"attr_names": ["sku", "name", "price"], "sort_by": ["name"], "desc": [False]},
            USER,
            mode="crsud",
        )
        assert listed["code"] == Code.SUCCESS
        assert listed["total"] == 2
        assert all("sku" not in row for row in listed["data"])


# =============================================================================
# List
# =============================================================================


class TestList:
    async def _seed(self, service, count=25):
        for i in range(1, count + 1):
            await insert(service, "product", name=f"P{i:02d}", price=i, sku=f"S{i}", secret="x")

    @pytest.mark.asyncio
    async def test_paging(self, service):
        await self._seed(service)
        result = await service.list_entity("product", {**LIST, "page": 2, "limit": 10}, ADMIN)

        assert result["code"] == Code.SUCCESS
        assert result["total"] == 25
        assert [row["name"] for row in result["data"]] == [f"P{i}" for i in range(11, 21)]

    @pytest.mark.asyncio
    async def test_descending_sort(self, service):
        await self._seed(service, 3)
        result = await service.list_entity("product", {**LIST, "sort_by": ["price"], "desc": [True]}, ADMIN)
        assert [row["price"] for row in result["data"]] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_projection(self, service):
        await self._seed(service, 1)
        result = await service.list_entity(
            "product", {**LIST, "attr_names": ["name", "sku", "secret"]}, ADMIN
        )
        row = result["data"][0]
        assert set(row) == {"_id", "name"}
        assert isinstance(row["_id"], str)

    @pytest.mark.asyncio
    async def test_search(self, service):
        await self._seed(service)
        result = await service.list_entity("product", {**LIST, "name": "p0"}, USER)
        assert result["total"] == 9

    @pytest.mark.asyncio
    async def test_search_needs_search_mode(self, service):
        await self._seed(service)
        result = await service.list_entity("product", {**LIST, "name": "p0"}, CLERK)
        assert result["total"] == 25

    @pytest.mark.asyncio
    async def test_operator_injection_stripped(self, service):
        await self._seed(service)
        result = await service.list_entity(
            "product", {**LIST, "price": {"$gt": 20}, "$where": "sleep(1)"}, USER
        )
        assert result["code"] == Code.SUCCESS
        assert result["total"] == 25

    @pytest.mark.asyncio
    async def test_server_filter_wins(self):
        service = make_service(
            {"product": {"list_query": lambda ctx: {} if ctx.role == "admin" else {"price": 5}}}
        )
        await self._seed(service, 10)

        result = await service.list_entity("product", {**LIST, "price": 7}, USER)
        assert result["total"] == 1
        assert result["data"][0]["price"] == 5

        result = await service.list_entity("product", LIST, ADMIN)
        assert result["total"] == 10

    @pytest.mark.asyncio
    async def test_link_fields_resolved(self, service):
        tools = await insert(service, "category", name="Tools", active=True)
        await insert(service, "product", name="Hammer", category=tools)
        await insert(service, "product", name="Orphan", category=MISSING_ID)

        result = await service.list_entity(
            "product", {**LIST, "attr_names": ["name", "category", "categoryName"]}, ADMIN
        )
        rows = {row["name"]: row for row in result["data"]}
        assert rows["Hammer"]["categoryName"] == "Tools"
        assert rows["Hammer"]["category"] == tools
        assert rows["Orphan"]["categoryName"] is None

    @pytest.mark.asyncio
    async def test_ref_by_entity(self, service):
        await insert(service, "category", name="Tools", active=True)
        await insert(service, "category", name="Old", active=False)

        result = await service.list_entity(
            "category", {**LIST, "attr_names": ["name"]}, ADMIN, ref_by_entity="product"
        )
        assert [row["name"] for row in result["data"]] == ["Tools"]

        result = await service.list_entity("category", {**LIST, "attr_names": ["name"]}, ADMIN)
        assert result["total"] == 2

    @pytest.mark.asyncio
    async def test_missing_params(self, service):
        result = await service.list_entity("product", {"attr_names": ["name"]}, ADMIN)
        assert result["code"] == Code.NO_PARAMS
        assert "sort_by" in result["err"]

    @pytest.mark.asyncio
    async def test_store_failure(self, service, caplog):
        service.store.count = AsyncMock(side_effect=RuntimeError("connection reset"))
        with caplog.at_level(logging.ERROR):
            result = await service.list_entity("product", LIST, ADMIN)

        assert result == {"code": Code.ERROR, "err": "Internal error"}
        assert "list_entity on 'product' failed" in caplog.text


# =============================================================================
# Read
# =============================================================================


class TestRead:
    @pytest.mark.asyncio
    async def test_read(self, service):
        product_id = await insert(service, "product", name="Lamp", sku="S1", secret="x", owner="u1")
        result = await service.read_entity("product", product_id, USER)

        assert result["code"] == Code.SUCCESS
        assert result["data"] == {"_id": product_id, "name": "Lamp", "owner": "u1", "categoryName": None}

    @pytest.mark.asyncio
    async def test_unknown_id(self, service):
        result = await service.read_entity("product", MISSING_ID, ADMIN)
        assert result["code"] == Code.NOT_FOUND

    @pytest.mark.asyncio
    async def test_trailing_newline_is_not_an_id(self, service):
        product_id = await insert(service, "product", name="Lamp")
        padded = product_id + "\n"

        assert (await service.read_entity("product", padded, ADMIN))["code"] == Code.NOT_FOUND
        assert (await service.update_entity("product", padded, {"price": 1}, ADMIN))["code"] == Code.NOT_FOUND
        assert (await service.clone_entity("product", padded, {"name": "Desk"}, ADMIN))["code"] == Code.NOT_FOUND
        assert (await service.delete_entity("product", [padded], ADMIN))["code"] == Code.NOT_FOUND
        assert (await service.batch_update("product", [padded], {"price": 1}, ADMIN))["code"] == Code.NOT_FOUND
        assert await service.store.count("product", {}) == 1

    @pytest.mark.asyncio
    async def test_list_query_hides_record(self):
        service = make_service({"product": {"list_query": lambda ctx: {"price": {"$gt": 10}}}})
        cheap = await insert(service, "product", name="Pen", price=2)
        result = await service.read_entity("product", cheap, ADMIN)
        assert result["code"] == Code.NOT_FOUND


# =============================================================================
# Create
# =============================================================================


class TestCreate:
    @pytest.mark.asyncio
    async def test_create(self, service):
        result = await service.create_entity(
            "product",
            {"name": "Lamp", "price": "30", "sku": "X", "owner": "someone", "secret": "s"},
            CLERK,
        )

        assert result["code"] == Code.SUCCESS
        data = result["data"]
        assert data["name"] == "Lamp"
        assert data["price"] == 30
        assert data["stock"] == 0
        assert data["owner"] == CLERK.subject
        assert "sku" not in data
        assert "secret" not in data

        stored = await service.store.find_one("product", {"name": "Lamp"})
        assert stored["secret"] == "s"
        assert "sku" not in stored

    @pytest.mark.asyncio
    async def test_invalid_value(self, service):
        result = await service.create_entity("product", {"name": "Lamp", "price": "cheap"}, ADMIN)
        assert result["code"] == Code.INVALID_PARAMS
        assert await service.store.count("product", {}) == 0

    @pytest.mark.asyncio
    async def test_missing_required(self, service):
        result = await service.create_entity("product", {"price": 3}, ADMIN)
        assert result["code"] == Code.NO_PARAMS
        assert "name" in result["err"]

    @pytest.mark.asyncio
    async def test_duplicate(self, service):
        await service.create_entity("product", {"name": "Lamp"}, ADMIN)
        result = await service.create_entity("product", {"name": "Lamp"}, ADMIN)
        assert result["code"] == Code.DUPLICATE_UNIQUE
        assert await service.store.count("product", {}) == 1

    @pytest.mark.asyncio
    async def test_ref_by_id(self, service):
        tools = await insert(service, "category", name="Tools", active=True)
        result = await service.create_entity("product", {"name": "Saw", "category": tools}, ADMIN)
        assert result["data"]["category"] == tools

    @pytest.mark.asyncio
    async def test_ref_by_label(self, service):
        tools = await insert(service, "category", name="Tools", active=True)
        result = await service.create_entity("product", {"name": "Saw", "category": "Tools"}, ADMIN)
        assert result["code"] == Code.SUCCESS
        assert result["data"]["category"] == tools

    @pytest.mark.asyncio
    async def test_ref_not_found(self, service):
        result = await service.create_entity("product", {"name": "Saw", "category": MISSING_ID}, ADMIN)
        assert result["code"] == Code.REF_NOT_FOUND

    @pytest.mark.asyncio
    async def test_ref_outside_ref_filter(self, service):
        old = await insert(service, "category", name="Old", active=False)
        result = await service.create_entity("product", {"name": "Saw", "category": old}, ADMIN)
        assert result["code"] == Code.REF_NOT_FOUND

    @pytest.mark.asyncio
    async def test_ref_not_unique(self, service):
        await insert(service, "category", name="Dup", active=True)
        await insert(service, "category", name="Dup", active=True)
        result = await service.create_entity("product", {"name": "Saw", "category": "Dup"}, ADMIN)
        assert result["code"] == Code.REF_NOT_UNIQUE
        assert await service.store.count("product", {}) == 0

    @pytest.mark.asyncio
    async def test_before_create_abort_prevents_write(self):
        service = make_service(
            {"product": {"before_create": lambda ctx: HookResult(abort="Catalog frozen", code=Code.NO_RIGHTS)}}
        )
        result = await service.create_entity("product", {"name": "Lamp"}, ADMIN)

        assert result == {"code": Code.NO_RIGHTS, "err": "Catalog frozen"}
        assert await service.store.count("product", {}) == 0

    @pytest.mark.asyncio
    async def test_before_create_sets_sys_field(self):
        def stamp(ctx):
            ctx.payload["sku"] = f"SKU-{ctx.payload['name'].upper()}"

        service = make_service({"product": {"before_create": stamp}})
        await service.create_entity("product", {"name": "Lamp"}, ADMIN)

        stored = await service.store.find_one("product", {})
        assert stored["sku"] == "SKU-LAMP"

    @pytest.mark.asyncio
    async def test_after_create_failure_keeps_response(self, caplog):
        seen = []

        async def notify(ctx):
            seen.append(ctx.record["_id"])
            raise RuntimeError("mailer down")

        service = make_service({"product": {"after_create": notify}})
        with caplog.at_level(logging.ERROR):
            result = await service.create_entity("product", {"name": "Lamp"}, ADMIN)

        assert result["code"] == Code.SUCCESS
        assert str(seen[0]) == result["data"]["_id"]
        assert "mailer down" in caplog.text

    @pytest.mark.asyncio
    async def test_before_create_failure_is_opaque(self, caplog):
        def lookup(ctx):
            raise RuntimeError("connection to mongodb://admin:hunter2@db failed")

        service = make_service({"product": {"before_create": lookup}})
        with caplog.at_level(logging.ERROR):
            result = await service.create_entity("product", {"name": "Lamp"}, ADMIN)

        assert result == {"code": Code.ERROR, "err": "Internal error"}
        assert "hunter2" in caplog.text
        assert await service.store.count("product", {}) == 0


# =============================================================================
# Clone
# =============================================================================


class TestClone:
    @pytest.mark.asyncio
    async def test_clone(self, service):
        tools = await insert(service, "category", name="Tools", active=True)
        source = await insert(
            service, "product", name="Lamp", price=30, category=tools, sku="S1", owner="someone"
        )

        result = await service.clone_entity("product", source, {"name": "Lamp 2"}, CLERK)

        assert result["code"] == Code.SUCCESS
        data = result["data"]
        assert data["name"] == "Lamp 2"
        assert data["price"] == 30
        assert data["category"] == tools
        assert data["owner"] == CLERK.subject
        assert data["_id"] != source
        assert await service.store.count("product", {"sku": "S1"}) == 1

    @pytest.mark.asyncio
    async def test_clone_duplicate(self, service):
        source = await insert(service, "product", name="Lamp")
        result = await service.clone_entity("product", source, {}, ADMIN)
        assert result["code"] == Code.DUPLICATE_UNIQUE

    @pytest.mark.asyncio
    async def test_clone_missing_source(self, service):
        result = await service.clone_entity("product", "bad", {"name": "x"}, ADMIN)
        assert result["code"] == Code.NOT_FOUND

    @pytest.mark.asyncio
    async def test_clone_hooks(self):
        calls = []
        service = make_service(
            {
                "product": {
                    "before_clone": lambda ctx: calls.append(("before", ctx.source["name"])),
                    "after_clone": lambda ctx: calls.append(("after", ctx.record["name"])),
                }
            }
        )
        source = await insert(service, "product", name="Lamp")
        await service.clone_entity("product", source, {"name": "Lamp 2"}, ADMIN)
        assert calls == [("before", "Lamp"), ("after", "Lamp 2")]


# =============================================================================
# Update
# =============================================================================


class TestUpdate:
    @pytest.mark.asyncio
    async def test_update(self, service):
        product_id = await insert(service, "product", name="Lamp", price=30)
        result = await service.update_entity("product", product_id, {"price": "45", "sku": "Z"}, ADMIN)

        assert result["code"] == Code.SUCCESS
        assert result["data"]["price"] == 45
        stored = await service.store.find_one("product", {})
        assert stored["price"] == 45
        assert "sku" not in stored

    @pytest.mark.asyncio
    async def test_no_updatable_fields(self, service):
        product_id = await insert(service, "product", name="Lamp")
        result = await service.update_entity("product", product_id, {"sku": "Z", "owner": "x"}, ADMIN)
        assert result["code"] == Code.NO_PARAMS

    @pytest.mark.asyncio
    async def test_blank_number_clears_value(self, service):
        product_id = await insert(service, "product", name="Lamp", price=30)
        await service.update_entity("product", product_id, {"price": ""}, ADMIN)
        stored = await service.store.find_one("product", {})
        assert stored["price"] is None

    @pytest.mark.asyncio
    async def test_required_cannot_be_cleared(self, service):
        product_id = await insert(service, "product", name="Lamp")
        result = await service.update_entity("product", product_id, {"name": ""}, ADMIN)
        assert result["code"] == Code.NO_PARAMS

    @pytest.mark.asyncio
    async def test_rename_uniqueness(self, service):
        lamp = await insert(service, "product", name="Lamp")
        await insert(service, "product", name="Desk")

        assert (await service.update_entity("product", lamp, {"name": "Desk"}, ADMIN))["code"] == Code.DUPLICATE_UNIQUE
        assert (await service.update_entity("product", lamp, {"name": "Lamp"}, ADMIN))["code"] == Code.SUCCESS

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw_id", ["bad", MISSING_ID])
    async def test_not_found(self, service, raw_id):
        result = await service.update_entity("product", raw_id, {"price": 1}, ADMIN)
        assert result["code"] == Code.NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_rights(self, service):
        product_id = await insert(service, "product", name="Lamp")
        result = await service.update_entity("product", product_id, {"price": 1}, USER)
        assert result["code"] == Code.NO_RIGHTS

    @pytest.mark.asyncio
    async def test_before_update_stamps_and_after_update_sees_record(self):
        seen = {}

        def stamp(ctx):
            if ctx.changes.get("price") != ctx.original.get("price"):
                ctx.payload["sku"] = "REPRICED"

        def after(ctx):
            seen.update(ctx.record)

        service = make_service({"product": {"before_update": stamp, "after_update": after}})
        product_id = await insert(service, "product", name="Lamp", price=30)
        await service.update_entity("product", product_id, {"price": 35}, ADMIN)

        assert seen["sku"] == "REPRICED"
        assert seen["price"] == 35
        assert (await service.store.find_one("product", {}))["sku"] == "REPRICED"


# =============================================================================
# Batch update
# =============================================================================


class TestBatchUpdate:
    @pytest.mark.asyncio
    async def test_batch(self, service):
        a = await insert(service, "product", name="A", price=1)
        b = await insert(service, "product", name="B", price=2)

        result = await service.batch_update("product", [a, b], {"stock": 5}, ADMIN)

        assert result["code"] == Code.SUCCESS
        assert result["total"] == 2
        assert await service.store.count("product", {"stock": 5}) == 2

    @pytest.mark.asyncio
    async def test_comma_separated_ids(self, service):
        a = await insert(service, "product", name="A")
        b = await insert(service, "product", name="B")
        result = await service.batch_update("product", f"{a},{b}", {"stock": 1}, ADMIN)
        assert result["total"] == 2

    @pytest.mark.asyncio
    async def test_lenient_drops_malformed(self, service):
        a = await insert(service, "product", name="A")
        result = await service.batch_update("product", [a, "bad"], {"stock": 1}, ADMIN)
        assert result["total"] == 1

    @pytest.mark.asyncio
    async def test_strict_rejects_batch(self):
        service = make_service(strict_ids=True)
        a = await insert(service, "product", name="A")

        result = await service.batch_update("product", [a, "bad"], {"stock": 1}, ADMIN)

        assert result["code"] == Code.INVALID_PARAMS
        assert await service.store.count("product", {"stock": 1}) == 0

    @pytest.mark.asyncio
    async def test_nothing_valid(self, service):
        result = await service.batch_update("product", ["bad"], {"stock": 1}, ADMIN)
        assert result["code"] == Code.NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_ids(self, service):
        result = await service.batch_update("product", [], {"stock": 1}, ADMIN)
        assert result["code"] == Code.NO_PARAMS

    @pytest.mark.asyncio
    async def test_primary_key_on_many(self, service):
        a = await insert(service, "product", name="A")
        b = await insert(service, "product", name="B")
        result = await service.batch_update("product", [a, b], {"name": "C"}, ADMIN)
        assert result["code"] == Code.DUPLICATE_UNIQUE

    @pytest.mark.asyncio
    async def test_needs_batch_mode(self, service):
        a = await insert(service, "product", name="A")
        result = await service.batch_update("product", [a], {"stock": 1}, ADMIN, mode="ru")
        assert result["code"] == Code.NO_RIGHTS

    @pytest.mark.asyncio
    async def test_abort_writes_nothing(self):
        def guard(ctx):
            if ctx.original["name"] == "B":
                return HookResult(abort="B is locked", code=Code.INVALID_PARAMS)

        service = make_service({"product": {"before_update": guard}})
        a = await insert(service, "product", name="A")
        b = await insert(service, "product", name="B")

        result = await service.batch_update("product", [a, b], {"stock": 9}, ADMIN)

        assert result["code"] == Code.INVALID_PARAMS
        assert await service.store.count("product", {"stock": 9}) == 0


# =============================================================================
# Delete
# =============================================================================


class TestDelete:
    @pytest.mark.asyncio
    async def test_cascade_is_transitive(self, service):
        product = await insert(service, "product", name="Lamp")
        review = await insert(service, "review", product=product, text="nice")
        await insert(service, "reply", review=review, body="thanks")

        result = await service.delete_entity("product", [product], ADMIN)

        assert result == {"code": Code.SUCCESS, "total": 1}
        assert await service.store.count("product", {}) == 0
        assert await service.store.count("review", {}) == 0
        assert await service.store.count("reply", {}) == 0

    @pytest.mark.asyncio
    async def test_cascade_within_collection(self):
        contexts = []
        registry = MetadataRegistry()
        registry.register(
            {
                "collection": "folder",
                "fields": [{"name": "name"}, {"name": "parent", "ref": "folder", "delete": "cascade"}],
                "roles": ["admin:*"],
                "hooks": {"after_delete": contexts.append},
            }
        )
        service = EntityService(registry, MemoryStore())
        root = await insert(service, "folder", name="root")
        child = await insert(service, "folder", name="child", parent=root)
        leaf = await insert(service, "folder", name="leaf", parent=child)
        other = await insert(service, "folder", name="other")

        result = await service.delete_entity("folder", [root], ADMIN)

        assert result == {"code": Code.SUCCESS, "total": 1}
        remaining = await service.store.find("folder", {})
        assert [str(r["_id"]) for r in remaining] == [other]
        assert contexts[0].cascaded == sorted([("folder", child), ("folder", leaf)])

    @pytest.mark.asyncio
    async def test_keep_leaves_dangling_reference(self, service):
        product = await insert(service, "product", name="Lamp")
        await insert(service, "audit", product=product, action="created")

        result = await service.delete_entity("product", [product], ADMIN)

        assert result["code"] == Code.SUCCESS
        audit = await service.store.find_one("audit", {})
        assert audit["product"] == product

    @pytest.mark.asyncio
    async def test_cascade_wins_over_keep(self, service):
        lamp = await insert(service, "product", name="Lamp")
        desk = await insert(service, "product", name="Desk")
        await insert(service, "review", product=lamp, related=desk, text="pair")

        await service.delete_entity("product", [desk], ADMIN)
        assert await service.store.count("review", {}) == 1

        await service.delete_entity("product", [lamp], ADMIN)
        assert await service.store.count("review", {}) == 0

    @pytest.mark.asyncio
    async def test_has_ref_blocks_everything(self):
        before = AsyncMock()
        service = make_service({"category": {"before_delete": before}})
        tools = await insert(service, "category", name="Tools", active=True)
        garden = await insert(service, "category", name="Garden", active=True)
        await insert(service, "product", name="Saw", category=tools)

        result = await service.delete_entity("category", [garden, tools], ADMIN)

        assert result["code"] == Code.HAS_REF
        assert await service.store.count("category", {}) == 2
        assert await service.store.count("product", {}) == 1
        before.assert_not_called()

    @pytest.mark.asyncio
    async def test_unreferenced_delete(self, service):
        garden = await insert(service, "category", name="Garden", active=True)
        result = await service.delete_entity("category", garden, ADMIN)
        assert result == {"code": Code.SUCCESS, "total": 1}

    @pytest.mark.asyncio
    async def test_hooks_share_one_context(self):
        contexts = []

        def before(ctx):
            contexts.append(ctx)
            ctx.state["names"] = [r["name"] for r in ctx.records]

        async def after(ctx):
            contexts.append(ctx)

        service = make_service({"product": {"before_delete": before, "after_delete": after}})
        product = await insert(service, "product", name="Lamp")
        review = await insert(service, "review", product=product)

        await service.delete_entity("product", [product], ADMIN)

        assert len(contexts) == 2
        assert contexts[0] is contexts[1]
        assert contexts[1].state["names"] == ["Lamp"]
        assert contexts[1].ids == [product]
        assert contexts[1].cascaded == [("review", review)]

    @pytest.mark.asyncio
    async def test_before_delete_abort(self):
        service = make_service(
            {"product": {"before_delete": lambda ctx: HookResult(abort="In use", code=Code.HAS_REF)}}
        )
        product = await insert(service, "product", name="Lamp")
        await insert(service, "review", product=product)

        result = await service.delete_entity("product", [product], ADMIN)

        assert result["code"] == Code.HAS_REF
        assert await service.store.count("product", {}) == 1
        assert await service.store.count("review", {}) == 1

    @pytest.mark.asyncio
    async def test_strict_ids(self):
        service = make_service(strict_ids=True)
        product = await insert(service, "product", name="Lamp")
        result = await service.delete_entity("product", [product, "bad"], ADMIN)
        assert result["code"] == Code.INVALID_PARAMS
        assert await service.store.count("product", {}) == 1

    @pytest.mark.asyncio
    async def test_not_found(self, service):
        result = await service.delete_entity("product", [MISSING_ID], ADMIN)
        assert result["code"] == Code.NOT_FOUND

    @pytest.mark.asyncio
    async def test_no_rights(self, service):
        product = await insert(service, "product", name="Lamp")
        result = await service.delete_entity("product", [product], USER)
        assert result["code"] == Code.NO_RIGHTS
        assert await service.store.count("product", {}) == 1


# =============================================================================
# Reference resolution
# =============================================================================


class TestResolveReference:
    @pytest.mark.asyncio
    async def test_options(self, service):
        tools = await insert(service, "category", name="Tools", active=True)
        garden = await insert(service, "category", name="Garden", active=True)
        await insert(service, "category", name="Old", active=False)

        result = await service.resolve_reference("category", "product", ADMIN)

        assert result == {
            "code": Code.SUCCESS,
            "data": [{"value": garden, "label": "Garden"}, {"value": tools, "label": "Tools"}],
        }

    @pytest.mark.asyncio
    async def test_without_context(self, service):
        await insert(service, "category", name="Tools", active=True)
        await insert(service, "category", name="Old", active=False)
        result = await service.resolve_reference("category", None, ADMIN)
        assert len(result["data"]) == 2

    @pytest.mark.asyncio
    async def test_label_fragment(self, service):
        await insert(service, "category", name="Tools", active=True)
        await insert(service, "category", name="Garden", active=True)
        result = await service.resolve_reference("category", "product", ADMIN, query="too")
        assert [o["label"] for o in result["data"]] == ["Tools"]

    @pytest.mark.asyncio
    async def test_query_cannot_widen_context(self, service):
        await insert(service, "category", name="Old", active=False)
        result = await service.resolve_reference(
            "category", "product", ADMIN, query={"active": False, "$or": [{}]}
        )
        assert result["data"] == []

    @pytest.mark.asyncio
    async def test_no_rights(self, service):
        result = await service.resolve_reference("category", "product", CLERK)
        assert result["code"] == Code.NO_RIGHTS


# =============================================================================
# Introspection
# =============================================================================


class TestIntrospection:
    @pytest.mark.asyncio
    async def test_get_mode(self, service):
        assert (await service.get_mode("product", ADMIN))["data"] == "crsudboie"
        assert (await service.get_mode("product", CLERK, "rsd"))["data"] == "rd"
        assert (await service.get_mode("product", None))["code"] == Code.NO_SESSION

    @pytest.mark.asyncio
    async def test_describe(self, service):
        result = await service.describe_collection("product", USER)

        data = result["data"]
        assert data["collection"] == "product"
        assert data["mode"] == "rs"
        names = [f["name"] for f in data["fields"]]
        assert names == ["name", "price", "category", "categoryName", "owner", "stock"]
        category_name = next(f for f in data["fields"] if f["name"] == "categoryName")
        assert category_name["link"] == "category"
        assert category_name["create"] is False

    @pytest.mark.asyncio
    async def test_describe_reports_role_view(self):
        registry = MetadataRegistry()
        registry.register(
            {
                "collection": "note",
                "fields": [{"name": "body"}],
                "roles": ["admin:*", "user:rs:timeline"],
            }
        )
        service = EntityService(registry, MemoryStore())

        assert (await service.describe_collection("note", USER))["data"]["view"] == "timeline"
        assert (await service.describe_collection("note", ADMIN))["data"]["view"] is None

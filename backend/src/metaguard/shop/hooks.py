"""Hooks for the shop collections.

Registered by name; the collection YAML files under metadata/collections
refer to them.
"""

import logging
import random
import string
import time
from datetime import datetime, timezone
from typing import Any

from metaguard.core.errors import Code, EntityError
from metaguard.hooks import (
    CreateContext,
    DeleteContext,
    HookResult,
    ListQueryContext,
    UpdateContext,
    hook,
)
from metaguard.persistence.adapter import DocumentStore
from metaguard.query.ids import to_id_query
from metaguard.shop.types import OrderStatus, ProductStatus

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

_BASE36 = string.digits + string.ascii_uppercase


def _base36(number: int) -> str:
    digits = ""
    while number:
        number, rem = divmod(number, 36)
        digits = _BASE36[rem] + digits
    return digits or "0"


def generate_order_no() -> str:
    """Order numbers look like ``ORD-<time base36>-<4 random chars>``."""
    suffix = "".join(random.choices(_BASE36, k=4))
    return f"ORD-{_base36(int(time.time() * 1000))}-{suffix}"


def order_total(items: Any) -> float:
    total = 0
    for item in items or []:
        if isinstance(item, dict):
            total += (item.get("price") or 0) * (item.get("quantity") or 1)
    return total


async def recount_product_rating(store: DocumentStore, product_id: str) -> None:
    """Recompute a product's average rating and review count."""
    query = to_id_query(product_id)
    if query is None:
        return

    reviews = await store.find("review", {"product": product_id}, ["rating"])
    count = len(reviews)
    average = 0
    if count:
        average = round(sum(r.get("rating") or 0 for r in reviews) / count, 1)
    await store.update("product", query, {"rating": average, "reviewCount": count})
    logger.debug("Product %s rating %s over %d reviews", product_id, average, count)


# --- product ---


@hook("publishedProducts")
def published_products(ctx: ListQueryContext) -> dict[str, Any]:
    """Non-admin callers only see published products."""
    if ctx.role == ADMIN_ROLE:
        return {}
    return {"status": ProductStatus.PUBLISHED.value}


# --- order ---


@hook("ownOrders")
def own_orders(ctx: ListQueryContext) -> dict[str, Any]:
    """Non-admin callers only see their own orders."""
    if ctx.role == ADMIN_ROLE or not ctx.subject:
        return {}
    return {"customer": ctx.subject}


@hook("prepareOrder")
def prepare_order(ctx: CreateContext) -> HookResult:
    update: dict[str, Any] = {"orderNo": generate_order_no()}
    if ctx.payload.get("totalAmount") is None and ctx.payload.get("items"):
        update["totalAmount"] = order_total(ctx.payload["items"])
    return HookResult(update=update)


def check_customer_cancel(ctx: UpdateContext) -> None:
    """Customers may only cancel their own pending orders.

    Raises:
        EntityError: NO_RIGHTS for any other change by a non-admin caller
    """
    if ctx.role == ADMIN_ROLE:
        return
    if ctx.original.get("customer") != ctx.subject:
        raise EntityError(Code.NO_RIGHTS, "Not authorized")
    if set(ctx.payload) != {"status"} or ctx.payload["status"] != OrderStatus.CANCELLED:
        raise EntityError(Code.NO_RIGHTS, "Orders can only be cancelled")
    if ctx.original.get("status") != OrderStatus.PENDING:
        raise EntityError(Code.NO_RIGHTS, "Can only cancel pending orders")


def stamp_order_status(ctx: UpdateContext) -> None:
    """Record when an order ships or is delivered."""
    status = ctx.payload.get("status")
    if status is None or status == ctx.original.get("status"):
        return
    now = datetime.now(timezone.utc)
    if status == OrderStatus.SHIPPED:
        ctx.payload["shippedAt"] = now
    elif status == OrderStatus.DELIVERED:
        ctx.payload["deliveredAt"] = now


@hook("updateOrder")
def update_order(ctx: UpdateContext) -> None:
    check_customer_cancel(ctx)
    stamp_order_status(ctx)


# --- review ---


@hook("recountRatingOnSave")
async def recount_rating_on_save(ctx: CreateContext | UpdateContext) -> None:
    if ctx.record and ctx.record.get("product"):
        await recount_product_rating(ctx.store, ctx.record["product"])


@hook("captureReviewedProducts")
def capture_reviewed_products(ctx: DeleteContext) -> None:
    ctx.state["product_ids"] = sorted({r["product"] for r in ctx.records if r.get("product")})


@hook("recountRatingOnDelete")
async def recount_rating_on_delete(ctx: DeleteContext) -> None:
    for product_id in ctx.state.get("product_ids", []):
        await recount_product_rating(ctx.store, product_id)

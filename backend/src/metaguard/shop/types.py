"""Value types for the shop collections."""

from enum import IntEnum

from metaguard.core.types import int_enum_type, register_type


class Role(IntEnum):
    ADMIN = 0
    USER = 1


class CustomerStatus(IntEnum):
    ACTIVE = 0
    INACTIVE = 1


class ProductStatus(IntEnum):
    DRAFT = 0
    PUBLISHED = 1
    DISCONTINUED = 2


class OrderStatus(IntEnum):
    PENDING = 0
    PAID = 1
    SHIPPED = 2
    DELIVERED = 3
    CANCELLED = 4


RATINGS = [1, 2, 3, 4, 5]


def register_shop_types() -> None:
    """Register the int-enum types the shop collections declare."""
    register_type(int_enum_type("role", [r.value for r in Role]))
    register_type(int_enum_type("customer_status", [s.value for s in CustomerStatus]))
    register_type(int_enum_type("product_status", [s.value for s in ProductStatus]))
    register_type(int_enum_type("order_status", [s.value for s in OrderStatus]))
    register_type(int_enum_type("rating", RATINGS))

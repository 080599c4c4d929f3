"""Shop domain: the value types and hooks used by metadata/collections.

Importing this package registers both.
"""

from metaguard.shop import hooks  # noqa: F401
from metaguard.shop.types import register_shop_types

register_shop_types()

"""Shopify global id (GID) helpers.

Shopify identifies every object as ``gid://shopify/<Type>/<id>``. We persist
only the trailing id; each entity type strips its own prefix.
"""

from typing import Optional

GID_PREFIX = "gid://shopify/"

ORDER = "Order"
LINE_ITEM = "LineItem"
PRODUCT = "Product"
PRODUCT_VARIANT = "ProductVariant"
CUSTOMER = "Customer"
TRANSACTION = "OrderTransaction"
REFUND = "Refund"
FULFILLMENT = "Fulfillment"
INVENTORY_ITEM = "InventoryItem"
LOCATION = "Location"


def strip_gid(value: Optional[str], entity_type: str) -> str:
    """Strip the ``gid://shopify/<entity_type>/`` prefix.

    Already-stripped ids are returned unchanged, so the operation is
    idempotent.
    """
    if value is None:
        return ""
    return str(value).replace(f"{GID_PREFIX}{entity_type}/", "")


def strip_optional_gid(value: Optional[str], entity_type: str) -> Optional[str]:
    """Like strip_gid, but keeps None/empty as None."""
    if not value:
        return None
    return strip_gid(value, entity_type) or None


def to_gid(entity_id: str, entity_type: str) -> str:
    """Build a GID from a stripped id (no-op for values that already are GIDs)."""
    entity_id = str(entity_id)
    if entity_id.startswith(GID_PREFIX):
        return entity_id
    return f"{GID_PREFIX}{entity_type}/{entity_id}"

"""Typed Shopify GraphQL node models.

WHAT:
    Pydantic models for the vendor nodes returned by the Admin GraphQL API
    (orders, products, customers, inventory items, analytics tables).

WHY:
    Vendor payloads are deeply nested and almost every field is optional.
    Parsing a raw node once at the boundary gives the mappers a typed object
    to read, instead of chained ``.get()`` calls on untyped dicts.

REFERENCES:
    - shopsync/services/shopify_mappers.py (consumers)
    - https://shopify.dev/docs/api/admin-graphql
"""

from __future__ import annotations

from typing import Any, Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

# Shopify sends money as decimal strings; older payloads and fixtures
# sometimes carry plain numbers.
MoneyAmount = Optional[Union[str, int, float]]

NodeT = TypeVar("NodeT")


class ShopifyNode(BaseModel):
    """Base for vendor nodes: camelCase aliases, unknown keys ignored."""

    model_config = ConfigDict(
        extra="ignore",
        populate_by_name=True,
        alias_generator=to_camel,
    )


# =========================================================================
# SHARED SHAPES
# =========================================================================

class PageInfo(ShopifyNode):
    has_next_page: bool = False
    end_cursor: Optional[str] = None


class Edge(ShopifyNode, Generic[NodeT]):
    node: NodeT


class Connection(ShopifyNode, Generic[NodeT]):
    edges: List[Edge[NodeT]] = Field(default_factory=list)
    page_info: PageInfo = Field(default_factory=PageInfo)

    @property
    def nodes(self) -> List[NodeT]:
        return [edge.node for edge in self.edges]


class MoneyV2(ShopifyNode):
    amount: MoneyAmount = None
    currency_code: Optional[str] = None


class MoneyBag(ShopifyNode):
    shop_money: Optional[MoneyV2] = None

    @property
    def amount(self) -> MoneyAmount:
        return self.shop_money.amount if self.shop_money else None


class IdRef(ShopifyNode):
    id: Optional[str] = None


class Address(ShopifyNode):
    country: Optional[str] = None
    province: Optional[str] = None
    province_code: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None


def _coerce_count(value: Any) -> Any:
    """Flatten ``{"count": n}`` and numeric strings into an int."""
    if isinstance(value, dict):
        value = value.get("count")
    if value is None:
        return 0
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return 0
    return value


# =========================================================================
# CUSTOMERS
# =========================================================================

class MarketingConsent(ShopifyNode):
    marketing_state: Optional[str] = None


class CustomerNode(ShopifyNode):
    id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    state: Optional[str] = None
    verified_email: Optional[bool] = None
    tax_exempt: Optional[bool] = None
    tags: List[str] = Field(default_factory=list)
    note: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    number_of_orders: int = 0
    amount_spent: Optional[MoneyV2] = None
    addresses: List[Address] = Field(default_factory=list)
    default_address: Optional[Address] = None
    email_marketing_consent: Optional[MarketingConsent] = None
    sms_marketing_consent: Optional[MarketingConsent] = None

    @field_validator("number_of_orders", mode="before")
    @classmethod
    def _flatten_order_count(cls, value: Any) -> Any:
        return _coerce_count(value)

    @field_validator("tags", mode="before")
    @classmethod
    def _none_tags(cls, value: Any) -> Any:
        return value or []


# =========================================================================
# ORDERS
# =========================================================================

class UtmParameters(ShopifyNode):
    source: Optional[str] = None
    medium: Optional[str] = None
    campaign: Optional[str] = None
    content: Optional[str] = None
    term: Optional[str] = None


class ReferrerInfo(ShopifyNode):
    source: Optional[str] = None
    domain: Optional[str] = None


class VisitDevice(ShopifyNode):
    type: Optional[str] = None


class CustomerVisit(ShopifyNode):
    id: Optional[str] = None
    occurred_at: Optional[str] = None
    source: Optional[str] = None
    landing_page: Optional[str] = None
    referrer_url: Optional[str] = None
    referrer_info: Optional[ReferrerInfo] = None
    utm_parameters: Optional[UtmParameters] = None
    device: Optional[VisitDevice] = None


class CustomerJourneySummary(ShopifyNode):
    moments_count: Optional[int] = None
    first_visit: Optional[CustomerVisit] = None

    @field_validator("moments_count", mode="before")
    @classmethod
    def _flatten_moments(cls, value: Any) -> Any:
        return None if value is None else _coerce_count(value)


class LineItemVariant(ShopifyNode):
    id: Optional[str] = None
    sku: Optional[str] = None
    product: Optional[IdRef] = None


class LineItemNode(ShopifyNode):
    id: str
    title: Optional[str] = None
    name: Optional[str] = None
    quantity: int = 0
    sku: Optional[str] = None
    variant: Optional[LineItemVariant] = None
    original_unit_price_set: Optional[MoneyBag] = None
    discounted_unit_price_set: Optional[MoneyBag] = None
    fulfillable_quantity: Optional[int] = None
    fulfillment_status: Optional[str] = None


class TransactionFee(ShopifyNode):
    amount: Optional[MoneyV2] = None
    type: Optional[str] = None


class TransactionNode(ShopifyNode):
    id: str
    kind: Optional[str] = None
    status: Optional[str] = None
    gateway: Optional[str] = None
    amount_set: Optional[MoneyBag] = None
    fees: List[TransactionFee] = Field(default_factory=list)
    payment_id: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None


class RefundLineItemNode(ShopifyNode):
    line_item: Optional[IdRef] = None
    quantity: int = 0
    subtotal_set: Optional[MoneyBag] = None


class RefundNode(ShopifyNode):
    id: str
    note: Optional[str] = None
    user: Optional[IdRef] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None
    total_refunded_set: Optional[MoneyBag] = None
    refund_line_items: Optional[Connection[RefundLineItemNode]] = None


class TrackingInfo(ShopifyNode):
    company: Optional[str] = None
    number: Optional[str] = None
    url: Optional[str] = None


class FulfillmentService(ShopifyNode):
    service_name: Optional[str] = None


class FulfillmentLineItemNode(ShopifyNode):
    id: Optional[str] = None
    quantity: int = 0


class OrderRisk(ShopifyNode):
    level: Optional[str] = None


class FulfillmentNode(ShopifyNode):
    id: str
    status: Optional[str] = None
    display_status: Optional[str] = None
    tracking_info: List[TrackingInfo] = Field(default_factory=list)
    location: Optional[IdRef] = None
    service: Optional[FulfillmentService] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    fulfillment_line_items: Optional[Connection[FulfillmentLineItemNode]] = None


class OrderNode(ShopifyNode):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    processed_at: Optional[str] = None
    closed_at: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    display_financial_status: Optional[str] = None
    display_fulfillment_status: Optional[str] = None
    current_total_price_set: Optional[MoneyBag] = None
    current_subtotal_price_set: Optional[MoneyBag] = None
    current_total_tax_set: Optional[MoneyBag] = None
    current_total_discounts_set: Optional[MoneyBag] = None
    total_shipping_price_set: Optional[MoneyBag] = None
    total_tip_received_set: Optional[MoneyBag] = None
    total_weight: MoneyAmount = None
    subtotal_line_items_quantity: Optional[int] = None
    tags: List[Optional[str]] = Field(default_factory=list)
    note: Optional[str] = None
    risks: List[OrderRisk] = Field(default_factory=list)
    shipping_address: Optional[Address] = None
    customer_journey_summary: Optional[CustomerJourneySummary] = None
    customer: Optional[CustomerNode] = None
    line_items: Connection[LineItemNode] = Field(default_factory=Connection[LineItemNode])
    transactions: List[TransactionNode] = Field(default_factory=list)
    refunds: List[RefundNode] = Field(default_factory=list)
    fulfillments: List[FulfillmentNode] = Field(default_factory=list)

    @field_validator("tags", "risks", "transactions", "refunds", "fulfillments", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return value or []

    @field_validator("line_items", mode="before")
    @classmethod
    def _none_line_items(cls, value: Any) -> Any:
        return value or {}


# =========================================================================
# PRODUCTS
# =========================================================================

class WeightValue(ShopifyNode):
    value: Optional[float] = None
    unit: Optional[str] = None


class Measurement(ShopifyNode):
    weight: Optional[WeightValue] = None


class InventoryItemRef(ShopifyNode):
    id: Optional[str] = None
    tracked: Optional[bool] = None
    unit_cost: Optional[MoneyV2] = None
    measurement: Optional[Measurement] = None


class SelectedOption(ShopifyNode):
    name: Optional[str] = None
    value: Optional[str] = None


class VariantNode(ShopifyNode):
    id: str
    title: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    price: MoneyAmount = None
    compare_at_price: MoneyAmount = None
    position: Optional[int] = None
    inventory_quantity: Optional[int] = None
    available_for_sale: Optional[bool] = None
    taxable: Optional[bool] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    inventory_item: Optional[InventoryItemRef] = None
    selected_options: List[SelectedOption] = Field(default_factory=list)

    @field_validator("selected_options", mode="before")
    @classmethod
    def _none_options(cls, value: Any) -> Any:
        return value or []


class FeaturedImage(ShopifyNode):
    url: Optional[str] = None


class ProductNode(ShopifyNode):
    id: str
    handle: Optional[str] = None
    title: Optional[str] = None
    product_type: Optional[str] = None
    vendor: Optional[str] = None
    status: Optional[str] = None
    published_at: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    total_inventory: Optional[int] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    featured_image: Optional[FeaturedImage] = None
    variants: Connection[VariantNode] = Field(default_factory=Connection[VariantNode])

    @field_validator("tags", mode="before")
    @classmethod
    def _none_tags(cls, value: Any) -> Any:
        return value or []

    @field_validator("variants", mode="before")
    @classmethod
    def _none_variants(cls, value: Any) -> Any:
        return value or {}


# =========================================================================
# INVENTORY
# =========================================================================

class InventoryLevelNode(ShopifyNode):
    available: Optional[int] = None
    available_quantity: Optional[int] = None
    incoming: Optional[int] = None
    incoming_quantity: Optional[int] = None
    committed: Optional[int] = None
    reserved_quantity: Optional[int] = None
    location: Optional[IdRef] = None


class InventoryItemNode(ShopifyNode):
    id: Optional[str] = None
    inventory_levels: Connection[InventoryLevelNode] = Field(
        default_factory=Connection[InventoryLevelNode]
    )

    @field_validator("inventory_levels", mode="before")
    @classmethod
    def _none_levels(cls, value: Any) -> Any:
        return value or {}


# =========================================================================
# ANALYTICS
# =========================================================================

class TableColumn(ShopifyNode):
    name: str = ""


class TableCell(ShopifyNode):
    value: Optional[Any] = None


class TableRow(ShopifyNode):
    cells: List[TableCell] = Field(default_factory=list)


class AnalyticsTable(ShopifyNode):
    columns: List[TableColumn] = Field(default_factory=list)
    rows: List[TableRow] = Field(default_factory=list)

    def records(self) -> List[dict]:
        """Rows as dicts keyed by lowercased column name."""
        names = [column.name.lower() for column in self.columns]
        result = []
        for row in self.rows:
            result.append({
                name: (row.cells[index].value if index < len(row.cells) else None)
                for index, name in enumerate(names)
            })
        return result


def parse_analytics_table(data: Optional[dict]) -> Optional[AnalyticsTable]:
    """Dig ``shop.shopifyAnalytics.report.tableData`` out of a response."""
    table = (
        ((((data or {}).get("shop") or {}).get("shopifyAnalytics") or {})
         .get("report") or {})
        .get("tableData")
    )
    if not table:
        return None
    return AnalyticsTable.model_validate(table)

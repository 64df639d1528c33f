"""Shopify entity mappers.

WHAT:
    Pure functions that turn one vendor node into flat persistence records:
    - map_order_node: order + transactions + refunds + fulfillments
    - map_product_node: product with nested variants
    - map_inventory_levels: per-location levels for one inventory item
    - map_customer_node: customer with flattened order count / spend

WHY:
    Mapping is the part of the sync with the most edge cases (optional
    nesting, vendor id prefixes, string money). Keeping it free of I/O and
    wall-clock reads makes it exhaustively testable: identical input always
    yields identical records.

REFERENCES:
    - shopsync/services/shopify_schemas.py (typed input)
    - shopsync/services/shopify_sync_service.py (caller)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from shopsync.services.shopify_schemas import (
    CustomerNode,
    InventoryItemNode,
    InventoryLevelNode,
    LineItemNode,
    MoneyBag,
    OrderNode,
    ProductNode,
    VariantNode,
)
from shopsync.utils import shopify_ids as gid
from shopsync.utils.dates import parse_timestamp_ms
from shopsync.utils.money import ZERO, parse_money, round_money, sum_money


# =========================================================================
# RECORDS
# =========================================================================

@dataclass
class ShippingAddressRecord:
    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None


@dataclass
class OrderCustomerRecord:
    shopify_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    shopify_created_at: Optional[int] = None
    shopify_updated_at: Optional[int] = None


@dataclass
class LineItemRecord:
    shopify_id: str
    title: str
    quantity: int
    price: Decimal
    total_discount: Decimal
    name: Optional[str] = None
    sku: Optional[str] = None
    shopify_variant_id: Optional[str] = None
    shopify_product_id: Optional[str] = None
    discounted_price: Optional[Decimal] = None
    fulfillable_quantity: int = 0
    fulfillment_status: Optional[str] = None


@dataclass
class OrderRecord:
    organization_id: str
    store_id: str
    shopify_id: str
    order_number: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    shopify_created_at: Optional[int] = None
    processed_at: Optional[int] = None
    updated_at: Optional[int] = None
    closed_at: Optional[int] = None
    cancelled_at: Optional[int] = None
    cancel_reason: Optional[str] = None
    total_price: Decimal = ZERO
    subtotal_price: Decimal = ZERO
    total_tax: Decimal = ZERO
    total_discounts: Decimal = ZERO
    shipping_price: Decimal = ZERO
    total_tip: Optional[Decimal] = None
    currency: Optional[str] = None
    financial_status: Optional[str] = None
    fulfillment_status: Optional[str] = None
    total_items: int = 0
    total_quantity: int = 0
    total_weight: Optional[Decimal] = None
    tags: List[str] = field(default_factory=list)
    note: Optional[str] = None
    risk_level: Optional[str] = None
    shipping_address: Optional[ShippingAddressRecord] = None
    customer: Optional[OrderCustomerRecord] = None
    line_items: List[LineItemRecord] = field(default_factory=list)
    # Attribution (first visit of the customer journey)
    source_url: Optional[str] = None
    landing_site: Optional[str] = None
    referring_site: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    # Journey details used to derive sessions
    has_customer_journey: bool = False
    visitor_token: Optional[str] = None
    first_visit_at: Optional[int] = None
    moments_count: Optional[int] = None
    device_type: Optional[str] = None
    referrer_source: Optional[str] = None
    referrer_domain: Optional[str] = None


@dataclass
class TransactionRecord:
    organization_id: str
    store_id: str
    shopify_order_id: str
    shopify_id: str
    amount: Decimal
    kind: Optional[str] = None
    status: Optional[str] = None
    gateway: Optional[str] = None
    fee: Optional[Decimal] = None
    payment_id: Optional[str] = None
    shopify_created_at: Optional[int] = None
    processed_at: Optional[int] = None


@dataclass
class RefundLineItemRecord:
    line_item_id: str
    quantity: int
    subtotal: Decimal


@dataclass
class RefundRecord:
    organization_id: str
    store_id: str
    shopify_order_id: str
    shopify_id: str
    total_refunded: Decimal
    note: Optional[str] = None
    user_id: Optional[str] = None
    refund_line_items: List[RefundLineItemRecord] = field(default_factory=list)
    shopify_created_at: Optional[int] = None
    processed_at: Optional[int] = None


@dataclass
class FulfillmentLineItemRecord:
    id: str
    quantity: int


@dataclass
class FulfillmentRecord:
    organization_id: str
    store_id: str
    shopify_order_id: str
    shopify_id: str
    status: Optional[str] = None
    shipment_status: Optional[str] = None
    tracking_company: Optional[str] = None
    tracking_numbers: List[str] = field(default_factory=list)
    tracking_urls: List[str] = field(default_factory=list)
    location_id: Optional[str] = None
    service: Optional[str] = None
    line_items: List[FulfillmentLineItemRecord] = field(default_factory=list)
    shopify_created_at: Optional[int] = None
    shopify_updated_at: Optional[int] = None


@dataclass
class OrderPersistencePayload:
    """One order node fanned out into its four record streams."""
    order: OrderRecord
    transactions: List[TransactionRecord] = field(default_factory=list)
    refunds: List[RefundRecord] = field(default_factory=list)
    fulfillments: List[FulfillmentRecord] = field(default_factory=list)


@dataclass
class InventoryLevelRecord:
    location_id: str
    available: int = 0
    incoming: int = 0
    committed: int = 0


@dataclass
class VariantRecord:
    shopify_id: str
    price: Decimal
    title: Optional[str] = None
    sku: Optional[str] = None
    barcode: Optional[str] = None
    compare_at_price: Optional[Decimal] = None
    position: Optional[int] = None
    inventory_quantity: int = 0
    available: bool = True
    taxable: Optional[bool] = None
    inventory_item_id: Optional[str] = None
    cost_per_unit: Optional[Decimal] = None
    weight: Optional[float] = None
    weight_unit: Optional[str] = None
    option1: Optional[str] = None
    option2: Optional[str] = None
    option3: Optional[str] = None
    shopify_created_at: Optional[int] = None
    shopify_updated_at: Optional[int] = None
    inventory_levels: List[InventoryLevelRecord] = field(default_factory=list)


@dataclass
class ProductRecord:
    organization_id: str
    store_id: str
    shopify_id: str
    title: Optional[str] = None
    handle: Optional[str] = None
    product_type: Optional[str] = None
    vendor: Optional[str] = None
    status: Optional[str] = None
    featured_image: Optional[str] = None
    total_inventory: int = 0
    total_variants: int = 0
    tags: List[str] = field(default_factory=list)
    shopify_created_at: Optional[int] = None
    shopify_updated_at: Optional[int] = None
    published_at: Optional[int] = None
    variants: List[VariantRecord] = field(default_factory=list)


@dataclass
class CustomerAddressRecord:
    country: Optional[str] = None
    province: Optional[str] = None
    city: Optional[str] = None
    zip: Optional[str] = None


@dataclass
class CustomerRecord:
    organization_id: str
    store_id: str
    shopify_id: str
    email: Optional[str] = None
    phone: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    orders_count: int = 0
    total_spent: Decimal = ZERO
    state: Optional[str] = None
    verified_email: Optional[bool] = None
    tax_exempt: Optional[bool] = None
    accepts_marketing: bool = False
    accepts_sms: bool = False
    tags: List[str] = field(default_factory=list)
    note: Optional[str] = None
    default_address: Optional[CustomerAddressRecord] = None
    shopify_created_at: Optional[int] = None
    shopify_updated_at: Optional[int] = None


# =========================================================================
# HELPERS
# =========================================================================

def _optional_str(value: Any) -> Optional[str]:
    """Empty strings and None both become None."""
    if value is None or value == "":
        return None
    return value if isinstance(value, str) else str(value)


def _optional_money(bag: Optional[MoneyBag]) -> Optional[Decimal]:
    """Money from a MoneyBag, or None when the bag itself is absent."""
    if bag is None:
        return None
    return parse_money(bag.amount)


def _coerce(node: Any, model):
    if isinstance(node, model):
        return node
    return model.model_validate(node)


# =========================================================================
# ORDERS
# =========================================================================

def _map_line_item(item: LineItemNode) -> LineItemRecord:
    price = parse_money(item.original_unit_price_set.amount if item.original_unit_price_set else None)
    discounted = _optional_money(item.discounted_unit_price_set)
    quantity = item.quantity or 0

    # Per unit, never negative: a "discounted" price above list price is not a discount.
    total_discount = max(ZERO, price - discounted) if discounted is not None else ZERO

    variant = item.variant
    return LineItemRecord(
        shopify_id=gid.strip_gid(item.id, gid.LINE_ITEM),
        title=_optional_str(item.title) or _optional_str(item.name) or "",
        name=_optional_str(item.name),
        quantity=quantity,
        sku=_optional_str(item.sku) or (_optional_str(variant.sku) if variant else None),
        shopify_variant_id=gid.strip_optional_gid(variant.id, gid.PRODUCT_VARIANT) if variant else None,
        shopify_product_id=(
            gid.strip_optional_gid(variant.product.id, gid.PRODUCT)
            if variant and variant.product else None
        ),
        price=price,
        discounted_price=discounted,
        total_discount=total_discount,
        fulfillable_quantity=(
            item.fulfillable_quantity if item.fulfillable_quantity is not None else quantity
        ),
        fulfillment_status=_optional_str(item.fulfillment_status),
    )


def _apply_attribution(record: OrderRecord, order: OrderNode) -> None:
    """Copy first-visit attribution onto the order; absent journey leaves None."""
    journey = order.customer_journey_summary
    if journey is None:
        return

    record.has_customer_journey = True
    record.moments_count = journey.moments_count

    visit = journey.first_visit
    if visit is None:
        return

    utm = visit.utm_parameters
    referrer = visit.referrer_info
    record.source_url = _optional_str(visit.source)
    record.landing_site = _optional_str(visit.landing_page)
    record.referring_site = _optional_str(visit.referrer_url)
    record.visitor_token = _optional_str(visit.id)
    record.first_visit_at = parse_timestamp_ms(visit.occurred_at)
    record.device_type = _optional_str(visit.device.type) if visit.device else None
    if referrer is not None:
        record.referrer_source = _optional_str(referrer.source)
        record.referrer_domain = _optional_str(referrer.domain)
    if utm is not None:
        record.utm_source = _optional_str(utm.source)
        record.utm_medium = _optional_str(utm.medium)
        record.utm_campaign = _optional_str(utm.campaign)
        record.utm_content = _optional_str(utm.content)
        record.utm_term = _optional_str(utm.term)


def map_order_node(
    node: Union[OrderNode, Dict[str, Any]],
    organization_id: str,
    store_id: str,
) -> OrderPersistencePayload:
    """Map one order node into order, transaction, refund and fulfillment records.

    Line items stay nested in the order record; the three sibling streams
    reference the order through its stripped id.
    """
    order = _coerce(node, OrderNode)
    order_id = gid.strip_gid(order.id, gid.ORDER)

    name = _optional_str(order.name)
    total_price_bag = order.current_total_price_set

    shipping = None
    if order.shipping_address is not None:
        shipping = ShippingAddressRecord(
            country=_optional_str(order.shipping_address.country),
            province=_optional_str(order.shipping_address.province_code),
            city=_optional_str(order.shipping_address.city),
            zip=_optional_str(order.shipping_address.zip),
        )

    customer = None
    if order.customer is not None:
        customer = OrderCustomerRecord(
            shopify_id=gid.strip_gid(order.customer.id, gid.CUSTOMER),
            email=_optional_str(order.customer.email),
            first_name=_optional_str(order.customer.first_name),
            last_name=_optional_str(order.customer.last_name),
            phone=_optional_str(order.customer.phone),
            shopify_created_at=parse_timestamp_ms(order.customer.created_at),
            shopify_updated_at=parse_timestamp_ms(order.customer.updated_at),
        )

    record = OrderRecord(
        organization_id=organization_id,
        store_id=store_id,
        shopify_id=order_id,
        order_number=name.replace("#", "") if name else order_id,
        name=name or order_id,
        email=_optional_str(order.email),
        phone=_optional_str(order.phone),
        shopify_created_at=parse_timestamp_ms(order.created_at),
        processed_at=parse_timestamp_ms(order.processed_at),
        updated_at=parse_timestamp_ms(order.updated_at),
        closed_at=parse_timestamp_ms(order.closed_at),
        cancelled_at=parse_timestamp_ms(order.cancelled_at),
        cancel_reason=_optional_str(order.cancel_reason),
        total_price=parse_money(total_price_bag.amount if total_price_bag else None),
        subtotal_price=parse_money(
            order.current_subtotal_price_set.amount if order.current_subtotal_price_set else None
        ),
        total_tax=parse_money(order.current_total_tax_set.amount if order.current_total_tax_set else None),
        total_discounts=parse_money(
            order.current_total_discounts_set.amount if order.current_total_discounts_set else None
        ),
        shipping_price=parse_money(
            order.total_shipping_price_set.amount if order.total_shipping_price_set else None
        ),
        total_tip=_optional_money(order.total_tip_received_set),
        currency=(
            _optional_str(total_price_bag.shop_money.currency_code)
            if total_price_bag and total_price_bag.shop_money else None
        ),
        financial_status=_optional_str(order.display_financial_status),
        fulfillment_status=_optional_str(order.display_fulfillment_status),
        total_items=len(order.line_items.edges),
        total_quantity=order.subtotal_line_items_quantity or 0,
        total_weight=round_money(order.total_weight) if order.total_weight else None,
        tags=[tag for tag in order.tags if _optional_str(tag)],
        note=_optional_str(order.note),
        risk_level=_optional_str(order.risks[0].level) if order.risks else None,
        shipping_address=shipping,
        customer=customer,
        line_items=[_map_line_item(item) for item in order.line_items.nodes],
    )
    _apply_attribution(record, order)

    transactions = [
        TransactionRecord(
            organization_id=organization_id,
            store_id=store_id,
            shopify_order_id=order_id,
            shopify_id=gid.strip_gid(txn.id, gid.TRANSACTION),
            kind=_optional_str(txn.kind),
            status=_optional_str(txn.status),
            gateway=_optional_str(txn.gateway),
            amount=parse_money(txn.amount_set.amount if txn.amount_set else None),
            fee=(
                sum_money(parse_money(fee.amount.amount) for fee in txn.fees if fee.amount)
                if txn.fees else None
            ),
            payment_id=_optional_str(txn.payment_id),
            shopify_created_at=parse_timestamp_ms(txn.created_at),
            processed_at=parse_timestamp_ms(txn.processed_at),
        )
        for txn in order.transactions
    ]

    refunds = []
    for refund in order.refunds:
        line_items = []
        if refund.refund_line_items is not None:
            for item in refund.refund_line_items.nodes:
                line_items.append(RefundLineItemRecord(
                    line_item_id=gid.strip_gid(item.line_item.id if item.line_item else None, gid.LINE_ITEM),
                    quantity=item.quantity or 0,
                    subtotal=parse_money(item.subtotal_set.amount if item.subtotal_set else None),
                ))
        refunds.append(RefundRecord(
            organization_id=organization_id,
            store_id=store_id,
            shopify_order_id=order_id,
            shopify_id=gid.strip_gid(refund.id, gid.REFUND),
            note=_optional_str(refund.note),
            user_id=_optional_str(refund.user.id) if refund.user else None,
            total_refunded=parse_money(
                refund.total_refunded_set.amount if refund.total_refunded_set else None
            ),
            refund_line_items=line_items,
            shopify_created_at=parse_timestamp_ms(refund.created_at),
            processed_at=parse_timestamp_ms(refund.processed_at),
        ))

    fulfillments = []
    for fulfillment in order.fulfillments:
        tracking = fulfillment.tracking_info
        line_items = []
        if fulfillment.fulfillment_line_items is not None:
            line_items = [
                FulfillmentLineItemRecord(id=item.id or "", quantity=item.quantity or 0)
                for item in fulfillment.fulfillment_line_items.nodes
            ]
        fulfillments.append(FulfillmentRecord(
            organization_id=organization_id,
            store_id=store_id,
            shopify_order_id=order_id,
            shopify_id=gid.strip_gid(fulfillment.id, gid.FULFILLMENT),
            status=_optional_str(fulfillment.status),
            shipment_status=_optional_str(fulfillment.display_status),
            tracking_company=_optional_str(tracking[0].company) if tracking else None,
            tracking_numbers=[t.number for t in tracking if t.number],
            tracking_urls=[t.url for t in tracking if t.url],
            location_id=(
                gid.strip_optional_gid(fulfillment.location.id, gid.LOCATION)
                if fulfillment.location else None
            ),
            service=_optional_str(fulfillment.service.service_name) if fulfillment.service else None,
            line_items=line_items,
            shopify_created_at=parse_timestamp_ms(fulfillment.created_at),
            shopify_updated_at=parse_timestamp_ms(fulfillment.updated_at),
        ))

    return OrderPersistencePayload(
        order=record,
        transactions=transactions,
        refunds=refunds,
        fulfillments=fulfillments,
    )


# =========================================================================
# PRODUCTS
# =========================================================================

def _map_variant(variant: VariantNode) -> VariantRecord:
    inventory_item = variant.inventory_item
    unit_cost = inventory_item.unit_cost if inventory_item else None
    weight = (
        inventory_item.measurement.weight
        if inventory_item and inventory_item.measurement else None
    )
    options = [option.value for option in variant.selected_options]

    return VariantRecord(
        shopify_id=gid.strip_gid(variant.id, gid.PRODUCT_VARIANT),
        title=_optional_str(variant.title),
        sku=_optional_str(variant.sku),
        barcode=_optional_str(variant.barcode),
        price=parse_money(variant.price),
        compare_at_price=parse_money(variant.compare_at_price) if variant.compare_at_price else None,
        position=variant.position,
        inventory_quantity=variant.inventory_quantity or 0,
        available=variant.available_for_sale is not False,
        taxable=variant.taxable,
        inventory_item_id=(
            gid.strip_optional_gid(inventory_item.id, gid.INVENTORY_ITEM) if inventory_item else None
        ),
        cost_per_unit=(
            parse_money(unit_cost.amount)
            if unit_cost is not None and unit_cost.amount not in (None, "") else None
        ),
        weight=weight.value if weight and weight.value else None,
        weight_unit=_optional_str(weight.unit) if weight else None,
        option1=options[0] if len(options) > 0 else None,
        option2=options[1] if len(options) > 1 else None,
        option3=options[2] if len(options) > 2 else None,
        shopify_created_at=parse_timestamp_ms(variant.created_at),
        shopify_updated_at=parse_timestamp_ms(variant.updated_at),
    )


def map_product_node(
    node: Union[ProductNode, Dict[str, Any]],
    organization_id: str,
    store_id: str,
) -> ProductRecord:
    """Map a product node with its variants; inventory levels are filled later."""
    product = _coerce(node, ProductNode)
    variants = [_map_variant(variant) for variant in product.variants.nodes]

    return ProductRecord(
        organization_id=organization_id,
        store_id=store_id,
        shopify_id=gid.strip_gid(product.id, gid.PRODUCT),
        title=_optional_str(product.title),
        handle=_optional_str(product.handle),
        product_type=_optional_str(product.product_type),
        vendor=_optional_str(product.vendor),
        status=_optional_str(product.status),
        featured_image=_optional_str(product.featured_image.url) if product.featured_image else None,
        total_inventory=product.total_inventory or 0,
        total_variants=len(variants),
        tags=list(product.tags),
        shopify_created_at=parse_timestamp_ms(product.created_at),
        shopify_updated_at=parse_timestamp_ms(product.updated_at),
        published_at=parse_timestamp_ms(product.published_at),
        variants=variants,
    )


def _first_int(*values: Optional[int]) -> int:
    for value in values:
        if isinstance(value, int):
            return value
    return 0


def _map_inventory_level(level: InventoryLevelNode) -> InventoryLevelRecord:
    return InventoryLevelRecord(
        location_id=gid.strip_gid(level.location.id if level.location else None, gid.LOCATION),
        available=_first_int(level.available_quantity, level.available),
        incoming=_first_int(level.incoming_quantity, level.incoming),
        committed=_first_int(level.reserved_quantity, level.committed),
    )


def map_inventory_levels(node: Union[InventoryItemNode, Dict[str, Any]]) -> List[InventoryLevelRecord]:
    """Per-location levels for one inventory item node (missing quantities are 0)."""
    item = _coerce(node, InventoryItemNode)
    return [_map_inventory_level(level) for level in item.inventory_levels.nodes]


# =========================================================================
# CUSTOMERS
# =========================================================================

def map_customer_node(
    node: Union[CustomerNode, Dict[str, Any]],
    organization_id: str,
    store_id: str,
) -> CustomerRecord:
    """Map a customer node, flattening ``numberOfOrders`` and ``amountSpent``."""
    customer = _coerce(node, CustomerNode)

    address = customer.addresses[0] if customer.addresses else customer.default_address
    default_address = None
    if address is not None:
        default_address = CustomerAddressRecord(
            country=_optional_str(address.country),
            province=_optional_str(address.province_code or address.province),
            city=_optional_str(address.city),
            zip=_optional_str(address.zip),
        )

    email_consent = customer.email_marketing_consent
    sms_consent = customer.sms_marketing_consent

    return CustomerRecord(
        organization_id=organization_id,
        store_id=store_id,
        shopify_id=gid.strip_gid(customer.id, gid.CUSTOMER),
        email=_optional_str(customer.email),
        phone=_optional_str(customer.phone),
        first_name=_optional_str(customer.first_name),
        last_name=_optional_str(customer.last_name),
        orders_count=customer.number_of_orders,
        total_spent=parse_money(customer.amount_spent.amount if customer.amount_spent else None),
        state=_optional_str(customer.state),
        verified_email=customer.verified_email,
        tax_exempt=customer.tax_exempt,
        accepts_marketing=bool(email_consent and email_consent.marketing_state == "SUBSCRIBED"),
        accepts_sms=bool(sms_consent and sms_consent.marketing_state == "SUBSCRIBED"),
        tags=list(customer.tags),
        note=_optional_str(customer.note),
        default_address=default_address,
        shopify_created_at=parse_timestamp_ms(customer.created_at),
        shopify_updated_at=parse_timestamp_ms(customer.updated_at),
    )

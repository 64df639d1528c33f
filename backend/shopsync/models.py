"""SQLAlchemy ORM models.

Shopify entities are stored per store and keyed by the stripped vendor id:
every vendor table carries a unique ``(store_id, shopify_id)`` constraint so
that re-delivered batches upsert instead of duplicating rows. Vendor
timestamps are stored as epoch milliseconds, like the sync records.
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship


# Single Base used by the entire application
Base = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


class ShopifyStore(Base):
    """A connected Shopify store. One active store per organization."""
    __tablename__ = "shopify_stores"

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    shop_domain = Column(String, nullable=False, unique=True)
    access_token_enc = Column(Text, nullable=False)  # Fernet ciphertext
    api_version = Column(String, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(BigInteger, nullable=True)  # epoch ms
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ShopifyProduct(Base):
    __tablename__ = "shopify_products"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_product_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    shopify_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    handle = Column(String, nullable=True)
    product_type = Column(String, nullable=True)
    vendor = Column(String, nullable=True)
    status = Column(String, nullable=True)
    featured_image = Column(String, nullable=True)
    total_inventory = Column(Integer, default=0)
    total_variants = Column(Integer, default=0)
    tags = Column(JSON, default=list)
    shopify_created_at = Column(BigInteger, nullable=True)
    shopify_updated_at = Column(BigInteger, nullable=True)
    published_at = Column(BigInteger, nullable=True)
    synced_at = Column(BigInteger, nullable=True)

    variants = relationship("ShopifyProductVariant", back_populates="product", cascade="all, delete-orphan")


class ShopifyProductVariant(Base):
    __tablename__ = "shopify_product_variants"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_variant_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    product_id = Column(String, ForeignKey("shopify_products.id"), nullable=False)
    shopify_id = Column(String, nullable=False)
    title = Column(String, nullable=True)
    sku = Column(String, nullable=True, index=True)
    barcode = Column(String, nullable=True)
    price = Column(Numeric(12, 2), nullable=False, default=0)
    compare_at_price = Column(Numeric(12, 2), nullable=True)
    position = Column(Integer, nullable=True)
    inventory_quantity = Column(Integer, default=0)
    available = Column(Boolean, default=True)
    taxable = Column(Boolean, nullable=True)
    inventory_item_id = Column(String, nullable=True)
    cost_per_unit = Column(Numeric(12, 2), nullable=True)
    weight = Column(Float, nullable=True)
    weight_unit = Column(String, nullable=True)
    option1 = Column(String, nullable=True)
    option2 = Column(String, nullable=True)
    option3 = Column(String, nullable=True)
    inventory_levels = Column(JSON, default=list)  # [{location_id, available, incoming, committed}]
    shopify_created_at = Column(BigInteger, nullable=True)
    shopify_updated_at = Column(BigInteger, nullable=True)

    product = relationship("ShopifyProduct", back_populates="variants")


class ShopifyVariantCost(Base):
    """Per-unit COGS for a variant, one row per organization + variant."""
    __tablename__ = "shopify_variant_costs"
    __table_args__ = (UniqueConstraint("organization_id", "variant_id", name="uq_variant_cost"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    variant_id = Column(String, nullable=False)  # Shopify variant id (stripped)
    cogs_per_unit = Column(Numeric(12, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class ShopifyOrder(Base):
    __tablename__ = "shopify_orders"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_order_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    shopify_id = Column(String, nullable=False)
    order_number = Column(String, nullable=False)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    customer_shopify_id = Column(String, nullable=True, index=True)
    customer = Column(JSON, nullable=True)

    shopify_created_at = Column(BigInteger, nullable=True, index=True)
    processed_at = Column(BigInteger, nullable=True)
    updated_at = Column(BigInteger, nullable=True)
    closed_at = Column(BigInteger, nullable=True)
    cancelled_at = Column(BigInteger, nullable=True)
    cancel_reason = Column(String, nullable=True)

    total_price = Column(Numeric(12, 2), nullable=False, default=0)
    subtotal_price = Column(Numeric(12, 2), nullable=False, default=0)
    total_tax = Column(Numeric(12, 2), nullable=True)
    total_discounts = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_price = Column(Numeric(12, 2), nullable=True)
    total_tip = Column(Numeric(12, 2), nullable=True)
    currency = Column(String(3), nullable=True)

    financial_status = Column(String, nullable=True)
    fulfillment_status = Column(String, nullable=True)
    total_items = Column(Integer, default=0)
    total_quantity = Column(Integer, default=0)
    total_weight = Column(Numeric(12, 2), nullable=True)
    tags = Column(JSON, default=list)
    note = Column(Text, nullable=True)
    risk_level = Column(String, nullable=True)
    shipping_address = Column(JSON, nullable=True)
    line_items = Column(JSON, default=list)

    # Attribution
    source_url = Column(Text, nullable=True)
    landing_site = Column(Text, nullable=True)
    referring_site = Column(Text, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)

    # Customer journey (session derivation)
    has_customer_journey = Column(Boolean, default=False, nullable=False)
    visitor_token = Column(String, nullable=True)
    first_visit_at = Column(BigInteger, nullable=True)
    moments_count = Column(Integer, nullable=True)
    device_type = Column(String, nullable=True)
    referrer_source = Column(String, nullable=True)
    referrer_domain = Column(String, nullable=True)
    session_id = Column(String, nullable=True, index=True)

    synced_at = Column(BigInteger, nullable=True)


class ShopifyOrderTransaction(Base):
    __tablename__ = "shopify_order_transactions"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_transaction_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    shopify_order_id = Column(String, nullable=False, index=True)
    shopify_id = Column(String, nullable=False)
    kind = Column(String, nullable=True)
    status = Column(String, nullable=True)
    gateway = Column(String, nullable=True)
    amount = Column(Numeric(12, 2), nullable=False, default=0)
    fee = Column(Numeric(12, 2), nullable=True)
    payment_id = Column(String, nullable=True)
    shopify_created_at = Column(BigInteger, nullable=True)
    processed_at = Column(BigInteger, nullable=True)


class ShopifyRefund(Base):
    __tablename__ = "shopify_refunds"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_refund_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    shopify_order_id = Column(String, nullable=False, index=True)
    shopify_id = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    user_id = Column(String, nullable=True)
    total_refunded = Column(Numeric(12, 2), nullable=False, default=0)
    refund_line_items = Column(JSON, default=list)
    shopify_created_at = Column(BigInteger, nullable=True)
    processed_at = Column(BigInteger, nullable=True)


class ShopifyFulfillment(Base):
    __tablename__ = "shopify_fulfillments"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_fulfillment_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    shopify_order_id = Column(String, nullable=False, index=True)
    shopify_id = Column(String, nullable=False)
    status = Column(String, nullable=True)
    shipment_status = Column(String, nullable=True)
    tracking_company = Column(String, nullable=True)
    tracking_numbers = Column(JSON, default=list)
    tracking_urls = Column(JSON, default=list)
    location_id = Column(String, nullable=True)
    service = Column(String, nullable=True)
    line_items = Column(JSON, default=list)
    shopify_created_at = Column(BigInteger, nullable=True)
    shopify_updated_at = Column(BigInteger, nullable=True)


class ShopifyCustomer(Base):
    __tablename__ = "shopify_customers"
    __table_args__ = (UniqueConstraint("store_id", "shopify_id", name="uq_shopify_customer_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    shopify_id = Column(String, nullable=False)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    first_name = Column(String, nullable=True)
    last_name = Column(String, nullable=True)
    orders_count = Column(Integer, default=0)
    total_spent = Column(Numeric(12, 2), nullable=False, default=0)
    state = Column(String, nullable=True)
    verified_email = Column(Boolean, nullable=True)
    tax_exempt = Column(Boolean, nullable=True)
    accepts_marketing = Column(Boolean, default=False)
    accepts_sms = Column(Boolean, default=False)
    tags = Column(JSON, default=list)
    note = Column(Text, nullable=True)
    default_address = Column(JSON, nullable=True)
    shopify_created_at = Column(BigInteger, nullable=True)
    shopify_updated_at = Column(BigInteger, nullable=True)
    synced_at = Column(BigInteger, nullable=True)


class ShopifySession(Base):
    """Visitor session, either native or inferred from an order's journey."""
    __tablename__ = "shopify_sessions"
    __table_args__ = (UniqueConstraint("store_id", "session_id", name="uq_shopify_session_store"),)

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    session_id = Column(String, nullable=False)
    visitor_token = Column(String, nullable=True, index=True)
    start_time = Column(BigInteger, nullable=True)
    end_time = Column(BigInteger, nullable=True)
    referrer_source = Column(String, nullable=True)
    referrer_domain = Column(String, nullable=True)
    landing_page = Column(Text, nullable=True)
    utm_source = Column(String, nullable=True)
    utm_medium = Column(String, nullable=True)
    utm_campaign = Column(String, nullable=True)
    utm_content = Column(String, nullable=True)
    utm_term = Column(String, nullable=True)
    page_views = Column(Integer, default=1)
    device_type = Column(String, nullable=True)
    country = Column(String, nullable=True)
    region = Column(String, nullable=True)
    city = Column(String, nullable=True)
    has_converted = Column(Boolean, default=False)
    conversion_value = Column(Numeric(12, 2), nullable=True)
    synced_at = Column(BigInteger, nullable=True)


class ShopifyAnalytics(Base):
    """Daily analytics aggregate per traffic source."""
    __tablename__ = "shopify_analytics"
    __table_args__ = (
        UniqueConstraint("store_id", "date", "traffic_source", name="uq_shopify_analytics_day_source"),
    )

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    store_id = Column(String, ForeignKey("shopify_stores.id"), nullable=False)
    date = Column(String(10), nullable=False)  # YYYY-MM-DD
    traffic_source = Column(String, nullable=False)
    sessions = Column(Float, nullable=False, default=0)
    visitors = Column(Float, nullable=True)
    page_views = Column(Float, nullable=True)
    bounce_rate = Column(Float, nullable=True)
    conversion_rate = Column(Float, nullable=True)
    conversions = Column(Float, nullable=True)
    data_source = Column(String, nullable=True)
    synced_at = Column(BigInteger, nullable=True)


class SyncSession(Base):
    """A tracked sync run; ``metadata_json`` holds stage progress."""
    __tablename__ = "sync_sessions"

    id = Column(String, primary_key=True, default=_uuid)
    organization_id = Column(String, nullable=False, index=True)
    sync_type = Column(String, nullable=False, default="initial")
    status = Column(String, nullable=False, default="pending")
    metadata_json = Column(JSON, default=dict)
    started_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

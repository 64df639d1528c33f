"""Collaborators of the Shopify sync service.

WHAT:
    Protocols for everything the sync service talks to besides Shopify:
    store lookup, persistence mutations and the background job queue.

WHY:
    The sync service owns control flow only. Injecting these lets tests
    drive a full sync with in-memory fakes, and lets the worker plug in the
    SQLAlchemy repository and the arq queue.

REFERENCES:
    - shopsync/services/shopify_store_repository.py (SQLAlchemy implementation)
    - shopsync/workers/arq_enqueue.py (arq implementation of JobQueue)
"""

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol, Sequence

from shopsync.services.shopify_mappers import (
    CustomerRecord,
    FulfillmentRecord,
    OrderRecord,
    ProductRecord,
    RefundRecord,
    TransactionRecord,
)

# Job priorities (higher runs first)
PRIORITY_HIGH = 8
PRIORITY_NORMAL = 5
PRIORITY_LOW = 3

# Job types
JOB_ORDERS_BATCH = "sync:shopify_orders_batch"
JOB_INITIAL_SYNC = "sync:shopify_initial"
JOB_INCREMENTAL_SYNC = "sync:shopify_incremental"
JOB_SESSION_SYNC = "sync:shopify_sessions"


@dataclass(frozen=True)
class StoreCredentials:
    """Resolved, decrypted credentials of an organization's active store."""
    id: str
    organization_id: str
    shop_domain: str
    access_token: str
    api_version: Optional[str] = None
    last_sync_at: Optional[int] = None  # epoch ms


@dataclass
class AnalyticsEntry:
    """One aggregated analytics row (date + traffic source)."""
    date: str
    traffic_source: str
    sessions: float
    visitors: Optional[float] = None
    page_views: Optional[float] = None
    bounce_rate: Optional[float] = None
    conversion_rate: Optional[float] = None
    conversions: Optional[float] = None
    data_source: str = "shopify_analytics"


@dataclass
class AttributedOrder:
    """An already-persisted order with the fields sessions are derived from."""
    internal_id: str
    shopify_created_at: Optional[int]
    total_price: Decimal
    has_customer_journey: bool = False
    source_url: Optional[str] = None
    landing_site: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    visitor_token: Optional[str] = None
    first_visit_at: Optional[int] = None
    moments_count: Optional[int] = None
    device_type: Optional[str] = None
    referrer_source: Optional[str] = None
    referrer_domain: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


@dataclass
class SessionRecord:
    organization_id: str
    store_id: str
    session_id: str
    start_time: Optional[int]
    end_time: Optional[int] = None
    visitor_token: Optional[str] = None
    referrer_source: Optional[str] = None
    referrer_domain: Optional[str] = None
    landing_page: Optional[str] = None
    utm_source: Optional[str] = None
    utm_medium: Optional[str] = None
    utm_campaign: Optional[str] = None
    utm_content: Optional[str] = None
    utm_term: Optional[str] = None
    page_views: int = 1
    has_converted: bool = True
    conversion_value: Decimal = Decimal("0")
    device_type: Optional[str] = None
    country: Optional[str] = None
    region: Optional[str] = None
    city: Optional[str] = None


@dataclass
class CostCompleteness:
    total_variants: int
    variants_with_cost: int

    @property
    def percentage(self) -> int:
        if self.total_variants <= 0:
            return 0
        return round(self.variants_with_cost / self.total_variants * 100)


class StoreLookup(Protocol):
    async def get_active_store(self, organization_id: str) -> Optional[StoreCredentials]:
        ...


class SyncPersistence(Protocol):
    """Upserting mutations keyed by vendor id + store id."""

    async def store_products(self, organization_id: str, store_id: str, products: List[ProductRecord]) -> int:
        ...

    async def store_orders(self, organization_id: str, store_id: str, orders: List[OrderRecord]) -> int:
        ...

    async def store_transactions(
        self, organization_id: str, store_id: str, transactions: List[TransactionRecord]
    ) -> int:
        ...

    async def store_refunds(self, organization_id: str, store_id: str, refunds: List[RefundRecord]) -> int:
        ...

    async def store_fulfillments(
        self, organization_id: str, store_id: str, fulfillments: List[FulfillmentRecord]
    ) -> int:
        ...

    async def store_customers(self, organization_id: str, store_id: str, customers: List[CustomerRecord]) -> int:
        ...

    async def store_analytics(self, organization_id: str, store_id: str, entries: List[AnalyticsEntry]) -> int:
        ...

    async def create_product_cost_components(
        self, organization_id: str, components: Sequence[Dict[str, Any]]
    ) -> int:
        ...

    async def update_store_last_sync(self, store_id: str, timestamp_ms: int) -> None:
        ...

    async def validate_cost_data_completeness(self, organization_id: str) -> CostCompleteness:
        ...

    async def get_orders_with_attribution(
        self, organization_id: str, start_date: str, end_date: str
    ) -> List[AttributedOrder]:
        ...

    async def get_session(self, store_id: str, session_id: str) -> Optional[SessionRecord]:
        ...

    async def create_session(self, session: SessionRecord) -> None:
        ...

    async def link_order_session(self, order_internal_id: str, session_id: str) -> None:
        ...

    async def patch_sync_session_metadata(self, sync_session_id: str, metadata: Dict[str, Any]) -> None:
        ...


class JobQueue(Protocol):
    async def create_job(self, job_type: str, priority: int, payload: Dict[str, Any]) -> str:
        """Enqueue a job and return its id (at-least-once delivery)."""
        ...

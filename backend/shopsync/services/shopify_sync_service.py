"""Shopify sync service.

WHAT:
    Orchestrates a sync for one organization:
    - Initial sync: products, orders (merchant-local "days back" window) and
      customers fetched concurrently, orders flushed in bounded batches
    - Incremental sync: orders updated since a timestamp
    - Session sync: analytics sessions, with order-derived sessions as fallback

WHY:
    - One implementation for both entry points; the order persistence policy
      (enqueue background jobs vs. write directly) is a setting, not a fork.
    - Each entity stream returns its own outcome, so a failing stream never
      aborts its siblings and the result still reports partial counts.
    - Collaborators are injected (store lookup, persistence, job queue,
      client factory), so the whole flow runs against fakes in tests.

REFERENCES:
    - shopsync/services/shopify_client.py (GraphQL transport)
    - shopsync/services/shopify_mappers.py (node -> record mapping)
    - shopsync/services/sync_interfaces.py (collaborator protocols)
    - shopsync/workers/arq_worker.py (job functions calling this service)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from shopsync.config import OrderPersistMode, SyncSettings, get_settings
from shopsync.services.shop_time import shop_days_back_range
from shopsync.services.shopify_client import (
    GraphQLResponse,
    ShopifyClient,
    ShopifyGraphQLError,
)
from shopsync.services.shopify_mappers import (
    CustomerRecord,
    FulfillmentRecord,
    OrderRecord,
    ProductRecord,
    RefundRecord,
    TransactionRecord,
    VariantRecord,
    map_customer_node,
    map_inventory_levels,
    map_order_node,
    map_product_node,
)
from shopsync.services.sync_interfaces import (
    JOB_ORDERS_BATCH,
    PRIORITY_HIGH,
    AnalyticsEntry,
    AttributedOrder,
    JobQueue,
    SessionRecord,
    StoreCredentials,
    StoreLookup,
    SyncPersistence,
)
from shopsync.services.shopify_schemas import parse_analytics_table
from shopsync.telemetry import capture_message
from shopsync.utils import shopify_ids as gid
from shopsync.utils.dates import parse_timestamp_ms, to_iso_utc, utc_now_ms

logger = logging.getLogger(__name__)

MAX_COST_EXCEEDED = "MAX_COST_EXCEEDED"
MAX_ERROR_SAMPLES = 3
ERROR_SAMPLE_WORDS = 10

ClientFactory = Callable[[StoreCredentials], ShopifyClient]


# =============================================================================
# ERRORS
# =============================================================================

class ShopifySyncError(Exception):
    """Base class for sync failures that abort the whole run."""


class NoActiveStoreError(ShopifySyncError):
    """The organization has no active Shopify store."""

    def __init__(self, organization_id: str):
        super().__init__(f"No active Shopify store found for organization {organization_id}")
        self.organization_id = organization_id


class OrderCostLimitError(ShopifySyncError):
    """Orders query exceeds the cost limit even at the minimum page size."""


# =============================================================================
# RESULT SCHEMAS
# =============================================================================
# WHAT: Dataclasses for stream outcomes and sync results
# WHY: Streams report counts and errors as values, combined at the join

@dataclass
class StreamOutcome:
    """Result of one entity stream: a count, or the reason it failed."""
    count: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class BatchStats:
    """Order batch flush counters.

    In direct persist mode, ``batches_scheduled`` counts direct writes and
    ``job_ids`` stays empty.
    """
    batches_scheduled: int = 0
    orders_queued: int = 0
    job_ids: List[str] = field(default_factory=list)


@dataclass
class OrderStreamOutcome(StreamOutcome):
    batch_stats: BatchStats = field(default_factory=BatchStats)
    pages: int = 0
    orders_seen: int = 0


@dataclass
class InitialSyncResult:
    success: bool
    records_processed: int
    data_changed: bool
    batch_stats: BatchStats
    products_processed: int = 0
    customers_processed: int = 0
    errors: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if result["errors"] is None:
            result.pop("errors")
        return result


@dataclass
class IncrementalSyncResult:
    success: bool
    records_processed: int
    data_changed: bool
    batch_stats: BatchStats = field(default_factory=BatchStats)
    errors: Optional[List[str]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        if result["errors"] is None:
            result.pop("errors")
        return result


@dataclass
class SessionSyncResult:
    success: bool
    sessions_processed: int
    orders_processed: int
    analytics_entries_processed: int = 0
    data_source: str = "none"  # "analytics" | "inferred" | "none"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _shorten(text: str, max_words: int) -> str:
    return " ".join(text.split()[:max_words])


def summarize_graphql_errors(errors: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Compact log form of GraphQL errors: count, codes, a few short samples.

    Example:
        summarize_graphql_errors([{"message": "Throttled", "extensions": {"code": "THROTTLED"}}])
        -> {"count": 1, "codes": {"THROTTLED": 1}, "samples": ["Throttled"]}
    """
    codes: Dict[str, int] = {}
    for error in errors:
        code = (error.get("extensions") or {}).get("code") or "UNKNOWN"
        codes[code] = codes.get(code, 0) + 1

    samples: List[str] = []
    for error in errors:
        message = error.get("message")
        if not message or not isinstance(message, str):
            continue
        first_line = message.split("\n")[0] or message
        samples.append(_shorten(first_line, ERROR_SAMPLE_WORDS))
        if len(samples) >= MAX_ERROR_SAMPLES:
            break

    return {"count": len(errors), "codes": codes, "samples": samples}


def _page(response: GraphQLResponse, key: str) -> Tuple[List[Dict[str, Any]], bool, Optional[str]]:
    """Split a connection into (nodes, has_next_page, end_cursor)."""
    connection = response.connection(key)
    edges = connection.get("edges") or []
    page_info = connection.get("pageInfo") or {}
    nodes = [edge.get("node") for edge in edges if edge and edge.get("node")]
    return nodes, bool(page_info.get("hasNextPage")), page_info.get("endCursor")


def _parse_rate(value: Any) -> float:
    """Analytics cells come back as strings, sometimes with a trailing ``%``."""
    if value is None:
        return 0.0
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    cleaned = str(value).replace("%", "").strip()
    if not cleaned:
        return 0.0
    try:
        parsed = float(cleaned)
    except ValueError:
        return 0.0
    return parsed if parsed == parsed and parsed not in (float("inf"), float("-inf")) else 0.0


def _analytics_date(raw: Any) -> Optional[str]:
    if not raw:
        return None
    text = str(raw).strip()
    ms = parse_timestamp_ms(text)
    if ms is not None:
        return to_iso_utc(ms)[:10]
    return text[:10] if len(text) >= 10 else None


def aggregate_analytics_rows(rows: List[Dict[str, Any]]) -> List[AnalyticsEntry]:
    """Aggregate analytics rows by date + traffic source.

    Rates are averaged weighted by sessions; rows with no sessions are
    skipped. ``conversions`` is derived from the averaged conversion rate.
    """
    aggregates: Dict[str, Dict[str, Any]] = {}

    for values in rows:
        date = _analytics_date(values.get("date") or values.get("day"))
        if not date:
            continue

        source = str(values.get("referrer_source") or values.get("traffic_source") or "unknown").lower()
        source = source or "unknown"

        sessions = _parse_rate(values.get("sessions"))
        if sessions <= 0:
            continue

        key = f"{date}::{source}"
        acc = aggregates.setdefault(key, {
            "date": date,
            "source": source,
            "sessions": 0.0,
            "visitors": 0.0,
            "page_views": 0.0,
            "bounce_weighted": 0.0,
            "conversion_weighted": 0.0,
        })
        acc["sessions"] += sessions
        acc["visitors"] += _parse_rate(values.get("visitors"))
        acc["page_views"] += _parse_rate(values.get("page_views"))
        acc["bounce_weighted"] += _parse_rate(values.get("bounce_rate")) * sessions
        acc["conversion_weighted"] += _parse_rate(values.get("conversion_rate")) * sessions

    entries = []
    for acc in aggregates.values():
        average_bounce = acc["bounce_weighted"] / acc["sessions"]
        average_conversion = acc["conversion_weighted"] / acc["sessions"]
        entries.append(AnalyticsEntry(
            date=acc["date"],
            traffic_source=acc["source"],
            sessions=acc["sessions"],
            visitors=acc["visitors"] or None,
            page_views=acc["page_views"] or None,
            bounce_rate=round(average_bounce, 2),
            conversion_rate=round(average_conversion, 2),
            conversions=round(average_conversion / 100 * acc["sessions"], 2),
            data_source="shopify_analytics",
        ))
    return entries


def session_from_order(order: AttributedOrder, organization_id: str, store_id: str) -> SessionRecord:
    """Derive one converted session from an order's journey/attribution fields."""
    return SessionRecord(
        organization_id=organization_id,
        store_id=store_id,
        session_id=f"{order.internal_id}_session",
        visitor_token=order.visitor_token,
        start_time=order.first_visit_at or order.shopify_created_at,
        end_time=order.shopify_created_at,
        referrer_source=order.referrer_source or order.source_url,
        referrer_domain=order.referrer_domain,
        landing_page=order.landing_site,
        utm_source=order.utm_source,
        utm_medium=order.utm_medium,
        utm_campaign=order.utm_campaign,
        utm_content=order.utm_content,
        utm_term=order.utm_term,
        page_views=order.moments_count or 1,
        has_converted=True,
        conversion_value=order.total_price,
        device_type=order.device_type,
        country=order.country,
        region=order.region,
        city=order.city,
    )


class OrderBatch:
    """In-memory accumulator for one bounded order batch.

    ``snapshot`` deep-copies the records into plain dicts, so clearing the
    accumulator afterwards cannot change a payload already handed off.
    """

    def __init__(self) -> None:
        self.orders: List[OrderRecord] = []
        self.transactions: List[TransactionRecord] = []
        self.refunds: List[RefundRecord] = []
        self.fulfillments: List[FulfillmentRecord] = []

    def __len__(self) -> int:
        return len(self.orders)

    def add(self, payload) -> None:
        self.orders.append(payload.order)
        self.transactions.extend(payload.transactions)
        self.refunds.extend(payload.refunds)
        self.fulfillments.extend(payload.fulfillments)

    def snapshot(self) -> Dict[str, Optional[List[Dict[str, Any]]]]:
        return {
            "orders": [asdict(record) for record in self.orders],
            "transactions": [asdict(record) for record in self.transactions] or None,
            "refunds": [asdict(record) for record in self.refunds] or None,
            "fulfillments": [asdict(record) for record in self.fulfillments] or None,
        }

    def clear(self) -> None:
        self.orders.clear()
        self.transactions.clear()
        self.refunds.clear()
        self.fulfillments.clear()


def default_client_factory(settings: SyncSettings) -> ClientFactory:
    def factory(store: StoreCredentials) -> ShopifyClient:
        return ShopifyClient(
            shop_domain=store.shop_domain,
            access_token=store.access_token,
            api_version=store.api_version or settings.api_version,
            request_spacing=settings.request_spacing_seconds,
            timeout=settings.request_timeout_seconds,
        )
    return factory


# =============================================================================
# SYNC SERVICE
# =============================================================================

class ShopifySyncService:
    """Runs initial, incremental and session syncs for one organization at a time.

    Usage:
        service = ShopifySyncService(store_lookup=repo, persistence=repo, job_queue=queue)
        result = await service.initial("org_123")
        if not result.success:
            logger.warning(result.errors)
    """

    def __init__(
        self,
        store_lookup: StoreLookup,
        persistence: SyncPersistence,
        job_queue: Optional[JobQueue] = None,
        client_factory: Optional[ClientFactory] = None,
        settings: Optional[SyncSettings] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.store_lookup = store_lookup
        self.persistence = persistence
        self.job_queue = job_queue
        self.settings = settings or get_settings()
        self.client_factory = client_factory or default_client_factory(self.settings)
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    async def _resolve_store(self, organization_id: str) -> StoreCredentials:
        store = await self.store_lookup.get_active_store(organization_id)
        if store is None:
            raise NoActiveStoreError(organization_id)
        logger.debug(f"[SHOPIFY_SYNC] Store found: {store.id} ({store.shop_domain})")
        return store

    def _resolve_mode(self, requested: Optional[OrderPersistMode], default: OrderPersistMode) -> OrderPersistMode:
        mode = OrderPersistMode(requested) if requested is not None else default
        if mode == OrderPersistMode.queue and self.job_queue is None:
            logger.warning("[SHOPIFY_SYNC] No job queue configured, persisting orders directly")
            return OrderPersistMode.direct
        return mode

    async def _patch_sync_session(self, sync_session_id: Optional[str], metadata: Dict[str, Any]) -> None:
        """Report progress on the sync session record (best-effort)."""
        if not sync_session_id:
            return
        try:
            await self.persistence.patch_sync_session_metadata(sync_session_id, metadata)
        except Exception as e:
            logger.warning(f"[SHOPIFY_SYNC] Failed to patch sync session {sync_session_id}: {e}")

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def initial(
        self,
        organization_id: str,
        sync_session_id: Optional[str] = None,
        date_range: Optional[Dict[str, Any]] = None,
        persist_mode: Optional[OrderPersistMode] = None,
    ) -> InitialSyncResult:
        """Full historical sync of products, orders and customers.

        Args:
            organization_id: Owner of the store to sync
            sync_session_id: Optional sync session to report stage progress on
            date_range: Optional ``{"days_back": n}`` order window (default 60)
            persist_mode: Override the configured order persist mode

        Raises:
            NoActiveStoreError: The organization has no active store (nothing is fetched).
        """
        started = datetime.now(timezone.utc)
        days_back = int((date_range or {}).get("days_back") or self.settings.initial_days_back)
        mode = self._resolve_mode(persist_mode, self.settings.initial_persist_mode)

        logger.info(
            f"[SHOPIFY_SYNC] Starting initial sync for organization {organization_id} "
            f"(days_back={days_back}, persist_mode={mode.value})"
        )

        store = await self._resolve_store(organization_id)
        client = self.client_factory(store)

        window = await shop_days_back_range(client, days_back)
        date_query = f"created_at:>='{window.start_utc_iso}' AND created_at:<='{window.end_utc_iso}'"

        products, orders, customers = await asyncio.gather(
            self._fetch_products(client, store, sync_session_id),
            self._fetch_orders(client, store, date_query, mode, sync_session_id),
            self._fetch_customers(client, store, sync_session_id),
        )

        errors = [outcome.error for outcome in (products, orders, customers) if outcome.error]
        records_processed = products.count + orders.batch_stats.orders_queued + customers.count

        await self._post_sync(store)

        duration = (datetime.now(timezone.utc) - started).total_seconds()
        logger.info(
            f"[SHOPIFY_SYNC] Initial sync complete for {store.shop_domain}: "
            f"{products.count} products, {orders.batch_stats.orders_queued} orders in "
            f"{orders.batch_stats.batches_scheduled} batches, {customers.count} customers, "
            f"{len(errors)} errors in {duration:.2f}s"
        )

        return InitialSyncResult(
            success=not errors,
            records_processed=records_processed,
            data_changed=records_processed > 0,
            batch_stats=orders.batch_stats,
            products_processed=products.count,
            customers_processed=customers.count,
            errors=errors or None,
        )

    async def incremental(
        self,
        organization_id: str,
        since: Optional[int] = None,
        persist_mode: Optional[OrderPersistMode] = None,
    ) -> IncrementalSyncResult:
        """Sync orders updated since ``since`` (epoch ms).

        Falls back to the store's last sync time, then to a fixed window.
        Exceptions propagate; the scheduler retries the whole sync.
        """
        mode = self._resolve_mode(persist_mode, self.settings.incremental_persist_mode)
        store = await self._resolve_store(organization_id)

        fallback_ms = self.settings.incremental_fallback_hours * 60 * 60 * 1000
        since_ms = since if since is not None else (store.last_sync_at or utc_now_ms() - fallback_ms)
        since_iso = to_iso_utc(since_ms)

        logger.info(
            f"[SHOPIFY_SYNC] Starting incremental sync for organization {organization_id} "
            f"(since={since_iso}, persist_mode={mode.value})"
        )

        client = self.client_factory(store)
        orders = await self._run_order_stream(client, store, f"updated_at:>={since_iso}", mode, None)

        await self._post_sync(store, validate_costs=False)

        records_processed = orders.batch_stats.orders_queued
        logger.info(f"[SHOPIFY_SYNC] Incremental sync complete: {records_processed} orders since {since_iso}")

        return IncrementalSyncResult(
            success=True,
            records_processed=records_processed,
            data_changed=records_processed > 0,
            batch_stats=orders.batch_stats,
        )

    async def sync_sessions(
        self,
        organization_id: str,
        store_id: str,
        date_range: Dict[str, str],
    ) -> SessionSyncResult:
        """Sync sessions for ``{"start_date", "end_date"}`` (YYYY-MM-DD).

        Tries the analytics report first. When it fails or has no rows,
        sessions are inferred from persisted orders instead, one per order.
        The result says which source was used.
        """
        start_date = date_range["start_date"]
        end_date = date_range["end_date"]
        logger.info(
            f"[SHOPIFY_SYNC] Starting session sync for organization {organization_id} "
            f"({start_date} to {end_date})"
        )

        store = await self._resolve_store(organization_id)
        client = self.client_factory(store)

        entries_processed = await self._sync_analytics(client, organization_id, store_id, start_date, end_date)
        if entries_processed > 0:
            return SessionSyncResult(
                success=True,
                sessions_processed=entries_processed,
                orders_processed=0,
                analytics_entries_processed=entries_processed,
                data_source="analytics",
            )

        orders = await self.persistence.get_orders_with_attribution(organization_id, start_date, end_date)
        sessions_created = 0
        sessions_linked = 0
        for order in orders:
            if not order.has_customer_journey:
                continue
            session = session_from_order(order, organization_id, store_id)
            existing = await self.persistence.get_session(store_id, session.session_id)
            if existing is None:
                await self.persistence.create_session(session)
                sessions_created += 1
            await self.persistence.link_order_session(order.internal_id, session.session_id)
            sessions_linked += 1

        logger.info(
            f"[SHOPIFY_SYNC] Inferred {sessions_created} new sessions ({sessions_linked} linked) from {len(orders)} orders "
            f"for organization {organization_id}"
        )

        return SessionSyncResult(
            success=True,
            sessions_processed=sessions_created,
            orders_processed=len(orders),
            analytics_entries_processed=0,
            data_source="inferred" if sessions_linked > 0 else "none",
        )

    # -------------------------------------------------------------------------
    # Product stream
    # -------------------------------------------------------------------------

    async def _fetch_products(
        self,
        client: ShopifyClient,
        store: StoreCredentials,
        sync_session_id: Optional[str],
    ) -> StreamOutcome:
        await self._patch_sync_session(
            sync_session_id, {"stage_status": {"products": "processing", "inventory": "processing"}}
        )
        try:
            count = await self._sync_products(client, store)
        except Exception as e:
            logger.error(f"[SHOPIFY_SYNC] Product sync failed: {e}", exc_info=True)
            await self._patch_sync_session(
                sync_session_id, {"stage_status": {"products": "failed", "inventory": "failed"}}
            )
            return StreamOutcome(count=0, error=f"Product sync failed: {e}")

        await self._patch_sync_session(sync_session_id, {
            "stage_status": {"products": "completed", "inventory": "completed"},
            "synced_entities": ["products", "inventory"],
        })
        return StreamOutcome(count=count)

    async def _sync_products(self, client: ShopifyClient, store: StoreCredentials) -> int:
        products: List[ProductRecord] = []
        cursor: Optional[str] = None
        page = 0

        while True:
            page += 1
            response = await client.get_products(self.settings.products_batch_size, cursor)
            if response.has_errors:
                logger.error(f"[SHOPIFY_SYNC] GraphQL errors in product page {page}: {response.errors}")
                raise ShopifyGraphQLError(
                    f"GraphQL errors: {summarize_graphql_errors(response.errors)['samples']}",
                    errors=response.errors,
                )

            nodes, has_next, end_cursor = _page(response, "products")
            if not nodes:
                logger.debug(f"[SHOPIFY_SYNC] No products on page {page}, stopping")
                break

            products.extend(map_product_node(node, store.organization_id, store.id) for node in nodes)
            logger.debug(f"[SHOPIFY_SYNC] Products page {page}: {len(nodes)} (total {len(products)})")

            if not has_next:
                break
            cursor = end_cursor

        if not products:
            logger.info("[SHOPIFY_SYNC] No products found")
            return 0

        await self._attach_inventory_levels(client, products)
        await self.persistence.store_products(store.organization_id, store.id, products)

        variants = [variant for product in products for variant in product.variants]
        with_cost = [v for v in variants if v.cost_per_unit is not None and v.cost_per_unit > 0]
        coverage = round(len(with_cost) / len(variants) * 100) if variants else 0
        logger.info(
            f"[SHOPIFY_SYNC] COGS coverage: {len(with_cost)}/{len(variants)} variants ({coverage}%), "
            f"{len(variants) - len(with_cost)} missing"
        )

        if with_cost:
            await self.persistence.create_product_cost_components(
                store.organization_id,
                [{"variant_id": v.shopify_id, "cogs_per_unit": v.cost_per_unit} for v in with_cost],
            )

        logger.info(f"[SHOPIFY_SYNC] Products synced: {len(products)}")
        return len(products)

    async def _attach_inventory_levels(self, client: ShopifyClient, products: List[ProductRecord]) -> None:
        """Second pass: fetch inventory levels per batch of inventory items.

        A failed batch is logged and skipped; its variants keep empty levels.
        """
        by_item: Dict[str, VariantRecord] = {}
        for product in products:
            for variant in product.variants:
                if variant.inventory_item_id:
                    by_item[gid.to_gid(variant.inventory_item_id, gid.INVENTORY_ITEM)] = variant

        item_ids = list(by_item)
        batch_size = self.settings.inventory_batch_size
        logger.debug(f"[SHOPIFY_SYNC] Fetching inventory levels for {len(item_ids)} items")

        for start in range(0, len(item_ids), batch_size):
            batch = item_ids[start:start + batch_size]
            batch_number = start // batch_size + 1
            try:
                response = await client.get_inventory_levels(batch)
                for node in (response.data or {}).get("nodes") or []:
                    if not node or node.get("id") not in by_item:
                        continue
                    by_item[node["id"]].inventory_levels = map_inventory_levels(node)
            except Exception as e:
                logger.error(f"[SHOPIFY_SYNC] Failed to fetch inventory batch {batch_number}: {e}")

    # -------------------------------------------------------------------------
    # Order stream
    # -------------------------------------------------------------------------

    async def _fetch_orders(
        self,
        client: ShopifyClient,
        store: StoreCredentials,
        date_query: str,
        mode: OrderPersistMode,
        sync_session_id: Optional[str],
    ) -> OrderStreamOutcome:
        await self._patch_sync_session(sync_session_id, {"stage_status": {"orders": "processing"}})
        try:
            outcome = await self._run_order_stream(client, store, date_query, mode, sync_session_id)
        except Exception as e:
            logger.error(f"[SHOPIFY_SYNC] Order sync failed: {e}", exc_info=True)
            await self._patch_sync_session(sync_session_id, {"stage_status": {"orders": "failed"}})
            return OrderStreamOutcome(count=0, error=f"Order sync failed: {e}")

        await self._patch_sync_session(sync_session_id, {
            "stage_status": {"orders": "completed"},
            "last_cursor": None,
            "total_pages": outcome.pages,
            "total_orders_seen": outcome.orders_seen,
        })
        return outcome

    async def _run_order_stream(
        self,
        client: ShopifyClient,
        store: StoreCredentials,
        query: str,
        mode: OrderPersistMode,
        sync_session_id: Optional[str],
    ) -> OrderStreamOutcome:
        """Paginate orders, flushing bounded batches as they fill.

        Cost-limit errors halve the page size and retry the same cursor;
        other GraphQL errors are logged and the page is used as returned.
        """
        settings = self.settings
        batch = OrderBatch()
        stats = BatchStats()
        cursor: Optional[str] = None
        page_size = max(settings.orders_batch_size, settings.orders_min_page_size)
        pages = 0
        orders_seen = 0

        async def flush() -> None:
            if not len(batch):
                return
            batch_number = stats.batches_scheduled + 1
            order_count = len(batch)

            if mode == OrderPersistMode.queue:
                payload = {
                    "organization_id": store.organization_id,
                    "store_id": store.id,
                    "sync_session_id": sync_session_id,
                    "batch_number": batch_number,
                    "cursor": cursor,
                    **batch.snapshot(),
                }
                job_id = await self.job_queue.create_job(JOB_ORDERS_BATCH, PRIORITY_HIGH, payload)
                stats.job_ids.append(job_id)
                logger.info(f"[SHOPIFY_SYNC] Queued order batch {batch_number} ({order_count} orders): job {job_id}")
            else:
                await self._persist_order_batch(store, batch)
                logger.info(f"[SHOPIFY_SYNC] Persisted order batch {batch_number} ({order_count} orders)")

            await self._patch_sync_session(sync_session_id, {
                "last_cursor": cursor,
                "current_page": pages,
                "total_orders_seen": orders_seen,
            })

            stats.batches_scheduled += 1
            stats.orders_queued += order_count
            batch.clear()

        while True:
            response = await client.get_orders(page_size, cursor, query)

            if response.has_errors:
                summary = summarize_graphql_errors(response.errors)
                logger.warning(f"[SHOPIFY_SYNC] Orders fetch GraphQL errors: {summary} (query: {query})")

                if MAX_COST_EXCEEDED in response.error_codes():
                    next_size = max(settings.orders_min_page_size, page_size // 2)
                    if next_size == page_size:
                        raise OrderCostLimitError(
                            f"Shopify orders query exceeded cost limit even at minimum page size {page_size}"
                        )
                    logger.warning(
                        f"[SHOPIFY_SYNC] Reducing orders page size {page_size} -> {next_size} (query cost limit)"
                    )
                    page_size = next_size
                    await self._sleep(settings.orders_cost_backoff_ms / 1000)
                    continue

            nodes, has_next, end_cursor = _page(response, "orders")
            if not nodes:
                break

            pages += 1
            orders_seen += len(nodes)
            if pages == 1 or orders_seen % 100 == 0:
                logger.info(f"[SHOPIFY_SYNC] Order sync progress: {orders_seen} orders seen ({pages} pages)")

            for node in nodes:
                batch.add(map_order_node(node, store.organization_id, store.id))
                if len(batch) >= settings.order_persist_batch_size:
                    await flush()

            if not has_next:
                break
            cursor = end_cursor

        await flush()

        logger.info(
            f"[SHOPIFY_SYNC] Orders complete: {stats.orders_queued} orders in "
            f"{stats.batches_scheduled} batches ({mode.value})"
        )
        return OrderStreamOutcome(
            count=stats.orders_queued,
            batch_stats=stats,
            pages=pages,
            orders_seen=orders_seen,
        )

    async def _persist_order_batch(self, store: StoreCredentials, batch: OrderBatch) -> None:
        """Direct mode: one mutation per non-empty record stream."""
        org_id, store_id = store.organization_id, store.id
        if batch.orders:
            await self.persistence.store_orders(org_id, store_id, list(batch.orders))
        if batch.transactions:
            await self.persistence.store_transactions(org_id, store_id, list(batch.transactions))
        if batch.refunds:
            await self.persistence.store_refunds(org_id, store_id, list(batch.refunds))
        if batch.fulfillments:
            await self.persistence.store_fulfillments(org_id, store_id, list(batch.fulfillments))

    # -------------------------------------------------------------------------
    # Customer stream
    # -------------------------------------------------------------------------

    async def _fetch_customers(
        self,
        client: ShopifyClient,
        store: StoreCredentials,
        sync_session_id: Optional[str],
    ) -> StreamOutcome:
        await self._patch_sync_session(sync_session_id, {"stage_status": {"customers": "processing"}})
        try:
            customers: List[CustomerRecord] = []
            cursor: Optional[str] = None
            while True:
                response = await client.get_customers(self.settings.customers_batch_size, cursor)
                if response.has_errors:
                    logger.warning(
                        f"[SHOPIFY_SYNC] Customers query errors: {summarize_graphql_errors(response.errors)}"
                    )
                nodes, has_next, end_cursor = _page(response, "customers")
                customers.extend(map_customer_node(node, store.organization_id, store.id) for node in nodes)
                if not nodes or not has_next:
                    break
                cursor = end_cursor

            if customers:
                await self.persistence.store_customers(store.organization_id, store.id, customers)
        except Exception as e:
            logger.error(f"[SHOPIFY_SYNC] Customer sync failed: {e}", exc_info=True)
            await self._patch_sync_session(sync_session_id, {"stage_status": {"customers": "failed"}})
            return StreamOutcome(count=0, error=f"Customer sync failed: {e}")

        logger.info(f"[SHOPIFY_SYNC] Customers synced: {len(customers)}")
        await self._patch_sync_session(sync_session_id, {
            "stage_status": {"customers": "completed"},
            "synced_entities": ["customers"],
        })
        return StreamOutcome(count=len(customers))

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    async def _sync_analytics(
        self,
        client: ShopifyClient,
        organization_id: str,
        store_id: str,
        start_date: str,
        end_date: str,
    ) -> int:
        """Store aggregated analytics rows; 0 means fall back to orders."""
        try:
            response = await client.get_analytics_sessions(start_date, end_date)
            table = parse_analytics_table(response.data)
            if table is None or not table.rows:
                if response.has_errors:
                    logger.warning(
                        f"[SHOPIFY_SYNC] Analytics query errors: {summarize_graphql_errors(response.errors)}"
                    )
                logger.info(f"[SHOPIFY_SYNC] No analytics data for organization {organization_id}")
                return 0

            entries = aggregate_analytics_rows(table.records())
            if not entries:
                return 0

            await self.persistence.store_analytics(organization_id, store_id, entries)
            logger.info(f"[SHOPIFY_SYNC] Stored {len(entries)} analytics entries")
            return len(entries)
        except Exception as e:
            logger.info(f"[SHOPIFY_SYNC] Falling back to order-derived sessions: {e}")
            return 0

    # -------------------------------------------------------------------------
    # Post-sync
    # -------------------------------------------------------------------------

    async def _post_sync(self, store: StoreCredentials, validate_costs: bool = True) -> None:
        """Best-effort bookkeeping: never fails the sync."""
        try:
            await self.persistence.update_store_last_sync(store.id, utc_now_ms())
        except Exception as e:
            logger.warning(f"[SHOPIFY_SYNC] Failed to update last sync for store {store.id}: {e}")

        if not validate_costs:
            return

        try:
            completeness = await self.persistence.validate_cost_data_completeness(store.organization_id)
            if completeness.percentage < self.settings.cost_completeness_warn_percent:
                logger.warning(
                    f"[SHOPIFY_SYNC] Cost data completeness low for organization {store.organization_id}: "
                    f"{completeness.percentage}% ({completeness.variants_with_cost}/"
                    f"{completeness.total_variants} variants)"
                )
                capture_message(
                    "Shopify cost data completeness below threshold",
                    level="warning",
                    extra={
                        "organization_id": store.organization_id,
                        "store_id": store.id,
                        "percentage": completeness.percentage,
                    },
                )
        except Exception as e:
            logger.warning(f"[SHOPIFY_SYNC] Cost completeness validation failed: {e}")

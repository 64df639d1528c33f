"""SQLAlchemy persistence for the Shopify sync.

WHAT:
    Implements StoreLookup and SyncPersistence against the ORM models:
    upserts for every synced entity, store credential lookup (with token
    decryption), session/analytics storage and sync-session progress.

WHY:
    Batches are delivered at least once (arq retries, re-run syncs), so
    every write is an upsert keyed by (store_id, shopify_id). Replaying a
    batch refreshes rows instead of duplicating them.

REFERENCES:
    - shopsync/models.py
    - shopsync/services/sync_interfaces.py (protocols implemented here)
"""

from __future__ import annotations

import functools
import logging
from dataclasses import asdict, is_dataclass
from datetime import datetime, time, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Type

from sqlalchemy import or_
from sqlalchemy.orm import Session

from shopsync.models import (
    ShopifyAnalytics,
    ShopifyCustomer,
    ShopifyFulfillment,
    ShopifyOrder,
    ShopifyOrderTransaction,
    ShopifyProduct,
    ShopifyProductVariant,
    ShopifyRefund,
    ShopifySession,
    ShopifyStore,
    ShopifyVariantCost,
    SyncSession,
)
from shopsync.security import decrypt_secret
from shopsync.services.sync_interfaces import (
    AnalyticsEntry,
    AttributedOrder,
    CostCompleteness,
    SessionRecord,
    StoreCredentials,
)
from shopsync.utils.dates import utc_now_ms

logger = logging.getLogger(__name__)


# =============================================================================
# HELPER FUNCTIONS
# =============================================================================

def _as_dict(record: Any) -> Dict[str, Any]:
    """Records arrive as dataclasses (direct mode) or dict snapshots (jobs)."""
    if is_dataclass(record) and not isinstance(record, type):
        return asdict(record)
    return dict(record)


def _jsonable(value: Any) -> Any:
    """Make nested values JSON-column safe (Decimal -> float)."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return value


def _day_bounds_ms(start_date: str, end_date: str) -> tuple:
    start = datetime.combine(datetime.fromisoformat(start_date).date(), time.min, tzinfo=timezone.utc)
    end = datetime.combine(datetime.fromisoformat(end_date).date(), time.max, tzinfo=timezone.utc)
    return int(start.timestamp() * 1000), int(end.timestamp() * 1000)


def _rolls_back(method):
    """Roll the session back when a write fails, then re-raise.

    The product, order and customer streams share one session. A failed
    flush would otherwise leave it in PendingRollback state and every
    sibling write on it would fail too.
    """
    @functools.wraps(method)
    async def wrapper(self, *args, **kwargs):
        try:
            return await method(self, *args, **kwargs)
        except Exception:
            self.db.rollback()
            raise
    return wrapper


class ShopifyStoreRepository:
    """Store lookup + sync persistence over one SQLAlchemy session.

    Usage:
        with get_sync_session() as db:
            repo = ShopifyStoreRepository(db)
            service = ShopifySyncService(store_lookup=repo, persistence=repo, job_queue=queue)
    """

    def __init__(self, db: Session):
        self.db = db

    # -------------------------------------------------------------------------
    # Generic upsert
    # -------------------------------------------------------------------------

    def _upsert_rows(
        self,
        model: Type,
        store_id: str,
        rows: Iterable[Dict[str, Any]],
    ) -> List[Any]:
        """Insert or update rows of ``model`` matched on (store_id, shopify_id).

        Later rows in the same call win when a shopify_id repeats.
        """
        rows = list(rows)
        if not rows:
            return []

        ids = {row["shopify_id"] for row in rows}
        existing = {
            obj.shopify_id: obj
            for obj in self.db.query(model).filter(
                model.store_id == store_id,
                model.shopify_id.in_(ids),
            ).all()
        }

        touched = []
        for row in rows:
            obj = existing.get(row["shopify_id"])
            if obj is None:
                obj = model(**row)
                self.db.add(obj)
                existing[row["shopify_id"]] = obj
            else:
                for key, value in row.items():
                    setattr(obj, key, value)
            touched.append(obj)
        return touched

    # -------------------------------------------------------------------------
    # StoreLookup
    # -------------------------------------------------------------------------

    async def get_active_store(self, organization_id: str) -> Optional[StoreCredentials]:
        store = self.db.query(ShopifyStore).filter(
            ShopifyStore.organization_id == organization_id,
            ShopifyStore.is_active.is_(True),
        ).first()

        if not store:
            return None

        return StoreCredentials(
            id=store.id,
            organization_id=store.organization_id,
            shop_domain=store.shop_domain,
            access_token=decrypt_secret(store.access_token_enc, context=f"shopify:{store.shop_domain}"),
            api_version=store.api_version,
            last_sync_at=store.last_sync_at,
        )

    @_rolls_back
    async def update_store_last_sync(self, store_id: str, timestamp_ms: int) -> None:
        store = self.db.query(ShopifyStore).filter(ShopifyStore.id == store_id).first()
        if not store:
            logger.warning(f"[SHOPIFY_REPO] Store {store_id} not found for last-sync update")
            return
        store.last_sync_at = timestamp_ms
        self.db.commit()

    # -------------------------------------------------------------------------
    # Products
    # -------------------------------------------------------------------------

    @_rolls_back
    async def store_products(self, organization_id: str, store_id: str, products: Sequence[Any]) -> int:
        synced_at = utc_now_ms()
        product_rows = []
        variants_by_product: Dict[str, List[Dict[str, Any]]] = {}

        for record in products:
            data = _as_dict(record)
            variants = data.pop("variants", None) or []
            data.update(
                organization_id=organization_id,
                store_id=store_id,
                tags=_jsonable(data.get("tags") or []),
                synced_at=synced_at,
            )
            product_rows.append(data)
            variants_by_product[data["shopify_id"]] = variants

        saved = self._upsert_rows(ShopifyProduct, store_id, product_rows)
        self.db.flush()

        variant_rows = []
        for product in saved:
            for variant in variants_by_product.get(product.shopify_id, []):
                row = dict(variant)
                row.update(
                    organization_id=organization_id,
                    store_id=store_id,
                    product_id=product.id,
                    inventory_levels=_jsonable(row.get("inventory_levels") or []),
                )
                variant_rows.append(row)

        self._upsert_rows(ShopifyProductVariant, store_id, variant_rows)
        self.db.commit()

        logger.info(f"[SHOPIFY_REPO] Stored {len(saved)} products, {len(variant_rows)} variants")
        return len(saved)

    @_rolls_back
    async def create_product_cost_components(
        self, organization_id: str, components: Sequence[Dict[str, Any]]
    ) -> int:
        """Upsert per-variant COGS rows (one per organization + variant)."""
        count = 0
        for component in components:
            variant_id = str(component["variant_id"])
            cost = Decimal(str(component["cogs_per_unit"]))
            existing = self.db.query(ShopifyVariantCost).filter(
                ShopifyVariantCost.organization_id == organization_id,
                ShopifyVariantCost.variant_id == variant_id,
            ).first()
            if existing:
                existing.cogs_per_unit = cost
            else:
                self.db.add(ShopifyVariantCost(
                    organization_id=organization_id,
                    variant_id=variant_id,
                    cogs_per_unit=cost,
                ))
            count += 1
        self.db.commit()
        return count

    async def validate_cost_data_completeness(self, organization_id: str) -> CostCompleteness:
        """Share of the organization's variants with a known unit cost."""
        base = self.db.query(ShopifyProductVariant).filter(
            ShopifyProductVariant.organization_id == organization_id,
        )
        total = base.count()

        costed_ids = {
            row.variant_id
            for row in self.db.query(ShopifyVariantCost.variant_id).filter(
                ShopifyVariantCost.organization_id == organization_id,
            ).all()
        }
        has_cost = ShopifyProductVariant.cost_per_unit > 0
        if costed_ids:
            has_cost = or_(has_cost, ShopifyProductVariant.shopify_id.in_(costed_ids))
        with_cost = base.filter(has_cost).count()

        return CostCompleteness(total_variants=total, variants_with_cost=with_cost)

    # -------------------------------------------------------------------------
    # Orders
    # -------------------------------------------------------------------------

    @_rolls_back
    async def store_orders(self, organization_id: str, store_id: str, orders: Sequence[Any]) -> int:
        synced_at = utc_now_ms()
        rows = []
        for record in orders:
            data = _as_dict(record)
            customer = data.get("customer")
            data.update(
                organization_id=organization_id,
                store_id=store_id,
                customer_shopify_id=customer.get("shopify_id") if customer else None,
                customer=_jsonable(customer),
                shipping_address=_jsonable(data.get("shipping_address")),
                line_items=_jsonable(data.get("line_items") or []),
                tags=_jsonable(data.get("tags") or []),
                synced_at=synced_at,
            )
            rows.append(data)

        saved = self._upsert_rows(ShopifyOrder, store_id, rows)
        self.db.commit()
        logger.info(f"[SHOPIFY_REPO] Stored {len(saved)} orders for store {store_id}")
        return len(saved)

    @_rolls_back
    async def store_transactions(self, organization_id: str, store_id: str, transactions: Sequence[Any]) -> int:
        rows = []
        for record in transactions:
            data = _as_dict(record)
            data.update(organization_id=organization_id, store_id=store_id)
            rows.append(data)
        saved = self._upsert_rows(ShopifyOrderTransaction, store_id, rows)
        self.db.commit()
        return len(saved)

    @_rolls_back
    async def store_refunds(self, organization_id: str, store_id: str, refunds: Sequence[Any]) -> int:
        rows = []
        for record in refunds:
            data = _as_dict(record)
            data.update(
                organization_id=organization_id,
                store_id=store_id,
                refund_line_items=_jsonable(data.get("refund_line_items") or []),
            )
            rows.append(data)
        saved = self._upsert_rows(ShopifyRefund, store_id, rows)
        self.db.commit()
        return len(saved)

    @_rolls_back
    async def store_fulfillments(self, organization_id: str, store_id: str, fulfillments: Sequence[Any]) -> int:
        rows = []
        for record in fulfillments:
            data = _as_dict(record)
            data.update(
                organization_id=organization_id,
                store_id=store_id,
                tracking_numbers=list(data.get("tracking_numbers") or []),
                tracking_urls=list(data.get("tracking_urls") or []),
                line_items=_jsonable(data.get("line_items") or []),
            )
            rows.append(data)
        saved = self._upsert_rows(ShopifyFulfillment, store_id, rows)
        self.db.commit()
        return len(saved)

    # -------------------------------------------------------------------------
    # Customers
    # -------------------------------------------------------------------------

    @_rolls_back
    async def store_customers(self, organization_id: str, store_id: str, customers: Sequence[Any]) -> int:
        synced_at = utc_now_ms()
        rows = []
        for record in customers:
            data = _as_dict(record)
            data.update(
                organization_id=organization_id,
                store_id=store_id,
                default_address=_jsonable(data.get("default_address")),
                tags=_jsonable(data.get("tags") or []),
                synced_at=synced_at,
            )
            rows.append(data)
        saved = self._upsert_rows(ShopifyCustomer, store_id, rows)
        self.db.commit()
        logger.info(f"[SHOPIFY_REPO] Stored {len(saved)} customers for store {store_id}")
        return len(saved)

    # -------------------------------------------------------------------------
    # Analytics & sessions
    # -------------------------------------------------------------------------

    @_rolls_back
    async def store_analytics(self, organization_id: str, store_id: str, entries: Sequence[AnalyticsEntry]) -> int:
        synced_at = utc_now_ms()
        for entry in entries:
            data = _as_dict(entry)
            existing = self.db.query(ShopifyAnalytics).filter(
                ShopifyAnalytics.store_id == store_id,
                ShopifyAnalytics.date == data["date"],
                ShopifyAnalytics.traffic_source == data["traffic_source"],
            ).first()
            if existing is None:
                existing = ShopifyAnalytics(organization_id=organization_id, store_id=store_id)
                self.db.add(existing)
            for key, value in data.items():
                setattr(existing, key, value)
            existing.synced_at = synced_at
        self.db.commit()
        return len(entries)

    async def get_orders_with_attribution(
        self, organization_id: str, start_date: str, end_date: str
    ) -> List[AttributedOrder]:
        start_ms, end_ms = _day_bounds_ms(start_date, end_date)
        orders = self.db.query(ShopifyOrder).filter(
            ShopifyOrder.organization_id == organization_id,
            ShopifyOrder.shopify_created_at >= start_ms,
            ShopifyOrder.shopify_created_at <= end_ms,
        ).order_by(ShopifyOrder.shopify_created_at).all()

        result = []
        for order in orders:
            address = order.shipping_address or {}
            result.append(AttributedOrder(
                internal_id=order.id,
                shopify_created_at=order.shopify_created_at,
                total_price=Decimal(str(order.total_price or 0)),
                has_customer_journey=bool(order.has_customer_journey),
                source_url=order.source_url,
                landing_site=order.landing_site,
                utm_source=order.utm_source,
                utm_medium=order.utm_medium,
                utm_campaign=order.utm_campaign,
                utm_content=order.utm_content,
                utm_term=order.utm_term,
                visitor_token=order.visitor_token,
                first_visit_at=order.first_visit_at,
                moments_count=order.moments_count,
                device_type=order.device_type,
                referrer_source=order.referrer_source,
                referrer_domain=order.referrer_domain,
                country=address.get("country"),
                region=address.get("province"),
                city=address.get("city"),
            ))
        return result

    async def get_session(self, store_id: str, session_id: str) -> Optional[SessionRecord]:
        row = self.db.query(ShopifySession).filter(
            ShopifySession.store_id == store_id,
            ShopifySession.session_id == session_id,
        ).first()
        if row is None:
            return None
        return SessionRecord(
            organization_id=row.organization_id,
            store_id=row.store_id,
            session_id=row.session_id,
            start_time=row.start_time,
            end_time=row.end_time,
            visitor_token=row.visitor_token,
            referrer_source=row.referrer_source,
            referrer_domain=row.referrer_domain,
            landing_page=row.landing_page,
            utm_source=row.utm_source,
            utm_medium=row.utm_medium,
            utm_campaign=row.utm_campaign,
            utm_content=row.utm_content,
            utm_term=row.utm_term,
            page_views=row.page_views or 1,
            has_converted=bool(row.has_converted),
            conversion_value=Decimal(str(row.conversion_value or 0)),
            device_type=row.device_type,
            country=row.country,
            region=row.region,
            city=row.city,
        )

    @_rolls_back
    async def create_session(self, session: SessionRecord) -> None:
        data = asdict(session)
        self.db.add(ShopifySession(synced_at=utc_now_ms(), **data))
        self.db.commit()

    @_rolls_back
    async def link_order_session(self, order_internal_id: str, session_id: str) -> None:
        order = self.db.query(ShopifyOrder).filter(ShopifyOrder.id == order_internal_id).first()
        if not order:
            logger.warning(f"[SHOPIFY_REPO] Order {order_internal_id} not found for session link")
            return
        order.session_id = session_id
        self.db.commit()

    # -------------------------------------------------------------------------
    # Sync sessions
    # -------------------------------------------------------------------------

    @_rolls_back
    async def patch_sync_session_metadata(self, sync_session_id: str, metadata: Dict[str, Any]) -> None:
        """Merge ``metadata`` into the sync session's progress document.

        ``stage_status`` is merged per stage and ``synced_entities`` is a
        union; other keys are overwritten.
        """
        session = self.db.query(SyncSession).filter(SyncSession.id == sync_session_id).first()
        if not session:
            logger.warning(f"[SHOPIFY_REPO] Sync session {sync_session_id} not found")
            return

        merged = dict(session.metadata_json or {})
        for key, value in metadata.items():
            if key == "stage_status":
                merged["stage_status"] = {**(merged.get("stage_status") or {}), **value}
            elif key == "synced_entities":
                merged["synced_entities"] = sorted(set(merged.get("synced_entities") or []) | set(value))
            else:
                merged[key] = value

        # Reassign so SQLAlchemy sees the JSON change
        session.metadata_json = merged
        self.db.commit()

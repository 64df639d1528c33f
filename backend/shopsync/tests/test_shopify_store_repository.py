"""Tests for the SQLAlchemy store repository (SQLite).

WHAT: Store lookup, upsert idempotence, cost completeness, sessions and
      sync-session progress merging.
WHY: Order batches are delivered at least once; replaying one must update
     rows in place rather than insert duplicates.
"""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from shopsync.models import (
    ShopifyAnalytics,
    ShopifyCustomer,
    ShopifyOrder,
    ShopifyOrderTransaction,
    ShopifyProduct,
    ShopifyProductVariant,
    ShopifySession,
    ShopifyStore,
    SyncSession,
)
from shopsync.security import encrypt_secret
from shopsync.services.shopify_mappers import map_customer_node, map_order_node, map_product_node
from shopsync.services.shopify_store_repository import ShopifyStoreRepository
from shopsync.services.shopify_sync_service import OrderBatch, session_from_order
from shopsync.services.sync_interfaces import AnalyticsEntry
from shopsync.tests.shopify_fakes import ORG_ID, STORE_ID, customer_node, order_node, product_node


@pytest.fixture
def store(db_session):
    row = ShopifyStore(
        id=STORE_ID,
        organization_id=ORG_ID,
        shop_domain="test-shop.myshopify.com",
        access_token_enc=encrypt_secret("shpat_secret", context="test-shop.myshopify.com"),
        api_version="2025-07",
    )
    db_session.add(row)
    db_session.commit()
    return row


@pytest.fixture
def repo(db_session, store):
    return ShopifyStoreRepository(db_session)


def _order_payload(n, **overrides):
    return map_order_node(order_node(n, **overrides), ORG_ID, STORE_ID)


# ============================================================================
# Store lookup
# ============================================================================

class TestStoreLookup:
    def test_active_store_token_is_decrypted(self, repo):
        credentials = asyncio.run(repo.get_active_store(ORG_ID))

        assert credentials.id == STORE_ID
        assert credentials.shop_domain == "test-shop.myshopify.com"
        assert credentials.access_token == "shpat_secret"
        assert credentials.last_sync_at is None

    def test_inactive_store_is_ignored(self, repo, store, db_session):
        store.is_active = False
        db_session.commit()

        assert asyncio.run(repo.get_active_store(ORG_ID)) is None

    def test_unknown_organization(self, repo):
        assert asyncio.run(repo.get_active_store("org-unknown")) is None

    def test_update_last_sync(self, repo, store, db_session):
        asyncio.run(repo.update_store_last_sync(STORE_ID, 1738317600000))

        db_session.refresh(store)
        assert store.last_sync_at == 1738317600000


# ============================================================================
# Orders
# ============================================================================

class TestOrders:
    def test_replayed_orders_upsert(self, repo, db_session):
        """WHAT: The same order stored twice yields one row with the latest values."""
        asyncio.run(repo.store_orders(ORG_ID, STORE_ID, [_order_payload(1).order]))
        updated = _order_payload(1, displayFinancialStatus="REFUNDED").order
        asyncio.run(repo.store_orders(ORG_ID, STORE_ID, [updated]))

        rows = db_session.query(ShopifyOrder).all()
        assert len(rows) == 1
        assert rows[0].shopify_id == "1"
        assert rows[0].financial_status == "REFUNDED"
        assert rows[0].customer_shopify_id == "1"
        assert rows[0].synced_at is not None

    def test_batch_snapshot_dicts_are_accepted(self, repo, db_session):
        """WHAT: Queue payloads carry plain dicts instead of records."""
        batch = OrderBatch()
        batch.add(_order_payload(1))
        batch.add(_order_payload(2))
        snapshot = batch.snapshot()

        assert asyncio.run(repo.store_orders(ORG_ID, STORE_ID, snapshot["orders"])) == 2
        assert asyncio.run(repo.store_transactions(ORG_ID, STORE_ID, snapshot["transactions"])) == 2
        asyncio.run(repo.store_transactions(ORG_ID, STORE_ID, snapshot["transactions"]))

        assert db_session.query(ShopifyOrder).count() == 2
        transactions = db_session.query(ShopifyOrderTransaction).all()
        assert len(transactions) == 2
        assert {t.shopify_order_id for t in transactions} == {"1", "2"}

    def test_orders_are_scoped_per_store(self, repo, db_session):
        other = ShopifyStore(
            id="store-2",
            organization_id=ORG_ID,
            shop_domain="other-shop.myshopify.com",
            access_token_enc=encrypt_secret("shpat_other", context="other-shop"),
        )
        db_session.add(other)
        db_session.commit()

        asyncio.run(repo.store_orders(ORG_ID, STORE_ID, [_order_payload(1).order]))
        asyncio.run(repo.store_orders(ORG_ID, "store-2", [_order_payload(1).order]))

        assert db_session.query(ShopifyOrder).count() == 2

    def test_failed_write_leaves_session_usable(self, repo, db_session):
        """WHAT: A write that fails at commit does not break later writes.

        WHY: The product, order and customer streams share one session.
        """
        broken = {"shopify_id": "9", "order_number": "9", "name": None}
        with pytest.raises(IntegrityError):
            asyncio.run(repo.store_orders(ORG_ID, STORE_ID, [broken]))

        customer = map_customer_node(customer_node(1), ORG_ID, STORE_ID)
        assert asyncio.run(repo.store_customers(ORG_ID, STORE_ID, [customer])) == 1
        assert asyncio.run(repo.store_orders(ORG_ID, STORE_ID, [_order_payload(1).order])) == 1

        assert db_session.query(ShopifyCustomer).count() == 1
        assert [row.shopify_id for row in db_session.query(ShopifyOrder).all()] == ["1"]


# ============================================================================
# Products and costs
# ============================================================================

class TestProducts:
    def test_products_and_variants_upsert(self, repo, db_session):
        products = [map_product_node(product_node(i), ORG_ID, STORE_ID) for i in (1, 2)]

        asyncio.run(repo.store_products(ORG_ID, STORE_ID, products))
        asyncio.run(repo.store_products(ORG_ID, STORE_ID, products))

        assert db_session.query(ShopifyProduct).count() == 2
        variants = db_session.query(ShopifyProductVariant).all()
        assert len(variants) == 4
        product_ids = {p.shopify_id: p.id for p in db_session.query(ShopifyProduct).all()}
        assert {v.product_id for v in variants if v.shopify_id.startswith("1")} == {product_ids["1"]}

    def test_cost_completeness(self, repo):
        products = [
            map_product_node(product_node(1, unit_cost="4.00"), ORG_ID, STORE_ID),
            map_product_node(product_node(2, unit_cost=None), ORG_ID, STORE_ID),
        ]
        asyncio.run(repo.store_products(ORG_ID, STORE_ID, products))

        completeness = asyncio.run(repo.validate_cost_data_completeness(ORG_ID))
        assert completeness.total_variants == 4
        assert completeness.variants_with_cost == 2
        assert completeness.percentage == 50

        asyncio.run(repo.create_product_cost_components(
            ORG_ID, [{"variant_id": "21", "cogs_per_unit": Decimal("3.10")}]
        ))
        completeness = asyncio.run(repo.validate_cost_data_completeness(ORG_ID))
        assert completeness.variants_with_cost == 3

    def test_no_variants_means_zero_percent(self, repo):
        completeness = asyncio.run(repo.validate_cost_data_completeness(ORG_ID))
        assert completeness.total_variants == 0
        assert completeness.percentage == 0


# ============================================================================
# Analytics and sessions
# ============================================================================

class TestSessions:
    def test_analytics_upsert_by_day_and_source(self, repo, db_session):
        entry = AnalyticsEntry(date="2025-03-01", traffic_source="google", sessions=150.0, bounce_rate=30.0)

        asyncio.run(repo.store_analytics(ORG_ID, STORE_ID, [entry]))
        entry.sessions = 160.0
        asyncio.run(repo.store_analytics(ORG_ID, STORE_ID, [entry]))

        rows = db_session.query(ShopifyAnalytics).all()
        assert len(rows) == 1
        assert rows[0].sessions == 160.0

    def test_attributed_orders_and_session_link(self, repo, db_session):
        journey_order = _order_payload(1).order
        journey_order.has_customer_journey = True
        journey_order.visitor_token = "visitor-1"
        asyncio.run(repo.store_orders(ORG_ID, STORE_ID, [journey_order]))

        orders = asyncio.run(repo.get_orders_with_attribution(ORG_ID, "2025-03-01", "2025-03-01"))
        assert len(orders) == 1
        assert orders[0].has_customer_journey is True
        assert orders[0].total_price == Decimal("100.00")
        assert orders[0].city == "Toronto"

        assert asyncio.run(repo.get_orders_with_attribution(ORG_ID, "2025-03-02", "2025-03-05")) == []

        session = session_from_order(orders[0], ORG_ID, STORE_ID)
        assert asyncio.run(repo.get_session(STORE_ID, session.session_id)) is None
        asyncio.run(repo.create_session(session))
        asyncio.run(repo.link_order_session(orders[0].internal_id, session.session_id))

        stored = asyncio.run(repo.get_session(STORE_ID, session.session_id))
        assert stored.visitor_token == "visitor-1"
        assert stored.conversion_value == Decimal("100.00")
        assert db_session.query(ShopifySession).count() == 1
        assert db_session.query(ShopifyOrder).first().session_id == session.session_id


# ============================================================================
# Sync session progress
# ============================================================================

def test_patch_sync_session_metadata_merges(repo, db_session):
    sync = SyncSession(id="sync-1", organization_id=ORG_ID, metadata_json={"stage_status": {"products": "processing"}})
    db_session.add(sync)
    db_session.commit()

    asyncio.run(repo.patch_sync_session_metadata("sync-1", {
        "stage_status": {"orders": "processing"},
        "synced_entities": ["products"],
    }))
    asyncio.run(repo.patch_sync_session_metadata("sync-1", {
        "stage_status": {"products": "completed"},
        "synced_entities": ["customers", "products"],
        "last_cursor": "abc",
    }))

    db_session.refresh(sync)
    assert sync.metadata_json == {
        "stage_status": {"products": "completed", "orders": "processing"},
        "synced_entities": ["customers", "products"],
        "last_cursor": "abc",
    }


def test_patch_unknown_sync_session_is_a_no_op(repo):
    asyncio.run(repo.patch_sync_session_metadata("missing", {"last_cursor": "abc"}))

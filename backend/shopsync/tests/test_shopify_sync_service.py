"""Unit tests for the Shopify sync service.

WHAT:
    Initial / incremental / session syncs driven end to end against fake
    collaborators (client, store lookup, persistence, job queue).

WHY:
    Covers the behavior that is easy to break and hard to see in
    production: bounded order batches, stream isolation, cost-limit
    backoff, inventory batch failures and session fallback.

REFERENCES:
    shopsync/services/shopify_sync_service.py
    shopsync/tests/shopify_fakes.py
"""

import asyncio
import math
from decimal import Decimal

import pytest

from shopsync.config import OrderPersistMode
from shopsync.services.shopify_client import GraphQLResponse
from shopsync.services.shopify_mappers import map_order_node
from shopsync.services.shopify_sync_service import (
    NoActiveStoreError,
    OrderBatch,
    OrderCostLimitError,
    ShopifySyncService,
    aggregate_analytics_rows,
    session_from_order,
    summarize_graphql_errors,
)
from shopsync.services.sync_interfaces import (
    JOB_ORDERS_BATCH,
    PRIORITY_HIGH,
    AttributedOrder,
    CostCompleteness,
)
from shopsync.tests.shopify_fakes import (
    ORG_ID,
    STORE_ID,
    FakeJobQueue,
    FakePersistence,
    FakeShopifyClient,
    FakeStoreLookup,
    customer_node,
    graphql_error,
    make_settings,
    make_store,
    no_sleep,
    order_node,
    page,
    paginate,
    product_node,
)


def _service(client_or_factory, persistence=None, queue=None, store=None, sleep=no_sleep, **settings):
    """Sync service wired to fakes; a single client is reused for every call."""
    if isinstance(client_or_factory, FakeShopifyClient):
        factory = lambda _store: client_or_factory  # noqa: E731
    else:
        factory = client_or_factory
    return ShopifySyncService(
        store_lookup=FakeStoreLookup(store if store is not None else make_store()),
        persistence=persistence if persistence is not None else FakePersistence(),
        job_queue=queue,
        client_factory=factory,
        settings=make_settings(**settings),
        sleep=sleep,
    )


def _orders(n, start=1):
    return [order_node(i) for i in range(start, start + n)]


def _analytics_response(rows):
    columns = ["day", "referrer_source", "sessions", "visitors", "bounce_rate", "conversion_rate"]
    return GraphQLResponse(data={"shop": {"shopifyAnalytics": {"report": {"tableData": {
        "columns": [{"name": name} for name in columns],
        "rows": [{"cells": [{"value": value} for value in row]} for row in rows],
    }}}}})


# ============================================================================
# Initial sync
# ============================================================================

class TestInitialSync:
    """WHAT: Products, orders and customers synced concurrently."""

    def test_full_initial_sync(self):
        client = FakeShopifyClient(
            products=paginate("products", [product_node(i, variants=2) for i in range(1, 4)], 50),
            orders=paginate("orders", _orders(30), 100),
            customers=paginate("customers", [customer_node(i) for i in range(1, 11)], 100),
        )
        persistence = FakePersistence()
        queue = FakeJobQueue()

        result = asyncio.run(_service(client, persistence, queue).initial(ORG_ID))

        assert result.success is True
        assert result.errors is None
        assert result.products_processed == 3
        assert result.customers_processed == 10
        assert result.records_processed == 43
        assert result.data_changed is True
        assert result.batch_stats.batches_scheduled == 2
        assert result.batch_stats.orders_queued == 30
        assert result.batch_stats.job_ids == ["job-1", "job-2"]
        assert "errors" not in result.to_dict()

        assert [len(payload["orders"]) for _, _, payload in queue.jobs] == [25, 5]
        for job_type, priority, payload in queue.jobs:
            assert job_type == JOB_ORDERS_BATCH
            assert priority == PRIORITY_HIGH
            assert payload["organization_id"] == ORG_ID
            assert payload["store_id"] == STORE_ID
            assert payload["refunds"] is None
            assert payload["fulfillments"] is None
        assert [payload["batch_number"] for _, _, payload in queue.jobs] == [1, 2]

        assert len(persistence.calls["store_products"]) == 1
        assert len(persistence.calls["store_products"][0]) == 3
        assert len(persistence.calls["store_customers"][0]) == 10
        assert len(persistence.calls["create_product_cost_components"][0]) == 6
        assert persistence.calls["update_store_last_sync"][0][0] == STORE_ID
        assert persistence.calls["validate_cost_data_completeness"] == [ORG_ID]
        # Orders never go through direct persistence in queue mode
        assert "store_orders" not in persistence.calls

    def test_order_window_uses_created_at_bounds(self):
        client = FakeShopifyClient(shop={"timezoneOffsetMinutes": -300})
        asyncio.run(_service(client, queue=FakeJobQueue()).initial(ORG_ID, date_range={"days_back": 7}))

        query = client.calls["orders"][0][2]
        assert query.startswith("created_at:>='")
        assert "T05:00:00.000Z' AND created_at:<='" in query
        assert query.endswith("T04:59:59.999Z'")

    def test_failed_stream_does_not_abort_siblings(self):
        client = FakeShopifyClient(
            products=paginate("products", [product_node(1)], 50),
            orders=paginate("orders", _orders(3), 100),
            customers=[RuntimeError("customers down")],
        )
        queue = FakeJobQueue()

        result = asyncio.run(_service(client, queue=queue).initial(ORG_ID))

        assert result.success is False
        assert result.errors == ["Customer sync failed: customers down"]
        assert result.products_processed == 1
        assert result.customers_processed == 0
        assert result.batch_stats.orders_queued == 3
        assert result.records_processed == 4
        assert len(queue.jobs) == 1

    def test_product_graphql_errors_fail_only_products(self):
        client = FakeShopifyClient(
            products=[graphql_error("INTERNAL_SERVER_ERROR", "Internal error")],
            orders=paginate("orders", _orders(2), 100),
            customers=paginate("customers", [customer_node(1), customer_node(2)], 100),
        )
        persistence = FakePersistence()

        result = asyncio.run(_service(client, persistence, FakeJobQueue()).initial(ORG_ID))

        assert result.success is False
        assert len(result.errors) == 1
        assert result.errors[0].startswith("Product sync failed:")
        assert result.batch_stats.orders_queued == 2
        assert result.customers_processed == 2
        assert "store_products" not in persistence.calls

    def test_all_streams_fail(self):
        client = FakeShopifyClient(
            products=[RuntimeError("p")],
            orders=[RuntimeError("o")],
            customers=[RuntimeError("c")],
        )
        result = asyncio.run(_service(client, queue=FakeJobQueue()).initial(ORG_ID))

        assert result.success is False
        assert result.errors == [
            "Product sync failed: p",
            "Order sync failed: o",
            "Customer sync failed: c",
        ]
        assert result.records_processed == 0
        assert result.data_changed is False

    @pytest.mark.parametrize("order_count", [0, 1, 25, 26, 50, 51])
    def test_batches_are_bounded(self, order_count):
        client = FakeShopifyClient(orders=paginate("orders", _orders(order_count), 100))
        queue = FakeJobQueue()

        result = asyncio.run(_service(client, queue=queue).initial(ORG_ID))

        assert len(queue.jobs) == math.ceil(order_count / 25)
        assert all(len(payload["orders"]) <= 25 for _, _, payload in queue.jobs)
        assert sum(len(payload["orders"]) for _, _, payload in queue.jobs) == order_count
        assert result.batch_stats.orders_queued == order_count

    def test_enqueued_payloads_are_independent_of_accumulator(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(60), 25))
        queue = FakeJobQueue()

        asyncio.run(_service(client, queue=queue, orders_batch_size=25).initial(ORG_ID))

        first, second, third = (payload for _, _, payload in queue.jobs)
        assert [o["shopify_id"] for o in first["orders"]] == [str(i) for i in range(1, 26)]
        assert [o["shopify_id"] for o in second["orders"]] == [str(i) for i in range(26, 51)]
        assert [o["shopify_id"] for o in third["orders"]] == [str(i) for i in range(51, 61)]
        assert len(first["transactions"]) == 25

    def test_orders_paginate_with_cursor(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(60), 25))

        asyncio.run(_service(client, queue=FakeJobQueue(), orders_batch_size=25).initial(ORG_ID))

        cursors = [call[1] for call in client.calls["orders"]]
        assert cursors == [None, "orders-cursor-1", "orders-cursor-2"]

    def test_no_active_store(self):
        factory_calls = []

        def factory(store):
            factory_calls.append(store)
            return FakeShopifyClient()

        service = ShopifySyncService(
            store_lookup=FakeStoreLookup(None),
            persistence=FakePersistence(),
            job_queue=FakeJobQueue(),
            client_factory=factory,
            settings=make_settings(),
        )

        with pytest.raises(NoActiveStoreError):
            asyncio.run(service.initial(ORG_ID))
        assert factory_calls == []

    def test_without_queue_orders_are_persisted_directly(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(3), 100))
        persistence = FakePersistence()

        result = asyncio.run(_service(client, persistence, queue=None).initial(ORG_ID))

        assert result.batch_stats.batches_scheduled == 1
        assert result.batch_stats.job_ids == []
        assert len(persistence.calls["store_orders"][0]) == 3

    def test_sync_session_progress_is_reported(self):
        client = FakeShopifyClient(
            products=paginate("products", [product_node(1)], 50),
            orders=paginate("orders", _orders(2), 100),
            customers=paginate("customers", [customer_node(1)], 100),
        )
        persistence = FakePersistence()

        asyncio.run(_service(client, persistence, FakeJobQueue()).initial(ORG_ID, sync_session_id="sync-1"))

        stages = {}
        for metadata in persistence.sync_metadata:
            stages.update(metadata.get("stage_status") or {})
        assert stages == {
            "products": "completed",
            "inventory": "completed",
            "orders": "completed",
            "customers": "completed",
        }
        assert any(m.get("total_orders_seen") == 2 for m in persistence.sync_metadata)

    def test_progress_and_bookkeeping_failures_do_not_fail_sync(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(2), 100))
        persistence = FakePersistence(fail_on={
            "patch_sync_session_metadata",
            "update_store_last_sync",
            "validate_cost_data_completeness",
        })

        result = asyncio.run(_service(client, persistence, FakeJobQueue()).initial(ORG_ID, sync_session_id="sync-1"))

        assert result.success is True
        assert result.batch_stats.orders_queued == 2

    def test_low_cost_completeness_only_warns(self, caplog):
        client = FakeShopifyClient()
        persistence = FakePersistence(completeness=CostCompleteness(total_variants=10, variants_with_cost=2))

        with caplog.at_level("WARNING"):
            result = asyncio.run(_service(client, persistence, FakeJobQueue()).initial(ORG_ID))

        assert result.success is True
        assert "Cost data completeness low" in caplog.text


# ============================================================================
# Products / inventory
# ============================================================================

class TestProductStream:
    def test_inventory_batch_failure_is_skipped(self):
        levels_node = {
            "id": "gid://shopify/InventoryItem/21",
            "inventoryLevels": {"edges": [{"node": {"available": 7, "location": {"id": "gid://shopify/Location/1"}}}]},
        }
        client = FakeShopifyClient(
            products=paginate("products", [product_node(1), product_node(2)], 50),
            inventory=[RuntimeError("inventory down"), GraphQLResponse(data={"nodes": [levels_node]})],
        )
        persistence = FakePersistence()

        result = asyncio.run(_service(client, persistence, FakeJobQueue(), inventory_batch_size=2).initial(ORG_ID))

        assert result.products_processed == 2
        assert result.errors is None
        assert client.calls["inventory"] == [
            ["gid://shopify/InventoryItem/11", "gid://shopify/InventoryItem/12"],
            ["gid://shopify/InventoryItem/21", "gid://shopify/InventoryItem/22"],
        ]

        stored = persistence.calls["store_products"][0]
        levels = {v.shopify_id: v.inventory_levels for p in stored for v in p.variants}
        assert levels["11"] == []
        assert levels["12"] == []
        assert levels["21"][0].available == 7
        assert levels["22"] == []

    def test_cost_components_only_for_positive_costs(self):
        client = FakeShopifyClient(products=paginate("products", [
            product_node(1, variants=1, unit_cost="4.00"),
            product_node(2, variants=1, unit_cost=None),
            product_node(3, variants=1, unit_cost="0.00"),
        ], 50))
        persistence = FakePersistence()

        asyncio.run(_service(client, persistence, FakeJobQueue()).initial(ORG_ID))

        assert persistence.calls["create_product_cost_components"] == [
            [{"variant_id": "11", "cogs_per_unit": Decimal("4.00")}],
        ]

    def test_products_paginate_until_last_page(self):
        client = FakeShopifyClient(products=paginate("products", [product_node(i, variants=1) for i in range(1, 6)], 2))

        result = asyncio.run(_service(client, queue=FakeJobQueue(), products_batch_size=2).initial(ORG_ID))

        assert result.products_processed == 5
        assert [call[1] for call in client.calls["products"]] == [None, "products-cursor-1", "products-cursor-2"]


# ============================================================================
# Order cost limits
# ============================================================================

class TestOrderCostLimit:
    """WHAT: MAX_COST_EXCEEDED halves the page size down to a minimum."""

    def test_page_size_is_halved_with_backoff(self):
        sleeps = []

        async def record_sleep(seconds):
            sleeps.append(seconds)

        client = FakeShopifyClient(orders=[
            graphql_error("MAX_COST_EXCEEDED"),
            graphql_error("MAX_COST_EXCEEDED"),
            page("orders", _orders(3)),
        ])

        result = asyncio.run(_service(client, sleep=record_sleep).incremental(ORG_ID))

        assert [call[0] for call in client.calls["orders"]] == [100, 50, 25]
        assert [call[1] for call in client.calls["orders"]] == [None, None, None]
        assert sleeps == [0.25, 0.25]
        assert result.records_processed == 3

    def test_cost_limit_at_minimum_page_size_fails(self):
        client = FakeShopifyClient(orders=[graphql_error("MAX_COST_EXCEEDED")])

        with pytest.raises(OrderCostLimitError):
            asyncio.run(_service(client, orders_batch_size=25).incremental(ORG_ID))

    def test_cost_limit_fails_only_order_stream_in_initial(self):
        client = FakeShopifyClient(
            orders=[graphql_error("MAX_COST_EXCEEDED")],
            customers=paginate("customers", [customer_node(1)], 100),
        )

        result = asyncio.run(_service(client, queue=FakeJobQueue(), orders_batch_size=25).initial(ORG_ID))

        assert result.success is False
        assert result.errors[0].startswith("Order sync failed:")
        assert result.customers_processed == 1

    def test_other_graphql_errors_keep_the_page(self):
        orders_page = page("orders", _orders(2))
        orders_page.errors = [{"message": "Access denied for customer field", "extensions": {"code": "ACCESS_DENIED"}}]
        client = FakeShopifyClient(orders=[orders_page])

        result = asyncio.run(_service(client).incremental(ORG_ID))

        assert result.records_processed == 2


# ============================================================================
# Incremental sync
# ============================================================================

class TestIncrementalSync:
    def test_direct_mode_skips_empty_sibling_arrays(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(3), 100))
        persistence = FakePersistence()

        result = asyncio.run(_service(client, persistence).incremental(ORG_ID, since=1738317600000))

        assert result.success is True
        assert result.records_processed == 3
        assert result.batch_stats.batches_scheduled == 1
        assert result.batch_stats.job_ids == []
        assert len(persistence.calls["store_orders"]) == 1
        assert len(persistence.calls["store_transactions"]) == 1
        assert "store_refunds" not in persistence.calls
        assert "store_fulfillments" not in persistence.calls

    def test_since_builds_updated_at_filter(self):
        client = FakeShopifyClient()
        asyncio.run(_service(client).incremental(ORG_ID, since=1738317600000))
        assert client.calls["orders"][0][2] == "updated_at:>=2025-01-31T10:00:00.000Z"

    def test_since_defaults_to_store_last_sync(self):
        client = FakeShopifyClient()
        store = make_store(last_sync_at=1738317600123)
        asyncio.run(_service(client, store=store).incremental(ORG_ID))
        assert client.calls["orders"][0][2] == "updated_at:>=2025-01-31T10:00:00.123Z"

    def test_since_falls_back_to_recent_window(self, monkeypatch):
        from shopsync.services import shopify_sync_service as svc

        monkeypatch.setattr(svc, "utc_now_ms", lambda: 1738317600000 + 6 * 60 * 60 * 1000)
        client = FakeShopifyClient()
        asyncio.run(_service(client).incremental(ORG_ID))
        assert client.calls["orders"][0][2] == "updated_at:>=2025-01-31T10:00:00.000Z"

    def test_queue_mode_can_be_requested(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(3), 100))
        queue = FakeJobQueue()

        result = asyncio.run(
            _service(client, queue=queue).incremental(ORG_ID, persist_mode=OrderPersistMode.queue)
        )

        assert result.batch_stats.job_ids == ["job-1"]
        assert len(queue.jobs[0][2]["orders"]) == 3

    def test_rerun_writes_identical_records(self):
        persistence = FakePersistence()
        service = _service(
            lambda _store: FakeShopifyClient(orders=paginate("orders", _orders(4), 100)),
            persistence,
        )

        asyncio.run(service.incremental(ORG_ID, since=0))
        asyncio.run(service.incremental(ORG_ID, since=0))

        first, second = persistence.calls["store_orders"]
        assert first == second

    def test_post_sync_skips_cost_validation(self):
        persistence = FakePersistence()
        asyncio.run(_service(FakeShopifyClient(), persistence).incremental(ORG_ID, since=0))

        assert len(persistence.calls["update_store_last_sync"]) == 1
        assert "validate_cost_data_completeness" not in persistence.calls

    def test_persistence_errors_propagate(self):
        client = FakeShopifyClient(orders=paginate("orders", _orders(1), 100))
        persistence = FakePersistence(fail_on={"store_orders"})

        with pytest.raises(RuntimeError):
            asyncio.run(_service(client, persistence).incremental(ORG_ID, since=0))


# ============================================================================
# Session sync
# ============================================================================

def _attributed(internal_id, journey=True, **overrides):
    values = dict(
        internal_id=internal_id,
        shopify_created_at=1740823200000,
        total_price=Decimal("100.00"),
        has_customer_journey=journey,
        utm_source="google",
        visitor_token=f"visitor-{internal_id}",
        first_visit_at=1740819600000,
        moments_count=3,
        referrer_source="google",
        country="Canada",
    )
    values.update(overrides)
    return AttributedOrder(**values)


class TestSessionSync:
    def test_analytics_rows_are_stored(self):
        client = FakeShopifyClient(analytics=_analytics_response([
            ["2025-03-01", "Google", "100", "80", "40%", "2.5"],
            ["2025-03-01", "google", "50", "40", "10", "1"],
            ["2025-03-02", "direct", "0", "0", "0", "0"],
        ]))
        persistence = FakePersistence()

        result = asyncio.run(_service(client, persistence).sync_sessions(
            ORG_ID, STORE_ID, {"start_date": "2025-03-01", "end_date": "2025-03-02"}
        ))

        assert result.data_source == "analytics"
        assert result.sessions_processed == 1
        assert result.analytics_entries_processed == 1
        assert result.orders_processed == 0
        assert "get_orders_with_attribution" not in persistence.calls
        assert client.calls["analytics"] == [("2025-03-01", "2025-03-02")]

        (entry,) = persistence.calls["store_analytics"][0]
        assert entry.date == "2025-03-01"
        assert entry.traffic_source == "google"
        assert entry.sessions == 150
        assert entry.bounce_rate == 30.0
        assert entry.conversion_rate == 2.0
        assert entry.conversions == 3.0

    def test_falls_back_to_orders_and_dedups_sessions(self):
        orders = [_attributed("o1"), _attributed("o2", journey=False), _attributed("o3")]
        persistence = FakePersistence(attributed_orders=orders)
        existing = session_from_order(orders[2], ORG_ID, STORE_ID)
        persistence.sessions[(STORE_ID, existing.session_id)] = existing
        client = FakeShopifyClient(analytics=RuntimeError("analytics scope missing"))

        result = asyncio.run(_service(client, persistence).sync_sessions(
            ORG_ID, STORE_ID, {"start_date": "2025-03-01", "end_date": "2025-03-02"}
        ))

        assert result.data_source == "inferred"
        assert result.sessions_processed == 1
        assert result.orders_processed == 3
        assert [s.session_id for s in persistence.calls["create_session"]] == ["o1_session"]
        assert persistence.links == [("o1", "o1_session"), ("o3", "o3_session")]

    def test_rerun_does_not_duplicate_sessions(self):
        persistence = FakePersistence(attributed_orders=[_attributed("o1")])
        service = _service(FakeShopifyClient(), persistence)
        date_range = {"start_date": "2025-03-01", "end_date": "2025-03-01"}

        first = asyncio.run(service.sync_sessions(ORG_ID, STORE_ID, date_range))
        second = asyncio.run(service.sync_sessions(ORG_ID, STORE_ID, date_range))

        assert first.sessions_processed == 1
        assert second.sessions_processed == 0
        assert len(persistence.calls["create_session"]) == 1
        assert len(persistence.links) == 2

    def test_no_data_source(self):
        result = asyncio.run(_service(FakeShopifyClient(), FakePersistence()).sync_sessions(
            ORG_ID, STORE_ID, {"start_date": "2025-03-01", "end_date": "2025-03-01"}
        ))
        assert result.data_source == "none"
        assert result.sessions_processed == 0


# ============================================================================
# Helpers
# ============================================================================

def test_session_from_order():
    session = session_from_order(_attributed("o1", landing_site="/sale"), ORG_ID, STORE_ID)

    assert session.session_id == "o1_session"
    assert session.start_time == 1740819600000
    assert session.end_time == 1740823200000
    assert session.page_views == 3
    assert session.has_converted is True
    assert session.conversion_value == Decimal("100.00")
    assert session.landing_page == "/sale"
    assert session.country == "Canada"


def test_session_from_order_without_visit_time():
    session = session_from_order(_attributed("o1", first_visit_at=None, moments_count=None), ORG_ID, STORE_ID)
    assert session.start_time == 1740823200000
    assert session.page_views == 1


def test_aggregate_analytics_rows_skips_rows_without_date_or_sessions():
    entries = aggregate_analytics_rows([
        {"day": None, "sessions": "10"},
        {"day": "2025-03-01", "sessions": "abc"},
        {"day": "2025-03-01T00:00:00Z", "referrer_source": None, "sessions": "4"},
    ])
    assert len(entries) == 1
    assert entries[0].traffic_source == "unknown"
    assert entries[0].date == "2025-03-01"


def test_summarize_graphql_errors():
    errors = [
        {"message": "Throttled", "extensions": {"code": "THROTTLED"}},
        {"message": "Throttled again", "extensions": {"code": "THROTTLED"}},
        {"message": "one two three four five six seven eight nine ten eleven\nsecond line"},
        {"message": "fourth sample is dropped"},
    ]
    summary = summarize_graphql_errors(errors)

    assert summary["count"] == 4
    assert summary["codes"] == {"THROTTLED": 2, "UNKNOWN": 2}
    assert summary["samples"] == [
        "Throttled",
        "Throttled again",
        "one two three four five six seven eight nine ten",
    ]


def test_order_batch_snapshot_survives_clear():
    batch = OrderBatch()
    batch.add(map_order_node(order_node(1), ORG_ID, STORE_ID))

    snapshot = batch.snapshot()
    batch.clear()

    assert len(batch) == 0
    assert snapshot["orders"][0]["shopify_id"] == "1"
    assert snapshot["transactions"][0]["shopify_order_id"] == "1"
    assert snapshot["refunds"] is None
    assert snapshot["fulfillments"] is None

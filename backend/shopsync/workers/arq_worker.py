"""ARQ async worker - Shopify sync job processor.

WHAT:
    Job functions for the Shopify sync:
    - process_shopify_orders_batch: persist one bounded order batch
    - process_shopify_initial_sync / incremental / session: run a whole sync

WHY:
    - Order batches are written off the fetch path, so a long initial sync
      never holds thousands of orders in memory or in one transaction
    - Failed batches are retried (arq Retry, up to MAX_TRIES), and every
      write is an upsert, so a replayed batch refreshes rows instead of
      duplicating them

ARCHITECTURE:
    ┌─────────────────┐   enqueue batch    ┌──────────────────────┐
    │ sync service    │───────────────────▶│ arq_worker.py        │
    │ (fetch + map)   │                    │ (persist batch)      │
    └─────────────────┘                    └──────────────────────┘
                                                     │
                                                     ▼
                                           ┌──────────────────────┐
                                           │ ShopifyStoreRepository│
                                           └──────────────────────┘

USAGE:
    # Start worker
    arq shopsync.workers.arq_worker.WorkerSettings

    # Or use the start script
    python -m shopsync.workers.start_arq_worker

REFERENCES:
    - https://arq-docs.helpmanual.io/
    - shopsync/services/shopify_sync_service.py
    - shopsync/workers/arq_enqueue.py
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict

from arq.worker import Retry

from shopsync.database import get_sync_session
from shopsync.services.shopify_store_repository import ShopifyStoreRepository
from shopsync.services.shopify_sync_service import NoActiveStoreError, ShopifySyncService
from shopsync.telemetry import capture_exception, init_observability
from shopsync.workers.arq_enqueue import (
    DEFAULT_QUEUE,
    PRIORITY_QUEUE,
    ArqJobQueue,
    get_redis_settings,
)

logger = logging.getLogger(__name__)

# Payload key -> repository method, in write order (orders before children)
BATCH_WRITERS = (
    ("orders", "store_orders"),
    ("transactions", "store_transactions"),
    ("refunds", "store_refunds"),
    ("fulfillments", "store_fulfillments"),
)

# arq only retries jobs that raise Retry; batches back off linearly
MAX_TRIES = 3
BATCH_RETRY_DELAY_SECONDS = 5


def _build_service(ctx: Dict, repo: ShopifyStoreRepository) -> ShopifySyncService:
    """Sync service wired to the repository and the worker's own Redis pool."""
    return ShopifySyncService(
        store_lookup=repo,
        persistence=repo,
        job_queue=ArqJobQueue(ctx.get("redis")),
    )


# =============================================================================
# ORDER BATCH JOB
# =============================================================================

async def process_shopify_orders_batch(ctx: Dict, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Persist one order batch enqueued by the sync service.

    WHAT:
        Writes orders, then transactions, refunds and fulfillments. Sibling
        arrays that are missing or empty are skipped.

    WHY:
        Failures are reported and raised as arq Retry (with a growing
        delay) until the last try, which re-raises the original error.

    Args:
        ctx: ARQ context
        payload: Batch snapshot (organization_id, store_id, batch_number,
            orders, transactions, refunds, fulfillments, ...)

    Returns:
        Dict with per-entity write counts
    """
    organization_id = payload["organization_id"]
    store_id = payload["store_id"]
    batch_number = payload.get("batch_number")
    job_try = ctx.get("job_try", 1)

    logger.info(
        "[ARQ] Persisting order batch %s for store %s (%d orders, try %d)",
        batch_number, store_id, len(payload.get("orders") or []), job_try,
    )

    counts: Dict[str, int] = {}
    try:
        with get_sync_session() as db:
            repo = ShopifyStoreRepository(db)
            for key, method in BATCH_WRITERS:
                records = payload.get(key)
                if not records:
                    continue
                counts[key] = await getattr(repo, method)(organization_id, store_id, records)
    except Exception as e:
        logger.exception("[ARQ] Order batch %s failed for store %s: %s", batch_number, store_id, e)
        capture_exception(e, extra={
            "operation": "process_shopify_orders_batch",
            "organization_id": organization_id,
            "store_id": store_id,
            "batch_number": batch_number,
            "sync_session_id": payload.get("sync_session_id"),
            "job_try": job_try,
        })
        if job_try < MAX_TRIES:
            raise Retry(defer=job_try * BATCH_RETRY_DELAY_SECONDS) from e
        raise

    logger.info("[ARQ] Order batch %s persisted: %s", batch_number, counts)
    return {"success": True, "batch_number": batch_number, **counts}


# =============================================================================
# WHOLE-SYNC JOBS
# =============================================================================

async def process_shopify_initial_sync(ctx: Dict, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Run an initial sync for an organization.

    Stream failures are part of the returned result; only setup errors
    (no active store) end the job early.
    """
    organization_id = payload["organization_id"]
    logger.info("[ARQ] Starting Shopify initial sync for organization %s", organization_id)

    try:
        with get_sync_session() as db:
            service = _build_service(ctx, ShopifyStoreRepository(db))
            result = await service.initial(
                organization_id,
                sync_session_id=payload.get("sync_session_id"),
                date_range=payload.get("date_range"),
                persist_mode=payload.get("persist_mode"),
            )
    except NoActiveStoreError as e:
        logger.warning("[ARQ] %s", e)
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("[ARQ] Shopify initial sync failed for %s: %s", organization_id, e)
        capture_exception(e, extra={
            "operation": "process_shopify_initial_sync",
            "organization_id": organization_id,
        })
        raise

    logger.info(
        "[ARQ] Shopify initial sync complete for %s: success=%s, records=%d",
        organization_id, result.success, result.records_processed,
    )
    return result.to_dict()


async def process_shopify_incremental_sync(ctx: Dict, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Run an incremental order sync for an organization."""
    organization_id = payload["organization_id"]
    logger.info("[ARQ] Starting Shopify incremental sync for organization %s", organization_id)

    try:
        with get_sync_session() as db:
            service = _build_service(ctx, ShopifyStoreRepository(db))
            result = await service.incremental(
                organization_id,
                since=payload.get("since"),
                persist_mode=payload.get("persist_mode"),
            )
    except NoActiveStoreError as e:
        logger.warning("[ARQ] %s", e)
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("[ARQ] Shopify incremental sync failed for %s: %s", organization_id, e)
        capture_exception(e, extra={
            "operation": "process_shopify_incremental_sync",
            "organization_id": organization_id,
        })
        raise

    logger.info(
        "[ARQ] Shopify incremental sync complete for %s: records=%d",
        organization_id, result.records_processed,
    )
    return result.to_dict()


async def process_shopify_session_sync(ctx: Dict, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Sync analytics sessions (or infer them from orders) for a date range."""
    organization_id = payload["organization_id"]
    store_id = payload["store_id"]
    logger.info("[ARQ] Starting Shopify session sync for organization %s", organization_id)

    try:
        with get_sync_session() as db:
            service = _build_service(ctx, ShopifyStoreRepository(db))
            result = await service.sync_sessions(organization_id, store_id, payload["date_range"])
    except NoActiveStoreError as e:
        logger.warning("[ARQ] %s", e)
        return {"success": False, "error": str(e)}
    except Exception as e:
        logger.exception("[ARQ] Shopify session sync failed for %s: %s", organization_id, e)
        capture_exception(e, extra={
            "operation": "process_shopify_session_sync",
            "organization_id": organization_id,
            "store_id": store_id,
        })
        raise

    logger.info(
        "[ARQ] Shopify session sync complete for %s: source=%s, sessions=%d",
        organization_id, result.data_source, result.sessions_processed,
    )
    return result.to_dict()


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict) -> None:
    """Worker startup - initialize telemetry and log config."""
    import platform

    status = init_observability()

    logger.info("=" * 60)
    logger.info("[ARQ] Worker starting up (Shopify sync)")
    logger.info("=" * 60)
    logger.info("[ARQ] Python: %s", platform.python_version())
    logger.info("[ARQ] Host: %s", platform.node())
    logger.info("[ARQ] Sentry: %s", "enabled" if status.get("sentry") else "disabled")
    logger.info("=" * 60)

    ctx['startup_time'] = datetime.now(timezone.utc)
    ctx['jobs_processed'] = 0


async def shutdown(ctx: Dict) -> None:
    """Worker shutdown - log stats."""
    jobs = ctx.get('jobs_processed', 0)
    uptime = datetime.now(timezone.utc) - ctx.get('startup_time', datetime.now(timezone.utc))

    logger.info("=" * 60)
    logger.info("[ARQ] Worker shutting down")
    logger.info("[ARQ] Jobs processed: %s", jobs)
    logger.info("[ARQ] Uptime: %s", uptime)
    logger.info("=" * 60)


async def on_job_end(ctx: Dict) -> None:
    """Called after each job completes."""
    ctx['jobs_processed'] = ctx.get('jobs_processed', 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration for the default queue.

    - max_jobs=10: Concurrent jobs
    - job_timeout=900: Whole initial syncs of large stores take minutes
    - retry_jobs=True, max_tries=3: Batches are retried, not retried forever
    """

    functions = [
        process_shopify_orders_batch,
        process_shopify_initial_sync,
        process_shopify_incremental_sync,
        process_shopify_session_sync,
    ]

    # Lifecycle hooks
    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    # Redis connection
    redis_settings = get_redis_settings()

    # Performance settings
    max_jobs = 10
    job_timeout = 900
    keep_result = 3600
    retry_jobs = True
    max_tries = MAX_TRIES
    health_check_interval = 30

    queue_name = DEFAULT_QUEUE


class PriorityWorkerSettings(WorkerSettings):
    """Worker for high-priority jobs (order batches).

    USAGE:
        arq shopsync.workers.arq_worker.PriorityWorkerSettings
    """

    queue_name = PRIORITY_QUEUE

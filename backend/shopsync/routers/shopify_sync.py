"""Shopify synchronization endpoints.

WHAT:
    Thin HTTP triggers that enqueue initial, incremental and session sync
    jobs, plus a job status lookup.

WHY:
    - Syncs run for minutes; the request only enqueues and returns a job id
    - Business logic lives in the sync service and runs in the arq worker

REFERENCES:
    - shopsync/services/shopify_sync_service.py
    - shopsync/workers/arq_worker.py (job functions)
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator

from shopsync.config import OrderPersistMode
from shopsync.services.sync_interfaces import (
    JOB_INCREMENTAL_SYNC,
    JOB_INITIAL_SYNC,
    JOB_SESSION_SYNC,
    PRIORITY_LOW,
    PRIORITY_NORMAL,
)
from shopsync.workers.arq_enqueue import ArqJobQueue, JobQueueError

logger = logging.getLogger(__name__)


# =============================================================================
# Pydantic Request/Response Models
# =============================================================================
# WHAT: Request bodies and responses of the sync triggers
# WHY: Validated input before anything is enqueued; OpenAPI docs

class InitialSyncRequest(BaseModel):
    """Request body for the initial sync trigger."""

    organization_id: str = Field(description="Organization owning the store")
    sync_session_id: Optional[str] = Field(default=None, description="Sync session to report progress on")
    days_back: Optional[int] = Field(default=None, ge=1, description="Order window in merchant-local days (default 60)")
    persist_mode: Optional[OrderPersistMode] = Field(default=None, description="Override order persistence (queue/direct)")


class IncrementalSyncRequest(BaseModel):
    """Request body for the incremental sync trigger."""

    organization_id: str = Field(description="Organization owning the store")
    since: Optional[int] = Field(default=None, ge=0, description="Epoch ms (default: store last sync)")
    persist_mode: Optional[OrderPersistMode] = Field(default=None, description="Override order persistence (queue/direct)")


class SessionSyncRequest(BaseModel):
    """Request body for the session sync trigger."""

    organization_id: str = Field(description="Organization owning the store")
    store_id: str = Field(description="Internal store id")
    start_date: date = Field(description="First day (inclusive)")
    end_date: date = Field(description="Last day (inclusive)")

    @model_validator(mode="after")
    def _check_range(self) -> "SessionSyncRequest":
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class SyncJobResponse(BaseModel):
    """Response for every sync trigger."""

    job_id: str = Field(description="arq job id")
    status: str = Field(default="enqueued")


class JobStatusResponse(BaseModel):
    """Status of a background job."""

    job_id: str
    status: str = Field(description="deferred, queued, in_progress, complete or not_found")
    result: Optional[Any] = Field(default=None, description="Job return value once complete")


# =============================================================================
# Router setup
# =============================================================================

router = APIRouter(
    prefix="/shopify/sync",
    tags=["Shopify Sync"],
)


def get_job_queue() -> ArqJobQueue:
    """Job queue dependency (overridden in tests)."""
    return ArqJobQueue()


async def _enqueue(queue: ArqJobQueue, job_type: str, priority: int, payload: dict) -> SyncJobResponse:
    try:
        job_id = await queue.create_job(job_type, priority, payload)
    except JobQueueError as e:
        logger.error(f"[SHOPIFY_SYNC] Failed to enqueue {job_type}: {e}")
        raise HTTPException(status_code=503, detail=str(e))
    return SyncJobResponse(job_id=job_id)


# =============================================================================
# Endpoints
# =============================================================================

@router.post("/initial", response_model=SyncJobResponse, status_code=202)
async def trigger_initial_sync(
    request: InitialSyncRequest,
    queue: ArqJobQueue = Depends(get_job_queue),
) -> SyncJobResponse:
    """Enqueue a full initial sync (products, orders, customers)."""
    logger.info(f"[SHOPIFY_SYNC] HTTP initial sync requested: organization={request.organization_id}")

    payload = {
        "organization_id": request.organization_id,
        "sync_session_id": request.sync_session_id,
        "date_range": {"days_back": request.days_back} if request.days_back else None,
        "persist_mode": request.persist_mode.value if request.persist_mode else None,
    }
    return await _enqueue(queue, JOB_INITIAL_SYNC, PRIORITY_NORMAL, payload)


@router.post("/incremental", response_model=SyncJobResponse, status_code=202)
async def trigger_incremental_sync(
    request: IncrementalSyncRequest,
    queue: ArqJobQueue = Depends(get_job_queue),
) -> SyncJobResponse:
    """Enqueue an incremental order sync."""
    logger.info(f"[SHOPIFY_SYNC] HTTP incremental sync requested: organization={request.organization_id}")

    payload = {
        "organization_id": request.organization_id,
        "since": request.since,
        "persist_mode": request.persist_mode.value if request.persist_mode else None,
    }
    return await _enqueue(queue, JOB_INCREMENTAL_SYNC, PRIORITY_NORMAL, payload)


@router.post("/sessions", response_model=SyncJobResponse, status_code=202)
async def trigger_session_sync(
    request: SessionSyncRequest,
    queue: ArqJobQueue = Depends(get_job_queue),
) -> SyncJobResponse:
    """Enqueue a session sync for a date range."""
    logger.info(
        f"[SHOPIFY_SYNC] HTTP session sync requested: organization={request.organization_id} "
        f"({request.start_date} to {request.end_date})"
    )

    payload = {
        "organization_id": request.organization_id,
        "store_id": request.store_id,
        "date_range": {
            "start_date": request.start_date.isoformat(),
            "end_date": request.end_date.isoformat(),
        },
    }
    return await _enqueue(queue, JOB_SESSION_SYNC, PRIORITY_LOW, payload)


@router.get("/jobs/{job_id}", response_model=JobStatusResponse)
async def get_sync_job(
    job_id: str,
    queue: ArqJobQueue = Depends(get_job_queue),
) -> JobStatusResponse:
    """Look up a sync job's status and result."""
    status = await queue.get_status(job_id)
    if status["status"] == "not_found":
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    return JobStatusResponse(**status)

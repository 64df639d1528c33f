"""FastAPI application entrypoint.

Includes the Shopify sync router and exposes a healthcheck endpoint.

USAGE:
    uvicorn shopsync.main:app --reload
    python -m shopsync.main
"""

import logging

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel

from shopsync.routers import shopify_sync as shopify_sync_router
from shopsync.telemetry import init_observability
from shopsync.workers.arq_enqueue import reset_arq_pool

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str


def create_app() -> FastAPI:
    app = FastAPI(
        title="shopsync API",
        description="""
        Shopify data sync for profit analytics.

        This API provides endpoints for:
        - Triggering initial, incremental and session syncs (background jobs)
        - Looking up sync job status
        """,
        version="1.0.0",
    )

    app.include_router(shopify_sync_router.router)  # Shopify sync triggers

    @app.get("/health", response_model=HealthResponse, tags=["Health"], summary="Health check")
    def health():
        return HealthResponse(status="ok")

    @app.on_event("startup")
    async def startup_event():
        """Initialize error tracking."""
        status = init_observability()
        logger.info("[STARTUP] Observability: %s", status)

    @app.on_event("shutdown")
    async def shutdown_event():
        """Close the shared arq Redis pool."""
        await reset_arq_pool()

    return app


app = create_app()


def main():
    """Start the API server."""
    uvicorn.run("shopsync.main:app", host="0.0.0.0", port=8000, log_level="info")


if __name__ == "__main__":
    main()

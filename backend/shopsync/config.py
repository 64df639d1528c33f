"""Sync configuration.

WHAT:
    Pydantic settings for the Shopify sync pipeline: API version, page sizes,
    batch sizes, persist policy and sync windows.

WHY:
    Batch and page sizes are tuning knobs, not constants. Loading them from
    the environment (or a local .env) lets operators tune a deployment
    without code changes.

USAGE:
    from shopsync.config import get_settings

    settings = get_settings()
    settings.order_persist_batch_size  # 25
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class OrderPersistMode(str, Enum):
    """How accumulated order batches are persisted.

    queue:  each bounded batch is enqueued as a background job
    direct: each bounded batch is written straight to the persistence layer
    """
    queue = "queue"
    direct = "direct"


class SyncSettings(BaseSettings):
    """Shopify sync settings loaded from environment or .env."""

    api_version: str = "2025-07"

    # GraphQL page sizes
    products_batch_size: int = Field(default=50, ge=1, le=250)
    orders_batch_size: int = Field(default=100, ge=1, le=250)
    customers_batch_size: int = Field(default=100, ge=1, le=250)
    inventory_batch_size: int = Field(default=25, ge=1, le=250)

    # Order batching
    order_persist_batch_size: int = Field(default=25, ge=1)
    orders_min_page_size: int = Field(default=25, ge=1)
    orders_cost_backoff_ms: int = Field(default=250, ge=0)
    initial_persist_mode: OrderPersistMode = OrderPersistMode.queue
    incremental_persist_mode: OrderPersistMode = OrderPersistMode.direct

    # Sync windows
    initial_days_back: int = Field(default=60, ge=1)
    incremental_fallback_hours: int = Field(default=6, ge=1)

    # Client pacing (seconds between requests, 0 disables)
    request_spacing_seconds: float = Field(default=0.5, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)

    # Observability
    cost_completeness_warn_percent: int = Field(default=50, ge=0, le=100)

    model_config = SettingsConfigDict(
        env_prefix="SHOPIFY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> SyncSettings:
    """Return cached sync settings instance."""
    return SyncSettings()  # type: ignore[call-arg]

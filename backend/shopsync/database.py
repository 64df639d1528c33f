"""Database engine and session configuration.

WHAT:
    Builds the SQLAlchemy engine and session factory from DATABASE_URL and
    exposes a context manager for workers and request handlers.

WHY:
    The API and the arq worker share one session factory. The engine is
    created on first use, so modules that only need the models (and tests
    running against their own SQLite engine) import without a database.

USAGE:
    from shopsync.database import get_sync_session

    with get_sync_session() as db:
        db.query(ShopifyStore).all()

REFERENCES:
    - shopsync/services/shopify_store_repository.py (main consumer)
"""

import os
from contextlib import contextmanager
from functools import lru_cache
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================

def _get_database_url() -> str:
    """Get DATABASE_URL from environment, loading .env if needed.

    Raises:
        RuntimeError: If DATABASE_URL is not configured
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        from shopsync.utils.env import load_env_file
        load_env_file()
        database_url = os.getenv("DATABASE_URL")

    if not database_url:
        raise RuntimeError(
            "DATABASE_URL is not set. "
            "Ensure backend/.env is loaded or env var is exported."
        )

    return database_url


def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the URL's backend.

    SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )
    return create_engine(
        database_url,
        pool_size=10,           # Base pool size
        max_overflow=20,        # Allow up to 30 total connections under load
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


@lru_cache()
def get_engine() -> Engine:
    return build_engine(_get_database_url())


@lru_cache()
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, autocommit=False)


# =============================================================================
# CONTEXT MANAGERS (for non-FastAPI usage)
# =============================================================================

@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI (workers, scripts).

    Example:
        with get_sync_session() as db:
            stores = db.query(ShopifyStore).all()
    """
    db = get_session_factory()()
    try:
        yield db
    finally:
        db.close()

"""Pytest configuration for shopsync tests

WHAT: Test environment variables and a SQLite-backed database session
WHY: Repository and worker tests need real tables; nothing may touch a
     configured database, Redis or Sentry
REFERENCES:
    - shopsync/models.py
    - shopsync/security.py (reads TOKEN_ENCRYPTION_KEY)
"""

import os
from typing import Generator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Must be URL-safe base64-encoded 32-byte string (Fernet key)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")
os.environ.pop("SENTRY_DSN", None)

from shopsync.models import Base  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine():
    """In-memory SQLite engine with all tables."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()

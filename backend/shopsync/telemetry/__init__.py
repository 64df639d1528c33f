"""
Telemetry Module
================

Error tracking for the sync API and worker.

Components:
- sentry.py: Error tracking (Sentry)

Environment Variables:
- SENTRY_DSN: Sentry project DSN (tracking disabled when unset)
- ENVIRONMENT: Environment name (production, staging, development)

Usage:
    from shopsync.telemetry import init_observability, capture_exception

    init_observability()
"""

from shopsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """Initialize observability tools; returns per-tool init status."""
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]

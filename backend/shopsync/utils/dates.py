"""Timestamp helpers for Shopify payloads.

Shopify returns ISO-8601 strings (``2025-01-31T10:00:00Z``). Records store
epoch milliseconds; absent dates stay ``None``.
"""

from datetime import datetime, timezone
from typing import Optional


def parse_datetime(dt_str: Optional[str]) -> Optional[datetime]:
    """Parse an ISO datetime string into an aware UTC datetime.

    Naive values are assumed to be UTC. Returns None for empty or
    unparseable input.
    """
    if not dt_str or not isinstance(dt_str, str):
        return None
    try:
        parsed = datetime.fromisoformat(dt_str.strip().replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_timestamp_ms(dt_str: Optional[str]) -> Optional[int]:
    """Convert an ISO-8601 string to epoch milliseconds (None when absent)."""
    parsed = parse_datetime(dt_str)
    if parsed is None:
        return None
    return int(parsed.timestamp() * 1000)


def utc_now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def to_iso_utc(ms: int) -> str:
    """Format epoch milliseconds as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"

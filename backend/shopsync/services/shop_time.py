"""Merchant-local sync windows.

WHAT:
    Computes "the last N days" in the shop's own timezone, as both local
    dates and the matching UTC instants.

WHY:
    Order windows are stated by merchants in local days. Using UTC days would
    cut off the evening of the first day for stores west of UTC (and include
    an extra evening for stores east of it).
"""

import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

_OFFSET_RE = re.compile(r"^([+-])(\d{2}):?(\d{2})$")


@dataclass(frozen=True)
class ShopDateRange:
    """Inclusive merchant-local date window plus its UTC bounds."""
    start_date: str  # YYYY-MM-DD (shop local)
    end_date: str    # YYYY-MM-DD (shop local)
    start_utc_iso: str
    end_utc_iso: str
    offset_minutes: int = 0


def parse_offset_minutes(shop: Optional[dict]) -> Optional[int]:
    """UTC offset in minutes from a ``shop`` node.

    Prefers ``timezoneOffsetMinutes``; falls back to parsing
    ``timezoneOffset`` strings like ``-0500`` or ``+05:30``.
    """
    if not shop:
        return None

    minutes = shop.get("timezoneOffsetMinutes")
    if isinstance(minutes, (int, float)) and not isinstance(minutes, bool):
        return int(minutes)

    raw = shop.get("timezoneOffset")
    if isinstance(raw, str):
        match = _OFFSET_RE.match(raw.strip())
        if match:
            sign = -1 if match.group(1) == "-" else 1
            return sign * (int(match.group(2)) * 60 + int(match.group(3)))
    return None


def _iso_ms(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{dt.microsecond // 1000:03d}Z"


def days_back_range(days_back: int, offset_minutes: int, now: Optional[datetime] = None) -> ShopDateRange:
    """Window of ``days_back`` local days ending today (shop local time).

    Example (offset -300, now 2025-03-10T03:00Z, days_back 2):
        local today is 2025-03-09, so start_date 2025-03-08, end_date 2025-03-09,
        start_utc_iso 2025-03-08T05:00:00.000Z, end_utc_iso 2025-03-10T04:59:59.999Z
    """
    if days_back < 1:
        raise ValueError("days_back must be >= 1")

    now = now or datetime.now(timezone.utc)
    offset = timedelta(minutes=offset_minutes)
    local_today: date = (now.astimezone(timezone.utc) + offset).date()
    start_local = local_today - timedelta(days=days_back - 1)

    start_utc = datetime.combine(start_local, time.min, tzinfo=timezone.utc) - offset
    end_utc = datetime.combine(local_today, time.max, tzinfo=timezone.utc) - offset

    return ShopDateRange(
        start_date=start_local.isoformat(),
        end_date=local_today.isoformat(),
        start_utc_iso=_iso_ms(start_utc),
        end_utc_iso=_iso_ms(end_utc),
        offset_minutes=offset_minutes,
    )


async def shop_days_back_range(client, days_back: int, now: Optional[datetime] = None) -> ShopDateRange:
    """Fetch the shop's UTC offset once and build the local ``days_back`` window.

    A failed or unparseable shop-info lookup falls back to UTC (offset 0).
    """
    offset_minutes: Optional[int] = None
    try:
        response = await client.get_shop_info()
        offset_minutes = parse_offset_minutes((response.data or {}).get("shop"))
        if response.errors:
            logger.warning(f"[SHOP_TIME] Shop info returned errors: {response.errors}")
    except Exception as e:
        logger.warning(f"[SHOP_TIME] Could not fetch shop timezone, using UTC: {e}")

    if offset_minutes is None:
        logger.warning("[SHOP_TIME] Shop timezone offset unavailable, using UTC")
        offset_minutes = 0

    return days_back_range(days_back, offset_minutes, now=now)

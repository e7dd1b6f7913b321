# backend/escrowbook/core/timezone_utils.py
"""
Timezone helpers for offering-local schedule arithmetic.

Schedules are written in the offering's wall-clock time; everything that
is compared or stored is UTC.
"""

from datetime import date, datetime, time, timezone
import logging
from typing import Any

import pytz

logger = logging.getLogger(__name__)


def get_timezone(name: str | None) -> Any:
    """Resolve an IANA timezone name, falling back to UTC for unknown names."""
    if not name:
        return pytz.UTC
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        logger.warning("Unknown timezone %s, falling back to UTC", name)
        return pytz.UTC


def is_valid_timezone(name: str) -> bool:
    return name in pytz.all_timezones_set


def local_to_utc(day: date, wall_time: time, tz_name: str | None) -> datetime:
    """Combine a local date and wall time into an aware UTC datetime."""
    tz = get_timezone(tz_name)
    naive = datetime.combine(day, wall_time)
    # is_dst=None would raise on ambiguous times; pick standard time instead
    localized = tz.localize(naive, is_dst=False)
    return localized.astimezone(timezone.utc)


def utc_to_local(value: datetime, tz_name: str | None) -> datetime:
    tz = get_timezone(tz_name)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(tz)


def local_today(now_utc: datetime, tz_name: str | None) -> date:
    return utc_to_local(now_utc, tz_name).date()


def normalize_external_timestamp(raw: str, fallback_tz: str | None) -> datetime:
    """
    Parse an ISO-8601 timestamp from an external calendar into UTC.

    Timestamps without an offset are interpreted in ``fallback_tz`` (the
    calendar's own zone when the collaborator reports one).
    """
    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = get_timezone(fallback_tz).localize(parsed, is_dst=False)
    return parsed.astimezone(timezone.utc)

"""
External busy intervals for availability.

Busy intervals are read-only and never authoritative: they are cached
briefly per provider/platform/range and dropped on explicit invalidation.
A platform that cannot be reached contributes no conflicts.
"""

from dataclasses import dataclass
from datetime import datetime
import logging
import threading
import time
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.config import settings
from ..core.timezone_utils import normalize_external_timestamp
from ..integrations.calendar_client import CalendarClient, CalendarError
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BusyInterval:
    provider_id: str
    platform: str
    start: datetime
    end: datetime
    title: Optional[str] = None

    @property
    def interval(self) -> Tuple[datetime, datetime]:
        return (self.start, self.end)


_CacheKey = Tuple[str, str, str, str]

MAX_CACHE_ENTRIES = 1024


class CalendarService:
    """Fetches and caches external busy intervals."""

    _cache: Dict[_CacheKey, Tuple[float, List[BusyInterval]]] = {}
    _cache_lock = threading.Lock()

    def __init__(
        self,
        client: Optional[CalendarClient] = None,
        platforms: Optional[Sequence[str]] = None,
        cache_ttl_seconds: Optional[int] = None,
    ):
        if client is None and settings.calendar_base_url:
            client = CalendarClient(
                base_url=settings.calendar_base_url, timeout=settings.calendar_timeout_seconds
            )
        self.client = client
        self.platforms = list(platforms if platforms is not None else settings.calendar_platforms)
        self.cache_ttl_seconds = (
            settings.calendar_cache_ttl_seconds if cache_ttl_seconds is None else cache_ttl_seconds
        )

    def get_busy_intervals(
        self,
        provider_id: str,
        start: datetime,
        end: datetime,
        fallback_timezone: Optional[str] = None,
        use_cache: bool = True,
    ) -> List[BusyInterval]:
        """
        Busy intervals from every linked platform that overlap ``[start, end)``.

        ``use_cache=False`` always asks the platforms; booking creation needs
        the live answer.
        """
        if self.client is None:
            return []
        intervals: List[BusyInterval] = []
        for platform in self.platforms:
            intervals.extend(
                self._platform_busy(provider_id, platform, start, end, fallback_timezone, use_cache)
            )
        return sorted(intervals, key=lambda item: item.start)

    def invalidate(self, provider_id: str) -> None:
        with self._cache_lock:
            for key in [k for k in self._cache if k[0] == provider_id]:
                self._cache.pop(key, None)

    @classmethod
    def clear_cache(cls) -> None:
        with cls._cache_lock:
            cls._cache.clear()

    def _platform_busy(
        self,
        provider_id: str,
        platform: str,
        start: datetime,
        end: datetime,
        fallback_timezone: Optional[str],
        use_cache: bool,
    ) -> List[BusyInterval]:
        if self.client is None:
            return []
        key = (provider_id, platform, start.isoformat(), end.isoformat())
        now = time.monotonic()
        if use_cache:
            with self._cache_lock:
                cached = self._cache.get(key)
                if cached is not None and cached[0] > now:
                    prometheus_metrics.record_calendar_fetch(platform, "cached")
                    return list(cached[1])

        try:
            raw_entries = self.client.fetch_busy(provider_id, platform, start, end)
        except CalendarError as exc:
            logger.warning(
                "Calendar fetch failed; treating platform as free",
                extra={"provider_id": provider_id, "platform": platform, "error": exc.message},
            )
            prometheus_metrics.record_calendar_fetch(platform, "degraded")
            return []

        intervals: List[BusyInterval] = []
        for entry in raw_entries:
            try:
                busy_start = normalize_external_timestamp(
                    str(entry["start"]), entry.get("timezone") or fallback_timezone
                )
                busy_end = normalize_external_timestamp(
                    str(entry["end"]), entry.get("timezone") or fallback_timezone
                )
            except (KeyError, ValueError) as exc:
                logger.warning(
                    "Skipping malformed busy interval",
                    extra={"provider_id": provider_id, "platform": platform, "error": str(exc)},
                )
                continue
            if busy_start < busy_end and busy_start < end and start < busy_end:
                intervals.append(
                    BusyInterval(provider_id, platform, busy_start, busy_end, entry.get("title"))
                )

        self._store(key, now, intervals)
        prometheus_metrics.record_calendar_fetch(platform, "ok")
        return list(intervals)

    def _store(self, key: _CacheKey, now: float, intervals: List[BusyInterval]) -> None:
        with self._cache_lock:
            for stale in [k for k, (expires, _) in self._cache.items() if expires <= now]:
                del self._cache[stale]
            if len(self._cache) >= MAX_CACHE_ENTRIES:
                # Drop the entries closest to expiry first
                by_expiry = sorted(self._cache, key=lambda k: self._cache[k][0])
                for old in by_expiry[: len(self._cache) - MAX_CACHE_ENTRIES + 1]:
                    del self._cache[old]
            self._cache[key] = (now + self.cache_ttl_seconds, intervals)

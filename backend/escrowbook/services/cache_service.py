# backend/escrowbook/services/cache_service.py
"""
Cache service for the month availability rollup.

Redis backs the cache when configured; otherwise a process-wide in-memory
store is used so every service instance sees the same invalidations.
Only the coarse month view is cached. The commit-time recheck always
reads the database.
"""

from datetime import datetime, timedelta
import fnmatch
import json
import logging
import threading
from typing import Any, Dict, Optional, Tuple

import redis
from redis import Redis
from redis.exceptions import RedisError

from ..core.config import settings
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)


class CacheKeyBuilder:
    """Consistent cache key generation."""

    @staticmethod
    def month_rollup(provider_id: str, offering_id: str, year: int, month: int) -> str:
        return f"avail:month:{provider_id}:{offering_id}:{year:04d}-{month:02d}"

    @staticmethod
    def provider_pattern(provider_id: str) -> str:
        return f"avail:month:{provider_id}:*"


class CacheService:
    """Key/value cache with TTL, pattern invalidation and in-memory fallback."""

    # Shared across instances so invalidation is visible process-wide
    _memory_cache: Dict[str, Tuple[str, datetime]] = {}
    _memory_lock = threading.Lock()

    def __init__(self, redis_client: Optional[Redis] = None, use_redis: bool = True):
        self.redis: Optional[Redis] = redis_client
        if self.redis is None and use_redis and settings.redis_url:
            self._setup_redis_connection()
        self.key_builder = CacheKeyBuilder()

    def _setup_redis_connection(self) -> None:
        """Setup Redis connection with fallback to in-memory cache."""
        try:
            client = redis.from_url(
                settings.redis_url or "redis://localhost:6379",
                decode_responses=True,
                socket_connect_timeout=5,
                retry_on_timeout=True,
            )
            client.ping()
            self.redis = client
            logger.info("Connected to Redis for availability cache")
        except RedisError as e:
            logger.warning(f"Redis not available: {e}. Using in-memory fallback.")
            self.redis = None

    def get(self, key: str) -> Optional[Any]:
        if self.redis is not None:
            try:
                value = self.redis.get(key)
            except RedisError as e:
                logger.error(f"Cache get error for key {key}: {e}")
                return None
            return json.loads(value) if value is not None else None

        with self._memory_lock:
            entry = self._memory_cache.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if datetime.now() >= expires_at:
                del self._memory_cache[key]
                return None
            return json.loads(value)

    def set(self, key: str, value: Any, ttl: int) -> bool:
        if self.redis is not None:
            try:
                self.redis.setex(key, ttl, json.dumps(value, default=str))
                return True
            except RedisError as e:
                logger.error(f"Cache set error for key {key}: {e}")
                return False

        with self._memory_lock:
            self._memory_cache[key] = (
                json.dumps(value, default=str),
                datetime.now() + timedelta(seconds=ttl),
            )
        return True

    def delete_pattern(self, pattern: str) -> int:
        if self.redis is not None:
            count = 0
            try:
                for key in self.redis.scan_iter(match=pattern):
                    if self.redis.delete(key):
                        count += 1
            except RedisError as e:
                logger.error(f"Cache delete pattern error: {e}")
            return count

        with self._memory_lock:
            keys = [k for k in self._memory_cache if fnmatch.fnmatchcase(k, pattern)]
            for key in keys:
                self._memory_cache.pop(key, None)
        return len(keys)

    def clear(self) -> None:
        with self._memory_lock:
            self._memory_cache.clear()

    # Availability helpers

    def get_month_rollup(
        self, provider_id: str, offering_id: str, year: int, month: int
    ) -> Optional[Dict[str, Any]]:
        value = self.get(self.key_builder.month_rollup(provider_id, offering_id, year, month))
        prometheus_metrics.record_availability_cache("hit" if value is not None else "miss")
        return value

    def set_month_rollup(
        self, provider_id: str, offering_id: str, year: int, month: int, value: Dict[str, Any]
    ) -> None:
        self.set(
            self.key_builder.month_rollup(provider_id, offering_id, year, month),
            value,
            settings.month_cache_ttl_seconds,
        )

    def invalidate_provider_availability(self, provider_id: str) -> int:
        count = self.delete_pattern(self.key_builder.provider_pattern(provider_id))
        prometheus_metrics.record_availability_cache("invalidate")
        logger.debug(
            "Invalidated month availability", extra={"provider_id": provider_id, "keys": count}
        )
        return count


_default_cache: Optional[CacheService] = None
_default_cache_lock = threading.Lock()


def get_cache_service() -> CacheService:
    """Process-wide cache service instance."""
    global _default_cache
    if _default_cache is None:
        with _default_cache_lock:
            if _default_cache is None:
                _default_cache = CacheService()
    return _default_cache

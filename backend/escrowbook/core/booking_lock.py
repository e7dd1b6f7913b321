from __future__ import annotations

from contextlib import contextmanager
import logging
import threading
import time
from typing import Dict, Iterator, Optional
import uuid

from redis import Redis
from redis.exceptions import RedisError

from escrowbook.core.config import settings
from escrowbook.core.exceptions import SlotUnavailable
from escrowbook.monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_SYNC_REDIS: Optional[Redis] = None
_SYNC_REDIS_LOCK = threading.Lock()

_LOCAL_LOCKS: Dict[str, threading.Lock] = {}
_LOCAL_LOCKS_GUARD = threading.Lock()

# Deletes the key only if we still own it
_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""


def _lock_key(provider_id: str) -> str:
    return f"escrowbook:lock:provider:{provider_id}:slots"


def _get_sync_redis() -> Optional[Redis]:
    global _SYNC_REDIS
    if not settings.redis_url:
        return None
    if _SYNC_REDIS is not None:
        return _SYNC_REDIS
    with _SYNC_REDIS_LOCK:
        if _SYNC_REDIS is not None:
            return _SYNC_REDIS
        try:
            client = Redis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            client.ping()
        except RedisError as exc:
            logger.warning("provider_lock_redis_unavailable: %s", exc)
            return None
        _SYNC_REDIS = client
        return _SYNC_REDIS


def _local_lock(provider_id: str) -> threading.Lock:
    with _LOCAL_LOCKS_GUARD:
        lock = _LOCAL_LOCKS.get(provider_id)
        if lock is None:
            lock = threading.Lock()
            _LOCAL_LOCKS[provider_id] = lock
        return lock


def _acquire_redis(client: Redis, key: str, token: str, ttl_s: int, wait_s: float) -> bool:
    deadline = time.monotonic() + wait_s
    while True:
        if client.set(key, token, nx=True, ex=ttl_s):
            return True
        if time.monotonic() >= deadline:
            return False
        time.sleep(0.05)


@contextmanager
def provider_slot_lock(
    provider_id: str,
    ttl_s: Optional[int] = None,
    wait_s: Optional[float] = None,
) -> Iterator[None]:
    """
    Serialize slot commits for one provider.

    The in-process lock always applies; the Redis lock extends it across
    workers when Redis is configured. A lock that cannot be obtained in
    ``wait_s`` means a competing commit for the same provider is running,
    which is reported as ``SlotUnavailable``.
    """
    ttl = ttl_s or settings.booking_lock_ttl_seconds
    wait = settings.booking_lock_wait_seconds if wait_s is None else wait_s

    local = _local_lock(provider_id)
    if not local.acquire(timeout=wait):
        prometheus_metrics.record_provider_lock("acquire", "blocked")
        raise SlotUnavailable(reason="concurrent_booking", details={"provider_id": provider_id})

    client = _get_sync_redis()
    token = uuid.uuid4().hex
    key = _lock_key(provider_id)
    held_remote = False
    try:
        if client is not None:
            try:
                held_remote = _acquire_redis(client, key, token, ttl, wait)
            except RedisError as exc:
                prometheus_metrics.record_provider_lock("acquire", "error")
                logger.warning(
                    "provider_lock_redis_acquire_failed",
                    extra={"provider_id": provider_id, "error": str(exc)},
                )
                raise SlotUnavailable(
                    reason="lock_unavailable", details={"provider_id": provider_id}
                ) from exc
            if not held_remote:
                prometheus_metrics.record_provider_lock("acquire", "blocked")
                raise SlotUnavailable(
                    reason="concurrent_booking", details={"provider_id": provider_id}
                )
        prometheus_metrics.record_provider_lock("acquire", "success")
        yield
    finally:
        if held_remote and client is not None:
            try:
                client.eval(_RELEASE_SCRIPT, 1, key, token)
            except RedisError as exc:
                prometheus_metrics.record_provider_lock("release", "error")
                logger.warning(
                    "provider_lock_redis_release_failed",
                    extra={"provider_id": provider_id, "error": str(exc)},
                )
        local.release()

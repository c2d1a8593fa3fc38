"""Per-key mutual exclusion for single-flight work (token refresh).

MemoryLockStore covers one process; RedisLockStore extends the guarantee to
every worker sharing the same Redis.
"""
from __future__ import annotations
from contextlib import contextmanager
from typing import ContextManager, Protocol, Dict, Iterator, Optional
import logging
import threading

from ..config import get_settings

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    pass


class LockStore(Protocol):
    def hold(self, key: str, timeout: float = 30.0) -> ContextManager[None]: ...


class MemoryLockStore:
    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: float = 30.0) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=timeout):
            raise LockTimeout(key)
        try:
            yield
        finally:
            lock.release()

    def size(self) -> int:
        return len(self._locks)


class RedisLockStore:
    """Redis-backed implementation.

    Key layout:
      calsync:lock:<key> -> redis-py Lock token (expires after lease_seconds)
    """
    KEY_PREFIX = "calsync:lock:"

    def __init__(self, redis_client, lease_seconds: float = 60.0):
        self.redis = redis_client
        self.lease_seconds = lease_seconds

    @contextmanager
    def hold(self, key: str, timeout: float = 30.0) -> Iterator[None]:
        lock = self.redis.lock(self.KEY_PREFIX + key, timeout=self.lease_seconds, blocking_timeout=timeout)
        if not lock.acquire():
            raise LockTimeout(key)
        try:
            yield
        finally:
            try:
                lock.release()
            except Exception:  # lease already expired
                logger.warning("redis lock %s expired before release", key)


_store: Optional[LockStore] = None
_store_guard = threading.Lock()


def get_lock_store() -> LockStore:
    """Process-wide store selected by SYNC_LOCK_BACKEND (memory | redis)."""
    global _store
    with _store_guard:
        if _store is None:
            settings = get_settings()
            if settings.lock_backend == "redis":
                try:
                    import redis  # type: ignore
                    _store = RedisLockStore(redis.from_url(settings.redis_url))
                except Exception:
                    # Fallback to memory if redis unavailable
                    logger.warning("redis lock backend unavailable; using in-process locks")
                    _store = MemoryLockStore()
            else:
                _store = MemoryLockStore()
        return _store

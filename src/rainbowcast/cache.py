"""
TTL cache stores used for throttle markers and map query results.

Entries are best-effort: losing one means a duplicate alert or a cache miss,
never corrupted data. Neither store is a lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import delete
from sqlalchemy.orm import sessionmaker

from . import crud
from .models import CacheEntry
from .timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class Cache(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, key: str, value: Any, ttl: timedelta) -> None: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> None: ...


class MemoryCache:
    """Process-local store. Fine for a single worker and for tests."""

    def __init__(self, clock: Clock = utcnow) -> None:
        self._clock = clock
        self._entries: dict[str, tuple[Any, datetime]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: timedelta) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class DatabaseCache:
    """Store shared by every worker process through the cache_entries table."""

    def __init__(self, session_factory: sessionmaker, clock: Clock = utcnow) -> None:
        self._session_factory = session_factory
        self._clock = clock

    def get(self, key: str) -> Any:
        with self._session_factory() as session:
            entry = session.get(CacheEntry, key)
            if entry is None:
                return None
            if as_utc(entry.expires_at) <= self._clock():
                return None
            return entry.value

    def set(self, key: str, value: Any, ttl: timedelta) -> None:
        row = {"key": key, "value": value, "expires_at": self._clock() + ttl}
        with self._session_factory() as session:
            # single statement, so concurrent first writers cannot collide on the key
            crud.upsert(session, CacheEntry, [row], ["key"])
            session.commit()

    def exists(self, key: str) -> bool:
        return self.get(key) is not None

    def delete(self, key: str) -> None:
        with self._session_factory() as session:
            session.execute(delete(CacheEntry).where(CacheEntry.key == key))
            session.commit()

    def purge_expired(self) -> int:
        with self._session_factory() as session:
            result = session.execute(delete(CacheEntry).where(CacheEntry.expires_at <= self._clock()))
            session.commit()
            return max(result.rowcount or 0, 0)


def fetch(cache: Cache, key: str, ttl: timedelta, compute: Callable[[], Any]) -> Any:
    """Cache-aside read: return the cached value or compute, store and return it."""
    cached = cache.get(key)
    if cached is not None:
        logger.debug("[Cache] hit %s", key)
        return cached
    logger.debug("[Cache] miss %s", key)
    value = compute()
    cache.set(key, value, ttl)
    return value


def build_cache(backend: str, session_factory: Optional[sessionmaker] = None) -> Cache:
    if backend == "memory":
        return MemoryCache()
    if backend == "database":
        if session_factory is None:
            raise ValueError("database cache needs a session factory")
        return DatabaseCache(session_factory)
    raise ValueError(f"Unknown CACHE_BACKEND: {backend!r}")

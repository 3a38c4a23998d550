"""
Cache stores for generated exercises.

Key-value with explicit TTL:
- In-memory store with LRU eviction past `max_entries`
- SQLAlchemy store backed by the `exercise_cache` table

Expired entries are never returned; `clean_expired` removes them for good.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from loguru import logger
from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session, sessionmaker

from aves.core.clock import utcnow
from aves.db.database import session_scope
from aves.db.models import ExerciseCacheRow


@dataclass
class CacheEntry:
    """One generated payload with its lifetime and usage counters."""

    key: str
    payload: dict[str, Any]
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    access_count: int = 0
    last_accessed_at: datetime | None = None
    generation_time_ms: int | None = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


class CacheStore(ABC):
    """TTL key-value store for `CacheEntry` rows."""

    @abstractmethod
    def get(self, key: str, now: datetime) -> CacheEntry | None:
        """Fresh entry for `key` with access counters bumped, or None."""

    @abstractmethod
    def put(self, entry: CacheEntry) -> None:
        """Insert or replace the entry for `entry.key`."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove one key; returns whether it existed."""

    @abstractmethod
    def delete_prefix(self, prefix: str) -> int:
        """Remove every key starting with `prefix`; returns the count."""

    @abstractmethod
    def clear(self) -> int:
        """Remove everything; returns the count."""

    @abstractmethod
    def clean_expired(self, now: datetime) -> int:
        """Remove expired entries; returns the count."""

    @abstractmethod
    def __len__(self) -> int: ...

    @property
    def evictions(self) -> int:
        """Entries dropped for capacity (stores without a cap report 0)."""
        return 0


# =============================================================================
# In-Memory Store
# =============================================================================


class InMemoryCacheStore(CacheStore):
    """OrderedDict-backed LRU store."""

    def __init__(self, max_entries: int = 10000):
        self.max_entries = max_entries
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.Lock()
        self._evictions = 0

    def get(self, key: str, now: datetime) -> CacheEntry | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            entry.access_count += 1
            entry.last_accessed_at = now
            self._entries.move_to_end(key)
            return replace(entry, payload=copy.deepcopy(entry.payload))

    def put(self, entry: CacheEntry) -> None:
        with self._lock:
            self._entries[entry.key] = replace(entry, payload=copy.deepcopy(entry.payload))
            self._entries.move_to_end(entry.key)
            while len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug(f"Evicted cache entry {evicted[:24]}")

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def clean_expired(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def evictions(self) -> int:
        return self._evictions


# =============================================================================
# SQLAlchemy Store
# =============================================================================


class SqlCacheStore(CacheStore):
    """`exercise_cache` table; expiry is enforced on read."""

    def __init__(self, session_factory: sessionmaker[Session] | None = None):
        self._session_factory = session_factory

    def get(self, key: str, now: datetime) -> CacheEntry | None:
        with session_scope(self._session_factory) as session:
            row = session.get(ExerciseCacheRow, key)
            if row is None or row.expires_at <= now:
                return None
            row.access_count = (row.access_count or 0) + 1
            row.last_accessed_at = now
            return CacheEntry(
                key=row.cache_key,
                payload=copy.deepcopy(row.payload),
                expires_at=row.expires_at,
                created_at=row.created_at,
                access_count=row.access_count,
                last_accessed_at=row.last_accessed_at,
                generation_time_ms=row.generation_time_ms,
            )

    def put(self, entry: CacheEntry) -> None:
        with session_scope(self._session_factory) as session:
            session.merge(
                ExerciseCacheRow(
                    cache_key=entry.key,
                    payload=entry.payload,
                    created_at=entry.created_at,
                    expires_at=entry.expires_at,
                    last_accessed_at=entry.last_accessed_at,
                    access_count=entry.access_count,
                    generation_time_ms=entry.generation_time_ms,
                )
            )

    def delete(self, key: str) -> bool:
        with session_scope(self._session_factory) as session:
            result = session.execute(delete(ExerciseCacheRow).where(ExerciseCacheRow.cache_key == key))
            return result.rowcount > 0

    def delete_prefix(self, prefix: str) -> int:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(ExerciseCacheRow).where(ExerciseCacheRow.cache_key.startswith(prefix, autoescape=True))
            )
            return result.rowcount

    def clear(self) -> int:
        with session_scope(self._session_factory) as session:
            return session.execute(delete(ExerciseCacheRow)).rowcount

    def clean_expired(self, now: datetime) -> int:
        with session_scope(self._session_factory) as session:
            result = session.execute(delete(ExerciseCacheRow).where(ExerciseCacheRow.expires_at <= now))
            return result.rowcount

    def __len__(self) -> int:
        with session_scope(self._session_factory) as session:
            return session.scalar(select(func.count()).select_from(ExerciseCacheRow)) or 0

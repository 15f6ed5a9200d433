"""Short-lived result cache keyed by content fingerprint."""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from genrelay.orchestrator.errors import StoreError
from genrelay.orchestrator.models import CacheEntryView, CacheStats
from genrelay.storage.common import to_db_datetime, to_utc_aware, utc_now
from genrelay.storage.sqlmodel_models import ResultCacheEntry

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ResultCache(Protocol):
    """Cache contract shared by memory and SQLite implementations."""

    def get(self, key: str) -> CacheEntryView | None: ...

    def set(
        self,
        key: str,
        result: dict[str, Any],
        *,
        ttl_seconds: int,
        kind: str,
    ) -> CacheEntryView: ...

    def sweep(self) -> int: ...

    def stats(self) -> CacheStats: ...


class MemoryResultCache:
    """Process-local cache; entries are frozen and swapped, never mutated."""

    def __init__(self, *, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._entries: dict[str, CacheEntryView] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> CacheEntryView | None:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if entry.expires_at <= now:
                del self._entries[key]
                self._misses += 1
                return None
            entry = replace(entry, hit_count=entry.hit_count + 1)
            self._entries[key] = entry
            self._hits += 1
            return entry

    def set(
        self,
        key: str,
        result: dict[str, Any],
        *,
        ttl_seconds: int,
        kind: str,
    ) -> CacheEntryView:
        now = self._clock()
        entry = CacheEntryView(
            fingerprint=key,
            kind=kind,
            result=dict(result),
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )
        with self._lock:
            self._entries[key] = entry
        return entry

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> CacheStats:
        with self._lock:
            return CacheStats(size=len(self._entries), hits=self._hits, misses=self._misses)


class SqlResultCache:
    """SQLite-backed cache that survives restarts.

    Hit/miss counters are process-local; ``size`` counts unexpired rows.
    """

    def __init__(self, *, engine: Engine, clock: Clock = utc_now) -> None:
        self.engine = engine
        self._clock = clock
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(self, key: str) -> CacheEntryView | None:
        now = to_db_datetime(self._clock())
        try:
            with Session(self.engine) as session:
                row = session.exec(
                    select(ResultCacheEntry).where(ResultCacheEntry.fingerprint == key),
                ).one_or_none()
                if row is None:
                    self._count(hit=False)
                    return None
                if row.expires_at <= now:
                    session.delete(row)
                    session.commit()
                    self._count(hit=False)
                    return None
                session.exec(
                    sa_update(ResultCacheEntry)
                    .where(col(ResultCacheEntry.fingerprint) == key)
                    .values(hit_count=col(ResultCacheEntry.hit_count) + 1),
                )
                session.commit()
                session.refresh(row)
                entry = _to_entry_view(row)
        except SQLAlchemyError as error:
            raise StoreError(f"Result cache read failed for {key}: {error}") from error
        self._count(hit=True)
        return entry

    def set(
        self,
        key: str,
        result: dict[str, Any],
        *,
        ttl_seconds: int,
        kind: str,
    ) -> CacheEntryView:
        now = self._clock()
        expires_at = now + timedelta(seconds=ttl_seconds)
        try:
            with Session(self.engine) as session:
                existing = session.exec(
                    select(ResultCacheEntry).where(ResultCacheEntry.fingerprint == key),
                ).one_or_none()
                if existing is not None:
                    session.delete(existing)
                    session.flush()
                row = ResultCacheEntry(
                    fingerprint=key,
                    kind=kind,
                    result_json=json.dumps(result, ensure_ascii=False, sort_keys=True),
                    hit_count=0,
                    created_at=to_db_datetime(now),
                    expires_at=to_db_datetime(expires_at),
                )
                session.add(row)
                session.commit()
                session.refresh(row)
                return _to_entry_view(row)
        except SQLAlchemyError as error:
            raise StoreError(f"Result cache write failed for {key}: {error}") from error

    def sweep(self) -> int:
        now = to_db_datetime(self._clock())
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_delete(ResultCacheEntry).where(col(ResultCacheEntry.expires_at) <= now),
                )
                session.commit()
                removed = int(result.rowcount or 0)
        except SQLAlchemyError as error:
            raise StoreError(f"Result cache sweep failed: {error}") from error
        if removed:
            logger.info("Result cache sweep removed %d expired entries", removed)
        return removed

    def stats(self) -> CacheStats:
        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            size = session.exec(
                select(func.count())
                .select_from(ResultCacheEntry)
                .where(col(ResultCacheEntry.expires_at) > now),
            ).one()
        with self._lock:
            return CacheStats(size=int(size), hits=self._hits, misses=self._misses)

    def _count(self, *, hit: bool) -> None:
        with self._lock:
            if hit:
                self._hits += 1
            else:
                self._misses += 1


def build_result_cache(*, backend: str, engine: Engine | None = None) -> ResultCache:
    """Construct the configured cache backend."""

    if backend == "memory":
        return MemoryResultCache()
    if backend == "sqlite":
        if engine is None:
            raise ValueError("SQLite result cache requires an engine.")
        return SqlResultCache(engine=engine)
    raise ValueError(f"Unsupported result cache backend: {backend!r}")


def _to_entry_view(row: ResultCacheEntry) -> CacheEntryView:
    parsed = json.loads(row.result_json)
    return CacheEntryView(
        fingerprint=row.fingerprint,
        kind=row.kind,
        result=parsed if isinstance(parsed, dict) else {"value": parsed},
        created_at=to_utc_aware(row.created_at),
        expires_at=to_utc_aware(row.expires_at),
        hit_count=row.hit_count,
    )

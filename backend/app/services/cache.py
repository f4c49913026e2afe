"""Stale-while-revalidate cache with per-key in-flight de-duplication.

Entry lifecycle by age since the last successful refresh:

* no payload, or older than ``stale_seconds``: the caller refreshes and waits;
* up to ``ttl_seconds``: served as fresh;
* up to ``stale_seconds``: served stale while one background refresh runs,
  at most once per ``revalidate_seconds`` per key.

Concurrent callers needing the same key share one refresh. A failed refresh
keeps the previous payload; only a key that has never produced one raises
``DataUnavailableError``.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Callable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from app.core.config import Settings
from app.errors import DataUnavailableError

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class Refreshed:
    payload: Any
    source_version: Any = None


Refresher = Callable[[], Refreshed]


@dataclass(slots=True)
class CacheEntry:
    payload: Any = None
    has_payload: bool = False
    last_success_at: float | None = None
    last_error_at: float | None = None
    last_error: str | None = None
    source_version: Any = None


def _iso(value: float | None) -> str | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class CacheMeta:
    stale: bool
    age_seconds: int | None
    last_success_at: float | None
    last_error_at: float | None
    last_error: str | None
    source_version: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "stale": self.stale,
            "age_seconds": self.age_seconds,
            "last_ok_at": _iso(self.last_success_at),
            "last_error_at": _iso(self.last_error_at),
            "last_error": self.last_error,
            "source_version": self.source_version,
        }


@dataclass(frozen=True, slots=True)
class CachedResult:
    payload: Any
    meta: CacheMeta


class RevalidatingCache:
    def __init__(
        self,
        *,
        ttl_seconds: float,
        stale_seconds: float,
        revalidate_seconds: float,
        clock: Clock = time.time,
        executor: Executor | None = None,
        max_workers: int = 4,
    ) -> None:
        if stale_seconds < ttl_seconds:
            raise ValueError("stale_seconds must be >= ttl_seconds")
        self.ttl_seconds = ttl_seconds
        self.stale_seconds = stale_seconds
        self.revalidate_seconds = revalidate_seconds
        self._clock = clock
        self._executor = executor
        self._owns_executor = executor is None
        self._max_workers = max_workers

        self._entries: dict[str, CacheEntry] = {}
        self._inflight: dict[str, Future] = {}
        self._last_revalidate: dict[str, float] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "RevalidatingCache":
        kwargs.setdefault("max_workers", settings.cache_worker_threads)
        return cls(
            ttl_seconds=settings.cache_ttl_seconds,
            stale_seconds=settings.cache_stale_seconds,
            revalidate_seconds=settings.cache_revalidate_seconds,
            **kwargs,
        )

    # ------------------------------------------------------------------
    # Public API

    def get(self, key: str, refresh: Refresher) -> CachedResult:
        now = self._clock()
        lock = self._lock_for(key)
        with lock:
            entry = self._entries.get(key)
            age = self._age(entry, now)
            if age is not None and age <= self.ttl_seconds:
                return self._result(entry, now, stale=False)
            if age is not None and age <= self.stale_seconds:
                self._schedule_revalidation(key, refresh, now)
                return self._result(entry, now, stale=True)

            future = self._inflight.get(key)
            owner = future is None
            if owner:
                future = Future()
                self._inflight[key] = future

        if owner:
            self._run_refresh(key, refresh, future)

        try:
            future.result()
        except Exception as exc:
            with lock:
                entry = self._entries.get(key)
                if entry is not None and entry.has_payload:
                    return self._result(entry, self._clock(), stale=True)
            raise DataUnavailableError(key, exc) from exc

        with lock:
            entry = self._entries[key]
            return self._result(entry, self._clock(), stale=False)

    def peek(self, key: str) -> CacheEntry | None:
        with self._lock_for(key):
            entry = self._entries.get(key)
            if entry is None:
                return None
            return CacheEntry(
                payload=entry.payload,
                has_payload=entry.has_payload,
                last_success_at=entry.last_success_at,
                last_error_at=entry.last_error_at,
                last_error=entry.last_error,
                source_version=entry.source_version,
            )

    def invalidate(self, key: str) -> None:
        with self._lock_for(key):
            self._entries.pop(key, None)
            self._last_revalidate.pop(key, None)

    def is_refreshing(self, key: str) -> bool:
        with self._lock_for(key):
            return key in self._inflight

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None and self._owns_executor:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # ------------------------------------------------------------------
    # Internals

    def _lock_for(self, key: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self._max_workers, thread_name_prefix="cache-revalidate"
            )
            self._owns_executor = True
        return self._executor

    @staticmethod
    def _age(entry: CacheEntry | None, now: float) -> float | None:
        if entry is None or not entry.has_payload or entry.last_success_at is None:
            return None
        return max(0.0, now - entry.last_success_at)

    def _result(self, entry: CacheEntry, now: float, *, stale: bool) -> CachedResult:
        age = self._age(entry, now)
        return CachedResult(
            payload=entry.payload,
            meta=CacheMeta(
                stale=stale,
                age_seconds=int(age) if age is not None else None,
                last_success_at=entry.last_success_at,
                last_error_at=entry.last_error_at,
                last_error=entry.last_error,
                source_version=entry.source_version,
            ),
        )

    def _schedule_revalidation(self, key: str, refresh: Refresher, now: float) -> None:
        # Caller holds the key lock.
        if key in self._inflight:
            return
        last = self._last_revalidate.get(key)
        if last is not None and now - last < self.revalidate_seconds:
            return
        self._last_revalidate[key] = now
        future: Future = Future()
        self._inflight[key] = future
        logger.debug("Revalidating cache key {} in background", key)
        self._get_executor().submit(self._run_refresh, key, refresh, future)

    def _run_refresh(self, key: str, refresh: Refresher, future: Future) -> None:
        lock = self._lock_for(key)
        try:
            outcome = refresh()
        except Exception as exc:
            logger.warning("Cache refresh failed for {}: {}: {}", key, type(exc).__name__, exc)
            with lock:
                entry = self._entries.setdefault(key, CacheEntry())
                entry.last_error_at = self._clock()
                entry.last_error = f"{type(exc).__name__}: {exc}"
                self._inflight.pop(key, None)
            future.set_exception(exc)
            return

        with lock:
            entry = self._entries.setdefault(key, CacheEntry())
            entry.payload = outcome.payload
            entry.has_payload = True
            entry.source_version = outcome.source_version
            entry.last_success_at = self._clock()
            entry.last_error = None
            entry.last_error_at = None
            self._inflight.pop(key, None)
        future.set_result(outcome)

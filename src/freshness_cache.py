# freshness_cache.py
"""
Process-local read-through cache with stale-while-revalidate freshness tiers.

    age <= soft_ttl             -> cached value, "fresh", no upstream call
    soft_ttl < age <= hard_ttl  -> cached value, "stale", background refresh scheduled
    no entry / age > hard_ttl   -> caller waits for a refresh, "live"

Refreshes are single-flight per key: while one is running, every caller that would
start another attaches to the same Future and gets its result (or its exception).

The maps are shared by request threads and background workers; the lock is held only
for map reads/writes, never across the upstream call.
"""

import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from errors import ValidationError

logger = logging.getLogger(__name__)

FRESH = "fresh"
STALE = "stale"
LIVE = "live"


@dataclass
class CacheEntry:
    key: str
    data: Any
    fetched_at: float


@dataclass
class CacheResult:
    data: Any
    freshness: str
    age_ms: int

    @property
    def cached(self) -> bool:
        return self.freshness != LIVE


class FreshnessCache:

    def __init__(self, name: str, fetcher: Callable[..., Any], soft_ttl: float, hard_ttl: float,
                 max_workers: int = 4, max_pending_refreshes: int = 32,
                 clock: Callable[[], float] = time.monotonic, executor=None):
        if soft_ttl < 0 or hard_ttl < soft_ttl:
            raise ValueError("expected 0 <= soft_ttl <= hard_ttl")
        self.name = name
        self.soft_ttl = soft_ttl
        self.hard_ttl = hard_ttl
        self.max_pending_refreshes = max_pending_refreshes
        self._fetcher = fetcher
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._in_flight: Dict[str, Future] = {}
        self._pending_background = 0
        self._lock = threading.Lock()
        # a shared executor belongs to whoever passed it in; close() only shuts down our own
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=f"{name}-refresh"
        )

    # ---------------- Public API ----------------------------------------------

    def get(self, key: str, *fetch_args) -> CacheResult:
        if not key:
            raise ValidationError("cache key must be non-empty")

        with self._lock:
            entry = self._entries.get(key)
        now = self._clock()

        if entry is not None:
            age = max(0.0, now - entry.fetched_at)
            if age <= self.soft_ttl:
                return CacheResult(entry.data, FRESH, int(age * 1000))
            if age <= self.hard_ttl:
                self._schedule_background_refresh(key, fetch_args)
                return CacheResult(entry.data, STALE, int(age * 1000))
            logger.info(f"[{self.name}] {key} past hard TTL ({age:.1f}s), refreshing live")

        data = self._refresh(key, fetch_args).result()
        return CacheResult(data, LIVE, 0)

    def peek(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._entries.get(key)

    def in_flight(self, key: str) -> Optional[Future]:
        with self._lock:
            return self._in_flight.get(key)

    def invalidate(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        """Drop every entry. Running refreshes are left alone."""
        with self._lock:
            self._entries.clear()

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    # ---------------- Refresh machinery ---------------------------------------

    def _refresh(self, key: str, fetch_args) -> Future:
        """Foreground refresh: join the running one, or run it on the calling thread."""
        with self._lock:
            future = self._in_flight.get(key)
            if future is not None:
                return future
            future = Future()
            self._in_flight[key] = future

        self._run_refresh(key, future, fetch_args, background=False)
        return future

    def _schedule_background_refresh(self, key: str, fetch_args) -> None:
        with self._lock:
            if key in self._in_flight:
                return
            if self._pending_background >= self.max_pending_refreshes:
                logger.warning(f"[{self.name}] background refresh cap reached, serving stale {key}")
                return
            future = Future()
            self._in_flight[key] = future
            self._pending_background += 1

        try:
            self._executor.submit(self._run_background, key, future, fetch_args)
        except RuntimeError as e:
            # executor shut down: release the slot so a later live fetch can proceed
            logger.error(f"[{self.name}] could not schedule refresh for {key}: {e}")
            with self._lock:
                self._pending_background -= 1
                self._in_flight.pop(key, None)
            future.set_exception(e)

    def _run_background(self, key: str, future: Future, fetch_args) -> None:
        try:
            self._run_refresh(key, future, fetch_args, background=True)
        finally:
            with self._lock:
                self._pending_background -= 1

    def _run_refresh(self, key: str, future: Future, fetch_args, background: bool) -> None:
        try:
            data = self._fetcher(*fetch_args)
            with self._lock:
                self._entries[key] = CacheEntry(key=key, data=data, fetched_at=self._clock())
        except Exception as e:
            if background:
                logger.error(f"[{self.name}] background revalidate failed for {key}: {e}")
            future.set_exception(e)
        else:
            future.set_result(data)
        finally:
            with self._lock:
                self._in_flight.pop(key, None)
            # waiters must never hang, even on BaseException
            if not future.done():
                future.cancel()

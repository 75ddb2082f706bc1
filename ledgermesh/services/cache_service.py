"""
LedgerMesh - Consolidated Report Cache

In-process TTL cache for consolidated report view models with request
coalescing: concurrent requests for the same key share a single build.

- Entries expire lazily on read (no background sweeper)
- The lock guards only the entry map, never a build
- Failed builds are not cached; every waiter gets the same error
- A bust detaches in-flight builds: their results are never stored
- Values are deep-copied on write and on read
"""

import asyncio
import copy
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from pydantic import BaseModel

from ledgermesh.services.consolidation_metrics import ConsolidationCacheMetrics
from ledgermesh.services.consolidation_service import ConsolidationFilters

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300  # 5 minutes


def build_cache_key(report: str, filters: ConsolidationFilters) -> str:
    """
    consol:{report}:{group}|{period}|{entities}|fx={0|1}
    
    Entities are sorted so equivalent selections share a key.
    """
    entities = "all"
    if filters.entities:
        entities = ",".join(str(e) for e in filters.sorted_entities())
    fx_flag = "1" if filters.fx_on else "0"
    return f"consol:{report}:{filters.group_id}|{filters.period}|{entities}|fx={fx_flag}"


def _clone(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_copy(deep=True)
    return copy.deepcopy(value)


def _consume_result(task: "asyncio.Future") -> None:
    # waiters may all be gone; keep asyncio from logging an unretrieved error
    if not task.cancelled():
        task.exception()


@dataclass
class CacheEntry:
    value: Any
    expires_at: float


class ReportCache:
    """TTL-bounded view-model cache shared by all report requests."""
    
    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        metrics: Optional[ConsolidationCacheMetrics] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.ttl_seconds = ttl_seconds
        self.metrics = metrics
        self._clock = clock or time.monotonic
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.Lock()
        self._inflight: Dict[str, "asyncio.Task"] = {}
        self._generation = 0
    
    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
    
    # =========================================================================
    # GENERIC CACHE OPERATIONS
    # =========================================================================
    
    def get(self, key: str) -> Tuple[Optional[Any], bool]:
        """Return (value, found); expired entries are evicted here."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None, False
            if entry.expires_at <= now:
                del self._entries[key]
                return None, False
            value = entry.value
        return _clone(value), True
    
    def set(self, key: str, value: Any) -> None:
        entry = CacheEntry(value=_clone(value), expires_at=self._clock() + self.ttl_seconds)
        with self._lock:
            self._entries[key] = entry
    
    def bust(self) -> None:
        """
        Drop every entry. Called after ledger balances change.
        
        Builds already in flight keep running for their current waiters,
        but their results are not stored and later requests start afresh.
        """
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
            self._generation += 1
        self._inflight.clear()
        logger.info(f"Consolidation cache busted ({dropped} entries)")
    
    def in_flight(self, key: str) -> bool:
        return key in self._inflight
    
    def _publish(self, key: str, value: Any, generation: int) -> bool:
        entry = CacheEntry(value=_clone(value), expires_at=self._clock() + self.ttl_seconds)
        with self._lock:
            if generation != self._generation:
                return False
            self._entries[key] = entry
        return True
    
    # =========================================================================
    # COALESCED READ-THROUGH
    # =========================================================================
    
    async def get_or_build(
        self,
        key: str,
        build: Callable[[], Awaitable[Any]],
        report: str,
        group_id: int,
        period: str,
    ) -> Any:
        """
        Cached value for `key`, building it at most once at a time.
        
        Joining an in-flight build counts as a hit. A caller cancelled
        while waiting gets CancelledError; the shared build and the other
        waiters carry on.
        """
        value, found = self.get(key)
        if found:
            if self.metrics is not None:
                self.metrics.record_hit(report, group_id, period)
            logger.debug(f"Cache hit: {key}")
            return value
        
        task = self._inflight.get(key)
        if task is None:
            with self._lock:
                generation = self._generation
            task = asyncio.ensure_future(self._build(key, build, generation, report, group_id, period))
            task.add_done_callback(_consume_result)
            self._inflight[key] = task
        else:
            if self.metrics is not None:
                self.metrics.record_hit(report, group_id, period)
            logger.debug(f"Joining in-flight build: {key}")
        
        result = await asyncio.shield(task)
        return _clone(result)
    
    async def _build(
        self,
        key: str,
        build: Callable[[], Awaitable[Any]],
        generation: int,
        report: str,
        group_id: int,
        period: str,
    ) -> Any:
        try:
            if self.metrics is not None:
                self.metrics.record_miss(report, group_id, period)
            logger.debug(f"Cache miss: {key}")
            
            started = time.perf_counter()
            try:
                value = await build()
            except Exception as e:
                logger.warning(f"Consolidation view model build failed for {key}: {e}")
                raise
            finally:
                elapsed = time.perf_counter() - started
                if self.metrics is not None:
                    self.metrics.observe_build(report, group_id, period, elapsed)
            
            if self._publish(key, value, generation):
                logger.debug(f"Built {key} in {elapsed:.3f}s")
            else:
                logger.debug(f"Built {key} in {elapsed:.3f}s; cache busted meanwhile, result not stored")
            return value
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]

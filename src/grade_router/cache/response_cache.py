"""
Two-level response cache.

The in-process map is primary and authoritative for freshness. An
optional PersistentCacheStore is consulted on a primary miss and written
for results computed by a remote tier, so expensive grades survive the
process. Every operation is safe under concurrent use by in-flight batches.
"""

import asyncio
import math
import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import BaseModel

from grade_router.cache.fingerprint import fingerprint
from grade_router.config.settings import CacheConfig
from grade_router.core.interfaces import PersistentCacheStore
from grade_router.core.models import (
    CacheEntry,
    GradingRequest,
    GradingResult,
    ItemStatus,
    MetricsEvent,
    MetricsEventKind,
)
from grade_router.utils.metrics import MetricsEmitter


class CacheStats(BaseModel):
    """Counters of one ResponseCache instance."""
    hits: int = 0
    misses: int = 0
    memory_hits: int = 0
    store_hits: int = 0
    stores: int = 0
    evictions: int = 0
    expirations: int = 0
    store_errors: int = 0
    entries: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return (self.hits / total) * 100 if total else 0.0


class ResponseCache:
    """
    Fingerprint-keyed cache of grading results.

    Args:
        config: TTLs, capacity, eviction fraction and schema version
        store: Optional durable second level
        clock: Wall-clock source (seconds since epoch)
        emitter: Receives cache hit / miss events
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        store: Optional[PersistentCacheStore] = None,
        clock: Callable[[], float] = time.time,
        emitter: Optional[MetricsEmitter] = None
    ):
        self.config = config or CacheConfig()
        self.persistent_store = store
        self.clock = clock
        self.emitter = emitter or MetricsEmitter()

        self._entries: Dict[str, CacheEntry] = {}
        self._stats = CacheStats()
        self._lock = threading.Lock()
        self._sweeper: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # ==================== Lookup ====================

    async def lookup(self, key: str) -> Tuple[Optional[GradingResult], bool]:
        """
        Look up a fingerprint.

        Args:
            key: Request fingerprint

        Returns:
            (result marked ``from_cache``, True) on a fresh hit, else (None, False)
        """
        entry = self._memory_get(key)
        source = "memory"

        if entry is None and self.persistent_store is not None:
            entry = await self._store_get(key)
            source = "store"
            if entry is not None:
                with self._lock:
                    self._entries[key] = entry
                    self._enforce_capacity()

        with self._lock:
            if entry is None:
                self._stats.misses += 1
            else:
                self._stats.hits += 1
                if source == "memory":
                    self._stats.memory_hits += 1
                else:
                    self._stats.store_hits += 1

        self.emitter.emit(MetricsEvent(
            kind=MetricsEventKind.CACHE_HIT if entry is not None else MetricsEventKind.CACHE_MISS,
            tier=entry.backend_tier if entry is not None else None,
            payload={"fingerprint": key[:16], "source": source if entry is not None else None},
        ))

        if entry is None:
            return None, False
        return entry.result.model_copy(update={"from_cache": True}), True

    async def lookup_request(self, request: GradingRequest) -> Tuple[Optional[GradingResult], bool]:
        """Look up a request by its fingerprint."""
        return await self.lookup(fingerprint(request))

    # ==================== Store ====================

    async def store(
        self,
        key: str,
        result: GradingResult,
        ttl_s: Optional[float] = None,
        persist: bool = False
    ) -> bool:
        """
        Store a graded result.

        Only well-formed results with GRADED status are cached.

        Args:
            key: Request fingerprint
            result: Result to cache
            ttl_s: Time to live, defaults to the raw-result TTL
            persist: Also write the entry to the persistent store

        Returns:
            True if the result was cached
        """
        if result.status != ItemStatus.GRADED or not result.is_well_formed:
            return False

        now = self.clock()
        entry = CacheEntry(
            fingerprint=key,
            result=result.model_copy(update={"from_cache": False}),
            backend_tier=result.tier,
            cached_at=now,
            expires_at=now + (ttl_s if ttl_s is not None else self.config.ttl_s),
            schema_version=self.config.schema_version,
        )

        with self._lock:
            self._entries[key] = entry
            self._stats.stores += 1
            self._enforce_capacity()

        if persist and self.persistent_store is not None:
            try:
                await self.persistent_store.put(key, entry)
            except Exception as e:
                with self._lock:
                    self._stats.store_errors += 1
                logger.warning(f"Persistent cache write failed for {key[:16]}: {e}")
        return True

    async def store_request(self, request: GradingRequest, result: GradingResult) -> bool:
        """
        Store the result of a request.

        Skill-tagged requests get the longer skill TTL; results computed
        by a remote tier are also persisted.
        """
        ttl = self.config.skill_ttl_s if request.skill_tags else self.config.ttl_s
        persist = result.tier is not None and result.tier.is_remote
        return await self.store(fingerprint(request), result, ttl_s=ttl, persist=persist)

    # ==================== Eviction ====================

    def evict(self) -> int:
        """
        Sweep expired entries, then trim to capacity oldest-first.

        Returns:
            Number of entries removed
        """
        with self._lock:
            now = self.clock()
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for key in expired:
                del self._entries[key]
            self._stats.expirations += len(expired)
            trimmed = self._enforce_capacity()

        removed = len(expired) + trimmed
        if removed:
            logger.info(f"Cache sweep removed {len(expired)} expired and {trimmed} overflow entries")
        return removed

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def stats(self) -> CacheStats:
        with self._lock:
            return self._stats.model_copy(update={"entries": len(self._entries)})

    async def run_sweeper(self, interval_s: Optional[float] = None) -> None:
        """Evict on a fixed interval until cancelled."""
        interval = interval_s or self.config.sweep_interval_s
        while True:
            await asyncio.sleep(interval)
            self.evict()

    def start_sweeper(self, interval_s: Optional[float] = None) -> asyncio.Task:
        if self._sweeper is None or self._sweeper.done():
            self._sweeper = asyncio.create_task(self.run_sweeper(interval_s))
        return self._sweeper

    async def stop_sweeper(self) -> None:
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    # ==================== Internals ====================

    def _usable(self, entry: CacheEntry, now: float) -> bool:
        return entry.schema_version == self.config.schema_version and not entry.is_expired(now)

    def _memory_get(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if not self._usable(entry, self.clock()):
                del self._entries[key]
                self._stats.expirations += 1
                return None
            return entry

    async def _store_get(self, key: str) -> Optional[CacheEntry]:
        try:
            entry = await self.persistent_store.get(key)
        except Exception as e:
            with self._lock:
                self._stats.store_errors += 1
            logger.warning(f"Persistent cache read failed for {key[:16]}: {e}")
            return None
        if entry is None or not self._usable(entry, self.clock()):
            return None
        return entry

    def _enforce_capacity(self) -> int:
        """Drop the oldest entries when over capacity. Caller holds the lock."""
        overflow = len(self._entries) - self.config.capacity
        if overflow <= 0:
            return 0

        count = max(overflow, math.ceil(len(self._entries) * self.config.evict_fraction))
        oldest: List[str] = sorted(self._entries, key=lambda k: self._entries[k].cached_at)[:count]
        for key in oldest:
            del self._entries[key]
        self._stats.evictions += len(oldest)
        logger.debug(f"Cache over capacity: evicted {len(oldest)} oldest entries")
        return len(oldest)

"""
Layered cache for catalog search results and AI responses.

Lookups walk memory -> persistent -> predictive. A hit in a lower layer is
copied into the layers above it; a full miss calls the upstream fetcher once
per key no matter how many requests are waiting on it, and writes the result
through to memory and persistent storage.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import time
from collections import Counter
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable

from ..errors import CacheCorruption, EngineError, ExternalServiceError
from ..recommendations.models import GeoPoint
from .config import DEFAULT_CACHE_CONFIG, CacheConfig
from .layers import CacheEntry, Clock, MemoryLayer, PersistentLayer, PredictiveLayer

logger = logging.getLogger(__name__)

Fetcher = Callable[[], Awaitable[Any]]


def fingerprint(data: dict) -> str:
    normalized = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode()).hexdigest()[:16]


def search_key(
    location: GeoPoint,
    radius_m: int,
    filters: Iterable[str] = (),
    precision: int = DEFAULT_CACHE_CONFIG.location_precision,
) -> str:
    """Normalized key: rounded coordinates, radius and the sorted filter set."""
    # Adding 0.0 folds -0.0 into 0.0 so both sides of the meridian agree.
    lat = round(location.lat, precision) + 0.0
    lng = round(location.lng, precision) + 0.0
    applied = sorted({f.strip().lower() for f in filters if f and f.strip()})
    return f"search|{lat:.{precision}f}|{lng:.{precision}f}|{int(radius_m)}|{','.join(applied)}"


@dataclass(frozen=True)
class CacheResult:
    value: Any
    hit: bool
    layer: str | None = None


class CacheManager:
    def __init__(self, config: CacheConfig = DEFAULT_CACHE_CONFIG, clock: Clock = time.time) -> None:
        self.config = config
        self._clock = clock
        self.memory = MemoryLayer(config.memory_capacity, config.memory_ttl_seconds, clock)
        self.persistent = (
            PersistentLayer(config.persistent_dir, config.persistent_ttl_seconds, clock)
            if config.persistent_dir is not None
            else None
        )
        self.predictive = PredictiveLayer(config.predictive_ttl_seconds, clock)

        self._inflight: dict[str, asyncio.Future] = {}
        self._popularity: Counter[str] = Counter()
        self._warmers: dict[str, tuple[Fetcher, str | None]] = {}
        self._stats: Counter[str] = Counter()
        self._last_activity = clock()

    # ── Lookup / write-through ───────────────────────────────────────────

    async def get(self, key: str) -> CacheEntry | None:
        self._last_activity = self._clock()

        entry = self.memory.get(key)
        if entry is not None:
            self._stats["memory_hits"] += 1
            return entry

        if self.persistent is not None:
            try:
                entry = await asyncio.to_thread(self.persistent.get, key)
            except CacheCorruption:
                logger.warning("Evicting corrupt persistent cache entry for %s", key, exc_info=True)
                self._stats["corrupt"] += 1
                await self.evict(key)
                entry = None
            if entry is not None:
                self._stats["persistent_hits"] += 1
                self.memory.set(key, entry.payload, self._remaining(entry), entry.user_id)
                return entry

        entry = self.predictive.get(key)
        if entry is not None:
            self._stats["predictive_hits"] += 1
            ttl = self._remaining(entry)
            self.memory.set(key, entry.payload, ttl, entry.user_id)
            if self.persistent is not None:
                await asyncio.to_thread(self.persistent.set, key, entry.payload, ttl, entry.user_id)
            return entry

        self._stats["misses"] += 1
        return None

    async def set(
        self, key: str, payload: Any, ttl: float | None = None, user_id: str | None = None,
    ) -> None:
        self.memory.set(key, payload, ttl, user_id)
        if self.persistent is not None:
            await asyncio.to_thread(self.persistent.set, key, payload, ttl, user_id)

    async def evict(self, key: str) -> None:
        self.memory.delete(key)
        self.predictive.delete(key)
        if self.persistent is not None:
            await asyncio.to_thread(self.persistent.delete, key)

    def _remaining(self, entry: CacheEntry) -> float:
        return max(0.0, entry.expires_at - self._clock())

    # ── Single-flight fetch ──────────────────────────────────────────────

    async def get_or_fetch(
        self,
        key: str,
        fetcher: Fetcher,
        *,
        ttl: float | None = None,
        user_id: str | None = None,
        decode: Callable[[Any], Any] | None = None,
    ) -> CacheResult:
        """Return the cached value for *key*, fetching it at most once on a miss.

        A cached payload that *decode* rejects is evicted and refetched once.
        """
        entry = await self.get(key)
        if entry is not None:
            try:
                value = decode(entry.payload) if decode else entry.payload
                return CacheResult(value=value, hit=True, layer=entry.layer)
            except (ValueError, TypeError, KeyError):
                logger.warning("Cached payload for %s failed to decode, refetching", key)
                self._stats["corrupt"] += 1
                await self.evict(key)

        payload = await self._fetch_once(key, fetcher, ttl, user_id)
        return CacheResult(value=decode(payload) if decode else payload, hit=False)

    async def _fetch_once(
        self, key: str, fetcher: Fetcher, ttl: float | None, user_id: str | None,
    ) -> Any:
        # No await between the lookup and the insert, so this is atomic on the loop.
        future = self._inflight.get(key)
        leader = future is None
        if leader:
            # A fetch for this key may have completed while our lookup was awaiting.
            entry = self.memory.get(key)
            if entry is not None:
                return entry.payload
            future = asyncio.get_running_loop().create_future()
            self._inflight[key] = future

        if not leader:
            self._stats["coalesced"] += 1
            return await asyncio.shield(future)

        try:
            self._stats["upstream_fetches"] += 1
            payload = await fetcher()
            await self.set(key, payload, ttl, user_id)
        except asyncio.CancelledError:
            # Waiters were not cancelled themselves; hand them a retryable failure.
            future.set_exception(ExternalServiceError(f"Fetch for {key} was cancelled", retryable=True))
            future.exception()
            raise
        except Exception as exc:
            future.set_exception(exc)
            # The leader re-raises; waiters, if any, receive the same error.
            future.exception()
            raise
        else:
            future.set_result(payload)
            return payload
        finally:
            self._inflight.pop(key, None)

    # ── Predictive layer ─────────────────────────────────────────────────

    def track(self, key: str, fetcher: Fetcher, user_id: str | None = None) -> None:
        """Count a request for *key* and remember how to refresh it."""
        self._popularity[key] += 1
        self._warmers[key] = (fetcher, user_id)
        limit = max(self.config.tracked_keys_limit, self.config.predictive_top_n)
        if len(self._popularity) > 2 * limit:
            self._prune_tracked(limit)

    def _prune_tracked(self, keep: int) -> None:
        """Forget all but the *keep* most requested keys."""
        kept = self._popularity.most_common(keep)
        dropped = len(self._popularity) - len(kept)
        self._popularity = Counter(dict(kept))
        self._warmers = {k: self._warmers[k] for k, _ in kept if k in self._warmers}
        logger.debug("Pruned %d rarely requested cache keys", dropped)

    async def warm(self, top_n: int | None = None) -> int:
        """Refresh the most requested keys into the predictive layer."""
        warmed = 0
        for key, _ in self._popularity.most_common(top_n or self.config.predictive_top_n):
            if key not in self._warmers:
                continue
            fetcher, user_id = self._warmers[key]
            try:
                payload = await fetcher()
            except EngineError:
                logger.warning("Predictive refresh of %s failed", key, exc_info=True)
                continue
            self.predictive.set(key, payload, user_id=user_id)
            warmed += 1
        if warmed:
            logger.info("Warmed %d predictive cache entries", warmed)
        return warmed

    def is_idle(self) -> bool:
        return self._clock() - self._last_activity >= self.config.idle_after_seconds

    async def run_warmer(self) -> None:
        """Background loop: warm the predictive layer whenever the engine is idle."""
        while True:
            await asyncio.sleep(self.config.warm_interval_seconds)
            if self.is_idle():
                await self.warm()

    def invalidate_user(self, user_id: str) -> int:
        removed = self.predictive.invalidate_user(user_id)
        for key in [k for k, (_, uid) in self._warmers.items() if uid == user_id]:
            del self._warmers[key]
            del self._popularity[key]
        if removed:
            logger.info("Invalidated %d predictive entries for user %s", removed, user_id)
        return removed

    # ── Stats ────────────────────────────────────────────────────────────

    def stats(self) -> dict:
        hits = (
            self._stats["memory_hits"]
            + self._stats["persistent_hits"]
            + self._stats["predictive_hits"]
        )
        total = hits + self._stats["misses"]
        return {
            "memory_size": len(self.memory),
            "persistent_size": len(self.persistent) if self.persistent is not None else 0,
            "predictive_size": len(self.predictive),
            "hits": hits,
            "memory_hits": self._stats["memory_hits"],
            "persistent_hits": self._stats["persistent_hits"],
            "predictive_hits": self._stats["predictive_hits"],
            "misses": self._stats["misses"],
            "upstream_fetches": self._stats["upstream_fetches"],
            "coalesced": self._stats["coalesced"],
            "tracked_keys": len(self._popularity),
            "corrupt": self._stats["corrupt"],
            "hit_rate": round(hits / total * 100, 1) if total > 0 else 0.0,
        }

    async def clear(self) -> None:
        self.memory.clear()
        self.predictive.clear()
        if self.persistent is not None:
            await asyncio.to_thread(self.persistent.clear)
        self._popularity.clear()
        self._warmers.clear()
        self._stats.clear()

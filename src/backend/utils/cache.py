"""In-memory bounded TTL cache for performance optimization.

Entry-count and byte-budget limits with a pluggable eviction policy, lazy and
background expiry, plus async memoization helpers built on top.
Suitable for single-instance deployments: all mutation happens on one event
loop between awaits, so no locking is needed.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import re
import time

from collections import OrderedDict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import asdict, dataclass
from functools import wraps
from operator import attrgetter
from typing import Any, ParamSpec, Protocol, TypeVar

from core.constants import (
    CACHE_EVICTION_HEADROOM,
    CACHE_FALLBACK_ENTRY_SIZE,
    CACHE_MAX_MEMORY_SIZE,
    CACHE_PRESETS,
    CachePreset,
)
from utils.logger import logger
from utils.metrics import cache_evictions_total, cache_expired_total

T = TypeVar("T")
P = ParamSpec("P")

Clock = Callable[[], float]


@dataclass(slots=True)
class CacheEntry:
    """A single cached value and its bookkeeping."""

    key: str
    value: Any
    expires_at: float
    size_bytes: int
    last_accessed_at: float


@dataclass(frozen=True, slots=True)
class CacheLimits:
    """Snapshot of a cache's ceilings and current usage, handed to eviction strategies."""

    max_size: int
    max_memory_size: int | None
    memory_size: int


@dataclass(frozen=True, slots=True)
class CacheStats:
    """Point-in-time cache statistics."""

    size: int
    memory_size: int
    max_size: int
    max_memory_size: int | None
    hits: int
    misses: int
    evictions: int
    hit_rate: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class EvictionStrategy(Protocol):
    """Chooses which entries to drop when a cache has to make room."""

    #: Whether the cache should refresh last_accessed_at (and recency order) on get().
    tracks_recency: bool

    def select_eviction_candidates(
        self,
        entries: Mapping[str, CacheEntry],
        space_needed: int,
        limits: CacheLimits,
    ) -> list[str]:
        """Return keys to evict, in eviction order."""
        ...


class LRUEviction:
    """Evict least recently accessed entries until both ceilings have headroom.

    A pass frees down to CACHE_EVICTION_HEADROOM of the count and byte ceilings
    so the next few inserts do not each trigger another pass.
    """

    tracks_recency = True

    def __init__(self, headroom: float = CACHE_EVICTION_HEADROOM) -> None:
        self.headroom = headroom

    def select_eviction_candidates(
        self,
        entries: Mapping[str, CacheEntry],
        space_needed: int,
        limits: CacheLimits,
    ) -> list[str]:
        target_count = int(limits.max_size * self.headroom)
        target_memory = (
            limits.max_memory_size * self.headroom if limits.max_memory_size is not None else None
        )

        remaining = len(entries)
        projected_memory = limits.memory_size + space_needed
        victims: list[str] = []

        # Stable sort: ties fall back to recency order of the mapping
        for entry in sorted(entries.values(), key=attrgetter("last_accessed_at")):
            count_ok = remaining <= target_count
            memory_ok = target_memory is None or projected_memory <= target_memory
            if count_ok and memory_ok:
                break
            victims.append(entry.key)
            remaining -= 1
            projected_memory -= entry.size_bytes

        return victims


class NearestExpiryEviction:
    """Evict the single entry closest to expiring."""

    tracks_recency = False

    def select_eviction_candidates(
        self,
        entries: Mapping[str, CacheEntry],
        space_needed: int,
        limits: CacheLimits,
    ) -> list[str]:
        if not entries:
            return []
        oldest = min(entries.values(), key=attrgetter("expires_at"))
        return [oldest.key]


def estimate_size(value: Any) -> int:
    """Approximate the memory footprint of a value in bytes.

    Strings count two bytes per character; anything else is measured by its
    JSON encoding. Values that cannot be encoded get a fixed estimate.
    """
    if isinstance(value, str):
        return 2 * len(value)
    try:
        return 2 * len(json.dumps(value, default=str))
    except (TypeError, ValueError, RecursionError) as e:
        logger.warning(
            "Cache size estimation failed, using fallback",
            error=str(e),
            value_type=type(value).__name__,
            fallback_bytes=CACHE_FALLBACK_ENTRY_SIZE,
        )
        return CACHE_FALLBACK_ENTRY_SIZE


class BoundedCache:
    """In-memory cache with TTL, entry-count ceiling and optional byte budget."""

    def __init__(
        self,
        name: str = "default",
        default_ttl: float = 300.0,
        max_size: int = 1000,
        max_memory_size: int | None = CACHE_MAX_MEMORY_SIZE,
        cleanup_interval: float | None = None,
        eviction: EvictionStrategy | None = None,
        clock: Clock = time.monotonic,
    ) -> None:
        """Initialize cache.

        Args:
            name: Cache name used in logs and metrics
            default_ttl: Default time-to-live in seconds
            max_size: Maximum number of entries
            max_memory_size: Byte budget across all entries, None for no budget
            cleanup_interval: Seconds between background expiry sweeps (default: default_ttl / 2)
            eviction: Eviction strategy (default: LRU)
            clock: Monotonic time source in seconds
        """
        if max_size < 1:
            raise ValueError("max_size must be at least 1")

        self.name = name
        self.default_ttl = default_ttl
        self.max_size = max_size
        self.max_memory_size = max_memory_size
        self.cleanup_interval = cleanup_interval if cleanup_interval is not None else default_ttl / 2
        self.eviction: EvictionStrategy = eviction if eviction is not None else LRUEviction()
        self._clock = clock

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._memory_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self._cleanup_task: asyncio.Task[None] | None = None
        # Shared computations for get_or_compute, keyed by cache key
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store value under key. None values are ignored."""
        if value is None:
            return

        size = estimate_size(value)
        if self.max_memory_size is not None and size > self.max_memory_size:
            logger.warning(
                "Cache value exceeds memory budget, not stored",
                cache=self.name,
                key=key,
                size_bytes=size,
                max_memory_size=self.max_memory_size,
            )
            return

        now = self._clock()
        existing = self._entries.pop(key, None)
        if existing is not None:
            self._memory_size -= existing.size_bytes

        self._make_room(size)

        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            expires_at=now + (ttl if ttl is not None else self.default_ttl),
            size_bytes=size,
            last_accessed_at=now,
        )
        self._memory_size += size

    def get(self, key: str) -> Any | None:
        """Get live value, or None if absent or expired."""
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            return None

        now = self._clock()
        if now >= entry.expires_at:
            self._remove(key)
            self._misses += 1
            return None

        if self.eviction.tracks_recency:
            entry.last_accessed_at = now
            self._entries.move_to_end(key)

        self._hits += 1
        return entry.value

    def has(self, key: str) -> bool:
        """Check for a live entry without touching stats or recency."""
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._clock() >= entry.expires_at:
            self._remove(key)
            return False
        return True

    def delete(self, key: str) -> bool:
        """Remove entry from cache."""
        return self._remove(key) is not None

    def delete_pattern(self, pattern: str | re.Pattern[str]) -> int:
        """Remove every key matching pattern. Returns number removed."""
        regex = re.compile(pattern) if isinstance(pattern, str) else pattern
        matched = [key for key in self._entries if regex.search(key)]
        for key in matched:
            self._remove(key)
        return len(matched)

    def clear(self) -> None:
        """Clear all entries and reset statistics."""
        self._entries.clear()
        self._memory_size = 0
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def cleanup(self) -> int:
        """Remove expired entries. Returns number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            self._remove(key)
        if expired:
            cache_expired_total.labels(cache=self.name).inc(len(expired))
            logger.debug("Cache cleanup removed expired entries", cache=self.name, removed=len(expired))
        return len(expired)

    def get_stats(self) -> CacheStats:
        """Get cache statistics."""
        total = self._hits + self._misses
        return CacheStats(
            size=len(self._entries),
            memory_size=self._memory_size,
            max_size=self.max_size,
            max_memory_size=self.max_memory_size,
            hits=self._hits,
            misses=self._misses,
            evictions=self._evictions,
            hit_rate=self._hits / total if total > 0 else 0.0,
        )

    @property
    def memory_size(self) -> int:
        return self._memory_size

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return isinstance(key, str) and self.has(key)

    # ------------------------------------------------------------------
    # Eviction
    # ------------------------------------------------------------------

    def _needs_room(self, size: int) -> bool:
        if len(self._entries) >= self.max_size:
            return True
        return self.max_memory_size is not None and self._memory_size + size > self.max_memory_size

    def _make_room(self, size: int) -> None:
        while self._entries and self._needs_room(size):
            limits = CacheLimits(
                max_size=self.max_size,
                max_memory_size=self.max_memory_size,
                memory_size=self._memory_size,
            )
            try:
                victims = self.eviction.select_eviction_candidates(self._entries, size, limits)
            except Exception:
                logger.error("Cache eviction strategy failed", exc_info=True, cache=self.name)
                victims = [next(iter(self._entries))]

            evicted = [key for key in victims if self._remove(key) is not None]
            if not evicted:
                break

            self._evictions += len(evicted)
            cache_evictions_total.labels(cache=self.name).inc(len(evicted))
            logger.debug("Cache evicted entries", cache=self.name, evicted=len(evicted))

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._memory_size -= entry.size_bytes
        return entry

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    def start_cleanup(self) -> None:
        """Start the periodic expiry sweep on the running event loop."""
        if self._cleanup_task is not None and not self._cleanup_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, background cache cleanup disabled", cache=self.name)
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop(), name=f"cache-cleanup:{self.name}")

    async def stop_cleanup(self) -> None:
        """Cancel the periodic expiry sweep."""
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._cleanup_task
        self._cleanup_task = None

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self.cleanup_interval)
            try:
                self.cleanup()
            except Exception:
                logger.error("Cache cleanup sweep failed", exc_info=True, cache=self.name)


# ============================================================================
# Memoization
# ============================================================================


async def _compute_and_store(
    cache: BoundedCache,
    key: str,
    compute: Callable[[], Awaitable[T]],
    ttl: float | None,
) -> T:
    value = await compute()
    cache.set(key, value, ttl)
    return value


async def get_or_compute(
    cache: BoundedCache,
    key: str,
    compute: Callable[[], Awaitable[T]],
    ttl: float | None = None,
) -> T:
    """Return the cached value for key, computing and storing it on a miss.

    Concurrent callers for the same key share one in-flight computation.
    If compute raises, the error propagates to every waiter and nothing is cached.
    """
    value = cache.get(key)
    if value is not None:
        return value  # type: ignore[no-any-return]

    pending = cache._inflight.get(key)
    if pending is None:
        pending = asyncio.ensure_future(_compute_and_store(cache, key, compute, ttl))
        cache._inflight[key] = pending

        def _release(fut: asyncio.Future[Any]) -> None:
            if cache._inflight.get(key) is fut:
                del cache._inflight[key]

        pending.add_done_callback(_release)

    # Shield so one cancelled waiter does not cancel the shared computation
    return await asyncio.shield(pending)  # type: ignore[no-any-return]


def memoize(
    fn: Callable[P, Awaitable[T]],
    key_fn: Callable[P, str],
    cache: BoundedCache,
    ttl: float | None = None,
) -> Callable[P, Awaitable[T]]:
    """Wrap an async function so calls with the same derived key hit the cache.

    Args:
        fn: Async function to wrap
        key_fn: Derives the cache key from fn's arguments
        cache: BoundedCache instance to use
        ttl: Optional TTL override
    """

    @wraps(fn)
    async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
        key = key_fn(*args, **kwargs)
        return await get_or_compute(cache, key, lambda: fn(*args, **kwargs), ttl)

    return wrapper


def cached(
    cache: BoundedCache,
    key_fn: Callable[..., str],
    ttl: float | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for caching async function results.

    Example:
        @cached(agent_cache, key_fn=lambda agent_id: f"agent:{agent_id}")
        async def load_agent(agent_id: int) -> dict:
            ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        return memoize(func, key_fn, cache, ttl)

    return decorator


# ============================================================================
# Named caches
# ============================================================================


class CacheRegistry:
    """Holder for the application's named caches.

    Constructed once in the app lifespan and injected where needed, so tests
    can build isolated instances.
    """

    def __init__(
        self,
        presets: Iterable[CachePreset] = CACHE_PRESETS,
        max_memory_size: int | None = CACHE_MAX_MEMORY_SIZE,
        clock: Clock = time.monotonic,
    ) -> None:
        self._caches: dict[str, BoundedCache] = {}
        for preset in presets:
            self._caches[preset.name] = BoundedCache(
                name=preset.name,
                default_ttl=preset.default_ttl,
                max_size=preset.max_size,
                max_memory_size=max_memory_size,
                eviction=LRUEviction() if preset.use_lru else NearestExpiryEviction(),
                clock=clock,
            )

    def get(self, name: str) -> BoundedCache:
        try:
            return self._caches[name]
        except KeyError:
            raise KeyError(f"Unknown cache: {name}") from None

    __getitem__ = get

    def __contains__(self, name: object) -> bool:
        return name in self._caches

    @property
    def names(self) -> list[str]:
        return list(self._caches)

    @property
    def user(self) -> BoundedCache:
        return self.get("user")

    @property
    def agent(self) -> BoundedCache:
        return self.get("agent")

    @property
    def prompt(self) -> BoundedCache:
        return self.get("prompt")

    @property
    def conversation(self) -> BoundedCache:
        return self.get("conversation")

    @property
    def static(self) -> BoundedCache:
        return self.get("static")

    @property
    def api_key(self) -> BoundedCache:
        return self.get("api_key")

    def start_all(self) -> None:
        """Start background cleanup for every cache."""
        for cache in self._caches.values():
            cache.start_cleanup()

    async def stop_all(self) -> None:
        """Stop background cleanup for every cache."""
        for cache in self._caches.values():
            await cache.stop_cleanup()

    def stats(self) -> dict[str, dict[str, Any]]:
        return {name: cache.get_stats().to_dict() for name, cache in self._caches.items()}

    def invalidate(self, pattern: str | re.Pattern[str]) -> int:
        """Delete keys matching pattern across all caches. Returns total removed."""
        removed = sum(cache.delete_pattern(pattern) for cache in self._caches.values())
        logger.info("Cache invalidated", pattern=str(pattern), removed=removed)
        return removed

    def clear_all(self) -> None:
        for cache in self._caches.values():
            cache.clear()

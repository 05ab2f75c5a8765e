import dataclasses
import functools
import hashlib
import inspect
import logging
import threading
import time
from collections.abc import Callable, Hashable, Mapping
from typing import Any, Generic, TypeVar

import msgspec
from cachetools import TLRUCache

from lumeflow.domain.value_object import CacheConfig, CacheStats

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


class CacheEntry(msgspec.Struct, Generic[T]):
    """A cached value and its bookkeeping. Times come from the owning cache's clock."""

    value: T
    created_at: float
    expires_at: float
    access_count: int = 0
    last_accessed_at: float = 0.0


def _entry_expiry(key: Hashable, entry: CacheEntry, now: float) -> float:
    return entry.expires_at


class _EntryStore(TLRUCache):
    """TLRU store of cache entries that counts capacity evictions."""

    def __init__(self, maxsize: int, timer: Callable[[], float], name: str):
        super().__init__(maxsize, ttu=_entry_expiry, timer=timer)
        self.name = name
        self.evictions = 0

    def popitem(self):
        key, entry = super().popitem()
        self.evictions += 1
        logger.debug("Cache %s evicted %r", self.name, key)
        return key, entry


class Cache(Generic[T]):
    """In-memory key/value cache with per-entry TTL and LRU eviction.

    Entries live in a :class:`cachetools.TLRUCache`. Expired entries are dropped
    lazily on read and by a background sweeper thread running every
    ``cleanup_interval`` seconds. Safe to share between threads.
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        **overrides: Any,
    ):
        """
        :param config: Cache settings; defaults to :class:`CacheConfig`
        :type config: CacheConfig | None
        :param clock: Monotonic time source in seconds
        :param overrides: Field overrides applied on top of ``config``
        """
        self.config = dataclasses.replace(config or CacheConfig(), **overrides)
        if self.config.max_size < 1:
            raise ValueError("max_size must be >= 1")
        self.name = self.config.name
        self._clock = clock
        self._entries = _EntryStore(self.config.max_size, clock, self.name)
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._total_sets = 0
        self._stop = threading.Event()
        self._sweeper: threading.Thread | None = None
        if self.config.cleanup_interval:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                name=f"lumeflow-cache-{self.name}",
                daemon=True,
            )
            self._sweeper.start()

    def get(self, key: Hashable, default: Any = None) -> T | Any:
        """
        Return the value stored under ``key`` if present and unexpired.

        :param key: Cache key
        :param default: Value returned on a miss
        :returns: The cached value or ``default``
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                # drops the entry if it was only expired
                self._entries.expire()
                self._misses += 1
                return default
            entry.access_count += 1
            entry.last_accessed_at = self._clock()
            self._hits += 1
            return entry.value

    def set(self, key: Hashable, value: T, ttl: float | None = None) -> None:
        """
        Store ``value`` under ``key`` for ``ttl`` seconds (the instance TTL by default).

        When the cache is full and ``key`` is new, the least recently accessed entry is evicted first.
        """
        ttl = self.config.ttl if ttl is None else ttl
        with self._lock:
            if ttl <= 0:
                self._entries.pop(key, None)
                return
            now = self._clock()
            self._entries[key] = CacheEntry(value=value, created_at=now, expires_at=now + ttl, last_accessed_at=now)
            self._total_sets += 1

    def has(self, key: Hashable) -> bool:
        """Check for an unexpired entry without touching statistics or recency."""
        with self._lock:
            return key in self._entries

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            if key not in self._entries:
                return False
            del self._entries[key]
            return True

    def clear(self) -> None:
        with self._lock:
            evictions = self._entries.evictions
            self._entries = _EntryStore(self.config.max_size, self._clock, self.name)
            self._entries.evictions = evictions

    def keys(self) -> list[Hashable]:
        with self._lock:
            return [key for key in list(self._entries) if key in self._entries]

    def entry(self, key: Hashable) -> CacheEntry[T] | None:
        """Return the unexpired entry for inspection, without touching statistics."""
        with self._lock:
            return self._entries.get(key)

    @property
    def size(self) -> int:
        with self._lock:
            return self._entries.currsize

    def __len__(self) -> int:
        return self.size

    def __contains__(self, key: Hashable) -> bool:
        return self.has(key)

    def sweep(self) -> int:
        """
        Purge every expired entry.

        :returns: Number of entries removed
        :rtype: int
        """
        with self._lock:
            before = self._entries.currsize
            self._entries.expire()
            removed = before - self._entries.currsize
        if removed:
            logger.debug("Cache %s swept %d expired entries", self.name, removed)
        return removed

    @property
    def stats(self) -> CacheStats:
        with self._lock:
            lookups = self._hits + self._misses
            hit_rate = round(self._hits / lookups * 100, 2) if lookups else 0.0
            return CacheStats(
                hits=self._hits,
                misses=self._misses,
                evictions=self._entries.evictions,
                size=self._entries.currsize,
                max_size=self.config.max_size,
                hit_rate=hit_rate,
                total_sets=self._total_sets,
            )

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = self._misses = self._total_sets = 0
            self._entries.evictions = 0

    async def get_or_set(self, key: Hashable, factory: Callable[[], Any], ttl: float | None = None) -> T:
        """
        Return the cached value for ``key`` or compute, store and return it.

        :param factory: Zero-argument callable; coroutine results are awaited
        :param ttl: TTL for a freshly computed value
        """
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = factory()
        if inspect.isawaitable(value):
            value = await value
        self.set(key, value, ttl)
        return value

    def close(self) -> None:
        """Stop the background sweeper. The cache stays usable."""
        self._stop.set()
        if self._sweeper is not None and self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=1.0)
        self._sweeper = None

    def __enter__(self) -> "Cache[T]":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.config.cleanup_interval):
            self.sweep()


def generate_cache_key(prefix: str, params: Mapping[str, Any]) -> str:
    """
    Build a deterministic key from a prefix and a parameter mapping.

    Parameter order does not matter; values are hashed from their sorted JSON encoding.

    :param prefix: Namespace of the key, e.g. ``"linkedin"``
    :type prefix: str
    :param params: Parameters that identify the cached value
    :type params: Mapping[str, Any]
    :returns: ``"<prefix>:<md5 hex digest>"``
    :rtype: str
    """
    encoded = msgspec.json.encode(params, order="sorted", enc_hook=str)
    return f"{prefix}:{hashlib.md5(encoded).hexdigest()}"


def cached(cache: Cache, key_fn: Callable[..., Hashable] | None = None, ttl: float | None = None):
    """
    Decorator memoizing a function in ``cache``.

    Works for plain and coroutine functions. Without ``key_fn`` the key is derived from
    the function name and its arguments.
    """

    def decorator(fn):
        def make_key(args, kwargs):
            if key_fn is not None:
                return key_fn(*args, **kwargs)
            return generate_cache_key(fn.__qualname__, {"args": list(args), "kwargs": kwargs})

        if inspect.iscoroutinefunction(fn):

            @functools.wraps(fn)
            async def async_wrapper(*args, **kwargs):
                return await cache.get_or_set(make_key(args, kwargs), lambda: fn(*args, **kwargs), ttl)

            return async_wrapper

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            key = make_key(args, kwargs)
            value = cache.get(key, _MISSING)
            if value is _MISSING:
                value = fn(*args, **kwargs)
                cache.set(key, value, ttl)
            return value

        return wrapper

    return decorator


_DAY = 24 * 60 * 60


class CachePresets:
    """Cache configurations tuned per data class."""

    @staticmethod
    def country(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=_DAY, max_size=500, cleanup_interval=60 * 60, name="country"), **overrides)

    @staticmethod
    def instagram(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=7 * _DAY, max_size=1000, cleanup_interval=_DAY, name="instagram"), **overrides)

    @staticmethod
    def linkedin(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=30 * _DAY, max_size=1000, cleanup_interval=7 * _DAY, name="linkedin"), **overrides)

    @staticmethod
    def llm(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=7 * _DAY, max_size=2000, cleanup_interval=_DAY, name="llm"), **overrides)

    @staticmethod
    def short_term(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=5 * 60, max_size=100, cleanup_interval=60, name="short_term"), **overrides)

    @staticmethod
    def fullcontact(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=7 * _DAY, max_size=1000, cleanup_interval=_DAY, name="fullcontact"), **overrides)

    @staticmethod
    def pdl(**overrides: Any) -> Cache:
        return Cache(CacheConfig(ttl=30 * _DAY, max_size=1000, cleanup_interval=7 * _DAY, name="pdl"), **overrides)

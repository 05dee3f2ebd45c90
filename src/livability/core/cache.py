"""
Two-level tile cache.

- L1 (`BoundedCache`): in-process, bounded, FIFO-by-write eviction, TTL on read.
- L2 (`SharedStore`): redis with TTL; when redis is not configured or fails it
  degrades to an in-process TTL map and reports `type: "memory"` instead of raising.
- `TwoLevelCache`: L1 -> L2 lookaside with cumulative hit/miss counters.

Values must be JSON-serializable (they are JSON-encoded in L2), and are never
mutated in place: a changed input means a different key.
"""

from __future__ import annotations

import contextvars
import json
import logging
import threading
import time
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

import redis

logger = logging.getLogger(__name__)


@dataclass
class CacheStats:
    """Per-request cache usage stats."""

    l1_hits: int = 0
    l2_hits: int = 0
    misses: int = 0
    sets: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "l1_hits": int(self.l1_hits),
            "l2_hits": int(self.l2_hits),
            "misses": int(self.misses),
            "sets": int(self.sets),
        }


_cache_stats_var: contextvars.ContextVar[CacheStats | None] = contextvars.ContextVar(
    "livability_cache_stats", default=None
)


def _stats() -> CacheStats | None:
    return _cache_stats_var.get()


@contextmanager
def record_cache_stats() -> CacheStats:
    """Capture cache stats within the current context (thread/task-safe)."""

    stats = CacheStats()
    token = _cache_stats_var.set(stats)
    try:
        yield stats
    finally:
        _cache_stats_var.reset(token)


class BoundedCache:
    """Thread-safe bounded map with TTL; evicts the oldest-written entries first."""

    def __init__(self, max_size: int, ttl_seconds: float):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self._max_size = int(max_size)
        self._ttl_seconds = float(ttl_seconds)
        self._entries: OrderedDict[str, tuple[Any, float]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, written_at = entry
            if time.time() - written_at >= self._ttl_seconds:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            # Re-inserting moves the key to the newest write position.
            self._entries.pop(key, None)
            self._entries[key] = (value, time.time())
            while len(self._entries) > self._max_size:
                self._entries.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class _MemoryStore:
    """TTL map used when redis is unavailable."""

    def __init__(self, max_size: int, eviction_ratio: float):
        self._max_size = int(max_size)
        self._eviction_ratio = float(eviction_ratio)
        self._entries: dict[str, tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if time.time() >= expires_at:
                del self._entries[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._evict()
            self._entries[key] = (value, time.time() + ttl_seconds)

    def _evict(self) -> None:
        now = time.time()
        for k in [k for k, (_, exp) in self._entries.items() if now >= exp]:
            del self._entries[k]
        if len(self._entries) < self._max_size:
            return
        # Dicts keep insertion order, so the first keys are the oldest writes.
        count = max(1, int(len(self._entries) * self._eviction_ratio))
        for k in list(self._entries)[:count]:
            del self._entries[k]


class SharedStore:
    """Shared L2 store (redis) with a transparent in-process fallback."""

    def __init__(
        self,
        redis_url: str | None = None,
        *,
        key_prefix: str = "livability:",
        memory_max_size: int = 10_000,
        eviction_ratio: float = 0.1,
        reconnect_after_seconds: float = 30,
        socket_timeout_seconds: float = 2,
        client: redis.Redis | None = None,
    ):
        self._key_prefix = key_prefix
        self._reconnect_after_seconds = float(reconnect_after_seconds)
        self._memory = _MemoryStore(memory_max_size, eviction_ratio)
        self._degraded_until = 0.0
        if client is not None:
            self._client: redis.Redis | None = client
        elif redis_url:
            self._client = redis.Redis.from_url(
                redis_url,
                socket_timeout=socket_timeout_seconds,
                socket_connect_timeout=socket_timeout_seconds,
            )
        else:
            self._client = None

    @property
    def type(self) -> str:
        return "shared" if self._shared_available() else "memory"

    def _shared_available(self) -> bool:
        return self._client is not None and time.monotonic() >= self._degraded_until

    def _degrade(self, exc: Exception) -> None:
        self._degraded_until = time.monotonic() + self._reconnect_after_seconds
        logger.warning(
            "Shared cache unavailable, using in-memory fallback for %.0fs: %s",
            self._reconnect_after_seconds,
            exc,
        )

    def get(self, key: str) -> Any | None:
        if self._shared_available():
            try:
                raw = self._client.get(self._key_prefix + key)
            except redis.RedisError as exc:
                self._degrade(exc)
            else:
                if raw is None:
                    return None
                try:
                    return json.loads(raw)
                except ValueError:
                    logger.warning("Discarding undecodable shared cache entry %s", key)
                    return None
        return self._memory.get(key)

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        if self._shared_available():
            try:
                self._client.setex(self._key_prefix + key, max(1, int(ttl_seconds)), json.dumps(value))
                return
            except redis.RedisError as exc:
                self._degrade(exc)
        self._memory.set(key, value, ttl_seconds)

    def status(self) -> dict[str, Any]:
        """Connection status for observability: type, connected, latency_ms, key_count."""
        if self._shared_available():
            try:
                started = time.perf_counter()
                self._client.ping()
                latency_ms = (time.perf_counter() - started) * 1000
                key_count = int(self._client.dbsize())
                return {
                    "type": "shared",
                    "connected": True,
                    "latency_ms": round(latency_ms, 2),
                    "key_count": key_count,
                }
            except redis.RedisError as exc:
                self._degrade(exc)
        return {"type": "memory", "connected": False, "key_count": len(self._memory)}


class TwoLevelCache:
    """L1 -> L2 lookaside cache with cumulative per-process counters."""

    def __init__(self, name: str, l1: BoundedCache, store: SharedStore, *, ttl_seconds: float):
        self.name = name
        self._l1 = l1
        self._store = store
        self._ttl_seconds = float(ttl_seconds)
        self._lock = threading.Lock()
        self._l1_hits = 0
        self._l2_hits = 0
        self._misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def _count(self, attr: str) -> None:
        with self._lock:
            setattr(self, attr, getattr(self, attr) + 1)

    def get(self, key: str) -> Any | None:
        value = self._l1.get(key)
        st = _stats()
        if value is not None:
            self._count("_l1_hits")
            if st:
                st.l1_hits += 1
            return value

        value = self._store.get(key)
        if value is not None:
            self._count("_l2_hits")
            if st:
                st.l2_hits += 1
            self._l1.set(key, value)
            return value

        self._count("_misses")
        if st:
            st.misses += 1
        return None

    def set(self, key: str, value: Any) -> None:
        self._store.set(key, value, self._ttl_seconds)
        self._l1.set(key, value)
        st = _stats()
        if st:
            st.sets += 1

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "size": len(self._l1),
                "max": self._l1.max_size,
                "l1_hits": self._l1_hits,
                "l2_hits": self._l2_hits,
                "misses": self._misses,
            }

"""
Key-value stores with per-entry TTL.

The dedup cache and the pending-auth exchange only talk to the small
interface below, so a process-local dict and a shared Redis can back
them interchangeably.
"""
from __future__ import annotations

import asyncio
import heapq
import json
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol

import redis.asyncio as redis_asyncio

logger = logging.getLogger("payments.kv_store")

EVICTION_FRACTION = 0.10


class KeyValueStore(Protocol):
    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    async def acquire(self, key: str, value: Any, ttl: float) -> bool:
        """Store value only if key is absent or expired. True when stored."""
        ...

    async def get(self, key: str) -> Any | None: ...

    async def put(self, key: str, value: Any, ttl: float) -> None: ...

    async def delete(self, key: str) -> bool: ...

    async def purge_expired(self) -> int: ...

    async def size(self) -> int: ...


@dataclass
class _Entry:
    value: Any
    stored_at: float
    expires_at: float


class InMemoryKeyValueStore:
    """
    Process-local store.

    Expired entries are treated as absent on read and dropped lazily, and
    a background task (see start()) purges them every sweep_interval
    seconds. When max_entries is set and the store is full, the oldest
    10% of entries (at least one) are evicted before a new key goes in.
    """

    def __init__(
        self,
        *,
        name: str = "kv",
        max_entries: Optional[int] = None,
        sweep_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.max_entries = max_entries
        self.sweep_interval = sweep_interval
        self._clock = clock
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: asyncio.Task | None = None

    async def start(self) -> None:
        if not self.sweep_interval:
            return
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(
                self._sweep_loop(), name=f"{self.name}_sweep"
            )

    async def stop(self) -> None:
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None

    async def acquire(self, key: str, value: Any, ttl: float) -> bool:
        async with self._lock:
            now = self._clock()
            entry = self._entries.get(key)
            if entry is not None and entry.expires_at > now:
                return False
            self._insert(key, value, ttl, now)
            return True

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at <= self._clock():
            self._entries.pop(key, None)
            return None
        return entry.value

    async def put(self, key: str, value: Any, ttl: float) -> None:
        async with self._lock:
            self._insert(key, value, ttl, self._clock())

    async def delete(self, key: str) -> bool:
        async with self._lock:
            return self._entries.pop(key, None) is not None

    async def purge_expired(self) -> int:
        async with self._lock:
            return self._purge_expired(self._clock())

    async def size(self) -> int:
        now = self._clock()
        return sum(1 for entry in self._entries.values() if entry.expires_at > now)

    def _insert(self, key: str, value: Any, ttl: float, now: float) -> None:
        if (
            self.max_entries
            and key not in self._entries
            and len(self._entries) >= self.max_entries
        ):
            self._purge_expired(now)
            if len(self._entries) >= self.max_entries:
                self._evict_oldest()
        self._entries[key] = _Entry(value=value, stored_at=now, expires_at=now + ttl)

    def _purge_expired(self, now: float) -> int:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def _evict_oldest(self) -> None:
        count = max(1, int(len(self._entries) * EVICTION_FRACTION))
        oldest = heapq.nsmallest(
            count, self._entries.items(), key=lambda item: item[1].stored_at
        )
        for key, _ in oldest:
            del self._entries[key]
        logger.warning(
            "kv_store_capacity_eviction",
            extra={"store": self.name, "evicted": count, "max_entries": self.max_entries},
        )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval)
            try:
                purged = await self.purge_expired()
                if purged:
                    logger.info(
                        "kv_store_swept",
                        extra={"store": self.name, "purged": purged, "remaining": len(self._entries)},
                    )
            except Exception as exc:
                logger.warning("kv_store_sweep_failed", extra={"store": self.name, "error": str(exc)})


class RedisKeyValueStore:
    """
    Redis-backed store shared by every instance of the service.

    acquire() maps to SET NX EX, so the check-and-mark is atomic across
    processes. Redis expires keys itself; there is nothing to sweep and
    no capacity bound beyond the TTL.
    """

    def __init__(self, client, *, prefix: str):
        self._redis = client
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, *, prefix: str) -> "RedisKeyValueStore":
        return cls(redis_asyncio.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    async def start(self) -> None:
        await self._redis.ping()

    async def stop(self) -> None:
        await self._redis.aclose()

    async def acquire(self, key: str, value: Any, ttl: float) -> bool:
        was_set = await self._redis.set(
            self._key(key), json.dumps(value, default=str), nx=True, ex=_ttl_seconds(ttl)
        )
        return bool(was_set)

    async def get(self, key: str) -> Any | None:
        raw = await self._redis.get(self._key(key))
        if raw is None:
            return None
        return json.loads(raw)

    async def put(self, key: str, value: Any, ttl: float) -> None:
        await self._redis.set(self._key(key), json.dumps(value, default=str), ex=_ttl_seconds(ttl))

    async def delete(self, key: str) -> bool:
        return bool(await self._redis.delete(self._key(key)))

    async def purge_expired(self) -> int:
        return 0

    async def size(self) -> int:
        count = 0
        async for _ in self._redis.scan_iter(match=f"{self.prefix}:*", count=500):
            count += 1
        return count


def _ttl_seconds(ttl: float) -> int:
    return max(1, math.ceil(ttl))


def build_kv_store(
    backend: str,
    *,
    name: str,
    redis_url: str = "",
    max_entries: Optional[int] = None,
    sweep_interval: Optional[float] = None,
) -> KeyValueStore:
    backend = (backend or "memory").lower()
    if backend == "redis":
        if not redis_url:
            raise RuntimeError("KV_BACKEND=redis requires REDIS_URL")
        return RedisKeyValueStore.from_url(redis_url, prefix=f"payments:{name}")
    if backend == "memory":
        return InMemoryKeyValueStore(
            name=name, max_entries=max_entries, sweep_interval=sweep_interval
        )
    raise RuntimeError(f"Unknown KV_BACKEND '{backend}' (expected 'memory' or 'redis')")

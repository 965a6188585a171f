"""Processed-event cache guarding against Stripe's at-least-once delivery."""
from __future__ import annotations

import logging
import time

from services.shared.kv_store import KeyValueStore
from services.shared.metrics import dedup_cache_size

logger = logging.getLogger("payments.dedup")

KEY_PREFIX = "webhook:seen"


class EventDeduplicator:
    """
    Marks event ids as seen for ttl_seconds.

    This is advisory: with the in-memory backend a restart or a second
    instance forgets what was seen, so handlers still check the ledger
    before writing.
    """

    def __init__(self, store: KeyValueStore, ttl_seconds: int = 86400, max_entries: int = 10000):
        self.store = store
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries

    async def start(self) -> None:
        await self.store.start()

    async def stop(self) -> None:
        await self.store.stop()

    @staticmethod
    def _key(event_id: str) -> str:
        return f"{KEY_PREFIX}:{event_id}"

    async def try_acquire(self, event_id: str, event_type: str) -> bool:
        """True for the first caller within the TTL window, False for duplicates."""
        record = {"event_id": event_id, "event_type": event_type, "processed_at": time.time()}
        acquired = await self.store.acquire(self._key(event_id), record, self.ttl_seconds)
        if not acquired:
            logger.info("dedup_duplicate", extra={"event_id": event_id, "event_type": event_type})
        return acquired

    async def release(self, event_id: str) -> None:
        """Forget an event so a provider retry after a failure is processed again."""
        if await self.store.delete(self._key(event_id)):
            logger.info("dedup_released", extra={"event_id": event_id})

    async def stats(self) -> dict:
        size = await self.store.size()
        dedup_cache_size.set(size)
        return {
            "size": size,
            "max_size": self.max_entries,
            "ttl_hours": self.ttl_seconds / 3600,
        }

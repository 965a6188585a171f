import pytest

from services.payments.dedup import EventDeduplicator
from services.shared.kv_store import InMemoryKeyValueStore

pytestmark = [pytest.mark.unit, pytest.mark.asyncio]

DAY = 86400


def _dedup(clock, max_entries=10000):
    store = InMemoryKeyValueStore(name="dedup", max_entries=max_entries, clock=clock)
    return EventDeduplicator(store, ttl_seconds=DAY, max_entries=max_entries)


async def test_second_delivery_is_duplicate(clock):
    dedup = _dedup(clock)
    assert await dedup.try_acquire("evt_1", "invoice.paid") is True
    assert await dedup.try_acquire("evt_1", "invoice.paid") is False


async def test_distinct_events_are_independent(clock):
    dedup = _dedup(clock)
    assert await dedup.try_acquire("evt_1", "invoice.paid") is True
    assert await dedup.try_acquire("evt_2", "invoice.paid") is True


async def test_event_is_new_again_after_ttl(clock):
    dedup = _dedup(clock)
    await dedup.try_acquire("evt_1", "invoice.paid")
    clock.advance(DAY - 1)
    assert await dedup.try_acquire("evt_1", "invoice.paid") is False
    clock.advance(2)
    assert await dedup.try_acquire("evt_1", "invoice.paid") is True


async def test_release_allows_retry(clock):
    dedup = _dedup(clock)
    await dedup.try_acquire("evt_1", "checkout.session.completed")
    await dedup.release("evt_1")
    assert await dedup.try_acquire("evt_1", "checkout.session.completed") is True


async def test_release_of_unknown_event_is_harmless(clock):
    dedup = _dedup(clock)
    await dedup.release("evt_missing")
    assert await dedup.try_acquire("evt_missing", "invoice.paid") is True


async def test_capacity_evicts_oldest_events(clock):
    dedup = _dedup(clock, max_entries=100)
    for i in range(100):
        await dedup.try_acquire(f"evt_{i}", "invoice.paid")
        clock.advance(1)

    await dedup.try_acquire("evt_100", "invoice.paid")

    # The oldest tenth was evicted and reads as new.
    for i in range(10):
        assert await dedup.try_acquire(f"evt_{i}", "invoice.paid") is True
    # Newest entries are still remembered.
    for i in range(90, 101):
        assert await dedup.try_acquire(f"evt_{i}", "invoice.paid") is False


async def test_stats_reports_size_and_limits(clock):
    dedup = _dedup(clock, max_entries=500)
    await dedup.try_acquire("evt_1", "invoice.paid")
    await dedup.try_acquire("evt_2", "invoice.paid")

    stats = await dedup.stats()

    assert stats == {"size": 2, "max_size": 500, "ttl_hours": 24}

"""
HealthGate Backend — Counter Store Unit Tests
===============================================

What we test:
    ✅ Fixed window: expiry is set on first increment and never extended
    ✅ Window rollover starts a fresh count at 1
    ✅ decrement never creates a key and never goes negative
    ✅ Trailing-window event log drops events older than the window
    ✅ delete reports whether the key existed (single-use refresh tokens)
    ✅ Concurrent increments on one key are never lost
    ✅ Redis store: MULTI/EXEC round trip, key prefixing, error translation
    ✅ Only idempotent Redis commands are retried
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from healthgate.exceptions import StoreError
from healthgate.services.counter_store import InMemoryCounterStore, RedisCounterStore, build_counter_store
from conftest import FakeClock


class TestInMemoryWindow:
    """increment_and_get fixed-window behaviour."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryCounterStore(clock=self.clock)

    @pytest.mark.asyncio
    async def test_first_increment_starts_window(self):
        counter = await self.store.increment_and_get("k", 60_000)
        assert counter.count == 1
        assert counter.window_start == self.clock.now
        assert counter.expires_at == self.clock.now + 60_000

    @pytest.mark.asyncio
    async def test_later_increments_keep_original_expiry(self):
        first = await self.store.increment_and_get("k", 60_000)
        self.clock.advance(30_000)
        second = await self.store.increment_and_get("k", 60_000)
        assert second.count == 2
        assert second.expires_at == first.expires_at
        assert second.reset_in(self.clock.now) == 30_000

    @pytest.mark.asyncio
    async def test_window_rollover_resets_count(self):
        await self.store.increment_and_get("k", 60_000)
        await self.store.increment_and_get("k", 60_000)
        self.clock.advance(60_000)
        counter = await self.store.increment_and_get("k", 60_000)
        assert counter.count == 1

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        await self.store.increment_and_get("a", 60_000)
        counter = await self.store.increment_and_get("b", 60_000)
        assert counter.count == 1


class TestInMemoryValues:
    """get / set_with_expiry / delete / decrement."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryCounterStore(clock=self.clock)

    @pytest.mark.asyncio
    async def test_decrement_missing_key_does_not_create_it(self):
        assert await self.store.decrement("missing") == 0
        assert await self.store.get("missing") is None

    @pytest.mark.asyncio
    async def test_decrement_stops_at_zero(self):
        await self.store.increment_and_get("k", 60_000)
        assert await self.store.decrement("k") == 0
        assert await self.store.decrement("k") == 0

    @pytest.mark.asyncio
    async def test_value_expires(self):
        await self.store.set_with_expiry("k", "v", 1_000)
        assert await self.store.get("k") == "v"
        self.clock.advance(1_000)
        assert await self.store.get("k") is None

    @pytest.mark.asyncio
    async def test_value_without_expiry_persists(self):
        await self.store.set_with_expiry("k", "v", None)
        self.clock.advance(10**9)
        assert await self.store.get("k") == "v"

    @pytest.mark.asyncio
    async def test_delete_reports_existence_once(self):
        await self.store.set_with_expiry("k", "v", 60_000)
        assert await self.store.delete("k") is True
        assert await self.store.delete("k") is False

    @pytest.mark.asyncio
    async def test_purge_drops_expired_entries(self):
        store = InMemoryCounterStore(clock=self.clock, purge_interval=2)
        await store.set_with_expiry("old", "v", 10)
        self.clock.advance(20)
        await store.set_with_expiry("new", "v", 10_000)
        assert "old" not in store._values


class TestInMemoryEvents:
    """record_event trailing window."""

    def setup_method(self):
        self.clock = FakeClock()
        self.store = InMemoryCounterStore(clock=self.clock)

    @pytest.mark.asyncio
    async def test_counts_events_inside_window(self):
        for i in range(3):
            count = await self.store.record_event("ip", self.clock.now + i, 300_000)
        assert count == 3

    @pytest.mark.asyncio
    async def test_old_events_fall_out_of_window(self):
        start = self.clock.now
        await self.store.record_event("ip", start, 300_000)
        await self.store.record_event("ip", start + 1_000, 300_000)
        count = await self.store.record_event("ip", start + 300_500, 300_000)
        # The first event is older than 5 minutes; the second is not
        assert count == 2


class TestInMemoryConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_increments_lose_no_updates(self):
        store = InMemoryCounterStore(clock=FakeClock())

        counters = await asyncio.gather(*(store.increment_and_get("burst", 60_000) for _ in range(200)))

        assert sorted(c.count for c in counters) == list(range(1, 201))
        assert await store.get("burst") == "200"
        assert len({c.expires_at for c in counters}) == 1


# ══════════════════════════════════════════════════════════════════════════
# Redis implementation (mocked client)
# ══════════════════════════════════════════════════════════════════════════


def _mock_redis(pipeline_results=None):
    client = MagicMock()
    client.register_script = MagicMock(return_value=AsyncMock(return_value=1))

    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=pipeline_results or [])
    pipeline_cm = MagicMock()
    pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
    pipeline_cm.__aexit__ = AsyncMock(return_value=False)
    client.pipeline = MagicMock(return_value=pipeline_cm)
    return client, pipe


class TestRedisCounterStore:
    """Command shapes and error translation, without a Redis server."""

    @pytest.mark.asyncio
    async def test_increment_uses_transaction_with_nx_expiry(self):
        client, pipe = _mock_redis([3, False, 42_000])
        clock = FakeClock()
        store = RedisCounterStore(client, prefix="t:", clock=clock)

        counter = await store.increment_and_get("rate", 60_000)

        client.pipeline.assert_called_once_with(transaction=True)
        pipe.incr.assert_called_once_with("t:rate")
        pipe.pexpire.assert_called_once_with("t:rate", 60_000, nx=True)
        pipe.pttl.assert_called_once_with("t:rate")
        assert counter.count == 3
        assert counter.reset_in(clock.now) == 42_000

    @pytest.mark.asyncio
    async def test_record_event_trims_and_counts(self):
        client, pipe = _mock_redis([1, 2, 7, True])
        store = RedisCounterStore(client, prefix="t:")

        count = await store.record_event("suspicious:1.2.3.4", 1_000_000, 300_000)

        assert count == 7
        pipe.zremrangebyscore.assert_called_once_with("t:suspicious:1.2.3.4", "-inf", 700_000)
        pipe.pexpire.assert_called_once_with("t:suspicious:1.2.3.4", 300_000)

    @pytest.mark.asyncio
    async def test_decrement_runs_script_on_prefixed_key(self):
        client, _ = _mock_redis()
        store = RedisCounterStore(client, prefix="t:")
        assert await store.decrement("rate") == 1
        store._decrement_script.assert_awaited_once_with(keys=["t:rate"])

    @pytest.mark.asyncio
    async def test_set_with_expiry_uses_px(self):
        client, _ = _mock_redis()
        client.set = AsyncMock(return_value=True)
        store = RedisCounterStore(client, prefix="t:")
        await store.set_with_expiry("refresh:abc", "user-1", 5_000)
        client.set.assert_awaited_once_with("t:refresh:abc", "user-1", px=5_000)

    @pytest.mark.asyncio
    async def test_delete_returns_bool(self):
        client, _ = _mock_redis()
        client.delete = AsyncMock(side_effect=[1, 0])
        store = RedisCounterStore(client)
        assert await store.delete("k") is True
        assert await store.delete("k") is False

    @pytest.mark.asyncio
    @pytest.mark.filterwarnings("error::DeprecationWarning")
    async def test_connection_errors_are_retried_then_translated(self):
        client, _ = _mock_redis()
        client.get = AsyncMock(side_effect=RedisConnectionError("down"))
        store = RedisCounterStore(client)

        with pytest.raises(StoreError) as exc_info:
            await store.get("k")

        assert exc_info.value.context["operation"] == "get"
        assert client.get.await_count > 1

    @pytest.mark.asyncio
    async def test_increment_is_not_replayed_after_connection_error(self):
        client, pipe = _mock_redis()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("reset after EXEC"))
        store = RedisCounterStore(client)

        with pytest.raises(StoreError) as exc_info:
            await store.increment_and_get("rate", 60_000)

        assert exc_info.value.context["operation"] == "increment_and_get"
        assert pipe.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_record_event_is_not_replayed_after_connection_error(self):
        client, pipe = _mock_redis()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("reset after EXEC"))
        store = RedisCounterStore(client)

        with pytest.raises(StoreError):
            await store.record_event("suspicious:1.2.3.4", 1_000_000, 300_000)
        assert pipe.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_command_errors_are_not_retried(self):
        client, _ = _mock_redis()
        client.get = AsyncMock(side_effect=ResponseError("WRONGTYPE"))
        store = RedisCounterStore(client)

        with pytest.raises(StoreError):
            await store.get("k")
        assert client.get.await_count == 1

    @pytest.mark.asyncio
    async def test_ping_failure_returns_false(self):
        client, _ = _mock_redis()
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        store = RedisCounterStore(client)
        assert await store.ping() is False


class TestBuildCounterStore:
    def test_without_url_uses_memory(self):
        assert isinstance(build_counter_store(None), InMemoryCounterStore)

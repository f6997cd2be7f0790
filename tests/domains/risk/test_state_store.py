"""Tests for the per-entity sliding-window state store."""

import json
import random
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from src.domains.risk.config import WindowConfig
from src.domains.risk.errors import StateStoreUnavailableError
from src.domains.risk.state_store import (
    InMemoryEntityStateStore,
    RECORD_SCRIPT,
    RedisEntityStateStore,
    build_counters,
)
from src.domains.risk.models import WindowEntry

NOW = datetime(2026, 1, 15, 14, 0, 0, tzinfo=UTC)


class TestBuildCounters:
    def test_window_boundary_is_inclusive(self):
        entries = [
            WindowEntry("t-old", NOW - timedelta(hours=1, seconds=1), 100),
            WindowEntry("t-edge", NOW - timedelta(hours=1), 200),
            WindowEntry("t-now", NOW, 300),
        ]
        counters = build_counters("1h", 3600, entries, NOW)
        assert counters.count == 2
        assert counters.total_amount == 500
        assert [e.transaction_id for e in counters.entries] == ["t-edge", "t-now"]

    def test_distinct_merchants_ignores_missing(self):
        entries = [
            WindowEntry("a", NOW, 100, "5411"),
            WindowEntry("b", NOW, 100, "5411"),
            WindowEntry("c", NOW, 100, "7995"),
            WindowEntry("d", NOW, 100, None),
        ]
        assert build_counters("1h", 3600, entries, NOW).distinct_merchants == 2


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_snapshot_includes_current_transaction(self):
        store = InMemoryEntityStateStore()
        snapshot = await store.record_transaction("e-1", "t-1", 5_000, NOW)
        assert snapshot.window("1h").count == 1
        assert snapshot.window("1h").total_amount == 5_000
        assert snapshot.as_of == NOW

    @pytest.mark.asyncio
    async def test_windows_have_independent_horizons(self):
        store = InMemoryEntityStateStore()
        await store.record_transaction("e-1", "t-1", 1_000, NOW - timedelta(days=2))
        await store.record_transaction("e-1", "t-2", 2_000, NOW - timedelta(hours=3))
        snapshot = await store.record_transaction("e-1", "t-3", 3_000, NOW)

        assert snapshot.window("1h").count == 1
        assert snapshot.window("24h").count == 2
        assert snapshot.window("24h").total_amount == 5_000
        assert snapshot.window("7d").count == 3

    @pytest.mark.asyncio
    async def test_entities_are_isolated(self):
        store = InMemoryEntityStateStore()
        await store.record_transaction("e-1", "t-1", 1_000, NOW)
        snapshot = await store.record_transaction("e-2", "t-2", 2_000, NOW)
        assert snapshot.window("1h").count == 1
        assert store.entity_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_transaction_not_recounted(self):
        store = InMemoryEntityStateStore()
        await store.record_transaction("e-1", "t-1", 1_000, NOW)
        snapshot = await store.record_transaction("e-1", "t-1", 1_000, NOW)
        assert snapshot.window("1h").count == 1
        assert snapshot.window("1h").total_amount == 1_000
        assert snapshot.duplicate
        assert await store.contains("e-1", "t-1")
        assert not await store.contains("e-1", "t-2")
        assert not await store.contains("e-2", "t-1")

    @pytest.mark.asyncio
    async def test_late_arrival_kept_in_order(self):
        store = InMemoryEntityStateStore()
        await store.record_transaction("e-1", "t-2", 1_000, NOW)
        snapshot = await store.record_transaction("e-1", "t-1", 1_000, NOW - timedelta(minutes=5))
        ids = [e.transaction_id for e in snapshot.window("1h").entries]
        assert ids == ["t-1", "t-2"]
        assert await store.last_timestamp("e-1") == NOW

    @pytest.mark.asyncio
    async def test_entries_truncated_at_bound(self):
        config = WindowConfig(durations={"1h": 3600}, max_entries_per_window=3)
        store = InMemoryEntityStateStore(config)
        snapshot = None
        for i in range(5):
            snapshot = await store.record_transaction(
                "e-1", f"t-{i}", 100, NOW + timedelta(seconds=i)
            )
        assert snapshot.window("1h").count == 3
        assert [e.transaction_id for e in snapshot.window("1h").entries] == ["t-2", "t-3", "t-4"]

    @pytest.mark.asyncio
    async def test_get_windows_prunes_relative_to_now(self):
        store = InMemoryEntityStateStore()
        await store.record_transaction("e-1", "t-1", 1_000, NOW)
        later = await store.get_windows("e-1", NOW + timedelta(hours=2))
        assert later.window("1h").count == 0
        assert later.window("24h").count == 1

    @pytest.mark.asyncio
    async def test_get_windows_unknown_entity(self):
        store = InMemoryEntityStateStore()
        snapshot = await store.get_windows("nobody", NOW)
        assert snapshot.windows == {}
        assert snapshot.window("1h").count == 0
        assert await store.last_timestamp("nobody") is None

    @pytest.mark.asyncio
    async def test_sweep_evicts_idle_entities(self):
        store = InMemoryEntityStateStore()
        await store.record_transaction("idle", "t-1", 1_000, NOW - timedelta(days=8))
        await store.record_transaction("active", "t-2", 1_000, NOW - timedelta(days=1))

        evicted = await store.sweep(NOW)

        assert evicted == 1
        assert store.entity_count == 1
        assert await store.last_timestamp("idle") is None
        assert await store.last_timestamp("active") is not None

    @pytest.mark.asyncio
    async def test_counters_match_brute_force_on_random_sequence(self):
        rng = random.Random(1234)
        config = WindowConfig()
        store = InMemoryEntityStateStore(config)
        recorded: list[tuple[datetime, int]] = []
        ts = NOW

        for i in range(300):
            ts = ts + timedelta(seconds=rng.choice([0, 1, 30, 600, 3_599, 3_600, 7_200, 40_000]))
            amount = rng.randint(1, 2_000_000)
            recorded.append((ts, amount))
            snapshot = await store.record_transaction("e-1", f"t-{i}", amount, ts)

            for name, duration in config.durations.items():
                cutoff = ts - timedelta(seconds=duration)
                expected = [a for t, a in recorded if cutoff <= t <= ts]
                counters = snapshot.window(name)
                assert counters.count == len(expected), (i, name)
                assert counters.total_amount == sum(expected), (i, name)

    @pytest.mark.asyncio
    async def test_ping_always_true(self):
        assert await InMemoryEntityStateStore().ping()


def _ms(ts: datetime) -> int:
    return int(ts.timestamp() * 1000)


def _recording_client(added: int) -> AsyncMock:
    """Client whose reads return a single recorded entry at NOW."""
    client = AsyncMock()
    client.eval = AsyncMock(return_value=added)
    client.zrange = AsyncMock(return_value=[("t-1", float(_ms(NOW)))])
    client.zrangebyscore = AsyncMock(return_value=["t-1"])
    client.hmget = AsyncMock(
        return_value=[json.dumps({"transaction_id": "t-1", "ts": _ms(NOW), "amount": 1_000})]
    )
    return client


class TestRedisStore:
    @pytest.mark.asyncio
    async def test_connection_error_raises_unavailable(self):
        client = AsyncMock()
        client.eval = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        store = RedisEntityStateStore(client)

        with pytest.raises(StateStoreUnavailableError):
            await store.record_transaction("e-1", "t-1", 1_000, NOW)

    @pytest.mark.asyncio
    async def test_record_is_one_atomic_script_call(self):
        client = _recording_client(added=1)
        store = RedisEntityStateStore(client)

        snapshot = await store.record_transaction("e-1", "t-1", 1_000, NOW, "5411")

        client.eval.assert_awaited_once()
        script, numkeys, *args = client.eval.await_args.args
        assert script == RECORD_SCRIPT
        assert numkeys == 2
        assert args[:3] == ["risk:entity:e-1:txns", "risk:entity:e-1:idx", "t-1"]
        assert args[4:] == [_ms(NOW), _ms(NOW) - 604_800_000, 604_800]
        assert not snapshot.duplicate
        client.hsetnx.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_write_is_retried_in_full(self):
        client = _recording_client(added=1)
        client.eval.side_effect = [RedisConnectionError("reset by peer"), 1]
        store = RedisEntityStateStore(client)

        with pytest.raises(StateStoreUnavailableError):
            await store.record_transaction("e-1", "t-1", 1_000, NOW)
        snapshot = await store.record_transaction("e-1", "t-1", 1_000, NOW)

        first, retry = client.eval.await_args_list
        # Nothing was half-written, so the retry sends the whole write again
        assert retry.args == first.args
        assert not snapshot.duplicate
        assert snapshot.window("1h").count == 1

    @pytest.mark.asyncio
    async def test_already_held_transaction_flagged_duplicate(self):
        client = _recording_client(added=0)
        store = RedisEntityStateStore(client)

        snapshot = await store.record_transaction("e-1", "t-1", 1_000, NOW)

        assert snapshot.duplicate
        assert snapshot.window("1h").count == 1

    @pytest.mark.asyncio
    async def test_contains_checks_hash(self):
        client = AsyncMock()
        client.hexists = AsyncMock(return_value=1)
        assert await RedisEntityStateStore(client).contains("e-1", "t-1")
        client.hexists.assert_awaited_once_with("risk:entity:e-1:txns", "t-1")

    @pytest.mark.asyncio
    async def test_read_error_raises_unavailable(self):
        client = AsyncMock()
        client.zrangebyscore = AsyncMock(side_effect=RedisConnectionError("timeout"))
        store = RedisEntityStateStore(client)

        with pytest.raises(StateStoreUnavailableError):
            await store.get_windows("e-1", NOW)

    @pytest.mark.asyncio
    async def test_get_windows_decodes_entries(self):
        client = AsyncMock()
        client.zrangebyscore = AsyncMock(return_value=["t-1", "t-2"])
        client.hmget = AsyncMock(
            return_value=[
                json.dumps(
                    {
                        "transaction_id": "t-1",
                        "ts": _ms(NOW - timedelta(hours=2)),
                        "amount": 1_000,
                        "merchant_category": "5411",
                    }
                ),
                json.dumps(
                    {
                        "transaction_id": "t-2",
                        "ts": _ms(NOW),
                        "amount": 2_500,
                        "merchant_category": "7995",
                    }
                ),
            ]
        )
        store = RedisEntityStateStore(client)

        snapshot = await store.get_windows("e-1", NOW)

        assert snapshot.window("1h").count == 1
        assert snapshot.window("1h").total_amount == 2_500
        assert snapshot.window("24h").count == 2
        assert snapshot.window("24h").distinct_merchants == 2
        client.zrangebyscore.assert_awaited_once_with(
            "risk:entity:e-1:idx", _ms(NOW) - 604_800_000, _ms(NOW)
        )

    @pytest.mark.asyncio
    async def test_last_timestamp_from_sorted_set(self):
        client = AsyncMock()
        client.zrange = AsyncMock(return_value=[("t-9", float(_ms(NOW)))])
        store = RedisEntityStateStore(client)
        assert await store.last_timestamp("e-1") == NOW

    @pytest.mark.asyncio
    async def test_last_timestamp_empty(self):
        client = AsyncMock()
        client.zrange = AsyncMock(return_value=[])
        assert await RedisEntityStateStore(client).last_timestamp("e-1") is None

    @pytest.mark.asyncio
    async def test_ping_false_when_unreachable(self):
        client = AsyncMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("down"))
        assert await RedisEntityStateStore(client).ping() is False

    @pytest.mark.asyncio
    async def test_sweep_is_noop(self):
        assert await RedisEntityStateStore(AsyncMock()).sweep(NOW) == 0

"""Tests for per-key asyncio locks."""

import asyncio

import pytest

from src.domains.risk.locks import KeyedLock


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_runs_in_arrival_order(self):
        locks = KeyedLock()
        order: list[int] = []

        async def worker(i: int) -> None:
            async with locks.hold("entity-1"):
                await asyncio.sleep(0)
                order.append(i)

        await asyncio.gather(*(worker(i) for i in range(10)))
        assert order == list(range(10))

    @pytest.mark.asyncio
    async def test_same_key_is_exclusive(self):
        locks = KeyedLock()
        active = 0
        peak = 0

        async def worker() -> None:
            nonlocal active, peak
            async with locks.hold("entity-1"):
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.001)
                active -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock()
        both_inside = asyncio.Event()
        inside = 0

        async def worker(key: str) -> None:
            nonlocal inside
            async with locks.hold(key):
                inside += 1
                if inside == 2:
                    both_inside.set()
                await asyncio.wait_for(both_inside.wait(), timeout=1.0)

        await asyncio.gather(worker("a"), worker("b"))
        assert both_inside.is_set()

    @pytest.mark.asyncio
    async def test_released_locks_are_dropped(self):
        locks = KeyedLock()
        async with locks.hold("entity-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_lock_released_on_error(self):
        locks = KeyedLock()
        with pytest.raises(RuntimeError):
            async with locks.hold("entity-1"):
                raise RuntimeError("boom")
        assert len(locks) == 0
        async with locks.hold("entity-1"):
            pass

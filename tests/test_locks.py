"""Tests for per-key serialization (core/locks.py)."""

import asyncio

import pytest

from core.locks import KeyedLocks, parcel_key, session_key


class TestKeyedLocks:

    @pytest.mark.asyncio
    async def test_same_key_runs_one_at_a_time(self):
        locks = KeyedLocks()
        inside = 0
        peak = 0

        async def worker():
            nonlocal inside, peak
            async with locks.hold(parcel_key("P-1")):
                inside += 1
                peak = max(peak, inside)
                await asyncio.sleep(0.01)
                inside -= 1

        await asyncio.gather(*(worker() for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_different_keys_do_not_wait(self):
        locks = KeyedLocks()
        entered = asyncio.Event()

        async def holder():
            async with locks.hold(parcel_key("P-1")):
                await entered.wait()

        task = asyncio.create_task(holder())
        await asyncio.sleep(0)
        async with locks.hold(parcel_key("P-2")):
            entered.set()
        await asyncio.wait_for(task, timeout=1)

    @pytest.mark.asyncio
    async def test_registry_is_emptied_after_use(self):
        locks = KeyedLocks()
        async with locks.hold(parcel_key("P-1"), session_key("S-1")):
            assert locks.is_held("parcel:P-1")
            assert locks.is_held("session:S-1")
        assert locks._locks == {}
        assert not locks.is_held("parcel:P-1")

    @pytest.mark.asyncio
    async def test_released_when_body_raises(self):
        locks = KeyedLocks()
        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")
        assert not locks.is_held("k")
        async with locks.hold("k"):
            pass

    @pytest.mark.asyncio
    async def test_overlapping_key_sets_do_not_deadlock(self):
        locks = KeyedLocks()

        async def worker(keys):
            async with locks.hold(*keys):
                await asyncio.sleep(0.01)

        await asyncio.wait_for(
            asyncio.gather(worker(["a", "b"]), worker(["b", "a"]), worker(["a", "a"])),
            timeout=2,
        )

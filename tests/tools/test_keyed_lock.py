import asyncio

import pytest

from gate_attendance.backend.services.errors import StorageTimeoutError
from gate_attendance.backend.tools import keyed_lock as keyed_lock_module
from gate_attendance.backend.tools.keyed_lock import KeyedLock


@pytest.mark.asyncio
class TestKeyedLock:

    async def test_same_key_is_serialised(self):
        locks = KeyedLock(timeout=1.0)
        order = []

        async def worker(name):
            async with locks.hold(("student", "2024-03-04")):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))

        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])

    async def test_different_keys_run_concurrently(self):
        locks = KeyedLock(timeout=1.0)
        inside = asyncio.Event()

        async def first():
            async with locks.hold("gate-1"):
                await asyncio.wait_for(inside.wait(), timeout=1.0)

        async def second():
            async with locks.hold("gate-2"):
                inside.set()

        await asyncio.gather(first(), second())

    async def test_acquire_times_out(self):
        locks = KeyedLock(timeout=0.05)
        async with locks.hold("gate-1"):
            with pytest.raises(StorageTimeoutError):
                async with locks.hold("gate-1"):
                    pass

    async def test_entries_are_dropped_when_unused(self):
        locks = KeyedLock(timeout=1.0)
        async with locks.hold("gate-1"):
            assert len(locks) == 1
        assert len(locks) == 0

    async def test_lock_is_released_on_error(self):
        locks = KeyedLock(timeout=0.1)
        with pytest.raises(RuntimeError):
            async with locks.hold("gate-1"):
                raise RuntimeError("boom")

        async with locks.hold("gate-1"):
            pass
        assert len(locks) == 0

    async def test_lock_granted_as_wait_times_out_is_released(self, monkeypatch):
        locks = KeyedLock(timeout=0.1)
        granted = []

        async def granted_then_timed_out(awaitable, timeout):
            await awaitable
            granted.append(locks._entries["gate-1"][0])
            raise asyncio.TimeoutError

        monkeypatch.setattr(keyed_lock_module.asyncio, "wait_for", granted_then_timed_out)
        with pytest.raises(StorageTimeoutError):
            async with locks.hold("gate-1"):
                pass
        monkeypatch.undo()

        assert granted and not granted[0].locked()
        async with locks.hold("gate-1"):
            pass

"""
Deferred continuation tests on a real event loop
"""

import asyncio

from services.scheduler import TaskScheduler


class TestTaskScheduler:

    async def test_runs_after_delay(self):
        scheduler = TaskScheduler()
        ran = asyncio.Event()

        async def continuation():
            ran.set()

        handle = scheduler.schedule(0.01, continuation, name='reveal')
        await asyncio.wait_for(ran.wait(), timeout=1)

        assert handle.name == 'reveal'
        assert not handle.cancelled

    async def test_cancelled_handle_never_runs(self):
        scheduler = TaskScheduler()
        calls = []

        async def continuation():
            calls.append(1)

        handle = scheduler.schedule(0.05, continuation)
        assert handle.cancel()
        assert not handle.cancel()
        await asyncio.sleep(0.1)

        assert calls == []

    async def test_failing_continuation_does_not_escape(self):
        scheduler = TaskScheduler()

        async def broken():
            raise RuntimeError("boom")

        handle = scheduler.schedule(0, broken)
        await asyncio.sleep(0.01)

        assert handle.done()
        assert scheduler.pending() == 0

    async def test_shutdown_cancels_everything(self):
        scheduler = TaskScheduler()

        async def continuation():
            pass

        scheduler.schedule(60, continuation)
        scheduler.schedule(60, continuation)
        await scheduler.shutdown()

        assert scheduler.pending() == 0

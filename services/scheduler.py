"""
Cancellable deferred continuations on the running event loop

Used for the commit-reveal delay and bridge fill polling. Every scheduled
continuation returns a handle so an abandoned saga can cancel it.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)


class DeferredTask:
    """Handle to a continuation scheduled with TaskScheduler"""

    def __init__(self, name: str, delay: float, task: Optional[asyncio.Task] = None):
        self.name = name
        self.delay = delay
        self._task = task
        self.cancelled = False

    def cancel(self) -> bool:
        if self.cancelled or self.done():
            return False
        self.cancelled = True
        if self._task is not None:
            self._task.cancel()
        logger.info(f"🛑 SCHEDULER: cancelled {self.name}")
        return True

    def done(self) -> bool:
        return self._task is not None and self._task.done()


class TaskScheduler:
    """Runs coroutine factories after a delay on the current loop"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def schedule(self, delay: float, callback: Callable[[], Awaitable[None]], name: str = '') -> DeferredTask:
        handle = DeferredTask(name or getattr(callback, '__name__', 'continuation'), delay)

        async def _runner():
            await asyncio.sleep(delay)
            if handle.cancelled:
                return
            try:
                await callback()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Callbacks report their own failures; this only keeps the loop alive
                logger.error(f"❌ SCHEDULER: continuation {handle.name} failed: {e}", exc_info=True)

        task = asyncio.get_running_loop().create_task(_runner())
        handle._task = task
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        logger.debug(f"⏱️ SCHEDULER: {handle.name} in {delay}s")
        return handle

    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

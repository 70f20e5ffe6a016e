"""Cancellable one-shot timers for session snapshots."""
import asyncio
import logging
from typing import Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

TimerCallback = Callable[[], Awaitable[None]]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: TimerCallback) -> TimerHandle: ...


class AsyncioScheduler:
    """Runs each timer as its own task on the running event loop."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def call_later(self, delay: float, callback: TimerCallback) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(self._run(delay, callback))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @staticmethod
    async def _run(delay: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay)
        try:
            await callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Scheduled callback failed")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

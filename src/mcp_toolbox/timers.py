"""Cancellable one-shot and periodic timers keyed by string.

Each timer is an ``asyncio.Task``. Scheduling a key that is already active
cancels the previous timer first, so a key never has two live timers.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

TimerCallback = Callable[..., Union[None, Awaitable[None]]]


class TimerRegistry:
    """Owns every background timer of one component."""

    def __init__(self, name: str = "timers"):
        self.name = name
        self._tasks: Dict[str, asyncio.Task] = {}
        self._closed = False

    def call_later(self, key: str, delay: float, callback: TimerCallback, *args: Any) -> asyncio.Task:
        """Run ``callback(*args)`` once after ``delay`` seconds."""
        return self._start(key, self._run_once(key, delay, callback, args))

    def call_every(
        self,
        key: str,
        interval: float,
        callback: TimerCallback,
        *args: Any,
        first_delay: Optional[float] = None,
    ) -> asyncio.Task:
        """Run ``callback(*args)`` every ``interval`` seconds until cancelled.

        The first run happens after ``first_delay`` (defaults to ``interval``).
        """
        delay = interval if first_delay is None else first_delay
        return self._start(key, self._run_periodic(key, interval, delay, callback, args))

    def cancel(self, key: str) -> bool:
        """Cancel the timer for ``key``. Returns True if one was active."""
        task = self._tasks.pop(key, None)
        if task is None:
            return False
        if task is not asyncio.current_task() and not task.done():
            task.cancel()
        return True

    def active(self, key: str) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def keys(self) -> List[str]:
        return [k for k, t in self._tasks.items() if not t.done()]

    async def shutdown(self):
        """Cancel every timer and wait for them to finish."""
        self._closed = True
        tasks = list(self._tasks.values())
        self._tasks.clear()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        pending = [t for t in tasks if t is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def _start(self, key: str, coro) -> asyncio.Task:
        if self._closed:
            coro.close()
            raise RuntimeError(f"Timer registry '{self.name}' is shut down")
        self.cancel(key)
        task = asyncio.create_task(coro, name=f"{self.name}:{key}")
        self._tasks[key] = task
        return task

    async def _run_once(self, key: str, delay: float, callback: TimerCallback, args: tuple):
        await asyncio.sleep(delay)
        # Forget the task before firing so the callback may reschedule the same key.
        if self._tasks.get(key) is asyncio.current_task():
            del self._tasks[key]
        await self._invoke(key, callback, args)

    async def _run_periodic(
        self, key: str, interval: float, first_delay: float, callback: TimerCallback, args: tuple
    ):
        await asyncio.sleep(first_delay)
        while True:
            await self._invoke(key, callback, args)
            if self._tasks.get(key) is not asyncio.current_task():
                # Cancelled or replaced from inside the callback.
                return
            await asyncio.sleep(interval)

    async def _invoke(self, key: str, callback: TimerCallback, args: tuple):
        try:
            result = callback(*args)
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Timer %s:%s callback failed: %s", self.name, key, e, exc_info=True)

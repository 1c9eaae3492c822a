import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class PeriodicTask:
    """Run ``action`` every ``interval`` seconds on the event loop until cancelled.

    ``reset()`` restarts the countdown from zero without running the action.
    An exception raised by the action is logged and the schedule continues.
    """

    def __init__(
        self,
        interval: float,
        action: Callable[[], Awaitable[object]],
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        name: str = "periodic",
    ) -> None:
        self.interval = interval
        self._action = action
        self._sleep = sleep
        self.name = name
        self._task: asyncio.Task | None = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name=self.name)

    def cancel(self) -> None:
        task, self._task = self._task, None
        # Called from inside the action: the loop notices it was detached
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def reset(self, interval: float | None = None) -> None:
        if interval is not None:
            self.interval = interval
        was_running = self.running
        self.cancel()
        if was_running:
            self.start()

    async def _run(self) -> None:
        while True:
            await self._sleep(self.interval)
            self.runs += 1
            try:
                await self._action()
            except Exception:
                logger.exception("Periodic task %s failed", self.name)
            if self._task is not asyncio.current_task():
                return

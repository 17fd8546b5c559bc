"""Cancellable periodic task runner (watchdog, idle sweep, janitor)."""

import asyncio
from typing import Any, Callable, Coroutine

from loguru import logger


class PeriodicTask:
    """Runs ``callback`` every ``interval`` seconds until stopped.

    The first run happens one interval after ``start``. Errors in the callback
    are logged and do not stop the loop.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        callback: Callable[[], Coroutine[Any, Any, Any]],
    ):
        self.name = name
        self.interval = interval
        self.callback = callback
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._loop(), name=f"periodic:{self.name}")
        logger.debug(f"Periodic task {self.name} started (every {self.interval:g}s)")

    def stop(self) -> None:
        self._running = False
        if self._task:
            # Stopping from inside the callback must not cancel the caller.
            if self._task is not asyncio.current_task():
                self._task.cancel()
            self._task = None

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.interval)
                if not self._running:
                    break
                await self.callback()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Periodic task {self.name} error: {e}")

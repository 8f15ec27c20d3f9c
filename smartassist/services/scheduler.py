"""Cooperative periodic tasks for auto-save, heartbeats and polling."""
import asyncio
from typing import Awaitable, Callable, Optional

from smartassist.core.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Run an async callback every ``interval`` seconds on the running loop.

    The callback is invoked fresh on every tick, so it always sees the
    shared state as it is at fire time. Errors are logged and the schedule
    keeps going. ``stop`` is synchronous: once it returns no further tick
    starts, though a tick already awaiting I/O is cancelled mid-flight.

    Example:
        >>> task = PeriodicTask(5, autosaver.tick, name="autosave")
        >>> task.start()
        >>> ...
        >>> task.stop()
    """

    def __init__(self, interval: float, callback: Callable[[], Awaitable[None]], name: str = "periodic"):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self.ticks = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=self.name)
        logger.debug(f"Periodic task {self.name} started ({self.interval}s)")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            logger.debug(f"Periodic task {self.name} stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self.ticks += 1
            try:
                await self.callback()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Periodic task {self.name} failed: {exc}", exc_info=True)

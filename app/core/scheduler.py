import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger(__name__)

Job = Callable[[], Union[Awaitable[Any], Any]]


class PeriodicTask:
    """
    Run ``job`` every ``interval`` seconds on the running event loop.

    The job may be sync or async. A failing run is logged and the schedule
    continues. ``stop()`` cancels the loop and waits for it to finish.
    """

    def __init__(self, name: str, interval: float, job: Job):
        self.name = name
        self.interval = interval
        self._job = job
        self._task: Optional[asyncio.Task] = None
        self.runs = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        try:
            result = self._job()
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Periodic task '{self.name}' failed: {e}")
        finally:
            self.runs += 1

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            await self.run_once()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info(f"Periodic task '{self.name}' started (every {self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info(f"Periodic task '{self.name}' stopped")

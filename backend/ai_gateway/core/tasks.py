"""
Cancellable periodic background tasks.

Used for cache sweeps, rate-limiter cleanup, error-record cleanup and
provider health checks. Every task is owned by the gateway lifecycle and
stopped explicitly on shutdown.
"""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from ai_gateway.core.logging import get_logger

logger = get_logger(__name__)

JobFn = Callable[[], Union[Any, Awaitable[Any]]]


class PeriodicTask:
    """
    Runs `job` every `interval_seconds` on the running event loop.

    A failing run is logged and the schedule continues. `stop()` cancels
    the loop and waits for it to finish.
    """

    def __init__(self, name: str, interval_seconds: float, job: JobFn):
        self.name = name
        self.interval_seconds = interval_seconds
        self._job = job
        self._task: Optional[asyncio.Task] = None
        self.runs = 0
        self.failures = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop(), name=f"periodic:{self.name}")
        logger.info("periodic_task_started", task=self.name, interval_seconds=self.interval_seconds)

    async def run_once(self) -> None:
        try:
            result = self._job()
            if inspect.isawaitable(result):
                await result
            self.runs += 1
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.warning(
                "periodic_task_failed",
                task=self.name,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            await self.run_once()

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        if not task.done():
            task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("periodic_task_stopped", task=self.name, runs=self.runs, failures=self.failures)

"""
In-process periodic job runner.

Used by the API process when ENABLE_BACKGROUND_JOBS is set. Each job runs
once at startup and then every interval_seconds. A failing run is logged
and the loop keeps going.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicJob:
    def __init__(
        self,
        name: str,
        interval_seconds: float,
        coroutine_factory: Callable[[], Awaitable],
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.coroutine_factory = coroutine_factory
        self.runs = 0
        self.failures = 0
        self._task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> None:
        self.runs += 1
        try:
            result = await self.coroutine_factory()
            logger.info("Background job run complete", extra={"job": self.name, "result": result})
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.failures += 1
            logger.error(
                "Background job run failed",
                extra={"job": self.name, "error": str(e)},
                exc_info=True,
            )

    async def _loop(self) -> None:
        while not self._stopped.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue

    def start(self) -> asyncio.Task:
        if self.is_running:
            return self._task
        self._stopped.clear()
        self._task = asyncio.create_task(self._loop(), name=f"job:{self.name}")
        logger.info(
            "Background job started",
            extra={"job": self.name, "interval_seconds": self.interval_seconds}
        )
        return self._task

    async def stop(self) -> None:
        self._stopped.set()
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Background job stopped", extra={"job": self.name})

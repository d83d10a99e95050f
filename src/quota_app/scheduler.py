import asyncio
import logging
from typing import Awaitable, Callable

from quota_app.refresh_service import BatchReport, RefreshService
from quota_app.settings import clamp_refresh_minutes

logger = logging.getLogger(__name__)


class AutoRefreshScheduler:
    """
    Periodically refreshes every non-paused account.

    At most one timer task exists; changing the interval cancels it and
    schedules a new one. Ticks run accounts one at a time.
    """

    def __init__(
        self,
        refresh_service: RefreshService,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._refresh_service = refresh_service
        self._sleep = sleep
        self._task: asyncio.Task[None] | None = None
        self._interval_minutes: int | None = None

    @property
    def interval_minutes(self) -> int | None:
        return self._interval_minutes

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, interval_minutes: int) -> int:
        minutes = clamp_refresh_minutes(interval_minutes)
        self._cancel_task()
        self._interval_minutes = minutes
        self._task = asyncio.create_task(self._run_loop(minutes), name="auto-refresh")
        logger.info("Auto-refresh scheduled every %d minutes", minutes)
        return minutes

    def set_interval(self, interval_minutes: int) -> int:
        return self.start(interval_minutes)

    async def stop(self) -> None:
        task = self._task
        self._cancel_task()
        self._interval_minutes = None
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
            logger.info("Auto-refresh stopped")

    async def run_tick(self) -> BatchReport:
        return await self._refresh_service.refresh_all(concurrency=1, trigger="scheduled")

    def _cancel_task(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run_loop(self, minutes: int) -> None:
        while True:
            await self._sleep(minutes * 60)
            try:
                await self.run_tick()
            except Exception:
                logger.exception("Auto-refresh tick failed")

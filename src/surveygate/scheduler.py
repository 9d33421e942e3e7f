from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Callable, Protocol

from surveygate.utils import ensure_aware, now_utc

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 60.0


class LifecycleProvider(Protocol):
    def activate_scheduled(self, now: datetime) -> int: ...

    def archive_expired(self, now: datetime) -> int: ...


class SurveyScheduler:
    """Periodically opens scheduled surveys and archives expired ones.

    Runs as a single asyncio task. Each tick reads the clock once and passes
    the same instant to both sweeps. Provider errors are logged and the loop
    keeps going; cancelling the task stops it between or during ticks.
    """

    def __init__(
        self,
        provider: LifecycleProvider | None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        if interval <= 0:
            interval = DEFAULT_INTERVAL_SECONDS
        self.provider = provider
        self.interval = interval
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task[None] | None:
        if self.provider is None:
            logger.warning("Survey scheduler skipped: no provider configured")
            return None
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._loop(), name="survey-scheduler")
        logger.info("Survey scheduler started interval=%ss", self.interval)
        return self._task

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Survey scheduler stopped")

    async def _loop(self) -> None:
        while True:
            await self.tick()
            await asyncio.sleep(self.interval)

    async def tick(self) -> tuple[int, int]:
        if self.provider is None:
            return 0, 0
        now = ensure_aware(self._clock())
        opened = await self._sweep("activate", self.provider.activate_scheduled, now)
        archived = await self._sweep("archive", self.provider.archive_expired, now)
        return opened, archived

    async def _sweep(
        self, name: str, sweep: Callable[[datetime], int], now: datetime
    ) -> int:
        try:
            count = await asyncio.to_thread(sweep, now)
        except Exception:
            logger.exception("Survey %s sweep failed", name)
            return 0
        if count:
            logger.info("Survey %s sweep count=%d", name, count)
        return count

    def run_once(self) -> tuple[int, int]:
        return asyncio.run(self.tick())

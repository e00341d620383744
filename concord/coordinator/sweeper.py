"""Periodic sweep of manual-resolution timeouts."""

import asyncio

from loguru import logger

from concord.coordinator.session import ResolutionCoordinator, ResolutionOutcome


class TimeoutSweeper:
    """
    Background task that calls ``sweep_timeouts`` every ``interval`` seconds.

    Usage:
        sweeper = TimeoutSweeper(coordinator)
        sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        coordinator: ResolutionCoordinator,
        interval: float | None = None,
    ) -> None:
        self.coordinator = coordinator
        self.interval = interval or coordinator.settings.concord_sweep_interval
        self.sweeps = 0
        self._task: asyncio.Task | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._task = asyncio.create_task(self._run(), name="concord-timeout-sweeper")
        logger.info(f"Timeout sweeper started (interval={self.interval}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info("Timeout sweeper stopped")

    async def sweep_once(self) -> list[ResolutionOutcome]:
        outcomes = await self.coordinator.sweep_timeouts()
        self.sweeps += 1
        if outcomes:
            logger.info(f"Timeout sweep acted on {len(outcomes)} conflicts")
        return outcomes

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Timeout sweep failed: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

"""Asyncio driver that runs housekeeping cycles on a fixed interval."""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from ..config.settings import SchedulerConfig, get_app_config
from ..datalake.schemas import CycleResult
from ..monitoring.logger import get_logger
from .housekeeping import HousekeepingService

ResultCallback = Callable[[CycleResult], None]


class HousekeepingScheduler:
    """Periodic loop with its own task handle.

    Cycles run in a worker thread so a stalled RPC call never blocks the event
    loop. A tick that fires while the previous cycle is still running gets a
    skipped result from the service rather than a second concurrent cycle.
    """

    def __init__(
        self,
        service: HousekeepingService,
        *,
        config: Optional[SchedulerConfig] = None,
        on_result: Optional[ResultCallback] = None,
    ) -> None:
        self._service = service
        self._config = config or get_app_config().scheduler
        self._on_result = on_result
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._cycles = 0
        self._logger = get_logger(__name__)

    @property
    def cycles(self) -> int:
        return self._cycles

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> CycleResult:
        result = await asyncio.to_thread(self._service.run_cycle)
        self._cycles += 1
        if self._on_result is not None:
            try:
                self._on_result(result)
            except Exception:  # noqa: BLE001
                self._logger.exception("Cycle result callback failed")
        return result

    async def run_forever(self, max_cycles: Optional[int] = None) -> None:
        self._stopping.clear()
        interval = max(self._config.interval_seconds, 0.0)
        if not self._config.run_on_start:
            if await self._wait(interval):
                return
        while not self._stopping.is_set():
            await self.run_once()
            if max_cycles is not None and self._cycles >= max_cycles:
                break
            if await self._wait(interval):
                break

    async def _wait(self, interval: float) -> bool:
        """Sleep for ``interval``; ``True`` when a stop was requested meanwhile."""

        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=interval)
        except asyncio.TimeoutError:
            return False
        return True

    def start(self, max_cycles: Optional[int] = None) -> asyncio.Task:
        if self.running:
            raise RuntimeError("Scheduler already started")
        self._task = asyncio.create_task(self.run_forever(max_cycles), name="housekeeping-scheduler")
        return self._task

    async def stop(self) -> None:
        self._stopping.set()
        if self._task is None:
            return
        try:
            await self._task
        finally:
            self._task = None


__all__ = ["HousekeepingScheduler"]

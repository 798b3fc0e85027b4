from __future__ import annotations

import asyncio
import logging
from typing import Optional, Set

from common.timers import TimerHandle, Timers
from state.models import SyncTrigger

from .notifier import DataChange
from .orchestrator import SyncOrchestrator, SyncResult


logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Decides when to sync; the orchestrator decides what a sync does.

    Triggers
    - `start()`: one attempt right away (if configured), then every
      `interval_seconds`.
    - `on_data_changed()`: an automatic attempt after a debounced local change.
    - `sync_now()`: a manual attempt, awaited by the caller.

    Launched attempts are tracked so `wait_idle()` and `stop()` can await them.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        timers: Timers,
        interval_seconds: Optional[float] = None,
    ) -> None:
        self._orchestrator = orchestrator
        self._timers = timers
        self._interval = interval_seconds or orchestrator.config.auto_sync_interval_seconds
        self._handle: Optional[TimerHandle] = None
        self._tasks: Set[asyncio.Task] = set()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._orchestrator.is_configured:
            self._launch(SyncTrigger.STARTUP)
        else:
            logger.info("Sync not configured; periodic sync armed but idle")
        self._arm()

    async def stop(self) -> None:
        self._running = False
        self._disarm()
        await self.wait_idle()

    def reset(self) -> None:
        """Restart the periodic interval from now, e.g. after settings change."""
        self._orchestrator.reload_config()
        if self._running:
            self._disarm()
            self._arm()

    def on_data_changed(self, change: DataChange) -> None:
        if not self._running:
            return
        self._launch(SyncTrigger.DATA_CHANGE)

    async def sync_now(self) -> SyncResult:
        return await self._orchestrator.sync(auto=False, trigger=SyncTrigger.MANUAL)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    # -------- Internal --------
    def _arm(self) -> None:
        self._handle = self._timers.call_later(self._interval, self._tick)

    def _disarm(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def _tick(self) -> None:
        self._handle = None
        if not self._running:
            return
        self._launch(SyncTrigger.AUTO)
        self._arm()

    def _launch(self, trigger: SyncTrigger) -> None:
        task = asyncio.get_running_loop().create_task(self._orchestrator.sync(auto=True, trigger=trigger))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


__all__ = ["SyncScheduler"]

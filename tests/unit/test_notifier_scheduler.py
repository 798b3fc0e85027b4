from __future__ import annotations

from datetime import UTC, datetime
from typing import Callable, List

import pytest

from state.config import SyncConfig
from state.models import ChangeType, SyncState, SyncTrigger
from sync.notifier import ChangeNotifier, DataChange
from sync.orchestrator import SyncAction, SyncResult
from sync.scheduler import SyncScheduler


NOW = datetime(2024, 5, 1, tzinfo=UTC)


class FakeTimers:
    def __init__(self) -> None:
        self.pending: List["_Timer"] = []

    def call_later(self, delay: float, callback: Callable[[], None]) -> "_Timer":
        t = _Timer(delay, callback)
        self.pending.append(t)
        return t

    def live(self) -> List["_Timer"]:
        return [t for t in self.pending if not t.cancelled]

    def fire_all(self) -> None:
        due, self.pending = self.live(), []
        for t in due:
            t.callback()


class _Timer:
    def __init__(self, delay: float, callback: Callable[[], None]) -> None:
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _RecordingOrchestrator:
    """Stands in for SyncOrchestrator; records how each attempt was triggered."""

    def __init__(self, configured: bool = True) -> None:
        self.config = SyncConfig(
            token="t" if configured else None,
            container_id="g" if configured else None,
            auto_sync_interval_seconds=60,
        )
        self.calls: List[tuple[bool, SyncTrigger]] = []
        self.reloads = 0
        self.state = SyncState()

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    def reload_config(self) -> SyncConfig:
        self.reloads += 1
        return self.config

    async def sync(self, *, auto: bool = True, trigger=None) -> SyncResult:
        self.calls.append((auto, trigger))
        return SyncResult(SyncAction.NOOP)


# ---------------- ChangeNotifier ----------------


def test_burst_of_changes_is_coalesced():
    timers = FakeTimers()
    notifier = ChangeNotifier(timers=timers, debounce_seconds=2.0, clock=lambda: NOW)
    received: List[DataChange] = []
    notifier.subscribe(received.append)

    notifier.notify(ChangeType.ENTRY_ADDED, entry_id="e1")
    notifier.notify(ChangeType.ENTRY_ADDED, entry_id="e2")
    notifier.notify("tracker_updated")

    assert len(timers.live()) == 1
    assert timers.live()[0].delay == 2.0
    assert received == []

    timers.fire_all()
    assert len(received) == 1
    change = received[0]
    assert change.types == frozenset({ChangeType.ENTRY_ADDED, ChangeType.TRACKER_UPDATED})
    assert change.timestamp == NOW
    assert change.details == {"entry_id": "e2"}
    assert not notifier.pending


def test_flush_emits_immediately_and_cancel_drops():
    timers = FakeTimers()
    notifier = ChangeNotifier(timers=timers)
    received: List[DataChange] = []
    unsubscribe = notifier.subscribe(received.append)

    assert notifier.flush() is None
    notifier.notify(ChangeType.ENTRY_DELETED)
    assert notifier.flush() is not None
    assert timers.live() == []

    notifier.notify(ChangeType.TRACKER_DELETED)
    notifier.cancel()
    timers.fire_all()
    assert len(received) == 1

    unsubscribe()
    notifier.notify(ChangeType.DATA_IMPORTED)
    notifier.flush()
    assert len(received) == 1


def test_unknown_change_type_is_rejected():
    notifier = ChangeNotifier(timers=FakeTimers())
    with pytest.raises(ValueError):
        notifier.notify("renamed_everything")


# ---------------- SyncScheduler ----------------


@pytest.mark.asyncio
async def test_start_syncs_once_then_periodically():
    timers = FakeTimers()
    orch = _RecordingOrchestrator()
    scheduler = SyncScheduler(orch, timers=timers)

    scheduler.start()
    scheduler.start()  # idempotent
    await scheduler.wait_idle()
    assert orch.calls == [(True, SyncTrigger.STARTUP)]
    assert [t.delay for t in timers.live()] == [60]

    timers.fire_all()
    await scheduler.wait_idle()
    assert orch.calls[-1] == (True, SyncTrigger.AUTO)
    assert len(timers.live()) == 1  # re-armed

    await scheduler.stop()
    assert timers.live() == []
    assert not scheduler.running


@pytest.mark.asyncio
async def test_unconfigured_start_skips_initial_attempt():
    timers = FakeTimers()
    orch = _RecordingOrchestrator(configured=False)
    scheduler = SyncScheduler(orch, timers=timers, interval_seconds=10)
    scheduler.start()
    await scheduler.wait_idle()
    assert orch.calls == []
    assert [t.delay for t in timers.live()] == [10]


@pytest.mark.asyncio
async def test_data_change_and_manual_triggers():
    timers = FakeTimers()
    orch = _RecordingOrchestrator()
    scheduler = SyncScheduler(orch, timers=timers)
    notifier = ChangeNotifier(timers=timers, debounce_seconds=2.0)
    notifier.subscribe(scheduler.on_data_changed)

    # ignored while stopped
    scheduler.on_data_changed(DataChange(types=frozenset({ChangeType.ENTRY_ADDED}), timestamp=NOW))
    await scheduler.wait_idle()
    assert orch.calls == []

    scheduler.start()
    await scheduler.wait_idle()
    notifier.notify(ChangeType.ENTRY_ADDED)
    notifier.flush()
    await scheduler.wait_idle()
    assert orch.calls[-1] == (True, SyncTrigger.DATA_CHANGE)

    result = await scheduler.sync_now()
    assert result.action is SyncAction.NOOP
    assert orch.calls[-1] == (False, SyncTrigger.MANUAL)
    await scheduler.stop()


@pytest.mark.asyncio
async def test_reset_rearms_interval_and_reloads_config():
    timers = FakeTimers()
    orch = _RecordingOrchestrator()
    scheduler = SyncScheduler(orch, timers=timers)
    scheduler.start()
    await scheduler.wait_idle()
    first = timers.live()[0]

    scheduler.reset()
    assert first.cancelled
    assert len(timers.live()) == 1
    assert orch.reloads == 1
    await scheduler.stop()

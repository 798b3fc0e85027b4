from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Set

from common.timers import TimerHandle, Timers
from state.models import ChangeType


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataChange:
    """One debounced signal covering every change kind seen in the burst."""

    types: FrozenSet[ChangeType]
    timestamp: datetime
    details: Dict[str, Any] = field(default_factory=dict)


ChangeListener = Callable[[DataChange], None]


class ChangeNotifier:
    """
    Coalesces bursts of local mutations into a single `DataChange`.

    Each `notify()` restarts the debounce timer; when it fires, subscribers get
    the set of change kinds recorded since the previous signal.
    """

    def __init__(
        self,
        *,
        timers: Timers,
        debounce_seconds: float = 2.0,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._timers = timers
        self._debounce = debounce_seconds
        self._clock = clock
        self._pending: Set[ChangeType] = set()
        self._details: Dict[str, Any] = {}
        self._handle: Optional[TimerHandle] = None
        self._listeners: List[ChangeListener] = []

    @property
    def pending(self) -> bool:
        return bool(self._pending)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def notify(self, change_type: ChangeType | str, **details: Any) -> None:
        self._pending.add(ChangeType(change_type))
        self._details.update(details)
        if self._handle is not None:
            self._handle.cancel()
        self._handle = self._timers.call_later(self._debounce, self.flush)

    def flush(self) -> Optional[DataChange]:
        """Emit the pending signal now. Returns it, or None if nothing was pending."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if not self._pending:
            return None

        change = DataChange(types=frozenset(self._pending), timestamp=self._clock(), details=dict(self._details))
        self._pending.clear()
        self._details.clear()
        logger.debug("Data changed: %s", ", ".join(sorted(t.value for t in change.types)))
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception("Data change listener failed")
        return change

    def cancel(self) -> None:
        """Drop pending changes without notifying anyone."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._pending.clear()
        self._details.clear()


__all__ = ["ChangeNotifier", "DataChange"]

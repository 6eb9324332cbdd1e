"""
Process-wide processing control state.

A single enabled/disabled flag plus last-change metadata. Every mutation is a
compare-and-swap on the flag; observers registered with subscribe() are told
about real transitions only, after the swap, outside the lock.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, List

logger = logging.getLogger("extraction.state")

STARTED = "STARTED"
STOPPED = "STOPPED"

REASON_STARTUP = "Application startup"
REASON_STARTED = "Processing started via API"
REASON_STOPPED = "Processing stopped via API"


class Transition(str, Enum):
    STARTED = "started"
    STOPPED = "stopped"


@dataclass(frozen=True)
class StateChange:
    transition: Transition
    changed_at: datetime
    reason: str


@dataclass(frozen=True)
class StateSnapshot:
    enabled: bool
    last_changed: datetime
    last_change_reason: str

    @property
    def status(self) -> str:
        return STARTED if self.enabled else STOPPED


@dataclass(frozen=True)
class ToggleResult:
    previous: bool
    current: bool


Observer = Callable[[StateChange], None]


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


class ProcessingControlState:
    """
    Enabled flag guarded by a lock that is only ever held for the swap itself.
    Starts disabled so the operator controls the first activation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._enabled = False
        self._last_changed = now_utc()
        self._last_change_reason = REASON_STARTUP
        self._observers: List[Observer] = []

    def subscribe(self, observer: Observer) -> None:
        self._observers.append(observer)

    @property
    def enabled(self) -> bool:
        return self._enabled

    def _compare_and_set(self, expected: bool, new: bool, reason: str) -> bool:
        with self._lock:
            if self._enabled != expected:
                return False
            self._enabled = new
            self._last_changed = now_utc()
            self._last_change_reason = reason
            change = StateChange(
                transition=Transition.STARTED if new else Transition.STOPPED,
                changed_at=self._last_changed,
                reason=reason,
            )
        self._notify(change)
        return True

    def _notify(self, change: StateChange) -> None:
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception("State observer failed for %s", change.transition.value)

    def start(self) -> bool:
        """Enable processing. Returns True only if the flag actually flipped."""
        changed = self._compare_and_set(False, True, REASON_STARTED)
        if changed:
            logger.info("Processing enabled")
        return changed

    def stop(self) -> bool:
        """Disable processing. Returns True only if the flag actually flipped."""
        changed = self._compare_and_set(True, False, REASON_STOPPED)
        if changed:
            logger.info("Processing disabled")
        return changed

    def toggle(self) -> ToggleResult:
        """
        Flip the flag based on a single read taken inside the lock.
        Concurrent toggles serialize on the lock, so each one observes the
        result of the previous one.
        """
        with self._lock:
            previous = self._enabled
            current = not previous
            self._enabled = current
            self._last_changed = now_utc()
            self._last_change_reason = REASON_STARTED if current else REASON_STOPPED
            change = StateChange(
                transition=Transition.STARTED if current else Transition.STOPPED,
                changed_at=self._last_changed,
                reason=self._last_change_reason,
            )
        self._notify(change)
        logger.info("Processing toggled %s -> %s", previous, current)
        return ToggleResult(previous=previous, current=current)

    def state(self) -> StateSnapshot:
        with self._lock:
            return StateSnapshot(
                enabled=self._enabled,
                last_changed=self._last_changed,
                last_change_reason=self._last_change_reason,
            )

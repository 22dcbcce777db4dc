"""
workflow.py - Session lifecycle state machine with a first-error-wins latch.

States and allowed transitions:

    IDLE        -> EXTRACTING
    EXTRACTING  -> WINDOW_OPEN | IDLE
    WINDOW_OPEN -> COPYING | IDLE
    COPYING     -> FILLING
    FILLING     -> IDLE
    any state   -> ERROR
    ERROR       -> IDLE

Error latch: the first fault moves the machine to ERROR, notifies error
observers once, and schedules a return to IDLE after `recovery_delay`
seconds. Further faults reported while latched are dropped. The latch clears
when IDLE is reached, by the timer or by any other path (which cancels the
timer).
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional

from errors import InvalidTransitionError, WorkflowFault
from logging_config import get_logger
from models import Progress, WorkflowState

logger = get_logger(__name__)

DEFAULT_RECOVERY_DELAY_SECONDS = 2.0

TRANSITIONS: dict[WorkflowState, frozenset[WorkflowState]] = {
    WorkflowState.IDLE: frozenset({WorkflowState.EXTRACTING}),
    WorkflowState.EXTRACTING: frozenset({WorkflowState.WINDOW_OPEN, WorkflowState.IDLE}),
    WorkflowState.WINDOW_OPEN: frozenset({WorkflowState.COPYING, WorkflowState.IDLE}),
    WorkflowState.COPYING: frozenset({WorkflowState.FILLING}),
    WorkflowState.FILLING: frozenset({WorkflowState.IDLE}),
    WorkflowState.ERROR: frozenset({WorkflowState.IDLE}),
}

StateChangeObserver = Callable[[WorkflowState, WorkflowState, dict[str, Any]], None]
ProgressObserver = Callable[[Progress], None]
ErrorObserver = Callable[[BaseException], None]


class WorkflowStateMachine:
    """Explicit, per-coordinator workflow state machine.

    Observers are passive: they are called after a change has been applied,
    and an observer that raises is logged and skipped.
    """

    def __init__(
        self,
        recovery_delay: float = DEFAULT_RECOVERY_DELAY_SECONDS,
        on_state_change: Optional[StateChangeObserver] = None,
        on_progress: Optional[ProgressObserver] = None,
        on_error: Optional[ErrorObserver] = None,
    ) -> None:
        self.recovery_delay = max(0.0, float(recovery_delay))
        self._state = WorkflowState.IDLE
        self._has_error = False
        self._recovery_handle: Optional[asyncio.TimerHandle] = None
        self.progress = Progress()
        self.last_error: Optional[BaseException] = None

        self._state_observers: list[StateChangeObserver] = []
        self._progress_observers: list[ProgressObserver] = []
        self._error_observers: list[ErrorObserver] = []
        if on_state_change is not None:
            self._state_observers.append(on_state_change)
        if on_progress is not None:
            self._progress_observers.append(on_progress)
        if on_error is not None:
            self._error_observers.append(on_error)

    @property
    def state(self) -> WorkflowState:
        return self._state

    @property
    def has_error(self) -> bool:
        return self._has_error

    @property
    def recovery_pending(self) -> bool:
        return self._recovery_handle is not None

    def add_state_observer(self, observer: StateChangeObserver) -> None:
        self._state_observers.append(observer)

    def add_progress_observer(self, observer: ProgressObserver) -> None:
        self._progress_observers.append(observer)

    def add_error_observer(self, observer: ErrorObserver) -> None:
        self._error_observers.append(observer)

    @staticmethod
    def is_valid_transition(from_state: WorkflowState, to_state: WorkflowState) -> bool:
        if to_state is WorkflowState.ERROR:
            return True
        return to_state in TRANSITIONS.get(from_state, frozenset())

    def transition_to(self, new_state: WorkflowState, **details: Any) -> bool:
        """Apply a transition from the table.

        Returns False when the transition is refused because the error latch
        is set (only IDLE is accepted then). Raises InvalidTransitionError for
        a transition outside the table, after reporting it through the latch.
        """
        if new_state is WorkflowState.ERROR:
            error = details.get("error") or WorkflowFault("Workflow entered ERROR state")
            return self.fail(error)

        if self._has_error and new_state is not WorkflowState.IDLE:
            logger.debug(
                "workflow_transition_suppressed | state=%s | requested=%s | reason='error latch set'",
                self._state.value,
                new_state.value,
            )
            return False

        old_state = self._state
        if not self.is_valid_transition(old_state, new_state):
            error = InvalidTransitionError(old_state.value, new_state.value)
            self.fail(error)
            raise error

        self._apply(new_state, details)
        return True

    def fail(self, error: BaseException) -> bool:
        """Report a fault. Returns True if this fault won the latch."""
        if self._has_error:
            logger.debug(
                "workflow_error_suppressed | state=%s | error_type=%s | error=%s",
                self._state.value,
                type(error).__name__,
                error,
            )
            return False

        self._has_error = True
        self.last_error = error
        logger.error(
            "workflow_error | state=%s | error_type=%s | error=%s | recovery_delay_s=%.2f",
            self._state.value,
            type(error).__name__,
            error,
            self.recovery_delay,
        )

        for observer in list(self._error_observers):
            self._call_observer(observer, error)

        self._apply(WorkflowState.ERROR, {"error": error})
        self._schedule_recovery()
        return True

    def recover(self) -> bool:
        """Return from ERROR to IDLE now instead of waiting for the timer."""
        if self._state is not WorkflowState.ERROR:
            return False
        return self.transition_to(WorkflowState.IDLE)

    def update_progress(self, current: int, total: int, status: str = "") -> None:
        """Publish a progress update. Dropped while the error latch is set."""
        if self._has_error:
            return

        self.progress = Progress(current=current, total=total, status=status)
        for observer in list(self._progress_observers):
            self._call_observer(observer, self.progress)

    def cancel_recovery(self) -> None:
        if self._recovery_handle is not None:
            self._recovery_handle.cancel()
            self._recovery_handle = None

    def _apply(self, new_state: WorkflowState, details: dict[str, Any]) -> None:
        old_state = self._state
        self._state = new_state

        if new_state is WorkflowState.IDLE:
            self._has_error = False
            self.cancel_recovery()
            self.progress = Progress()

        logger.info("workflow_state | from=%s | to=%s", old_state.value, new_state.value)

        for observer in list(self._state_observers):
            self._call_observer(observer, new_state, old_state, dict(details))

    def _schedule_recovery(self) -> None:
        self.cancel_recovery()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "workflow_recovery_unscheduled | reason='no running event loop' | action='call recover()'"
            )
            return
        self._recovery_handle = loop.call_later(self.recovery_delay, self._recover_from_timer)

    def _recover_from_timer(self) -> None:
        self._recovery_handle = None
        if self._state is WorkflowState.ERROR:
            self.transition_to(WorkflowState.IDLE)

    @staticmethod
    def _call_observer(observer: Callable[..., Any], *args: Any) -> None:
        try:
            observer(*args)
        except Exception as exc:
            logger.warning(
                "workflow_observer_error | observer=%s | error_type=%s | error=%s | fallback='ignored'",
                getattr(observer, "__qualname__", repr(observer)),
                type(exc).__name__,
                exc,
                exc_info=True,
            )

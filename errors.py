"""
errors.py - Error taxonomy for the reconciliation workbench.

Two families:
    Inline errors (reported to the operator, never reach the state machine):
        ValidationError, NotFoundError, SessionStateError
    Workflow faults (routed through the state machine's error latch):
        InvalidTransitionError, SourceNotFound, EmptySource,
        InvalidFormat, TooLarge, EmptyFile, WriteFailed
"""

from __future__ import annotations


class ReconError(Exception):
    """Base class for all reconciliation workbench errors."""


class ValidationError(ReconError):
    """Operator input is missing or invalid (e.g. blank task status)."""


class NotFoundError(ReconError):
    """A resolution target is unknown or has already been resolved."""


class SessionStateError(ReconError):
    """An operation was requested while the workflow is in the wrong state.

    Raised by single-flight guards before any transition is attempted, so the
    workflow state is never changed by it.
    """


class WorkflowFault(ReconError):
    """Base class for faults that are surfaced through the error latch."""


class InvalidTransitionError(WorkflowFault):
    """A state transition outside the transition table was requested."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid state transition from {from_state} to {to_state}")


class SourceNotFound(WorkflowFault):
    """The live grid could not be located."""


class EmptySource(WorkflowFault):
    """The live grid was found but contains no rows."""


class InvalidFormat(WorkflowFault):
    """An uploaded file is not a CSV or lacks required headers."""


class TooLarge(WorkflowFault):
    """An uploaded file exceeds the configured size limit."""


class EmptyFile(WorkflowFault):
    """An uploaded file contains no data rows."""


class WriteFailed(WorkflowFault):
    """The writer could not apply a record to the live grid."""

    def __init__(self, reason: str, record=None) -> None:
        self.reason = reason
        self.record = record
        super().__init__(f"Write failed: {reason}")

"""
session.py - Session coordinator for one reconciliation run at a time.

The coordinator owns the active session's data (extracted cloud records, file
records, resolution ledger) and drives the workflow state machine:

    start_session       IDLE -> EXTRACTING -> (classify) -> WINDOW_OPEN
    load_file           WINDOW_OPEN, reclassify against a new file
    resolve_*           WINDOW_OPEN, ledger decisions
    request_write_back  WINDOW_OPEN -> COPYING -> FILLING -> IDLE
    cancel              EXTRACTING | WINDOW_OPEN -> IDLE

Every collaborator call (extractor, file reader, presenter, writer) is
awaited before the state advances. Collaborator faults are reported through
the state machine's error latch and then re-raised to the caller. Session
data is released whenever the machine reaches IDLE, including automatic
recovery from ERROR. Results that arrive after the session was cancelled or
replaced are dropped without touching the latch.
"""

from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol, Sequence

from errors import EmptySource, ReconError, SessionStateError, WriteFailed
from file_reader import CsvFileReader
from ledger import ResolutionLedger
from logging_config import get_logger
from match import classify
from models import Buckets, Record, SessionHandle, WorkflowState, WriteBackReport, WriteOutcome
from workflow import DEFAULT_RECOVERY_DELAY_SECONDS, WorkflowStateMachine

logger = get_logger(__name__)


class Extractor(Protocol):
    async def extract(self) -> Sequence[Record]: ...


class FileReader(Protocol):
    async def read(self, file_bytes: bytes, filename: str = ...) -> Sequence[Record]: ...


class Writer(Protocol):
    async def apply_one(self, record: Record) -> bool: ...


class Presenter(Protocol):
    async def show_buckets(self, buckets: Buckets, ledger: ResolutionLedger) -> None: ...

    async def record_written(self, outcome: WriteOutcome) -> None: ...

    async def close(self) -> None: ...


class NullPresenter:
    """Presenter that displays nothing; used when no UI is attached."""

    async def show_buckets(self, buckets: Buckets, ledger: ResolutionLedger) -> None:
        return None

    async def record_written(self, outcome: WriteOutcome) -> None:
        return None

    async def close(self) -> None:
        return None


@dataclass
class _SessionData:
    session_id: str
    started_at: str
    cloud_records: list[Record]
    file_records: list[Record] = field(default_factory=list)
    filename: Optional[str] = None
    ledger: Optional[ResolutionLedger] = None


def _generate_session_id() -> str:
    return f"sess_{secrets.token_hex(2)}"


class SessionCoordinator:
    """Mediates between the workflow state machine, the engine and the collaborators."""

    def __init__(
        self,
        extractor: Extractor,
        writer: Writer,
        file_reader: Optional[FileReader] = None,
        presenter: Optional[Presenter] = None,
        recovery_delay: float = DEFAULT_RECOVERY_DELAY_SECONDS,
        machine: Optional[WorkflowStateMachine] = None,
    ) -> None:
        self.extractor = extractor
        self.writer = writer
        self.file_reader = file_reader or CsvFileReader()
        self.presenter = presenter or NullPresenter()
        self.machine = machine or WorkflowStateMachine(recovery_delay=recovery_delay)
        self.machine.add_state_observer(self._on_state_change)
        self._session: Optional[_SessionData] = None
        self.last_report: Optional[WriteBackReport] = None
        # Bumped on every start and every return to IDLE; results of awaited
        # calls are only used while it still matches.
        self._generation = 0

    # -- Introspection --

    @property
    def state(self) -> WorkflowState:
        return self.machine.state

    @property
    def has_session(self) -> bool:
        return self._session is not None and self._session.ledger is not None

    @property
    def ledger(self) -> ResolutionLedger:
        return self._require_session().ledger

    def handle(self) -> Optional[SessionHandle]:
        if not self.has_session:
            return None
        session = self._session
        return SessionHandle(
            session_id=session.session_id,
            state=self.machine.state,
            started_at=session.started_at,
            cloud_records=len(session.cloud_records),
            file_records=len(session.file_records),
            counts=session.ledger.buckets().counts,
        )

    def buckets(self) -> Buckets:
        return self._require_session().ledger.buckets()

    def cloud_records(self) -> list[Record]:
        return list(self._require_session().cloud_records)

    # -- Lifecycle --

    async def start_session(
        self,
        file_bytes: Optional[bytes] = None,
        filename: Optional[str] = None,
    ) -> Optional[SessionHandle]:
        """Extract, classify and open a new session for resolution.

        Returns None when the grid has no rows (the session is aborted back to
        IDLE without entering ERROR) or when the session was cancelled while
        extraction was in flight.
        """
        if self.machine.state is not WorkflowState.IDLE:
            logger.warning(
                "session_rejected | state=%s | reason='a session is already active'",
                self.machine.state.value,
            )
            raise SessionStateError(
                f"Cannot start a session while the workflow is {self.machine.state.value}"
            )

        self._generation += 1
        generation = self._generation
        self.machine.transition_to(WorkflowState.EXTRACTING)
        session_id = _generate_session_id()
        logger.info("session_start | session_id=%s | file=%s", session_id, filename)

        try:
            cloud_records = list(await self.extractor.extract())
        except EmptySource as exc:
            logger.warning(
                "session_empty_source | session_id=%s | error=%s | action='abort to IDLE'",
                session_id,
                exc,
            )
            if self._is_current(generation, WorkflowState.EXTRACTING):
                self.machine.transition_to(WorkflowState.IDLE)
            return None
        except Exception as exc:
            if not self._is_current(generation, WorkflowState.EXTRACTING):
                self._log_abandoned(session_id, "extraction failed after cancel", exc)
                return None
            self.machine.fail(exc)
            raise

        if not self._is_current(generation, WorkflowState.EXTRACTING):
            self._log_abandoned(session_id, "cancelled during extraction")
            return None

        file_records: list[Record] = []
        if file_bytes is not None:
            read = await self._read_file(file_bytes, filename, generation, WorkflowState.EXTRACTING)
            if read is None:
                self._log_abandoned(session_id, "cancelled while reading the file")
                return None
            file_records = read

        self._session = _SessionData(
            session_id=session_id,
            started_at=datetime.now(timezone.utc).isoformat(),
            cloud_records=cloud_records,
        )
        self._classify(file_records, filename)
        await self.open_for_resolution()
        return self.handle()

    async def open_for_resolution(self) -> None:
        """Move to WINDOW_OPEN and hand the buckets and ledger to the presenter."""
        session = self._require_session()
        self.machine.transition_to(WorkflowState.WINDOW_OPEN, session_id=session.session_id)
        await self._show(session)

    async def load_file(self, file_bytes: bytes, filename: Optional[str] = None) -> SessionHandle:
        """Read a (new) check file and reclassify it against the extracted records.

        Earlier resolutions are discarded with the previous classification.
        """
        session = self._require_window_open()
        file_records = await self._read_file(file_bytes, filename, self._generation, WorkflowState.WINDOW_OPEN)
        if file_records is None:
            self._log_abandoned(session.session_id, "cancelled while reading the file")
            raise SessionStateError("Session was closed while the file was being read")
        self._classify(file_records, filename)
        await self._show(session)
        return self.handle()

    def resolve_conflict(self, pair_id: str, task_status: Optional[str], comments: Optional[str] = "") -> Record:
        return self._require_window_open().ledger.resolve_conflict(pair_id, task_status, comments)

    def resolve_missing(self, record_id: str, task_status: Optional[str], comments: Optional[str] = "") -> Record:
        return self._require_window_open().ledger.resolve_missing(record_id, task_status, comments)

    async def request_write_back(
        self,
        approved: Optional[Sequence[Record]] = None,
    ) -> Optional[WriteBackReport]:
        """Write approved records to the grid, one at a time, in approval order.

        `approved` defaults to the ledger's matching records. An empty list is
        a no-op and leaves the session open. The first writer fault halts the
        run: records already written stay written, later ones are not tried.
        """
        session = self._require_window_open()
        records = list(approved) if approved is not None else session.ledger.approved_records()
        if not records:
            logger.info(
                "write_back_skipped | session_id=%s | reason='no approved records'",
                session.session_id,
            )
            return None

        self.machine.transition_to(WorkflowState.COPYING, session_id=session.session_id)
        total = len(records)
        report = WriteBackReport(session_id=session.session_id, total=total)
        self.last_report = report
        logger.info("write_back_copying | session_id=%s | records=%s", session.session_id, total)

        self.machine.transition_to(WorkflowState.FILLING, session_id=session.session_id)
        for position, record in enumerate(records, start=1):
            self.machine.update_progress(position - 1, total, f"Filling row {position} of {total}")
            try:
                applied = await self.writer.apply_one(record)
            except asyncio.CancelledError:
                # FILLING only exits through IDLE or ERROR; an interrupted run
                # must still latch so the machine can recover.
                self._record_failure(report, position, record, WriteFailed("write-back interrupted", record))
                raise
            except Exception as exc:
                fault = exc if isinstance(exc, ReconError) else WriteFailed(str(exc), record)
                self._record_failure(report, position, record, fault)
                if fault is exc:
                    raise
                raise fault from exc

            outcome = WriteOutcome(
                position=position,
                record=record,
                status="applied" if applied else "skipped",
                detail=None if applied else "Row not found in grid",
            )
            report.outcomes.append(outcome)
            try:
                await self._report_written(outcome)
            except asyncio.CancelledError:
                fault = WriteFailed("write-back interrupted", record)
                report.error = str(fault)
                self.machine.fail(fault)
                raise

        self.machine.update_progress(total, total, "Row processing completed.")
        report.completed = True
        logger.info(
            "write_back_complete | session_id=%s | applied=%s | skipped=%s",
            session.session_id,
            report.applied_count,
            report.skipped_count,
        )
        await self.finish_session()
        return report

    async def finish_session(self) -> None:
        """FILLING -> IDLE after a clean write-back; releases the session."""
        if self.machine.state is not WorkflowState.FILLING:
            raise SessionStateError(
                f"Cannot finish a session while the workflow is {self.machine.state.value}"
            )
        self.machine.transition_to(WorkflowState.IDLE)
        await self._close_presenter()

    async def cancel(self) -> bool:
        """Close the resolution surface. Returns False when there was nothing to cancel."""
        state = self.machine.state
        if state in (WorkflowState.COPYING, WorkflowState.FILLING):
            raise SessionStateError("Write-back in progress; it cannot be cancelled")
        if state not in (WorkflowState.EXTRACTING, WorkflowState.WINDOW_OPEN):
            return False

        logger.info("session_cancel | state=%s", state.value)
        self.machine.transition_to(WorkflowState.IDLE)
        await self._close_presenter()
        return True

    # -- Internals --

    def _require_session(self) -> _SessionData:
        if self._session is None or self._session.ledger is None:
            raise SessionStateError("No active session")
        return self._session

    def _require_window_open(self) -> _SessionData:
        if self.machine.state is not WorkflowState.WINDOW_OPEN:
            raise SessionStateError(
                f"Operation requires an open session; workflow is {self.machine.state.value}"
            )
        return self._require_session()

    def _is_current(self, generation: int, state: WorkflowState) -> bool:
        return self._generation == generation and self.machine.state is state

    def _log_abandoned(self, session_id: str, reason: str, exc: Optional[BaseException] = None) -> None:
        if exc is None:
            logger.info(
                "session_abandoned | session_id=%s | state=%s | reason=%r",
                session_id,
                self.machine.state.value,
                reason,
            )
            return
        logger.info(
            "session_abandoned | session_id=%s | state=%s | reason=%r | error_type=%s | error=%s",
            session_id,
            self.machine.state.value,
            reason,
            type(exc).__name__,
            exc,
        )

    async def _read_file(
        self,
        file_bytes: bytes,
        filename: Optional[str],
        generation: int,
        state: WorkflowState,
    ) -> Optional[list[Record]]:
        """Read the check file; None when the session moved on while reading.

        A reader fault latches only while the session it belongs to is current.
        """
        try:
            records = list(await self.file_reader.read(file_bytes, filename or "checks.csv"))
        except Exception as exc:
            if not self._is_current(generation, state):
                logger.info(
                    "file_read_abandoned | file=%s | error_type=%s | error=%s",
                    filename,
                    type(exc).__name__,
                    exc,
                )
                return None
            self.machine.fail(exc)
            raise
        if not self._is_current(generation, state):
            return None
        return records

    def _record_failure(self, report: WriteBackReport, position: int, record: Record, fault: Exception) -> None:
        report.outcomes.append(WriteOutcome(position=position, record=record, status="failed", detail=str(fault)))
        report.error = str(fault)
        logger.error(
            "write_back_failed | session_id=%s | position=%s/%s | check_id=%r | error=%s",
            report.session_id,
            position,
            report.total,
            record.check_id,
            fault,
        )
        self.machine.fail(fault)

    def _classify(self, file_records: list[Record], filename: Optional[str]) -> None:
        session = self._session
        buckets = classify(file_records, session.cloud_records)
        session.file_records = file_records
        session.filename = filename
        session.ledger = ResolutionLedger(buckets)

    async def _show(self, session: _SessionData) -> None:
        try:
            await self.presenter.show_buckets(session.ledger.buckets(), session.ledger)
        except Exception as exc:
            self.machine.fail(exc)
            raise

    async def _report_written(self, outcome: WriteOutcome) -> None:
        try:
            await self.presenter.record_written(outcome)
        except Exception as exc:
            logger.warning(
                "presenter_warning | hook=record_written | error_type=%s | error=%s | fallback='ignored'",
                type(exc).__name__,
                exc,
            )

    async def _close_presenter(self) -> None:
        try:
            await self.presenter.close()
        except Exception as exc:
            logger.warning(
                "presenter_warning | hook=close | error_type=%s | error=%s | fallback='ignored'",
                type(exc).__name__,
                exc,
            )

    def _on_state_change(self, new_state: WorkflowState, old_state: WorkflowState, details: dict[str, Any]) -> None:
        if new_state is not WorkflowState.IDLE:
            return
        self._generation += 1
        if self._session is not None:
            logger.info(
                "session_released | session_id=%s | from=%s",
                self._session.session_id,
                old_state.value,
            )
            self._session = None

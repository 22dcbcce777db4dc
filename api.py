"""
api.py - FastAPI HTTP layer for the check reconciliation workbench.

This is the operator-facing presenter. It exposes one session coordinator:
  - GET  /health
  - GET  /task-status-options
  - GET  /session
  - POST /session/start
  - POST /session/file
  - POST /session/conflicts/{pair_id}/resolve
  - POST /session/missing/{record_id}/resolve
  - POST /session/write-back
  - POST /session/cancel
  - GET  /session/export

No classification or workflow logic is implemented here.
"""

from __future__ import annotations

import os
from datetime import datetime, timezone
from typing import Any, Optional

import uvicorn
from fastapi import Body, FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from config import load_settings
from errors import (
    EmptyFile,
    EmptySource,
    InvalidFormat,
    InvalidTransitionError,
    NotFoundError,
    ReconError,
    SessionStateError,
    SourceNotFound,
    TooLarge,
    ValidationError,
    WriteFailed,
)
from file_reader import CsvFileReader, records_to_csv
from grid import GridExtractor, GridWriter, LiveGrid
from ledger import ResolutionLedger
from logging_config import get_logger, setup_logging
from match import identity_differences
from models import Buckets, Record, WorkflowState, WriteOutcome
from session import SessionCoordinator

logger = get_logger("recon-api")

app = FastAPI(
    title="Check Reconciliation Workbench API",
    version="1.0.0",
    docs_url=None,
    redoc_url=None,
    openapi_url=None,
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

STATUS_BY_ERROR: list[tuple[type[ReconError], int]] = [
    (ValidationError, 400),
    (NotFoundError, 404),
    (SessionStateError, 409),
    (InvalidTransitionError, 409),
    (TooLarge, 413),
    (InvalidFormat, 400),
    (EmptyFile, 400),
    (EmptySource, 404),
    (SourceNotFound, 503),
    (WriteFailed, 502),
]

STATE_LABELS: dict[WorkflowState, str] = {
    WorkflowState.IDLE: "Select Rows",
    WorkflowState.EXTRACTING: "Processing...",
    WorkflowState.WINDOW_OPEN: "Comparison Window Open",
    WorkflowState.COPYING: "Copying Data...",
    WorkflowState.FILLING: "Filling Rows...",
    WorkflowState.ERROR: "Error Occurred",
}


class ResolutionRequest(BaseModel):
    """Operator edits submitted with a resolution."""

    task_status: str = ""
    technician_comments: str = ""


class ApiPresenter:
    """Presenter that keeps the latest view for polling clients."""

    def __init__(self) -> None:
        self.window_open = False
        self.shown_at: Optional[str] = None
        self.written: list[dict[str, Any]] = []
        self.alert: Optional[str] = None

    async def show_buckets(self, buckets: Buckets, ledger: ResolutionLedger) -> None:
        self.window_open = True
        self.shown_at = datetime.now(timezone.utc).isoformat()
        self.written = []

    async def record_written(self, outcome: WriteOutcome) -> None:
        self.written.append(outcome.model_dump(mode="json", by_alias=True))

    async def close(self) -> None:
        self.window_open = False

    def notify_error(self, error: BaseException) -> None:
        # Called once per latched error by the state machine.
        self.alert = str(error)

    def on_state_change(self, new_state: WorkflowState, old_state: WorkflowState, details: dict[str, Any]) -> None:
        # An accepted start replaces the previous alert; a rejected one keeps it.
        if new_state is WorkflowState.EXTRACTING:
            self.alert = None


def _build_coordinator(active_grid: Optional[LiveGrid]) -> SessionCoordinator:
    settings = load_settings()
    coordinator_ = SessionCoordinator(
        extractor=GridExtractor(active_grid),
        writer=GridWriter(active_grid),
        file_reader=CsvFileReader(max_size_bytes=settings.max_file_size_bytes),
        presenter=presenter,
        recovery_delay=settings.recovery_delay_seconds,
    )
    coordinator_.machine.add_error_observer(presenter.notify_error)
    coordinator_.machine.add_state_observer(presenter.on_state_change)
    return coordinator_


def _load_grid() -> Optional[LiveGrid]:
    settings = load_settings()
    if not settings.grid_file:
        logger.warning("api_grid_warning | reason='RECON_GRID_FILE not set' | fallback='no grid'")
        return None
    try:
        return LiveGrid.from_csv(settings.grid_file, task_status_options=settings.task_status_options)
    except (FileNotFoundError, ReconError) as exc:
        logger.warning(
            "api_grid_warning | path=%s | error_type=%s | error=%s | fallback='no grid'",
            settings.grid_file,
            type(exc).__name__,
            exc,
        )
        return None


presenter = ApiPresenter()
grid = _load_grid()
coordinator = _build_coordinator(grid)


def configure(active_grid: Optional[LiveGrid]) -> SessionCoordinator:
    """Swap the live grid and rebuild the coordinator (used by tests and tooling)."""
    global grid, coordinator, presenter

    if coordinator.machine.recovery_pending:
        coordinator.machine.cancel_recovery()
    presenter = ApiPresenter()
    grid = active_grid
    coordinator = _build_coordinator(active_grid)
    return coordinator


def _http_error(exc: ReconError) -> HTTPException:
    for error_type, status_code in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


async def _read_upload(upload: UploadFile, limit: int) -> bytes:
    """Read an upload in chunks, stopping one byte past the limit."""
    chunks: list[bytes] = []
    size = 0
    try:
        while size <= limit:
            chunk = await upload.read(1024 * 1024)
            if not chunk:
                break
            chunks.append(chunk)
            size += len(chunk)
    finally:
        await upload.close()
    return b"".join(chunks)


def _record_view(record: Record) -> dict[str, str]:
    return record.to_row()


def _build_session_view() -> dict[str, Any]:
    """Build the UI payload: workflow state plus the current bucket membership."""
    machine = coordinator.machine
    view: dict[str, Any] = {
        "state": machine.state.value,
        "state_label": STATE_LABELS[machine.state],
        "has_error": machine.has_error,
        "alert": presenter.alert,
        "progress": machine.progress.model_dump(),
        "session": None,
        "buckets": None,
        "written": list(presenter.written),
        "last_report": None,
    }
    if coordinator.last_report is not None:
        view["last_report"] = coordinator.last_report.model_dump(mode="json", by_alias=True)

    handle = coordinator.handle()
    if handle is None:
        return view

    ledger = coordinator.ledger
    view["session"] = handle.model_dump(mode="json")
    view["buckets"] = {
        "matching": [_record_view(record) for record in ledger.approved_records()],
        "conflicting": [
            {
                "pair_id": pair_id,
                "file": _record_view(pair.file_record),
                "cloud": _record_view(pair.cloud_record),
                "differences": identity_differences(pair.file_record, pair.cloud_record),
            }
            for pair_id, pair in ledger.conflicts().items()
        ],
        "missing_in_cloud": [_record_view(record) for record in ledger.buckets().missing_in_cloud],
        "missing_in_file": [
            {"record_id": record_id, "record": _record_view(record)}
            for record_id, record in ledger.missing_in_file().items()
        ],
    }
    return view


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.get("/task-status-options")
def task_status_options() -> list[str]:
    """Return the grid's task-status picklist."""
    if grid is not None:
        return list(grid.task_status_options)
    return load_settings().task_status_options


@app.get("/session")
def get_session() -> dict[str, Any]:
    """Return workflow state and, when a session is open, its buckets."""
    return _build_session_view()


@app.post("/session/start")
async def start_session(checks_csv: Optional[UploadFile] = File(default=None)) -> dict[str, Any]:
    """Extract the grid, optionally classify an uploaded file, and open the session."""
    file_bytes: Optional[bytes] = None
    filename: Optional[str] = None
    if checks_csv is not None and checks_csv.filename:
        filename = checks_csv.filename
        file_bytes = await _read_upload(checks_csv, coordinator.file_reader.max_size_bytes)

    try:
        handle = await coordinator.start_session(file_bytes=file_bytes, filename=filename)
    except ReconError as exc:
        raise _http_error(exc) from exc

    if handle is None:
        return {"status": "empty_source", "detail": "Table contains no rows.", **_build_session_view()}
    return {"status": "window_open", **_build_session_view()}


@app.post("/session/file")
async def upload_file(checks_csv: UploadFile = File(...)) -> dict[str, Any]:
    """Classify a (new) check file against the open session's grid rows."""
    if not checks_csv.filename:
        raise HTTPException(status_code=400, detail="Please select a CSV file to upload.")

    file_bytes = await _read_upload(checks_csv, coordinator.file_reader.max_size_bytes)
    try:
        await coordinator.load_file(file_bytes, checks_csv.filename)
    except ReconError as exc:
        raise _http_error(exc) from exc
    return _build_session_view()


@app.post("/session/conflicts/{pair_id}/resolve")
def resolve_conflict(pair_id: str, payload: ResolutionRequest = Body(...)) -> dict[str, Any]:
    """Accept a conflicting pair with the operator's status and comments."""
    try:
        record = coordinator.resolve_conflict(pair_id, payload.task_status, payload.technician_comments)
    except ReconError as exc:
        raise _http_error(exc) from exc
    return {"resolved": _record_view(record), **_build_session_view()}


@app.post("/session/missing/{record_id}/resolve")
def resolve_missing(record_id: str, payload: ResolutionRequest = Body(...)) -> dict[str, Any]:
    """Accept a grid row that is missing from the file."""
    try:
        record = coordinator.resolve_missing(record_id, payload.task_status, payload.technician_comments)
    except ReconError as exc:
        raise _http_error(exc) from exc
    return {"resolved": _record_view(record), **_build_session_view()}


@app.post("/session/write-back")
async def write_back() -> dict[str, Any]:
    """Write the matching records back to the grid."""
    try:
        report = await coordinator.request_write_back()
    except ReconError as exc:
        raise _http_error(exc) from exc

    if report is None:
        return {"status": "nothing_to_write", **_build_session_view()}
    return {"status": "written", **_build_session_view()}


@app.post("/session/cancel")
async def cancel_session() -> dict[str, Any]:
    """Close the comparison window without writing anything."""
    try:
        cancelled = await coordinator.cancel()
    except ReconError as exc:
        raise _http_error(exc) from exc
    return {"cancelled": cancelled, **_build_session_view()}


@app.get("/session/export")
def export_grid_rows() -> Response:
    """Download the extracted grid rows of the open session as CSV."""
    try:
        records = coordinator.cloud_records()
    except ReconError as exc:
        raise _http_error(exc) from exc
    return Response(
        content=records_to_csv(records),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="table_data.csv"'},
    )


if __name__ == "__main__":
    settings = load_settings()
    setup_logging(level=10 if settings.debug else 20)
    port = int(os.getenv("PORT", str(settings.port)))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)

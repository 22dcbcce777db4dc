"""
grid.py - Live grid boundary: extraction and write-back.

`LiveGrid` holds the rows of the work-order task grid the workbench
reconciles against. `GridExtractor` and `GridWriter` are the extractor and
writer collaborators the session coordinator talks to.

Write-back locates the FIRST grid row whose identity fields equal the
approved record's, then edits the task status and the technician comments.
A record with no matching row is skipped with a warning, not treated as a
failure. A task status outside the grid's picklist is left unchanged.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Iterable, Optional

from config import DEFAULT_TASK_STATUS_OPTIONS
from errors import EmptySource, SourceNotFound, WriteFailed
from file_reader import load_records_csv, records_to_csv
from logging_config import get_logger
from models import Record

logger = get_logger(__name__)


class LiveGrid:
    """In-memory task grid, optionally backed by a CSV file."""

    def __init__(
        self,
        rows: Optional[Iterable[Record]] = None,
        task_status_options: Optional[list[str]] = None,
        source_path: Optional[str] = None,
    ) -> None:
        self._rows: list[Record] = list(rows or [])
        self.task_status_options = list(task_status_options or DEFAULT_TASK_STATUS_OPTIONS)
        self.source_path = source_path
        self.available = True

    @classmethod
    def from_csv(cls, path: str, task_status_options: Optional[list[str]] = None) -> LiveGrid:
        rows = load_records_csv(path)
        logger.info("grid_loaded | path=%s | rows=%s", path, len(rows))
        return cls(rows, task_status_options=task_status_options, source_path=str(path))

    @property
    def rows(self) -> list[Record]:
        return list(self._rows)

    def find_row(self, record: Record) -> int:
        """Index of the first row with the record's identity, or -1."""
        for index, row in enumerate(self._rows):
            if row.identity == record.identity:
                return index
        return -1

    def update_row(self, index: int, task_status: str, technician_comments: str) -> Record:
        """Edit one row's payload. Unknown task statuses are not applied."""
        current = self._rows[index]
        status = task_status
        if task_status not in self.task_status_options:
            logger.warning(
                "grid_status_warning | row=%s | status=%r | reason='not in picklist' | fallback='keep %s'",
                index,
                task_status,
                current.task_status,
            )
            status = current.task_status

        updated = current.with_payload(status, technician_comments)
        self._rows[index] = updated
        return updated

    def to_csv(self) -> str:
        return records_to_csv(self._rows)

    def save_csv(self, path: Optional[str] = None) -> Path:
        target = Path(path or self.source_path or "grid.csv")
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_csv(), encoding="utf-8")
        logger.info("grid_saved | path=%s | rows=%s", target, len(self._rows))
        return target


class GridExtractor:
    """Extractor collaborator: reads the grid's non-blank rows in order."""

    def __init__(self, grid: Optional[LiveGrid]) -> None:
        self.grid = grid

    async def extract(self) -> list[Record]:
        if self.grid is None or not self.grid.available:
            raise SourceNotFound("Live grid not found.")

        rows = [row for row in self.grid.rows if not row.is_blank]
        if not rows:
            raise EmptySource("Table contains no rows.")

        logger.info("grid_extracted | rows=%s", len(rows))
        return rows


class GridWriter:
    """Writer collaborator: applies one approved record at a time."""

    def __init__(self, grid: Optional[LiveGrid], edit_delay: float = 0.0) -> None:
        self.grid = grid
        self.edit_delay = edit_delay

    async def apply_one(self, record: Record) -> bool:
        """Apply a record. Returns False when no grid row has its identity."""
        if self.grid is None or not self.grid.available:
            raise WriteFailed("Live grid not found.", record)

        index = self.grid.find_row(record)
        if index < 0:
            logger.warning(
                "grid_row_not_found | check_description=%r | manual_reference=%r | check_id=%r | fallback='skip'",
                record.check_description,
                record.manual_reference,
                record.check_id,
            )
            return False

        # Cell edits are sequential UI interactions on the live page.
        await asyncio.sleep(self.edit_delay)
        self.grid.update_row(index, record.task_status, record.technician_comments)
        return True

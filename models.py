"""
models.py - Data models for the check reconciliation workbench.

This file defines the data structures shared across the workbench.
Modules communicate through these models:

    grid.py / file_reader.py  ->  list[Record]
    match.py                  ->  Buckets
    ledger.py                 ->  Buckets (current membership) + Record
    workflow.py               ->  WorkflowState, Progress
    session.py                ->  SessionHandle, WriteBackReport

Design principles:
1. A Record is immutable; resolutions build new Records instead of editing.
2. Absent values normalize to "" so equality checks never see None.
3. CSV/wire names ("Check Description", ...) are pydantic aliases, so the
   same model parses a file row and dumps an export row.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from normalize import normalize_field

RECORD_HEADERS: list[str] = [
    "Check Description",
    "Task Status",
    "Technician Comments",
    "Manual Reference",
    "Check ID",
]

IDENTITY_FIELDS: tuple[str, str, str] = ("check_description", "manual_reference", "check_id")
PAYLOAD_FIELDS: tuple[str, str] = ("task_status", "technician_comments")


class MatchGrade(str, Enum):
    """How well a file record pairs with a cloud record on identity fields."""

    # All three identity fields equal.
    FULL = "full"

    # Description equal but reference and/or id differ, or description
    # differs while both reference and id are equal.
    PARTIAL = "partial"

    # Not enough identity overlap to pair the records.
    NONE = "none"


class WorkflowState(str, Enum):
    """Lifecycle states of one reconciliation session."""

    IDLE = "IDLE"
    EXTRACTING = "EXTRACTING"
    WINDOW_OPEN = "WINDOW_OPEN"
    COPYING = "COPYING"
    FILLING = "FILLING"
    ERROR = "ERROR"


class Record(BaseModel):
    """One check row, from the live grid or from an uploaded file.

    Identity fields (check_description, manual_reference, check_id) pair
    records across sources. Payload fields (task_status,
    technician_comments) are what the operator resolves and writes back.
    """

    model_config = ConfigDict(
        frozen=True,
        populate_by_name=True,
        extra="ignore",
        json_schema_extra={
            "examples": [
                {
                    "Check Description": "Examining the LGP printers",
                    "Task Status": "Pass",
                    "Technician Comments": "",
                    "Manual Reference": "1531151_10",
                    "Check ID": "4.12.1.2",
                }
            ]
        },
    )

    check_description: str = Field(
        default="",
        alias="Check Description",
        description="Human-readable description of the check. Identity field.",
    )
    task_status: str = Field(
        default="",
        alias="Task Status",
        description="Outcome picked from the grid's task-status options. Payload field.",
    )
    technician_comments: str = Field(
        default="",
        alias="Technician Comments",
        description="Free-text comments entered by the technician. Payload field.",
    )
    manual_reference: str = Field(
        default="",
        alias="Manual Reference",
        description="Service manual reference the check belongs to. Identity field.",
    )
    check_id: str = Field(
        default="",
        alias="Check ID",
        description="Section number of the check inside the manual. Identity field.",
    )

    @field_validator("*", mode="before")
    @classmethod
    def _normalize(cls, value: Any) -> str:
        return normalize_field(value)

    @property
    def identity(self) -> tuple[str, str, str]:
        """(check_description, manual_reference, check_id)."""
        return (self.check_description, self.manual_reference, self.check_id)

    @property
    def is_blank(self) -> bool:
        """Whether every field is empty."""
        return not any(
            (
                self.check_description,
                self.task_status,
                self.technician_comments,
                self.manual_reference,
                self.check_id,
            )
        )

    def with_payload(self, task_status: str, technician_comments: str) -> Record:
        """Return a copy carrying this record's identity and new payload."""
        return Record(
            check_description=self.check_description,
            task_status=task_status,
            technician_comments=technician_comments,
            manual_reference=self.manual_reference,
            check_id=self.check_id,
        )

    def to_row(self) -> dict[str, str]:
        """Dump using the CSV header names."""
        return self.model_dump(by_alias=True)


class ConflictPair(BaseModel):
    """A file record and the cloud record it PARTIAL-matched."""

    model_config = ConfigDict(frozen=True)

    file_record: Record
    cloud_record: Record


class Buckets(BaseModel):
    """The four disjoint classification outcomes.

    Before any resolution every matching record is a FULL match that
    consumed one file record and one cloud record, so `accounted_records`
    equals len(file_records) + len(cloud_records).
    """

    matching: list[Record] = Field(
        default_factory=list,
        description="FULL matches (file-side record) plus operator-resolved records.",
    )
    conflicting: list[ConflictPair] = Field(
        default_factory=list,
        description="PARTIAL matches, both sides retained until resolved.",
    )
    missing_in_cloud: list[Record] = Field(
        default_factory=list,
        description="File records with no pairable cloud record.",
    )
    missing_in_file: list[Record] = Field(
        default_factory=list,
        description="Cloud records left unpaired after all file records were processed.",
    )

    @property
    def accounted_records(self) -> int:
        return (
            2 * len(self.matching)
            + 2 * len(self.conflicting)
            + len(self.missing_in_cloud)
            + len(self.missing_in_file)
        )

    @property
    def counts(self) -> dict[str, int]:
        return {
            "matching": len(self.matching),
            "conflicting": len(self.conflicting),
            "missing_in_cloud": len(self.missing_in_cloud),
            "missing_in_file": len(self.missing_in_file),
        }


class Progress(BaseModel):
    """Progress of a long-running workflow step (write-back)."""

    current: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)
    status: str = ""


class WriteOutcome(BaseModel):
    """Result of applying one approved record to the live grid."""

    position: int = Field(..., ge=1, description="1-based position in approval order.")
    record: Record
    status: str = Field(
        ...,
        description="'applied', 'skipped' (row not located in the grid) or 'failed'.",
    )
    detail: Optional[str] = None


class WriteBackReport(BaseModel):
    """Per-record outcomes of one write-back run."""

    session_id: str
    total: int = 0
    outcomes: list[WriteOutcome] = Field(default_factory=list)
    completed: bool = False
    error: Optional[str] = None

    @property
    def applied_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "applied")

    @property
    def skipped_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == "skipped")


class SessionHandle(BaseModel):
    """Summary of the active session returned to callers of start_session."""

    session_id: str
    state: WorkflowState
    started_at: str
    cloud_records: int = 0
    file_records: int = 0
    counts: dict[str, int] = Field(default_factory=dict)

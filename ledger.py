"""
ledger.py - Operator resolution bookkeeping for one session.

The ledger owns the mutable bucket membership after classification. Operator
decisions move a conflicting pair or a missing-in-file record into the
matching set; nothing ever moves back.
"""

from __future__ import annotations

from typing import Optional

from errors import NotFoundError, ValidationError
from logging_config import get_logger
from models import Buckets, ConflictPair, Record
from normalize import normalize_operator_input

logger = get_logger(__name__)


class ResolutionLedger:
    """Tracks resolution decisions against a classification result."""

    def __init__(self, buckets: Buckets) -> None:
        self._matching: list[Record] = list(buckets.matching)
        self._conflicts: dict[str, ConflictPair] = {}
        self._missing_in_cloud: list[Record] = list(buckets.missing_in_cloud)
        self._missing_in_file: dict[str, Record] = {}
        self._resolved: set[str] = set()
        self._full_matches = len(buckets.matching)
        self._resolved_pairs = 0
        self._resolved_missing = 0

        for index, pair in enumerate(buckets.conflicting, start=1):
            self._conflicts[f"pair_{index:03d}"] = pair
        for index, record in enumerate(buckets.missing_in_file, start=1):
            self._missing_in_file[f"miss_{index:03d}"] = record

        self.initial_total = buckets.accounted_records

    @staticmethod
    def _validated_payload(task_status: Optional[str], comments: Optional[str]) -> tuple[str, str]:
        status = normalize_operator_input(task_status)
        if not status:
            raise ValidationError("status required")
        return status, normalize_operator_input(comments)

    def _not_found(self, kind: str, item_id: str) -> NotFoundError:
        if item_id in self._resolved:
            return NotFoundError(f"{kind} already resolved: {item_id}")
        return NotFoundError(f"{kind} not found: {item_id}")

    def resolve_conflict(
        self,
        pair_id: str,
        task_status: Optional[str],
        comments: Optional[str] = "",
    ) -> Record:
        """Accept a conflicting pair using cloud identity and the operator's payload."""
        status, comment_text = self._validated_payload(task_status, comments)

        pair = self._conflicts.pop(pair_id, None)
        if pair is None:
            raise self._not_found("Conflict", pair_id)

        resolved = pair.cloud_record.with_payload(status, comment_text)
        self._matching.append(resolved)
        self._resolved.add(pair_id)
        self._resolved_pairs += 1

        logger.info(
            "resolution_conflict | pair_id=%s | check_id=%r | task_status=%r | remaining_conflicts=%s",
            pair_id,
            resolved.check_id,
            status,
            len(self._conflicts),
        )
        return resolved

    def resolve_missing(
        self,
        record_id: str,
        task_status: Optional[str],
        comments: Optional[str] = "",
    ) -> Record:
        """Accept a missing-in-file cloud record with the operator's payload."""
        status, comment_text = self._validated_payload(task_status, comments)

        record = self._missing_in_file.pop(record_id, None)
        if record is None:
            raise self._not_found("Missing record", record_id)

        resolved = record.with_payload(status, comment_text)
        self._matching.append(resolved)
        self._resolved.add(record_id)
        self._resolved_missing += 1

        logger.info(
            "resolution_missing | record_id=%s | check_id=%r | task_status=%r | remaining_missing=%s",
            record_id,
            resolved.check_id,
            status,
            len(self._missing_in_file),
        )
        return resolved

    def conflicts(self) -> dict[str, ConflictPair]:
        """Unresolved conflicting pairs keyed by pair id, in classification order."""
        return dict(self._conflicts)

    def missing_in_file(self) -> dict[str, Record]:
        """Unresolved missing-in-file records keyed by record id."""
        return dict(self._missing_in_file)

    def approved_records(self) -> list[Record]:
        """Matching records in emission order (classification first, then resolutions)."""
        return list(self._matching)

    def buckets(self) -> Buckets:
        """Snapshot of current bucket membership."""
        return Buckets(
            matching=list(self._matching),
            conflicting=list(self._conflicts.values()),
            missing_in_cloud=list(self._missing_in_cloud),
            missing_in_file=list(self._missing_in_file.values()),
        )

    def accounted_total(self) -> int:
        """Source records accounted for.

        A FULL match and a resolved pair each stand for one file record and one
        cloud record; a resolved missing-in-file record stands for one cloud
        record.
        """
        return (
            2 * self._full_matches
            + 2 * self._resolved_pairs
            + self._resolved_missing
            + 2 * len(self._conflicts)
            + len(self._missing_in_cloud)
            + len(self._missing_in_file)
        )

    @property
    def is_settled(self) -> bool:
        """Whether no conflicts or missing-in-file records remain."""
        return not self._conflicts and not self._missing_in_file

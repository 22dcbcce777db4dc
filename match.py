"""
match.py - Record grading and greedy classification.

This module pairs every file record with at most one cloud record using the
three identity fields:
- check description
- manual reference
- check id

Pairing is greedy and order-dependent: file records are processed in file
order, and each one takes the FIRST remaining cloud record that grades FULL
or PARTIAL; the grade of that record decides the bucket. A paired cloud record is consumed
and no longer available to later file records. Ties among equally plausible
cloud records therefore resolve to cloud-extraction order, not best match.
"""

from __future__ import annotations

from typing import Sequence

from logging_config import get_logger
from models import IDENTITY_FIELDS, Buckets, ConflictPair, MatchGrade, Record

logger = get_logger(__name__)


def grade_pair(file_record: Record, cloud_record: Record) -> MatchGrade:
    """Grade how a file record pairs with a cloud record."""
    cd_match = file_record.check_description == cloud_record.check_description
    mr_match = file_record.manual_reference == cloud_record.manual_reference
    cid_match = file_record.check_id == cloud_record.check_id

    if cd_match and mr_match and cid_match:
        return MatchGrade.FULL

    # Description alone is enough for a conflict, so is reference + id.
    if cd_match or (mr_match and cid_match):
        return MatchGrade.PARTIAL

    return MatchGrade.NONE


def identity_differences(file_record: Record, cloud_record: Record) -> list[str]:
    """Return the identity field names whose values differ between the two records."""
    return [
        field_name
        for field_name in IDENTITY_FIELDS
        if getattr(file_record, field_name) != getattr(cloud_record, field_name)
    ]


def _find_candidate(file_record: Record, pool: list[Record]) -> tuple[int, MatchGrade]:
    """Return (pool index, grade) of the cloud record this file record pairs with.

    The scan stops at the first FULL or PARTIAL entry, so a PARTIAL earlier in
    the pool wins over a FULL further down. Returns (-1, NONE) when nothing in
    the pool pairs.
    """
    for index, cloud_record in enumerate(pool):
        grade = grade_pair(file_record, cloud_record)
        if grade is not MatchGrade.NONE:
            return index, grade
    return -1, MatchGrade.NONE


def classify(file_records: Sequence[Record], cloud_records: Sequence[Record]) -> Buckets:
    """Classify file and cloud records into the four disjoint buckets.

    Pure function: inputs are not mutated.
    """
    pool: list[Record] = list(cloud_records)
    buckets = Buckets()

    for position, file_record in enumerate(file_records, start=1):
        index, grade = _find_candidate(file_record, pool)

        if grade is MatchGrade.FULL:
            pool.pop(index)
            buckets.matching.append(file_record)
        elif grade is MatchGrade.PARTIAL:
            cloud_record = pool.pop(index)
            buckets.conflicting.append(ConflictPair(file_record=file_record, cloud_record=cloud_record))
            logger.debug(
                "classification_conflict | file_position=%s | check_id=%r | differs=%s",
                position,
                file_record.check_id,
                identity_differences(file_record, cloud_record),
            )
        else:
            buckets.missing_in_cloud.append(file_record)

    buckets.missing_in_file.extend(pool)

    logger.info(
        "classification_complete | file_records=%s | cloud_records=%s | matching=%s | conflicting=%s | missing_in_cloud=%s | missing_in_file=%s",
        len(file_records),
        len(cloud_records),
        len(buckets.matching),
        len(buckets.conflicting),
        len(buckets.missing_in_cloud),
        len(buckets.missing_in_file),
    )
    return buckets

"""
test_grid.py - Live Grid Boundary Tests

Checks for:
- GridExtractor (missing grid, empty grid, blank rows)
- GridWriter (first-row lookup, skip when not found, unavailable grid)
- LiveGrid picklist handling and CSV persistence

Usage: pytest test_grid.py
"""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import EmptySource, SourceNotFound, WriteFailed
from grid import GridExtractor, GridWriter, LiveGrid
from models import Record


def _record(description="A", status="", comments="", reference="R1", check_id="C1") -> Record:
    return Record(
        check_description=description,
        task_status=status,
        technician_comments=comments,
        manual_reference=reference,
        check_id=check_id,
    )


def test_extract_requires_a_grid():
    with pytest.raises(SourceNotFound, match="Live grid not found."):
        asyncio.run(GridExtractor(None).extract())


def test_extract_unavailable_grid():
    grid = LiveGrid([_record()])
    grid.available = False
    with pytest.raises(SourceNotFound):
        asyncio.run(GridExtractor(grid).extract())


def test_extract_empty_grid_is_empty_source():
    grid = LiveGrid([Record()])
    with pytest.raises(EmptySource, match="Table contains no rows."):
        asyncio.run(GridExtractor(grid).extract())


def test_extract_skips_blank_rows_and_keeps_order():
    rows = [_record(check_id="C1"), Record(), _record(check_id="C2")]
    extracted = asyncio.run(GridExtractor(LiveGrid(rows)).extract())
    assert [record.check_id for record in extracted] == ["C1", "C2"]


def test_writer_updates_first_matching_row_only():
    grid = LiveGrid([_record(), _record()])
    writer = GridWriter(grid)

    applied = asyncio.run(writer.apply_one(_record(status="Pass", comments="ok")))

    assert applied is True
    assert grid.rows[0].task_status == "Pass"
    assert grid.rows[0].technician_comments == "ok"
    assert grid.rows[1].task_status == ""


def test_writer_skips_record_without_row():
    grid = LiveGrid([_record()])
    applied = asyncio.run(GridWriter(grid).apply_one(_record(check_id="C9", status="Pass")))
    assert applied is False
    assert grid.rows[0].task_status == ""


def test_writer_fails_without_grid():
    with pytest.raises(WriteFailed, match="Write failed: Live grid not found."):
        asyncio.run(GridWriter(None).apply_one(_record(status="Pass")))


def test_unknown_status_keeps_existing_value_but_writes_comments():
    grid = LiveGrid([_record(status="Fail")])
    asyncio.run(GridWriter(grid).apply_one(_record(status="Maybe", comments="recheck")))
    assert grid.rows[0].task_status == "Fail"
    assert grid.rows[0].technician_comments == "recheck"


def test_custom_picklist():
    grid = LiveGrid([_record()], task_status_options=["OK", "NOK"])
    grid.update_row(0, "OK", "")
    assert grid.rows[0].task_status == "OK"
    grid.update_row(0, "Pass", "")
    assert grid.rows[0].task_status == "OK"


def test_find_row():
    grid = LiveGrid([_record(check_id="C1"), _record(check_id="C2")])
    assert grid.find_row(_record(check_id="C2", status="Pass")) == 1
    assert grid.find_row(_record(check_id="C3")) == -1


def test_grid_csv_round_trip(tmp_path):
    path = tmp_path / "grid.csv"
    grid = LiveGrid([_record(check_id="C1"), _record(check_id="C2")])
    grid.update_row(1, "Pass", "done")
    grid.save_csv(str(path))

    reloaded = LiveGrid.from_csv(str(path))

    assert reloaded.source_path == str(path)
    assert reloaded.rows == grid.rows

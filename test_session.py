"""
test_session.py - Session Coordinator Tests

End-to-end checks (with in-memory collaborators) for:
- start_session / open_for_resolution
- single-flight guard
- empty and missing grid handling
- resolution through the coordinator
- write-back ordering, halt-on-first-fault and auto-recovery
- cancellation, restarts after cancel and interrupted write-back

Usage: pytest test_session.py
"""

from __future__ import annotations

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from errors import EmptySource, InvalidFormat, SessionStateError, SourceNotFound, WriteFailed
from file_reader import CsvFileReader
from models import Record, WorkflowState
from session import SessionCoordinator

S = WorkflowState

HEADER = "Check Description,Task Status,Technician Comments,Manual Reference,Check ID\n"


def _record(description="A", status="Pass", comments="", reference="R1", check_id="C1") -> Record:
    return Record(
        check_description=description,
        task_status=status,
        technician_comments=comments,
        manual_reference=reference,
        check_id=check_id,
    )


def _csv(*rows: str) -> bytes:
    return (HEADER + "".join(f"{row}\n" for row in rows)).encode("utf-8")


class FakeExtractor:
    def __init__(self, records=None, error=None):
        self.records = list(records or [])
        self.error = error
        self.calls = 0

    async def extract(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.records)


class FakeWriter:
    def __init__(self, fail_at=None, missing=()):
        self.fail_at = fail_at
        self.missing = set(missing)
        self.attempts = []
        self.applied = []

    async def apply_one(self, record):
        self.attempts.append(record)
        if self.fail_at is not None and len(self.attempts) == self.fail_at:
            raise WriteFailed("cell not editable", record)
        if record.check_id in self.missing:
            return False
        self.applied.append(record)
        return True


class RecordingPresenter:
    def __init__(self):
        self.shown = []
        self.written = []
        self.closed = 0

    async def show_buckets(self, buckets, ledger):
        self.shown.append(buckets)

    async def record_written(self, outcome):
        self.written.append(outcome)

    async def close(self):
        self.closed += 1


def _coordinator(cloud=None, writer=None, presenter=None, extractor=None, recovery_delay=0.01):
    return SessionCoordinator(
        extractor=extractor or FakeExtractor(cloud if cloud is not None else [_record()]),
        writer=writer or FakeWriter(),
        file_reader=CsvFileReader(max_size_bytes=1024 * 1024),
        presenter=presenter or RecordingPresenter(),
        recovery_delay=recovery_delay,
    )


def _three_matches():
    return [
        _record(description="A", check_id="C1"),
        _record(description="B", check_id="C2"),
        _record(description="D", check_id="C3"),
    ]


THREE_MATCH_CSV = _csv(
    "A,Pass,,R1,C1",
    "B,Fail,loose bolt,R1,C2",
    "D,Pass,,R1,C3",
)


# ------------------------------------------------------------------
# start_session
# ------------------------------------------------------------------


def test_start_session_opens_window_with_buckets():
    presenter = RecordingPresenter()
    coordinator = _coordinator(
        cloud=[_record(), _record(description="Z", reference="R9", check_id="C9")],
        presenter=presenter,
    )

    handle = asyncio.run(coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv"))

    assert handle is not None
    assert handle.session_id.startswith("sess_")
    assert handle.state is S.WINDOW_OPEN
    assert handle.cloud_records == 2
    assert handle.file_records == 1
    assert handle.counts == {
        "matching": 1,
        "conflicting": 0,
        "missing_in_cloud": 0,
        "missing_in_file": 1,
    }
    assert coordinator.state is S.WINDOW_OPEN
    assert len(presenter.shown) == 1


def test_start_session_without_file_lists_grid_as_missing_in_file():
    coordinator = _coordinator(cloud=_three_matches())

    handle = asyncio.run(coordinator.start_session())

    assert handle.file_records == 0
    assert handle.counts["missing_in_file"] == 3
    assert list(coordinator.ledger.missing_in_file()) == ["miss_001", "miss_002", "miss_003"]


def test_start_session_rejected_while_window_open():
    extractor = FakeExtractor([_record()])
    coordinator = _coordinator(extractor=extractor)
    asyncio.run(coordinator.start_session())
    first_session = coordinator.handle().session_id

    with pytest.raises(SessionStateError):
        asyncio.run(coordinator.start_session())

    assert coordinator.state is S.WINDOW_OPEN
    assert not coordinator.machine.has_error
    assert extractor.calls == 1
    assert coordinator.handle().session_id == first_session


def test_empty_grid_aborts_to_idle_without_error():
    errors = []
    coordinator = _coordinator(extractor=FakeExtractor(error=EmptySource("Table contains no rows.")))
    coordinator.machine.add_error_observer(errors.append)

    handle = asyncio.run(coordinator.start_session())

    assert handle is None
    assert coordinator.state is S.IDLE
    assert errors == []
    assert not coordinator.has_session


def test_missing_grid_routes_through_error_and_recovers():
    errors = []
    coordinator = _coordinator(extractor=FakeExtractor(error=SourceNotFound("Live grid not found.")))
    coordinator.machine.add_error_observer(errors.append)

    async def scenario():
        with pytest.raises(SourceNotFound):
            await coordinator.start_session()
        assert coordinator.state is S.ERROR
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert coordinator.state is S.IDLE
    assert len(errors) == 1


def test_invalid_file_routes_through_error():
    coordinator = _coordinator()

    async def scenario():
        with pytest.raises(InvalidFormat):
            await coordinator.start_session(b"id,name\n1,x\n", "checks.csv")
        assert coordinator.state is S.ERROR
        assert not coordinator.has_session
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert coordinator.state is S.IDLE


# ------------------------------------------------------------------
# load_file and resolutions
# ------------------------------------------------------------------


def test_load_file_reclassifies_and_discards_resolutions():
    presenter = RecordingPresenter()
    coordinator = _coordinator(cloud=[_record(check_id="C2")], presenter=presenter)

    async def scenario():
        await coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv")
        assert coordinator.buckets().counts["conflicting"] == 1
        coordinator.resolve_conflict("pair_001", "Pass", "ok")
        await coordinator.load_file(_csv("A,Pass,,R1,C2"), "checks_v2.csv")

    asyncio.run(scenario())

    buckets = coordinator.buckets()
    assert buckets.counts["matching"] == 1
    assert buckets.matching[0].check_id == "C2"
    assert len(presenter.shown) == 2


def test_resolutions_require_open_window():
    coordinator = _coordinator()
    with pytest.raises(SessionStateError):
        coordinator.resolve_conflict("pair_001", "Pass")
    with pytest.raises(SessionStateError):
        coordinator.resolve_missing("miss_001", "Pass")


def test_resolve_conflict_through_coordinator():
    coordinator = _coordinator(cloud=[_record(status="Fail", check_id="C2")])
    asyncio.run(coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv"))

    resolved = coordinator.resolve_conflict("pair_001", "Pass", "ok")

    assert resolved.identity == ("A", "R1", "C2")
    assert coordinator.ledger.approved_records() == [resolved]
    assert coordinator.buckets().conflicting == []


# ------------------------------------------------------------------
# write-back
# ------------------------------------------------------------------


def test_write_back_applies_in_order_and_returns_to_idle():
    writer = FakeWriter()
    presenter = RecordingPresenter()
    progress = []
    coordinator = _coordinator(cloud=_three_matches(), writer=writer, presenter=presenter)
    coordinator.machine.add_progress_observer(progress.append)

    async def scenario():
        await coordinator.start_session(THREE_MATCH_CSV, "checks.csv")
        return await coordinator.request_write_back()

    report = asyncio.run(scenario())

    assert report.completed
    assert report.applied_count == 3
    assert [record.check_id for record in writer.attempts] == ["C1", "C2", "C3"]
    assert writer.attempts[1].technician_comments == "loose bolt"
    assert [outcome.position for outcome in presenter.written] == [1, 2, 3]
    assert presenter.closed == 1
    assert coordinator.state is S.IDLE
    assert not coordinator.has_session
    assert progress[-1].current == 3 and progress[-1].total == 3


def test_write_back_includes_resolved_records_after_matches():
    writer = FakeWriter()
    cloud = [_record(check_id="C1"), _record(description="Z", reference="R9", check_id="C9", status="")]
    coordinator = _coordinator(cloud=cloud, writer=writer)

    async def scenario():
        await coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv")
        coordinator.resolve_missing("miss_001", "Fail", "seal worn")
        return await coordinator.request_write_back()

    asyncio.run(scenario())

    assert [record.check_id for record in writer.attempts] == ["C1", "C9"]
    assert writer.attempts[1].task_status == "Fail"


def test_write_back_with_nothing_approved_stays_open():
    writer = FakeWriter()
    coordinator = _coordinator(cloud=[_record()], writer=writer)

    async def scenario():
        await coordinator.start_session()
        return await coordinator.request_write_back()

    report = asyncio.run(scenario())

    assert report is None
    assert coordinator.state is S.WINDOW_OPEN
    assert writer.attempts == []


def test_write_back_halts_on_first_fault_and_recovers():
    writer = FakeWriter(fail_at=2)
    errors = []
    states = []
    coordinator = _coordinator(cloud=_three_matches(), writer=writer)
    coordinator.machine.add_error_observer(errors.append)
    coordinator.machine.add_state_observer(lambda new, old, details: states.append(new))

    async def scenario():
        await coordinator.start_session(THREE_MATCH_CSV, "checks.csv")
        with pytest.raises(WriteFailed):
            await coordinator.request_write_back()
        assert coordinator.state is S.ERROR
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert [record.check_id for record in writer.applied] == ["C1"]
    assert len(writer.attempts) == 2
    report = coordinator.last_report
    assert not report.completed
    assert [outcome.status for outcome in report.outcomes] == ["applied", "failed"]
    assert len(errors) == 1
    assert states[-2:] == [S.ERROR, S.IDLE]
    assert coordinator.state is S.IDLE
    assert not coordinator.has_session


def test_unexpected_writer_exception_is_wrapped():
    class BrokenWriter:
        async def apply_one(self, record):
            raise RuntimeError("page reloaded")

    coordinator = _coordinator(cloud=[_record()], writer=BrokenWriter())

    async def scenario():
        await coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv")
        with pytest.raises(WriteFailed, match="page reloaded"):
            await coordinator.request_write_back()

    asyncio.run(scenario())


def test_row_not_found_is_skipped_not_failed():
    writer = FakeWriter(missing={"C2"})
    coordinator = _coordinator(cloud=_three_matches(), writer=writer)

    async def scenario():
        await coordinator.start_session(THREE_MATCH_CSV, "checks.csv")
        return await coordinator.request_write_back()

    report = asyncio.run(scenario())

    assert report.completed
    assert report.applied_count == 2
    assert report.skipped_count == 1
    assert coordinator.state is S.IDLE


def test_write_back_rejected_outside_open_window():
    coordinator = _coordinator()
    with pytest.raises(SessionStateError):
        asyncio.run(coordinator.request_write_back())


def test_finish_session_requires_filling():
    coordinator = _coordinator()
    with pytest.raises(SessionStateError):
        asyncio.run(coordinator.finish_session())


# ------------------------------------------------------------------
# cancellation
# ------------------------------------------------------------------


def test_cancel_open_window_returns_to_idle():
    presenter = RecordingPresenter()
    coordinator = _coordinator(presenter=presenter)

    async def scenario():
        await coordinator.start_session()
        return await coordinator.cancel()

    assert asyncio.run(scenario()) is True
    assert coordinator.state is S.IDLE
    assert not coordinator.has_session
    assert presenter.closed == 1


def test_cancel_when_idle_does_nothing():
    coordinator = _coordinator()
    assert asyncio.run(coordinator.cancel()) is False


def test_cancel_during_extraction_abandons_session():
    class SlowExtractor:
        def __init__(self):
            self.coordinator = None

        async def extract(self):
            await self.coordinator.cancel()
            return [_record()]

    extractor = SlowExtractor()
    coordinator = _coordinator(extractor=extractor)
    extractor.coordinator = coordinator

    handle = asyncio.run(coordinator.start_session())

    assert handle is None
    assert coordinator.state is S.IDLE
    assert not coordinator.has_session


def test_cancel_rejected_during_write_back():
    class CancellingWriter:
        def __init__(self):
            self.coordinator = None
            self.error = None

        async def apply_one(self, record):
            try:
                await self.coordinator.cancel()
            except SessionStateError as exc:
                self.error = exc
            return True

    writer = CancellingWriter()
    coordinator = _coordinator(writer=writer)
    writer.coordinator = coordinator

    async def scenario():
        await coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv")
        return await coordinator.request_write_back()

    report = asyncio.run(scenario())

    assert isinstance(writer.error, SessionStateError)
    assert report.completed
    assert coordinator.state is S.IDLE


# ------------------------------------------------------------------
# restarts and interrupted work
# ------------------------------------------------------------------


def test_restart_after_cancel_keeps_only_the_new_session():
    class GatedExtractor:
        def __init__(self):
            self.gates = []
            self.batches = [
                [_record(description="old", check_id="OLD")],
                [_record(description="new", check_id="NEW")],
            ]

        async def extract(self):
            gate = asyncio.Event()
            self.gates.append(gate)
            batch = self.batches[len(self.gates) - 1]
            await gate.wait()
            return batch

    extractor = GatedExtractor()
    coordinator = _coordinator(extractor=extractor)

    async def scenario():
        first = asyncio.create_task(coordinator.start_session())
        await asyncio.sleep(0)
        assert await coordinator.cancel() is True
        second = asyncio.create_task(coordinator.start_session())
        await asyncio.sleep(0)
        assert coordinator.state is S.EXTRACTING

        extractor.gates[0].set()
        first_handle = await first
        assert coordinator.state is S.EXTRACTING

        extractor.gates[1].set()
        second_handle = await second
        return first_handle, second_handle

    first_handle, second_handle = asyncio.run(scenario())

    assert first_handle is None
    assert second_handle is not None
    assert coordinator.state is S.WINDOW_OPEN
    assert [record.check_id for record in coordinator.cloud_records()] == ["NEW"]
    assert coordinator.handle().session_id == second_handle.session_id


def test_extraction_failure_after_cancel_does_not_latch():
    class CancelThenFailExtractor:
        def __init__(self):
            self.coordinator = None

        async def extract(self):
            await self.coordinator.cancel()
            raise SourceNotFound("Live grid not found.")

    errors = []
    extractor = CancelThenFailExtractor()
    coordinator = _coordinator(extractor=extractor)
    extractor.coordinator = coordinator
    coordinator.machine.add_error_observer(errors.append)

    handle = asyncio.run(coordinator.start_session())

    assert handle is None
    assert errors == []
    assert coordinator.state is S.IDLE
    assert not coordinator.machine.has_error


class CancelThenFailReader:
    max_size_bytes = 1024 * 1024

    def __init__(self):
        self.coordinator = None

    async def read(self, file_bytes, filename="checks.csv"):
        await self.coordinator.cancel()
        raise InvalidFormat("Missing required column: Check ID")


def test_file_read_failure_after_cancel_does_not_latch():
    errors = []
    reader = CancelThenFailReader()
    coordinator = SessionCoordinator(
        extractor=FakeExtractor([_record()]),
        writer=FakeWriter(),
        file_reader=reader,
        presenter=RecordingPresenter(),
        recovery_delay=0.01,
    )
    reader.coordinator = coordinator
    coordinator.machine.add_error_observer(errors.append)

    handle = asyncio.run(coordinator.start_session(b"anything", "checks.csv"))

    assert handle is None
    assert errors == []
    assert coordinator.state is S.IDLE
    assert not coordinator.has_session


def test_load_file_closed_while_reading_is_rejected_without_latch():
    errors = []
    reader = CancelThenFailReader()
    coordinator = SessionCoordinator(
        extractor=FakeExtractor([_record()]),
        writer=FakeWriter(),
        file_reader=reader,
        presenter=RecordingPresenter(),
        recovery_delay=0.01,
    )
    reader.coordinator = coordinator
    coordinator.machine.add_error_observer(errors.append)

    async def scenario():
        await coordinator.start_session()
        with pytest.raises(SessionStateError):
            await coordinator.load_file(b"anything", "checks.csv")

    asyncio.run(scenario())

    assert errors == []
    assert coordinator.state is S.IDLE


def test_interrupted_write_back_latches_error_and_recovers():
    class HangingWriter:
        async def apply_one(self, record):
            await asyncio.sleep(10)
            return True

    errors = []
    coordinator = _coordinator(writer=HangingWriter())
    coordinator.machine.add_error_observer(errors.append)

    async def scenario():
        await coordinator.start_session(_csv("A,Pass,,R1,C1"), "checks.csv")
        task = asyncio.create_task(coordinator.request_write_back())
        await asyncio.sleep(0.01)
        assert coordinator.state is S.FILLING
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert coordinator.state is S.ERROR
        await asyncio.sleep(0.05)

    asyncio.run(scenario())

    assert len(errors) == 1
    assert isinstance(errors[0], WriteFailed)
    assert "interrupted" in str(errors[0])
    assert [outcome.status for outcome in coordinator.last_report.outcomes] == ["failed"]
    assert coordinator.state is S.IDLE
    assert not coordinator.has_session

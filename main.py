"""
main.py - CLI orchestration for the check reconciliation workbench.

This module is orchestration-only:
1. load the grid CSV (the cloud side)
2. start a session against a check file (extract + classify)
3. print the four buckets
4. optionally write the matching records back and save the grid
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from typing import Any, Optional

from config import load_settings
from errors import ReconError
from file_reader import CsvFileReader
from grid import GridExtractor, GridWriter, LiveGrid
from logging_config import get_logger, setup_logging
from match import identity_differences
from models import WriteBackReport
from session import SessionCoordinator

logger = get_logger("recon-cli")


def _configure_output_symbols() -> tuple[str, str]:
    """Configure stdout encoding and return safe line/fail symbols."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError, OSError):
        pass

    try:
        "═✗".encode(sys.stdout.encoding or "utf-8")
        return "═", "✗"
    except (LookupError, UnicodeEncodeError):
        return "=", "X"


BOX_CHAR, FAIL_CHAR = _configure_output_symbols()


def _shorten(text: str, width: int) -> str:
    return text[: width - 2] + ".." if len(text) > width else text


def _bucket_payload(coordinator: SessionCoordinator) -> dict[str, Any]:
    ledger = coordinator.ledger
    buckets = ledger.buckets()
    return {
        "session": coordinator.handle().model_dump(mode="json"),
        "matching": [record.to_row() for record in buckets.matching],
        "conflicting": [
            {
                "pair_id": pair_id,
                "file": pair.file_record.to_row(),
                "cloud": pair.cloud_record.to_row(),
                "differences": identity_differences(pair.file_record, pair.cloud_record),
            }
            for pair_id, pair in ledger.conflicts().items()
        ],
        "missing_in_cloud": [record.to_row() for record in buckets.missing_in_cloud],
        "missing_in_file": [
            {"record_id": record_id, "record": record.to_row()}
            for record_id, record in ledger.missing_in_file().items()
        ],
    }


def _print_summary_table(coordinator: SessionCoordinator) -> None:
    """Print the bucket counts and the records needing attention."""
    handle = coordinator.handle()
    ledger = coordinator.ledger
    buckets = ledger.buckets()

    print(f"\n{BOX_CHAR * 60}")
    print(
        f"  SUMMARY - {handle.file_records} file record(s) vs "
        f"{handle.cloud_records} grid row(s)"
    )
    print(f"{BOX_CHAR * 60}")
    print()
    print(f"  {'Bucket':<25} {'Count':>6}")
    print(f"  {'─' * 25} {'─' * 6}")
    for name, count in buckets.counts.items():
        print(f"  {name:<25} {count:>6}")

    if buckets.conflicting:
        print()
        print(f"  {'Conflict':<10} {'Check ID':<12} {'Differs on':<36}")
        print(f"  {'─' * 10} {'─' * 12} {'─' * 36}")
        for pair_id, pair in ledger.conflicts().items():
            differences = ", ".join(identity_differences(pair.file_record, pair.cloud_record))
            print(f"  {pair_id:<10} {_shorten(pair.cloud_record.check_id, 12):<12} {_shorten(differences, 36):<36}")

    if buckets.missing_in_cloud:
        print()
        print("  Missing in grid:")
        for record in buckets.missing_in_cloud:
            print(f"    {FAIL_CHAR} {_shorten(record.check_id, 12):<12} {_shorten(record.check_description, 44)}")

    if buckets.missing_in_file:
        print()
        print("  Missing in file:")
        for record_id, record in ledger.missing_in_file().items():
            print(f"    {record_id:<10} {_shorten(record.check_id, 12):<12} {_shorten(record.check_description, 34)}")

    print()
    print(f"{BOX_CHAR * 60}")


def _print_write_back(report: Optional[WriteBackReport]) -> None:
    if report is None:
        print("\nNothing to write: no matching records.")
        return
    print(
        f"\nWrite-back complete: {report.applied_count} applied, "
        f"{report.skipped_count} skipped (row not found), {report.total} total."
    )


async def run_reconciliation(
    grid_path: str,
    file_path: str,
    write_back: bool = False,
    output_path: Optional[str] = None,
    as_json: bool = False,
) -> int:
    """Run one reconciliation session end to end. Returns a process exit code."""
    settings = load_settings()
    pipeline_start = time.time()

    grid = LiveGrid.from_csv(grid_path, task_status_options=settings.task_status_options)
    with open(file_path, "rb") as stream:
        file_bytes = stream.read()

    coordinator = SessionCoordinator(
        extractor=GridExtractor(grid),
        writer=GridWriter(grid),
        file_reader=CsvFileReader(max_size_bytes=settings.max_file_size_bytes),
        recovery_delay=settings.recovery_delay_seconds,
    )

    session_handle = await coordinator.start_session(file_bytes=file_bytes, filename=file_path)
    if session_handle is None:
        print("\nThe grid contains no rows; nothing to reconcile.")
        return 0

    if as_json:
        print(json.dumps(_bucket_payload(coordinator), indent=2))
    else:
        _print_summary_table(coordinator)

    if write_back:
        report = await coordinator.request_write_back()
        _print_write_back(report)
        if report is not None:
            grid.save_csv(output_path or grid_path)
    else:
        await coordinator.cancel()

    logger.info(
        "cli_complete | grid=%s | file=%s | write_back=%s | duration_s=%.2f",
        grid_path,
        file_path,
        write_back,
        time.time() - pipeline_start,
    )
    return 0


def main() -> None:
    """CLI entry point for the reconciliation workbench."""
    parser = argparse.ArgumentParser(
        prog="recon-workbench",
        description=(
            "Check Reconciliation Workbench\n"
            "Compares a check file against the task grid and sorts every "
            "record into matching, conflicting, missing-in-grid or missing-in-file."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --grid grid.csv --file checks.csv\n"
            "  %(prog)s --grid grid.csv --file checks.csv --json\n"
            "  %(prog)s --grid grid.csv --file checks.csv --write-back --output grid_out.csv\n"
        ),
    )
    parser.add_argument(
        "--grid",
        "-g",
        type=str,
        required=True,
        help="Path to the grid CSV (the cloud side, required)",
    )
    parser.add_argument(
        "--file",
        "-f",
        type=str,
        required=True,
        help="Path to the check file CSV (required)",
    )
    parser.add_argument(
        "--write-back",
        "-w",
        action="store_true",
        help="Write the matching records into the grid and save it",
    )
    parser.add_argument(
        "--output",
        "-o",
        type=str,
        help="Where to save the updated grid (defaults to overwriting --grid)",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose (DEBUG-level) logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output the buckets as JSON instead of a summary table",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args()
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    if args.output and not args.write_back:
        parser.error("--output only applies together with --write-back")

    try:
        logger.info("cli_mode | grid=%s | file=%s | write_back=%s", args.grid, args.file, args.write_back)
        exit_code = asyncio.run(
            run_reconciliation(
                args.grid,
                args.file,
                write_back=args.write_back,
                output_path=args.output,
                as_json=args.json,
            )
        )
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ReconError as exc:
        logger.error("cli_error | type=%s | error=%s", type(exc).__name__, exc)
        print(f"\n  {FAIL_CHAR} {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc

    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()

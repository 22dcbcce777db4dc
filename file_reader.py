"""
file_reader.py - Check file boundary (CSV in, CSV out).

Converts an uploaded check file into an ordered list of `Record` objects and
exports records back to CSV. Only this module knows about CSV parsing; the
rest of the workbench sees `Record` lists.

Validation order mirrors what an operator sees first:
    1. extension must be .csv          -> InvalidFormat
    2. size must be within the limit   -> TooLarge
    3. content must not be blank       -> EmptyFile
    4. all five headers must exist     -> InvalidFormat
    5. at least one non-blank data row -> EmptyFile
"""

from __future__ import annotations

import csv
import io
from pathlib import Path
from typing import Iterable, Optional

import pandas as pd

from config import load_settings
from errors import EmptyFile, InvalidFormat, TooLarge
from logging_config import get_logger
from models import RECORD_HEADERS, Record
from normalize import normalize_header

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = {".csv"}


def _read_frame(data: bytes, filename: str) -> pd.DataFrame:
    read_kwargs = {
        "dtype": str,
        "keep_default_na": False,
        "skip_blank_lines": True,
    }
    try:
        return pd.read_csv(io.BytesIO(data), encoding="utf-8-sig", **read_kwargs)
    except UnicodeDecodeError:
        logger.warning(
            "file_encoding_warning | file=%s | reason='utf-8 decode failed' | fallback=latin-1",
            filename,
        )
        return pd.read_csv(io.BytesIO(data), encoding="latin-1", **read_kwargs)


def parse_check_file(
    data: bytes,
    filename: str = "checks.csv",
    max_size_bytes: Optional[int] = None,
) -> list[Record]:
    """Validate and parse a check file into records, in file order."""
    if data is None:
        raise EmptyFile("File contains no data")

    suffix = Path(str(filename or "")).suffix.lower()
    if suffix not in ALLOWED_EXTENSIONS:
        raise InvalidFormat(
            f"Invalid file type. Allowed types: {', '.join(sorted(ALLOWED_EXTENSIONS))}"
        )

    if max_size_bytes is not None and len(data) > max_size_bytes:
        max_mb = max_size_bytes / (1024 * 1024)
        raise TooLarge(f"File size exceeds {max_mb:g}MB limit")

    if not data.strip():
        raise EmptyFile("File contains no data")

    try:
        df = _read_frame(data, filename)
    except pd.errors.EmptyDataError as exc:
        raise EmptyFile("File contains no data") from exc
    except pd.errors.ParserError as exc:
        raise InvalidFormat(f"Failed to parse CSV '{filename}': {exc}") from exc

    df.columns = [normalize_header(column) for column in df.columns]
    missing = [header for header in RECORD_HEADERS if header not in df.columns]
    if missing:
        raise InvalidFormat(f"Missing required headers: {', '.join(missing)}")

    records = [Record.model_validate(row) for row in df[RECORD_HEADERS].to_dict(orient="records")]
    blank_rows = sum(1 for record in records if record.is_blank)
    records = [record for record in records if not record.is_blank]
    if not records:
        raise EmptyFile("File contains no data")

    if blank_rows:
        logger.warning("file_blank_rows | file=%s | dropped_rows=%s", filename, blank_rows)

    extra_columns = [column for column in df.columns if column not in RECORD_HEADERS]
    logger.info(
        "file_loaded | file=%s | rows=%s | extra_columns=%s",
        filename,
        len(records),
        extra_columns,
    )
    return records


def load_records_csv(path: str) -> list[Record]:
    """Read records from a CSV file on disk (no size limit)."""
    if path is None or not str(path).strip():
        raise ValueError("path cannot be empty")

    csv_path = Path(str(path).strip())
    if not csv_path.exists():
        raise FileNotFoundError(f"Check file not found: {csv_path}")

    return parse_check_file(csv_path.read_bytes(), csv_path.name)


def records_to_csv(records: Iterable[Record]) -> str:
    """Export records as CSV text with the five standard headers, all cells quoted."""
    rows = [record.to_row() for record in records]
    df = pd.DataFrame(rows, columns=RECORD_HEADERS)
    return df.to_csv(index=False, quoting=csv.QUOTE_ALL, lineterminator="\n")


class CsvFileReader:
    """File reader collaborator for the session coordinator."""

    def __init__(self, max_size_bytes: Optional[int] = None) -> None:
        if max_size_bytes is None:
            max_size_bytes = load_settings().max_file_size_bytes
        self.max_size_bytes = max_size_bytes

    async def read(self, file_bytes: bytes, filename: str = "checks.csv") -> list[Record]:
        return parse_check_file(file_bytes, filename, max_size_bytes=self.max_size_bytes)

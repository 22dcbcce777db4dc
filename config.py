"""
config.py - Environment-driven settings.

Values come from environment variables (optionally loaded from a local .env
file). Invalid values fall back to defaults with a warning rather than
stopping the workbench.

    RECON_RECOVERY_DELAY_SECONDS  seconds spent in ERROR before returning to IDLE
    RECON_MAX_FILE_SIZE_BYTES     upload size limit for check files
    RECON_GRID_FILE               CSV file backing the live grid (HTTP server)
    RECON_TASK_STATUS_OPTIONS     '|'-separated task-status picklist
    PORT                          HTTP port
    DEBUG                         enables verbose logging in the HTTP server
"""

from __future__ import annotations

import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from logging_config import get_logger

logger = get_logger(__name__)

try:
    load_dotenv()
except UnicodeDecodeError:
    # Fallback for legacy Windows-encoded .env files.
    load_dotenv(encoding="cp1252")

DEFAULT_TASK_STATUS_OPTIONS: list[str] = [
    "Pass",
    "Done by Customer",
    "Not Done – Customer Request",
    "Not Done – Not Applicable",
    "Fail",
    "Not Started",
]


class Settings(BaseModel):
    """Runtime settings for the reconciliation workbench."""

    recovery_delay_seconds: float = Field(default=2.0, ge=0.0)
    max_file_size_bytes: int = Field(default=5 * 1024 * 1024, gt=0)
    grid_file: Optional[str] = None
    task_status_options: list[str] = Field(default_factory=lambda: list(DEFAULT_TASK_STATUS_OPTIONS))
    port: int = Field(default=8000, gt=0)
    debug: bool = False


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("config_warning | name=%s | value=%r | fallback=%s", name, raw, default)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("config_warning | name=%s | value=%r | fallback=%s", name, raw, default)
        return default


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


def load_settings() -> Settings:
    """Read settings from the current environment."""
    options_raw = os.getenv("RECON_TASK_STATUS_OPTIONS", "")
    options = [item.strip() for item in options_raw.split("|") if item.strip()]

    return Settings(
        recovery_delay_seconds=max(0.0, _env_float("RECON_RECOVERY_DELAY_SECONDS", 2.0)),
        max_file_size_bytes=max(1, _env_int("RECON_MAX_FILE_SIZE_BYTES", 5 * 1024 * 1024)),
        grid_file=os.getenv("RECON_GRID_FILE", "").strip() or None,
        task_status_options=options or list(DEFAULT_TASK_STATUS_OPTIONS),
        port=max(1, _env_int("PORT", 8000)),
        debug=_env_flag("DEBUG"),
    )

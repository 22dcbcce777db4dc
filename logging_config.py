"""
logging_config.py - Centralized logging configuration.

Every module logs through `get_logger(__name__)` and writes pipe-delimited
event lines, e.g. `classification_complete | matching=3 | conflicting=1`.
`setup_logging` is called once by the CLI and the HTTP server entry points.
"""

from __future__ import annotations

import logging
import sys

TEXT_FORMAT = "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s"
JSON_FORMAT = (
    '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
    '"module":"%(name)s","message":"%(message)s"}'
)

# Third-party loggers that are noisy at INFO.
QUIET_LOGGERS = ("multipart", "python_multipart", "httpx")


def setup_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """Configure the root logger for the reconciliation workbench.

    Args:
        level: Logging level for the root logger.
        json_format: If True, emit JSON-like log lines for log aggregation.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    formatter = logging.Formatter(
        JSON_FORMAT if json_format else TEXT_FORMAT,
        datefmt="%H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)

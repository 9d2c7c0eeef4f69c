"""Structured logging for brewhouse.

Events go to a rotating JSON log file, and optionally to stderr. Context bound
with ``structlog.contextvars`` (the transaction id and plan operation while a
transaction runs) is merged into every event, including those logged from
fetch and install tasks spawned inside it.
"""

from __future__ import annotations

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog
from structlog.types import FilteringBoundLogger

_CONFIGURED = False


def drop_empty(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Processor removing keys whose value is None."""
    return {k: v for k, v in event_dict.items() if v is not None}


def default_log_dir() -> Path:
    override = os.environ.get("BREWHOUSE_LOG_DIR")
    if override:
        return Path(override)
    return Path.home() / ".brewhouse" / "logs"


def configure_logging(
    level: str = "INFO", log_file: Path | None = None, enable_console: bool = False
) -> None:
    """Install handlers and the structlog pipeline once per process.

    Args:
        level: Level name such as "DEBUG" or "INFO".
        log_file: Log file path; defaults to brewhouse.log under default_log_dir().
        enable_console: Also render events to stderr (the CLI's --verbose).
    """
    global _CONFIGURED
    if _CONFIGURED:
        return

    if log_file is None:
        log_dir = default_log_dir()
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / "brewhouse.log"

    numeric_level = getattr(logging, level.upper())
    file_handler = RotatingFileHandler(log_file, maxBytes=2_000_000, backupCount=2)
    file_handler.setLevel(numeric_level)

    processors = [
        structlog.contextvars.merge_contextvars,
        drop_empty,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]

    if enable_console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(numeric_level)
        console_handler.setFormatter(logging.Formatter("%(message)s"))
        logging.root.addHandler(console_handler)
        processors += [
            structlog.processors.ExceptionRenderer(),
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.root.setLevel(numeric_level)
    logging.root.addHandler(file_handler)

    _CONFIGURED = True


def get_logger(name: str = "brewhouse") -> FilteringBoundLogger:
    """Return a bound logger, configuring logging with defaults on first use.

    Events are named in snake_case with details as keyword arguments:

        log = get_logger(__name__)
        log.info("node_committed", package="wget", duration_ms=123)

    Common keys are package, kind, op, transaction, duration_ms and error.
    """
    if not _CONFIGURED:
        configure_logging()
    return structlog.get_logger(name)

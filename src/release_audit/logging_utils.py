"""Logging helpers for the release audit controller."""

from __future__ import annotations

import logging
import sys
import threading
from pathlib import Path

from release_audit.config import load_settings

_logging_configured = False
_logging_lock = threading.Lock()

_logger = logging.getLogger(__name__)

# Workers run as audit-worker-N threads.
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"

_LIBRARY_LOGGERS = ("boto3", "botocore", "s3transfer", "urllib3")


def _formatter() -> logging.Formatter:
    return logging.Formatter(_LOG_FORMAT, datefmt=_DATE_FORMAT)


def configure_logging() -> None:
    """Configure process-wide logging from settings.

    AWS client libraries are held at WARNING unless DEBUG is requested.
    """
    global _logging_configured

    settings = load_settings()
    level = getattr(logging, settings.logging.level.upper(), logging.INFO)

    handlers: list[logging.Handler] = []

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(_formatter())
    handlers.append(stream_handler)

    if settings.logging.file:
        try:
            Path(settings.logging.file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(settings.logging.file)
            file_handler.setFormatter(_formatter())
            handlers.append(file_handler)
        except OSError as exc:
            _logger.warning("Failed to open log file %s: %s", settings.logging.file, exc)

    logging.basicConfig(level=level, handlers=handlers, force=True)

    library_level = level if level <= logging.DEBUG else max(level, logging.WARNING)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    _logging_configured = True


def get_logger(name: str) -> logging.Logger:
    if not _logging_configured:
        with _logging_lock:
            if not _logging_configured:
                configure_logging()
    return logging.getLogger(name)

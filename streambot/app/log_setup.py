"""
Logging setup for StreamBot.

Console logging via basicConfig plus an optional rotation-tolerant log file.
"""

import logging
import logging.handlers
import os
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _make_file_handler(path: str) -> logging.Handler:
    # Use WatchedFileHandler for rotation tolerance (logrotate moves the file)
    handler = logging.handlers.WatchedFileHandler(path, mode="a")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s"))

    # Wrap emit to handle write failures gracefully
    original_emit = handler.emit

    def safe_emit(record):
        try:
            original_emit(record)
        except (IOError, OSError):
            # Logging failures degrade silently
            pass

    handler.emit = safe_emit
    return handler


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """
    Configure root logging.

    Args:
        level: Root log level name
        log_file: Optional file that also receives every record
    """
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
    )

    # Suppress httpx INFO level logging (one line per request)
    logging.getLogger("httpx").setLevel(logging.WARNING)

    if not log_file:
        return

    root = logging.getLogger()
    # Prevent duplicate handlers when configure_logging runs twice
    if any(
        isinstance(h, logging.handlers.WatchedFileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_file)
        for h in root.handlers
    ):
        return
    try:
        root.addHandler(_make_file_handler(log_file))
    except OSError as e:
        # Logging must never prevent startup
        logging.getLogger(__name__).warning(f"Cannot open log file {log_file}: {e}")

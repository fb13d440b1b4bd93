#!/usr/bin/env python3
"""
Logging setup for the transformation tool.

Log records go to a size-rotated file; if the log directory cannot be
created they go to stdout instead.
"""

import logging
import logging.handlers
import os
import sys

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
MAX_LOG_FILE_SIZE = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5

_LEVELS = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "debug": logging.DEBUG,
}


def parse_log_level(level: str) -> int:
    """Map a command line level name to a logging level, defaulting to INFO."""
    return _LEVELS.get((level or "").lower(), logging.INFO)


def setup_logging(log_file: str, level: str = "info") -> logging.Handler:
    """
    Setup logging configuration.

    Args:
        log_file: Path of the rotated log file
        level: One of debug, info, warn, error

    Returns:
        The handler attached to the root logger
    """
    root = logging.getLogger()
    root.setLevel(parse_log_level(level))

    fallback_reason = None
    try:
        os.makedirs(os.path.dirname(log_file) or ".", mode=0o750, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=MAX_LOG_FILE_SIZE,
            backupCount=LOG_BACKUP_COUNT
        )
    except OSError as e:
        fallback_reason = e
        handler = logging.StreamHandler(sys.stdout)

    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)

    if fallback_reason is not None:
        logging.getLogger(__name__).info(
            f"create the log file {log_file} failed: {fallback_reason}, using STDOUT"
        )
    return handler

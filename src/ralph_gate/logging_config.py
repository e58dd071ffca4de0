"""Logging setup for ralph-gate.

Hook invocations share stdout with the host runtime, so console logging
always goes to stderr, and the ``hook`` command turns the console off
entirely because its stderr may be shown to the agent. A log file keeps an
audit trail of loop decisions across the short-lived hook processes.

Usage:
    >>> setup_logging(verbose=True, log_file=Path(".ralph/gate.log"))
    >>> logger = logging.getLogger(__name__)
    >>> logger.info("Loop started")
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path
from typing import Optional

PACKAGE_LOGGER = "ralph_gate"

_CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(funcName)s:%(lineno)d: %(message)s"
_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(
    verbose: bool = False,
    log_file: Optional[Path] = None,
    quiet: bool = False,
    console: bool = True,
) -> logging.Logger:
    """Configure the ``ralph_gate`` logger hierarchy.

    Args:
        verbose: If True, log DEBUG to the console; otherwise WARNING
        log_file: Optional path to a log file (always DEBUG)
        quiet: If True, only errors reach the console
        console: If False, install no console handler at all

    Returns:
        The configured package logger

    Calling this again replaces the handlers installed by a previous call.
    """
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING

    logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    # Without any handler, logging falls back to its stderr "last resort".
    logger.addHandler(logging.NullHandler())

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)
        console_handler.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATE_FORMAT))
        logger.addHandler(console_handler)

    logger_level = level
    if log_file:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as e:
            logger.warning("Cannot open log file %s: %s", log_file, e)
        else:
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATE_FORMAT))
            logger.addHandler(file_handler)
            logger_level = logging.DEBUG

    logger.setLevel(logger_level)
    return logger

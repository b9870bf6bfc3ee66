"""
Logging configuration — process-wide setup, called once by the CLI.

Every module does ``logger = logging.getLogger(__name__)`` and inherits
what is configured here. User-facing progress lines are printed by the
CLI itself; logging carries the diagnostics behind them.

Levels are resolved in precedence order:
    --debug > --verbose > --quiet  >  PROVISION_LOG_LEVEL  >  WARNING

Optional file output via PROVISION_LOG_FILE / PROVISION_LOG_FILE_LEVEL.
The file always gets full detail, which makes it the place to look
after a failed unattended run.
"""

from __future__ import annotations

import logging
import os
import sys

LOG_LEVEL_ENV = "PROVISION_LOG_LEVEL"
LOG_FILE_ENV = "PROVISION_LOG_FILE"
LOG_FILE_LEVEL_ENV = "PROVISION_LOG_FILE_LEVEL"

# WARNING and above: just the message, the CLI already frames it
_FMT_MINIMAL = "%(message)s"

# INFO: timestamped with logger name
_FMT_VERBOSE = "%(asctime)s [%(name)s] %(message)s"

# DEBUG and file output: file:line detail
_FMT_DEBUG = "%(asctime)s %(levelname)-5s %(name)s:%(lineno)d — %(message)s"

_DATEFMT_SHORT = "%H:%M:%S"
_DATEFMT_FILE = "%Y-%m-%d %H:%M:%S"


def resolve_level(debug: bool = False, verbose: bool = False, quiet: bool = False) -> str:
    """Turn CLI flags (and the env fallback) into a level name."""
    if debug:
        return "DEBUG"
    if verbose:
        return "INFO"
    if quiet:
        return "ERROR"
    return os.environ.get(LOG_LEVEL_ENV, "WARNING")


def setup_logging(
    level: str = "WARNING",
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure the root logger.

    Args:
        level: Console level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        log_file: Optional path to a log file (default: PROVISION_LOG_FILE).
        log_file_level: Level for the file (default: PROVISION_LOG_FILE_LEVEL,
            then DEBUG).
    """
    numeric_level = _parse_level(level)
    log_file = log_file or os.environ.get(LOG_FILE_ENV)
    log_file_level = log_file_level or os.environ.get(LOG_FILE_LEVEL_ENV)

    if numeric_level <= logging.DEBUG:
        fmt, datefmt = _FMT_DEBUG, _DATEFMT_SHORT
    elif numeric_level <= logging.INFO:
        fmt, datefmt = _FMT_VERBOSE, _DATEFMT_SHORT
    else:
        fmt, datefmt = _FMT_MINIMAL, None

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(numeric_level)
    console.setFormatter(logging.Formatter(fmt, datefmt=datefmt))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    effective_level = numeric_level

    if log_file:
        file_level = _parse_level(log_file_level, default=logging.DEBUG)
        effective_level = min(effective_level, file_level)

        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(file_level)
        fh.setFormatter(logging.Formatter(_FMT_DEBUG, datefmt=_DATEFMT_FILE))
        root.addHandler(fh)

    root.setLevel(effective_level)

    # A broken log handler must never abort a half-provisioned host
    logging.raiseExceptions = False


def _parse_level(level: str | None, default: int = logging.WARNING) -> int:
    """Convert a level name string to its numeric constant."""
    if not level:
        return default
    numeric = getattr(logging, level.upper(), None)
    if not isinstance(numeric, int):
        return default
    return numeric

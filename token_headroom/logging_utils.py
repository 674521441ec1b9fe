from __future__ import annotations

import logging
import sys
from pathlib import Path

LOGGER_NAME = "token_headroom"
LOG_REL_PATH = ".claude/logs/token_headroom.log"

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


class CriticalOnlyFilter(logging.Filter):
    """Pass errors and records emitted for critical-risk mutations."""

    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno >= logging.ERROR or bool(getattr(record, "critical", False))


def configure_logging(
    *,
    log_mode: str = "off",
    verbose: bool = False,
    project_root: Path | None = None,
) -> Path | None:
    """Configure the package logger.

    Console output goes to stderr. A log file under the project root is only
    opened when log_mode is "on" or "critical"; callers pass log_mode="off"
    for dry runs so no file is ever created there.

    Returns the log file path, or None when no file is written.
    """

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    # Reconfiguration replaces our own handlers instead of stacking them.
    for h in list(logger.handlers):
        if getattr(h, "_token_headroom", False):
            logger.removeHandler(h)
            h.close()

    fmt = logging.Formatter(fmt=_FORMAT, datefmt=_DATEFMT)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    console.setFormatter(fmt)
    setattr(console, "_token_headroom", True)
    logger.addHandler(console)

    if log_mode == "off" or project_root is None:
        return None

    log_path = project_root / LOG_REL_PATH
    log_path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setLevel(logging.INFO)
    file_handler.setFormatter(fmt)
    if log_mode == "critical":
        file_handler.addFilter(CriticalOnlyFilter())
    setattr(file_handler, "_token_headroom", True)
    logger.addHandler(file_handler)

    logger.info("Logging initialized (mode=%s, path=%s)", log_mode, log_path)
    return log_path

"""Application-wide logging configuration utilities."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

from fleetsync import app_paths

_LOG_PATH: Optional[Path] = None
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO, *, console: bool = False) -> Path:
    """Configure logging to write to the FleetSync log file.

    Parameters
    ----------
    level:
        The minimum logging level for the root logger. ``logging.INFO`` is used
        by default which captures every sync stage and chunk without being
        overly verbose.
    console:
        When ``True`` a stderr handler is attached as well. The command line
        tool enables it with ``--verbose``.

    Returns
    -------
    pathlib.Path
        The path to the log file.
    """

    global _LOG_PATH

    root_logger = logging.getLogger()
    if console and not any(type(handler) is logging.StreamHandler for handler in root_logger.handlers):
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(_FORMAT))
        root_logger.addHandler(stream_handler)

    if _LOG_PATH is not None:
        return _LOG_PATH

    log_path = app_paths.logs_path("fleetsync.log")
    log_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        log_path.touch(exist_ok=True)
    except OSError:
        pass

    if not root_logger.handlers:
        root_logger.setLevel(level)
    else:
        root_logger.setLevel(min(root_logger.level, level))

    already_configured = any(
        isinstance(handler, logging.FileHandler)
        and getattr(handler, "baseFilename", None) == str(log_path)
        for handler in root_logger.handlers
    )
    if not already_configured:
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(_FORMAT))
        root_logger.addHandler(file_handler)

    _LOG_PATH = log_path
    root_logger.debug("Logging configured. Writing to %s", log_path)
    return log_path


"""
Logging setup for the schedule engine.

Every component logs through one of a fixed set of named loggers
(``timeslot.<name>``). Production writes JSON lines to one rotating file
per logger; development writes readable lines to stdout. Context passed
with ``extra={...}`` is kept as top-level JSON fields, so callers must not
use LogRecord attribute names (``created``, ``name``, ``module``...) as keys.

Environment:
    TIMESLOT_ENV        production | development (default development)
    TIMESLOT_LOG_LEVEL  level name (default INFO)
    TIMESLOT_LOG_DIR    directory for production log files (default ./logs)
"""

import json
import logging
import logging.handlers
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional


# api: HTTP layer; services: series operations and materialization;
# worker: expansion loop; jobs: queue transitions; db: engine and migrations
LOGGER_NAMES = ["api", "services", "worker", "jobs", "db"]

_RESERVED_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """One JSON object per record, with ``extra`` fields merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and not key.startswith("_"):
                log_data[key] = value

        return json.dumps(log_data, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[2025-01-06 09:00:00] INFO - worker - Job 12 finished``"""

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] %(levelname)s - %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )


def _build_handler(logger_name: str, is_prod: bool) -> logging.Handler:
    if is_prod:
        log_dir = Path(os.environ.get("TIMESLOT_LOG_DIR", "logs"))
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_dir / f"{logger_name}.log",
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=5,
            encoding="utf-8"
        )
        handler.setFormatter(JSONFormatter())
    else:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ConsoleFormatter())
    return handler


def configure_logging() -> Dict[str, logging.Logger]:
    """
    (Re)configure every engine logger from the environment.

    Returns:
        Logger per short name
    """
    level_name = os.environ.get("TIMESLOT_LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)
    is_prod = os.environ.get("TIMESLOT_ENV", "development").lower() == "production"

    loggers = {}
    for logger_name in LOGGER_NAMES:
        logger = logging.getLogger(f"timeslot.{logger_name}")
        logger.setLevel(log_level)
        logger.propagate = False
        logger.handlers.clear()

        handler = _build_handler(logger_name, is_prod)
        handler.setLevel(log_level)
        logger.addHandler(handler)
        loggers[logger_name] = logger

    return loggers


_loggers: Optional[Dict[str, logging.Logger]] = None


def get_logger(name: str) -> logging.Logger:
    """
    Get an engine logger by short name, configuring logging on first use.

    Raises:
        ValueError: If the name is not one of LOGGER_NAMES
    """
    global _loggers

    if _loggers is None:
        _loggers = configure_logging()

    if name not in _loggers:
        raise ValueError(
            f"Unknown logger name: {name}. "
            f"Valid names: {', '.join(_loggers.keys())}"
        )
    return _loggers[name]


def init_logging() -> Dict[str, logging.Logger]:
    """Configure logging at application or worker startup."""
    global _loggers
    _loggers = configure_logging()
    return _loggers

"""
Structured logging setup for all modules.

One JSON object per line on stdout and in ``logs/app.log``. The job a task
is working on lives in a context variable, so every record logged while the
worker runs that task carries its ``job_id`` without threading it through
call signatures.
"""

import json
import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from shared.config import settings

LOG_DIR = Path("logs")
LOG_FILE_MAX_BYTES = 100 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Pipeline job or legacy job handled by the current task
job_id_context: ContextVar[Optional[str]] = ContextVar("job_id", default=None)

# Attributes every LogRecord has; anything else came in through extra=
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName"}

_SCALARS = (str, int, float, bool, type(None))


def _extra_fields(record: logging.LogRecord) -> Iterator[Tuple[str, Any]]:
    for key, value in vars(record).items():
        if key in _RECORD_ATTRS or key.startswith("_"):
            continue
        yield key, value if isinstance(value, _SCALARS) else str(value)


class JSONFormatter(logging.Formatter):
    """Renders a record, its extras and the context job id as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "module": record.module,
            "logger": record.name,
            "message": record.getMessage(),
        }
        job_id = job_id_context.get()
        if job_id:
            entry["job_id"] = job_id
        entry.update(_extra_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def _handlers() -> List[logging.Handler]:
    LOG_DIR.mkdir(exist_ok=True)
    handlers: List[logging.Handler] = [
        logging.StreamHandler(sys.stdout),
        RotatingFileHandler(LOG_DIR / "app.log", maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUPS),
    ]
    formatter = JSONFormatter()
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def get_logger(name: str) -> logging.Logger:
    """
    Logger for one component (e.g. "pipeline_runner", "worker").

    Handlers are attached once per name; records do not propagate to the
    root logger, so uvicorn's own handlers never print them a second time.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))
    logger.propagate = False
    for handler in _handlers():
        logger.addHandler(handler)
    return logger


def set_job_id(job_id: Optional[str]) -> None:
    """Tag subsequent records in this task with job_id (None clears it)."""
    job_id_context.set(str(job_id) if job_id else None)


def get_job_id() -> Optional[str]:
    return job_id_context.get()

"""Structured logging with job correlation.

Every record logged while a job is being processed carries the job id, so a
single job can be followed across the scheduler, worker and store.
"""

import json
import logging
import sys
import traceback
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

# Job handled by the current thread
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)

NO_JOB = "-"

# LogRecord attributes that are not user-supplied extras
_RECORD_FIELDS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))
) | {"message", "asctime", "taskName", "job_id"}

_QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "httpx")

PLAIN_FORMAT = "%(asctime)s %(levelname)-8s %(name)s [job=%(job_id)s] %(message)s"


def get_job_id() -> Optional[str]:
    """Get the job id bound to the current context, if any."""
    return job_id_var.get()


@contextmanager
def bind_job_id(job_id: Any) -> Iterator[None]:
    """Bind *job_id* to the current context for the duration of the block."""
    token = job_id_var.set(str(job_id))
    try:
        yield
    finally:
        job_id_var.reset(token)


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return str(value)
    return value


class StructuredFormatter(logging.Formatter):
    """Renders each record as one JSON object per line."""

    def __init__(self, include_stack_trace: bool = True, include_extra_fields: bool = True):
        super().__init__()
        self.include_stack_trace = include_stack_trace
        self.include_extra_fields = include_extra_fields

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        job_id = getattr(record, "job_id", None)
        if job_id:
            entry["job_id"] = job_id

        if self.include_stack_trace and record.exc_info:
            entry["exception"] = self._describe_exception(record.exc_info)

        if self.include_extra_fields:
            extra = {
                key: _jsonable(value)
                for key, value in vars(record).items()
                if key not in _RECORD_FIELDS
            }
            if extra:
                entry["extra"] = extra

        return json.dumps(entry, default=str)

    @staticmethod
    def _describe_exception(exc_info) -> dict[str, Any]:
        exc_type, exc_value, exc_tb = exc_info
        return {
            "type": exc_type.__name__ if exc_type else None,
            "message": str(exc_value) if exc_value else None,
            "stack_trace": traceback.format_exception(exc_type, exc_value, exc_tb) if exc_tb else None,
        }


class JobIdFilter(logging.Filter):
    """Stamps the bound job id on records that do not carry one."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "job_id", None) is None:
            record.job_id = get_job_id() or NO_JOB
        return True


def setup_logging(
    level: str = "INFO",
    json_format: bool = True,
    include_stack_trace: bool = True,
) -> None:
    """Route all logging to stdout.

    Args:
        level: Root log level name
        json_format: Emit JSON lines instead of plain text
        include_stack_trace: Attach formatted tracebacks to JSON records
    """
    numeric_level = logging.getLevelName(level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.addFilter(JobIdFilter())
    if json_format:
        handler.setFormatter(StructuredFormatter(include_stack_trace=include_stack_trace))
    else:
        handler.setFormatter(logging.Formatter(PLAIN_FORMAT))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def _extra(fields: dict[str, Any]) -> dict[str, Any]:
    fields.setdefault("job_id", get_job_id() or NO_JOB)
    return fields


def log_error(
    logger: logging.Logger,
    message: str,
    exception: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Log an error with the bound job id and optional exception."""
    logger.error(message, exc_info=exception, extra=_extra(fields))


def log_warning(logger: logging.Logger, message: str, **fields: Any) -> None:
    logger.warning(message, extra=_extra(fields))


def log_info(logger: logging.Logger, message: str, **fields: Any) -> None:
    logger.info(message, extra=_extra(fields))


def log_debug(logger: logging.Logger, message: str, **fields: Any) -> None:
    logger.debug(message, extra=_extra(fields))

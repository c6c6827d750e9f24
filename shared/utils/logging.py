"""
ChronoHeal - Structured Logging
===============================

JSON logging for the controller. Every record carries the service name and,
when set, the correlation ID of the HTTP request plus the subject and run ID
of the IncidentRun that produced it.

Usage:
    from shared.utils.logging import get_logger, setup_logging, run_context

    setup_logging(service_name="ooda-controller", log_level="INFO")
    logger = get_logger(__name__)

    with run_context(subject="checkout", run_id="4f0c..."):
        logger.info("Entering ORIENTING", extra={"phase": "orienting"})
"""

import logging
import json
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional
from contextvars import ContextVar

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
subject_var: ContextVar[Optional[str]] = ContextVar("subject", default=None)
run_id_var: ContextVar[Optional[str]] = ContextVar("run_id", default=None)

_CONTEXT_VARS = {
    "correlation_id": correlation_id_var,
    "subject": subject_var,
    "run_id": run_id_var,
}

_STANDARD_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "taskName", "message",
}


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON.

    Output keys: timestamp, level, service, logger, message, any bound
    context (correlation_id, subject, run_id), exception text, and every
    field passed through ``extra``.
    """

    def __init__(self, service_name: str):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "service": self.service_name,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for key, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                log_entry[key] = value

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                log_entry[key] = value

        return json.dumps(log_entry, default=str)


class ContextualLogger(logging.LoggerAdapter):
    """
    Logger adapter that copies the bound context variables into ``extra``.

    Keeps the context visible to non-JSON handlers (and to caplog in tests).
    """

    def process(self, msg: str, kwargs: dict) -> tuple[str, dict]:
        extra = kwargs.get("extra", {})

        for key, var in _CONTEXT_VARS.items():
            if key not in extra:
                value = var.get()
                if value:
                    extra[key] = value

        kwargs["extra"] = extra
        return msg, kwargs


_loggers: dict[str, ContextualLogger] = {}
_service_name: str = "chronoheal"


def setup_logging(
    service_name: str,
    log_level: str = "INFO",
    json_output: bool = True
) -> None:
    """
    Configure the root logger for a service.

    Call once at startup, from main.py.

    Args:
        service_name: Name stamped on every record
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines when True, human-readable lines otherwise
    """
    global _service_name
    _service_name = service_name

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if json_output:
        handler.setFormatter(StructuredFormatter(service_name))
    else:
        handler.setFormatter(logging.Formatter(
            f"%(asctime)s | {service_name} | %(levelname)s | %(name)s | %(message)s"
        ))

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper()))

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str) -> ContextualLogger:
    """Get (and cache) a contextual logger for a module, typically ``__name__``."""
    if name not in _loggers:
        base_logger = logging.getLogger(name)
        _loggers[name] = ContextualLogger(base_logger, {})
    return _loggers[name]


def set_correlation_id(correlation_id: str) -> None:
    """Bind the request correlation ID to the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Current correlation ID, or None."""
    return correlation_id_var.get()


@contextmanager
def run_context(subject: str, run_id: str) -> Iterator[None]:
    """
    Bind subject and run ID for the duration of a block.

    Each asyncio task gets its own copy of the context, so concurrent runs
    for different subjects never see each other's values.
    """
    subject_token = subject_var.set(subject)
    run_token = run_id_var.set(run_id)
    try:
        yield
    finally:
        run_id_var.reset(run_token)
        subject_var.reset(subject_token)

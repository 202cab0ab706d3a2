"""
Logging setup for the workflow editor engine.

Context fields (request id, session id, run id, node id) are held in a
``ContextVar``. asyncio tasks and ``call_soon`` callbacks copy the context
that was current when they were scheduled, so node tasks of one run log that
run's id even when several runs share the event loop.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

# Context fields shown by the plain formatter, in this order
CONTEXT_FIELDS = ("request_id", "session_id", "run_id", "node_id")

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s%(context)s - %(message)s"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "sqlalchemy.pool": logging.WARNING,
    "asyncio": logging.WARNING,
}

_log_context: ContextVar[Dict[str, Any]] = ContextVar("workflow_editor_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """One JSON object per record. Context fields become top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
        }
        entry.update(getattr(record, "editor_context", {}))
        entry.update(getattr(record, "extra_fields", {}))

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }
        return json.dumps(entry, default=str)


class EditorContextFilter(logging.Filter):
    """Attach the current logging context to each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        context = _log_context.get()
        record.editor_context = dict(context)
        shown = [f"{key}={context[key]}" for key in CONTEXT_FIELDS if key in context]
        record.context = f" [{' '.join(shown)}]" if shown else ""
        return True


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure root logging for the service.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Also write to this file, rotated at ``max_size`` bytes
        log_format: Format string for plain output; ``%(context)s`` expands to the context fields
        structured: Emit JSON lines instead of plain text
        max_size: Rotation size of the log file
        backup_count: Number of rotated files to keep

    Returns:
        The ``workflow_editor`` package logger
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(EditorContextFilter())
        root_logger.addHandler(handler)

    for name, quiet_level in QUIET_LOGGERS.items():
        logging.getLogger(name).setLevel(quiet_level)

    return logging.getLogger("workflow_editor")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**fields: Any) -> None:
    """Merge fields into the logging context of the current task. None values are dropped."""
    merged = dict(_log_context.get())
    merged.update({key: value for key, value in fields.items() if value is not None})
    _log_context.set(merged)


def clear_logging_context() -> None:
    _log_context.set({})


def get_logging_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def log_with_context(logger: logging.Logger, level: int, message: str, **fields: Any) -> None:
    """Log one record with extra structured fields that are not kept in the context."""
    logger.log(level, message, extra={"extra_fields": fields})

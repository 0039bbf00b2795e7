"""
Structured logging configuration for lineflux
"""
import json
import logging
import os
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Optional

# Context variable for batch tracking
batch_id_context: ContextVar[Optional[str]] = ContextVar('batch_id', default=None)

# LogRecord attributes that are not "extra" fields
_RESERVED_ATTRS = frozenset([
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'exc_info', 'exc_text', 'stack_info',
    'lineno', 'funcName', 'created', 'msecs', 'relativeCreated',
    'thread', 'threadName', 'processName', 'process', 'message',
    'taskName',
])


class StructuredFormatter(logging.Formatter):
    """Custom formatter for structured JSON logging"""

    def __init__(self, service_name: str = "lineflux", include_trace: bool = False):
        super().__init__()
        self.service_name = service_name
        self.include_trace = include_trace

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as structured JSON"""
        batch_id = batch_id_context.get()

        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }

        if batch_id:
            log_entry["batch_id"] = batch_id

        # Add thread and process info for debugging
        if self.include_trace:
            log_entry.update({
                "thread": record.thread,
                "thread_name": record.threadName,
                "process": record.process,
                "filename": record.filename,
                "function": record.funcName,
                "line_number": record.lineno,
            })

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        extra_fields = {
            key: value for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS
        }
        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str)


def setup_logging(
    service_name: str = "lineflux",
    level: str = "INFO",
    structured: bool = True,
    include_trace: bool = False
) -> None:
    """Configure application logging"""

    log_level = os.getenv("LOG_LEVEL", level).upper()

    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)

    if structured:
        formatter = StructuredFormatter(service_name=service_name, include_trace=include_trace)
    else:
        # Traditional formatter for development
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    handler.setFormatter(formatter)

    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # Reduce noise from third-party loggers
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
    logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def log_write_attempt(logger: logging.Logger, batch_id: str, attempt: int, status: Optional[int],
                      duration_ms: float, success: bool, **kwargs):
    """Log one HTTP write attempt with structured data"""
    extra_data = {
        "event_type": "write_attempt",
        "attempt": attempt,
        "status_code": status,
        "duration_ms": round(duration_ms, 2),
        "success": success,
        **kwargs
    }
    # batch_id comes from the context var when set; only add it otherwise
    if batch_id_context.get() != batch_id:
        extra_data["write_batch_id"] = batch_id

    if success:
        logger.debug("Write attempt succeeded", extra=extra_data)
    else:
        logger.warning("Write attempt failed", extra=extra_data)

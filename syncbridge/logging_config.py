import logging
import logging.config
import structlog
from datetime import datetime, timezone
import uuid
from typing import Optional
import os

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("apscheduler", "urllib3", "werkzeug")

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

# Run on structlog events and on records from plain stdlib loggers alike
SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def _formatter(renderer) -> dict:
    return {
        "()": structlog.stdlib.ProcessorFormatter,
        "foreign_pre_chain": SHARED_PROCESSORS,
        "processors": [structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    }


def _handlers(level: str, log_file: Optional[str]) -> dict:
    # stderr keeps CLI output on stdout parseable
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": level,
            "formatter": "console",
            "stream": "ext://sys.stderr",
        }
    }
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "json",
            "filename": log_file,
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
        }
    return handlers


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Route structlog and stdlib logging through the same handlers.

    The console gets key=value lines; the optional rotating file gets one
    JSON object per line.
    """
    level = (log_level or "INFO").upper()
    handlers = _handlers(level, log_file)
    quiet_level = level if level in ("ERROR", "CRITICAL") else "WARNING"

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": _formatter(structlog.dev.ConsoleRenderer(colors=False)),
            "json": _formatter(structlog.processors.JSONRenderer()),
        },
        "handlers": handlers,
        "root": {"level": level, "handlers": list(handlers)},
        "loggers": {name: {"level": quiet_level} for name in QUIET_LOGGERS},
    })

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logger = structlog.get_logger("syncbridge")
    logger.info("Logging configured", level=level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def bind_correlation_id(correlation_id: Optional[str]):
    """Bind (or clear, when None) the correlation id on every log line of this context."""
    if correlation_id:
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    else:
        structlog.contextvars.unbind_contextvars("correlation_id")


class SyncContext:
    """Context manager for a queue processing run with an operation ID."""

    def __init__(self, operation_type: str, operation_id: Optional[str] = None, **context):
        self.operation_type = operation_type
        self.operation_id = operation_id or str(uuid.uuid4())[:8]
        self.context = context
        self.logger = get_logger("syncbridge.sync")
        self.start_time = None

    def __enter__(self):
        self.start_time = datetime.now(timezone.utc)
        structlog.contextvars.bind_contextvars(operation_id=self.operation_id)
        self.logger.info(
            "Sync operation started",
            operation_type=self.operation_type,
            start_time=self.start_time.isoformat(),
            **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()

        if exc_type is None:
            self.logger.info(
                "Sync operation completed",
                operation_type=self.operation_type,
                duration_seconds=duration,
                status="success"
            )
        else:
            self.logger.error(
                "Sync operation failed",
                operation_type=self.operation_type,
                duration_seconds=duration,
                status="error",
                error_type=exc_type.__name__,
                error_message=str(exc_val)
            )

        structlog.contextvars.unbind_contextvars("operation_id")
        return False  # Don't suppress exceptions

"""Structured logging configuration for the admission layer.

Uses Python's standard logging module, configured through dictConfig, with
an optional JSON formatter for production log aggregation.
"""

import json
import logging
import logging.config
import sys
import traceback
from datetime import datetime
from typing import Any, Dict, Optional

from poligraph.app.core.config import Settings, settings as default_settings

# Attributes every LogRecord carries; anything else came in through extra=.
_RESERVED_ATTRS = frozenset(
    (
        "name", "msg", "args", "levelname", "levelno", "pathname",
        "filename", "module", "exc_info", "exc_text", "stack_info",
        "lineno", "funcName", "created", "msecs", "relativeCreated",
        "thread", "threadName", "processName", "process", "message",
        "asctime", "taskName",
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging.

    Outputs one JSON object per record so admission decisions can be
    searched by client IP or tier in the log pipeline.
    """

    CONTEXT_FIELDS = [
        "client_ip",     # Client identity used for admission
        "tier",          # Rate limit tier (general, search, export)
        "path",          # Request path
        "method",        # HTTP method
        "status_code",   # HTTP response status
        "retry_after",   # Seconds until the client may retry
    ]

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        record.message = record.getMessage()

        log_data: Dict[str, Any] = {
            "timestamp": datetime.now().astimezone().isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
            "source": {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            },
        }

        for field in self.CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_data[field] = value

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in self.CONTEXT_FIELDS
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info and record.exc_info != (None, None, None):
            log_data["exception"] = traceback.format_exception(*record.exc_info)

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ContextFilter(logging.Filter):
    """Logging filter that guarantees context fields exist on every record.

    The text formatters reference these attributes directly, so records
    emitted without them would otherwise fail to format.
    """

    CONTEXT_DEFAULTS = {field: None for field in JSONFormatter.CONTEXT_FIELDS}

    def filter(self, record: logging.LogRecord) -> bool:
        for field, default in self.CONTEXT_DEFAULTS.items():
            if not hasattr(record, field):
                setattr(record, field, default)
        return True


def get_logging_config(config: Optional[Settings] = None) -> Dict[str, Any]:
    """Get logging configuration dictionary.

    Args:
        config: Settings to read level and format from (defaults to global)

    Returns:
        Logging configuration dict compatible with logging.config.dictConfig
    """
    config = config or default_settings
    log_format = config.log_format
    log_level = config.log_level.upper()

    formatters: Dict[str, Any] = {
        "standard": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        },
        "structured": {
            "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s - client_ip=%(client_ip)s - tier=%(tier)s - path=%(path)s"
        },
    }

    if log_format == "json":
        formatters["json"] = {"()": "poligraph.app.core.logging.JSONFormatter"}
        default_formatter = "json"
    else:
        default_formatter = "structured" if log_format == "structured" else "standard"

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": default_formatter,
            "stream": sys.stdout,
            "filters": ["context"],
        },
        "error_console": {
            "class": "logging.StreamHandler",
            "level": "ERROR",
            "formatter": default_formatter,
            "stream": sys.stderr,
            "filters": ["context"],
        },
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": formatters,
        "filters": {
            "context": {"()": "poligraph.app.core.logging.ContextFilter"},
        },
        "handlers": handlers,
        "loggers": {
            "poligraph": {
                "level": log_level,
                "handlers": ["console", "error_console"],
                "propagate": False,
            },
            "uvicorn": {
                "level": log_level,
                "handlers": ["console"],
                "propagate": False,
            },
        },
        "root": {
            "level": log_level,
            "handlers": ["console"],
        },
    }


def setup_logging(config: Optional[Settings] = None) -> None:
    """Configure logging for the application."""
    logging.config.dictConfig(get_logging_config(config))

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)


def get_logger(name: str = "poligraph") -> logging.Logger:
    """Get a logger instance with the specified name."""
    return logging.getLogger(name)


def get_log_context(
    client_ip: Optional[str] = None,
    tier: Optional[str] = None,
    path: Optional[str] = None,
    **extra: Any,
) -> Dict[str, Any]:
    """Create a log context dictionary for use with the extra parameter.

    Example:
        >>> logger.info(
        ...     "Rate limit exceeded",
        ...     extra=get_log_context(client_ip="1.2.3.4", tier="export"),
        ... )
    """
    context: Dict[str, Any] = {"client_ip": client_ip, "tier": tier, "path": path}
    context.update(extra)
    return {k: v for k, v in context.items() if v is not None}

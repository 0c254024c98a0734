"""
Structured logging configuration for the gateway.
Outputs JSON-formatted logs with contextual information.
"""

import logging
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


# Attributes every LogRecord carries; anything else was passed via `extra`
_RESERVED_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """
    Custom formatter that outputs logs as JSON.
    Includes contextual fields like tenant_id, event, action and state when available.
    """

    contextual_fields = (
        "tenant_id",
        "event",
        "action",
        "state",
        "reason",
        "attempt",
        "url",
        "status_code",
        "duration_ms",
        "error_type",
    )

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: LogRecord instance

        Returns:
            JSON string with log data
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        for field in self.contextual_fields:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in log_data
        }
        if extra:
            log_data["extra"] = extra

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logger(
    name: str = "wagateway",
    level: str = "INFO",
    enable_json: bool = True
) -> logging.Logger:
    """
    Set up and configure a logger instance.

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_json: If True, use JSON formatter; if False, use console formatter

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, level.upper()))

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(getattr(logging, level.upper()))

    if enable_json:
        formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    handler.setFormatter(formatter)
    logger.addHandler(handler)

    logger.propagate = False

    return logger


logger = logging.getLogger("wagateway")


def configure_logger_from_config():
    """
    Configure logger using settings from config module.
    Call this once at process start.
    """
    from .config import LOG_LEVEL, LOG_TYPE

    global logger
    logger = setup_logger(level=LOG_LEVEL, enable_json=LOG_TYPE != "console")


def log_with_context(
    level: str,
    message: str,
    tenant_id: Optional[Any] = None,
    event: Optional[str] = None,
    action: Optional[str] = None,
    state: Optional[str] = None,
    exc_info: bool = False,
    **kwargs
):
    """
    Log a message with contextual fields.

    Args:
        level: Log level (info, warning, error, debug)
        message: Log message
        tenant_id: Tenant ID
        event: Protocol event type
        action: Action tag, e.g. "session_started"
        state: Session state
        exc_info: Attach the current exception traceback
        **kwargs: Additional contextual fields
    """
    extra = {}

    if tenant_id is not None:
        extra["tenant_id"] = tenant_id
    if event is not None:
        extra["event"] = event
    if action is not None:
        extra["action"] = action
    if state is not None:
        extra["state"] = state

    extra.update(kwargs)

    log_func = getattr(logger, level.lower())
    log_func(message, extra=extra, exc_info=exc_info)


# Convenience functions
def log_info(message: str, **kwargs):
    """Log info message with context"""
    log_with_context("info", message, **kwargs)


def log_warning(message: str, **kwargs):
    """Log warning message with context"""
    log_with_context("warning", message, **kwargs)


def log_error(message: str, **kwargs):
    """Log error message with context"""
    log_with_context("error", message, **kwargs)


def log_debug(message: str, **kwargs):
    """Log debug message with context"""
    log_with_context("debug", message, **kwargs)

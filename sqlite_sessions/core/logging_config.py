"""
Structured logging configuration for the session service.

Provides JSON-formatted logging with correlation IDs and a filter that keeps
session cookies and other tokens out of log messages.
"""

import json
import logging
import re
import sys
import uuid
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Any, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from sqlite_sessions.core.config import Settings, settings

# Context variable for correlation ID (used across request lifecycle)
correlation_id_ctx: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

CORRELATION_ID_HEADER = "X-Correlation-ID"

_RESERVED_RECORD_FIELDS = {
    "name", "msg", "args", "levelname", "levelno", "pathname",
    "filename", "module", "lineno", "funcName", "created",
    "msecs", "relativeCreated", "thread", "threadName", "taskName",
    "processName", "process", "exc_info", "exc_text", "stack_info",
}

# Signed cookie values: "<id>:<64 hex chars>"
_SIGNED_COOKIE_PATTERN = re.compile(r"[A-Za-z0-9_\-]{20,}:[0-9a-f]{64}")
# Fernet tokens and other long opaque strings
_LONG_TOKEN_PATTERN = re.compile(r"\b[A-Za-z0-9_\-+/=]{40,}\b")


class SessionLogFilter(logging.Filter):
    """Mask session cookies and tokens that end up in log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        sanitized = _SIGNED_COOKIE_PATTERN.sub("[SESSION-COOKIE]", message)
        sanitized = _LONG_TOKEN_PATTERN.sub("****", sanitized)
        if sanitized != message:
            record.msg = sanitized
            record.args = None
        return True


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.
    """

    def __init__(self, include_sensitive: bool = False):
        """
        Initialize structured formatter.

        Args:
            include_sensitive: Whether to include potentially sensitive extra fields
        """
        super().__init__()
        self.include_sensitive = include_sensitive

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON"""

        log_entry: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_ctx.get()
        if correlation_id:
            log_entry["correlation_id"] = correlation_id

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS:
                continue
            if not self.include_sensitive and self._is_sensitive_field(key):
                extra_fields[key] = "[REDACTED]"
            else:
                extra_fields[key] = value

        if extra_fields:
            log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=self._json_default)

    def _is_sensitive_field(self, key: str) -> bool:
        """Check if field contains sensitive data"""
        sensitive_keywords = {"password", "secret", "token", "cookie_value", "payload", "session_id"}
        key_lower = key.lower()
        return any(keyword in key_lower for keyword in sensitive_keywords)

    def _json_default(self, obj: Any) -> str:
        """JSON serializer for objects not serializable by default"""
        if isinstance(obj, datetime):
            return obj.isoformat()
        return str(obj)


def setup_logging(
    log_level: str = "INFO",
    enable_json: bool = True,
    log_file: Optional[str] = None,
    include_sensitive: bool = False,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_json: Whether to use JSON formatting
        log_file: Optional file path for logging
        include_sensitive: Whether to include sensitive extra fields in logs
    """
    logging.root.handlers.clear()

    if enable_json:
        formatter: logging.Formatter = StructuredFormatter(include_sensitive=include_sensitive)
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    session_filter = SessionLogFilter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.addFilter(session_filter)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))
    root_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        file_handler.addFilter(session_filter)
        root_logger.addHandler(file_handler)

    # Reduce noise from external libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_correlation_id() -> str:
    """
    Get or create a correlation ID for request tracking.

    Returns:
        str: Correlation ID for current context
    """
    correlation_id = correlation_id_ctx.get()
    if not correlation_id:
        correlation_id = str(uuid.uuid4())
        correlation_id_ctx.set(correlation_id)
    return correlation_id


def set_correlation_id(correlation_id: Optional[str]) -> Token:
    """
    Set correlation ID for current context.

    Returns:
        Token that restores the previous value via ``correlation_id_ctx.reset``
    """
    return correlation_id_ctx.set(correlation_id)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Bind a correlation ID to each request and echo it in the response."""

    async def dispatch(self, request: Request, call_next):
        token = set_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        try:
            correlation_id = get_correlation_id()
            response = await call_next(request)
        finally:
            correlation_id_ctx.reset(token)
        response.headers[CORRELATION_ID_HEADER] = correlation_id
        return response


def init_application_logging(app_settings: Optional[Settings] = None) -> None:
    """Initialize logging for the session service"""
    app_settings = app_settings or settings

    log_level = "DEBUG" if app_settings.debug else app_settings.log_level
    enable_json = app_settings.json_logging and not app_settings.debug

    setup_logging(
        log_level=log_level,
        enable_json=enable_json,
        include_sensitive=app_settings.debug,
    )

    logger = logging.getLogger("sqlite_sessions.startup")
    logger.info(
        "Structured logging initialized",
        extra={
            "debug": app_settings.debug,
            "json_logging": enable_json,
            "log_level": log_level,
        },
    )

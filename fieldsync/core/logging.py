"""Structured logging with request correlation.

Every log line can carry the request id, the authenticated user and the
device that made the call, so a single sync upload can be followed across
credential verification, per-item processing and audit writes.

Usage:
    from fieldsync.core.logging import get_logger

    logger = get_logger(__name__)
    logger.info("Batch processed", processed=12, failed=1)
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

# Context variables for request-scoped data
request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)
device_id_var: ContextVar[str | None] = ContextVar("device_id", default=None)

# Substrings of field names whose values never reach the log stream in full
SENSITIVE_FIELDS = (
    "password", "secret", "token", "credential", "authorization",
    "encryption_key", "encryptionkey", "cookie",
)

NOISY_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "aiosqlite")


def mask_value(value: Any) -> str:
    """Keep a short prefix of long strings (enough to match a credential row)."""
    if isinstance(value, str) and len(value) > 12:
        return f"{value[:6]}..."
    return "[REDACTED]"


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    """Mask sensitive values in a dictionary, recursing into nested dicts."""
    masked = {}
    for key, value in data.items():
        if any(s in key.lower() for s in SENSITIVE_FIELDS):
            masked[key] = mask_value(value)
        elif isinstance(value, dict):
            masked[key] = mask_sensitive(value)
        else:
            masked[key] = value
    return masked


def current_context() -> dict[str, str]:
    """Request, user and device ids bound to the running request."""
    context = {
        "request_id": request_id_var.get(),
        "user_id": user_id_var.get(),
        "device_id": device_id_var.get(),
    }
    return {k: v for k, v in context.items() if v}


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, for log shippers."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **current_context(),
            **mask_sensitive(getattr(record, "fields", {})),
        }
        if record.levelno >= logging.WARNING:
            entry["source"] = f"{record.pathname}:{record.lineno}"
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Single-line output for development terminals."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        context = current_context()
        tags = []
        if "request_id" in context:
            tags.append(context["request_id"][:8])
        if "device_id" in context:
            tags.append(context["device_id"][:12])

        line = (
            f"{self.formatTime(record, '%H:%M:%S')} "
            f"{self.COLORS.get(record.levelname, '')}{record.levelname:<5}{self.RESET} "
            f"{record.name}"
        )
        if tags:
            line += f" [{'/'.join(tags)}]"
        line += f" {record.getMessage()}"

        fields = getattr(record, "fields", None)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in mask_sensitive(fields).items())
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger(logging.Logger):
    """Logger whose methods accept structured keyword fields.

    ``logger.warning("Token rejected", reason="expired")`` stores the keyword
    arguments on the record as ``fields``.
    """

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info: Any = None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        **fields: Any,
    ):
        if fields:
            extra = {**(extra or {}), "fields": fields}
        super()._log(
            level, msg, args,
            exc_info=exc_info, extra=extra, stack_info=stack_info, stacklevel=stacklevel + 1,
        )


def get_logger(name: str) -> StructuredLogger:
    """Get a structured logger for a module."""
    logging.setLoggerClass(StructuredLogger)
    try:
        return logging.getLogger(name)
    finally:
        logging.setLoggerClass(logging.Logger)


def setup_logging(json_output: bool = False, level: str = "INFO"):
    """Configure the root logger.

    Args:
        json_output: Emit JSON lines (production) instead of console lines
        level: Logging level name
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter() if json_output else ConsoleFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def set_device_context(user_id: str | None = None, device_id: str | None = None):
    """Attach the authenticated user and device to subsequent log lines."""
    if user_id:
        user_id_var.set(user_id)
    if device_id:
        device_id_var.set(device_id)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Assigns a request id and logs one line per request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        tokens = (
            request_id_var.set(request_id),
            user_id_var.set(None),
            device_id_var.set(None),
        )
        logger = get_logger("fieldsync.http")
        started = time.monotonic()

        try:
            response = await call_next(request)
            logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception:
            logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round((time.monotonic() - started) * 1000, 2),
                exc_info=True,
            )
            raise
        finally:
            for var, token in zip((request_id_var, user_id_var, device_id_var), tokens):
                var.reset(token)

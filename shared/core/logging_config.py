"""
Structured logging configuration
JSON log lines with request and payment correlation, compatible with the
usual log shippers (ELK, CloudWatch Insights, Datadog).
"""

import logging
import logging.handlers
import os
import re
import sys
import json
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from contextvars import ContextVar
import uuid
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
correlation_id_var: ContextVar[Optional[str]] = ContextVar('correlation_id', default=None)
user_id_var: ContextVar[Optional[str]] = ContextVar('user_id', default=None)
payment_reference_var: ContextVar[Optional[str]] = ContextVar('payment_reference', default=None)

_CONTEXT_VARS = {
    "request_id": request_id_var,
    "correlation_id": correlation_id_var,
    "user_id": user_id_var,
    "payment_reference": payment_reference_var,
}

class StructuredFormatter(logging.Formatter):
    """JSON structured logging formatter"""

    def format(self, record: logging.LogRecord) -> str:
        log_obj = {
            "@timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": os.getenv('SERVICE_NAME', 'unknown-service'),
            "environment": os.getenv('ENVIRONMENT', 'development'),
            "version": os.getenv('SERVICE_VERSION', '1.0.0'),
        }

        trace_context = _trace_context()
        if trace_context:
            log_obj["trace"] = trace_context

        log_obj["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
            "module": record.module
        }

        if record.exc_info:
            log_obj["error"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "stacktrace": traceback.format_exception(*record.exc_info)
            }

        if hasattr(record, 'extra_fields'):
            log_obj["custom"] = record.extra_fields

        if hasattr(record, 'duration_ms'):
            log_obj["performance"] = {
                "duration_ms": record.duration_ms
            }

        return json.dumps(log_obj, default=str)

def _trace_context() -> Optional[Dict[str, Any]]:
    context = {name: var.get() for name, var in _CONTEXT_VARS.items() if var.get()}
    return context or None

class PerformanceFilter(logging.Filter):
    """Filter to add performance metrics to log records"""

    def filter(self, record: logging.LogRecord) -> bool:
        if hasattr(record, 'duration'):
            record.duration_ms = record.duration * 1000
        return True

class SecurityFilter(logging.Filter):
    """Redact gateway secret keys and webhook signatures from log messages"""

    PATTERNS = [
        re.compile(r"\bsk_(?:test|live)_[A-Za-z0-9_\-]+"),
        re.compile(r"(?i)(bearer\s+)[A-Za-z0-9_\-\.]+"),
        re.compile(r"(?i)((?:x-paystack-signature|x-signature|signature)[\"']?\s*[:=]\s*[\"']?)[0-9a-f]{32,}"),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = message
        for pattern in self.PATTERNS:
            redacted = pattern.sub(lambda m: (m.group(1) if m.groups() else "") + "***REDACTED***", redacted)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True

def setup_logging(
    service_name: str,
    level: str = "INFO",
    enable_console: bool = True,
    enable_file: bool = False,
    log_file: str = None
) -> None:
    """
    Setup structured logging for the service

    Args:
        service_name: Name of the service
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Enable console output
        enable_file: Enable file output
        log_file: Path to log file
    """
    os.environ['SERVICE_NAME'] = service_name

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    root_logger.handlers = []

    formatter = StructuredFormatter()

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler.addFilter(PerformanceFilter())
        console_handler.addFilter(SecurityFilter())
        root_logger.addHandler(console_handler)

    if enable_file and log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10485760,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(PerformanceFilter())
        file_handler.addFilter(SecurityFilter())
        root_logger.addHandler(file_handler)

    logging.getLogger('uvicorn').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('sqlalchemy.engine').setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialized",
        extra={
            'extra_fields': {
                'service': service_name,
                'level': level,
                'handlers': {
                    'console': enable_console,
                    'file': enable_file
                }
            }
        }
    )

class LoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter injecting request and payment context into every record
    """

    def process(self, msg, kwargs):
        extra = kwargs.get('extra', {})
        for name, var in _CONTEXT_VARS.items():
            value = var.get()
            if value:
                extra.setdefault(name, value)
        kwargs['extra'] = extra
        return msg, kwargs

def get_logger(name: str) -> LoggerAdapter:
    """
    Get a logger instance with request context support

    Args:
        name: Logger name (usually __name__)

    Returns:
        LoggerAdapter with context injection
    """
    return LoggerAdapter(logging.getLogger(name), {})

def set_request_context(
    request_id: Optional[str] = None,
    correlation_id: Optional[str] = None,
    user_id: Optional[str] = None,
    payment_reference: Optional[str] = None,
) -> None:
    """
    Set request context for log correlation

    Args:
        request_id: Unique request identifier
        correlation_id: Correlation ID for distributed tracing
        user_id: Buyer identifier
        payment_reference: Gateway correlation key of the order being settled
    """
    if request_id:
        request_id_var.set(request_id)
    if correlation_id:
        correlation_id_var.set(correlation_id)
    if user_id:
        user_id_var.set(str(user_id))
    if payment_reference:
        payment_reference_var.set(payment_reference)

def clear_request_context() -> None:
    for var in _CONTEXT_VARS.values():
        var.set(None)

def generate_request_id() -> str:
    """Generate a unique request ID"""
    return str(uuid.uuid4())

# Middleware for FastAPI

class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log all requests and responses
    Adds request ID and tracks request duration
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        request_id = request.headers.get('X-Request-ID', generate_request_id())
        correlation_id = request.headers.get('X-Correlation-ID')

        clear_request_context()
        set_request_context(
            request_id=request_id,
            correlation_id=correlation_id,
            user_id=request.headers.get('X-User-Id'),
        )

        logger = get_logger(__name__)
        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'client_host': request.client.host if request.client else None
                }
            }
        )

        start_time = time.time()

        try:
            response = await call_next(request)
        except Exception:
            duration = time.time() - start_time
            logger.error(
                f"Request failed: {request.method} {request.url.path}",
                exc_info=True,
                extra={
                    'extra_fields': {
                        'method': request.method,
                        'path': request.url.path,
                        'duration_ms': duration * 1000
                    }
                }
            )
            raise

        duration = time.time() - start_time
        logger.info(
            f"Request completed: {request.method} {request.url.path}",
            extra={
                'extra_fields': {
                    'method': request.method,
                    'path': request.url.path,
                    'status_code': response.status_code,
                    'duration_ms': duration * 1000
                }
            }
        )
        response.headers['X-Request-ID'] = request_id
        return response

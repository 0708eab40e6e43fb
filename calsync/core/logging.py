import contextlib
import contextvars
import json
import logging
import os
import re
import sys
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from calsync.core.config import settings

# Global context variable for request information
request_context = contextvars.ContextVar("request_context", default={})

REDACTION_MARKER = "[REDACTED]"
SENSITIVE_KEYS = ("access_token", "refresh_token", "client_secret", "password")

_SENSITIVE_PAIR = re.compile(
    r"(?i)\b(access_token|refresh_token|client_secret|password)(['\"]?\s*[=:]\s*['\"]?)([^\s,;'\"&}]+)"
)
_BEARER = re.compile(r"(?i)\b(bearer\s+)[A-Za-z0-9\-._~+/]+=*")


def redact(message: str) -> str:
    """Mask credential values in a log message."""
    redacted = _SENSITIVE_PAIR.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTION_MARKER}", message)
    return _BEARER.sub(lambda m: f"{m.group(1)}{REDACTION_MARKER}", redacted)


class JsonFormatter(logging.Formatter):
    """
    Formatter that outputs JSON strings after parsing the log record.
    """

    def __init__(self, **kwargs):
        super().__init__()
        self.fmt_dict = kwargs

    def format(self, record: logging.LogRecord) -> str:
        record_dict = self._prepare_log_dict(record)
        return json.dumps(record_dict, default=str)

    def _prepare_log_dict(self, record: logging.LogRecord) -> Dict[str, Any]:
        record_dict = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            record_dict["exception"] = self.formatException(record.exc_info)

        for key in self.fmt_dict:
            if key in record.__dict__:
                record_dict[key] = record.__dict__[key]

        # Extra attributes passed via extra parameter
        if hasattr(record, "extras"):
            for key, value in record.extras.items():
                record_dict[key] = value

        context = request_context.get()
        if context:
            for key, value in context.items():
                # Don't overwrite existing keys
                if key not in record_dict:
                    record_dict[key] = value

        return record_dict


class ContextFilter(logging.Filter):
    """
    Filter that adds request context data to log records.
    """

    def filter(self, record):
        context = request_context.get()
        if context:
            for key, value in context.items():
                setattr(record, key, value)
        return True


class SensitiveDataFilter(logging.Filter):
    """
    Filter that keeps OAuth tokens and CalDAV passwords out of log output.

    The message is rendered once, redacted, and frozen on the record so
    handlers never see the raw arguments.
    """

    def filter(self, record):
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message or record.args:
            record.msg = redacted
            record.args = None
        extras = getattr(record, "extras", None)
        if isinstance(extras, dict):
            record.extras = {
                key: REDACTION_MARKER if key in SENSITIVE_KEYS else value
                for key, value in extras.items()
            }
        return True


class LogRateLimiter:
    """
    Allows one emission per key within a minimum interval.

    Used at call sites that would otherwise log the same warning on every
    request, e.g. a provider whose client credentials are not configured.
    """

    def __init__(
        self,
        min_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_interval = (
            settings.LOG_THROTTLE_SECONDS if min_interval is None else min_interval
        )
        self._clock = clock
        self._last_emitted: Dict[str, float] = {}
        self._lock = threading.Lock()

    def should_emit(self, key: str) -> bool:
        now = self._clock()
        with self._lock:
            last = self._last_emitted.get(key)
            if last is not None and now - last < self.min_interval:
                return False
            self._last_emitted[key] = now
            return True

    def log(self, logger: logging.Logger, level: int, key: str, message: str) -> bool:
        """Log ``message`` unless ``key`` was logged within the interval."""
        if not self.should_emit(key):
            return False
        logger.log(level, message)
        return True

    def reset(self) -> None:
        with self._lock:
            self._last_emitted.clear()


def setup_logging(level: Optional[str] = None):
    """
    Set up logging for the application.

    Args:
        level: Optional log level override (default to settings)
    """
    log_level = getattr(logging, level or settings.LOG_LEVEL)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    # Filters live on the handlers so records from every logger pass through them
    context_filter = ContextFilter()
    sensitive_filter = SensitiveDataFilter()

    console_handler = logging.StreamHandler(sys.stdout)

    # Use JSON formatter in production
    if settings.ENVIRONMENT == "production":
        formatter = JsonFormatter()
    else:
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(name)s (%(filename)s:%(lineno)d) - %(message)s"
        )

    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)
    console_handler.addFilter(context_filter)
    console_handler.addFilter(sensitive_filter)
    root_logger.addHandler(console_handler)

    if settings.LOG_FILE:
        try:
            log_path = Path(settings.LOG_FILE)
            os.makedirs(log_path.parent, exist_ok=True)

            file_handler = logging.FileHandler(settings.LOG_FILE)
            file_handler.setFormatter(formatter)
            file_handler.setLevel(log_level)
            file_handler.addFilter(context_filter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            print(f"Error setting up file logging: {e}")

    # Set specific levels for third-party loggers to reduce noise
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.ERROR)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logging.getLogger("calsync")


@contextlib.contextmanager
def log_context(**context_data):
    """
    Context manager for adding context to logs.

    Usage:
        with log_context(integration_id=12, provider="google"):
            logger.info("Refreshing token")

    Args:
        **context_data: Key-value pairs to add to log context
    """
    current_context = request_context.get().copy()
    current_context.update(context_data)
    token = request_context.set(current_context)

    try:
        yield
    finally:
        request_context.reset(token)

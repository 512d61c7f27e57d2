"""
Structured Logging Module
Every record carries the fields bound for the operation in progress
(role, permission, shard), so resolution and override writes can be traced.
"""
import logging
import time
import json
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Optional, Any, Callable, Dict, Iterator
from functools import wraps

from role_overrides.core.config import settings

# Fields bound for the current resolution or write
log_fields_var: ContextVar[Dict[str, Any]] = ContextVar('log_fields', default={})


def get_log_fields() -> Dict[str, Any]:
    """Fields bound in the current context."""
    return log_fields_var.get()


@contextmanager
def log_context(**fields) -> Iterator[Dict[str, Any]]:
    """Bind fields to every record logged inside the block; nested blocks add to them."""
    bound = {**log_fields_var.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = log_fields_var.set(bound)
    try:
        yield bound
    finally:
        log_fields_var.reset(token)


class StructuredLogger:
    """
    Structured logger for the resolution pipeline.
    Logs in JSON format for production, key=value text for development.
    """

    def __init__(self, name: str):
        self.logger = logging.getLogger(name)
        self.name = name
        self._is_json = settings.APP_ENV == 'production'

    def _build_log_record(
        self,
        level: str,
        message: str,
        extra: Optional[Dict[str, Any]] = None,
        error: Optional[Exception] = None,
    ) -> Dict[str, Any]:
        record = {
            'timestamp': time.strftime('%Y-%m-%dT%H:%M:%S%z'),
            'level': level,
            'logger': self.name,
            'message': message,
            'env': settings.APP_ENV,
        }

        fields = {**get_log_fields(), **(extra or {})}
        if fields:
            record['context'] = fields

        if error:
            record['error'] = {
                'type': type(error).__name__,
                'message': str(error),
            }

        return record

    def _format_message(self, record: Dict[str, Any]) -> str:
        if self._is_json:
            return json.dumps(record, default=str)

        parts = [f"[{record['env']}]", record['message']]
        if 'context' in record:
            parts.append('| ' + ' '.join(f"{k}={v}" for k, v in record['context'].items()))
        if 'error' in record:
            parts.append(f"| error={record['error']['type']}: {record['error']['message']}")
        return ' '.join(parts)

    def _log(self, level: int, message: str, extra: Dict[str, Any], error: Optional[Exception] = None):
        if not self.logger.isEnabledFor(level):
            return
        record = self._build_log_record(logging.getLevelName(level), message, extra, error)
        self.logger.log(level, self._format_message(record))

    def debug(self, message: str, **extra):
        self._log(logging.DEBUG, message, extra)

    def info(self, message: str, **extra):
        self._log(logging.INFO, message, extra)

    def warning(self, message: str, **extra):
        self._log(logging.WARNING, message, extra)

    def error(self, message: str, error: Optional[Exception] = None, **extra):
        self._log(logging.ERROR, message, extra, error)


def get_logger(name: str = settings.APP_NAME) -> StructuredLogger:
    """Get a structured logger instance."""
    return StructuredLogger(name)


# Pre-configured loggers for the resolution pipeline
engine_logger = get_logger(f'{settings.APP_NAME}.engine')
cache_logger = get_logger(f'{settings.APP_NAME}.cache')
store_logger = get_logger(f'{settings.APP_NAME}.store')


def log_operation(
    operation: str,
    logger: Optional[StructuredLogger] = None,
    bind: Optional[Callable[..., Dict[str, Any]]] = None,
):
    """
    Decorator for an async store or service operation: binds its fields, then
    logs start, completion with timing, and failure.

    `bind` receives the call's arguments and returns the fields to attach.

    Usage:
        @log_operation("manage_override", store_logger, bind=override_fields)
        async def manage_override(self, context, role, permission, ...):
            ...
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            log = logger or engine_logger
            fields = bind(*args, **kwargs) if bind is not None else {}
            with log_context(operation=operation, **fields):
                start = time.time()
                log.debug(f"{operation} started")
                try:
                    result = await func(*args, **kwargs)
                except Exception as e:
                    duration = round((time.time() - start) * 1000, 2)
                    log.error(f"{operation} failed", error=e, duration_ms=duration)
                    raise
                duration = round((time.time() - start) * 1000, 2)
                log.info(f"{operation} completed", duration_ms=duration)
                return result

        return wrapper

    return decorator

#!/usr/bin/env python3
"""
Structured logging configuration with JSON output and per-extraction tracking
"""

import json
import logging
import sys
import time
import uuid
from contextvars import ContextVar
from typing import Optional

from config import config

# Context variable carrying the id of the extraction being processed
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

_EXTRA_FIELDS = (
    'duration',
    'external_service',
    'external_duration',
    'status_code',
    'url',
    'strategy',
    'rule_key',
)


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            'timestamp': self.formatTime(record),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_entry['request_id'] = request_id

        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value

        if record.exc_info:
            log_entry['exception'] = self.formatException(record.exc_info)

        if config.DEBUG_MODE:
            log_entry.update({
                'module': record.module,
                'function': record.funcName,
                'line': record.lineno,
            })

        return json.dumps(log_entry, ensure_ascii=False)


def setup_logging():
    """Configure logging based on config settings"""
    log_level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)

    if config.STRUCTURED_LOGGING:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Silence noisy third-party loggers
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.WARNING)
    logging.getLogger('playwright').setLevel(logging.WARNING)
    logging.getLogger('apscheduler').setLevel(logging.WARNING)
    logging.getLogger('readability').setLevel(logging.WARNING)
    logging.getLogger('trafilatura').setLevel(logging.WARNING)

    return root_logger


def get_request_id() -> str:
    """Get or create the request ID for the current context"""
    request_id = request_id_var.get()
    if not request_id:
        request_id = str(uuid.uuid4())[:8]
        request_id_var.set(request_id)
    return request_id


def clear_request_context():
    request_id_var.set(None)


class TimedLogger:
    """Context manager for timing operations with structured logging"""

    def __init__(self, logger: logging.Logger, operation: str,
                 external_service: str = None, **extra_fields):
        self.logger = logger
        self.operation = operation
        self.external_service = external_service
        self.extra_fields = extra_fields
        self.start_time = None

    def __enter__(self):
        self.start_time = time.monotonic()
        self.logger.debug(
            f"Starting {self.operation}",
            extra={
                'external_service': self.external_service,
                **self.extra_fields
            }
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = time.monotonic() - self.start_time
        extra = {
            'duration': duration,
            'external_service': self.external_service,
            'external_duration': duration if self.external_service else None,
            **self.extra_fields
        }

        if exc_type is None:
            self.logger.debug(f"Completed {self.operation} in {duration:.2f}s", extra=extra)
        else:
            self.logger.info(f"Failed {self.operation} after {duration:.2f}s: {exc_val!r}", extra=extra)
        return False

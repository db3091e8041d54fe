"""
Structured logging helper for transkipta.

Emits one JSON object per line so webhook and poller activity can be audited.
"""

import hashlib
import json
import os
import time
import logging

# Configure JSON logger
logger = logging.getLogger('transkipta')
if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter('%(message)s')
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

_SENSITIVE_MARKERS = ('token', 'secret', 'password', 'signature', 'authorization')


def hash_id(value: str, n: int = 8) -> str:
    """
    Generate a short hash of an identifier for logging.

    Args:
        value: The value to hash (e.g., webhook ID)
        n: Number of characters to return (default 8)

    Returns:
        First n characters of SHA256 hex digest
    """
    if not value:
        return ''
    return hashlib.sha256(value.encode()).hexdigest()[:n]


def _sanitize_fields(fields: dict) -> dict:
    """
    Sanitize log fields to remove sensitive data.

    - Replaces webhookId/webhook_id with webhookHash
    - Never logs API tokens, webhook secrets or signatures
    """
    sanitized = {}

    for key, value in fields.items():
        if key in ('webhookId', 'webhook_id'):
            if value:
                sanitized['webhookHash'] = hash_id(str(value), 8)
            continue

        lowered = key.lower()
        if any(marker in lowered for marker in _SENSITIVE_MARKERS):
            continue

        sanitized[key] = value

    return sanitized


def log_event(level: str, event: str, **fields) -> None:
    """
    Log a structured event with consistent fields.

    Args:
        level: Log level ('info', 'warn', 'error', 'debug')
        event: Event name (e.g., 'webhook_received', 'poll_tick_finished')
        **fields: Additional fields to include in the log
    """
    log_entry = {
        'timestamp': time.time(),
        'event': event,
        'level': level.lower()
    }

    log_entry.update(_sanitize_fields(fields))

    log_line = json.dumps(log_entry, separators=(',', ':'), default=str)

    level = level.lower()
    if level == 'error':
        logger.error(log_line)
    elif level in ('warn', 'warning'):
        logger.warning(log_line)
    elif level == 'debug':
        logger.debug(log_line)
    else:
        logger.info(log_line)


class _Timer:
    """Logs `<event>_started`, then `<event>_finished` or `<event>_failed` with durationMs."""

    def __init__(self, event: str, fields: dict):
        self.event = event
        self.fields = fields
        self.started = 0.0

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started) * 1000)

    def __enter__(self):
        self.started = time.monotonic()
        log_event('debug', f'{self.event}_started', **self.fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None:
            log_event('info', f'{self.event}_finished',
                      durationMs=self.elapsed_ms, **self.fields)
        else:
            log_event('error', f'{self.event}_failed',
                      durationMs=self.elapsed_ms,
                      errorType=exc_type.__name__,
                      error=str(exc_val)[:200],
                      **self.fields)
        return False


def with_timer(event: str, **fields) -> _Timer:
    """
    Context manager to log duration of a block.

    Usage:
        with with_timer('poll_tick', pending=3):
            # do work
    """
    return _Timer(event, fields)

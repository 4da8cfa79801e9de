"""
Lap Engine - Logging Setup.

============================================================
PURPOSE
============================================================
Process-wide logging configuration.

- One stdout handler, json or text format
- Optional correlation id (session ref) on every line
- CredentialMaskingFilter replaces registered secrets in
  every record before it is formatted

============================================================
"""

import json
import logging
import sys
from typing import Iterable, Optional, Set


MASK = "***"


class CredentialMaskingFilter(logging.Filter):
    """Masks registered secret strings in log records."""

    def __init__(self, secrets: Optional[Iterable[str]] = None):
        super().__init__()
        self._secrets: Set[str] = {s for s in (secrets or []) if s}

    def register_secret(self, secret: Optional[str]) -> None:
        if secret:
            self._secrets.add(secret)

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._secrets:
            return True
        message = record.getMessage()
        masked = message
        for secret in self._secrets:
            if secret in masked:
                masked = masked.replace(secret, MASK)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


_masking_filter = CredentialMaskingFilter()


def register_secret(secret: Optional[str]) -> None:
    """Mask `secret` in every log line emitted from now on."""
    _masking_filter.register_secret(secret)


def setup_logging(
    level: str = "INFO",
    log_format: str = "text",
    correlation_id: Optional[str] = None,
) -> logging.Logger:
    """
    Set up structured logging.

    Args:
        level: Log level
        log_format: Output format (json or text)
        correlation_id: Correlation ID for tracing, usually the session ref

    Returns:
        Configured logger
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
                "correlation_id": correlation_id or "",
            })
        )
    else:
        formatter = logging.Formatter(
            f"%(asctime)s | %(levelname)-8s | %(name)s | {correlation_id or ''} | %(message)s"
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(_masking_filter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]

    # aiohttp access/client chatter stays at WARNING unless asked for.
    if log_level > logging.DEBUG:
        logging.getLogger("aiohttp").setLevel(logging.WARNING)

    return logging.getLogger("lap_engine")

"""Structured logging helpers with correlation ID support."""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Optional, Set

from ..config.settings import MonitoringConfig, get_app_config

_LOGGER_CACHE: Dict[str, logging.Logger] = {}
_CORRELATION_ID: ContextVar[str] = ContextVar("correlation_id", default="-")
_LOGGING_CONFIGURED = False

_STANDARD_ATTRS = set(logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys())
_SECRET_KEYS = {"private_key", "api_key", "cookie_api_key", "secret"}
_SECRET_VALUES: Set[str] = set()


def register_secret(value: Optional[str]) -> None:
    """Mask ``value`` wherever it would appear in a formatted record."""

    if value:
        _SECRET_VALUES.add(value)
        if value.startswith("0x"):
            _SECRET_VALUES.add(value[2:])


def _redact(value: Any) -> Any:
    if isinstance(value, str):
        for secret in sorted(_SECRET_VALUES, key=len, reverse=True):
            if secret in value:
                value = value.replace(secret, "<redacted>")
    return value


class _CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:  # pragma: no cover - simple accessor
        record.correlation_id = _CORRELATION_ID.get("-")
        return True


class StructuredFormatter(logging.Formatter):
    """Formatter that emits structured JSON logs.

    Fields named like credentials are dropped and registered secret values
    are masked wherever they appear.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": _redact(record.getMessage()),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        extras = {
            key: _redact(value)
            for key, value in record.__dict__.items()
            if key not in _STANDARD_ATTRS
            and not key.startswith("_")
            and key != "correlation_id"
            and key.lower() not in _SECRET_KEYS
        }
        if extras:
            payload["extra"] = extras
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(config: Optional[MonitoringConfig] = None, *, force: bool = False) -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED and not force:
        return
    cfg = config or get_app_config().monitoring
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(_CorrelationFilter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    # web3 and urllib3 are chatty at DEBUG.
    for noisy in ("web3", "urllib3"):
        logging.getLogger(noisy).setLevel(max(root.level, logging.INFO))
    logging.captureWarnings(True)
    _LOGGING_CONFIGURED = True


def get_logger(name: str) -> logging.Logger:
    if not _LOGGING_CONFIGURED:
        configure_logging()
    if name not in _LOGGER_CACHE:
        _LOGGER_CACHE[name] = logging.getLogger(name)
    return _LOGGER_CACHE[name]


def current_correlation_id() -> str:
    return _CORRELATION_ID.get("-")


def new_correlation_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@contextmanager
def correlation_scope(correlation_id: Optional[str]) -> Iterator[str]:
    value = correlation_id or "-"
    token = _CORRELATION_ID.set(value)
    try:
        yield value
    finally:
        _CORRELATION_ID.reset(token)


__all__ = [
    "StructuredFormatter",
    "configure_logging",
    "correlation_scope",
    "current_correlation_id",
    "get_logger",
    "new_correlation_id",
    "register_secret",
]

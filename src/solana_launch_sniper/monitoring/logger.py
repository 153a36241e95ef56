"""JSON logging to stderr with correlation IDs and key-material redaction.

Stdout is reserved for command results, so every log record goes to stderr.
Extras passed through ``extra={...}`` are emitted under an ``extra`` object;
any extra whose name looks like key material is masked before it is written.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, Mapping, Optional

from ..config.settings import MonitoringConfig, get_app_config

_CORRELATION_ID: ContextVar[str] = ContextVar("correlation_id", default="-")
_RESERVED = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"correlation_id", "message"}
_SENSITIVE_MARKERS = ("secret", "private_key", "keypair", "seed_phrase", "password")
REDACTED = "***"

_handler: Optional[logging.Handler] = None


def _is_sensitive(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in _SENSITIVE_MARKERS)


def redact(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Copy ``values`` with key material masked, descending into nested mappings."""

    cleaned: Dict[str, Any] = {}
    for key, value in values.items():
        if _is_sensitive(key):
            cleaned[key] = REDACTED
        elif isinstance(value, Mapping):
            cleaned[key] = redact(value)
        else:
            cleaned[key] = value
    return cleaned


class _CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = _CORRELATION_ID.get()
        return True


class StructuredFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", "-"),
        }
        extras = {
            key: value
            for key, value in vars(record).items()
            if key not in _RESERVED and not key.startswith("_")
        }
        if extras:
            payload["extra"] = redact(extras)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_logging(config: Optional[MonitoringConfig] = None, *, force: bool = False) -> None:
    """Install the stderr JSON handler on the root logger.

    Repeat calls only adjust the level unless ``force`` replaces the handler,
    which the CLI does after re-reading configuration.
    """

    global _handler
    cfg = config or get_app_config().monitoring
    root = logging.getLogger()
    if _handler is None or force:
        if _handler is not None:
            root.removeHandler(_handler)
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(StructuredFormatter())
        _handler.addFilter(_CorrelationFilter())
        root.addHandler(_handler)
        logging.captureWarnings(True)
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:12]


def current_correlation_id() -> str:
    return _CORRELATION_ID.get()


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Tag every record logged inside the block; a fresh ID is minted when none is given."""

    value = correlation_id or new_correlation_id()
    token = _CORRELATION_ID.set(value)
    try:
        yield value
    finally:
        _CORRELATION_ID.reset(token)


__all__ = [
    "REDACTED",
    "StructuredFormatter",
    "configure_logging",
    "correlation_scope",
    "current_correlation_id",
    "get_logger",
    "new_correlation_id",
    "redact",
]

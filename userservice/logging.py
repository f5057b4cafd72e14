"""Structured logging for the service.

Every entry carries the current request's correlation id when one is set.
Credential material (passwords, salts, hashes, session tokens, pads) is
replaced by ``REDACTED`` before rendering, including inside nested ``detail``
mappings.
"""

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Per-request correlation id, set by the HTTP middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[redacted]"

# Client-supplied request ids longer than this are replaced
MAX_CORRELATION_ID_LENGTH = 128

_SECRET_KEYS = frozenset(
    {
        "password",
        "current_password",
        "new_password",
        "password_hash",
        "salt",
        "token",
        "pad",
        "secret",
        "authorization",
        "cookie",
    }
)
_SECRET_SUFFIXES = ("_password", "_token", "_pad", "_secret", "_salt")
_MAX_DEPTH = 8

_TRUTHY = {"1", "true", "yes", "on"}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in _TRUTHY


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a correlation id to the current context and return it.

    A missing, blank or oversized id is replaced with a fresh UUID.
    """
    cid = (correlation_id or "").strip()
    if not cid or len(cid) > MAX_CORRELATION_ID_LENGTH or not cid.isprintable():
        cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SECRET_KEYS or lowered.endswith(_SECRET_SUFFIXES)


def _mask(value: Any, depth: int = 0) -> Any:
    if depth >= _MAX_DEPTH:
        return value
    if isinstance(value, Mapping):
        return {
            key: REDACTED
            if isinstance(key, str) and is_secret_key(key) and item is not None
            else _mask(item, depth + 1)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [_mask(item, depth + 1) for item in value]
    return value


def add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential values wherever they appear in the entry."""
    for key, value in list(event_dict.items()):
        if key == "event" or value is None:
            continue
        if is_secret_key(key):
            event_dict[key] = REDACTED
        else:
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    dev_mode: Optional[bool] = None,
) -> None:
    """Configure structlog.

    Arguments left as ``None`` are read from ``LOG_LEVEL``, ``LOG_JSON`` and
    ``LOG_DEV_MODE``. Console rendering wins when either ``json_output`` is
    off or ``dev_mode`` is on; colors only in dev mode.
    """
    level_value = logging.getLevelName((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    if not isinstance(level_value, int):
        level_value = logging.INFO
    if json_output is None:
        json_output = _env_flag("LOG_JSON", True)
    if dev_mode is None:
        dev_mode = _env_flag("LOG_DEV_MODE", False)

    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        add_correlation_id,
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if json_output and not dev_mode:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=dev_mode))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level_value),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

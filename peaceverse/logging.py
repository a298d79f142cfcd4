from __future__ import annotations

import hashlib
import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, MutableMapping, Optional

import structlog

_TRUTHY = {"1", "true", "yes", "on"}

# Masked by key name; keys ending in "_hash" pass through
_MASKED_KEY_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "authorization",
    "email",
    "phone",
    "otp",
    "api_key",
)

_request_id: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return _request_id.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind a request id to the current context, minting one when absent."""
    request_id = correlation_id or uuid.uuid4().hex
    _request_id.set(request_id)
    return request_id


def hash_identifier(value: str) -> str:
    """Short digest of a normalized identifier, safe to log."""
    normalized = value.strip().lower().encode("utf-8")
    return hashlib.sha256(normalized).hexdigest()[:16]


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _is_masked_key(key: str) -> bool:
    lowered = key.lower()
    if lowered.endswith("_hash"):
        return False
    return any(fragment in lowered for fragment in _MASKED_KEY_FRAGMENTS)


def _bind_request_id(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    request_id = _request_id.get()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


def _mask_sensitive_values(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    for key, value in event_dict.items():
        if isinstance(value, str) and _is_masked_key(key):
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, pretty: bool = False
) -> None:
    """Install the structlog pipeline used by every module logger."""
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _bind_request_id,
        _mask_sensitive_values,
        structlog.processors.StackInfoRenderer(),
    ]
    if pretty or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend(
            [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
        )
    threshold = logging.getLevelName(level.upper())
    if not isinstance(threshold, int):
        threshold = logging.INFO
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(threshold),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    pretty=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_LEAKY_FRAGMENTS = [
    re.compile(r"(?i)\b(?:postgres(?:ql)?|redis|rediss)://\S+"),
    re.compile(r"(?i)\b(?:password|passwd|secret|token|api[_-]?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)\b(?:select|insert|update|delete)\b.{0,60}"),
    re.compile(r"(?:/(?:home|root|srv|etc|var|tmp|opt|usr)/)\S+"),
    re.compile(r"(?i)traceback \(most recent call last\)"),
]

_MAX_ERROR_LENGTH = 300


def sanitize_error_message(message: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, credentials, SQL and file paths from error text."""
    if not message:
        return "error"
    for pattern in _LEAKY_FRAGMENTS:
        message = pattern.sub(replacement, message)
    if len(message) > _MAX_ERROR_LENGTH:
        message = message[: _MAX_ERROR_LENGTH - 3] + "..."
    return message

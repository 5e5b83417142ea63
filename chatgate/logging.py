from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Mapping, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

# Substrings of event keys whose values are credentials
_REDACTED_KEYS = (
    "token",
    "secret",
    "cookie",
    "authorization",
    "password",
    "ticket",
    "fingerprint",
)

_TRUTHY = {"1", "true", "yes", "on"}


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _is_credential_key(key: str) -> bool:
    lower_key = key.lower()
    return any(marker in lower_key for marker in _REDACTED_KEYS)


def _redact_value(key: str, value: Any) -> Any:
    if isinstance(value, Mapping):
        # Header and cookie dicts carry credentials under their own keys
        return {k: _redact_value(str(k), v) for k, v in value.items()}
    if isinstance(value, str) and _is_credential_key(key):
        return _mask(value)
    return value


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential values, keeping two characters at each end for debugging."""
    for key, value in list(event_dict.items()):
        if key != "event":
            event_dict[key] = _redact_value(key, value)
    return event_dict


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get("correlation_id")


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request and tag it with ``correlation_id``.

    Anything bound by a previous request on this context is dropped.
    """
    cid = correlation_id or uuid.uuid4().hex
    clear_contextvars()
    bind_contextvars(correlation_id=cid)
    return cid


def _renderer(json_output: bool, development_mode: bool) -> list:
    if development_mode or not json_output:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def configure_logging(
    log_level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline. Unset arguments fall back to LOG_LEVEL, LOG_JSON and LOG_DEV_MODE."""
    level_name = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _redact_credentials,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer(json_output, development_mode),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger whose events carry ``component=<module name>``."""
    return structlog.get_logger(component=name)

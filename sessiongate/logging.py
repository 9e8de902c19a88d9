from __future__ import annotations

import logging
import os
import uuid
from typing import Any, Dict, Optional

import structlog
from structlog.contextvars import bind_contextvars, clear_contextvars, get_contextvars

_TRUTHY = {"1", "true", "yes", "on"}

# Substrings that mark a key as sensitive wherever they appear
_SECRET_KEY_PARTS = ("password", "secret", "token", "credential", "authorization")
# Exact keys only; "code" alone would also catch status_code and error_code
_SECRET_KEYS = {"code", "verification_code", "jwt", "email", "phone", "identifier"}


def bind_request_context(correlation_id: Optional[str] = None) -> str:
    """Start a fresh log context for one request and return its correlation id."""
    cid = correlation_id or str(uuid.uuid4())
    clear_contextvars()
    bind_contextvars(correlation_id=cid)
    return cid


def bind_principal(tenant_id: str, user_id: str) -> None:
    """Attach the authenticated principal to every later log line of the request."""
    bind_contextvars(tenant_id=tenant_id, user_id=user_id)


def get_correlation_id() -> Optional[str]:
    return get_contextvars().get("correlation_id")


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return lowered in _SECRET_KEYS or any(part in lowered for part in _SECRET_KEY_PARTS)


def _mask(value: str) -> str:
    # JWTs keep their header segment so the algorithm stays visible
    if value.count(".") == 2:
        return value.split(".", 1)[0] + ".***"
    if len(value) <= 4:
        return "***"
    return value[:2] + "***" + value[-2:]


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask bearer tokens, provider credentials and contact data."""
    for key, value in list(event_dict.items()):
        if isinstance(value, str) and _is_secret_key(key):
            event_dict[key] = _mask(value)
    return event_dict


def _configure_structlog(log_level: str, json_output: bool, development_mode: bool) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Values under these keys are never written, not even partially
_SECRET_MARKERS = ("password", "secret", "token", "pre_hash", "credential", "salt")
# Personal data keeps a short prefix so operators can still tell entries apart
_PERSONAL_MARKERS = ("email", "user_agent")
# Keys that describe a secret rather than carry one
_SAFE_KEYS = frozenset({"token_type", "token_purpose", "email_hash"})
REDACTED = "[redacted]"


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set (or generate) the correlation id attached to subsequent log entries."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(correlation_id: Optional[str] = None, **fields: Any) -> str:
    """Start a logging context for one inbound request or operator command.

    Clears whatever the previous request on this worker bound, sets a
    correlation id and binds ``fields`` (for example ``command`` or
    ``ip_address``) to every entry logged until the next call.
    """
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    if fields:
        structlog.contextvars.bind_contextvars(**fields)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_event(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Drop secrets and shorten personal data before an entry is rendered."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS:
            continue
        value = event_dict[key]
        if any(marker in lower_key for marker in _SECRET_MARKERS):
            if value is not None:
                event_dict[key] = REDACTED
        elif any(marker in lower_key for marker in _PERSONAL_MARKERS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog for the process.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines; otherwise a console renderer is used
        development_mode: Force the colored console renderer
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        redact_event,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer: list = [structlog.dev.ConsoleRenderer(colors=development_mode)]
    else:
        renderer = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]

    structlog.configure(
        processors=shared_processors + renderer,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

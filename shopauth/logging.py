from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Context variable for correlation ID (per-request tracking)
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Any log key containing one of these fragments is masked outright. Unlike
# request payloads, secrets in auth logs are never useful even partially.
_SECRET_KEY_FRAGMENTS = (
    "password",
    "secret",
    "token",
    "csrf",
    "authorization",
    "cookie",
    "private_key",
)
# Keys that merely *name* a token without carrying it.
_SAFE_KEYS = frozenset({"token_type", "token_prefix", "token_kind"})


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor that masks passwords, raw tokens and cookies."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS:
            continue
        if any(fragment in lower_key for fragment in _SECRET_KEY_FRAGMENTS):
            if event_dict[key] is not None:
                event_dict[key] = "[REDACTED]"
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Initialize logging on module import
_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)


def identifier_digest(identifier: str) -> str:
    """Stable short digest of a login identifier for log correlation.

    Login identifiers are e-mail addresses; logs carry the digest so that
    repeated failures can be correlated without storing the address itself.
    """
    return hashlib.sha256(identifier.strip().lower().encode()).hexdigest()[:16]


def log_security_event(logger: Any, event: str, **fields: Any) -> None:
    """Emit a security-relevant event at warning level.

    Lockouts, CSRF failures and refresh-token reuse all go through here so
    they can be alerted on by the ``security_event`` marker.
    """
    logger.warning(event, security_event=True, **fields)

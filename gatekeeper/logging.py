from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, attached to every log entry when set
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of field names whose values never reach a renderer in clear
SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "code",
    "otp",
    "authorization",
    "email",
    "phone",
)
# Names that contain a sensitive substring but only ever hold labels
SAFE_KEYS = frozenset({"event", "error_code", "status_code", "token_type", "event_name"})

# header.payload.signature, each segment base64url
_JWT_SHAPE = re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+")
_MAX_DEPTH = 6


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_log_context(**values: Any) -> None:
    """Attach fields (user_id, session_id, ...) to every later entry in this context."""
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )


def clear_log_context() -> None:
    structlog.contextvars.clear_contextvars()


def mask_value(value: str) -> str:
    # Long values keep first/last 2 chars for debugging
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***" if value else value


def _is_sensitive(key: str) -> bool:
    if key in SAFE_KEYS:
        return False
    lower_key = key.lower()
    return any(part in lower_key for part in SENSITIVE_KEYS)


def redact(value: Any, *, key: Optional[str] = None, depth: int = 0) -> Any:
    """Mask sensitive values by key name, recursing into event payloads and details."""
    if key is not None and _is_sensitive(key) and isinstance(value, str):
        return mask_value(value)
    if depth >= _MAX_DEPTH:
        return value
    if isinstance(value, dict):
        return {k: redact(v, key=str(k), depth=depth + 1) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [redact(item, depth=depth + 1) for item in value]
    if isinstance(value, str) and "eyJ" in value:
        return _JWT_SHAPE.sub(lambda m: mask_value(m.group(0)), value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict.keys()):
        if key == "event":
            continue
        event_dict[key] = redact(event_dict[key], key=key)
    return event_dict


def configure_logging(
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
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

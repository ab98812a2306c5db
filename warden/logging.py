from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Ties together the log lines of one sign-in attempt
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Any event key containing one of these has its string values masked
SECRET_KEY_MARKERS = frozenset(
    {
        "password",
        "secret",
        "token",
        "code",
        "verifier",
        "api_key",
        "authorization",
        "email",
        "phone",
        "identifier",
    }
)

_MAX_REDACT_DEPTH = 8
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def redact_value(value: str) -> str:
    if len(value) > 4:
        return value[:2] + "***" + value[-2:]
    return "***"


def _is_secret_key(key: Any) -> bool:
    lower_key = str(key).lower()
    return any(marker in lower_key for marker in SECRET_KEY_MARKERS)


def _redact(value: Any, depth: int) -> Any:
    """Walk nested ``detail`` payloads so secrets inside them are masked too."""
    if depth > _MAX_REDACT_DEPTH:
        return value
    if isinstance(value, dict):
        return {
            k: redact_value(v) if _is_secret_key(k) and isinstance(v, str) else _redact(v, depth + 1)
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item, depth + 1) for item in value]
    return value


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and contact details before rendering."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _is_secret_key(key) and isinstance(value, str):
            event_dict[key] = redact_value(value)
        elif isinstance(value, (dict, list, tuple)):
            event_dict[key] = _redact(value, 1)
    return event_dict


def _processors(json_output: bool, development_mode: bool) -> List[Any]:
    shared = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        return shared + [structlog.dev.ConsoleRenderer(colors=development_mode)]
    return shared + [
        structlog.processors.format_exc_info,
        structlog.processors.JSONRenderer(),
    ]


def configure_logging(
    log_level: Optional[str] = None,
    *,
    json_output: Optional[bool] = None,
    development_mode: Optional[bool] = None,
) -> None:
    """Configure structlog; arguments left as ``None`` come from the environment.

    Args:
        log_level: DEBUG, INFO, WARNING or ERROR (``LOG_LEVEL``)
        json_output: render JSON lines instead of console output (``LOG_JSON``)
        development_mode: coloured console output (``LOG_DEV_MODE``)
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO")
    if json_output is None:
        json_output = os.getenv("LOG_JSON", "true").lower() in _TRUTHY
    if development_mode is None:
        development_mode = os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY

    structlog.configure(
        processors=_processors(json_output, development_mode),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)

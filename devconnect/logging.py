from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
# authenticated caller of the current request or socket, if any
request_user_var: ContextVar[Optional[str]] = ContextVar("request_user", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def set_request_user(user_id: Optional[str]) -> None:
    request_user_var.set(user_id)


_JWT_PATTERN = re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+")
_MASKED_KEYS = ("password", "secret", "token", "authorization")


def _mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:2]}***@{domain}"


def _add_request_context(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    user_id = request_user_var.get()
    if user_id:
        event_dict.setdefault("request_user", user_id)
    return event_dict


def _redact(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credentials and email addresses before they reach the log sink.

    Keys naming a credential are masked outright, ``email`` keeps its domain,
    and bearer tokens embedded in free text (error strings, reasons) are cut.
    """
    for key, value in list(event_dict.items()):
        if not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(name in lower_key for name in _MASKED_KEYS):
            event_dict[key] = "***"
        elif "email" in lower_key:
            event_dict[key] = _mask_email(value)
        elif _JWT_PATTERN.search(value):
            event_dict[key] = _JWT_PATTERN.sub("[jwt]", value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_request_context,
        _redact,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# storage and bus failures surface in 500 bodies; these fragments must not
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)\b(?:postgres(?:ql)?|redis|rediss)://\S+"),
    re.compile(r"(?i)\b(select|insert|update|delete)\s+.{0,80}"),
    re.compile(r"(?i)connection\s+.*\s+(failed|refused|timeout)"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)(password|secret|token|key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
    _JWT_PATTERN,
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, queries, paths, credentials and tracebacks from an error string.

    Used for the ``error`` field of 500 responses so storage and bus failures
    are reported without leaking connection details.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)
    if len(result) > 500:
        result = result[:497] + "..."
    return result

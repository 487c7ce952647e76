from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed as X-Request-ID and used as error request_id
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Key fragments whose values never leave the process unmasked
SENSITIVE_KEYS = frozenset({
    "password", "passwd", "secret", "token", "api_key", "apikey",
    "authorization", "credentials", "private_key", "privatekey",
    "ssn", "social_security", "credit_card", "creditcard", "card_number",
    "cvv", "access_key", "accesskey",
})

# Log-only additions: the raw session id is as good as a credential
_LOG_ONLY_KEYS = frozenset({"cookie", "session_id"})

REDACTED = "[REDACTED]"


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Use the caller's correlation id or mint one for this request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request(correlation_id: Optional[str], *, method: str, path: str) -> str:
    """Start the logging context of one HTTP request.

    Every log line emitted while the request is handled carries the
    correlation id, method and path.
    """
    structlog.contextvars.clear_contextvars()
    cid = set_correlation_id(correlation_id)
    structlog.contextvars.bind_contextvars(method=method, path=path)
    return cid


def _normalize_key(key: Any) -> str:
    return str(key).lower().replace("-", "_").replace(" ", "_")


def _is_sensitive_key(key: Any) -> bool:
    normalized = _normalize_key(key)
    return any(fragment in normalized for fragment in SENSITIVE_KEYS)


def _mask(value: str) -> str:
    if len(value) > 8:
        return f"{value[:2]}***{value[-2:]}"
    return "***"


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential-like fields; the first and last two characters survive
    so an operator can still correlate entries."""
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        if _is_sensitive_key(key) or _normalize_key(key) in _LOG_ONLY_KEYS:
            event_dict[key] = _mask(value)
    return event_dict


def configure_logging(
    level: str = "INFO",
    *,
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog pipeline.

    JSON lines in production; colored console output when
    ``development_mode`` is set or JSON is turned off.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach a client through an error message
_LEAKY_FRAGMENTS = tuple(
    re.compile(expr, re.IGNORECASE)
    for expr in (
        # store and database DSNs, including embedded credentials
        r"(redis|rediss|postgres|postgresql)://\S+",
        r"\b(select|insert|update|delete|from|where|join)\s+.{0,50}",
        r"database\s+error",
        r"connection\s+.*\s+(failed|refused|timeout)",
        r"/(home|var|etc|usr|opt|tmp|srv)/\S+",
        r"[a-z]:\\\S+",
        r"(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+",
        r"traceback\s*\(most recent call last\)",
        r'File\s+"[^"]+",\s+line\s+\d+',
    )
)

_MAX_ERROR_MESSAGE = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip DSNs, SQL, paths, credentials and stack fragments from a message.

    Used when a 5xx cause is exposed in development and when a cause is
    written to the log.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _LEAKY_FRAGMENTS:
        result = pattern.sub(replacement, result)
    if len(result) > _MAX_ERROR_MESSAGE:
        result = result[: _MAX_ERROR_MESSAGE - 3] + "..."
    return result


def sanitize_response_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Replace values under sensitive keys with ``[REDACTED]``, recursively."""
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        return {
            key: REDACTED
            if _is_sensitive_key(key)
            else sanitize_response_data(value, depth=depth + 1, max_depth=max_depth)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [sanitize_response_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data


__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "bind_request",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
    "sanitize_error_message",
    "sanitize_response_data",
    "set_correlation_id",
]

"""Convert arbitrary exceptions into :class:`AppError`.

Rules are evaluated top-down; the first matching predicate wins. Structured
errors and typed sentinels always come before message substring matching,
which is only a last resort for errors raised by code we do not control.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Optional, Sequence, Tuple

import httpx
import psycopg
from pydantic import ValidationError as PydanticValidationError
from redis import exceptions as redis_errors

from festguard.service.errors import AppError, ErrorCode, find_app_error, iter_chain
from festguard.storage.errors import RecordNotFound, StoreUnavailableError

Predicate = Callable[[BaseException], bool]
Factory = Callable[[BaseException], AppError]
Rule = Tuple[Predicate, Factory]

_RETRY_MESSAGE = "Concurrent modification detected. Please retry."


def _diag(exc: BaseException, attr: str) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    if diag is None:
        return None
    return getattr(diag, attr, None)


def _sqlstate(exc: BaseException) -> Optional[str]:
    return getattr(exc, "sqlstate", None) or getattr(exc, "pgcode", None)


def _classify_postgres(exc: BaseException) -> AppError:
    state = _sqlstate(exc) or ""
    if state == "23505":
        err = AppError("Resource already exists", code=ErrorCode.ALREADY_EXISTS, cause=exc)
        constraint = _diag(exc, "constraint_name")
        if constraint:
            err.details["constraint"] = constraint
        return err
    if state == "23503":
        return AppError("Referenced resource does not exist", code=ErrorCode.CONFLICT, cause=exc)
    if state == "23502":
        err = AppError("Required field is missing", code=ErrorCode.VALIDATION_ERROR, cause=exc)
        column = _diag(exc, "column_name")
        if column:
            err.details["column"] = column
        return err
    if state == "23514":
        return AppError("Value violates a check constraint", code=ErrorCode.VALIDATION_ERROR, cause=exc)
    if state in ("40001", "40P01"):
        return AppError(_RETRY_MESSAGE, code=ErrorCode.CONFLICT, retryable=True, cause=exc)
    if state in ("53000", "53100", "53200", "53300"):
        return AppError(
            "Service temporarily overloaded. Please retry later.",
            code=ErrorCode.RESOURCE_EXHAUSTED,
            cause=exc,
        )
    if state == "57014":
        return AppError("Operation timed out", code=ErrorCode.TIMEOUT, cause=exc)
    return AppError(code=ErrorCode.DATABASE_ERROR, cause=exc)


def _validation_details(exc: BaseException) -> list:
    errors = []
    for item in exc.errors():  # type: ignore[attr-defined]
        errors.append(
            {
                "field": ".".join(str(part) for part in item.get("loc", ())),
                "reason": item.get("msg"),
            }
        )
    return errors


def _template(code: ErrorCode, message: Optional[str] = None) -> Factory:
    def factory(exc: BaseException) -> AppError:
        return AppError(message, code=code, cause=exc)

    return factory


def _message_contains(*needles: str) -> Predicate:
    def predicate(exc: BaseException) -> bool:
        text = str(exc).lower()
        return any(needle in text for needle in needles)

    return predicate


def _is_instance(*types: type) -> Predicate:
    return lambda exc: isinstance(exc, types)


# Typed rules, most specific first. Every link of the chain is tried
# against these before any message matching happens.
RULES: Sequence[Rule] = (
    (
        _is_instance(asyncio.CancelledError),
        _template(ErrorCode.INTERNAL_ERROR, "Request was cancelled"),
    ),
    (
        _is_instance(
            asyncio.TimeoutError,
            TimeoutError,
            redis_errors.TimeoutError,
            httpx.TimeoutException,
        ),
        _template(ErrorCode.TIMEOUT, "Operation timed out"),
    ),
    (
        _is_instance(RecordNotFound, FileNotFoundError),
        _template(ErrorCode.NOT_FOUND, "Resource not found"),
    ),
    (
        lambda exc: isinstance(exc, psycopg.Error) or _sqlstate(exc) is not None,
        _classify_postgres,
    ),
    (
        _is_instance(StoreUnavailableError, redis_errors.ConnectionError, ConnectionError),
        _template(ErrorCode.SERVICE_UNAVAILABLE),
    ),
    (
        _is_instance(httpx.HTTPError),
        _template(ErrorCode.EXTERNAL_SERVICE_ERROR, "Upstream service error"),
    ),
    (
        _is_instance(PydanticValidationError),
        lambda exc: AppError(
            "Invalid input",
            code=ErrorCode.VALIDATION_ERROR,
            details={"errors": _validation_details(exc)},
            cause=exc,
        ),
    ),
)

MESSAGE_RULES: Sequence[Rule] = (
    (_message_contains("not found"), _template(ErrorCode.NOT_FOUND, "Resource not found")),
    (
        _message_contains("unauthorized", "authentication"),
        _template(ErrorCode.UNAUTHORIZED, "Authentication required"),
    ),
    (
        _message_contains("forbidden", "permission denied"),
        _template(ErrorCode.FORBIDDEN, "Access denied"),
    ),
    (
        _message_contains("already exists", "duplicate"),
        _template(ErrorCode.ALREADY_EXISTS, "Resource already exists"),
    ),
    (
        _message_contains("timeout", "timed out", "deadline exceeded"),
        _template(ErrorCode.TIMEOUT, "Operation timed out"),
    ),
    (
        _message_contains("connection refused", "connection reset"),
        _template(ErrorCode.SERVICE_UNAVAILABLE),
    ),
)


def classify(
    exc: BaseException,
    *,
    rules: Sequence[Rule] = RULES,
    message_rules: Sequence[Rule] = MESSAGE_RULES,
) -> AppError:
    """Return the AppError describing ``exc``.

    The exception and everything it was raised from are examined in three
    passes: the outermost AppError is returned as the same object, then the
    typed rules run on each link, and only then the message rules. Pure
    apart from constructing the result, so classifying twice is a no-op.
    """
    found = find_app_error(exc)
    if found is not None:
        return found
    chain = list(iter_chain(exc))
    for table in (rules, message_rules):
        for link in chain:
            for predicate, factory in table:
                if predicate(link):
                    return factory(link)
    return AppError(code=ErrorCode.INTERNAL_ERROR, cause=exc)


__all__ = ["MESSAGE_RULES", "RULES", "classify"]

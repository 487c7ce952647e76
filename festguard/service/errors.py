from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Iterator, Mapping, Optional, Union

from festguard.logging import sanitize_response_data


class ErrorKind(str, Enum):
    """Coarse error taxonomy shared by every code."""

    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    CONFLICT = "conflict"
    RATE_LIMIT = "rate_limit"
    EXTERNAL = "external"
    INTERNAL = "internal"
    BUSINESS = "business"


class ErrorCode(str, Enum):
    """Stable wire codes returned in the ``error.code`` field."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_FIELD = "MISSING_FIELD"
    REQUEST_TOO_LARGE = "REQUEST_TOO_LARGE"
    UNAUTHORIZED = "UNAUTHORIZED"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_REUSED = "TOKEN_REUSED"
    SESSION_INVALID = "SESSION_INVALID"
    FORBIDDEN = "FORBIDDEN"
    INJECTION_DETECTED = "INJECTION_DETECTED"
    CSRF_MISSING = "CSRF_MISSING"
    CSRF_INVALID = "CSRF_INVALID"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    INSUFFICIENT_FUNDS = "INSUFFICIENT_FUNDS"
    RATE_LIMITED = "RATE_LIMITED"
    AUTH_LOCKED_OUT = "AUTH_LOCKED_OUT"
    TOO_MANY_CONCURRENT_REQUESTS = "TOO_MANY_CONCURRENT_REQUESTS"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    RESOURCE_EXHAUSTED = "RESOURCE_EXHAUSTED"
    TIMEOUT = "TIMEOUT"


@dataclass(frozen=True)
class CodeInfo:
    status: int
    kind: ErrorKind
    retryable: bool = False


_C = ErrorCode
_K = ErrorKind

CODE_TABLE: Mapping[ErrorCode, CodeInfo] = MappingProxyType({
    _C.VALIDATION_ERROR: CodeInfo(400, _K.VALIDATION),
    _C.INVALID_INPUT: CodeInfo(400, _K.VALIDATION),
    _C.MISSING_FIELD: CodeInfo(400, _K.VALIDATION),
    _C.REQUEST_TOO_LARGE: CodeInfo(413, _K.VALIDATION),
    _C.UNAUTHORIZED: CodeInfo(401, _K.UNAUTHORIZED),
    _C.INVALID_CREDENTIALS: CodeInfo(401, _K.UNAUTHORIZED),
    _C.INVALID_TOKEN: CodeInfo(401, _K.UNAUTHORIZED),
    _C.TOKEN_EXPIRED: CodeInfo(401, _K.UNAUTHORIZED),
    _C.TOKEN_REUSED: CodeInfo(401, _K.UNAUTHORIZED),
    _C.SESSION_INVALID: CodeInfo(401, _K.UNAUTHORIZED),
    _C.FORBIDDEN: CodeInfo(403, _K.FORBIDDEN),
    _C.INJECTION_DETECTED: CodeInfo(403, _K.FORBIDDEN),
    _C.CSRF_MISSING: CodeInfo(403, _K.FORBIDDEN),
    _C.CSRF_INVALID: CodeInfo(403, _K.FORBIDDEN),
    _C.NOT_FOUND: CodeInfo(404, _K.NOT_FOUND),
    _C.CONFLICT: CodeInfo(409, _K.CONFLICT),
    _C.ALREADY_EXISTS: CodeInfo(409, _K.CONFLICT),
    _C.BUSINESS_RULE_VIOLATION: CodeInfo(422, _K.BUSINESS),
    _C.INSUFFICIENT_FUNDS: CodeInfo(422, _K.BUSINESS),
    _C.RATE_LIMITED: CodeInfo(429, _K.RATE_LIMIT, retryable=True),
    _C.AUTH_LOCKED_OUT: CodeInfo(429, _K.RATE_LIMIT),
    _C.TOO_MANY_CONCURRENT_REQUESTS: CodeInfo(429, _K.RATE_LIMIT, retryable=True),
    _C.INTERNAL_ERROR: CodeInfo(500, _K.INTERNAL),
    _C.DATABASE_ERROR: CodeInfo(500, _K.INTERNAL),
    _C.EXTERNAL_SERVICE_ERROR: CodeInfo(502, _K.EXTERNAL),
    _C.SERVICE_UNAVAILABLE: CodeInfo(503, _K.EXTERNAL, retryable=True),
    _C.RESOURCE_EXHAUSTED: CodeInfo(503, _K.INTERNAL, retryable=True),
    _C.TIMEOUT: CodeInfo(504, _K.INTERNAL, retryable=True),
})

_UNKNOWN = CodeInfo(500, ErrorKind.INTERNAL)

# Messages returned to clients in place of whatever the failure said
GENERIC_MESSAGES: Mapping[ErrorKind, str] = MappingProxyType({
    ErrorKind.INTERNAL: "An unexpected error occurred",
    ErrorKind.EXTERNAL: "An upstream service is unavailable. Please retry later.",
})


def _lookup(code: Union[ErrorCode, str]) -> CodeInfo:
    try:
        return CODE_TABLE[ErrorCode(code)]
    except ValueError:
        return _UNKNOWN


def http_status_for(code: Union[ErrorCode, str]) -> int:
    """HTTP status for a code; unknown codes map to 500."""
    return _lookup(code).status


def kind_for(code: Union[ErrorCode, str]) -> ErrorKind:
    return _lookup(code).kind


def redact_details(details: Any) -> Any:
    """Mask well-known sensitive keys (password, token, card data...) recursively."""
    return sanitize_response_data(details)


class AppError(Exception):
    """Structured error carried from the point of failure to the HTTP boundary.

    ``status_code``, ``kind`` and the default ``retryable`` flag are all
    derived from ``code`` through :data:`CODE_TABLE`, so one code can never
    surface with two different statuses. Subclasses only pick a default code.
    """

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        code: Union[ErrorCode, str, None] = None,
        details: Optional[dict] = None,
        op: Optional[str] = None,
        request_id: Optional[str] = None,
        retryable: Optional[bool] = None,
        cause: Optional[BaseException] = None,
    ) -> None:
        if code is not None:
            try:
                self.code = ErrorCode(code)
            except ValueError:
                self.code = ErrorCode.INTERNAL_ERROR
        self.message = message or GENERIC_MESSAGES.get(
            self.kind, self.code.value.replace("_", " ").capitalize()
        )
        super().__init__(self.message)
        self.details: dict = dict(details or {})
        self.op = op
        self.request_id = request_id
        self._retryable = retryable
        if cause is not None:
            self.__cause__ = cause

    @property
    def kind(self) -> ErrorKind:
        return kind_for(self.code)

    @property
    def status_code(self) -> int:
        return http_status_for(self.code)

    @property
    def retryable(self) -> bool:
        if self._retryable is not None:
            return self._retryable
        return _lookup(self.code).retryable

    @property
    def cause(self) -> Optional[BaseException]:
        return self.__cause__

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def with_details(self, **details: Any) -> "AppError":
        self.details.update(details)
        return self

    def with_op(self, op: str) -> "AppError":
        self.op = f"{op}: {self.op}" if self.op else op
        return self

    def with_request_id(self, request_id: Optional[str]) -> "AppError":
        if request_id and not self.request_id:
            self.request_id = request_id
        return self

    def client_details(self) -> Optional[dict]:
        """Details safe to serialize: redacted, and never for 5xx errors."""
        if self.is_server_error or not self.details:
            return None
        return redact_details(self.details)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code.value!r}, message={self.message!r}, op={self.op!r})"


class ValidationError(AppError):
    """Request validation failed (400)."""
    code = ErrorCode.VALIDATION_ERROR


class UnauthorizedError(AppError):
    """Authentication failed or missing (401)."""
    code = ErrorCode.UNAUTHORIZED


class ForbiddenError(AppError):
    """Access denied (403)."""
    code = ErrorCode.FORBIDDEN


class NotFoundError(AppError):
    """Requested resource not found (404)."""
    code = ErrorCode.NOT_FOUND


class ConflictError(AppError):
    """Resource conflict, e.g. duplicate creation (409)."""
    code = ErrorCode.CONFLICT


class BusinessRuleError(AppError):
    """A domain rule refused the operation (422)."""
    code = ErrorCode.BUSINESS_RULE_VIOLATION


class RateLimitedError(AppError):
    """Request rejected by a limiter or lockout (429)."""

    code = ErrorCode.RATE_LIMITED

    def __init__(self, message: Optional[str] = None, *, retry_after: int = 1, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(1, int(retry_after))


class ExternalServiceError(AppError):
    """A dependency failed (502/503)."""
    code = ErrorCode.EXTERNAL_SERVICE_ERROR


class InternalError(AppError):
    """Internal server error (500)."""
    code = ErrorCode.INTERNAL_ERROR


def wrap(
    exc: BaseException,
    code: Union[ErrorCode, str],
    message: Optional[str] = None,
    **details: Any,
) -> AppError:
    """Wrap ``exc`` in a new AppError with the given code, keeping it as cause."""
    return AppError(message, code=code, details=details or None, cause=exc)


def wrap_with_op(exc: BaseException, op: str) -> AppError:
    """Classify ``exc`` (if needed) and prefix ``op`` to its operation chain."""
    from festguard.service.classifier import classify

    return classify(exc).with_op(op)


def enrich(
    exc: BaseException,
    *,
    operation: Optional[str] = None,
    resource_type: Optional[str] = None,
    resource_id: Optional[str] = None,
    **extra: Any,
) -> AppError:
    """Attach operation and resource context to an error before it propagates."""
    from festguard.service.classifier import classify

    err = classify(exc)
    if operation:
        err.with_op(operation)
    if resource_type:
        err.details.setdefault("resource_type", resource_type)
    if resource_id:
        err.details.setdefault("resource_id", resource_id)
    for key, value in extra.items():
        err.details.setdefault(key, value)
    return err


def iter_chain(exc: BaseException) -> Iterator[BaseException]:
    """Yield ``exc`` and the exceptions it was raised from, outermost first.

    Follows ``__cause__``, then ``__context__`` unless it was suppressed with
    ``raise ... from None``. Each exception is yielded at most once.
    """
    seen = set()
    current: Optional[BaseException] = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        if current.__cause__ is not None:
            current = current.__cause__
        elif not current.__suppress_context__:
            current = current.__context__
        else:
            current = None


def find_app_error(exc: BaseException) -> Optional[AppError]:
    """The outermost AppError in the chain of ``exc``, if any."""
    for link in iter_chain(exc):
        if isinstance(link, AppError):
            return link
    return None


def get_code(exc: BaseException) -> ErrorCode:
    found = find_app_error(exc)
    return found.code if found is not None else ErrorCode.INTERNAL_ERROR


def get_message(exc: BaseException) -> str:
    """Client-safe message: the nearest AppError message, else a generic one."""
    found = find_app_error(exc)
    if found is not None:
        return found.message
    return GENERIC_MESSAGES[ErrorKind.INTERNAL]


__all__ = [
    "AppError",
    "BusinessRuleError",
    "CODE_TABLE",
    "CodeInfo",
    "ConflictError",
    "ErrorCode",
    "ErrorKind",
    "ExternalServiceError",
    "ForbiddenError",
    "GENERIC_MESSAGES",
    "InternalError",
    "NotFoundError",
    "RateLimitedError",
    "UnauthorizedError",
    "ValidationError",
    "enrich",
    "find_app_error",
    "get_code",
    "get_message",
    "http_status_for",
    "iter_chain",
    "kind_for",
    "redact_details",
    "wrap",
    "wrap_with_op",
]

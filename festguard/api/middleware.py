from __future__ import annotations

import hmac
from typing import Optional

from fastapi import Request

from festguard.api.error_handling import error_response, log_app_error
from festguard.logging import bind_request, get_logger
from festguard.service.classifier import classify
from festguard.service.errors import (
    AppError,
    ErrorCode,
    ForbiddenError,
    RateLimitedError,
    UnauthorizedError,
)
from festguard.service.rate_limit import RequestIdentity
from festguard.service.runtime import Runtime, get_runtime

logger = get_logger(__name__)

SESSION_HEADER = "X-Session-ID"
SESSION_COOKIE = "session_id"
CSRF_HEADER = "X-CSRF-Token"
CSRF_COOKIE = "csrf_token"

_BODY_METHODS = ("POST", "PUT", "PATCH", "DELETE")
_CSRF_SAFE_METHODS = ("GET", "HEAD", "OPTIONS", "TRACE")

# An unusable session on these paths is ignored instead of rejected
_SESSION_OPTIONAL_PATHS = ("/healthz", "/v1/auth/login", "/v1/auth/refresh")


def runtime_for(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    return runtime if runtime is not None else get_runtime()


def client_ip(request: Request, trust_forwarded_for: bool = False) -> Optional[str]:
    """Caller address; the first X-Forwarded-For hop only behind a trusted proxy."""
    if trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            first = forwarded.split(",")[0].strip()
            if first:
                return first
        real_ip = request.headers.get("X-Real-IP")
        if real_ip:
            return real_ip.strip()
    return request.client.host if request.client else None


def session_id_from(request: Request) -> Optional[str]:
    return request.headers.get(SESSION_HEADER) or request.cookies.get(SESSION_COOKIE)


async def add_correlation_id(request: Request, call_next):
    """Reuse the caller's X-Request-ID or mint one; echo it on the response."""
    correlation_id = bind_request(
        request.headers.get("X-Request-ID"), method=request.method, path=request.url.path
    )
    request.state.correlation_id = correlation_id
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


async def recover_errors(request: Request, call_next):
    """Last line of defence: anything unhandled becomes a classified error body."""
    try:
        return await call_next(request)
    except Exception as exc:
        err = classify(exc)
        logger.exception(
            "unhandled_exception",
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
            error_code=err.code.value,
        )
        return error_response(err, getattr(request.state, "correlation_id", None))


async def add_security_headers(request: Request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    response.headers.setdefault(
        "Permissions-Policy", "camera=(), microphone=(), geolocation=(), payment=()"
    )
    if request.url.scheme == "https" and runtime_for(request).settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    response.headers.setdefault(
        "Content-Security-Policy", "default-src 'none'; frame-ancestors 'none'"
    )
    return response


async def limit_request_size(request: Request, call_next):
    """Reject bodies above ``max_request_bytes`` with 413 before anything reads them."""
    limit = runtime_for(request).settings.max_request_bytes
    if limit <= 0:
        return await call_next(request)

    request_id = getattr(request.state, "correlation_id", None)
    declared = request.headers.get("content-length")
    if declared is not None:
        try:
            too_large = int(declared) > limit
        except ValueError:
            err = AppError("Invalid Content-Length header", code=ErrorCode.INVALID_INPUT)
            return error_response(err, request_id)
    elif request.method.upper() in _BODY_METHODS:
        # chunked upload: the body is buffered once and reused downstream
        too_large = len(await request.body()) > limit
    else:
        too_large = False

    if too_large:
        err = AppError(
            "Request body exceeds maximum allowed size",
            code=ErrorCode.REQUEST_TOO_LARGE,
            details={"max_bytes": limit},
        )
        log_app_error(request, err)
        return error_response(err, request_id)
    return await call_next(request)


async def detect_injection(request: Request, call_next):
    runtime = runtime_for(request)
    detector = runtime.injection
    if not detector.config.enabled or detector.is_excluded(request.url.path):
        return await call_next(request)

    body = b""
    if request.method.upper() in _BODY_METHODS:
        body = await request.body()
    raw_path = request.scope.get("raw_path") or b""
    detection = detector.scan_request(
        path=request.url.path,
        raw_path=raw_path.decode("latin-1"),
        query=request.query_params.multi_items(),
        headers=request.headers,
        body=body,
        content_type=request.headers.get("content-type", ""),
    )
    if detection is None:
        return await call_next(request)

    detector.log_detection(
        detection,
        method=request.method,
        path=request.url.path,
        client_ip=client_ip(request, runtime.settings.trust_forwarded_for),
    )
    if not detector.config.block_requests:
        return await call_next(request)
    # the offending value is never echoed back
    err = ForbiddenError(
        "Potentially malicious input detected",
        code=ErrorCode.INJECTION_DETECTED,
        details={"category": detection.category.value},
    )
    return error_response(err, getattr(request.state, "correlation_id", None))


async def resolve_session(request: Request, call_next):
    """Attach the caller's session, user id and role to ``request.state``."""
    request.state.session = None
    request.state.user_id = None
    request.state.role = None
    session_id = session_id_from(request)
    if not session_id:
        return await call_next(request)

    runtime = runtime_for(request)
    ip = client_ip(request, runtime.settings.trust_forwarded_for)
    session, valid = await runtime.sessions.validate_session(
        session_id, ip, request.headers.get("user-agent")
    )
    if valid and session is not None:
        request.state.session = session
        request.state.user_id = session.user_id
        request.state.role = session.role
        return await call_next(request)

    if request.url.path in _SESSION_OPTIONAL_PATHS:
        return await call_next(request)
    err = UnauthorizedError("Session is invalid or expired", code=ErrorCode.SESSION_INVALID)
    log_app_error(request, err)
    return error_response(err, getattr(request.state, "correlation_id", None))


def csrf_tokens_match(submitted: str, cookie: Optional[str], bound: Optional[str] = None) -> bool:
    """Double-submit check: header equals cookie, and the session's token when it has one."""
    if not cookie or not hmac.compare_digest(submitted.encode(), cookie.encode()):
        return False
    return bound is None or hmac.compare_digest(submitted.encode(), str(bound).encode())


async def verify_csrf(request: Request, call_next):
    """Require X-CSRF-Token on unsafe requests authenticated by the session cookie.

    Requests carrying X-Session-ID cannot be forged cross-site and are not
    checked, nor are the exempt paths.
    """
    runtime = runtime_for(request)
    settings = runtime.settings
    session = getattr(request.state, "session", None)
    if (
        not settings.csrf_enabled
        or session is None
        or request.method.upper() in _CSRF_SAFE_METHODS
        or request.headers.get(SESSION_HEADER)
        or any(request.url.path.startswith(prefix) for prefix in settings.csrf_exempt_paths)
    ):
        return await call_next(request)

    request_id = getattr(request.state, "correlation_id", None)
    submitted = request.headers.get(CSRF_HEADER)
    if not submitted:
        err = ForbiddenError("CSRF token required", code=ErrorCode.CSRF_MISSING)
        log_app_error(request, err)
        return error_response(err, request_id)

    bound = (session.meta or {}).get("csrf_token")
    if not csrf_tokens_match(submitted, request.cookies.get(CSRF_COOKIE), bound):
        logger.warning(
            "csrf_token_mismatch",
            path=request.url.path,
            method=request.method,
            client_ip=client_ip(request, settings.trust_forwarded_for),
        )
        err = ForbiddenError("Invalid CSRF token", code=ErrorCode.CSRF_INVALID)
        return error_response(err, request_id)
    return await call_next(request)


async def enforce_rate_limits(request: Request, call_next):
    runtime = runtime_for(request)
    limiter = runtime.rate_limiter
    if not limiter.config.enabled or limiter.should_skip(request.url.path):
        return await call_next(request)

    identity = RequestIdentity(
        ip=client_ip(request, runtime.settings.trust_forwarded_for),
        user_id=getattr(request.state, "user_id", None),
        role=getattr(request.state, "role", None),
        method=request.method,
        path=request.url.path,
    )
    request_id = getattr(request.state, "correlation_id", None)
    decision = await limiter.evaluate(identity)
    if not decision.allowed:
        err = RateLimitedError(
            "Rate limit exceeded",
            retry_after=decision.retry_after,
            details={"dimension": decision.dimension},
        )
        response = error_response(err, request_id)
        response.headers.update(decision.headers())
        return response

    try:
        async with limiter.concurrency_slot(identity.key):
            response = await call_next(request)
    except RateLimitedError as err:
        log_app_error(request, err)
        return error_response(err, request_id)
    response.headers.update(decision.headers())
    return response


__all__ = [
    "CSRF_COOKIE",
    "CSRF_HEADER",
    "SESSION_COOKIE",
    "SESSION_HEADER",
    "add_correlation_id",
    "add_security_headers",
    "client_ip",
    "csrf_tokens_match",
    "detect_injection",
    "enforce_rate_limits",
    "limit_request_size",
    "recover_errors",
    "resolve_session",
    "runtime_for",
    "session_id_from",
    "verify_csrf",
]

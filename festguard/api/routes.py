from __future__ import annotations

import secrets
from datetime import timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from festguard.api.middleware import CSRF_COOKIE, SESSION_COOKIE, client_ip, runtime_for
from festguard.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RefreshResponse,
    SessionInfo,
    SessionList,
    SessionRotated,
)
from festguard.logging import get_logger
from festguard.service.errors import ErrorCode, RateLimitedError, UnauthorizedError
from festguard.service.runtime import Runtime
from festguard.service.sanitizer import strip_all
from festguard.storage.models import SessionRecord

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def get_current_session(request: Request) -> SessionRecord:
    """Session resolved by the session middleware; 401 when there is none."""
    session = getattr(request.state, "session", None)
    if session is None:
        raise UnauthorizedError("Authentication required", code=ErrorCode.UNAUTHORIZED)
    return session


def _set_session_cookie(response: Response, session: SessionRecord) -> None:
    expires_at = session.expires_at
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=True,
        samesite="lax",
        expires=expires_at,
        path="/",
    )
    csrf_token = (session.meta or {}).get("csrf_token")
    if csrf_token:
        # readable by scripts so they can echo it in X-CSRF-Token
        response.set_cookie(
            CSRF_COOKIE,
            csrf_token,
            httponly=False,
            secure=True,
            samesite="lax",
            expires=expires_at,
            path="/",
        )


def _clear_session_cookies(response: Response) -> None:
    response.delete_cookie(SESSION_COOKIE, path="/")
    response.delete_cookie(CSRF_COOKIE, path="/")


def _envelope(request: Request, data) -> Envelope:
    request_id = getattr(request.state, "correlation_id", None)
    if request_id:
        return Envelope(data=data, request_id=request_id)
    return Envelope(data=data)


def _caller(request: Request, runtime: Runtime) -> tuple[Optional[str], Optional[str]]:
    return (
        client_ip(request, runtime.settings.trust_forwarded_for),
        request.headers.get("user-agent"),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Verify credentials and open a session with a fresh refresh-token family.

    Raises:
        401: invalid credentials
        429: the IP or the username is locked out
    """
    runtime = runtime_for(request)
    ip, user_agent = _caller(request, runtime)
    guard = runtime.brute_force

    status = await guard.check_login(ip, body.username)
    if not status.allowed:
        raise RateLimitedError(
            "Too many failed login attempts",
            code=ErrorCode.AUTH_LOCKED_OUT,
            retry_after=status.retry_after,
        )

    user = await runtime.credentials.verify(body.username, body.password)
    if user is None:
        failure = await guard.record_login_failure(ip, body.username)
        logger.warning("login_failed", ip=ip, attempts=failure.attempts)
        if not failure.allowed:
            raise RateLimitedError(
                "Too many failed login attempts",
                code=ErrorCode.AUTH_LOCKED_OUT,
                retry_after=failure.retry_after,
            )
        raise UnauthorizedError("Invalid username or password", code=ErrorCode.INVALID_CREDENTIALS)

    await guard.record_login_success(ip, body.username)
    session = await runtime.sessions.create_session(
        user.user_id,
        ip,
        user_agent,
        role=user.role,
        meta={"device_id": body.device_id, "csrf_token": secrets.token_urlsafe(32)},
    )
    token = await runtime.refresh_tokens.generate_token(
        user.user_id, body.device_id, ip, user_agent
    )
    _set_session_cookie(response, session)
    logger.info("login_succeeded", user_id=user.user_id, role=user.role)
    return _envelope(
        request,
        AuthResponse(
            user_id=user.user_id,
            role=user.role,
            session_id=session.id,
            session_expires_at=session.expires_at,
            refresh_token=token.token,
            refresh_token_expires_at=token.expires_at,
            csrf_token=session.meta.get("csrf_token") if session.meta else None,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: RefreshRequest, request: Request):
    """Exchange a refresh token for its successor.

    Presenting a token that was already rotated revokes the whole family.
    """
    runtime = runtime_for(request)
    ip, user_agent = _caller(request, runtime)
    token = await runtime.refresh_tokens.rotate_token(body.refresh_token, ip, user_agent)
    return _envelope(
        request,
        RefreshResponse(
            refresh_token=token.token,
            refresh_token_expires_at=token.expires_at,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    body: Optional[LogoutRequest] = None,
    session: SessionRecord = Depends(get_current_session),
):
    runtime = runtime_for(request)
    token_revoked = False
    if body is not None and body.refresh_token:
        token_revoked = await runtime.refresh_tokens.revoke_token(body.refresh_token)
    await runtime.sessions.destroy_session(session.id)
    _clear_session_cookies(response)
    logger.info("logout", user_id=session.user_id, token_revoked=token_revoked)
    return _envelope(
        request,
        {"logged_out": True, "refresh_token_revoked": token_revoked},
    )


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    request: Request,
    response: Response,
    session: SessionRecord = Depends(get_current_session),
):
    """End every session and revoke every refresh token of the caller."""
    runtime = runtime_for(request)
    sessions_destroyed = await runtime.sessions.destroy_all_user_sessions(session.user_id)
    tokens_revoked = await runtime.refresh_tokens.revoke_all_user_tokens(session.user_id)
    _clear_session_cookies(response)
    return _envelope(
        request,
        {"sessions_destroyed": sessions_destroyed, "tokens_revoked": tokens_revoked},
    )


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(
    request: Request, session: SessionRecord = Depends(get_current_session)
):
    runtime = runtime_for(request)
    records = await runtime.sessions.list_user_sessions(session.user_id)
    items = [
        SessionInfo(
            id=record.id,
            created_at=record.created_at,
            expires_at=record.expires_at,
            ip_addr=record.ip_addr,
            user_agent=strip_all(record.user_agent) if record.user_agent else None,
            current=record.id == session.id,
        )
        for record in records
    ]
    return _envelope(
        request,
        SessionList(sessions=items),
    )


@router.post("/sessions/rotate", response_model=Envelope, tags=["sessions"])
async def rotate_session(
    request: Request,
    response: Response,
    session: SessionRecord = Depends(get_current_session),
):
    """Issue a new id for the current session; the old id stops working."""
    runtime = runtime_for(request)
    rotated = await runtime.sessions.rotate_session(session.id)
    _set_session_cookie(response, rotated)
    return _envelope(
        request,
        SessionRotated(session_id=rotated.id, session_expires_at=rotated.expires_at),
    )

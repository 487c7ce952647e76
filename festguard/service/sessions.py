from __future__ import annotations

import hashlib
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from festguard.logging import get_logger
from festguard.service.errors import ErrorCode, ExternalServiceError, UnauthorizedError
from festguard.storage.errors import StoreUnavailableError
from festguard.storage.models import SessionRecord
from festguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class SessionConfig:
    session_duration: timedelta = timedelta(hours=24)
    max_sessions: int = 5
    key_prefix: str = "session:"


def fingerprint(ip: Optional[str], user_agent: Optional[str]) -> str:
    """Stable hash binding a session to the client that created it."""
    return hashlib.sha256(f"{ip or ''}|{user_agent or ''}".encode()).hexdigest()


def _new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionManager:
    """Server-side sessions bound to an (IP, user-agent) fingerprint.

    Reads that cannot reach the store answer "invalid"; writes raise
    SERVICE_UNAVAILABLE. A fingerprint mismatch destroys the session.
    """

    def __init__(self, cache: Optional[RedisCache], config: Optional[SessionConfig] = None):
        self.cache = cache
        self.config = config or SessionConfig()

    @property
    def _session_prefix(self) -> str:
        return f"{self.config.key_prefix}id:"

    @property
    def _user_prefix(self) -> str:
        return f"{self.config.key_prefix}user:"

    def _session_key(self, session_id: str) -> str:
        return f"{self._session_prefix}{session_id}"

    def _user_key(self, user_id: str) -> str:
        return f"{self._user_prefix}{user_id}"

    def _require_cache(self, operation: str) -> RedisCache:
        if self.cache is None:
            logger.error("session_store_missing", operation=operation)
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE
            )
        return self.cache

    def _ttl_ms(self) -> int:
        return int(self.config.session_duration.total_seconds() * 1000)

    async def create_session(
        self,
        user_id: str,
        ip: Optional[str],
        user_agent: Optional[str],
        *,
        role: str = "user",
        meta: Optional[Dict] = None,
    ) -> SessionRecord:
        cache = self._require_cache("create_session")
        now = datetime.now(timezone.utc)
        session = SessionRecord(
            id=_new_session_id(),
            user_id=user_id,
            fingerprint=fingerprint(ip, user_agent),
            created_at=now,
            expires_at=now + self.config.session_duration,
            ip_addr=ip,
            user_agent=user_agent,
            role=role,
            meta=meta,
        )
        try:
            evicted = await cache.create_session(
                self._session_key(session.id),
                self._user_key(user_id),
                session.id,
                session.to_hash(),
                ttl_ms=self._ttl_ms(),
                max_sessions=self.config.max_sessions,
                session_prefix=self._session_prefix,
            )
        except StoreUnavailableError as exc:
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
            ) from exc
        if evicted:
            logger.info("sessions_evicted", user_id=user_id, count=len(evicted))
        logger.info("session_created", user_id=user_id, role=role)
        return session

    async def validate_session(
        self, session_id: str, ip: Optional[str], user_agent: Optional[str]
    ) -> Tuple[Optional[SessionRecord], bool]:
        if not session_id or self.cache is None:
            return None, False
        try:
            status, data = await self.cache.validate_session(
                self._session_key(session_id),
                session_id,
                fingerprint(ip, user_agent),
                user_index_prefix=self._user_prefix,
            )
        except StoreUnavailableError:
            logger.error("session_validation_unavailable", fail_closed=True)
            return None, False
        if status == -1:
            logger.warning("session_fingerprint_mismatch", ip=ip, destroyed=True)
            return None, False
        if status != 1 or not data:
            return None, False
        session = SessionRecord.from_hash(session_id, data)
        if session.expires_at <= datetime.now(timezone.utc):
            return None, False
        return session, True

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Look a session up without fingerprint checks (admin views)."""
        cache = self._require_cache("get_session")
        try:
            data = await cache.get_session(self._session_key(session_id))
        except StoreUnavailableError as exc:
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
            ) from exc
        if not data:
            return None
        return SessionRecord.from_hash(session_id, data)

    async def rotate_session(self, session_id: str) -> SessionRecord:
        """Move a session to a fresh id; the old id stops resolving at once."""
        cache = self._require_cache("rotate_session")
        new_id = _new_session_id()
        now = datetime.now(timezone.utc)
        expires = now + self.config.session_duration
        try:
            status, data = await cache.rotate_session(
                self._session_key(session_id),
                self._session_key(new_id),
                session_id,
                new_id,
                user_index_prefix=self._user_prefix,
                ttl_ms=self._ttl_ms(),
                created_ms=int(now.timestamp() * 1000),
                expires_ms=int(expires.timestamp() * 1000),
            )
        except StoreUnavailableError as exc:
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
            ) from exc
        if status != 1:
            raise UnauthorizedError("Session not found", code=ErrorCode.SESSION_INVALID)
        session = SessionRecord.from_hash(new_id, data)
        logger.info("session_rotated", user_id=session.user_id)
        return session

    async def destroy_session(self, session_id: str) -> bool:
        cache = self._require_cache("destroy_session")
        try:
            return await cache.destroy_session(
                self._session_key(session_id), session_id, user_index_prefix=self._user_prefix
            )
        except StoreUnavailableError as exc:
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
            ) from exc

    async def destroy_all_user_sessions(self, user_id: str) -> int:
        cache = self._require_cache("destroy_all_user_sessions")
        try:
            destroyed = await cache.destroy_user_sessions(
                self._user_key(user_id), session_prefix=self._session_prefix
            )
        except StoreUnavailableError as exc:
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
            ) from exc
        logger.info("user_sessions_destroyed", user_id=user_id, count=destroyed)
        return destroyed

    async def list_user_sessions(self, user_id: str) -> List[SessionRecord]:
        cache = self._require_cache("list_user_sessions")
        try:
            rows = await cache.list_user_sessions(self._user_key(user_id), self._session_prefix)
        except StoreUnavailableError as exc:
            raise ExternalServiceError(
                "Session store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
            ) from exc
        return [SessionRecord.from_hash(session_id, data) for session_id, data in rows]


__all__ = ["SessionConfig", "SessionManager", "fingerprint"]

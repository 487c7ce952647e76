from __future__ import annotations

import hashlib
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from festguard.logging import get_logger
from festguard.service.errors import ErrorCode, ExternalServiceError, UnauthorizedError
from festguard.storage.errors import StoreUnavailableError
from festguard.storage.models import RefreshToken
from festguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass
class RefreshTokenConfig:
    token_duration: timedelta = timedelta(days=30)
    max_families_per_user: int = 10
    enable_rotation: bool = True
    # validating or rotating a revoked token revokes its whole family
    enable_reuse_detection: bool = True
    token_bytes: int = 48
    key_prefix: str = "refresh:"


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class RefreshTokenManager:
    """Opaque rotating refresh tokens grouped into families.

    Only the SHA-256 of a token is stored. Rotation, reuse detection and
    family revocation each run as one store script. Every store failure is
    reported as SERVICE_UNAVAILABLE; a token is never accepted without a
    definitive answer from the store.
    """

    def __init__(self, cache: Optional[RedisCache], config: Optional[RefreshTokenConfig] = None):
        self.cache = cache
        self.config = config or RefreshTokenConfig()

    def _require_cache(self) -> RedisCache:
        if self.cache is None:
            raise ExternalServiceError("Token store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE)
        return self.cache

    def _ttl_ms(self) -> int:
        return int(self.config.token_duration.total_seconds() * 1000)

    def _unavailable(self, operation: str, exc: StoreUnavailableError) -> ExternalServiceError:
        logger.error("refresh_token_store_unavailable", operation=operation, fail_closed=True)
        return ExternalServiceError(
            "Token store unavailable", code=ErrorCode.SERVICE_UNAVAILABLE, cause=exc
        )

    def _reused(self, family: Optional[str]) -> UnauthorizedError:
        logger.warning("refresh_token_reuse_detected", family=family, family_revoked=True)
        return UnauthorizedError(
            "Refresh token has been revoked", code=ErrorCode.TOKEN_REUSED
        )

    def _mint(self) -> str:
        return secrets.token_urlsafe(self.config.token_bytes)

    def _fields(
        self, now: datetime, ip: Optional[str], user_agent: Optional[str]
    ) -> Dict[str, str]:
        expires = now + self.config.token_duration
        return {
            "created_at": str(int(now.timestamp() * 1000)),
            "expires_at": str(int(expires.timestamp() * 1000)),
            "ip_addr": ip or "",
            "user_agent": user_agent or "",
        }

    async def generate_token(
        self,
        user_id: str,
        device_id: str,
        ip: Optional[str],
        user_agent: Optional[str],
    ) -> RefreshToken:
        """Issue the first token of a new family (a fresh grant)."""
        cache = self._require_cache()
        now = datetime.now(timezone.utc)
        raw = self._mint()
        token = RefreshToken(
            user_id=user_id,
            device_id=device_id,
            family=str(uuid.uuid4()),
            created_at=now,
            expires_at=now + self.config.token_duration,
            token=raw,
            token_hash=hash_token(raw),
            ip_addr=ip,
            user_agent=user_agent,
        )
        try:
            dropped = await cache.issue_refresh_token(
                self.config.key_prefix,
                token.token_hash,
                token.family,
                user_id,
                token.to_hash(),
                ttl_ms=self._ttl_ms(),
                max_families=self.config.max_families_per_user,
            )
        except StoreUnavailableError as exc:
            raise self._unavailable("generate_token", exc) from exc
        if dropped:
            logger.info("refresh_token_families_evicted", user_id=user_id, count=len(dropped))
        logger.info("refresh_token_issued", user_id=user_id, device_id=device_id)
        return token

    async def validate_token(self, token: str) -> RefreshToken:
        """Return the token's claims.

        Raises:
            UnauthorizedError: INVALID_TOKEN for unknown or expired tokens,
                TOKEN_REUSED for a revoked token (its family is revoked too).
        """
        if not token:
            raise UnauthorizedError("Invalid refresh token", code=ErrorCode.INVALID_TOKEN)
        cache = self._require_cache()
        token_hash = hash_token(token)
        try:
            status, data, family = await cache.check_refresh_token(
                self.config.key_prefix,
                token_hash,
                reuse_detection=self.config.enable_reuse_detection,
            )
        except StoreUnavailableError as exc:
            raise self._unavailable("validate_token", exc) from exc
        if status == -1:
            raise self._reused(family)
        if status != 1:
            raise UnauthorizedError("Invalid refresh token", code=ErrorCode.INVALID_TOKEN)
        claims = RefreshToken.from_hash(token_hash, data)
        if claims.expires_at <= datetime.now(timezone.utc):
            raise UnauthorizedError("Refresh token expired", code=ErrorCode.TOKEN_EXPIRED)
        return claims

    async def rotate_token(
        self, old_token: str, ip: Optional[str], user_agent: Optional[str]
    ) -> RefreshToken:
        """Revoke ``old_token`` and issue its successor in the same family.

        Two concurrent rotations of one token cannot both succeed: the
        loser sees a revoked token and triggers family revocation.
        """
        if not self.config.enable_rotation:
            return await self.validate_token(old_token)
        if not old_token:
            raise UnauthorizedError("Invalid refresh token", code=ErrorCode.INVALID_TOKEN)
        cache = self._require_cache()
        now = datetime.now(timezone.utc)
        raw = self._mint()
        new_hash = hash_token(raw)
        try:
            status, data, family = await cache.rotate_refresh_token(
                self.config.key_prefix,
                hash_token(old_token),
                new_hash,
                self._fields(now, ip, user_agent),
                ttl_ms=self._ttl_ms(),
                reuse_detection=self.config.enable_reuse_detection,
            )
        except StoreUnavailableError as exc:
            raise self._unavailable("rotate_token", exc) from exc
        if status == -1:
            raise self._reused(family)
        if status != 1:
            raise UnauthorizedError("Invalid refresh token", code=ErrorCode.INVALID_TOKEN)
        rotated = RefreshToken.from_hash(new_hash, data)
        rotated.token = raw
        logger.info("refresh_token_rotated", user_id=rotated.user_id, family=rotated.family)
        return rotated

    async def revoke_token(self, token: str) -> bool:
        cache = self._require_cache()
        try:
            revoked = await cache.revoke_refresh_token(self.config.key_prefix, hash_token(token))
        except StoreUnavailableError as exc:
            raise self._unavailable("revoke_token", exc) from exc
        if revoked:
            logger.info("refresh_token_revoked")
        return revoked

    async def revoke_family(self, family: str) -> int:
        cache = self._require_cache()
        try:
            count = await cache.revoke_token_family(self.config.key_prefix, family)
        except StoreUnavailableError as exc:
            raise self._unavailable("revoke_family", exc) from exc
        logger.info("refresh_token_family_revoked", family=family, count=count)
        return count

    async def revoke_all_user_tokens(self, user_id: str) -> int:
        cache = self._require_cache()
        try:
            count = await cache.revoke_user_tokens(self.config.key_prefix, user_id)
        except StoreUnavailableError as exc:
            raise self._unavailable("revoke_all_user_tokens", exc) from exc
        logger.info("refresh_tokens_revoked_for_user", user_id=user_id, count=count)
        return count


__all__ = ["RefreshTokenConfig", "RefreshTokenManager", "hash_token"]

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Tuple

from festguard.logging import get_logger
from festguard.service.errors import ErrorCode, ExternalServiceError
from festguard.storage.errors import StoreUnavailableError
from festguard.storage.models import BruteForceStatus
from festguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)

IP = "ip"
USER = "user"


@dataclass
class BruteForceConfig:
    max_attempts: int = 5
    attempt_window: timedelta = timedelta(minutes=15)
    lockout_duration: timedelta = timedelta(minutes=15)
    progressive_lockout: bool = True
    # lockout for violation n = lockout_duration * multiplier ** (n - 1)
    multiplier: float = 2.0
    max_lockout: timedelta = timedelta(hours=24)
    violation_memory: timedelta = timedelta(hours=24)
    enable_ip_blocking: bool = True
    enable_user_blocking: bool = True
    key_prefix: str = "bruteforce:"
    fail_closed: bool = False


def _ms(delta: timedelta) -> int:
    return max(1, int(delta.total_seconds() * 1000))


class BruteForceProtector:
    """Failed-attempt counter with lockout and progressive backoff per identity.

    State per ``(dimension, identity)`` is three keys: the attempt counter
    (expires with the attempt window), the lockout marker (expires when the
    lockout ends) and the violation counter that drives progressive backoff.
    """

    def __init__(self, cache: Optional[RedisCache], config: Optional[BruteForceConfig] = None):
        self.cache = cache
        self.config = config or BruteForceConfig()

    def _keys(self, dimension: str, identity: str) -> Tuple[str, str, str]:
        base = RedisCache.hashed_key(f"{self.config.key_prefix}{dimension}:", identity.lower())
        return f"{base}:attempts", f"{base}:lockout", f"{base}:violations"

    def _unavailable(self, operation: str, dimension: str) -> BruteForceStatus:
        logger.error(
            "brute_force_store_unavailable",
            operation=operation,
            dimension=dimension,
            fail_closed=self.config.fail_closed,
        )
        if self.config.fail_closed:
            raise ExternalServiceError(
                "Authentication is temporarily unavailable",
                code=ErrorCode.SERVICE_UNAVAILABLE,
            )
        return BruteForceStatus(allowed=True)

    async def check_and_record(
        self, identity: str, is_failure: bool, *, dimension: str = IP
    ) -> BruteForceStatus:
        """Evaluate one attempt; a failure also increments the counter.

        Once ``max_attempts`` failures sit in the window, the next attempt
        (checked or failed) starts a lockout.
        """
        if self.cache is None:
            return self._unavailable("check_and_record", dimension)
        cfg = self.config
        attempts_key, lockout_key, violations_key = self._keys(dimension, identity)
        try:
            allowed, lockout_ms, attempts = await self.cache.brute_force_attempt(
                attempts_key,
                lockout_key,
                violations_key,
                is_failure=is_failure,
                max_attempts=cfg.max_attempts,
                window_ms=_ms(cfg.attempt_window),
                lockout_ms=_ms(cfg.lockout_duration),
                progressive=cfg.progressive_lockout,
                multiplier=cfg.multiplier,
                max_lockout_ms=_ms(cfg.max_lockout),
                violation_ttl_ms=_ms(cfg.violation_memory),
            )
        except StoreUnavailableError:
            return self._unavailable("check_and_record", dimension)

        status = BruteForceStatus(
            allowed=allowed,
            lockout=timedelta(milliseconds=lockout_ms),
            attempts=attempts,
        )
        if not allowed:
            logger.warning(
                "brute_force_locked",
                dimension=dimension,
                identity=identity,
                lockout_seconds=round(status.lockout.total_seconds(), 3),
                attempts=attempts,
            )
        return status

    async def record_success(self, identity: str, *, dimension: str = IP) -> None:
        """Forget failed attempts and any active lockout; violations are kept."""
        if self.cache is None:
            return
        attempts_key, lockout_key, _ = self._keys(dimension, identity)
        try:
            await self.cache.delete(attempts_key, lockout_key)
        except StoreUnavailableError:
            logger.error("brute_force_store_unavailable", operation="record_success", dimension=dimension)

    async def is_locked(self, identity: str, *, dimension: str = IP) -> Tuple[bool, timedelta]:
        if self.cache is None:
            return False, timedelta()
        attempts_key, lockout_key, _ = self._keys(dimension, identity)
        try:
            remaining_ms, _attempts = await self.cache.brute_force_status(attempts_key, lockout_key)
        except StoreUnavailableError:
            status = self._unavailable("is_locked", dimension)
            return not status.allowed, timedelta()
        return remaining_ms > 0, timedelta(milliseconds=remaining_ms)

    async def unlock(self, identity: str, *, dimension: str = IP) -> None:
        """Lift an active lockout (operator action). Violation history stays,
        so the next lockout is still progressive."""
        if self.cache is None:
            return
        _, lockout_key, _ = self._keys(dimension, identity)
        await self.cache.delete(lockout_key)
        logger.info("brute_force_unlocked", dimension=dimension, identity=identity)

    def _dimensions(self, ip: Optional[str], username: Optional[str]):
        if self.config.enable_ip_blocking and ip:
            yield IP, ip
        if self.config.enable_user_blocking and username:
            yield USER, username

    async def check_login(self, ip: Optional[str], username: Optional[str]) -> BruteForceStatus:
        """Pre-check before verifying credentials. Either dimension blocks."""
        result = BruteForceStatus(allowed=True)
        for dimension, identity in self._dimensions(ip, username):
            status = await self.check_and_record(identity, False, dimension=dimension)
            if not status.allowed and (result.allowed or status.lockout > result.lockout):
                result = status
        return result

    async def record_login_failure(
        self, ip: Optional[str], username: Optional[str]
    ) -> BruteForceStatus:
        result = BruteForceStatus(allowed=True)
        for dimension, identity in self._dimensions(ip, username):
            status = await self.check_and_record(identity, True, dimension=dimension)
            if not status.allowed and (result.allowed or status.lockout > result.lockout):
                result = status
        return result

    async def record_login_success(self, ip: Optional[str], username: Optional[str]) -> None:
        for dimension, identity in self._dimensions(ip, username):
            await self.record_success(identity, dimension=dimension)


__all__ = ["BruteForceConfig", "BruteForceProtector", "IP", "USER"]

from __future__ import annotations

import asyncio
import math
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from ipaddress import ip_address, ip_network
from types import MappingProxyType
from typing import AsyncIterator, List, Mapping, Optional, Tuple

from festguard.config import RateLimitAlgorithm
from festguard.logging import get_logger
from festguard.service.errors import ErrorCode, RateLimitedError
from festguard.storage.errors import StoreUnavailableError
from festguard.storage.models import RateLimitDecision
from festguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


@dataclass(frozen=True)
class RoleLimit:
    per_minute: int
    per_hour: int
    burst: int = 0


DEFAULT_ROLE_LIMITS: Mapping[str, RoleLimit] = MappingProxyType({
    "admin": RoleLimit(per_minute=300, per_hour=10_000, burst=50),
    "organizer": RoleLimit(per_minute=200, per_hour=5_000, burst=30),
    "staff": RoleLimit(per_minute=120, per_hour=3_000, burst=20),
    "user": RoleLimit(per_minute=60, per_hour=1_000, burst=10),
})


@dataclass
class RateLimitConfig:
    enabled: bool = True
    algorithm: RateLimitAlgorithm = RateLimitAlgorithm.SLIDING_WINDOW
    key_prefix: str = "ratelimit:"
    default_per_minute: int = 60
    default_per_hour: int = 1000
    ip_per_minute: int = 30
    enable_ip: bool = True
    role_limits: Mapping[str, RoleLimit] = field(default_factory=lambda: DEFAULT_ROLE_LIMITS)
    # "POST /v1/auth/login" or "/v1/auth/login" -> requests/minute across all callers
    endpoint_limits: Mapping[str, int] = field(default_factory=dict)
    max_concurrent: int = 0
    concurrency_ttl_seconds: int = 300
    skip_paths: Tuple[str, ...] = ("/healthz", "/metrics")
    ip_allowlist: Tuple[str, ...] = ()


@dataclass
class RequestIdentity:
    """Who is asking, as resolved by the middleware chain."""

    ip: Optional[str]
    user_id: Optional[str] = None
    role: Optional[str] = None
    method: str = "GET"
    path: str = "/"

    @property
    def key(self) -> str:
        if self.user_id:
            return f"user:{self.user_id}"
        return f"ip:{self.ip or 'unknown'}"


class RateLimiter:
    """Distributed request limiter over the shared store.

    Every counter lives in Redis and is updated by a single script call, so
    all API processes see the same counts. When the store is missing or
    unreachable the limiter admits traffic and logs the failure.
    """

    def __init__(self, cache: Optional[RedisCache], config: Optional[RateLimitConfig] = None):
        self.cache = cache
        self.config = config or RateLimitConfig()
        self._allowlist = [ip_network(entry, strict=False) for entry in self.config.ip_allowlist]

    def should_skip(self, path: str) -> bool:
        return any(path.startswith(prefix) for prefix in self.config.skip_paths)

    def is_allowlisted(self, ip: Optional[str]) -> bool:
        if not ip or not self._allowlist:
            return False
        try:
            addr = ip_address(ip)
        except ValueError:
            return False
        return any(addr in network for network in self._allowlist)

    def limit_for_role(self, role: Optional[str]) -> RoleLimit:
        if role and role in self.config.role_limits:
            return self.config.role_limits[role]
        return RoleLimit(self.config.default_per_minute, self.config.default_per_hour)

    def endpoint_limit(self, method: str, path: str) -> Optional[int]:
        limits = self.config.endpoint_limits
        return limits.get(f"{method.upper()} {path}", limits.get(path))

    def _key(self, dimension: str, identifier: str, window_seconds: int) -> str:
        return RedisCache.hashed_key(
            f"{self.config.key_prefix}{dimension}:{window_seconds}:", identifier
        )

    async def check(
        self,
        dimension: str,
        identifier: str,
        *,
        limit: Optional[int] = None,
        window_seconds: int = 60,
    ) -> RateLimitDecision:
        """Count one request against ``(dimension, identifier)`` and decide.

        The increment and the comparison happen in one store round trip.
        """
        if limit is None:
            limit = (
                self.config.ip_per_minute if dimension == "ip" else self.config.default_per_minute
            )
        if not self.config.enabled or limit <= 0 or self.cache is None:
            return RateLimitDecision.admit(dimension=dimension, identifier=identifier)

        key = self._key(dimension, identifier, window_seconds)
        try:
            if self.config.algorithm == RateLimitAlgorithm.FIXED_WINDOW:
                allowed, count, reset_ms = await self.cache.fixed_window_hit(
                    key, limit, window_seconds
                )
            else:
                allowed, count, reset_ms = await self.cache.sliding_window_hit(
                    key, limit, window_seconds, member=uuid.uuid4().hex
                )
        except StoreUnavailableError:
            logger.warning(
                "rate_limit_store_unavailable",
                dimension=dimension,
                fail_open=True,
            )
            return RateLimitDecision.admit(dimension=dimension, identifier=identifier)

        reset_after = math.ceil(reset_ms / 1000)
        decision = RateLimitDecision(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_after=reset_after,
            retry_after=0 if allowed else max(1, reset_after),
            dimension=dimension,
            identifier=identifier,
        )
        if not allowed:
            logger.warning(
                "rate_limit_exceeded",
                dimension=dimension,
                identifier=identifier,
                limit=limit,
                window_seconds=window_seconds,
                retry_after=decision.retry_after,
            )
        return decision

    async def check_burst(
        self, identifier: str, *, burst: int, per_minute: int
    ) -> RateLimitDecision:
        """Token bucket of ``burst`` tokens refilled at the sustained per-minute rate."""
        if self.cache is None or burst <= 0 or per_minute <= 0:
            return RateLimitDecision.admit(dimension="burst", identifier=identifier)
        key = RedisCache.hashed_key(f"{self.config.key_prefix}burst:", identifier)
        try:
            allowed, tokens, reset_after = await self.cache.token_bucket_take(
                key, burst, per_minute / 60.0
            )
        except StoreUnavailableError:
            logger.warning("rate_limit_store_unavailable", dimension="burst", fail_open=True)
            return RateLimitDecision.admit(dimension="burst", identifier=identifier)
        if not allowed:
            logger.warning("rate_limit_burst_exceeded", identifier=identifier, burst=burst)
        return RateLimitDecision(
            allowed=allowed,
            limit=burst,
            remaining=tokens,
            reset_after=reset_after,
            retry_after=0 if allowed else max(1, reset_after),
            dimension="burst",
            identifier=identifier,
        )

    async def evaluate(self, identity: RequestIdentity) -> RateLimitDecision:
        """Apply every limit relevant to a request.

        Returns the first rejection, otherwise the admitted decision with the
        fewest remaining requests (used for the X-RateLimit headers).
        """
        if not self.config.enabled or self.should_skip(identity.path):
            return RateLimitDecision.admit()
        if self.is_allowlisted(identity.ip):
            logger.debug("rate_limit_allowlisted", ip=identity.ip)
            return RateLimitDecision.admit(dimension="ip", identifier=identity.ip)

        admitted: List[RateLimitDecision] = []

        if self.config.enable_ip and identity.ip:
            decision = await self.check("ip", identity.ip, limit=self.config.ip_per_minute)
            if not decision.allowed:
                return decision
            admitted.append(decision)

        if identity.user_id:
            role_limit = self.limit_for_role(identity.role)
            for dimension, limit, window in (
                ("user", role_limit.per_minute, 60),
                ("user_hour", role_limit.per_hour, 3600),
            ):
                decision = await self.check(
                    dimension, identity.user_id, limit=limit, window_seconds=window
                )
                if not decision.allowed:
                    return decision
                admitted.append(decision)
            if role_limit.burst > 0:
                decision = await self.check_burst(
                    identity.user_id, burst=role_limit.burst, per_minute=role_limit.per_minute
                )
                if not decision.allowed:
                    return decision
                admitted.append(decision)

        endpoint_limit = self.endpoint_limit(identity.method, identity.path)
        if endpoint_limit:
            decision = await self.check(
                "endpoint", f"{identity.method.upper()} {identity.path}", limit=endpoint_limit
            )
            if not decision.allowed:
                return decision
            admitted.append(decision)

        enforced = [decision for decision in admitted if decision.enforced]
        if not enforced:
            return RateLimitDecision.admit()
        return min(enforced, key=lambda decision: decision.remaining)

    @asynccontextmanager
    async def concurrency_slot(self, identity: str) -> AsyncIterator[Optional[int]]:
        """Hold one in-flight slot for ``identity`` for the duration of the block.

        Raises:
            RateLimitedError: when the identity already has ``max_concurrent``
                requests in flight.
        """
        max_slots = self.config.max_concurrent
        if max_slots <= 0 or self.cache is None:
            yield None
            return

        key = RedisCache.hashed_key(f"{self.config.key_prefix}concurrency:", identity)
        acquired: Optional[bool]
        try:
            acquired, current = await self.cache.acquire_concurrency_slot(
                key, max_slots, self.config.concurrency_ttl_seconds
            )
        except StoreUnavailableError:
            logger.warning("rate_limit_store_unavailable", dimension="concurrency", fail_open=True)
            acquired = None

        if acquired is None:
            yield None
            return
        if not acquired:
            logger.warning("concurrency_limit_exceeded", identity=identity, max_slots=max_slots)
            raise RateLimitedError(
                "Too many concurrent requests",
                code=ErrorCode.TOO_MANY_CONCURRENT_REQUESTS,
                retry_after=1,
            )
        try:
            yield current
        finally:
            try:
                # shielded so a cancelled request still returns its slot
                await asyncio.shield(self.cache.release_concurrency_slot(key))
            except StoreUnavailableError:
                logger.error("concurrency_slot_release_failed", identity=identity)

    async def in_flight(self, identity: str) -> int:
        if self.cache is None:
            return 0
        key = RedisCache.hashed_key(f"{self.config.key_prefix}concurrency:", identity)
        return await self.cache.get_counter(key)

    async def reset(self, dimension: str, identifier: str, *, window_seconds: int = 60) -> None:
        """Clear one counter, e.g. after an operator unblocks a caller."""
        if self.cache is None:
            return
        await self.cache.delete(self._key(dimension, identifier, window_seconds))
        logger.info("rate_limit_reset", dimension=dimension, identifier=identifier)


__all__ = [
    "DEFAULT_ROLE_LIMITS",
    "RateLimitConfig",
    "RateLimiter",
    "RequestIdentity",
    "RoleLimit",
]

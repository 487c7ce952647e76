from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from festguard.config import Settings, get_settings, reset_settings_cache
from festguard.logging import get_logger
from festguard.service.brute_force import BruteForceProtector
from festguard.service.credentials import CredentialVerifier, MemoryCredentialStore
from festguard.service.injection import InjectionDetector
from festguard.service.rate_limit import RateLimiter
from festguard.service.refresh_tokens import RefreshTokenManager
from festguard.service.sessions import SessionManager
from festguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse((
            parsed.scheme,
            netloc,
            parsed.path,
            parsed.params,
            parsed.query,
            parsed.fragment,
        ))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the shared store client and every security component for the app."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        cache: Optional[RedisCache] = None,
        credentials: Optional[CredentialVerifier] = None,
    ):
        self.settings = settings or get_settings()
        if cache is None and self.settings.redis_url:
            cache = RedisCache(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout,
                operation_timeout=self.settings.store_operation_timeout,
            )
        self.cache = cache
        if self.cache is None:
            # limiter and brute force admit; sessions and tokens refuse
            logger.warning(
                "shared_store_disabled",
                redis_url=_mask_url_password(self.settings.redis_url),
                test_mode=self.settings.test_mode,
            )

        self.rate_limiter = RateLimiter(self.cache, self.settings.rate_limit_config())
        self.injection = InjectionDetector(self.settings.injection_config())
        self.brute_force = BruteForceProtector(self.cache, self.settings.brute_force_config())
        self.sessions = SessionManager(self.cache, self.settings.session_config())
        self.refresh_tokens = RefreshTokenManager(
            self.cache, self.settings.refresh_token_config()
        )
        self.credentials: CredentialVerifier = credentials or MemoryCredentialStore()

        logger.info(
            "runtime_initialized",
            redis_url=_mask_url_password(self.settings.redis_url),
            store_enabled=self.cache is not None,
            rate_limit_algorithm=self.settings.rate_limit_algorithm.value,
            injection_blocking=self.settings.injection_block_requests,
            brute_force_fail_closed=self.settings.brute_force_fail_closed,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(value: Optional[Runtime]) -> None:
    global runtime
    with _runtime_lock:
        runtime = value


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings between tests."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        if not get_settings().test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = None


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests", "set_runtime"]

from __future__ import annotations

import os
from datetime import timedelta
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from festguard.logging import get_logger

logger = get_logger(__name__)


class RateLimitAlgorithm(str, Enum):
    """Counting strategy used by the rate limiter."""

    SLIDING_WINDOW = "sliding_window"
    FIXED_WINDOW = "fixed_window"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


_LIST_FIELDS = (
    "rate_limit_skip_paths",
    "rate_limit_ip_allowlist",
    "injection_categories",
    "injection_exclude_paths",
    "injection_scan_headers",
    "csrf_exempt_paths",
)


class Settings(BaseModel):
    """Runtime settings for the security control plane."""

    redis_url: str | None = env_field("redis://localhost:6379/0", "REDIS_URL")
    redis_socket_timeout: float = env_field(2.0, "REDIS_SOCKET_TIMEOUT")
    store_operation_timeout: float = env_field(
        1.0,
        "STORE_OPERATION_TIMEOUT",
        description="Upper bound in seconds for any single shared-store call",
    )
    test_mode: bool = env_field(False, "TEST_MODE")
    trust_forwarded_for: bool = env_field(
        False,
        "TRUST_FORWARDED_FOR",
        description="Use the first X-Forwarded-For hop as the client IP",
    )
    expose_error_causes: bool = env_field(
        False,
        "EXPOSE_ERROR_CAUSES",
        description="Attach a sanitized cause to 5xx bodies (development only)",
    )
    enable_hsts: bool = env_field(False, "ENABLE_HSTS")
    max_request_bytes: int = env_field(
        10 * 1024 * 1024,
        "MAX_REQUEST_BYTES",
        description="Largest accepted request body; 0 disables the check",
    )

    # CSRF (double submit, cookie-authenticated requests only)
    csrf_enabled: bool = env_field(True, "CSRF_ENABLED")
    csrf_exempt_paths: list[str] = env_field(
        ["/v1/auth/login", "/v1/auth/refresh"], "CSRF_EXEMPT_PATHS"
    )

    # Rate limiting
    rate_limit_enabled: bool = env_field(True, "RATE_LIMIT_ENABLED")
    rate_limit_algorithm: RateLimitAlgorithm = env_field(
        RateLimitAlgorithm.SLIDING_WINDOW, "RATE_LIMIT_ALGORITHM"
    )
    rate_limit_key_prefix: str = env_field("ratelimit:", "RATE_LIMIT_KEY_PREFIX")
    rate_limit_per_minute: int = env_field(60, "RATE_LIMIT_PER_MINUTE")
    rate_limit_per_hour: int = env_field(1000, "RATE_LIMIT_PER_HOUR")
    rate_limit_ip_per_minute: int = env_field(30, "RATE_LIMIT_IP_PER_MINUTE")
    rate_limit_enable_ip: bool = env_field(True, "RATE_LIMIT_ENABLE_IP")
    rate_limit_max_concurrent: int = env_field(
        0,
        "RATE_LIMIT_MAX_CONCURRENT",
        description="Simultaneous in-flight requests per identity; 0 disables",
    )
    rate_limit_skip_paths: list[str] = env_field(
        ["/healthz", "/metrics"], "RATE_LIMIT_SKIP_PATHS"
    )
    rate_limit_ip_allowlist: list[str] = env_field([], "RATE_LIMIT_IP_ALLOWLIST")
    rate_limit_login_per_minute: int = env_field(20, "RATE_LIMIT_LOGIN_PER_MINUTE")

    # Injection detection
    injection_enabled: bool = env_field(True, "INJECTION_ENABLED")
    injection_block_requests: bool = env_field(True, "INJECTION_BLOCK_REQUESTS")
    injection_log_attacks: bool = env_field(True, "INJECTION_LOG_ATTACKS")
    injection_categories: list[str] = env_field(
        ["sql", "nosql", "command", "path_traversal", "xss", "ldap", "xxe"],
        "INJECTION_CATEGORIES",
    )
    injection_exclude_paths: list[str] = env_field([], "INJECTION_EXCLUDE_PATHS")
    injection_scan_headers: list[str] = env_field(
        ["User-Agent", "Referer", "X-Forwarded-For", "X-Real-IP"],
        "INJECTION_SCAN_HEADERS",
    )
    injection_max_body_bytes: int = env_field(10 * 1024 * 1024, "INJECTION_MAX_BODY_BYTES")

    # Brute-force protection
    brute_force_max_attempts: int = env_field(5, "BRUTE_FORCE_MAX_ATTEMPTS")
    brute_force_window_seconds: int = env_field(15 * 60, "BRUTE_FORCE_WINDOW_SECONDS")
    brute_force_lockout_seconds: int = env_field(15 * 60, "BRUTE_FORCE_LOCKOUT_SECONDS")
    brute_force_progressive: bool = env_field(True, "BRUTE_FORCE_PROGRESSIVE")
    brute_force_multiplier: float = env_field(2.0, "BRUTE_FORCE_MULTIPLIER")
    brute_force_max_lockout_seconds: int = env_field(
        24 * 60 * 60, "BRUTE_FORCE_MAX_LOCKOUT_SECONDS"
    )
    brute_force_enable_ip: bool = env_field(True, "BRUTE_FORCE_ENABLE_IP")
    brute_force_enable_user: bool = env_field(True, "BRUTE_FORCE_ENABLE_USER")
    brute_force_fail_closed: bool = env_field(False, "BRUTE_FORCE_FAIL_CLOSED")

    # Sessions and refresh tokens
    session_ttl_minutes: int = env_field(24 * 60, "SESSION_TTL_MINUTES")
    max_sessions_per_user: int = env_field(5, "MAX_SESSIONS_PER_USER")
    refresh_token_ttl_minutes: int = env_field(30 * 24 * 60, "REFRESH_TOKEN_TTL_MINUTES")
    max_token_families_per_user: int = env_field(10, "MAX_TOKEN_FAMILIES_PER_USER")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(*_LIST_FIELDS, mode="before")
    @classmethod
    def _split_csv(cls, value: Any) -> Any:
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("redis_url", mode="before")
    @classmethod
    def _blank_redis_url(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("rate_limit_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: RateLimitAlgorithm) -> RateLimitAlgorithm:
        return RateLimitAlgorithm(value)

    @field_validator("brute_force_multiplier")
    @classmethod
    def _validate_multiplier(cls, value: float) -> float:
        if value < 1.0:
            logger.warning("brute_force_multiplier_clamped", configured=value)
            return 1.0
        return value

    def rate_limit_config(self):
        from festguard.service.rate_limit import RateLimitConfig

        endpoint_limits = {}
        if self.rate_limit_login_per_minute > 0:
            endpoint_limits["POST /v1/auth/login"] = self.rate_limit_login_per_minute
        return RateLimitConfig(
            enabled=self.rate_limit_enabled,
            algorithm=self.rate_limit_algorithm,
            key_prefix=self.rate_limit_key_prefix,
            default_per_minute=self.rate_limit_per_minute,
            default_per_hour=self.rate_limit_per_hour,
            ip_per_minute=self.rate_limit_ip_per_minute,
            enable_ip=self.rate_limit_enable_ip,
            endpoint_limits=endpoint_limits,
            max_concurrent=self.rate_limit_max_concurrent,
            skip_paths=tuple(self.rate_limit_skip_paths),
            ip_allowlist=tuple(self.rate_limit_ip_allowlist),
        )

    def injection_config(self):
        from festguard.service.injection import InjectionConfig

        return InjectionConfig.from_names(
            self.injection_categories,
            enabled=self.injection_enabled,
            block_requests=self.injection_block_requests,
            log_attacks=self.injection_log_attacks,
            exclude_paths=tuple(self.injection_exclude_paths),
            scan_headers=tuple(self.injection_scan_headers),
            max_body_bytes=self.injection_max_body_bytes,
        )

    def brute_force_config(self):
        from festguard.service.brute_force import BruteForceConfig

        return BruteForceConfig(
            max_attempts=self.brute_force_max_attempts,
            attempt_window=timedelta(seconds=self.brute_force_window_seconds),
            lockout_duration=timedelta(seconds=self.brute_force_lockout_seconds),
            progressive_lockout=self.brute_force_progressive,
            multiplier=self.brute_force_multiplier,
            max_lockout=timedelta(seconds=self.brute_force_max_lockout_seconds),
            enable_ip_blocking=self.brute_force_enable_ip,
            enable_user_blocking=self.brute_force_enable_user,
            fail_closed=self.brute_force_fail_closed,
        )

    def session_config(self):
        from festguard.service.sessions import SessionConfig

        return SessionConfig(
            session_duration=timedelta(minutes=self.session_ttl_minutes),
            max_sessions=self.max_sessions_per_user,
        )

    def refresh_token_config(self):
        from festguard.service.refresh_tokens import RefreshTokenConfig

        return RefreshTokenConfig(
            token_duration=timedelta(minutes=self.refresh_token_ttl_minutes),
            max_families_per_user=self.max_token_families_per_user,
        )


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None

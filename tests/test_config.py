from datetime import timedelta

from festguard.config import RateLimitAlgorithm, Settings, get_settings, reset_settings_cache
from festguard.service.injection import InjectionCategory


def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_IP_PER_MINUTE", "12")
    monkeypatch.setenv("RATE_LIMIT_ALGORITHM", "fixed_window")
    monkeypatch.setenv("BRUTE_FORCE_FAIL_CLOSED", "true")
    reset_settings_cache()
    settings = get_settings()
    assert settings.rate_limit_ip_per_minute == 12
    assert settings.rate_limit_algorithm == RateLimitAlgorithm.FIXED_WINDOW
    assert settings.brute_force_fail_closed is True
    assert get_settings() is settings


def test_csv_lists_are_split(monkeypatch):
    monkeypatch.setenv("INJECTION_CATEGORIES", "sql, xss ,,")
    monkeypatch.setenv("RATE_LIMIT_IP_ALLOWLIST", "10.0.0.0/8,192.168.0.1")
    reset_settings_cache()
    settings = get_settings()
    assert settings.injection_categories == ["sql", "xss"]
    assert settings.rate_limit_ip_allowlist == ["10.0.0.0/8", "192.168.0.1"]


def test_request_hardening_settings(monkeypatch):
    monkeypatch.setenv("MAX_REQUEST_BYTES", "2048")
    monkeypatch.setenv("CSRF_EXEMPT_PATHS", "/v1/auth/login,/v1/webhooks")
    reset_settings_cache()
    settings = get_settings()
    assert settings.max_request_bytes == 2048
    assert settings.csrf_enabled is True
    assert settings.csrf_exempt_paths == ["/v1/auth/login", "/v1/webhooks"]


def test_blank_redis_url_disables_store():
    assert Settings(redis_url="  ").redis_url is None


def test_multiplier_below_one_is_clamped():
    assert Settings(brute_force_multiplier=0.5).brute_force_multiplier == 1.0


def test_component_configs():
    settings = Settings(
        rate_limit_ip_per_minute=7,
        rate_limit_login_per_minute=3,
        rate_limit_skip_paths=["/healthz"],
        injection_categories=["sql", "XSS"],
        injection_block_requests=False,
        brute_force_lockout_seconds=60,
        session_ttl_minutes=90,
        max_sessions_per_user=2,
        refresh_token_ttl_minutes=60,
        max_token_families_per_user=4,
    )
    limits = settings.rate_limit_config()
    assert limits.ip_per_minute == 7
    assert limits.endpoint_limits == {"POST /v1/auth/login": 3}
    assert limits.skip_paths == ("/healthz",)

    injection = settings.injection_config()
    assert injection.categories == frozenset({InjectionCategory.SQL, InjectionCategory.XSS})
    assert injection.block_requests is False

    assert settings.brute_force_config().lockout_duration == timedelta(minutes=1)
    sessions = settings.session_config()
    assert sessions.session_duration == timedelta(minutes=90)
    assert sessions.max_sessions == 2
    tokens = settings.refresh_token_config()
    assert tokens.token_duration == timedelta(hours=1)
    assert tokens.max_families_per_user == 4


def test_login_limit_can_be_disabled():
    assert Settings(rate_limit_login_per_minute=0).rate_limit_config().endpoint_limits == {}

"""Tests for the request body size limit and CSRF double-submit checks."""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from festguard.api.middleware import csrf_tokens_match
from festguard.app import create_app
from festguard.config import Settings
from festguard.service.credentials import MemoryCredentialStore
from festguard.service.runtime import Runtime

PASSWORD = "correct horse battery staple"


@pytest.fixture
def credentials():
    store = MemoryCredentialStore()
    store.add_user("grace@example.com", PASSWORD, user_id="u-grace")
    return store


def _app(cache=None, credentials=None, **overrides):
    overrides.setdefault("rate_limit_enabled", False)
    settings = Settings(redis_url=None, **overrides)
    app = create_app(Runtime(settings, cache=cache, credentials=credentials))
    app.state.echo_calls = 0

    @app.post("/v1/echo")
    async def echo(request: Request):
        request.app.state.echo_calls += 1
        return {"size": len(await request.body())}

    return app


class TestRequestSizeLimit:
    def test_small_body_passes(self):
        with TestClient(_app(max_request_bytes=64)) as client:
            response = client.post("/v1/echo", content=b"x" * 10)
        assert response.status_code == 200
        assert response.json() == {"size": 10}

    def test_oversized_body_is_rejected_before_the_handler(self):
        app = _app(max_request_bytes=64, injection_max_body_bytes=64)
        payload = b"<script>alert(1)</script>" + b"x" * 100
        with TestClient(app) as client:
            response = client.post("/v1/echo", content=payload)
        assert response.status_code == 413
        error = response.json()["error"]
        assert error["code"] == "REQUEST_TOO_LARGE"
        assert error["details"] == {"max_bytes": 64}
        assert app.state.echo_calls == 0

    def test_chunked_body_is_measured(self):
        app = _app(max_request_bytes=64)
        with TestClient(app) as client:
            response = client.post("/v1/echo", content=iter([b"x" * 50, b"y" * 50]))
        assert response.status_code == 413
        assert app.state.echo_calls == 0

    def test_limit_can_be_disabled(self):
        with TestClient(_app(max_request_bytes=0)) as client:
            response = client.post("/v1/echo", content=b"x" * 1000)
        assert response.status_code == 200


def _login(client):
    response = client.post(
        "/v1/auth/login", json={"username": "grace@example.com", "password": PASSWORD}
    )
    assert response.status_code == 200
    data = response.json()["data"]
    return data["session_id"], data["csrf_token"], response


def _cookie(session_id, csrf_token=None):
    cookie = f"session_id={session_id}"
    if csrf_token:
        cookie += f"; csrf_token={csrf_token}"
    return {"Cookie": cookie}


@pytest.fixture
def client(cache, credentials):
    with TestClient(_app(cache, credentials)) as test_client:
        yield test_client


class TestCsrf:
    def test_login_issues_readable_csrf_cookie(self, client):
        _, csrf_token, response = _login(client)
        assert csrf_token
        cookies = response.headers.get_list("set-cookie")
        csrf_cookie = next(c for c in cookies if c.startswith("csrf_token="))
        assert csrf_token in csrf_cookie
        assert "HttpOnly" not in csrf_cookie

    def test_cookie_request_without_token_is_rejected(self, client):
        session_id, csrf_token, _ = _login(client)
        response = client.post("/v1/sessions/rotate", headers=_cookie(session_id, csrf_token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_MISSING"

    def test_mismatched_token_is_rejected(self, client):
        session_id, csrf_token, _ = _login(client)
        headers = {**_cookie(session_id, csrf_token), "X-CSRF-Token": "not-the-token"}
        response = client.post("/v1/sessions/rotate", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_INVALID"

    def test_planted_cookie_does_not_match_session(self, client):
        session_id, _, _ = _login(client)
        headers = {**_cookie(session_id, "planted"), "X-CSRF-Token": "planted"}
        response = client.post("/v1/auth/logout", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "CSRF_INVALID"

    def test_matching_token_passes(self, client):
        session_id, csrf_token, _ = _login(client)
        headers = {**_cookie(session_id, csrf_token), "X-CSRF-Token": csrf_token}
        response = client.post("/v1/sessions/rotate", headers=headers)
        assert response.status_code == 200

    def test_safe_methods_are_not_checked(self, client):
        session_id, _, _ = _login(client)
        assert client.get("/v1/sessions", headers=_cookie(session_id)).status_code == 200

    def test_session_header_is_not_checked(self, client):
        session_id, _, _ = _login(client)
        response = client.post("/v1/sessions/rotate", headers={"X-Session-ID": session_id})
        assert response.status_code == 200

    def test_check_can_be_disabled(self, cache, credentials):
        with TestClient(_app(cache, credentials, csrf_enabled=False)) as client:
            session_id, _, _ = _login(client)
            response = client.post("/v1/auth/logout", headers=_cookie(session_id))
        assert response.status_code == 200


def test_csrf_tokens_match():
    assert csrf_tokens_match("abc", "abc")
    assert csrf_tokens_match("abc", "abc", "abc")
    assert not csrf_tokens_match("abc", None)
    assert not csrf_tokens_match("abc", "abd")
    assert not csrf_tokens_match("abc", "abc", "xyz")

"""Tests for fingerprint-bound sessions."""

from datetime import timedelta

import pytest

from festguard.service.errors import ErrorCode, ExternalServiceError, UnauthorizedError
from festguard.service.sessions import SessionConfig, SessionManager, fingerprint

IP = "203.0.113.7"
UA = "FestivalApp/3.2 (iOS)"


@pytest.fixture
def sessions(cache):
    return SessionManager(cache, SessionConfig(session_duration=timedelta(hours=1), max_sessions=3))


class TestFingerprint:
    def test_stable_and_client_bound(self):
        assert fingerprint(IP, UA) == fingerprint(IP, UA)
        assert fingerprint(IP, UA) != fingerprint("198.51.100.1", UA)
        assert fingerprint(IP, UA) != fingerprint(IP, "curl/8.0")


class TestLifecycle:
    async def test_create_and_validate(self, sessions):
        created = await sessions.create_session("u-1", IP, UA, role="staff", meta={"device_id": "gate-4"})
        assert created.expires_at - created.created_at == timedelta(hours=1)

        session, valid = await sessions.validate_session(created.id, IP, UA)
        assert valid
        assert session.user_id == "u-1"
        assert session.role == "staff"
        assert session.meta == {"device_id": "gate-4"}

    async def test_unknown_session_is_invalid(self, sessions):
        assert await sessions.validate_session("nope", IP, UA) == (None, False)
        assert await sessions.validate_session("", IP, UA) == (None, False)

    async def test_fingerprint_mismatch_destroys_session(self, sessions):
        created = await sessions.create_session("u-1", IP, UA)
        session, valid = await sessions.validate_session(created.id, "198.51.100.1", UA)
        assert (session, valid) == (None, False)
        assert await sessions.get_session(created.id) is None
        assert await sessions.validate_session(created.id, IP, UA) == (None, False)
        assert await sessions.list_user_sessions("u-1") == []

    async def test_rotation_invalidates_old_id(self, sessions):
        created = await sessions.create_session("u-1", IP, UA)
        rotated = await sessions.rotate_session(created.id)
        assert rotated.id != created.id
        assert rotated.user_id == "u-1"
        assert await sessions.validate_session(created.id, IP, UA) == (None, False)
        session, valid = await sessions.validate_session(rotated.id, IP, UA)
        assert valid and session.id == rotated.id
        assert [s.id for s in await sessions.list_user_sessions("u-1")] == [rotated.id]

    async def test_rotating_missing_session(self, sessions):
        with pytest.raises(UnauthorizedError) as excinfo:
            await sessions.rotate_session("missing")
        assert excinfo.value.code == ErrorCode.SESSION_INVALID

    async def test_destroy(self, sessions):
        created = await sessions.create_session("u-1", IP, UA)
        assert await sessions.destroy_session(created.id) is True
        assert await sessions.destroy_session(created.id) is False
        assert await sessions.validate_session(created.id, IP, UA) == (None, False)


class TestPerUserLimits:
    async def test_oldest_session_is_evicted(self, sessions):
        created = [await sessions.create_session("u-2", IP, UA) for _ in range(4)]
        listed = [s.id for s in await sessions.list_user_sessions("u-2")]
        assert listed == [s.id for s in created[1:]]
        assert await sessions.validate_session(created[0].id, IP, UA) == (None, False)

    async def test_destroy_all_user_sessions(self, sessions):
        for _ in range(2):
            await sessions.create_session("u-3", IP, UA)
        other = await sessions.create_session("u-4", IP, UA)
        assert await sessions.destroy_all_user_sessions("u-3") == 2
        assert await sessions.list_user_sessions("u-3") == []
        assert (await sessions.validate_session(other.id, IP, UA))[1]


class TestStoreFailure:
    async def test_validation_fails_closed(self, down_cache):
        sessions = SessionManager(down_cache)
        assert await sessions.validate_session("any", IP, UA) == (None, False)

    async def test_writes_raise_service_unavailable(self, down_cache):
        sessions = SessionManager(down_cache)
        with pytest.raises(ExternalServiceError) as excinfo:
            await sessions.create_session("u-1", IP, UA)
        assert excinfo.value.code == ErrorCode.SERVICE_UNAVAILABLE
        assert excinfo.value.status_code == 503

    async def test_missing_store(self):
        sessions = SessionManager(None)
        assert await sessions.validate_session("any", IP, UA) == (None, False)
        with pytest.raises(ExternalServiceError):
            await sessions.destroy_all_user_sessions("u-1")

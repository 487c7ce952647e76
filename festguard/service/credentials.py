from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass
from typing import Dict, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from festguard.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class VerifiedUser:
    user_id: str
    role: str = "user"


class CredentialVerifier(Protocol):
    async def verify(self, username: str, password: str) -> Optional[VerifiedUser]: ...


@dataclass
class _UserRecord:
    user_id: str
    password_hash: str
    role: str


class MemoryCredentialStore:
    """In-process username/password directory hashed with argon2id.

    Used for development and tests; production deployments plug in their own
    ``CredentialVerifier``.
    """

    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self._users: Dict[str, _UserRecord] = {}
        self._state_lock = threading.Lock()
        # unknown usernames still pay for one hash verification
        self._dummy_hash = self._pwd_hasher.hash(uuid.uuid4().hex)

    def add_user(
        self,
        username: str,
        password: str,
        *,
        role: str = "user",
        user_id: Optional[str] = None,
    ) -> VerifiedUser:
        record = _UserRecord(
            user_id=user_id or str(uuid.uuid4()),
            password_hash=self._pwd_hasher.hash(password),
            role=role,
        )
        with self._state_lock:
            self._users[username.strip().lower()] = record
        logger.info("credential_user_added", user_id=record.user_id, role=role)
        return VerifiedUser(user_id=record.user_id, role=role)

    def _verify_sync(self, username: str, password: str) -> Optional[VerifiedUser]:
        with self._state_lock:
            record = self._users.get(username.strip().lower())
        stored_hash = record.password_hash if record else self._dummy_hash
        try:
            self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return None
        if record is None:
            return None
        return VerifiedUser(user_id=record.user_id, role=record.role)

    async def verify(self, username: str, password: str) -> Optional[VerifiedUser]:
        if not username or not password:
            return None
        return await asyncio.to_thread(self._verify_sync, username, password)


__all__ = ["CredentialVerifier", "MemoryCredentialStore", "VerifiedUser"]

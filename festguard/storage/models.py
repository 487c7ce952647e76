from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional


def _to_dt(value: Optional[str]) -> datetime:
    if not value:
        return datetime.now(timezone.utc)
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int = 0
    remaining: int = 0
    reset_after: int = 0  # seconds until the window frees a slot
    retry_after: int = 0
    dimension: Optional[str] = None
    identifier: Optional[str] = None
    enforced: bool = True  # False when skipped, allowlisted or failing open

    @classmethod
    def admit(cls, *, dimension: Optional[str] = None, identifier: Optional[str] = None) -> "RateLimitDecision":
        return cls(allowed=True, dimension=dimension, identifier=identifier, enforced=False)

    def headers(self) -> Dict[str, str]:
        if not self.enforced:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(max(0, self.reset_after)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(max(1, self.retry_after))
        return headers


@dataclass
class BruteForceStatus:
    allowed: bool
    lockout: timedelta = field(default_factory=timedelta)
    attempts: int = 0

    @property
    def retry_after(self) -> int:
        return max(1, int(self.lockout.total_seconds() + 0.999))


@dataclass
class SessionRecord:
    id: str
    user_id: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    role: str = "user"
    meta: Dict | None = None

    def to_hash(self) -> Dict[str, str]:
        return {
            "user_id": self.user_id,
            "fingerprint": self.fingerprint,
            "created_at": str(_to_ms(self.created_at)),
            "expires_at": str(_to_ms(self.expires_at)),
            "ip_addr": self.ip_addr or "",
            "user_agent": self.user_agent or "",
            "role": self.role,
            "meta": json.dumps(self.meta or {}),
        }

    @classmethod
    def from_hash(cls, session_id: str, data: Dict[str, str]) -> "SessionRecord":
        try:
            meta = json.loads(data.get("meta") or "{}")
        except (json.JSONDecodeError, TypeError):
            meta = {}
        return cls(
            id=session_id,
            user_id=data["user_id"],
            fingerprint=data.get("fingerprint", ""),
            created_at=_to_dt(data.get("created_at")),
            expires_at=_to_dt(data.get("expires_at")),
            ip_addr=data.get("ip_addr") or None,
            user_agent=data.get("user_agent") or None,
            role=data.get("role") or "user",
            meta=meta or None,
        )


@dataclass
class RefreshToken:
    user_id: str
    device_id: str
    family: str
    created_at: datetime
    expires_at: datetime
    revoked: bool = False
    token: Optional[str] = None  # raw value, only present right after issuance
    token_hash: Optional[str] = None
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None

    def to_hash(self) -> Dict[str, str]:
        return {
            "user_id": self.user_id,
            "device_id": self.device_id,
            "family": self.family,
            "revoked": "1" if self.revoked else "0",
            "created_at": str(_to_ms(self.created_at)),
            "expires_at": str(_to_ms(self.expires_at)),
            "ip_addr": self.ip_addr or "",
            "user_agent": self.user_agent or "",
        }

    @classmethod
    def from_hash(cls, token_hash: str, data: Dict[str, str]) -> "RefreshToken":
        return cls(
            user_id=data["user_id"],
            device_id=data.get("device_id", ""),
            family=data["family"],
            created_at=_to_dt(data.get("created_at")),
            expires_at=_to_dt(data.get("expires_at")),
            revoked=data.get("revoked") == "1",
            token_hash=token_hash,
            ip_addr=data.get("ip_addr") or None,
            user_agent=data.get("user_agent") or None,
        )

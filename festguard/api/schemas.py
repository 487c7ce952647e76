from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from festguard.service.errors import CODE_TABLE

_VALID_ERROR_CODES = frozenset(code.value for code in CODE_TABLE)

MAX_USERNAME_LENGTH = 254
MAX_PASSWORD_LENGTH = 1024


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width characters."""
    normalized = unicodedata.normalize("NFKC", value)
    return "".join(ch for ch in normalized if unicodedata.category(ch) != "Cf")


class ErrorBody(BaseModel):
    """Error body with a stable code from the error table."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None
    request_id: Optional[str] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(f"unknown error code: {value}")
        return value


class ErrorEnvelope(BaseModel):
    error: ErrorBody


class Envelope(BaseModel):
    """Success envelope."""

    status: str = Field("ok", pattern="^ok$")
    data: Optional[Any] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    username: str = Field(..., min_length=1, max_length=MAX_USERNAME_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)
    device_id: str = Field(default="web", max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_username(cls, value: str) -> str:
        return _normalize_unicode(value).lower()


class RefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=512)


class AuthResponse(BaseModel):
    user_id: str
    role: str = "user"
    session_id: str
    session_expires_at: datetime
    refresh_token: str
    refresh_token_expires_at: datetime
    token_type: str = "refresh"
    csrf_token: Optional[str] = None


class RefreshResponse(BaseModel):
    refresh_token: str
    refresh_token_expires_at: datetime


class SessionInfo(BaseModel):
    id: str
    created_at: datetime
    expires_at: datetime
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None
    current: bool = False


class SessionList(BaseModel):
    sessions: List[SessionInfo]


class SessionRotated(BaseModel):
    session_id: str
    session_expires_at: datetime


class HealthStatus(BaseModel):
    status: str
    store: str
    version: str

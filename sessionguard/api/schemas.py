from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from sessionguard.storage.models import UserStatus


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "account_locked",
    "account_banned",
    "account_suspended",
    "csrf_invalid",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable code value."""

    code: str = Field(..., description="Stable machine readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_HANDLE_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_handle(value: Optional[str]) -> Optional[str]:
    """Alphanumeric with underscores/hyphens, max 64 chars."""
    if value is None:
        return None
    if len(value) > 64:
        raise ValueError("handle must be at most 64 characters")
    if len(value) < 1:
        raise ValueError("handle must be at least 1 character")
    if not _HANDLE_PATTERN.match(value):
        raise ValueError("handle must contain only alphanumeric characters, underscores, and hyphens")
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


_DEVICE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.:-]{1,128}$")


def _validate_device_id(value: str) -> str:
    if not _DEVICE_ID_PATTERN.match(value):
        raise ValueError("device_id must be 1-128 characters of [a-zA-Z0-9_.:-]")
    return value


class SignupRequest(BaseModel):
    email: str
    password: str
    handle: Optional[str] = Field(default=None, max_length=64)
    device_id: str = Field(default="web", max_length=128)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("handle")
    @classmethod
    def _validate_handle(cls, value: Optional[str]) -> Optional[str]:
        return _validate_handle(value)

    @field_validator("device_id")
    @classmethod
    def _validate_device(cls, value: str) -> str:
        return _validate_device_id(value)


class LoginRequest(BaseModel):
    """``identifier`` is an email address or a handle."""

    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    device_id: str = Field(default="web", max_length=128)

    @field_validator("identifier")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        normalized = _normalize_unicode(value.strip())
        if "@" in normalized:
            return _validate_email(normalized)
        return normalized

    @field_validator("device_id")
    @classmethod
    def _validate_device(cls, value: str) -> str:
        return _validate_device_id(value)


class AuthResponse(BaseModel):
    user_id: str
    role: str = "user"
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    csrf_token: str
    requires_captcha: bool = False


class TokenRefreshRequest(BaseModel):
    # Optional because browser clients send the refresh cookie instead
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class LogoutRequest(BaseModel):
    refresh_token: Optional[str] = Field(default=None, max_length=2048)


class SessionInfo(BaseModel):
    session_id: str
    device_id: str
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime
    last_used_at: Optional[datetime] = None
    expires_at: datetime


class SessionListResponse(BaseModel):
    items: List[SessionInfo]


class CsrfTokenResponse(BaseModel):
    csrf_token: str


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=4096)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class MessageResponse(BaseModel):
    message: str


class UserProfile(BaseModel):
    id: str
    email: str
    handle: Optional[str] = None
    role: str
    status: UserStatus
    suspended_until: Optional[datetime] = None
    created_at: datetime


class AccountStatusRequest(BaseModel):
    status: UserStatus
    suspended_until: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=1024)

    @model_validator(mode="after")
    def _only_suspensions_have_an_end(self):
        if self.suspended_until is not None and self.status != UserStatus.SUSPENDED:
            raise ValueError("suspended_until is only valid with status 'suspended'")
        return self

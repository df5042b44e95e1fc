from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UserStatus(str, Enum):
    """Moderation status of an account."""

    ACTIVE = "active"
    SUSPENDED = "suspended"
    BANNED = "banned"


@dataclass
class User:
    id: str
    email: str
    handle: Optional[str] = None
    role: str = "user"
    status: UserStatus = UserStatus.ACTIVE
    suspended_until: Optional[datetime] = None
    moderation_note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None

    @property
    def is_banned(self) -> bool:
        return self.status == UserStatus.BANNED


@dataclass
class UserAuthCredential:
    user_id: str
    password_hash: Optional[str] = None
    password_algo: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    last_updated_at: Optional[datetime] = None


@dataclass
class RefreshSession:
    """Server-side record backing one device's refresh credential.

    ``lookup_key`` is a fast deterministic digest used to find the row;
    ``secret_hash`` is the keyed verification hash compared in constant time.
    A session is *consumed* once ``replaced_by_session_id`` is set by rotation.
    """

    id: str
    user_id: str
    device_id: str
    lookup_key: str
    secret_hash: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by_session_id: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        device_id: str,
        *,
        lookup_key: str,
        secret_hash: str,
        ttl_minutes: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "RefreshSession":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            device_id=device_id,
            lookup_key=lookup_key,
            secret_hash=secret_hash,
            created_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            last_used_at=issued,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    @property
    def is_consumed(self) -> bool:
        return self.replaced_by_session_id is not None

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and not self.is_consumed and self.expires_at > now


@dataclass
class ResetToken:
    id: str
    user_id: str
    secret_hash: str
    created_at: datetime
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        secret_hash: str,
        *,
        ttl_minutes: int,
        ip_address: str | None = None,
        user_agent: str | None = None,
        now: datetime | None = None,
    ) -> "ResetToken":
        issued = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            secret_hash=secret_hash,
            created_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class RateLimitCounter:
    identifier: str
    action: str
    attempts: int
    window_reset_at: datetime


@dataclass
class LockoutRecord:
    identifier: str
    locked_until: datetime
    attempts: int
    reason: str
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: datetime) -> bool:
        return self.locked_until > now


@dataclass
class AuditEntry:
    id: str
    event: str
    severity: str
    success: bool = True
    user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    details: Dict = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

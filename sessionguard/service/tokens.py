from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditEvent, AuditLog, AuditSeverity
from sessionguard.service.account_status import evaluate_status
from sessionguard.service.errors import AuthenticationError, ForbiddenError
from sessionguard.service.signing import TokenSigner, keyed_digest, sha256_hex
from sessionguard.storage.models import RefreshSession, User

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
# Same message for unknown, expired, revoked and reused secrets
REFRESH_DENIED_MESSAGE = "invalid refresh token"


class RefreshSessionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def replace_device_session(self, session: RefreshSession) -> int:
        ...

    def get_refresh_session_by_lookup(self, lookup_key: str) -> Optional[RefreshSession]:
        ...

    def list_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        ...

    def consume_refresh_session(
        self, session_id: str, successor: RefreshSession, now: datetime
    ) -> bool:
        ...

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        ...

    def revoke_device_sessions(self, user_id: str, device_id: str, now: datetime) -> int:
        ...

    def revoke_user_refresh_sessions(self, user_id: str, now: datetime) -> int:
        ...

    def purge_refresh_sessions(self, before: datetime) -> int:
        ...


@dataclass
class SessionSummary:
    session_id: str
    device_id: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    created_at: datetime
    last_used_at: Optional[datetime]
    expires_at: datetime


@dataclass
class RotationResult:
    access_token: str
    refresh_token: str
    user: User
    session: RefreshSession


class TokenService:
    """Access credentials plus rotating, device-bound refresh sessions.

    Refresh secrets are never stored. Each session keeps a SHA-256 lookup key
    for an indexed fetch and an HMAC verification hash compared in constant
    time. Rotation is a compare-and-set in the store; presenting the secret of
    an already rotated session is treated as theft and kills the device's
    session family.
    """

    def __init__(
        self,
        store: RefreshSessionStore,
        settings: Settings,
        *,
        signer: Optional[TokenSigner] = None,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger
        self._clock = clock
        self.signer = signer or TokenSigner(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )
        self.audit = audit
        self._hash_secret = settings.effective_token_hash_secret

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    # -- access credentials ------------------------------------------------

    def issue_access(self, user_id: str) -> str:
        return self.signer.encode(
            ACCESS_TOKEN_TYPE, user_id, self.settings.access_token_ttl_minutes * 60
        )

    def verify_access(self, token: str) -> Optional[str]:
        payload = self.signer.decode(token, token_type=ACCESS_TOKEN_TYPE)
        if not payload:
            return None
        return str(payload["sub"])

    # -- refresh credentials -----------------------------------------------

    def _lookup_key(self, raw_secret: str) -> str:
        return sha256_hex(raw_secret)

    def _secret_hash(self, raw_secret: str) -> str:
        return keyed_digest(self._hash_secret, raw_secret)

    def _new_session(
        self,
        user_id: str,
        device_id: str,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> tuple[str, RefreshSession]:
        raw_secret = secrets.token_urlsafe(48)
        session = RefreshSession.new(
            user_id,
            device_id,
            lookup_key=self._lookup_key(raw_secret),
            secret_hash=self._secret_hash(raw_secret),
            ttl_minutes=self.settings.refresh_token_ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        return raw_secret, session

    def _find(self, raw_secret: Optional[str]) -> Optional[RefreshSession]:
        """Locate the session for a presented secret regardless of its state."""
        if not raw_secret or not isinstance(raw_secret, str) or not raw_secret.isascii():
            return None
        session = self.store.get_refresh_session_by_lookup(self._lookup_key(raw_secret))
        if session is None:
            return None
        if not hmac.compare_digest(session.secret_hash, self._secret_hash(raw_secret)):
            return None
        return session

    async def issue_refresh(
        self,
        user_id: str,
        device_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Start a new refresh session for ``device_id``, replacing any active one."""
        raw_secret, session = self._new_session(
            user_id,
            device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            now=self._now(),
        )
        revoked = self.store.replace_device_session(session)
        self.logger.info(
            "refresh_session_issued",
            user_id=user_id,
            device_id=device_id,
            session_id=session.id,
            replaced=revoked,
        )
        return raw_secret

    async def verify(self, raw_secret: str) -> RefreshSession:
        session = self._find(raw_secret)
        if session is None or not session.is_active(self._now()):
            raise AuthenticationError(REFRESH_DENIED_MESSAGE)
        return session

    async def rotate(
        self,
        raw_secret: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> RotationResult:
        """Exchange a refresh secret for a new access and refresh pair.

        Only one caller can rotate a given secret. Reuse of a consumed secret
        revokes the device's session family and is audited at high severity.
        Callers always see the same generic denial.
        """
        now = self._now()
        session = self._find(raw_secret)
        if session is None:
            self.logger.info("refresh_denied", reason="not_found")
            raise AuthenticationError(REFRESH_DENIED_MESSAGE)

        if session.is_consumed:
            await self._handle_reuse(session, ip_address=ip_address, user_agent=user_agent)
            raise AuthenticationError(REFRESH_DENIED_MESSAGE)

        if session.is_revoked or session.expires_at <= now:
            self.logger.info(
                "refresh_denied",
                reason="revoked" if session.is_revoked else "expired",
                session_id=session.id,
            )
            raise AuthenticationError(REFRESH_DENIED_MESSAGE)

        user = self.store.get_user(session.user_id)
        if user is None:
            self.logger.warning("refresh_denied", reason="user_missing", session_id=session.id)
            raise AuthenticationError(REFRESH_DENIED_MESSAGE)
        try:
            user = evaluate_status(self.store, user, now)
        except ForbiddenError:
            self.store.revoke_refresh_session(session.id, now)
            raise

        new_secret, successor = self._new_session(
            session.user_id,
            session.device_id,
            ip_address=ip_address or session.ip_address,
            user_agent=user_agent or session.user_agent,
            now=now,
        )
        if not self.store.consume_refresh_session(session.id, successor, now):
            # Lost a concurrent rotation of the same secret
            self.logger.info("refresh_denied", reason="rotation_conflict", session_id=session.id)
            raise AuthenticationError(REFRESH_DENIED_MESSAGE)

        self.logger.info(
            "refresh_session_rotated",
            user_id=user.id,
            device_id=session.device_id,
            session_id=successor.id,
            previous_session_id=session.id,
        )
        return RotationResult(
            access_token=self.issue_access(user.id),
            refresh_token=new_secret,
            user=user,
            session=successor,
        )

    async def _handle_reuse(
        self,
        session: RefreshSession,
        *,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> None:
        now = self._now()
        if self.settings.breach_revokes_all_devices:
            revoked = self.store.revoke_user_refresh_sessions(session.user_id, now)
        else:
            revoked = self.store.revoke_device_sessions(session.user_id, session.device_id, now)
        self.logger.warning(
            "refresh_token_reuse_detected",
            user_id=session.user_id,
            device_id=session.device_id,
            session_id=session.id,
            revoked=revoked,
        )
        if self.audit is not None:
            self.audit.record(
                AuditEvent.TOKEN_REUSE_DETECTED,
                user_id=session.user_id,
                severity=AuditSeverity.HIGH,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                details={
                    "device_id": session.device_id,
                    "session_id": session.id,
                    "revoked_sessions": revoked,
                    "scope": "user" if self.settings.breach_revokes_all_devices else "device",
                },
            )

    async def revoke(self, raw_secret: str) -> Optional[RefreshSession]:
        """Revoke the session behind a secret; returns it, or None if nothing changed."""
        session = self._find(raw_secret)
        if session is None:
            return None
        if not self.store.revoke_refresh_session(session.id, self._now()):
            return None
        self.logger.info("refresh_session_revoked", user_id=session.user_id, session_id=session.id)
        return session

    async def revoke_device(self, user_id: str, device_id: str) -> int:
        revoked = self.store.revoke_device_sessions(user_id, device_id, self._now())
        self.logger.info("device_sessions_revoked", user_id=user_id, device_id=device_id, revoked=revoked)
        return revoked

    async def revoke_all(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_sessions(user_id, self._now())
        self.logger.info("user_sessions_revoked", user_id=user_id, revoked=revoked)
        return revoked

    async def list_sessions(self, user_id: str) -> List[SessionSummary]:
        now = self._now()
        active = [s for s in self.store.list_refresh_sessions(user_id) if s.is_active(now)]
        active.sort(key=lambda s: s.last_used_at or s.created_at, reverse=True)
        return [
            SessionSummary(
                session_id=s.id,
                device_id=s.device_id,
                ip_address=s.ip_address,
                user_agent=s.user_agent,
                created_at=s.created_at,
                last_used_at=s.last_used_at,
                expires_at=s.expires_at,
            )
            for s in active
        ]

    async def cleanup_expired(self) -> int:
        cutoff = self._now() - timedelta(days=self.settings.session_retention_days)
        purged = self.store.purge_refresh_sessions(cutoff)
        if purged:
            self.logger.info("refresh_sessions_purged", count=purged)
        return purged

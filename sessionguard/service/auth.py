from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.account_status import evaluate_status
from sessionguard.service.audit import AuditEvent, AuditLog, AuditSeverity
from sessionguard.service.csrf import CsrfGuard
from sessionguard.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ValidationError,
)
from sessionguard.service.password_reset import PasswordResetService, ResetRequestOutcome
from sessionguard.service.passwords import PasswordManager
from sessionguard.service.rate_limit import RateLimitEngine, RateLimitResult
from sessionguard.service.tokens import TokenService
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import User, UserStatus

logger = get_logger(__name__)

DEFAULT_DEVICE_ID = "web"
INVALID_CREDENTIALS_MESSAGE = "invalid credentials"


@dataclass
class AuthResult:
    user: User
    access_token: str
    refresh_token: str
    csrf_token: str
    rate_limit: Optional[RateLimitResult] = None


class AuthService:
    """Account flows built from the token, reset, rate limit and CSRF pieces.

    Every flow that can be abused from the outside is counted by the rate
    limiter before any credential work happens.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        tokens: TokenService,
        rate_limiter: RateLimitEngine,
        passwords: PasswordManager,
        resets: PasswordResetService,
        csrf: CsrfGuard,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.tokens = tokens
        self.rate_limiter = rate_limiter
        self.passwords = passwords
        self.resets = resets
        self.csrf = csrf
        self.audit = audit or AuditLog(store)
        self.logger = logger
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def raise_if_denied(self, result: RateLimitResult) -> None:
        if result.allowed:
            return
        retry_after = result.retry_after_seconds(self._now())
        if result.locked and result.locked_until is not None:
            raise AccountLockedError(result.locked_until, retry_after=retry_after)
        raise RateLimitedError(
            retry_after=retry_after,
            detail={"requires_captcha": result.requires_captcha},
        )

    async def _start_session(
        self,
        user: User,
        *,
        device_id: str,
        ip_address: Optional[str],
        user_agent: Optional[str],
        rate_limit: Optional[RateLimitResult] = None,
    ) -> AuthResult:
        refresh_token = await self.tokens.issue_refresh(
            user.id, device_id, ip_address=ip_address, user_agent=user_agent
        )
        return AuthResult(
            user=user,
            access_token=self.tokens.issue_access(user.id),
            refresh_token=refresh_token,
            csrf_token=self.csrf.issue(user.id),
            rate_limit=rate_limit,
        )

    def _find_user(self, identifier: str) -> Optional[User]:
        identifier = identifier.strip()
        if "@" in identifier:
            return self.store.get_user_by_email(identifier)
        return self.store.get_user_by_handle(identifier)

    async def signup(
        self,
        email: str,
        password: str,
        handle: Optional[str] = None,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: str = DEFAULT_DEVICE_ID,
    ) -> AuthResult:
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        result = await self.rate_limiter.check(
            "register", ip_address=ip_address, identifier=None if ip_address else email
        )
        self.raise_if_denied(result)

        try:
            user = self.store.create_user(email=email, handle=handle)
        except ConstraintViolation as exc:
            raise ConflictError("account already exists", detail=exc.detail) from exc
        password_hash, password_algo = self.passwords.hash(password)
        self.store.save_password(user.id, password_hash, password_algo)
        self.logger.info("user_registered", user_id=user.id)
        self.audit.record(
            AuditEvent.REGISTER,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return await self._start_session(
            user, device_id=device_id, ip_address=ip_address, user_agent=user_agent
        )

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_id: str = DEFAULT_DEVICE_ID,
    ) -> AuthResult:
        """Password login.

        Order matters: the attempt is counted and any lockout enforced before
        the password is looked at, so a locked identifier stays locked even
        when the caller finally guesses right.
        """
        user = self._find_user(identifier)
        # email and handle share one lockout track per account
        track = user.email if user else identifier
        result = await self.rate_limiter.check(
            "login",
            ip_address=ip_address,
            identifier=track,
            user_id=user.id if user else None,
        )
        self.raise_if_denied(result)

        record = self.store.get_password_record(user.id) if user else None
        verified = False
        if user and record:
            stored_hash, algo = record
            verified = self.passwords.verify(stored_hash, algo, password)
            if verified and self.passwords.needs_rehash(stored_hash):
                new_hash, new_algo = self.passwords.hash(password)
                self.store.save_password(user.id, new_hash, new_algo)
                self.logger.info("password_rehashed", user_id=user.id)
        if not user or not verified:
            self.logger.info(
                "login_failed",
                reason="unknown_user" if not user else "bad_password",
                attempts=result.attempts,
            )
            self.audit.record(
                AuditEvent.LOGIN_FAILED,
                user_id=user.id if user else None,
                severity=AuditSeverity.MEDIUM,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"attempts": result.attempts},
            )
            raise AuthenticationError(
                INVALID_CREDENTIALS_MESSAGE,
                detail={"requires_captcha": result.requires_captcha},
            )

        try:
            user = evaluate_status(self.store, user, self._now())
        except ForbiddenError as exc:
            self.audit.record(
                AuditEvent.LOGIN_FAILED,
                user_id=user.id,
                severity=AuditSeverity.MEDIUM,
                success=False,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"reason": exc.error_code},
            )
            raise

        await self.rate_limiter.clear_all("login", ip_address=ip_address, identifier=track)
        session = await self._start_session(
            user,
            device_id=device_id,
            ip_address=ip_address,
            user_agent=user_agent,
            rate_limit=result,
        )
        self.logger.info("login_succeeded", user_id=user.id, device_id=device_id)
        self.audit.record(
            AuditEvent.LOGIN_SUCCESS,
            user_id=user.id,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"device_id": device_id},
        )
        return session

    async def refresh(
        self,
        raw_secret: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        result = None
        if ip_address:
            result = await self.rate_limiter.check("refresh", ip_address=ip_address)
            self.raise_if_denied(result)
        rotation = await self.tokens.rotate(
            raw_secret, ip_address=ip_address, user_agent=user_agent
        )
        return AuthResult(
            user=rotation.user,
            access_token=rotation.access_token,
            refresh_token=rotation.refresh_token,
            csrf_token=self.csrf.issue(rotation.user.id),
            rate_limit=result,
        )

    async def logout(
        self,
        raw_secret: Optional[str],
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        """Revoke the presented refresh session. Unknown secrets are a no-op."""
        if not raw_secret:
            return False
        session = await self.tokens.revoke(raw_secret)
        if session is not None:
            self.audit.record(
                AuditEvent.LOGOUT,
                user_id=session.user_id,
                ip_address=ip_address,
                user_agent=user_agent,
                details={"device_id": session.device_id},
            )
        return session is not None

    async def logout_all(self, user_id: str, *, actor_id: Optional[str] = None) -> int:
        revoked = await self.tokens.revoke_all(user_id)
        self.audit.record(
            AuditEvent.SESSIONS_REVOKED,
            user_id=user_id,
            severity=AuditSeverity.MEDIUM,
            details={"revoked_sessions": revoked, "actor_id": actor_id or user_id},
        )
        return revoked

    async def logout_device(self, user_id: str, device_id: str) -> int:
        revoked = await self.tokens.revoke_device(user_id, device_id)
        if revoked:
            self.audit.record(
                AuditEvent.SESSIONS_REVOKED,
                user_id=user_id,
                details={"revoked_sessions": revoked, "device_id": device_id},
            )
        return revoked

    async def request_password_reset(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequestOutcome:
        result = await self.rate_limiter.check(
            "password_reset", ip_address=ip_address, identifier=email
        )
        self.raise_if_denied(result)
        return await self.resets.request_reset_for_email(
            email, ip_address=ip_address, user_agent=user_agent
        )

    async def confirm_password_reset(
        self,
        envelope: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        if ip_address:
            result = await self.rate_limiter.check("reset_confirm", ip_address=ip_address)
            self.raise_if_denied(result)
        return await self.resets.reset_password(
            envelope, new_password, ip_address=ip_address, user_agent=user_agent
        )

    async def set_account_status(
        self,
        user_id: str,
        status: UserStatus,
        *,
        suspended_until: Optional[datetime] = None,
        note: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> User:
        """Moderation transitions. Bans and suspensions end every refresh session."""
        status = UserStatus(status)
        if status == UserStatus.SUSPENDED and suspended_until is not None:
            if suspended_until.tzinfo is None:
                suspended_until = suspended_until.replace(tzinfo=timezone.utc)
            if suspended_until <= self._now():
                raise ValidationError(
                    "suspended_until must be in the future",
                    detail={"field": "suspended_until"},
                )
        user = self.store.set_user_status(
            user_id,
            status,
            suspended_until=suspended_until if status == UserStatus.SUSPENDED else None,
            moderation_note=note,
        )
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})

        revoked = 0
        if status in (UserStatus.BANNED, UserStatus.SUSPENDED):
            revoked = await self.tokens.revoke_all(user_id)
        event = {
            UserStatus.BANNED: AuditEvent.ACCOUNT_BANNED,
            UserStatus.SUSPENDED: AuditEvent.ACCOUNT_SUSPENDED,
            UserStatus.ACTIVE: AuditEvent.ACCOUNT_REINSTATED,
        }[status]
        self.logger.warning(
            "account_status_changed",
            user_id=user_id,
            status=status.value,
            actor_id=actor_id,
            revoked=revoked,
        )
        self.audit.record(
            event,
            user_id=user_id,
            severity=AuditSeverity.MEDIUM if status == UserStatus.ACTIVE else AuditSeverity.HIGH,
            details={
                "actor_id": actor_id,
                "suspended_until": user.suspended_until.isoformat() if user.suspended_until else None,
                "note": note,
                "revoked_sessions": revoked,
            },
        )
        return user

    async def cleanup_expired(self) -> dict[str, int]:
        """Purge lapsed sessions, reset tokens and local rate limit state."""
        summary = {"refresh_sessions": 0, "reset_tokens": 0, "rate_limit_entries": 0}
        for key, job in (
            ("refresh_sessions", self.tokens.cleanup_expired),
            ("reset_tokens", self.resets.cleanup_expired),
        ):
            try:
                summary[key] = await job()
            except Exception as exc:
                self.logger.error("cleanup_failed", job=key, error=str(exc))
        summary["rate_limit_entries"] = self.rate_limiter.purge_local()
        return summary

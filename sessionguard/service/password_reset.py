from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditEvent, AuditLog, AuditSeverity
from sessionguard.service.errors import (
    AccountBannedError,
    InvalidResetTokenError,
    NotFoundError,
    ResetFailureReason,
)
from sessionguard.service.passwords import PasswordManager
from sessionguard.service.signing import TokenSigner, sha256_hex
from sessionguard.storage.models import ResetToken, User, UserStatus

logger = get_logger(__name__)

RESET_TOKEN_TYPE = "password_reset"
# Returned for every reset request so callers cannot discover which addresses exist
RESET_REQUEST_MESSAGE = "If an account exists for that address, a reset link has been sent."


class ResetNotifier(Protocol):
    async def send_reset(self, user: User, envelope: str, expires_at: datetime) -> None:
        ...


class LoggingResetNotifier:
    """Default notifier: records that a reset is ready without exposing the envelope.

    Deployments plug in their own delivery channel.
    """

    async def send_reset(self, user: User, envelope: str, expires_at: datetime) -> None:
        logger.info(
            "password_reset_ready",
            user_id=user.id,
            expires_at=expires_at.isoformat(),
        )


@dataclass
class ResetIssue:
    envelope: str
    expires_at: datetime


@dataclass
class ResetRequestOutcome:
    message: str
    issued: bool


@dataclass
class ResetValidation:
    user_id: str
    secret_hash: str
    token_id: str


class PasswordResetService:
    """Single-use password reset tokens.

    The client-facing envelope is a signed ``{sub, sid, exp}`` where ``sid``
    is a random secret; only its SHA-256 is stored. Completing a reset stores
    the new credential, burns the token and revokes every refresh session of
    the user in one store transaction.
    """

    def __init__(
        self,
        store,
        settings: Settings,
        *,
        passwords: PasswordManager,
        signer: Optional[TokenSigner] = None,
        audit: Optional[AuditLog] = None,
        notifier: Optional[ResetNotifier] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.settings = settings
        self.passwords = passwords
        self._clock = clock
        self.signer = signer or TokenSigner(
            settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )
        self.audit = audit or AuditLog(store)
        self.notifier = notifier or LoggingResetNotifier()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    async def request_reset(
        self,
        user_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetIssue:
        """Issue a fresh reset envelope, invalidating any earlier unused token."""
        now = self._now()
        ttl_minutes = self.settings.reset_token_ttl_minutes
        secret = secrets.token_urlsafe(32)
        token = ResetToken.new(
            user_id,
            sha256_hex(secret),
            ttl_minutes=ttl_minutes,
            ip_address=ip_address,
            user_agent=user_agent,
            now=now,
        )
        invalidated = self.store.replace_reset_token(token)
        envelope = self.signer.encode(RESET_TOKEN_TYPE, user_id, ttl_minutes * 60, sid=secret)
        logger.info(
            "password_reset_issued",
            user_id=user_id,
            reset_id=token.id,
            invalidated=invalidated,
        )
        self.audit.record(
            AuditEvent.PASSWORD_RESET_REQUEST,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return ResetIssue(envelope=envelope, expires_at=token.expires_at)

    async def request_reset_for_email(
        self,
        email: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ResetRequestOutcome:
        """Entry point for "forgot password" forms.

        Unknown and banned addresses get exactly the same outcome as real ones
        and no token is created for them.
        """
        user = self.store.get_user_by_email(email)
        if user is None or user.status == UserStatus.BANNED:
            logger.info(
                "password_reset_request_ignored",
                reason="unknown" if user is None else "banned",
            )
            return ResetRequestOutcome(message=RESET_REQUEST_MESSAGE, issued=False)

        issue = await self.request_reset(user.id, ip_address=ip_address, user_agent=user_agent)
        try:
            await self.notifier.send_reset(user, issue.envelope, issue.expires_at)
        except Exception as exc:
            # Delivery problems must not change the response shape
            logger.error("password_reset_delivery_failed", user_id=user.id, error=str(exc))
        return ResetRequestOutcome(message=RESET_REQUEST_MESSAGE, issued=True)

    def _reject(
        self, reason: ResetFailureReason, *, user_id: Optional[str] = None
    ) -> InvalidResetTokenError:
        logger.info("password_reset_rejected", reason=reason.value, user_id=user_id)
        self.audit.record(
            AuditEvent.PASSWORD_RESET_REJECTED,
            user_id=user_id,
            severity=AuditSeverity.MEDIUM,
            success=False,
            details={"reason": reason.value},
        )
        return InvalidResetTokenError(reason)

    async def validate(self, envelope: str) -> ResetValidation:
        now = self._now()
        payload = self.signer.decode(envelope, token_type=RESET_TOKEN_TYPE)
        if payload is None:
            # Distinguish a stale but genuine envelope from garbage
            stale = self.signer.decode(envelope, token_type=RESET_TOKEN_TYPE, verify_exp=False)
            if stale is not None:
                raise self._reject(ResetFailureReason.EXPIRED, user_id=str(stale["sub"]))
            raise self._reject(ResetFailureReason.INVALID)

        user_id = str(payload["sub"])
        secret = payload.get("sid")
        if not isinstance(secret, str) or not secret:
            raise self._reject(ResetFailureReason.INVALID, user_id=user_id)

        secret_hash = sha256_hex(secret)
        token = self.store.get_reset_token_by_hash(secret_hash)
        if token is None:
            raise self._reject(ResetFailureReason.NOT_FOUND, user_id=user_id)
        if token.user_id != user_id:
            raise self._reject(ResetFailureReason.USER_MISMATCH, user_id=user_id)
        if token.used:
            raise self._reject(ResetFailureReason.ALREADY_USED, user_id=user_id)
        if token.expires_at <= now:
            raise self._reject(ResetFailureReason.EXPIRED, user_id=user_id)
        return ResetValidation(user_id=user_id, secret_hash=secret_hash, token_id=token.id)

    async def consume(
        self,
        secret_hash: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        """Complete a reset and return the user id.

        Banned accounts are refused with ``AccountBannedError`` so the client
        can tell them apart from an invalid token.
        """
        now = self._now()
        token = self.store.get_reset_token_by_hash(secret_hash)
        if token is None:
            raise self._reject(ResetFailureReason.NOT_FOUND)
        if token.used:
            raise self._reject(ResetFailureReason.ALREADY_USED, user_id=token.user_id)
        if token.expires_at <= now:
            raise self._reject(ResetFailureReason.EXPIRED, user_id=token.user_id)

        user = self.store.get_user(token.user_id)
        if user is None:
            raise NotFoundError("user not found")
        if user.status == UserStatus.BANNED:
            logger.warning("password_reset_banned_account", user_id=user.id)
            raise AccountBannedError()

        password_hash, password_algo = self.passwords.hash(new_password)
        entry = self.audit.build(
            AuditEvent.PASSWORD_RESET_COMPLETE,
            user_id=user.id,
            severity=AuditSeverity.MEDIUM,
            ip_address=ip_address,
            user_agent=user_agent,
            details={"sessions_revoked": True},
        )
        completed = self.store.complete_password_reset(
            token.id, user.id, password_hash, password_algo, now, entry
        )
        if not completed:
            # Someone else consumed the token between the read and the write
            raise self._reject(ResetFailureReason.ALREADY_USED, user_id=user.id)
        logger.info("password_reset_completed", user_id=user.id)
        return user.id

    async def reset_password(
        self,
        envelope: str,
        new_password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        validation = await self.validate(envelope)
        return await self.consume(
            validation.secret_hash,
            new_password,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    async def active_token_count(self, user_id: str) -> int:
        return self.store.count_active_reset_tokens(user_id, self._now())

    async def cleanup_expired(self) -> int:
        cutoff = self._now() - timedelta(days=1)
        purged = self.store.purge_reset_tokens(cutoff)
        if purged:
            logger.info("reset_tokens_purged", count=purged)
        return purged

from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.audit import AuditEvent, AuditLog, AuditSeverity
from sessionguard.storage.models import LockoutRecord, RateLimitCounter

logger = get_logger(__name__)


def ip_key(ip_address: str) -> str:
    return f"ip:{ip_address}"


def identifier_key(identifier: str) -> str:
    return f"identifier:{identifier.strip().lower()}"


@dataclass(frozen=True)
class RateLimitPolicy:
    """Limits for one guarded action.

    ``captcha_threshold`` and ``lockout_threshold`` are optional; lockout only
    ever applies to the account-identifier track.
    """

    max_attempts: int
    window_seconds: int
    backoff_multiplier: float = 2.0
    max_backoff_seconds: int = 2 * 60 * 60
    captcha_threshold: Optional[int] = None
    lockout_threshold: Optional[int] = None
    lockout_seconds: int = 60 * 60


def default_policies(settings: Settings) -> Dict[str, RateLimitPolicy]:
    backoff = {
        "backoff_multiplier": settings.rate_limit_backoff_multiplier,
        "max_backoff_seconds": settings.rate_limit_max_backoff_seconds,
    }
    return {
        "login": RateLimitPolicy(
            max_attempts=settings.rate_limit_max_attempts,
            window_seconds=settings.rate_limit_window_seconds,
            captcha_threshold=settings.rate_limit_captcha_threshold,
            lockout_threshold=settings.rate_limit_lockout_threshold,
            lockout_seconds=settings.rate_limit_lockout_seconds,
            **backoff,
        ),
        "refresh": RateLimitPolicy(max_attempts=30, window_seconds=60, **backoff),
        "register": RateLimitPolicy(max_attempts=3, window_seconds=15 * 60, **backoff),
        "password_reset": RateLimitPolicy(max_attempts=3, window_seconds=15 * 60, **backoff),
        "reset_confirm": RateLimitPolicy(max_attempts=5, window_seconds=5 * 60, **backoff),
        "api": RateLimitPolicy(max_attempts=100, window_seconds=60, **backoff),
    }


def compute_backoff_seconds(
    violations: int, base_window: int, multiplier: float, ceiling: int
) -> int:
    """Cooldown for the ``violations``-th consecutive violation, capped at ``ceiling``."""
    if violations < 1:
        return 0
    return int(min(base_window * multiplier ** (violations - 1), ceiling))


def advance_counter(
    counter: Optional[RateLimitCounter],
    identifier: str,
    action: str,
    now: datetime,
    policy: RateLimitPolicy,
) -> Tuple[RateLimitCounter, int]:
    """Count one attempt and return ``(counter, backoff_seconds)``.

    A lapsed window restarts at one attempt. Every further multiple of
    ``max_attempts`` crossed after the first violation pushes the window out
    exponentially; the window is never shortened.
    """
    if counter is None or now > counter.window_reset_at:
        fresh = RateLimitCounter(
            identifier=identifier,
            action=action,
            attempts=1,
            window_reset_at=now + timedelta(seconds=policy.window_seconds),
        )
        return fresh, 0

    attempts = counter.attempts + 1
    reset_at = counter.window_reset_at
    backoff = 0
    if attempts > policy.max_attempts and (attempts - 1) % policy.max_attempts == 0:
        violations = (attempts - 1) // policy.max_attempts
        if violations > 1:
            backoff = compute_backoff_seconds(
                violations,
                policy.window_seconds,
                policy.backoff_multiplier,
                policy.max_backoff_seconds,
            )
            reset_at = max(reset_at, now + timedelta(seconds=backoff))
    updated = RateLimitCounter(
        identifier=identifier, action=action, attempts=attempts, window_reset_at=reset_at
    )
    return updated, backoff


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: datetime
    attempts: int = 0
    requires_captcha: bool = False
    locked: bool = False
    locked_until: Optional[datetime] = None
    reason: Optional[str] = None
    layer: Optional[str] = None
    backoff_applied: bool = False
    tracks: Dict[str, int] = field(default_factory=dict)

    def retry_after_seconds(self, now: datetime) -> int:
        if self.allowed:
            return 0
        until = self.locked_until if self.locked and self.locked_until else self.reset_at
        return max(1, math.ceil((until - now).total_seconds()))

    def headers(self, now: datetime) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at.timestamp())),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds(now))
        return headers


class RateLimitEngine:
    """Attempt counters, exponential backoff, CAPTCHA signalling and lockout.

    Counters live in Redis when a cache is configured. Any cache failure falls
    back to process-local counters so abuse protection keeps working (fail
    closed); local state is per-process and lost on restart.
    """

    def __init__(
        self,
        cache,
        settings: Settings,
        *,
        audit: Optional[AuditLog] = None,
        policies: Optional[Dict[str, RateLimitPolicy]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.audit = audit
        self.policies = policies or default_policies(settings)
        self._clock = clock
        self._local_lock = threading.Lock()
        self._local_counters: Dict[str, RateLimitCounter] = {}
        self._local_lockouts: Dict[str, LockoutRecord] = {}

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def policy(self, action: str) -> RateLimitPolicy:
        try:
            return self.policies[action]
        except KeyError:
            raise ValueError(f"no rate limit policy for action '{action}'") from None

    async def check(
        self,
        action: str,
        *,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> RateLimitResult:
        """Count one attempt for ``action`` on every supplied track.

        The attempt is denied if any track is over its limit. On the
        identifier track an existing lockout short-circuits before counting,
        so a locked account stays locked even for a correct credential.
        """
        policy = self.policy(action)
        now = self._now()
        tracks: List[Tuple[str, str]] = []
        if ip_address:
            tracks.append(("ip", ip_key(ip_address)))
        if identifier:
            tracks.append(("identifier", identifier_key(identifier)))
        if not tracks:
            raise ValueError("rate limit check needs an ip address or identifier")

        ident = identifier_key(identifier) if identifier else None
        if ident and policy.lockout_threshold:
            lockout = await self.get_lockout(ident)
            if lockout is not None:
                return RateLimitResult(
                    allowed=False,
                    limit=policy.max_attempts,
                    remaining=0,
                    reset_at=lockout.locked_until,
                    attempts=lockout.attempts,
                    requires_captcha=policy.captcha_threshold is not None,
                    locked=True,
                    locked_until=lockout.locked_until,
                    reason=lockout.reason,
                    layer="identifier",
                )

        outcomes: List[Tuple[str, int, datetime, int]] = []
        for layer, key in tracks:
            attempts, reset_at, backoff = await self._hit(action, key, policy, now)
            outcomes.append((layer, attempts, reset_at, backoff))

        denied = [o for o in outcomes if o[1] > policy.max_attempts]
        tightest = max(outcomes, key=lambda o: o[1])
        requires_captcha = policy.captcha_threshold is not None and any(
            o[1] >= policy.captcha_threshold for o in outcomes
        )
        result = RateLimitResult(
            allowed=not denied,
            limit=policy.max_attempts,
            remaining=max(0, policy.max_attempts - tightest[1]),
            reset_at=max(o[2] for o in denied) if denied else tightest[2],
            attempts=tightest[1],
            requires_captcha=requires_captcha,
            reason="rate_limited" if denied else None,
            layer=denied[0][0] if denied else None,
            backoff_applied=any(o[3] > 0 for o in outcomes),
            tracks={layer: attempts for layer, attempts, _, _ in outcomes},
        )

        ident_attempts = result.tracks.get("identifier", 0)
        if ident and policy.lockout_threshold and ident_attempts > policy.lockout_threshold:
            lockout = await self._lock(ident, ident_attempts, now, policy, user_id=user_id)
            result.allowed = False
            result.locked = True
            result.locked_until = lockout.locked_until
            result.reset_at = lockout.locked_until
            result.reason = lockout.reason
            result.layer = "identifier"

        if not result.allowed:
            logger.info(
                "rate_limit_denied",
                action=action,
                layer=result.layer,
                attempts=result.attempts,
                locked=result.locked,
            )
        return result

    async def _hit(
        self, action: str, key: str, policy: RateLimitPolicy, now: datetime
    ) -> Tuple[int, datetime, int]:
        counter_key = f"{action}:{key}"
        if self.cache is not None:
            try:
                attempts, reset_ts, backoff = await self.cache.record_attempt(
                    counter_key,
                    now=now.timestamp(),
                    window_seconds=policy.window_seconds,
                    max_attempts=policy.max_attempts,
                    multiplier=policy.backoff_multiplier,
                    max_backoff_seconds=policy.max_backoff_seconds,
                )
                return attempts, datetime.fromtimestamp(reset_ts, tz=timezone.utc), backoff
            except Exception as exc:
                logger.warning(
                    "rate_limit_store_unavailable", action=action, error=str(exc)
                )
        with self._local_lock:
            counter, backoff = advance_counter(
                self._local_counters.get(counter_key), key, action, now, policy
            )
            self._local_counters[counter_key] = counter
        return counter.attempts, counter.window_reset_at, backoff

    async def get_lockout(self, identifier: str) -> Optional[LockoutRecord]:
        """Return the active lockout for an identifier track key, if any.

        The local mirror is consulted first, so a lock placed by this process
        survives a cache outage.
        """
        now = self._now()
        with self._local_lock:
            local = self._local_lockouts.get(identifier)
            if local is not None and not local.is_active(now):
                self._local_lockouts.pop(identifier, None)
                local = None
        if local is not None:
            return local
        if self.cache is None:
            return None
        try:
            payload = await self.cache.get_lockout(identifier)
        except Exception as exc:
            logger.warning("lockout_lookup_failed", error=str(exc))
            return None
        return self._lockout_from_payload(identifier, payload, now)

    @staticmethod
    def _lockout_from_payload(
        identifier: str, payload: Optional[dict], now: datetime
    ) -> Optional[LockoutRecord]:
        if not payload:
            return None
        try:
            record = LockoutRecord(
                identifier=identifier,
                locked_until=datetime.fromisoformat(payload["locked_until"]),
                attempts=int(payload.get("attempts", 0)),
                reason=payload.get("reason") or "locked",
            )
        except (KeyError, TypeError, ValueError):
            logger.warning("lockout_payload_invalid")
            return None
        return record if record.is_active(now) else None

    async def is_locked(self, identifier: str) -> bool:
        return await self.get_lockout(identifier_key(identifier)) is not None

    async def _lock(
        self,
        identifier: str,
        attempts: int,
        now: datetime,
        policy: RateLimitPolicy,
        *,
        user_id: Optional[str] = None,
    ) -> LockoutRecord:
        record = LockoutRecord(
            identifier=identifier,
            locked_until=now + timedelta(seconds=policy.lockout_seconds),
            attempts=attempts,
            reason=f"Exceeded {policy.lockout_threshold} failed login attempts",
            created_at=now,
        )
        created = False
        stored = False
        if self.cache is not None:
            try:
                created = await self.cache.set_lockout(
                    identifier,
                    {
                        "locked_until": record.locked_until.isoformat(),
                        "attempts": attempts,
                        "reason": record.reason,
                    },
                    policy.lockout_seconds,
                )
                stored = True
                if not created:
                    # another worker won the NX write; report the lock it set
                    existing = self._lockout_from_payload(
                        identifier, await self.cache.get_lockout(identifier), now
                    )
                    if existing is not None:
                        record = existing
            except Exception as exc:
                logger.warning("lockout_store_unavailable", error=str(exc))
        with self._local_lock:
            existing = self._local_lockouts.get(identifier)
            if not stored:
                if existing is None or not existing.is_active(now):
                    created = True
                else:
                    record = existing
            self._local_lockouts[identifier] = record
        if created:
            logger.warning(
                "account_locked",
                attempts=attempts,
                locked_until=record.locked_until.isoformat(),
            )
            if self.audit is not None:
                self.audit.record(
                    AuditEvent.ACCOUNT_LOCKED,
                    user_id=user_id,
                    severity=AuditSeverity.HIGH,
                    success=False,
                    details={
                        "identifier": identifier,
                        "attempts": attempts,
                        "locked_until": record.locked_until.isoformat(),
                        "reason": record.reason,
                    },
                )
        return record

    async def clear(self, key: str, action: str) -> None:
        """Drop the counter for one track key (``ip:...`` or ``identifier:...``)."""
        counter_key = f"{action}:{key}"
        with self._local_lock:
            self._local_counters.pop(counter_key, None)
        if self.cache is not None:
            try:
                await self.cache.clear_attempts(counter_key)
            except Exception as exc:
                logger.warning("rate_limit_clear_failed", action=action, error=str(exc))

    async def clear_all(
        self,
        action: str,
        *,
        ip_address: Optional[str] = None,
        identifier: Optional[str] = None,
    ) -> None:
        if ip_address:
            await self.clear(ip_key(ip_address), action)
        if identifier:
            await self.clear(identifier_key(identifier), action)

    async def unlock(self, identifier: str) -> None:
        key = identifier_key(identifier)
        with self._local_lock:
            self._local_lockouts.pop(key, None)
        if self.cache is not None:
            try:
                await self.cache.clear_lockout(key)
            except Exception as exc:
                logger.warning("lockout_clear_failed", error=str(exc))

    def purge_local(self) -> int:
        """Drop lapsed local counters and lockouts; returns how many were removed."""
        now = self._now()
        with self._local_lock:
            stale_counters = [
                k for k, c in self._local_counters.items() if c.window_reset_at < now
            ]
            stale_lockouts = [
                k for k, rec in self._local_lockouts.items() if not rec.is_active(now)
            ]
            for k in stale_counters:
                self._local_counters.pop(k, None)
            for k in stale_lockouts:
                self._local_lockouts.pop(k, None)
        return len(stale_counters) + len(stale_lockouts)

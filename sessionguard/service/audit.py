from __future__ import annotations

import uuid
from enum import Enum
from typing import Any, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.models import AuditEntry, utcnow

logger = get_logger(__name__)

# Metadata keys that never reach the audit trail
_DROPPED_DETAIL_KEYS = {"password", "token", "secret", "old_password", "new_password"}


class AuditEvent(str, Enum):
    LOGIN_SUCCESS = "LOGIN_SUCCESS"
    LOGIN_FAILED = "LOGIN_FAILED"
    LOGOUT = "LOGOUT"
    REGISTER = "REGISTER"
    TOKEN_REUSE_DETECTED = "TOKEN_REUSE_DETECTED"
    SESSIONS_REVOKED = "SESSIONS_REVOKED"
    PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
    PASSWORD_RESET_COMPLETE = "PASSWORD_RESET_COMPLETE"
    PASSWORD_RESET_REJECTED = "PASSWORD_RESET_REJECTED"
    ACCOUNT_LOCKED = "ACCOUNT_LOCKED"
    ACCOUNT_SUSPENDED = "ACCOUNT_SUSPENDED"
    ACCOUNT_BANNED = "ACCOUNT_BANNED"
    ACCOUNT_REINSTATED = "ACCOUNT_REINSTATED"


class AuditSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def sanitize_details(details: Optional[dict[str, Any]]) -> dict[str, Any]:
    if not details:
        return {}
    return {
        key: value
        for key, value in details.items()
        if key.lower() not in _DROPPED_DETAIL_KEYS
    }


class AuditLog:
    """Append-only security event trail backed by the durable store."""

    def __init__(self, store) -> None:
        self.store = store

    def build(
        self,
        event: AuditEvent,
        *,
        user_id: Optional[str] = None,
        severity: AuditSeverity = AuditSeverity.LOW,
        success: bool = True,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> AuditEntry:
        return AuditEntry(
            id=str(uuid.uuid4()),
            event=AuditEvent(event).value,
            severity=AuditSeverity(severity).value,
            success=success,
            user_id=user_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=sanitize_details(details),
            created_at=utcnow(),
        )

    def record(self, event: AuditEvent, **kwargs: Any) -> Optional[AuditEntry]:
        """Persist an audit entry; storage failures are logged, never raised."""
        entry = self.build(event, **kwargs)
        log = logger.warning if entry.severity in {"high", "critical"} else logger.info
        log(
            "audit_event",
            audit_event=entry.event,
            severity=entry.severity,
            success=entry.success,
            user_id=entry.user_id,
        )
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            logger.error("audit_write_failed", audit_event=entry.event, error=str(exc))
            return None
        return entry

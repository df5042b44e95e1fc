from __future__ import annotations

import copy
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from typing import Dict, Iterator, List, Optional

from sessionguard.logging import get_logger
from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.models import (
    AuditEntry,
    RefreshSession,
    ResetToken,
    User,
    UserStatus,
)


class MemoryStore:
    """In-process backing store used by tests and single-node development.

    Every public method runs under one re-entrant lock, which gives the same
    atomicity the Postgres store gets from row locks and transactions. Records
    are handed out as copies so callers never observe later mutations.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.refresh_sessions: Dict[str, RefreshSession] = {}
        self.reset_tokens: Dict[str, ResetToken] = {}
        self.audit_entries: List[AuditEntry] = []
        # RLock so composite operations can call the single-record helpers
        self._data_lock = threading.RLock()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        """Run a multi-step mutation all-or-nothing.

        The mutable collections are snapshotted before the block and restored
        if anything inside it raises.
        """
        with self._data_lock:
            snapshot = copy.deepcopy(
                (
                    self.users,
                    self.credentials,
                    self.refresh_sessions,
                    self.reset_tokens,
                    self.audit_entries,
                )
            )
            try:
                yield
            except Exception:
                (
                    self.users,
                    self.credentials,
                    self.refresh_sessions,
                    self.reset_tokens,
                    self.audit_entries,
                ) = snapshot
                self.logger.warning("memory_transaction_rolled_back")
                raise

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        handle: Optional[str] = None,
        *,
        role: str = "user",
        meta: Optional[Dict] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == normalized_email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if handle and any(existing.handle == handle for existing in self.users.values()):
                raise ConstraintViolation("handle already exists", {"field": "handle"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized_email,
                handle=handle,
                role=role,
                meta=meta.copy() if meta else {},
            )
            self.users[user.id] = user
            return replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = email.strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return replace(user) if user else None

    def get_user_by_handle(self, handle: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.handle == handle), None)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in results[:limit]]

    def update_user_role(self, user_id: str, role: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            return replace(user)

    def set_user_status(
        self,
        user_id: str,
        status: UserStatus,
        *,
        suspended_until: Optional[datetime] = None,
        moderation_note: Optional[str] = None,
    ) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.status = UserStatus(status)
            user.suspended_until = (
                suspended_until if user.status == UserStatus.SUSPENDED else None
            )
            user.moderation_note = moderation_note
            return replace(user)

    def lift_expired_suspension(self, user_id: str, now: datetime) -> Optional[User]:
        """Reactivate a suspended user whose suspension window has ended.

        Returns the updated user, or None when the row no longer matches
        (already lifted, re-suspended, banned, or missing).
        """
        with self._data_lock:
            user = self.users.get(user_id)
            if (
                not user
                or user.status != UserStatus.SUSPENDED
                or user.suspended_until is None
                or user.suspended_until > now
            ):
                return None
            user.status = UserStatus.ACTIVE
            user.suspended_until = None
            user.moderation_note = None
            return replace(user)

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._data_lock:
            self._write_credential(user_id, password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def _write_credential(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        if user_id not in self.users:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )
        self.credentials[user_id] = (password_hash, password_algo)

    # -- refresh sessions --------------------------------------------------

    def replace_device_session(self, session: RefreshSession) -> int:
        """Revoke the device's active session (if any) and insert ``session``.

        Returns how many sessions were revoked.
        """
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            if any(s.lookup_key == session.lookup_key for s in self.refresh_sessions.values()):
                raise ConstraintViolation("refresh token collision", {"field": "lookup_key"})
            revoked = self._revoke_where(
                lambda s: s.user_id == session.user_id and s.device_id == session.device_id,
                session.created_at,
            )
            self.refresh_sessions[session.id] = replace(session)
            return revoked

    def get_refresh_session(self, session_id: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session = self.refresh_sessions.get(session_id)
            return replace(session) if session else None

    def get_refresh_session_by_lookup(self, lookup_key: str) -> Optional[RefreshSession]:
        with self._data_lock:
            session = next(
                (s for s in self.refresh_sessions.values() if s.lookup_key == lookup_key),
                None,
            )
            return replace(session) if session else None

    def list_refresh_sessions(self, user_id: str) -> List[RefreshSession]:
        with self._data_lock:
            return [
                replace(s) for s in self.refresh_sessions.values() if s.user_id == user_id
            ]

    def consume_refresh_session(
        self, session_id: str, successor: RefreshSession, now: datetime
    ) -> bool:
        """Compare-and-set rotation.

        Marks ``session_id`` consumed and inserts ``successor`` only if the
        session is still active at ``now``. Returns False when another caller
        got there first or the session is no longer usable.
        """
        with self._data_lock:
            current = self.refresh_sessions.get(session_id)
            if current is None or not current.is_active(now):
                return False
            current.replaced_by_session_id = successor.id
            current.last_used_at = now
            self.refresh_sessions[successor.id] = replace(successor)
            return True

    def revoke_refresh_session(self, session_id: str, now: datetime) -> bool:
        with self._data_lock:
            return bool(self._revoke_where(lambda s: s.id == session_id, now))

    def revoke_device_sessions(self, user_id: str, device_id: str, now: datetime) -> int:
        with self._data_lock:
            return self._revoke_where(
                lambda s: s.user_id == user_id and s.device_id == device_id, now
            )

    def revoke_user_refresh_sessions(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return self._revoke_where(lambda s: s.user_id == user_id, now)

    def _revoke_where(self, predicate, now: datetime) -> int:
        count = 0
        for session in self.refresh_sessions.values():
            if session.is_revoked or not predicate(session):
                continue
            session.is_revoked = True
            session.revoked_at = now
            count += 1
        return count

    def purge_refresh_sessions(self, before: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.refresh_sessions.items() if s.expires_at < before]
            for sid in stale:
                self.refresh_sessions.pop(sid, None)
            return len(stale)

    # -- password reset ----------------------------------------------------

    def replace_reset_token(self, token: ResetToken) -> int:
        """Invalidate every unused reset token of the user, then insert ``token``."""
        with self._data_lock:
            if token.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": token.user_id})
            invalidated = 0
            for existing in self.reset_tokens.values():
                if existing.user_id == token.user_id and not existing.used:
                    existing.used = True
                    existing.used_at = token.created_at
                    invalidated += 1
            self.reset_tokens[token.id] = replace(token)
            return invalidated

    def get_reset_token_by_hash(self, secret_hash: str) -> Optional[ResetToken]:
        with self._data_lock:
            token = next(
                (t for t in self.reset_tokens.values() if t.secret_hash == secret_hash),
                None,
            )
            return replace(token) if token else None

    def count_active_reset_tokens(self, user_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.reset_tokens.values()
                if t.user_id == user_id and not t.used and t.expires_at > now
            )

    def complete_password_reset(
        self,
        token_id: str,
        user_id: str,
        password_hash: str,
        password_algo: str,
        now: datetime,
        audit_entry: Optional[AuditEntry] = None,
    ) -> bool:
        """Consume a reset token, store the new credential and revoke sessions.

        All steps apply together or none do. Returns False if the token was
        already used.
        """
        with self._transaction():
            token = self.reset_tokens.get(token_id)
            if token is None or token.used or token.user_id != user_id:
                return False
            token.used = True
            token.used_at = now
            self._write_credential(user_id, password_hash, password_algo)
            self._revoke_where(lambda s: s.user_id == user_id, now)
            if audit_entry is not None:
                self.audit_entries.append(replace(audit_entry))
            return True

    def purge_reset_tokens(self, before: datetime) -> int:
        with self._data_lock:
            stale = [tid for tid, t in self.reset_tokens.items() if t.expires_at < before]
            for tid in stale:
                self.reset_tokens.pop(tid, None)
            return len(stale)

    # -- audit -------------------------------------------------------------

    def append_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        with self._data_lock:
            self.audit_entries.append(replace(entry))
            return entry

    def list_audit_entries(
        self,
        *,
        user_id: Optional[str] = None,
        event: Optional[str] = None,
        limit: int = 100,
    ) -> List[AuditEntry]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_entries
                if (user_id is None or e.user_id == user_id)
                and (event is None or e.event == event)
            ]
            matches.sort(key=lambda e: e.created_at, reverse=True)
            return [replace(e) for e in matches[:limit]]

    def ping(self) -> bool:
        return True


__all__ = ["MemoryStore"]

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from sessionguard.logging import get_logger
from sessionguard.service.errors import AccountBannedError, AccountSuspendedError
from sessionguard.storage.models import User, UserStatus

logger = get_logger(__name__)


class StatusStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def lift_expired_suspension(self, user_id: str, now: datetime) -> Optional[User]:
        ...


def suspension_lapsed(user: User, now: datetime) -> bool:
    """True when a suspended user's suspension window has ended.

    A suspension without an end date never lapses.
    """
    return (
        user.status == UserStatus.SUSPENDED
        and user.suspended_until is not None
        and user.suspended_until <= now
    )


def evaluate_status(store: StatusStore, user: User, now: datetime) -> User:
    """Apply moderation status to a freshly loaded user.

    Raises for banned users and active suspensions. A lapsed suspension is
    lifted with a conditional write and the reactivated user is returned.
    """
    if user.status == UserStatus.BANNED:
        raise AccountBannedError()

    if user.status == UserStatus.SUSPENDED:
        if not suspension_lapsed(user, now):
            raise AccountSuspendedError(user.suspended_until, reason=user.moderation_note)
        lifted = store.lift_expired_suspension(user.id, now)
        if lifted is not None:
            logger.info("suspension_lifted", user_id=user.id)
            return lifted
        # Another writer changed the row first; judge what is stored now
        current = store.get_user(user.id) or user
        if suspension_lapsed(current, now):
            return current
        return evaluate_status(store, current, now)

    return user

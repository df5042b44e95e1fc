from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sessionguard.logging import get_logger
from sessionguard.service.account_status import evaluate_status
from sessionguard.service.errors import AuthenticationError, ForbiddenError
from sessionguard.service.tokens import TokenService
from sessionguard.storage.models import User, UserStatus

logger = get_logger(__name__)

ROLE_RANKS = {"user": 0, "moderator": 1, "admin": 2}


@dataclass
class AuthContext:
    user_id: str
    role: str
    status: UserStatus
    email: str
    via_cookie: bool = False
    handle: Optional[str] = None


def role_allows(role: str, required: str) -> bool:
    if role not in ROLE_RANKS or required not in ROLE_RANKS:
        return role == required
    return ROLE_RANKS[role] >= ROLE_RANKS[required]


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class AuthGateway:
    """Resolves every request to a live user.

    The access credential only proves who the caller is; ban, suspension and
    role always come from the store so moderation takes effect on the next
    request rather than when the credential expires.
    """

    def __init__(
        self,
        store,
        tokens: TokenService,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    @staticmethod
    def extract_access_token(
        authorization: Optional[str], access_cookie: Optional[str]
    ) -> tuple[Optional[str], bool]:
        """Cookie first, then bearer header; the flag says whether the cookie was used."""
        if access_cookie:
            return access_cookie, True
        return extract_bearer(authorization), False

    async def authenticate(
        self,
        authorization: Optional[str] = None,
        access_cookie: Optional[str] = None,
    ) -> AuthContext:
        token, via_cookie = self.extract_access_token(authorization, access_cookie)
        if not token:
            raise AuthenticationError("authentication required")
        user_id = self.tokens.verify_access(token)
        if not user_id:
            raise AuthenticationError("invalid or expired access token")
        user = await self.resolve_user(user_id)
        return AuthContext(
            user_id=user.id,
            role=user.role,
            status=user.status,
            email=user.email,
            via_cookie=via_cookie,
            handle=user.handle,
        )

    async def resolve_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if user is None:
            logger.warning("auth_user_missing", user_id=user_id)
            raise AuthenticationError("invalid or expired access token")
        return evaluate_status(self.store, user, self._now())

    @staticmethod
    def require_role(ctx: AuthContext, required: str) -> AuthContext:
        if not role_allows(ctx.role, required):
            logger.warning("role_check_failed", user_id=ctx.user_id, role=ctx.role, required=required)
            raise ForbiddenError("insufficient role", detail={"required": required})
        return ctx

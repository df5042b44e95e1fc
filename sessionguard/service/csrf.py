from __future__ import annotations

import secrets
import time
from typing import Callable, Optional

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.signing import TokenSigner, constant_time_equals

logger = get_logger(__name__)

CSRF_TOKEN_TYPE = "csrf"
CSRF_HEADER = "X-CSRF-Token"
CSRF_COOKIE = "csrf_token"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
UNSAFE_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


class CsrfGuard:
    """Stateless CSRF tokens bound to a user id.

    Tokens are signed with their own key so a leaked access token signer
    cannot mint them, and nothing is stored server side.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        signer: Optional[TokenSigner] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.signer = signer or TokenSigner(
            settings.effective_csrf_secret,
            issuer=settings.jwt_issuer,
            audience=f"{settings.jwt_audience}:csrf",
            leeway_seconds=0,
            clock=clock,
        )

    def issue(self, user_id: str) -> str:
        return self.signer.encode(
            CSRF_TOKEN_TYPE,
            user_id,
            self.settings.csrf_token_ttl_minutes * 60,
            nonce=secrets.token_urlsafe(16),
        )

    def verify(self, token: Optional[str], user_id: Optional[str]) -> bool:
        if not token or not user_id:
            return False
        payload = self.signer.decode(token, token_type=CSRF_TOKEN_TYPE)
        if payload is None:
            return False
        if not constant_time_equals(str(payload["sub"]), str(user_id)):
            logger.warning("csrf_user_mismatch", user_id=user_id)
            return False
        return True

    @staticmethod
    def requires_check(method: str, *, cookie_authenticated: bool) -> bool:
        """Only state-changing verbs on cookie-authenticated requests are checked."""
        return cookie_authenticated and method.upper() in UNSAFE_METHODS

    def verify_request(
        self,
        *,
        header_token: Optional[str],
        cookie_token: Optional[str],
        user_id: Optional[str],
    ) -> bool:
        """Double-submit check: header and cookie must match and verify for the user."""
        if not header_token or not cookie_token:
            return False
        if not constant_time_equals(header_token, cookie_token):
            return False
        return self.verify(header_token, user_id)

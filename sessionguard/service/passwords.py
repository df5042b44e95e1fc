from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from sessionguard.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class PasswordManager:
    """argon2id hashing with an optional server-side HMAC pepper."""

    def __init__(self, pepper: Optional[str] = None) -> None:
        self._pepper = pepper.encode() if pepper else None
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def _prepare(self, password: str) -> str:
        if not self._pepper:
            return password
        return hmac.new(self._pepper, password.encode(), hashlib.sha256).hexdigest()

    def hash(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(self._prepare(password)), PASSWORD_ALGO

    def verify(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, self._prepare(password))
        except (InvalidHash, VerificationError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

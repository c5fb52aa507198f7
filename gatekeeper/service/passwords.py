from __future__ import annotations

import hashlib
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.service.errors import PasswordPolicyError

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing plus the minimal password policy."""

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self._hasher = PasswordHasher(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost,
            parallelism=settings.argon2_parallelism,
            type=Type.ID,
        )
        # Verified against when no stored hash exists so both paths cost the same
        self._dummy_hash = self._hasher.hash("gatekeeper-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, stored_hash: Optional[str], password: str) -> bool:
        if not stored_hash:
            self._burn(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unreadable")
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True

    def validate_policy(self, password: Optional[str]) -> None:
        if not password or len(password) < self.settings.password_min_length:
            raise PasswordPolicyError(
                f"Password must be at least {self.settings.password_min_length} characters",
                detail={"min_length": self.settings.password_min_length},
            )
        if password.strip() != password:
            raise PasswordPolicyError("Password must not start or end with whitespace")

    @staticmethod
    def fingerprint(stored_hash: Optional[str]) -> str:
        """Short digest of the current hash; changes whenever the password does."""
        return hashlib.sha256((stored_hash or "").encode()).hexdigest()[:16]

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

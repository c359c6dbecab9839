from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import HashingError, InvalidHash, VerificationError, VerifyMismatchError

from authkit.logging import get_logger
from authkit.service.errors import PasswordHashingError

logger = get_logger(__name__)

# argon2id parameters; changing them only affects newly created hashes
TIME_COST = 3
MEMORY_COST_KIB = 64 * 1024
PARALLELISM = 4


class CredentialVerifier:
    """argon2id password hashing with constant-time verification."""

    def __init__(
        self,
        *,
        time_cost: int = TIME_COST,
        memory_cost: int = MEMORY_COST_KIB,
        parallelism: int = PARALLELISM,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None

    def hash_password(self, password: str) -> str:
        try:
            return self._pwd_hasher.hash(password)
        except HashingError as exc:
            logger.error("password_hash_failed", error=str(exc))
            raise PasswordHashingError("failed to hash password") from exc

    def verify_password(self, password_hash: Optional[str], password: str) -> bool:
        """Return True only when ``password`` matches ``password_hash``.

        A missing hash (OAuth-only account), a corrupt hash and a mismatch all
        return False.
        """
        if not password_hash:
            return False
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def burn_verification(self, password: str) -> None:
        """Spend one verify on a throwaway hash so unknown accounts cost the same."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash_password("authkit-timing-equalizer")
        self.verify_password(self._dummy_hash, password)

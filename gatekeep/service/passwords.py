from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from gatekeep.logging import get_logger
from gatekeep.service.errors import CorruptHashError, WeakPasswordError

logger = get_logger(__name__)

ALGORITHM = "argon2id"


class PasswordHasher:
    """Salted one-way password hashing with argon2id.

    Each ``hash`` call draws a fresh random salt that is embedded in the
    returned PHC string, so the digest alone is enough to verify later.
    """

    def __init__(
        self,
        *,
        min_length: int = 8,
        max_length: int = 128,
        hasher: Optional[Argon2Hasher] = None,
    ) -> None:
        self.min_length = min_length
        self.max_length = max_length
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def check_policy(self, plaintext: str) -> None:
        if not isinstance(plaintext, str) or not plaintext:
            raise WeakPasswordError("password must not be empty")
        if len(plaintext) < self.min_length:
            raise WeakPasswordError(
                f"password must be at least {self.min_length} characters"
            )
        if len(plaintext) > self.max_length:
            raise WeakPasswordError(
                f"password must be at most {self.max_length} characters"
            )

    def hash(self, plaintext: str) -> str:
        self.check_policy(plaintext)
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        """Return whether ``plaintext`` matches ``digest``.

        Mismatches return False. Only a digest that is not a readable argon2
        hash raises ``CorruptHashError``.
        """
        if not isinstance(digest, str) or not digest.startswith(f"${ALGORITHM}$"):
            logger.error("password_hash_unrecognized")
            raise CorruptHashError()
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except InvalidHash as exc:
            logger.error("password_hash_corrupt", error_type=type(exc).__name__)
            raise CorruptHashError() from exc
        except VerificationError:
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return False


__all__ = ["ALGORITHM", "PasswordHasher"]

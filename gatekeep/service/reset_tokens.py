from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from gatekeep.config import Settings

# 32 bytes of entropy, rendered as 64 hex characters
RESET_TOKEN_BYTES = 32


@dataclass(frozen=True)
class ResetToken:
    plain_token: str
    token_hash: str
    expires_at: datetime


class ResetTokenService:
    """Single-use password reset tokens.

    The plaintext token only ever leaves through the email notifier. The
    store keeps a sha256 digest, which doubles as the lookup key, so a fast
    hash is used rather than the password hasher.
    """

    def __init__(self, settings: Settings) -> None:
        self.ttl = timedelta(minutes=settings.reset_token_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def hash_token(plain_token: str) -> str:
        return hashlib.sha256(plain_token.encode()).hexdigest()

    def generate(self) -> ResetToken:
        plain = secrets.token_hex(RESET_TOKEN_BYTES)
        return ResetToken(
            plain_token=plain,
            token_hash=self.hash_token(plain),
            expires_at=self._now() + self.ttl,
        )

    def verify(
        self,
        plain_token: Optional[str],
        stored_hash: Optional[str],
        stored_expiry: Optional[datetime],
    ) -> bool:
        if not plain_token or not stored_hash or stored_expiry is None:
            return False
        matches = hmac.compare_digest(self.hash_token(plain_token), stored_hash)
        not_expired = stored_expiry > self._now()
        return matches and not_expired


__all__ = ["RESET_TOKEN_BYTES", "ResetToken", "ResetTokenService"]

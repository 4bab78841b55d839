from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from gatekeep.config import Settings
from gatekeep.logging import get_logger
from gatekeep.service.errors import TokenExpiredError, TokenInvalidError

logger = get_logger(__name__)

# Bump when the payload layout changes; older versions are rejected.
TOKEN_FORMAT_VERSION = 1
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    email: str
    issued_at: datetime
    expires_at: datetime


class TokenService:
    """Issues and verifies signed, expiring session tokens.

    Tokens are compact JWTs (HS256). They are never stored; a token is valid
    when its signature, issuer, audience, format version and expiry check out.
    Whether a token predates the owner's last password change is a separate
    question answered by ``is_stale_against``.
    """

    def __init__(self, settings: Settings) -> None:
        self.secret = settings.jwt_secret.encode()
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.ttl = timedelta(minutes=settings.token_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self.secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user_id: str, email: str) -> str:
        now = self._now()
        header = {"alg": _ALGORITHM, "typ": "JWT", "ver": TOKEN_FORMAT_VERSION}
        payload = {
            "ver": TOKEN_FORMAT_VERSION,
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user_id,
            "email": email,
            # Sub-second precision so a token minted right after a password
            # change is not mistaken for one minted before it.
            "iat": now.timestamp(),
            "exp": (now + self.ttl).timestamp(),
        }
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> TokenClaims:
        if not isinstance(token, str):
            raise TokenInvalidError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalidError()

        header = self._load_segment(header_b64)
        # Reject alg confusion and unknown layouts before looking at the payload
        if header.get("alg") != _ALGORITHM or header.get("ver") != TOKEN_FORMAT_VERSION:
            logger.warning("token_header_rejected", alg=header.get("alg"), ver=header.get("ver"))
            raise TokenInvalidError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            raise TokenInvalidError()

        payload = self._load_segment(payload_b64)
        if payload.get("ver") != TOKEN_FORMAT_VERSION:
            raise TokenInvalidError()
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise TokenInvalidError()

        user_id = payload.get("sub")
        email = payload.get("email")
        if not isinstance(user_id, str) or not user_id or not isinstance(email, str):
            raise TokenInvalidError()
        issued_at = self._timestamp(payload.get("iat"))
        expires_at = self._timestamp(payload.get("exp"))

        if self._now() >= expires_at:
            raise TokenExpiredError()
        return TokenClaims(
            user_id=user_id, email=email, issued_at=issued_at, expires_at=expires_at
        )

    def is_stale_against(
        self, issued_at: datetime, password_changed_at: Optional[datetime]
    ) -> bool:
        """True when the token was issued before the last password change."""
        if password_changed_at is None:
            return False
        return issued_at < password_changed_at

    def _load_segment(self, segment: str) -> dict[str, Any]:
        try:
            data = json.loads(self._decode_segment(segment))
        except (binascii.Error, ValueError, UnicodeDecodeError):
            raise TokenInvalidError()
        if not isinstance(data, dict):
            raise TokenInvalidError()
        return data

    @staticmethod
    def _timestamp(raw: Any) -> datetime:
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise TokenInvalidError()
        try:
            return datetime.fromtimestamp(float(raw), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise TokenInvalidError()


__all__ = ["TOKEN_FORMAT_VERSION", "TokenClaims", "TokenService"]

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol, Tuple

from gatekeep.config import Settings
from gatekeep.logging import email_digest, get_logger
from gatekeep.service.email import Notifier, build_password_reset_email
from gatekeep.service.errors import (
    ConflictError,
    CorruptHashError,
    DeliveryError,
    InvalidCredentials,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from gatekeep.service.passwords import PasswordHasher
from gatekeep.service.reset_tokens import ResetTokenService
from gatekeep.service.tokens import TokenService
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Role, User

logger = get_logger(__name__)

# Verified against when the email is unknown, so both login failures cost the same
_DUMMY_PASSWORD = "gatekeep-timing-equaliser"


class CredentialStore(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def find_by_reset_token_hash(self, token_hash: str) -> Optional[User]: ...

    def create(self, fields: Dict[str, Any]) -> User: ...

    def save(self, user: User, *, skip_validation: bool = False) -> User: ...


class AuthService:
    """Signup, login and password lifecycle flows.

    Every flow either completes or leaves the store untouched: input checks
    and hashing happen before the first write. The one compensating action
    is clearing a freshly stored reset token when the email cannot be sent.
    """

    def __init__(
        self,
        store: CredentialStore,
        settings: Settings,
        *,
        hasher: PasswordHasher,
        tokens: TokenService,
        reset_tokens: ResetTokenService,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.settings = settings
        self.hasher = hasher
        self.tokens = tokens
        self.reset_tokens = reset_tokens
        self.notifier = notifier
        self.logger = logger
        self._dummy_digest: Optional[str] = None

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def _require_confirmation(password: str, confirm_password: str) -> None:
        if password != confirm_password:
            raise ValidationError(
                "Passwords do not match", detail={"field": "confirm_password"}
            )

    async def _hash(self, password: str) -> str:
        return await asyncio.to_thread(self.hasher.hash, password)

    async def _verify(self, password: str, digest: str) -> bool:
        return await asyncio.to_thread(self.hasher.verify, password, digest)

    async def _burn_verify(self, password: str) -> None:
        if self._dummy_digest is None:
            self._dummy_digest = await self._hash(_DUMMY_PASSWORD)
        await self._verify(password, self._dummy_digest)

    async def signup(
        self,
        name: str,
        email: str,
        password: str,
        confirm_password: str,
    ) -> Tuple[User, str]:
        self._require_confirmation(password, confirm_password)
        digest = await self._hash(password)
        try:
            user = self.store.create(
                {
                    "name": name,
                    "email": email,
                    "password_hash": digest,
                    "role": Role.USER,
                    "password_changed_at": self._now(),
                }
            )
        except ConstraintViolation as exc:
            if exc.detail.get("field") == "email":
                raise ConflictError("email already registered", detail={"field": "email"}) from exc
            raise
        token = self.tokens.issue(user.id, user.email)
        self.logger.info("signup_completed", user_id=user.id)
        return user, token

    async def login(self, email: str, password: str) -> Tuple[User, str]:
        if not email or not password:
            raise ValidationError("Please provide email and password")
        user = self.store.find_by_email(email)
        if not user or not user.can_login:
            await self._burn_verify(password)
            self.logger.info("login_failed", email_hash=email_digest(email), reason="unknown_email")
            raise InvalidCredentials()
        try:
            ok = await self._verify(password, user.password_hash)
        except CorruptHashError as exc:
            self.logger.error("login_stored_hash_corrupt", user_id=user.id)
            raise InvalidCredentials() from exc
        if not ok:
            self.logger.info("login_failed", user_id=user.id, reason="password_mismatch")
            raise InvalidCredentials()

        verified_digest = user.password_hash
        user = self._reload_if_unchanged(user.id, verified_digest)
        if self.hasher.needs_rehash(verified_digest):
            upgraded = await self._hash(password)
            user = self._reload_if_unchanged(user.id, verified_digest)
            user.password_hash = upgraded
            user = self.store.save(user)
            self.logger.info("password_rehashed", user_id=user.id)

        token = self.tokens.issue(user.id, user.email)
        self.logger.info("login_succeeded", user_id=user.id)
        return user, token

    async def forgot_password(self, email: str, reset_url_base: str) -> None:
        """Store a fresh reset token for ``email`` and mail it out.

        The plaintext token is handed to the notifier and nowhere else.
        """
        user = self.store.find_by_email(email)
        if not user:
            self.logger.info("password_reset_unknown_email", email_hash=email_digest(email))
            raise NotFoundError("There is no user with that email address")

        reset = self.reset_tokens.generate()
        # A newer request simply overwrites an older pending token
        user.set_reset_token(reset.token_hash, reset.expires_at)
        self.store.save(user, skip_validation=True)

        reset_url = f"{reset_url_base.rstrip('/')}/{reset.plain_token}"
        message = build_password_reset_email(
            user.email,
            reset_url,
            ttl_minutes=self.settings.reset_token_ttl_minutes,
            product_name=self.settings.email_from_name,
        )
        cause: Optional[BaseException] = None
        try:
            delivered = await asyncio.to_thread(self.notifier.send, message)
        except Exception as exc:
            delivered = False
            cause = exc

        if not delivered:
            self._rollback_reset_token(user.id, reset.token_hash)
            self.logger.error(
                "password_reset_delivery_failed",
                user_id=user.id,
                error_type=type(cause).__name__ if cause else None,
            )
            raise DeliveryError() from cause

        self.logger.info("password_reset_requested", user_id=user.id)

    def _reload_if_unchanged(self, user_id: str, verified_digest: str) -> User:
        """Re-read ``user_id`` after an await; fail the login if its password moved.

        A change or reset committed while we were hashing wins, and the
        password we checked against the old digest no longer counts.
        """
        current = self.store.find_by_id(user_id)
        if not current or not current.can_login or current.password_hash != verified_digest:
            self.logger.info("login_failed", user_id=user_id, reason="password_changed_concurrently")
            raise InvalidCredentials()
        return current

    def _rollback_reset_token(self, user_id: str, token_hash: str) -> None:
        current = self.store.find_by_id(user_id)
        # Leave a newer concurrent request's token alone
        if current and current.has_pending_reset and current.reset_token_hash == token_hash:
            current.clear_reset_token()
            self.store.save(current, skip_validation=True)

    async def reset_password(
        self, token: str, password: str, confirm_password: str
    ) -> Tuple[User, str]:
        token_hash = self.reset_tokens.hash_token(token or "")
        user = self.store.find_by_reset_token_hash(token_hash)
        if not user or not self.reset_tokens.verify(
            token, user.reset_token_hash, user.reset_token_expires_at
        ):
            self.logger.warning("password_reset_invalid_token")
            raise ValidationError("Token is invalid or has expired")
        self._require_confirmation(password, confirm_password)
        digest = await self._hash(password)

        # Re-check after the hashing await so only one reset consumes the token
        user = self.store.find_by_id(user.id)
        if not user or not self.reset_tokens.verify(
            token, user.reset_token_hash, user.reset_token_expires_at
        ):
            self.logger.warning("password_reset_token_consumed_concurrently")
            raise ValidationError("Token is invalid or has expired")

        user.password_hash = digest
        user.password_changed_at = self._now()
        user.clear_reset_token()
        user = self.store.save(user)
        token_out = self.tokens.issue(user.id, user.email)
        self.logger.info("password_reset_completed", user_id=user.id)
        return user, token_out

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        password: str,
        confirm_password: str,
    ) -> Tuple[User, str]:
        user = self.store.find_by_id(user_id)
        if not user or not user.can_login:
            raise Unauthorized()
        if not current_password or not await self._verify(current_password, user.password_hash):
            self.logger.info("password_change_rejected", user_id=user_id)
            raise InvalidCredentials("Your current password is wrong")
        self._require_confirmation(password, confirm_password)
        digest = await self._hash(password)

        user = self.store.find_by_id(user_id)
        if not user:
            raise Unauthorized()
        user.password_hash = digest
        # Moves the watermark: every token issued before now is stale
        user.password_changed_at = self._now()
        user.clear_reset_token()
        user = self.store.save(user)
        token = self.tokens.issue(user.id, user.email)
        self.logger.info("password_changed", user_id=user.id)
        return user, token


__all__ = ["AuthService", "CredentialStore"]

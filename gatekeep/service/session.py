"""Route protection: bearer-token session pipeline and role gate.

A request moves through

    UNAUTHENTICATED -> TOKEN_EXTRACTED -> TOKEN_VERIFIED -> USER_LOADED -> AUTHENTICATED

and drops to REJECTED at the first failing step. Each step takes the
outcome so far and returns either the next outcome or a rejection; the
pipeline stops at the first rejection.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Callable, FrozenSet, Iterable, Optional, Sequence

from gatekeep.logging import get_logger
from gatekeep.service.errors import Forbidden, ServiceError, Unauthorized
from gatekeep.service.tokens import TokenClaims, TokenService
from gatekeep.storage.models import Role, User

logger = get_logger(__name__)


class SessionState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    TOKEN_EXTRACTED = "token_extracted"
    TOKEN_VERIFIED = "token_verified"
    USER_LOADED = "user_loaded"
    AUTHENTICATED = "authenticated"
    REJECTED = "rejected"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str
    role: Role
    issued_at: datetime


@dataclass(frozen=True)
class SessionOutcome:
    state: SessionState
    authorization: Optional[str] = None
    token: Optional[str] = None
    claims: Optional[TokenClaims] = None
    user: Optional[User] = None
    context: Optional[AuthContext] = None
    error: Optional[ServiceError] = None

    @property
    def rejected(self) -> bool:
        return self.state == SessionState.REJECTED

    def advance(self, state: SessionState, **changes) -> "SessionOutcome":
        return replace(self, state=state, **changes)

    def reject(self, error: ServiceError) -> "SessionOutcome":
        return replace(self, state=SessionState.REJECTED, error=error)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class SessionGate:
    """Resolves an ``Authorization`` header to an authenticated identity."""

    def __init__(self, store, tokens: TokenService) -> None:
        self.store = store
        self.tokens = tokens
        self.steps: Sequence[Callable[[SessionOutcome], SessionOutcome]] = (
            self._extract,
            self._verify,
            self._load_user,
            self._check_fresh,
        )

    def _extract(self, outcome: SessionOutcome) -> SessionOutcome:
        token = extract_bearer(outcome.authorization)
        if not token:
            return outcome.reject(Unauthorized("You are not logged in"))
        return outcome.advance(SessionState.TOKEN_EXTRACTED, token=token)

    def _verify(self, outcome: SessionOutcome) -> SessionOutcome:
        try:
            claims = self.tokens.verify(outcome.token)
        except Unauthorized as exc:
            return outcome.reject(exc)
        return outcome.advance(SessionState.TOKEN_VERIFIED, claims=claims)

    def _load_user(self, outcome: SessionOutcome) -> SessionOutcome:
        user = self.store.find_by_id(outcome.claims.user_id)
        if not user:
            return outcome.reject(Unauthorized("The user for this token no longer exists"))
        return outcome.advance(SessionState.USER_LOADED, user=user)

    def _check_fresh(self, outcome: SessionOutcome) -> SessionOutcome:
        if self.tokens.is_stale_against(
            outcome.claims.issued_at, outcome.user.password_changed_at
        ):
            return outcome.reject(
                Unauthorized("reauth required", detail={"reason": "password_changed"})
            )
        context = AuthContext(
            user_id=outcome.user.id,
            email=outcome.user.email,
            role=outcome.user.role,
            issued_at=outcome.claims.issued_at,
        )
        return outcome.advance(SessionState.AUTHENTICATED, context=context)

    def resolve(self, authorization: Optional[str]) -> SessionOutcome:
        outcome = SessionOutcome(
            state=SessionState.UNAUTHENTICATED, authorization=authorization
        )
        for step in self.steps:
            previous = outcome.state
            outcome = step(outcome)
            if outcome.rejected:
                logger.info(
                    "session_rejected",
                    at_state=previous.value,
                    reason=outcome.error.message if outcome.error else None,
                )
                return outcome
        return outcome

    def authenticate(self, authorization: Optional[str]) -> AuthContext:
        outcome = self.resolve(authorization)
        if outcome.rejected:
            raise outcome.error
        return outcome.context


def role_allows(user_role: Role, allowed_roles: FrozenSet[Role]) -> bool:
    return user_role in allowed_roles


class RoleGate:
    """Authorization check built once per route with a fixed set of roles."""

    def __init__(self, roles: Iterable[Role | str]) -> None:
        allowed = frozenset(Role(role) for role in roles)
        if not allowed:
            raise ValueError("RoleGate needs at least one role")
        self.allowed: FrozenSet[Role] = allowed

    def check(self, context: AuthContext) -> AuthContext:
        if not role_allows(context.role, self.allowed):
            logger.warning(
                "role_forbidden",
                user_id=context.user_id,
                user_role=context.role.value,
                allowed=sorted(role.value for role in self.allowed),
            )
            raise Forbidden()
        return context


__all__ = [
    "AuthContext",
    "RoleGate",
    "SessionGate",
    "SessionOutcome",
    "SessionState",
    "extract_bearer",
    "role_allows",
]

"""Tests for the bearer session pipeline and the role gate."""

from datetime import timedelta

import pytest

from gatekeep.service.errors import (
    Forbidden,
    TokenExpiredError,
    TokenInvalidError,
    Unauthorized,
)
from gatekeep.service.session import (
    AuthContext,
    RoleGate,
    SessionGate,
    SessionState,
    extract_bearer,
    role_allows,
)
from gatekeep.storage.models import Role, utcnow


@pytest.fixture
def gate(memory_store, token_service):
    return SessionGate(memory_store, token_service)


@pytest.fixture
def stored_user(memory_store):
    return memory_store.create(
        {
            "name": "Gate User",
            "email": "gate@example.com",
            "password_hash": "$argon2id$v=19$m=1024,t=1,p=1$c2FsdHNhbHQ$aGFzaGhhc2g",
            "password_changed_at": utcnow() - timedelta(days=1),
        }
    )


class TestExtractBearer:
    @pytest.mark.parametrize(
        "header,expected",
        [
            ("Bearer abc.def.ghi", "abc.def.ghi"),
            ("bearer abc", "abc"),
            ("  Bearer   abc  ", "abc"),
            ("Basic abc", None),
            ("Bearer", None),
            ("Bearer   ", None),
            ("", None),
            (None, None),
        ],
    )
    def test_extract_bearer(self, header, expected):
        assert extract_bearer(header) == expected


class TestSessionGate:
    """Walks the pipeline through each rejection point."""

    def test_missing_header_rejected_before_extraction(self, gate):
        outcome = gate.resolve(None)

        assert outcome.rejected
        assert isinstance(outcome.error, Unauthorized)
        assert outcome.error.message == "You are not logged in"
        assert outcome.token is None

    def test_invalid_token_rejected(self, gate):
        outcome = gate.resolve("Bearer not-a-token")

        assert outcome.rejected
        assert isinstance(outcome.error, TokenInvalidError)
        assert outcome.token == "not-a-token"
        assert outcome.claims is None

    def test_expired_token_rejected(self, gate, token_service, stored_user, monkeypatch):
        token = token_service.issue(stored_user.id, stored_user.email)
        later = token_service._now() + token_service.ttl + timedelta(minutes=1)
        monkeypatch.setattr(token_service, "_now", lambda: later)

        outcome = gate.resolve(f"Bearer {token}")
        assert isinstance(outcome.error, TokenExpiredError)

    def test_token_for_missing_user_rejected(self, gate, token_service):
        token = token_service.issue("ghost-user", "ghost@example.com")

        outcome = gate.resolve(f"Bearer {token}")

        assert outcome.rejected
        assert outcome.error.message == "The user for this token no longer exists"
        assert outcome.claims is not None
        assert outcome.user is None

    def test_stale_token_rejected(self, gate, token_service, stored_user, memory_store):
        token = token_service.issue(stored_user.id, stored_user.email)
        user = memory_store.find_by_id(stored_user.id)
        user.password_changed_at = utcnow() + timedelta(seconds=1)
        memory_store.save(user)

        outcome = gate.resolve(f"Bearer {token}")

        assert outcome.rejected
        assert outcome.error.status_code == 401
        assert outcome.error.detail == {"reason": "password_changed"}
        assert outcome.user is not None

    def test_valid_token_authenticates(self, gate, token_service, stored_user):
        token = token_service.issue(stored_user.id, stored_user.email)

        outcome = gate.resolve(f"Bearer {token}")

        assert outcome.state == SessionState.AUTHENTICATED
        assert outcome.context.user_id == stored_user.id
        assert outcome.context.role == Role.USER
        assert gate.authenticate(f"Bearer {token}") == outcome.context

    def test_authenticate_raises_rejection(self, gate):
        with pytest.raises(Unauthorized):
            gate.authenticate("Token abc")


class TestRoleGate:
    def _context(self, role: Role) -> AuthContext:
        return AuthContext(user_id="u1", email="u1@example.com", role=role, issued_at=utcnow())

    def test_allowed_role_passes(self):
        gate = RoleGate([Role.ADMIN])
        ctx = self._context(Role.ADMIN)

        assert gate.check(ctx) is ctx

    def test_other_role_forbidden(self):
        gate = RoleGate(["admin"])

        with pytest.raises(Forbidden) as exc_info:
            gate.check(self._context(Role.USER))
        assert exc_info.value.status_code == 403

    def test_multiple_roles(self):
        gate = RoleGate([Role.USER, Role.ADMIN])

        gate.check(self._context(Role.USER))
        gate.check(self._context(Role.ADMIN))

    def test_empty_role_set_rejected_at_construction(self):
        with pytest.raises(ValueError):
            RoleGate([])

    def test_unknown_role_rejected_at_construction(self):
        with pytest.raises(ValueError):
            RoleGate(["superuser"])

    def test_role_allows(self):
        assert role_allows(Role.ADMIN, frozenset({Role.ADMIN}))
        assert not role_allows(Role.USER, frozenset({Role.ADMIN}))

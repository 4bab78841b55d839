"""Tests for the in-memory credential store and its JSON persistence."""

from datetime import timedelta

import pytest

from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.memory import MemoryStore
from gatekeep.storage.models import Role, utcnow

DIGEST = "$argon2id$v=19$m=1024,t=1,p=1$c2FsdHNhbHQ$aGFzaGhhc2g"


def _create(store, email="user@example.com", **overrides):
    fields = {"name": "User", "email": email, "password_hash": DIGEST}
    fields.update(overrides)
    return store.create(fields)


class TestMemoryStore:
    def test_create_assigns_id_and_default_role(self, memory_store):
        user = _create(memory_store)

        assert user.id
        assert user.role == Role.USER
        assert user.created_at is not None

    def test_email_lookup_is_case_insensitive(self, memory_store):
        user = _create(memory_store, email="Someone@Example.com")

        assert user.email == "someone@example.com"
        assert memory_store.find_by_email("SOMEONE@example.COM").id == user.id
        assert memory_store.find_by_email(" someone@example.com ").id == user.id

    def test_duplicate_email_violates_constraint(self, memory_store):
        _create(memory_store)

        with pytest.raises(ConstraintViolation) as exc_info:
            _create(memory_store, email="USER@example.com")
        assert exc_info.value.detail == {"field": "email"}

    def test_create_requires_password_hash(self, memory_store):
        with pytest.raises(ConstraintViolation):
            _create(memory_store, password_hash=None)
        assert memory_store.find_by_email("user@example.com") is None

    def test_returned_users_are_copies(self, memory_store):
        user = _create(memory_store)
        user.name = "Changed"

        assert memory_store.find_by_id(user.id).name == "User"

    def test_save_validates_reset_pair(self, memory_store):
        user = _create(memory_store)
        user.reset_token_hash = "abc"

        with pytest.raises(ConstraintViolation):
            memory_store.save(user)
        memory_store.save(user, skip_validation=True)
        assert memory_store.find_by_id(user.id).reset_token_hash == "abc"

    def test_save_unknown_user_rejected(self, memory_store):
        user = _create(memory_store)
        user.id = "missing"

        with pytest.raises(ConstraintViolation):
            memory_store.save(user)

    def test_find_by_reset_token_hash(self, memory_store):
        user = _create(memory_store)
        user.set_reset_token("f" * 64, utcnow() + timedelta(minutes=10))
        memory_store.save(user)

        assert memory_store.find_by_reset_token_hash("f" * 64).id == user.id
        assert memory_store.find_by_reset_token_hash("e" * 64) is None
        assert memory_store.find_by_reset_token_hash("") is None

    def test_public_view_hides_secrets(self, memory_store):
        user = _create(memory_store)
        user.set_reset_token("f" * 64, utcnow())

        public = user.public()
        assert "password_hash" not in public
        assert "reset_token_hash" not in public
        assert public["role"] == "user"


class TestPersistence:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        changed_at = utcnow()
        user = _create(store, role=Role.ADMIN, password_changed_at=changed_at)
        user.set_reset_token("a" * 64, changed_at + timedelta(minutes=10))
        store.save(user)

        reloaded = MemoryStore(fs_root=str(tmp_path))
        restored = reloaded.find_by_id(user.id)

        assert restored.email == "user@example.com"
        assert restored.role == Role.ADMIN
        assert restored.password_hash == DIGEST
        assert restored.password_changed_at == changed_at
        assert restored.reset_token_hash == "a" * 64
        assert (tmp_path / "state" / "users.json").exists()

    def test_no_fs_root_keeps_nothing_on_disk(self, tmp_path):
        store = MemoryStore()
        _create(store)

        assert store.fs_root is None
        assert not (tmp_path / "state").exists()

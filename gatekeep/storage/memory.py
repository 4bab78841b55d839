from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from gatekeep.logging import email_digest, get_logger
from gatekeep.storage.errors import ConstraintViolation
from gatekeep.storage.models import Role, User, utcnow


class MemoryStore:
    """In-memory credential store with optional JSON persistence.

    Every public method holds ``_data_lock`` for its full duration, so each
    call is an atomic read-modify-write on a single user document. Users are
    handed out as copies; changes only land through ``save``.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # RLock so nested helpers can re-acquire within the same thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "users.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    @staticmethod
    def _normalize_email(email: str) -> str:
        return email.strip().lower()

    def _validate(self, user: User) -> None:
        if not user.password_hash:
            raise ConstraintViolation("password hash is required", {"field": "password_hash"})
        if (user.reset_token_hash is None) != (user.reset_token_expires_at is None):
            raise ConstraintViolation(
                "reset token hash and expiry must be set together",
                {"field": "reset_token_hash"},
            )

    # lookups
    def find_by_email(self, email: str) -> Optional[User]:
        normalized = self._normalize_email(email)
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def find_by_reset_token_hash(self, token_hash: str) -> Optional[User]:
        if not token_hash:
            return None
        with self._data_lock:
            user = next(
                (u for u in self.users.values() if u.reset_token_hash == token_hash),
                None,
            )
            return copy.deepcopy(user) if user else None

    # writes
    def create(self, fields: Dict[str, Any]) -> User:
        email = self._normalize_email(fields["email"])
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                name=fields.get("name") or "",
                password_hash=fields.get("password_hash"),
                role=Role(fields.get("role", Role.USER)),
                password_changed_at=fields.get("password_changed_at"),
                created_at=fields.get("created_at") or utcnow(),
            )
            self._validate(user)
            self.users[user.id] = user
            self._persist_state()
            self.logger.info("user_created", user_id=user.id, email_hash=email_digest(email))
            return copy.deepcopy(user)

    def save(self, user: User, *, skip_validation: bool = False) -> User:
        with self._data_lock:
            if user.id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user.id})
            user.email = self._normalize_email(user.email)
            if any(
                existing.email == user.email and existing.id != user.id
                for existing in self.users.values()
            ):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if not skip_validation:
                self._validate(user)
            self.users[user.id] = copy.deepcopy(user)
            self._persist_state()
            return copy.deepcopy(user)

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {"users": [self._serialize_user(u) for u in self.users.values()]}
        path = self._state_path()
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist credential store: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.logger.info("credential_store_loaded", users=len(self.users))
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "name": user.name,
            "password_hash": user.password_hash,
            "role": user.role.value,
            "password_changed_at": self._serialize_datetime(user.password_changed_at),
            "reset_token_hash": user.reset_token_hash,
            "reset_token_expires_at": self._serialize_datetime(user.reset_token_expires_at),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            email=data["email"],
            name=data.get("name", ""),
            password_hash=data.get("password_hash"),
            role=Role(data.get("role", "user")),
            password_changed_at=self._deserialize_datetime(data.get("password_changed_at")),
            reset_token_hash=data.get("reset_token_hash"),
            reset_token_expires_at=self._deserialize_datetime(
                data.get("reset_token_expires_at")
            ),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )


__all__ = ["MemoryStore"]

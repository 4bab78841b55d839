from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Closed set of roles a user can hold."""

    USER = "user"
    ADMIN = "admin"


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: Optional[str] = None
    role: Role = Role.USER
    password_changed_at: Optional[datetime] = None
    reset_token_hash: Optional[str] = None
    reset_token_expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @property
    def can_login(self) -> bool:
        return bool(self.password_hash)

    @property
    def has_pending_reset(self) -> bool:
        return self.reset_token_hash is not None

    def set_reset_token(self, token_hash: str, expires_at: datetime) -> None:
        self.reset_token_hash = token_hash
        self.reset_token_expires_at = expires_at

    def clear_reset_token(self) -> None:
        self.reset_token_hash = None
        self.reset_token_expires_at = None

    def public(self) -> Dict[str, Any]:
        """Output-safe view: never includes the password hash or reset state."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role.value,
            "created_at": self.created_at,
        }


__all__ = ["Role", "User", "utcnow"]

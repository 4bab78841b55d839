from __future__ import annotations

import threading
from pathlib import Path
from typing import Optional

from gatekeep.config import Environment, Settings, get_settings, reset_settings_cache
from gatekeep.logging import get_logger
from gatekeep.service.auth import AuthService
from gatekeep.service.email import EmailService, Notifier
from gatekeep.service.passwords import PasswordHasher
from gatekeep.service.reset_tokens import ResetTokenService
from gatekeep.service.session import SessionGate
from gatekeep.service.tokens import TokenService
from gatekeep.storage.memory import MemoryStore

logger = get_logger(__name__)


class Runtime:
    """Builds every service once from a single ``Settings`` instance."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[MemoryStore] = None,
        notifier: Optional[Notifier] = None,
    ) -> None:
        self.settings = settings or get_settings()
        if store is None:
            fs_root = (
                str(Path(self.settings.shared_fs_root))
                if self.settings.persist_store
                else None
            )
            store = MemoryStore(fs_root=fs_root)
        self.store = store
        self.email: Notifier = notifier or EmailService.from_settings(self.settings)
        self.hasher = PasswordHasher(
            min_length=self.settings.password_min_length,
            max_length=self.settings.password_max_length,
        )
        self.tokens = TokenService(self.settings)
        self.reset_tokens = ResetTokenService(self.settings)
        self.auth = AuthService(
            self.store,
            self.settings,
            hasher=self.hasher,
            tokens=self.tokens,
            reset_tokens=self.reset_tokens,
            notifier=self.email,
        )
        self.sessions = SessionGate(self.store, self.tokens)
        logger.info(
            "runtime_initialized",
            environment=self.settings.environment.value,
            persist_store=self.settings.persist_store,
            email_configured=getattr(self.email, "is_configured", None),
        )


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if settings.environment != Environment.TEST:
            raise RuntimeError("runtime reset is only allowed with ENVIRONMENT=test")
        runtime = Runtime(settings)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]

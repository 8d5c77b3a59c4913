from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional

from keyward.config import Settings, get_settings
from keyward.logging import get_logger
from keyward.service.access_tokens import AccessTokenCodec
from keyward.service.audit import AuditEmitter
from keyward.service.hasher import CredentialHasher
from keyward.service.lockout import LockoutPolicy
from keyward.service.sessions import SessionLifecycleManager
from keyward.service.tokens import SingleUseTokenIssuer
from keyward.storage.memory import MemoryStore
from keyward.storage.postgres import PostgresStore

logger = get_logger(__name__)


class Runtime:
    """Holds the singleton store and services for one process."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.memory_store_root,
                    lock_timeout=self.settings.storage_timeout_seconds,
                )
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    timeout_seconds=self.settings.storage_timeout_seconds,
                )
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.hasher = CredentialHasher.from_settings(self.settings)
        self.lockout = LockoutPolicy.from_settings(self.settings)
        self.tokens = SingleUseTokenIssuer.from_settings(self.store, self.settings)
        self.access_tokens = AccessTokenCodec.from_settings(self.settings)
        self.audit = AuditEmitter(
            self.store,
            asynchronous=self.settings.audit_async,
            queue_size=self.settings.audit_queue_size,
        )
        self.sessions = SessionLifecycleManager(
            self.store,
            self.hasher,
            self.lockout,
            self.tokens,
            self.access_tokens,
            self.audit,
            session_ttl=timedelta(minutes=self.settings.session_ttl_minutes),
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
        )
        logger.info(
            "runtime_init_completed",
            rotate_refresh_tokens=self.settings.rotate_refresh_tokens,
            audit_async=self.settings.audit_async,
        )

    def close(self) -> None:
        self.audit.close()
        self.hasher.close()
        if isinstance(self.store, PostgresStore):
            self.store.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the unlocked read is the fast path once the
    runtime exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> None:
    """Drop the runtime singleton and cached settings for isolated test runs."""

    from keyward.config import reset_settings_cache

    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        runtime = None
        reset_settings_cache()

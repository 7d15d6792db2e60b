from __future__ import annotations

import threading
from typing import Optional

from scopevault.config import BackendKind, Settings, get_settings, reset_settings_cache
from scopevault.logging import get_logger
from scopevault.service.auth import AccountService
from scopevault.service.lifecycle import ScopeLifecycleController
from scopevault.service.secrets import SecretService
from scopevault.service.tokens import TokenCodec
from scopevault.storage.common import ResourceBackend
from scopevault.storage.kubernetes import KubernetesBackend
from scopevault.storage.memory import MemoryBackend

logger = get_logger(__name__)


def build_backend(settings: Settings) -> ResourceBackend:
    if settings.scope_backend == BackendKind.MEMORY:
        if not settings.test_mode:
            logger.warning(
                "memory_backend_enabled",
                message="Tenant scopes live in process memory and vanish on restart",
            )
        return MemoryBackend()
    return KubernetesBackend.from_settings(settings)


class Runtime:
    """Composition root: builds each service once from one immutable Settings."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        backend: Optional[ResourceBackend] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            scope_backend=self.settings.scope_backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.backend = backend or build_backend(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_backend_init_failed",
                scope_backend=self.settings.scope_backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.tokens = TokenCodec.from_settings(self.settings)
        self.lifecycle = ScopeLifecycleController.from_settings(self.backend, self.settings)
        self.accounts = AccountService(
            self.backend,
            self.lifecycle,
            self.tokens,
            scope_prefix=self.settings.scope_prefix,
            credentials_name=self.settings.credentials_secret_name,
        )
        self.secrets = SecretService(
            self.backend,
            scope_prefix=self.settings.scope_prefix,
            credentials_name=self.settings.credentials_secret_name,
        )
        logger.info(
            "runtime_initialized",
            scope_backend=self.settings.scope_backend.value,
            scope_prefix=self.settings.scope_prefix,
            token_ttl_minutes=self.settings.token_ttl_minutes,
        )

    async def close(self) -> None:
        await self.backend.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent race condition during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime for isolated test runs."""
    global runtime

    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime

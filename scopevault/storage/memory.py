from __future__ import annotations

import copy
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional

from scopevault.logging import get_logger
from scopevault.storage.errors import (
    BackendError,
    ResourceAlreadyExists,
    ResourceNotFound,
)
from scopevault.storage.models import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    Scope,
    ScopePhase,
    SecretResource,
)


@dataclass
class _ScopeEntry:
    scope: Scope
    reads_until_active: int = 0
    reads_until_gone: int = 0
    secrets: Dict[str, SecretResource] = field(default_factory=dict)


class MemoryBackend:
    """In-process stand-in for the cluster backend.

    Mirrors the cluster's asynchronous convergence so the lifecycle logic can
    be exercised without a cluster: a new scope reports ``Pending`` for
    ``activation_delay_reads`` status reads, and a deleted scope lingers in
    ``Terminating`` for ``deletion_delay_reads`` reads, or indefinitely while
    it still carries finalizers.
    """

    def __init__(
        self,
        *,
        activation_delay_reads: int = 0,
        deletion_delay_reads: int = 0,
    ) -> None:
        self.logger = get_logger(__name__)
        self.activation_delay_reads = activation_delay_reads
        self.deletion_delay_reads = deletion_delay_reads
        self.scopes: Dict[str, _ScopeEntry] = {}
        self.calls: List[tuple[str, str]] = []
        self._failures: Dict[str, List[BackendError]] = {}
        self._data_lock = threading.RLock()

    # -- test hooks -------------------------------------------------------

    def inject_failure(self, operation: str, error: BackendError, times: int = 1) -> None:
        """Make the next ``times`` calls to ``operation`` raise ``error``."""
        with self._data_lock:
            self._failures.setdefault(operation, []).extend([error] * times)

    def add_finalizer(self, name: str, finalizer: str) -> None:
        with self._data_lock:
            entry = self._entry(name)
            entry.scope.finalizers.append(finalizer)

    def call_count(self, operation: str) -> int:
        with self._data_lock:
            return sum(1 for op, _ in self.calls if op == operation)

    # -- internals --------------------------------------------------------

    def _record(self, operation: str, target: str) -> None:
        self.calls.append((operation, target))
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _entry(self, name: str) -> _ScopeEntry:
        entry = self.scopes.get(name)
        if entry is None:
            raise ResourceNotFound(f"scope {name!r} not found", kind="scope", name=name)
        return entry

    def _writable_entry(self, name: str) -> _ScopeEntry:
        entry = self._entry(name)
        if entry.scope.phase == ScopePhase.TERMINATING:
            raise BackendError(
                f"scope {name!r} is being terminated",
                kind="scope",
                name=name,
            )
        return entry

    def _secret(self, scope: str, name: str) -> SecretResource:
        entry = self._entry(scope)
        secret = entry.secrets.get(name)
        if secret is None:
            raise ResourceNotFound(
                f"secret {name!r} not found in scope {scope!r}",
                kind="secret",
                name=name,
            )
        return secret

    # -- secrets ----------------------------------------------------------

    async def create_secret(self, scope: str, name: str, data: Dict[str, str]) -> None:
        with self._data_lock:
            self._record("create_secret", f"{scope}/{name}")
            entry = self._writable_entry(scope)
            if name in entry.secrets:
                raise ResourceAlreadyExists(
                    f"secret {name!r} already exists in scope {scope!r}",
                    kind="secret",
                    name=name,
                )
            entry.secrets[name] = SecretResource(
                scope=scope,
                name=name,
                data=dict(data),
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            )

    async def get_secret(self, scope: str, name: str) -> Dict[str, str]:
        with self._data_lock:
            self._record("get_secret", f"{scope}/{name}")
            return dict(self._secret(scope, name).data)

    async def update_secret(self, scope: str, name: str, data: Dict[str, str]) -> None:
        with self._data_lock:
            self._record("update_secret", f"{scope}/{name}")
            self._writable_entry(scope)
            secret = self._secret(scope, name)
            secret.data = dict(data)

    async def delete_secret(self, scope: str, name: str) -> None:
        with self._data_lock:
            self._record("delete_secret", f"{scope}/{name}")
            self._secret(scope, name)
            del self.scopes[scope].secrets[name]

    async def list_secrets(self, scope: str) -> List[str]:
        with self._data_lock:
            self._record("list_secrets", scope)
            entry = self._entry(scope)
            return sorted(
                name
                for name, secret in entry.secrets.items()
                if secret.labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE
            )

    # -- scopes -----------------------------------------------------------

    async def create_scope(self, name: str) -> None:
        with self._data_lock:
            self._record("create_scope", name)
            if name in self.scopes:
                raise ResourceAlreadyExists(
                    f"scope {name!r} already exists", kind="scope", name=name
                )
            phase = ScopePhase.PENDING if self.activation_delay_reads > 0 else ScopePhase.ACTIVE
            self.scopes[name] = _ScopeEntry(
                scope=Scope(
                    name=name,
                    phase=phase,
                    finalizers=["kubernetes"],
                    labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
                    created_at=datetime.now(timezone.utc),
                ),
                reads_until_active=self.activation_delay_reads,
            )
            self.logger.debug("memory_scope_created", scope=name, phase=phase.value)

    async def get_scope(self, name: str) -> Scope:
        with self._data_lock:
            self._record("get_scope", name)
            entry = self._entry(name)
            scope = entry.scope
            if scope.phase == ScopePhase.PENDING:
                entry.reads_until_active -= 1
                if entry.reads_until_active <= 0:
                    scope.phase = ScopePhase.ACTIVE
            elif scope.phase == ScopePhase.TERMINATING:
                if not scope.finalizers:
                    if entry.reads_until_gone <= 0:
                        del self.scopes[name]
                        raise ResourceNotFound(
                            f"scope {name!r} not found", kind="scope", name=name
                        )
                    entry.reads_until_gone -= 1
            return copy.deepcopy(scope)

    async def delete_scope(self, name: str) -> None:
        with self._data_lock:
            self._record("delete_scope", name)
            entry = self._entry(name)
            if entry.scope.phase == ScopePhase.TERMINATING:
                return
            entry.scope.phase = ScopePhase.TERMINATING
            entry.reads_until_gone = self.deletion_delay_reads
            # The built-in finalizer is released by the backend's own
            # controller; anything else pins the scope.
            entry.scope.finalizers = [f for f in entry.scope.finalizers if f != "kubernetes"]
            entry.secrets.clear()

    async def finalize_scope(self, name: str) -> List[str]:
        with self._data_lock:
            self._record("finalize_scope", name)
            entry = self._entry(name)
            cleared = list(entry.scope.finalizers)
            entry.scope.finalizers = []
            entry.reads_until_gone = 0
            return cleared

    async def close(self) -> None:
        return None

    def scope_phase(self, name: str) -> Optional[ScopePhase]:
        """Inspect a scope without advancing its simulated convergence."""
        with self._data_lock:
            entry = self.scopes.get(name)
            return entry.scope.phase if entry else None

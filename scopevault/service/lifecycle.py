from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from scopevault.config import Settings
from scopevault.logging import get_logger
from scopevault.service.errors import NotReadyError, StuckResourceError
from scopevault.storage.common import ResourceBackend
from scopevault.storage.errors import (
    ResourceAlreadyExists,
    ResourceNotFound,
    TransientBackendError,
)

logger = get_logger(__name__)

Probe = Callable[[], Awaitable[bool]]


class PollOutcome(str, Enum):
    READY = "ready"
    TIMED_OUT = "timed_out"


@dataclass
class PollResult:
    outcome: PollOutcome
    attempts: int
    elapsed_seconds: float

    @property
    def ready(self) -> bool:
        return self.outcome == PollOutcome.READY


async def poll_until(
    probe: Probe,
    *,
    timeout: float,
    interval: float,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollResult:
    """Call ``probe`` until it returns True or ``timeout`` seconds pass.

    The wait between attempts starts at ``interval`` and is multiplied by
    ``backoff`` after every miss, capped at ``max_interval`` and at the time
    left. The probe always runs once more at the deadline.
    """
    start = clock()
    attempts = 0
    delay = interval
    while True:
        attempts += 1
        if await probe():
            return PollResult(PollOutcome.READY, attempts, clock() - start)
        remaining = timeout - (clock() - start)
        if remaining <= 0:
            return PollResult(PollOutcome.TIMED_OUT, attempts, clock() - start)
        await sleep(min(delay, remaining))
        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)


@dataclass
class ScopeTransition:
    """What a lifecycle call observed on its way to the terminal state."""

    name: str
    state: str
    attempts: int = 0
    elapsed_seconds: float = 0.0
    forced_finalization: bool = False
    cleared_finalizers: List[str] = field(default_factory=list)


class ScopeLifecycleController:
    """Drives scopes to a confirmed terminal state on an asynchronous backend.

    A create is only reported once the backend shows the scope ``Active``; a
    delete only once the scope is gone. Neither waits longer than its
    configured windows.
    """

    def __init__(
        self,
        backend: ResourceBackend,
        *,
        ready_timeout: float = 10.0,
        delete_timeout: float = 30.0,
        finalize_timeout: float = 30.0,
        poll_interval: float = 0.2,
        poll_backoff: float = 1.0,
        max_poll_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.backend = backend
        self.ready_timeout = ready_timeout
        self.delete_timeout = delete_timeout
        self.finalize_timeout = finalize_timeout
        self.poll_interval = poll_interval
        self.poll_backoff = poll_backoff
        self.max_poll_interval = max_poll_interval
        self._clock = clock
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls, backend: ResourceBackend, settings: Settings, **kwargs
    ) -> "ScopeLifecycleController":
        return cls(
            backend,
            ready_timeout=settings.scope_ready_timeout_seconds,
            delete_timeout=settings.scope_delete_timeout_seconds,
            finalize_timeout=settings.scope_finalize_timeout_seconds,
            poll_interval=settings.scope_poll_interval_seconds,
            poll_backoff=settings.scope_poll_backoff,
            max_poll_interval=settings.scope_poll_max_interval_seconds,
            **kwargs,
        )

    async def _poll(self, probe: Probe, timeout: float) -> PollResult:
        return await poll_until(
            probe,
            timeout=timeout,
            interval=self.poll_interval,
            backoff=self.poll_backoff,
            max_interval=self.max_poll_interval,
            clock=self._clock,
            sleep=self._sleep,
        )

    async def create_scope_and_await_ready(
        self, name: str, timeout: Optional[float] = None
    ) -> ScopeTransition:
        """Create ``name`` (idempotently) and wait until it is usable."""
        window = self.ready_timeout if timeout is None else timeout
        try:
            await self.backend.create_scope(name)
            logger.info("scope_create_accepted", scope=name)
        except ResourceAlreadyExists:
            # An earlier attempt got this far; keep waiting on it.
            logger.info("scope_already_exists", scope=name)

        async def _is_active() -> bool:
            try:
                scope = await self.backend.get_scope(name)
            except ResourceNotFound:
                return False
            except TransientBackendError as exc:
                logger.warning("scope_status_read_failed", scope=name, error=exc.message)
                return False
            return scope.is_active

        result = await self._poll(_is_active, window)
        if not result.ready:
            logger.warning(
                "scope_not_ready",
                scope=name,
                timeout_seconds=window,
                attempts=result.attempts,
            )
            raise NotReadyError(
                f"scope {name!r} did not become active within {window:g}s",
                detail={"scope": name, "timeout_seconds": window},
            )
        logger.info(
            "scope_active",
            scope=name,
            attempts=result.attempts,
            elapsed_seconds=round(result.elapsed_seconds, 3),
        )
        return ScopeTransition(
            name=name,
            state="active",
            attempts=result.attempts,
            elapsed_seconds=result.elapsed_seconds,
        )

    async def delete_scope_and_await_removed(
        self,
        name: str,
        timeout: Optional[float] = None,
        finalize_timeout: Optional[float] = None,
    ) -> ScopeTransition:
        """Delete ``name`` and wait until the backend no longer reports it.

        When the first window passes with the scope still present, its
        finalizers are cleared through the backend's finalize call and a
        second window is granted before ``StuckResourceError`` is raised.
        """
        first_window = self.delete_timeout if timeout is None else timeout
        second_window = self.finalize_timeout if finalize_timeout is None else finalize_timeout
        try:
            await self.backend.delete_scope(name)
            logger.info("scope_delete_accepted", scope=name)
        except ResourceNotFound:
            logger.info("scope_already_removed", scope=name)
            return ScopeTransition(name=name, state="removed")

        async def _is_gone() -> bool:
            try:
                await self.backend.get_scope(name)
            except ResourceNotFound:
                return True
            except TransientBackendError as exc:
                logger.warning("scope_status_read_failed", scope=name, error=exc.message)
            return False

        result = await self._poll(_is_gone, first_window)
        if result.ready:
            logger.info("scope_removed", scope=name, attempts=result.attempts)
            return ScopeTransition(
                name=name,
                state="removed",
                attempts=result.attempts,
                elapsed_seconds=result.elapsed_seconds,
            )

        logger.warning("scope_delete_timeout", scope=name, timeout_seconds=first_window)
        try:
            cleared = await self.backend.finalize_scope(name)
        except ResourceNotFound:
            logger.info("scope_removed", scope=name, attempts=result.attempts + 1)
            return ScopeTransition(
                name=name,
                state="removed",
                attempts=result.attempts + 1,
                elapsed_seconds=result.elapsed_seconds,
            )
        logger.warning("scope_force_finalized", scope=name, finalizers=cleared)

        second = await self._poll(_is_gone, second_window)
        attempts = result.attempts + second.attempts
        elapsed = result.elapsed_seconds + second.elapsed_seconds
        if not second.ready:
            logger.error(
                "scope_stuck",
                scope=name,
                attempts=attempts,
                elapsed_seconds=round(elapsed, 3),
            )
            raise StuckResourceError(
                f"scope {name!r} was not removed after forced finalization",
                detail={"scope": name, "cleared_finalizers": cleared},
            )
        logger.info("scope_removed", scope=name, attempts=attempts, forced=True)
        return ScopeTransition(
            name=name,
            state="removed",
            attempts=attempts,
            elapsed_seconds=elapsed,
            forced_finalization=True,
            cleared_finalizers=cleared,
        )

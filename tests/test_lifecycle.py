"""Tests for scope lifecycle polling, timeouts and forced finalization.

All waits run on a fake clock, so windows of seconds cost no wall time.
"""

from typing import List

import httpx
import pytest

from scopevault.service.errors import NotReadyError, StuckResourceError
from scopevault.service.lifecycle import (
    PollOutcome,
    ScopeLifecycleController,
    poll_until,
)
from scopevault.storage.errors import TransientBackendError
from scopevault.storage.kubernetes import KubernetesBackend
from scopevault.storage.memory import MemoryBackend
from scopevault.storage.models import ScopePhase


class StubbornBackend(MemoryBackend):
    """A backend whose finalize call is accepted but never takes effect."""

    async def finalize_scope(self, name: str) -> List[str]:
        with self._data_lock:
            self._record("finalize_scope", name)
            return list(self._entry(name).scope.finalizers)


def _controller(backend, clock, **overrides):
    options = dict(
        ready_timeout=2.0,
        delete_timeout=1.0,
        finalize_timeout=1.0,
        poll_interval=0.25,
    )
    options.update(overrides)
    return ScopeLifecycleController(backend, clock=clock, sleep=clock.sleep, **options)


class TestPollUntil:
    """Tests for the bounded polling routine."""

    async def test_ready_on_first_probe_does_not_sleep(self, fake_clock):
        async def probe():
            return True

        result = await poll_until(
            probe, timeout=1.0, interval=0.25, clock=fake_clock, sleep=fake_clock.sleep
        )

        assert result.outcome == PollOutcome.READY
        assert result.attempts == 1
        assert fake_clock.sleeps == []

    async def test_times_out_after_final_probe_at_deadline(self, fake_clock):
        async def probe():
            return False

        result = await poll_until(
            probe, timeout=1.0, interval=0.25, clock=fake_clock, sleep=fake_clock.sleep
        )

        assert result.outcome == PollOutcome.TIMED_OUT
        assert not result.ready
        assert result.attempts == 5
        assert fake_clock.now == 1.0

    async def test_last_sleep_is_capped_at_remaining_time(self, fake_clock):
        async def probe():
            return False

        await poll_until(
            probe, timeout=1.0, interval=0.75, clock=fake_clock, sleep=fake_clock.sleep
        )

        assert fake_clock.sleeps == [0.75, 0.25]

    async def test_backoff_grows_to_cap(self, fake_clock):
        calls = []

        async def probe():
            calls.append(fake_clock())
            return len(calls) == 5

        result = await poll_until(
            probe,
            timeout=10.0,
            interval=0.1,
            backoff=2.0,
            max_interval=0.4,
            clock=fake_clock,
            sleep=fake_clock.sleep,
        )

        assert result.ready
        assert fake_clock.sleeps == pytest.approx([0.1, 0.2, 0.4, 0.4])


class TestCreate:
    """Tests for create-and-await-ready."""

    async def test_waits_until_scope_is_active(self, fake_clock):
        backend = MemoryBackend(activation_delay_reads=3)

        transition = await _controller(backend, fake_clock).create_scope_and_await_ready(
            "user-alice"
        )

        assert transition.state == "active"
        assert transition.attempts == 3
        assert backend.scope_phase("user-alice") == ScopePhase.ACTIVE

    async def test_existing_scope_is_not_an_error(self, fake_clock):
        """Test a retried create carries on waiting for the earlier attempt."""
        backend = MemoryBackend()
        await backend.create_scope("user-alice")

        transition = await _controller(backend, fake_clock).create_scope_and_await_ready(
            "user-alice"
        )

        assert transition.state == "active"

    async def test_transient_status_reads_keep_polling(self, fake_clock):
        backend = MemoryBackend()
        backend.inject_failure("get_scope", TransientBackendError("throttled"), times=2)

        transition = await _controller(backend, fake_clock).create_scope_and_await_ready(
            "user-alice"
        )

        assert transition.attempts == 3

    async def test_not_ready_within_window(self, fake_clock):
        backend = MemoryBackend(activation_delay_reads=1000)

        with pytest.raises(NotReadyError) as excinfo:
            await _controller(backend, fake_clock).create_scope_and_await_ready("user-alice")

        assert excinfo.value.status_code == 503
        assert excinfo.value.error_code == "not_ready"
        assert fake_clock.now == 2.0

    async def test_explicit_timeout_overrides_default(self, fake_clock):
        backend = MemoryBackend(activation_delay_reads=1000)

        with pytest.raises(NotReadyError):
            await _controller(backend, fake_clock).create_scope_and_await_ready(
                "user-alice", timeout=0.5
            )

        assert fake_clock.now == 0.5


class TestDelete:
    """Tests for delete-and-await-removed."""

    async def test_removed_on_first_check(self, fake_clock):
        backend = MemoryBackend()
        await backend.create_scope("user-alice")

        transition = await _controller(backend, fake_clock).delete_scope_and_await_removed(
            "user-alice"
        )

        assert transition.state == "removed"
        assert not transition.forced_finalization
        assert backend.call_count("finalize_scope") == 0

    async def test_waits_out_slow_deletion(self, fake_clock):
        backend = MemoryBackend(deletion_delay_reads=2)
        await backend.create_scope("user-alice")

        transition = await _controller(backend, fake_clock).delete_scope_and_await_removed(
            "user-alice"
        )

        assert transition.attempts == 3
        assert not transition.forced_finalization

    async def test_missing_scope_counts_as_removed(self, fake_clock):
        transition = await _controller(
            MemoryBackend(), fake_clock
        ).delete_scope_and_await_removed("user-ghost")

        assert transition.state == "removed"
        assert transition.attempts == 0

    async def test_pinned_scope_is_force_finalized(self, fake_clock):
        backend = MemoryBackend()
        await backend.create_scope("user-alice")
        backend.add_finalizer("user-alice", "example.com/guard")

        transition = await _controller(backend, fake_clock).delete_scope_and_await_removed(
            "user-alice"
        )

        assert transition.state == "removed"
        assert transition.forced_finalization
        assert transition.cleared_finalizers == ["example.com/guard"]
        assert backend.call_count("finalize_scope") == 1
        assert backend.scope_phase("user-alice") is None

    async def test_stuck_scope_raises_after_both_windows(self, fake_clock):
        backend = StubbornBackend()
        await backend.create_scope("user-alice")
        backend.add_finalizer("user-alice", "example.com/guard")

        with pytest.raises(StuckResourceError) as excinfo:
            await _controller(backend, fake_clock).delete_scope_and_await_removed(
                "user-alice"
            )

        assert excinfo.value.error_code == "stuck_resource"
        assert excinfo.value.detail["cleared_finalizers"] == ["example.com/guard"]
        assert fake_clock.now == 2.0

    async def test_from_settings_uses_configured_windows(self, fake_clock):
        from scopevault.config import Settings

        settings = Settings(
            jwt_secret="x" * 32,
            scope_ready_timeout_seconds=3,
            scope_delete_timeout_seconds=4,
            scope_finalize_timeout_seconds=5,
            scope_poll_interval_seconds=0.5,
        )

        controller = ScopeLifecycleController.from_settings(
            MemoryBackend(), settings, clock=fake_clock, sleep=fake_clock.sleep
        )

        assert (controller.ready_timeout, controller.delete_timeout) == (3, 4)
        assert controller.finalize_timeout == 5
        assert controller.poll_interval == 0.5


class TestForcedFinalization:
    """Tests for the path from a timed-out delete to forced finalization."""

    async def test_terminating_namespace_conflict_still_force_finalizes(self, fake_clock):
        """Test a repeated delete of a terminating namespace reaches finalization."""
        state = {"finalized": False}
        namespace = {
            "metadata": {"name": "user-alice"},
            "spec": {"finalizers": ["kubernetes"]},
            "status": {"phase": "Terminating"},
        }

        def handler(request: httpx.Request) -> httpx.Response:
            path = request.url.path
            if request.method == "DELETE" and path == "/api/v1/namespaces/user-alice":
                return httpx.Response(
                    409,
                    json={
                        "message": "The system is ensuring all content is removed "
                        "from this namespace."
                    },
                )
            if request.method == "GET" and path == "/api/v1/namespaces/user-alice":
                if state["finalized"]:
                    return httpx.Response(404, json={"reason": "NotFound"})
                return httpx.Response(200, json=namespace)
            if request.method == "PUT" and path == "/api/v1/namespaces/user-alice/finalize":
                state["finalized"] = True
                return httpx.Response(200, json={})
            return httpx.Response(500)

        backend = KubernetesBackend("https://k8s.test", transport=httpx.MockTransport(handler))
        try:
            transition = await _controller(backend, fake_clock).delete_scope_and_await_removed(
                "user-alice"
            )
        finally:
            await backend.close()

        assert transition.state == "removed"
        assert transition.forced_finalization
        assert transition.cleared_finalizers == ["kubernetes"]

    async def test_finalize_follows_first_window_directly(self, fake_clock):
        """Test finalization is the next call once the first window runs out."""
        backend = MemoryBackend()
        await backend.create_scope("user-alice")
        backend.add_finalizer("user-alice", "example.com/guard")

        transition = await _controller(backend, fake_clock).delete_scope_and_await_removed(
            "user-alice"
        )

        operations = [op for op, _ in backend.calls if op != "create_scope"]
        # Reads at 0, 0.25, 0.5, 0.75 and the deadline, then one confirming read.
        assert operations == ["delete_scope"] + ["get_scope"] * 5 + [
            "finalize_scope",
            "get_scope",
        ]
        assert transition.forced_finalization

"""Tests for the operator script that purges a tenant scope."""

import importlib.util
from pathlib import Path

import pytest

from scopevault.service.errors import TransientError
from scopevault.service.runtime import get_runtime
from scopevault.storage.errors import TransientBackendError
from scopevault.storage.models import ScopePhase

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "purge_scope.py"


@pytest.fixture
def purge():
    spec = importlib.util.spec_from_file_location("purge_scope", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


class TestPurgeScope:
    async def test_dry_run_reports_without_deleting(self, purge):
        runtime = get_runtime()
        await runtime.backend.create_scope("user-carol")

        result = await purge.purge_scope("carol", dry_run=True)

        assert result["status"] == "dry_run"
        assert result["phase"] == "Active"
        assert result["finalizers"] == ["kubernetes"]
        assert runtime.backend.scope_phase("user-carol") == ScopePhase.ACTIVE

    async def test_purge_removes_scope_and_secrets(self, purge):
        runtime = get_runtime()
        await runtime.backend.create_scope("user-carol")
        await runtime.backend.create_secret("user-carol", "db", {"k": "v"})

        result = await purge.purge_scope("carol")

        assert result["status"] == "removed"
        assert runtime.backend.scope_phase("user-carol") is None

    async def test_purge_forces_stuck_scope(self, purge):
        runtime = get_runtime()
        await runtime.backend.create_scope("user-carol")
        runtime.backend.add_finalizer("user-carol", "example.com/guard")

        result = await purge.purge_scope("carol")

        assert result["status"] == "removed"
        assert result["cleared_finalizers"] == ["example.com/guard"]

    async def test_absent_scope(self, purge):
        result = await purge.purge_scope("nobody")

        assert result["status"] == "absent"

    async def test_backend_failure_becomes_service_error(self, purge):
        runtime = get_runtime()
        await runtime.backend.create_scope("user-carol")
        runtime.backend.inject_failure("delete_scope", TransientBackendError("throttled"))

        with pytest.raises(TransientError) as excinfo:
            await purge.purge_scope("carol")

        assert excinfo.value.detail == {"retryable": True}
        assert runtime.backend.scope_phase("user-carol") == ScopePhase.ACTIVE


class TestMain:
    def test_backend_failure_exits_with_message(self, purge, monkeypatch, capsys):
        get_runtime().backend.inject_failure("get_scope", TransientBackendError("throttled"))
        monkeypatch.setattr("sys.argv", ["purge_scope.py", "--identity", "carol"])

        with pytest.raises(SystemExit) as excinfo:
            purge.main()

        assert excinfo.value.code == 1
        assert "Error: purge scope failed" in capsys.readouterr().err

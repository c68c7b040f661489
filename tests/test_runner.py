"""Tests for tplan.engine.runner — subprocess and dry-run runners."""

from __future__ import annotations

import subprocess
import sys
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from tplan.engine.runner import (
    PREREQUISITE_ENV_VAR,
    DryRunRunner,
    ExitResult,
    ProcessRunner,
    SubprocessRunner,
)

FIXED_TIME = datetime(2026, 2, 22, 6, 0, 0, tzinfo=timezone.utc)


def _fixed_clock() -> datetime:
    return FIXED_TIME


def _completed(returncode: int, stdout: str = "") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout)


class TestExitResult:
    def test_success(self):
        r = ExitResult("club", "t.py", "cmd", FIXED_TIME, exit_code=0)
        assert r.success
        assert "exit 0" in r.summary

    def test_failure_summary(self):
        r = ExitResult("club", "t.py", "cmd", FIXED_TIME, exit_code=2)
        assert not r.success
        assert "exited with 2" in r.summary

    def test_spawn_error_summary(self):
        r = ExitResult("club", "t.py", "cmd", FIXED_TIME, error="FileNotFoundError: x")
        assert not r.success
        assert "Failed to run" in r.summary


class TestSubprocessRunner:
    def test_protocol(self):
        assert isinstance(SubprocessRunner(), ProcessRunner)
        assert isinstance(DryRunRunner(), ProcessRunner)

    def test_default_command(self):
        argv = SubprocessRunner().command_for("web", "tests/a b.py")
        assert argv == [sys.executable, "-m", "pytest", "tests/a b.py"]

    def test_platform_command(self):
        runner = SubprocessRunner({"club": "npx playwright test {test_file} --project={platform}"})
        assert runner.command_for("club", "t.spec.js") == [
            "npx",
            "playwright",
            "test",
            "t.spec.js",
            "--project=club",
        ]

    def test_run_sets_nested_env(self):
        runner = SubprocessRunner(env={"PATH": "/bin"}, cwd="/repo", timeout=30, clock=_fixed_clock)
        with patch("tplan.engine.runner.subprocess.run", return_value=_completed(0, "ok")) as run:
            result = runner.run("web", "t.py")
        assert result.success
        assert result.output == "ok"
        assert result.timestamp == FIXED_TIME
        kwargs = run.call_args.kwargs
        assert kwargs["env"] == {"PATH": "/bin", PREREQUISITE_ENV_VAR: "1"}
        assert kwargs["cwd"] == "/repo"
        assert kwargs["timeout"] == 30

    def test_non_zero_exit(self):
        with patch("tplan.engine.runner.subprocess.run", return_value=_completed(1, "boom")):
            result = SubprocessRunner().run("web", "t.py")
        assert not result.success
        assert result.exit_code == 1

    def test_spawn_errors_become_results(self):
        for exc in (
            FileNotFoundError("no such file"),
            PermissionError("denied"),
            OSError("bad"),
            subprocess.TimeoutExpired(cmd="x", timeout=5),
        ):
            with patch("tplan.engine.runner.subprocess.run", side_effect=exc):
                result = SubprocessRunner().run("web", "t.py")
            assert not result.success
            assert result.exit_code is None
            assert result.error

    def test_output_truncated(self):
        with patch("tplan.engine.runner.subprocess.run", return_value=_completed(0, "x" * 5000)):
            result = SubprocessRunner().run("web", "t.py")
        assert result.output.startswith("... (truncated)")
        assert len(result.output) < 5000


class TestDryRunRunner:
    def test_records_calls(self):
        runner = DryRunRunner(clock=_fixed_clock)
        result = runner.run("club", "t.py")
        assert result.success
        assert [(c.platform, c.test_file, c.timestamp) for c in runner.calls] == [
            ("club", "t.py", FIXED_TIME)
        ]

    def test_fail_on(self):
        hook = MagicMock()
        runner = DryRunRunner(fail_on={"bad.py"}, on_run=hook)
        assert not runner.run("club", "bad.py").success
        hook.assert_not_called()
        assert runner.run("club", "good.py").success
        hook.assert_called_once_with("club", "good.py")

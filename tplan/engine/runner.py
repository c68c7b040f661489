"""Process runner interface — blocking test-runner subprocesses per platform.

Defines a ``ProcessRunner`` protocol and two implementations:

- ``SubprocessRunner``: runs the configured test command for a platform and
  waits for it to exit.
- ``DryRunRunner``: records calls without spawning anything (for tests).

Usage::

    from tplan.engine.runner import SubprocessRunner

    runner = SubprocessRunner(commands={"club": "npx wdio run {test_file}"})
    result = runner.run("club", "tests/ClubLoggedIn-SIGNIN-ClubApp-UNIT.spec.py")
    assert result.success
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping, Protocol, runtime_checkable

LOG = logging.getLogger("tplan.engine.runner")

#: Environment flag telling a child run that it executes a prerequisite.
PREREQUISITE_ENV_VAR = "TPLAN_PREREQUISITE_EXECUTION"

DEFAULT_COMMAND = "{python} -m pytest {test_file}"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExitResult:
    """Result of one prerequisite subprocess.

    Attributes:
        platform: Platform the test ran for.
        test_file: Test file that was executed.
        command: The command line that was (or would have been) run.
        exit_code: Process exit status, ``None`` when spawning failed.
        timestamp: When the run started (UTC).
        error: Error message if the process could not be spawned.
        output: Captured combined output (truncated).
    """

    platform: str
    test_file: str
    command: str
    timestamp: datetime
    exit_code: int | None = None
    error: str | None = None
    output: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def summary(self) -> str:
        """One-line human-readable summary."""
        if self.success:
            return f"Ran {self.test_file} on {self.platform} (exit 0)"
        if self.error:
            return f"Failed to run {self.test_file} on {self.platform}: {self.error}"
        return f"{self.test_file} on {self.platform} exited with {self.exit_code}"


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class ProcessRunner(Protocol):
    """Protocol for running one prerequisite test on a platform.

    Implementations must block until the test finishes.
    """

    def run(self, platform: str, test_file: str) -> ExitResult:
        """Run *test_file* for *platform* and wait for it.

        Args:
            platform: Canonical platform key (e.g. ``"club"``).
            test_file: Path to the test file.

        Returns:
            An ``ExitResult``; ``success`` is true only for exit code 0.
        """
        ...


def _utc_now() -> datetime:
    """Return the current UTC time (extracted for testability)."""
    return datetime.now(timezone.utc)


def _truncate_output(output: str, limit: int = 4000) -> str:
    if len(output) <= limit:
        return output
    return "... (truncated)\n" + output[-limit:]


# ---------------------------------------------------------------------------
# Subprocess runner (default production implementation)
# ---------------------------------------------------------------------------


class SubprocessRunner:
    """Runs prerequisite tests as blocking subprocesses.

    The command for a platform is a template with ``{test_file}``,
    ``{platform}`` and ``{python}`` placeholders; platforms without an entry
    use ``default_command``.  The child environment gets
    ``TPLAN_PREREQUISITE_EXECUTION=1`` so nested resolutions know they are
    nested.

    Args:
        commands: Per-platform command templates.
        default_command: Template used for unlisted platforms.
        cwd: Working directory for the subprocess.
        env: Base environment.  Defaults to the current environment.
        timeout: Optional timeout in seconds per run.
        clock: Callable returning the current UTC datetime (override in tests).
    """

    def __init__(
        self,
        commands: Mapping[str, str] | None = None,
        *,
        default_command: str = DEFAULT_COMMAND,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        clock: Any = None,
    ) -> None:
        self._commands = dict(commands or {})
        self._default_command = default_command
        self._cwd = cwd
        self._env = dict(env) if env is not None else None
        self._timeout = timeout
        self._clock = clock or _utc_now

    def command_for(self, platform: str, test_file: str) -> list[str]:
        template = self._commands.get(platform, self._default_command)
        rendered = template.format(
            test_file=shlex.quote(test_file),
            platform=platform,
            python=shlex.quote(sys.executable),
        )
        return shlex.split(rendered)

    def run(self, platform: str, test_file: str) -> ExitResult:
        """Run the test and wait for it to exit.

        Spawn errors (``FileNotFoundError``, ``PermissionError``, ``OSError``)
        and timeouts are returned as a failed ``ExitResult`` rather than
        raised.
        """
        ts = self._clock()
        argv = self.command_for(platform, test_file)
        command = shlex.join(argv)
        env = dict(self._env if self._env is not None else os.environ)
        env[PREREQUISITE_ENV_VAR] = "1"
        LOG.info("Running prerequisite on %s: %s (cwd=%s)", platform, command, self._cwd or os.getcwd())

        def _failed(error: str) -> ExitResult:
            return ExitResult(
                platform=platform,
                test_file=test_file,
                command=command,
                timestamp=ts,
                error=error,
            )

        try:
            proc = subprocess.run(  # noqa: S603
                argv,
                cwd=self._cwd,
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                stdin=subprocess.DEVNULL,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except FileNotFoundError as exc:
            LOG.error("Prerequisite spawn failed (file not found): %s", exc)
            return _failed(f"FileNotFoundError: {exc}")
        except PermissionError as exc:
            LOG.error("Prerequisite spawn failed (permission denied): %s", exc)
            return _failed(f"PermissionError: {exc}")
        except subprocess.TimeoutExpired as exc:
            LOG.error("Prerequisite timed out after %ss: %s", exc.timeout, command)
            return _failed(f"Timed out after {exc.timeout}s")
        except OSError as exc:
            LOG.error("Prerequisite spawn failed (OS error): %s", exc)
            return _failed(f"OSError: {exc}")

        result = ExitResult(
            platform=platform,
            test_file=test_file,
            command=command,
            timestamp=ts,
            exit_code=proc.returncode,
            output=_truncate_output(proc.stdout or ""),
        )
        if result.success:
            LOG.info(result.summary)
        else:
            LOG.error(result.summary)
        return result


# ---------------------------------------------------------------------------
# Dry-run runner (for testing / simulation)
# ---------------------------------------------------------------------------


@dataclass
class RunRecord:
    """A recorded call from ``DryRunRunner``."""

    platform: str
    test_file: str
    timestamp: datetime


class DryRunRunner:
    """Records run calls without spawning processes.

    Every call to ``run()`` appends a ``RunRecord`` to ``calls``, invokes the
    optional ``on_run`` hook (tests use it to simulate the child updating the
    test data) and returns a successful ``ExitResult``.

    Args:
        clock: Callable returning the current UTC datetime (override in tests).
        fail_on: Test files whose run should report exit code 1.
        on_run: Optional ``callable(platform, test_file)`` invoked per run.
    """

    def __init__(
        self,
        clock: Any = None,
        fail_on: set[str] | None = None,
        on_run: Any = None,
    ) -> None:
        self._clock = clock or _utc_now
        self._fail_on = fail_on or set()
        self._on_run = on_run
        self.calls: list[RunRecord] = []

    def run(self, platform: str, test_file: str) -> ExitResult:
        """Record the call and return a mock result."""
        ts = self._clock()
        self.calls.append(RunRecord(platform=platform, test_file=test_file, timestamp=ts))
        command = f"dry-run {platform} {test_file}"
        if test_file in self._fail_on:
            return ExitResult(
                platform=platform,
                test_file=test_file,
                command=command,
                timestamp=ts,
                exit_code=1,
            )
        if self._on_run is not None:
            self._on_run(platform, test_file)
        return ExitResult(
            platform=platform,
            test_file=test_file,
            command=command,
            timestamp=ts,
            exit_code=0,
        )

"""Confirmation prompts — cancellable timed countdowns.

The orchestrator asks a ``Prompt`` before doing something the operator may
want to stop (running a prerequisite on another platform, auto-correcting
test data).  The prompt resolves to ``Decision.PROCEED`` when the countdown
runs out and to ``Decision.CANCEL`` when a key is pressed or the run is
interrupted.

Usage::

    from tplan.engine.prompt import Decision, TerminalPrompt

    decision = TerminalPrompt().confirm("Running club prerequisites", 10)
    if decision == Decision.CANCEL:
        ...
"""

from __future__ import annotations

import logging
import os
import select
import sys
import time
from dataclasses import dataclass
from typing import IO, Iterable, Protocol, runtime_checkable

LOG = logging.getLogger("tplan.engine.prompt")


class Decision:
    """Prompt outcomes."""

    PROCEED = "proceed"
    CANCEL = "cancel"


@runtime_checkable
class Prompt(Protocol):
    """Protocol for a timed, cancellable confirmation."""

    def confirm(self, message: str, timeout: float) -> str:
        """Return ``Decision.PROCEED`` or ``Decision.CANCEL``."""
        ...


class AutoPrompt:
    """Non-interactive prompt that always returns the same decision."""

    def __init__(self, decision: str = Decision.PROCEED) -> None:
        self._decision = decision

    def confirm(self, message: str, timeout: float) -> str:
        LOG.info("%s (auto-%s)", message, self._decision)
        return self._decision


@dataclass
class PromptCall:
    """A recorded call from ``ScriptedPrompt``."""

    message: str
    timeout: float


class ScriptedPrompt:
    """Returns pre-scripted decisions in order and records every call.

    When the script runs out, ``default`` is returned.
    """

    def __init__(self, decisions: Iterable[str] = (), default: str = Decision.PROCEED) -> None:
        self._decisions = list(decisions)
        self._default = default
        self.calls: list[PromptCall] = []

    def confirm(self, message: str, timeout: float) -> str:
        self.calls.append(PromptCall(message=message, timeout=timeout))
        if self._decisions:
            return self._decisions.pop(0)
        return self._default


class TerminalPrompt:
    """Countdown on a terminal; any key press cancels.

    On a TTY the terminal is switched to cbreak mode for the countdown and
    restored afterwards, whatever happens.  Without a TTY nothing can be
    pressed, so the countdown simply elapses.

    Args:
        stdin: Input stream (defaults to ``sys.stdin``).
        stdout: Output stream for the countdown (defaults to ``sys.stderr``).
    """

    def __init__(self, stdin: IO[str] | None = None, stdout: IO[str] | None = None) -> None:
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stderr

    def _write(self, text: str) -> None:
        self._stdout.write(text)
        self._stdout.flush()

    def confirm(self, message: str, timeout: float) -> str:
        self._write(f"\n{message} in {timeout:g} seconds...\n   Press any key to cancel\n")
        try:
            fd = self._stdin.fileno()
            interactive = self._stdin.isatty()
        except (AttributeError, OSError, ValueError):
            fd, interactive = -1, False

        try:
            if not interactive:
                time.sleep(max(timeout, 0))
                decision = Decision.PROCEED
            else:
                decision = self._countdown(fd, timeout)
        except KeyboardInterrupt:
            decision = Decision.CANCEL

        self._write("\n   Cancelled\n" if decision == Decision.CANCEL else "\n   Proceeding\n")
        return decision

    def _countdown(self, fd: int, timeout: float) -> str:
        import termios
        import tty

        saved = termios.tcgetattr(fd)
        try:
            tty.setcbreak(fd)
            deadline = time.monotonic() + timeout
            while True:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return Decision.PROCEED
                self._write(f"\r   {int(remaining + 0.999)}s ")
                ready, _, _ = select.select([fd], [], [], min(1.0, remaining))
                if ready:
                    os.read(fd, 1)
                    return Decision.CANCEL
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

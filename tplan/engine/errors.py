"""Planner error taxonomy.

Every error raised by the resolver and orchestrator derives from
``PlannerError`` so CLI wrappers can catch one type and map each subclass to
its own exit code (see ``tplan.error_report``).

Usage::

    from tplan.engine.errors import StuckChainError

    try:
        orchestrator.resolve("booking_accepted", "tests/data/booking.json")
    except StuckChainError as exc:
        print(exc.report)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence


class PlannerError(Exception):
    """Base class for all planner errors."""


class ConfigurationError(PlannerError):
    """A descriptor or registry lookup failed.

    Attributes:
        status: The status (or class name) that could not be resolved.
    """

    def __init__(self, message: str, *, status: str | None = None) -> None:
        self.status = status
        super().__init__(message)


@dataclass(frozen=True)
class Mismatch:
    """One ``requires`` field whose actual value disagrees with the expected one."""

    field: str
    expected: Any
    actual: Any
    correctable: bool = True

    def describe(self) -> str:
        return f"{self.field}: required {self.expected!r}, actual {self.actual!r}"


class DataMismatchError(PlannerError):
    """Persisted test data disagrees with a ``requires`` predicate.

    Attributes:
        mismatches: The individual field mismatches.
    """

    def __init__(self, mismatches: Sequence[Mismatch], message: str = "") -> None:
        self.mismatches = tuple(mismatches)
        bullet_list = "\n  - ".join(m.describe() for m in self.mismatches)
        header = message or "Test data does not satisfy requirements"
        super().__init__(
            f"{header} ({len(self.mismatches)} field(s)):\n  - {bullet_list}"
        )


class ExecutionError(PlannerError):
    """An action raised, or a prerequisite subprocess exited non-zero.

    Attributes:
        status: Status of the chain step whose execution failed.
        test_file: Test file backing that step.
    """

    def __init__(
        self,
        message: str,
        *,
        status: str | None = None,
        test_file: str | None = None,
    ) -> None:
        self.status = status
        self.test_file = test_file
        super().__init__(message)


class StuckChainError(PlannerError):
    """Re-resolution made no progress.

    Attributes:
        report: Printable path-to-target report for the last analysis.
        incomplete: Number of incomplete steps when progress stopped.
    """

    def __init__(self, message: str, *, report: str = "", incomplete: int = 0) -> None:
        self.report = report
        self.incomplete = incomplete
        super().__init__(message)


class CrossPlatformBlockedError(PlannerError):
    """A prerequisite on another platform could not be run automatically.

    Attributes:
        platform: Platform of the pending segment.
        pending: Statuses of the pending steps, in chain order.
    """

    def __init__(
        self, message: str, *, platform: str, pending: Sequence[str] = ()
    ) -> None:
        self.platform = platform
        self.pending = tuple(pending)
        super().__init__(message)

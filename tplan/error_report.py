"""Error reports for ``tplan`` CLI commands.

:func:`build_error_report` captures an exception together with the command
context and maps planner errors to distinct exit codes, so wrappers (CI jobs,
the parent of a nested prerequisite run) can tell a stuck chain from a
refused cross-platform run.

Typical usage inside a CLI handler::

    from tplan.error_report import build_error_report, render_error_report

    try:
        orchestrator.resolve(target, data_path)
    except Exception as exc:
        report = build_error_report(exc, command="resolve", args=vars(args))
        render_error_report(report, file=sys.stderr)
        return report.exit_code
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import json
import os
import platform
import traceback
from typing import IO, Any, Dict, Optional

from tplan.engine.errors import (
    ConfigurationError,
    CrossPlatformBlockedError,
    DataMismatchError,
    ExecutionError,
    StuckChainError,
)

EXIT_CODES: tuple[tuple[type[BaseException], int], ...] = (
    (ConfigurationError, 3),
    (DataMismatchError, 4),
    (ExecutionError, 5),
    (StuckChainError, 6),
    (CrossPlatformBlockedError, 7),
)
DEFAULT_EXIT_CODE = 1


def exit_code_for(exc: BaseException) -> int:
    """Return the process exit code for *exc*."""
    for exc_type, code in EXIT_CODES:
        if isinstance(exc, exc_type):
            return code
    return DEFAULT_EXIT_CODE


def _details_for(exc: BaseException) -> Dict[str, Any]:
    """Extract the structured fields planner errors carry."""
    if isinstance(exc, DataMismatchError):
        return {
            "mismatches": [
                {"field": m.field, "expected": m.expected, "actual": m.actual}
                for m in exc.mismatches
            ]
        }
    if isinstance(exc, StuckChainError):
        return {"incomplete": exc.incomplete, "report": exc.report}
    if isinstance(exc, CrossPlatformBlockedError):
        return {"platform": exc.platform, "pending": list(exc.pending)}
    if isinstance(exc, ExecutionError):
        return {"status": exc.status, "test_file": exc.test_file}
    if isinstance(exc, ConfigurationError) and exc.status:
        return {"status": exc.status}
    return {}


@dataclasses.dataclass(frozen=True)
class ErrorReport:
    """Immutable value object holding every piece of an error report."""

    command: str
    error_type: str
    error_message: str
    traceback: Optional[str]
    timestamp: str
    hostname: str
    python_version: str
    args: Dict[str, Any]
    details: Dict[str, Any]
    exit_code: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, sort_keys=True, default=str)


def build_error_report(
    exc: BaseException,
    *,
    command: str = "",
    args: Optional[Dict[str, Any]] = None,
    exit_code: Optional[int] = None,
) -> ErrorReport:
    """Build an :class:`ErrorReport` from an exception and context metadata.

    Parameters
    ----------
    exc:
        The exception that triggered the report.
    command:
        Name of the CLI command that was running (e.g. ``"resolve"``).
    args:
        Invocation context (CLI flags, target, data path).
    exit_code:
        Overrides the code derived from the exception type.

    Returns
    -------
    ErrorReport
    """
    tb: Optional[str] = None
    if exc.__traceback__ is not None:
        tb = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))

    try:
        hostname = os.uname().nodename
    except AttributeError:  # pragma: no cover - not available on Windows
        hostname = "(unknown)"

    return ErrorReport(
        command=command,
        error_type=type(exc).__qualname__,
        error_message=str(exc),
        traceback=tb,
        timestamp=dt.datetime.now(dt.timezone.utc).isoformat(),
        hostname=hostname,
        python_version=platform.python_version(),
        args=args or {},
        details=_details_for(exc),
        exit_code=exit_code if exit_code is not None else exit_code_for(exc),
    )


def render_error_report(
    report: ErrorReport,
    *,
    file: IO[str] | None = None,
    verbose: bool = False,
) -> str:
    """Render a human-readable report; print it to *file* when given.

    The traceback is only included when *verbose* is true.  A stuck chain's
    path report is always included since it is the actionable part.
    """
    lines = [
        "=== tplan Error Report ===",
        f"Command:   {report.command or '(unknown)'}",
        f"Error:     {report.error_type}: {report.error_message}",
        f"Timestamp: {report.timestamp}",
        f"Host:      {report.hostname}",
        f"Python:    {report.python_version}",
    ]
    if report.args:
        lines.append(f"Args:      {json.dumps(report.args, sort_keys=True, default=str)}")

    for mismatch in report.details.get("mismatches", []):
        lines.append(
            f"Mismatch:  {mismatch['field']}: expected {mismatch['expected']!r}, "
            f"actual {mismatch['actual']!r}"
        )
    if report.details.get("pending"):
        lines.append(
            f"Pending:   {', '.join(report.details['pending'])} "
            f"on {report.details.get('platform')}"
        )
    if report.details.get("report"):
        lines.append("")
        lines.append(report.details["report"].rstrip())

    if verbose and report.traceback:
        lines.append("")
        lines.append("--- traceback ---")
        lines.append(report.traceback.rstrip())
        lines.append("--- end traceback ---")

    lines.append(f"Exit code: {report.exit_code}")
    lines.append("==========================")

    text = "\n".join(lines)
    if file is not None:
        print(text, file=file)
    return text


def render_error_report_json(report: ErrorReport, *, file: IO[str] | None = None) -> str:
    """Render the report as JSON and optionally print it."""
    text = report.to_json()
    if file is not None:
        print(text, file=file)
    return text

"""Human-readable reports for analyses, pending segments and mismatches."""

from __future__ import annotations

from typing import Sequence

from tplan.engine.chain import Analysis, ChainStep
from tplan.engine.errors import Mismatch
from tplan.engine.segments import Segment


def _marker(step: ChainStep) -> str:
    if step.blocked:
        return "[!]"
    if step.complete:
        return "[x]"
    if step.is_target:
        return "[>]"
    return "[ ]"


def format_path_report(analysis: Analysis) -> str:
    """Render the full path to the target with per-step status."""
    lines = [
        f"Full path to target: {analysis.current_status} -> {analysis.target_status}"
        + (" (loop)" if analysis.is_loop_transition else ""),
    ]
    for index, step in enumerate(analysis.chain, start=1):
        suffix = "  <- target" if step.is_target else ""
        if step.status == analysis.current_status and step.complete:
            suffix += "  <- current"
        lines.append(f"  {_marker(step)} {index}. {step.status} ({step.platform}){suffix}")
        if not step.complete:
            lines.append(f"        Action: {step.action_name}")
            lines.append(f"        Test:   {step.test_file}")
            if step.transition_event:
                lines.append(f"        Event:  {step.transition_event}")
        if step.load_error:
            lines.append(f"        Error:  {step.load_error}")
        if step.blocked_by_conditions:
            lines.append(f"        Blocked: {step.blocked_reason}")

    if analysis.regular_fields:
        lines.append("Missing fields:")
        for m in analysis.regular_fields:
            lines.append(f"  - {m.field}: required {m.expected!r}, actual {m.actual!r}")

    if analysis.ready:
        lines.append("Ready.")
    elif analysis.next_step is not None:
        nxt = analysis.next_step
        lines.append(f"Next step: {nxt.status} ({nxt.action_name} in {nxt.test_file})")
    return "\n".join(lines)


def format_cross_platform_message(segment: Segment, current_platform: str) -> str:
    """Describe a pending segment that must run on another platform."""
    lines = [
        f"Prerequisites on platform '{segment.platform}' are required "
        f"(current platform: '{current_platform}'):",
    ]
    for step in segment.pending_steps:
        lines.append(f"  - {step.status}: {step.test_file}")
    return "\n".join(lines)


def format_mismatch_report(mismatches: Sequence[Mismatch]) -> str:
    """List data mismatches with expected and actual values."""
    lines = [f"Test data does not match requirements ({len(mismatches)} field(s)):"]
    for m in mismatches:
        fix = "" if m.correctable else "  (manual fix required)"
        lines.append(f"  - {m.field}: {m.actual!r} -> {m.expected!r}{fix}")
    return "\n".join(lines)

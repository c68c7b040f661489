"""CLI layer for tplan.

Presentation-layer code only: argument parsing, handlers and output
formatting.  Resolution logic lives in ``tplan.engine``.

Commands::

    tplan resolve TARGET --data PATH [--test-file F] [--platform P]
                  [--skip-preflight] [--nested] [--timeout S] [--json]
    tplan analyze TARGET --data PATH [--test-file F] [--platform P] [--json]
    tplan registry [--json]
"""

from __future__ import annotations

import argparse
import dataclasses
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from tplan import metrics
from tplan.config import PlannerConfig, load_config
from tplan.engine.chain import Analysis, ChainBuilder, DiscoveryCache
from tplan.engine.descriptor import StateRegistry
from tplan.engine.errors import PlannerError
from tplan.engine.orchestrator import ResolutionResult
from tplan.engine.prompt import TerminalPrompt
from tplan.engine.report import format_path_report
from tplan.engine.runner import PREREQUISITE_ENV_VAR
from tplan.engine.segments import PlatformSegmenter
from tplan.engine.selector import TransitionSelector
from tplan.engine.store import StateStore
from tplan.error_report import (
    build_error_report,
    render_error_report,
    render_error_report_json,
)
from tplan.planner_factory import build_orchestrator, build_repository

LOG = logging.getLogger("tplan.cli")


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _analysis_to_dict(analysis: Analysis) -> Dict[str, Any]:
    return {
        "ready": analysis.ready,
        "currentStatus": analysis.current_status,
        "targetStatus": analysis.target_status,
        "isLoopTransition": analysis.is_loop_transition,
        "isObserverMode": analysis.is_observer_mode,
        "stepsRemaining": analysis.steps_remaining,
        "chain": [
            {
                "status": step.status,
                "actionName": step.action_name,
                "testFile": step.test_file,
                "platform": step.platform,
                "complete": step.complete,
                "isTarget": step.is_target,
                "event": step.transition_event,
                "loadError": step.load_error,
                "blockedReason": step.blocked_reason,
            }
            for step in analysis.chain
        ],
        "missingFields": [dataclasses.asdict(m) for m in analysis.missing_fields],
    }


def _result_to_dict(result: ResolutionResult) -> Dict[str, Any]:
    pending: Optional[Dict[str, Any]] = None
    if result.pending_segment is not None:
        pending = {
            "platform": result.pending_segment.platform,
            "steps": [s.status for s in result.pending_segment.pending_steps],
        }
    return {
        "status": result.status,
        "targetStatus": result.target_status,
        "attempts": result.attempts,
        "executed": [
            {"status": s.status, "platform": s.platform, "mode": s.mode, "testFile": s.test_file}
            for s in result.executed
        ],
        "corrections": [m.field for m in result.corrections],
        "pendingSegment": pending,
        "reason": result.reason,
    }


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _effective_config(args: argparse.Namespace) -> PlannerConfig:
    config = load_config(getattr(args, "config", None))
    timeout = getattr(args, "timeout", None)
    if timeout is not None:
        config = dataclasses.replace(config, confirm_timeout=timeout)
    return config


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _cli_resolve(args: argparse.Namespace) -> int:
    config = _effective_config(args)
    nested = args.nested or os.getenv(PREREQUISITE_ENV_VAR) == "1"
    orchestrator = build_orchestrator(config, prompt=TerminalPrompt())
    try:
        result = orchestrator.resolve(
            args.target,
            args.data,
            test_file=args.test_file,
            platform=args.platform,
            nested=nested,
            skip_preflight=args.skip_preflight,
        )
    finally:
        if config.metrics_file:
            metrics.write_metrics(config.metrics_file)
    if args.json:
        _print_json(_result_to_dict(result))
    else:
        print(result.summary())
        if result.analysis is not None:
            print(format_path_report(result.analysis))
    return 0


def _cli_analyze(args: argparse.Namespace) -> int:
    config = _effective_config(args)
    repository = build_repository(config)
    registry = StateRegistry.load(config.registry_path)
    segmenter = PlatformSegmenter(config.platform_aliases)
    builder = ChainBuilder(
        repository,
        registry,
        selector=TransitionSelector(segmenter.normalize),
        discovery=DiscoveryCache(config.discovery_cache_path),
    )
    descriptor = repository.resolve(registry.class_for(args.target) or args.target)
    record = StateStore(config.session_only_fields).load(args.data)
    analysis = builder.analyze(
        descriptor, record.data, test_file=args.test_file, platform=args.platform
    )
    if args.json:
        _print_json(_analysis_to_dict(analysis))
    else:
        print(format_path_report(analysis))
    return 0


def _cli_registry(args: argparse.Namespace) -> int:
    config = _effective_config(args)
    registry = StateRegistry.load(config.registry_path)
    if args.json:
        _print_json({status: registry.class_for(status) for status in registry.statuses()})
        return 0
    if not len(registry):
        print(f"No statuses registered in {config.registry_path}")
        return 0
    width = max(len(status) for status in registry.statuses())
    for status in registry.statuses():
        print(f"{status.ljust(width)}  {registry.class_for(status)}")
    return 0


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def _add_target_arguments(cmd: argparse.ArgumentParser) -> None:
    cmd.add_argument("target", help="Target status or descriptor name")
    cmd.add_argument("--data", required=True, help="Test data file (master path)")
    cmd.add_argument("--test-file", dest="test_file", help="Invoking test file")
    cmd.add_argument("--platform", help="Current execution platform")
    cmd.add_argument("--json", action="store_true", help="Output JSON")


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="tplan", description="Test prerequisite planner")
    parser.add_argument("--config", help="Config file (default: tplan.yaml)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command")

    resolve = sub.add_parser("resolve", help="Execute prerequisites until the target is ready")
    _add_target_arguments(resolve)
    resolve.add_argument("--skip-preflight", action="store_true", dest="skip_preflight")
    resolve.add_argument(
        "--nested",
        action="store_true",
        help=f"Run as a nested prerequisite (implied by {PREREQUISITE_ENV_VAR}=1)",
    )
    resolve.add_argument(
        "--timeout", type=float, help="Confirmation countdown in seconds"
    )

    analyze = sub.add_parser("analyze", help="Print the path to the target without executing")
    _add_target_arguments(analyze)

    registry = sub.add_parser("registry", help="List registered statuses")
    registry.add_argument("--json", action="store_true", help="Output JSON")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
    )
    handlers = {
        "resolve": _cli_resolve,
        "analyze": _cli_analyze,
        "registry": _cli_registry,
    }
    handler = handlers.get(args.command)
    if handler is None:
        parser.print_help(sys.stderr)
        raise SystemExit(2)
    try:
        exit_code = handler(args)
        if exit_code:
            raise SystemExit(exit_code)
    except SystemExit:
        raise
    except Exception as exc:
        if isinstance(exc, PlannerError):
            LOG.error("Command '%s' failed: %s", args.command, exc)
        else:
            LOG.exception("Unhandled error in command '%s'", args.command)
        report = build_error_report(exc, command=args.command, args=vars(args))
        if getattr(args, "json", False):
            render_error_report_json(report, file=sys.stderr)
        else:
            render_error_report(
                report, file=sys.stderr, verbose=not isinstance(exc, PlannerError)
            )
        raise SystemExit(report.exit_code)


if __name__ == "__main__":  # pragma: no cover
    main()

"""Execution orchestrator — drives a target status to readiness.

Coordinates the descriptor repository, chain builder, platform segmenter,
state store and the external collaborators (actions, subprocess runner,
confirmation prompt) into one resolution loop:

1. Reload descriptors and the state registry, load the test data.
2. Analyse the target.  Ready means done.
3. Take the first incomplete platform segment:

   - **Same platform**: run each pending action in-process with the live
     session (``page``/``driver``) and persist its result.  A step whose
     incoming transition conditions fail is refused, and a step that does not
     leave the data at its status stops the run.
   - **Other platform**: a nested invocation returns a ``PARTIAL`` result for
     the caller to handle; a top-level invocation asks for confirmation and
     runs each pending test as a blocking subprocess.

4. Re-analyse.  The number of incomplete steps must shrink on every pass,
   otherwise the chain is stuck.

Usage::

    from tplan.engine.orchestrator import ExecutionOrchestrator, OrchestratorConfig

    orchestrator = ExecutionOrchestrator(
        repository=DescriptorRepository("tests/implications"),
        store=StateStore(),
        config=OrchestratorConfig(registry_path="tests/implications/.state-registry.json"),
        prompt=TerminalPrompt(),
    )
    result = orchestrator.resolve("booking_accepted", "tests/data/booking-master.json",
                                  test_file=__file__, page=page)

    # async sessions: actions are awaited in the running loop
    result = await orchestrator.resolve_async("booking_accepted", data_path, page=page)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from tplan import metrics
from tplan.engine.actions import (
    ActionLoader,
    ActionOutcome,
    ModuleActionLoader,
    normalize_result,
    normalize_result_async,
)
from tplan.engine.chain import (
    Analysis,
    ChainBuilder,
    ChainStep,
    DiscoveryCache,
    global_status,
)
from tplan.engine.descriptor import Descriptor, DescriptorRepository, StateRegistry
from tplan.engine.errors import (
    ConfigurationError,
    CrossPlatformBlockedError,
    DataMismatchError,
    ExecutionError,
    Mismatch,
    PlannerError,
    StuckChainError,
)
from tplan.engine.preflight import PreflightChecker
from tplan.engine.prompt import AutoPrompt, Decision, Prompt
from tplan.engine.requirements import RequirementResult, get_nested
from tplan.engine.report import format_cross_platform_message, format_path_report
from tplan.engine.runner import ProcessRunner, SubprocessRunner
from tplan.engine.segments import PlatformSegmenter, Segment, detect_platform_from_filename
from tplan.engine.selector import TransitionSelector, extract_event_from_filename
from tplan.engine.store import StateStore, delta_path

LOG = logging.getLogger("tplan.engine.orchestrator")

DEFAULT_REGISTRY_PATH = "tests/implications/.state-registry.json"


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


class ResolutionStatus:
    """Resolution outcome constants (also used as metric labels)."""

    READY = "ready"
    PARTIAL = "partial"  # nested call stopped at a cross-platform segment
    CONFIGURATION_ERROR = "configuration_error"
    DATA_MISMATCH = "data_mismatch"
    FAILED = "failed"  # an action or subprocess failed
    STUCK = "stuck"
    BLOCKED = "blocked"  # cross-platform execution refused
    ERROR = "error"


class ExecutionMode:
    INLINE = "inline"
    SUBPROCESS = "subprocess"


_OUTCOMES: tuple[tuple[type[PlannerError], str], ...] = (
    (ConfigurationError, ResolutionStatus.CONFIGURATION_ERROR),
    (DataMismatchError, ResolutionStatus.DATA_MISMATCH),
    (ExecutionError, ResolutionStatus.FAILED),
    (StuckChainError, ResolutionStatus.STUCK),
    (CrossPlatformBlockedError, ResolutionStatus.BLOCKED),
)


def outcome_for(exc: BaseException) -> str:
    """Map an exception to its ``ResolutionStatus`` label."""
    for exc_type, outcome in _OUTCOMES:
        if isinstance(exc, exc_type):
            return outcome
    return ResolutionStatus.ERROR


@dataclass(frozen=True)
class ExecutedStep:
    """A prerequisite step that was executed during a resolution."""

    status: str
    action_name: str
    test_file: str
    platform: str
    mode: str
    timestamp: datetime


@dataclass(frozen=True)
class ResolutionResult:
    """Result of one ``resolve()`` call.

    Provides an audit trail of what was executed and why the loop stopped.
    """

    status: str
    target_status: str
    analysis: Analysis | None = None
    executed: tuple[ExecutedStep, ...] = ()
    corrections: tuple[Mismatch, ...] = ()
    pending_segment: Segment | None = None
    attempts: int = 0
    reason: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def success(self) -> bool:
        """Whether the target is ready to be tested."""
        return self.status == ResolutionStatus.READY

    def summary(self) -> str:
        """Human-readable summary for logging."""
        parts = [f"Resolution result: {self.status}", f"Target: {self.target_status}"]
        if self.executed:
            parts.append(f"Executed: {', '.join(s.status for s in self.executed)}")
        if self.corrections:
            parts.append(f"Corrected: {', '.join(m.field for m in self.corrections)}")
        if self.pending_segment is not None:
            parts.append(
                f"Pending on {self.pending_segment.platform}: "
                f"{', '.join(s.status for s in self.pending_segment.pending_steps)}"
            )
        if self.reason:
            parts.append(f"Reason: {self.reason}")
        return " | ".join(parts)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OrchestratorConfig:
    """Orchestrator configuration.

    Attributes:
        registry_path: State registry JSON, reloaded on every attempt.
        confirm_timeout: Seconds before a confirmation prompt proceeds.
        max_attempts: Upper bound on analyse/execute passes.
    """

    registry_path: str = DEFAULT_REGISTRY_PATH
    confirm_timeout: float = 10.0
    max_attempts: int = 10


# ---------------------------------------------------------------------------
# Resolution state
# ---------------------------------------------------------------------------


@dataclass
class _Run:
    """Mutable state of one resolution."""

    target: str | Descriptor
    data_path: Path
    test_file: str | None
    platform: str
    nested: bool
    registry: StateRegistry
    descriptor: Descriptor
    corrections: tuple[Mismatch, ...] = ()
    executed: list[ExecutedStep] = field(default_factory=list)
    previous_remaining: int | None = None
    analysis: Analysis | None = None


@dataclass(frozen=True)
class _InlinePass:
    """A same-platform segment the caller executes in-process."""

    segment: Segment
    analysis: Analysis
    report: str


def _reached(step: ChainStep, data: Mapping[str, Any]) -> bool:
    """Whether *data* is at *step*'s status in the step's namespace.

    An entity step also counts as reached when the boolean named by its
    registry key (``club_verified`` -> ``club.verified``) is true.
    """
    if not step.entity:
        return global_status(data) == step.status
    if get_nested(data, f"{step.entity}.status") == step.status:
        return True
    prefix = f"{step.entity}_"
    if step.status.startswith(prefix):
        return get_nested(data, f"{step.entity}.{step.status[len(prefix):]}") is True
    return False


def _failed_checks(result: RequirementResult | None) -> list[Mismatch]:
    if result is None:
        return []
    return [
        Mismatch(c.field, c.expected, c.actual, correctable=False)
        for c in result.checks
        if not c.passed
    ]


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


def _utc_now() -> datetime:
    """Return current UTC time (extracted for testability)."""
    return datetime.now(timezone.utc)


class ExecutionOrchestrator:
    """Resolves one target status per call.

    Parameters
    ----------
    repository:
        Descriptor repository; reloaded before every attempt.
    store:
        Test data store.
    config:
        Orchestrator configuration.
    registry_loader:
        Callable returning a fresh ``StateRegistry``.  Defaults to reading
        ``config.registry_path``.
    prompt:
        Confirmation prompt for cross-platform runs and data corrections.
        Defaults to ``AutoPrompt()`` (always proceeds).
    runner:
        Subprocess runner for cross-platform steps.
    action_loader:
        Resolves in-process actions from test files.
    selector:
        Transition / setup-entry selector.
    segmenter:
        Platform segmenter (carries platform aliases).
    discovery:
        Optional discovery cache for direct transitions.
    clock:
        Callable returning current UTC datetime (for testing).
    """

    def __init__(
        self,
        repository: DescriptorRepository,
        store: StateStore,
        *,
        config: OrchestratorConfig | None = None,
        registry_loader: Callable[[], StateRegistry] | None = None,
        prompt: Prompt | None = None,
        runner: ProcessRunner | None = None,
        action_loader: ActionLoader | None = None,
        selector: TransitionSelector | None = None,
        segmenter: PlatformSegmenter | None = None,
        discovery: DiscoveryCache | None = None,
        clock: Any = None,
    ) -> None:
        self._repository = repository
        self._store = store
        self._config = config or OrchestratorConfig()
        self._registry_loader = registry_loader or (
            lambda: StateRegistry.load(self._config.registry_path)
        )
        self._prompt = prompt or AutoPrompt()
        self._runner = runner or SubprocessRunner()
        self._action_loader = action_loader or ModuleActionLoader()
        self._segmenter = segmenter or PlatformSegmenter()
        self._selector = selector or TransitionSelector(self._segmenter.normalize)
        self._discovery = discovery
        self._clock = clock or _utc_now
        self._preflight = PreflightChecker(
            store, self._prompt, selector=self._selector, timeout=self._config.confirm_timeout
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def resolve(
        self,
        target: str | Descriptor,
        test_data_path: str | Path,
        *,
        test_file: str | None = None,
        platform: str | None = None,
        nested: bool = False,
        skip_preflight: bool = False,
        page: Any = None,
        driver: Any = None,
    ) -> ResolutionResult:
        """Bring *target* to readiness.

        Parameters
        ----------
        target:
            A status name, a descriptor name, or a loaded ``Descriptor``.
        test_data_path:
            Master test data file (its ``-current`` sibling is preferred).
        test_file:
            The invoking test file (event and platform detection).
        platform:
            Current execution platform; detected from *test_file* or taken
            from the descriptor when omitted.
        nested:
            Whether this call runs inside a prerequisite subprocess.
        skip_preflight:
            Skip the data mismatch check.
        page, driver:
            Live automation session handed to in-process actions.

        Returns
        -------
        ResolutionResult
            ``READY`` or, for nested calls, ``PARTIAL``.

        Raises
        ------
        ConfigurationError
            A required prerequisite descriptor could not be resolved, or an
            async action was called from a running event loop.
        DataMismatchError
            Test data violates requirements no prerequisite can fix.
        ExecutionError
            An action raised or a prerequisite subprocess failed.
        StuckChainError
            An executed step did not reach its status, or re-resolution made
            no progress.
        CrossPlatformBlockedError
            Cross-platform execution was cancelled.
        """
        try:
            run = self._start(
                target,
                Path(test_data_path),
                test_file=test_file,
                platform=platform,
                nested=nested,
                skip_preflight=skip_preflight,
            )
            result = self._resolve(run, page=page, driver=driver)
        except PlannerError as exc:
            self._record_failure(exc)
            raise
        self._record_result(result)
        return result

    async def resolve_async(
        self,
        target: str | Descriptor,
        test_data_path: str | Path,
        *,
        test_file: str | None = None,
        platform: str | None = None,
        nested: bool = False,
        skip_preflight: bool = False,
        page: Any = None,
        driver: Any = None,
    ) -> ResolutionResult:
        """Awaitable ``resolve()`` for async automation sessions.

        Async actions are awaited in the caller's event loop.  Preflight
        prompts and cross-platform subprocesses still block.
        """
        try:
            run = self._start(
                target,
                Path(test_data_path),
                test_file=test_file,
                platform=platform,
                nested=nested,
                skip_preflight=skip_preflight,
            )
            result = await self._resolve_async(run, page=page, driver=driver)
        except PlannerError as exc:
            self._record_failure(exc)
            raise
        self._record_result(result)
        return result

    @staticmethod
    def _record_failure(exc: PlannerError) -> None:
        LOG.error("Resolution failed (%s): %s", outcome_for(exc), exc)
        metrics.record_resolution(outcome_for(exc))

    @staticmethod
    def _record_result(result: ResolutionResult) -> None:
        metrics.record_resolution(result.status)
        LOG.info(result.summary())

    # ------------------------------------------------------------------
    # Resolution loop
    # ------------------------------------------------------------------

    def _descriptor_for(self, target: str | Descriptor, registry: StateRegistry) -> Descriptor:
        if isinstance(target, Descriptor):
            return target
        class_name = registry.class_for(target) or target
        return self._repository.resolve(class_name)

    def _refresh(self, target: str | Descriptor) -> tuple[StateRegistry, Descriptor]:
        self._repository.reload()
        if self._discovery is not None:
            self._discovery.reload()
        registry = self._registry_loader()
        return registry, self._descriptor_for(target, registry)

    def _start(
        self,
        target: str | Descriptor,
        data_path: Path,
        *,
        test_file: str | None,
        platform: str | None,
        nested: bool,
        skip_preflight: bool,
    ) -> _Run:
        registry, descriptor = self._refresh(target)
        current_platform = self._segmenter.normalize(
            platform or detect_platform_from_filename(test_file) or descriptor.platform
        )
        LOG.info(
            "Resolving %s on %s%s", descriptor.status, current_platform, " (nested)" if nested else ""
        )
        run = _Run(
            target=target,
            data_path=data_path,
            test_file=test_file,
            platform=current_platform,
            nested=nested,
            registry=registry,
            descriptor=descriptor,
        )
        if not skip_preflight:
            record = self._store.load(data_path)
            run.corrections = tuple(
                self._preflight.check(
                    descriptor,
                    record,
                    registry,
                    test_file=test_file,
                    explicit_event=extract_event_from_filename(test_file),
                )
            )
        return run

    def _resolve(self, run: _Run, *, page: Any, driver: Any) -> ResolutionResult:
        for attempt in range(1, self._config.max_attempts + 1):
            planned = self._next_pass(run, attempt)
            if isinstance(planned, ResolutionResult):
                return planned
            if planned is None:
                continue
            for step in planned.segment.pending_steps:
                self._check_guard(step, run.data_path)
                run.executed.append(
                    self._execute_inline(step, run.data_path, page=page, driver=driver)
                )
                self._verify_reached(step, run.data_path, planned)
        raise self._gave_up(run)

    async def _resolve_async(self, run: _Run, *, page: Any, driver: Any) -> ResolutionResult:
        for attempt in range(1, self._config.max_attempts + 1):
            planned = self._next_pass(run, attempt)
            if isinstance(planned, ResolutionResult):
                return planned
            if planned is None:
                continue
            for step in planned.segment.pending_steps:
                self._check_guard(step, run.data_path)
                run.executed.append(
                    await self._execute_inline_async(step, run.data_path, page=page, driver=driver)
                )
                self._verify_reached(step, run.data_path, planned)
        raise self._gave_up(run)

    def _next_pass(self, run: _Run, attempt: int) -> ResolutionResult | _InlinePass | None:
        """Analyse once and act on the outcome.

        Returns the final result, the same-platform segment the caller must
        execute, or ``None`` once a cross-platform segment has been run.
        """
        if attempt > 1:
            run.registry, run.descriptor = self._refresh(run.target)
        descriptor = run.descriptor
        builder = ChainBuilder(
            self._repository, run.registry, selector=self._selector, discovery=self._discovery
        )
        data = self._store.load(run.data_path).data
        analysis = builder.analyze(descriptor, data, test_file=run.test_file, platform=run.platform)
        run.analysis = analysis

        if analysis.ready:
            return self._result(run, ResolutionStatus.READY, attempt)

        report = format_path_report(analysis)
        self._raise_if_unresolvable(analysis, data, report)

        remaining = analysis.steps_remaining
        if run.previous_remaining is not None and remaining >= run.previous_remaining:
            raise StuckChainError(
                f"No progress towards {descriptor.status}: {remaining} incomplete "
                f"step(s) after executing prerequisites (was {run.previous_remaining})",
                report=report,
                incomplete=remaining,
            )
        run.previous_remaining = remaining

        segments = self._segmenter.segment(analysis.chain, data, descriptor)
        segment = PlatformSegmenter.first_incomplete(segments)
        if segment is None or not segment.pending_steps:
            raise StuckChainError(
                f"{descriptor.status} is not ready but no prerequisite can be executed",
                report=report,
                incomplete=remaining,
            )

        if self._segmenter.same_platform(segment.platform, run.platform):
            return _InlinePass(segment=segment, analysis=analysis, report=report)

        if run.nested:
            LOG.info(
                "Nested resolution stops at %s segment; leaving it to the caller",
                segment.platform,
            )
            return self._result(
                run,
                ResolutionStatus.PARTIAL,
                attempt,
                pending_segment=segment,
                reason=f"Cross-platform prerequisites pending on {segment.platform}",
            )

        run.executed.extend(self._execute_cross_platform(segment, run.platform))
        return None

    def _result(self, run: _Run, status: str, attempt: int, **kwargs: Any) -> ResolutionResult:
        return ResolutionResult(
            status=status,
            target_status=run.descriptor.status,
            analysis=run.analysis,
            executed=tuple(run.executed),
            corrections=run.corrections,
            attempts=attempt,
            timestamp=self._clock(),
            **kwargs,
        )

    def _gave_up(self, run: _Run) -> StuckChainError:
        analysis = run.analysis
        return StuckChainError(
            f"Gave up on {run.descriptor.status} after {self._config.max_attempts} attempt(s)",
            report=format_path_report(analysis) if analysis is not None else "",
            incomplete=analysis.steps_remaining if analysis is not None else 0,
        )

    @staticmethod
    def _raise_if_unresolvable(analysis: Analysis, data: Any, report: str) -> None:
        for step in analysis.blocked_steps:
            if step.load_error is not None:
                raise ConfigurationError(
                    f"Cannot resolve prerequisite '{step.status}' "
                    f"({step.action_name}): {step.load_error}\n{report}",
                    status=step.status,
                )

        # only the next step to run is refused on its transition conditions
        first = next((s for s in analysis.chain if not s.complete), None)
        if first is not None and first.blocked_by_conditions:
            raise DataMismatchError(_failed_checks(first.guard_result(data)), first.blocked_reason)

        if analysis.regular_fields and not analysis.pending_steps:
            raise DataMismatchError(
                [
                    Mismatch(m.field, m.expected, m.actual, correctable=False)
                    for m in analysis.regular_fields
                ],
                f"{analysis.target_status} requires data no prerequisite provides",
            )

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    def _check_guard(self, step: ChainStep, data_path: Path) -> None:
        """Refuse to run *step* when its incoming transition is closed."""
        result = step.guard_result(self._store.load(data_path).data)
        if result is None or result.passed:
            return
        raise DataMismatchError(
            _failed_checks(result),
            f"Cannot execute {step.status}: transition {step.previous_status} "
            f"--{step.transition_guard.event}--> {step.status} is blocked by conditions",
        )

    def _verify_reached(self, step: ChainStep, data_path: Path, planned: _InlinePass) -> None:
        """Raise ``StuckChainError`` unless the persisted data is now at *step*."""
        data = self._store.load(data_path).data
        if _reached(step, data):
            return
        actual = get_nested(data, f"{step.entity}.status") if step.entity else global_status(data)
        raise StuckChainError(
            f"{step.action_name} did not bring the test data to {step.status} "
            f"(status is {actual!r})",
            report=planned.report,
            incomplete=planned.analysis.steps_remaining,
        )

    @staticmethod
    def _call_action(
        action: Callable[..., Any], data_path: Path, page: Any, driver: Any
    ) -> Any:
        return action(
            str(data_path),
            page=page,
            driver=driver,
            test_data_path=str(data_path),
            is_prerequisite=True,
        )

    @staticmethod
    def _action_failed(step: ChainStep, exc: Exception) -> ExecutionError:
        return ExecutionError(
            f"Action {step.action_name} for {step.status} failed: {exc}",
            status=step.status,
            test_file=step.test_file,
        )

    def _execute_inline(
        self, step: ChainStep, data_path: Path, *, page: Any, driver: Any
    ) -> ExecutedStep:
        """Run *step*'s action in-process and persist its outcome."""
        action = self._action_loader.load(step.test_file, step.action_name)
        LOG.info("Executing %s inline via %s (%s)", step.status, step.action_name, step.test_file)
        try:
            outcome = normalize_result(self._call_action(action, data_path, page, driver))
        except ConfigurationError:
            raise
        except Exception as exc:
            raise self._action_failed(step, exc) from exc
        return self._persist(step, outcome, data_path)

    async def _execute_inline_async(
        self, step: ChainStep, data_path: Path, *, page: Any, driver: Any
    ) -> ExecutedStep:
        """Like ``_execute_inline`` but awaits the action in the running loop."""
        action = self._action_loader.load(step.test_file, step.action_name)
        LOG.info("Executing %s inline via %s (%s)", step.status, step.action_name, step.test_file)
        try:
            result = self._call_action(action, data_path, page, driver)
            outcome = await normalize_result_async(result)
        except Exception as exc:
            raise self._action_failed(step, exc) from exc
        return self._persist(step, outcome, data_path)

    def _persist(self, step: ChainStep, outcome: ActionOutcome, data_path: Path) -> ExecutedStep:
        if outcome.save is not None:
            try:
                outcome.save(str(delta_path(data_path)))
            except Exception as exc:
                raise ExecutionError(
                    f"Saving the result of {step.action_name} failed: {exc}",
                    status=step.status,
                    test_file=step.test_file,
                ) from exc
        elif outcome.data is not None:
            record = self._store.load(data_path)
            self._store.append_change(record, step.action_name, outcome.data, test_file=step.test_file)
            self._store.save(record, data_path)
        else:
            LOG.warning("Action %s returned nothing to persist", step.action_name)

        metrics.record_step(ExecutionMode.INLINE)
        return ExecutedStep(
            status=step.status,
            action_name=step.action_name,
            test_file=step.test_file,
            platform=self._segmenter.normalize(step.platform),
            mode=ExecutionMode.INLINE,
            timestamp=self._clock(),
        )

    def _execute_cross_platform(
        self, segment: Segment, current_platform: str
    ) -> list[ExecutedStep]:
        """Confirm, then run every pending step of *segment* as a subprocess."""
        pending = segment.pending_steps
        LOG.warning(format_cross_platform_message(segment, current_platform))
        decision = self._prompt.confirm(
            f"Running {len(pending)} prerequisite(s) on '{segment.platform}'",
            self._config.confirm_timeout,
        )
        if decision == Decision.CANCEL:
            raise CrossPlatformBlockedError(
                f"Cross-platform prerequisites on '{segment.platform}' were cancelled",
                platform=segment.platform,
                pending=[s.status for s in pending],
            )

        executed: list[ExecutedStep] = []
        for step in pending:
            result = self._runner.run(segment.platform, step.test_file)
            if not result.success:
                metrics.tplan_subprocess_failures_total.inc()
                raise ExecutionError(
                    f"Prerequisite {step.status} failed on {segment.platform}: {result.summary}",
                    status=step.status,
                    test_file=step.test_file,
                )
            metrics.record_step(ExecutionMode.SUBPROCESS)
            executed.append(
                ExecutedStep(
                    status=step.status,
                    action_name=step.action_name,
                    test_file=step.test_file,
                    platform=segment.platform,
                    mode=ExecutionMode.SUBPROCESS,
                    timestamp=self._clock(),
                )
            )
        return executed

"""Prerequisite chain builder — resolves the ordered path to a target status.

The builder walks descriptor requirements recursively:

1. global ``status`` requirements naming another registered status
2. entity boolean requirements (``"booking.confirmed": true``), resolved in
   the entity's own namespace under the registry key ``booking_confirmed``
3. the ``previousStatus`` of the applicable setup entry
4. the target step itself (annotated with a direct transition event when the
   discovery cache knows one)

then marks everything at or before the current status as complete.

Cycles are cut using the ``visited`` set.  A legitimate loop (A -> B -> A) is
expressed with ``LoopReentry(target)``, which lets the re-entered status be
emitted as a single terminal step instead of being rejected.

Descriptor load failures never raise here: they become steps carrying a
``load_error`` and a marker action name so the whole chain stays printable.

A step whose incoming transition has ``requires``/``conditions`` keeps that
transition as its ``transition_guard``.  When the test data fails the guard,
another setup entry with an open incoming transition is used instead; if none
exists the step carries a ``blocked_reason``.

Usage::

    from tplan.engine.chain import ChainBuilder

    builder = ChainBuilder(repository, registry)
    analysis = builder.analyze(descriptor, test_data, test_file=test_file)
    if not analysis.ready:
        print(analysis.next_step)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Union

from tplan.engine.descriptor import (
    Descriptor,
    DescriptorRepository,
    SetupEntry,
    StateRegistry,
    TransitionSpec,
)
from tplan.engine.errors import ConfigurationError
from tplan.engine.requirements import (
    STRUCTURAL_KEYS,
    RequirementResult,
    check_field,
    get_nested,
    requirements_met,
    strict_equal,
)
from tplan.engine.selector import (
    TransitionChoice,
    TransitionSelector,
    extract_event_from_filename,
)

LOG = logging.getLogger("tplan.engine.chain")

INITIAL_STATUS = "initial"
DEFAULT_ENTITY_STATUS = "registered"


# ---------------------------------------------------------------------------
# Visit variant
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Normal:
    """Ordinary traversal: revisiting a status is a cycle."""


@dataclass(frozen=True)
class LoopReentry:
    """Traversal inside a loop transition back to *target*."""

    target: str


# Visit is either an ordinary traversal or a loop re-entry towards a target.
Visit = Union[Normal, LoopReentry]


def _reenters(visit: Visit, status: str) -> bool:
    return isinstance(visit, LoopReentry) and visit.target == status


def _blocked_reason(
    previous: str, target: str, choice: TransitionChoice, data: Mapping[str, Any]
) -> str:
    result = requirements_met(choice.transition.requires, choice.transition.conditions, data)
    failed = ", ".join(result.failed_fields) or "conditions"
    return (
        f"Transition {previous} --{choice.event}--> {target} requires conditions "
        f"not met by the test data ({failed}); no alternative setup entry"
    )


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


class StepMarker:
    """Action-name markers for steps that could not be resolved."""

    FAILED_TO_LOAD = "FAILED_TO_LOAD"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    NOT_IN_REGISTRY = "NOT_IN_REGISTRY"


@dataclass
class ChainStep:
    """One step of a prerequisite chain."""

    status: str
    action_name: str
    test_file: str
    platform: str
    complete: bool = False
    is_target: bool = False
    class_name: str | None = None
    entity: str | None = None
    previous_status: str | None = None
    transition_event: str | None = None
    transition_from: str | None = None
    load_error: str | None = None
    is_loop_prerequisite: bool = False
    is_observer: bool = False
    transition_guard: TransitionSpec | None = None
    blocked_reason: str | None = None

    @property
    def blocked(self) -> bool:
        """An unresolved step that still has to run."""
        unresolved = self.load_error is not None or self.blocked_reason is not None
        return unresolved and not self.complete

    @property
    def blocked_by_conditions(self) -> bool:
        return self.blocked_reason is not None and not self.complete

    def guard_result(self, test_data: Mapping[str, Any] | None) -> RequirementResult | None:
        """Evaluate the incoming transition's requirements against *test_data*.

        Returns ``None`` when the step has no guarded incoming transition.
        """
        if self.transition_guard is None:
            return None
        return requirements_met(
            self.transition_guard.requires, self.transition_guard.conditions, test_data
        )


@dataclass(frozen=True)
class MissingField:
    """A descriptor requirement that the chain cannot satisfy by itself."""

    field: str
    expected: Any
    actual: Any

    @property
    def is_entity_status(self) -> bool:
        return self.field.endswith(".status")


@dataclass(frozen=True)
class Analysis:
    """Outcome of analysing one target against the current test data."""

    ready: bool
    current_status: str
    target_status: str
    chain: tuple[ChainStep, ...]
    previous_status: str | None = None
    is_loop_transition: bool = False
    is_observer_mode: bool = False
    missing_fields: tuple[MissingField, ...] = ()
    next_step: ChainStep | None = None

    @property
    def steps_remaining(self) -> int:
        return sum(1 for s in self.chain if not s.complete)

    @property
    def pending_steps(self) -> list[ChainStep]:
        """Incomplete non-target steps, in chain order."""
        return [s for s in self.chain if not s.complete and not s.is_target]

    @property
    def blocked_steps(self) -> list[ChainStep]:
        return [s for s in self.chain if s.blocked]

    @property
    def entity_fields(self) -> list[MissingField]:
        return [m for m in self.missing_fields if m.is_entity_status]

    @property
    def regular_fields(self) -> list[MissingField]:
        return [m for m in self.missing_fields if not m.is_entity_status]

    def summary(self) -> str:
        if self.ready:
            return f"Ready: {self.current_status} -> {self.target_status}"
        parts = [
            f"Not ready: {self.current_status} -> {self.target_status}",
            f"{self.steps_remaining} step(s) remaining",
        ]
        if self.next_step is not None:
            parts.append(f"next: {self.next_step.status}")
        if self.regular_fields:
            parts.append("missing: " + ", ".join(m.field for m in self.regular_fields))
        return " | ".join(parts)


# ---------------------------------------------------------------------------
# Discovery cache (direct transition fast path)
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DirectTransition:
    from_status: str
    to_status: str
    event: str


def _loose(status: str) -> str:
    return status.replace("_", "").lower()


class DiscoveryCache:
    """Read-only index of discovered ``{from, to, event}`` transitions.

    A missing or unreadable cache file simply yields no direct transitions.
    """

    def __init__(self, path: str | Path | None) -> None:
        self._path = Path(path) if path else None
        self._transitions: list[dict[str, Any]] | None = None

    def _load(self) -> list[dict[str, Any]]:
        if self._path is None or not self._path.exists():
            return []
        try:
            with open(self._path, encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            LOG.warning("Ignoring unreadable discovery cache %s: %s", self._path, exc)
            return []
        transitions = data.get("transitions", []) if isinstance(data, dict) else []
        return [t for t in transitions if isinstance(t, dict)]

    def reload(self) -> None:
        self._transitions = None

    def find(self, from_status: str, to_status: str) -> DirectTransition | None:
        if self._transitions is None:
            self._transitions = self._load()
        src, dst = _loose(from_status), _loose(to_status)
        for t in self._transitions:
            event = t.get("event")
            if not event:
                continue
            if _loose(str(t.get("from", ""))) == src and _loose(str(t.get("to", ""))) == dst:
                return DirectTransition(from_status, to_status, str(event))
        return None


# ---------------------------------------------------------------------------
# Status helpers
# ---------------------------------------------------------------------------


def global_status(test_data: Mapping[str, Any] | None) -> str:
    """The top-level status recorded in *test_data*."""
    data = test_data or {}
    return data.get("status") or data.get("_currentStatus") or INITIAL_STATUS


def current_status_for(descriptor: Descriptor, test_data: Mapping[str, Any] | None) -> str:
    """Current status in the namespace of *descriptor* (entity or global)."""
    if descriptor.entity:
        entity_status = get_nested(test_data or {}, f"{descriptor.entity}.status")
        if entity_status:
            return str(entity_status)
    return global_status(test_data)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class ChainBuilder:
    """Builds prerequisite chains and readiness analyses.

    Parameters
    ----------
    repository:
        Resolves descriptor names (from the registry) to descriptors.
    registry:
        Status name to descriptor name map for this resolution run.
    selector:
        Transition / setup-entry selector.  Defaults to ``TransitionSelector()``.
    discovery:
        Optional discovery cache used to annotate direct transitions.
    """

    def __init__(
        self,
        repository: DescriptorRepository,
        registry: StateRegistry,
        *,
        selector: TransitionSelector | None = None,
        discovery: DiscoveryCache | None = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._selector = selector or TransitionSelector()
        self._discovery = discovery

    @property
    def registry(self) -> StateRegistry:
        return self._registry

    # ------------------------------------------------------------------
    # Step factories
    # ------------------------------------------------------------------

    @staticmethod
    def _step_for(
        descriptor: Descriptor,
        status: str,
        setup: SetupEntry | None,
        **kwargs: Any,
    ) -> ChainStep:
        platform = setup.platform if setup and setup.platform else descriptor.platform
        return ChainStep(
            status=status,
            class_name=descriptor.name,
            action_name=setup.action_name if setup else "unknown",
            test_file=setup.test_file if setup else "unknown",
            platform=platform,
            entity=descriptor.entity,
            **kwargs,
        )

    @staticmethod
    def _error_step(status: str, class_name: str | None, marker: str, error: str) -> ChainStep:
        return ChainStep(
            status=status,
            class_name=class_name,
            action_name=marker,
            test_file="unknown",
            platform="unknown",
            load_error=error,
        )

    def _load(self, status: str, class_name: str) -> Descriptor | ChainStep:
        """Resolve *class_name*, or return an error step describing the failure."""
        if self._repository.path_for(class_name) is None:
            LOG.error("Descriptor file not found for %s (status %s)", class_name, status)
            return self._error_step(status, class_name, StepMarker.FILE_NOT_FOUND, "File not found")
        try:
            return self._repository.resolve(class_name)
        except ConfigurationError as exc:
            LOG.error("Failed to load %s: %s", class_name, exc)
            return self._error_step(status, class_name, StepMarker.FAILED_TO_LOAD, str(exc))

    # ------------------------------------------------------------------
    # Chain construction
    # ------------------------------------------------------------------

    def build(
        self,
        descriptor: Descriptor,
        current_status: str,
        test_data: Mapping[str, Any] | None,
        *,
        target_status: str | None = None,
        visited: set[str] | None = None,
        visit: Visit = Normal(),
        is_original_target: bool = True,
        explicit_event: str | None = None,
        platform: str | None = None,
        test_file: str | None = None,
        is_loop: bool = False,
    ) -> list[ChainStep]:
        """Build the chain from *current_status* to *target_status*.

        Parameters
        ----------
        descriptor:
            Descriptor of the status being reached.
        current_status:
            Current status in the namespace being resolved.
        test_data:
            Effective test data.
        target_status:
            Status to reach; defaults to ``descriptor.status``.
        visited:
            Statuses already expanded on this resolution (shared, mutated).
        visit:
            ``Normal()`` or ``LoopReentry(target)``.
        is_original_target:
            Whether the appended step is the step under test.
        explicit_event:
            Event name used to pick setup entries and transitions.
        platform:
            Current execution platform (transition tie-breaking).
        test_file:
            Invoking test file (setup-entry selection for the target).
        is_loop:
            Suppresses completion marking for the top of a loop transition.

        Returns
        -------
        list[ChainStep]
            Steps in topological order.
        """
        target = target_status or descriptor.status
        visited = visited if visited is not None else set()
        data: Mapping[str, Any] = test_data or {}

        if target in visited:
            if _reenters(visit, target):
                setup = self._selector.find_setup_entry(
                    descriptor, data, explicit_event=explicit_event
                )
                LOG.debug("Loop re-entry at %s", target)
                return [
                    self._step_for(
                        descriptor,
                        target,
                        setup,
                        complete=current_status == target,
                        is_loop_prerequisite=True,
                    )
                ]
            LOG.warning("Circular dependency detected for %s", target)
            return []
        visited.add(target)

        chain: list[ChainStep] = []
        direct = self._discovery.find(current_status, target) if self._discovery else None

        # --- Global and entity requirements ---
        for name, expected in descriptor.requires.items():
            if name in STRUCTURAL_KEYS or name.startswith("!"):
                continue
            if name == "status" and isinstance(expected, str) and expected in self._registry:
                status_now = global_status(data)
                if status_now != expected and expected not in visited:
                    LOG.debug("Global requirement: status must be %s", expected)
                    chain.extend(self._sub_chain(expected, status_now, data, visited, visit))
            elif "." in name and isinstance(expected, bool):
                entity, attr = name.split(".", 1)
                key = f"{entity}_{attr}"
                if key not in self._registry or key in visited:
                    continue
                if strict_equal(expected, get_nested(data, name)):
                    continue
                entity_status = get_nested(data, f"{entity}.status") or DEFAULT_ENTITY_STATUS
                LOG.debug("Entity requirement: %s must be %s", name, expected)
                chain.extend(self._sub_chain(key, str(entity_status), data, visited, visit))

        # --- Previous status ---
        setup = self._selector.find_setup_entry(
            descriptor, data, test_file=test_file, explicit_event=explicit_event
        )
        previous = setup.previous_status if setup and setup.previous_status else None
        previous = previous or descriptor.previous_status
        guard: TransitionChoice | None = None
        blocked_reason: str | None = None
        if previous:
            class_name = self._registry.class_for(previous)
            if class_name is None:
                LOG.error('Status "%s" not found in state registry', previous)
                chain.append(
                    self._error_step(
                        previous, None, StepMarker.NOT_IN_REGISTRY, "Not in state registry"
                    )
                )
            elif previous not in visited or _reenters(visit, previous):
                step_platform = platform or descriptor.platform
                loaded = self._load(previous, class_name)
                if isinstance(loaded, ChainStep):
                    chain.append(loaded)
                else:
                    guard = self._selector.select(
                        loaded,
                        target,
                        platform=step_platform,
                        explicit_event=explicit_event,
                        test_data=data,
                    )
                    opened = guard is None or guard.meets_requirements
                    if not opened and current_status != target:
                        alternative = self._alternative_setup(
                            descriptor, previous, target, data, visited, visit, step_platform
                        )
                        if alternative is None:
                            blocked_reason = _blocked_reason(previous, target, guard, data)
                            LOG.warning("Blocked: %s", blocked_reason)
                        else:
                            setup, loaded, guard = alternative
                            LOG.info(
                                "Transition %s -> %s blocked by conditions; using %s via %s",
                                previous,
                                target,
                                setup.test_file,
                                loaded.status,
                            )
                            previous = setup.previous_status
                    chain.extend(
                        self.build(
                            loaded,
                            current_status,
                            data,
                            target_status=previous,
                            visited=visited,
                            visit=visit,
                            is_original_target=False,
                            explicit_event=guard.event if guard else None,
                            platform=step_platform,
                        )
                    )

        # --- Target step ---
        chain.append(
            self._step_for(
                descriptor,
                target,
                setup,
                complete=current_status == target and not is_loop,
                is_target=is_original_target,
                previous_status=previous,
                transition_event=direct.event if direct else None,
                transition_from=current_status if direct else None,
                transition_guard=guard.transition if guard else None,
                blocked_reason=blocked_reason,
            )
        )

        # --- Completion marking ---
        if not is_loop:
            current_index = next(
                (
                    i
                    for i, s in enumerate(chain)
                    if s.status == current_status and not s.is_loop_prerequisite
                ),
                None,
            )
            if current_index is not None:
                for step in chain[: current_index + 1]:
                    step.complete = True

        if descriptor.entity and test_data:
            status_now = global_status(data)
            global_index = next(
                (i for i, s in enumerate(chain) if s.status == status_now and not s.entity),
                None,
            )
            for i, step in enumerate(chain):
                if step.entity or step.load_error:
                    continue
                if step.status == status_now or (global_index is not None and i < global_index):
                    step.complete = True

        return chain

    def _sub_chain(
        self,
        status: str,
        current_status: str,
        data: Mapping[str, Any],
        visited: set[str],
        visit: Visit,
    ) -> list[ChainStep]:
        class_name = self._registry.class_for(status)
        if class_name is None:
            return []
        loaded = self._load(status, class_name)
        if isinstance(loaded, ChainStep):
            return [loaded]
        return self.build(
            loaded,
            current_status,
            data,
            target_status=status,
            visited=visited,
            visit=visit,
            is_original_target=False,
        )

    def _alternative_setup(
        self,
        descriptor: Descriptor,
        blocked_previous: str,
        target: str,
        data: Mapping[str, Any],
        visited: set[str],
        visit: Visit,
        platform: str | None,
    ) -> tuple[SetupEntry, Descriptor, TransitionChoice] | None:
        """Another setup entry whose incoming transition *data* satisfies."""
        for entry in descriptor.setup:
            previous = entry.previous_status
            if not previous or previous == blocked_previous:
                continue
            if previous in visited and not _reenters(visit, previous):
                continue
            class_name = self._registry.class_for(previous)
            if class_name is None:
                continue
            loaded = self._load(previous, class_name)
            if isinstance(loaded, ChainStep):
                continue
            choice = self._selector.select(loaded, target, platform=platform, test_data=data)
            if choice is not None and choice.meets_requirements:
                return entry, loaded, choice
        return None

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def find_missing_fields(
        self, descriptor: Descriptor, test_data: Mapping[str, Any] | None
    ) -> list[MissingField]:
        """Requirements of *descriptor* that no prerequisite step produces."""
        data = test_data or {}
        missing: list[MissingField] = []
        for name, expected in descriptor.requires.items():
            if name in STRUCTURAL_KEYS:
                continue
            if name == "status" and isinstance(expected, str) and expected in self._registry:
                continue
            if "." in name and not name.startswith("!") and isinstance(expected, bool):
                entity, attr = name.split(".", 1)
                if f"{entity}_{attr}" in self._registry:
                    continue
            check = check_field(name, expected, data)
            if not check.passed:
                missing.append(MissingField(name, expected, check.actual))
        for path in descriptor.required_fields:
            if get_nested(data, path) is None:
                missing.append(MissingField(path, {"exists": True}, None))
        return missing

    @staticmethod
    def is_ready(
        chain: list[ChainStep] | tuple[ChainStep, ...],
        current_status: str,
        is_loop_transition: bool = False,
    ) -> bool:
        if any(s.blocked for s in chain):
            return False
        incomplete = [s for s in chain if not s.complete]
        if not incomplete:
            return True
        if is_loop_transition:
            target = next((s for s in incomplete if s.is_target), None)
            return (
                target is not None
                and len(incomplete) == 1
                and current_status == target.previous_status
            )
        if len(incomplete) == 1 and incomplete[0].is_target:
            step = incomplete[0]
            if step.transition_event and step.transition_from:
                return current_status == step.transition_from
            return True
        return False

    def analyze(
        self,
        descriptor: Descriptor,
        test_data: Mapping[str, Any] | None,
        *,
        test_file: str | None = None,
        explicit_event: str | None = None,
        platform: str | None = None,
    ) -> Analysis:
        """Analyse whether *descriptor*'s status can be tested now.

        Parameters
        ----------
        descriptor:
            Descriptor of the target status.
        test_data:
            Effective test data.
        test_file:
            The invoking test file; also the default source of the event name.
        explicit_event:
            Overrides the event derived from *test_file*.
        platform:
            Current execution platform.

        Returns
        -------
        Analysis
            Chain, readiness and missing-field details.
        """
        data: Mapping[str, Any] = test_data or {}
        target = descriptor.status
        current = current_status_for(descriptor, data)
        explicit_event = explicit_event or extract_event_from_filename(test_file)

        setup = self._selector.find_setup_entry(
            descriptor, data, test_file=test_file, explicit_event=explicit_event
        )
        previous = setup.previous_status if setup and setup.previous_status else None
        previous = previous or descriptor.previous_status
        observer = bool(setup and setup.is_observer)

        if observer and current == target:
            LOG.info("Observer mode: %s already exists", target)
            step = self._step_for(
                descriptor, target, setup, complete=True, is_target=True, is_observer=True
            )
            return Analysis(
                ready=True,
                current_status=current,
                target_status=target,
                chain=(step,),
                previous_status=previous,
                is_observer_mode=True,
            )

        is_loop = not observer and target == current and bool(previous) and previous != current

        if is_loop:
            chain = self._loop_chain(descriptor, setup, current, previous, data, explicit_event, platform)
        else:
            chain = self.build(
                descriptor,
                current,
                data,
                visited=set(),
                visit=Normal(),
                is_original_target=True,
                explicit_event=explicit_event,
                platform=platform,
                test_file=test_file,
            )

        missing = tuple(self.find_missing_fields(descriptor, data))
        regular = [m for m in missing if not m.is_entity_status]
        ready = self.is_ready(chain, current, is_loop) and not regular

        next_step = None
        if not ready:
            incomplete = [s for s in chain if not s.complete]
            next_step = next((s for s in incomplete if not s.is_target), None)
            if next_step is None and incomplete:
                next_step = incomplete[0]

        analysis = Analysis(
            ready=ready,
            current_status=current,
            target_status=target,
            chain=tuple(chain),
            previous_status=previous,
            is_loop_transition=is_loop,
            is_observer_mode=observer,
            missing_fields=missing,
            next_step=next_step,
        )
        LOG.info("Analysis for %s: %s", target, analysis.summary())
        return analysis

    def _loop_chain(
        self,
        descriptor: Descriptor,
        setup: SetupEntry | None,
        current: str,
        previous: str,
        data: Mapping[str, Any],
        explicit_event: str | None,
        platform: str | None,
    ) -> list[ChainStep]:
        """Chain for ``current -> ... -> previous -> target`` where target == current."""
        target = descriptor.status
        LOG.info("Loop transition: %s -> ... -> %s -> %s", current, previous, target)
        class_name = self._registry.class_for(previous)
        if class_name is None:
            chain = [
                self._error_step(previous, None, StepMarker.NOT_IN_REGISTRY, "Not in state registry")
            ]
        else:
            loaded = self._load(previous, class_name)
            if isinstance(loaded, ChainStep):
                chain = [loaded]
            else:
                choice = self._selector.select(
                    loaded,
                    target,
                    platform=platform or descriptor.platform,
                    explicit_event=explicit_event,
                    test_data=data,
                )
                chain = self.build(
                    loaded,
                    current,
                    data,
                    target_status=previous,
                    visited={target},
                    visit=LoopReentry(target),
                    is_original_target=False,
                    explicit_event=choice.event if choice else None,
                    platform=platform,
                    is_loop=True,
                )
        chain.append(
            self._step_for(
                descriptor,
                target,
                setup,
                complete=False,
                is_target=True,
                previous_status=previous,
            )
        )
        return chain

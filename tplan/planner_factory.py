"""Planner factory — wires an ``ExecutionOrchestrator`` from a ``PlannerConfig``.

This is infrastructure wiring, not resolution logic.

Canonical imports::

    from tplan.planner_factory import build_orchestrator

    orchestrator = build_orchestrator(load_config(), prompt=TerminalPrompt())
"""

from __future__ import annotations

import logging
import os
from typing import Any, Optional

from tplan.config import PlannerConfig
from tplan.engine.actions import ActionLoader, ModuleActionLoader
from tplan.engine.chain import DiscoveryCache
from tplan.engine.descriptor import DescriptorRepository, StateRegistry
from tplan.engine.orchestrator import ExecutionOrchestrator, OrchestratorConfig
from tplan.engine.prompt import Prompt
from tplan.engine.runner import ProcessRunner, SubprocessRunner
from tplan.engine.segments import PlatformSegmenter
from tplan.engine.selector import TransitionSelector
from tplan.engine.store import StateStore

LOG = logging.getLogger("tplan.planner_factory")


def build_repository(config: PlannerConfig) -> DescriptorRepository:
    return DescriptorRepository(config.implications_dir, schema_path=config.schema_path)


def build_registry_loader(config: PlannerConfig):
    """Return a zero-argument callable that reads the registry fresh."""
    return lambda: StateRegistry.load(config.registry_path)


def build_orchestrator(
    config: PlannerConfig,
    *,
    prompt: Optional[Prompt] = None,
    runner: Optional[ProcessRunner] = None,
    action_loader: Optional[ActionLoader] = None,
    cwd: Optional[str] = None,
    clock: Any = None,
) -> ExecutionOrchestrator:
    """Construct an orchestrator with file-backed collaborators.

    Parameters
    ----------
    config:
        Planner configuration (see ``tplan.config.load_config``).
    prompt:
        Confirmation prompt; the orchestrator default proceeds automatically.
    runner:
        Subprocess runner; defaults to a ``SubprocessRunner`` using the
        configured per-platform commands.
    action_loader:
        Action loader; defaults to importing test modules relative to *cwd*.
    cwd:
        Project root.  Defaults to the current working directory.
    clock:
        Callable returning current UTC datetime (for testing).
    """
    root = cwd or os.getcwd()
    segmenter = PlatformSegmenter(config.platform_aliases)
    selector = TransitionSelector(segmenter.normalize)
    runner = runner or SubprocessRunner(
        config.runner_commands, cwd=root, timeout=config.runner_timeout, clock=clock
    )
    LOG.debug(
        "Building orchestrator: implications=%s registry=%s", config.implications_dir, config.registry_path
    )
    return ExecutionOrchestrator(
        repository=build_repository(config),
        store=StateStore(config.session_only_fields, clock=clock),
        config=OrchestratorConfig(
            registry_path=config.registry_path,
            confirm_timeout=config.confirm_timeout,
            max_attempts=config.max_attempts,
        ),
        registry_loader=build_registry_loader(config),
        prompt=prompt,
        runner=runner,
        action_loader=action_loader or ModuleActionLoader(root),
        selector=selector,
        segmenter=segmenter,
        discovery=DiscoveryCache(config.discovery_cache_path),
        clock=clock,
    )

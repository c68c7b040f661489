"""Action loading — resolves a chain step's action callable from its test file.

An action is a function defined in a test module::

    def booking_accepted_via_pending(data_path, *, page=None, driver=None,
                                     test_data_path, is_prerequisite=False):
        ...
        return {"data": {"status": "booking_accepted"}}

It may return ``None``, or a mapping/object with an optional ``save``
callable (invoked with the delta file path) and an optional ``data`` delta
(appended to the change log by the orchestrator).

Loaders look the action up by its ``actionName`` first and then by the other
spelling, so ``acceptBooking`` also finds ``accept_booking``.

Usage::

    from tplan.engine.actions import ModuleActionLoader

    loader = ModuleActionLoader(base_dir="/repo")
    action = loader.load("tests/Booking-ACCEPT-Web-UNIT.spec.py", "accept_booking")
"""

from __future__ import annotations

import asyncio
import importlib.util
import inspect
import logging
import re
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Protocol

from tplan.engine.errors import ConfigurationError

LOG = logging.getLogger("tplan.engine.actions")


@dataclass(frozen=True)
class ActionOutcome:
    """Normalised return value of an action."""

    save: Callable[[str], Any] | None = None
    data: dict[str, Any] | None = None

    @property
    def persists(self) -> bool:
        return self.save is not None or self.data is not None


def _outcome(result: Any) -> ActionOutcome:
    if result is None:
        return ActionOutcome()
    if isinstance(result, Mapping):
        save, data = result.get("save"), result.get("data")
    else:
        save, data = getattr(result, "save", None), getattr(result, "data", None)
    return ActionOutcome(
        save=save if callable(save) else None,
        data=dict(data) if isinstance(data, Mapping) else None,
    )


def normalize_result(result: Any) -> ActionOutcome:
    """Turn whatever an action returned into an ``ActionOutcome``.

    An awaitable result is driven to completion with ``asyncio.run``.  Inside a
    running event loop that is impossible, so the awaitable is closed and a
    ``ConfigurationError`` points the caller at the async entry point.
    """
    if inspect.isawaitable(result):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            result = asyncio.run(_await(result))
        else:
            if inspect.iscoroutine(result):
                result.close()
            raise ConfigurationError(
                "Async action called from a running event loop; "
                "use ExecutionOrchestrator.resolve_async() instead"
            )
    return _outcome(result)


async def normalize_result_async(result: Any) -> ActionOutcome:
    """Await *result* in the caller's loop if needed, then normalise it."""
    if inspect.isawaitable(result):
        result = await result
    return _outcome(result)


async def _await(awaitable: Any) -> Any:
    return await awaitable


def action_name_variants(action_name: str) -> list[str]:
    """*action_name* followed by its other spelling (snake_case <-> camelCase)."""
    if "_" in action_name:
        head, *rest = action_name.split("_")
        other = head + "".join(part[:1].upper() + part[1:] for part in rest)
    else:
        other = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", "_", action_name).lower()
    return [action_name] if other == action_name else [action_name, other]


class ActionLoader(Protocol):
    """Protocol for resolving ``(test_file, action_name)`` to a callable."""

    def load(self, test_file: str, action_name: str) -> Callable[..., Any]:
        """Return the action callable.  Raises ``ConfigurationError``."""
        ...


class ModuleActionLoader:
    """Imports test modules from disk (fresh on every load).

    Args:
        base_dir: Directory relative test-file paths are resolved against.
    """

    def __init__(self, base_dir: str | Path | None = None) -> None:
        self._base_dir = Path(base_dir) if base_dir else None

    def _resolve_path(self, test_file: str) -> Path:
        path = Path(test_file)
        if not path.is_absolute() and self._base_dir is not None:
            path = self._base_dir / path
        return path

    def load(self, test_file: str, action_name: str) -> Callable[..., Any]:
        path = self._resolve_path(test_file)
        if not path.exists():
            raise ConfigurationError(f"Test file not found: {path}", status=action_name)
        spec = importlib.util.spec_from_file_location(
            f"tplan_action_{uuid.uuid4().hex}", path
        )
        if spec is None or spec.loader is None:
            raise ConfigurationError(f"Cannot import test module {path}", status=action_name)
        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise ConfigurationError(
                f"Failed to import test module {path}: {exc}", status=action_name
            ) from exc
        names = action_name_variants(action_name)
        for name in names:
            action = getattr(module, name, None)
            if callable(action):
                LOG.debug("Loaded action %s from %s", name, path)
                return action
        raise ConfigurationError(
            f"Action '{action_name}' not found in {path} (tried: {', '.join(names)})",
            status=action_name,
        )


class MappingActionLoader:
    """Serves actions from an in-memory mapping keyed by action name."""

    def __init__(self, actions: Mapping[str, Callable[..., Any]]) -> None:
        self._actions = dict(actions)

    def load(self, test_file: str, action_name: str) -> Callable[..., Any]:
        for name in action_name_variants(action_name):
            if name in self._actions:
                return self._actions[name]
        known = ", ".join(sorted(self._actions)) or "(none)"
        raise ConfigurationError(
            f"Unknown action '{action_name}'. Known actions: {known}",
            status=action_name,
        )

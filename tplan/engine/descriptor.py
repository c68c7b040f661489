"""Implication descriptor loader, repository and state registry.

Loads implication descriptors into an immutable in-memory model and validates
them against the JSON Schema bundled in ``tplan/schemas/descriptor-schema.json``.

Descriptors can be authored as YAML/JSON documents or as Python modules.  A
Python module exposes an attribute named after the file stem (a class with a
``descriptor`` dict, or the dict itself) or a module-level ``DESCRIPTOR``.

Usage::

    from tplan.engine.descriptor import DescriptorRepository, StateRegistry

    repo = DescriptorRepository("tests/implications")
    registry = StateRegistry.load("tests/implications/.state-registry.json")
    descriptor = repo.resolve(registry.class_for("booking_accepted"))
    repo.reload()  # rescan the directory and drop cached descriptors
"""

from __future__ import annotations

import importlib.util
import json
import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml
from jsonschema import Draft202012Validator

from tplan.engine.errors import ConfigurationError

LOG = logging.getLogger("tplan.engine.descriptor")

DEFAULT_SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schemas" / "descriptor-schema.json"

OBSERVER_MODES = ("verify", "observer")


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class DescriptorValidationError(ConfigurationError):
    """Raised when a descriptor fails schema or structural validation.

    Attributes:
        errors: List of individual validation error messages.
    """

    def __init__(self, errors: list[str], *, status: str | None = None) -> None:
        self.errors = errors
        bullet_list = "\n  - ".join(errors)
        super().__init__(
            f"Descriptor validation failed with {len(errors)} error(s):\n  - {bullet_list}",
            status=status,
        )


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SetupEntry:
    """One way of reaching a status: a test file and the action inside it."""

    test_file: str
    action_name: str
    previous_status: str | None = None
    platform: str | None = None
    mode: str = "induce"  # "induce" | "verify" | "observer"
    requires: dict[str, Any] = field(default_factory=dict)

    @property
    def is_observer(self) -> bool:
        return self.mode in OBSERVER_MODES


@dataclass(frozen=True)
class TransitionSpec:
    """An outgoing transition from the ``on`` map."""

    event: str
    target: str
    requires: dict[str, Any] = field(default_factory=dict)
    conditions: dict[str, Any] = field(default_factory=dict)
    platforms: tuple[str, ...] = ()
    is_default: bool = False

    @property
    def has_requirements(self) -> bool:
        return bool(self.requires) or bool(self.conditions.get("blocks"))

    def leads_to(self, status: str) -> bool:
        """Whether this transition targets *status* (exactly or by suffix)."""
        return self.target == status or self.target.endswith(f"_{status}")


@dataclass(frozen=True)
class Descriptor:
    """Top-level immutable model of one implication descriptor.

    Provides lookup helpers for setup entries and transitions.
    """

    name: str
    status: str
    platform: str = "unknown"
    entity: str | None = None
    requires: dict[str, Any] = field(default_factory=dict)
    required_fields: tuple[str, ...] = ()
    setup: tuple[SetupEntry, ...] = ()
    transitions: tuple[TransitionSpec, ...] = ()
    source_path: str = ""

    @property
    def previous_status(self) -> str | None:
        value = self.requires.get("previousStatus")
        return value if isinstance(value, str) else None

    def transitions_to(self, status: str) -> list[TransitionSpec]:
        """Return every transition whose target is *status*."""
        return [t for t in self.transitions if t.leads_to(status)]


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def _parse_setup_entry(raw: Mapping[str, Any]) -> SetupEntry:
    return SetupEntry(
        test_file=raw["testFile"],
        action_name=raw["actionName"],
        previous_status=raw.get("previousStatus"),
        platform=raw.get("platform"),
        mode=raw.get("mode", "induce"),
        requires=dict(raw.get("requires") or {}),
    )


def _parse_transition(event: str, raw: Any) -> TransitionSpec:
    if isinstance(raw, str):
        return TransitionSpec(event=event, target=raw)
    return TransitionSpec(
        event=event,
        target=raw["target"],
        requires=dict(raw.get("requires") or {}),
        conditions=dict(raw.get("conditions") or {}),
        platforms=tuple(raw.get("platforms", [])),
        is_default=bool(raw.get("isDefault", False)),
    )


def _parse_transitions(on: Mapping[str, Any]) -> tuple[TransitionSpec, ...]:
    transitions: list[TransitionSpec] = []
    for event, raw in on.items():
        configs = raw if isinstance(raw, list) else [raw]
        for cfg in configs:
            transitions.append(_parse_transition(event, cfg))
    return tuple(transitions)


def parse_descriptor(
    data: Mapping[str, Any], *, name: str, source_path: str = ""
) -> Descriptor:
    """Build a ``Descriptor`` from an already validated document."""
    return Descriptor(
        name=data.get("name") or name,
        status=data["status"],
        platform=data.get("platform", "unknown"),
        entity=data.get("entity"),
        requires=dict(data.get("requires") or {}),
        required_fields=tuple(data.get("requiredFields", [])),
        setup=tuple(_parse_setup_entry(s) for s in data.get("setup", [])),
        transitions=_parse_transitions(data.get("on") or {}),
        source_path=source_path,
    )


def _validate_against_schema(
    data: Any, schema_path: str | Path | None = None, *, source: str = ""
) -> None:
    """Validate *data* against the descriptor JSON Schema.

    Raises ``DescriptorValidationError`` listing every violation.
    """
    path = Path(schema_path) if schema_path is not None else DEFAULT_SCHEMA_PATH
    if not path.exists():
        raise DescriptorValidationError([f"Schema file not found: {path}"])

    with open(path, encoding="utf-8") as f:
        schema = json.load(f)

    validator = Draft202012Validator(schema)
    errors: list[str] = []
    for error in sorted(validator.iter_errors(data), key=lambda e: list(e.path)):
        location = ".".join(str(p) for p in error.absolute_path) or "(root)"
        errors.append(f"[{location}] {error.message}")

    if errors:
        if source:
            errors.insert(0, f"in {source}")
        raise DescriptorValidationError(errors)


def _load_module_document(file_path: Path, name: str) -> Any:
    """Import a descriptor module afresh and return its descriptor document.

    Each call uses a unique module name so edits on disk are always picked up.
    """
    module_name = f"tplan_descriptor_{file_path.stem}_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ConfigurationError(f"Cannot import descriptor module {file_path}", status=name)
    module = importlib.util.module_from_spec(spec)
    try:
        spec.loader.exec_module(module)
    except Exception as exc:
        raise ConfigurationError(
            f"Failed to import descriptor module {file_path}: {exc}", status=name
        ) from exc

    obj = getattr(module, name, None)
    if obj is None:
        obj = getattr(module, "DESCRIPTOR", None)
    if obj is None:
        raise ConfigurationError(
            f"Descriptor module {file_path} defines neither '{name}' nor DESCRIPTOR",
            status=name,
        )
    if isinstance(obj, Mapping):
        return dict(obj)
    document = getattr(obj, "descriptor", None)
    if not isinstance(document, Mapping):
        raise ConfigurationError(
            f"'{name}' in {file_path} has no 'descriptor' mapping", status=name
        )
    return dict(document)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_descriptor(
    path: str | Path,
    *,
    name: str | None = None,
    schema_path: str | Path | None = None,
) -> Descriptor:
    """Load an implication descriptor from a YAML, JSON or Python file.

    Parameters
    ----------
    path:
        Path to the descriptor (``.yaml``, ``.yml``, ``.json`` or ``.py``).
    name:
        Descriptor name.  Defaults to the file stem; for Python modules it is
        also the attribute looked up inside the module.
    schema_path:
        Optional path to the JSON Schema file.  When ``None`` the bundled
        schema is used.

    Returns
    -------
    Descriptor
        Fully parsed, validated, immutable descriptor model.

    Raises
    ------
    DescriptorValidationError
        If the descriptor fails schema validation.
    ConfigurationError
        If a Python descriptor module cannot be imported.
    FileNotFoundError
        If *path* does not exist.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise FileNotFoundError(f"Descriptor file not found: {file_path}")
    name = name or file_path.stem

    suffix = file_path.suffix.lower()
    if suffix == ".py":
        data: Any = _load_module_document(file_path, name)
    else:
        with open(file_path, encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise ValueError(
                    f"Unsupported descriptor format '{suffix}'. Use .yaml, .yml, .json or .py."
                )

    _validate_against_schema(data, schema_path, source=str(file_path))
    return parse_descriptor(data, name=name, source_path=str(file_path))


class DescriptorRepository:
    """Resolves descriptor names to loaded ``Descriptor`` objects.

    The repository indexes every descriptor file under *root* by file stem.
    Loaded descriptors are cached until ``reload()`` is called, which also
    rescans the directory.

    Args:
        root: Directory holding descriptor files (searched recursively).
        schema_path: Optional override of the JSON Schema file.
    """

    SUFFIXES = (".yaml", ".yml", ".json", ".py")

    def __init__(self, root: str | Path, *, schema_path: str | Path | None = None) -> None:
        self._root = Path(root)
        self._schema_path = schema_path
        self._index: dict[str, Path] | None = None
        self._cache: dict[str, Descriptor] = {}

    @property
    def root(self) -> Path:
        return self._root

    def _scan(self) -> dict[str, Path]:
        index: dict[str, Path] = {}
        if not self._root.is_dir():
            LOG.warning("Implications directory %s does not exist", self._root)
            return index
        for path in sorted(self._root.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in self.SUFFIXES:
                continue
            if path.name.startswith((".", "__")):
                continue
            if path.stem in index:
                LOG.warning(
                    "Duplicate descriptor name %s: keeping %s, ignoring %s",
                    path.stem,
                    index[path.stem],
                    path,
                )
                continue
            index[path.stem] = path
        LOG.debug("Indexed %d descriptor file(s) under %s", len(index), self._root)
        return index

    def _ensure_index(self) -> dict[str, Path]:
        if self._index is None:
            self._index = self._scan()
        return self._index

    def names(self) -> list[str]:
        return sorted(self._ensure_index())

    def path_for(self, name: str) -> Path | None:
        return self._ensure_index().get(name)

    def resolve(self, name: str) -> Descriptor:
        """Return the descriptor called *name*.

        Raises
        ------
        ConfigurationError
            If no descriptor file is indexed under *name* or it fails to load.
        """
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self.path_for(name)
        if path is None:
            known = ", ".join(self.names()) or "(none)"
            raise ConfigurationError(
                f"Unknown descriptor '{name}'. Known descriptors: {known}", status=name
            )
        try:
            descriptor = load_descriptor(path, name=name, schema_path=self._schema_path)
        except ConfigurationError:
            raise
        except (OSError, ValueError, yaml.YAMLError) as exc:
            raise ConfigurationError(
                f"Failed to load descriptor '{name}' from {path}: {exc}", status=name
            ) from exc
        self._cache[name] = descriptor
        return descriptor

    def reload(self) -> None:
        """Drop cached descriptors and rescan the directory on next use."""
        self._index = None
        self._cache.clear()


@dataclass(frozen=True)
class StateRegistry:
    """Read-only map of status name to descriptor (class) name."""

    entries: dict[str, str] = field(default_factory=dict)
    path: str = ""

    @classmethod
    def load(cls, path: str | Path) -> "StateRegistry":
        """Read the registry JSON at *path*.

        A missing file yields an empty registry; malformed content raises
        ``ConfigurationError``.
        """
        file_path = Path(path)
        try:
            with open(file_path, encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            LOG.warning("State registry not found at %s; using an empty registry", file_path)
            return cls(entries={}, path=str(file_path))
        except (OSError, ValueError) as exc:
            raise ConfigurationError(f"Failed to read state registry {file_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"State registry {file_path} must be a JSON object")
        return cls(entries={str(k): str(v) for k, v in data.items()}, path=str(file_path))

    def class_for(self, status: str) -> str | None:
        return self.entries.get(status)

    def statuses(self) -> list[str]:
        return sorted(self.entries)

    def __contains__(self, status: object) -> bool:
        return status in self.entries

    def __len__(self) -> int:
        return len(self.entries)

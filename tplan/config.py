"""Planner configuration — ``tplan.yaml`` plus ``TPLAN_*`` environment overrides.

Resolution order (later wins):

1. Built-in defaults (``PlannerConfig()``).
2. ``tplan.yaml`` in the working directory, or the file named by
   ``TPLAN_CONFIG`` / the *path* argument.
3. ``TPLAN_*`` environment variables.  A ``.env`` file found from the working
   directory is loaded first unless ``TPLAN_LOAD_DOTENV=0``.

Usage::

    from tplan.config import load_config

    config = load_config()
    print(config.registry_path, config.confirm_timeout)
"""

from __future__ import annotations

import dataclasses
import logging
import os
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from tplan.engine.errors import ConfigurationError
from tplan.engine.orchestrator import DEFAULT_REGISTRY_PATH
from tplan.engine.store import DEFAULT_SESSION_ONLY_FIELDS

LOG = logging.getLogger("tplan.config")

DEFAULT_CONFIG_FILE = "tplan.yaml"
DEFAULT_IMPLICATIONS_DIR = "tests/implications"
DEFAULT_DISCOVERY_CACHE = ".implications-framework/cache/discovery-result.json"


@dataclasses.dataclass(frozen=True)
class PlannerConfig:
    implications_dir: str = DEFAULT_IMPLICATIONS_DIR
    registry_path: str = DEFAULT_REGISTRY_PATH
    discovery_cache_path: str = DEFAULT_DISCOVERY_CACHE
    schema_path: Optional[str] = None
    confirm_timeout: float = 10.0
    max_attempts: int = 10
    session_only_fields: Tuple[str, ...] = tuple(sorted(DEFAULT_SESSION_ONLY_FIELDS))
    platform_aliases: Dict[str, str] = dataclasses.field(default_factory=dict)
    runner_commands: Dict[str, str] = dataclasses.field(default_factory=dict)
    runner_timeout: Optional[float] = None
    metrics_file: Optional[str] = None


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------


def _positive_int(name: str, raw: Any, default: int) -> int:
    try:
        value = int(raw)
        if value <= 0:
            raise ValueError("must be positive")
        return value
    except (TypeError, ValueError):
        LOG.warning("Invalid %s=%r; using %s", name, raw, default)
        return default


def _non_negative_float(name: str, raw: Any, default: Optional[float]) -> Optional[float]:
    try:
        value = float(raw)
        if value < 0:
            raise ValueError("must be non-negative")
        return value
    except (TypeError, ValueError):
        LOG.warning("Invalid %s=%r; using %s", name, raw, default)
        return default


def _string_tuple(raw: Any) -> Tuple[str, ...]:
    if isinstance(raw, str):
        return tuple(part.strip() for part in raw.split(",") if part.strip())
    return tuple(str(part) for part in raw or ())


def _string_map(name: str, raw: Any) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"{name} must be a mapping, got {type(raw).__name__}")
    return {str(k): str(v) for k, v in raw.items()}


_COERCE: Dict[str, Callable[[str, Any, PlannerConfig], Any]] = {
    "implications_dir": lambda n, v, d: str(v),
    "registry_path": lambda n, v, d: str(v),
    "discovery_cache_path": lambda n, v, d: str(v),
    "schema_path": lambda n, v, d: str(v) if v else None,
    "confirm_timeout": lambda n, v, d: _non_negative_float(n, v, d.confirm_timeout),
    "max_attempts": lambda n, v, d: _positive_int(n, v, d.max_attempts),
    "session_only_fields": lambda n, v, d: _string_tuple(v),
    "platform_aliases": lambda n, v, d: _string_map(n, v),
    "runner_commands": lambda n, v, d: _string_map(n, v),
    "runner_timeout": lambda n, v, d: _non_negative_float(n, v, d.runner_timeout) if v else None,
    "metrics_file": lambda n, v, d: str(v) if v else None,
}

# Environment variable -> config field.  Mappings are file-only.
_ENV_FIELDS = {
    "TPLAN_IMPLICATIONS_DIR": "implications_dir",
    "TPLAN_REGISTRY_PATH": "registry_path",
    "TPLAN_DISCOVERY_CACHE": "discovery_cache_path",
    "TPLAN_SCHEMA_PATH": "schema_path",
    "TPLAN_CONFIRM_TIMEOUT": "confirm_timeout",
    "TPLAN_MAX_ATTEMPTS": "max_attempts",
    "TPLAN_SESSION_ONLY_FIELDS": "session_only_fields",
    "TPLAN_RUNNER_TIMEOUT": "runner_timeout",
    "TPLAN_METRICS_FILE": "metrics_file",
}


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


def _dotenv_enabled() -> bool:
    return os.getenv("TPLAN_LOAD_DOTENV", "1").lower() in ("1", "true", "yes")


def _read_file(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"Config file {path} must contain a mapping, got {type(data).__name__}"
        )
    return data


def _apply(config: PlannerConfig, values: Mapping[str, Any], source: str) -> PlannerConfig:
    changes: Dict[str, Any] = {}
    for key, raw in values.items():
        coerce = _COERCE.get(key)
        if coerce is None:
            LOG.warning("Ignoring unknown config key %r in %s", key, source)
            continue
        changes[key] = coerce(f"{source}:{key}", raw, config)
    return dataclasses.replace(config, **changes) if changes else config


def load_config(path: Optional[str] = None) -> PlannerConfig:
    """Build a ``PlannerConfig`` from file and environment.

    Args:
        path: Explicit config file.  A missing explicit file is an error; a
            missing default ``tplan.yaml`` is not.

    Raises:
        ConfigurationError: When the config file is unreadable or malformed.
    """
    if _dotenv_enabled():
        env_file = find_dotenv(usecwd=True)
        if env_file:
            load_dotenv(env_file, override=True)

    config = PlannerConfig()

    explicit = path or os.getenv("TPLAN_CONFIG")
    config_file = explicit or DEFAULT_CONFIG_FILE
    if os.path.isfile(config_file):
        config = _apply(config, _read_file(config_file), config_file)
        LOG.debug("Loaded config from %s", config_file)
    elif explicit:
        raise ConfigurationError(f"Config file not found: {explicit}")

    env_values = {
        field_name: os.environ[var]
        for var, field_name in _ENV_FIELDS.items()
        if os.environ.get(var)
    }
    return _apply(config, env_values, "environment")

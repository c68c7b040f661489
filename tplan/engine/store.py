"""Test data store — original + change-log delta persistence.

A test data file is either a plain JSON object (a *master* file) or a delta
record::

    {
      "_original": {...},
      "_changeLog": [
        {"label": "...", "testFile": "...", "delta": {...}, "timestamp": "..."}
      ]
    }

The effective state is ``_original`` with every delta applied in order.
Records are written to the ``-current`` sibling of the master file, never to
the master itself unless explicitly requested.  Session-only fields (login
flags and similar) are stripped on every save.

Usage::

    from tplan.engine.store import StateStore

    store = StateStore()
    record = store.load("tests/data/booking-master.json")
    store.append_change(record, "accept booking", {"status": "accepted"})
    store.save(record)  # writes tests/data/booking-current.json
"""

from __future__ import annotations

import contextlib
import copy
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping

LOG = logging.getLogger("tplan.engine.store")

DEFAULT_SESSION_ONLY_FIELDS: frozenset[str] = frozenset({"logged_in"})

_ISO_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}")


def _utc_now() -> datetime:
    """Return current UTC time (extracted for testability)."""
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def delta_path(path: str | Path) -> Path:
    """Return the ``-current`` sibling used for delta records.

    ``booking-master.json`` -> ``booking-current.json``;
    ``booking-current.json`` is returned unchanged;
    ``booking.json`` -> ``booking-current.json``.
    """
    p = Path(path)
    if "-master." in p.name:
        return p.with_name(p.name.replace("-master.", "-current.", 1))
    if "-current." in p.name:
        return p
    return p.with_name(f"{p.stem}-current{p.suffix or '.json'}")


def set_nested(target: dict[str, Any], dotted: str, value: Any) -> None:
    """Set ``a.b.c`` inside *target*, creating intermediate objects."""
    keys = dotted.split(".")
    node = target
    for key in keys[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[keys[-1]] = value


def apply_delta(state: dict[str, Any], delta: Mapping[str, Any]) -> None:
    """Apply one delta to *state* in place.

    Dotted keys set nested values, mappings merge into existing objects and
    everything else replaces.
    """
    for key, value in delta.items():
        if "." in key:
            set_nested(state, key, copy.deepcopy(value))
        elif isinstance(value, Mapping) and isinstance(state.get(key), dict):
            apply_delta(state[key], value)
        else:
            state[key] = copy.deepcopy(value)


def merge_change_log(
    original: Mapping[str, Any], change_log: Iterable["ChangeLogEntry"]
) -> dict[str, Any]:
    """Fold *change_log* onto a deep copy of *original*."""
    state = copy.deepcopy(dict(original))
    for entry in change_log:
        apply_delta(state, entry.delta)
    return state


def parse_dates(value: Any) -> Any:
    """Recursively convert ISO-8601-like strings into ``datetime`` values."""
    if isinstance(value, dict):
        return {k: parse_dates(v) for k, v in value.items()}
    if isinstance(value, list):
        return [parse_dates(v) for v in value]
    if isinstance(value, str) and _ISO_DATE_RE.match(value):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return value
    return value


def strip_session_fields(value: Any, fields: frozenset[str] | set[str]) -> Any:
    """Return *value* without session-only keys at any depth.

    Dotted keys are matched on their last segment.  Objects that become empty
    only because of stripping are removed as well.
    """
    if isinstance(value, Mapping):
        out: dict[str, Any] = {}
        for key, child in value.items():
            if key in fields or key.split(".")[-1] in fields:
                continue
            stripped = strip_session_fields(child, fields)
            if isinstance(child, Mapping) and child and not stripped:
                continue
            out[key] = stripped
        return out
    if isinstance(value, list):
        return [strip_session_fields(v, fields) for v in value]
    return value


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _atomic_write_json(path: Path, payload: Mapping[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True, default=_json_default)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, path)
    except BaseException:
        with contextlib.suppress(OSError):
            os.unlink(tmp)
        raise


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeLogEntry:
    """One applied mutation of the test data."""

    label: str
    delta: dict[str, Any]
    timestamp: str
    test_file: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "testFile": self.test_file,
            "delta": self.delta,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "ChangeLogEntry":
        return cls(
            label=str(raw.get("label", "")),
            delta=dict(raw.get("delta") or {}),
            timestamp=str(raw.get("timestamp", "")),
            test_file=raw.get("testFile"),
        )


@dataclass
class TestDataRecord:
    """Persisted test data: an original snapshot plus its change log.

    Attributes:
        original: Snapshot the change log is applied to.
        change_log: Ordered mutations.
        source_path: File the record was read from.
        master_path: Master file the record belongs to.
    """

    __test__ = False  # not a pytest test class

    original: dict[str, Any] = field(default_factory=dict)
    change_log: list[ChangeLogEntry] = field(default_factory=list)
    source_path: str = ""
    master_path: str = ""

    @property
    def data(self) -> dict[str, Any]:
        """Effective state with date-like strings parsed."""
        return parse_dates(merge_change_log(self.original, self.change_log))

    @property
    def status(self) -> str | None:
        return self.data.get("status")

    def record_change(
        self,
        label: str,
        delta: Mapping[str, Any],
        *,
        test_file: str | None = None,
        timestamp: datetime | None = None,
    ) -> ChangeLogEntry:
        """Append a change-log entry and return it."""
        ts = (timestamp or _utc_now()).isoformat()
        entry = ChangeLogEntry(
            label=label,
            delta=json.loads(json.dumps(dict(delta), default=_json_default)),
            timestamp=ts,
            test_file=test_file,
        )
        self.change_log.append(entry)
        return entry

    def to_dict(self) -> dict[str, Any]:
        return {
            "_original": self.original,
            "_changeLog": [e.to_dict() for e in self.change_log],
        }


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class StateStore:
    """Loads and saves ``TestDataRecord`` files.

    Args:
        session_only_fields: Field names stripped on save.  Defaults to
            ``DEFAULT_SESSION_ONLY_FIELDS``.
        clock: Callable returning the current UTC datetime (override in tests).
    """

    def __init__(
        self,
        session_only_fields: Iterable[str] | None = None,
        clock: Any = None,
    ) -> None:
        fields = DEFAULT_SESSION_ONLY_FIELDS if session_only_fields is None else session_only_fields
        self._session_only = frozenset(fields)
        self._clock = clock or _utc_now

    @property
    def session_only_fields(self) -> frozenset[str]:
        return self._session_only

    def load(self, path: str | Path) -> TestDataRecord:
        """Load the record for *path*, preferring its ``-current`` sibling.

        Raises
        ------
        FileNotFoundError
            If neither the delta sibling nor *path* exists.
        ValueError
            If the file does not hold a JSON object.
        """
        master = Path(path)
        delta = delta_path(master)
        source = delta if delta.exists() else master
        if not source.exists():
            raise FileNotFoundError(f"Test data not found at {master}")

        try:
            with open(source, encoding="utf-8") as fh:
                raw = json.load(fh)
        except Exception:
            LOG.exception("Failed to read test data at %s", source)
            raise
        if not isinstance(raw, dict):
            raise ValueError(f"Test data root must be an object: {source}")

        if "_original" in raw:
            original = dict(raw.get("_original") or {})
            change_log = [ChangeLogEntry.from_dict(e) for e in raw.get("_changeLog") or []]
        else:
            original = raw
            change_log = []
        LOG.debug("Loaded %s (%d change(s))", source, len(change_log))
        return TestDataRecord(
            original=original,
            change_log=change_log,
            source_path=str(source),
            master_path=str(master),
        )

    def append_change(
        self,
        record: TestDataRecord,
        label: str,
        delta: Mapping[str, Any],
        *,
        test_file: str | None = None,
    ) -> ChangeLogEntry:
        """Append a change stamped with this store's clock."""
        return record.record_change(label, delta, test_file=test_file, timestamp=self._clock())

    def save(
        self,
        record: TestDataRecord,
        path: str | Path | None = None,
        *,
        to_master: bool = False,
    ) -> Path:
        """Strip session-only fields and write *record* atomically.

        The record is written to the ``-current`` sibling of *path* (default:
        the record's master path).  With ``to_master=True`` the master file
        itself is overwritten and a warning is logged.

        Returns
        -------
        Path
            The file that was written.
        """
        base = Path(path or record.master_path or record.source_path)
        if to_master:
            target = base
            LOG.warning("Writing test data directly to master file %s", target)
        else:
            target = delta_path(base)

        original = strip_session_fields(record.original, self._session_only)
        entries: list[ChangeLogEntry] = []
        for entry in record.change_log:
            delta = strip_session_fields(entry.delta, self._session_only)
            if not delta:
                LOG.debug("Dropping change '%s': only session-only fields", entry.label)
                continue
            entries.append(replace(entry, delta=delta))

        record.original = original
        record.change_log = entries
        _atomic_write_json(target, record.to_dict())
        LOG.info("Saved test data to %s (%d change(s))", target, len(entries))
        return target

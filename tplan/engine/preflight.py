"""Pre-flight data check — detects ``requires`` mismatches before resolution.

Compares the plain-valued requirements of the target descriptor and of its
applicable setup entry with the current test data.  Status fields, entity
booleans that the chain can produce and session-only fields are left to the
resolver.  Mismatched plain values can be corrected automatically after a
timed confirmation; predicate requirements (``{"greaterThan": 3}``, ``!field``)
cannot and always raise ``DataMismatchError``.

Usage::

    from tplan.engine.preflight import PreflightChecker

    checker = PreflightChecker(store, prompt)
    corrections = checker.check(descriptor, record, registry, test_file=test_file)
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

from tplan.engine.descriptor import Descriptor, StateRegistry
from tplan.engine.errors import DataMismatchError, Mismatch
from tplan.engine.prompt import AutoPrompt, Decision, Prompt
from tplan.engine.report import format_mismatch_report
from tplan.engine.requirements import STRUCTURAL_KEYS, check_field
from tplan.engine.selector import TransitionSelector
from tplan.engine.store import StateStore, TestDataRecord

LOG = logging.getLogger("tplan.engine.preflight")

CORRECTION_LABEL = "preflight-correction"


class PreflightChecker:
    """Finds and optionally corrects data mismatches.

    Args:
        store: Store used to persist corrections.
        prompt: Confirmation prompt.  Defaults to ``AutoPrompt()``.
        selector: Setup-entry selector.
        timeout: Countdown length in seconds.
    """

    def __init__(
        self,
        store: StateStore,
        prompt: Prompt | None = None,
        *,
        selector: TransitionSelector | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._store = store
        self._prompt = prompt or AutoPrompt()
        self._selector = selector or TransitionSelector()
        self._timeout = timeout

    def _skipped(self, name: str, expected: Any, registry: StateRegistry) -> bool:
        clean = name.lstrip("!")
        if name in STRUCTURAL_KEYS or clean == "status" or clean.endswith(".status"):
            return True
        if clean.split(".")[-1] in self._store.session_only_fields:
            return True
        if "." in clean and isinstance(expected, bool):
            entity, attr = clean.split(".", 1)
            if f"{entity}_{attr}" in registry:
                return True
        return False

    def find_mismatches(
        self,
        descriptor: Descriptor,
        data: Mapping[str, Any],
        registry: StateRegistry,
        *,
        test_file: str | None = None,
        explicit_event: str | None = None,
    ) -> list[Mismatch]:
        """Return requirement mismatches in *data*, without side effects."""
        setup = self._selector.find_setup_entry(
            descriptor, data, test_file=test_file, explicit_event=explicit_event
        )
        requires: dict[str, Any] = dict(descriptor.requires)
        if setup is not None:
            requires.update(setup.requires)

        mismatches: list[Mismatch] = []
        for name, expected in requires.items():
            if self._skipped(name, expected, registry):
                continue
            check = check_field(name, expected, data)
            if check.passed:
                continue
            correctable = not name.startswith("!") and not isinstance(expected, Mapping)
            mismatches.append(Mismatch(name, expected, check.actual, correctable))
        return mismatches

    def check(
        self,
        descriptor: Descriptor,
        record: TestDataRecord,
        registry: StateRegistry,
        *,
        test_file: str | None = None,
        explicit_event: str | None = None,
    ) -> list[Mismatch]:
        """Detect mismatches and correct them after confirmation.

        Returns
        -------
        list[Mismatch]
            The mismatches that were corrected (empty when data matched).

        Raises
        ------
        DataMismatchError
            When a mismatch cannot be corrected automatically, or the operator
            cancels the correction.
        """
        mismatches = self.find_mismatches(
            descriptor,
            record.data,
            registry,
            test_file=test_file,
            explicit_event=explicit_event,
        )
        if not mismatches:
            return []

        LOG.warning(format_mismatch_report(mismatches))
        if any(not m.correctable for m in mismatches):
            raise DataMismatchError(mismatches, "Test data cannot be corrected automatically")

        decision = self._prompt.confirm("Auto-correcting test data", self._timeout)
        if decision == Decision.CANCEL:
            raise DataMismatchError(mismatches, "Auto-correction cancelled")

        delta = {m.field: m.expected for m in mismatches}
        self._store.append_change(record, CORRECTION_LABEL, delta, test_file=test_file)
        path = self._store.save(record)
        LOG.info("Corrected %d field(s) in %s", len(mismatches), path)
        return mismatches

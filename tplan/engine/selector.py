"""Transition selector — disambiguates between transitions and setup entries.

When several transitions of a source descriptor lead to the same target, the
selector picks one by strict priority:

1. explicit event name supplied by the caller
2. a transition whose requirements are satisfied by the test data
3. an unconditional transition (no requirements)
4. a transition flagged ``isDefault``
5. a transition declared for the current platform
6. the first candidate (logged as uncertain)

Usage::

    from tplan.engine.selector import TransitionSelector

    selector = TransitionSelector()
    choice = selector.select(source, "booking_accepted", test_data={"F": 5})
    print(choice.event, choice.reason)
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping

from tplan.engine.descriptor import Descriptor, SetupEntry, TransitionSpec
from tplan.engine.requirements import check_requires, requirements_met
from tplan.engine.segments import normalize_platform

LOG = logging.getLogger("tplan.engine.selector")


class SelectionReason:
    """Why a transition was chosen."""

    ONLY_CANDIDATE = "only_candidate"
    EXPLICIT_EVENT = "explicit_event"
    REQUIREMENTS_MET = "requirements_met"
    UNCONDITIONAL = "unconditional"
    MARKED_DEFAULT = "marked_default"
    SAME_PLATFORM = "same_platform"
    FIRST_CANDIDATE = "first_candidate"


@dataclass(frozen=True)
class TransitionChoice:
    """A selected transition together with the rule that selected it."""

    transition: TransitionSpec
    reason: str
    meets_requirements: bool = True

    @property
    def event(self) -> str:
        return self.transition.event

    @property
    def uncertain(self) -> bool:
        return self.reason == SelectionReason.FIRST_CANDIDATE


def _normalize_token(text: str) -> str:
    return re.sub(r"[-_\s]", "", text).lower()


def extract_event_from_filename(test_file: str | None) -> str | None:
    """Derive the event name from a test file name.

    ``BookingAcceptedViaPending-ACCEPT-Web-UNIT.spec.py`` yields ``ACCEPT``;
    a camelCase part such as ``confirmBooking`` yields ``CONFIRM_BOOKING``.
    """
    if not test_file:
        return None
    stem = Path(test_file).name.split(".")[0]
    parts = stem.split("-")
    if len(parts) < 2 or not parts[1]:
        return None
    event = parts[1]
    if "_" in event or event.isupper():
        return event.upper()
    if event.islower():
        return event.upper()
    return re.sub(r"(?<!^)(?=[A-Z])", "_", event).upper()


class TransitionSelector:
    """Selects transitions and setup entries.

    Args:
        platform_normalizer: Callable mapping a platform name to its canonical
            key.  Defaults to ``normalize_platform`` with built-in aliases.
    """

    def __init__(self, platform_normalizer: Callable[[str | None], str] | None = None) -> None:
        self._normalize = platform_normalizer or normalize_platform

    def select(
        self,
        source: Descriptor,
        target_status: str,
        *,
        platform: str | None = None,
        explicit_event: str | None = None,
        test_data: Mapping[str, Any] | None = None,
    ) -> TransitionChoice | None:
        """Choose the transition of *source* that leads to *target_status*.

        Returns ``None`` when *source* has no transition to the target.
        """
        candidates = source.transitions_to(target_status)
        if not candidates:
            return None

        checked = [
            (t, requirements_met(t.requires, t.conditions, test_data).passed)
            for t in candidates
        ]
        if len(checked) == 1:
            t, met = checked[0]
            return TransitionChoice(t, SelectionReason.ONLY_CANDIDATE, met)

        LOG.debug(
            "Multiple paths from %s to %s: %s",
            source.status,
            target_status,
            ", ".join(t.event for t in candidates),
        )

        if explicit_event:
            for t, met in checked:
                if t.event == explicit_event:
                    return TransitionChoice(t, SelectionReason.EXPLICIT_EVENT, met)

        for t, met in checked:
            if t.has_requirements and met:
                return TransitionChoice(t, SelectionReason.REQUIREMENTS_MET, True)

        for t, met in checked:
            if not t.has_requirements:
                return TransitionChoice(t, SelectionReason.UNCONDITIONAL, True)

        for t, met in checked:
            if t.is_default:
                return TransitionChoice(t, SelectionReason.MARKED_DEFAULT, met)

        if platform:
            current = self._normalize(platform)
            for t, met in checked:
                if any(self._normalize(p) == current for p in t.platforms):
                    return TransitionChoice(t, SelectionReason.SAME_PLATFORM, met)

        t, met = checked[0]
        LOG.warning(
            "Uncertain transition choice %s -> %s: using first candidate %s",
            source.status,
            target_status,
            t.event,
        )
        return TransitionChoice(t, SelectionReason.FIRST_CANDIDATE, met)

    def find_setup_entry(
        self,
        descriptor: Descriptor,
        test_data: Mapping[str, Any] | None = None,
        *,
        test_file: str | None = None,
        explicit_event: str | None = None,
    ) -> SetupEntry | None:
        """Pick the setup entry that applies to the current invocation.

        Entries whose ``requires`` match the data are preferred, then entries
        without ``requires``.  Within that pool an exact test-file match wins,
        then an entry whose file name contains *explicit_event*, then the
        first entry.
        """
        entries = list(descriptor.setup)
        if not entries:
            return None
        if len(entries) == 1:
            return entries[0]

        matching = []
        if test_data is not None:
            matching = [
                e for e in entries if e.requires and check_requires(e.requires, test_data).passed
            ]
        pool = matching or [e for e in entries if not e.requires] or entries

        if test_file:
            wanted = Path(test_file).name
            for entry in pool:
                if Path(entry.test_file).name == wanted:
                    return entry

        if explicit_event:
            token = _normalize_token(explicit_event)
            for entry in pool:
                if token in _normalize_token(Path(entry.test_file).name):
                    return entry

        return pool[0]

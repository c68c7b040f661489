"""Tests for tplan.engine.selector — transition and setup-entry selection."""

from __future__ import annotations

import pytest

from tplan.engine.descriptor import Descriptor, SetupEntry, TransitionSpec
from tplan.engine.selector import (
    SelectionReason,
    TransitionSelector,
    extract_event_from_filename,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _conditional(event: str, target: str, field: str, value) -> TransitionSpec:
    return TransitionSpec(
        event=event,
        target=target,
        conditions={
            "blocks": [{"checks": [{"field": field, "operator": "equals", "value": value}]}]
        },
    )


def _source(*transitions: TransitionSpec) -> Descriptor:
    return Descriptor(name="Pending", status="booking_pending", transitions=tuple(transitions))


# ---------------------------------------------------------------------------
# Event names
# ---------------------------------------------------------------------------


class TestExtractEvent:
    @pytest.mark.parametrize(
        "test_file, event",
        [
            ("BookingAccepted-ACCEPT-Web-UNIT.spec.py", "ACCEPT"),
            ("tests/x/BookingAccepted-ACCEPT_BOOKING-Web-UNIT.spec.py", "ACCEPT_BOOKING"),
            ("Booking-confirmBooking-Web-UNIT.spec.py", "CONFIRM_BOOKING"),
            ("Booking-accept-Web-UNIT.spec.py", "ACCEPT"),
            ("test_booking.py", None),
            (None, None),
        ],
    )
    def test_extract(self, test_file, event):
        assert extract_event_from_filename(test_file) == event


# ---------------------------------------------------------------------------
# Transition selection
# ---------------------------------------------------------------------------


class TestSelect:
    def test_no_candidates(self):
        assert TransitionSelector().select(_source(), "booking_accepted") is None

    def test_single_candidate(self):
        src = _source(TransitionSpec("ACCEPT", "booking_accepted"))
        choice = TransitionSelector().select(src, "booking_accepted")
        assert choice.event == "ACCEPT"
        assert choice.reason == SelectionReason.ONLY_CANDIDATE

    def test_conditional_selected_when_data_satisfies(self):
        src = _source(
            TransitionSpec("DEFAULT_PATH", "booking_accepted"),
            _conditional("FAST_PATH", "booking_accepted", "F", 5),
        )
        choice = TransitionSelector().select(src, "booking_accepted", test_data={"F": 5})
        assert choice.event == "FAST_PATH"
        assert choice.reason == SelectionReason.REQUIREMENTS_MET
        assert not choice.uncertain

    def test_unconditional_when_data_does_not_satisfy(self):
        src = _source(
            TransitionSpec("DEFAULT_PATH", "booking_accepted"),
            _conditional("FAST_PATH", "booking_accepted", "F", 5),
        )
        choice = TransitionSelector().select(src, "booking_accepted", test_data={"F": 1})
        assert choice.event == "DEFAULT_PATH"
        assert choice.reason == SelectionReason.UNCONDITIONAL

    def test_explicit_event_wins(self):
        src = _source(
            TransitionSpec("DEFAULT_PATH", "booking_accepted"),
            _conditional("FAST_PATH", "booking_accepted", "F", 5),
        )
        choice = TransitionSelector().select(
            src, "booking_accepted", explicit_event="DEFAULT_PATH", test_data={"F": 5}
        )
        assert choice.event == "DEFAULT_PATH"
        assert choice.reason == SelectionReason.EXPLICIT_EVENT

    def test_marked_default(self):
        src = _source(
            _conditional("A", "booking_accepted", "F", 1),
            TransitionSpec("B", "booking_accepted", requires={"G": 2}, is_default=True),
        )
        choice = TransitionSelector().select(src, "booking_accepted", test_data={})
        assert choice.event == "B"
        assert choice.reason == SelectionReason.MARKED_DEFAULT
        assert not choice.meets_requirements

    def test_same_platform(self):
        src = _source(
            TransitionSpec("WEB", "booking_accepted", requires={"G": 1}, platforms=("cms",)),
            TransitionSpec("CLUB", "booking_accepted", requires={"G": 1}, platforms=("clubapp",)),
        )
        choice = TransitionSelector().select(src, "booking_accepted", platform="club", test_data={})
        assert choice.event == "CLUB"
        assert choice.reason == SelectionReason.SAME_PLATFORM

    def test_first_candidate_is_uncertain(self, caplog):
        src = _source(
            TransitionSpec("A", "booking_accepted", requires={"G": 1}),
            TransitionSpec("B", "booking_accepted", requires={"G": 2}),
        )
        with caplog.at_level("WARNING", logger="tplan.engine.selector"):
            choice = TransitionSelector().select(src, "booking_accepted", test_data={})
        assert choice.event == "A"
        assert choice.uncertain
        assert "Uncertain transition choice" in caplog.text


# ---------------------------------------------------------------------------
# Setup entries
# ---------------------------------------------------------------------------


class TestFindSetupEntry:
    def _descriptor(self) -> Descriptor:
        return Descriptor(
            name="Accepted",
            status="booking_accepted",
            setup=(
                SetupEntry("tests/Accepted-ACCEPT-Web-UNIT.spec.py", "accept_web"),
                SetupEntry("tests/Accepted-QUICK_ACCEPT-Club-UNIT.spec.py", "accept_club"),
                SetupEntry(
                    "tests/Accepted-VIP-Web-UNIT.spec.py", "accept_vip", requires={"vip": True}
                ),
            ),
        )

    def test_none_without_entries(self):
        d = Descriptor(name="X", status="x")
        assert TransitionSelector().find_setup_entry(d) is None

    def test_first_entry_without_requires(self):
        entry = TransitionSelector().find_setup_entry(self._descriptor(), {})
        assert entry.action_name == "accept_web"

    def test_matching_requires_preferred(self):
        entry = TransitionSelector().find_setup_entry(self._descriptor(), {"vip": True})
        assert entry.action_name == "accept_vip"

    def test_test_file_match(self):
        entry = TransitionSelector().find_setup_entry(
            self._descriptor(), {}, test_file="/abs/Accepted-QUICK_ACCEPT-Club-UNIT.spec.py"
        )
        assert entry.action_name == "accept_club"

    def test_event_match(self):
        entry = TransitionSelector().find_setup_entry(
            self._descriptor(), {}, explicit_event="QUICK_ACCEPT"
        )
        assert entry.action_name == "accept_club"

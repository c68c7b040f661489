"""Tests for tplan.engine.requirements — requires predicates and condition blocks."""

from __future__ import annotations

import pytest

from tplan.engine.requirements import (
    check_field,
    check_requires,
    check_value,
    evaluate_conditions,
    evaluate_operator,
    get_nested,
    requirements_met,
    strict_equal,
)

DATA = {
    "status": "booking_pending",
    "F": 5,
    "name": "Alice",
    "tags": ["vip", "early"],
    "club": {"status": "active", "verified": True, "owner": "Alice"},
}


def _block(*checks, mode="all", enabled=True):
    return {
        "enabled": enabled,
        "mode": mode,
        "checks": [{"field": f, "operator": op, "value": v} for f, op, v in checks],
    }


class TestFieldAccess:
    def test_nested(self):
        assert get_nested(DATA, "club.status") == "active"

    def test_missing_path(self):
        assert get_nested(DATA, "club.missing.deep") is None
        assert get_nested(DATA, "F.x") is None

    def test_strict_equal_does_not_coerce_bools(self):
        assert strict_equal(True, True)
        assert not strict_equal(True, 1)
        assert not strict_equal(0, False)
        assert strict_equal("a", "a")


class TestCheckValue:
    @pytest.mark.parametrize(
        "expected, actual, passed",
        [
            ({"exists": True}, "x", True),
            ({"exists": True}, None, False),
            ({"exists": False}, None, True),
            ({"contains": "vip"}, ["vip"], True),
            ({"contains": "vip"}, "vip", False),
            ({"notContains": "vip"}, ["early"], True),
            ({"greaterThan": 3}, 5, True),
            ({"greaterThan": 3}, True, False),
            ({"lessThan": 3}, 5, False),
            ({"matches": "^A"}, "Alice", True),
            ({"matches": "["}, "Alice", False),
            ({"oneOf": ["a", "b"]}, "b", True),
            ({"oneOf": ["a", "b"]}, "c", False),
            ({"x": 1}, {"x": 1}, True),
            (5, 5, True),
            (5, "5", False),
        ],
    )
    def test_predicates(self, expected, actual, passed):
        assert check_value(expected, actual, DATA)[0] is passed

    def test_reference_resolution(self):
        assert check_value({"contains": "{{name}}"}, ["Alice"], DATA)[0]
        assert check_value({"contains": "ctx.data.club.owner"}, ["Alice"], DATA)[0]
        assert check_value({"contains": "testData.name"}, ["Bob"], DATA)[0] is False

    def test_reason_mentions_values(self):
        passed, reason = check_value("x", "y", DATA)
        assert not passed
        assert "'y'" in reason and "'x'" in reason


class TestCheckField:
    def test_dotted(self):
        assert check_field("club.verified", True, DATA).passed

    def test_negation(self):
        check = check_field("!club.verified", True, DATA)
        assert not check.passed
        assert check.actual is True
        assert check_field("!club.banned", True, DATA).passed


class TestCheckRequires:
    def test_empty_passes(self):
        assert check_requires({}, DATA).passed
        assert check_requires(None, None).passed

    def test_previous_status_skipped(self):
        result = check_requires({"previousStatus": "nope", "F": 5}, DATA)
        assert result.passed
        assert [c.field for c in result.checks] == ["F"]

    def test_failed_fields_and_summary(self):
        result = check_requires({"F": 6, "name": "Alice"}, DATA)
        assert not result.passed
        assert result.failed_fields == ["F"]
        assert "1 of 2 requirement(s) not met" in result.summary()


class TestConditions:
    @pytest.mark.parametrize(
        "actual, operator, expected, result",
        [
            (5, "equals", 5, True),
            (5, "notEquals", 5, False),
            (5, "greaterThan", 3, True),
            ("5", "greaterThanOrEqual", 5, True),
            (2, "lessThan", 3, True),
            (3, "lessThanOrEqual", 3, True),
            ("abc", "contains", "b", True),
            ("abc", "notContains", "b", False),
            ("abc", "startsWith", "a", True),
            ("abc", "endsWith", "c", True),
            ("abc", "matches", "^a.c$", True),
            ("a", "in", ["a", "b"], True),
            ("c", "notIn", ["a", "b"], True),
            (None, "exists", None, False),
            (None, "notExists", None, True),
            ("x", "truthy", None, True),
            ("", "falsy", None, True),
            (1, "unknownOperator", 1, False),
        ],
    )
    def test_operators(self, actual, operator, expected, result):
        assert evaluate_operator(actual, operator, expected) is result

    def test_all_blocks(self):
        conditions = {"mode": "all", "blocks": [_block(("F", "equals", 5), ("name", "equals", "Alice"))]}
        assert evaluate_conditions(conditions, DATA).passed

    def test_any_mode(self):
        conditions = {
            "mode": "any",
            "blocks": [_block(("F", "equals", 1)), _block(("F", "equals", 5))],
        }
        assert evaluate_conditions(conditions, DATA).passed

    def test_disabled_blocks_ignored(self):
        conditions = {"blocks": [_block(("F", "equals", 1), enabled=False)]}
        assert evaluate_conditions(conditions, DATA).passed

    def test_reference_value(self):
        conditions = {"blocks": [_block(("club.owner", "equals", "{{name}}"))]}
        assert evaluate_conditions(conditions, DATA).passed

    def test_conditions_take_precedence(self):
        conditions = {"blocks": [_block(("F", "equals", 5))]}
        assert requirements_met({"F": 1}, conditions, DATA).passed
        assert not requirements_met({"F": 1}, {}, DATA).passed

"""Requirement evaluator — checks ``requires`` predicates and condition blocks.

Evaluates the data requirements attached to descriptors, setup entries and
transitions against effective test data.

Supported ``requires`` value forms::

    "booking.status": "pending"          — strict equality (dotted paths)
    "notes": {"exists": true}           — presence check
    "tags": {"contains": "vip"}         — list membership
    "tags": {"notContains": "blocked"}  — list exclusion
    "count": {"greaterThan": 2}          — numeric comparison
    "count": {"lessThan": 10}
    "email": {"matches": "@example"}     — regex search
    "tier": {"oneOf": ["gold", "silver"]}
    "!booking.cancelled": true           — negation of any of the above

Condition blocks (``conditions``) use ``{mode, blocks: [{mode, checks}]}``
with named operators such as ``equals``, ``in`` or ``truthy``.

Usage::

    from tplan.engine.requirements import check_requires

    result = check_requires({"F": 5}, {"F": 5})
    if not result.passed:
        print(result.summary())
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

#: ``requires`` keys that are not data fields.
STRUCTURAL_KEYS = ("previousStatus",)

_REFERENCE_PREFIXES = ("ctx.data.", "testData.")


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldCheck:
    """Result of checking a single required field."""

    field: str
    expected: Any
    actual: Any
    passed: bool
    reason: str = ""


@dataclass(frozen=True)
class RequirementResult:
    """Aggregate result of evaluating a requirement set."""

    passed: bool
    checks: tuple[FieldCheck, ...] = ()

    @property
    def failed_fields(self) -> list[str]:
        """Names of fields that failed."""
        return [c.field for c in self.checks if not c.passed]

    def summary(self) -> str:
        if self.passed:
            return f"All {len(self.checks)} requirement(s) met."
        failed = [c for c in self.checks if not c.passed]
        lines = [f"{len(failed)} of {len(self.checks)} requirement(s) not met:"]
        for c in failed:
            lines.append(f"  - {c.field}: {c.reason}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# Field access
# ---------------------------------------------------------------------------


def get_nested(data: Any, path: str) -> Any:
    """Return the value at dotted *path* inside *data*, or ``None``."""
    current = data
    for key in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _resolve_reference(value: Any, data: Mapping[str, Any]) -> Any:
    """Resolve ``ctx.data.x`` / ``{{x}}`` references against *data*."""
    if not isinstance(value, str):
        return value
    text = value.strip()
    if text.startswith("{{") and text.endswith("}}"):
        return get_nested(data, text[2:-2].strip())
    for prefix in _REFERENCE_PREFIXES:
        if text.startswith(prefix):
            return get_nested(data, text[len(prefix):])
    return value


def strict_equal(expected: Any, actual: Any) -> bool:
    """Equality that does not treat ``True`` as ``1``."""
    if isinstance(expected, bool) or isinstance(actual, bool):
        return isinstance(expected, bool) and isinstance(actual, bool) and expected == actual
    return expected == actual


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


# ---------------------------------------------------------------------------
# ``requires`` evaluation
# ---------------------------------------------------------------------------


def check_value(expected: Any, actual: Any, data: Mapping[str, Any]) -> tuple[bool, str]:
    """Check one required value against the actual one.

    Returns ``(passed, reason)`` where *reason* explains the outcome.
    """
    if not isinstance(expected, Mapping):
        if strict_equal(expected, actual):
            return True, f"is {actual!r}"
        return False, f"is {actual!r}, expected {expected!r}"

    if "exists" in expected:
        present = actual is not None
        if present == bool(expected["exists"]):
            return True, "present" if present else "absent"
        return False, "missing" if expected["exists"] else f"present ({actual!r}), expected absent"

    if "contains" in expected:
        needle = _resolve_reference(expected["contains"], data)
        if isinstance(actual, list) and needle in actual:
            return True, f"contains {needle!r}"
        return False, f"{actual!r} does not contain {needle!r}"

    if "notContains" in expected:
        needle = _resolve_reference(expected["notContains"], data)
        if not isinstance(actual, list) or needle not in actual:
            return True, f"does not contain {needle!r}"
        return False, f"{actual!r} contains {needle!r}"

    if "greaterThan" in expected:
        bound = expected["greaterThan"]
        if _is_number(actual) and actual > bound:
            return True, f"{actual!r} > {bound!r}"
        return False, f"is {actual!r}, expected > {bound!r}"

    if "lessThan" in expected:
        bound = expected["lessThan"]
        if _is_number(actual) and actual < bound:
            return True, f"{actual!r} < {bound!r}"
        return False, f"is {actual!r}, expected < {bound!r}"

    if "matches" in expected:
        pattern = expected["matches"]
        try:
            matched = isinstance(actual, str) and re.search(pattern, actual) is not None
        except re.error:
            matched = False
        if matched:
            return True, f"matches {pattern!r}"
        return False, f"{actual!r} does not match {pattern!r}"

    if isinstance(expected.get("oneOf"), list):
        options = expected["oneOf"]
        if any(strict_equal(option, actual) for option in options):
            return True, f"{actual!r} is one of {options!r}"
        return False, f"is {actual!r}, expected one of {options!r}"

    if actual == dict(expected):
        return True, "matches expected object"
    return False, f"is {actual!r}, expected {dict(expected)!r}"


def check_field(field: str, expected: Any, data: Mapping[str, Any]) -> FieldCheck:
    """Check one ``requires`` entry, honouring ``!field`` negation."""
    if field.startswith("!"):
        clean = field[1:]
        actual = get_nested(data, clean)
        passed, reason = check_value(expected, actual, data)
        if passed:
            return FieldCheck(field, expected, actual, False, f"negated check failed: {reason}")
        return FieldCheck(field, expected, actual, True, f"negated check passed: {reason}")

    actual = get_nested(data, field)
    passed, reason = check_value(expected, actual, data)
    return FieldCheck(field, expected, actual, passed, reason)


def check_requires(
    requires: Mapping[str, Any] | None,
    data: Mapping[str, Any] | None,
    *,
    skip: tuple[str, ...] = STRUCTURAL_KEYS,
) -> RequirementResult:
    """Evaluate a ``requires`` mapping against *data*.

    Keys listed in *skip* (``previousStatus`` by default) are handled by the
    chain builder and ignored here.  An empty mapping always passes.
    """
    if not requires:
        return RequirementResult(passed=True)
    data = data or {}
    checks = tuple(
        check_field(name, expected, data)
        for name, expected in requires.items()
        if name not in skip
    )
    return RequirementResult(passed=all(c.passed for c in checks), checks=checks)


# ---------------------------------------------------------------------------
# Condition blocks
# ---------------------------------------------------------------------------


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, expected: Any, op: str) -> bool:
    a, b = _as_float(actual), _as_float(expected)
    if a is None or b is None:
        return False
    if op == ">":
        return a > b
    elif op == ">=":
        return a >= b
    elif op == "<":
        return a < b
    elif op == "<=":
        return a <= b
    return False


def evaluate_operator(actual: Any, operator: str, expected: Any) -> bool:
    """Evaluate a named condition operator."""
    text = "" if actual is None else str(actual)
    needle = "" if expected is None else str(expected)
    if operator == "equals":
        return strict_equal(expected, actual)
    elif operator == "notEquals":
        return not strict_equal(expected, actual)
    elif operator == "greaterThan":
        return _compare(actual, expected, ">")
    elif operator == "greaterThanOrEqual":
        return _compare(actual, expected, ">=")
    elif operator == "lessThan":
        return _compare(actual, expected, "<")
    elif operator == "lessThanOrEqual":
        return _compare(actual, expected, "<=")
    elif operator == "contains":
        return needle in text
    elif operator == "notContains":
        return needle not in text
    elif operator == "startsWith":
        return text.startswith(needle)
    elif operator == "endsWith":
        return text.endswith(needle)
    elif operator == "matches":
        try:
            return re.search(needle, text) is not None
        except re.error:
            return False
    elif operator == "in":
        return isinstance(expected, list) and actual in expected
    elif operator == "notIn":
        return not isinstance(expected, list) or actual not in expected
    elif operator == "exists":
        return actual is not None
    elif operator == "notExists":
        return actual is None
    elif operator == "truthy":
        return bool(actual)
    elif operator == "falsy":
        return not actual
    return False


def _combine(results: list[bool], mode: str) -> bool:
    return any(results) if mode == "any" else all(results)


def evaluate_conditions(
    conditions: Mapping[str, Any] | None, data: Mapping[str, Any] | None
) -> RequirementResult:
    """Evaluate a condition-block structure against *data*.

    Disabled blocks are ignored; no enabled blocks means the conditions pass.
    """
    blocks = [b for b in (conditions or {}).get("blocks", []) if b.get("enabled", True)]
    if not blocks:
        return RequirementResult(passed=True)
    data = data or {}

    all_checks: list[FieldCheck] = []
    block_results: list[bool] = []
    for block in blocks:
        checks: list[FieldCheck] = []
        for check in block.get("checks", []):
            name = check["field"]
            operator = check["operator"]
            expected = _resolve_reference(check.get("value"), data)
            actual = get_nested(data, name)
            passed = evaluate_operator(actual, operator, expected)
            reason = f"{actual!r} {operator} {expected!r}"
            checks.append(FieldCheck(name, expected, actual, passed, reason))
        all_checks.extend(checks)
        block_results.append(_combine([c.passed for c in checks], block.get("mode", "all")))

    passed = _combine(block_results, conditions.get("mode", "all"))
    return RequirementResult(passed=passed, checks=tuple(all_checks))


def requirements_met(
    requires: Mapping[str, Any] | None,
    conditions: Mapping[str, Any] | None,
    data: Mapping[str, Any] | None,
) -> RequirementResult:
    """Evaluate a transition's requirements.

    Condition blocks take precedence over the legacy ``requires`` mapping.
    """
    if conditions and conditions.get("blocks"):
        return evaluate_conditions(conditions, data)
    return check_requires(requires, data)

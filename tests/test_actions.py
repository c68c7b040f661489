"""Tests for tplan.engine.actions — action loading and result normalisation."""

from __future__ import annotations

import asyncio
import textwrap
from types import SimpleNamespace

import pytest

from tplan.engine.actions import (
    ActionOutcome,
    MappingActionLoader,
    ModuleActionLoader,
    action_name_variants,
    normalize_result,
    normalize_result_async,
)
from tplan.engine.errors import ConfigurationError


class TestNormalizeResult:
    def test_none(self):
        outcome = normalize_result(None)
        assert outcome == ActionOutcome()
        assert not outcome.persists

    def test_mapping_with_data(self):
        outcome = normalize_result({"data": {"status": "accepted"}})
        assert outcome.data == {"status": "accepted"}
        assert outcome.save is None
        assert outcome.persists

    def test_object_with_save(self):
        saved = []
        outcome = normalize_result(SimpleNamespace(save=saved.append))
        outcome.save("x-current.json")
        assert saved == ["x-current.json"]

    def test_non_callable_save_ignored(self):
        assert normalize_result({"save": "nope"}).save is None

    def test_awaitable(self):
        async def action():
            return {"data": {"F": 5}}

        assert normalize_result(action()).data == {"F": 5}

    def test_awaitable_inside_running_loop(self):
        started = []

        async def action():
            started.append(True)
            return {"data": {"F": 5}}

        async def main():
            return normalize_result(action())

        with pytest.raises(ConfigurationError, match="resolve_async"):
            asyncio.run(main())
        assert started == []

    def test_async_variant(self):
        async def action():
            await asyncio.sleep(0)
            return {"data": {"F": 5}}

        assert asyncio.run(normalize_result_async(action())).data == {"F": 5}
        assert asyncio.run(normalize_result_async({"data": {"G": 1}})).data == {"G": 1}


class TestActionNameVariants:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("accept_booking", ["accept_booking", "acceptBooking"]),
            ("acceptBooking", ["acceptBooking", "accept_booking"]),
            ("accept", ["accept"]),
        ],
    )
    def test_variants(self, name, expected):
        assert action_name_variants(name) == expected


class TestModuleActionLoader:
    def test_load_relative_to_base_dir(self, tmp_path):
        (tmp_path / "tests").mkdir()
        (tmp_path / "tests" / "Accepted-ACCEPT-Web-UNIT.spec.py").write_text(
            textwrap.dedent(
                """
                def accept_booking(data_path, **kwargs):
                    return {"data": {"status": "booking_accepted"}}
                """
            ),
            encoding="utf-8",
        )
        loader = ModuleActionLoader(tmp_path)
        action = loader.load("tests/Accepted-ACCEPT-Web-UNIT.spec.py", "accept_booking")
        assert action("d.json") == {"data": {"status": "booking_accepted"}}

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="Test file not found"):
            ModuleActionLoader(tmp_path).load("nope.py", "x")

    def test_other_spelling(self, tmp_path):
        (tmp_path / "t.py").write_text(
            textwrap.dedent(
                """
                def accept_booking(data_path, **kwargs):
                    return "snake"

                def rejectBooking(data_path, **kwargs):
                    return "camel"
                """
            ),
            encoding="utf-8",
        )
        loader = ModuleActionLoader(tmp_path)
        assert loader.load("t.py", "acceptBooking")("d.json") == "snake"
        assert loader.load("t.py", "reject_booking")("d.json") == "camel"

    def test_missing_action(self, tmp_path):
        (tmp_path / "t.py").write_text("VALUE = 1\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Action 'accept' not found"):
            ModuleActionLoader(tmp_path).load("t.py", "accept")

    def test_import_failure(self, tmp_path):
        (tmp_path / "t.py").write_text("import not_a_real_module_xyz\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Failed to import test module"):
            ModuleActionLoader(tmp_path).load("t.py", "accept")


class TestMappingActionLoader:
    def test_lookup(self):
        def accept(*args, **kwargs):
            return None

        assert MappingActionLoader({"accept": accept}).load("any.py", "accept") is accept

    def test_other_spelling(self):
        def accept(*args, **kwargs):
            return None

        loader = MappingActionLoader({"accept_booking": accept})
        assert loader.load("any.py", "acceptBooking") is accept

    def test_unknown_lists_known(self):
        loader = MappingActionLoader({"accept": lambda *a, **k: None})
        with pytest.raises(ConfigurationError, match="Known actions: accept"):
            loader.load("any.py", "reject")

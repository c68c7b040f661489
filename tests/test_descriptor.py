"""Unit tests for tplan.engine.descriptor — descriptor loader, repository, registry.

Covers: YAML / JSON / Python loading, schema violations, transition parsing,
repository lookup and reload, state registry loading.
"""

from __future__ import annotations

import json
import textwrap
from pathlib import Path

import pytest
import yaml

from tplan.engine.descriptor import (
    Descriptor,
    DescriptorRepository,
    DescriptorValidationError,
    SetupEntry,
    StateRegistry,
    TransitionSpec,
    load_descriptor,
    parse_descriptor,
)
from tplan.engine.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _minimal_descriptor() -> dict:
    return {
        "status": "booking_accepted",
        "platform": "web",
        "requires": {"previousStatus": "booking_pending"},
        "setup": [
            {
                "testFile": "tests/BookingAccepted-ACCEPT-Web-UNIT.spec.py",
                "actionName": "accept_booking",
            }
        ],
        "on": {
            "CANCEL": "booking_cancelled",
            "REJECT": [
                {"target": "booking_rejected", "requires": {"reason": {"exists": True}}},
                {"target": "booking_rejected", "isDefault": True, "platforms": ["web"]},
            ],
        },
    }


def _write_yaml(path: Path, data: dict) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


class TestLoadDescriptor:
    def test_yaml(self, tmp_path):
        path = _write_yaml(tmp_path / "BookingAccepted.yaml", _minimal_descriptor())
        d = load_descriptor(path)
        assert isinstance(d, Descriptor)
        assert d.name == "BookingAccepted"
        assert d.status == "booking_accepted"
        assert d.platform == "web"
        assert d.previous_status == "booking_pending"
        assert d.source_path == str(path)

    def test_json(self, tmp_path):
        path = tmp_path / "BookingAccepted.json"
        path.write_text(json.dumps(_minimal_descriptor()), encoding="utf-8")
        d = load_descriptor(path)
        assert d.status == "booking_accepted"

    def test_setup_entries(self, tmp_path):
        d = load_descriptor(_write_yaml(tmp_path / "B.yaml", _minimal_descriptor()))
        assert d.setup == (
            SetupEntry(
                test_file="tests/BookingAccepted-ACCEPT-Web-UNIT.spec.py",
                action_name="accept_booking",
            ),
        )
        assert d.setup[0].mode == "induce"
        assert not d.setup[0].is_observer

    def test_transitions_flattened(self, tmp_path):
        d = load_descriptor(_write_yaml(tmp_path / "B.yaml", _minimal_descriptor()))
        assert [t.event for t in d.transitions] == ["CANCEL", "REJECT", "REJECT"]
        assert d.transitions[0] == TransitionSpec(event="CANCEL", target="booking_cancelled")
        assert d.transitions[1].has_requirements
        assert d.transitions[2].is_default
        assert d.transitions[2].platforms == ("web",)
        assert len(d.transitions_to("booking_rejected")) == 2

    def test_python_module_class_attribute(self, tmp_path):
        path = tmp_path / "BookingAccepted.py"
        path.write_text(
            textwrap.dedent(
                """
                class BookingAccepted:
                    descriptor = {
                        "status": "booking_accepted",
                        "platform": "web",
                        "setup": [{"testFile": "t.py", "actionName": "accept"}],
                    }
                """
            ),
            encoding="utf-8",
        )
        d = load_descriptor(path)
        assert d.status == "booking_accepted"
        assert d.setup[0].action_name == "accept"

    def test_python_module_descriptor_constant(self, tmp_path):
        path = tmp_path / "Pending.py"
        path.write_text('DESCRIPTOR = {"status": "booking_pending"}\n', encoding="utf-8")
        assert load_descriptor(path).status == "booking_pending"

    def test_python_module_without_descriptor(self, tmp_path):
        path = tmp_path / "Empty.py"
        path.write_text("VALUE = 1\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="neither 'Empty' nor DESCRIPTOR"):
            load_descriptor(path)

    def test_python_module_import_error(self, tmp_path):
        path = tmp_path / "Broken.py"
        path.write_text("raise RuntimeError('boom')\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="boom"):
            load_descriptor(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_descriptor(tmp_path / "nope.yaml")

    def test_unsupported_format(self, tmp_path):
        path = tmp_path / "B.txt"
        path.write_text("status: x", encoding="utf-8")
        with pytest.raises(ValueError, match="Unsupported descriptor format"):
            load_descriptor(path)


class TestSchemaValidation:
    def test_missing_status(self, tmp_path):
        data = _minimal_descriptor()
        del data["status"]
        with pytest.raises(DescriptorValidationError) as exc_info:
            load_descriptor(_write_yaml(tmp_path / "B.yaml", data))
        assert any("'status' is a required property" in e for e in exc_info.value.errors)

    def test_setup_entry_requires_action_name(self, tmp_path):
        data = _minimal_descriptor()
        data["setup"] = [{"testFile": "t.py"}]
        with pytest.raises(DescriptorValidationError, match="actionName"):
            load_descriptor(_write_yaml(tmp_path / "B.yaml", data))

    def test_invalid_mode(self, tmp_path):
        data = _minimal_descriptor()
        data["setup"][0]["mode"] = "destroy"
        with pytest.raises(DescriptorValidationError):
            load_descriptor(_write_yaml(tmp_path / "B.yaml", data))

    def test_errors_are_listed(self, tmp_path):
        data = {"platform": 3}
        with pytest.raises(DescriptorValidationError) as exc_info:
            load_descriptor(_write_yaml(tmp_path / "B.yaml", data))
        message = str(exc_info.value)
        assert "Descriptor validation failed" in message
        assert len(exc_info.value.errors) >= 2

    def test_validation_error_is_configuration_error(self):
        assert issubclass(DescriptorValidationError, ConfigurationError)


class TestParseDescriptor:
    def test_defaults(self):
        d = parse_descriptor({"status": "initial"}, name="Initial")
        assert d.platform == "unknown"
        assert d.entity is None
        assert d.setup == ()
        assert d.transitions == ()
        assert d.previous_status is None

    def test_name_from_document(self):
        d = parse_descriptor({"status": "x", "name": "Custom"}, name="File")
        assert d.name == "Custom"

    def test_leads_to_suffix(self):
        t = TransitionSpec(event="CONFIRM", target="booking_confirmed")
        assert t.leads_to("booking_confirmed")
        assert t.leads_to("confirmed")
        assert not t.leads_to("booking")

    def test_conditions_count_as_requirements(self):
        t = TransitionSpec(
            event="E",
            target="x",
            conditions={"blocks": [{"checks": [{"field": "F", "operator": "equals", "value": 5}]}]},
        )
        assert t.has_requirements

    def test_observer_modes(self):
        assert SetupEntry("t.py", "a", mode="verify").is_observer
        assert SetupEntry("t.py", "a", mode="observer").is_observer


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class TestDescriptorRepository:
    def test_indexes_by_stem(self, tmp_path):
        _write_yaml(tmp_path / "BookingAccepted.yaml", _minimal_descriptor())
        _write_yaml(tmp_path / "nested" / "BookingPending.yaml", {"status": "booking_pending"})
        (tmp_path / ".hidden.yaml").write_text("status: x", encoding="utf-8")
        (tmp_path / "__init__.py").write_text("", encoding="utf-8")
        repo = DescriptorRepository(tmp_path)
        assert repo.names() == ["BookingAccepted", "BookingPending"]
        assert repo.resolve("BookingPending").status == "booking_pending"

    def test_unknown_name_lists_known(self, tmp_path):
        _write_yaml(tmp_path / "BookingAccepted.yaml", _minimal_descriptor())
        repo = DescriptorRepository(tmp_path)
        with pytest.raises(ConfigurationError, match="Known descriptors: BookingAccepted") as exc_info:
            repo.resolve("Missing")
        assert exc_info.value.status == "Missing"

    def test_resolve_caches(self, tmp_path):
        _write_yaml(tmp_path / "BookingAccepted.yaml", _minimal_descriptor())
        repo = DescriptorRepository(tmp_path)
        assert repo.resolve("BookingAccepted") is repo.resolve("BookingAccepted")

    def test_reload_picks_up_changes(self, tmp_path):
        path = _write_yaml(tmp_path / "BookingAccepted.yaml", _minimal_descriptor())
        repo = DescriptorRepository(tmp_path)
        assert repo.resolve("BookingAccepted").platform == "web"

        data = _minimal_descriptor()
        data["platform"] = "club"
        _write_yaml(path, data)
        _write_yaml(tmp_path / "New.yaml", {"status": "new"})
        assert repo.resolve("BookingAccepted").platform == "web"

        repo.reload()
        assert repo.resolve("BookingAccepted").platform == "club"
        assert "New" in repo.names()

    def test_invalid_yaml_becomes_configuration_error(self, tmp_path):
        (tmp_path / "Broken.yaml").write_text("status: [unclosed", encoding="utf-8")
        repo = DescriptorRepository(tmp_path)
        with pytest.raises(ConfigurationError, match="Failed to load descriptor 'Broken'"):
            repo.resolve("Broken")

    def test_missing_root(self, tmp_path):
        repo = DescriptorRepository(tmp_path / "missing")
        assert repo.names() == []
        assert repo.path_for("X") is None


# ---------------------------------------------------------------------------
# State registry
# ---------------------------------------------------------------------------


class TestStateRegistry:
    def test_load(self, tmp_path):
        path = tmp_path / ".state-registry.json"
        path.write_text(json.dumps({"booking_accepted": "BookingAccepted"}), encoding="utf-8")
        registry = StateRegistry.load(path)
        assert registry.class_for("booking_accepted") == "BookingAccepted"
        assert registry.class_for("unknown") is None
        assert "booking_accepted" in registry
        assert len(registry) == 1
        assert registry.statuses() == ["booking_accepted"]

    def test_missing_file_is_empty(self, tmp_path):
        registry = StateRegistry.load(tmp_path / "none.json")
        assert len(registry) == 0

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="Failed to read state registry"):
            StateRegistry.load(path)

    def test_non_object(self, tmp_path):
        path = tmp_path / "r.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="must be a JSON object"):
            StateRegistry.load(path)

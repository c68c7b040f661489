"""Tests for tplan.cli — argument parsing, handlers and exit codes."""

from __future__ import annotations

import json
import textwrap

import pytest
import yaml

from tplan.cli import main

# ---------------------------------------------------------------------------
# Project fixture
# ---------------------------------------------------------------------------

DESCRIPTORS = {
    "Pending": {
        "status": "booking_pending",
        "platform": "web",
        "setup": [{"testFile": "tests/Pending-CREATE-Web-UNIT.spec.py", "actionName": "create_booking"}],
    },
    "Accepted": {
        "status": "booking_accepted",
        "platform": "web",
        "requires": {"previousStatus": "booking_pending"},
        "setup": [{"testFile": "tests/Accepted-ACCEPT-Web-UNIT.spec.py", "actionName": "accept_booking"}],
    },
}

ACTIONS = textwrap.dedent(
    """
    def create_booking(data_path, **kwargs):
        return {"data": {"status": "booking_pending"}}
    """
)


@pytest.fixture
def project(tmp_path, monkeypatch):
    """A minimal project tree with the default layout, used as the cwd."""
    implications = tmp_path / "tests" / "implications"
    implications.mkdir(parents=True)
    for name, doc in DESCRIPTORS.items():
        (implications / f"{name}.yaml").write_text(yaml.safe_dump(doc), encoding="utf-8")
    (implications / ".state-registry.json").write_text(
        json.dumps({"booking_pending": "Pending", "booking_accepted": "Accepted"}),
        encoding="utf-8",
    )
    (tmp_path / "tests" / "Pending-CREATE-Web-UNIT.spec.py").write_text(ACTIONS, encoding="utf-8")
    data = tmp_path / "tests" / "data"
    data.mkdir()
    (data / "booking-master.json").write_text(json.dumps({"status": "initial"}), encoding="utf-8")

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TPLAN_LOAD_DOTENV", "0")
    for var in ("TPLAN_CONFIG", "TPLAN_PREREQUISITE_EXECUTION", "TPLAN_METRICS_FILE"):
        monkeypatch.delenv(var, raising=False)
    return tmp_path


DATA = "tests/data/booking-master.json"


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_text(self, project, capsys):
        main(["registry"])
        lines = capsys.readouterr().out.splitlines()
        assert lines == ["booking_accepted  Accepted", "booking_pending   Pending"]

    def test_json(self, project, capsys):
        main(["registry", "--json"])
        assert json.loads(capsys.readouterr().out) == {
            "booking_accepted": "Accepted",
            "booking_pending": "Pending",
        }

    def test_empty(self, project, capsys, monkeypatch):
        monkeypatch.setenv("TPLAN_REGISTRY_PATH", "missing.json")
        main(["registry"])
        assert "No statuses registered in missing.json" in capsys.readouterr().out


class TestAnalyze:
    def test_json(self, project, capsys):
        main(["analyze", "booking_accepted", "--data", DATA, "--json"])
        payload = json.loads(capsys.readouterr().out)
        assert payload["ready"] is False
        assert payload["currentStatus"] == "initial"
        assert payload["stepsRemaining"] == 2
        assert [s["status"] for s in payload["chain"]] == ["booking_pending", "booking_accepted"]

    def test_text(self, project, capsys):
        main(["analyze", "booking_accepted", "--data", DATA])
        out = capsys.readouterr().out
        assert out.startswith("Full path to target: initial -> booking_accepted")
        assert "Next step: booking_pending" in out

    def test_does_not_execute(self, project):
        main(["analyze", "booking_accepted", "--data", DATA])
        assert not (project / "tests" / "data" / "booking-current.json").exists()


class TestResolve:
    def test_executes_prerequisites(self, project, capsys):
        main(["resolve", "booking_accepted", "--data", DATA, "--json"])
        payload = json.loads(capsys.readouterr().out)
        assert payload["status"] == "ready"
        assert [s["status"] for s in payload["executed"]] == ["booking_pending"]
        current = json.loads((project / "tests" / "data" / "booking-current.json").read_text())
        assert current["_changeLog"][0]["label"] == "create_booking"

    def test_text_output(self, project, capsys):
        main(["resolve", "booking_pending", "--data", DATA])
        out = capsys.readouterr().out
        assert "Resolution result: ready" in out

    def test_writes_metrics_file(self, project, monkeypatch):
        monkeypatch.setenv("TPLAN_METRICS_FILE", "metrics/tplan.prom")
        main(["resolve", "booking_accepted", "--data", DATA])
        assert "tplan_resolutions_total" in (project / "metrics" / "tplan.prom").read_text()


# ---------------------------------------------------------------------------
# Errors and exit codes
# ---------------------------------------------------------------------------


class TestErrors:
    def test_no_command(self, project):
        with pytest.raises(SystemExit) as exc_info:
            main([])
        assert exc_info.value.code == 2

    def test_unknown_target(self, project, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["resolve", "nope", "--data", DATA])
        assert exc_info.value.code == 3
        err = capsys.readouterr().err
        assert "=== tplan Error Report ===" in err
        assert "--- traceback ---" not in err

    def test_json_error_report(self, project, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["resolve", "nope", "--data", DATA, "--json"])
        assert exc_info.value.code == 3
        err = capsys.readouterr().err
        payload = json.loads(err[err.index("{"):])
        assert payload["command"] == "resolve"
        assert payload["error_type"] == "ConfigurationError"

    def test_stuck_chain(self, project, capsys):
        (project / "tests" / "Pending-CREATE-Web-UNIT.spec.py").write_text(
            "def create_booking(data_path, **kwargs):\n    return None\n", encoding="utf-8"
        )
        with pytest.raises(SystemExit) as exc_info:
            main(["resolve", "booking_accepted", "--data", DATA])
        assert exc_info.value.code == 6
        assert "Full path to target" in capsys.readouterr().err

    def test_missing_config_file(self, project):
        with pytest.raises(SystemExit) as exc_info:
            main(["--config", "absent.yaml", "registry"])
        assert exc_info.value.code == 3

"""
Tests for the phasegate command line
"""

import json
import logging

import pytest
import yaml
from unittest.mock import patch

from phasegate.cli import EXIT_ERROR, EXIT_IN_PROGRESS, EXIT_OK, main
from phasegate.error_handling import GateInProgressError


@pytest.fixture(autouse=True)
def restore_logging():
    """The CLI installs handlers on the package logger; put it back afterwards"""
    logger = logging.getLogger("phasegate")
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
    for handler in handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def run(tmp_path, monkeypatch, registry_file):
    """Run the CLI against a throwaway database with a static assessor unless told otherwise"""
    monkeypatch.chdir(tmp_path)
    config_path = tmp_path / "phasegate.yaml"

    def write_config(score=80, provider="static"):
        config_path.write_text(yaml.dump({
            "assessor": {"provider": provider, "static_score": score},
            "logging": {"console": False},
        }))

    write_config()

    def _run(*argv, score=None, provider=None):
        if score is not None or provider is not None:
            write_config(80 if score is None else score, provider or "static")
        base = ["--config", str(config_path), "--db", str(tmp_path / "cli.db"),
                "--registry", str(registry_file)]
        return main(base + list(argv))

    return _run


def _create(run, capsys):
    assert run("create", "alice", "--payload", '{"title": "Solar kiosk"}', "--json") == EXIT_OK
    return json.loads(capsys.readouterr().out)["work_item_id"]


class TestStandaloneCommands:

    def test_registries(self, capsys):
        assert main(["registries"]) == EXIT_OK
        out = capsys.readouterr().out
        assert "innovation_flywheel" in out
        assert "project_genesis" in out

    def test_validate_file(self, registry_file, capsys):
        assert main(["validate", str(registry_file)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "test_registry" in out
        assert "1. Screen: 2 criteria" in out

    def test_validate_invalid(self, tmp_path, capsys):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.dump({"registry": {"name": "bad", "phases": []}}))

        assert main(["validate", str(bad)]) == EXIT_ERROR
        assert "Error:" in capsys.readouterr().err

    def test_no_command(self, capsys):
        assert main([]) == EXIT_ERROR


class TestWorkItemCommands:

    def test_create_advance_status(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("advance", work_item_id) == EXIT_OK
        assert "PASS score=80.0" in capsys.readouterr().out

        assert run("status", work_item_id, "--json") == EXIT_OK
        status = json.loads(capsys.readouterr().out)
        assert status["phase"] == 2
        assert status["phase_name"] == "Assess"
        assert status["last_gate_result"]["decision"] == "pass"

    def test_state_survives_between_invocations(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("list", "--json") == EXIT_OK
        items = json.loads(capsys.readouterr().out)
        assert [i["id"] for i in items] == [work_item_id]

    def test_escalate_then_override(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("advance", work_item_id, score=50) == EXIT_OK
        assert "ESCALATE" in capsys.readouterr().out

        assert run("advance", work_item_id) == EXIT_ERROR
        assert "awaits an override" in capsys.readouterr().err

        assert run("override", work_item_id, "pass", "--actor", "bob", "--reason", "pilot signed",
                   "--json") == EXIT_OK
        result = json.loads(capsys.readouterr().out)
        assert result["phase"] == 2
        assert result["audit_entries"][0]["event_type"] == "override_applied"

    def test_override_when_not_pending(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("override", work_item_id, "pass", "--actor", "bob") == EXIT_ERROR
        assert "not awaiting an override" in capsys.readouterr().err

    def test_unknown_work_item(self, run, capsys):
        assert run("status", "wi_missing") == EXIT_ERROR
        assert "wi_missing" in capsys.readouterr().err

    def test_gate_in_progress_exit_code(self, run, capsys):
        work_item_id = _create(run, capsys)

        with patch("phasegate.controller.TransitionController.advance",
                   side_effect=GateInProgressError(work_item_id)):
            assert run("advance", work_item_id) == EXIT_IN_PROGRESS
        assert "In progress" in capsys.readouterr().err

    def test_history(self, run, capsys):
        work_item_id = _create(run, capsys)
        run("advance", work_item_id)
        capsys.readouterr()

        assert run("history", work_item_id, "--json") == EXIT_OK
        events = [e["event_type"] for e in json.loads(capsys.readouterr().out)]
        assert events[0] == "phase_entered"
        assert "gate_evaluated" in events
        assert "phase_advanced" in events

    def test_reject(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("reject", work_item_id, "--actor", "bob", "--reason", "duplicate") == EXIT_OK
        assert "rejected" in capsys.readouterr().out

        assert run("list", "--status", "rejected", "--json") == EXIT_OK
        assert len(json.loads(capsys.readouterr().out)) == 1

    def test_stall_and_resume(self, run, capsys):
        work_item_id = _create(run, capsys)
        for _ in range(3):
            assert run("advance", work_item_id, score=10) == EXIT_OK
        capsys.readouterr()

        assert run("list", "--status", "stalled", "--json") == EXIT_OK
        assert len(json.loads(capsys.readouterr().out)) == 1

        assert run("resume", work_item_id, "--actor", "bob") == EXIT_OK
        assert "resumed in phase 1" in capsys.readouterr().out

    def test_summary(self, run, capsys):
        work_item_id = _create(run, capsys)
        run("advance", work_item_id)
        capsys.readouterr()

        assert run("summary", work_item_id, "--json") == EXIT_OK
        summary = json.loads(capsys.readouterr().out)
        assert summary[0]["last_decision"] == "pass"
        assert summary[1]["attempts"] == 0

    def test_invalid_payload(self, run, capsys):
        assert run("create", "alice", "--payload", "{not json") == EXIT_ERROR
        assert "--payload" in capsys.readouterr().err

    def test_reviewer_scores_drive_human_gate(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("score", work_item_id, "c1", "90", "--reviewer", "bob",
                   "--rationale", "clear buyer") == EXIT_OK
        assert "c1 scored 90" in capsys.readouterr().out
        assert run("score", work_item_id, "c2", "70", "-a", "carol") == EXIT_OK

        assert run("advance", work_item_id, provider="human") == EXIT_OK
        assert "PASS score=80.0" in capsys.readouterr().out

        assert run("history", work_item_id, "--json") == EXIT_OK
        events = json.loads(capsys.readouterr().out)
        reviews = [e for e in events if e["event_type"] == "review_recorded"]
        assert [(e["actor"], e["payload"]["criterion_id"]) for e in reviews] == [
            ("bob", "c1"), ("carol", "c2"),
        ]

    def test_score_out_of_range(self, run, capsys):
        work_item_id = _create(run, capsys)

        assert run("score", work_item_id, "c1", "120", "--reviewer", "bob") == EXIT_ERROR
        assert "0 to 100" in capsys.readouterr().err

    def test_score_requires_reviewer(self, run, capsys):
        work_item_id = _create(run, capsys)

        with pytest.raises(SystemExit):
            run("score", work_item_id, "c1", "80")

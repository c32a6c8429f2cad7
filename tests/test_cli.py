"""Tests for the command-line driver."""

import json
import sys

import pytest

from thematic_system import main as cli


@pytest.fixture
def task_file(tmp_path):
    path = tmp_path / "tasks.json"
    path.write_text(json.dumps({"tasks": [
        {"task_id": "q1", "context_text": "VPN survey",
         "items": [{"source_id": "r1", "raw_text": "prompt: Why? answer: Cheap plans."}]},
        {"task_id": "q2", "items": []},
    ]}))
    return path


@pytest.fixture
def quiet_cli(monkeypatch):
    monkeypatch.delenv("LLM_PROVIDER", raising=False)
    monkeypatch.setattr(cli, "_init_logging", lambda settings, verbose=False: None)


def test_disabled_provider_reports_failures(task_file, tmp_path, monkeypatch, quiet_cli):
    """Test a run without a provider writes a report and exits non-zero."""
    output = tmp_path / "out" / "report.json"
    monkeypatch.setattr(sys, "argv", ["thematic-system", "--input", str(task_file), "--output", str(output)])

    assert cli.main() == 2

    report = json.loads(output.read_text())
    statuses = {r["task_id"]: r["status"] for r in report["results"]}
    assert statuses == {"q1": "failure", "q2": "skipped"}
    assert report["recommendations"][0]["task_ids"] == ["q1"]


def test_missing_input_argument_exits(tmp_path, monkeypatch, quiet_cli):
    """Test a missing --input argument is an argparse error."""
    monkeypatch.setattr(sys, "argv", ["thematic-system"])
    with pytest.raises(SystemExit):
        cli.main()

"""End-to-end tests for the command line interface."""

import json

import pytest
from click.testing import CliRunner

from conftest import CONTACT, FakeCrm, make_collaborators
from contactqueue.cli import cli


def fake_collaborators():
    return make_collaborators(crm=FakeCrm({"101": dict(CONTACT)}))


@pytest.fixture
def runner(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("QUEUE_DATA_DIR", str(tmp_path / "queue"))
    monkeypatch.setenv("QUEUE_LOG_LEVEL", "ERROR")
    monkeypatch.setenv("QUEUE_COLLABORATORS", "test_cli:fake_collaborators")
    return CliRunner()


def enqueue(runner, event_id="evt1", subject_id="101"):
    event = {"event_id": event_id, "subject_id": subject_id, "client_id": "0001", "flags": {"email": True}}
    return runner.invoke(cli, ["enqueue", json.dumps(event)])


def test_enqueue_and_status(runner):
    result = enqueue(runner)
    assert result.exit_code == 0
    assert "enqueued as" in result.output

    result = enqueue(runner)
    assert result.exit_code == 0
    assert "already queued" in result.output

    result = runner.invoke(cli, ["status"])
    assert result.exit_code == 0
    assert "Total Items:    1" in result.output
    assert "Pending:      1" in result.output


def test_enqueue_rejects_bad_json(runner):
    result = runner.invoke(cli, ["enqueue", "{nope"])
    assert result.exit_code == 1


def test_enqueue_rejects_missing_fields(runner):
    result = runner.invoke(cli, ["enqueue", json.dumps({"event_id": "evt1"})])
    assert result.exit_code == 1


def test_process_completes_items(runner):
    enqueue(runner, "evt1")
    enqueue(runner, "evt2")

    result = runner.invoke(cli, ["process", "--concurrency", "2"])

    assert result.exit_code == 0
    assert "Run status:  completed" in result.output
    assert "Processed: 2" in result.output

    result = runner.invoke(cli, ["list", "--state", "completed"])
    assert "evt1" in result.output
    assert "evt2" in result.output


def test_process_without_collaborators_fails(runner, monkeypatch):
    monkeypatch.delenv("QUEUE_COLLABORATORS")
    enqueue(runner)

    result = runner.invoke(cli, ["process"])

    assert result.exit_code == 1


def test_failed_list_and_retry(runner):
    enqueue(runner, "evt1", subject_id="404")
    runner.invoke(cli, ["process"])

    result = runner.invoke(cli, ["failed", "list"])
    assert result.exit_code == 0
    assert "1 failed" in result.output
    assert "not found in CRM" in result.output

    result = runner.invoke(cli, ["list", "--state", "failed"])
    item_id = next(line.split()[0] for line in result.output.splitlines() if "evt1" in line)

    result = runner.invoke(cli, ["failed", "retry", item_id])
    assert result.exit_code == 0
    assert "moved back to queue" in result.output

    result = runner.invoke(cli, ["failed", "retry", "missing"])
    assert result.exit_code == 1


def test_run_maintenance_operations(runner):
    enqueue(runner)

    result = runner.invoke(cli, ["run", "--ops", "monitor,reset-stalled,cleanup"])

    assert result.exit_code == 0
    results = json.loads(result.output)
    assert results["monitor"]["pending"] == 1
    assert results["reset-stalled"] == {"reset_count": 0, "found": 0}
    assert results["cleanup"] == {"deleted_count": 0, "found": 0}


def test_run_rejects_unknown_operation(runner):
    result = runner.invoke(cli, ["run", "--ops", "process,explode"])
    assert result.exit_code == 1


def test_config_show(runner):
    result = runner.invoke(cli, ["config", "show"])

    assert result.exit_code == 0
    assert "batch-size: 25" in result.output

import asyncio

import jwt
import pytest
from typer.testing import CliRunner

import mediflow.persistence as persistence
from mediflow.cli import app
from mediflow.models import BatchStatus, WorkflowStatus
from mediflow.persistence import InMemoryRepository

SECRET = "cli-test-secret-that-is-long-enough"

CONFIG = f"""
identity:
  secret: {SECRET}
  agents: [agent-1, agent-2]
  customers:
    cust-1:
      agent_id: agent-1
      first_name: Jane
      last_name: Doe
"""


def _token(agent_id):
    return jwt.encode({"sub": agent_id}, SECRET, algorithm="HS256")


@pytest.fixture
def repo(tmp_path, monkeypatch):
    config_path = tmp_path / "mediflow.yaml"
    config_path.write_text(CONFIG)
    monkeypatch.setenv("MEDIFLOW_CONFIG", str(config_path))
    for name in ("MEDIFLOW_DATABASE_URL", "DATABASE_URL", "MEDIFLOW_JWT_SECRET", "MEDIFLOW_TOKEN"):
        monkeypatch.delenv(name, raising=False)
    repo = InMemoryRepository()
    monkeypatch.setattr(persistence, "_repository_instance", repo)
    return repo


def _create_workflow(runner):
    return runner.invoke(
        app,
        [
            "workflow",
            "create",
            "--type",
            "refund_request",
            "--request-id",
            "apt-42",
            "--step",
            "Manager review:agent-2",
            "--title",
            "Refund apt-42",
            "--token",
            _token("agent-1"),
        ],
    )


def test_workflow_create_list_and_decide(repo):
    runner = CliRunner()
    result = _create_workflow(runner)
    assert result.exit_code == 0, result.stdout
    assert "PENDING" in result.stdout
    assert "Manager review" in result.stdout

    workflows, _ = asyncio.run(repo.list_workflows())
    wf = workflows[0]

    result = runner.invoke(app, ["workflow", "list", "--token", _token("agent-1")])
    assert result.exit_code == 0
    assert wf.id in result.stdout

    result = runner.invoke(app, ["workflow", "pending"], env={"MEDIFLOW_TOKEN": _token("agent-2")})
    assert result.exit_code == 0
    assert wf.steps[0].id in result.stdout

    result = runner.invoke(
        app,
        ["workflow", "decide", wf.id, wf.steps[0].id, "approved", "--token", _token("agent-2")],
    )
    assert result.exit_code == 0, result.stdout
    assert asyncio.run(repo.get_workflow(wf.id)).status == WorkflowStatus.APPROVED


def test_workflow_errors_map_to_exit_codes(repo):
    runner = CliRunner()
    _create_workflow(runner)
    workflows, _ = asyncio.run(repo.list_workflows())
    wf = workflows[0]

    result = runner.invoke(app, ["workflow", "show", "missing-id", "--token", _token("agent-1")])
    assert result.exit_code == 1
    assert "not found" in result.stdout

    result = runner.invoke(
        app,
        ["workflow", "decide", wf.id, wf.steps[0].id, "APPROVED", "--token", _token("agent-1")],
    )
    assert result.exit_code == 2
    assert "UnauthorizedError" in result.stdout

    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 2
    assert "Missing bearer token" in result.stdout


def test_batch_submit_and_show(repo, tmp_path):
    path = tmp_path / "appointments.csv"
    path.write_text(
        "doctorId,hospitalId,appointmentDate,appointmentTime,consultationFee\n"
        "doc-1,hosp-1,2026-11-02,09:30,150\n"
        "doc-1,hosp-1,2026-11-02,09:30,150\n"
        "doc-2,hosp-1,2026-11-02,10:00,200\n"
    )
    runner = CliRunner()
    token = _token("agent-1")

    result = runner.invoke(
        app,
        ["batch", "submit", str(path), "--customer", "cust-1", "--name", "Checkups", "--token", token],
    )
    assert result.exit_code == 0, result.stdout
    assert "PARTIALLY_COMPLETED" in result.stdout
    assert "2 succeeded, 1 failed" in result.stdout

    batches, _ = asyncio.run(repo.list_batches())
    batch = batches[0]
    assert batch.status == BatchStatus.PARTIALLY_COMPLETED
    assert all(i.patient_name == "Jane Doe" for i in batch.items)

    result = runner.invoke(app, ["batch", "show", batch.id, "--token", token])
    assert result.exit_code == 0
    assert batch.batch_number in result.stdout

    result = runner.invoke(app, ["batch", "cancel", batch.id, "--token", token])
    assert result.exit_code == 2
    assert "Cannot cancel completed" in result.stdout

    result = runner.invoke(app, ["batch", "stats", "--token", token])
    assert result.exit_code == 0
    assert "PARTIALLY_COMPLETED" in result.stdout


def test_batch_submit_rejects_bad_input(repo, tmp_path):
    runner = CliRunner()
    token = _token("agent-1")

    result = runner.invoke(
        app,
        ["batch", "submit", str(tmp_path / "nope.csv"), "--customer", "cust-1", "--name", "x", "--token", token],
    )
    assert result.exit_code == 1
    assert "does not exist" in result.stdout

    empty = tmp_path / "empty.json"
    empty.write_text("[]")
    result = runner.invoke(
        app,
        ["batch", "submit", str(empty), "--customer", "cust-1", "--name", "x", "--token", token],
    )
    assert result.exit_code == 2
    assert "InvalidBatchRequest" in result.stdout
    assert asyncio.run(repo.list_batches()) == ([], 0)


def test_batch_submitted_without_processing_can_be_processed(repo, tmp_path):
    path = tmp_path / "appointments.json"
    path.write_text(
        '[{"doctorId": "doc-1", "hospitalId": "hosp-1", '
        '"appointmentDate": "2026-11-02", "appointmentTime": "09:30"}]'
    )
    runner = CliRunner()
    token = _token("agent-1")

    result = runner.invoke(
        app,
        ["batch", "submit", str(path), "--customer", "cust-1", "--name", "Later", "--no-process", "--token", token],
    )
    assert result.exit_code == 0, result.stdout
    batches, _ = asyncio.run(repo.list_batches())
    batch = batches[0]
    assert batch.status == BatchStatus.PROCESSING
    assert batch.items[0].status.value == "PENDING"

    result = runner.invoke(app, ["batch", "process", batch.id, "--token", _token("agent-2")])
    assert result.exit_code == 2
    assert "UnauthorizedError" in result.stdout

    result = runner.invoke(app, ["batch", "process", batch.id, "--token", token])
    assert result.exit_code == 0, result.stdout
    assert "COMPLETED" in result.stdout
    stored = asyncio.run(repo.get_batch(batch.id))
    assert stored.status == BatchStatus.COMPLETED
    assert stored.items[0].appointment_id is not None

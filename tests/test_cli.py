from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from runboard.main import runboard

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Session, Task and Lock Commands"),
]

PLAN = [
    {"task_id": "t2", "title": "Research APIs", "type": "research"},
    {"task_id": "t1", "title": "Implement", "type": "execute", "depends_on": ["t2"]},
]


@pytest.fixture()
def runner(monkeypatch) -> CliRunner:
    for name in ("RUNBOARD_OUTPUT_DIR", "RUNBOARD_AGENT_ID", "RUNBOARD_LEASE_DURATION_MS"):
        monkeypatch.delenv(name, raising=False)
    return CliRunner()


def _invoke(runner: CliRunner, output_dir: Path, *args: str):
    group, command, *rest = args
    return runner.invoke(runboard, [group, command, "--output-dir", str(output_dir), *rest])


def _create_planned_session(runner: CliRunner, output_dir: Path, tmp_path: Path) -> str:
    created = _invoke(runner, output_dir, "session", "create", "--goal", "Ship the feature")
    assert created.exit_code == 0, created.output
    match = re.search(r"run_id=(\d{8}_\d{6})", created.output)
    assert match is not None
    run_id = match.group(1)

    plan_file = tmp_path / "plan.json"
    plan_file.write_text(json.dumps(PLAN), "utf-8")
    planned = _invoke(
        runner,
        output_dir,
        "session",
        "plan",
        "--run-id",
        run_id,
        "--plan-file",
        str(plan_file),
    )
    assert planned.exit_code == 0, planned.output
    assert "tasks=2" in planned.output
    return run_id


def test_cli_session_and_task_flow(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    run_id = _create_planned_session(runner, output_dir, tmp_path)

    started = _invoke(runner, output_dir, "session", "start", "--run-id", run_id)
    assert started.exit_code == 0, started.output
    assert "status=running" in started.output

    claimed = _invoke(
        runner,
        output_dir,
        "task",
        "claim",
        "--run-id",
        run_id,
        "--task-id",
        "t2",
        "--agent-id",
        "worker-1",
    )
    assert claimed.exit_code == 0, claimed.output
    token_match = re.search(r"Lease token: (\S+)", claimed.output)
    assert token_match is not None
    token = token_match.group(1)

    task_args = ["--run-id", run_id, "--task-id", "t2", "--lease-token", token]
    assert _invoke(runner, output_dir, "task", "start", *task_args).exit_code == 0
    completed = _invoke(
        runner,
        output_dir,
        "task",
        "complete",
        *task_args,
        "--artifact-id",
        "research_notes",
    )
    assert completed.exit_code == 0, completed.output
    assert "artifacts=1" in completed.output

    listed = _invoke(runner, output_dir, "task", "list", "--run-id", run_id)
    assert listed.exit_code == 0, listed.output
    assert "Tasks: 2" in listed.output
    assert "t2 type=research status=completed" in listed.output

    shown = _invoke(runner, output_dir, "task", "show", "--run-id", run_id, "--task-id", "t2")
    assert "Lease owner: worker-1" in shown.output
    assert "artifact research_notes" in shown.output

    refreshed = _invoke(runner, output_dir, "session", "refresh", "--run-id", run_id)
    assert refreshed.exit_code == 0, refreshed.output
    assert "Tasks: total=2 pending=1" in refreshed.output
    assert "completed=1" in refreshed.output


def test_cli_blocked_claim_reports_error_code(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    run_id = _create_planned_session(runner, output_dir, tmp_path)

    result = _invoke(runner, output_dir, "task", "claim", "--run-id", run_id, "--task-id", "t1")

    assert result.exit_code == 1
    assert "ERR_TASK_DEPENDENCY_NOT_MET" in result.output


def test_cli_invalid_session_transition(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    run_id = _create_planned_session(runner, output_dir, tmp_path)

    result = _invoke(runner, output_dir, "session", "finalize", "--run-id", run_id)

    assert result.exit_code == 1
    assert "ERR_SESSION_INVALID_STATE" in result.output


def test_cli_session_abort_and_show(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    run_id = _create_planned_session(runner, output_dir, tmp_path)

    aborted = _invoke(runner, output_dir, "session", "abort", "--run-id", run_id)
    shown = _invoke(runner, output_dir, "session", "show", "--run-id", run_id)

    assert aborted.exit_code == 0, aborted.output
    assert "status=aborted" in aborted.output
    assert "Status: aborted" in shown.output
    assert "Goal: Ship the feature" in shown.output


def test_cli_lock_commands(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    run_id = "20260301_093000"
    token = "6f1c2a8e-4b7d-4c1e-9a2b-3d4e5f607182"

    acquired = _invoke(
        runner,
        output_dir,
        "lock",
        "acquire",
        "--run-id",
        run_id,
        "--path",
        "src/app.py",
        "--lease-token",
        token,
        "--agent-id",
        "worker-1",
    )
    assert acquired.exit_code == 0, acquired.output
    assert "mode=write" in acquired.output

    conflict = _invoke(
        runner,
        output_dir,
        "lock",
        "acquire",
        "--run-id",
        run_id,
        "--path",
        "src/app.py",
        "--mode",
        "read",
        "--lease-token",
        "0b7e1d2c-3a4f-4e5d-8c6b-7a8f9e0d1c2b",
    )
    assert conflict.exit_code == 1
    assert "ERR_LOCK_CONFLICT" in conflict.output

    listed = _invoke(runner, output_dir, "lock", "list", "--run-id", run_id)
    assert "Locks: 1" in listed.output
    assert "agent=worker-1" in listed.output

    released = _invoke(
        runner,
        output_dir,
        "lock",
        "release",
        "--run-id",
        run_id,
        "--path",
        "src/app.py",
        "--lease-token",
        token,
    )
    assert released.exit_code == 0, released.output
    assert "Locks released: 1" in released.output


def test_cli_rejects_bad_plan_file(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    created = _invoke(runner, output_dir, "session", "create", "--goal", "Ship")
    match = re.search(r"run_id=(\d{8}_\d{6})", created.output)
    assert match is not None
    plan_file = tmp_path / "plan.json"
    plan_file.write_text(json.dumps({"task_id": "t1"}), "utf-8")

    result = _invoke(
        runner,
        output_dir,
        "session",
        "plan",
        "--run-id",
        match.group(1),
        "--plan-file",
        str(plan_file),
    )

    assert result.exit_code == 1
    assert "JSON array" in result.output


def test_cli_rejects_oversized_lease_duration(runner: CliRunner, tmp_path: Path) -> None:
    output_dir = tmp_path / "runs"
    run_id = _create_planned_session(runner, output_dir, tmp_path)

    result = _invoke(
        runner,
        output_dir,
        "task",
        "claim",
        "--run-id",
        run_id,
        "--task-id",
        "t2",
        "--lease-duration-ms",
        str(10**18),
    )

    assert result.exit_code == 2
    shown = _invoke(runner, output_dir, "task", "show", "--run-id", run_id, "--task-id", "t2")
    assert "Status: pending" in shown.output

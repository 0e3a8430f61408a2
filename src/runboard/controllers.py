"""Controllers for runboard CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from runboard.config import Settings
from runboard.orchestration.file_lock import FileLockManager
from runboard.orchestration.models import (
    ArtifactRef,
    LockMode,
    RunSessionRecord,
    SessionConfig,
    Task,
    TaskStatus,
    parse_enum,
)
from runboard.orchestration.session import RunSession


@dataclass(slots=True)
class RunCommand:
    """CLI input for commands addressing a whole run."""

    output_dir: Path | None
    run_id: str


@dataclass(slots=True)
class SessionCreateCommand:
    """CLI input for session creation."""

    output_dir: Path | None
    goal: str
    max_turns: int | None = None
    timeout_ms: int | None = None
    budget_tokens: int | None = None


@dataclass(slots=True)
class SessionPlanCommand:
    """CLI input for planning a session from a JSON task list."""

    output_dir: Path | None
    run_id: str
    plan_file: Path


@dataclass(slots=True)
class SessionCompleteCommand:
    output_dir: Path | None
    run_id: str
    artifact_id: str
    direction: str


@dataclass(slots=True)
class SessionFailCommand:
    output_dir: Path | None
    run_id: str
    reason: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    output_dir: Path | None
    run_id: str
    status: str | None


@dataclass(slots=True)
class TaskInspectCommand:
    output_dir: Path | None
    run_id: str
    task_id: str


@dataclass(slots=True)
class TaskClaimCommand:
    """CLI input for claiming a task lease."""

    output_dir: Path | None
    run_id: str
    task_id: str
    agent_id: str | None
    lease_duration_ms: int | None


@dataclass(slots=True)
class TaskLeaseCommand:
    """CLI input for lease-guarded task transitions."""

    output_dir: Path | None
    run_id: str
    task_id: str
    lease_token: str


@dataclass(slots=True)
class TaskCompleteCommand:
    output_dir: Path | None
    run_id: str
    task_id: str
    lease_token: str
    artifact_ids: tuple[str, ...]


@dataclass(slots=True)
class TaskFailCommand:
    output_dir: Path | None
    run_id: str
    task_id: str
    lease_token: str
    failure_class: str
    message: str


@dataclass(slots=True)
class LockAcquireCommand:
    """CLI input for acquiring a path lock."""

    output_dir: Path | None
    run_id: str
    path: str
    mode: str
    lease_token: str
    agent_id: str | None
    duration_ms: int | None


@dataclass(slots=True)
class LockReleaseCommand:
    output_dir: Path | None
    run_id: str
    path: str
    lease_token: str


@dataclass(slots=True)
class LockListCommand:
    output_dir: Path | None
    run_id: str
    path: str | None


class RunboardCliController:
    """Coordinates session, task and lock command execution."""

    def create_session(self, command: SessionCreateCommand) -> list[str]:
        settings = _settings(command.output_dir)
        defaults = settings.session.to_config()
        config = SessionConfig(
            max_turns=command.max_turns or defaults.max_turns,
            timeout_ms=command.timeout_ms or defaults.timeout_ms,
            budget_tokens=command.budget_tokens or defaults.budget_tokens,
        )
        with _run_session(settings) as session:
            record = session.create_session(command.goal, config)
        return [
            f"Session created: run_id={record.run_id} status={record.status.value}",
            f"Run dir: {settings.output_dir / record.run_id}",
        ]

    def plan_session(self, command: SessionPlanCommand) -> list[str]:
        settings = _settings(command.output_dir)
        task_plan = _load_task_plan(command.plan_file)
        with _run_session(settings) as session:
            record = session.plan_session(command.run_id, task_plan)
        return [
            f"Session planned: run_id={record.run_id} tasks={record.tasks_summary.total}",
        ]

    def start_session(self, command: RunCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.start_session(command.run_id)
        return [_transition_line(record)]

    def finalize_session(self, command: RunCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.finalize_session(command.run_id)
        return [_transition_line(record)]

    def complete_session(self, command: SessionCompleteCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.complete_session(
                command.run_id,
                command.artifact_id,
                command.direction,
            )
        return [_transition_line(record)]

    def fail_session(self, command: SessionFailCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.fail_session(command.run_id, command.reason)
        return [_transition_line(record)]

    def abort_session(self, command: RunCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.abort_session(command.run_id)
        return [_transition_line(record)]

    def refresh_session(self, command: RunCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.refresh_index(command.run_id)
        return _session_lines(record)

    def show_session(self, command: RunCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            record = session.get_session(command.run_id)
        return _session_lines(record)

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status_filter = _parse_status(command.status)
        with _run_session(_settings(command.output_dir)) as session:
            tasks = session.task_board.list_tasks(command.run_id, status=status_filter)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} type={task.type.value} status={task.status.value} "
                f"attempt={task.attempt} "
                f"depends_on={','.join(task.depends_on or []) or '-'}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            task = session.task_board.get_task(command.run_id, command.task_id)
        return _task_lines(task)

    def claim_task(self, command: TaskClaimCommand) -> list[str]:
        settings = _settings(command.output_dir)
        with _run_session(settings) as session:
            claim = session.task_board.claim_task(
                command.run_id,
                command.task_id,
                agent_id=command.agent_id or settings.agent_id,
                lease_duration_ms=command.lease_duration_ms or settings.lease.lease_duration_ms,
            )
        return [
            f"Task claimed: {command.task_id}",
            f"Lease token: {claim.lease_token}",
            f"Lease expires: {claim.lease_expire_at.isoformat()}",
        ]

    def start_task(self, command: TaskLeaseCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            task = session.task_board.start_task(
                command.run_id,
                command.task_id,
                command.lease_token,
            )
        return [f"Task started: {task.task_id} status={task.status.value}"]

    def complete_task(self, command: TaskCompleteCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            task = session.task_board.complete_task(
                command.run_id,
                command.task_id,
                command.lease_token,
                [ArtifactRef(artifact_id=artifact_id) for artifact_id in command.artifact_ids],
            )
        return [f"Task completed: {task.task_id} artifacts={len(task.artifact_refs or [])}"]

    def fail_task(self, command: TaskFailCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            task = session.task_board.fail_task(
                command.run_id,
                command.task_id,
                command.lease_token,
                failure_class=command.failure_class,
                message=command.message,
            )
        return [
            f"Task failed: {task.task_id} "
            f"failure_class={task.failure_class.value if task.failure_class else '-'}",
        ]

    def sweep_leases(self, command: RunCommand) -> list[str]:
        with _run_session(_settings(command.output_dir)) as session:
            result = session.task_board.lease_manager.sweep_expired_leases(command.run_id)
        return [
            f"Recovered: {', '.join(result.recovered) or '-'}",
            f"Exhausted: {', '.join(result.exhausted) or '-'}",
        ]

    def acquire_lock(self, command: LockAcquireCommand) -> list[str]:
        settings = _settings(command.output_dir)
        context = settings.build_context()
        duration_ms = command.duration_ms or settings.lease.lock_duration_ms
        lock_id = FileLockManager(context).acquire_lock(
            command.run_id,
            path=command.path,
            mode=parse_enum(LockMode, command.mode.strip().lower(), "mode"),
            lease_token=command.lease_token,
            agent_id=command.agent_id or settings.agent_id,
            lease_expire_at=context.clock() + timedelta(milliseconds=duration_ms),
        )
        return [f"Lock acquired: {lock_id} path={command.path} mode={command.mode}"]

    def release_lock(self, command: LockReleaseCommand) -> list[str]:
        context = _settings(command.output_dir).build_context()
        released = FileLockManager(context).release_lock(
            command.run_id,
            path=command.path,
            lease_token=command.lease_token,
        )
        return [f"Locks released: {released} path={command.path}"]

    def list_locks(self, command: LockListCommand) -> list[str]:
        context = _settings(command.output_dir).build_context()
        locks = FileLockManager(context).list_locks(command.run_id, path=command.path)
        now = context.clock()

        lines = [f"Locks: {len(locks)}"]
        for lock in locks:
            lines.append(
                f"  {lock.lock_id} path={lock.path} mode={lock.mode.value} "
                f"agent={lock.agent_id} expires={lock.lease_expire_at.isoformat()}"
                f"{' (expired)' if lock.is_expired(now) else ''}",
            )
        return lines


def _settings(output_dir: Path | None) -> Settings:
    settings = Settings.from_env(output_dir=output_dir)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return parse_enum(TaskStatus, value.strip().lower(), "status")


def _load_task_plan(plan_file: Path) -> list[dict[str, Any]]:
    try:
        payload = json.loads(plan_file.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ValueError(f"Plan file is not valid JSON: {plan_file}") from error
    if not isinstance(payload, list) or not all(isinstance(item, dict) for item in payload):
        raise ValueError(f"Plan file must contain a JSON array of task objects: {plan_file}")
    return payload


def _transition_line(record: RunSessionRecord) -> str:
    return f"Session {record.run_id}: status={record.status.value}"


def _session_lines(record: RunSessionRecord) -> list[str]:
    tasks = record.tasks_summary
    messages = record.messages_summary
    by_type = ", ".join(
        f"{message_type.value}={count}"
        for message_type, count in sorted(messages.by_type.items(), key=lambda item: item[0].value)
    )
    lines = [
        f"Run: {record.run_id}",
        f"Status: {record.status.value}",
        f"Goal: {record.goal}",
        f"Config: max_turns={record.config.max_turns} timeout_ms={record.config.timeout_ms} "
        f"budget_tokens={record.config.budget_tokens or '-'}",
        f"Tasks: total={tasks.total} pending={tasks.pending} claimed={tasks.claimed} "
        f"running={tasks.running} completed={tasks.completed} failed={tasks.failed} "
        f"blocked={tasks.blocked}",
        f"Messages: total={messages.total} {by_type or '-'}",
        f"Artifacts: total={record.artifacts_summary.total} "
        f"{', '.join(record.artifacts_summary.artifact_ids) or '-'}",
        f"Updated: {record.updated_at.isoformat()}",
    ]
    if record.decision is not None:
        lines.append(
            f"Decision: artifact_id={record.decision.artifact_id} "
            f"direction={record.decision.direction}",
        )
    if record.failure_reason:
        lines.append(f"Failure reason: {record.failure_reason}")
    return lines


def _task_lines(task: Task) -> list[str]:
    lease = task.lease
    lines = [
        f"Task: {task.task_id}",
        f"Title: {task.title}",
        f"Type: {task.type.value}",
        f"Status: {task.status.value}",
        f"Attempt: {task.attempt}",
        f"Depends on: {', '.join(task.depends_on or []) or '-'}",
        f"Blocking: {', '.join(task.blocking_tasks or []) or '-'}",
        f"Lease owner: {lease.owner_agent_id if lease else '-'}",
        f"Lease expires: {lease.lease_expire_at.isoformat() if lease else '-'}",
        f"Failure class: {task.failure_class.value if task.failure_class else '-'}",
        f"Error: {task.failure_message or '-'}",
    ]
    for ref in task.artifact_refs or []:
        lines.append(f"  artifact {ref.artifact_id} type={ref.type or '-'}")
    return lines


@contextmanager
def _run_session(settings: Settings) -> Iterator[RunSession]:
    session = RunSession(settings.build_context())
    try:
        yield session
    finally:
        session.close()

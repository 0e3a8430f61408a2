"""CLI entrypoint for runboard."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from runboard import __version__
from runboard.controllers import (
    LockAcquireCommand,
    LockListCommand,
    LockReleaseCommand,
    RunboardCliController,
    RunCommand,
    SessionCompleteCommand,
    SessionCreateCommand,
    SessionFailCommand,
    SessionPlanCommand,
    TaskClaimCommand,
    TaskCompleteCommand,
    TaskFailCommand,
    TaskInspectCommand,
    TaskLeaseCommand,
    TaskListCommand,
)
from runboard.orchestration.errors import OrchestrationError
from runboard.orchestration.models import MAX_DURATION_MS, FailureClass, LockMode, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RunboardCliController()

CommandT = TypeVar("CommandT")

output_dir_option = click.option(
    "--output-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Root directory of run folders. Defaults to RUNBOARD_OUTPUT_DIR.",
)
run_id_option = click.option("--run-id", required=True, help="Run id (YYYYMMDD_HHMMSS).")
task_id_option = click.option("--task-id", required=True, help="Task id.")
lease_token_option = click.option(
    "--lease-token",
    required=True,
    help="Lease token returned by `task claim`.",
)


@click.group()
@click.version_option(version=__version__, prog_name="runboard")
def runboard() -> None:
    """File-based task board for multi-agent runs."""


@runboard.group()
def session() -> None:
    """Run session lifecycle commands."""


@session.command("create")
@output_dir_option
@click.option("--goal", required=True, help="Goal of the run.")
@click.option(
    "--max-turns",
    type=click.IntRange(min=1),
    default=None,
    help="Turn budget. Defaults to RUNBOARD_SESSION_MAX_TURNS.",
)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Session timeout. Defaults to RUNBOARD_SESSION_TIMEOUT_MS.",
)
@click.option(
    "--budget-tokens",
    type=click.IntRange(min=1),
    default=None,
    help="Optional token budget.",
)
def session_create(
    output_dir: Path | None,
    goal: str,
    max_turns: int | None,
    timeout_ms: int | None,
    budget_tokens: int | None,
) -> None:
    """Create a new run session named after the current UTC second."""

    _run(
        CONTROLLER.create_session,
        SessionCreateCommand(
            output_dir=output_dir,
            goal=goal,
            max_turns=max_turns,
            timeout_ms=timeout_ms,
            budget_tokens=budget_tokens,
        ),
    )


@session.command("plan")
@output_dir_option
@run_id_option
@click.option(
    "--plan-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON array of task objects (task_id, title, type, input, depends_on, ...).",
)
def session_plan(output_dir: Path | None, run_id: str, plan_file: Path) -> None:
    """Create the planned tasks and move the session to `planned`."""

    _run(
        CONTROLLER.plan_session,
        SessionPlanCommand(output_dir=output_dir, run_id=run_id, plan_file=plan_file),
    )


@session.command("start")
@output_dir_option
@run_id_option
def session_start(output_dir: Path | None, run_id: str) -> None:
    """Move a planned session to `running`."""

    _run(CONTROLLER.start_session, RunCommand(output_dir=output_dir, run_id=run_id))


@session.command("finalize")
@output_dir_option
@run_id_option
def session_finalize(output_dir: Path | None, run_id: str) -> None:
    """Move a running session to `finalizing`."""

    _run(CONTROLLER.finalize_session, RunCommand(output_dir=output_dir, run_id=run_id))


@session.command("complete")
@output_dir_option
@run_id_option
@click.option("--artifact-id", required=True, help="Artifact holding the final decision.")
@click.option("--direction", required=True, help="Chosen direction.")
def session_complete(
    output_dir: Path | None,
    run_id: str,
    artifact_id: str,
    direction: str,
) -> None:
    """Record the decision and complete a finalizing session."""

    _run(
        CONTROLLER.complete_session,
        SessionCompleteCommand(
            output_dir=output_dir,
            run_id=run_id,
            artifact_id=artifact_id,
            direction=direction,
        ),
    )


@session.command("fail")
@output_dir_option
@run_id_option
@click.option("--reason", required=True, help="Failure reason.")
def session_fail(output_dir: Path | None, run_id: str, reason: str) -> None:
    """Mark a running or finalizing session failed."""

    _run(
        CONTROLLER.fail_session,
        SessionFailCommand(output_dir=output_dir, run_id=run_id, reason=reason),
    )


@session.command("abort")
@output_dir_option
@run_id_option
def session_abort(output_dir: Path | None, run_id: str) -> None:
    """Drop all locks, return leased tasks to pending and abort the session."""

    _run(CONTROLLER.abort_session, RunCommand(output_dir=output_dir, run_id=run_id))


@session.command("refresh")
@output_dir_option
@run_id_option
def session_refresh(output_dir: Path | None, run_id: str) -> None:
    """Recompute task, message and artifact summaries in `index.json`."""

    _run(CONTROLLER.refresh_session, RunCommand(output_dir=output_dir, run_id=run_id))


@session.command("show")
@output_dir_option
@run_id_option
def session_show(output_dir: Path | None, run_id: str) -> None:
    """Show the stored session index."""

    _run(CONTROLLER.show_session, RunCommand(output_dir=output_dir, run_id=run_id))


@runboard.group()
def task() -> None:
    """Task board commands."""


@task.command("list")
@output_dir_option
@run_id_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
def task_list(output_dir: Path | None, run_id: str, status: str | None) -> None:
    """List tasks of a run."""

    _run(
        CONTROLLER.list_tasks,
        TaskListCommand(output_dir=output_dir, run_id=run_id, status=status),
    )


@task.command("show")
@output_dir_option
@run_id_option
@task_id_option
def task_show(output_dir: Path | None, run_id: str, task_id: str) -> None:
    """Inspect one task."""

    _run(
        CONTROLLER.inspect_task,
        TaskInspectCommand(output_dir=output_dir, run_id=run_id, task_id=task_id),
    )


@task.command("claim")
@output_dir_option
@run_id_option
@task_id_option
@click.option("--agent-id", default=None, help="Claiming agent. Defaults to RUNBOARD_AGENT_ID.")
@click.option(
    "--lease-duration-ms",
    type=click.IntRange(min=1, max=MAX_DURATION_MS),
    default=None,
    help="Lease duration. Defaults to RUNBOARD_LEASE_DURATION_MS.",
)
def task_claim(
    output_dir: Path | None,
    run_id: str,
    task_id: str,
    agent_id: str | None,
    lease_duration_ms: int | None,
) -> None:
    """Claim a pending task and print its lease token."""

    _run(
        CONTROLLER.claim_task,
        TaskClaimCommand(
            output_dir=output_dir,
            run_id=run_id,
            task_id=task_id,
            agent_id=agent_id,
            lease_duration_ms=lease_duration_ms,
        ),
    )


@task.command("start")
@output_dir_option
@run_id_option
@task_id_option
@lease_token_option
def task_start(output_dir: Path | None, run_id: str, task_id: str, lease_token: str) -> None:
    """Move a claimed task to `running`."""

    _run(
        CONTROLLER.start_task,
        TaskLeaseCommand(
            output_dir=output_dir,
            run_id=run_id,
            task_id=task_id,
            lease_token=lease_token,
        ),
    )


@task.command("complete")
@output_dir_option
@run_id_option
@task_id_option
@lease_token_option
@click.option(
    "--artifact-id",
    "artifact_ids",
    multiple=True,
    required=True,
    help="Produced artifact id. Can be repeated.",
)
def task_complete(
    output_dir: Path | None,
    run_id: str,
    task_id: str,
    lease_token: str,
    artifact_ids: tuple[str, ...],
) -> None:
    """Complete a running task with its artifacts."""

    _run(
        CONTROLLER.complete_task,
        TaskCompleteCommand(
            output_dir=output_dir,
            run_id=run_id,
            task_id=task_id,
            lease_token=lease_token,
            artifact_ids=artifact_ids,
        ),
    )


@task.command("fail")
@output_dir_option
@run_id_option
@task_id_option
@lease_token_option
@click.option(
    "--failure-class",
    type=click.Choice([item.value for item in FailureClass], case_sensitive=False),
    default=FailureClass.NON_RETRYABLE.value,
    show_default=True,
    help="Failure class recorded on the task.",
)
@click.option("--message", required=True, help="Failure message.")
def task_fail(  # noqa: PLR0913
    output_dir: Path | None,
    run_id: str,
    task_id: str,
    lease_token: str,
    failure_class: str,
    message: str,
) -> None:
    """Fail a running task."""

    _run(
        CONTROLLER.fail_task,
        TaskFailCommand(
            output_dir=output_dir,
            run_id=run_id,
            task_id=task_id,
            lease_token=lease_token,
            failure_class=failure_class.lower(),
            message=message,
        ),
    )


@task.command("sweep")
@output_dir_option
@run_id_option
def task_sweep(output_dir: Path | None, run_id: str) -> None:
    """Recycle tasks whose lease expired."""

    _run(CONTROLLER.sweep_leases, RunCommand(output_dir=output_dir, run_id=run_id))


@runboard.group()
def lock() -> None:
    """Path lock commands."""


@lock.command("acquire")
@output_dir_option
@run_id_option
@click.option("--path", "lock_path", required=True, help="Logical resource path.")
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in LockMode], case_sensitive=False),
    default=LockMode.WRITE.value,
    show_default=True,
    help="Lock mode.",
)
@lease_token_option
@click.option("--agent-id", default=None, help="Holder agent. Defaults to RUNBOARD_AGENT_ID.")
@click.option(
    "--duration-ms",
    type=click.IntRange(min=1, max=MAX_DURATION_MS),
    default=None,
    help="Lock duration. Defaults to RUNBOARD_LOCK_DURATION_MS.",
)
def lock_acquire(  # noqa: PLR0913
    output_dir: Path | None,
    run_id: str,
    lock_path: str,
    mode: str,
    lease_token: str,
    agent_id: str | None,
    duration_ms: int | None,
) -> None:
    """Acquire a read or write lock on a path."""

    _run(
        CONTROLLER.acquire_lock,
        LockAcquireCommand(
            output_dir=output_dir,
            run_id=run_id,
            path=lock_path,
            mode=mode,
            lease_token=lease_token,
            agent_id=agent_id,
            duration_ms=duration_ms,
        ),
    )


@lock.command("release")
@output_dir_option
@run_id_option
@click.option("--path", "lock_path", required=True, help="Logical resource path.")
@lease_token_option
def lock_release(output_dir: Path | None, run_id: str, lock_path: str, lease_token: str) -> None:
    """Release locks on a path held with the given lease token."""

    _run(
        CONTROLLER.release_lock,
        LockReleaseCommand(
            output_dir=output_dir,
            run_id=run_id,
            path=lock_path,
            lease_token=lease_token,
        ),
    )


@lock.command("list")
@output_dir_option
@run_id_option
@click.option("--path", "lock_path", default=None, help="Optional path filter.")
def lock_list(output_dir: Path | None, run_id: str, lock_path: str | None) -> None:
    """List lock records of a run, expired ones included."""

    _run(
        CONTROLLER.list_locks,
        LockListCommand(output_dir=output_dir, run_id=run_id, path=lock_path),
    )


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except OrchestrationError as error:
        raise click.ClickException(str(error)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    runboard()

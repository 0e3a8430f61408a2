"""Task lifecycle and dependency graph on top of the task store.

Dependencies are checked on two paths. ``claim_task`` checks eagerly and
parks a pending task in ``blocked`` when something is unfinished;
``complete_task`` unblocks dependents on a best-effort basis. If that scan
fails, the next claim of the dependent re-checks and unblocks it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from datetime import timedelta
from typing import Any
from uuid import uuid4

from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import (
    DenyReason,
    DependencyNotMetError,
    InvalidArgumentError,
    LeaseConflictError,
    LeaseExpiredError,
    PolicyDeniedError,
    TaskNotFoundError,
)
from runboard.orchestration.lease_manager import LeaseManager
from runboard.orchestration.models import (
    ArtifactRef,
    ClaimResult,
    MAX_DURATION_MS,
    FailureClass,
    Task,
    TaskCreate,
    TaskStatus,
)
from runboard.orchestration.store import TaskStore

logger = logging.getLogger(__name__)


class TaskBoard:
    """Create, claim, start, complete and fail tasks of one run."""

    def __init__(
        self,
        context: OrchestrationContext,
        *,
        store: TaskStore | None = None,
        lease_manager: LeaseManager | None = None,
    ) -> None:
        self.context = context
        self.store = store or TaskStore(context)
        self.lease_manager = lease_manager or LeaseManager(context, store=self.store)

    def create_task(self, run_id: str, payload: TaskCreate) -> Task:
        """Write a new pending task after rejecting dependency cycles."""

        if self.store.exists(run_id, payload.task_id):
            raise InvalidArgumentError(
                f"Task already exists: {payload.task_id}",
                {"run_id": run_id, "task_id": payload.task_id},
            )
        if payload.depends_on:
            self._detect_cycle(run_id, payload.task_id, payload.depends_on)

        now = self.context.clock()
        task = self.store.write_task(
            run_id,
            {
                "task_id": payload.task_id,
                "run_id": run_id,
                "title": payload.title,
                "type": payload.type,
                "status": TaskStatus.PENDING,
                "input": payload.input,
                "depends_on": list(payload.depends_on) if payload.depends_on is not None else None,
                "assigned_role": payload.assigned_role,
                "idempotency_key": payload.idempotency_key,
                "created_at": now,
                "updated_at": now,
            },
        )
        logger.info("Task created: run_id=%s task_id=%s", run_id, task.task_id)
        return task

    def set_dependencies(self, run_id: str, task_id: str, depends_on: Sequence[str]) -> Task:
        """Replace the dependency list of a task that has not been claimed yet."""

        task = self.store.read_task(run_id, task_id)
        if task.status not in {TaskStatus.PENDING, TaskStatus.BLOCKED}:
            raise _wrong_state(task, "update dependencies of")
        if depends_on:
            self._detect_cycle(run_id, task_id, depends_on)
        return self.store.write_task(
            run_id,
            task.revised(depends_on=list(depends_on), updated_at=self.context.clock()),
        )

    def block_task(self, run_id: str, task_id: str, blocking_task_ids: Sequence[str]) -> Task:
        task = self.store.read_task(run_id, task_id)
        if task.status != TaskStatus.PENDING:
            raise _wrong_state(task, "block")
        return self.store.write_task(
            run_id,
            task.revised(
                status=TaskStatus.BLOCKED,
                blocking_tasks=list(blocking_task_ids),
                updated_at=self.context.clock(),
            ),
        )

    def unblock_task(self, run_id: str, task_id: str) -> Task:
        """Move a blocked task back to pending once every dependency completed."""

        task = self.store.read_task(run_id, task_id)
        if task.status != TaskStatus.BLOCKED:
            raise _wrong_state(task, "unblock")

        unfinished = self._unfinished_dependencies(run_id, task)
        if unfinished:
            raise DependencyNotMetError(
                f"Task {task_id} still waits on: {', '.join(unfinished)}",
                {"task_id": task_id, "blocking_tasks": unfinished},
            )
        return self.store.write_task(
            run_id,
            task.revised(
                status=TaskStatus.PENDING,
                blocking_tasks=None,
                updated_at=self.context.clock(),
            ),
        )

    def claim_task(
        self,
        run_id: str,
        task_id: str,
        *,
        agent_id: str,
        lease_duration_ms: int,
    ) -> ClaimResult:
        """Grant a fresh lease on a pending task whose dependencies completed."""

        if not 0 < lease_duration_ms <= MAX_DURATION_MS:
            raise InvalidArgumentError(
                f"lease_duration_ms must be between 1 and {MAX_DURATION_MS}",
                {"lease_duration_ms": lease_duration_ms},
            )
        self.lease_manager.sweep_expired_leases(run_id)

        task = self.store.read_task(run_id, task_id)
        if task.depends_on and task.status in {TaskStatus.PENDING, TaskStatus.BLOCKED}:
            unfinished = self._unfinished_dependencies(run_id, task)
            if unfinished:
                if task.status == TaskStatus.PENDING:
                    self.block_task(run_id, task_id, unfinished)
                raise DependencyNotMetError(
                    f"Task {task_id} has unfinished dependencies: {', '.join(unfinished)}",
                    {"task_id": task_id, "blocking_tasks": unfinished},
                )
            if task.status == TaskStatus.BLOCKED:
                task = self.unblock_task(run_id, task_id)

        if task.holds_active_lease:
            raise LeaseConflictError(
                f"Task {task_id} is already {task.status.value}",
                {
                    "task_id": task_id,
                    "status": task.status.value,
                    "holder": task.lease.owner_agent_id if task.lease else None,
                },
            )
        if task.status != TaskStatus.PENDING:
            raise _wrong_state(task, "claim")

        now = self.context.clock()
        lease_token = str(uuid4())
        lease_expire_at = now + timedelta(milliseconds=lease_duration_ms)
        attempt = task.attempt + 1
        self.store.write_task(
            run_id,
            task.revised(
                status=TaskStatus.CLAIMED,
                lease={
                    "lease_token": lease_token,
                    "owner_agent_id": agent_id,
                    "lease_expire_at": lease_expire_at,
                    "attempt": attempt,
                },
                updated_at=now,
            ),
        )
        logger.info(
            "Task claimed: run_id=%s task_id=%s agent_id=%s attempt=%d",
            run_id,
            task_id,
            agent_id,
            attempt,
        )
        return ClaimResult(lease_token=lease_token, lease_expire_at=lease_expire_at)

    def start_task(self, run_id: str, task_id: str, lease_token: str) -> Task:
        task = self.store.read_task(run_id, task_id)
        if task.status != TaskStatus.CLAIMED:
            raise _wrong_state(task, "start")
        self._validate_lease(task, lease_token, "start_task")
        return self.store.write_task(
            run_id,
            task.revised(status=TaskStatus.RUNNING, updated_at=self.context.clock()),
        )

    def complete_task(
        self,
        run_id: str,
        task_id: str,
        lease_token: str,
        artifact_refs: Iterable[ArtifactRef | dict[str, Any]],
    ) -> Task:
        """Mark a running task completed, then unblock its ready dependents."""

        refs = list(artifact_refs or [])
        if not refs:
            raise InvalidArgumentError(
                f"complete_task requires non-empty artifact_refs: {task_id}",
                {"task_id": task_id},
            )

        task = self.store.read_task(run_id, task_id)
        if task.status != TaskStatus.RUNNING:
            raise _wrong_state(task, "complete")
        self._validate_lease(task, lease_token, "complete_task")

        completed = self.store.write_task(
            run_id,
            task.revised(
                status=TaskStatus.COMPLETED,
                artifact_refs=refs,
                updated_at=self.context.clock(),
            ),
        )
        logger.info("Task completed: run_id=%s task_id=%s", run_id, task_id)

        try:
            self._unblock_dependents(run_id, task_id)
        except Exception:  # noqa: BLE001
            logger.warning(
                "Auto-unblock after completing %s failed; dependents unblock on next claim",
                task_id,
                exc_info=True,
            )
        return completed

    def fail_task(
        self,
        run_id: str,
        task_id: str,
        lease_token: str,
        *,
        failure_class: FailureClass | str,
        message: str,
    ) -> Task:
        task = self.store.read_task(run_id, task_id)
        if task.status != TaskStatus.RUNNING:
            raise _wrong_state(task, "fail")
        self._validate_lease(task, lease_token, "fail_task")

        failed = self.store.write_task(
            run_id,
            task.revised(
                status=TaskStatus.FAILED,
                failure_class=failure_class,
                failure_message=message,
                updated_at=self.context.clock(),
            ),
        )
        logger.info(
            "Task failed: run_id=%s task_id=%s failure_class=%s",
            run_id,
            task_id,
            failed.failure_class.value if failed.failure_class else None,
        )
        return failed

    def get_task(self, run_id: str, task_id: str) -> Task:
        return self.store.read_task(run_id, task_id)

    def list_tasks(self, run_id: str, *, status: TaskStatus | None = None) -> list[Task]:
        tasks = self.store.list_tasks(run_id)
        if status is None:
            return tasks
        return [task for task in tasks if task.status == status]

    def delete_task(self, run_id: str, task_id: str) -> None:
        """Administrative removal; the lifecycle itself never deletes tasks."""

        self.store.delete_task(run_id, task_id)
        logger.info("Task deleted: run_id=%s task_id=%s", run_id, task_id)

    def _detect_cycle(self, run_id: str, new_task_id: str, depends_on: Sequence[str]) -> None:
        visited: set[str] = set()

        def reaches_new_task(task_id: str) -> bool:
            if task_id == new_task_id:
                return True
            if task_id in visited:
                return False
            visited.add(task_id)
            try:
                task = self.store.read_task(run_id, task_id)
            except TaskNotFoundError:
                return False
            return any(reaches_new_task(dep) for dep in task.depends_on or [])

        for dep in depends_on:
            if reaches_new_task(dep):
                raise InvalidArgumentError(
                    f"Task {new_task_id} would introduce a dependency cycle",
                    {"task_id": new_task_id, "depends_on": list(depends_on)},
                )

    def _unfinished_dependencies(self, run_id: str, task: Task) -> list[str]:
        unfinished: list[str] = []
        for dep_id in task.depends_on or []:
            try:
                dependency = self.store.read_task(run_id, dep_id)
            except TaskNotFoundError:
                unfinished.append(dep_id)
                continue
            if dependency.status != TaskStatus.COMPLETED:
                unfinished.append(dep_id)
        return unfinished

    def _unblock_dependents(self, run_id: str, completed_task_id: str) -> None:
        for task in self.store.list_tasks(run_id):
            if task.status != TaskStatus.BLOCKED:
                continue
            if completed_task_id not in (task.depends_on or []):
                continue
            if self._unfinished_dependencies(run_id, task):
                continue
            try:
                self.unblock_task(run_id, task.task_id)
            except PolicyDeniedError:
                # Someone else moved it out of blocked concurrently.
                continue
            logger.info("Task unblocked: run_id=%s task_id=%s", run_id, task.task_id)

    def _validate_lease(self, task: Task, lease_token: str, operation: str) -> None:
        if task.lease is None or task.lease.lease_token != lease_token:
            raise LeaseExpiredError(
                f"lease_token mismatch, refusing {operation}: {task.task_id}",
                {"task_id": task.task_id, "operation": operation},
            )
        if task.lease.is_expired(self.context.clock()):
            raise LeaseExpiredError(
                f"Lease expired, refusing {operation}: {task.task_id}",
                {
                    "task_id": task.task_id,
                    "operation": operation,
                    "lease_expire_at": task.lease.lease_expire_at.isoformat(),
                },
            )


def _wrong_state(task: Task, action: str) -> PolicyDeniedError:
    return PolicyDeniedError(
        DenyReason.TASK_WRONG_STATE,
        f"Cannot {action} task {task.task_id} in status {task.status.value}",
        {"task_id": task.task_id, "status": task.status.value},
    )

"""Run session state machine persisted in ``<run>/index.json``.

Transitions:

    created    -> planned | aborted
    planned    -> running | aborted
    running    -> finalizing | failed | aborted
    finalizing -> completed | failed | aborted

``completed``, ``failed`` and ``aborted`` are terminal.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import fields
from typing import Any

from pydantic import ValidationError

from runboard.orchestration.artifacts import ArtifactRegistry
from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import InvalidArgumentError, SessionStateError
from runboard.orchestration.file_lock import FileLockManager
from runboard.orchestration.mailbox import MailboxStore
from runboard.orchestration.models import (
    ACTIVE_LEASE_STATUSES,
    ArtifactsSummary,
    MessagesSummary,
    RunSessionRecord,
    SessionConfig,
    SessionStatus,
    TaskCreate,
    TasksSummary,
    TaskStatus,
)
from runboard.orchestration.paths import format_utc_run_id
from runboard.orchestration.store import (
    SessionStore,
    TaskStore,
    purge_run_partial_writes,
    validation_issues,
)
from runboard.orchestration.task_board import TaskBoard

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.CREATED: frozenset({SessionStatus.PLANNED, SessionStatus.ABORTED}),
    SessionStatus.PLANNED: frozenset({SessionStatus.RUNNING, SessionStatus.ABORTED}),
    SessionStatus.RUNNING: frozenset(
        {SessionStatus.FINALIZING, SessionStatus.FAILED, SessionStatus.ABORTED},
    ),
    SessionStatus.FINALIZING: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.FAILED, SessionStatus.ABORTED},
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.FAILED: frozenset(),
    SessionStatus.ABORTED: frozenset(),
}

_TASK_CREATE_FIELDS = frozenset(item.name for item in fields(TaskCreate))


def assert_transition(current: SessionStatus, target: SessionStatus) -> None:
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise SessionStateError(
            f"Session cannot move from {current.value} to {target.value}",
            {"current": current.value, "next": target.value},
        )


class RunSession:
    """Drives one run from planning to a terminal state.

    Every call reads ``index.json`` fresh, so several ``RunSession`` instances
    (in one process or many) can drive the same run.
    """

    def __init__(
        self,
        context: OrchestrationContext,
        *,
        store: SessionStore | None = None,
        task_board: TaskBoard | None = None,
        lock_manager: FileLockManager | None = None,
        mailbox_store: MailboxStore | None = None,
        artifacts: ArtifactRegistry | None = None,
    ) -> None:
        self.context = context
        self.store = store or SessionStore(context)
        self.task_board = task_board or TaskBoard(context)
        self.task_store: TaskStore = self.task_board.store
        self.lock_manager = lock_manager or FileLockManager(context)
        self.mailbox_store = mailbox_store or MailboxStore(context)
        self.artifacts = artifacts or ArtifactRegistry(context)
        self._touched_runs: set[str] = set()

    def __enter__(self) -> RunSession:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def create_session(
        self,
        goal: str,
        config: SessionConfig | Mapping[str, Any],
    ) -> RunSessionRecord:
        """Write a new ``created`` session whose run id is the current UTC second."""

        session_config = _validate_config(config)
        now = self.context.clock()
        run_id = format_utc_run_id(now)
        if self.store.exists(run_id):
            raise InvalidArgumentError(
                f"Session already exists: {run_id}",
                {"run_id": run_id},
            )

        session = self.store.write_session(
            run_id,
            {
                "run_id": run_id,
                "status": SessionStatus.CREATED,
                "goal": goal,
                "config": session_config,
                "created_at": now,
                "updated_at": now,
            },
        )
        self._touched_runs.add(run_id)
        logger.info("Session created: run_id=%s", run_id)
        return session

    def plan_session(
        self,
        run_id: str,
        task_plan: Sequence[TaskCreate | Mapping[str, Any]],
    ) -> RunSessionRecord:
        """Create every planned task, then move the session to ``planned``.

        Tasks are created in order. A failure part-way leaves the earlier
        tasks on disk and the session in ``created``.
        """

        session = self._read(run_id)
        assert_transition(session.status, SessionStatus.PLANNED)

        for item in task_plan:
            self.task_board.create_task(run_id, _task_create(item))

        return self._write_transition(
            run_id,
            session,
            SessionStatus.PLANNED,
            tasks_summary=TasksSummary.from_tasks(self.task_store.list_tasks(run_id)),
        )

    def start_session(self, run_id: str) -> RunSessionRecord:
        session = self._read(run_id)
        assert_transition(session.status, SessionStatus.RUNNING)
        return self._write_transition(run_id, session, SessionStatus.RUNNING)

    def finalize_session(self, run_id: str) -> RunSessionRecord:
        session = self._read(run_id)
        assert_transition(session.status, SessionStatus.FINALIZING)
        return self._write_transition(run_id, session, SessionStatus.FINALIZING)

    def complete_session(self, run_id: str, artifact_id: str, direction: str) -> RunSessionRecord:
        """Record the final decision and move to ``completed``."""

        session = self._read(run_id)
        assert_transition(session.status, SessionStatus.COMPLETED)
        return self._write_transition(
            run_id,
            session,
            SessionStatus.COMPLETED,
            decision={
                "artifact_id": artifact_id,
                "direction": direction,
                "decided_at": self.context.clock(),
            },
        )

    def fail_session(self, run_id: str, reason: str) -> RunSessionRecord:
        session = self._read(run_id)
        assert_transition(session.status, SessionStatus.FAILED)
        return self._write_transition(
            run_id,
            session,
            SessionStatus.FAILED,
            failure_reason=reason,
        )

    def abort_session(self, run_id: str) -> RunSessionRecord:
        """Stop the run: drop every lock, hand leased tasks back, mark aborted.

        Recovered tasks lose their lease, so their attempt counter starts over.
        """

        session = self._read(run_id)
        assert_transition(session.status, SessionStatus.ABORTED)

        removed_locks = self.lock_manager.clear_locks(run_id)

        now = self.context.clock()
        recovered: list[str] = []
        for task in self.task_store.list_tasks(run_id):
            if task.status not in ACTIVE_LEASE_STATUSES:
                continue
            self.task_store.write_task(
                run_id,
                task.revised(status=TaskStatus.PENDING, lease=None, updated_at=now),
            )
            recovered.append(task.task_id)

        logger.info(
            "Session abort: run_id=%s locks_removed=%d tasks_recovered=%s",
            run_id,
            removed_locks,
            recovered,
        )
        return self._write_transition(run_id, session, SessionStatus.ABORTED)

    def refresh_index(self, run_id: str) -> RunSessionRecord:
        """Recompute every summary from the run directory."""

        session = self._read(run_id)
        return self.store.write_session(
            run_id,
            session.revised(
                tasks_summary=TasksSummary.from_tasks(self.task_store.list_tasks(run_id)),
                messages_summary=MessagesSummary.from_messages(
                    self.mailbox_store.list_messages(run_id),
                ),
                artifacts_summary=ArtifactsSummary.from_ids(
                    self.artifacts.list_artifact_ids(run_id),
                ),
                updated_at=self.context.clock(),
            ),
        )

    def get_session(self, run_id: str) -> RunSessionRecord:
        return self._read(run_id)

    def close(self) -> None:
        """Purge stale temp files in every run this instance touched."""

        for run_id in sorted(self._touched_runs):
            try:
                purge_run_partial_writes(self.context, run_id)
            except OSError:
                logger.warning("Could not purge partial writes of run %s", run_id, exc_info=True)
        self._touched_runs.clear()

    def _read(self, run_id: str) -> RunSessionRecord:
        session = self.store.read_session(run_id)
        self._touched_runs.add(session.run_id)
        return session

    def _write_transition(
        self,
        run_id: str,
        session: RunSessionRecord,
        target: SessionStatus,
        **changes: Any,
    ) -> RunSessionRecord:
        updated = self.store.write_session(
            run_id,
            session.revised(status=target, updated_at=self.context.clock(), **changes),
        )
        logger.info(
            "Session transition: run_id=%s %s -> %s",
            run_id,
            session.status.value,
            target.value,
        )
        return updated


def _validate_config(config: SessionConfig | Mapping[str, Any]) -> SessionConfig:
    if isinstance(config, SessionConfig):
        return config
    try:
        return SessionConfig.model_validate(dict(config))
    except ValidationError as error:
        raise InvalidArgumentError(
            "Session config failed schema validation",
            {"issues": validation_issues(error)},
        ) from error


def _task_create(item: TaskCreate | Mapping[str, Any]) -> TaskCreate:
    if isinstance(item, TaskCreate):
        return item
    unknown = sorted(set(item) - _TASK_CREATE_FIELDS)
    if unknown:
        raise InvalidArgumentError(
            f"Unknown task plan fields: {', '.join(unknown)}",
            {"fields": unknown},
        )
    try:
        return TaskCreate(**item)
    except TypeError as error:
        raise InvalidArgumentError(
            f"Incomplete task plan entry: {error}",
            {"entry": dict(item)},
        ) from error

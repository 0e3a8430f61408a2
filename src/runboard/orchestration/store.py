"""Durable JSON record stores for tasks, locks and run sessions."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path
from typing import Any, ClassVar, Generic, TypeVar

from pydantic import ValidationError

from runboard.orchestration.atomic import atomic_write_json, purge_partial_writes
from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import (
    InvalidArgumentError,
    LockNotFoundError,
    OrchestrationError,
    SessionStateError,
    TaskNotFoundError,
)
from runboard.orchestration.models import LockRecord, Record, RunSessionRecord, Task
from runboard.orchestration.paths import is_record_file

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=Record)

DEFAULT_PARTIAL_WRITE_AGE = timedelta(minutes=5)


class JsonRecordStore(Generic[RecordT]):
    """Schema-validated reads and atomic writes of one record type."""

    record_type: ClassVar[type[Record]]
    not_found_error: ClassVar[type[OrchestrationError]]
    entity: ClassVar[str]

    def __init__(self, context: OrchestrationContext) -> None:
        self.context = context

    def _read_record(self, file_path: Path, details: dict[str, Any]) -> RecordT:
        payload = self._load_payload(file_path, details)
        return self._validate(payload, {**details, "file_path": str(file_path)})

    def _load_payload(self, file_path: Path, details: dict[str, Any]) -> Any:
        try:
            raw = file_path.read_text("utf-8")
        except FileNotFoundError as error:
            raise self.not_found_error(f"{self.entity} not found", details) from error

        try:
            return json.loads(raw)
        except json.JSONDecodeError as error:
            raise InvalidArgumentError(
                f"{self.entity} file is not valid JSON: {file_path}",
                {**details, "file_path": str(file_path)},
            ) from error

    def _write_record(self, file_path: Path, record: RecordT | dict[str, Any]) -> RecordT:
        validated = self._validate(record)
        atomic_write_json(file_path, validated.to_json_dict())
        return validated

    def _validate(
        self,
        record: Record | dict[str, Any],
        details: dict[str, Any] | None = None,
    ) -> RecordT:
        payload = record.model_dump() if isinstance(record, Record) else record
        try:
            return self.record_type.model_validate(payload)  # type: ignore[return-value]
        except ValidationError as error:
            raise InvalidArgumentError(
                f"{self.entity} failed schema validation",
                {**(details or {}), "issues": validation_issues(error)},
            ) from error

    def _iter_records(self, directory: Path) -> Iterator[RecordT]:
        if not directory.is_dir():
            return
        for name in sorted(entry.name for entry in directory.iterdir()):
            if not is_record_file(name):
                continue
            file_path = directory / name
            try:
                yield self._read_record(file_path, {"record_id": name[: -len(".json")]})
            except self.not_found_error:
                logger.debug("%s %s vanished while listing", self.entity, file_path)
                continue


class TaskStore(JsonRecordStore[Task]):
    record_type = Task
    not_found_error = TaskNotFoundError
    entity = "task"

    def read_task(self, run_id: str, task_id: str) -> Task:
        paths = self.context.run_paths(run_id)
        return self._read_record(paths.task_path(task_id), {"run_id": run_id, "task_id": task_id})

    def write_task(self, run_id: str, task: Task | dict[str, Any]) -> Task:
        paths = self.context.run_paths(run_id)
        validated = self._validate(task)
        atomic_write_json(paths.task_path(validated.task_id), validated.to_json_dict())
        return validated

    def list_tasks(self, run_id: str) -> list[Task]:
        return list(self._iter_records(self.context.run_paths(run_id).tasks_dir))

    def exists(self, run_id: str, task_id: str) -> bool:
        return self.context.run_paths(run_id).task_path(task_id).is_file()

    def delete_task(self, run_id: str, task_id: str) -> None:
        file_path = self.context.run_paths(run_id).task_path(task_id)
        try:
            file_path.unlink()
        except FileNotFoundError as error:
            raise TaskNotFoundError(
                "task not found",
                {"run_id": run_id, "task_id": task_id},
            ) from error


class LockStore(JsonRecordStore[LockRecord]):
    record_type = LockRecord
    not_found_error = LockNotFoundError
    entity = "lock"

    def read_lock(self, run_id: str, lock_id: str) -> LockRecord:
        paths = self.context.run_paths(run_id)
        return self._read_record(paths.lock_path(lock_id), {"run_id": run_id, "lock_id": lock_id})

    def write_lock(self, run_id: str, lock: LockRecord | dict[str, Any]) -> LockRecord:
        paths = self.context.run_paths(run_id)
        validated = self._validate(lock)
        atomic_write_json(paths.lock_path(validated.lock_id), validated.to_json_dict())
        return validated

    def list_locks(self, run_id: str) -> list[LockRecord]:
        return list(self._iter_records(self.context.run_paths(run_id).locks_dir))

    def delete_lock(self, run_id: str, lock_id: str, *, missing_ok: bool = False) -> None:
        file_path = self.context.run_paths(run_id).lock_path(lock_id)
        try:
            file_path.unlink()
        except FileNotFoundError as error:
            if missing_ok:
                return
            raise LockNotFoundError(
                "lock not found",
                {"run_id": run_id, "lock_id": lock_id},
            ) from error

    def lock_file_paths(self, run_id: str) -> list[Path]:
        """Every lock record file of the run, valid or not."""

        locks_dir = self.context.run_paths(run_id).locks_dir
        if not locks_dir.is_dir():
            return []
        return sorted(entry for entry in locks_dir.iterdir() if is_record_file(entry.name))


class SessionStore(JsonRecordStore[RunSessionRecord]):
    """Reads and writes a run's ``index.json``.

    A missing index means the session was never created, which callers see
    as an invalid session state rather than a not-found error.
    """

    record_type = RunSessionRecord
    not_found_error = SessionStateError
    entity = "session"

    def read_session(self, run_id: str) -> RunSessionRecord:
        paths = self.context.run_paths(run_id)
        return self._read_record(paths.index_path, {"run_id": run_id})

    def write_session(
        self,
        run_id: str,
        session: RunSessionRecord | dict[str, Any],
    ) -> RunSessionRecord:
        return self._write_record(self.context.run_paths(run_id).index_path, session)

    def exists(self, run_id: str) -> bool:
        return self.context.run_paths(run_id).index_path.is_file()


def validation_issues(error: ValidationError) -> list[dict[str, Any]]:
    """Pydantic errors as plain JSON-compatible dicts, without the offending input."""

    return json.loads(error.json(include_url=False, include_input=False))


def purge_run_partial_writes(
    context: OrchestrationContext,
    run_id: str,
    *,
    older_than: timedelta = DEFAULT_PARTIAL_WRITE_AGE,
) -> int:
    """Remove temp remnants across every record directory of one run."""

    paths = context.run_paths(run_id)
    directories = [paths.run_dir, paths.tasks_dir, paths.locks_dir, paths.mailbox_dir]
    if paths.artifacts_dir.is_dir():
        directories.extend(entry for entry in paths.artifacts_dir.iterdir() if entry.is_dir())
    removed = 0
    for directory in directories:
        removed += purge_partial_writes(directory, older_than=older_than)
    return removed

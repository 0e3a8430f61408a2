from __future__ import annotations

import errno
import json
import os
import time
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from runboard.orchestration import atomic
from runboard.orchestration.atomic import atomic_write_json, purge_partial_writes
from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import (
    ErrorCode,
    InvalidArgumentError,
    SessionStateError,
    TaskNotFoundError,
)
from runboard.orchestration.models import TaskStatus
from runboard.orchestration.paths import format_utc_run_id, is_record_file, normalize_run_id
from runboard.orchestration.store import SessionStore, TaskStore, purge_run_partial_writes

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Durable Store"),
]

RUN_ID = "20260301_093000"


def _task_payload(task_id: str = "t1", **overrides: object) -> dict[str, object]:
    now = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)
    payload: dict[str, object] = {
        "task_id": task_id,
        "run_id": RUN_ID,
        "title": f"Task {task_id}",
        "type": "execute",
        "status": "pending",
        "created_at": now,
        "updated_at": now,
    }
    payload.update(overrides)
    return payload


def test_atomic_write_json_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "record.json"

    atomic_write_json(target, {"b": 1, "a": "é"})
    atomic_write_json(target, {"b": 2, "a": "é"})

    assert sorted(entry.name for entry in target.parent.iterdir()) == ["record.json"]
    raw = target.read_text("utf-8")
    assert raw == '{\n  "a": "é",\n  "b": 2\n}'


def test_atomic_write_json_falls_back_to_copy_on_cross_device_rename(
    tmp_path: Path,
    monkeypatch,
) -> None:
    target = tmp_path / "record.json"

    def _cross_device(src, dst):
        raise OSError(errno.EXDEV, "cross-device link")

    monkeypatch.setattr(atomic.os, "replace", _cross_device)

    atomic_write_json(target, {"ok": True})

    assert json.loads(target.read_text("utf-8")) == {"ok": True}
    assert [entry.name for entry in tmp_path.iterdir()] == ["record.json"]


def test_atomic_write_json_cleans_temp_on_unexpected_rename_error(
    tmp_path: Path,
    monkeypatch,
) -> None:
    target = tmp_path / "record.json"

    def _no_space(src, dst):
        raise OSError(errno.ENOSPC, "no space left")

    monkeypatch.setattr(atomic.os, "replace", _no_space)

    with pytest.raises(OSError, match="no space left"):
        atomic_write_json(target, {"ok": True})
    assert list(tmp_path.iterdir()) == []


def test_purge_partial_writes_only_removes_old_temp_files(tmp_path: Path) -> None:
    old_tmp = tmp_path / "t1.json.deadbeef.tmp"
    fresh_tmp = tmp_path / "t2.json.cafebabe.tmp"
    record = tmp_path / "t3.json"
    for path in (old_tmp, fresh_tmp, record):
        path.write_text("{}", "utf-8")
    hour_ago = time.time() - 3600
    os.utime(old_tmp, (hour_ago, hour_ago))
    os.utime(record, (hour_ago, hour_ago))

    removed = purge_partial_writes(tmp_path, older_than=timedelta(minutes=5))

    assert removed == 1
    assert sorted(entry.name for entry in tmp_path.iterdir()) == [fresh_tmp.name, record.name]


def test_purge_partial_writes_ignores_missing_directory(tmp_path: Path) -> None:
    assert purge_partial_writes(tmp_path / "absent", older_than=timedelta(0)) == 0


def test_task_store_round_trip_omits_null_fields(context: OrchestrationContext) -> None:
    store = TaskStore(context)

    written = store.write_task(RUN_ID, _task_payload())

    assert store.read_task(RUN_ID, "t1") == written
    on_disk = json.loads(context.run_paths(RUN_ID).task_path("t1").read_text("utf-8"))
    assert "lease" not in on_disk
    assert on_disk["status"] == "pending"
    assert on_disk["created_at"].startswith("2026-03-01T09:30:00")


def test_task_store_missing_task_raises_not_found(context: OrchestrationContext) -> None:
    with pytest.raises(TaskNotFoundError) as error:
        TaskStore(context).read_task(RUN_ID, "missing")

    assert error.value.code == ErrorCode.ERR_TASK_NOT_FOUND
    assert error.value.details == {"run_id": RUN_ID, "task_id": "missing"}


def test_task_store_corrupt_json_reports_file_path(context: OrchestrationContext) -> None:
    path = context.run_paths(RUN_ID).task_path("t1")
    path.parent.mkdir(parents=True)
    path.write_text("{not json", "utf-8")

    with pytest.raises(InvalidArgumentError) as error:
        TaskStore(context).read_task(RUN_ID, "t1")

    assert error.value.details["file_path"] == str(path)


def test_task_store_rejects_schema_violations(context: OrchestrationContext) -> None:
    store = TaskStore(context)

    with pytest.raises(InvalidArgumentError) as error:
        store.write_task(RUN_ID, _task_payload(status="paused"))

    assert error.value.code == ErrorCode.ERR_INVALID_ARGUMENT
    assert error.value.details["issues"]
    assert not context.run_paths(RUN_ID).tasks_dir.exists()


def test_task_store_rejects_unknown_fields(context: OrchestrationContext) -> None:
    with pytest.raises(InvalidArgumentError):
        TaskStore(context).write_task(RUN_ID, _task_payload(priority=1))


def test_task_store_list_skips_temp_files_and_sorts(context: OrchestrationContext) -> None:
    store = TaskStore(context)
    store.write_task(RUN_ID, _task_payload("t2"))
    store.write_task(RUN_ID, _task_payload("t1", status=TaskStatus.BLOCKED))
    tasks_dir = context.run_paths(RUN_ID).tasks_dir
    (tasks_dir / "t3.json.0123abcd.tmp").write_text("{", "utf-8")

    tasks = store.list_tasks(RUN_ID)

    assert [task.task_id for task in tasks] == ["t1", "t2"]
    assert tasks[0].status == TaskStatus.BLOCKED


def test_task_store_list_of_missing_run_is_empty(context: OrchestrationContext) -> None:
    assert TaskStore(context).list_tasks(RUN_ID) == []


def test_missing_session_is_invalid_state(context: OrchestrationContext) -> None:
    with pytest.raises(SessionStateError):
        SessionStore(context).read_session(RUN_ID)


def test_invalid_identifiers_are_rejected(context: OrchestrationContext) -> None:
    store = TaskStore(context)

    with pytest.raises(InvalidArgumentError, match="run_id"):
        store.read_task("2026-03-01", "t1")
    with pytest.raises(InvalidArgumentError, match="task_id"):
        store.read_task(RUN_ID, "../escape")


def test_purge_run_partial_writes_covers_record_directories(
    context: OrchestrationContext,
) -> None:
    paths = context.run_paths(RUN_ID)
    stale = [
        paths.run_dir / "index.json.00000000.tmp",
        paths.tasks_dir / "t1.json.00000001.tmp",
        paths.locks_dir / "l1.json.00000002.tmp",
        paths.artifact_dir("report") / "report.md.00000003.tmp",
    ]
    hour_ago = time.time() - 3600
    for path in stale:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("", "utf-8")
        os.utime(path, (hour_ago, hour_ago))

    assert purge_run_partial_writes(context, RUN_ID) == len(stale)
    assert not any(path.exists() for path in stale)


def test_run_id_helpers() -> None:
    moment = datetime(2026, 3, 1, 9, 30, 5, tzinfo=UTC)

    assert format_utc_run_id(moment) == "20260301_093005"
    assert normalize_run_id(" 20260301_093005 ") == "20260301_093005"
    with pytest.raises(InvalidArgumentError):
        normalize_run_id("")


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("t1.json", True),
        ("t1.json.abcd1234.tmp", False),
        ("msg.ack.json", False),
        ("notes.txt", False),
    ],
)
def test_is_record_file(name: str, expected: bool) -> None:
    assert is_record_file(name) is expected

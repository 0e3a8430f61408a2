"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.file_lock import FileLockManager
from runboard.orchestration.lease_manager import LeaseManager
from runboard.orchestration.mailbox import Mailbox
from runboard.orchestration.session import RunSession
from runboard.orchestration.task_board import TaskBoard

START = datetime(2026, 3, 1, 9, 30, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock injected through the orchestration context."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def output_dir(tmp_path: Path) -> Path:
    return tmp_path / "agents_team"


@pytest.fixture()
def context(output_dir: Path, clock: FakeClock) -> OrchestrationContext:
    return OrchestrationContext(output_dir=output_dir, now=clock)


@pytest.fixture()
def board(context: OrchestrationContext) -> TaskBoard:
    return TaskBoard(context)


@pytest.fixture()
def lease_manager(board: TaskBoard) -> LeaseManager:
    return board.lease_manager


@pytest.fixture()
def locks(context: OrchestrationContext) -> FileLockManager:
    return FileLockManager(context)


@pytest.fixture()
def mailbox(context: OrchestrationContext) -> Mailbox:
    return Mailbox(context)


@pytest.fixture()
def run_session(context: OrchestrationContext):
    session = RunSession(context)
    try:
        yield session
    finally:
        session.close()

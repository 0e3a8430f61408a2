"""Lazy recovery of tasks whose lease expired."""

from __future__ import annotations

import logging

from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.models import (
    ACTIVE_LEASE_STATUSES,
    FailureClass,
    SweepResult,
    TaskStatus,
)
from runboard.orchestration.store import TaskStore

logger = logging.getLogger(__name__)


class LeaseManager:
    """Recycles or fails claimed/running tasks whose lease has lapsed."""

    def __init__(self, context: OrchestrationContext, *, store: TaskStore | None = None) -> None:
        self.context = context
        self.store = store or TaskStore(context)

    @property
    def max_retries(self) -> int:
        return self.context.max_retries

    def sweep_expired_leases(self, run_id: str) -> SweepResult:
        """Scan the run once and recycle expired leases.

        Tasks below ``max_retries`` attempts go back to pending and keep their
        lease so the next claim continues the attempt count; the rest fail as
        retryable with the lease removed.
        """

        now = self.context.clock()
        result = SweepResult()
        for task in self.store.list_tasks(run_id):
            if task.status not in ACTIVE_LEASE_STATUSES or task.lease is None:
                continue
            if not task.lease.is_expired(now):
                continue

            attempt = task.lease.attempt
            if attempt >= self.max_retries:
                self.store.write_task(
                    run_id,
                    task.revised(
                        status=TaskStatus.FAILED,
                        lease=None,
                        failure_class=FailureClass.RETRYABLE,
                        failure_message=(
                            f"Lease expired {attempt} time(s), "
                            f"exceeding max retries ({self.max_retries})"
                        ),
                        updated_at=now,
                    ),
                )
                result.exhausted.append(task.task_id)
            else:
                self.store.write_task(
                    run_id,
                    task.revised(status=TaskStatus.PENDING, updated_at=now),
                )
                result.recovered.append(task.task_id)

        if result.recovered or result.exhausted:
            logger.info(
                "Lease sweep: run_id=%s recovered=%s exhausted=%s",
                run_id,
                result.recovered,
                result.exhausted,
            )
        return result

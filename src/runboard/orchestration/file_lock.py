"""Path-scoped read/write locks persisted as one JSON file per holder.

Expired locks are purged lazily by the next acquire on the same path; there
is no background sweeper.
"""

from __future__ import annotations

import logging
from datetime import datetime
from uuid import uuid4

from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import DenyReason, LockConflictError, PolicyDeniedError
from runboard.orchestration.models import LockMode, LockRecord, parse_enum
from runboard.orchestration.store import LockStore

logger = logging.getLogger(__name__)


class FileLockManager:
    """Acquire and release mode-aware locks on logical resource paths."""

    def __init__(self, context: OrchestrationContext, *, store: LockStore | None = None) -> None:
        self.context = context
        self.store = store or LockStore(context)

    def acquire_lock(  # noqa: PLR0913
        self,
        run_id: str,
        *,
        path: str,
        mode: LockMode | str,
        lease_token: str,
        agent_id: str,
        lease_expire_at: datetime,
    ) -> str:
        """Grant a lock on ``path`` and return its ``lock_id``.

        A write request conflicts with any active lock on the path; a read
        request only with an active write lock.
        """

        requested_mode = parse_enum(LockMode, mode, "mode")
        self._purge_expired_for_path(run_id, path)

        active = self.list_locks(run_id, path=path)
        holder: LockRecord | None
        if requested_mode == LockMode.WRITE:
            holder = active[0] if active else None
        else:
            holder = next((lock for lock in active if lock.mode == LockMode.WRITE), None)
        if holder is not None:
            raise LockConflictError(
                f"Path {path} is held by a {holder.mode.value} lock, "
                f"cannot acquire {requested_mode.value} lock",
                {
                    "path": path,
                    "holder": {
                        "agent_id": holder.agent_id,
                        "lease_expire_at": holder.lease_expire_at.isoformat(),
                    },
                },
            )

        lock = self.store.write_lock(
            run_id,
            {
                "lock_id": str(uuid4()),
                "path": path,
                "mode": requested_mode,
                "lease_token": lease_token,
                "agent_id": agent_id,
                "lease_expire_at": lease_expire_at,
                "acquired_at": self.context.clock(),
            },
        )
        logger.info(
            "Lock acquired: run_id=%s path=%s mode=%s agent_id=%s lock_id=%s",
            run_id,
            path,
            requested_mode.value,
            agent_id,
            lock.lock_id,
        )
        return lock.lock_id

    def release_lock(self, run_id: str, *, path: str, lease_token: str) -> int:
        """Release every lock on ``path`` bound to ``lease_token``.

        Releasing with a token that matches nothing is denied, including a
        repeated release of a lock that is already gone.
        """

        matching = [
            lock for lock in self.list_locks(run_id, path=path) if lock.lease_token == lease_token
        ]
        if not matching:
            raise PolicyDeniedError(
                DenyReason.LOCK_HELD_BY_OTHER,
                f"No lock on {path} matches the given lease_token",
                {"path": path},
            )
        for lock in matching:
            self.store.delete_lock(run_id, lock.lock_id, missing_ok=True)
        logger.info("Lock released: run_id=%s path=%s count=%d", run_id, path, len(matching))
        return len(matching)

    def list_locks(self, run_id: str, *, path: str | None = None) -> list[LockRecord]:
        locks = self.store.list_locks(run_id)
        if path is None:
            return locks
        return [lock for lock in locks if lock.path == path]

    def clear_locks(self, run_id: str) -> int:
        """Delete every lock file of the run, best-effort per file."""

        removed = 0
        for file_path in self.store.lock_file_paths(run_id):
            try:
                file_path.unlink()
            except FileNotFoundError:
                continue
            except OSError:
                logger.warning("Could not delete lock file %s", file_path, exc_info=True)
                continue
            removed += 1
        return removed

    def _purge_expired_for_path(self, run_id: str, path: str) -> None:
        now = self.context.clock()
        for lock in self.list_locks(run_id, path=path):
            if lock.is_expired(now):
                logger.debug("Purging expired lock %s on %s", lock.lock_id, path)
                self.store.delete_lock(run_id, lock.lock_id, missing_ok=True)

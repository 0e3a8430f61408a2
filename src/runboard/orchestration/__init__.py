"""File-based task orchestration for independent agent processes.

Why plain files instead of SQLite or a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Workers are separate processes (often separate CLI agents) that already share
one working tree and nothing else. Every coordination primitive here maps to
a single atomic file operation on that tree:

- Task board: one ``tasks/<task_id>.json`` per task, replaced atomically on
  each transition, with leases embedded in the task record.
- Lease recovery: expired leases are swept lazily on the next claim, so no
  supervisor process has to stay alive.
- File locks: one ``locks/<lock_id>.json`` per holder, read/write compatible,
  purged lazily when expired.
- Run session: ``index.json`` with a small state machine and summaries of
  tasks, mailbox and artifacts.

Rename within one directory is atomic on the filesystems we target, which is
all the consistency the single-host design needs. Contention is reported to
the caller instead of retried here.
"""

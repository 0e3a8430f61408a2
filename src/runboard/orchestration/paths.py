"""Per-run directory layout and identifier validation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from runboard.orchestration.errors import InvalidArgumentError

RUN_ID_PATTERN = r"^[0-9]{8}_[0-9]{6}$"
SAFE_SEGMENT_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_-]{0,80}$"
LEASE_TOKEN_PATTERN = (
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-4[0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}$"
)

_RUN_ID_RE = re.compile(RUN_ID_PATTERN)
_SAFE_SEGMENT_RE = re.compile(SAFE_SEGMENT_PATTERN)

INDEX_FILE_NAME = "index.json"
ACK_SUFFIX = ".ack.json"


def format_utc_run_id(moment: datetime) -> str:
    """Render a run id as a fixed-width UTC timestamp (YYYYMMDD_HHMMSS)."""

    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    return moment.astimezone(UTC).strftime("%Y%m%d_%H%M%S")


def normalize_run_id(value: str) -> str:
    run_id = str(value or "").strip()
    if not run_id:
        raise InvalidArgumentError("run_id must not be empty")
    if not _RUN_ID_RE.match(run_id):
        raise InvalidArgumentError(f"Invalid run_id format: {run_id}", {"run_id": run_id})
    return run_id


def normalize_segment(label: str, value: str) -> str:
    """Validate one identifier used as a file or directory name."""

    segment = str(value or "").strip()
    if not segment:
        raise InvalidArgumentError(f"{label} must not be empty")
    if not _SAFE_SEGMENT_RE.match(segment):
        raise InvalidArgumentError(f"Invalid {label} format: {segment}", {label: segment})
    return segment


def is_record_file(name: str) -> bool:
    """True for primary JSON records; temp remnants and sidecars are skipped."""

    return name.endswith(".json") and ".tmp" not in name and not name.endswith(ACK_SUFFIX)


@dataclass(frozen=True, slots=True)
class RunPaths:
    """Deterministic file layout for one run."""

    output_dir: Path
    run_id: str

    @property
    def run_dir(self) -> Path:
        return self.output_dir / self.run_id

    @property
    def index_path(self) -> Path:
        return self.run_dir / INDEX_FILE_NAME

    @property
    def tasks_dir(self) -> Path:
        return self.run_dir / "tasks"

    @property
    def locks_dir(self) -> Path:
        return self.run_dir / "locks"

    @property
    def mailbox_dir(self) -> Path:
        return self.run_dir / "mailbox"

    @property
    def artifacts_dir(self) -> Path:
        return self.run_dir / "artifacts"

    def task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{normalize_segment('task_id', task_id)}.json"

    def lock_path(self, lock_id: str) -> Path:
        return self.locks_dir / f"{normalize_segment('lock_id', lock_id)}.json"

    def message_path(self, msg_id: str) -> Path:
        return self.mailbox_dir / f"{normalize_segment('msg_id', msg_id)}.json"

    def message_ack_path(self, msg_id: str) -> Path:
        return self.mailbox_dir / f"{normalize_segment('msg_id', msg_id)}{ACK_SUFFIX}"

    def artifact_dir(self, artifact_id: str) -> Path:
        return self.artifacts_dir / normalize_segment("artifact_id", artifact_id)

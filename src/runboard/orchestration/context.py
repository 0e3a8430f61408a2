"""Explicit dependency context shared by every orchestration component."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from runboard.orchestration.paths import RunPaths, normalize_run_id

DEFAULT_MAX_RETRIES = 3


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


@dataclass(slots=True)
class OrchestrationContext:
    """Output root, clock and retry policy passed to stores and services.

    Components never read module-level state; two contexts pointing at
    different roots or clocks are fully independent.
    """

    output_dir: Path
    now: Callable[[], datetime] = field(default=utc_now)
    max_retries: int = DEFAULT_MAX_RETRIES

    def __post_init__(self) -> None:
        self.output_dir = Path(self.output_dir).expanduser()
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {self.max_retries}")

    def run_paths(self, run_id: str) -> RunPaths:
        return RunPaths(output_dir=self.output_dir, run_id=normalize_run_id(run_id))

    def clock(self) -> datetime:
        """Read the injected clock, normalizing naive values to UTC."""

        moment = self.now()
        if moment.tzinfo is None:
            return moment.replace(tzinfo=UTC)
        return moment.astimezone(UTC)

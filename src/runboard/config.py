"""Runtime configuration for the task board, locks and run sessions."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from runboard.orchestration.context import DEFAULT_MAX_RETRIES, OrchestrationContext
from runboard.orchestration.models import MAX_DURATION_MS, SessionConfig

DEFAULT_OUTPUT_DIR = Path("outputs/agents_team")


@dataclass(slots=True)
class LeaseSettings:
    """Lease and lock durations plus the retry budget."""

    lease_duration_ms: int = 60_000
    max_retries: int = DEFAULT_MAX_RETRIES
    lock_duration_ms: int = 60_000


@dataclass(slots=True)
class SessionSettings:
    """Defaults for newly created run sessions."""

    max_turns: int = 20
    timeout_ms: int = 1_800_000
    budget_tokens: int | None = None

    def to_config(self) -> SessionConfig:
        return SessionConfig(
            max_turns=self.max_turns,
            timeout_ms=self.timeout_ms,
            budget_tokens=self.budget_tokens,
        )


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    output_dir: Path = DEFAULT_OUTPUT_DIR
    agent_id: str = "operator"
    lease: LeaseSettings = field(default_factory=LeaseSettings)
    session: SessionSettings = field(default_factory=SessionSettings)

    @classmethod
    def from_env(cls, output_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local runs."""

        return cls(
            output_dir=output_dir
            or Path(os.getenv("RUNBOARD_OUTPUT_DIR", str(DEFAULT_OUTPUT_DIR))),
            agent_id=os.getenv("RUNBOARD_AGENT_ID", "operator").strip() or "operator",
            lease=LeaseSettings(
                lease_duration_ms=_env_int("RUNBOARD_LEASE_DURATION_MS", 60_000),
                max_retries=_env_int("RUNBOARD_MAX_RETRIES", DEFAULT_MAX_RETRIES),
                lock_duration_ms=_env_int("RUNBOARD_LOCK_DURATION_MS", 60_000),
            ),
            session=SessionSettings(
                max_turns=_env_int("RUNBOARD_SESSION_MAX_TURNS", 20),
                timeout_ms=_env_int("RUNBOARD_SESSION_TIMEOUT_MS", 1_800_000),
                budget_tokens=_env_optional_int("RUNBOARD_SESSION_BUDGET_TOKENS"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for out-of-range durations and limits."""

        if not 0 < self.lease.lease_duration_ms <= MAX_DURATION_MS:
            raise ValueError(
                f"RUNBOARD_LEASE_DURATION_MS must be between 1 and {MAX_DURATION_MS}.",
            )
        if self.lease.max_retries <= 0:
            raise ValueError("RUNBOARD_MAX_RETRIES must be > 0.")
        if not 0 < self.lease.lock_duration_ms <= MAX_DURATION_MS:
            raise ValueError(
                f"RUNBOARD_LOCK_DURATION_MS must be between 1 and {MAX_DURATION_MS}.",
            )
        if self.session.max_turns <= 0:
            raise ValueError("RUNBOARD_SESSION_MAX_TURNS must be > 0.")
        if self.session.timeout_ms <= 0:
            raise ValueError("RUNBOARD_SESSION_TIMEOUT_MS must be > 0.")
        if self.session.budget_tokens is not None and self.session.budget_tokens <= 0:
            raise ValueError("RUNBOARD_SESSION_BUDGET_TOKENS must be > 0 when set.")

    def build_context(self) -> OrchestrationContext:
        return OrchestrationContext(
            output_dir=self.output_dir,
            max_retries=self.lease.max_retries,
        )


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_optional_int(name: str) -> int | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return _env_int(name, 0)

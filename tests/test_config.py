from __future__ import annotations

from pathlib import Path

import allure
import pytest

from runboard.config import LeaseSettings, SessionSettings, Settings
from runboard.orchestration.models import MAX_DURATION_MS

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Configuration"),
]

_ENV_VARS = (
    "RUNBOARD_OUTPUT_DIR",
    "RUNBOARD_AGENT_ID",
    "RUNBOARD_LEASE_DURATION_MS",
    "RUNBOARD_MAX_RETRIES",
    "RUNBOARD_LOCK_DURATION_MS",
    "RUNBOARD_SESSION_MAX_TURNS",
    "RUNBOARD_SESSION_TIMEOUT_MS",
    "RUNBOARD_SESSION_BUDGET_TOKENS",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.output_dir == Path("outputs/agents_team")
    assert settings.agent_id == "operator"
    assert settings.lease == LeaseSettings()
    assert settings.session == SessionSettings()
    settings.validate()


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RUNBOARD_OUTPUT_DIR", str(tmp_path))
    monkeypatch.setenv("RUNBOARD_AGENT_ID", "lead")
    monkeypatch.setenv("RUNBOARD_LEASE_DURATION_MS", "5000")
    monkeypatch.setenv("RUNBOARD_MAX_RETRIES", "5")
    monkeypatch.setenv("RUNBOARD_SESSION_BUDGET_TOKENS", "100000")

    settings = Settings.from_env()

    assert settings.output_dir == tmp_path
    assert settings.agent_id == "lead"
    assert settings.lease.lease_duration_ms == 5_000
    assert settings.lease.max_retries == 5
    assert settings.session.to_config().budget_tokens == 100_000


def test_explicit_output_dir_wins_over_env(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("RUNBOARD_OUTPUT_DIR", "/somewhere/else")

    assert Settings.from_env(output_dir=tmp_path).output_dir == tmp_path


def test_invalid_integer_names_the_variable(monkeypatch) -> None:
    monkeypatch.setenv("RUNBOARD_LOCK_DURATION_MS", "soon")

    with pytest.raises(ValueError, match="RUNBOARD_LOCK_DURATION_MS"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "env_name"),
    [
        (Settings(lease=LeaseSettings(lease_duration_ms=0)), "RUNBOARD_LEASE_DURATION_MS"),
        (Settings(lease=LeaseSettings(max_retries=0)), "RUNBOARD_MAX_RETRIES"),
        (Settings(lease=LeaseSettings(lock_duration_ms=-1)), "RUNBOARD_LOCK_DURATION_MS"),
        (Settings(session=SessionSettings(max_turns=0)), "RUNBOARD_SESSION_MAX_TURNS"),
        (Settings(session=SessionSettings(timeout_ms=0)), "RUNBOARD_SESSION_TIMEOUT_MS"),
        (Settings(session=SessionSettings(budget_tokens=0)), "RUNBOARD_SESSION_BUDGET_TOKENS"),
    ],
)
def test_validate_rejects_non_positive_values(settings: Settings, env_name: str) -> None:
    with pytest.raises(ValueError, match=env_name):
        settings.validate()


def test_build_context_carries_output_dir_and_retries(tmp_path: Path) -> None:
    settings = Settings(output_dir=tmp_path, lease=LeaseSettings(max_retries=7))

    context = settings.build_context()

    assert context.output_dir == tmp_path
    assert context.max_retries == 7
    assert context.run_paths("20260301_093000").run_dir == tmp_path / "20260301_093000"


@pytest.mark.parametrize(
    ("settings", "env_name"),
    [
        (
            Settings(lease=LeaseSettings(lease_duration_ms=MAX_DURATION_MS + 1)),
            "RUNBOARD_LEASE_DURATION_MS",
        ),
        (
            Settings(lease=LeaseSettings(lock_duration_ms=10**18)),
            "RUNBOARD_LOCK_DURATION_MS",
        ),
    ],
)
def test_validate_rejects_durations_above_maximum(settings: Settings, env_name: str) -> None:
    with pytest.raises(ValueError, match=env_name):
        settings.validate()

from __future__ import annotations

import hashlib
import json

import allure
import pytest

from runboard.orchestration.artifacts import METADATA_FILE_NAME, ArtifactRegistry
from runboard.orchestration.context import OrchestrationContext
from runboard.orchestration.errors import ArtifactNotFoundError, InvalidArgumentError
from runboard.orchestration.models import ArtifactRef

pytestmark = [
    allure.epic("Orchestration Core"),
    allure.feature("Artifacts"),
]

RUN_ID = "20260301_093000"


@pytest.fixture()
def registry(context: OrchestrationContext) -> ArtifactRegistry:
    return ArtifactRegistry(context)


def test_write_text_stores_payload_and_checksum(
    registry: ArtifactRegistry,
    context: OrchestrationContext,
    clock,
) -> None:
    record = registry.write_text(
        RUN_ID,
        artifact_id="report",
        filename="report.md",
        content="# Findings\n",
        artifact_type="markdown",
        provenance={"task_id": "t1"},
    )

    artifact_dir = context.run_paths(RUN_ID).artifact_dir("report")
    assert (artifact_dir / "report.md").read_text("utf-8") == "# Findings\n"
    assert record.path == "artifacts/report/report.md"
    assert record.sha256 == hashlib.sha256(b"# Findings\n").hexdigest()
    assert record.size_bytes == len(b"# Findings\n")
    assert record.created_at == clock()
    metadata = json.loads((artifact_dir / METADATA_FILE_NAME).read_text("utf-8"))
    assert metadata["provenance"] == {"task_id": "t1"}
    assert registry.read_artifact(RUN_ID, "report") == record


def test_write_bytes_and_artifact_ref(registry: ArtifactRegistry) -> None:
    registry.write_bytes(
        RUN_ID,
        artifact_id="chart",
        filename="chart.png",
        content=b"\x89PNG",
        artifact_type="image",
    )

    assert registry.artifact_ref(RUN_ID, "chart") == ArtifactRef(artifact_id="chart", type="image")


def test_list_artifact_ids_is_sorted_and_includes_bare_directories(
    registry: ArtifactRegistry,
    context: OrchestrationContext,
) -> None:
    assert registry.list_artifact_ids(RUN_ID) == []
    registry.write_text(
        RUN_ID,
        artifact_id="zeta",
        filename="z.txt",
        content="z",
        artifact_type="text",
    )
    context.run_paths(RUN_ID).artifact_dir("alpha").mkdir(parents=True)

    assert registry.list_artifact_ids(RUN_ID) == ["alpha", "zeta"]


def test_read_missing_artifact(registry: ArtifactRegistry) -> None:
    with pytest.raises(ArtifactNotFoundError):
        registry.read_artifact(RUN_ID, "nothing")


@pytest.mark.parametrize("filename", ["artifact.json", "../escape.txt", ".hidden", ""])
def test_unsafe_filenames_are_rejected(registry: ArtifactRegistry, filename: str) -> None:
    with pytest.raises(InvalidArgumentError):
        registry.write_text(
            RUN_ID,
            artifact_id="report",
            filename=filename,
            content="x",
            artifact_type="text",
        )


def test_unsafe_artifact_id_is_rejected(registry: ArtifactRegistry) -> None:
    with pytest.raises(InvalidArgumentError):
        registry.write_text(
            RUN_ID,
            artifact_id="../../etc",
            filename="passwd",
            content="x",
            artifact_type="text",
        )

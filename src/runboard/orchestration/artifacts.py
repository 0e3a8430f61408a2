"""Artifact directories under ``<run>/artifacts/<artifact_id>/``."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any

from runboard.orchestration.atomic import atomic_write_bytes, atomic_write_json
from runboard.orchestration.errors import ArtifactNotFoundError, InvalidArgumentError
from runboard.orchestration.models import ArtifactRecord, ArtifactRef
from runboard.orchestration.store import JsonRecordStore

logger = logging.getLogger(__name__)

METADATA_FILE_NAME = "artifact.json"
_FILENAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,120}$")


class ArtifactRegistry(JsonRecordStore[ArtifactRecord]):
    """Writes artifact payloads with a checksummed ``artifact.json`` beside them."""

    record_type = ArtifactRecord
    not_found_error = ArtifactNotFoundError
    entity = "artifact"

    def write_text(  # noqa: PLR0913
        self,
        run_id: str,
        *,
        artifact_id: str,
        filename: str,
        content: str,
        artifact_type: str,
        provenance: dict[str, Any] | None = None,
    ) -> ArtifactRecord:
        return self.write_bytes(
            run_id,
            artifact_id=artifact_id,
            filename=filename,
            content=content.encode("utf-8"),
            artifact_type=artifact_type,
            provenance=provenance,
        )

    def write_bytes(  # noqa: PLR0913
        self,
        run_id: str,
        *,
        artifact_id: str,
        filename: str,
        content: bytes,
        artifact_type: str,
        provenance: dict[str, Any] | None = None,
    ) -> ArtifactRecord:
        """Store ``content`` as the artifact payload and (re)write its metadata."""

        paths = self.context.run_paths(run_id)
        artifact_dir = paths.artifact_dir(artifact_id)
        payload_path = artifact_dir / _safe_filename(filename)

        atomic_write_bytes(payload_path, content)
        record = self._validate(
            {
                "artifact_id": artifact_id,
                "type": artifact_type,
                "path": payload_path.relative_to(paths.run_dir).as_posix(),
                "sha256": hashlib.sha256(content).hexdigest(),
                "size_bytes": len(content),
                "provenance": provenance,
                "created_at": self.context.clock(),
            },
        )
        atomic_write_json(artifact_dir / METADATA_FILE_NAME, record.to_json_dict())
        logger.info(
            "Artifact written: run_id=%s artifact_id=%s path=%s size=%d",
            run_id,
            artifact_id,
            record.path,
            record.size_bytes,
        )
        return record

    def read_artifact(self, run_id: str, artifact_id: str) -> ArtifactRecord:
        artifact_dir = self.context.run_paths(run_id).artifact_dir(artifact_id)
        return self._read_record(
            artifact_dir / METADATA_FILE_NAME,
            {"run_id": run_id, "artifact_id": artifact_id},
        )

    def artifact_ref(self, run_id: str, artifact_id: str) -> ArtifactRef:
        """Reference to an existing artifact, as attached to tasks and messages."""

        record = self.read_artifact(run_id, artifact_id)
        return ArtifactRef(artifact_id=record.artifact_id, type=record.type)

    def list_artifact_ids(self, run_id: str) -> list[str]:
        """Names of artifact directories, with or without metadata."""

        artifacts_dir = self.context.run_paths(run_id).artifacts_dir
        if not artifacts_dir.is_dir():
            return []
        return sorted(entry.name for entry in artifacts_dir.iterdir() if entry.is_dir())


def _safe_filename(filename: str) -> str:
    name = str(filename or "").strip()
    if name == METADATA_FILE_NAME:
        raise InvalidArgumentError(f"{METADATA_FILE_NAME} is reserved", {"filename": name})
    if not _FILENAME_RE.match(name):
        raise InvalidArgumentError(f"Invalid artifact filename: {name}", {"filename": name})
    return name

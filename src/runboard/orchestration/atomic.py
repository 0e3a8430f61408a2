"""Crash-safe JSON persistence: temp file in the same directory, then rename."""

from __future__ import annotations

import errno
import json
import logging
import os
import secrets
import shutil
import time
from datetime import timedelta
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

TEMP_SUFFIX = ".tmp"

# Cross-device rename, and the Windows "file is busy" family.
_COPY_FALLBACK_ERRNOS = frozenset({errno.EXDEV, errno.EPERM, errno.EACCES})


def dump_json(payload: Any) -> str:
    """Deterministic formatting shared by every record file."""

    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def atomic_write_json(path: Path, payload: Any) -> None:
    """Persist JSON so readers only ever observe the old or the new document."""

    atomic_write_bytes(path, dump_json(payload).encode("utf-8"))


def atomic_write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.{secrets.token_hex(4)}{TEMP_SUFFIX}")
    try:
        tmp_path.write_bytes(data)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise

    try:
        os.replace(tmp_path, path)
    except OSError as error:
        if error.errno not in _COPY_FALLBACK_ERRNOS:
            tmp_path.unlink(missing_ok=True)
            raise
        logger.debug("rename of %s failed (%s), falling back to copy", tmp_path, error)
        try:
            shutil.copyfile(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)


def purge_partial_writes(directory: Path, *, older_than: timedelta) -> int:
    """Remove temp remnants left by crashed writers.

    Only files older than ``older_than`` are removed so a concurrent writer's
    in-flight temp file survives until its rename.
    """

    if not directory.is_dir():
        return 0
    cutoff = time.time() - older_than.total_seconds()
    removed = 0
    for entry in directory.iterdir():
        if not entry.is_file() or not entry.name.endswith(TEMP_SUFFIX):
            continue
        try:
            if entry.stat().st_mtime > cutoff:
                continue
            entry.unlink()
        except FileNotFoundError:
            continue
        removed += 1
    if removed:
        logger.info("Purged %d partial write(s) from %s", removed, directory)
    return removed

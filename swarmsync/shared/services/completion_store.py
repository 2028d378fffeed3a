"""Durable completion bundle storage.

One JSON document maps task id to its latest bundle. Every write goes
through a temp file, fsync and ``os.replace`` so a crash never leaves a
half-written store behind.
"""
from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from swarmsync.engine.errors import PersistenceError
from swarmsync.engine.models import PersistResult

logger = logging.getLogger(__name__)


def _fsync_dir(dir_path: Path) -> None:
    """Best-effort directory fsync to persist the rename."""
    try:
        flags = os.O_RDONLY
        if hasattr(os, "O_DIRECTORY"):
            flags |= os.O_DIRECTORY
        fd = os.open(str(dir_path), flags)
        try:
            os.fsync(fd)
        finally:
            os.close(fd)
    except OSError:
        # Some filesystems do not support directory fsync.
        pass


def atomic_write_json(path: Path, data: Any) -> None:
    """Atomically replace *path* with *data* rendered as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, sort_keys=True)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(path.parent)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


class CompletionStore:
    """Upsert-by-task-id store for completion bundles."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()

    def _load(self) -> dict[str, dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            raise PersistenceError("*", f"read failed: {exc}") from exc
        try:
            data = json.loads(raw) if raw.strip() else {}
        except json.JSONDecodeError as exc:
            raise PersistenceError("*", f"corrupt store {self.path}: {exc.msg}") from exc
        if not isinstance(data, dict):
            raise PersistenceError("*", f"corrupt store {self.path}: not an object")
        return data

    def get(self, task_id: str) -> dict[str, Any] | None:
        return self._load().get(task_id)

    def list(self) -> list[dict[str, Any]]:
        records = list(self._load().values())
        records.sort(key=lambda r: r.get("persistedAt") or "", reverse=True)
        return records

    def persist(self, task_id: str, bundle: dict[str, Any]) -> PersistResult:
        """Insert or replace the bundle for *task_id*."""
        try:
            data = self._load()
            data[task_id] = bundle
            atomic_write_json(self.path, data)
        except PersistenceError as exc:
            return PersistResult(success=False, error=exc.reason)
        except (OSError, TypeError, ValueError) as exc:
            return PersistResult(success=False, error=str(exc))
        logger.debug("Persisted completion bundle task=%s", task_id)
        return PersistResult(success=True)

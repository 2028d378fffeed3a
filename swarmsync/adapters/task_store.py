"""Read-only view of the append-only task database (JSONL).

Each line is one task record; later lines for the same id supersede
earlier ones. The store is only consulted to match a session's agent to
its in-progress task and to diff task ids for the task-change channel.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
from pathlib import Path
from typing import Any

from swarmsync.engine.models import TaskRef

logger = logging.getLogger(__name__)


def parse_tasks(text: str) -> dict[str, dict[str, Any]]:
    """Latest record per task id. Invalid lines are skipped."""
    tasks: dict[str, dict[str, Any]] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(record, dict):
            continue
        task_id = record.get("id")
        if isinstance(task_id, str) and task_id:
            tasks[task_id] = record
    return tasks


class TaskStore:
    """Cached reader for ``.beads/issues.jsonl``-style task files."""

    def __init__(self, path: str | Path, cache_seconds: float = 5.0) -> None:
        self.path = Path(path)
        self._cache_seconds = cache_seconds
        self._cached: dict[str, dict[str, Any]] = {}
        self._cached_at = 0.0

    def _read(self) -> dict[str, dict[str, Any]]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        return parse_tasks(text)

    async def _load(self, force: bool = False) -> dict[str, dict[str, Any]]:
        now = time.monotonic()
        fresh = now - self._cached_at <= self._cache_seconds
        if not force and fresh and self._cached_at:
            return self._cached
        try:
            self._cached = await asyncio.to_thread(self._read)
            self._cached_at = now
        except (OSError, UnicodeDecodeError) as exc:
            # Keep serving the stale cache.
            logger.debug("Task store read failed %s: %s", self.path, exc)
        return self._cached

    async def list_in_progress(self) -> list[TaskRef]:
        tasks = await self._load()
        return [
            TaskRef(
                id=t["id"],
                title=t.get("title"),
                status=t.get("status"),
                assignee=t.get("assignee"),
            )
            for t in tasks.values()
            if t.get("status") == "in_progress" and t.get("assignee")
        ]

    async def assignee_map(self) -> dict[str, TaskRef]:
        """Agent name -> the in-progress task assigned to it."""
        return {t.assignee: t for t in await self.list_in_progress() if t.assignee}

    async def task_ids(self) -> set[str]:
        """All task ids, bypassing the cache."""
        return set((await self._load(force=True)).keys())

    def invalidate(self) -> None:
        self._cached_at = 0.0

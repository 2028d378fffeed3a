"""Completion persister: durable, once-per-content record of finished tasks."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from swarmsync.shared.services.completion_store import CompletionStore

from .errors import PersistenceError
from .models import CompletionBundle, PersistResult, Signal, SignalKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompletionOutcome:
    bundle: CompletionBundle
    first_seen: bool
    result: PersistResult | None


class CompletionPersister:
    """Writes each distinct ``complete`` signal to the store exactly once.

    ``first_seen`` tells the caller whether to broadcast. A failed write
    is retried on the next observation of the same content without a
    second broadcast.
    """

    def __init__(self, store: CompletionStore) -> None:
        self._store = store
        self._seen: set[str] = set()
        self._persisted: set[str] = set()

    def _already_stored(self, bundle: CompletionBundle) -> bool:
        try:
            existing = self._store.get(bundle.task_id)
        except PersistenceError:
            return False
        return bool(existing) and existing.get("contentHash") == bundle.content_hash

    def _write(self, bundle: CompletionBundle) -> PersistResult:
        if self._already_stored(bundle):
            return PersistResult(success=True)
        record: dict[str, Any] = bundle.to_dict()
        record["persistedAt"] = datetime.now(timezone.utc).isoformat()
        return self._store.persist(bundle.task_id, record)

    async def observe(self, signal: Signal, agent_name: str) -> CompletionOutcome | None:
        if signal.kind is not SignalKind.COMPLETE:
            return None
        bundle = CompletionBundle.from_signal(signal, agent_name)
        key = signal.content_hash
        first_seen = key not in self._seen
        self._seen.add(key)

        if key in self._persisted:
            return CompletionOutcome(bundle, first_seen, None)

        result = await asyncio.to_thread(self._write, bundle)
        if result.success:
            self._persisted.add(key)
            logger.info(
                "Completion persisted task=%s agent=%s", bundle.task_id, bundle.agent_name,
            )
        else:
            logger.error(
                "Completion persist failed task=%s: %s", bundle.task_id, result.error,
            )
        return CompletionOutcome(bundle, first_seen, result)

    def get(self, task_id: str) -> dict[str, Any] | None:
        return self._store.get(task_id)

    def list(self) -> list[dict[str, Any]]:
        return self._store.list()

    def reset(self) -> None:
        """Forget broadcast history; durable dedup still applies."""
        self._seen.clear()
        self._persisted.clear()

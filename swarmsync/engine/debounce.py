"""Debounced action registry keyed by (resource kind, resource id).

Rescheduling a key replaces its pending action, so a burst of triggers
on one resource collapses into a single run after the quiet period.
Keys are independent: a burst on one session never delays another.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

DebounceKey = tuple[str, str]
Action = Callable[[], Awaitable[None]]


class DebouncedActions:
    """Per-key debounce timers on the running event loop."""

    def __init__(self) -> None:
        self._timers: dict[DebounceKey, asyncio.TimerHandle] = {}
        self._running: set[asyncio.Task[None]] = set()

    def schedule(self, kind: str, resource_id: str, delay: float, action: Action) -> None:
        """Run *action* after *delay* seconds unless rescheduled first."""
        key = (kind, resource_id)
        existing = self._timers.pop(key, None)
        if existing is not None:
            existing.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(max(0.0, delay), self._fire, key, action)

    def _fire(self, key: DebounceKey, action: Action) -> None:
        self._timers.pop(key, None)
        task = asyncio.get_running_loop().create_task(self._run(key, action))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, key: DebounceKey, action: Action) -> None:
        try:
            await action()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Debounced action %s:%s failed", key[0], key[1])

    def is_pending(self, kind: str, resource_id: str) -> bool:
        return (kind, resource_id) in self._timers

    def cancel(self, kind: str, resource_id: str) -> bool:
        handle = self._timers.pop((kind, resource_id), None)
        if handle is None:
            return False
        handle.cancel()
        return True

    def cancel_resource(self, resource_id: str) -> int:
        """Cancel every pending action for *resource_id* across kinds."""
        keys = [k for k in self._timers if k[1] == resource_id]
        for key in keys:
            self._timers.pop(key).cancel()
        return len(keys)

    def cancel_all(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

    @property
    def pending_count(self) -> int:
        return len(self._timers)

    async def drain(self) -> None:
        """Wait for actions that already fired to finish."""
        if self._running:
            await asyncio.gather(*list(self._running), return_exceptions=True)

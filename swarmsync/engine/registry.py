"""Session registry: which managed sessions exist right now."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import SyncConfig
from .models import Session, SessionInfo

logger = logging.getLogger(__name__)


@dataclass
class RegistryDiff:
    """Result of one reconcile: creates are applied before destroys."""
    created: list[Session] = field(default_factory=list)
    destroyed: list[Session] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.created or self.destroyed)


class SessionRegistry:
    """Tracks the managed session set across poll ticks."""

    def __init__(self, config: SyncConfig) -> None:
        self._prefix = config.session_prefix
        self._pending_prefix = config.pending_prefix
        self._sessions: dict[str, Session] = {}

    def is_managed(self, name: str) -> bool:
        if not name.startswith(self._prefix):
            return False
        # Provisional sessions are not registered yet.
        if self._pending_prefix and name.startswith(self._pending_prefix):
            return False
        return True

    def agent_name(self, session_name: str) -> str:
        return session_name[len(self._prefix):]

    def filter(self, listing: list[SessionInfo]) -> list[SessionInfo]:
        return [info for info in listing if self.is_managed(info.name)]

    def reconcile(self, listing: list[SessionInfo]) -> RegistryDiff:
        """Diff *listing* against the tracked set and replace it."""
        current = {info.name: info for info in self.filter(listing)}
        diff = RegistryDiff()

        for name, info in current.items():
            existing = self._sessions.get(name)
            if existing is None:
                diff.created.append(Session(
                    name=name,
                    agent_name=self.agent_name(name),
                    created_at=info.created_at,
                    attached=info.attached,
                ))
            else:
                existing.attached = info.attached

        for name, session in self._sessions.items():
            if name not in current:
                diff.destroyed.append(session)

        for session in diff.created:
            self._sessions[session.name] = session
        for session in diff.destroyed:
            del self._sessions[session.name]

        if diff:
            logger.info(
                "Sessions reconciled: +%d -%d total=%d",
                len(diff.created), len(diff.destroyed), len(self._sessions),
            )
        return diff

    def get(self, name: str) -> Session | None:
        return self._sessions.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()

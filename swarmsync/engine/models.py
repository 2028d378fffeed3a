"""Core data models for the session sync engine.

All dataclasses, enums, and type aliases. Single source of truth
to avoid circular imports.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class CanonicalState(str, Enum):
    """Resolved lifecycle label for a session.

    Recomputed from scratch on every evaluation; there is no
    transition table. See resolver.py for the resolution order.
    """
    STARTING = "starting"
    WORKING = "working"
    NEEDS_INPUT = "needs-input"
    READY_FOR_REVIEW = "ready-for-review"
    COMPLETING = "completing"
    COMPACTING = "compacting"
    IDLE = "idle"
    COMPLETED = "completed"


class SignalKind(str, Enum):
    """Signal document types written by the agent CLI."""
    # State kinds
    WORKING = "working"
    REVIEW = "review"
    NEEDS_INPUT = "needs_input"
    IDLE = "idle"
    COMPLETING = "completing"
    COMPLETED = "completed"
    STARTING = "starting"
    COMPACTING = "compacting"
    AUTO_PROCEED = "auto_proceed"
    # Data kinds
    TASKS = "tasks"
    ACTION = "action"
    COMPLETE = "complete"


# States that wait on a human; their signals use the long TTL.
USER_WAITING_KINDS = frozenset({
    SignalKind.REVIEW,
    SignalKind.NEEDS_INPUT,
    SignalKind.COMPLETED,
    SignalKind.COMPLETE,
    SignalKind.ACTION,
})


@dataclass(frozen=True)
class TaskRef:
    """In-progress task a session is working on."""
    id: str
    title: str | None = None
    status: str | None = None
    assignee: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "title": self.title, "status": self.status}


@dataclass(frozen=True)
class SessionInfo:
    """One row of the process host's session listing."""
    name: str
    created_at: datetime | None = None
    attached: bool = False


@dataclass
class Session:
    """A live terminal-hosted agent process tracked by the engine."""
    name: str
    agent_name: str
    created_at: datetime | None = None
    attached: bool = False
    task: TaskRef | None = None
    output_hash: str | None = None
    line_count: int = 0
    output: str = ""
    canonical_state: CanonicalState | None = None
    signal_hash: str | None = None
    question_hash: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "sessionName": self.name,
            "agentName": self.agent_name,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "attached": self.attached,
            "task": self.task.to_dict() if self.task else None,
            "state": self.canonical_state.value if self.canonical_state else None,
            "lineCount": self.line_count,
        }


@dataclass(frozen=True)
class Signal:
    """A validated, unexpired signal document.

    ``written_at`` is the document's storage mtime, never a field
    embedded in the payload.
    """
    session_name: str
    kind: SignalKind
    payload: dict[str, Any]
    written_at: float
    content_hash: str


@dataclass(frozen=True)
class Question:
    """A pending request for human input."""
    session_name: str
    payload: dict[str, Any]
    written_at: float
    content_hash: str


@dataclass
class CompletionBundle:
    """Durable record of a finished task."""
    task_id: str
    agent_name: str
    summary: list[str] = field(default_factory=list)
    quality: dict[str, Any] = field(default_factory=dict)
    human_actions: list[dict[str, Any]] = field(default_factory=list)
    suggested_tasks: list[dict[str, Any]] = field(default_factory=list)
    cross_agent_intel: dict[str, Any] | None = None
    session_name: str | None = None
    completed_at: str | None = None
    content_hash: str = ""

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "taskId": self.task_id,
            "agentName": self.agent_name,
            "summary": list(self.summary),
            "quality": dict(self.quality),
            "humanActions": list(self.human_actions),
            "suggestedTasks": list(self.suggested_tasks),
            "sessionName": self.session_name,
            "completedAt": self.completed_at,
            "contentHash": self.content_hash,
        }
        if self.cross_agent_intel is not None:
            d["crossAgentIntel"] = dict(self.cross_agent_intel)
        return d

    @classmethod
    def from_signal(cls, signal: Signal, agent_name: str) -> CompletionBundle:
        """Build a bundle from a validated ``complete`` signal."""
        p = signal.payload
        completed_at = p.get("completedAt")
        if not isinstance(completed_at, str):
            completed_at = datetime.fromtimestamp(
                signal.written_at, tz=timezone.utc,
            ).isoformat()
        return cls(
            task_id=p["taskId"],
            agent_name=p.get("agentName") or agent_name,
            summary=[str(s) for s in p.get("summary") or []],
            quality=dict(p.get("quality") or {}),
            human_actions=list(p.get("humanActions") or []),
            suggested_tasks=list(p.get("suggestedTasks") or []),
            cross_agent_intel=p.get("crossAgentIntel"),
            session_name=signal.session_name,
            completed_at=completed_at,
            content_hash=signal.content_hash,
        )


@dataclass(frozen=True)
class PersistResult:
    """Outcome of a completion store write."""
    success: bool
    error: str | None = None

"""Event types streamed to connected viewers.

Each event is a typed dataclass. ``event_to_dict`` renders the wire
shape (camelCase keys, ``type`` discriminator, ``timestamp`` in ms);
``dict_to_event`` parses it back.
"""
from __future__ import annotations

import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar


class Channel(str, Enum):
    """Logical broadcast channels, each with its own subscriber set."""
    AGENT_STATE = "agent-state"
    TASK_CHANGE = "task-change"
    OUTPUT = "output"
    QUESTIONS = "questions"
    SYSTEM = "system"


ALL_CHANNELS: tuple[Channel, ...] = tuple(Channel)


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class SyncEvent:
    """Base event."""
    event_type: str = ""
    session_name: str | None = None
    timestamp: int = field(default_factory=_now_ms)

    # Fields serialized even when None (viewers rely on an explicit null).
    nullable: ClassVar[frozenset[str]] = frozenset()


@dataclass
class Connected(SyncEvent):
    event_type: str = "connected"
    client_id: str = ""
    channels: list = field(default_factory=list)
    delta_updates_enabled: bool = True


@dataclass
class Heartbeat(SyncEvent):
    event_type: str = "heartbeat"


@dataclass
class SessionCreated(SyncEvent):
    event_type: str = "session-created"
    agent_name: str = ""
    task: dict | None = None
    created_at: str | None = None
    attached: bool = False

    nullable: ClassVar[frozenset[str]] = frozenset({"task"})


@dataclass
class SessionDestroyed(SyncEvent):
    event_type: str = "session-destroyed"


@dataclass
class SessionOutput(SyncEvent):
    event_type: str = "session-output"
    output: str = ""
    line_count: int = 0
    is_delta: bool = False
    delta_line_count: int | None = None
    cursor_position: int = 0


@dataclass
class SessionStateChanged(SyncEvent):
    event_type: str = "session-state"
    state: str = ""
    previous_state: str | None = None

    nullable: ClassVar[frozenset[str]] = frozenset({"previous_state"})


@dataclass
class SessionQuestion(SyncEvent):
    """A question appeared (payload) or was cleared (None)."""
    event_type: str = "session-question"
    question: dict | None = None

    nullable: ClassVar[frozenset[str]] = frozenset({"question"})


@dataclass
class SessionSignal(SyncEvent):
    """Data-kind signal payload (suggested tasks, human action)."""
    event_type: str = "session-signal"
    signal_type: str = ""
    payload: dict = field(default_factory=dict)


@dataclass
class SessionComplete(SyncEvent):
    event_type: str = "session-complete"
    completion_bundle: dict = field(default_factory=dict)


@dataclass
class TaskChange(SyncEvent):
    event_type: str = "task-change"
    new_tasks: list = field(default_factory=list)
    removed_tasks: list = field(default_factory=list)


_EVENT_MAP: dict[str, type[SyncEvent]] = {
    "connected": Connected,
    "heartbeat": Heartbeat,
    "session-created": SessionCreated,
    "session-destroyed": SessionDestroyed,
    "session-output": SessionOutput,
    "session-state": SessionStateChanged,
    "session-question": SessionQuestion,
    "session-signal": SessionSignal,
    "session-complete": SessionComplete,
    "task-change": TaskChange,
}

EVENT_CHANNELS: dict[str, Channel] = {
    "connected": Channel.SYSTEM,
    "heartbeat": Channel.SYSTEM,
    "session-created": Channel.AGENT_STATE,
    "session-destroyed": Channel.AGENT_STATE,
    "session-state": Channel.AGENT_STATE,
    "session-signal": Channel.AGENT_STATE,
    "session-complete": Channel.AGENT_STATE,
    "session-output": Channel.OUTPUT,
    "session-question": Channel.QUESTIONS,
    "task-change": Channel.TASK_CHANGE,
}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _snake(name: str) -> str:
    return "".join(f"_{c.lower()}" if c.isupper() else c for c in name)


def channel_for(event: SyncEvent) -> Channel:
    return EVENT_CHANNELS.get(event.event_type, Channel.SYSTEM)


def event_to_dict(event: SyncEvent) -> dict[str, Any]:
    """Convert a typed event to its JSON wire shape."""
    d: dict[str, Any] = {}
    for f in (fld.name for fld in fields(event)):
        val = getattr(event, f)
        if val is None and f not in event.nullable:
            continue
        if f == "event_type":
            d["type"] = val
        else:
            d[_camel(f)] = val
    return d


def dict_to_event(data: dict[str, Any]) -> SyncEvent:
    """Parse a wire dict back into a typed event."""
    event_type = data.get("type", "")
    cls = _EVENT_MAP.get(event_type, SyncEvent)
    valid_fields = {fld.name for fld in fields(cls)}
    filtered = {}
    for key, value in data.items():
        name = "event_type" if key == "type" else _snake(key)
        if name in valid_fields:
            filtered[name] = value
    return cls(**filtered)

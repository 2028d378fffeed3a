"""Canonical state resolution.

Two independent strategies tried in fixed priority order:

1. Signal: a valid state-kind signal maps through SIGNAL_STATE_MAP and
   wins over everything else; a valid ``complete`` signal means
   ``completed``. Data kinds (tasks, action) carry no state.
2. Output: heuristic marker scan over the ANSI-stripped tail of the
   captured buffer. The marker found at the highest offset wins.

``resolve_state`` composes them. Each strategy is a plain function so
either path can be exercised on its own.
"""
from __future__ import annotations

import re
from dataclasses import dataclass

from .models import CanonicalState, Signal, SignalKind, TaskRef

SIGNAL_STATE_MAP: dict[SignalKind, CanonicalState] = {
    SignalKind.WORKING: CanonicalState.WORKING,
    SignalKind.REVIEW: CanonicalState.READY_FOR_REVIEW,
    SignalKind.NEEDS_INPUT: CanonicalState.NEEDS_INPUT,
    SignalKind.IDLE: CanonicalState.IDLE,
    SignalKind.COMPLETING: CanonicalState.COMPLETING,
    SignalKind.COMPLETED: CanonicalState.COMPLETED,
    SignalKind.STARTING: CanonicalState.STARTING,
    SignalKind.COMPACTING: CanonicalState.COMPACTING,
    SignalKind.AUTO_PROCEED: CanonicalState.COMPLETED,
}

# States a session with an assigned task can be detected in.
TASK_STATES = (
    CanonicalState.NEEDS_INPUT,
    CanonicalState.READY_FOR_REVIEW,
    CanonicalState.COMPLETING,
    CanonicalState.COMPACTING,
    CanonicalState.WORKING,
)

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]|\x1b\][^\x07]*\x07")
_REGEX_PREFIX = "re:"


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


@dataclass(frozen=True)
class _Marker:
    state: CanonicalState
    literal: str | None = None
    pattern: re.Pattern[str] | None = None

    def last_offset(self, text: str) -> int:
        if self.literal is not None:
            return text.rfind(self.literal)
        last = -1
        for match in self.pattern.finditer(text):
            last = match.start()
        return last


class MarkerTable:
    """Marker strings per canonical state, loaded from config."""

    def __init__(self, markers: dict[str, list[str]]) -> None:
        self._markers: list[_Marker] = []
        for state_value, entries in markers.items():
            state = CanonicalState(state_value)
            for entry in entries:
                if entry.startswith(_REGEX_PREFIX):
                    self._markers.append(
                        _Marker(state, pattern=re.compile(entry[len(_REGEX_PREFIX):]))
                    )
                elif entry:
                    self._markers.append(_Marker(state, literal=entry))

    def scan(self, text: str) -> dict[CanonicalState, int]:
        """Highest offset of any marker per state, in one pass over the table."""
        offsets: dict[CanonicalState, int] = {}
        for marker in self._markers:
            pos = marker.last_offset(text)
            if pos > offsets.get(marker.state, -1):
                offsets[marker.state] = pos
        return offsets


def resolve_from_signal(signal: Signal | None) -> CanonicalState | None:
    """Authoritative state from a valid signal, or None to fall through."""
    if signal is None:
        return None
    if signal.kind is SignalKind.COMPLETE:
        return CanonicalState.COMPLETED
    return SIGNAL_STATE_MAP.get(signal.kind)


def resolve_from_output(
    output: str,
    task: TaskRef | None,
    markers: MarkerTable,
    *,
    window_chars: int = 3000,
    short_output_chars: int = 500,
) -> CanonicalState:
    """Heuristic state from the most recent slice of terminal output."""
    recent = strip_ansi(output[-window_chars:]) if output else ""
    offsets = markers.scan(recent)

    if task is not None:
        best_state: CanonicalState | None = None
        best_pos = -1
        # Ties keep TASK_STATES order.
        for state in TASK_STATES:
            pos = offsets.get(state, -1)
            if pos > best_pos:
                best_state, best_pos = state, pos
        return best_state or CanonicalState.WORKING

    if offsets.get(CanonicalState.COMPLETED, -1) >= 0:
        return CanonicalState.COMPLETED
    if len(recent) < short_output_chars:
        return CanonicalState.STARTING
    return CanonicalState.IDLE


def resolve_state(
    signal: Signal | None,
    output: str,
    task: TaskRef | None,
    markers: MarkerTable,
    *,
    window_chars: int = 3000,
    short_output_chars: int = 500,
) -> CanonicalState:
    """Resolve one canonical state: signal first, output heuristic second."""
    from_signal = resolve_from_signal(signal)
    if from_signal is not None:
        return from_signal
    return resolve_from_output(
        output, task, markers,
        window_chars=window_chars,
        short_output_chars=short_output_chars,
    )

"""Signal and question documents written by the agent CLI.

Storage layout (one document per session per kind):
    {signal_dir}/swarm-signal-tmux-{session}.json
    {signal_dir}/swarm-question-tmux-{session}.json

A document's age comes from its file mtime, never from a timestamp
inside the payload. Expired, missing, and malformed documents all read
as ``None``: the store never raises into the poll or watch loop.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import os
import re
import time
from pathlib import Path
from typing import Any

from .config import SyncConfig
from .errors import SignalParseError
from .models import (
    USER_WAITING_KINDS,
    Question,
    Signal,
    SignalKind,
)

logger = logging.getLogger(__name__)

DOC_SIGNAL = "signal"
DOC_QUESTION = "question"


def content_hash(payload: Any) -> str:
    """Stable hash of a decoded JSON payload."""
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def _read_document(path: Path) -> tuple[float, str] | None:
    """Return ``(mtime, text)`` or None when the file is absent."""
    try:
        mtime = os.stat(path).st_mtime
        with open(path, encoding="utf-8") as f:
            return mtime, f.read()
    except FileNotFoundError:
        return None


def _decode_object(path: Path, text: str) -> dict[str, Any]:
    try:
        doc = json.loads(text)
    except json.JSONDecodeError as exc:
        raise SignalParseError(str(path), f"invalid JSON: {exc.msg}") from exc
    if not isinstance(doc, dict):
        raise SignalParseError(str(path), "top level is not an object")
    return doc


def parse_signal(session_name: str, path: Path, text: str, written_at: float) -> Signal:
    """Validate a raw signal document. Raises SignalParseError."""
    doc = _decode_object(path, text)
    doc_type = doc.get("type")

    if doc_type == "state":
        state = doc.get("state")
        if not isinstance(state, str) or not state:
            raise SignalParseError(str(path), "state signal without 'state'")
        kind_value = state
    elif isinstance(doc_type, str) and doc_type:
        kind_value = doc_type
    else:
        raise SignalParseError(str(path), "missing 'type'")

    try:
        kind = SignalKind(kind_value)
    except ValueError:
        raise SignalParseError(str(path), f"unknown signal type '{kind_value}'") from None

    payload = {k: v for k, v in doc.items() if k != "type"}

    if kind is SignalKind.TASKS:
        tasks = doc.get("tasks", doc.get("data"))
        if not isinstance(tasks, list) or not all(isinstance(t, dict) for t in tasks):
            raise SignalParseError(str(path), "tasks signal needs a list of task objects")
        payload = {"tasks": tasks}
    elif kind is SignalKind.ACTION:
        action = doc.get("action", doc.get("data"))
        if action is None and "title" in doc:
            action = {k: v for k, v in doc.items() if k != "type"}
        if not isinstance(action, dict) or not isinstance(action.get("title"), str):
            raise SignalParseError(str(path), "action signal needs an object with 'title'")
        payload = {"action": action}
    elif kind is SignalKind.COMPLETE:
        task_id = doc.get("taskId")
        if not isinstance(task_id, str) or not task_id:
            raise SignalParseError(str(path), "complete signal without 'taskId'")
        if not isinstance(doc.get("summary", []), list):
            raise SignalParseError(str(path), "'summary' must be a list")
        if not isinstance(doc.get("quality", {}), dict):
            raise SignalParseError(str(path), "'quality' must be an object")
        for key in ("humanActions", "suggestedTasks"):
            items = doc.get(key)
            if items is not None and (
                not isinstance(items, list) or not all(isinstance(i, dict) for i in items)
            ):
                raise SignalParseError(str(path), f"'{key}' must be a list of objects")
        intel = doc.get("crossAgentIntel")
        if intel is not None and not isinstance(intel, dict):
            raise SignalParseError(str(path), "'crossAgentIntel' must be an object")

    return Signal(
        session_name=session_name,
        kind=kind,
        payload=payload,
        written_at=written_at,
        content_hash=content_hash(payload),
    )


def _template_pattern(template: str) -> re.Pattern[str]:
    prefix, _, suffix = template.partition("{session}")
    return re.compile(f"^{re.escape(prefix)}(?P<session>.+){re.escape(suffix)}$")


class SignalStore:
    """Reads signal and question documents with type-dependent TTLs."""

    def __init__(self, config: SyncConfig) -> None:
        self._config = config
        self._signal_re = _template_pattern(config.signal_filename)
        self._question_re = _template_pattern(config.question_filename)

    @property
    def directory(self) -> Path:
        return Path(self._config.signal_dir)

    def ttl_for(self, kind: SignalKind) -> float:
        if kind in USER_WAITING_KINDS:
            return self._config.user_waiting_ttl_seconds
        return self._config.signal_ttl_seconds

    def classify(self, path: str | Path) -> tuple[str, str] | None:
        """Map a file path to ``(doc_kind, session_name)`` if it is ours."""
        p = Path(path)
        if p.parent != self.directory:
            return None
        name = p.name
        # Question first: a loose signal template could also match it.
        match = self._question_re.match(name)
        if match:
            return DOC_QUESTION, match.group("session")
        match = self._signal_re.match(name)
        if match:
            return DOC_SIGNAL, match.group("session")
        return None

    async def read(self, session_name: str, now: float | None = None) -> Signal | None:
        """Latest valid, unexpired signal for *session_name*, or None."""
        path = self._config.signal_path(session_name)
        try:
            raw = await asyncio.to_thread(_read_document, path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Signal read failed session=%s: %s", session_name, exc)
            return None
        if raw is None:
            return None
        written_at, text = raw
        try:
            signal = parse_signal(session_name, path, text, written_at)
        except SignalParseError as exc:
            logger.debug("Ignoring signal for %s: %s", session_name, exc)
            return None

        age = (time.time() if now is None else now) - written_at
        if age > self.ttl_for(signal.kind):
            logger.debug(
                "Signal expired session=%s kind=%s age=%.1fs",
                session_name, signal.kind.value, age,
            )
            return None
        return signal

    async def read_question(self, session_name: str, now: float | None = None) -> Question | None:
        """Pending question for *session_name*, or None."""
        path = self._config.question_path(session_name)
        try:
            raw = await asyncio.to_thread(_read_document, path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.debug("Question read failed session=%s: %s", session_name, exc)
            return None
        if raw is None:
            return None
        written_at, text = raw
        age = (time.time() if now is None else now) - written_at
        if age > self._config.question_ttl_seconds:
            return None
        try:
            payload = _decode_object(path, text)
        except SignalParseError as exc:
            logger.debug("Ignoring question for %s: %s", session_name, exc)
            return None
        return Question(
            session_name=session_name,
            payload=payload,
            written_at=written_at,
            content_hash=content_hash(payload),
        )

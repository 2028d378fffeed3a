"""Process host boundary: the terminal multiplexer.

The engine only depends on the five verbs of ProcessHost. TmuxHost
implements them by invoking the ``tmux`` CLI through
asyncio.create_subprocess_exec (array-based, no shell) with a bounded
per-call timeout so a hung capture can never pile up.
"""
from __future__ import annotations

import abc
import asyncio
import logging
from datetime import datetime, timezone

from swarmsync.engine.errors import ProcessHostError
from swarmsync.engine.models import SessionInfo

logger = logging.getLogger(__name__)

# stderr fragments tmux prints when there is simply nothing to list.
_NO_SERVER_MARKERS = ("no server running", "no sessions", "error connecting to")

_LIST_FORMAT = "#{session_name}:#{session_created}:#{session_attached}"


class ProcessHost(abc.ABC):
    """Black-box host for terminal sessions."""

    @abc.abstractmethod
    async def list_sessions(self) -> list[SessionInfo]:
        """All sessions the host knows about. Raises ProcessHostError."""

    @abc.abstractmethod
    async def capture_pane(self, name: str, lines: int) -> str:
        """Last *lines* lines of the session's buffer. Raises ProcessHostError."""

    @abc.abstractmethod
    async def send_keys(self, name: str, text: str) -> None:
        """Type literal text into the session."""

    @abc.abstractmethod
    async def send_key(self, name: str, key: str) -> None:
        """Press a named key (Enter, Escape, C-c, ...)."""

    @abc.abstractmethod
    async def kill_session(self, name: str) -> None:
        """Terminate the session."""


def parse_list_output(stdout: str) -> list[SessionInfo]:
    """Parse ``name:created:attached`` rows from list-sessions."""
    sessions: list[SessionInfo] = []
    for line in stdout.splitlines():
        line = line.strip()
        if not line:
            continue
        # Session names may contain ':'; the last two fields never do.
        parts = line.rsplit(":", 2)
        if len(parts) != 3:
            continue
        name, created_raw, attached_raw = parts
        created_at = None
        try:
            created_at = datetime.fromtimestamp(int(created_raw), tz=timezone.utc)
        except ValueError:
            pass
        sessions.append(SessionInfo(
            name=name,
            created_at=created_at,
            attached=attached_raw.strip() not in ("", "0"),
        ))
    return sessions


class TmuxHost(ProcessHost):
    """ProcessHost backed by the tmux CLI."""

    def __init__(self, command: str = "tmux", timeout: float = 5.0) -> None:
        self._command = command
        self._timeout = timeout

    async def _run(self, *args: str) -> tuple[int, str, str]:
        """Run tmux with *args*; returns ``(returncode, stdout, stderr)``."""
        cmd = (self._command, *args)
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise ProcessHostError(args[0], f"command not found: {self._command}") from exc
        except OSError as exc:
            raise ProcessHostError(args[0], str(exc)) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(), timeout=self._timeout
            )
        except asyncio.TimeoutError:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            await proc.wait()
            raise ProcessHostError(args[0], f"timed out after {self._timeout}s") from None

        return (
            proc.returncode or 0,
            stdout_bytes.decode("utf-8", errors="replace"),
            stderr_bytes.decode("utf-8", errors="replace"),
        )

    async def list_sessions(self) -> list[SessionInfo]:
        code, stdout, stderr = await self._run("list-sessions", "-F", _LIST_FORMAT)
        if code != 0:
            if any(m in stderr.lower() for m in _NO_SERVER_MARKERS):
                return []
            raise ProcessHostError("list-sessions", stderr.strip() or f"exit {code}")
        return parse_list_output(stdout)

    async def capture_pane(self, name: str, lines: int) -> str:
        code, stdout, stderr = await self._run(
            "capture-pane", "-p", "-e", "-t", name, "-S", f"-{lines}",
        )
        if code != 0:
            raise ProcessHostError("capture-pane", stderr.strip() or f"exit {code}")
        return stdout

    async def send_keys(self, name: str, text: str) -> None:
        code, _, stderr = await self._run("send-keys", "-t", name, "-l", text)
        if code != 0:
            raise ProcessHostError("send-keys", stderr.strip() or f"exit {code}")

    async def send_key(self, name: str, key: str) -> None:
        code, _, stderr = await self._run("send-keys", "-t", name, key)
        if code != 0:
            raise ProcessHostError("send-keys", stderr.strip() or f"exit {code}")

    async def kill_session(self, name: str) -> None:
        code, _, stderr = await self._run("kill-session", "-t", name)
        if code != 0:
            raise ProcessHostError("kill-session", stderr.strip() or f"exit {code}")
        logger.info("Killed tmux session %s", name)

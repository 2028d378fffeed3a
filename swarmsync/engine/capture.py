"""Terminal buffer capture and change fingerprinting."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import ProcessHostError

if TYPE_CHECKING:
    from swarmsync.adapters.tmux import ProcessHost

logger = logging.getLogger(__name__)

_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    sign = "-" if n < 0 else ""
    n = abs(n)
    out = []
    while n:
        n, rem = divmod(n, 36)
        out.append(_DIGITS[rem])
    return sign + "".join(reversed(out))


def fingerprint(text: str) -> str:
    """Cheap 32-bit rolling hash. A change detector, not an integrity check."""
    h = 0
    for ch in text:
        h = ((h << 5) - h + ord(ch)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return _base36(h)


def split_lines(text: str) -> list[str]:
    """Split a captured buffer into lines, ignoring the final newline."""
    if not text:
        return []
    if text.endswith("\n"):
        text = text[:-1]
    return text.split("\n")


@dataclass(frozen=True)
class CapturedOutput:
    session_name: str
    lines: list[str]
    output_hash: str

    @property
    def text(self) -> str:
        return "\n".join(self.lines)

    @property
    def line_count(self) -> int:
        return len(self.lines)


class OutputCapturer:
    """Captures a bounded tail of each session's terminal buffer."""

    def __init__(self, host: ProcessHost, max_lines: int = 100) -> None:
        self._host = host
        self.max_lines = max_lines

    async def capture(self, session_name: str) -> CapturedOutput | None:
        """Capture *session_name*; None means unchanged for this cycle."""
        try:
            raw = await self._host.capture_pane(session_name, self.max_lines)
        except ProcessHostError as exc:
            logger.debug("Capture failed session=%s: %s", session_name, exc)
            return None
        lines = split_lines(raw)
        text = "\n".join(lines)
        return CapturedOutput(
            session_name=session_name,
            lines=lines,
            output_hash=fingerprint(text),
        )

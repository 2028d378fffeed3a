"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via SWARMSYNC_* env vars,
then optionally via a YAML file (see yaml_config.py) and CLI flags.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)


# Marker strings scanned in terminal output when no signal is present.
# Keys are canonical state values. "completed" is only consulted when the
# session has no assigned task. Entries prefixed with "re:" are regexes.
DEFAULT_MARKERS: dict[str, list[str]] = {
    "needs-input": [
        "[AGENT:NEEDS_INPUT]",
        "Enter to select",
        "Tab/Arrow keys to navigate",
        "Type something",
        "[ ]",
    ],
    "ready-for-review": [
        "[AGENT:NEEDS_REVIEW]",
        "[AGENT:READY]",
        "ready to mark complete",
        "Ready to mark complete",
        "shall I mark",
        "Shall I mark",
        "ready for review",
        "Ready for Review",
    ],
    "completing": [
        "[AGENT:COMPLETING]",
        "Marking task complete",
    ],
    "compacting": ["[AGENT:COMPACTING]"],
    "working": ["[AGENT:WORKING"],
    "completed": [
        "[AGENT:COMPLETED]",
        "[AGENT:IDLE]",
        r"re:✅\s*TASK COMPLETE",
    ],
}


def _default_markers() -> dict[str, list[str]]:
    return {state: list(items) for state, items in DEFAULT_MARKERS.items()}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    return int(_env_float(name, float(default)))


@dataclass
class SyncConfig:
    """Session sync engine configuration."""

    # Session naming convention
    session_prefix: str = "agent-"
    pending_prefix: str = "agent-pending-"

    # Poll loop
    poll_interval_seconds: float = 1.0
    output_lines: int = 100
    output_debounce_seconds: float = 0.25
    signal_debounce_seconds: float = 0.05
    task_debounce_seconds: float = 0.1

    # Signal and question documents. "{session}" is replaced by the
    # tmux session name.
    signal_dir: str = "/tmp"
    signal_filename: str = "swarm-signal-tmux-{session}.json"
    question_filename: str = "swarm-question-tmux-{session}.json"

    # Freshness windows
    signal_ttl_seconds: float = 60.0
    user_waiting_ttl_seconds: float = 1800.0
    question_ttl_seconds: float = 300.0

    # Heuristic state detection
    scan_window_chars: int = 3000
    short_output_chars: int = 500
    markers: dict[str, list[str]] = field(default_factory=_default_markers)

    # Task store (append-only JSONL, read-only here)
    tasks_path: str = ".beads/issues.jsonl"
    task_cache_seconds: float = 5.0

    # Durable completion bundles
    completions_path: str = str(Path.home() / ".swarmsync" / "completions.json")

    # Process host
    tmux_command: str = "tmux"
    subprocess_timeout_seconds: float = 5.0

    # Client liveness
    heartbeat_interval_seconds: float = 30.0
    stale_client_seconds: float = 60.0
    client_queue_size: int = 5000

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> SyncConfig:
        """Load configuration from SWARMSYNC_* environment variables."""
        sync_vars = {
            k: v for k, v in os.environ.items() if k.startswith("SWARMSYNC_")
        }
        if sync_vars:
            logger.info(
                "SyncConfig.from_env: SWARMSYNC_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(sync_vars.items())),
            )
        else:
            logger.debug("SyncConfig.from_env: no SWARMSYNC_* env vars set, using defaults")

        config = cls(
            session_prefix=os.getenv(
                "SWARMSYNC_SESSION_PREFIX", cls.session_prefix
            ),
            pending_prefix=os.getenv(
                "SWARMSYNC_PENDING_PREFIX", cls.pending_prefix
            ),
            poll_interval_seconds=_env_float(
                "SWARMSYNC_POLL_INTERVAL", cls.poll_interval_seconds
            ),
            output_lines=_env_int(
                "SWARMSYNC_OUTPUT_LINES", cls.output_lines
            ),
            output_debounce_seconds=_env_float(
                "SWARMSYNC_OUTPUT_DEBOUNCE", cls.output_debounce_seconds
            ),
            signal_debounce_seconds=_env_float(
                "SWARMSYNC_SIGNAL_DEBOUNCE", cls.signal_debounce_seconds
            ),
            signal_dir=os.getenv("SWARMSYNC_SIGNAL_DIR", cls.signal_dir),
            signal_ttl_seconds=_env_float(
                "SWARMSYNC_SIGNAL_TTL", cls.signal_ttl_seconds
            ),
            user_waiting_ttl_seconds=_env_float(
                "SWARMSYNC_USER_WAITING_TTL", cls.user_waiting_ttl_seconds
            ),
            question_ttl_seconds=_env_float(
                "SWARMSYNC_QUESTION_TTL", cls.question_ttl_seconds
            ),
            tasks_path=os.getenv("SWARMSYNC_TASKS_PATH", cls.tasks_path),
            completions_path=os.getenv(
                "SWARMSYNC_COMPLETIONS_PATH", cls.completions_path
            ),
            tmux_command=os.getenv("SWARMSYNC_TMUX", cls.tmux_command),
            subprocess_timeout_seconds=_env_float(
                "SWARMSYNC_SUBPROCESS_TIMEOUT", cls.subprocess_timeout_seconds
            ),
            heartbeat_interval_seconds=_env_float(
                "SWARMSYNC_HEARTBEAT_INTERVAL", cls.heartbeat_interval_seconds
            ),
            stale_client_seconds=_env_float(
                "SWARMSYNC_STALE_CLIENT", cls.stale_client_seconds
            ),
            log_level=os.getenv("SWARMSYNC_LOG_LEVEL", cls.log_level),
        )
        logger.info(
            "SyncConfig.from_env: prefix=%s poll=%.2fs lines=%d signal_dir=%s",
            config.session_prefix, config.poll_interval_seconds,
            config.output_lines, config.signal_dir,
        )
        return config

    def signal_path(self, session_name: str) -> Path:
        return Path(self.signal_dir) / self.signal_filename.format(session=session_name)

    def question_path(self, session_name: str) -> Path:
        return Path(self.signal_dir) / self.question_filename.format(session=session_name)

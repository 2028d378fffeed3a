"""Configuration tests - env overrides and YAML overlay."""

from __future__ import annotations

import argparse
import logging
import sys
import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from swarmsync.app import _configure_server_logging, build_config, main
from swarmsync.engine.config import DEFAULT_MARKERS, SyncConfig
from swarmsync.engine.yaml_config import apply_yaml_config, load_yaml_config


def test_defaults():
    config = SyncConfig()
    assert config.session_prefix == "agent-"
    assert config.output_lines == 100
    assert config.signal_ttl_seconds == 60.0
    assert config.user_waiting_ttl_seconds == 1800.0
    assert config.markers == DEFAULT_MARKERS
    assert config.markers is not DEFAULT_MARKERS
    assert config.signal_path("agent-1") == Path("/tmp/swarm-signal-tmux-agent-1.json")


def test_from_env_overrides():
    env = {
        "SWARMSYNC_POLL_INTERVAL": "0.5",
        "SWARMSYNC_OUTPUT_LINES": "250",
        "SWARMSYNC_SIGNAL_DIR": "/var/run/agents",
        "SWARMSYNC_SIGNAL_TTL": "not-a-number",
    }
    with patch.dict("os.environ", env, clear=False):
        config = SyncConfig.from_env()
    assert config.poll_interval_seconds == 0.5
    assert config.output_lines == 250
    assert config.signal_dir == "/var/run/agents"
    assert config.signal_ttl_seconds == 60.0


def test_yaml_overlay_sections():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "swarmsync.yaml"
        path.write_text(
            "sync:\n"
            "  output_lines: 200\n"
            "  poll_interval_seconds: 2\n"
            "  not_a_key: 1\n"
            "ttl:\n"
            "  signal_seconds: 30\n"
            "  question_seconds: 90\n"
            "markers:\n"
            "  working: ['[BUSY]']\n"
            "  needs-input: '[ASK]'\n",
            encoding="utf-8",
        )
        config = load_yaml_config(path, base=SyncConfig())
    assert config.output_lines == 200
    assert config.poll_interval_seconds == 2.0
    assert config.signal_ttl_seconds == 30.0
    assert config.question_ttl_seconds == 90.0
    assert config.markers["working"] == ["[BUSY]"]
    assert config.markers["needs-input"] == ["[ASK]"]
    # Untouched states keep their defaults.
    assert config.markers["ready-for-review"] == DEFAULT_MARKERS["ready-for-review"]


def test_unknown_marker_state_rejected():
    with pytest.raises(ValueError, match="Unknown marker state"):
        apply_yaml_config(SyncConfig(), {"markers": {"thinking": ["..."]}})


def test_missing_yaml_file_raises():
    with pytest.raises(FileNotFoundError):
        load_yaml_config("/nonexistent/swarmsync.yaml", base=SyncConfig())


# ── CLI ──


def test_cli_has_no_server_flag():
    with patch.object(sys, "argv", ["swarmsync", "--server"]):
        with pytest.raises(SystemExit) as exc:
            main()
    assert exc.value.code == 2


def test_server_logging_uses_yaml_log_level():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = Path(tmpdir) / "swarmsync.yaml"
        path.write_text("sync:\n  log_level: DEBUG\n", encoding="utf-8")
        args = argparse.Namespace(config=str(path), lines=None, debounce=None)
        with patch.dict("os.environ", {"SWARMSYNC_LOG_LEVEL": "WARNING"}):
            config = build_config(args)
        assert config.log_level == "DEBUG"

        root = logging.getLogger()
        saved_level, saved_handlers = root.level, list(root.handlers)
        try:
            with patch("pathlib.Path.home", return_value=Path(tmpdir)):
                log_file = _configure_server_logging(config.log_level)
            assert root.level == logging.DEBUG
            assert log_file == Path(tmpdir) / ".swarmsync" / "logs" / "swarmsync-server.log"
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

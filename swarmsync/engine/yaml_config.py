"""YAML configuration loader.

Overlays a YAML file onto a SyncConfig built from env vars. Backward
compatible: when no YAML is provided, env vars work exactly as before.

Example YAML:
    sync:
      session_prefix: agent-
      poll_interval_seconds: 1.0
      output_lines: 200
      signal_dir: /tmp

    ttl:
      signal_seconds: 60
      user_waiting_seconds: 1800
      question_seconds: 300

    markers:
      needs-input:
        - "[AGENT:NEEDS_INPUT]"
        - "Enter to select"
      working: ["[AGENT:WORKING"]
      completed:
        - "[AGENT:COMPLETED]"
        - 're:✅\\s*TASK COMPLETE'
"""
from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from .config import SyncConfig
from .models import CanonicalState

logger = logging.getLogger(__name__)

_TTL_KEYS = {
    "signal_seconds": "signal_ttl_seconds",
    "user_waiting_seconds": "user_waiting_ttl_seconds",
    "question_seconds": "question_ttl_seconds",
}


def _coerce(current: Any, value: Any, key: str) -> Any:
    """Coerce a YAML scalar to the type of the existing config value."""
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        return int(value)
    if isinstance(current, float):
        return float(value)
    if isinstance(current, str):
        return str(value)
    raise ValueError(f"Unsupported config key type for '{key}'")


def _parse_markers(raw: Any) -> dict[str, list[str]]:
    if not isinstance(raw, dict):
        raise ValueError("'markers' must be a mapping of state -> list of strings")
    valid_states = {s.value for s in CanonicalState}
    markers: dict[str, list[str]] = {}
    for state, items in raw.items():
        if state not in valid_states:
            raise ValueError(
                f"Unknown marker state '{state}'. "
                f"Valid states: {', '.join(sorted(valid_states))}"
            )
        if isinstance(items, str):
            items = [items]
        if not isinstance(items, list) or not all(isinstance(i, str) for i in items):
            raise ValueError(f"Markers for '{state}' must be a list of strings")
        markers[state] = list(items)
    return markers


def apply_yaml_config(config: SyncConfig, raw: dict[str, Any]) -> SyncConfig:
    """Overlay parsed YAML sections onto *config* in place and return it."""
    known = {f.name for f in fields(SyncConfig)}

    sync_section = raw.get("sync") or {}
    if not isinstance(sync_section, dict):
        raise ValueError("'sync' section must be a mapping")
    for key, value in sync_section.items():
        if key not in known or key == "markers":
            logger.warning("Ignoring unknown sync config key: %s", key)
            continue
        setattr(config, key, _coerce(getattr(config, key), value, key))

    ttl_section = raw.get("ttl") or {}
    if not isinstance(ttl_section, dict):
        raise ValueError("'ttl' section must be a mapping")
    for key, value in ttl_section.items():
        attr = _TTL_KEYS.get(key)
        if attr is None:
            logger.warning("Ignoring unknown ttl key: %s", key)
            continue
        setattr(config, attr, float(value))

    if "markers" in raw:
        # A partial table overrides only the states it names.
        merged = dict(config.markers)
        merged.update(_parse_markers(raw["markers"]))
        config.markers = merged

    return config


def load_yaml_config(
    path: str | Path,
    base: SyncConfig | None = None,
) -> SyncConfig:
    """Load a YAML config file on top of *base* (or env defaults)."""
    path = Path(path)
    logger.info(
        "load_yaml_config: attempting to load config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error(
            "load_yaml_config: config file not found at %s (absolute path: %s)",
            path, path.absolute(),
        )
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    if not isinstance(raw, dict):
        raise ValueError(f"Top level of {path} must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s: sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )
    config = base if base is not None else SyncConfig.from_env()
    return apply_yaml_config(config, raw)

"""YAML configuration loader.

Example YAML:
    engine:
      default_model: claude-sonnet-4-20250514
      default_permission_mode: acceptEdits
      default_cwd: /path/to/project
      connect_timeout_seconds: 30
      stop_timeout_seconds: 5
      query_timeout_seconds: 600
      query_max_turns: 10
      event_queue_size: 5000
      max_text_block_chars: 65536

    backend:
      cli_path: ~/.local/bin/claude
      setting_sources: [user, project]

Values missing from the file fall back to the environment
(CCSTUDIO_* vars), then to the EngineConfig defaults.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .config import EngineConfig
from .models import PermissionMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_RELPATH = Path(".ccstudio") / "ccstudio.yaml"


def _parse_permission_mode(value: Any) -> PermissionMode:
    try:
        return PermissionMode(str(value))
    except ValueError:
        valid = ", ".join(m.value for m in PermissionMode)
        raise ValueError(
            f"Invalid permission mode {value!r} (expected one of: {valid})"
        ) from None


def find_config(cwd: str | Path) -> Path | None:
    """Return ``.ccstudio/ccstudio.yaml`` under *cwd* if it exists."""
    candidate = Path(cwd) / DEFAULT_CONFIG_RELPATH
    return candidate if candidate.is_file() else None


def load_yaml_config(path: str | Path) -> EngineConfig:
    """Load and parse a YAML config file into an EngineConfig."""
    path = Path(path)
    logger.info(
        "load_yaml_config: loading config from %s (exists=%s)",
        path, path.exists(),
    )
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    top_sections = sorted(raw.keys())
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(top_sections) if top_sections else "(empty)",
    )

    base = EngineConfig.from_env()
    engine_raw = raw.get("engine") or {}
    backend_raw = raw.get("backend") or {}

    cli_path = backend_raw.get("cli_path", base.claude_cli_path)
    if cli_path:
        cli_path = os.path.expanduser(str(cli_path))

    return EngineConfig(
        default_model=str(engine_raw.get("default_model", base.default_model)),
        default_permission_mode=_parse_permission_mode(
            engine_raw.get("default_permission_mode", base.default_permission_mode.value)
        ),
        default_cwd=str(engine_raw.get("default_cwd", base.default_cwd)),
        claude_cli_path=cli_path or None,
        setting_sources=[
            str(s) for s in (backend_raw.get("setting_sources") or base.setting_sources)
        ],
        connect_timeout_seconds=float(engine_raw.get(
            "connect_timeout_seconds", base.connect_timeout_seconds
        )),
        stop_timeout_seconds=float(engine_raw.get(
            "stop_timeout_seconds", base.stop_timeout_seconds
        )),
        query_timeout_seconds=float(engine_raw.get(
            "query_timeout_seconds", base.query_timeout_seconds
        )),
        query_max_turns=int(engine_raw.get("query_max_turns", base.query_max_turns)),
        event_queue_size=int(engine_raw.get("event_queue_size", base.event_queue_size)),
        max_text_block_chars=int(engine_raw.get(
            "max_text_block_chars", base.max_text_block_chars
        )),
        log_level=str(engine_raw.get("log_level", base.log_level)),
    )

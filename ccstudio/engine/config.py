"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CCSTUDIO_* env vars,
or from a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field

from ccstudio.shared.models.message import DEFAULT_MAX_TEXT_BLOCK_CHARS

from .models import PermissionMode

logger = logging.getLogger(__name__)


def _env_list(name: str, default: list[str]) -> list[str]:
    raw = os.getenv(name)
    if raw is None:
        return list(default)
    return [part.strip() for part in raw.split(",") if part.strip()]


@dataclass
class EngineConfig:
    """Session engine configuration."""

    # Backend defaults
    default_model: str = "claude-sonnet-4-20250514"
    default_permission_mode: PermissionMode = PermissionMode.DEFAULT
    default_cwd: str = "."
    # Explicit Claude CLI path. When unset the CLI is discovered on PATH
    # and in the usual install locations.
    claude_cli_path: str | None = None
    setting_sources: list[str] = field(default_factory=lambda: ["user", "project"])

    # Timeouts. Connect and stop bound every backend handshake/teardown.
    connect_timeout_seconds: float = 30.0
    stop_timeout_seconds: float = 5.0
    # One-shot queries give up after this long.
    query_timeout_seconds: float = 600.0
    query_max_turns: int = 10

    # Per-subscriber event queue size in the event bridge.
    event_queue_size: int = 5000
    max_text_block_chars: int = DEFAULT_MAX_TEXT_BLOCK_CHARS

    # Logging
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from CCSTUDIO_* environment variables."""
        overrides = {
            k: v for k, v in os.environ.items() if k.startswith("CCSTUDIO_")
        }
        if overrides:
            logger.info(
                "EngineConfig.from_env: CCSTUDIO_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(overrides.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no CCSTUDIO_* env vars set, using defaults")

        return cls(
            default_model=os.getenv(
                "CCSTUDIO_DEFAULT_MODEL", cls.default_model
            ),
            default_permission_mode=PermissionMode(os.getenv(
                "CCSTUDIO_PERMISSION_MODE", cls.default_permission_mode.value
            )),
            default_cwd=os.getenv("CCSTUDIO_DEFAULT_CWD", cls.default_cwd),
            claude_cli_path=os.getenv("CCSTUDIO_CLAUDE_CLI_PATH") or None,
            setting_sources=_env_list(
                "CCSTUDIO_SETTING_SOURCES", ["user", "project"]
            ),
            connect_timeout_seconds=float(os.getenv(
                "CCSTUDIO_CONNECT_TIMEOUT", str(cls.connect_timeout_seconds)
            )),
            stop_timeout_seconds=float(os.getenv(
                "CCSTUDIO_STOP_TIMEOUT", str(cls.stop_timeout_seconds)
            )),
            query_timeout_seconds=float(os.getenv(
                "CCSTUDIO_QUERY_TIMEOUT", str(cls.query_timeout_seconds)
            )),
            query_max_turns=int(os.getenv(
                "CCSTUDIO_QUERY_MAX_TURNS", str(cls.query_max_turns)
            )),
            event_queue_size=int(os.getenv(
                "CCSTUDIO_EVENT_QUEUE_SIZE", str(cls.event_queue_size)
            )),
            max_text_block_chars=int(os.getenv(
                "CCSTUDIO_MAX_TEXT_BLOCK_CHARS", str(cls.max_text_block_chars)
            )),
            log_level=os.getenv("CCSTUDIO_LOG_LEVEL", cls.log_level),
        )

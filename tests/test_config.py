"""Environment and YAML configuration loading."""
from __future__ import annotations

import os

import pytest

from ccstudio.engine.config import EngineConfig
from ccstudio.engine.models import PermissionMode
from ccstudio.engine.yaml_config import find_config, load_yaml_config


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("CCSTUDIO_"):
            monkeypatch.delenv(key)


def test_defaults() -> None:
    config = EngineConfig.from_env()
    assert config.default_model == "claude-sonnet-4-20250514"
    assert config.default_permission_mode is PermissionMode.DEFAULT
    assert config.setting_sources == ["user", "project"]
    assert config.query_max_turns == 10
    assert config.max_text_block_chars == 65_536


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("CCSTUDIO_PERMISSION_MODE", "acceptEdits")
    monkeypatch.setenv("CCSTUDIO_STOP_TIMEOUT", "2.5")
    monkeypatch.setenv("CCSTUDIO_SETTING_SOURCES", "project, local")
    monkeypatch.setenv("CCSTUDIO_CLAUDE_CLI_PATH", "/opt/claude")

    config = EngineConfig.from_env()

    assert config.default_permission_mode is PermissionMode.ACCEPT_EDITS
    assert config.stop_timeout_seconds == 2.5
    assert config.setting_sources == ["project", "local"]
    assert config.claude_cli_path == "/opt/claude"


def test_yaml_overrides_env(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("CCSTUDIO_QUERY_MAX_TURNS", "7")
    monkeypatch.setenv("CCSTUDIO_DEFAULT_MODEL", "from-env")
    path = tmp_path / "ccstudio.yaml"
    path.write_text(
        "engine:\n"
        "  default_permission_mode: plan\n"
        "  default_model: from-yaml\n"
        "  event_queue_size: 10\n"
        "backend:\n"
        "  cli_path: ~/bin/claude\n"
        "  setting_sources: [project]\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("HOME", str(tmp_path))

    config = load_yaml_config(path)

    assert config.default_permission_mode is PermissionMode.PLAN
    assert config.default_model == "from-yaml"
    assert config.event_queue_size == 10
    assert config.query_max_turns == 7
    assert config.claude_cli_path == str(tmp_path / "bin" / "claude")
    assert config.setting_sources == ["project"]


def test_yaml_rejects_bad_values(tmp_path) -> None:
    bad_mode = tmp_path / "mode.yaml"
    bad_mode.write_text("engine:\n  default_permission_mode: yolo\n", encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid permission mode"):
        load_yaml_config(bad_mode)

    not_mapping = tmp_path / "list.yaml"
    not_mapping.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_yaml_config(not_mapping)


def test_empty_yaml_uses_defaults(tmp_path) -> None:
    path = tmp_path / "empty.yaml"
    path.write_text("", encoding="utf-8")
    assert load_yaml_config(path) == EngineConfig.from_env()


def test_find_config(tmp_path) -> None:
    assert find_config(tmp_path) is None
    target = tmp_path / ".ccstudio" / "ccstudio.yaml"
    target.parent.mkdir()
    target.write_text("engine: {}\n", encoding="utf-8")
    assert find_config(tmp_path) == target

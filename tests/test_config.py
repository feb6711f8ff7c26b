"""Tests for engine configuration loading and environment overrides."""

from __future__ import annotations

from pathlib import Path

import pytest

from conductor.errors import ConfigurationError
from conductor.registry import load_engine_config
from conductor.schemas.config import EngineConfig


def test_bundled_defaults():
    config = load_engine_config(env={})
    assert config.enabled is True
    assert config.auto_advance is False
    assert config.tick_interval == 5.0
    assert config.max_parallel_agents == 4
    assert config.state_dir == ".conductor"
    assert config.history_enabled is True


def test_env_overrides():
    config = load_engine_config(
        env={
            "CONDUCTOR_ENABLED": "false",
            "CONDUCTOR_AUTO_ADVANCE": "yes",
            "CONDUCTOR_TICK_INTERVAL": "2.5",
            "CONDUCTOR_MAX_PARALLEL": "2",
            "CONDUCTOR_STATE_DIR": "/tmp/conductor-state",
            "CONDUCTOR_HISTORY": "0",
        }
    )
    assert config.enabled is False
    assert config.auto_advance is True
    assert config.tick_interval == 2.5
    assert config.max_parallel_agents == 2
    assert config.state_dir == "/tmp/conductor-state"
    assert config.history_enabled is False


def test_numeric_state_dir_stays_a_string():
    config = load_engine_config(env={"CONDUCTOR_STATE_DIR": "1"})
    assert config.state_dir == "1"
    assert config.state_path == Path("1")


def test_max_parallel_of_one_is_an_integer():
    config = load_engine_config(env={"CONDUCTOR_MAX_PARALLEL": "1"})
    assert config.max_parallel_agents == 1
    assert type(config.max_parallel_agents) is int


def test_boolean_words_only_apply_to_boolean_fields():
    config = load_engine_config(
        env={"CONDUCTOR_STATE_DIR": "off", "CONDUCTOR_HISTORY": "off", "CONDUCTOR_ENABLED": "1"}
    )
    assert config.state_dir == "off"
    assert config.history_enabled is False
    assert config.enabled is True


def test_non_boolean_word_for_flag_is_rejected():
    with pytest.raises(ConfigurationError, match="Invalid engine configuration"):
        load_engine_config(env={"CONDUCTOR_ENABLED": "sometimes"})


def test_empty_env_value_is_ignored():
    config = load_engine_config(env={"CONDUCTOR_TICK_INTERVAL": ""})
    assert config.tick_interval == 5.0


def test_invalid_env_value():
    with pytest.raises(ConfigurationError, match="Invalid engine configuration"):
        load_engine_config(env={"CONDUCTOR_TICK_INTERVAL": "-1"})


def test_custom_config_file(tmp_path):
    path = tmp_path / "defaults.toml"
    path.write_text(
        "[engine]\nauto_advance = true\nmax_parallel_agents = 1\nhistory_db_path = 'h.db'\n",
        encoding="utf-8",
    )
    config = load_engine_config(path, env={})
    assert config.auto_advance is True
    assert config.max_parallel_agents == 1
    assert config.tick_interval == 5.0
    assert config.history_path == Path("h.db")


def test_missing_config_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_engine_config(tmp_path / "missing.toml", env={})


def test_history_path_defaults_under_state_dir():
    config = EngineConfig(state_dir="/var/lib/conductor")
    assert config.state_path == Path("/var/lib/conductor")
    assert config.history_path == Path("/var/lib/conductor/history.db")

from pathlib import Path

import pytest
from pydantic import ValidationError

import agent_relay.config as config_module
from agent_relay.config import Config, LoopConfig
from agent_relay.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch: pytest.MonkeyPatch):
    for key in ("RELAY_MODEL__MODEL", "RELAY_LOOP__MAX_ITERATIONS", "RELAY_LOGGING__LEVEL"):
        monkeypatch.delenv(key, raising=False)


def test_defaults_match_loop_bounds():
    cfg = Config()

    assert cfg.loop.max_iterations == 5
    assert cfg.loop.request_timeout_seconds == 55.0
    assert cfg.loop.malformed_tool_calls == "drop"
    assert cfg.model.provider == "anthropic"
    assert cfg.model.max_tokens == 4000


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("model:\n  model: claude-home\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "model:\n"
            "  model: claude-local\n"
            "loop:\n"
            "  max_iterations: 3\n"
            "  malformed_tool_calls: error_result\n"
            "tools:\n"
            "  plugins:\n"
            "    - my_tools:register_all\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.model.model == "claude-local"
    assert cfg.loop.max_iterations == 3
    assert cfg.loop.malformed_tool_calls == "error_result"
    assert cfg.tools.plugins == ["my_tools:register_all"]


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("server:\n  port: 9001\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.server.port == 9001


def test_missing_config_file_gives_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    assert Config.load().loop.max_iterations == 5


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setenv("RELAY_LOOP__MAX_ITERATIONS", "2")

    assert Config.load().loop.max_iterations == 2


def test_invalid_yaml_raises_configuration_error(tmp_path: Path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("model: [unclosed\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        Config.from_yaml(bad)


def test_non_mapping_yaml_raises_configuration_error(tmp_path: Path):
    bad = tmp_path / "list.yaml"
    bad.write_text("- a\n- b\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        Config.from_yaml(bad)


def test_loop_config_validation():
    with pytest.raises(ValidationError):
        LoopConfig(max_iterations=0)
    with pytest.raises(ValidationError):
        LoopConfig(malformed_tool_calls="ignore")


def test_save_round_trips_through_yaml(tmp_path: Path):
    path = tmp_path / "nested" / "config.yaml"
    cfg = Config()
    cfg.loop.iteration_limit_notice = "[truncated]"

    cfg.save(path)

    assert Config.from_yaml(path).loop.iteration_limit_notice == "[truncated]"

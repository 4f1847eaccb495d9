from pathlib import Path

import pytest

import toolstream.config as config_module
from toolstream.config import Config, get_config, set_config
from toolstream.exceptions import ConfigurationError


def test_load_prefers_local_config_yaml(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("agent:\n  max_iterations: 3\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    local_cfg = tmp_path / "config.yaml"
    local_cfg.write_text(
        (
            "agent:\n"
            "  max_iterations: 4\n"
            "  tool_execution_timeout: 12.5\n"
            "tools:\n"
            "  searx:\n"
            "    instances:\n"
            "      - http://searx.internal:8080\n"
        ),
        encoding="utf-8",
    )

    cfg = Config.load()

    assert cfg.agent.max_iterations == 4
    assert cfg.agent.tool_execution_timeout == 12.5
    assert cfg.tools.searx.instances == ["http://searx.internal:8080"]
    assert cfg.tools.searx.language == "pt-BR"


def test_load_falls_back_to_default_path_when_no_local(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)

    home_cfg = tmp_path / "home_config.yaml"
    home_cfg.write_text("context:\n  max_tokens: 32000\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", home_cfg)

    cfg = Config.load()

    assert cfg.context.max_tokens == 32000
    assert cfg.agent.max_iterations == 10


def test_missing_config_uses_defaults(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")

    cfg = Config.load()

    assert cfg.model.provider == "openai"
    assert cfg.context.max_tokens == 128000
    assert cfg.agent.enable_tool_result_summarization is True
    assert cfg.tools.enabled == ["search_searx"]


def test_env_overrides_nested_values(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "absent.yaml")
    monkeypatch.setenv("TOOLSTREAM_AGENT__MAX_ITERATIONS", "2")

    cfg = Config.load()

    assert cfg.agent.max_iterations == 2


def test_save_round_trips_through_yaml(tmp_path: Path):
    cfg = Config()
    cfg.agent.max_iterations = 6
    path = tmp_path / "nested" / "config.yaml"

    cfg.save(path)
    loaded = Config.from_yaml(path)

    assert loaded.agent.max_iterations == 6


def test_set_config_replaces_global_instance():
    old_cfg = get_config()
    try:
        cfg = old_cfg.model_copy(deep=True)
        cfg.context.max_tokens = 1234
        set_config(cfg)
        assert get_config().context.max_tokens == 1234
    finally:
        set_config(old_cfg)


def test_non_mapping_yaml_is_rejected(tmp_path: Path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigurationError):
        Config.from_yaml(path)

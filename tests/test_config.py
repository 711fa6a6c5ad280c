import pytest

from rhythm.config import Config, ConfigError, load_config


def test_dotted_get_and_set():
    config = Config({"scheduler": {"window_days": 5}})
    assert config.get("scheduler.window_days") == 5
    assert config.get("scheduler.missing", 3) == 3
    assert config.get("scheduler.window_days.deeper", "x") == "x"

    config.set("messages.llm.enabled", True)
    assert config.get("messages.llm.enabled") is True
    assert config.as_dict()["messages"] == {"llm": {"enabled": True}}


def test_load_from_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("scheduler:\n  window_days: 7\nmessages:\n  tone: Sage (Wise)\n")
    config = load_config(path)
    assert config.get("scheduler.window_days") == 7
    assert config.get("messages.tone") == "Sage (Wise)"
    assert config.path == path


def test_env_var_path(tmp_path, monkeypatch):
    path = tmp_path / "alt.yaml"
    path.write_text("retry:\n  attempts: 4\n")
    monkeypatch.setenv("RHYTHM_CONFIG", str(path))
    assert load_config().get("retry.attempts") == 4


def test_missing_file_gives_defaults(tmp_path):
    config = load_config(tmp_path / "nope.yaml")
    assert config.get("scheduler.window_days", 3) == 3


def test_invalid_yaml_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("scheduler: [unterminated")
    with pytest.raises(ConfigError):
        load_config(path)


def test_non_mapping_raises(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(path)


def test_shipped_config_parses():
    config = load_config()
    assert config.get("scheduler.window_days") == 3
    assert config.get("scheduler.snooze_options") == [2, 5, 10]

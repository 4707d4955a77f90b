"""Tests for settings resolution and logging setup."""

import logging
import sys
from pathlib import Path

import pytest

from stepflow.settings import (
    EngineSettings,
    SettingsLoader,
    configure_logging,
    load_settings,
)


def _write_config(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


def test_defaults(isolated_home: None) -> None:
    settings = load_settings()

    assert settings == EngineSettings()
    assert settings.log_level == "INFO"
    assert settings.checkpoint_before_transition is True
    assert settings.max_context_bytes == 10240
    assert settings.stale_after_hours == 24
    assert settings.max_checkpoint_age_days == 7
    assert settings.state_dir is None


def test_explicit_path(isolated_home: None, tmp_path: Path) -> None:
    path = _write_config(
        tmp_path / "stepflow.yml",
        "log_level: debug\nstale_after_hours: 48\ncheckpoint_before_transition: false\n",
    )
    settings = load_settings(path)

    assert settings.log_level == "DEBUG"
    assert settings.stale_after_hours == 48
    assert settings.checkpoint_before_transition is False


def test_home_config(isolated_home: None, tmp_path: Path) -> None:
    _write_config(tmp_path / "home" / ".stepflow" / "config.yml", "max_history_warning: 5\n")
    assert load_settings().max_history_warning == 5


def test_env_config_path(
    isolated_home: None, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = _write_config(tmp_path / "env.yml", "max_context_bytes: 99\n")
    monkeypatch.setenv("STEPFLOW_CONFIG", str(path))

    loader = SettingsLoader()
    assert loader.get_config_path() == path
    assert loader.load().max_context_bytes == 99


def test_env_overrides_file(
    isolated_home: None, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    path = _write_config(tmp_path / "stepflow.yml", "stale_after_hours: 48\n")
    monkeypatch.setenv("STEPFLOW_STALE_AFTER_HOURS", "6")
    monkeypatch.setenv("STEPFLOW_STATE_DIR", str(tmp_path / "state"))

    settings = load_settings(path)

    assert settings.stale_after_hours == 6
    assert settings.state_dir == tmp_path / "state"


def test_missing_explicit_path_falls_back_to_defaults(
    isolated_home: None, tmp_path: Path
) -> None:
    loader = SettingsLoader(tmp_path / "absent.yml")
    assert loader.get_config_path() is None
    assert loader.load() == EngineSettings()


def test_settings_are_cached(isolated_home: None, tmp_path: Path) -> None:
    path = _write_config(tmp_path / "stepflow.yml", "max_history_warning: 5\n")
    loader = SettingsLoader(path)
    first = loader.load()

    path.write_text("max_history_warning: 50\n", encoding="utf-8")
    assert loader.load() is first


@pytest.mark.parametrize(
    "content",
    [
        "log_level: LOUD\n",
        "max_context_bytes: -1\n",
        "unknown_option: true\n",
        "- not\n- a mapping\n",
    ],
)
def test_invalid_config(isolated_home: None, tmp_path: Path, content: str) -> None:
    path = _write_config(tmp_path / "stepflow.yml", content)
    with pytest.raises(ValueError):
        load_settings(path)


def test_invalid_env_override(isolated_home: None, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("STEPFLOW_MAX_HISTORY_WARNING", "many")
    with pytest.raises(ValueError, match="environment"):
        load_settings()


class TestConfigureLogging:
    @pytest.fixture
    def basic_config_calls(self, monkeypatch: pytest.MonkeyPatch) -> list[dict]:
        calls: list[dict] = []
        monkeypatch.setattr(logging, "basicConfig", lambda **kwargs: calls.append(kwargs))
        return calls

    def test_explicit_level(self, basic_config_calls: list[dict]) -> None:
        configure_logging("debug")

        assert basic_config_calls[0]["level"] == logging.DEBUG
        assert basic_config_calls[0]["stream"] is sys.stderr
        assert "%(levelname)s" in basic_config_calls[0]["format"]

    def test_level_from_environment(
        self, isolated_home: None, monkeypatch: pytest.MonkeyPatch, basic_config_calls: list[dict]
    ) -> None:
        monkeypatch.setenv("STEPFLOW_LOG_LEVEL", "WARNING")
        configure_logging()
        assert basic_config_calls[0]["level"] == logging.WARNING

    def test_invalid_level_falls_back_to_info(
        self, basic_config_calls: list[dict], capsys: pytest.CaptureFixture[str]
    ) -> None:
        configure_logging("chatty")

        assert basic_config_calls[0]["level"] == logging.INFO
        assert "Invalid log level 'CHATTY'" in capsys.readouterr().err

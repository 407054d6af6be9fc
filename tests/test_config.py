"""Tests for configuration loading, validation and hot-reload."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from notetriage.config import (
    build_config,
    get_config,
    load_config,
    reload_config_if_changed,
    validate_config_file,
)
from notetriage.config_schema import AppConfig, DatabaseConfig, OllamaConfig, ThresholdsConfig
from notetriage.core.errors import ConfigLoadError, ConfigValidationError


class TestSchema:
    """Tests for the Pydantic config schema."""

    def test_defaults(self) -> None:
        config = AppConfig()
        assert config.ollama.base_url == "http://localhost:11434"
        assert config.ollama.model == "qwen2.5:3b"
        assert config.thresholds.auto_apply_high == 0.85
        assert config.thresholds.auto_apply_mid == 0.7
        assert config.rules.confidence_ceiling == 0.95

    def test_base_url_trailing_slash_stripped(self) -> None:
        assert OllamaConfig(base_url="http://host:11434/").base_url == "http://host:11434"

    def test_base_url_scheme_required(self) -> None:
        with pytest.raises(ValidationError):
            OllamaConfig(base_url="host:11434")

    def test_threshold_ordering(self) -> None:
        with pytest.raises(ValidationError):
            ThresholdsConfig(auto_apply_high=0.6, auto_apply_mid=0.7)

    def test_equal_thresholds_allowed(self) -> None:
        thresholds = ThresholdsConfig(auto_apply_high=0.8, auto_apply_mid=0.8)
        assert thresholds.auto_apply_mid == 0.8

    def test_database_path_traversal_rejected(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseConfig(path="../outside.db")


class TestLoading:
    """Tests for load_config / get_config."""

    def test_load_valid_file(self, config_file: Path) -> None:
        config = load_config(config_file)
        assert config.ollama.base_url == "http://ollama.test:11434"
        assert config.batch.max_concurrent == 2

    def test_missing_file_raises(self, temp_config_dir: Path) -> None:
        with pytest.raises(ConfigLoadError):
            load_config(temp_config_dir / "missing.yaml")

    def test_invalid_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "bad.yaml"
        path.write_text("ollama: [unclosed")
        with pytest.raises(ConfigLoadError):
            load_config(path)

    def test_non_mapping_yaml(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigLoadError):
            load_config(path)

    def test_validation_error_names_field(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "invalid.yaml"
        path.write_text("batch:\n  max_concurrent: many\n")
        with pytest.raises(ConfigValidationError, match="batch.max_concurrent"):
            load_config(path)

    def test_newer_schema_version_rejected(self, temp_config_dir: Path) -> None:
        path = temp_config_dir / "future.yaml"
        path.write_text("schema_version: 99\n")
        with pytest.raises(ConfigValidationError, match="schema_version 99"):
            load_config(path)

    def test_env_overrides(self, config_file: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434")
        monkeypatch.setenv("OLLAMA_MODEL", "llama3")
        config = load_config(config_file)
        assert config.ollama.base_url == "http://gpu-box:11434"
        assert config.ollama.model == "llama3"

    def test_get_config_singleton(self, set_config_env: None) -> None:
        first = get_config()
        assert get_config() is first
        assert first.ollama.timeout_seconds == 5

    def test_get_config_defaults_without_file(
        self, temp_config_dir: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("NOTETRIAGE_CONFIG_PATH", str(temp_config_dir / "absent.yaml"))
        config = get_config()
        assert config.ollama.model == "qwen2.5:3b"
        assert reload_config_if_changed() is False


class TestHotReload:
    """Tests for reload_config_if_changed."""

    def _touch_later(self, path: Path) -> None:
        stat = path.stat()
        os.utime(path, (stat.st_atime + 10, stat.st_mtime + 10))

    def test_unchanged(self, set_config_env: None) -> None:
        get_config()
        assert reload_config_if_changed() is False

    def test_changed_file_reloaded(self, set_config_env: None, config_file: Path) -> None:
        get_config()
        config_file.write_text("ollama:\n  model: llama3\n")
        self._touch_later(config_file)

        assert reload_config_if_changed() is True
        assert get_config().ollama.model == "llama3"

    def test_invalid_change_keeps_previous(self, set_config_env: None, config_file: Path) -> None:
        previous = get_config()
        config_file.write_text("thresholds:\n  auto_apply_high: 0.5\n  auto_apply_mid: 0.9\n")
        self._touch_later(config_file)

        assert reload_config_if_changed() is False
        assert get_config() is previous


class TestValidateConfigFile:
    def test_valid(self, config_file: Path) -> None:
        ok, message = validate_config_file(config_file)
        assert ok is True
        assert "qwen2.5:3b" in message

    def test_invalid(self, temp_config_dir: Path) -> None:
        ok, message = validate_config_file(temp_config_dir / "missing.yaml")
        assert ok is False
        assert message.startswith("Load error")

    def test_db_path_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("NOTETRIAGE_DB_PATH", "/tmp/elsewhere.db")
        assert build_config({}).database.path == "/tmp/elsewhere.db"

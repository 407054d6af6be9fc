"""Pytest fixtures and configuration for notetriage tests.

Provides common fixtures for configuration, database, and mocking.
"""

import os
from pathlib import Path
from typing import Any, Generator

import pytest

from notetriage.config import reset_config
from notetriage.config_schema import AppConfig
from notetriage.db.store import DatabaseStore


@pytest.fixture(autouse=True)
def reset_config_singleton() -> Generator[None, None, None]:
    """Reset the config singleton before each test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def temp_config_dir(tmp_path: Path) -> Path:
    """Create a temporary config directory."""
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    return config_dir


@pytest.fixture
def sample_config_yaml() -> str:
    """Return a minimal valid config.yaml content."""
    return """
schema_version: 1

ollama:
  base_url: "http://ollama.test:11434"
  model: "qwen2.5:3b"
  timeout_seconds: 5

batch:
  max_concurrent: 2
  inter_batch_delay_ms: 0
  max_candidates: 20

thresholds:
  auto_apply_high: 0.85
  auto_apply_mid: 0.7
"""


@pytest.fixture
def sample_config_dict() -> dict[str, Any]:
    """Return a minimal valid config as a dictionary."""
    return {
        "schema_version": 1,
        "ollama": {
            "base_url": "http://ollama.test:11434",
            "model": "qwen2.5:3b",
            "timeout_seconds": 5,
        },
        "batch": {
            "max_concurrent": 2,
            "inter_batch_delay_ms": 0,
            "max_candidates": 20,
        },
        "thresholds": {
            "auto_apply_high": 0.85,
            "auto_apply_mid": 0.7,
        },
    }


@pytest.fixture
def sample_config(sample_config_dict: dict[str, Any]) -> AppConfig:
    """Return a minimal valid AppConfig instance."""
    return AppConfig(**sample_config_dict)


@pytest.fixture
def config_file(temp_config_dir: Path, sample_config_yaml: str) -> Path:
    """Create a temporary config file with valid content."""
    config_path = temp_config_dir / "config.yaml"
    config_path.write_text(sample_config_yaml)
    return config_path


@pytest.fixture
def set_config_env(config_file: Path) -> Generator[None, None, None]:
    """Set the NOTETRIAGE_CONFIG_PATH environment variable."""
    old_value = os.environ.get("NOTETRIAGE_CONFIG_PATH")
    os.environ["NOTETRIAGE_CONFIG_PATH"] = str(config_file)
    yield
    if old_value is None:
        del os.environ["NOTETRIAGE_CONFIG_PATH"]
    else:
        os.environ["NOTETRIAGE_CONFIG_PATH"] = old_value


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data = tmp_path / "data"
    data.mkdir()
    return data


@pytest.fixture
async def store(data_dir: Path) -> DatabaseStore:
    """Return an initialized DatabaseStore."""
    s = DatabaseStore(data_dir / "test.db")
    await s.initialize()
    return s

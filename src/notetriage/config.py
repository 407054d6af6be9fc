"""YAML configuration with environment overrides and hot-reload.

Resolution order for every setting: environment override, then
config.yaml, then the schema default. A missing config.yaml is not an
error; the tool runs on defaults so a fresh checkout works against a
local Ollama out of the box.

The loaded AppConfig is cached process-wide. Scheduled batches call
reload_config_if_changed() first, so threshold or model edits take
effect on the next batch without a restart.

Usage:
    from notetriage.config import get_config, reload_config_if_changed

    config = get_config()

    if reload_config_if_changed():
        engine.update_config(get_config())
"""

import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from notetriage.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from notetriage.core.errors import ConfigLoadError, ConfigValidationError
from notetriage.core.logging import get_logger

logger = get_logger(__name__)

CONFIG_PATH_ENV = "NOTETRIAGE_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("config/config.yaml")

# Environment variable -> (config section, field)
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "OLLAMA_BASE_URL": ("ollama", "base_url"),
    "OLLAMA_MODEL": ("ollama", "model"),
    "NOTETRIAGE_DB_PATH": ("database", "path"),
    "NOTETRIAGE_LOG_LEVEL": ("logging", "level"),
}


@dataclass
class _CachedConfig:
    config: AppConfig | None = None
    path: Path | None = None  # None when running on defaults
    mtime: float = 0.0


_lock = threading.Lock()
_cache = _CachedConfig()


def config_path() -> Path:
    """Path of config.yaml: $NOTETRIAGE_CONFIG_PATH or config/config.yaml."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    return Path(env_path) if env_path else DEFAULT_CONFIG_PATH


def _describe_errors(error: ValidationError) -> str:
    lines = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "(root)"
        kind = err["type"]
        if kind == "missing":
            lines.append(f"  - {location}: required field is missing")
        elif kind in ("int_parsing", "int_type"):
            lines.append(f"  - {location}: expected an integer, got {err.get('input')!r}")
        elif kind in ("float_parsing", "float_type"):
            lines.append(f"  - {location}: expected a number, got {err.get('input')!r}")
        elif kind == "extra_forbidden":
            lines.append(f"  - {location}: unknown setting")
        else:
            lines.append(f"  - {location}: {err['msg']}")
    return "\n".join(lines)


def _with_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    merged = dict(data)
    for env_var, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_var)
        if not value:
            continue
        merged[section] = {**(merged.get(section) or {}), key: value}
        logger.debug("config_env_override", env_var=env_var, setting=f"{section}.{key}")
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    """Parse config.yaml into a mapping.

    Raises:
        ConfigLoadError: If the file is missing, unreadable or not a mapping
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} to get started"
        ) from e
    except OSError as e:
        raise ConfigLoadError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"{path} must contain a YAML mapping at the top level, got {type(data).__name__}"
        )
    return data


def build_config(data: dict[str, Any], source: str = "defaults") -> AppConfig:
    """Validate raw settings (plus environment overrides) into an AppConfig.

    Raises:
        ConfigValidationError: On any schema violation or a too-new schema_version
    """
    try:
        config = AppConfig(**_with_env_overrides(data))
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid configuration in {source}:\n{_describe_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{source} uses schema_version {config.schema_version}, but this version of "
            f"notetriage only understands up to {CURRENT_SCHEMA_VERSION}. "
            "Upgrade notetriage or lower schema_version."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a config file, bypassing the cache.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If the contents are invalid
    """
    path = path or config_path()
    config = build_config(_read_yaml(path), source=str(path))
    logger.info(
        "config_loaded",
        path=str(path),
        model=config.ollama.model,
        auto_apply_high=config.thresholds.auto_apply_high,
        auto_apply_mid=config.thresholds.auto_apply_mid,
    )
    return config


def get_config() -> AppConfig:
    """Cached configuration, loaded on first use.

    Safe to call from the scheduler and request handlers concurrently.

    Raises:
        ConfigLoadError: If config.yaml exists but cannot be loaded
        ConfigValidationError: If config.yaml is invalid
    """
    with _lock:
        if _cache.config is None:
            path = config_path()
            if path.exists():
                _cache.config = load_config(path)
                _cache.path = path
                _cache.mtime = path.stat().st_mtime
            else:
                logger.info("config_file_missing_using_defaults", path=str(path))
                _cache.config = build_config({})
                _cache.path = None
        return _cache.config


def reload_config_if_changed() -> bool:
    """Reload config.yaml if its mtime moved since the last load.

    An invalid edit is logged and ignored: the previous configuration stays
    active and the same edit is not retried until the file changes again.

    Returns:
        True if a new configuration is now active
    """
    with _lock:
        if _cache.path is None:
            return False

        try:
            mtime = _cache.path.stat().st_mtime
        except OSError as e:
            logger.warning("config_stat_failed", path=str(_cache.path), error=str(e))
            return False
        if mtime <= _cache.mtime:
            return False

        _cache.mtime = mtime
        try:
            _cache.config = load_config(_cache.path)
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning("config_reload_rejected", path=str(_cache.path), error=str(e))
            return False

        logger.info("config_reloaded", path=str(_cache.path))
        return True


def describe_config(config: AppConfig) -> str:
    """Short human-readable summary of the settings that matter most."""
    return (
        f"  - model: {config.ollama.model} at {config.ollama.base_url}\n"
        f"  - thresholds: high={config.thresholds.auto_apply_high} "
        f"mid={config.thresholds.auto_apply_mid}\n"
        f"  - batch: {config.batch.max_candidates} candidates, "
        f"{config.batch.max_concurrent} concurrent, "
        f"schedule {'on' if config.batch.schedule_enabled else 'off'}\n"
        f"  - database: {config.database.path}"
    )


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a config file without touching the cache.

    Returns:
        (is_valid, message) suitable for printing
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"
    return True, f"Configuration valid (schema version {config.schema_version})\n" + describe_config(
        config
    )


def reset_config() -> None:
    """Forget the cached configuration (tests)."""
    global _cache
    with _lock:
        _cache = _CachedConfig()

"""Pydantic configuration schema for notetriage.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from notetriage.config_schema import AppConfig

    # Validate a config dict
    config = AppConfig(**yaml_data)
"""

from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1


class OllamaConfig(BaseModel):
    """Local inference endpoint configuration."""

    base_url: str = Field(
        default="http://localhost:11434",
        description="Base URL of the Ollama-compatible inference server",
    )
    model: str = Field(
        default="qwen2.5:3b",
        description="Model name used for re-classification",
    )
    timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600,
        description="Hard timeout for a single classification request",
    )
    health_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        le=60,
        description="Timeout for the model-list availability check",
    )
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    num_predict: int = Field(
        default=1000,
        ge=64,
        le=8192,
        description="Maximum tokens the model may generate",
    )
    num_ctx: int = Field(
        default=8192,
        ge=512,
        le=131072,
        description="Context window requested from the model",
    )
    context_limit: int = Field(
        default=4000,
        ge=200,
        le=100000,
        description="Hard character limit for note content sent to the model",
    )
    default_seed: int = Field(default=42, ge=0)

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) URL and strip the trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("Ollama base_url must start with http:// or https://")
        return v.rstrip("/")


class BatchConfig(BaseModel):
    """Re-classification batch configuration."""

    max_concurrent: int = Field(
        default=2,
        ge=1,
        le=16,
        description="Concurrent inference calls per window",
    )
    inter_batch_delay_ms: int = Field(
        default=500,
        ge=0,
        le=60000,
        description="Pause between concurrency windows (milliseconds)",
    )
    max_candidates: int = Field(
        default=20,
        ge=1,
        le=500,
        description="Candidate limit per batch",
    )
    low_confidence_threshold: float = Field(
        default=0.5,
        ge=0.0,
        le=1.0,
        description="Baseline confidence below which a note becomes a candidate",
    )
    schedule_enabled: bool = Field(
        default=False,
        description="Run batches on an interval while serving",
    )
    schedule_interval_minutes: int = Field(default=60, ge=1, le=10080)


class ThresholdsConfig(BaseModel):
    """Confidence thresholds for status assignment."""

    auto_apply_high: float = Field(
        default=0.85,
        ge=0.0,
        le=1.0,
        description="At or above: auto_applied",
    )
    auto_apply_mid: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="At or above (and below high): auto_applied_notified",
    )

    @model_validator(mode="after")
    def validate_ordering(self) -> "ThresholdsConfig":
        """The mid threshold cannot exceed the high threshold."""
        if self.auto_apply_mid > self.auto_apply_high:
            raise ValueError(
                f"auto_apply_mid ({self.auto_apply_mid}) must be <= "
                f"auto_apply_high ({self.auto_apply_high})"
            )
        return self


class RulesConfig(BaseModel):
    """Rule classifier configuration."""

    confidence_ceiling: float = Field(
        default=0.95,
        gt=0.0,
        lt=1.0,
        description="Maximum confidence the rule classifier may report",
    )


class FewShotConfig(BaseModel):
    """Few-shot example selection configuration."""

    cache_ttl_seconds: float = Field(default=60.0, ge=0, le=3600)
    max_examples_per_type: int = Field(default=2, ge=0, le=10)
    min_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    max_content_length: int = Field(default=200, ge=20, le=2000)


class PromotionConfig(BaseModel):
    """Promotion detector configuration."""

    near_threshold: float = Field(
        default=0.55,
        ge=0.0,
        le=1.0,
        description="Minimum scratch confidence before a promotion is suggested",
    )
    pending_list_limit: int = Field(default=20, ge=1, le=500)


class DatabaseConfig(BaseModel):
    """SQLite database configuration."""

    path: str = Field(
        default="data/notetriage.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    json_output: bool = Field(default=True, description="JSON logs (False: console)")


class AppConfig(BaseModel):
    """Root configuration schema for notetriage.

    If validation fails on startup, the application exits with a clear error.
    If validation fails on hot-reload, the previous valid config is kept.
    """

    schema_version: int = Field(
        default=CURRENT_SCHEMA_VERSION,
        ge=1,
        description="Config schema version for migration tracking",
    )

    ollama: OllamaConfig = Field(default_factory=OllamaConfig)
    batch: BatchConfig = Field(default_factory=BatchConfig)
    thresholds: ThresholdsConfig = Field(default_factory=ThresholdsConfig)
    rules: RulesConfig = Field(default_factory=RulesConfig)
    few_shot: FewShotConfig = Field(default_factory=FewShotConfig)
    promotion: PromotionConfig = Field(default_factory=PromotionConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

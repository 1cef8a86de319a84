"""Pydantic configuration models for the learning engine."""

import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from learning.confidence import DecayConfig

VALID_LLM_PROVIDERS = {"auto", "openai"}


class LLMConfig(BaseModel):
    """Chat provider used for insight extraction."""

    provider: str = "auto"
    model: Optional[str] = None  # None = use provider default
    api_key: Optional[str] = None
    max_insights: int = 15

    @field_validator("provider")
    @classmethod
    def validate_provider(cls, v: str) -> str:
        if v not in VALID_LLM_PROVIDERS:
            raise ValueError(f"Invalid LLM provider: {v}. Must be one of {VALID_LLM_PROVIDERS}")
        return v


class EmbeddingsConfig(BaseModel):
    """Semantic duplicate detection. Disabled means textual matching only."""

    enabled: bool = False
    provider: str = "openai"
    model: Optional[str] = None
    api_key: Optional[str] = None
    batch_size: int = Field(default=100, gt=0)
    cache_size: int = Field(default=1000, gt=0)
    similarity_threshold: float = 0.9

    @field_validator("similarity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"similarity_threshold must be in (0, 1], got {v}")
        return v


class PathsConfig(BaseModel):
    """File paths configuration."""

    db: Path = Path("~/.kblearn/kblearn.db")
    log_file: Path = Path("~/.kblearn/kblearn.log")

    @model_validator(mode="after")
    def expand_paths(self):
        """Expand ~ in all paths."""
        self.db = self.db.expanduser()
        self.log_file = self.log_file.expanduser()
        return self


class LearningConfig(BaseModel):
    """Dedup, scheduling and conflict thresholds."""

    min_confidence: int = Field(default=80, ge=1, le=100)
    batch_size: int = Field(default=100, gt=0)
    duplicate_window_days: int = Field(default=30, gt=0)
    similarity_threshold: float = 0.85
    high_confidence_override: int = Field(default=90, ge=1, le=100)

    @field_validator("similarity_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 < v <= 1.0:
            raise ValueError(f"similarity_threshold must be in (0, 1], got {v}")
        return v


class AuditConfig(BaseModel):
    """Bounds for provenance kept in the knowledge bag."""

    max_entries: int = Field(default=1000, gt=0)
    max_snapshots: int = Field(default=50, gt=0)
    max_metric_entries: int = Field(default=100, gt=0)
    background: bool = False  # True = side channels on a thread pool


class LeaseConfig(BaseModel):
    """Per-knowledge-base write lease."""

    ttl_seconds: int = Field(default=300, gt=0)
    attempts: int = Field(default=5, gt=0)
    wait_seconds: float = Field(default=0.5, ge=0)


class RetryConfig(BaseModel):
    """Retry/backoff configuration."""

    max_attempts: int = 3
    min_wait: float = 1.0
    max_wait: float = 10.0
    llm_max_wait: float = 30.0


VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    json_output: bool = False
    to_file: bool = False

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        v_upper = v.upper()
        if v_upper not in VALID_LOG_LEVELS:
            raise ValueError(f"Invalid log level: {v}. Must be one of {VALID_LOG_LEVELS}")
        return v_upper


def _expand_env(value: Optional[str]) -> Optional[str]:
    if value and value.startswith("${") and value.endswith("}"):
        return os.getenv(value[2:-1], "")
    return value


class EngineConfig(BaseModel):
    """Main configuration model."""

    llm: LLMConfig = Field(default_factory=LLMConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    learning: LearningConfig = Field(default_factory=LearningConfig)
    decay: DecayConfig = Field(default_factory=DecayConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)
    lease: LeaseConfig = Field(default_factory=LeaseConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def expand_env_vars(self):
        """Expand ${VAR} patterns in API keys."""
        self.llm.api_key = _expand_env(self.llm.api_key)
        self.embeddings.api_key = _expand_env(self.embeddings.api_key)
        return self

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        """Create config from dict; string paths are accepted."""
        if "paths" in data:
            for key in ["db", "log_file"]:
                if key in data["paths"] and isinstance(data["paths"][key], str):
                    data["paths"][key] = Path(data["paths"][key])
        return cls.model_validate(data)

    def to_dict(self) -> dict:
        return self.model_dump(mode="python")

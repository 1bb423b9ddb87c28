from __future__ import annotations

import functools
import os
import pathlib
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationInfo, field_validator

from .errors import ConfigError

_RESOURCES = pathlib.Path(__file__).parent / "resources"


class RetryConfig(BaseModel):
    attempts: int = Field(default=3, ge=1)
    backoff_seconds: float = Field(default=1.0, ge=0)


class AppConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "info"
    request_timeout_s: int = Field(default=60, ge=1)


class StoreConfig(BaseModel):
    backend: str = "memory"
    dsn: Optional[str] = Field(default=None, validate_default=True)
    min_pool_size: int = Field(default=1, ge=1)
    max_pool_size: int = Field(default=10, ge=1)

    @field_validator("backend")
    @classmethod
    def validate_backend(cls, v: str) -> str:
        if v not in {"memory", "postgres"}:
            raise ValueError("store.backend must be 'memory' or 'postgres'")
        return v

    @field_validator("dsn")
    @classmethod
    def validate_dsn(cls, v: Optional[str], info: ValidationInfo) -> Optional[str]:
        if info.data.get("backend") == "postgres" and not v:
            raise ValueError("store.dsn is required for the postgres backend")
        return v


class TargetPoolConfig(BaseModel):
    min_pool_size: int = Field(default=1, ge=0)
    max_pool_size: int = Field(default=5, ge=1)
    connect_timeout_s: float = Field(default=10.0, gt=0)
    idle_lifetime_s: float = Field(default=300.0, gt=0)

    @field_validator("max_pool_size")
    @classmethod
    def validate_pool_sizes(cls, v: int, info: ValidationInfo) -> int:
        min_size = info.data.get("min_pool_size", 0)
        if v < min_size:
            raise ValueError("max_pool_size must be >= min_pool_size")
        return v


class RedisConfig(BaseModel):
    enabled: bool = False
    url: str = "redis://localhost:6379/0"
    schema_cache_ttl_s: int = Field(default=7200, ge=60)


class LLMConfig(BaseModel):
    provider: str = "openai"
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    temperature: float = Field(default=0.0, ge=0.0, le=1.0)
    max_tokens: int = Field(default=2000, ge=1)
    timeout_s: float = Field(default=30.0, gt=0)
    retry: RetryConfig = Field(default_factory=RetryConfig)


class SchemaConfig(BaseModel):
    max_prompt_chars: int = Field(default=12000, ge=512)
    max_age_s: Optional[int] = Field(default=86400, ge=60)
    include_schemas: List[str] = Field(default_factory=lambda: ["public"])
    ranker_top_n: int = Field(default=25, ge=1)


class SynthesisConfig(BaseModel):
    dialect: str = "postgres"
    clarification_threshold: int = Field(default=70, ge=0, le=100)
    low_confidence_warning: int = Field(default=80, ge=0, le=100)
    fallback_confidence: int = Field(default=70, ge=0, le=100)
    history_window: int = Field(default=3, ge=0)
    examples_path: str = str(_RESOURCES / "examples.json")
    response_schema_path: str = str(_RESOURCES / "generation_schema.json")


class ExecutionConfig(BaseModel):
    default_timeout_s: float = Field(default=30.0, gt=0)
    max_timeout_s: float = Field(default=120.0, gt=0)
    default_max_rows: int = Field(default=1000, ge=1)

    @field_validator("max_timeout_s")
    @classmethod
    def validate_timeouts(cls, v: float, info: ValidationInfo) -> float:
        if v < info.data.get("default_timeout_s", 0):
            raise ValueError("max_timeout_s must be >= default_timeout_s")
        return v


class PresentationConfig(BaseModel):
    cap_width: int = Field(default=50, ge=4)
    table_max_rows: int = Field(default=100, ge=1)
    preview_rows: int = Field(default=5, ge=1)


class ObservabilityConfig(BaseModel):
    service_name: str = "sqlask"
    metrics_port: int = Field(default=0, ge=0)
    history_log_path: str = "logs/query_history.log"


class Settings(BaseModel):
    environment: str = "development"
    app: AppConfig = Field(default_factory=AppConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    targets: TargetPoolConfig = Field(default_factory=TargetPoolConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    schema_cache: SchemaConfig = Field(default_factory=SchemaConfig)
    synthesis: SynthesisConfig = Field(default_factory=SynthesisConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    presentation: PresentationConfig = Field(default_factory=PresentationConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


def _load_yaml(path: pathlib.Path) -> Dict:
    with path.open("r", encoding="utf-8") as fh:
        return yaml.safe_load(fh) or {}


@functools.lru_cache(maxsize=1)
def load_settings(path: Optional[str] = None) -> Settings:
    cfg_path = pathlib.Path(path or os.environ.get("SQLASK_CONFIG", "config.yaml")).resolve()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found at {cfg_path}")
    raw = _load_yaml(cfg_path)
    return Settings(**raw)


def get_settings() -> Settings:
    return load_settings()


__all__ = [
    "AppConfig",
    "ExecutionConfig",
    "LLMConfig",
    "ObservabilityConfig",
    "PresentationConfig",
    "RedisConfig",
    "RetryConfig",
    "SchemaConfig",
    "Settings",
    "StoreConfig",
    "SynthesisConfig",
    "TargetPoolConfig",
    "get_settings",
    "load_settings",
]

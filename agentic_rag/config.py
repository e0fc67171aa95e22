"""
Runtime configuration.

Settings come from three layers, later layers winning:

  1. Defaults declared on the pydantic models below
  2. An optional YAML file (config/config.yaml by convention)
  3. Environment variables (a .env file is loaded first via python-dotenv)

Environment overrides:
  AGENTIC_RAG_DATABASE_URL          database.url
  AGENTIC_RAG_EMBEDDING_MODEL       embedding.model
  AGENTIC_RAG_EMBEDDING_DIMENSIONS  embedding.dimensions
  AGENTIC_RAG_CHAT_PROVIDER         generation.provider
  AGENTIC_RAG_CHAT_MODEL            generation.model
  AGENTIC_RAG_LOG_LEVEL             logging.level
  OPENAI_BASE_URL                   embedding.base_url / generation.base_url
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from agentic_rag.errors import ConfigurationError


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///data/agentic_rag.db"
    echo: bool = False


class EmbeddingSettings(BaseModel):
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    batch_size: int = 512
    base_url: Optional[str] = None

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("embedding model name must not be blank")
        return v.strip()

    @field_validator("dimensions", "batch_size")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be > 0")
        return v


class GenerationSettings(BaseModel):
    provider: Literal["openai", "anthropic"] = "openai"
    model: str = "gpt-4o-mini"
    temperature: float = 0.0
    max_tokens: int = 1024
    base_url: Optional[str] = None

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("chat model name must not be blank")
        return v.strip()


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: str = "logs/agentic_rag.log"


class Settings(BaseModel):
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    embedding: EmbeddingSettings = Field(default_factory=EmbeddingSettings)
    generation: GenerationSettings = Field(default_factory=GenerationSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


# (env var, section, key, caster)
_ENV_OVERRIDES: list[tuple[str, str, str, type]] = [
    ("AGENTIC_RAG_DATABASE_URL", "database", "url", str),
    ("AGENTIC_RAG_EMBEDDING_MODEL", "embedding", "model", str),
    ("AGENTIC_RAG_EMBEDDING_DIMENSIONS", "embedding", "dimensions", int),
    ("AGENTIC_RAG_CHAT_PROVIDER", "generation", "provider", str),
    ("AGENTIC_RAG_CHAT_MODEL", "generation", "model", str),
    ("AGENTIC_RAG_LOG_LEVEL", "logging", "level", str),
    ("OPENAI_BASE_URL", "embedding", "base_url", str),
    ("OPENAI_BASE_URL", "generation", "base_url", str),
]


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config root in {path} must be a mapping")
    return data


def _apply_env(raw: dict[str, Any]) -> dict[str, Any]:
    for env_key, section, key, caster in _ENV_OVERRIDES:
        value = os.getenv(env_key)
        if value is None or value == "":
            continue
        try:
            cast_value = caster(value)
        except ValueError as exc:
            raise ConfigurationError(f"{env_key} must be {caster.__name__}, got: {value}") from exc
        raw.setdefault(section, {})[key] = cast_value
    return raw


def load_settings(path: str | Path | None = None) -> Settings:
    """Build Settings from defaults, an optional YAML file and the environment."""
    load_dotenv()
    raw: dict[str, Any] = _load_yaml(Path(path)) if path else {}
    raw = _apply_env(raw)
    try:
        return Settings.model_validate(raw)
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc

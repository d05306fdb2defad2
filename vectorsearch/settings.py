"""
Configuration models.

Settings live in `config/config.yaml` and are validated with Pydantic.
API keys never go in the YAML file -- the OpenAI / Anthropic SDKs read
OPENAI_API_KEY / ANTHROPIC_API_KEY from the environment (loaded from .env
by python-dotenv).
"""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

DEFAULT_CONFIG_PATH = "config/config.yaml"


class AppSettings(BaseModel):
    """Chunking, retrieval, and conversation limits."""

    embedding_batch_size: int = Field(default=32, gt=0)
    max_tokens_per_line: int = Field(default=300, gt=0)
    max_tokens_per_paragraph: int = Field(default=1000, gt=0)
    overlap_tokens: int = Field(default=100, ge=0)
    max_relevant_chunks: int = Field(default=5, gt=0)
    max_input_tokens: int = Field(default=16385, gt=0)
    max_output_tokens: int = Field(default=800, gt=0)
    message_limit: int = Field(default=20, gt=0)
    message_expiration: int = Field(default=3600, gt=0)   # seconds, sliding
    use_full_text_search: bool = False

    @model_validator(mode="after")
    def _check_budgets(self) -> "AppSettings":
        if self.overlap_tokens >= self.max_tokens_per_paragraph:
            raise ValueError("overlap_tokens must be smaller than max_tokens_per_paragraph")
        if self.max_output_tokens >= self.max_input_tokens:
            raise ValueError("max_output_tokens must be smaller than max_input_tokens")
        return self

    @property
    def message_expiration_delta(self) -> timedelta:
        return timedelta(seconds=self.message_expiration)


class AISettings(BaseModel):
    """Model identifiers for the chat completion and embedding providers."""

    provider: Literal["openai", "anthropic"] = "openai"
    chat_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = Field(default=1536, gt=0)
    temperature: float = 0.1


class StorageSettings(BaseModel):
    index_dir: Optional[str] = "data/index"


class CacheSettings(BaseModel):
    backend: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "conversation"


class LoggingSettings(BaseModel):
    level: str = "INFO"
    file: Optional[str] = "logs/vectorsearch.log"
    serialize: bool = False
    rotation: str = "10 MB"
    retention: str = "7 days"


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    ai: AISettings = Field(default_factory=AISettings)
    storage: StorageSettings = Field(default_factory=StorageSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)


def load_settings(path: str | Path = DEFAULT_CONFIG_PATH) -> Settings:
    """
    Load settings from a YAML file.

    A missing file yields the defaults so the CLI works out of the box.
    Environment variables from .env are loaded as a side effect.
    """
    load_dotenv()
    config_path = Path(path)
    if not config_path.exists():
        return Settings()

    with open(config_path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return Settings.model_validate(raw)

"""Configuration management for turnwise.

Loads settings from YAML config file with Pydantic validation.
Config file location: ~/.turnwise/config.yaml
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field


# === Default paths ===

def get_turnwise_home() -> Path:
    """Get the turnwise data directory (~/.turnwise)."""
    return Path(os.environ.get("TURNWISE_HOME", Path.home() / ".turnwise"))


# === Configuration Models ===


class ProviderConfig(BaseModel):
    """Configuration for a single LLM provider."""

    api_key_env: str | None = None  # Environment variable name for API key
    api_key: str | None = None  # Direct API key (not recommended)
    base_url: str | None = None  # Custom base URL (proxy, self-hosted gateway)

    def get_api_key(self) -> str | None:
        """Resolve API key from env var or direct value."""
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or self.api_key
        return self.api_key


class ModelConfig(BaseModel):
    """Per-turn model settings.

    Frozen: a turn keeps the instance it started with. Editing settings means
    building a new instance with ``model_copy(update=...)``.
    """

    model_config = ConfigDict(frozen=True)

    model: str = "gpt-3.5-turbo"
    temperature: float = 0.5
    max_tokens: int = Field(default=4000, ge=0)  # Context budget for history
    max_response_tokens: int | None = None
    history_message_count: int = Field(default=4, ge=0)
    compress_message_length_threshold: int = Field(default=1000, ge=0)
    send_memory: bool = True
    template: str | None = None  # Input template, {{input}} is always present
    stream: bool = True


class ModelsConfig(BaseModel):
    """LLM model configuration."""

    default: ModelConfig = Field(default_factory=ModelConfig)
    fallback_chain: list[str] = Field(default_factory=list)
    providers: dict[str, ProviderConfig] = Field(default_factory=lambda: {
        "openai": ProviderConfig(api_key_env="OPENAI_API_KEY"),
        "anthropic": ProviderConfig(api_key_env="ANTHROPIC_API_KEY"),
        "ollama": ProviderConfig(base_url="http://localhost:11434"),
    })
    default_provider: str = "openai"

    def provider_for(self, model: str) -> ProviderConfig | None:
        """Find the provider config for a LiteLLM model name."""
        provider = model.split("/")[0] if "/" in model else self.default_provider
        return self.providers.get(provider)


class MemoryConfig(BaseModel):
    """Long-term memory (summary) and topic settings."""

    summarize_model: str = "gpt-3.5-turbo"
    topic_model: str = "gpt-3.5-turbo"
    topic_min_tokens: int = 50  # Session size before a topic is derived


class FetchConfig(BaseModel):
    """Settings for fetching URL inputs."""

    timeout: float = 20.0  # seconds
    max_bytes: int = 5_000_000
    pdf2text_url: str | None = None  # Endpoint returning {content, size, type}
    user_agent: str = "turnwise/0.1 (+https://pypi.org/project/turnwise/)"


class TurnwiseConfig(BaseModel):
    """Root configuration for turnwise."""

    models: ModelsConfig = Field(default_factory=ModelsConfig)
    memory: MemoryConfig = Field(default_factory=MemoryConfig)
    fetch: FetchConfig = Field(default_factory=FetchConfig)
    lang: str = "en"
    tokenizer: Literal["heuristic", "tiktoken"] = "heuristic"  # Token counting for budgets

    def get_api_key(self, model: str | None = None) -> str | None:
        """Resolve the API key for a model (or the default model)."""
        provider = self.models.provider_for(model or self.models.default.model)
        return provider.get_api_key() if provider else None


# === Config Loading ===


def load_config(config_path: Path | None = None) -> TurnwiseConfig:
    """Load configuration from YAML file.

    Falls back to defaults if the config file doesn't exist.
    """
    if config_path is None:
        config_path = get_turnwise_home() / "config.yaml"

    if config_path.exists():
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
        return TurnwiseConfig(**raw)
    return TurnwiseConfig()


def save_default_config(config_path: Path | None = None) -> Path:
    """Save the default configuration to a YAML file.

    Creates parent directories if needed. Returns the path.
    """
    if config_path is None:
        config_path = get_turnwise_home() / "config.yaml"

    config_path.parent.mkdir(parents=True, exist_ok=True)

    config = TurnwiseConfig()
    data = config.model_dump()

    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(data, f, default_flow_style=False, allow_unicode=True, sort_keys=False)

    return config_path

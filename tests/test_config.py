"""Tests for configuration loading."""

from __future__ import annotations

import pytest
import yaml
from pydantic import ValidationError

from turnwise.config import (
    ModelConfig,
    TurnwiseConfig,
    get_turnwise_home,
    load_config,
    save_default_config,
)


class TestModelConfig:
    """Tests for per-turn model settings."""

    def test_defaults(self):
        cfg = ModelConfig()
        assert cfg.history_message_count == 4
        assert cfg.compress_message_length_threshold == 1000
        assert cfg.max_tokens == 4000
        assert cfg.send_memory is True
        assert cfg.stream is True

    def test_frozen(self):
        cfg = ModelConfig()
        with pytest.raises(ValidationError):
            cfg.model = "other"

    def test_copy_with_update(self):
        cfg = ModelConfig()
        other = cfg.model_copy(update={"model": "gpt-4o"})
        assert other.model == "gpt-4o"
        assert cfg.model == "gpt-3.5-turbo"

    def test_negative_history_rejected(self):
        with pytest.raises(ValidationError):
            ModelConfig(history_message_count=-1)


class TestTurnwiseConfig:
    """Tests for the root config."""

    def test_provider_for(self):
        config = TurnwiseConfig()
        assert config.models.provider_for("ollama/llama3.1").base_url == "http://localhost:11434"
        assert config.models.provider_for("gpt-4o").api_key_env == "OPENAI_API_KEY"
        assert config.models.provider_for("unknown/model") is None

    def test_api_key_from_env(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        config = TurnwiseConfig()
        assert config.get_api_key("anthropic/claude-3-5-sonnet") == "sk-ant-test"
        assert config.get_api_key() is None


class TestLoading:
    """Tests for YAML load/save."""

    def test_home_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TURNWISE_HOME", str(tmp_path))
        assert get_turnwise_home() == tmp_path

    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "nope.yaml")
        assert config.model_dump() == TurnwiseConfig().model_dump()

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({
            "models": {"default": {"model": "ollama/llama3.1", "history_message_count": 8}},
            "memory": {"topic_min_tokens": 20},
            "fetch": {"pdf2text_url": "http://localhost:3000/api/pdf2text"},
            "lang": "fr",
        }), encoding="utf-8")

        config = load_config(path)

        assert config.models.default.model == "ollama/llama3.1"
        assert config.models.default.history_message_count == 8
        assert config.models.default.temperature == 0.5
        assert config.memory.topic_min_tokens == 20
        assert config.fetch.pdf2text_url == "http://localhost:3000/api/pdf2text"
        assert config.lang == "fr"

    def test_empty_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        assert load_config(path).model_dump() == TurnwiseConfig().model_dump()

    def test_save_default_then_load(self, tmp_path):
        path = save_default_config(tmp_path / "sub" / "config.yaml")
        assert path.exists()
        assert load_config(path).model_dump() == TurnwiseConfig().model_dump()

    def test_save_default_uses_home(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TURNWISE_HOME", str(tmp_path))
        path = save_default_config()
        assert path == tmp_path / "config.yaml"

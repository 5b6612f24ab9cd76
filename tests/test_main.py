"""Tests for application wiring."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from turnwise import main
from turnwise.config import TurnwiseConfig
from turnwise.core import tokens
from turnwise.core.tokens import TiktokenEstimator, estimate_tokens


class _FakeEncoding:
    def encode(self, text, disallowed_special=()):
        return text.split()


@pytest.fixture(autouse=True)
def no_env(monkeypatch):
    monkeypatch.setattr(main, "_load_env", lambda: None)


class TestBuildEngine:
    """Tests for the token estimator chosen by config."""

    def test_heuristic_by_default(self):
        engine = main.build_engine(TurnwiseConfig())

        assert engine.estimator is estimate_tokens
        assert engine.assembler.estimator is estimate_tokens
        assert engine.compressor.estimator is estimate_tokens

    def test_tiktoken_estimator_shared(self, monkeypatch):
        monkeypatch.setattr(tokens, "_ENCODING_CACHE", {})
        monkeypatch.setattr(tokens.tiktoken, "get_encoding", lambda name: _FakeEncoding())
        monkeypatch.setattr(tokens.tiktoken, "encoding_name_for_model", lambda model: "o200k_base")

        engine = main.build_engine(TurnwiseConfig(tokenizer="tiktoken"))

        assert isinstance(engine.estimator, TiktokenEstimator)
        assert engine.assembler.estimator is engine.estimator
        assert engine.compressor.estimator is engine.estimator
        assert engine.estimator("one two three") == 3

    def test_unknown_tokenizer_rejected(self):
        with pytest.raises(ValidationError):
            TurnwiseConfig(tokenizer="sentencepiece")

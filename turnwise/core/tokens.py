"""Token estimation.

Budgeting only needs a relative cost signal, so the default estimator is a
character-weighted heuristic. Anything with the ``TokenEstimator`` shape can
be passed in its place, e.g. ``TiktokenEstimator`` for OpenAI models.
"""

from __future__ import annotations

import math
from typing import Iterable, Protocol

import tiktoken

from turnwise.core.types import Message


class TokenEstimator(Protocol):
    """Callable returning a non-negative token estimate for a text."""

    def __call__(self, text: str) -> int: ...


def estimate_tokens(text: str) -> int:
    """Estimate the token length of a text without a tokenizer.

    ASCII letters cost a quarter token, other ASCII characters half a token,
    and anything outside ASCII (CJK, emoji, accents) a token and a half.
    """
    total = 0.0
    for ch in text:
        code = ord(ch)
        if code < 128:
            total += 0.25 if 65 <= code <= 122 else 0.5
        else:
            total += 1.5
    return math.ceil(total)


def count_message_tokens(
    messages: Iterable[Message],
    estimator: TokenEstimator = estimate_tokens,
) -> int:
    """Sum the estimated token length of message contents."""
    return sum(estimator(m.content) for m in messages)


# Cache for tokenizer encodings
_ENCODING_CACHE: dict[str, tiktoken.Encoding] = {}


class TiktokenEstimator:
    """Estimator backed by a tiktoken encoding.

    Example:
        >>> estimate = TiktokenEstimator("cl100k_base")
        >>> estimate("Hello, world!")
        4
    """

    def __init__(self, encoding: str = "cl100k_base") -> None:
        if encoding not in _ENCODING_CACHE:
            _ENCODING_CACHE[encoding] = tiktoken.get_encoding(encoding)
        self._encoding = _ENCODING_CACHE[encoding]

    @classmethod
    def for_model(cls, model: str) -> TiktokenEstimator:
        """Pick the encoding for a model, cl100k_base for unknown models."""
        try:
            name = tiktoken.encoding_name_for_model(model.split("/")[-1])
        except KeyError:
            name = "cl100k_base"
        return cls(name)

    def __call__(self, text: str) -> int:
        return len(self._encoding.encode(text, disallowed_special=()))


def estimator_for(tokenizer: str, model: str) -> TokenEstimator:
    """Estimator for a ``tokenizer`` config value ("heuristic" or "tiktoken")."""
    if tokenizer == "tiktoken":
        return TiktokenEstimator.for_model(model)
    return estimate_tokens

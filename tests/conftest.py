"""Shared fixtures: a scripted model router and small session builders."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from turnwise.config import ModelConfig, TurnwiseConfig
from turnwise.core.types import Message, ModelResponse, Role, Session


class FakeRouter:
    """Stands in for ModelRouter with scripted replies.

    ``chunks`` are yielded by ``stream``; with ``block_after`` set, the
    stream hangs after that many chunks until ``release`` is set. ``error``
    is raised after the chunks (stream) or instead of a reply (complete).
    """

    def __init__(
        self,
        chunks: list[str] | None = None,
        reply: str = "",
        error: Exception | None = None,
        block_after: int | None = None,
    ) -> None:
        self.chunks = list(chunks or [])
        self.reply = reply
        self.error = error
        self.block_after = block_after
        self.release = asyncio.Event()
        self.calls: list[dict[str, Any]] = []

    async def stream(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        api_key: str | None = None,
    ):
        self.calls.append({"kind": "stream", "model": model, "messages": messages})
        for i, chunk in enumerate(self.chunks):
            if self.block_after is not None and i == self.block_after:
                await self.release.wait()
            await asyncio.sleep(0)
            yield chunk
        if self.block_after is not None and self.block_after >= len(self.chunks):
            await self.release.wait()
        if self.error is not None:
            raise self.error

    async def complete(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        api_key: str | None = None,
    ) -> ModelResponse:
        self.calls.append({"kind": "complete", "model": model, "messages": messages})
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return ModelResponse(content=self.reply, model=model or "")


def make_session(contents: list[str], **kwargs) -> Session:
    """Session with alternating user/assistant messages."""
    roles = (Role.USER, Role.ASSISTANT)
    messages = [Message(role=roles[i % 2], content=c) for i, c in enumerate(contents)]
    return Session(messages=messages, **kwargs)


@pytest.fixture
def config():
    return TurnwiseConfig()


@pytest.fixture
def model_config():
    return ModelConfig(model="gpt-4o-mini", max_tokens=4000, history_message_count=4)


@pytest.fixture
def fake_router_cls():
    return FakeRouter


@pytest.fixture
def session_factory():
    return make_session

"""Tests for the context window assembler."""

from __future__ import annotations

from datetime import datetime

import pytest

from turnwise.config import ModelConfig
from turnwise.core.memory.working import ContextWindowAssembler
from turnwise.core.prompts import URL_SUMMARIZE_PROMPT
from turnwise.core.types import Bot, Message, Role, SourceDetail

from conftest import make_session


# === Shared fixtures ===

@pytest.fixture
def assembler():
    return ContextWindowAssembler()


def _contents(n: int) -> list[str]:
    return [f"message{i}" for i in range(n)]


class TestAssemble:
    """Tests for window selection."""

    def test_history_count_limits_window(self, assembler):
        session = make_session(_contents(10))
        cfg = ModelConfig(history_message_count=4, max_tokens=4000)

        window = assembler.assemble(session, cfg)

        assert window[0].role is Role.SYSTEM
        assert [m.content for m in window[1:]] == _contents(10)[6:]

    def test_empty_log_gives_prompts_only(self, assembler):
        window = assembler.assemble(make_session([]), ModelConfig())
        assert len(window) == 1
        assert window[0].role is Role.SYSTEM

    def test_zero_history_count(self, assembler):
        session = make_session(_contents(6))
        window = assembler.assemble(session, ModelConfig(history_message_count=0))
        assert [m.role for m in window] == [Role.SYSTEM]

    def test_memory_extends_window_to_summarized_index(self, assembler):
        session = make_session(
            _contents(10), memory_summary="They discussed cats.", last_summarized_index=3
        )
        cfg = ModelConfig(history_message_count=4, send_memory=True)

        window = assembler.assemble(session, cfg)

        assert window[0].role is Role.SYSTEM
        assert window[1].role is Role.SYSTEM
        assert "They discussed cats." in window[1].content
        assert [m.content for m in window[2:]] == _contents(10)[3:]

    def test_memory_not_sent_when_disabled(self, assembler):
        session = make_session(
            _contents(10), memory_summary="They discussed cats.", last_summarized_index=3
        )
        window = assembler.assemble(session, ModelConfig(send_memory=False))

        assert all("They discussed cats." not in m.content for m in window)
        assert [m.content for m in window[1:]] == _contents(10)[6:]

    def test_clear_context_floor(self, assembler):
        session = make_session(
            _contents(10),
            memory_summary="They discussed cats.",
            last_summarized_index=3,
            clear_context_index=8,
        )
        window = assembler.assemble(session, ModelConfig(history_message_count=4))

        # Summary predates the floor, so it is not sent either.
        assert all("They discussed cats." not in m.content for m in window)
        assert [m.content for m in window[1:]] == _contents(10)[8:]

    def test_clear_context_at_end_sends_nothing(self, assembler):
        session = make_session(_contents(4), clear_context_index=4)
        window = assembler.assemble(session, ModelConfig())
        assert [m.role for m in window] == [Role.SYSTEM]

    def test_newest_message_sent_even_over_budget(self, assembler):
        session = make_session(["abcd" * 10, "abcd" * 100])
        window = assembler.assemble(session, ModelConfig(max_tokens=5))
        assert [m.content for m in window[1:]] == ["abcd" * 100]

    def test_budget_stops_walk(self, assembler):
        # Each message is 10 tokens; the walk stops once 20 are used.
        session = make_session(["abcd" * 10] * 4)
        window = assembler.assemble(session, ModelConfig(max_tokens=20))
        assert len(window[1:]) == 2

    def test_error_messages_skipped(self, assembler):
        session = make_session(_contents(4))
        session.messages[2].is_error = True
        window = assembler.assemble(session, ModelConfig(history_message_count=4))
        assert [m.content for m in window[1:]] == ["message0", "message1", "message3"]

    def test_pinned_context_replaces_system_prompt(self, assembler):
        pinned = Message(role=Role.SYSTEM, content="You are a pirate.")
        session = make_session(
            _contents(2),
            memory_summary="Earlier stuff.",
            last_summarized_index=1,
            bot=Bot(context=[pinned]),
        )
        window = assembler.assemble(session, ModelConfig())

        assert "Earlier stuff." in window[0].content
        assert window[1].content == "You are a pirate."
        assert [m.content for m in window[2:]] == _contents(2)

    def test_system_prompt_mentions_model_and_time(self, assembler):
        cfg = ModelConfig(model="gpt-4o")
        prompt = assembler.system_prompt(cfg, now=datetime(2024, 1, 2, 3, 4, 5))
        assert "gpt-4o" in prompt.content
        assert "2024-01-02 03:04:05" in prompt.content


class TestPrepareForSending:
    """Tests for the wire conversion."""

    def test_roles_mapped(self, assembler):
        messages = [
            Message(role=Role.MEMORY, content="m"),
            Message(role=Role.URL, content="page text"),
            Message(role=Role.USER, content="u"),
        ]
        wire = assembler.prepare_for_sending(messages)
        assert [w["role"] for w in wire] == ["system", "assistant", "user"]
        assert wire[1]["content"] == "page text"

    def test_fetched_user_message_becomes_summary_instruction(self, assembler):
        msg = Message(
            role=Role.USER,
            content="Long article body",
            source_detail=SourceDetail(url="https://x.test/a", byte_size=17, mime_kind="text/html"),
        )
        wire = assembler.prepare_for_sending([msg])
        assert wire == [{"role": "user", "content": URL_SUMMARIZE_PROMPT + "Long article body"}]

    def test_build_request_ends_with_submitted_message(self, assembler):
        session = make_session(_contents(3))
        submitted = Message(role=Role.USER, content="next question")

        request = assembler.build_request(session, ModelConfig(history_message_count=0), submitted)

        assert request[0]["role"] == "system"
        assert request[-1] == {"role": "user", "content": "next question"}
        assert len(request) == 2

    def test_build_request_sends_logged_url_message_as_typed(self, assembler):
        detail = SourceDetail(url="https://x.test/a", byte_size=17, mime_kind="text/html")
        session = make_session(["https://x.test/a", "It is about cats."])
        session.messages[0].source_detail = detail

        request = assembler.build_request(
            session, ModelConfig(), Message(role=Role.USER, content="thanks")
        )

        assert {"role": "user", "content": "https://x.test/a"} in request

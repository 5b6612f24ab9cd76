"""Working memory: the window of messages sent to the LLM for one turn.

The window is always laid out as:

    [system prompt] [long-term memory] [pinned context prompts] [recent history]

The system prompt is only synthesized when the bot has no pinned prompts.
Recent history is bounded by ``history_message_count`` (extended back to the
last summarized index when memory is sent), by the token budget, and by the
clear-context floor.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable

import structlog

from turnwise.config import ModelConfig
from turnwise.core.prompts import (
    DEFAULT_SYSTEM_TEMPLATE,
    URL_SUMMARIZE_PROMPT,
    fill_template,
    memory_prompt,
)
from turnwise.core.tokens import TokenEstimator, estimate_tokens
from turnwise.core.types import Message, Role, Session

logger = structlog.get_logger()


class ContextWindowAssembler:
    """Builds the ordered message window for the next turn."""

    def __init__(
        self,
        estimator: TokenEstimator = estimate_tokens,
        lang: str = "en",
    ) -> None:
        self.estimator = estimator
        self.lang = lang

    def system_prompt(self, model_config: ModelConfig, now: datetime | None = None) -> Message:
        """The default persona prompt used when a bot has no pinned context."""
        return Message(
            role=Role.SYSTEM,
            content=fill_template(
                "", model_config, lang=self.lang, template=DEFAULT_SYSTEM_TEMPLATE, now=now
            ),
        )

    def assemble(self, session: Session, model_config: ModelConfig) -> list[Message]:
        """Select the prompts and history to send, oldest first."""
        with session.locked():
            messages = list(session.messages)
            summary = session.memory_summary
            last_summarized = session.last_summarized_index
            clear_idx = session.clear_context_index or 0
            context_prompts = list(session.bot.context)

        system_prompts = [] if context_prompts else [self.system_prompt(model_config)]

        send_memory = (
            model_config.send_memory
            and bool(summary)
            and last_summarized > clear_idx
        )
        memory_prompts = (
            [Message(role=Role.SYSTEM, content=memory_prompt(summary))]
            if send_memory
            else []
        )

        total = len(messages)
        short_term_start = max(0, total - model_config.history_message_count)
        window_start = (
            min(last_summarized, short_term_start) if send_memory else short_term_start
        )
        start = max(clear_idx, window_start)

        recent: list[Message] = []
        token_count = 0
        for i in range(total - 1, start - 1, -1):
            if token_count >= model_config.max_tokens:
                break
            msg = messages[i]
            if msg.is_error:
                continue
            token_count += self.estimator(msg.content)
            recent.append(msg)
        recent.reverse()

        logger.debug(
            "context_window_assembled",
            session_id=session.id,
            start=start,
            recent=len(recent),
            recent_tokens=token_count,
            memory=send_memory,
            context_prompts=len(context_prompts),
        )

        return system_prompts + memory_prompts + context_prompts + recent

    def prepare_for_sending(self, messages: Iterable[Message]) -> list[dict[str, Any]]:
        """Convert messages to wire format.

        User messages with fetched content are replaced by an instruction to
        summarize that content, so the raw payload is never sent as-is.
        Pinned URL content goes out as an assistant message.
        """
        prepared: list[dict[str, Any]] = []
        for msg in messages:
            if msg.role is Role.USER and msg.source_detail is not None:
                prepared.append({
                    "role": Role.USER.value,
                    "content": URL_SUMMARIZE_PROMPT + msg.content,
                })
            else:
                prepared.append(msg.to_litellm())
        return prepared

    def build_request(
        self,
        session: Session,
        model_config: ModelConfig,
        user_message: Message,
    ) -> list[dict[str, Any]]:
        """Window for the next turn plus the submitted message, in wire format.

        Logged user messages hold the typed text, so only the submitted
        message can carry a fetched payload.
        """
        window = [m.to_litellm() for m in self.assemble(session, model_config)]
        return window + self.prepare_for_sending([user_message])

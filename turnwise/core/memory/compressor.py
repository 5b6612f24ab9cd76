"""Memory compressor: rolling long-term summary and topic naming.

After every successful turn the engine hands the session to ``schedule``,
which spawns two independent background jobs:

1. Topic derivation. While the session still has the placeholder topic and
   has accumulated enough content, ask the model for a short title.
2. Summarization. Once the not-yet-summarized tail of the log grows past the
   compression threshold, stream a condensed summary of it (prefixed by the
   previous summary) into ``session.memory_summary`` and advance
   ``session.last_summarized_index``.

Neither job blocks the turn. Failures are logged and the job simply runs
again after the next turn.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Coroutine

import structlog

from turnwise.config import MemoryConfig, ModelConfig
from turnwise.core.model_router import ModelRouter
from turnwise.core.prompts import (
    DEFAULT_TOPIC,
    SUMMARIZE_PROMPT,
    TOPIC_PROMPT,
    memory_prompt,
    trim_topic,
)
from turnwise.core.tokens import TokenEstimator, count_message_tokens, estimate_tokens
from turnwise.core.types import Message, Role, Session

logger = structlog.get_logger()

TopicCallback = Callable[[str], Any]


@dataclass
class SummaryBatch:
    """Messages captured for one summarization round."""

    messages: list[Message]
    token_count: int
    summarized_until: int  # len(session.messages) when the batch was captured
    previous_summary: str
    generation: int = 0  # session.generation when the batch was captured

    def to_request(self) -> list[dict[str, Any]]:
        request: list[dict[str, Any]] = []
        if self.previous_summary:
            request.append({
                "role": Role.SYSTEM.value,
                "content": memory_prompt(self.previous_summary),
            })
        request.extend(m.to_litellm() for m in self.messages)
        request.append({"role": Role.SYSTEM.value, "content": SUMMARIZE_PROMPT})
        return request


class MemoryCompressor:
    """Background summarization and topic naming for sessions."""

    def __init__(
        self,
        model_router: ModelRouter,
        config: MemoryConfig | None = None,
        estimator: TokenEstimator = estimate_tokens,
    ) -> None:
        self._model = model_router
        self.config = config or MemoryConfig()
        self.estimator = estimator
        self._tasks: dict[str, set[asyncio.Task]] = {}  # session id -> running jobs
        self._summarizing: set[str] = set()  # session ids with a summary in flight
        self._naming: set[str] = set()  # session ids with a topic request in flight

    @property
    def pending(self) -> int:
        """Number of background jobs still running."""
        return sum(len(tasks) for tasks in self._tasks.values())

    def schedule(
        self,
        session: Session,
        model_config: ModelConfig,
        api_key: str | None = None,
        on_update_topic: TopicCallback | None = None,
    ) -> list[asyncio.Task]:
        """Spawn topic derivation and summarization for a finished turn.

        Must be called from a running event loop. Returns the spawned tasks;
        callers are not expected to await them.
        """
        tasks: list[asyncio.Task] = []

        if self.should_derive_topic(session):
            tasks.append(self._spawn(
                self.derive_topic(session, api_key, on_update_topic),
                name=f"topic-{session.id}",
                session_id=session.id,
                in_flight=self._naming,
            ))

        if session.id not in self._summarizing:
            batch = self.plan_summary(session, model_config)
            if batch is not None:
                tasks.append(self._spawn(
                    self.summarize(session, batch, model_config, api_key),
                    name=f"summary-{session.id}",
                    session_id=session.id,
                    in_flight=self._summarizing,
                ))

        return tasks

    def _spawn(
        self,
        coro: Coroutine[Any, Any, Any],
        name: str,
        session_id: str,
        in_flight: set[str],
    ) -> asyncio.Task:
        in_flight.add(session_id)
        task = asyncio.create_task(coro, name=name)
        self._tasks.setdefault(session_id, set()).add(task)
        task.add_done_callback(lambda _: in_flight.discard(session_id))
        task.add_done_callback(lambda t: self._on_task_done(session_id, t))
        return task

    def _on_task_done(self, session_id: str, task: asyncio.Task) -> None:
        tasks = self._tasks.get(session_id)
        if tasks is not None:
            tasks.discard(task)
            if not tasks:
                del self._tasks[session_id]
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "memory_task_crashed",
                task=task.get_name(),
                error=str(task.exception()),
            )

    def _all_tasks(self) -> list[asyncio.Task]:
        return [t for tasks in self._tasks.values() for t in tasks]

    async def drain(self) -> None:
        """Wait for all background jobs to finish."""
        while self._tasks:
            await asyncio.gather(*self._all_tasks(), return_exceptions=True)

    def cancel_all(self) -> None:
        """Cancel all background jobs (shutdown)."""
        for task in self._all_tasks():
            task.cancel()

    async def cancel_session(self, session_id: str) -> int:
        """Cancel the background jobs of one session and wait for them to unwind.

        Returns how many jobs were cancelled.
        """
        tasks = [t for t in self._tasks.get(session_id, ()) if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return len(tasks)

    # --- Topic ---

    def should_derive_topic(self, session: Session) -> bool:
        """True when the session still needs a topic and has enough content."""
        if session.id in self._naming:
            return False
        with session.locked():
            if session.topic != DEFAULT_TOPIC:
                return False
            tokens = count_message_tokens(session.messages, self.estimator)
        return tokens >= self.config.topic_min_tokens

    async def derive_topic(
        self,
        session: Session,
        api_key: str | None = None,
        on_update_topic: TopicCallback | None = None,
    ) -> str | None:
        """Ask the model for a short topic. Returns the new topic, if any."""
        generation = session.generation
        history = [m.to_litellm() for m in session.snapshot_messages() if not m.is_error]
        history.append({"role": Role.USER.value, "content": TOPIC_PROMPT})

        try:
            response = await self._model.complete(
                messages=history,
                model=self.config.topic_model,
                api_key=api_key,
            )
        except Exception as e:
            logger.warning("topic_failed", session_id=session.id, error=str(e))
            return None

        topic = trim_topic(response.content or "") or DEFAULT_TOPIC

        def _apply(s: Session) -> bool:
            if s.generation != generation or s.topic != DEFAULT_TOPIC:
                return False
            s.topic = topic
            return True

        if not session.update(_apply):
            return None

        logger.info("topic_derived", session_id=session.id, topic=topic)
        if on_update_topic is not None:
            on_update_topic(topic)
        return topic

    # --- Summary ---

    def plan_summary(self, session: Session, model_config: ModelConfig) -> SummaryBatch | None:
        """Capture the batch to summarize, or None if no summary is due."""
        with session.locked():
            summarized_until = len(session.messages)
            floor = max(session.last_summarized_index, session.clear_context_index or 0)
            batch = [m for m in session.messages[floor:] if not m.is_error]
            previous_summary = session.memory_summary
            generation = session.generation

        if count_message_tokens(batch, self.estimator) > model_config.max_tokens:
            keep = model_config.history_message_count
            batch = batch[max(0, len(batch) - keep):]

        token_count = count_message_tokens(batch, self.estimator)

        logger.debug(
            "summary_check",
            session_id=session.id,
            batch=len(batch),
            tokens=token_count,
            threshold=model_config.compress_message_length_threshold,
        )

        if not model_config.send_memory:
            return None
        if token_count <= model_config.compress_message_length_threshold:
            return None

        return SummaryBatch(
            messages=batch,
            token_count=token_count,
            summarized_until=summarized_until,
            previous_summary=previous_summary,
            generation=generation,
        )

    async def summarize(
        self,
        session: Session,
        batch: SummaryBatch,
        model_config: ModelConfig,
        api_key: str | None = None,
    ) -> bool:
        """Stream a new summary into the session. Returns True on success.

        Writes are dropped once the session has been reset since the batch
        was captured.
        """
        text = ""

        def _set_summary(value: str) -> bool:
            def _apply(s: Session) -> bool:
                if s.generation != batch.generation:
                    return False
                s.memory_summary = value
                return True

            return session.update(_apply)

        try:
            async for delta in self._model.stream(
                messages=batch.to_request(),
                model=self.config.summarize_model,
                temperature=model_config.temperature,
                api_key=api_key,
            ):
                text += delta
                if not _set_summary(text):
                    logger.info("summary_discarded", session_id=session.id)
                    return False
        except asyncio.CancelledError:
            _set_summary(batch.previous_summary)
            raise
        except Exception as e:
            _set_summary(batch.previous_summary)
            logger.warning("summary_failed", session_id=session.id, error=str(e))
            return False

        if not text:
            _set_summary(batch.previous_summary)
            logger.warning("summary_empty", session_id=session.id)
            return False

        def _advance(s: Session) -> int | None:
            if s.generation != batch.generation:
                return None
            s.memory_summary = text
            s.last_summarized_index = min(
                len(s.messages),
                max(s.last_summarized_index, batch.summarized_until),
            )
            return s.last_summarized_index

        index = session.update(_advance)
        if index is None:
            logger.info("summary_discarded", session_id=session.id)
            return False
        logger.info(
            "summary_updated",
            session_id=session.id,
            summarized_until=index,
            summary_chars=len(text),
            batch_tokens=batch.token_count,
        )
        return True

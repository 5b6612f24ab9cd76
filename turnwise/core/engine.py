"""Core engine: runs one chat turn per user input.

The engine builds the user message (fetching URL inputs), assembles the
context window, appends the user and assistant messages to the session,
starts the completion request and applies its events back onto the session.
When a reply finishes it hands the session to the memory compressor, which
summarizes and names it in the background.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

import structlog

from turnwise.config import ModelConfig, TurnwiseConfig
from turnwise.core.controller import ControllerPool, RequestController
from turnwise.core.errors import FetchFailedError
from turnwise.core.fetcher import ResourceFetcher, is_url
from turnwise.core.memory.compressor import MemoryCompressor
from turnwise.core.memory.working import ContextWindowAssembler
from turnwise.core.model_router import ModelRouter
from turnwise.core.prompts import error_payload, fill_template
from turnwise.core.tokens import TokenEstimator, estimate_tokens
from turnwise.core.types import EventKind, Message, Role, Session, SourceDetail, StreamEvent

logger = structlog.get_logger()


class TurnCallbacks:
    """Receives session changes while a turn runs.

    UI implementations override these to re-render. Both are called on the
    event loop thread and should return quickly.
    """

    def on_update_messages(self, messages: list[Message]) -> None:
        pass

    def on_update_topic(self, topic: str) -> None:
        pass


@dataclass
class Turn:
    """A started turn: the two messages it appended and its request."""

    session: Session
    user_message: Message
    bot_message: Message
    controller: RequestController | None = None  # None when no request was made

    async def wait(self) -> Message:
        """Wait for the reply to finish and return the assistant message."""
        if self.controller is not None:
            await self.controller.wait()
        return self.bot_message


class SessionOrchestrator:
    """Coordinates context assembly, requests and memory for chat turns."""

    def __init__(
        self,
        config: TurnwiseConfig,
        model_router: ModelRouter,
        pool: ControllerPool | None = None,
        assembler: ContextWindowAssembler | None = None,
        compressor: MemoryCompressor | None = None,
        fetcher: ResourceFetcher | None = None,
        estimator: TokenEstimator = estimate_tokens,
    ) -> None:
        self.config = config
        self.model = model_router
        self.pool = pool or ControllerPool()
        self.estimator = estimator
        self.assembler = assembler or ContextWindowAssembler(estimator, lang=config.lang)
        self.compressor = compressor or MemoryCompressor(model_router, config.memory, estimator)
        self.fetcher = fetcher or ResourceFetcher(config.fetch)

    async def create_user_message(self, text: str, model_config: ModelConfig) -> Message:
        """Build the outgoing user message. Raises FetchFailedError for bad URLs."""
        if is_url(text):
            resource = await self.fetcher.fetch(text.strip())
            return Message(
                role=Role.USER,
                content=resource.content,
                source_detail=SourceDetail(
                    url=resource.url,
                    byte_size=resource.byte_size,
                    mime_kind=resource.mime_kind,
                ),
            )
        return Message(
            role=Role.USER,
            content=fill_template(text, model_config, lang=self.config.lang),
        )

    async def start_turn(
        self,
        session: Session,
        user_input: str,
        api_key: str | None = None,
        callbacks: TurnCallbacks | None = None,
    ) -> Turn:
        """Start a turn and return without waiting for the reply."""
        callbacks = callbacks or TurnCallbacks()
        model_config = session.bot.model_config
        api_key = api_key or self.config.get_api_key(model_config.model)

        try:
            outgoing = await self.create_user_message(user_input, model_config)
        except FetchFailedError as e:
            logger.warning("turn_input_fetch_failed", session_id=session.id, url=e.url, reason=e.reason)
            user_message = Message(role=Role.USER, content=user_input, is_error=True)
            bot_message = Message(
                role=Role.ASSISTANT,
                content=error_payload(str(e)),
                is_error=True,
                model=model_config.model,
            )
            session.append_messages(user_message, bot_message)
            callbacks.on_update_messages(session.snapshot_messages())
            return Turn(session, user_message, bot_message)

        request = self.assembler.build_request(session, model_config, outgoing)

        # The log keeps what the user typed; the rendered/fetched text is only sent.
        user_message = replace(outgoing, content=user_input)
        bot_message = Message(role=Role.ASSISTANT, streaming=True, model=model_config.model)
        session.append_messages(user_message, bot_message)
        callbacks.on_update_messages(session.snapshot_messages())

        turn = Turn(session, user_message, bot_message)

        def _on_event(event: StreamEvent) -> None:
            self._apply_event(turn, event, model_config, api_key, callbacks)

        turn.controller = RequestController(
            pool=self.pool,
            model_router=self.model,
            session_id=session.id,
            message_id=bot_message.id,
            messages=request,
            model_config=model_config,
            on_event=_on_event,
            api_key=api_key,
        )
        turn.controller.start()
        return turn

    async def run_turn(
        self,
        session: Session,
        user_input: str,
        api_key: str | None = None,
        callbacks: TurnCallbacks | None = None,
    ) -> Message:
        """Run a turn to completion and return the finalized assistant message."""
        turn = await self.start_turn(session, user_input, api_key, callbacks)
        return await turn.wait()

    def _apply_event(
        self,
        turn: Turn,
        event: StreamEvent,
        model_config: ModelConfig,
        api_key: str | None,
        callbacks: TurnCallbacks,
    ) -> None:
        session, user_message, bot_message = turn.session, turn.user_message, turn.bot_message

        if event.kind is EventKind.STARTED:
            return

        if event.kind is EventKind.UPDATE:
            def _update(s: Session) -> None:
                bot_message.streaming = True
                if event.text:
                    bot_message.content = event.text

            session.update(_update)
            callbacks.on_update_messages(session.snapshot_messages())
            return

        if event.kind is EventKind.FINAL:
            text = event.text

            def _finish(s: Session) -> None:
                bot_message.streaming = False
                if text:
                    bot_message.content = text
                    s.stats.char_count += len(text)
                    s.stats.word_count += len(text.split())
                    s.stats.token_count += self.estimator(text)

            session.update(_finish)
            callbacks.on_update_messages(session.snapshot_messages())
            if text:
                self.compressor.schedule(
                    session, model_config, api_key, callbacks.on_update_topic
                )
            return

        # EventKind.ERROR
        def _fail(s: Session) -> None:
            bot_message.streaming = False
            if event.aborted:
                return
            bot_message.content += "\n\n" + error_payload(str(event.error))
            bot_message.is_error = True
            user_message.is_error = True

        session.update(_fail)
        if not event.aborted:
            logger.error(
                "turn_failed",
                session_id=session.id,
                message_id=bot_message.id,
                error=str(event.error),
            )
        callbacks.on_update_messages(session.snapshot_messages())

    def cancel(self, session_id: str, message_id: str) -> bool:
        """Stop a reply. Safe to call for finished or unknown requests."""
        return self.pool.cancel(session_id, message_id)

    def has_pending(self) -> bool:
        return self.pool.has_pending()

    def stop_all(self) -> int:
        return self.pool.stop_all()

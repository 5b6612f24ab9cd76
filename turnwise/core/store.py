"""Chat store: the list of open sessions and which one is current.

In-memory only; saving and loading sessions is left to the caller.
"""

from __future__ import annotations

from typing import Callable

import structlog

from turnwise.config import TurnwiseConfig
from turnwise.core.engine import SessionOrchestrator, TurnCallbacks
from turnwise.core.types import Bot, Message, Session

logger = structlog.get_logger()


def default_bot(config: TurnwiseConfig) -> Bot:
    """The built-in bot used when no session exists yet."""
    return Bot(id="default", name="Assistant", model_config=config.models.default)


class ChatStore:
    """Sessions plus a current-session index."""

    def __init__(self, engine: SessionOrchestrator, config: TurnwiseConfig) -> None:
        self.engine = engine
        self.config = config
        self.sessions: list[Session] = []
        self.current_index = -1

    def clear_sessions(self) -> None:
        self.sessions = []
        self.current_index = -1

    def select_session(self, index: int) -> None:
        self.current_index = index

    def move_session(self, src: int, dst: int) -> None:
        """Move a session in the list, keeping the current session selected."""
        old = self.current_index
        session = self.sessions.pop(src)
        self.sessions.insert(dst, session)

        new = dst if old == src else old
        if src < old <= dst:
            new -= 1
        elif dst <= old < src:
            new += 1
        self.current_index = new

    def next_session(self, delta: int) -> None:
        """Select the session ``delta`` steps away, wrapping around."""
        n = len(self.sessions)
        if n == 0:
            return
        self.select_session((self.current_index + delta) % n)

    def ensure_session(self, bot: Bot) -> Session:
        """Select the session of a bot, creating it first if needed.

        The session's model config is the global default overlaid with the
        fields the bot sets explicitly.
        """
        index = next(
            (i for i, s in enumerate(self.sessions) if s.id == bot.id), -1
        )
        if index == -1:
            session = Session(id=bot.id, topic=bot.name)
            self.sessions.insert(0, session)
            index = 0
            logger.info("session_created", session_id=session.id, bot=bot.name)

        self.current_index = index
        session = self.sessions[index]

        overrides = bot.model_config.model_dump(exclude_unset=True)
        model_config = self.config.models.default.model_copy(update=overrides)
        session.update(lambda s: setattr(
            s, "bot", Bot(id=bot.id, name=bot.name, context=list(bot.context), model_config=model_config)
        ))
        return session

    def current_session(self) -> Session:
        """The current session, creating the default one when there is none."""
        if not self.sessions:
            return self.ensure_session(default_bot(self.config))

        index = self.current_index
        if index < 0 or index >= len(self.sessions):
            index = min(len(self.sessions) - 1, max(0, index))
            self.current_index = index
        return self.sessions[index]

    def update_current_session(self, updater: Callable[[Session], None]) -> None:
        self.current_session().update(updater)

    def reset_session(self) -> None:
        self.current_session().reset()

    async def on_user_input(
        self,
        content: str,
        callbacks: TurnCallbacks | None = None,
    ) -> Message:
        """Run a turn on the current session."""
        session = self.current_session()
        return await self.engine.run_turn(
            session,
            content,
            api_key=self.config.get_api_key(session.bot.model_config.model),
            callbacks=callbacks,
        )

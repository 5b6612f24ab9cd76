"""Shared data types for turnwise."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterator, TypeVar
from uuid import uuid4

from turnwise.config import ModelConfig
from turnwise.core.prompts import DEFAULT_TOPIC

T = TypeVar("T")


def _new_id() -> str:
    return uuid4().hex


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Message role in conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    MEMORY = "memory"  # Long-term memory content
    URL = "url"  # Content fetched from a URL (pinned context)

    @property
    def wire_role(self) -> str:
        """Role name understood by the completion endpoint."""
        if self is Role.MEMORY:
            return Role.SYSTEM.value
        if self is Role.URL:
            return Role.ASSISTANT.value
        return self.value


@dataclass(frozen=True)
class SourceDetail:
    """Where a message's content was fetched from."""

    url: str
    byte_size: int
    mime_kind: str  # "text/html" | "text/plain" | "application/pdf"


@dataclass
class Message:
    """A single message in the conversation."""

    role: Role
    content: str = ""
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_now)
    streaming: bool = False
    is_error: bool = False
    model: str | None = None  # Model that produced an assistant message
    source_detail: SourceDetail | None = None

    def to_litellm(self) -> dict[str, Any]:
        """Convert to LiteLLM-compatible message dict."""
        return {"role": self.role.wire_role, "content": self.content}


@dataclass
class SessionStats:
    """Running counters for a session."""

    token_count: int = 0
    word_count: int = 0
    char_count: int = 0


@dataclass
class Bot:
    """A bot: pinned context prompts plus the model settings to chat with."""

    id: str = field(default_factory=_new_id)
    name: str = "Assistant"
    context: list[Message] = field(default_factory=list)  # Pinned context prompts
    model_config: ModelConfig = field(default_factory=ModelConfig)


def create_empty_bot() -> Bot:
    """Create a bot with no pinned context and default model settings."""
    return Bot()


@dataclass
class Session:
    """A conversation session.

    Streaming callbacks, background summarization and readers touch the same
    session, so every mutation goes through ``update`` (or the helpers built
    on it) and readers use ``snapshot_messages``.
    """

    id: str = field(default_factory=_new_id)
    topic: str = DEFAULT_TOPIC
    messages: list[Message] = field(default_factory=list)
    memory_summary: str = ""
    last_summarized_index: int = 0
    clear_context_index: int | None = None
    stats: SessionStats = field(default_factory=SessionStats)
    last_update: datetime = field(default_factory=_now)
    bot: Bot = field(default_factory=create_empty_bot)
    generation: int = 0  # Bumped by reset(); background jobs from before it are stale
    _lock: threading.RLock = field(
        default_factory=threading.RLock, repr=False, compare=False
    )

    @contextmanager
    def locked(self) -> Iterator[Session]:
        """Hold the session lock for a consistent multi-field read."""
        with self._lock:
            yield self

    def update(self, updater: Callable[[Session], T]) -> T:
        """Apply a mutation under the session lock and stamp last_update."""
        with self._lock:
            result = updater(self)
            self.last_update = _now()
            return result

    def append_messages(self, *messages: Message) -> None:
        """Append messages to the log."""
        self.update(lambda s: s.messages.extend(messages))

    def snapshot_messages(self) -> list[Message]:
        """Copies of the current messages, taken atomically."""
        with self._lock:
            return [replace(m) for m in self.messages]

    def clear_context(self) -> None:
        """Toggle the clear-context floor at the current end of the log."""

        def _toggle(s: Session) -> None:
            end = len(s.messages)
            s.clear_context_index = None if s.clear_context_index == end else end

        self.update(_toggle)

    def reset(self) -> None:
        """Drop all messages and long-term memory."""

        def _reset(s: Session) -> None:
            s.messages = []
            s.memory_summary = ""
            s.last_summarized_index = 0
            s.clear_context_index = None
            s.generation += 1

        self.update(_reset)


class EventKind(str, Enum):
    """Kinds of events emitted by an in-flight completion request."""

    STARTED = "started"
    UPDATE = "update"
    FINAL = "final"
    ERROR = "error"


@dataclass(frozen=True)
class StreamEvent:
    """One event from a completion request.

    UPDATE carries the accumulated partial text, FINAL the complete text,
    ERROR the exception and whether the user aborted the request.
    """

    kind: EventKind
    text: str = ""
    error: BaseException | None = None
    aborted: bool = False


@dataclass
class ModelResponse:
    """Response from a non-streaming LLM call."""

    content: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = ""

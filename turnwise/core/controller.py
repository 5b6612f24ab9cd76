"""Request lifecycle: one completion call per (session, message).

``RequestController`` owns a single in-flight request and reports progress
as ``StreamEvent``s to one handler. ``ControllerPool`` is the registry of all
in-flight controllers; it rejects a second request for the same key and is
what the UI uses to stop replies.
"""

from __future__ import annotations

import asyncio
import threading
from enum import Enum
from typing import Any, Callable

import structlog

from turnwise.config import ModelConfig
from turnwise.core.errors import DuplicateRequestError, RequestCancelled, StreamError
from turnwise.core.model_router import ModelRouter
from turnwise.core.types import EventKind, StreamEvent

logger = structlog.get_logger()

EventHandler = Callable[[StreamEvent], None]
PoolKey = tuple[str, str]


class RequestState(str, Enum):
    """Lifecycle states of a request."""

    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED)


class ControllerPool:
    """Registry of in-flight requests keyed by (session_id, message_id).

    Construct one per engine (or per test). All access is synchronized.
    """

    def __init__(self) -> None:
        self._controllers: dict[PoolKey, RequestController] = {}
        self._lock = threading.Lock()

    def add(self, session_id: str, message_id: str, controller: RequestController) -> None:
        """Register a controller. Raises DuplicateRequestError if the key is taken."""
        key = (session_id, message_id)
        with self._lock:
            if key in self._controllers:
                raise DuplicateRequestError(session_id, message_id)
            self._controllers[key] = controller

    def get(self, session_id: str, message_id: str) -> RequestController | None:
        with self._lock:
            return self._controllers.get((session_id, message_id))

    def remove(
        self,
        session_id: str,
        message_id: str,
        controller: RequestController | None = None,
    ) -> bool:
        """Remove an entry. If ``controller`` is given, only remove that one."""
        key = (session_id, message_id)
        with self._lock:
            current = self._controllers.get(key)
            if current is None or (controller is not None and current is not controller):
                return False
            del self._controllers[key]
            return True

    def cancel(self, session_id: str, message_id: str) -> bool:
        """Abort and remove a request. No-op when the key is unknown."""
        key = (session_id, message_id)
        with self._lock:
            controller = self._controllers.pop(key, None)
        if controller is None:
            return False
        controller.abort()
        logger.info("request_cancel", session_id=session_id, message_id=message_id)
        return True

    def has_pending(self) -> bool:
        with self._lock:
            return bool(self._controllers)

    def stop_all(self) -> int:
        """Abort every in-flight request. Returns how many were aborted."""
        with self._lock:
            controllers = list(self._controllers.values())
            self._controllers.clear()
        for controller in controllers:
            controller.abort()
        if controllers:
            logger.info("requests_stopped", count=len(controllers))
        return len(controllers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)


class RequestController:
    """Runs one completion request and reports it as events.

    Events for a request are delivered in order: STARTED, zero or more
    UPDATE (accumulated text), then exactly one of FINAL or ERROR. The pool
    entry is gone before FINAL/ERROR reach the handler.
    """

    def __init__(
        self,
        pool: ControllerPool,
        model_router: ModelRouter,
        session_id: str,
        message_id: str,
        messages: list[dict[str, Any]],
        model_config: ModelConfig,
        on_event: EventHandler,
        api_key: str | None = None,
    ) -> None:
        self.pool = pool
        self.session_id = session_id
        self.message_id = message_id
        self.messages = messages
        self.model_config = model_config
        self._model = model_router
        self._on_event = on_event
        self._api_key = api_key
        self._state = RequestState.IDLE
        self._aborted = False
        self._task: asyncio.Task | None = None
        self._text = ""

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def text(self) -> str:
        """Text received so far."""
        return self._text

    @property
    def aborted(self) -> bool:
        return self._aborted

    def start(self) -> asyncio.Task:
        """Register in the pool and issue the request.

        Raises DuplicateRequestError if a request for the same key is in
        flight; the existing entry is left untouched.
        """
        if self._state is not RequestState.IDLE:
            raise RuntimeError(f"Request already started (state={self._state.value})")

        self.pool.add(self.session_id, self.message_id, self)
        self._state = RequestState.SENDING
        self._task = asyncio.create_task(
            self._run(), name=f"request-{self.session_id}-{self.message_id}"
        )
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            "request_started",
            session_id=self.session_id,
            message_id=self.message_id,
            model=self.model_config.model,
            stream=self.model_config.stream,
            messages=len(self.messages),
        )
        return self._task

    def abort(self) -> None:
        """Cancel the request on behalf of the user."""
        if self._state.is_terminal:
            return
        self._aborted = True
        self.pool.remove(self.session_id, self.message_id, self)
        if self._task is not None:
            self._task.cancel()

    async def wait(self) -> RequestState:
        """Wait until the request reaches a terminal state."""
        if self._task is not None:
            try:
                await asyncio.shield(self._task)
            except asyncio.CancelledError:
                if not self._task.done():
                    raise
        return self._state

    async def _run(self) -> None:
        self._emit(StreamEvent(kind=EventKind.STARTED))
        try:
            if self.model_config.stream:
                async for delta in self._model.stream(
                    messages=self.messages,
                    model=self.model_config.model,
                    temperature=self.model_config.temperature,
                    max_tokens=self.model_config.max_response_tokens,
                    api_key=self._api_key,
                ):
                    self._text += delta
                    self._state = RequestState.STREAMING
                    self._emit(StreamEvent(kind=EventKind.UPDATE, text=self._text))
            else:
                response = await self._model.complete(
                    messages=self.messages,
                    model=self.model_config.model,
                    temperature=self.model_config.temperature,
                    max_tokens=self.model_config.max_response_tokens,
                    api_key=self._api_key,
                )
                self._text = response.content or ""
        except asyncio.CancelledError:
            self._finish_cancelled()
            if not self._aborted:
                raise
            return
        except Exception as e:
            self._finish(RequestState.FAILED)
            logger.warning(
                "request_failed",
                session_id=self.session_id,
                message_id=self.message_id,
                error=str(e),
            )
            error = StreamError(str(e) or type(e).__name__)
            error.__cause__ = e
            self._emit(StreamEvent(kind=EventKind.ERROR, text=self._text, error=error))
            return

        self._finish(RequestState.COMPLETED)
        logger.info(
            "request_completed",
            session_id=self.session_id,
            message_id=self.message_id,
            chars=len(self._text),
        )
        self._emit(StreamEvent(kind=EventKind.FINAL, text=self._text))

    def _finish(self, state: RequestState) -> None:
        self._state = state
        self.pool.remove(self.session_id, self.message_id, self)

    def _finish_cancelled(self) -> None:
        if self._state.is_terminal:
            return
        self._finish(RequestState.CANCELLED)
        if self._aborted:
            logger.info(
                "request_aborted",
                session_id=self.session_id,
                message_id=self.message_id,
                chars=len(self._text),
            )
            error: Exception = RequestCancelled()
        else:
            logger.warning(
                "request_interrupted",
                session_id=self.session_id,
                message_id=self.message_id,
                chars=len(self._text),
            )
            error = StreamError("The request was cancelled before it finished")
        self._emit(StreamEvent(
            kind=EventKind.ERROR,
            text=self._text,
            error=error,
            aborted=self._aborted,
        ))

    def _on_task_done(self, task: asyncio.Task) -> None:
        # A task cancelled before its first step never runs _run's handlers.
        if task.cancelled():
            self._finish_cancelled()

    def _emit(self, event: StreamEvent) -> None:
        try:
            self._on_event(event)
        except Exception as e:
            logger.error(
                "request_event_handler_failed",
                session_id=self.session_id,
                message_id=self.message_id,
                event_kind=event.kind.value,
                error=str(e),
            )

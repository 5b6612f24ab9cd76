"""Exceptions raised by the turnwise engine."""

from __future__ import annotations


class TurnwiseError(Exception):
    """Base class for turnwise errors."""


class FetchFailedError(TurnwiseError):
    """A URL input could not be fetched or turned into text."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Failed to fetch {url}: {reason}")
        self.url = url
        self.reason = reason


class DuplicateRequestError(TurnwiseError):
    """A request is already in flight for this (session, message) pair."""

    def __init__(self, session_id: str, message_id: str) -> None:
        super().__init__(
            f"Request already in flight for session {session_id}, message {message_id}"
        )
        self.session_id = session_id
        self.message_id = message_id


class StreamError(TurnwiseError):
    """The completion endpoint failed while a request was in flight."""


class RequestCancelled(TurnwiseError):
    """The user aborted the request. Not a failure."""

    def __init__(self) -> None:
        super().__init__("The request was aborted by the user")

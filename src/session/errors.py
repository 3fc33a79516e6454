"""Failures surfaced to the caller by the tutoring session layer."""
from __future__ import annotations


class SessionError(Exception):
    """Base class for session-level failures."""


class SessionBusyError(SessionError):
    """A text completion is already streaming; the new submission is rejected."""


class CompletionError(SessionError):
    """The text-completion provider failed before the stream ended."""

    def __init__(self, message: str, *, message_id: str | None = None) -> None:
        super().__init__(message)
        self.message_id = message_id


class VoiceChannelError(SessionError):
    """The voice channel cannot accept the command in its current state."""

"""Errors raised by the reconciliation engine for rejected stream operations."""
from __future__ import annotations


class TranscriptError(Exception):
    """Base class for caller-visible transcript failures."""

    def __init__(self, message_id: str, reason: str) -> None:
        super().__init__(f"{reason}: {message_id!r}")
        self.message_id = message_id


class UnknownMessageError(TranscriptError):
    def __init__(self, message_id: str) -> None:
        super().__init__(message_id, "No message with id")


class MessageFinalizedError(TranscriptError):
    def __init__(self, message_id: str) -> None:
        super().__init__(message_id, "Message already finalized")


class SessionInvalidatedError(TranscriptError):
    """The id belonged to a stream that was invalidated by a reset or an ended conversation."""

    def __init__(self, message_id: str) -> None:
        super().__init__(message_id, "Stream was invalidated")

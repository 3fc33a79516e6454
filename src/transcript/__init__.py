"""Conversation reconciliation: inbound event normalisation and the ordered transcript."""

from __future__ import annotations

from .engine import RECENCY_WINDOW_SECONDS, ReconciliationEngine, export_text
from .errors import (
    MessageFinalizedError,
    SessionInvalidatedError,
    TranscriptError,
    UnknownMessageError,
)
from .normalizer import (
    extract_delta,
    normalize_tool_call,
    normalize_user_text,
    normalize_voice_event,
)
from .typing import Message, NormalizedEvent

__all__ = [
    "RECENCY_WINDOW_SECONDS",
    "ReconciliationEngine",
    "export_text",
    "Message",
    "NormalizedEvent",
    "TranscriptError",
    "UnknownMessageError",
    "MessageFinalizedError",
    "SessionInvalidatedError",
    "normalize_voice_event",
    "normalize_tool_call",
    "normalize_user_text",
    "extract_delta",
]

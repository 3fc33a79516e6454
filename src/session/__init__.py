"""Tutoring session: text streaming, greeting policy, voice relay and blackboard."""

from __future__ import annotations

from .blackboard import Blackboard
from .errors import CompletionError, SessionBusyError, SessionError, VoiceChannelError
from .greeting import SessionCounter, greeting
from .prompt import build_system_instruction
from .streaming import StreamingTextSession, history_for_completion
from .tutor import SubmitResult, TutorSession
from .voice import ConnectionState, RelayVoiceChannel, VoiceChannel

__all__ = [
    "Blackboard",
    "CompletionError",
    "SessionBusyError",
    "SessionError",
    "VoiceChannelError",
    "SessionCounter",
    "greeting",
    "build_system_instruction",
    "StreamingTextSession",
    "history_for_completion",
    "SubmitResult",
    "TutorSession",
    "ConnectionState",
    "RelayVoiceChannel",
    "VoiceChannel",
]

from __future__ import annotations

import threading

FIRST_SESSION_GREETING = (
    "Hi, I'm your tutor. Before we dive in, tell me a little about what you're "
    "studying and what you'd like to get out of today. You can talk to me or type, "
    "and I'll put formulas and key points on the blackboard as we go."
)

RESUME_GREETING = (
    "Welcome back! Let's pick up where we left off. "
    "What would you like to work on next?"
)


def greeting(session_ordinal: int) -> str:
    """Opening utterance for the ``session_ordinal``-th session (1-based)."""
    if session_ordinal < 1:
        raise ValueError("session_ordinal must be >= 1")
    return FIRST_SESSION_GREETING if session_ordinal == 1 else RESUME_GREETING


class SessionCounter:
    """Monotonic count of sessions started during this process's lifetime."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        return self._value

    def next(self) -> int:
        with self._lock:
            self._value += 1
            return self._value

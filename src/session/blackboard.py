from __future__ import annotations

import threading
from typing import List

ACK = "Successfully updated blackboard"


class Blackboard:
    """Running document written by the voice agent's blackboard tool."""

    def __init__(self) -> None:
        self._lines: List[str] = []
        self._lock = threading.Lock()

    def write(self, text: str) -> str:
        """Append ``text`` (newline separated) and return the tool acknowledgement."""
        text = (text or "").strip()
        if text:
            with self._lock:
                self._lines.append(text)
        return ACK

    @property
    def content(self) -> str:
        with self._lock:
            return "\n".join(self._lines)

    def clear(self) -> None:
        with self._lock:
            self._lines.clear()

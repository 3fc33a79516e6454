"""Voice channel interface and the browser relay implementation.

The real-time voice provider runs in the browser (its SDK owns the
microphone and the websocket). The server sees it through
:class:`VoiceChannel`: the browser reports connection state and forwards
transcript/tool events, and picks up the commands queued here by polling
the outbox.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Protocol

from .errors import VoiceChannelError

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"


class VoiceChannel(Protocol):
    status: ConnectionState
    is_speaking: bool

    def start(self, config: Mapping[str, Any]) -> None: ...

    def stop(self) -> None: ...

    def set_volume(self, volume: float) -> None: ...

    def send_contextual_update(self, text: str) -> None: ...

    def send_user_message(self, text: str) -> None: ...


def clamp_volume(volume: float) -> float:
    return min(1.0, max(0.0, float(volume)))


class RelayVoiceChannel:
    """In-process stand-in for the browser-side voice session.

    Commands are queued on a bounded outbox; the oldest commands are dropped
    if the browser stops draining it.
    """

    def __init__(self, *, outbox_size: int = 256) -> None:
        self.status = ConnectionState.DISCONNECTED
        self.is_speaking = False
        self.volume = 0.8
        self._outbox: Deque[Dict[str, Any]] = deque(maxlen=max(1, int(outbox_size)))
        self._lock = threading.RLock()

    # --------- commands ----------
    def _push(self, command: Dict[str, Any]) -> None:
        with self._lock:
            if len(self._outbox) == self._outbox.maxlen:
                logger.warning("Voice outbox full, dropping oldest %r command", self._outbox[0].get("type"))
            self._outbox.append(command)

    def _require_connected(self, what: str) -> None:
        if self.status is not ConnectionState.CONNECTED:
            raise VoiceChannelError(f"Cannot {what}: voice channel is {self.status.value}")

    def start(self, config: Mapping[str, Any]) -> None:
        with self._lock:
            if self.status in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                raise VoiceChannelError(f"Voice channel already {self.status.value}")
            self.status = ConnectionState.CONNECTING
            self._push({"type": "start", "config": dict(config)})

    def stop(self) -> None:
        with self._lock:
            if self.status is ConnectionState.DISCONNECTED:
                return
            self.status = ConnectionState.DISCONNECTING
            self.is_speaking = False
            self._push({"type": "stop"})

    def set_volume(self, volume: float) -> None:
        with self._lock:
            self.volume = clamp_volume(volume)
            if self.status is ConnectionState.CONNECTED:
                self._push({"type": "volume", "volume": self.volume})

    def send_contextual_update(self, text: str) -> None:
        with self._lock:
            self._require_connected("send contextual update")
            self._push({"type": "contextual_update", "text": text})

    def send_user_message(self, text: str) -> None:
        with self._lock:
            self._require_connected("send user message")
            self._push({"type": "user_message", "text": text})

    # --------- state reported by the browser ----------
    def update_status(self, status: str, *, is_speaking: Optional[bool] = None) -> ConnectionState:
        state = ConnectionState(status)
        with self._lock:
            if state is not self.status:
                logger.info("Voice channel %s -> %s", self.status.value, state.value)
            self.status = state
            if state is not ConnectionState.CONNECTED:
                self.is_speaking = False
            elif is_speaking is not None:
                self.is_speaking = bool(is_speaking)
            if state is ConnectionState.CONNECTED:
                # Re-apply the volume chosen while connecting.
                self._push({"type": "volume", "volume": self.volume})
            return state

    def drain(self) -> List[Dict[str, Any]]:
        """Hand every pending command to the browser."""
        with self._lock:
            out = list(self._outbox)
            self._outbox.clear()
            return out

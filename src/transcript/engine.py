"""Ordered, de-duplicated conversation transcript (thread-safe)."""
from __future__ import annotations

import io
import itertools
import logging
import threading
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .errors import MessageFinalizedError, SessionInvalidatedError, UnknownMessageError
from .typing import LEARNER, VOICE, Message, NormalizedEvent

logger = logging.getLogger(__name__)

# Voice transcription delivers an evolving hypothesis for one utterance as
# several events. A learner/voice event younger than this merges into the
# tail, and an identical same-role message younger than this is a re-delivery.
RECENCY_WINDOW_SECONDS = 5.0


class ReconciliationEngine:
    """Single owner of the transcript.

    Messages only ever get appended; afterwards the engine may rewrite the
    text of the learner/voice tail (transcript revisions) or grow a
    streaming placeholder by id. Every public method takes the same lock,
    so the inspect-tail / decide / mutate step is never interleaved.

    Usage:
        engine = ReconciliationEngine()
        engine.append(normalize_voice_event({"source": "user", "message": "hi"}))
        mid = engine.begin_streaming("tutor", "text")
        engine.append_delta(mid, "Hello")
        engine.finalize(mid)
        engine.snapshot()
    """

    def __init__(
        self,
        *,
        recency_window: float = RECENCY_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if recency_window < 0:
            raise ValueError("recency_window must be >= 0")
        self.recency_window = float(recency_window)
        self._clock = clock
        self._lock = threading.RLock()
        self._ids = itertools.count(1)  # never rewound, even by reset()
        self._issued = 0
        self._reset_floor = 0  # every id numbered at or below this predates the last reset()
        self._messages: List[Message] = []
        self._by_id: Dict[str, Message] = {}
        self._invalidated: Set[str] = set()
        self._generation = 0

    @property
    def generation(self) -> int:
        """Bumped by :meth:`reset` and :meth:`invalidate_streams`.

        A producer that has not opened its placeholder yet compares this
        against the value it saw at start to learn it was cancelled.
        """
        return self._generation

    # --------- internals ----------
    def _new_id(self) -> str:
        self._issued = next(self._ids)
        return f"msg-{self._issued}"

    def _predates_reset(self, message_id: str) -> bool:
        prefix, _, number = message_id.partition("-")
        return prefix == "msg" and number.isdigit() and int(number) <= self._reset_floor

    def _timestamp(self, now: Optional[float]) -> float:
        ts = self._clock() if now is None else float(now)
        if self._messages:
            # Clock skew must never break insertion-order == temporal-order.
            ts = max(ts, self._messages[-1].created_at)
        return ts

    def _recent(self, msg: Message, now: float) -> bool:
        return now - msg.created_at < self.recency_window

    def _insert(self, role: str, text: str, channel: str, now: float, *,
                annotation: Optional[str] = None, final: bool = True) -> Message:
        msg = Message(
            id=self._new_id(),
            role=role,
            text=text,
            channel=channel,
            created_at=now,
            annotation=annotation,
            final=final,
        )
        self._messages.append(msg)
        self._by_id[msg.id] = msg
        return msg

    def _find_duplicate(self, event: NormalizedEvent, now: float) -> Optional[Message]:
        # Newest first; created_at is non-decreasing so the scan stops at the window edge.
        for msg in reversed(self._messages):
            if not self._recent(msg, now):
                return None
            if not msg.final:
                continue
            if msg.role == event.role and msg.text.strip() == event.text:
                return msg
        return None

    def _streaming(self, message_id: str) -> Message:
        if message_id in self._invalidated or self._predates_reset(message_id):
            raise SessionInvalidatedError(message_id)
        msg = self._by_id.get(message_id)
        if msg is None:
            raise UnknownMessageError(message_id)
        return msg

    # --------- core API ----------
    def append(self, event: Optional[NormalizedEvent], now: Optional[float] = None) -> Optional[Message]:
        """Apply one normalized event.

        Returns a copy of the appended or revised message, or ``None`` when
        the event was dropped as a re-delivery (or was ``None`` to begin with).
        """
        return self.append_or_match(event, now)[0]

    def append_or_match(
        self, event: Optional[NormalizedEvent], now: Optional[float] = None
    ) -> Tuple[Optional[Message], Optional[Message]]:
        """Like :meth:`append`, but also report what a dropped event matched.

        Returns ``(message, None)`` when the event was applied and
        ``(None, duplicate)`` when it was dropped as a re-delivery of
        ``duplicate``. Both are copies.
        """
        if event is None:
            return None, None
        with self._lock:
            ts = self._timestamp(now)
            tail = self._messages[-1] if self._messages else None

            if (
                event.channel == VOICE
                and event.role == LEARNER
                and tail is not None
                and tail.role == LEARNER
                and tail.channel == VOICE
                and tail.final
                and self._recent(tail, ts)
            ):
                tail.text = event.text
                return replace(tail), None

            duplicate = self._find_duplicate(event, ts)
            if duplicate is not None:
                logger.debug("Dropping re-delivered %s/%s event", event.role, event.channel)
                return None, replace(duplicate)

            msg = self._insert(event.role, event.text, event.channel, ts, annotation=event.annotation)
            return replace(msg), None

    def begin_streaming(self, role: str, channel: str, now: Optional[float] = None) -> str:
        """Append an empty placeholder and return its id."""
        with self._lock:
            msg = self._insert(role, "", channel, self._timestamp(now), final=False)
            return msg.id

    def append_delta(self, message_id: str, delta: str) -> str:
        """Concatenate ``delta`` onto a streaming message; returns the new text."""
        with self._lock:
            msg = self._streaming(message_id)
            if msg.final:
                raise MessageFinalizedError(message_id)
            msg.text += delta or ""
            return msg.text

    def finalize(self, message_id: str) -> None:
        """Close a streaming message. Finalizing twice is a no-op."""
        with self._lock:
            msg = self._streaming(message_id)
            msg.final = True

    def invalidate_streams(self) -> List[str]:
        """Close every open placeholder and reject any later delta for it.

        Partial text stays in the transcript. Returns the invalidated ids.
        """
        with self._lock:
            self._generation += 1
            out: List[str] = []
            for msg in self._messages:
                if not msg.final:
                    msg.final = True
                    self._invalidated.add(msg.id)
                    out.append(msg.id)
            return out

    def reset(self) -> None:
        """Start a fresh transcript. Ids issued so far are never reused."""
        with self._lock:
            self._generation += 1
            self._reset_floor = self._issued
            self._invalidated.clear()
            self._messages.clear()
            self._by_id.clear()

    # --------- read side ----------
    def snapshot(self) -> Tuple[Message, ...]:
        """Ordered copies of every message; mutating them has no effect on the engine."""
        with self._lock:
            return tuple(replace(m) for m in self._messages)

    def get(self, message_id: str) -> Optional[Message]:
        with self._lock:
            msg = self._by_id.get(message_id)
            return replace(msg) if msg is not None else None

    def is_open(self, message_id: str) -> bool:
        with self._lock:
            msg = self._by_id.get(message_id)
            return msg is not None and not msg.final and message_id not in self._invalidated

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)


def export_text(messages: Iterable[Message], limit_chars: int = 8000) -> str:
    """Human-readable transcript (one labelled line per message)."""
    buf = io.StringIO()
    for m in messages:
        text = (m.text or "").strip()
        if not text:
            continue
        if m.is_annotation:
            label = "Blackboard"
        else:
            label = "You" if m.role == LEARNER else "Tutor"
        buf.write(f"{label} ({m.channel}): {text}\n")
    out = buf.getvalue()
    return out[:limit_chars]

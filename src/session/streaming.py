"""One request/response exchange with the text-completion provider."""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional

from transcript.engine import ReconciliationEngine
from transcript.errors import SessionInvalidatedError, TranscriptError
from transcript.typing import LEARNER, TEXT, TUTOR, Message

from .errors import CompletionError
from .voice import ConnectionState, VoiceChannel

logger = logging.getLogger(__name__)


def history_for_completion(messages: Iterable[Message]) -> List[Dict[str, str]]:
    """Convert transcript messages to provider chat turns.

    Blackboard annotations and empty placeholders are not conversation and
    are left out.
    """
    out: List[Dict[str, str]] = []
    for m in messages:
        if m.is_annotation:
            continue
        text = (m.text or "").strip()
        if not text:
            continue
        out.append({"role": "user" if m.role == LEARNER else "assistant", "content": text})
    return out


class StreamingTextSession:
    """Drive one completion stream into the reconciliation engine.

    The tutor reply placeholder is opened on the first token, grown with
    every following token and finalized when the provider stops. A stream
    that yields nothing still leaves an empty finalized tutor message.

    If the engine invalidates the stream (conversation ended or transcript
    reset) the remaining tokens are discarded. Provider failures keep the
    partial reply in the transcript and surface as :class:`CompletionError`.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        provider,
        *,
        system_instruction: str,
        max_tokens: Optional[int] = None,
        voice: Optional[VoiceChannel] = None,
        on_delta: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.engine = engine
        self.provider = provider
        self.system_instruction = system_instruction
        self.max_tokens = max_tokens
        self.voice = voice
        self.on_delta = on_delta

        self.message_id: Optional[str] = None
        self.cancelled = False
        self._parts: List[str] = []
        self._generation = engine.generation

    @property
    def text(self) -> str:
        return "".join(self._parts)

    def cancel(self) -> None:
        """Stop applying tokens; whatever arrives afterwards is dropped."""
        self.cancelled = True

    # --------- internals ----------
    def _apply(self, token: str) -> bool:
        """Apply one token; False once the stream is no longer wanted."""
        if self.cancelled:
            return False
        try:
            if self.message_id is None:
                if self.engine.generation != self._generation:
                    raise SessionInvalidatedError("(unopened)")
                self.message_id = self.engine.begin_streaming(TUTOR, TEXT)
            self.engine.append_delta(self.message_id, token)
        except SessionInvalidatedError:
            logger.info("Text stream invalidated, discarding remaining tokens")
            self.cancelled = True
            return False
        self._parts.append(token)
        if self.on_delta is not None:
            self.on_delta(token)
        return True

    def _close(self) -> None:
        if self.message_id is None:
            return
        try:
            self.engine.finalize(self.message_id)
        except TranscriptError as e:
            logger.debug("Finalize skipped: %s", e)

    def _forward_to_voice(self, text: str) -> None:
        voice = self.voice
        if voice is None or not text or voice.status is not ConnectionState.CONNECTED:
            return
        try:
            voice.send_contextual_update(text)
        except Exception as e:
            logger.warning("Contextual update to voice channel failed: %s", e)

    # --------- public API ----------
    async def run(self, history: Iterable[Message]) -> Optional[str]:
        """Stream the tutor reply; returns the reply message id (None if cancelled first)."""
        turns = history_for_completion(history)
        stream = self.provider.stream(self.system_instruction, turns, self.max_tokens)
        try:
            async for token in stream:
                if not token:
                    continue
                if not self._apply(token):
                    break
        except asyncio.CancelledError:
            self.cancelled = True
            self._close()
            raise
        except Exception as e:
            logger.exception("Text completion failed: %s", e)
            self._close()
            raise CompletionError(str(e) or type(e).__name__, message_id=self.message_id) from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if self.cancelled:
            self._close()
            return self.message_id

        if self.message_id is None:
            if self.engine.generation != self._generation:
                return None
            self.message_id = self.engine.begin_streaming(TUTOR, TEXT)
        self._close()
        self._forward_to_voice(self.text)
        return self.message_id

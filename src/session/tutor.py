"""The live tutoring session: one transcript fed by voice, text and blackboard."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from content.store import ContentStore
from transcript.engine import ReconciliationEngine
from transcript.normalizer import normalize_tool_call, normalize_user_text, normalize_voice_event
from transcript.typing import TEXT, VOICE, Message

from .blackboard import ACK, Blackboard
from .errors import SessionBusyError, VoiceChannelError
from .greeting import SessionCounter, greeting
from .prompt import build_system_instruction
from .streaming import StreamingTextSession
from .voice import ConnectionState, VoiceChannel, clamp_volume

logger = logging.getLogger(__name__)


@dataclass
class SubmitResult:
    learner: Optional[Message]   # None when dropped as a re-delivery
    reply_id: Optional[str]      # tutor/text reply, None when routed to voice
    routed_to: str               # "voice" | "text"


class TutorSession:
    """
    Wires the reconciliation engine to its producers.

    - voice events and blackboard tool calls are normalized and appended;
    - typed learner text goes to the voice agent while it is connected,
      otherwise it starts a :class:`StreamingTextSession` (one at a time).
      With ``typed_text_route="text"`` the text model answers even during a
      voice call and its final reply is passed to the agent as context;
    - ending the conversation invalidates any in-flight stream, and the next
      start resets the transcript and greets according to the session count.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        provider,
        voice: VoiceChannel,
        *,
        content: Optional[ContentStore] = None,
        persona: Optional[str] = None,
        max_tokens: Optional[int] = None,
        counter: Optional[SessionCounter] = None,
        blackboard: Optional[Blackboard] = None,
        typed_text_route: str = VOICE,
    ) -> None:
        if typed_text_route not in (VOICE, TEXT):
            raise ValueError(f"typed_text_route must be 'voice' or 'text', got {typed_text_route!r}")
        self.engine = engine
        self.provider = provider
        self.voice = voice
        self.content = content if content is not None else ContentStore.empty()
        self.persona = persona
        self.max_tokens = max_tokens
        self.counter = counter if counter is not None else SessionCounter()
        self.blackboard = blackboard if blackboard is not None else Blackboard()
        self.typed_text_route = typed_text_route

        self.learner: Optional[str] = None
        self.module: Optional[str] = None
        self.error: Optional[str] = None
        self._active: Optional[StreamingTextSession] = None
        self._ended = False

    # --------- state ----------
    @property
    def busy(self) -> bool:
        return self._active is not None

    def select(self, learner: Optional[str] = None, module: Optional[str] = None) -> None:
        """Choose the learner profile and module by name (validated against the store)."""
        if learner:
            self.content.learner(learner)
        if module:
            self.content.module(module)
        self.learner = learner or None
        self.module = module or None

    def system_instruction(self) -> str:
        learner = self.content.learner(self.learner) if self.learner else None
        module = self.content.module(self.module) if self.module else None
        return build_system_instruction(self.persona, learner=learner, module=module)

    def _dynamic_variables(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        if self.learner:
            out["learner"] = self.content.learner(self.learner).strip()
        if self.module:
            out["module"] = self.content.module(self.module).strip()
        return out

    # --------- conversation lifecycle ----------
    def start_voice(self, learner: Optional[str] = None, module: Optional[str] = None) -> Dict[str, Any]:
        """Start a voice conversation and return the config handed to the channel."""
        if self.voice.status in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            raise VoiceChannelError(f"Voice channel already {self.voice.status.value}")
        if learner is not None or module is not None:
            self.select(learner, module)
        if self._ended:
            self.engine.reset()
            self.blackboard.clear()
            self._ended = False

        ordinal = self.counter.next()
        config: Dict[str, Any] = {
            "first_message": greeting(ordinal),
            "dynamic_variables": self._dynamic_variables(),
            "session_ordinal": ordinal,
        }
        self.error = None
        try:
            self.voice.start(config)
        except Exception as e:
            self.error = str(e) or "Failed to start conversation."
            raise
        return config

    def end_conversation(self) -> None:
        """End the conversation; safe while a text stream is in flight."""
        if self._active is not None:
            self._active.cancel()
        dropped = self.engine.invalidate_streams()
        if dropped:
            logger.info("Invalidated %d in-flight stream(s)", len(dropped))
        try:
            self.voice.stop()
        except Exception as e:
            self.error = str(e) or "Failed to end conversation."
            logger.warning("Stopping voice channel failed: %s", e)
        self._ended = True

    def report_voice_status(self, status: str, *, is_speaking: Optional[bool] = None) -> ConnectionState:
        state = self.voice.update_status(status, is_speaking=is_speaking)  # type: ignore[attr-defined]
        if state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTED):
            self.error = None
        return state

    def report_error(self, message: str) -> None:
        self.error = (message or "").strip() or "An error occurred."
        logger.warning("Voice channel error: %s", self.error)

    def set_volume(self, volume: float) -> float:
        volume = clamp_volume(volume)
        self.voice.set_volume(volume)
        return volume

    # --------- inbound events ----------
    def handle_voice_event(self, payload: Any) -> Optional[Message]:
        return self.engine.append(normalize_voice_event(payload))

    def handle_tool_call(self, payload: Any) -> str:
        """Blackboard tool: write to the board, annotate the transcript, acknowledge."""
        event = normalize_tool_call(payload)
        if event is None:
            return self.blackboard.write("")
        message, duplicate = self.engine.append_or_match(event)
        if message is None and duplicate is not None and duplicate.is_annotation:
            return ACK  # re-delivered, already on the board
        # Text the tutor just spoke still belongs on the board.
        return self.blackboard.write(event.text)

    def submit_text(self, text: str, *, on_delta: Optional[Callable[[str], None]] = None) -> Awaitable[SubmitResult]:
        """Typed learner input.

        Validation, routing and the busy claim happen before this returns, so
        a second call is rejected even if the first reply has not started
        yet. The returned awaitable must be awaited to run (and release) the
        reply. Raises ValueError for empty text and SessionBusyError while a
        reply is still streaming. Provider failures propagate from the
        awaitable as CompletionError.
        """
        event = normalize_user_text(text)
        if event is None:
            raise ValueError("Message cannot be empty.")
        if self._active is not None:
            raise SessionBusyError("A reply is still streaming.")

        if self.voice.status is ConnectionState.CONNECTED and self.typed_text_route == VOICE:
            learner = self.engine.append(event)
            try:
                self.voice.send_user_message(event.text)
            except VoiceChannelError as e:
                self.error = str(e)
                raise
            return self._done(SubmitResult(learner=learner, reply_id=None, routed_to=VOICE))

        session = StreamingTextSession(
            self.engine,
            self.provider,
            system_instruction=self.system_instruction(),
            max_tokens=self.max_tokens,
            voice=self.voice,
            on_delta=on_delta,
        )
        learner = self.engine.append(event)
        if learner is None:
            return self._done(SubmitResult(learner=None, reply_id=None, routed_to=TEXT))
        self._active = session
        return self._stream(session, learner, self.engine.snapshot())

    async def _done(self, result: SubmitResult) -> SubmitResult:
        return result

    async def _stream(self, session: StreamingTextSession, learner: Message, history) -> SubmitResult:
        try:
            reply_id = await session.run(history)
        except Exception as e:
            self.error = str(e) or "Text completion failed."
            raise
        finally:
            self._active = None
        return SubmitResult(learner=learner, reply_id=reply_id, routed_to=TEXT)

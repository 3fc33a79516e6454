"""Map heterogeneous inbound payloads onto :class:`NormalizedEvent`.

Three sources feed the transcript:

- the voice channel, whose events carry role hints in a ``role``, ``source``
  or ``type`` field and the utterance text under one of a few keys;
- tool invocations from the voice agent (blackboard updates);
- the text-completion stream, whose chunks come in either completion or
  chat-completion shape.

Every function here returns at most one event. Anything that cannot be
understood is dropped (``None``) rather than raised, since upstream sources
are noisy by nature.
"""
from __future__ import annotations

import json
from typing import Any, Mapping, Optional, Sequence

from .typing import BLACKBOARD, LEARNER, TEXT, TUTOR, VOICE, NormalizedEvent

# Checked in this order; learner wins as soon as any of them carries a user marker.
ROLE_FIELDS: Sequence[str] = ("role", "source", "type")
USER_MARKERS = frozenset({"user", "learner", "human", "user_transcript", "user_message"})

VOICE_TEXT_FIELDS: Sequence[str] = ("text", "message", "transcript", "content")

# Expected blackboard tool parameters, most specific first.
TOOL_TEXT_FIELDS: Sequence[str] = ("text", "content", "markdown", "latex", "formula")


def _clean(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def _is_user_marker(value: Any) -> bool:
    return isinstance(value, str) and value.strip().lower() in USER_MARKERS


def resolve_role(payload: Mapping[str, Any]) -> str:
    """Learner if any role hint names the user, tutor otherwise (including no hint at all)."""
    for field in ROLE_FIELDS:
        if _is_user_marker(payload.get(field)):
            return LEARNER
    return TUTOR


def _voice_text(payload: Mapping[str, Any]) -> str:
    for field in VOICE_TEXT_FIELDS:
        text = _clean(payload.get(field))
        if text:
            return text

    # Raw websocket frames nest the text one level down.
    user_ev = payload.get("user_transcription_event")
    if isinstance(user_ev, Mapping):
        return _clean(user_ev.get("user_transcript"))
    agent_ev = payload.get("agent_response_event")
    if isinstance(agent_ev, Mapping):
        return _clean(agent_ev.get("agent_response"))
    return ""


def normalize_voice_event(payload: Any) -> Optional[NormalizedEvent]:
    """Normalize one voice-channel message (transcript or agent reply)."""
    if not isinstance(payload, Mapping):
        return None
    text = _voice_text(payload)
    if not text:
        return None

    role = resolve_role(payload)
    if role == TUTOR and isinstance(payload.get("user_transcription_event"), Mapping):
        role = LEARNER
    return NormalizedEvent(role=role, text=text, channel=VOICE)


def tool_call_text(payload: Mapping[str, Any]) -> str:
    for field in TOOL_TEXT_FIELDS:
        if field in payload and payload[field] is not None:
            value = payload[field]
            return value.strip() if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
    try:
        return json.dumps(dict(payload), ensure_ascii=False, sort_keys=True)
    except (TypeError, ValueError):
        return str(dict(payload))


def normalize_tool_call(payload: Any) -> Optional[NormalizedEvent]:
    """Normalize a blackboard tool invocation into a tutor annotation."""
    if not isinstance(payload, Mapping) or not payload:
        return None
    text = tool_call_text(payload).strip()
    if not text:
        return None
    return NormalizedEvent(role=TUTOR, text=text, channel=VOICE, annotation=BLACKBOARD)


def normalize_user_text(text: Any) -> Optional[NormalizedEvent]:
    """Typed learner input."""
    text = _clean(text)
    if not text:
        return None
    return NormalizedEvent(role=LEARNER, text=text, channel=TEXT)


def extract_delta(chunk: Any) -> str:
    """Pull the token text out of a streamed completion chunk.

    Accepts plain strings, completion chunks (``choices[0].text``) and
    chat-completion chunks (``choices[0].delta.content``). Unknown shapes
    yield an empty string. Whitespace is preserved: it is part of the token.
    """
    if isinstance(chunk, str):
        return chunk
    if not isinstance(chunk, Mapping):
        return ""
    choices = chunk.get("choices") or [{}]
    first = choices[0] if isinstance(choices, Sequence) and choices else {}
    if not isinstance(first, Mapping):
        return ""
    text = first.get("text")
    if isinstance(text, str):
        return text
    delta = first.get("delta")
    if isinstance(delta, Mapping):
        content = delta.get("content")
        if isinstance(content, str):
            return content
    return ""

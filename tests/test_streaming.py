from __future__ import annotations

import asyncio

import pytest

from conftest import GatedProvider, ScriptedProvider
from session.errors import CompletionError
from session.streaming import StreamingTextSession, history_for_completion
from session.voice import ConnectionState, RelayVoiceChannel
from transcript.errors import MessageFinalizedError, SessionInvalidatedError
from transcript.typing import NormalizedEvent


def _learner_text(engine, text):
    return engine.append(NormalizedEvent(role="learner", text=text, channel="text"))


def test_history_skips_annotations_and_empty_placeholders(engine, clock):
    _learner_text(engine, "what is F?")
    engine.append(NormalizedEvent(role="tutor", text="F = ma", channel="voice", annotation="blackboard"))
    engine.begin_streaming("tutor", "text")
    clock.advance(1)
    engine.append(NormalizedEvent(role="tutor", text="Force.", channel="voice"))

    assert history_for_completion(engine.snapshot()) == [
        {"role": "user", "content": "what is F?"},
        {"role": "assistant", "content": "Force."},
    ]


def test_tokens_build_one_finalized_reply(engine):
    _learner_text(engine, "say hello")
    provider = ScriptedProvider(["Hel", "lo"])
    seen = []
    session = StreamingTextSession(
        engine, provider, system_instruction="Be brief.", max_tokens=32, on_delta=seen.append
    )

    mid = asyncio.run(session.run(engine.snapshot()))

    msg = engine.get(mid)
    assert (msg.role, msg.channel, msg.text, msg.final) == ("tutor", "text", "Hello", True)
    assert seen == ["Hel", "lo"]
    assert provider.calls[0]["system"] == "Be brief."
    assert provider.calls[0]["max_tokens"] == 32
    assert provider.calls[0]["history"] == [{"role": "user", "content": "say hello"}]
    with pytest.raises(MessageFinalizedError):
        engine.append_delta(mid, "!")


def test_zero_tokens_leaves_empty_finalized_reply(engine):
    session = StreamingTextSession(engine, ScriptedProvider([]), system_instruction="")
    mid = asyncio.run(session.run([]))
    msg = engine.get(mid)
    assert msg.text == ""
    assert msg.final


def test_provider_failure_keeps_partial_text(engine):
    session = StreamingTextSession(
        engine, ScriptedProvider(["Gra", "vity", " pulls"], fail_after=2), system_instruction=""
    )
    with pytest.raises(CompletionError) as info:
        asyncio.run(session.run([]))

    mid = info.value.message_id
    assert engine.get(mid).text == "Gravity"
    assert engine.get(mid).final
    # engine still usable afterwards
    assert engine.append(NormalizedEvent(role="learner", text="again?", channel="text")) is not None


def test_final_text_forwarded_to_connected_voice(engine):
    voice = RelayVoiceChannel()
    voice.update_status("connected")
    voice.drain()
    session = StreamingTextSession(
        engine, ScriptedProvider(["F", " = ma"]), system_instruction="", voice=voice
    )
    asyncio.run(session.run([]))
    assert voice.drain() == [{"type": "contextual_update", "text": "F = ma"}]


def test_voice_failure_does_not_roll_back(engine):
    class BrokenVoice:
        status = ConnectionState.CONNECTED
        is_speaking = False

        def send_contextual_update(self, text):
            raise ConnectionError("socket closed")

    session = StreamingTextSession(
        engine, ScriptedProvider(["ok"]), system_instruction="", voice=BrokenVoice()
    )
    mid = asyncio.run(session.run([]))
    assert engine.get(mid).text == "ok"


def test_disconnected_voice_gets_nothing(engine):
    voice = RelayVoiceChannel()
    session = StreamingTextSession(engine, ScriptedProvider(["ok"]), system_instruction="", voice=voice)
    asyncio.run(session.run([]))
    assert voice.drain() == []


def test_deltas_after_invalidation_are_discarded(engine):
    provider = GatedProvider(["Fall", "ing", " apples"])
    session = StreamingTextSession(engine, provider, system_instruction="")

    async def scenario():
        task = asyncio.create_task(session.run([]))
        provider.release()
        while session.message_id is None:
            await asyncio.sleep(0)
        engine.invalidate_streams()
        provider.release(2)
        return await task

    mid = asyncio.run(scenario())
    assert engine.get(mid).text == "Fall"
    assert session.cancelled
    with pytest.raises(SessionInvalidatedError):
        engine.append_delta(mid, "x")


def test_reset_before_first_token_opens_nothing(engine):
    provider = GatedProvider(["late"])
    session = StreamingTextSession(engine, provider, system_instruction="")

    async def scenario():
        task = asyncio.create_task(session.run([]))
        await asyncio.sleep(0)
        engine.reset()
        provider.release()
        return await task

    assert asyncio.run(scenario()) is None
    assert engine.snapshot() == ()

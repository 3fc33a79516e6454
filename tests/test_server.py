from __future__ import annotations

from pathlib import Path

import yaml
from fastapi.testclient import TestClient

from conftest import ScriptedProvider
from content.store import ContentStore
from transcript.engine import ReconciliationEngine
from tutor_server.server import create_app


def make_client(content_dir: Path, provider=None) -> TestClient:
    app = create_app(
        provider=provider or ScriptedProvider(["Gravity ", "attracts."]),
        content=ContentStore.load(content_dir),
    )
    return TestClient(app)


def test_health_and_content(content_dir: Path):
    client = make_client(content_dir)
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True, "model_loaded": True, "voice": "disconnected", "busy": False}

    r = client.get("/content")
    assert r.json() == {"learners": ["alex"], "modules": ["gravity"]}


def test_message_roundtrip(content_dir: Path):
    """Typed text while voice is disconnected produces a finalized tutor reply."""
    client = make_client(content_dir)

    r = client.post("/messages", json={"message": "explain gravity"})
    assert r.status_code == 200
    body = r.json()
    assert body["routed_to"] == "text"
    assert body["learner"]["text"] == "explain gravity"
    assert body["reply"]["text"] == "Gravity attracts."
    assert body["reply"]["final"] is True

    messages = client.get("/transcript").json()["messages"]
    assert [(m["role"], m["channel"]) for m in messages] == [("learner", "text"), ("tutor", "text")]


def test_streamed_message(content_dir: Path):
    client = make_client(content_dir)
    r = client.post("/messages", json={"message": "explain gravity", "stream": True})
    assert r.status_code == 200
    assert r.text == "Gravity attracts."
    assert client.get("/transcript").json()["messages"][-1]["text"] == "Gravity attracts."


def test_empty_message_rejected(content_dir: Path):
    client = make_client(content_dir)
    assert client.post("/messages", json={"message": "   "}).status_code == 400
    assert client.post("/messages", json={"message": ""}).status_code == 422


def test_provider_failure_is_502(content_dir: Path):
    client = make_client(content_dir, ScriptedProvider(["par", "tial"], fail_after=1))
    r = client.post("/messages", json={"message": "go"})
    assert r.status_code == 502
    body = client.get("/transcript").json()
    assert body["error"]
    assert [m["text"] for m in body["messages"]] == ["go", "par"]


def test_voice_flow(content_dir: Path):
    client = make_client(content_dir)

    r = client.post("/voice/start", json={"learner": "alex", "module": "gravity"})
    assert r.status_code == 200
    assert r.json()["status"] == "connecting"
    assert r.json()["config"]["session_ordinal"] == 1

    assert client.post("/voice/status", json={"status": "connected"}).json()["status"] == "connected"

    # partial then final transcript of one utterance
    client.post("/voice/events", json={"source": "user", "message": "The cat"})
    r = client.post("/voice/events", json={"source": "user", "message": "The cat sat"})
    assert r.json()["dropped"] is False
    client.post("/voice/events", json={"source": "ai", "message": "Nice sentence."})
    assert client.post("/voice/events", json={"source": "ai", "message": "Nice sentence."}).json()["dropped"]
    assert client.post("/voice/events", json={"source": "ai"}).json()["dropped"]

    r = client.post("/voice/tool-calls", json={"content": "E = mc^2"})
    assert r.json() == {"result": "Successfully updated blackboard"}
    assert client.get("/blackboard").json() == {"content": "E = mc^2"}

    messages = client.get("/transcript").json()["messages"]
    assert [m["text"] for m in messages] == ["The cat sat", "Nice sentence.", "E = mc^2"]
    assert messages[-1]["annotation"] == "blackboard"

    commands = client.get("/voice/outbox").json()["commands"]
    assert commands[0]["type"] == "start"
    assert client.get("/voice/outbox").json()["commands"] == []

    r = client.post("/messages", json={"message": "repeat please"})
    assert r.json()["routed_to"] == "voice"
    assert client.get("/voice/outbox").json()["commands"] == [
        {"type": "user_message", "text": "repeat please"}
    ]

    r = client.post("/voice/end")
    assert r.json()["status"] == "disconnecting"


def test_unknown_content_is_404(content_dir: Path):
    client = make_client(content_dir)
    assert client.post("/voice/start", json={"learner": "nobody"}).status_code == 404


def test_double_start_is_409(content_dir: Path):
    client = make_client(content_dir)
    assert client.post("/voice/start", json={}).status_code == 200
    assert client.post("/voice/start", json={}).status_code == 409


def test_reset_and_export(content_dir: Path):
    client = make_client(content_dir)
    client.post("/messages", json={"message": "explain gravity"})
    text = client.get("/transcript/export").text
    assert "You (text): explain gravity" in text
    assert "Tutor (text): Gravity attracts." in text

    assert client.post("/transcript/reset").json() == {"messages": []}
    assert client.get("/transcript").json()["messages"] == []


def test_volume_clamped(content_dir: Path):
    client = make_client(content_dir)
    assert client.post("/voice/volume", json={"volume": 3}).json() == {"volume": 1.0}


def test_injected_empty_engine_is_used(content_dir: Path, clock):
    engine = ReconciliationEngine(clock=clock)
    app = create_app(
        provider=ScriptedProvider(["ok"]),
        content=ContentStore.load(content_dir),
        engine=engine,
    )
    client = TestClient(app)

    assert client.post("/messages", json={"message": "hi"}).status_code == 200
    assert len(engine) == 2
    assert {m.created_at for m in engine.snapshot()} == {clock()}


def test_text_route_from_config(content_dir: Path, tmp_path: Path, clean_env):
    path = tmp_path / "cfg.yaml"
    path.write_text(yaml.safe_dump({"tutor": {"typed_text_route": "text"}}), encoding="utf-8")
    app = create_app(
        config_path=str(path),
        provider=ScriptedProvider(["Gravity ", "attracts."]),
        content=ContentStore.load(content_dir),
    )
    client = TestClient(app)
    client.post("/voice/start", json={})
    client.post("/voice/status", json={"status": "connected"})
    client.get("/voice/outbox")

    r = client.post("/messages", json={"message": "explain gravity"})
    assert r.json()["routed_to"] == "text"
    assert client.get("/voice/outbox").json()["commands"] == [
        {"type": "contextual_update", "text": "Gravity attracts."}
    ]


def test_streamed_message_while_busy_is_409(content_dir: Path):
    app = create_app(provider=ScriptedProvider(["ok"]), content=ContentStore.load(content_dir))
    client = TestClient(app)
    pending = app.state.tutor.submit_text("first")

    r = client.post("/messages", json={"message": "second", "stream": True})
    assert r.status_code == 409
    pending.close()

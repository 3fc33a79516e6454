"""FastAPI application exposing the live tutoring transcript."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel, Field

from content.store import ContentStore
from llm.provider import create_from_config
from session.blackboard import Blackboard
from session.errors import CompletionError, SessionBusyError, VoiceChannelError
from session.tutor import TutorSession
from session.voice import ConnectionState, RelayVoiceChannel
from transcript.engine import RECENCY_WINDOW_SECONDS, ReconciliationEngine, export_text
from transcript.errors import (
    MessageFinalizedError,
    SessionInvalidatedError,
    TranscriptError,
    UnknownMessageError,
)

from .config import load_config

logger = logging.getLogger(__name__)


# -----------------------------
# Pydantic request models
# -----------------------------
class MessageIn(BaseModel):
    message: str = Field(..., min_length=1)
    stream: bool = Field(default=False)


class StartIn(BaseModel):
    learner: Optional[str] = Field(default=None, description="Learner profile name.")
    module: Optional[str] = Field(default=None, description="Module name.")


class StatusIn(BaseModel):
    status: ConnectionState
    is_speaking: Optional[bool] = None
    error: Optional[str] = None


class VolumeIn(BaseModel):
    volume: float


# -----------------------------
# Utilities
# -----------------------------
def _make_provider(cfg: Dict[str, Any]):
    try:
        return create_from_config(cfg)
    except Exception as e:  # pragma: no cover - depends on external model files
        logger.exception("Failed to initialize text model: %s", e)
        return None


def _make_engine(cfg: Dict[str, Any]) -> ReconciliationEngine:
    window = cfg.get("transcript", {}).get("recency_window_s", RECENCY_WINDOW_SECONDS)
    return ReconciliationEngine(recency_window=float(window))


def _make_content(cfg: Dict[str, Any]) -> ContentStore:
    return ContentStore.load(cfg.get("content", {}).get("data_dir", "assets"))


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, SessionBusyError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, UnknownMessageError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, SessionInvalidatedError):
        return HTTPException(status_code=410, detail=str(e))
    if isinstance(e, (MessageFinalizedError, TranscriptError, VoiceChannelError)):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, CompletionError):
        return HTTPException(status_code=502, detail=f"Text completion failed: {e}")
    if isinstance(e, KeyError):
        return HTTPException(status_code=404, detail=str(e.args[0]) if e.args else "Not found.")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail="Unexpected error.")


# -----------------------------
# App factory
# -----------------------------
def create_app(
    config_path: Optional[str] = None,
    provider: Any = None,
    voice: Optional[RelayVoiceChannel] = None,
    content: Optional[ContentStore] = None,
    engine: Optional[ReconciliationEngine] = None,
) -> FastAPI:
    cfg = load_config(config_path)

    cors_origins = cfg.get("server", {}).get("cors_origins", ["*"])

    # Services
    provider = provider if provider is not None else _make_provider(cfg)
    engine = engine if engine is not None else _make_engine(cfg)
    content = content if content is not None else _make_content(cfg)
    if voice is None:
        voice = RelayVoiceChannel(outbox_size=int(cfg.get("voice", {}).get("outbox_size", 256)))
    tutor = TutorSession(
        engine,
        provider,
        voice,
        content=content,
        persona=cfg.get("tutor", {}).get("persona"),
        max_tokens=cfg.get("model", {}).get("max_tokens"),
        blackboard=Blackboard(),
        typed_text_route=cfg.get("tutor", {}).get("typed_text_route", "voice"),
    )

    app = FastAPI(title="Tutor Session Server", version="0.1.0")
    app.state.tutor = tutor
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins or ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _require_provider() -> None:
        routed_to_voice = voice.status is ConnectionState.CONNECTED and tutor.typed_text_route == "voice"
        if tutor.provider is None and not routed_to_voice:
            raise HTTPException(status_code=503, detail="Text model is unavailable.")

    def _messages() -> List[Dict[str, Any]]:
        return [m.to_dict() for m in engine.snapshot()]

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {
            "ok": True,
            "model_loaded": tutor.provider is not None,
            "voice": voice.status.value,
            "busy": tutor.busy,
        }

    @app.get("/config")
    def get_config() -> JSONResponse:
        # Redact possible secrets if you add them in future
        redacted = dict(cfg)
        return JSONResponse(redacted)

    @app.get("/content")
    def list_content() -> Dict[str, Any]:
        return {"learners": content.names("learners"), "modules": content.names("modules")}

    # ---------------- Transcript ----------------
    @app.get("/transcript")
    def get_transcript() -> Dict[str, Any]:
        return {
            "messages": _messages(),
            "busy": tutor.busy,
            "error": tutor.error,
            "voice": {"status": voice.status.value, "is_speaking": voice.is_speaking},
        }

    @app.get("/transcript/export", response_class=PlainTextResponse)
    def export_transcript() -> str:
        return export_text(engine.snapshot())

    @app.post("/transcript/reset")
    def reset_transcript() -> Dict[str, Any]:
        if tutor.busy:
            raise HTTPException(status_code=409, detail="A reply is still streaming.")
        engine.reset()
        tutor.blackboard.clear()
        return {"messages": []}

    @app.get("/blackboard")
    def get_blackboard() -> Dict[str, Any]:
        return {"content": tutor.blackboard.content}

    @app.post("/messages")
    async def post_message(req: MessageIn):
        msg = (req.message or "").strip()
        if not msg:
            raise HTTPException(status_code=400, detail="Message cannot be empty.")
        if tutor.busy:
            raise HTTPException(status_code=409, detail="A reply is still streaming.")
        _require_provider()

        if req.stream:
            queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue()
            # Claims the session before responding, so a concurrent request gets 409.
            try:
                pending = tutor.submit_text(msg, on_delta=queue.put_nowait)
            except Exception as e:
                raise _http_error(e) from e

            async def produce() -> None:
                try:
                    await pending
                except Exception as e:
                    logger.warning("Streaming reply aborted: %s", e)
                finally:
                    queue.put_nowait(None)

            task = asyncio.create_task(produce())

            async def token_gen():
                while True:
                    tok = await queue.get()
                    if tok is None:
                        break
                    yield tok.replace("\r", "")
                await task

            return StreamingResponse(token_gen(), media_type="text/plain")

        try:
            result = await tutor.submit_text(msg)
        except Exception as e:  # raised by the claim or by the reply itself
            raise _http_error(e) from e

        reply = engine.get(result.reply_id) if result.reply_id else None
        return {
            "routed_to": result.routed_to,
            "learner": result.learner.to_dict() if result.learner else None,
            "reply": reply.to_dict() if reply else None,
        }

    # ---------------- Voice relay ----------------
    @app.post("/voice/start")
    def start_voice(req: StartIn) -> Dict[str, Any]:
        try:
            config = tutor.start_voice(req.learner, req.module)
        except Exception as e:
            raise _http_error(e) from e
        return {"config": config, "status": voice.status.value}

    @app.post("/voice/end")
    def end_voice() -> Dict[str, Any]:
        tutor.end_conversation()
        return {"status": voice.status.value, "messages": _messages()}

    @app.post("/voice/status")
    def voice_status(req: StatusIn) -> Dict[str, Any]:
        state = tutor.report_voice_status(req.status.value, is_speaking=req.is_speaking)
        if req.error:
            tutor.report_error(req.error)
        return {"status": state.value, "error": tutor.error}

    @app.post("/voice/events")
    def voice_event(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        msg = tutor.handle_voice_event(payload)
        return {"message": msg.to_dict() if msg else None, "dropped": msg is None}

    @app.post("/voice/tool-calls")
    def tool_call(payload: Dict[str, Any] = Body(...)) -> Dict[str, Any]:
        return {"result": tutor.handle_tool_call(payload)}

    @app.get("/voice/outbox")
    def voice_outbox() -> Dict[str, Any]:
        return {"commands": voice.drain()}

    @app.post("/voice/volume")
    def voice_volume(req: VolumeIn) -> Dict[str, Any]:
        return {"volume": tutor.set_volume(req.volume)}

    return app

from __future__ import annotations

import asyncio
import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from common.config import ModelSettings, PipelineSettings, ServiceSettings
from common.schemas import (
    ClientMessageType,
    ErrorMessage,
    LevelMessage,
    ModelStateResponse,
    ProgressMessage,
    StartMessage,
    StatusMessage,
    TermItem,
    TranscriptCompleteMessage,
    TranscriptMessage,
)
from dictation_service.audio_utils import decode_audio
from dictation_service.capture import PushCaptureSource
from dictation_service.errors import DictationError, ModelLoadFailed
from dictation_service.model_manager import ModelLifecycleManager
from dictation_service.models import ModelState, SessionStatus, TranscriptEvent
from dictation_service.registry import SessionManager
from dictation_service.session import DictationSession
from dictation_service.transcriber import whisper_inference

logger = logging.getLogger(__name__)

settings = ServiceSettings()
pipeline_settings = PipelineSettings()
app = FastAPI(title="Dictation Service")
manager = SessionManager(max_sessions=settings.max_sessions)


@app.on_event("startup")
async def startup():
    models = ModelLifecycleManager.instance()
    models.initialize_preload(
        priority=models.settings.preload_priority,
        delay_ms=models.settings.preload_delay_ms,
    )


@app.on_event("shutdown")
async def shutdown():
    await manager.stop_all()
    ModelLifecycleManager.instance().cancel()


@app.get("/health")
async def health():
    state = ModelLifecycleManager.instance().get_state()
    return {"status": "ok", "active_sessions": manager.active_count, "model": state.status.value}


def _model_response(state: ModelState) -> ModelStateResponse:
    return ModelStateResponse(
        status=state.status.value,
        progress=state.progress,
        error=state.error.message if state.error else None,
    )


@app.get("/model", response_model=ModelStateResponse)
async def model_state():
    return _model_response(ModelLifecycleManager.instance().get_state())


@app.post("/model/preload", response_model=ModelStateResponse)
async def model_preload():
    try:
        state = await ModelLifecycleManager.instance().force_preload()
    except ModelLoadFailed as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return _model_response(state)


def _build_session(start: StartMessage) -> DictationSession:
    overrides: dict = {}
    if start.chunk_preset:
        overrides["chunk_preset"] = start.chunk_preset
    if start.denoise is not None:
        overrides["denoise"] = start.denoise
    if start.backend:
        overrides["backend_preference"] = start.backend
    session_settings = PipelineSettings(**{**pipeline_settings.model_dump(), **overrides})

    models = ModelLifecycleManager.instance()
    infer = getattr(app.state, "infer", None)
    if infer is None and start.language:
        infer = whisper_inference(ModelSettings(**{**models.settings.model_dump(), "language": start.language}))

    source = PushCaptureSource(
        name=start.stream_id,
        sample_rate=16000,
        frame_samples=session_settings.frame_samples,
        max_queued_frames=session_settings.capture_queue_frames,
    )
    return DictationSession(
        source,
        settings=session_settings,
        model_manager=models,
        session_id=start.stream_id,
        infer=infer,
        caption_infer=getattr(app.state, "caption_infer", None),
    )


def _complete_message(event: TranscriptEvent) -> TranscriptCompleteMessage:
    return TranscriptCompleteMessage(
        stream_id=event.session_id,
        sequence_ids=list(event.sequence_ids),
        final_text=event.final_text,
        terms=[TermItem(term=t.term, category=t.category) for t in event.terms],
        backend=event.backend.value if event.backend else None,
        started_at=event.started_at,
        finished_at=event.finished_at,
        degraded=event.degraded,
        skipped_ids=list(event.skipped_ids),
    )


async def _send_loop(ws: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        payload = await outbox.get()
        if payload is None:
            return
        try:
            await ws.send_text(payload)
        except Exception:
            logger.debug("Client gone; dropping outbound messages")
            return


@app.websocket("/dictation")
async def dictation_endpoint(ws: WebSocket):
    await ws.accept()
    stream_id = ""
    session: Optional[DictationSession] = None
    registered = False
    outbox: asyncio.Queue = asyncio.Queue()
    sender = asyncio.create_task(_send_loop(ws, outbox))

    def emit(message: BaseModel) -> None:
        outbox.put_nowait(message.model_dump_json())

    try:
        # Expect start message
        raw = await ws.receive_text()
        msg = json.loads(raw)
        if msg.get("type") != ClientMessageType.start:
            emit(ErrorMessage(stream_id="", detail="Expected start message", code="protocol"))
            return

        start = StartMessage(**msg)
        stream_id = start.stream_id
        session = _build_session(start)

        def on_status(status: SessionStatus, detail: str) -> None:
            backend = None
            if status in (SessionStatus.recording, SessionStatus.degraded):
                backend = session.dispatcher.primary_kind.value
            emit(StatusMessage(stream_id=stream_id, status=status.value, detail=detail, backend=backend))

        session.on_status(on_status)
        session.on_progress(lambda percent: emit(ProgressMessage(stream_id=stream_id, percent=percent)))
        session.on_text(lambda text: emit(TranscriptMessage(stream_id=stream_id, live_text=text)))
        session.on_level(
            lambda level, seconds: emit(LevelMessage(stream_id=stream_id, level=level, recording_time=seconds))
        )

        await manager.add(session)
        registered = True
        await session.start()
        logger.info("Dictation session started: %s", stream_id)

        while True:
            message = await ws.receive()
            if message.get("type") == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                audio = decode_audio(
                    message["bytes"],
                    sample_rate=start.sample_rate,
                    channels=start.channels,
                    encoding=start.encoding,
                )
                session.source.push(audio)
            elif message.get("text") is not None:
                data = json.loads(message["text"])
                if data.get("type") == ClientMessageType.end:
                    event = await session.stop()
                    if event is not None:
                        emit(_complete_message(event))
                    break

    except WebSocketDisconnect:
        logger.info("Client disconnected: %s", stream_id or "unknown")
    except DictationError as exc:
        logger.warning("Session %s failed: %s", stream_id, exc)
        emit(ErrorMessage(
            stream_id=stream_id,
            detail=str(exc),
            code=type(exc).__name__,
            retryable=isinstance(exc, ModelLoadFailed) or getattr(exc, "retryable", False),
        ))
    except (RuntimeError, ValueError) as exc:
        logger.warning("Session error: %s", exc)
        emit(ErrorMessage(stream_id=stream_id, detail=str(exc), code="rejected"))
    except Exception:
        logger.exception("Unexpected error in dictation endpoint")
        emit(ErrorMessage(stream_id=stream_id, detail="Internal dictation error"))
    finally:
        if registered:
            await manager.remove(stream_id)
        outbox.put_nowait(None)
        try:
            await asyncio.wait_for(sender, timeout=5.0)
        except asyncio.TimeoutError:
            sender.cancel()
        try:
            await ws.close()
        except (RuntimeError, WebSocketDisconnect):
            pass  # already closed by the client
        logger.info("Dictation session ended: %s", stream_id or "unknown")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)

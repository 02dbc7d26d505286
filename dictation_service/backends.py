"""
Processing backends that turn an AudioChunk into a TranscriptionResult.

WorkerBackend runs inference on one dedicated thread and talks to the event
loop only through messages tagged with the chunk's sequence id.
MainThreadBackend runs each call in-process. LiveCaptionBackend produces fast,
interim text for the same chunks.
"""

from __future__ import annotations

import asyncio
import logging
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import numpy as np

from dictation_service.errors import InferenceError, WorkerHandshakeTimeout
from dictation_service.models import AudioChunk, BackendHandle, BackendKind, TranscriptionResult

logger = logging.getLogger(__name__)

ModelProvider = Callable[[], Any]
InferenceFn = Callable[[Any, np.ndarray], tuple[str, float]]


class Backend(ABC):
    kind: BackendKind

    def __init__(self, model_provider: ModelProvider, infer: InferenceFn):
        self._model_provider = model_provider
        self._infer = infer
        self.handle = BackendHandle(kind=self.kind)

    async def start(self) -> None:
        pass

    @abstractmethod
    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult: ...

    async def close(self) -> None:
        pass

    @property
    def pending_count(self) -> int:
        return 0

    def _model(self, sequence_id: int) -> Any:
        model = self._model_provider()
        if model is None:
            raise InferenceError(sequence_id, "model is not loaded", self.kind.value)
        return model

    def _result(self, chunk: AudioChunk, text: str, confidence: float, interim: bool = False) -> TranscriptionResult:
        return TranscriptionResult(
            sequence_id=chunk.sequence_id,
            text=text,
            confidence=confidence,
            backend=self.kind,
            completed_at=time.time(),
            interim=interim,
        )


class MainThreadBackend(Backend):
    """In-process inference, one call at a time."""

    kind = BackendKind.main

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        model = self._model(chunk.sequence_id)
        text, confidence = await asyncio.to_thread(self._infer, model, chunk.samples)
        return self._result(chunk, text, confidence)


class LiveCaptionBackend(MainThreadBackend):
    """Low-latency captions. Results are interim unless promoted to primary."""

    kind = BackendKind.live_caption

    def __init__(self, model_provider: ModelProvider, infer: InferenceFn):
        super().__init__(model_provider, infer)
        self.interim = True

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        model = self._model(chunk.sequence_id)
        text, confidence = await asyncio.to_thread(self._infer, model, chunk.samples)
        return self._result(chunk, text, confidence, interim=self.interim)


class WorkerBackend(Backend):
    """Inference actor on a dedicated thread.

    Inbox messages are ``(kind, sequence_id, payload)`` tuples; replies come back
    with the same sequence id and resolve the matching waiter on the loop.
    """

    kind = BackendKind.worker
    WARMUP_SECONDS = 0.1

    def __init__(
        self,
        model_provider: ModelProvider,
        infer: InferenceFn,
        handshake_timeout: float = 5.0,
        sample_rate: int = 16000,
        warmup: bool = True,
    ):
        super().__init__(model_provider, infer)
        self.handshake_timeout = handshake_timeout
        self.sample_rate = sample_rate
        self.warmup = warmup
        self._inbox: queue.Queue = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready: Optional[asyncio.Future] = None
        self._waiters: dict[int, asyncio.Future] = {}
        self._closed = False

    @property
    def pending_count(self) -> int:
        return len(self._waiters)

    async def start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._ready = self._loop.create_future()
        self._thread = threading.Thread(target=self._run, name="dictation-worker", daemon=True)
        self._thread.start()
        self._inbox.put(("init", None, None))

        try:
            await asyncio.wait_for(asyncio.shield(self._ready), timeout=self.handshake_timeout)
        except asyncio.TimeoutError:
            await self.close()
            raise WorkerHandshakeTimeout(
                f"Worker did not report ready within {self.handshake_timeout:.1f}s"
            ) from None
        except Exception as exc:
            await self.close()
            raise WorkerHandshakeTimeout(f"Worker initialization failed: {exc}") from exc
        logger.info("Worker backend ready")

    async def transcribe(self, chunk: AudioChunk) -> TranscriptionResult:
        if self._closed or self._loop is None:
            raise InferenceError(chunk.sequence_id, "worker is not running", self.kind.value)
        if chunk.sequence_id in self._waiters:
            raise InferenceError(chunk.sequence_id, "chunk already in flight", self.kind.value)

        waiter = self._loop.create_future()
        self._waiters[chunk.sequence_id] = waiter
        # The worker gets its own copy of the audio.
        self._inbox.put(("chunk", chunk.sequence_id, np.array(chunk.samples, copy=True)))
        try:
            text, confidence = await waiter
        finally:
            self._waiters.pop(chunk.sequence_id, None)
        return self._result(chunk, text, confidence)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._inbox.put(("stop", None, None))
        for sequence_id, waiter in list(self._waiters.items()):
            if not waiter.done():
                waiter.set_exception(InferenceError(sequence_id, "worker closed", self.kind.value))
        self._waiters.clear()
        if self._ready is not None and not self._ready.done():
            self._ready.cancel()
        if self._thread is not None:
            await asyncio.to_thread(self._thread.join, 1.0)
            if self._thread.is_alive():
                logger.warning("Worker thread still busy after close; it will exit after its current chunk")
        logger.info("Worker backend closed")

    # --- worker thread ---

    def _run(self) -> None:
        model = None
        while True:
            kind, sequence_id, payload = self._inbox.get()
            if kind == "stop":
                break
            if kind == "init":
                try:
                    model = self._model_provider()
                    if model is None:
                        raise RuntimeError("model is not loaded")
                    if self.warmup:
                        silence = np.zeros(int(self.sample_rate * self.WARMUP_SECONDS), dtype=np.float32)
                        self._infer(model, silence)
                except Exception as exc:
                    self._reply("init_error", None, exc)
                else:
                    self._reply("ready", None, None)
            elif kind == "chunk":
                try:
                    if model is None:
                        raise RuntimeError("worker was not initialized")
                    output = self._infer(model, payload)
                except Exception as exc:
                    self._reply("error", sequence_id, exc)
                else:
                    self._reply("result", sequence_id, output)

    def _reply(self, kind: str, sequence_id: Optional[int], payload: Any) -> None:
        if self._closed or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(self._on_message, kind, sequence_id, payload)
        except RuntimeError:
            logger.debug("Event loop closed; dropping worker %s message", kind)

    # --- event loop side ---

    def _on_message(self, kind: str, sequence_id: Optional[int], payload: Any) -> None:
        if kind == "ready":
            if self._ready is not None and not self._ready.done():
                self._ready.set_result(None)
            return
        if kind == "init_error":
            if self._ready is not None and not self._ready.done():
                self._ready.set_exception(payload)
            return

        waiter = self._waiters.get(sequence_id)
        if waiter is None or waiter.done():
            logger.warning("Discarding worker %s for chunk %s: no pending request", kind, sequence_id)
            return
        if kind == "result":
            waiter.set_result(payload)
        else:
            waiter.set_exception(InferenceError(sequence_id, str(payload), self.kind.value))

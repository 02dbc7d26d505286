"""
One recording session: capture → denoise → accumulate → dispatch → assemble.

The session owns every per-recording component. The model is shared through
ModelLifecycleManager and is never released by a session.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

import numpy as np

from common.config import PipelineSettings
from dictation_service.accumulator import ChunkAccumulator
from dictation_service.assembler import StreamingTranscriptAssembler
from dictation_service.audio_utils import rms_level
from dictation_service.backends import InferenceFn, LiveCaptionBackend, MainThreadBackend, WorkerBackend
from dictation_service.capture import AudioCaptureSource, DeviceHandle
from dictation_service.circuit_breaker import CircuitBreaker
from dictation_service.denoiser import Denoiser
from dictation_service.dispatcher import HybridDispatcher
from dictation_service.errors import DictationError, SessionStateError
from dictation_service.model_manager import ModelLifecycleManager
from dictation_service.models import (
    AudioChunk,
    ModelState,
    SessionStatus,
    Term,
    TranscriptEvent,
    TranscriptionResult,
)
from dictation_service.terms import TermMatcher
from dictation_service.transcriber import caption_inference, whisper_inference

logger = logging.getLogger(__name__)

POLL_INTERVAL_S = 0.05
LEVEL_INTERVAL_S = 0.1
PUMP_STOP_TIMEOUT_S = 2.0

StatusListener = Callable[[SessionStatus, str], None]
LevelListener = Callable[[float, float], None]


class DictationSession:
    def __init__(
        self,
        source: AudioCaptureSource,
        settings: PipelineSettings | None = None,
        model_manager: ModelLifecycleManager | None = None,
        session_id: str | None = None,
        infer: InferenceFn | None = None,
        caption_infer: InferenceFn | None = None,
        matcher: TermMatcher | None = None,
        denoiser: Denoiser | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id or uuid.uuid4().hex
        self.source = source
        self.settings = settings or PipelineSettings()
        self.model_manager = model_manager or ModelLifecycleManager.instance()

        model_settings = self.model_manager.settings
        self._infer = infer or whisper_inference(model_settings)
        self._caption_infer = caption_infer or caption_inference(model_settings)

        s = self.settings
        # Frames are denoised before resampling, at the capture rate.
        self.denoiser = denoiser or Denoiser(
            sample_rate=source.sample_rate,
            highpass_hz=s.denoise_highpass_hz,
            enabled=s.denoise,
        )
        self.accumulator = ChunkAccumulator.from_settings(
            s,
            source_sample_rate=source.sample_rate,
            clock=clock,
        )
        self.breaker = CircuitBreaker(
            threshold=s.breaker_threshold,
            window_s=s.breaker_window_s,
            cooldown_s=s.breaker_cooldown_s,
        )
        self.assembler = StreamingTranscriptAssembler(matcher)
        self.dispatcher = HybridDispatcher(
            s,
            self.breaker,
            make_worker=self._make_worker,
            make_main=self._make_main,
            make_caption=self._make_caption,
            on_result=self._on_result,
            on_interim=self._on_interim,
            on_drop=self._on_drop,
            on_degraded=self._on_degraded,
        )

        self.status = SessionStatus.idle
        self.error: Optional[DictationError] = None
        self.event: Optional[TranscriptEvent] = None
        self.device: Optional[DeviceHandle] = None
        self.degraded = False
        self.cap_reached = False
        self.level = 0.0

        self._status_listeners: list[StatusListener] = []
        self._progress_listeners: list[Callable[[int], None]] = []
        self._text_listeners: list[Callable[[str], None]] = []
        self._event_listeners: list[Callable[[TranscriptEvent], None]] = []
        self._level_listeners: list[LevelListener] = []

        self._dispatched_ids: list[int] = []
        self._started_at = 0.0
        self._pump_task: Optional[asyncio.Task] = None
        self._auto_stop_task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._stop_lock = asyncio.Lock()
        self._starting = False
        self._start_settled = asyncio.Event()
        self._clock = clock
        self._last_level_at: Optional[float] = None
        self._unsubscribe_model: Optional[Callable[[], None]] = None

    # --- backend factories ---

    def _make_worker(self) -> WorkerBackend:
        return WorkerBackend(
            self.model_manager.get_model,
            self._infer,
            handshake_timeout=self.settings.worker_handshake_timeout_s,
            sample_rate=self.settings.sample_rate,
        )

    def _make_main(self) -> MainThreadBackend:
        return MainThreadBackend(self.model_manager.get_model, self._infer)

    def _make_caption(self) -> LiveCaptionBackend:
        return LiveCaptionBackend(self.model_manager.get_model, self._caption_infer)

    # --- listeners ---

    def on_status(self, listener: StatusListener) -> None:
        self._status_listeners.append(listener)

    def on_progress(self, listener: Callable[[int], None]) -> None:
        """Model load progress as a percentage."""
        self._progress_listeners.append(listener)

    def on_text(self, listener: Callable[[str], None]) -> None:
        self._text_listeners.append(listener)

    def on_event(self, listener: Callable[[TranscriptEvent], None]) -> None:
        self._event_listeners.append(listener)

    def on_level(self, listener: LevelListener) -> None:
        """Input level (RMS, 0-1) and seconds recorded, at most every LEVEL_INTERVAL_S."""
        self._level_listeners.append(listener)

    def _set_status(self, status: SessionStatus, detail: str = "") -> None:
        if status is self.status:
            return
        self.status = status
        logger.info("Session %s -> %s %s", self.session_id, status.value, detail)
        for listener in list(self._status_listeners):
            listener(status, detail)

    def _on_model_state(self, state: ModelState) -> None:
        percent = int(round(state.progress * 100))
        for listener in list(self._progress_listeners):
            listener(percent)

    def _on_result(self, result: TranscriptionResult) -> None:
        if self.assembler.ingest(result):
            self._publish_text()

    def _on_interim(self, result: TranscriptionResult) -> None:
        if self.assembler.ingest_interim(result):
            self._publish_text()

    def _on_drop(self, sequence_id: int, reason: str) -> None:
        self.assembler.mark_dropped(sequence_id, reason)

    def _on_degraded(self, reason: str) -> None:
        self.degraded = True
        if self.status is SessionStatus.recording:
            self._set_status(SessionStatus.degraded, reason)

    def _publish_text(self) -> None:
        text = self.assembler.live_text()
        for listener in list(self._text_listeners):
            listener(text)

    # --- control ---

    async def start(self) -> DeviceHandle:
        """Load the model, pick a backend and open the input device."""
        if self.status is not SessionStatus.idle or self._starting:
            raise SessionStateError(f"Session {self.session_id} cannot start from {self.status.value}")

        self._starting = True
        self._started_at = time.time()
        self._unsubscribe_model = self.model_manager.subscribe(self._on_model_state)
        try:
            await self._unless_stopped(self.model_manager.force_preload())
            await self.denoiser.initialize()
            self._check_stop_requested()
            await self.dispatcher.probe()
            self._check_stop_requested()
            self.device = await self.source.start()
            self._check_stop_requested()
        except DictationError as exc:
            await self.dispatcher.close()
            await self.source.stop()
            self._detach_model()
            if self._stopping.is_set():
                logger.info("Session %s stopped while starting", self.session_id)
                self._set_status(SessionStatus.completed, "stopped before recording")
            else:
                logger.error("Session %s failed to start: %s", self.session_id, exc)
                self.error = exc
                self._set_status(SessionStatus.error, str(exc))
            raise
        finally:
            self._starting = False
            self._start_settled.set()

        # The flush timer counts from the first captured frame, not from construction.
        self.accumulator.reset()
        self._pump_task = asyncio.get_running_loop().create_task(self._pump())
        self._set_status(SessionStatus.recording)
        return self.device

    async def _unless_stopped(self, awaitable):
        """Await ``awaitable`` unless stop() is requested first."""
        work = asyncio.ensure_future(awaitable)
        stop_requested = asyncio.ensure_future(self._stopping.wait())
        try:
            await asyncio.wait({work, stop_requested}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_requested.cancel()
        if not work.done():
            work.cancel()
            self._check_stop_requested()
        return work.result()

    def _check_stop_requested(self) -> None:
        if self._stopping.is_set():
            raise SessionStateError(f"Session {self.session_id} was stopped while starting")

    async def stop(self) -> Optional[TranscriptEvent]:
        """Finish the recording and return the finalized transcript event.

        A stop during start() aborts the start and returns None.
        """
        if self._starting:
            self._stopping.set()
            await self._start_settled.wait()

        async with self._stop_lock:
            if self.status not in (SessionStatus.recording, SessionStatus.degraded):
                return self.event
            self._set_status(SessionStatus.processing)

            try:
                self.source.finish()
                self._stopping.set()
                await self._join_pump()
                self._dispatch(self.accumulator.stop())
                final_text = await self.assembler.final_text(self.settings.final_timeout_ms)
            finally:
                await self.dispatcher.close()
                await self.source.stop()
                self.denoiser.reset()
                self._detach_model()

            self.event = TranscriptEvent(
                session_id=self.session_id,
                sequence_ids=tuple(self.assembler.sequence_ids),
                final_text=final_text,
                terms=tuple(self.assembler.extract_terms(final_text)),
                backend=self.dispatcher.primary_kind,
                started_at=self._started_at,
                finished_at=time.time(),
                degraded=self.degraded,
                skipped_ids=tuple(self.assembler.dropped_ids),
            )
            self._set_status(SessionStatus.completed)
            for listener in list(self._event_listeners):
                listener(self.event)
            return self.event

    async def _join_pump(self) -> None:
        task = self._pump_task
        if task is None or task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({task}, timeout=PUMP_STOP_TIMEOUT_S)
        if not done:
            logger.warning("Frame pump for session %s did not stop in time; cancelling", self.session_id)
            task.cancel()
        (outcome,) = await asyncio.gather(task, return_exceptions=True)
        if isinstance(outcome, Exception):
            logger.error("Frame pump for session %s failed: %r", self.session_id, outcome)

    def _detach_model(self) -> None:
        if self._unsubscribe_model is not None:
            self._unsubscribe_model()
            self._unsubscribe_model = None

    # --- frame pump ---

    def _dispatch(self, chunk: Optional[AudioChunk]) -> None:
        if chunk is None:
            return
        self.assembler.mark_dispatched(chunk.sequence_id)
        self._dispatched_ids.append(chunk.sequence_id)
        self.dispatcher.process_chunk(chunk)

    async def _pump(self) -> None:
        cap = self.settings.session_cap_samples
        while True:
            if self._stopping.is_set():
                # Drain frames that were already captured, then exit.
                frame = await self.source.read_frame(timeout=0)
                if frame is None:
                    return
            else:
                frame = await self.source.read_frame(timeout=POLL_INTERVAL_S)
                if frame is None:
                    if self.source.closed:
                        return
                    self._dispatch(self.accumulator.poll())
                    continue

            clean = self.denoiser.process(frame)
            self._dispatch(self.accumulator.add_frame(clean))
            self._report_level(clean)

            if not self._stopping.is_set() and self.accumulator.total_samples >= cap:
                logger.warning("Session %s reached the %.0fs cap; stopping", self.session_id, self.settings.session_cap_s)
                self.cap_reached = True
                self._auto_stop_task = asyncio.get_running_loop().create_task(self.stop())
                return

            if self.settings.backpressure == "pause" and self.dispatcher.backlogged:
                await self.dispatcher.wait_for_capacity(self.settings.chunk_timeout_s)

    def _report_level(self, frame: np.ndarray) -> None:
        self.level = rms_level(frame)
        now = self._clock()
        if self._last_level_at is not None and now - self._last_level_at < LEVEL_INTERVAL_S:
            return
        self._last_level_at = now
        for listener in list(self._level_listeners):
            listener(self.level, self.recording_time)

    # --- outputs ---

    def live_text(self) -> str:
        return self.assembler.live_text()

    @property
    def recording_time(self) -> float:
        """Seconds of audio captured so far."""
        return self.accumulator.total_samples / self.accumulator.sample_rate

    @property
    def final_text(self) -> str:
        return self.event.final_text if self.event else ""

    @property
    def terms(self) -> list[Term]:
        return list(self.event.terms) if self.event else []

    @property
    def dispatched_ids(self) -> list[int]:
        return list(self._dispatched_ids)

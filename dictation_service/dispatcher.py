"""
Routes chunks to a processing backend and correlates results by sequence id.

Each backend owns a FIFO lane served by a single consumer task, so a backend
never has more than one chunk in flight. Per-chunk failures are handled here:
the chunk is dropped, the failure is counted by the circuit breaker and the
lane moves on.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

from common.config import PipelineSettings
from dictation_service.audio_utils import validate_samples
from dictation_service.backends import Backend, LiveCaptionBackend
from dictation_service.circuit_breaker import CircuitBreaker
from dictation_service.errors import InferenceError, MalformedChunk, WorkerHandshakeTimeout
from dictation_service.models import AudioChunk, BackendKind, TranscriptionResult

logger = logging.getLogger(__name__)

BackendFactory = Callable[[], Backend]

# Interim captions are best effort; a lagging caption lane keeps only the newest chunks.
CAPTION_QUEUE_DEPTH = 2


@dataclass
class _Lane:
    backend: Backend
    interim: bool = False
    queue: asyncio.Queue = field(default_factory=asyncio.Queue)
    task: Optional[asyncio.Task] = None
    retired: bool = False

    @property
    def kind(self) -> BackendKind:
        return self.backend.kind

    @property
    def depth(self) -> int:
        in_flight = 1 if self.backend.handle.in_flight_sequence_id is not None else 0
        return self.queue.qsize() + in_flight


class HybridDispatcher:
    def __init__(
        self,
        settings: PipelineSettings,
        breaker: CircuitBreaker,
        make_worker: BackendFactory,
        make_main: BackendFactory,
        make_caption: Optional[BackendFactory] = None,
        on_result: Optional[Callable[[TranscriptionResult], None]] = None,
        on_interim: Optional[Callable[[TranscriptionResult], None]] = None,
        on_drop: Optional[Callable[[int, str], None]] = None,
        on_degraded: Optional[Callable[[str], None]] = None,
    ):
        self.settings = settings
        self.breaker = breaker
        self._make_worker = make_worker
        self._make_main = make_main
        self._make_caption = make_caption
        self._on_result = on_result
        self._on_interim = on_interim
        self._on_drop = on_drop
        self._on_degraded = on_degraded

        self._primary: Optional[_Lane] = None
        self._caption: Optional[_Lane] = None
        self._lanes: list[_Lane] = []
        self._pending: dict[int, AudioChunk] = {}
        self._capacity = asyncio.Event()
        self._capacity.set()
        self._probed = False
        self._closed = False
        self.degraded = False
        self.dropped: list[int] = []

    # --- setup ---

    async def probe(self) -> BackendKind:
        """Choose the primary backend for this session. Runs once."""
        if self._probed:
            return self.primary_kind
        self._probed = True

        primary: Optional[Backend] = None
        if self.settings.backend_preference in ("auto", "worker"):
            worker = self._make_worker()
            try:
                await worker.start()
            except WorkerHandshakeTimeout as exc:
                logger.info("Worker backend unavailable, using main thread: %s", exc)
            else:
                primary = worker

        if primary is None:
            primary = self._make_main()
            await primary.start()
        self._primary = self._open_lane(primary)

        if self.settings.live_captions and self._make_caption is not None:
            caption = self._make_caption()
            try:
                await caption.start()
            except Exception:
                logger.warning("Live caption backend failed to start", exc_info=True)
            else:
                self._caption = self._open_lane(caption, interim=True)

        logger.info(
            "Dispatcher ready: primary=%s captions=%s",
            self.primary_kind.value,
            "on" if self._caption else "off",
        )
        return self.primary_kind

    def _open_lane(self, backend: Backend, interim: bool = False) -> _Lane:
        lane = _Lane(backend=backend, interim=interim)
        lane.task = asyncio.get_running_loop().create_task(self._serve(lane))
        self._lanes.append(lane)
        return lane

    # --- status ---

    @property
    def primary_kind(self) -> BackendKind:
        if self._primary is None:
            raise RuntimeError("Dispatcher has not been probed")
        return self._primary.kind

    @property
    def queue_depth(self) -> int:
        return self._primary.depth if self._primary else 0

    @property
    def backlogged(self) -> bool:
        return self.queue_depth >= self.settings.max_queue_depth

    @property
    def pending_ids(self) -> list[int]:
        return sorted(self._pending)

    @property
    def pending_callbacks(self) -> int:
        return len(self._pending) + sum(lane.backend.pending_count for lane in self._lanes)

    async def wait_for_capacity(self, timeout: float) -> bool:
        """Wait until the primary queue drops below its limit. Returns False on timeout."""
        if not self.backlogged:
            return True
        self._capacity.clear()
        try:
            await asyncio.wait_for(self._capacity.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    # --- intake ---

    def process_chunk(self, chunk: AudioChunk) -> bool:
        """Queue a chunk on the active backend. Returns False if it was rejected."""
        if self._closed or self._primary is None:
            raise RuntimeError("Dispatcher is not running")
        try:
            validate_samples(chunk.samples)
        except MalformedChunk as exc:
            logger.warning("Dropping malformed chunk %d: %s", chunk.sequence_id, exc)
            self._drop(chunk.sequence_id, "malformed")
            return False
        if chunk.sequence_id in self._pending:
            logger.warning("Chunk %d is already pending; ignoring duplicate", chunk.sequence_id)
            return False

        lane = self._primary
        if self.settings.backpressure == "drop_oldest" and lane.depth >= self.settings.max_queue_depth:
            try:
                oldest = lane.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            else:
                lane.queue.task_done()
                logger.warning("Backlog on %s backend; dropping oldest chunk %d", lane.kind.value, oldest.sequence_id)
                self._pending.pop(oldest.sequence_id, None)
                self._drop(oldest.sequence_id, "backpressure")

        self._pending[chunk.sequence_id] = chunk
        lane.queue.put_nowait(chunk)
        self._update_handle(lane)

        caption = self._caption
        if caption is not None and caption is not lane:
            while caption.queue.qsize() >= CAPTION_QUEUE_DEPTH:
                caption.queue.get_nowait()
                caption.queue.task_done()
            caption.queue.put_nowait(chunk)
        return True

    # --- correlation ---

    def deliver(self, result: TranscriptionResult) -> bool:
        """Accept a primary result only if its sequence id is pending."""
        if self._pending.pop(result.sequence_id, None) is None:
            logger.warning("Discarding result for chunk %d: not pending", result.sequence_id)
            return False
        self.breaker.record_success()
        if self._on_result is not None:
            self._on_result(result)
        return True

    # --- lanes ---

    async def _serve(self, lane: _Lane) -> None:
        while not lane.retired:
            chunk = await lane.queue.get()
            try:
                if not lane.interim and chunk.sequence_id not in self._pending:
                    continue
                await self._run_one(lane, chunk)
            finally:
                lane.backend.handle.in_flight_sequence_id = None
                lane.queue.task_done()
                self._update_handle(lane)

    async def _run_one(self, lane: _Lane, chunk: AudioChunk) -> None:
        lane.backend.handle.in_flight_sequence_id = chunk.sequence_id
        try:
            result = await asyncio.wait_for(
                lane.backend.transcribe(chunk),
                timeout=self.settings.chunk_timeout_s,
            )
        except asyncio.TimeoutError:
            self._fail(lane, chunk, InferenceError(chunk.sequence_id, "timed out", lane.kind.value))
            return
        except InferenceError as exc:
            self._fail(lane, chunk, exc)
            return
        except Exception as exc:
            self._fail(lane, chunk, InferenceError(chunk.sequence_id, repr(exc), lane.kind.value))
            return

        if lane.interim:
            if self._on_interim is not None and result.sequence_id == chunk.sequence_id:
                self._on_interim(result)
            return
        if result.sequence_id != chunk.sequence_id:
            logger.warning(
                "Backend %s answered chunk %d with id %d",
                lane.kind.value,
                chunk.sequence_id,
                result.sequence_id,
            )
            self._fail(lane, chunk, InferenceError(chunk.sequence_id, "mismatched response id", lane.kind.value))
            return
        self.deliver(result)

    def _fail(self, lane: _Lane, chunk: AudioChunk, error: InferenceError) -> None:
        if lane.interim:
            logger.debug("Live caption failed: %s", error)
            return
        logger.warning("Inference failed, dropping %s", error)
        if self._pending.pop(chunk.sequence_id, None) is not None:
            self._drop(chunk.sequence_id, "inference_error")
        self.breaker.record_failure()
        if not self.degraded and self.breaker.is_tripped():
            self._degrade(f"{lane.kind.value} backend failing repeatedly")

    def _drop(self, sequence_id: int, reason: str) -> None:
        self.dropped.append(sequence_id)
        if self._on_drop is not None:
            self._on_drop(sequence_id, reason)

    def _degrade(self, reason: str) -> None:
        """Send every remaining chunk of the session to the fallback backend."""
        self.degraded = True
        failing = self._primary
        if failing is None:
            raise RuntimeError("Dispatcher has not been probed")

        if failing.kind is BackendKind.worker:
            fallback = self._open_lane(self._make_main())
        elif self._caption is not None:
            fallback = self._caption
            fallback.interim = False
            if isinstance(fallback.backend, LiveCaptionBackend):
                fallback.backend.interim = False
            self._caption = None
        else:
            fallback = failing

        if fallback is not failing:
            failing.retired = True
            while True:
                try:
                    queued = failing.queue.get_nowait()
                except asyncio.QueueEmpty:
                    break
                failing.queue.task_done()
                if queued.sequence_id in self._pending:
                    fallback.queue.put_nowait(queued)
            self._primary = fallback

        logger.warning("Degraded mode: %s; now using %s backend", reason, fallback.kind.value)
        if self._on_degraded is not None:
            self._on_degraded(reason)

    def _update_handle(self, lane: _Lane) -> None:
        lane.backend.handle.queue_depth = lane.depth
        if lane is self._primary and not self.backlogged:
            self._capacity.set()

    # --- teardown ---

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for lane in self._lanes:
            if lane.task is not None:
                lane.task.cancel()
        await asyncio.gather(*(lane.task for lane in self._lanes if lane.task is not None), return_exceptions=True)
        for lane in self._lanes:
            try:
                await lane.backend.close()
            except Exception:
                logger.exception("Failed to close %s backend", lane.kind.value)
            lane.backend.handle.in_flight_sequence_id = None
            lane.backend.handle.queue_depth = 0

        for sequence_id in sorted(self._pending):
            logger.warning("Chunk %d unresolved at shutdown; discarding", sequence_id)
            self._drop(sequence_id, "closed")
        self._pending.clear()
        self._capacity.set()

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

import numpy as np

from common.config import CHUNK_PRESETS, PipelineSettings
from dictation_service.audio_utils import resample
from dictation_service.models import AudioChunk

logger = logging.getLogger(__name__)


class ChunkAccumulator:
    """Buffers capture frames and cuts them into sequence-numbered chunks.

    A chunk is emitted when the buffer reaches ``min_chunk_samples`` or when
    ``max_accumulation_ms`` has passed since the previous flush, whichever comes
    first.
    """

    def __init__(
        self,
        min_chunk_samples: int,
        max_accumulation_ms: int,
        sample_rate: int = 16000,
        source_sample_rate: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.min_chunk_samples = min_chunk_samples
        self.max_accumulation_ms = max_accumulation_ms
        self.sample_rate = sample_rate
        self.source_sample_rate = source_sample_rate or sample_rate
        self._clock = clock

        self._frames: list[np.ndarray] = []
        self._buffered = 0
        self._last_flush = clock()
        self._next_sequence_id = 0
        self._stopped = False
        self.total_samples = 0

    @classmethod
    def from_settings(cls, settings: PipelineSettings, **kwargs) -> "ChunkAccumulator":
        return cls(
            min_chunk_samples=settings.min_chunk_samples,
            max_accumulation_ms=settings.max_accumulation_ms,
            sample_rate=settings.sample_rate,
            **kwargs,
        )

    @classmethod
    def preset(cls, name: str, sample_rate: int = 16000, max_accumulation_ms: int = 12000, **kwargs) -> "ChunkAccumulator":
        return cls(
            min_chunk_samples=int(CHUNK_PRESETS[name] * sample_rate),
            max_accumulation_ms=max_accumulation_ms,
            sample_rate=sample_rate,
            **kwargs,
        )

    @property
    def buffered_samples(self) -> int:
        return self._buffered

    @property
    def elapsed_ms(self) -> float:
        return (self._clock() - self._last_flush) * 1000.0

    def add_frame(self, frame: np.ndarray) -> Optional[AudioChunk]:
        """Append a frame. Returns a chunk if this frame triggered a flush."""
        if self._stopped:
            logger.debug("Ignoring frame after stop")
            return None
        frame = resample(np.asarray(frame, dtype=np.float32).reshape(-1), self.source_sample_rate, self.sample_rate)
        if frame.size:
            self._frames.append(frame)
            self._buffered += frame.size
            self.total_samples += frame.size
        return self.poll()

    def poll(self) -> Optional[AudioChunk]:
        """Apply both flush triggers without adding audio."""
        if self._buffered == 0:
            return None
        if self._buffered >= self.min_chunk_samples or self.elapsed_ms >= self.max_accumulation_ms:
            return self.flush()
        return None

    def flush(self) -> Optional[AudioChunk]:
        self._last_flush = self._clock()
        if self._buffered == 0:
            return None

        samples = np.concatenate(self._frames)
        samples.flags.writeable = False
        chunk = AudioChunk(
            sequence_id=self._next_sequence_id,
            samples=samples,
            sample_rate=self.sample_rate,
            created_at=time.time(),
        )
        self._next_sequence_id += 1
        self._frames = []
        self._buffered = 0
        logger.debug("Flushed chunk %d (%.0f ms)", chunk.sequence_id, chunk.duration_ms)
        return chunk

    def stop(self) -> Optional[AudioChunk]:
        """Emit whatever is buffered as a final, possibly short, chunk."""
        chunk = self.flush()
        self._stopped = True
        return chunk

    def reset(self) -> None:
        """Clear buffered audio. Sequence ids keep counting up."""
        self._frames = []
        self._buffered = 0
        self._last_flush = self._clock()
        self._stopped = False
        self.total_samples = 0

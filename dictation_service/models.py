"""Value types passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import numpy as np

from dictation_service.errors import ModelLoadFailed


class ModelStatus(str, Enum):
    idle = "idle"
    loading = "loading"
    ready = "ready"
    failed = "failed"


@dataclass(frozen=True)
class ModelState:
    status: ModelStatus = ModelStatus.idle
    progress: float = 0.0
    handle: Any = field(default=None, repr=False)
    error: Optional[ModelLoadFailed] = None


@dataclass(frozen=True)
class AudioChunk:
    sequence_id: int
    samples: np.ndarray = field(repr=False)
    sample_rate: int
    created_at: float

    @property
    def duration_ms(self) -> float:
        return len(self.samples) * 1000.0 / self.sample_rate


class BackendKind(str, Enum):
    worker = "worker"
    main = "main"
    live_caption = "live_caption"


@dataclass(frozen=True)
class TranscriptionResult:
    sequence_id: int
    text: str
    confidence: float
    backend: BackendKind
    completed_at: float
    interim: bool = False


@dataclass
class BackendHandle:
    kind: BackendKind
    queue_depth: int = 0
    in_flight_sequence_id: Optional[int] = None


@dataclass(frozen=True)
class CircuitBreakerState:
    failure_count: int
    window_start: Optional[float]
    tripped_until: Optional[float]


class SessionStatus(str, Enum):
    idle = "idle"
    recording = "recording"
    processing = "processing"
    completed = "completed"
    error = "error"
    degraded = "degraded"


@dataclass(frozen=True)
class Term:
    term: str
    category: str


@dataclass(frozen=True)
class TranscriptEvent:
    """Emitted once per finalized transcript for storage/audit subscribers."""

    session_id: str
    sequence_ids: tuple[int, ...]
    final_text: str
    terms: tuple[Term, ...]
    backend: Optional[BackendKind]
    started_at: float
    finished_at: float
    degraded: bool = False
    skipped_ids: tuple[int, ...] = ()

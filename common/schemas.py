from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel


# --- WebSocket messages: client ↔ dictation service ---

class ClientMessageType(str, Enum):
    start = "start"
    end = "end"


class StartMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.start
    stream_id: str
    sample_rate: int = 16000
    encoding: str = "pcm_s16le"
    channels: int = 1
    language: Optional[str] = None
    chunk_preset: Optional[str] = None
    denoise: Optional[bool] = None
    backend: Optional[str] = None
    # audio payload sent as binary frames, not in JSON


class EndMessage(BaseModel):
    type: ClientMessageType = ClientMessageType.end
    stream_id: str


class ServerMessageType(str, Enum):
    status = "status"
    progress = "progress"
    level = "level"
    transcript = "transcript"
    transcript_complete = "transcript_complete"
    error = "error"


class StatusMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.status
    stream_id: str
    status: str
    detail: str = ""
    backend: Optional[str] = None


class ProgressMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.progress
    stream_id: str
    percent: int


class LevelMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.level
    stream_id: str
    level: float
    recording_time: float


class TranscriptMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript
    stream_id: str
    live_text: str


class TermItem(BaseModel):
    term: str
    category: str


class TranscriptCompleteMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.transcript_complete
    stream_id: str
    sequence_ids: list[int]
    final_text: str
    terms: list[TermItem] = []
    backend: Optional[str] = None
    started_at: float
    finished_at: float
    degraded: bool = False
    skipped_ids: list[int] = []


class ErrorMessage(BaseModel):
    type: ServerMessageType = ServerMessageType.error
    stream_id: str
    detail: str
    code: str = "internal"
    retryable: bool = False


# --- HTTP ---

class ModelStateResponse(BaseModel):
    status: str
    progress: float
    error: Optional[str] = None

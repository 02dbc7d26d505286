"""
Exception hierarchy for the dictation pipeline.

All pipeline exceptions inherit from DictationError. Only capture start-up and
model loading failures reach callers; per-chunk errors are handled inside the
dispatcher.
"""

from __future__ import annotations

from typing import Optional


class DictationError(Exception):
    """Base exception for all dictation pipeline errors."""

    pass


class CaptureError(DictationError):
    """The input device could not be acquired."""

    retryable = False


class PermissionDenied(CaptureError):
    """Microphone access was refused. The user must start a new session."""

    pass


class DeviceUnavailable(CaptureError):
    """No usable input device right now; the caller may retry."""

    retryable = True


class ModelLoadFailed(DictationError):
    """Loading the transcription model failed. Retry with force_preload()."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.cause = cause

    @property
    def cause_type(self) -> str:
        return type(self.cause).__name__ if self.cause is not None else ""


class WorkerHandshakeTimeout(DictationError):
    """The worker backend did not become ready in time."""

    pass


class InferenceError(DictationError):
    def __init__(self, sequence_id: int, message: str, backend: str = ""):
        super().__init__(message)
        self.sequence_id = sequence_id
        self.message = message
        self.backend = backend

    def __str__(self) -> str:
        return f"chunk {self.sequence_id} on {self.backend or 'unknown'} backend: {self.message}"


class MalformedChunk(DictationError):
    """Chunk audio is empty, not mono, or contains non-finite samples."""

    pass


class SessionStateError(DictationError):
    """A control call was made in a state that does not allow it."""

    pass

"""
Audio input sources.

A source delivers fixed-size float32 frames through ``read_frame``. Device
callbacks run on foreign threads, so frames are handed to the event loop with
``call_soon_threadsafe`` and buffered in a bounded asyncio queue.
"""

from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Union

import numpy as np

from dictation_service.audio_utils import pcm16_to_float32
from dictation_service.errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)

_PERMISSION_HINTS = ("permission", "denied", "not authorized", "unauthorized", "not permitted")


@dataclass(frozen=True)
class DeviceHandle:
    device: Union[int, str, None]
    name: str
    sample_rate: int
    channels: int
    opened_at: float


class AudioCaptureSource(ABC):
    def __init__(self, sample_rate: int = 16000, frame_samples: int = 480, max_queued_frames: int = 512):
        self.sample_rate = sample_rate
        self.frame_samples = frame_samples
        self._frames: asyncio.Queue = asyncio.Queue(maxsize=max_queued_frames)
        self._running = False
        self._closed = False
        self.dropped_frames = 0
        self.release_count = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def closed(self) -> bool:
        return self._closed

    @abstractmethod
    async def start(self) -> DeviceHandle: ...

    async def stop(self) -> None:
        """Release the device. Safe to call more than once."""
        if not self._running:
            self._closed = True
            return
        self._running = False
        self._closed = True
        try:
            await self._release()
        finally:
            self.release_count += 1
            self._clear()

    @abstractmethod
    async def _release(self) -> None: ...

    def finish(self) -> None:
        """Called when the session stops consuming; sources with buffered audio flush it."""

    async def read_frame(self, timeout: float = 0.05) -> Optional[np.ndarray]:
        """Next frame, or None if none arrived in time or the source is closed."""
        if self._closed and self._frames.empty():
            return None
        if timeout <= 0:
            try:
                return self._frames.get_nowait()
            except asyncio.QueueEmpty:
                return None
        try:
            return await asyncio.wait_for(self._frames.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def _deliver(self, frame: np.ndarray) -> None:
        if self._closed:
            return
        if self._frames.full():
            self._frames.get_nowait()
            self.dropped_frames += 1
            if self.dropped_frames % 100 == 1:
                logger.warning("Capture queue full; %d frame(s) dropped so far", self.dropped_frames)
        self._frames.put_nowait(frame)

    def _clear(self) -> None:
        while not self._frames.empty():
            self._frames.get_nowait()


class MicrophoneCaptureSource(AudioCaptureSource):
    """Default input device via sounddevice/PortAudio."""

    def __init__(self, device: Union[int, str, None] = None, **kwargs):
        super().__init__(**kwargs)
        self.device = device
        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def start(self) -> DeviceHandle:
        if self._running:
            raise RuntimeError("Capture already started")
        self._loop = asyncio.get_running_loop()
        try:
            import sounddevice as sd
        except OSError as exc:
            raise DeviceUnavailable(f"PortAudio library not available: {exc}") from exc

        try:
            info = sd.query_devices(self.device, kind="input")
            stream = sd.InputStream(
                samplerate=self.sample_rate,
                blocksize=self.frame_samples,
                channels=1,
                dtype="float32",
                device=self.device,
                callback=self._callback,
            )
            stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise _classify(exc) from exc

        self._stream = stream
        self._closed = False
        self._running = True
        name = info.get("name", "unknown") if isinstance(info, dict) else str(info)
        logger.info("Microphone capture started on %s at %d Hz", name, self.sample_rate)
        return DeviceHandle(
            device=self.device,
            name=name,
            sample_rate=self.sample_rate,
            channels=1,
            opened_at=time.time(),
        )

    def _callback(self, indata, frames, time_info, status):
        """Runs on the PortAudio thread; only hands the frame over."""
        if status:
            logger.debug("Audio callback status: %s", status)
        data = indata.reshape(-1).copy()
        loop = self._loop
        if loop is None or self._closed:
            return
        try:
            loop.call_soon_threadsafe(self._deliver, data)
        except RuntimeError:
            pass  # loop already closed during shutdown

    async def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            await asyncio.to_thread(stream.stop)
        finally:
            stream.close()
        logger.info("Microphone released")


def _classify(exc: Exception) -> Exception:
    message = str(exc)
    if any(hint in message.lower() for hint in _PERMISSION_HINTS):
        return PermissionDenied(f"Microphone access denied: {message}")
    return DeviceUnavailable(f"Input device unavailable: {message}")


class PushCaptureSource(AudioCaptureSource):
    """Frames supplied by a producer such as a WebSocket client.

    Pushed audio of any length is re-cut into fixed-size frames. On stop the
    trailing partial frame is delivered before the source closes.
    """

    def __init__(self, name: str = "push", **kwargs):
        super().__init__(**kwargs)
        self.name = name
        self._remainder = np.zeros(0, dtype=np.float32)

    async def start(self) -> DeviceHandle:
        if self._running:
            raise RuntimeError("Capture already started")
        self._closed = False
        self._running = True
        return DeviceHandle(
            device=None,
            name=self.name,
            sample_rate=self.sample_rate,
            channels=1,
            opened_at=time.time(),
        )

    def push(self, audio: np.ndarray) -> None:
        if not self._running:
            return
        audio = np.concatenate([self._remainder, np.asarray(audio, dtype=np.float32).reshape(-1)])
        n_full = len(audio) // self.frame_samples * self.frame_samples
        for start in range(0, n_full, self.frame_samples):
            self._deliver(audio[start : start + self.frame_samples])
        self._remainder = audio[n_full:]

    def push_pcm(self, pcm_bytes: bytes) -> None:
        self.push(pcm16_to_float32(pcm_bytes))

    def finish(self) -> None:
        """Deliver the trailing partial frame; nothing more will be pushed."""
        if self._running and self._remainder.size:
            self._deliver(self._remainder)
        self._remainder = np.zeros(0, dtype=np.float32)

    async def _release(self) -> None:
        self._remainder = np.zeros(0, dtype=np.float32)

from __future__ import annotations

import subprocess
from math import gcd

import numpy as np
from scipy import signal

from dictation_service.errors import MalformedChunk

TARGET_RATE = 16000

# Client encoding -> ffmpeg demuxer
_FFMPEG_INPUTS = {
    "pcm_s16le": "s16le",
    "pcm_f32le": "f32le",
    "wav": "wav",
    "ogg": "ogg",
}


def decode_audio(
    data: bytes,
    sample_rate: int = TARGET_RATE,
    channels: int = 1,
    encoding: str = "pcm_s16le",
) -> np.ndarray:
    """Decode a client audio packet to mono float32 at 16 kHz.

    Raw mono PCM already at 16 kHz is decoded in-process; anything else is
    piped through ffmpeg, which emits float32 directly.
    """
    if sample_rate == TARGET_RATE and channels == 1:
        if encoding == "pcm_s16le":
            if len(data) % 2:
                raise MalformedChunk("16-bit PCM packet has an odd number of bytes")
            return pcm16_to_float32(data)
        if encoding == "pcm_f32le":
            if len(data) % 4:
                raise MalformedChunk("32-bit float packet length is not a multiple of 4")
            return np.frombuffer(data, dtype="<f4").astype(np.float32)

    cmd = [
        "ffmpeg",
        "-hide_banner",
        "-loglevel", "error",
        "-f", _ffmpeg_input(encoding),
        "-ar", str(sample_rate),
        "-ac", str(channels),
        "-i", "pipe:0",
        "-f", "f32le",
        "-ar", str(TARGET_RATE),
        "-ac", "1",
        "pipe:1",
    ]
    try:
        result = subprocess.run(cmd, input=data, capture_output=True, check=True)
    except subprocess.CalledProcessError as exc:
        detail = exc.stderr.decode(errors="replace").strip() if exc.stderr else ""
        raise MalformedChunk(f"Could not decode {encoding} audio: {detail or exc}") from exc
    return np.frombuffer(result.stdout, dtype="<f4").astype(np.float32)


def _ffmpeg_input(encoding: str) -> str:
    return _FFMPEG_INPUTS.get(encoding, "s16le")


def pcm16_to_float32(pcm_bytes: bytes) -> np.ndarray:
    return np.frombuffer(pcm_bytes, dtype=np.int16).astype(np.float32) / 32768.0


def float32_to_pcm16(audio: np.ndarray) -> bytes:
    clipped = np.clip(audio, -1.0, 1.0)
    return (clipped * 32767).astype(np.int16).tobytes()


def resample(audio: np.ndarray, from_rate: int, to_rate: int) -> np.ndarray:
    if from_rate == to_rate:
        return audio
    g = gcd(from_rate, to_rate)
    return signal.resample_poly(audio, to_rate // g, from_rate // g).astype(np.float32)


def sine_tone(seconds: float, sample_rate: int = 16000, frequency: float = 440.0, amplitude: float = 0.5) -> np.ndarray:
    t = np.arange(int(seconds * sample_rate), dtype=np.float32) / sample_rate
    return (np.sin(2 * np.pi * frequency * t) * amplitude).astype(np.float32)


def rms_level(frame: np.ndarray) -> float:
    """Root-mean-square level of a float32 frame, capped at 1.0."""
    if frame.size == 0:
        return 0.0
    return min(1.0, float(np.sqrt(np.mean(np.square(frame, dtype=np.float64)))))


def validate_samples(samples: np.ndarray) -> None:
    """Raise MalformedChunk unless samples are a non-empty, finite, mono buffer."""
    if not isinstance(samples, np.ndarray) or samples.ndim != 1:
        raise MalformedChunk("Chunk samples must be a 1-D array")
    if samples.size == 0:
        raise MalformedChunk("Chunk is empty")
    if np.isnan(samples).any() or np.isinf(samples).any():
        raise MalformedChunk("Chunk contains non-finite samples")

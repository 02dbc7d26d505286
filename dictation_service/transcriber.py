from __future__ import annotations

import logging
import math
import os
from typing import Any, Callable, Optional

import numpy as np

from common.config import ModelSettings

logger = logging.getLogger(__name__)


def load_whisper_model(settings: ModelSettings, progress: Callable[[float], None]) -> Any:
    """Download (if needed) and construct the faster-whisper model.

    Runs in a worker thread; ``progress`` receives values in [0, 1].
    """
    from faster_whisper import WhisperModel, download_model

    progress(0.05)
    if os.path.isdir(settings.model_size):
        model_path = settings.model_size
    else:
        logger.info("Fetching faster-whisper model: %s", settings.model_size)
        model_path = download_model(
            settings.model_size,
            cache_dir=settings.download_root or None,
        )
    progress(0.6)

    logger.info("Loading faster-whisper model from %s", model_path)
    model = WhisperModel(
        model_path,
        device=settings.device,
        compute_type=settings.compute_type,
    )
    progress(1.0)
    logger.info("Model loaded")
    return model


def transcribe_chunk(
    model: Any,
    audio: np.ndarray,
    language: Optional[str] = None,
    beam_size: int = 5,
    vad_filter: bool = True,
) -> tuple[str, float]:
    """Transcribe a 16kHz float32 buffer. Returns (text, confidence in [0, 1])."""
    segments, _info = model.transcribe(
        audio,
        language=language,
        vad_filter=vad_filter,
        vad_parameters={"min_silence_duration_ms": 300},
        beam_size=beam_size,
        condition_on_previous_text=False,
    )
    texts: list[str] = []
    logprobs: list[float] = []
    for seg in segments:
        text = seg.text.strip()
        if text:
            texts.append(text)
            logprobs.append(seg.avg_logprob or 0.0)

    if not texts:
        return "", 0.0
    confidence = math.exp(sum(logprobs) / len(logprobs))
    return " ".join(texts), round(min(1.0, confidence), 4)


def whisper_inference(settings: ModelSettings) -> Callable[[Any, np.ndarray], tuple[str, float]]:
    """Primary backend inference: beam search with VAD filtering."""

    def infer(model: Any, audio: np.ndarray) -> tuple[str, float]:
        return transcribe_chunk(model, audio, settings.language, beam_size=settings.beam_size)

    return infer


def caption_inference(settings: ModelSettings) -> Callable[[Any, np.ndarray], tuple[str, float]]:
    """Live-caption inference: greedy decoding, no VAD, for low latency."""

    def infer(model: Any, audio: np.ndarray) -> tuple[str, float]:
        return transcribe_chunk(
            model,
            audio,
            settings.language,
            beam_size=settings.caption_beam_size,
            vad_filter=False,
        )

    return infer

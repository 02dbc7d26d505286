from typing import Literal, Optional

from pydantic_settings import BaseSettings

# Chunk length in seconds for each accumulator preset.
CHUNK_PRESETS: dict[str, float] = {
    "direct": 1.0,
    "streaming": 10.0,
}


class PipelineSettings(BaseSettings):
    sample_rate: int = 16000
    frame_samples: int = 480
    chunk_preset: Literal["direct", "streaming"] = "direct"
    max_accumulation_ms: int = 12000
    backend_preference: Literal["auto", "worker", "main"] = "auto"
    live_captions: bool = False
    denoise: bool = True
    denoise_highpass_hz: float = 80.0
    breaker_threshold: int = 3
    breaker_window_s: float = 60.0
    breaker_cooldown_s: float = 30.0
    worker_handshake_timeout_s: float = 5.0
    chunk_timeout_s: float = 30.0
    max_queue_depth: int = 8
    backpressure: Literal["drop_oldest", "pause"] = "drop_oldest"
    session_cap_s: float = 2400.0
    final_timeout_ms: int = 15000
    capture_queue_frames: int = 512

    model_config = {"env_prefix": "DICTATION_"}

    @property
    def min_chunk_samples(self) -> int:
        return int(CHUNK_PRESETS[self.chunk_preset] * self.sample_rate)

    @property
    def session_cap_samples(self) -> int:
        return int(self.session_cap_s * self.sample_rate)


class ModelSettings(BaseSettings):
    model_size: str = "base"
    device: str = "auto"
    compute_type: str = "auto"
    download_root: str = ""
    language: Optional[str] = None
    beam_size: int = 5
    caption_beam_size: int = 1
    preload_priority: Literal["high", "auto", "low"] = "auto"
    preload_delay_ms: int = 2000

    model_config = {"env_prefix": "MODEL_"}


class ServiceSettings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 8000
    max_sessions: int = 10

    model_config = {"env_prefix": "DICTATION_SERVICE_"}

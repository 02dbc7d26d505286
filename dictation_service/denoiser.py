from __future__ import annotations

import asyncio
import logging
from typing import Optional

import numpy as np
from scipy import signal

logger = logging.getLogger(__name__)


class Denoiser:
    """Frame-wise noise suppression: high-pass filter plus an adaptive noise gate.

    Until initialize() succeeds (or if it fails) frames pass through unchanged.
    Filter state carries across frames within a session; reset() clears it.
    """

    FLOOR_RISE = 0.02  # how fast the noise floor follows louder input
    FLOOR_MIN = 1e-5

    def __init__(
        self,
        sample_rate: int = 16000,
        highpass_hz: float = 80.0,
        order: int = 4,
        gate_ratio: float = 1.5,
        attenuation: float = 0.3,
        enabled: bool = True,
    ):
        self.sample_rate = sample_rate
        self.highpass_hz = highpass_hz
        self.order = order
        self.gate_ratio = gate_ratio
        self.attenuation = attenuation
        self.enabled = enabled
        self._sos: Optional[np.ndarray] = None
        self._zi: Optional[np.ndarray] = None
        self._noise_floor: Optional[float] = None

    @property
    def active(self) -> bool:
        return self._sos is not None

    async def initialize(self) -> bool:
        """Prepare filter state off the event loop. Returns False in passthrough mode."""
        if not self.enabled:
            logger.info("Denoising disabled; frames pass through")
            return False
        if self._sos is not None:
            return True
        try:
            self._sos = await asyncio.to_thread(self._design)
        except Exception:
            logger.warning("Denoiser initialization failed; falling back to passthrough", exc_info=True)
            self._sos = None
            return False
        self.reset()
        logger.info("Denoiser ready (high-pass %.0f Hz)", self.highpass_hz)
        return True

    def _design(self) -> np.ndarray:
        return signal.butter(
            self.order,
            self.highpass_hz,
            btype="highpass",
            fs=self.sample_rate,
            output="sos",
        )

    def process(self, frame: np.ndarray) -> np.ndarray:
        if self._sos is None:
            return frame

        filtered, self._zi = signal.sosfilt(self._sos, frame, zi=self._zi)
        rms = float(np.sqrt(np.mean(filtered ** 2))) if filtered.size else 0.0

        if self._noise_floor is None:
            self._noise_floor = max(rms, self.FLOOR_MIN)
        elif rms < self._noise_floor:
            self._noise_floor = max(rms, self.FLOOR_MIN)
        else:
            self._noise_floor += (rms - self._noise_floor) * self.FLOOR_RISE

        if rms < self._noise_floor * self.gate_ratio:
            filtered = filtered * self.attenuation
        return filtered.astype(np.float32)

    def reset(self) -> None:
        if self._sos is not None:
            self._zi = np.zeros((self._sos.shape[0], 2))
        self._noise_floor = None

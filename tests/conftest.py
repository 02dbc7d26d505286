import numpy as np
import pytest

from dictation_service.model_manager import ModelLifecycleManager
from dictation_service.models import AudioChunk


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_chunk(sequence_id: int, samples: int = 1600, value: float = 0.1) -> AudioChunk:
    return AudioChunk(
        sequence_id=sequence_id,
        samples=np.full(samples, value, dtype=np.float32),
        sample_rate=16000,
        created_at=0.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def fresh_model_manager():
    ModelLifecycleManager.reset_instance()
    yield
    ModelLifecycleManager.reset_instance()

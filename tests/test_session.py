import asyncio
import threading
import time

import numpy as np
import pytest

from common.config import PipelineSettings
from conftest import FakeClock
from dictation_service.audio_utils import sine_tone
from dictation_service.capture import PushCaptureSource
from dictation_service.denoiser import Denoiser
from dictation_service.errors import ModelLoadFailed, PermissionDenied, SessionStateError
from dictation_service.model_manager import ModelLifecycleManager
from dictation_service.models import BackendKind, SessionStatus
from dictation_service.session import DictationSession


def stub_infer(model, audio):
    return "test", 0.9


def broken_infer(model, audio):
    raise RuntimeError("decoder crashed")


class BrokenDenoiser(Denoiser):
    def _design(self):
        raise RuntimeError("no filter")


class DeniedSource(PushCaptureSource):
    async def start(self):
        raise PermissionDenied("Microphone access denied")


class SlowSource(PushCaptureSource):
    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.opening = asyncio.Event()

    async def start(self):
        self.opening.set()
        await asyncio.sleep(0.2)
        return await super().start()


def slow_loader(progress):
    time.sleep(0.3)
    return "stub-model"


class FlakyLoader:
    def __init__(self, fail_times=0):
        self.fail_times = fail_times
        self.calls = 0

    def __call__(self, progress):
        self.calls += 1
        progress(0.5)
        if self.calls <= self.fail_times:
            raise OSError("disk full")
        return "stub-model"


@pytest.fixture
def models():
    return ModelLifecycleManager(loader=FlakyLoader())


def make_session(models, infer=stub_infer, source=None, denoiser=None, clock=time.monotonic, **overrides):
    settings = PipelineSettings(**overrides)
    source = source or PushCaptureSource(frame_samples=settings.frame_samples)
    return DictationSession(
        source,
        settings=settings,
        model_manager=models,
        infer=infer,
        caption_infer=infer,
        denoiser=denoiser,
        clock=clock,
    )


async def dictate(session, seconds=3.0):
    await session.start()
    session.source.push(sine_tone(seconds))
    return await session.stop()


async def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while not condition():
        assert time.monotonic() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


class TestEndToEnd:
    @pytest.mark.asyncio
    async def test_three_second_tone_direct_preset(self, models):
        session = make_session(models, chunk_preset="direct")
        event = await dictate(session)

        assert event.final_text == "test test test"
        assert event.sequence_ids == (0, 1, 2)
        assert event.skipped_ids == ()
        assert event.backend is BackendKind.worker
        assert not event.degraded
        assert event.started_at <= event.finished_at
        assert session.status is SessionStatus.completed
        assert session.final_text == "test test test"
        assert session.dispatched_ids == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_idle_time_before_start_does_not_flush_early(self, models):
        clock = FakeClock()
        session = make_session(models, chunk_preset="direct", clock=clock)
        clock.advance(13.0)
        event = await dictate(session)
        assert event.final_text == "test test test"
        assert event.sequence_ids == (0, 1, 2)

    @pytest.mark.asyncio
    async def test_streaming_preset_single_chunk(self, models):
        session = make_session(models, chunk_preset="streaming")
        event = await dictate(session)
        assert event.final_text == "test"
        assert event.sequence_ids == (0,)

    @pytest.mark.asyncio
    async def test_main_thread_backend(self, models):
        session = make_session(models, backend_preference="main")
        event = await dictate(session)
        assert event.backend is BackendKind.main
        assert event.final_text == "test test test"

    @pytest.mark.asyncio
    async def test_teardown_releases_everything(self, models):
        session = make_session(models)
        await dictate(session)
        assert session.source.release_count == 1
        assert session.source.closed
        assert session.dispatcher.pending_callbacks == 0
        assert models.get_model() == "stub-model"

    @pytest.mark.asyncio
    async def test_terms_extracted_from_final_text(self, models):
        session = make_session(models, infer=lambda model, audio: ("paciente con fiebre", 0.9))
        event = await dictate(session, seconds=1.5)
        assert [t.term for t in event.terms] == ["pirexia"]
        assert session.terms == list(event.terms)

    @pytest.mark.asyncio
    async def test_live_captions_do_not_change_final_text(self, models):
        session = make_session(models, backend_preference="main", live_captions=True)
        event = await dictate(session)
        assert event.final_text == "test test test"
        assert event.backend is BackendKind.main


class TestDenoising:
    def test_denoiser_runs_at_capture_rate(self, models):
        session = make_session(models, source=PushCaptureSource(sample_rate=48000))
        assert session.denoiser.sample_rate == 48000
        assert session.accumulator.sample_rate == 16000

    @pytest.mark.asyncio
    async def test_denoise_disabled(self, models):
        session = make_session(models, denoise=False)
        event = await dictate(session)
        assert not session.denoiser.active
        assert event.final_text == "test test test"

    @pytest.mark.asyncio
    async def test_denoiser_failure_falls_back_to_passthrough(self, models):
        session = make_session(models, denoiser=BrokenDenoiser())
        event = await dictate(session)
        assert not session.denoiser.active
        assert session.status is SessionStatus.completed
        assert event.final_text == "test test test"


class TestStartFailures:
    @pytest.mark.asyncio
    async def test_model_load_failure(self):
        models = ModelLifecycleManager(loader=FlakyLoader(fail_times=1))
        session = make_session(models)
        with pytest.raises(ModelLoadFailed):
            await session.start()
        assert session.status is SessionStatus.error
        assert isinstance(session.error, ModelLoadFailed)
        assert not session.source.running

        # A fresh session retries the load.
        retry = make_session(models)
        event = await dictate(retry)
        assert event.final_text == "test test test"

    @pytest.mark.asyncio
    async def test_permission_denied(self, models):
        session = make_session(models, source=DeniedSource())
        with pytest.raises(PermissionDenied):
            await session.start()
        assert session.status is SessionStatus.error
        assert session.dispatcher.pending_callbacks == 0
        assert await session.stop() is None

    @pytest.mark.asyncio
    async def test_stop_while_model_loading(self):
        models = ModelLifecycleManager(loader=slow_loader)
        session = make_session(models)
        statuses = []
        session.on_status(lambda status, detail: statuses.append(status))

        starting = asyncio.create_task(session.start())
        await asyncio.sleep(0.05)
        assert await session.stop() is None
        with pytest.raises(SessionStateError):
            await starting

        assert session.status is SessionStatus.completed
        assert statuses == [SessionStatus.completed]
        assert session.error is None
        assert not session.source.running

        # The shared load carries on for the next session.
        await models.force_preload()
        assert models.get_model() == "stub-model"

    @pytest.mark.asyncio
    async def test_stop_while_opening_device(self, models):
        await models.force_preload()
        source = SlowSource()
        session = make_session(models, source=source, backend_preference="main")

        starting = asyncio.create_task(session.start())
        await source.opening.wait()
        assert await session.stop() is None
        with pytest.raises(SessionStateError):
            await starting

        assert session.status is SessionStatus.completed
        assert source.release_count == 1
        assert source.closed
        assert session.dispatcher.pending_callbacks == 0

    @pytest.mark.asyncio
    async def test_start_twice(self, models):
        session = make_session(models)
        await session.start()
        try:
            with pytest.raises(SessionStateError):
                await session.start()
        finally:
            await session.stop()


class TestDegradation:
    @pytest.mark.asyncio
    async def test_failing_backend_degrades_and_skips_chunks(self, models):
        session = make_session(models, infer=broken_infer, backend_preference="main", breaker_threshold=3)
        event = await dictate(session)
        assert event.degraded
        assert event.skipped_ids == (0, 1, 2)
        assert event.final_text == ""
        assert session.status is SessionStatus.completed

    @pytest.mark.asyncio
    async def test_pause_backpressure_keeps_every_chunk(self, models):
        def slow_infer(model, audio):
            time.sleep(0.05)
            return "test", 0.9

        session = make_session(
            models,
            infer=slow_infer,
            backend_preference="main",
            backpressure="pause",
            max_queue_depth=1,
        )
        event = await dictate(session)
        assert event.skipped_ids == ()
        assert event.final_text == "test test test"


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_listeners(self, models):
        session = make_session(models, backend_preference="main")
        statuses, progress, texts, events = [], [], [], []
        session.on_status(lambda status, detail: statuses.append(status))
        session.on_progress(progress.append)
        session.on_text(texts.append)
        session.on_event(events.append)

        event = await dictate(session)

        assert statuses == [SessionStatus.recording, SessionStatus.processing, SessionStatus.completed]
        assert progress[-1] == 100
        assert 50 in progress
        assert texts[-1] == "test test test"
        assert events == [event]

    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self, models):
        session = make_session(models)
        event = await dictate(session)
        assert await session.stop() is event
        assert session.source.release_count == 1

    @pytest.mark.asyncio
    async def test_stop_with_hung_inference_releases_everything(self, models):
        gate = threading.Event()

        def hung_infer(model, audio):
            gate.wait(timeout=10)
            return "late", 0.9

        session = make_session(models, infer=hung_infer, backend_preference="main", final_timeout_ms=100)
        try:
            await session.start()
            session.source.push(sine_tone(1.5))
            event = await asyncio.wait_for(session.stop(), timeout=5.0)
        finally:
            gate.set()

        assert event.final_text == ""
        assert event.sequence_ids == ()
        assert event.skipped_ids == (0, 1)
        assert session.status is SessionStatus.completed
        assert session.source.release_count == 1
        assert session.dispatcher.pending_callbacks == 0

    @pytest.mark.asyncio
    async def test_stop_before_start(self, models):
        session = make_session(models)
        assert await session.stop() is None
        assert session.status is SessionStatus.idle

    @pytest.mark.asyncio
    async def test_session_cap_stops_automatically(self, models):
        session = make_session(models, session_cap_s=1.0)
        done = asyncio.Event()
        session.on_event(lambda event: done.set())

        await session.start()
        session.source.push(sine_tone(2.0))
        await asyncio.wait_for(done.wait(), timeout=5.0)

        assert session.cap_reached
        assert session.status is SessionStatus.completed
        assert session.final_text == "test"
        assert session.source.release_count == 1


class TestLevel:
    @pytest.mark.asyncio
    async def test_level_and_recording_time(self, models):
        clock = FakeClock()
        session = make_session(models, clock=clock)
        reports = []
        session.on_level(lambda level, seconds: reports.append((level, seconds)))

        await session.start()
        session.source.push(sine_tone(0.96))
        await wait_for(lambda: session.recording_time >= 0.96)
        clock.advance(0.2)
        session.source.push(sine_tone(0.96))
        await wait_for(lambda: session.recording_time >= 1.92)
        await session.stop()

        assert len(reports) == 2
        (first_level, first_time), (second_level, second_time) = reports
        assert first_time == pytest.approx(0.03)
        assert second_time == pytest.approx(0.99)
        assert 0.1 < first_level <= 1.0
        assert 0.1 < second_level <= 1.0
        assert session.recording_time == pytest.approx(1.92)

    @pytest.mark.asyncio
    async def test_level_reports_are_throttled(self, models):
        session = make_session(models, clock=FakeClock())
        reports = []
        session.on_level(lambda level, seconds: reports.append(seconds))
        await dictate(session)
        assert len(reports) == 1
        assert session.level > 0.0

    @pytest.mark.asyncio
    async def test_silence_reports_zero_level(self, models):
        session = make_session(models, denoise=False)
        await session.start()
        session.source.push(np.zeros(480, dtype=np.float32))
        await wait_for(lambda: session.recording_time > 0)
        await session.stop()
        assert session.level == 0.0

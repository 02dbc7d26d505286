import pytest

from common.config import PipelineSettings
from dictation_service.audio_utils import sine_tone
from dictation_service.capture import PushCaptureSource
from dictation_service.model_manager import ModelLifecycleManager
from dictation_service.models import SessionStatus
from dictation_service.registry import SessionManager
from dictation_service.session import DictationSession


class StubSession:
    def __init__(self, session_id):
        self.session_id = session_id
        self.stopped = 0

    async def stop(self):
        self.stopped += 1


class TestSessionManager:
    @pytest.fixture
    def manager(self):
        return SessionManager(max_sessions=2)

    @pytest.mark.asyncio
    async def test_add_and_remove(self, manager):
        session = await manager.add(StubSession("s1"))
        assert manager.get("s1") is session
        assert manager.active_count == 1
        await manager.remove("s1")
        assert manager.active_count == 0
        assert session.stopped == 1

    @pytest.mark.asyncio
    async def test_max_sessions_enforced(self, manager):
        await manager.add(StubSession("s1"))
        await manager.add(StubSession("s2"))
        with pytest.raises(RuntimeError, match="Max sessions"):
            await manager.add(StubSession("s3"))

    @pytest.mark.asyncio
    async def test_duplicate_stream_id_rejected(self, manager):
        await manager.add(StubSession("s1"))
        with pytest.raises(RuntimeError, match="already exists"):
            await manager.add(StubSession("s1"))

    @pytest.mark.asyncio
    async def test_remove_unknown_is_noop(self, manager):
        await manager.remove("missing")
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_stop_all(self, manager):
        sessions = [await manager.add(StubSession(f"s{i}")) for i in range(2)]
        await manager.stop_all()
        assert manager.active_count == 0
        assert [s.stopped for s in sessions] == [1, 1]

    @pytest.mark.asyncio
    async def test_abandoned_session_releases_source(self, manager):
        models = ModelLifecycleManager(loader=lambda progress: "stub-model")
        source = PushCaptureSource()
        session = DictationSession(
            source,
            settings=PipelineSettings(backend_preference="main"),
            model_manager=models,
            session_id="dropped",
            infer=lambda model, audio: ("test", 0.9),
        )
        await manager.add(session)
        await session.start()
        source.push(sine_tone(0.5))

        await manager.remove("dropped")
        assert source.release_count == 1
        assert session.status is SessionStatus.completed
        assert session.final_text == "test"

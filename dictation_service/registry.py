from __future__ import annotations

import asyncio
import logging

from dictation_service.session import DictationSession

logger = logging.getLogger(__name__)


class SessionManager:
    """Tracks live dictation sessions by stream id."""

    def __init__(self, max_sessions: int = 10) -> None:
        self._max = max_sessions
        self._sessions: dict[str, DictationSession] = {}
        self._lock = asyncio.Lock()

    async def add(self, session: DictationSession) -> DictationSession:
        async with self._lock:
            if len(self._sessions) >= self._max:
                raise RuntimeError(f"Max sessions ({self._max}) reached")
            if session.session_id in self._sessions:
                raise RuntimeError(f"Session {session.session_id} already exists")
            self._sessions[session.session_id] = session
            logger.info("Session registered: %s (%d active)", session.session_id, len(self._sessions))
            return session

    async def remove(self, stream_id: str) -> None:
        async with self._lock:
            session = self._sessions.pop(stream_id, None)
        if session is not None:
            # A session dropped without a clean end must still release its device.
            await session.stop()
            logger.info("Session removed: %s (%d active)", stream_id, len(self._sessions))

    async def stop_all(self) -> None:
        for stream_id in list(self._sessions):
            await self.remove(stream_id)

    def get(self, stream_id: str) -> DictationSession | None:
        return self._sessions.get(stream_id)

    @property
    def active_count(self) -> int:
        return len(self._sessions)

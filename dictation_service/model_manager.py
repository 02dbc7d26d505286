"""
Process-wide lifecycle of the transcription model.

The manager is the only holder of the model handle. A load runs the blocking
loader in a thread; at most one load is in flight at a time, and once the model
is ready it is kept for the life of the process.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Callable, ClassVar, Optional

from common.config import ModelSettings
from dictation_service.errors import ModelLoadFailed
from dictation_service.models import ModelState, ModelStatus
from dictation_service.transcriber import load_whisper_model

logger = logging.getLogger(__name__)

Loader = Callable[[Callable[[float], None]], Any]
StateListener = Callable[[ModelState], None]


class ModelLifecycleManager:
    _instance: ClassVar[Optional["ModelLifecycleManager"]] = None

    def __init__(self, loader: Loader | None = None, settings: ModelSettings | None = None):
        self.settings = settings or ModelSettings()
        self._loader: Loader = loader or partial(load_whisper_model, self.settings)
        self._state = ModelState()
        self._listeners: list[StateListener] = []
        self._lock = asyncio.Lock()
        self._load_task: asyncio.Task | None = None
        self._preload_task: asyncio.Task | None = None
        self.load_attempts = 0

    # --- process registry ---

    @classmethod
    def instance(cls) -> "ModelLifecycleManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def configure(cls, loader: Loader | None = None, settings: ModelSettings | None = None) -> "ModelLifecycleManager":
        """Replace the registry entry. Refused once a model is loading or loaded."""
        current = cls._instance
        if current is not None and current._state.status in (ModelStatus.loading, ModelStatus.ready):
            raise RuntimeError(f"Cannot reconfigure model manager in state {current._state.status.value}")
        cls._instance = cls(loader=loader, settings=settings)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        if cls._instance is not None:
            cls._instance.cancel()
        cls._instance = None

    # --- observers ---

    def get_state(self) -> ModelState:
        return self._state

    def get_model(self) -> Any:
        state = self._state
        return state.handle if state.status is ModelStatus.ready else None

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set_state(self, state: ModelState) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("Model state listener failed")

    def _report_progress(self, progress: float) -> None:
        if self._state.status is not ModelStatus.loading:
            return
        progress = min(1.0, max(0.0, progress))
        if progress > self._state.progress:
            self._set_state(ModelState(ModelStatus.loading, progress=progress))

    # --- loading ---

    def initialize_preload(self, priority: str = "auto", delay_ms: int = 2000) -> None:
        """Schedule a background load. No-op while loading, loaded or already scheduled."""
        if self._state.status in (ModelStatus.loading, ModelStatus.ready):
            logger.debug("Skipping preload, model is %s", self._state.status.value)
            return
        if self._preload_task is not None and not self._preload_task.done():
            logger.debug("Preload already scheduled")
            return

        if priority == "high":
            delay = 0.0
        elif priority == "low":
            delay = 2 * delay_ms / 1000
        else:
            delay = delay_ms / 1000
        self._preload_task = asyncio.get_running_loop().create_task(self._delayed_preload(delay))

    async def _delayed_preload(self, delay: float) -> None:
        await asyncio.sleep(delay)
        try:
            await self.force_preload()
        except ModelLoadFailed as exc:
            # Surfaced through the failed state; callers retry with force_preload().
            logger.warning("Background model preload failed: %s", exc)

    async def force_preload(self) -> ModelState:
        """Return once the model is ready, joining any load already in flight."""
        if self._state.status is ModelStatus.ready:
            return self._state

        async with self._lock:
            if self._state.status is ModelStatus.ready:
                return self._state
            if self._load_task is None or self._load_task.done():
                self._load_task = asyncio.get_running_loop().create_task(self._load())
            task = self._load_task

        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            if task.cancelled():
                raise ModelLoadFailed("Model load cancelled") from None
            raise

    async def _load(self) -> ModelState:
        self.load_attempts += 1
        logger.info("Starting model load (attempt %d)", self.load_attempts)
        self._set_state(ModelState(ModelStatus.loading, progress=0.0))

        loop = asyncio.get_running_loop()

        def progress(value: float) -> None:
            loop.call_soon_threadsafe(self._report_progress, value)

        try:
            handle = await asyncio.to_thread(self._loader, progress)
        except asyncio.CancelledError:
            logger.info("Model load cancelled")
            self._set_state(ModelState(ModelStatus.idle))
            raise
        except Exception as exc:
            logger.error("Model load failed: %s", exc)
            error = ModelLoadFailed(f"Failed to load transcription model: {exc}", cause=exc)
            self._set_state(ModelState(ModelStatus.failed, progress=self._state.progress, error=error))
            raise error from exc

        self._set_state(ModelState(ModelStatus.ready, progress=1.0, handle=handle))
        logger.info("Model ready")
        return self._state

    def cancel(self) -> None:
        """Abort a scheduled or in-flight load and return to idle."""
        if self._preload_task is not None and not self._preload_task.done():
            self._preload_task.cancel()
        self._preload_task = None

        if self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            self._load_task = None
            if self._state.status is ModelStatus.loading:
                self._set_state(ModelState(ModelStatus.idle))

"""Registry of playback session actors with periodic idle teardown."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import TYPE_CHECKING

from ...domain.shared.datetime_utils import utcnow
from ...domain.shared.events import EventBus, get_event_bus
from ...domain.shared.messages import LogTemplates
from .playback_session import PlaybackSessionActor

if TYPE_CHECKING:
    from ...config.settings import AudioSettings, SessionSettings
    from ..interfaces.audio_sink import AudioSink
    from ..interfaces.pipeline_manager import PipelineManager
    from .provider_selector import ProviderSelector

logger = logging.getLogger(__name__)


class SessionManager:
    """Creates one actor per voice context and closes the ones left idle."""

    def __init__(
        self,
        *,
        selector: ProviderSelector,
        pipelines: PipelineManager,
        sink: AudioSink,
        settings: SessionSettings,
        audio_settings: AudioSettings,
        event_bus: EventBus | None = None,
    ) -> None:
        self._selector = selector
        self._pipelines = pipelines
        self._sink = sink
        self._settings = settings
        self._audio = audio_settings
        self._event_bus = event_bus or get_event_bus()
        self._sessions: dict[int, PlaybackSessionActor] = {}
        self._lock = asyncio.Lock()
        self._running = False
        self._task: asyncio.Task[None] | None = None

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, context_id: int) -> PlaybackSessionActor | None:
        return self._sessions.get(context_id)

    async def get_or_create(self, context_id: int) -> PlaybackSessionActor:
        async with self._lock:
            actor = self._sessions.get(context_id)
            if actor is not None and not actor.is_closed:
                return actor

            actor = PlaybackSessionActor(
                context_id,
                selector=self._selector,
                pipelines=self._pipelines,
                sink=self._sink,
                settings=self._settings,
                event_bus=self._event_bus,
                volume=self._audio.default_volume,
                max_queue_size=self._audio.max_queue_size,
            )
            actor.start()
            self._sessions[context_id] = actor
            logger.info(LogTemplates.SESSION_CREATED, context_id)

        return actor

    async def close(self, context_id: int, reason: str = "closed") -> bool:
        async with self._lock:
            actor = self._sessions.pop(context_id, None)
        if actor is None:
            return False
        await actor.close(reason)
        return True

    # ── Idle reaper ─────────────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._settings.reap_interval_seconds)
            except asyncio.CancelledError:
                break

            try:
                await self.reap_idle()
            except Exception:
                logger.exception("Error while reaping idle sessions")

    async def reap_idle(self) -> list[int]:
        """Close every session that has been idle with an empty queue for too long."""
        cutoff = utcnow() - timedelta(seconds=self._settings.idle_timeout_seconds)
        stale = [
            context_id
            for context_id, actor in self._sessions.items()
            if actor.session.is_idle
            and not actor.session.queue
            and actor.session.last_activity < cutoff
        ]
        for context_id in stale:
            logger.info(LogTemplates.SESSION_IDLE_REAPED, context_id)
            await self.close(context_id, reason="idle")
        return stale

    async def shutdown(self) -> None:
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        for context_id in list(self._sessions):
            await self.close(context_id, reason="shutdown")

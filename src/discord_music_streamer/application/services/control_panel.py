"""Control Panel Synchronizer.

Keeps one interactive panel message per session in step with playback.
Renders are pushed only when something visible changed, at most one push
is in flight per panel, and a newer render always replaces one that is
still waiting (including one backing off after a rate limit).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from ...domain.music.value_objects import PanelAction, PlaybackState
from ...domain.shared.events import (
    EventBus,
    SessionClosed,
    SessionStateChanged,
    get_event_bus,
)
from ...domain.shared.exceptions import DomainError, PanelRateLimitedError, SyncError
from ...domain.shared.messages import DiscordUIMessages, LogTemplates
from ...domain.shared.types import DiscordSnowflake, NonNegativeFloat, NonNegativeInt

if TYPE_CHECKING:
    from ...config.settings import AudioSettings, PanelSettings
    from ...domain.music.entities import PlaybackSession
    from ..interfaces.panel_gateway import PanelGateway, PanelMessageRef
    from .session_manager import SessionManager

logger = logging.getLogger(__name__)


class PanelSnapshot(BaseModel):
    """Everything the panel shows, captured at one session revision."""

    model_config = ConfigDict(frozen=True)

    context_id: DiscordSnowflake
    revision: NonNegativeInt = 0
    state: str = PlaybackState.IDLE.value
    volume: NonNegativeInt = 0
    elapsed_seconds: NonNegativeFloat = 0.0
    duration_seconds: NonNegativeInt | None = None
    title: str | None = None
    artist: str | None = None
    thumbnail_url: str | None = None

    @classmethod
    def from_event(cls, event: SessionStateChanged) -> PanelSnapshot:
        return cls(
            context_id=event.context_id,
            revision=event.revision,
            state=event.state,
            volume=event.volume,
            elapsed_seconds=event.elapsed_seconds,
            duration_seconds=event.duration_seconds,
            title=event.track_title,
            artist=event.track_artist,
            thumbnail_url=event.thumbnail_url,
        )

    @classmethod
    def from_session(cls, session: PlaybackSession) -> PanelSnapshot:
        track = session.current_track
        return cls(
            context_id=session.context_id,
            revision=session.revision,
            state=session.state.value,
            volume=session.volume,
            elapsed_seconds=session.elapsed_seconds,
            duration_seconds=track.duration_seconds if track else None,
            title=track.title if track else None,
            artist=track.artist if track else None,
            thumbnail_url=track.thumbnail_url if track else None,
        )

    @property
    def status(self) -> str:
        return self.state.capitalize()

    @property
    def display_title(self) -> str:
        if not self.title:
            return DiscordUIMessages.PANEL_IDLE_TITLE
        if self.artist:
            return f"{self.title} — {self.artist}"
        return self.title

    @property
    def remaining_seconds(self) -> float | None:
        if self.duration_seconds is None:
            return None
        return max(0.0, self.duration_seconds - self.elapsed_seconds)

    def render_key(self, granularity: int) -> tuple[object, ...]:
        """The visible content; two snapshots with equal keys render identically."""
        return (
            self.state,
            self.volume,
            self.title,
            self.artist,
            self.thumbnail_url,
            int(self.elapsed_seconds // granularity),
        )


@dataclass(eq=False)
class _Panel:
    ref: PanelMessageRef
    latest_revision: int = -1
    last_key: tuple[object, ...] | None = None
    pending: PanelSnapshot | None = None
    wake: asyncio.Event = field(default_factory=asyncio.Event)
    worker: asyncio.Task[None] | None = None
    ticker: asyncio.Task[None] | None = None
    pushes: int = 0


class ControlPanelSynchronizer:
    def __init__(
        self,
        *,
        gateway: PanelGateway,
        sessions: SessionManager,
        settings: PanelSettings,
        audio_settings: AudioSettings,
        event_bus: EventBus | None = None,
    ) -> None:
        self._gateway = gateway
        self._sessions = sessions
        self._settings = settings
        self._volume_step = audio_settings.volume_step
        self._event_bus = event_bus or get_event_bus()
        self._panels: dict[int, _Panel] = {}
        self._subscribed = False

    def start(self) -> None:
        if self._subscribed:
            return
        self._event_bus.subscribe(SessionStateChanged, self._on_state_changed)
        self._event_bus.subscribe(SessionClosed, self._on_session_closed)
        self._subscribed = True

    async def shutdown(self) -> None:
        if self._subscribed:
            self._event_bus.unsubscribe(SessionStateChanged, self._on_state_changed)
            self._event_bus.unsubscribe(SessionClosed, self._on_session_closed)
            self._subscribed = False
        for context_id in list(self._panels):
            await self.detach(context_id)

    def panel_ref(self, context_id: int) -> PanelMessageRef | None:
        panel = self._panels.get(context_id)
        return panel.ref if panel else None

    def push_count(self, context_id: int) -> int:
        panel = self._panels.get(context_id)
        return panel.pushes if panel else 0

    # ── Attach / detach ─────────────────────────────────────────────

    async def attach(self, context_id: int, ref: PanelMessageRef) -> None:
        """Bind a panel message to a session and render its current state."""
        await self.detach(context_id)
        panel = _Panel(ref=ref)
        self._panels[context_id] = panel

        actor = self._sessions.get(context_id)
        if actor is not None:
            snapshot = PanelSnapshot.from_session(actor.session)
            panel.latest_revision = snapshot.revision
            self._submit(panel, snapshot)
            self._update_ticker(context_id, panel, snapshot.state)

    async def detach(self, context_id: int) -> None:
        panel = self._panels.pop(context_id, None)
        if panel is None:
            return
        tasks = [t for t in (panel.worker, panel.ticker) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── Event handlers ──────────────────────────────────────────────

    async def _on_state_changed(self, event: SessionStateChanged) -> None:
        panel = self._panels.get(event.context_id)
        if panel is None:
            return
        if event.revision < panel.latest_revision:
            return

        panel.latest_revision = event.revision
        self._submit(panel, PanelSnapshot.from_event(event))
        self._update_ticker(event.context_id, panel, event.state)

    async def _on_session_closed(self, event: SessionClosed) -> None:
        await self.detach(event.context_id)

    # ── Rendering ───────────────────────────────────────────────────

    def _submit(self, panel: _Panel, snapshot: PanelSnapshot) -> bool:
        """Queue ``snapshot`` for delivery unless it would render like the last push."""
        key = snapshot.render_key(self._settings.elapsed_granularity_seconds)
        if panel.pending is None and key == panel.last_key:
            return False
        if panel.pending is not None and snapshot.revision < panel.pending.revision:
            return False

        panel.pending = snapshot
        panel.wake.set()
        if panel.worker is None or panel.worker.done():
            panel.worker = asyncio.create_task(
                self._worker(panel), name=f"panel-{snapshot.context_id}"
            )
        return True

    async def _worker(self, panel: _Panel) -> None:
        while True:
            await panel.wake.wait()
            panel.wake.clear()
            snapshot, panel.pending = panel.pending, None
            if snapshot is None:
                continue
            try:
                await self._deliver(panel, snapshot)
            except Exception:
                logger.exception(LogTemplates.PANEL_PUSH_FAILED, snapshot.context_id, "unexpected error")

    async def _deliver(self, panel: _Panel, snapshot: PanelSnapshot) -> bool:
        max_attempts = self._settings.max_push_attempts
        for attempt in range(1, max_attempts + 1):
            try:
                await self._gateway.push(snapshot.context_id, panel.ref, snapshot)
            except PanelRateLimitedError as exc:
                if attempt == max_attempts:
                    logger.warning(LogTemplates.PANEL_PUSH_DROPPED, snapshot.context_id, attempt)
                    return False

                delay = self._backoff(attempt, exc.retry_after)
                logger.info(
                    LogTemplates.PANEL_PUSH_RATE_LIMITED,
                    snapshot.context_id,
                    attempt,
                    max_attempts,
                    delay,
                )
                try:
                    async with asyncio.timeout(delay):
                        await panel.wake.wait()
                except TimeoutError:
                    pass
                if panel.pending is not None:
                    # superseded; the worker picks the newer render up next
                    return False
            except SyncError as exc:
                logger.warning(LogTemplates.PANEL_PUSH_FAILED, snapshot.context_id, exc)
                return False
            else:
                panel.last_key = snapshot.render_key(self._settings.elapsed_granularity_seconds)
                panel.pushes += 1
                return True
        return False

    def _backoff(self, attempt: int, retry_after: float | None) -> float:
        delay = self._settings.backoff_base_seconds * (2 ** (attempt - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        return min(delay, self._settings.backoff_max_seconds)

    # ── Elapsed ticker ──────────────────────────────────────────────

    def _update_ticker(self, context_id: int, panel: _Panel, state: str) -> None:
        playing = state == PlaybackState.PLAYING.value
        running = panel.ticker is not None and not panel.ticker.done()
        if playing and not running:
            panel.ticker = asyncio.create_task(self._tick(context_id, panel), name=f"panel-tick-{context_id}")
        elif not playing and running:
            assert panel.ticker is not None
            panel.ticker.cancel()
            panel.ticker = None

    async def _tick(self, context_id: int, panel: _Panel) -> None:
        while True:
            await asyncio.sleep(self._settings.tick_seconds)
            actor = self._sessions.get(context_id)
            if actor is None or actor.session.state != PlaybackState.PLAYING:
                return
            snapshot = PanelSnapshot.from_session(actor.session)
            if snapshot.revision < panel.latest_revision:
                continue
            self._submit(panel, snapshot)

    # ── Button actions ──────────────────────────────────────────────

    async def handle_action(
        self,
        context_id: int,
        action: PanelAction,
        user_id: int,
        owner_id: int | None = None,
    ) -> str:
        """Apply a panel button press and return the notice shown to the presser."""
        panel = self._panels.get(context_id)
        if owner_id is None and panel is not None:
            owner_id = panel.ref.owner_id
        if self._settings.owner_only and owner_id is not None and user_id != owner_id:
            return DiscordUIMessages.ERROR_NOT_PANEL_OWNER

        actor = self._sessions.get(context_id)
        if actor is None or actor.is_closed:
            return DiscordUIMessages.ERROR_SESSION_GONE

        logger.debug(LogTemplates.PANEL_ACTION, action.value, context_id)
        try:
            match action:
                case PanelAction.PAUSE:
                    changed = await actor.pause()
                    return DiscordUIMessages.ACTION_PAUSED if changed else DiscordUIMessages.ACTION_ALREADY_PAUSED
                case PanelAction.RESUME:
                    changed = await actor.resume()
                    return DiscordUIMessages.ACTION_RESUMED if changed else DiscordUIMessages.ACTION_ALREADY_PLAYING
                case PanelAction.STOP:
                    await actor.stop()
                    return DiscordUIMessages.ACTION_STOPPED
                case PanelAction.VOLUME_UP:
                    volume = await actor.adjust_volume(self._volume_step)
                    return DiscordUIMessages.ACTION_VOLUME.format(volume=volume)
                case PanelAction.VOLUME_DOWN:
                    volume = await actor.adjust_volume(-self._volume_step)
                    return DiscordUIMessages.ACTION_VOLUME.format(volume=volume)
        except DomainError as exc:
            return DiscordUIMessages.ERROR_GENERIC.format(message=exc.message)
        return DiscordUIMessages.ERROR_GENERIC.format(message=action.value)

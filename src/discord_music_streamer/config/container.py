"""Dependency Injection Container

Manages the application's dependency graph, providing lazy initialization
and lifecycle management for the playback engine and its adapters.
Components are created on-demand and cached for reuse throughout the application.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from discord.ext.commands import Bot

    from ..application.interfaces.source_provider import SourceProvider
    from ..application.services.control_panel import ControlPanelSynchronizer
    from ..application.services.diagnostics import StreamTestService
    from ..application.services.provider_selector import ProviderSelector
    from ..application.services.session_manager import SessionManager
    from ..domain.shared.events import EventBus
    from ..infrastructure.audio.pipeline_manager import SubprocessPipelineManager
    from ..infrastructure.audio.track_resolver import YtDlpTrackResolver
    from ..infrastructure.discord.adapters.audio_sink import DiscordAudioSink
    from ..infrastructure.discord.adapters.panel_gateway import DiscordPanelGateway
    from ..infrastructure.spotify.auth import SpotifyTokenManager
    from ..infrastructure.spotify.client import SpotifyClient
    from .settings import Settings


@dataclass
class Container:
    """Dependency injection container.

    Components are lazily initialized when first accessed; the Discord-facing
    adapters need ``set_bot()`` to have been called first.
    """

    settings: Settings
    _bot: Bot | None = None

    # Cross-cutting
    _event_bus: EventBus | None = None

    # Infrastructure adapters
    _audio_sink: DiscordAudioSink | None = None
    _panel_gateway: DiscordPanelGateway | None = None
    _spotify_client: SpotifyClient | None = None
    _track_resolver: YtDlpTrackResolver | None = None
    _pipeline_manager: SubprocessPipelineManager | None = None
    _providers: tuple[SourceProvider, ...] | None = None

    # Application services
    _provider_selector: ProviderSelector | None = None
    _session_manager: SessionManager | None = None
    _control_panel: ControlPanelSynchronizer | None = None
    _stream_test_service: StreamTestService | None = None

    def set_bot(self, bot: Bot) -> None:
        """Set the Discord bot instance."""
        self._bot = bot

    @property
    def bot(self) -> Bot:
        """Get the Discord bot instance."""
        if self._bot is None:
            raise RuntimeError("Bot not initialized. Call set_bot() first.")
        return self._bot

    @property
    def event_bus(self) -> EventBus:
        if self._event_bus is None:
            from ..domain.shared.events import get_event_bus

            self._event_bus = get_event_bus()
        return self._event_bus

    # === Infrastructure Adapters ===

    @property
    def audio_sink(self) -> DiscordAudioSink:
        """Get the voice connection / PCM sink adapter."""
        if self._audio_sink is None:
            from ..infrastructure.discord.adapters.audio_sink import DiscordAudioSink

            self._audio_sink = DiscordAudioSink(self.bot)
        return self._audio_sink

    @property
    def panel_gateway(self) -> DiscordPanelGateway:
        if self._panel_gateway is None:
            from ..infrastructure.discord.adapters.panel_gateway import DiscordPanelGateway

            self._panel_gateway = DiscordPanelGateway(self.bot)
        return self._panel_gateway

    @property
    def spotify_client(self) -> SpotifyClient:
        """Get the Spotify Web API client (catalog lookups and Connect playback)."""
        if self._spotify_client is None:
            from ..infrastructure.spotify.client import SpotifyClient

            self._spotify_client = SpotifyClient(self.settings.spotify)
        return self._spotify_client

    @property
    def token_manager(self) -> SpotifyTokenManager:
        return self.spotify_client.tokens

    @property
    def track_resolver(self) -> YtDlpTrackResolver:
        """Get the track resolver."""
        if self._track_resolver is None:
            from ..infrastructure.audio.track_resolver import YtDlpTrackResolver

            self._track_resolver = YtDlpTrackResolver(
                self.settings.resolver,
                self.settings.audio,
                spotify=self.spotify_client,
            )
        return self._track_resolver

    @property
    def pipeline_manager(self) -> SubprocessPipelineManager:
        if self._pipeline_manager is None:
            from ..infrastructure.audio.pipeline_manager import SubprocessPipelineManager

            self._pipeline_manager = SubprocessPipelineManager(self.settings.pipeline)
        return self._pipeline_manager

    @property
    def providers(self) -> tuple[SourceProvider, ...]:
        """Get one source provider per source kind."""
        if self._providers is None:
            from ..infrastructure.audio.providers import (
                DirectUrlProvider,
                SearchYouTubeProvider,
                StreamingServiceProvider,
            )
            from ..infrastructure.audio.transcoder import FFmpegConfig

            audio = self.settings.audio
            ffmpeg = FFmpegConfig.from_settings(audio)
            self._providers = (
                SearchYouTubeProvider(audio, ffmpeg),
                DirectUrlProvider(audio, ffmpeg),
                StreamingServiceProvider(self.settings.spotify, self.spotify_client, audio, ffmpeg),
            )
        return self._providers

    # === Application Services ===

    @property
    def provider_selector(self) -> ProviderSelector:
        if self._provider_selector is None:
            from ..application.services.provider_selector import ProviderSelector

            self._provider_selector = ProviderSelector(
                self.providers,
                self.track_resolver,
                prefer_fallback=self.settings.spotify.prefer_fallback,
                event_bus=self.event_bus,
            )
        return self._provider_selector

    @property
    def session_manager(self) -> SessionManager:
        """Get the per-guild playback session registry."""
        if self._session_manager is None:
            from ..application.services.session_manager import SessionManager

            self._session_manager = SessionManager(
                selector=self.provider_selector,
                pipelines=self.pipeline_manager,
                sink=self.audio_sink,
                settings=self.settings.session,
                audio_settings=self.settings.audio,
                event_bus=self.event_bus,
            )
        return self._session_manager

    @property
    def control_panel(self) -> ControlPanelSynchronizer:
        if self._control_panel is None:
            from ..application.services.control_panel import ControlPanelSynchronizer

            self._control_panel = ControlPanelSynchronizer(
                gateway=self.panel_gateway,
                sessions=self.session_manager,
                settings=self.settings.panel,
                audio_settings=self.settings.audio,
                event_bus=self.event_bus,
            )
        return self._control_panel

    @property
    def stream_test_service(self) -> StreamTestService:
        if self._stream_test_service is None:
            from ..application.services.diagnostics import StreamTestService

            self._stream_test_service = StreamTestService(
                resolver=self.track_resolver,
                selector=self.provider_selector,
                pipelines=self.pipeline_manager,
                settings=self.settings.diagnostics,
            )
        return self._stream_test_service

    # === Lifecycle ===

    async def initialize(self) -> None:
        """Start background workers."""
        self.control_panel.start()
        self.session_manager.start()

    async def shutdown(self) -> None:
        """Stop every session and release all resources."""
        if self._session_manager is not None:
            try:
                await self._session_manager.shutdown()
            except Exception as exc:
                logger.warning("Failed shutting down sessions: %r", exc)

        if self._control_panel is not None:
            await self._control_panel.shutdown()

        if self._pipeline_manager is not None:
            await self._pipeline_manager.shutdown()

        if self._stream_test_service is not None:
            await self._stream_test_service.shutdown()

        if self._spotify_client is not None:
            await self._spotify_client.aclose()


def create_container(settings: Settings) -> Container:
    """Create a new dependency injection container."""
    return Container(settings)

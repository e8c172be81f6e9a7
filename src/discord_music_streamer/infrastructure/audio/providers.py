"""
Source Providers

One provider per SourceKind. Each turns a resolved Track into the ordered
list of subprocess stages that will emit PCM for the voice sink.
"""

from __future__ import annotations

import asyncio
import logging
import math
import shlex
from typing import ClassVar

from discord_music_streamer.application.interfaces.source_provider import SourceProvider
from discord_music_streamer.config.settings import AudioSettings, SpotifySettings
from discord_music_streamer.domain.music.entities import Track
from discord_music_streamer.domain.music.pipeline import PipelineSpec, StageSpec
from discord_music_streamer.domain.music.value_objects import SourceKind
from discord_music_streamer.domain.shared.exceptions import (
    DeviceNotFoundError,
    ProviderUnavailableError,
)
from discord_music_streamer.domain.shared.messages import ErrorMessages, LogTemplates
from discord_music_streamer.infrastructure.audio.transcoder import PIPE_INPUT, FFmpegConfig
from discord_music_streamer.infrastructure.spotify.auth import PROVIDER_NAME
from discord_music_streamer.infrastructure.spotify.client import SpotifyClient

logger = logging.getLogger(__name__)


class SearchYouTubeProvider(SourceProvider):
    """yt-dlp writes the best audio stream to stdout and ffmpeg decodes it."""

    kind: ClassVar[SourceKind] = SourceKind.SEARCH

    def __init__(self, audio_settings: AudioSettings, ffmpeg: FFmpegConfig | None = None) -> None:
        self._audio = audio_settings
        self._ffmpeg = ffmpeg or FFmpegConfig.from_settings(audio_settings)

    def downloader_stage(self, url: str) -> StageSpec:
        return StageSpec(
            name="yt-dlp",
            command=self._audio.ytdlp_command,
            args=(
                "-f", self._audio.ytdlp_format,
                "-o", "-",
                "--no-playlist",
                "--quiet",
                "--no-warnings",
                url,
            ),
        )

    async def build_pipeline(self, track: Track) -> PipelineSpec:
        logger.debug(LogTemplates.PROVIDER_BUILDING, self.kind.value, track.title)
        return PipelineSpec(
            stages=(self.downloader_stage(track.source_ref), self._ffmpeg.build_stage(PIPE_INPUT)),
            source_kind=self.kind,
            output_format=self._ffmpeg.output_format,
        )


class DirectUrlProvider(SourceProvider):
    """ffmpeg reads the remote media itself, reconnecting on dropped streams."""

    kind: ClassVar[SourceKind] = SourceKind.DIRECT_URL

    def __init__(self, audio_settings: AudioSettings, ffmpeg: FFmpegConfig | None = None) -> None:
        self._ffmpeg = ffmpeg or FFmpegConfig.from_settings(audio_settings)

    async def build_pipeline(self, track: Track) -> PipelineSpec:
        logger.debug(LogTemplates.PROVIDER_BUILDING, self.kind.value, track.title)
        return PipelineSpec(
            stages=(self._ffmpeg.build_stage(track.source_ref, network=True),),
            source_kind=self.kind,
            output_format=self._ffmpeg.output_format,
        )


class StreamingServiceProvider(SourceProvider):
    """Spotify Connect playback captured by a local helper process.

    Before any process is spawned the provider makes sure the user token is
    valid, waits for the configured Connect device to register, and asks the
    Web API to start the track on it. The helper then emits the captured
    audio on stdout and ffmpeg normalises it to PCM.
    """

    kind: ClassVar[SourceKind] = SourceKind.STREAMING_SERVICE

    def __init__(
        self,
        settings: SpotifySettings,
        client: SpotifyClient,
        audio_settings: AudioSettings,
        ffmpeg: FFmpegConfig | None = None,
    ) -> None:
        self._settings = settings
        self._client = client
        self._ffmpeg = ffmpeg or FFmpegConfig.from_settings(audio_settings)

    @property
    def is_configured(self) -> bool:
        return self._settings.is_configured

    async def build_pipeline(self, track: Track) -> PipelineSpec:
        if not self.is_configured:
            raise ProviderUnavailableError(PROVIDER_NAME, ErrorMessages.SPOTIFY_NOT_CONFIGURED)

        logger.debug(LogTemplates.PROVIDER_BUILDING, self.kind.value, track.title)
        await self._client.tokens.get_user_token()
        device_id = await self.wait_for_device()
        await self._client.start_playback(device_id, track.source_ref)

        return PipelineSpec(
            stages=(self.helper_stage(track.source_ref), self._ffmpeg.build_stage(PIPE_INPUT)),
            source_kind=self.kind,
            output_format=self._ffmpeg.output_format,
        )

    async def wait_for_device(self) -> str:
        name = self._settings.device_name
        interval = self._settings.device_poll_interval_seconds
        attempts = max(1, math.ceil(self._settings.device_wait_seconds / interval))

        for attempt in range(1, attempts + 1):
            device = await self._client.find_device(name)
            if device is not None and device.id:
                logger.info(LogTemplates.SPOTIFY_DEVICE_FOUND, device.name, device.id)
                return device.id
            logger.debug(LogTemplates.SPOTIFY_DEVICE_WAITING, name, attempt, attempts)
            if attempt < attempts:
                await asyncio.sleep(interval)

        raise DeviceNotFoundError(name, self._settings.device_wait_seconds)

    def helper_stage(self, uri: str) -> StageSpec:
        template = self._settings.stream_command_template
        if template:
            argv = [part.replace("{uri}", uri) for part in shlex.split(template)]
        else:
            argv = [
                self._settings.helper_command,
                "--uri", uri,
                "--name", self._settings.device_name,
                "--stdout",
            ]
        return StageSpec(
            name="helper",
            command=argv[0],
            args=tuple(argv[1:]),
            requires_auth=True,
        )

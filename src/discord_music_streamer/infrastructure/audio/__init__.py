"""Audio infrastructure - yt-dlp resolver, source providers and subprocess pipelines."""

from discord_music_streamer.infrastructure.audio.pipeline_manager import SubprocessPipelineManager
from discord_music_streamer.infrastructure.audio.providers import (
    DirectUrlProvider,
    SearchYouTubeProvider,
    StreamingServiceProvider,
)
from discord_music_streamer.infrastructure.audio.track_resolver import YtDlpTrackResolver
from discord_music_streamer.infrastructure.audio.transcoder import FFmpegConfig

__all__ = [
    "DirectUrlProvider",
    "FFmpegConfig",
    "SearchYouTubeProvider",
    "StreamingServiceProvider",
    "SubprocessPipelineManager",
    "YtDlpTrackResolver",
]

"""Application ports implemented by the infrastructure layer."""

from discord_music_streamer.application.interfaces.audio_sink import AudioSink
from discord_music_streamer.application.interfaces.panel_gateway import (
    PanelGateway,
    PanelMessageRef,
)
from discord_music_streamer.application.interfaces.pipeline_manager import (
    PipelineHandle,
    PipelineManager,
    StageProcess,
)
from discord_music_streamer.application.interfaces.source_provider import SourceProvider
from discord_music_streamer.application.interfaces.track_resolver import TrackResolver

__all__ = [
    "AudioSink",
    "PanelGateway",
    "PanelMessageRef",
    "PipelineHandle",
    "PipelineManager",
    "SourceProvider",
    "StageProcess",
    "TrackResolver",
]

"""
Music Bounded Context

Domain logic for tracks, subprocess pipeline descriptions and playback sessions.
"""

from discord_music_streamer.domain.music.entities import PlaybackSession, Track
from discord_music_streamer.domain.music.pipeline import (
    ExitOutcome,
    OutputFormat,
    PipelineSpec,
    StageSpec,
)
from discord_music_streamer.domain.music.value_objects import (
    PanelAction,
    PlaybackState,
    SourceKind,
    TrackId,
)

__all__ = [
    # Entities
    "Track",
    "PlaybackSession",
    # Pipelines
    "StageSpec",
    "PipelineSpec",
    "OutputFormat",
    "ExitOutcome",
    # Value Objects
    "TrackId",
    "SourceKind",
    "PlaybackState",
    "PanelAction",
]

"""Immutable value objects for the music bounded context."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from enum import Enum, StrEnum
from typing import Annotated

from pydantic import PlainSerializer, PlainValidator

from discord_music_streamer.domain.shared.messages import ErrorMessages

SPOTIFY_TRACK_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^spotify:track:([A-Za-z0-9]{22})$"),
    re.compile(r"^https?://open\.spotify\.com/(?:intl-[a-z]{2}/)?track/([A-Za-z0-9]{22})"),
)
YOUTUBE_ID_PATTERN: re.Pattern[str] = re.compile(
    r"(?:youtube\.com/watch\?v=|youtu\.be/|youtube\.com/embed/|youtube\.com/shorts/)([a-zA-Z0-9_-]{11})"
)


@dataclass(frozen=True)
class TrackId:
    """A provider-native identifier (YouTube video ID, Spotify track ID) or a URL hash."""

    value: str

    def __post_init__(self) -> None:
        if not self.value or not self.value.strip():
            raise ValueError(ErrorMessages.EMPTY_TRACK_ID)

    def __str__(self) -> str:
        return self.value

    @classmethod
    def from_url(cls, url: str) -> TrackId:
        match = YOUTUBE_ID_PATTERN.search(url)
        if match:
            return cls(match.group(1))
        return cls(hashlib.sha256(url.encode()).hexdigest()[:16])


TrackIdField = Annotated[
    TrackId,
    PlainValidator(lambda v: TrackId(v) if isinstance(v, str) else v),
    PlainSerializer(lambda v: v.value, return_type=str),
]


def parse_spotify_track_id(reference: str) -> str | None:
    """Return the 22-character track id from a ``spotify:track:`` URI or open.spotify.com URL."""
    reference = reference.strip()
    for pattern in SPOTIFY_TRACK_PATTERNS:
        match = pattern.search(reference)
        if match:
            return match.group(1)
    return None


class SourceKind(StrEnum):
    """Where a track's audio comes from; each kind has exactly one provider."""

    SEARCH = "search"
    DIRECT_URL = "direct_url"
    STREAMING_SERVICE = "streaming_service"


class PlaybackState(Enum):
    """Playback state with enforced transitions.

    State transitions:
    - IDLE -> RESOLVING (a track was enqueued)
    - RESOLVING -> STARTING (source provider built a pipeline)
    - STARTING -> PLAYING (pipeline produced audio)
    - PLAYING <-> PAUSED
    - PLAYING/PAUSED -> RESOLVING (track finished or skipped, queue non-empty)
    - PLAYING/PAUSED -> IDLE (track finished or skipped, queue empty)
    - RESOLVING/STARTING/PLAYING/PAUSED -> ERROR -> IDLE
    - any active state -> STOPPING -> IDLE
    """

    IDLE = "idle"
    RESOLVING = "resolving"
    STARTING = "starting"
    PLAYING = "playing"
    PAUSED = "paused"
    STOPPING = "stopping"
    ERROR = "error"

    def can_transition_to(self, target: PlaybackState) -> bool:
        valid_transitions = {
            PlaybackState.IDLE: {PlaybackState.RESOLVING},
            PlaybackState.RESOLVING: {
                PlaybackState.STARTING,
                PlaybackState.STOPPING,
                PlaybackState.ERROR,
            },
            PlaybackState.STARTING: {
                PlaybackState.PLAYING,
                PlaybackState.STOPPING,
                PlaybackState.ERROR,
            },
            PlaybackState.PLAYING: {
                PlaybackState.PAUSED,
                PlaybackState.RESOLVING,
                PlaybackState.STOPPING,
                PlaybackState.ERROR,
                PlaybackState.IDLE,
            },
            PlaybackState.PAUSED: {
                PlaybackState.PLAYING,
                PlaybackState.RESOLVING,
                PlaybackState.STOPPING,
                PlaybackState.ERROR,
                PlaybackState.IDLE,
            },
            PlaybackState.STOPPING: {PlaybackState.IDLE},
            PlaybackState.ERROR: {PlaybackState.IDLE},
        }
        return target in valid_transitions.get(self, set())

    @property
    def is_active(self) -> bool:
        return self in {PlaybackState.PLAYING, PlaybackState.PAUSED}

    @property
    def is_in_flight(self) -> bool:
        """True while a track occupies the session (being prepared, playing or paused)."""
        return self in {
            PlaybackState.RESOLVING,
            PlaybackState.STARTING,
            PlaybackState.PLAYING,
            PlaybackState.PAUSED,
        }

    @property
    def label(self) -> str:
        return self.value.capitalize()


class PanelAction(StrEnum):
    """Control panel buttons, mapped 1:1 to session operations."""

    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    VOLUME_DOWN = "vol_down"
    VOLUME_UP = "vol_up"

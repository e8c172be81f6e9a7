"""Core domain entities for the music bounded context."""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr

from discord_music_streamer.domain.music.value_objects import (
    PlaybackState,
    SourceKind,
    TrackId,
)
from discord_music_streamer.domain.shared.datetime_utils import monotonic, utcnow
from discord_music_streamer.domain.shared.exceptions import (
    BusinessRuleViolationError,
    InvalidOperationError,
)
from discord_music_streamer.domain.shared.types import (
    DiscordSnowflake,
    DurationSeconds,
    HttpUrlStr,
    NonEmptyStr,
    NonNegativeInt,
    PositiveInt,
    TrackTitleStr,
    UtcDatetimeField,
    VolumePercent,
)

MIN_VOLUME = 0
MAX_VOLUME = 100


class Track(BaseModel):
    """Immutable value object describing a resolved, playable request."""

    model_config = ConfigDict(frozen=True, strict=True)

    id: TrackId
    title: TrackTitleStr
    artist: NonEmptyStr | None = None
    duration_seconds: DurationSeconds | None = None
    source_kind: SourceKind
    source_ref: NonEmptyStr
    thumbnail_url: HttpUrlStr | None = None
    webpage_url: HttpUrlStr | None = None

    # Per-request hint: skip the streaming service and go straight to search.
    force_fallback: bool = False

    requested_by_id: DiscordSnowflake | None = None
    requested_by_name: NonEmptyStr | None = None
    requested_at: UtcDatetimeField | None = None

    @property
    def duration_formatted(self) -> str:
        if self.duration_seconds is None:
            return "Unknown"

        hours, remainder = divmod(self.duration_seconds, 3600)
        minutes, seconds = divmod(remainder, 60)
        if hours > 0:
            return f"{hours}:{minutes:02d}:{seconds:02d}"
        return f"{minutes}:{seconds:02d}"

    @property
    def display_title(self) -> str:
        if self.artist:
            return f"{self.title} — {self.artist}"
        return self.title

    @property
    def search_query(self) -> str:
        """Text used to find the same song through the search provider."""
        if self.artist:
            return f"{self.title} {self.artist}"
        return self.title

    def with_requester(
        self, user_id: DiscordSnowflake, user_name: NonEmptyStr, requested_at: datetime | None = None
    ) -> Track:
        return self.model_copy(
            update={
                "requested_by_id": user_id,
                "requested_by_name": user_name,
                "requested_at": requested_at or utcnow(),
            }
        )

    def with_fallback(self, force_fallback: bool = True) -> Track:
        return self.model_copy(update={"force_fallback": force_fallback})


class PlaybackSession(BaseModel):
    """Aggregate root holding the playback state of one voice context.

    ``current_track`` is set while the session is resolving, starting,
    playing or paused, and kept through the transient ERROR and STOPPING
    states until the session returns to IDLE.
    """

    model_config = ConfigDict(strict=True)

    MAX_QUEUE_SIZE: ClassVar[int] = 50

    context_id: DiscordSnowflake
    queue: list[Track] = Field(default_factory=list)
    current_track: Track | None = None
    state: PlaybackState = PlaybackState.IDLE
    volume: VolumePercent = 20
    max_queue_size: PositiveInt = MAX_QUEUE_SIZE
    started_at: UtcDatetimeField | None = None
    created_at: UtcDatetimeField = Field(default_factory=utcnow)
    last_activity: UtcDatetimeField = Field(default_factory=utcnow)

    # Bumped on every state change so observers can order snapshots.
    revision: NonNegativeInt = 0

    _elapsed_before_pause: float = PrivateAttr(default=0.0)
    _resumed_at_monotonic: float | None = PrivateAttr(default=None)

    @property
    def queue_length(self) -> int:
        return len(self.queue)

    @property
    def is_idle(self) -> bool:
        return self.state == PlaybackState.IDLE

    @property
    def has_tracks(self) -> bool:
        return self.current_track is not None or bool(self.queue)

    @property
    def can_add_to_queue(self) -> bool:
        return self.queue_length < self.max_queue_size

    @property
    def elapsed_seconds(self) -> float:
        elapsed = self._elapsed_before_pause
        if self.state == PlaybackState.PLAYING and self._resumed_at_monotonic is not None:
            elapsed += monotonic() - self._resumed_at_monotonic
        return elapsed

    @property
    def remaining_seconds(self) -> float | None:
        if self.current_track is None or self.current_track.duration_seconds is None:
            return None
        return max(0.0, self.current_track.duration_seconds - self.elapsed_seconds)

    def touch(self) -> None:
        self.last_activity = utcnow()

    # ── Queue ───────────────────────────────────────────────────────

    def enqueue(self, track: Track) -> int:
        """Append a track to the end of the queue and return its zero-based position."""
        if not self.can_add_to_queue:
            raise BusinessRuleViolationError(
                rule="MAX_QUEUE_SIZE", message=f"Queue is full (max {self.max_queue_size} tracks)"
            )
        self.queue.append(track)
        self.touch()
        return len(self.queue) - 1

    def dequeue(self) -> Track | None:
        if not self.queue:
            return None
        track = self.queue.pop(0)
        self.touch()
        return track

    def peek(self) -> Track | None:
        return self.queue[0] if self.queue else None

    def clear_queue(self) -> int:
        count = len(self.queue)
        self.queue.clear()
        self.touch()
        return count

    # ── State ───────────────────────────────────────────────────────

    def transition_to(self, new_state: PlaybackState) -> None:
        if not self.state.can_transition_to(new_state):
            raise InvalidOperationError(
                operation=f"transition to {new_state.value}",
                current_state=self.state.value,
                message=f"Cannot transition from {self.state.value} to {new_state.value}",
            )

        self.state = new_state
        if new_state == PlaybackState.IDLE:
            self.current_track = None
            self._reset_clock()
        self.revision += 1
        self.touch()

    def begin_track(self, track: Track) -> None:
        """Make ``track`` current and start resolving its source."""
        self.transition_to(PlaybackState.RESOLVING)
        self.current_track = track
        self._reset_clock()

    def mark_playing(self) -> None:
        self.transition_to(PlaybackState.PLAYING)
        self.started_at = utcnow()
        self._resumed_at_monotonic = monotonic()

    def pause(self) -> bool:
        """Pause playback. Returns False when already paused."""
        if self.state == PlaybackState.PAUSED:
            return False
        if self.state != PlaybackState.PLAYING:
            raise InvalidOperationError(operation="pause", current_state=self.state.value)

        self._elapsed_before_pause = self.elapsed_seconds
        self._resumed_at_monotonic = None
        self.transition_to(PlaybackState.PAUSED)
        return True

    def resume(self) -> bool:
        """Resume playback. Returns False when already playing."""
        if self.state == PlaybackState.PLAYING:
            return False
        if self.state != PlaybackState.PAUSED:
            raise InvalidOperationError(operation="resume", current_state=self.state.value)

        self.transition_to(PlaybackState.PLAYING)
        self._resumed_at_monotonic = monotonic()
        return True

    def set_volume(self, volume: int) -> int:
        """Clamp and store the volume; returns the value actually applied."""
        self.volume = max(MIN_VOLUME, min(MAX_VOLUME, int(volume)))
        self.revision += 1
        self.touch()
        return self.volume

    def _reset_clock(self) -> None:
        self.started_at = None
        self._elapsed_before_pause = 0.0
        self._resumed_at_monotonic = None

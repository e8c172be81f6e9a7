"""Date/time helpers.

- Always operate on timezone-aware UTC datetimes.
- Keep a monotonic clock next to wall time for elapsed-playback accounting.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import UTC, datetime

from discord_music_streamer.domain.shared.messages import ErrorMessages


@dataclass(frozen=True, slots=True)
class UtcDateTime:
    """A tiny value-object wrapper around a timezone-aware UTC `datetime`."""

    dt: datetime

    def __post_init__(self) -> None:
        if self.dt.tzinfo is None:
            raise ValueError(ErrorMessages.TIMEZONE_REQUIRED_UTC_DATETIME)
        object.__setattr__(self, "dt", self.dt.astimezone(UTC))

    @classmethod
    def now(cls) -> UtcDateTime:
        return cls(datetime.now(UTC))

    @property
    def file_stamp(self) -> str:
        """Compact stamp safe for file names, e.g. ``20240101T120000Z``."""
        return self.dt.strftime("%Y%m%dT%H%M%SZ")


def utcnow() -> datetime:
    """Return a timezone-aware datetime in UTC."""
    return datetime.now(UTC)


def monotonic() -> float:
    return time.monotonic()

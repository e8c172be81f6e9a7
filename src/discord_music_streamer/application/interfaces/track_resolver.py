"""Port interface for turning user queries into Tracks."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from discord_music_streamer.domain.shared.types import NonEmptyStr

if TYPE_CHECKING:
    from ...domain.music.entities import Track


class TrackResolver(ABC):
    """Interface for resolving search text, URLs and streaming references to Tracks.

    Implementations raise ``TrackNotFoundError``, ``UnsupportedSourceError`` or
    ``MetadataTimeoutError``; they never return None.
    """

    @abstractmethod
    async def resolve(self, query: NonEmptyStr, *, prefer_fallback: bool = False) -> Track:
        """Resolve a query, URL or ``spotify:track:`` reference into a Track."""
        ...

    @abstractmethod
    async def resolve_search(self, query: NonEmptyStr) -> Track:
        """Resolve free text through the search provider only."""
        ...

# ruff: noqa: N999
"""
Domain Layer

Contains pure playback logic organized by bounded contexts:
- shared/: Cross-cutting types, events, messages and exceptions
- music/: Tracks, pipeline descriptions and the playback session aggregate
"""

from discord_music_streamer.domain.shared.exceptions import DomainError

__all__ = [
    "DomainError",
]

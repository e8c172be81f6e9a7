"""Spotify Web API access: tokens, catalog metadata and Connect playback."""

from discord_music_streamer.infrastructure.spotify.auth import SpotifyTokenManager
from discord_music_streamer.infrastructure.spotify.client import SpotifyClient
from discord_music_streamer.infrastructure.spotify.models import (
    AuthToken,
    SpotifyDevice,
    SpotifyTrack,
)

__all__ = [
    "AuthToken",
    "SpotifyClient",
    "SpotifyDevice",
    "SpotifyTokenManager",
    "SpotifyTrack",
]

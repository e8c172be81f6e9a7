"""Infrastructure layer - external systems integration.

This layer contains implementations for:
- Discord (bot, cogs, voice sink, control panel gateway)
- Audio (yt-dlp resolver, source providers, subprocess pipelines)
- Spotify (Web API tokens, catalog and Connect playback)
"""

from discord_music_streamer.infrastructure.discord.adapters.audio_sink import DiscordAudioSink
from discord_music_streamer.infrastructure.discord.bot import create_bot

__all__ = [
    "create_bot",
    "DiscordAudioSink",
]

"""Discord cogs - command handlers."""

from discord_music_streamer.infrastructure.discord.cogs.music_cog import MusicCog

__all__ = [
    "MusicCog",
]

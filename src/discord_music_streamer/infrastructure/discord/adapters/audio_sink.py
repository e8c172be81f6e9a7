"""Discord voice adapter: owns voice connections and plays pipeline PCM into them."""

from __future__ import annotations

import asyncio
import logging
from typing import BinaryIO

import discord

from discord_music_streamer.application.interfaces.audio_sink import AudioSink
from discord_music_streamer.domain.music.pipeline import OutputFormat
from discord_music_streamer.domain.shared.exceptions import InvalidOperationError
from discord_music_streamer.domain.shared.messages import DiscordUIMessages, LogTemplates

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT: float = 10.0
DISCORD_PCM_FORMAT = OutputFormat(sample_format="s16le", sample_rate=48_000, channels=2)


class DiscordAudioSink(AudioSink):
    def __init__(self, bot: discord.Client) -> None:
        self._bot = bot

    def _get_voice_client(self, guild_id: int) -> discord.VoiceClient | None:
        guild = self._bot.get_guild(guild_id)
        if not guild:
            return None

        vc = guild.voice_client
        return vc if isinstance(vc, discord.VoiceClient) else None

    # ── Connection ──────────────────────────────────────────────────

    async def ensure_connected(self, guild_id: int, channel_id: int) -> bool:
        """Connect if not connected, move if in a different channel."""
        guild = self._bot.get_guild(guild_id)
        if guild is None:
            logger.warning(LogTemplates.GUILD_NOT_FOUND, guild_id)
            return False

        channel = guild.get_channel(channel_id)
        if not isinstance(channel, discord.VoiceChannel | discord.StageChannel):
            logger.warning(LogTemplates.CHANNEL_NOT_VOICE, channel_id)
            return False

        vc = self._get_voice_client(guild_id)
        if vc is not None and not vc.is_connected():
            await self.disconnect(guild_id)
            vc = None

        try:
            async with asyncio.timeout(CONNECT_TIMEOUT):
                if vc is None:
                    await channel.connect(self_deaf=True)
                elif vc.channel is None or vc.channel.id != channel_id:
                    await vc.move_to(channel)
                else:
                    return True
        except TimeoutError:
            logger.error(LogTemplates.VOICE_CONNECTION_TIMEOUT, channel_id)
            return False
        except discord.ClientException as e:
            logger.error(LogTemplates.VOICE_CLIENT_ERROR, e)
            return False
        except discord.Forbidden:
            logger.error(LogTemplates.VOICE_NO_PERMISSION, channel_id)
            return False

        logger.info(LogTemplates.VOICE_CONNECTED, channel.name, guild.name)
        return True

    async def disconnect(self, guild_id: int) -> bool:
        vc = self._get_voice_client(guild_id)
        if not vc:
            return False

        await vc.disconnect(force=True)
        logger.info(LogTemplates.VOICE_DISCONNECTED, guild_id)
        return True

    def is_connected(self, guild_id: int) -> bool:
        vc = self._get_voice_client(guild_id)
        return vc is not None and vc.is_connected()

    # ── AudioSink ───────────────────────────────────────────────────

    async def play(
        self,
        context_id: int,
        stream: BinaryIO,
        *,
        volume: int,
        output_format: OutputFormat,
    ) -> asyncio.Future[Exception | None]:
        vc = self._get_voice_client(context_id)
        if vc is None or not vc.is_connected():
            logger.warning(LogTemplates.VOICE_NOT_CONNECTED, context_id)
            raise InvalidOperationError(
                operation="play", current_state="disconnected", message=DiscordUIMessages.STATE_NOT_CONNECTED
            )
        if output_format != DISCORD_PCM_FORMAT:
            raise InvalidOperationError(
                operation="play",
                current_state=f"{output_format.sample_rate}Hz/{output_format.channels}ch",
                message=f"Discord needs 48kHz stereo s16le PCM, got {output_format}",
            )

        if vc.is_playing() or vc.is_paused():
            vc.stop()

        loop = asyncio.get_running_loop()
        finished: asyncio.Future[Exception | None] = loop.create_future()

        def _resolve(error: Exception | None) -> None:
            if not finished.done():
                finished.set_result(error)

        def after_callback(error: Exception | None = None) -> None:
            # Runs on discord.py's player thread.
            logger.debug(LogTemplates.SINK_FINISHED, context_id, error)
            loop.call_soon_threadsafe(_resolve, error)

        source = discord.PCMVolumeTransformer(discord.PCMAudio(stream), volume=volume / 100)
        vc.play(source, after=after_callback)
        return finished

    async def pause(self, context_id: int) -> None:
        vc = self._get_voice_client(context_id)
        if vc is not None and vc.is_playing():
            vc.pause()

    async def resume(self, context_id: int) -> None:
        vc = self._get_voice_client(context_id)
        if vc is not None and vc.is_paused():
            vc.resume()

    async def stop(self, context_id: int) -> None:
        vc = self._get_voice_client(context_id)
        if vc is not None and (vc.is_playing() or vc.is_paused()):
            vc.stop()

    def set_volume(self, context_id: int, volume: int) -> None:
        vc = self._get_voice_client(context_id)
        if vc is None or vc.source is None:
            return
        if isinstance(vc.source, discord.PCMVolumeTransformer):
            vc.source.volume = max(0.0, min(1.0, volume / 100))

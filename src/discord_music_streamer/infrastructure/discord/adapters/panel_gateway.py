"""Discord implementation of PanelGateway: edits the control panel embed in place."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord

from discord_music_streamer.application.interfaces.panel_gateway import (
    PanelGateway,
    PanelMessageRef,
)
from discord_music_streamer.domain.music.value_objects import PlaybackState
from discord_music_streamer.domain.shared.exceptions import PanelRateLimitedError, SyncError
from discord_music_streamer.domain.shared.messages import DiscordUIMessages
from discord_music_streamer.utils.reply import format_duration, truncate

if TYPE_CHECKING:
    from ....application.services.control_panel import PanelSnapshot

logger = logging.getLogger(__name__)

STATE_COLORS: dict[str, discord.Color] = {
    PlaybackState.PLAYING.value: discord.Color.green(),
    PlaybackState.PAUSED.value: discord.Color.gold(),
    PlaybackState.RESOLVING.value: discord.Color.blurple(),
    PlaybackState.STARTING.value: discord.Color.blurple(),
    PlaybackState.ERROR.value: discord.Color.red(),
}


def build_panel_embed(snapshot: PanelSnapshot) -> discord.Embed:
    remaining = snapshot.remaining_seconds
    description_lines = [
        DiscordUIMessages.PANEL_STATUS.format(status=snapshot.status),
        DiscordUIMessages.PANEL_VOLUME.format(volume=snapshot.volume),
        DiscordUIMessages.PANEL_REMAINING.format(
            remaining=format_duration(remaining) if remaining is not None else "–"
        ),
    ]

    embed = discord.Embed(
        title=truncate(snapshot.display_title, 256),
        description="\n".join(description_lines),
        color=STATE_COLORS.get(snapshot.state, discord.Color.greyple()),
    )
    if snapshot.thumbnail_url:
        embed.set_thumbnail(url=snapshot.thumbnail_url)
    return embed


class DiscordPanelGateway(PanelGateway):
    def __init__(self, bot: discord.Client) -> None:
        self._bot = bot

    async def push(self, context_id: int, ref: PanelMessageRef, snapshot: PanelSnapshot) -> None:
        channel = self._bot.get_channel(ref.channel_id)
        if not isinstance(channel, discord.abc.Messageable) or not hasattr(channel, "get_partial_message"):
            raise SyncError(f"Panel channel {ref.channel_id} is not available", code="PANEL_CHANNEL_MISSING")

        message = channel.get_partial_message(ref.message_id)
        try:
            await message.edit(embed=build_panel_embed(snapshot))
        except discord.RateLimited as exc:
            raise PanelRateLimitedError(exc.retry_after) from exc
        except discord.HTTPException as exc:
            if exc.status == 429:
                raise PanelRateLimitedError() from exc
            raise SyncError(str(exc), code="PANEL_PUSH_FAILED") from exc

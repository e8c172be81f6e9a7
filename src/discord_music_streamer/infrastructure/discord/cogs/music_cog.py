"""Slash-command music cog delegating to the playback engine."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import discord
from discord import app_commands
from discord.ext import commands

from discord_music_streamer.application.interfaces.panel_gateway import PanelMessageRef
from discord_music_streamer.application.services.control_panel import PanelSnapshot
from discord_music_streamer.domain.shared.events import FallbackUsed, SessionClosed, TrackFailed
from discord_music_streamer.domain.shared.exceptions import DomainError
from discord_music_streamer.domain.shared.messages import DiscordUIMessages
from discord_music_streamer.infrastructure.discord.adapters.panel_gateway import build_panel_embed
from discord_music_streamer.infrastructure.discord.views.control_panel_view import ControlPanelView
from discord_music_streamer.utils.reply import codeblock, truncate

if TYPE_CHECKING:
    from ....config.container import Container

logger = logging.getLogger(__name__)

SAMPLE_FILENAME = "sample.wav"
NOTICE_DIAGNOSTICS_CHARS = 1200
CODEBLOCK_FENCE_CHARS = len("```\n\n```")


def describe_error(exc: DomainError) -> str:
    if exc.hint:
        return DiscordUIMessages.ERROR_WITH_HINT.format(message=exc.message, hint=exc.hint)
    return DiscordUIMessages.ERROR_GENERIC.format(message=exc.message)


class MusicCog(commands.Cog):
    def __init__(self, bot: commands.Bot, container: Container) -> None:
        self.bot = bot
        self.container = container

        # guild -> text channel used for asynchronous notices
        self._notice_channels: dict[int, int] = {}

    async def cog_load(self) -> None:
        bus = self.container.event_bus
        bus.subscribe(TrackFailed, self._on_track_failed)
        bus.subscribe(FallbackUsed, self._on_fallback_used)
        bus.subscribe(SessionClosed, self._on_session_closed)

    async def cog_unload(self) -> None:
        bus = self.container.event_bus
        bus.unsubscribe(TrackFailed, self._on_track_failed)
        bus.unsubscribe(FallbackUsed, self._on_fallback_used)
        bus.unsubscribe(SessionClosed, self._on_session_closed)
        self._notice_channels.clear()

    async def _send_ephemeral(self, interaction: discord.Interaction, message: str) -> None:
        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)

    async def _get_member(self, interaction: discord.Interaction) -> discord.Member | None:
        if not interaction.guild:
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_SERVER_ONLY)
            return None

        user = interaction.user
        if not isinstance(user, discord.Member):
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_VERIFY_VOICE_FAILED)
            return None

        return user

    async def _ensure_voice(self, interaction: discord.Interaction) -> bool:
        member = await self._get_member(interaction)
        if member is None:
            return False

        assert interaction.guild is not None

        if not member.voice or not member.voice.channel:
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_NEED_TO_BE_IN_VOICE)
            return False

        connected = await self.container.audio_sink.ensure_connected(
            interaction.guild.id, member.voice.channel.id
        )
        if not connected:
            await self._send_ephemeral(interaction, DiscordUIMessages.ERROR_COULD_NOT_JOIN_VOICE)
            return False

        return True

    # ── Commands ────────────────────────────────────────────────────

    @app_commands.command(name="play", description="Play a song by link or search query.")
    @app_commands.describe(
        query="Spotify or YouTube link, direct audio URL, or search text",
        fallback="Play from search instead of the streaming service",
    )
    async def play(self, interaction: discord.Interaction, query: str, fallback: bool = False) -> None:
        # Voice connection and metadata lookup can both exceed the interaction deadline
        await interaction.response.defer()

        if not await self._ensure_voice(interaction):
            return
        assert interaction.guild is not None

        guild_id = interaction.guild.id
        if interaction.channel_id is not None:
            self._notice_channels[guild_id] = interaction.channel_id

        user = interaction.user
        try:
            track = await self.container.track_resolver.resolve(query, prefer_fallback=fallback)
            track = track.with_requester(user.id, getattr(user, "display_name", user.name))

            actor = await self.container.session_manager.get_or_create(guild_id)
            position = await actor.enqueue(track)
        except DomainError as exc:
            await interaction.followup.send(describe_error(exc), ephemeral=True)
            return

        control_panel = self.container.control_panel
        if position > 0 or control_panel.panel_ref(guild_id) is not None:
            text = (
                DiscordUIMessages.ACTION_QUEUED.format(title=truncate(track.display_title, 60), position=position)
                if position > 0
                else DiscordUIMessages.ACTION_PLAYING_NOW.format(title=truncate(track.display_title, 60))
            )
            await interaction.followup.send(text)
            return

        view = ControlPanelView(guild_id=guild_id, owner_id=user.id, control_panel=control_panel)
        sent = await interaction.followup.send(
            embed=build_panel_embed(PanelSnapshot.from_session(actor.session)),
            view=view,
            wait=True,
        )
        view.set_message(sent)
        await control_panel.attach(
            guild_id,
            PanelMessageRef(channel_id=sent.channel.id, message_id=sent.id, owner_id=user.id),
        )

    @app_commands.command(name="skip", description="Skip the current track.")
    async def skip(self, interaction: discord.Interaction) -> None:
        if not interaction.guild:
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_SERVER_ONLY)
            return

        # Tearing down a pipeline can take longer than the interaction deadline
        await interaction.response.defer()
        actor = self.container.session_manager.get(interaction.guild.id)
        if actor is None or not await actor.skip():
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_NOTHING_PLAYING)
            return
        await interaction.followup.send(DiscordUIMessages.ACTION_SKIPPED)

    @app_commands.command(name="stop", description="Stop playback and clear the queue.")
    async def stop(self, interaction: discord.Interaction) -> None:
        if not interaction.guild:
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_SERVER_ONLY)
            return

        # Tearing down a pipeline can take longer than the interaction deadline
        await interaction.response.defer()
        actor = self.container.session_manager.get(interaction.guild.id)
        if actor is None or not await actor.stop():
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_NOTHING_PLAYING)
            return
        await interaction.followup.send(DiscordUIMessages.ACTION_STOPPED)

    @app_commands.command(name="leave", description="Stop playback and leave the voice channel.")
    async def leave(self, interaction: discord.Interaction) -> None:
        if not interaction.guild:
            await self._send_ephemeral(interaction, DiscordUIMessages.STATE_SERVER_ONLY)
            return

        await interaction.response.defer(ephemeral=True)
        guild_id = interaction.guild.id
        await self.container.session_manager.close(guild_id, reason="leave")
        disconnected = await self.container.audio_sink.disconnect(guild_id)
        self._notice_channels.pop(guild_id, None)

        if disconnected:
            await interaction.followup.send(DiscordUIMessages.ACTION_LEFT, ephemeral=True)
        else:
            await interaction.followup.send(DiscordUIMessages.STATE_NOT_CONNECTED, ephemeral=True)

    @app_commands.command(
        name="streamtest", description="Record a short sample of a source and report on it."
    )
    @app_commands.describe(uri="Link or search text to test")
    async def streamtest(self, interaction: discord.Interaction, uri: str) -> None:
        await interaction.response.defer(thinking=True)

        service = self.container.stream_test_service
        context_id = interaction.guild.id if interaction.guild else interaction.user.id
        report = await service.run(uri, context_id=context_id)
        settings = service.settings

        header = DiscordUIMessages.STREAMTEST_HEADER.format(
            title=truncate(report.title or uri, 80), kind=report.source_kind or "unknown"
        )
        body = codeblock(report.render(settings.report_max_chars), max_length=settings.report_max_chars)
        content = f"{header}\n{body}"

        if report.can_attach(settings.attachment_limit_bytes):
            assert report.sample_path is not None
            await interaction.followup.send(
                content, file=discord.File(report.sample_path, filename=SAMPLE_FILENAME)
            )
        else:
            if report.sample_path is not None:
                content += "\n" + DiscordUIMessages.STREAMTEST_TOO_LARGE.format(
                    limit=settings.attachment_limit_bytes
                )
            elif report.captured_bytes == 0:
                content += "\n" + DiscordUIMessages.STREAMTEST_NO_SAMPLE
            await interaction.followup.send(content)

        service.schedule_cleanup(report.sample_path)

    # ── Notices ─────────────────────────────────────────────────────

    async def _notify(self, guild_id: int, message: str) -> None:
        channel_id = self._notice_channels.get(guild_id)
        if channel_id is None:
            return
        channel = self.bot.get_channel(channel_id)
        if not isinstance(channel, discord.abc.Messageable):
            return
        try:
            await channel.send(message)
        except discord.HTTPException as exc:
            logger.warning("Failed to send notice to channel %s: %s", channel_id, exc)

    async def _on_track_failed(self, event: TrackFailed) -> None:
        message = DiscordUIMessages.TRACK_FAILED.format(
            title=truncate(event.track_title or "?", 60), message=event.message
        )
        if event.hint:
            message = f"{message}\n{event.hint}"
        if event.diagnostics:
            tail = event.diagnostics[-NOTICE_DIAGNOSTICS_CHARS:]
            message = f"{message}\n{codeblock(tail, NOTICE_DIAGNOSTICS_CHARS + CODEBLOCK_FENCE_CHARS)}"
        await self._notify(event.context_id, message)

    async def _on_fallback_used(self, event: FallbackUsed) -> None:
        await self._notify(
            event.context_id,
            DiscordUIMessages.FALLBACK_NOTICE.format(
                title=truncate(event.track_title or "?", 60), reason=event.reason
            ),
        )

    async def _on_session_closed(self, event: SessionClosed) -> None:
        if event.reason != "idle":
            return
        self._notice_channels.pop(event.context_id, None)
        await self.container.audio_sink.disconnect(event.context_id)


async def setup(bot: commands.Bot) -> None:
    container = getattr(bot, "container", None)
    if container is None:
        raise RuntimeError("Container not found on bot instance")

    await bot.add_cog(MusicCog(bot, container))

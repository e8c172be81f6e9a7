"""
Unit Tests for MusicCog

Tests for src/discord_music_streamer/infrastructure/discord/cogs/music_cog.py:

1. /play: voice checks, queueing, control panel creation, domain errors
2. /skip, /stop, /leave: delegation to the session manager and audio sink
3. /streamtest: report rendering, sample attachment and cleanup
4. Notices: failure and fallback messages, idle disconnects
"""

from unittest.mock import AsyncMock, MagicMock

import discord
import pytest
import pytest_asyncio
from conftest import make_track

from discord_music_streamer.application.services.diagnostics import StreamTestReport
from discord_music_streamer.config.settings import DiagnosticsSettings
from discord_music_streamer.domain.music.entities import PlaybackSession
from discord_music_streamer.domain.shared.events import (
    EventBus,
    FallbackUsed,
    SessionClosed,
    TrackFailed,
)
from discord_music_streamer.domain.shared.exceptions import (
    PremiumRequiredError,
    ResolutionError,
    TrackNotFoundError,
)
from discord_music_streamer.domain.shared.messages import DiscordUIMessages
from discord_music_streamer.infrastructure.discord.cogs.music_cog import (
    SAMPLE_FILENAME,
    MusicCog,
    describe_error,
    setup,
)

GUILD_ID = 111111111
CHANNEL_ID = 222222222
USER_ID = 333333333
VOICE_CHANNEL_ID = 444444444


@pytest.fixture
def mock_bot():
    bot = MagicMock()
    bot.get_channel = MagicMock(return_value=None)
    return bot


@pytest.fixture
def actor():
    """Session actor with a real, idle session behind it."""
    actor = MagicMock()
    actor.session = PlaybackSession(context_id=GUILD_ID)
    actor.enqueue = AsyncMock(return_value=0)
    actor.skip = AsyncMock(return_value=True)
    actor.stop = AsyncMock(return_value=True)
    return actor


@pytest.fixture
def mock_container(actor):
    container = MagicMock()
    container.event_bus = EventBus()
    container.settings.pipeline.verbose_logging = False

    container.audio_sink.ensure_connected = AsyncMock(return_value=True)
    container.audio_sink.disconnect = AsyncMock(return_value=True)

    container.track_resolver.resolve = AsyncMock(return_value=make_track("Song", artist="Artist"))

    container.session_manager.get_or_create = AsyncMock(return_value=actor)
    container.session_manager.get = MagicMock(return_value=actor)
    container.session_manager.close = AsyncMock(return_value=True)

    container.control_panel.panel_ref = MagicMock(return_value=None)
    container.control_panel.attach = AsyncMock()

    container.stream_test_service.settings = DiagnosticsSettings(attachment_limit_bytes=1024)
    container.stream_test_service.run = AsyncMock()
    container.stream_test_service.schedule_cleanup = MagicMock()
    return container


@pytest.fixture
def mock_interaction():
    """Create a mock Discord interaction from a member in a voice channel."""
    interaction = MagicMock(spec=discord.Interaction)
    interaction.response = MagicMock()
    interaction.response.is_done = MagicMock(return_value=True)
    interaction.response.defer = AsyncMock()
    interaction.response.send_message = AsyncMock()
    interaction.followup = MagicMock()
    sent = MagicMock(id=555555555)
    sent.channel.id = CHANNEL_ID
    interaction.followup.send = AsyncMock(return_value=sent)

    interaction.guild = MagicMock()
    interaction.guild.id = GUILD_ID
    interaction.channel_id = CHANNEL_ID

    member = MagicMock(spec=discord.Member)
    member.id = USER_ID
    member.name = "tester"
    member.display_name = "Tester"
    member.voice = MagicMock()
    member.voice.channel = MagicMock()
    member.voice.channel.id = VOICE_CHANNEL_ID
    interaction.user = member
    return interaction


@pytest_asyncio.fixture
async def cog(mock_bot, mock_container):
    cog = MusicCog(mock_bot, mock_container)
    await cog.cog_load()
    yield cog
    await cog.cog_unload()


def followup_text(interaction) -> str:
    call = interaction.followup.send.call_args
    return call.args[0] if call.args else call.kwargs.get("content", "")


# =============================================================================
# /play
# =============================================================================


class TestPlayCommand:
    @pytest.mark.asyncio
    async def test_play_outside_guild(self, cog, mock_interaction, mock_container):
        """Should refuse to play in direct messages."""
        mock_interaction.guild = None

        await cog.play.callback(cog, mock_interaction, "song")

        mock_interaction.followup.send.assert_awaited_once_with(
            DiscordUIMessages.STATE_SERVER_ONLY, ephemeral=True
        )
        mock_container.track_resolver.resolve.assert_not_called()

    @pytest.mark.asyncio
    async def test_play_requires_voice_channel(self, cog, mock_interaction, mock_container):
        """Should ask the user to join a voice channel first."""
        mock_interaction.user.voice = None

        await cog.play.callback(cog, mock_interaction, "song")

        mock_interaction.followup.send.assert_awaited_once_with(
            DiscordUIMessages.STATE_NEED_TO_BE_IN_VOICE, ephemeral=True
        )
        mock_container.audio_sink.ensure_connected.assert_not_called()

    @pytest.mark.asyncio
    async def test_play_reports_join_failure(self, cog, mock_interaction, mock_container):
        """Should stop when the bot cannot join the voice channel."""
        mock_container.audio_sink.ensure_connected.return_value = False

        await cog.play.callback(cog, mock_interaction, "song")

        mock_container.audio_sink.ensure_connected.assert_awaited_once_with(GUILD_ID, VOICE_CHANNEL_ID)
        mock_interaction.followup.send.assert_awaited_once_with(
            DiscordUIMessages.ERROR_COULD_NOT_JOIN_VOICE, ephemeral=True
        )
        mock_container.session_manager.get_or_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_play_first_track_posts_control_panel(self, cog, mock_interaction, mock_container, actor):
        """Should post a panel embed with buttons and register it with the synchronizer."""
        await cog.play.callback(cog, mock_interaction, "song")

        mock_interaction.response.defer.assert_awaited_once()
        mock_container.track_resolver.resolve.assert_awaited_once_with("song", prefer_fallback=False)
        enqueued = actor.enqueue.call_args.args[0]
        assert enqueued.requested_by_id == USER_ID
        assert enqueued.requested_by_name == "Tester"

        kwargs = mock_interaction.followup.send.call_args.kwargs
        assert isinstance(kwargs["embed"], discord.Embed)
        assert kwargs["view"].guild_id == GUILD_ID
        assert kwargs["view"].owner_id == USER_ID
        assert kwargs["wait"] is True

        guild_id, ref = mock_container.control_panel.attach.call_args.args
        assert guild_id == GUILD_ID
        assert (ref.channel_id, ref.message_id, ref.owner_id) == (CHANNEL_ID, 555555555, USER_ID)

    @pytest.mark.asyncio
    async def test_play_queued_track_sends_position(self, cog, mock_interaction, mock_container, actor):
        """Should reply with the queue position instead of a second panel."""
        actor.enqueue.return_value = 3

        await cog.play.callback(cog, mock_interaction, "song")

        assert followup_text(mock_interaction) == DiscordUIMessages.ACTION_QUEUED.format(
            title="Song — Artist", position=3
        )
        mock_container.control_panel.attach.assert_not_called()

    @pytest.mark.asyncio
    async def test_play_reuses_existing_panel(self, cog, mock_interaction, mock_container):
        """Should announce the track as text when a panel is already posted."""
        mock_container.control_panel.panel_ref.return_value = MagicMock()

        await cog.play.callback(cog, mock_interaction, "song")

        assert followup_text(mock_interaction) == DiscordUIMessages.ACTION_PLAYING_NOW.format(
            title="Song — Artist"
        )
        mock_container.control_panel.attach.assert_not_called()

    @pytest.mark.asyncio
    async def test_play_passes_fallback_flag(self, cog, mock_interaction, mock_container):
        """Should forward the fallback option to the resolver."""
        await cog.play.callback(cog, mock_interaction, "spotify:track:x", True)

        mock_container.track_resolver.resolve.assert_awaited_once_with(
            "spotify:track:x", prefer_fallback=True
        )

    @pytest.mark.asyncio
    async def test_play_domain_error_is_ephemeral(self, cog, mock_interaction, mock_container):
        """Should show the error and hint privately to the requester."""
        error = TrackNotFoundError("song")
        mock_container.track_resolver.resolve.side_effect = error

        await cog.play.callback(cog, mock_interaction, "song")

        mock_interaction.followup.send.assert_awaited_once_with(describe_error(error), ephemeral=True)
        mock_container.session_manager.get_or_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_play_remembers_notice_channel(self, cog, mock_interaction):
        """Should use the command channel for later notices."""
        await cog.play.callback(cog, mock_interaction, "song")

        assert cog._notice_channels == {GUILD_ID: CHANNEL_ID}


class TestDescribeError:
    def test_error_with_hint(self):
        """Should append the hint on its own line."""
        error = PremiumRequiredError()

        assert describe_error(error) == DiscordUIMessages.ERROR_WITH_HINT.format(
            message=error.message, hint=error.hint
        )

    def test_error_without_hint(self):
        """Should fall back to the plain error line."""
        error = ResolutionError("nothing")

        assert describe_error(error) == DiscordUIMessages.ERROR_GENERIC.format(message="nothing")


# =============================================================================
# /skip, /stop, /leave
# =============================================================================


class TestTransportCommands:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("command", "done_message"),
        [("skip", DiscordUIMessages.ACTION_SKIPPED), ("stop", DiscordUIMessages.ACTION_STOPPED)],
    )
    async def test_command_delegates_to_actor(self, cog, mock_interaction, actor, command, done_message):
        """Should forward to the session actor and confirm."""
        await getattr(cog, command).callback(cog, mock_interaction)

        getattr(actor, command).assert_awaited_once()
        mock_interaction.followup.send.assert_awaited_once_with(done_message)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["skip", "stop"])
    async def test_command_without_session(self, cog, mock_interaction, mock_container, command):
        """Should report that nothing is playing when no session exists."""
        mock_container.session_manager.get.return_value = None

        await getattr(cog, command).callback(cog, mock_interaction)

        mock_interaction.followup.send.assert_awaited_once_with(
            DiscordUIMessages.STATE_NOTHING_PLAYING, ephemeral=True
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["skip", "stop"])
    async def test_command_rejected_by_actor(self, cog, mock_interaction, actor, command):
        """Should report that nothing is playing when the actor has nothing to act on."""
        getattr(actor, command).return_value = False

        await getattr(cog, command).callback(cog, mock_interaction)

        mock_interaction.followup.send.assert_awaited_once_with(
            DiscordUIMessages.STATE_NOTHING_PLAYING, ephemeral=True
        )

    @pytest.mark.asyncio
    async def test_skip_outside_guild(self, cog, mock_interaction):
        """Should answer directly without deferring."""
        mock_interaction.guild = None
        mock_interaction.response.is_done.return_value = False

        await cog.skip.callback(cog, mock_interaction)

        mock_interaction.response.send_message.assert_awaited_once_with(
            DiscordUIMessages.STATE_SERVER_ONLY, ephemeral=True
        )
        mock_interaction.response.defer.assert_not_called()

    @pytest.mark.asyncio
    async def test_leave_closes_session_and_disconnects(self, cog, mock_interaction, mock_container):
        """Should close the session before leaving voice."""
        cog._notice_channels[GUILD_ID] = CHANNEL_ID

        await cog.leave.callback(cog, mock_interaction)

        mock_container.session_manager.close.assert_awaited_once_with(GUILD_ID, reason="leave")
        mock_container.audio_sink.disconnect.assert_awaited_once_with(GUILD_ID)
        mock_interaction.followup.send.assert_awaited_once_with(DiscordUIMessages.ACTION_LEFT, ephemeral=True)
        assert GUILD_ID not in cog._notice_channels

    @pytest.mark.asyncio
    async def test_leave_when_not_connected(self, cog, mock_interaction, mock_container):
        """Should say so when the bot was not in a voice channel."""
        mock_container.audio_sink.disconnect.return_value = False

        await cog.leave.callback(cog, mock_interaction)

        mock_interaction.followup.send.assert_awaited_once_with(
            DiscordUIMessages.STATE_NOT_CONNECTED, ephemeral=True
        )


# =============================================================================
# /streamtest
# =============================================================================


class TestStreamTestCommand:
    @pytest.mark.asyncio
    async def test_small_sample_is_attached(self, cog, mock_interaction, mock_container, tmp_path):
        """Should attach the sample when it fits under the upload limit."""
        sample = tmp_path / "capture.wav"
        sample.write_bytes(b"RIFF" + b"\x00" * 100)
        report = StreamTestReport(
            query="song", title="Song", source_kind="search", sample_path=sample, captured_bytes=104
        )
        mock_container.stream_test_service.run.return_value = report

        await cog.streamtest.callback(cog, mock_interaction, "song")

        mock_interaction.response.defer.assert_awaited_once_with(thinking=True)
        mock_container.stream_test_service.run.assert_awaited_once_with("song", context_id=GUILD_ID)
        call = mock_interaction.followup.send.call_args
        assert call.args[0].startswith(DiscordUIMessages.STREAMTEST_HEADER.format(title="Song", kind="search"))
        assert call.kwargs["file"].filename == SAMPLE_FILENAME
        mock_container.stream_test_service.schedule_cleanup.assert_called_once_with(sample)

    @pytest.mark.asyncio
    async def test_large_sample_is_not_attached(self, cog, mock_interaction, mock_container, tmp_path):
        """Should explain that the sample exceeded the upload limit."""
        sample = tmp_path / "capture.wav"
        sample.write_bytes(b"\x00" * 2048)
        mock_container.stream_test_service.run.return_value = StreamTestReport(
            query="song", sample_path=sample, captured_bytes=2048
        )

        await cog.streamtest.callback(cog, mock_interaction, "song")

        call = mock_interaction.followup.send.call_args
        assert "file" not in call.kwargs
        assert DiscordUIMessages.STREAMTEST_TOO_LARGE.format(limit=1024) in call.args[0]
        mock_container.stream_test_service.schedule_cleanup.assert_called_once_with(sample)

    @pytest.mark.asyncio
    async def test_failed_capture_reports_error(self, cog, mock_interaction, mock_container):
        """Should render the failure report without an attachment."""
        mock_container.stream_test_service.run.return_value = StreamTestReport(
            query="bad", error_code="RESOLUTION_FAILED", error="No results"
        )

        await cog.streamtest.callback(cog, mock_interaction, "bad")

        text = followup_text(mock_interaction)
        assert "RESOLUTION_FAILED" in text
        assert DiscordUIMessages.STREAMTEST_NO_SAMPLE in text
        assert DiscordUIMessages.STREAMTEST_HEADER.format(title="bad", kind="unknown") in text
        mock_container.stream_test_service.schedule_cleanup.assert_called_once_with(None)

    @pytest.mark.asyncio
    async def test_streamtest_in_dm_uses_user_context(self, cog, mock_interaction, mock_container):
        """Should key the capture on the user when there is no guild."""
        mock_interaction.guild = None
        mock_container.stream_test_service.run.return_value = StreamTestReport(query="song")

        await cog.streamtest.callback(cog, mock_interaction, "song")

        mock_container.stream_test_service.run.assert_awaited_once_with("song", context_id=USER_ID)


# =============================================================================
# Notices
# =============================================================================


@pytest.fixture
def notice_channel(mock_bot):
    channel = MagicMock(spec=discord.TextChannel)
    channel.send = AsyncMock()
    mock_bot.get_channel.return_value = channel
    return channel


class TestNotices:
    @pytest.mark.asyncio
    async def test_track_failed_notice(self, cog, mock_container, notice_channel):
        """Should post the failure and hint to the command channel."""
        cog._notice_channels[GUILD_ID] = CHANNEL_ID

        await mock_container.event_bus.publish(
            TrackFailed(
                context_id=GUILD_ID,
                track_title="Song",
                message="Helper crashed",
                hint="Try /play fallback:true",
                diagnostics="stderr output",
            )
        )

        text = notice_channel.send.call_args.args[0]
        assert text.startswith(DiscordUIMessages.TRACK_FAILED.format(title="Song", message="Helper crashed"))
        assert "Try /play fallback:true" in text
        assert "stderr output" in text

    @pytest.mark.asyncio
    async def test_helper_stderr_reaches_user_without_verbose_logging(self, cog, mock_container, notice_channel):
        """Should surface the helper's failure text even with verbose logging off."""
        assert mock_container.settings.pipeline.verbose_logging is False
        cog._notice_channels[GUILD_ID] = CHANNEL_ID

        await mock_container.event_bus.publish(
            TrackFailed(
                context_id=GUILD_ID,
                track_title="Song",
                message="Stage 'helper' exited with code 1",
                diagnostics="[helper] librespot: invalid credentials",
            )
        )

        assert "[helper] librespot: invalid credentials" in notice_channel.send.call_args.args[0]

    @pytest.mark.asyncio
    async def test_long_diagnostics_keep_the_tail(self, cog, mock_container, notice_channel):
        """Should keep the last lines of a long stderr buffer."""
        cog._notice_channels[GUILD_ID] = CHANNEL_ID
        diagnostics = "x" * 5000 + "final error line"

        await mock_container.event_bus.publish(
            TrackFailed(context_id=GUILD_ID, track_title="Song", message="x", diagnostics=diagnostics)
        )

        text = notice_channel.send.call_args.args[0]
        assert "final error line" in text
        assert len(text) < 2000

    @pytest.mark.asyncio
    async def test_fallback_notice(self, cog, mock_container, notice_channel):
        """Should tell the channel that search was used instead."""
        cog._notice_channels[GUILD_ID] = CHANNEL_ID

        await mock_container.event_bus.publish(
            FallbackUsed(context_id=GUILD_ID, track_title="Song", reason="premium required")
        )

        notice_channel.send.assert_awaited_once_with(
            DiscordUIMessages.FALLBACK_NOTICE.format(title="Song", reason="premium required")
        )

    @pytest.mark.asyncio
    async def test_notice_without_channel_is_dropped(self, cog, mock_container, notice_channel):
        """Should stay silent for guilds that never used /play."""
        await mock_container.event_bus.publish(FallbackUsed(context_id=GUILD_ID, track_title="Song"))

        notice_channel.send.assert_not_called()

    @pytest.mark.asyncio
    async def test_notice_send_failure_is_logged(self, cog, mock_container, notice_channel):
        """Should not raise when Discord rejects the notice."""
        notice_channel.send.side_effect = discord.HTTPException(MagicMock(status=403), "Missing Access")
        cog._notice_channels[GUILD_ID] = CHANNEL_ID

        await cog._on_fallback_used(FallbackUsed(context_id=GUILD_ID, track_title="Song"))

        notice_channel.send.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_idle_close_disconnects(self, cog, mock_container):
        """Should leave voice when a session is reaped for inactivity."""
        cog._notice_channels[GUILD_ID] = CHANNEL_ID

        await mock_container.event_bus.publish(SessionClosed(context_id=GUILD_ID, reason="idle"))

        mock_container.audio_sink.disconnect.assert_awaited_once_with(GUILD_ID)
        assert GUILD_ID not in cog._notice_channels

    @pytest.mark.asyncio
    async def test_other_close_reasons_are_ignored(self, cog, mock_container):
        """Should leave explicit closes to the command that caused them."""
        await mock_container.event_bus.publish(SessionClosed(context_id=GUILD_ID, reason="leave"))

        mock_container.audio_sink.disconnect.assert_not_called()

    @pytest.mark.asyncio
    async def test_unload_unsubscribes(self, mock_bot, mock_container):
        """Should stop reacting to events after unload."""
        cog = MusicCog(mock_bot, mock_container)
        await cog.cog_load()
        await cog.cog_unload()

        await mock_container.event_bus.publish(SessionClosed(context_id=GUILD_ID, reason="idle"))

        mock_container.audio_sink.disconnect.assert_not_called()


# =============================================================================
# Extension setup
# =============================================================================


class TestSetup:
    @pytest.mark.asyncio
    async def test_setup_requires_container(self):
        """Should refuse to load without a container on the bot."""
        bot = MagicMock(spec=[])

        with pytest.raises(RuntimeError, match="Container not found"):
            await setup(bot)

    @pytest.mark.asyncio
    async def test_setup_adds_cog(self, mock_container):
        """Should register a MusicCog bound to the bot's container."""
        bot = MagicMock()
        bot.container = mock_container
        bot.add_cog = AsyncMock()

        await setup(bot)

        added = bot.add_cog.call_args.args[0]
        assert isinstance(added, MusicCog)
        assert added.container is mock_container

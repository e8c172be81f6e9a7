"""Centralized message constants for error messages, log templates, and user feedback."""

from __future__ import annotations


class ErrorMessages:
    """Error messages for exceptions and validation failures."""

    INVALID_SNOWFLAKE = "Discord snowflake ID must be positive"
    EMPTY_TRACK_ID = "Track ID cannot be empty"
    TIMEZONE_REQUIRED_UTC_DATETIME = "UtcDateTime requires a timezone-aware datetime"
    INVALID_LOG_LEVEL = "Invalid log level: {level}. Must be one of {valid_levels}"
    STREAM_TEMPLATE_MISSING_URI = "stream_command_template must contain a {uri} placeholder"

    DISCORD_TOKEN_REQUIRED = "DISCORD__TOKEN is required"
    SPOTIFY_NOT_CONFIGURED = "Spotify credentials are not configured"
    SPOTIFY_NOT_A_TRACK = "Only Spotify track links are supported"
    SPOTIFY_TOKEN_MISSING = "Spotify token response did not contain an access token"
    SPOTIFY_REQUEST_FAILED = "Spotify request failed: {error}"
    NO_OUTPUT_STAGE = "Pipeline spec has no stages"
    SESSION_CLOSED = "Playback session {context_id} is closed"


class LogTemplates:
    """%-style templates passed to ``logger`` calls."""

    # Bot lifecycle
    BOT_STARTING = "Starting bot (environment=%s)"
    BOT_SETUP = "Running setup hook"
    BOT_CONTAINER_INITIALIZED = "Container initialized"
    BOT_CONTAINER_INIT_FAILED = "Failed to initialize container: %s"
    BOT_COG_LOADED = "Loaded cog: %s"
    BOT_COG_LOAD_FAILED = "Failed to load cog %s: %s"
    BOT_COGS_LOADED_SUMMARY = "Loaded %d cog(s), %d failed"
    BOT_SETUP_COMPLETE = "Setup hook complete"
    BOT_SYNCED_GUILD = "Synced %d commands to guild %s"
    BOT_SYNCED_GLOBAL = "Synced %d commands globally"
    BOT_SYNC_GUILD_FAILED = "Failed to sync commands to guild %s: %s"
    BOT_SYNC_GLOBAL_FAILED = "Failed to sync commands globally: %s"
    BOT_SYNC_ON_STARTUP_FAILED = "Command sync on startup failed: %s"
    BOT_READY = "Logged in as %s (%s)"
    BOT_CONNECTED_GUILDS = "Connected to %d guild(s)"
    BOT_VOICE_DISCONNECT_FAILED = "Failed to disconnect voice client in %s: %s"
    BOT_CONTAINER_SHUTDOWN = "Container shut down"
    BOT_SHUTDOWN_COMPLETE = "Shutdown complete"
    BOT_SHUTTING_DOWN = "Shutting down bot..."
    BOT_SHUTDOWN_TIMEOUT = "Shutdown did not finish within %.0fs"
    BOT_CONTAINER_SHUTDOWN_ERROR = "Error shutting down container: %s"
    BOT_STOPPED = "Bot stopped"
    BOT_KEYBOARD_INTERRUPT = "Interrupted, exiting"
    BOT_FATAL_ERROR = "Fatal error: %s"
    BOT_SLASH_COMMAND_ERROR = "Error in slash command %s: %s"
    BOT_ERROR_MESSAGE_SEND_FAILED = "Failed to send error message to user"

    # Resolver
    RESOLVER_RESOLVING = "Resolving '%s'"
    RESOLVER_RESOLVED = "Resolved '%s' -> %s (%s)"
    RESOLVER_TIMEOUT = "Metadata lookup for '%s' timed out after %.1fs"
    RESOLVER_CATALOG_FIRST_FAILED = "Catalog lookup for '%s' failed, searching raw query: %s"
    RESOLVER_CATALOG_UNAVAILABLE = "Catalog unavailable, searching link text for '%s'"
    YTDLP_FAILED_EXTRACT_INFO = "yt-dlp failed to extract info for %s"
    YTDLP_FAILED_SEARCH = "yt-dlp search failed for '%s'"
    CACHE_HIT_URL = "Cache hit for %s"

    # Providers
    PROVIDER_BUILDING = "Building %s pipeline for '%s'"
    PROVIDER_FALLBACK = "Falling back to search for '%s' (%s)"
    PROVIDER_FALLBACK_FAILED = "Fallback for '%s' failed: %s"
    SPOTIFY_TOKEN_REFRESHED = "Refreshed Spotify access token (expires in %ss)"
    SPOTIFY_DEVICE_WAITING = "Waiting for Spotify device '%s' (%d/%d)"
    SPOTIFY_DEVICE_FOUND = "Found Spotify device '%s' (%s)"
    SPOTIFY_PLAYBACK_STARTED = "Started Spotify playback of %s on device %s"

    # Pipelines
    PIPELINE_STAGE_SPAWNED = "Spawned stage %s (pid=%s) for session %s"
    PIPELINE_STARTED = "Pipeline %s started for session %s"
    PIPELINE_SPAWN_FAILED = "Failed to spawn stage %s for session %s: %s"
    PIPELINE_STARTUP_TIMEOUT = "Pipeline for session %s produced no output within %.1fs"
    PIPELINE_STAGE_EXITED = "Stage %s (pid=%s) exited with %s"
    PIPELINE_CANCELLING = "Cancelling pipeline for session %s"
    PIPELINE_FORCE_KILL = "Stage %s (pid=%s) ignored SIGTERM, killing"
    PIPELINE_CLEANUP_ERROR = "Error cleaning up stage %s: %s"
    PIPELINE_STDERR = "[%s:%s] %s"

    # Sessions
    SESSION_CREATED = "Created playback session for %s"
    SESSION_TRANSITION = "Session %s: %s -> %s"
    SESSION_TRACK_FAILED = "Track '%s' failed in session %s: %s"
    SESSION_STALE_MESSAGE = "Discarding stale %s (generation %s, current %s) in session %s"
    SESSION_LOOP_ERROR = "Unhandled error in session %s"
    SESSION_IDLE_REAPED = "Closing idle session %s"
    SESSION_CLOSED = "Closed session %s (%s)"

    # Voice / sink
    GUILD_NOT_FOUND = "Guild %s not found"
    CHANNEL_NOT_VOICE = "Channel %s is not a voice channel"
    VOICE_CONNECTED = "Connected to voice channel %s in %s"
    VOICE_NO_PERMISSION = "Missing permission to join voice channel %s"
    VOICE_CONNECTION_TIMEOUT = "Timed out connecting to voice channel %s"
    VOICE_CLIENT_ERROR = "Client error connecting: %r"
    VOICE_DISCONNECTED = "Disconnected from voice in guild %s"
    VOICE_NOT_CONNECTED = "Not connected to voice in guild %s"
    SINK_FINISHED = "Audio sink finished in guild %s (error=%s)"

    # Control panel
    PANEL_PUSH_RATE_LIMITED = "Panel push for %s rate limited (attempt %d/%d), retrying in %.2fs"
    PANEL_PUSH_DROPPED = "Dropping panel update for %s after %d attempts"
    PANEL_PUSH_FAILED = "Panel push for %s failed: %s"
    PANEL_ACTION = "Panel action %s for session %s"

    # Diagnostics
    STREAMTEST_STARTED = "Streamtest for '%s' capturing %.0fs to %s"
    STREAMTEST_PROBE_FAILED = "ffprobe failed for %s: %s"
    STREAMTEST_CLEANUP_FAILED = "Failed to delete capture %s: %s"


class DiscordUIMessages:
    """User-facing strings."""

    STATE_SERVER_ONLY = "This command can only be used in a server."
    STATE_VERIFY_VOICE_FAILED = "Could not verify your voice state."
    STATE_NEED_TO_BE_IN_VOICE = "You need to be in a voice channel first."
    STATE_NOTHING_PLAYING = "Nothing is playing."
    STATE_NOT_CONNECTED = "I'm not in a voice channel."
    ERROR_COULD_NOT_JOIN_VOICE = "❌ Could not join your voice channel."
    ERROR_SESSION_GONE = "This playback session no longer exists."
    ERROR_NOT_PANEL_OWNER = "You are not the owner of this control panel."
    ERROR_GENERIC = "❌ {message}"
    ERROR_WITH_HINT = "❌ {message}\n{hint}"

    ACTION_QUEUED = "➕ Queued **{title}** (position {position})"
    ACTION_PLAYING_NOW = "▶️ Starting **{title}**"
    ACTION_SKIPPED = "⏭️ Skipped."
    ACTION_STOPPED = "⏹️ Stopped and cleared the queue."
    ACTION_PAUSED = "⏸️ Paused."
    ACTION_RESUMED = "▶️ Resumed."
    ACTION_ALREADY_PAUSED = "Already paused."
    ACTION_ALREADY_PLAYING = "Already playing."
    ACTION_VOLUME = "🔊 Volume: {volume}%"
    ACTION_LEFT = "👋 Left the voice channel."

    TRACK_FAILED = "⚠️ Could not play **{title}**: {message}"
    FALLBACK_NOTICE = "↪️ Playing **{title}** from search instead ({reason})."

    PANEL_STATUS = "Status: {status}"
    PANEL_VOLUME = "Volume: {volume}%"
    PANEL_REMAINING = "Remaining: {remaining}"
    PANEL_IDLE_TITLE = "Nothing playing"

    STREAMTEST_HEADER = "🧪 Streamtest for **{title}** ({kind})"
    STREAMTEST_NO_SAMPLE = "No audio was captured, nothing to attach."
    STREAMTEST_TOO_LARGE = "Sample is larger than {limit} bytes and was not attached."

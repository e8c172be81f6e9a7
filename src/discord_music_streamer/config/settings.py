"""Application Settings and Configuration

Pydantic-based settings management using environment variables.
Settings are loaded from environment variables with support for .env files,
type validation, and sensible defaults. All settings are frozen and immutable
after initialization.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from discord_music_streamer.domain.shared.messages import ErrorMessages


class DiscordSettings(BaseModel):
    """Discord bot configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    token: SecretStr = Field(
        default=SecretStr(""), validation_alias=AliasChoices("token", "bot_token", "discord_token")
    )
    command_prefix: str = Field(
        default="!",
        min_length=1,
        max_length=5,
        validation_alias=AliasChoices("command_prefix", "prefix"),
    )
    guild_ids: tuple[int, ...] = Field(
        default_factory=tuple, validation_alias=AliasChoices("guild_ids", "guilds")
    )
    sync_on_startup: bool = False

    @field_validator("guild_ids", mode="before")
    @classmethod
    def validate_snowflake_ids(cls, v: tuple[int, ...] | list[int] | str) -> tuple[int, ...]:
        """Accept a JSON list, a tuple, or a comma-separated string of positive IDs."""
        if isinstance(v, str):
            v = tuple(int(part) for part in v.split(",") if part.strip())
        if isinstance(v, list):
            v = tuple(v)
        for snowflake in v:
            if int(snowflake) <= 0:
                raise ValueError(ErrorMessages.INVALID_SNOWFLAKE)
        return tuple(int(s) for s in v)


class AudioSettings(BaseModel):
    """Audio output and queue configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    default_volume: int = Field(default=20, ge=0, le=100)
    volume_step: int = Field(default=10, ge=1, le=100)
    max_queue_size: int = Field(default=50, ge=1, le=1000)
    ytdlp_format: str = "bestaudio[ext=webm]/bestaudio/best"
    sample_rate: int = Field(default=48_000, ge=8_000, le=192_000)
    channels: int = Field(default=2, ge=1, le=2)
    ffmpeg_command: str = "ffmpeg"
    ytdlp_command: str = "yt-dlp"


class ResolverSettings(BaseModel):
    """Track resolution configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    metadata_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    search_limit: int = Field(default=5, ge=1, le=25)
    spotify_first_search: bool = Field(
        default=True,
        validation_alias=AliasChoices("spotify_first_search", "catalog_first_search"),
    )


class SpotifySettings(BaseModel):
    """Streaming service (Spotify Connect) configuration.

    Credentials are consumed as-is; the bot never runs an authorization flow.
    """

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    client_id: str = ""
    client_secret: SecretStr = SecretStr("")
    refresh_token: SecretStr = SecretStr("")
    access_token: SecretStr = SecretStr("")
    device_name: str = Field(default="Librespot-Wrapper", min_length=1)
    device_wait_seconds: float = Field(default=20.0, gt=0, le=120)
    device_poll_interval_seconds: float = Field(default=1.0, gt=0, le=10)
    helper_command: str = Field(
        default="librespot-wrapper",
        validation_alias=AliasChoices("helper_command", "helper", "helper_path"),
    )
    stream_command_template: str | None = Field(
        default=None,
        validation_alias=AliasChoices("stream_command_template", "stream_cmd"),
    )
    prefer_fallback: bool = Field(
        default=False,
        validation_alias=AliasChoices("prefer_fallback", "prefer_youtube"),
    )
    request_timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    api_base_url: str = "https://api.spotify.com/v1"
    accounts_url: str = "https://accounts.spotify.com/api/token"

    @property
    def has_client_credentials(self) -> bool:
        return bool(self.client_id and self.client_secret.get_secret_value())

    @property
    def is_configured(self) -> bool:
        """True when playback through the streaming service is possible at all."""
        has_user_token = bool(
            self.refresh_token.get_secret_value() or self.access_token.get_secret_value()
        )
        return self.has_client_credentials and has_user_token

    @field_validator("stream_command_template")
    @classmethod
    def validate_template(cls, v: str | None) -> str | None:
        if v is None or not v.strip():
            return None
        if "{uri}" not in v:
            raise ValueError(ErrorMessages.STREAM_TEMPLATE_MISSING_URI)
        return v


class PipelineSettings(BaseModel):
    """Subprocess pipeline configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    stage_spawn_timeout_seconds: float = Field(default=10.0, gt=0, le=60)
    startup_timeout_seconds: float = Field(default=20.0, gt=0, le=120)
    cancel_grace_seconds: float = Field(default=3.0, ge=0, le=30)
    stderr_buffer_lines: int = Field(default=200, ge=10, le=10_000)
    verbose_logging: bool = Field(
        default=False,
        validation_alias=AliasChoices("verbose_logging", "verbose", "music_verbose"),
    )
    log_dir: str = "logs/pipelines"


class PanelSettings(BaseModel):
    """Control panel synchronization configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    tick_seconds: float = Field(default=5.0, gt=0, le=60)
    elapsed_granularity_seconds: int = Field(default=5, ge=1, le=60)
    max_push_attempts: int = Field(default=3, ge=1, le=10)
    backoff_base_seconds: float = Field(default=0.5, ge=0, le=10)
    backoff_max_seconds: float = Field(default=8.0, ge=0, le=60)
    owner_only: bool = True


class SessionSettings(BaseModel):
    """Playback session lifecycle configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    idle_timeout_seconds: float = Field(default=300.0, gt=0)
    reap_interval_seconds: float = Field(default=30.0, gt=0)
    drain_timeout_seconds: float = Field(default=5.0, ge=0, le=60)


class DiagnosticsSettings(BaseModel):
    """Streamtest capture configuration."""

    model_config = SettingsConfigDict(frozen=True, populate_by_name=True)

    capture_seconds: float = Field(default=10.0, gt=0, le=120)
    probe_timeout_seconds: float = Field(default=15.0, gt=0, le=120)
    probe_command: str = "ffprobe"
    capture_dir: str = "logs/streamtest"
    attachment_limit_bytes: int = Field(default=8_000_000, ge=0)
    report_max_chars: int = Field(default=1900, ge=100, le=4000)
    cleanup_delay_seconds: float = Field(default=30.0, ge=0)


class Settings(BaseSettings):
    """Application settings container.

    Automatically loads configuration from environment variables.

    Environment variable naming:
    - ENVIRONMENT, DEBUG, LOG_LEVEL (top-level)
    - DISCORD__TOKEN, SPOTIFY__CLIENT_ID, PIPELINE__VERBOSE_LOGGING, ... (nested with "__")
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    environment: Literal["development", "production", "test"] = "development"
    debug: bool = False
    log_level: str = "INFO"

    discord: DiscordSettings = Field(default_factory=DiscordSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    resolver: ResolverSettings = Field(default_factory=ResolverSettings)
    spotify: SpotifySettings = Field(default_factory=SpotifySettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    panel: PanelSettings = Field(default_factory=PanelSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)
    diagnostics: DiagnosticsSettings = Field(default_factory=DiagnosticsSettings)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(ErrorMessages.INVALID_LOG_LEVEL.format(level=v, valid_levels=valid_levels))
        return v_upper


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached application settings.

    Settings are automatically loaded from:
    1. .env file (if present)
    2. Environment variables
    3. Default values
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()

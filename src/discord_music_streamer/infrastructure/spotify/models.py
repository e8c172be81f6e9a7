"""Pydantic models for Spotify Web API payloads."""

from __future__ import annotations

from datetime import datetime, timedelta

from pydantic import BaseModel, ConfigDict, Field, SecretStr

from discord_music_streamer.domain.shared.datetime_utils import utcnow

TOKEN_EXPIRY_MARGIN_SECONDS = 30


class AuthToken(BaseModel):
    """An OAuth access token with its expiry; never persisted."""

    model_config = ConfigDict(frozen=True)

    access_token: SecretStr
    refresh_token: SecretStr | None = None
    expires_at: datetime

    @classmethod
    def from_response(cls, data: dict, *, refresh_token: SecretStr | None = None) -> AuthToken:
        expires_in = int(data.get("expires_in") or 3600)
        new_refresh = data.get("refresh_token")
        return cls(
            access_token=SecretStr(data["access_token"]),
            refresh_token=SecretStr(new_refresh) if new_refresh else refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )

    @property
    def value(self) -> str:
        return self.access_token.get_secret_value()

    def is_expired(self, margin_seconds: int = TOKEN_EXPIRY_MARGIN_SECONDS) -> bool:
        return utcnow() + timedelta(seconds=margin_seconds) >= self.expires_at


class SpotifyImage(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    url: str
    width: int | None = None
    height: int | None = None


class SpotifyArtist(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str


class SpotifyAlbum(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = ""
    images: list[SpotifyImage] = Field(default_factory=list)


class SpotifyTrack(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    name: str
    artists: list[SpotifyArtist] = Field(default_factory=list)
    duration_ms: int | None = None
    album: SpotifyAlbum | None = None
    external_urls: dict[str, str] = Field(default_factory=dict)

    @property
    def uri(self) -> str:
        return f"spotify:track:{self.id}"

    @property
    def first_artist(self) -> str | None:
        return self.artists[0].name if self.artists else None

    @property
    def image_url(self) -> str | None:
        if self.album and self.album.images:
            return self.album.images[0].url
        return None

    @property
    def duration_seconds(self) -> int | None:
        if self.duration_ms is None:
            return None
        return self.duration_ms // 1000

    @property
    def web_url(self) -> str:
        return self.external_urls.get("spotify") or f"https://open.spotify.com/track/{self.id}"


class SpotifyDevice(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str | None = None
    name: str = ""
    type: str = ""
    is_active: bool = False
    is_restricted: bool = False

"""Spotify OAuth token handling.

Two kinds of token are kept: an app token (client-credentials grant) for
catalog lookups, and a user token (refresh-token grant) for Connect
playback. Each is refreshed under its own lock so concurrent callers share
a single refresh.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

import httpx
from pydantic import SecretStr

from discord_music_streamer.config.settings import SpotifySettings
from discord_music_streamer.domain.shared.datetime_utils import utcnow
from discord_music_streamer.domain.shared.exceptions import (
    AuthExpiredError,
    ProviderUnavailableError,
)
from discord_music_streamer.domain.shared.messages import ErrorMessages, LogTemplates
from discord_music_streamer.infrastructure.spotify.models import AuthToken

logger = logging.getLogger(__name__)

PROVIDER_NAME = "spotify"
# A pre-issued access token with no refresh token is assumed valid for this long.
STATIC_TOKEN_LIFETIME = timedelta(minutes=50)


class SpotifyTokenManager:
    def __init__(self, settings: SpotifySettings, http: httpx.AsyncClient) -> None:
        self._settings = settings
        self._http = http
        self._user_lock = asyncio.Lock()
        self._app_lock = asyncio.Lock()
        self._app_token: AuthToken | None = None
        self._user_token: AuthToken | None = None
        self._refreshes = 0

        access = settings.access_token.get_secret_value()
        refresh = settings.refresh_token.get_secret_value()
        if access:
            self._user_token = AuthToken(
                access_token=SecretStr(access),
                refresh_token=SecretStr(refresh) if refresh else None,
                expires_at=utcnow() + STATIC_TOKEN_LIFETIME,
            )

    @property
    def refresh_count(self) -> int:
        return self._refreshes

    async def get_app_token(self) -> str:
        async with self._app_lock:
            if self._app_token is None or self._app_token.is_expired():
                if not self._settings.has_client_credentials:
                    raise ProviderUnavailableError(PROVIDER_NAME, ErrorMessages.SPOTIFY_NOT_CONFIGURED)
                data = await self._request_token({"grant_type": "client_credentials"})
                self._app_token = AuthToken.from_response(data)
            return self._app_token.value

    async def get_user_token(self) -> str:
        async with self._user_lock:
            if self._user_token is None or self._user_token.is_expired():
                await self._refresh_user_token()
            assert self._user_token is not None
            return self._user_token.value

    async def force_refresh(self, stale_token: str | None = None) -> str:
        """Refresh the user token after the API rejected ``stale_token``.

        If another caller already replaced the stale token, its result is reused.
        """
        async with self._user_lock:
            current = self._user_token
            if current is not None and stale_token is not None and current.value != stale_token:
                return current.value
            await self._refresh_user_token()
            assert self._user_token is not None
            return self._user_token.value

    async def _refresh_user_token(self) -> None:
        refresh_token = self._current_refresh_token()
        if refresh_token is None:
            if not self._settings.is_configured:
                raise ProviderUnavailableError(PROVIDER_NAME, ErrorMessages.SPOTIFY_NOT_CONFIGURED)
            raise AuthExpiredError()

        data = await self._request_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token.get_secret_value()}
        )
        self._user_token = AuthToken.from_response(data, refresh_token=refresh_token)
        self._refreshes += 1
        logger.info(LogTemplates.SPOTIFY_TOKEN_REFRESHED, data.get("expires_in"))

    def _current_refresh_token(self) -> SecretStr | None:
        if self._user_token is not None and self._user_token.refresh_token is not None:
            return self._user_token.refresh_token
        configured = self._settings.refresh_token.get_secret_value()
        return SecretStr(configured) if configured else None

    async def _request_token(self, form: dict[str, str]) -> dict:
        if not self._settings.has_client_credentials:
            raise ProviderUnavailableError(PROVIDER_NAME, ErrorMessages.SPOTIFY_NOT_CONFIGURED)
        try:
            response = await self._http.post(
                self._settings.accounts_url,
                data=form,
                auth=(self._settings.client_id, self._settings.client_secret.get_secret_value()),
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                PROVIDER_NAME, ErrorMessages.SPOTIFY_REQUEST_FAILED.format(error=exc)
            ) from exc

        if response.status_code in (400, 401):
            raise AuthExpiredError(f"Spotify rejected the credentials ({response.status_code})")
        if response.status_code >= 400:
            raise ProviderUnavailableError(
                PROVIDER_NAME,
                ErrorMessages.SPOTIFY_REQUEST_FAILED.format(error=f"HTTP {response.status_code}"),
            )

        data = response.json()
        if not data.get("access_token"):
            raise AuthExpiredError(ErrorMessages.SPOTIFY_TOKEN_MISSING)
        return data

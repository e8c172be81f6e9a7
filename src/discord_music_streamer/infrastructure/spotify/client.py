"""Async Spotify Web API client for catalog lookups and Connect playback."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from discord_music_streamer.config.settings import SpotifySettings
from discord_music_streamer.domain.shared.exceptions import (
    AuthExpiredError,
    DeviceNotFoundError,
    PremiumRequiredError,
    ProviderUnavailableError,
    TrackNotFoundError,
)
from discord_music_streamer.domain.shared.messages import ErrorMessages, LogTemplates
from discord_music_streamer.infrastructure.spotify.auth import PROVIDER_NAME, SpotifyTokenManager
from discord_music_streamer.infrastructure.spotify.models import SpotifyDevice, SpotifyTrack

logger = logging.getLogger(__name__)


class SpotifyClient:
    def __init__(
        self,
        settings: SpotifySettings,
        http: httpx.AsyncClient | None = None,
        tokens: SpotifyTokenManager | None = None,
    ) -> None:
        self._settings = settings
        self._owns_http = http is None
        self._http = http or httpx.AsyncClient(timeout=settings.request_timeout_seconds)
        self._tokens = tokens or SpotifyTokenManager(settings, self._http)

    @property
    def tokens(self) -> SpotifyTokenManager:
        return self._tokens

    @property
    def catalog_available(self) -> bool:
        return self._settings.has_client_credentials

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    # ── Catalog (app token) ─────────────────────────────────────────

    async def get_track(self, track_id: str) -> SpotifyTrack:
        response = await self._catalog_request("GET", f"/tracks/{track_id}")
        if response.status_code == 404:
            raise TrackNotFoundError(f"spotify:track:{track_id}")
        self._raise_for_status(response)
        return SpotifyTrack.model_validate(response.json())

    async def search_track(self, query: str) -> SpotifyTrack | None:
        response = await self._catalog_request(
            "GET", "/search", params={"q": query, "type": "track", "limit": 1}
        )
        self._raise_for_status(response)
        items = (response.json().get("tracks") or {}).get("items") or []
        if not items:
            return None
        return SpotifyTrack.model_validate(items[0])

    async def _catalog_request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._tokens.get_app_token()
        return await self._send(method, path, token, **kwargs)

    # ── Connect playback (user token) ───────────────────────────────

    async def list_devices(self) -> list[SpotifyDevice]:
        response = await self._user_request("GET", "/me/player/devices")
        self._raise_for_status(response)
        return [SpotifyDevice.model_validate(d) for d in response.json().get("devices") or []]

    async def find_device(self, name: str) -> SpotifyDevice | None:
        """Return the first device whose name contains ``name`` (case-insensitive)."""
        wanted = name.lower()
        for device in await self.list_devices():
            if device.id and wanted in device.name.lower():
                return device
        return None

    async def start_playback(self, device_id: str, uri: str) -> None:
        response = await self._user_request(
            "PUT",
            "/me/player/play",
            params={"device_id": device_id},
            json={"uris": [uri]},
        )
        if response.status_code == 404:
            raise DeviceNotFoundError(device_id, 0)
        self._raise_for_status(response)
        logger.info(LogTemplates.SPOTIFY_PLAYBACK_STARTED, uri, device_id)

    async def _user_request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        token = await self._tokens.get_user_token()
        response = await self._send(method, path, token, **kwargs)
        if response.status_code == 401:
            token = await self._tokens.force_refresh(token)
            response = await self._send(method, path, token, **kwargs)
            if response.status_code == 401:
                raise AuthExpiredError()
        return response

    # ── Transport ───────────────────────────────────────────────────

    async def _send(self, method: str, path: str, token: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._http.request(
                method,
                f"{self._settings.api_base_url}{path}",
                headers={"Authorization": f"Bearer {token}"},
                **kwargs,
            )
        except httpx.HTTPError as exc:
            raise ProviderUnavailableError(
                PROVIDER_NAME, ErrorMessages.SPOTIFY_REQUEST_FAILED.format(error=exc)
            ) from exc

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        if response.status_code == 401:
            raise AuthExpiredError()
        if response.status_code == 403:
            error: Any = None
            try:
                error = response.json().get("error")
            except ValueError:
                pass
            if isinstance(error, dict) and error.get("reason") == "PREMIUM_REQUIRED":
                raise PremiumRequiredError()
        raise ProviderUnavailableError(
            PROVIDER_NAME,
            ErrorMessages.SPOTIFY_REQUEST_FAILED.format(error=f"HTTP {response.status_code}"),
        )

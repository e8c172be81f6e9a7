"""TrackResolver implementation backed by yt-dlp and the Spotify catalog."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any, Final, cast
from urllib.parse import unquote, urlparse

from yt_dlp import YoutubeDL
from yt_dlp.utils import DownloadError

from discord_music_streamer.application.interfaces.track_resolver import TrackResolver
from discord_music_streamer.config.settings import AudioSettings, ResolverSettings
from discord_music_streamer.domain.music.entities import Track
from discord_music_streamer.domain.music.value_objects import (
    SourceKind,
    TrackId,
    parse_spotify_track_id,
)
from discord_music_streamer.domain.shared.exceptions import (
    DomainError,
    MetadataTimeoutError,
    TrackNotFoundError,
    UnsupportedSourceError,
)
from discord_music_streamer.domain.shared.messages import ErrorMessages, LogTemplates
from discord_music_streamer.infrastructure.audio.models import (
    CACHE_MAX_SIZE,
    CACHE_TTL,
    LOG_URL_TRUNCATE,
    CacheEntry,
    YtDlpOpts,
    YtDlpTrackInfo,
)

if TYPE_CHECKING:
    from discord_music_streamer.infrastructure.spotify.client import SpotifyClient

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH: Final[int] = 500
MAX_DURATION_SECONDS: Final[int] = 86_400

DIRECT_MEDIA_EXTENSIONS: Final[frozenset[str]] = frozenset(
    {".mp3", ".ogg", ".oga", ".opus", ".flac", ".wav", ".m4a", ".aac", ".mka", ".m3u", ".m3u8", ".pls"}
)
SCHEME_PATTERN: Final[re.Pattern[str]] = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.-]*)://")
SPOTIFY_REFERENCE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"^spotify:|^https?://open\.spotify\.com/", re.IGNORECASE
)


class YtDlpTrackResolver(TrackResolver):
    def __init__(
        self,
        settings: ResolverSettings | None = None,
        audio_settings: AudioSettings | None = None,
        spotify: SpotifyClient | None = None,
    ) -> None:
        self._settings = settings or ResolverSettings()
        self._audio = audio_settings or AudioSettings()
        self._spotify = spotify
        self._base_opts = YtDlpOpts(format=self._audio.ytdlp_format)
        self._info_cache: dict[str, CacheEntry] = {}

    # ── Public API ──────────────────────────────────────────────────

    async def resolve(self, query: str, *, prefer_fallback: bool = False) -> Track:
        query = query.strip()
        if not query:
            raise TrackNotFoundError(query)

        logger.debug(LogTemplates.RESOLVER_RESOLVING, query)
        track = await self._with_timeout(query, self._resolve(query))
        logger.info(LogTemplates.RESOLVER_RESOLVED, query, track.title, track.source_kind.value)

        if prefer_fallback:
            return track.with_fallback()
        return track

    async def resolve_search(self, query: str) -> Track:
        query = query.strip()
        if not query:
            raise TrackNotFoundError(query)
        return await self._with_timeout(query, self._search(query))

    # ── Classification ──────────────────────────────────────────────

    async def _resolve(self, query: str) -> Track:
        if SPOTIFY_REFERENCE_PATTERN.search(query):
            track_id = parse_spotify_track_id(query)
            if track_id is None:
                raise UnsupportedSourceError(query, ErrorMessages.SPOTIFY_NOT_A_TRACK)
            return await self._resolve_spotify(query, track_id)

        if query.startswith("www."):
            query = f"https://{query}"

        scheme_match = SCHEME_PATTERN.match(query)
        if scheme_match:
            if scheme_match.group(1).lower() not in ("http", "https"):
                raise UnsupportedSourceError(query)
            if self.is_direct_media(query):
                return self._direct_track(query)
            return await self._extract(query)

        return await self._search(await self._normalise_search(query))

    @staticmethod
    def is_direct_media(url: str) -> bool:
        path = urlparse(url).path.lower()
        return PurePosixPath(path).suffix in DIRECT_MEDIA_EXTENSIONS

    async def _with_timeout(self, query: str, coro: Any) -> Track:
        timeout = self._settings.metadata_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                return await coro
        except TimeoutError as exc:
            logger.warning(LogTemplates.RESOLVER_TIMEOUT, query, timeout)
            raise MetadataTimeoutError(query, timeout) from exc

    # ── Streaming service catalog ───────────────────────────────────

    async def _resolve_spotify(self, query: str, track_id: str) -> Track:
        if self._spotify is None or not self._spotify.catalog_available:
            logger.warning(LogTemplates.RESOLVER_CATALOG_UNAVAILABLE, query)
            return await self._search(query)

        item = await self._spotify.get_track(track_id)

        return Track(
            id=TrackId(item.id),
            title=item.name[:MAX_TITLE_LENGTH] or track_id,
            artist=item.first_artist or None,
            duration_seconds=self._clamp_duration(item.duration_seconds),
            source_kind=SourceKind.STREAMING_SERVICE,
            source_ref=item.uri,
            thumbnail_url=item.image_url,
            webpage_url=item.web_url,
        )

    async def _normalise_search(self, query: str) -> str:
        """Look the query up in the catalog first so search gets "title artist" text."""
        if not self._settings.spotify_first_search or self._spotify is None:
            return query
        if not self._spotify.catalog_available:
            return query

        try:
            item = await self._spotify.search_track(query)
        except DomainError as exc:
            logger.debug(LogTemplates.RESOLVER_CATALOG_FIRST_FAILED, query, exc)
            return query

        if item is None:
            return query
        return f"{item.name} {item.first_artist}" if item.first_artist else item.name

    # ── Direct URLs ─────────────────────────────────────────────────

    @staticmethod
    def _direct_track(url: str) -> Track:
        parsed = urlparse(url)
        name = unquote(PurePosixPath(parsed.path).name) or parsed.netloc
        return Track(
            id=TrackId.from_url(url),
            title=name[:MAX_TITLE_LENGTH],
            source_kind=SourceKind.DIRECT_URL,
            source_ref=url,
            webpage_url=url,
        )

    # ── yt-dlp ──────────────────────────────────────────────────────

    async def _extract(self, url: str) -> Track:
        info = await asyncio.to_thread(self._extract_info_sync, url)
        if info is None or not info.is_playable:
            raise TrackNotFoundError(url)
        return self._info_to_track(info)

    async def _search(self, query: str) -> Track:
        results = await asyncio.to_thread(self._search_sync, query, self._settings.search_limit)
        for info in results:
            if info.is_playable:
                return self._info_to_track(info)
        raise TrackNotFoundError(query)

    def _info_to_track(self, info: YtDlpTrackInfo) -> Track:
        url = cast(str, info.page_url)
        return Track(
            id=TrackId.from_url(url),
            title=info.title[:MAX_TITLE_LENGTH],
            artist=info.best_artist,
            duration_seconds=self._clamp_duration(info.duration),
            source_kind=SourceKind.SEARCH,
            source_ref=url,
            thumbnail_url=info.thumbnail,
            webpage_url=url,
        )

    @staticmethod
    def _clamp_duration(seconds: int | None) -> int | None:
        if seconds is None or seconds > MAX_DURATION_SECONDS:
            return None
        return seconds

    @staticmethod
    def _parse_info(data: dict[str, Any]) -> YtDlpTrackInfo:
        return YtDlpTrackInfo.model_validate(data)

    def _extract_info_sync(self, url: str) -> YtDlpTrackInfo | None:
        now = time.time()
        cached = self._info_cache.get(url)
        if cached is not None:
            if now - cached.cached_at < CACHE_TTL:
                logger.debug(LogTemplates.CACHE_HIT_URL, url[:LOG_URL_TRUNCATE])
                return cached.info
            self._info_cache.pop(url, None)

        try:
            with YoutubeDL(params=cast(Any, self._base_opts.model_dump(exclude_none=True))) as ydl:
                data = ydl.extract_info(url, download=False)
        except DownloadError:
            logger.warning(LogTemplates.YTDLP_FAILED_EXTRACT_INFO, url[:LOG_URL_TRUNCATE])
            return None

        result = self._parse_info(dict(data)) if isinstance(data, dict) else None
        self._info_cache[url] = CacheEntry(info=result, cached_at=now)
        if len(self._info_cache) > CACHE_MAX_SIZE:
            for key in [k for k, e in self._info_cache.items() if now - e.cached_at >= CACHE_TTL]:
                self._info_cache.pop(key, None)
        return result

    def _search_sync(self, query: str, limit: int = 1) -> list[YtDlpTrackInfo]:
        try:
            with YoutubeDL(params=cast(Any, self._base_opts.model_dump(exclude_none=True))) as ydl:
                data = ydl.extract_info(f"ytsearch{limit}:{query}", download=False)
        except DownloadError:
            logger.warning(LogTemplates.YTDLP_FAILED_SEARCH, query)
            return []

        if not isinstance(data, dict):
            return []
        entries = data.get("entries") or []
        return [self._parse_info(dict(e)) for e in entries if isinstance(e, dict)]

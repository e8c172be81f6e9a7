import asyncio
import io
from collections.abc import Callable
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from discord_music_streamer.application.interfaces.audio_sink import AudioSink
from discord_music_streamer.application.interfaces.pipeline_manager import (
    PipelineHandle,
    PipelineManager,
    StageProcess,
)
from discord_music_streamer.application.interfaces.source_provider import SourceProvider
from discord_music_streamer.application.interfaces.track_resolver import TrackResolver
from discord_music_streamer.config.settings import SpotifySettings
from discord_music_streamer.domain.music.entities import Track
from discord_music_streamer.domain.music.pipeline import (
    ExitOutcome,
    OutputFormat,
    PipelineSpec,
    StageSpec,
)
from discord_music_streamer.domain.music.value_objects import SourceKind, TrackId
from discord_music_streamer.domain.shared.events import get_event_bus, reset_event_bus

# ============================================================================
# Event bus
# ============================================================================


@pytest.fixture(autouse=True)
def fresh_event_bus():
    """Every test gets its own global event bus."""
    reset_event_bus()
    yield get_event_bus()
    reset_event_bus()


class EventRecorder:
    """Collects every published event of the subscribed types, in order."""

    def __init__(self, bus, *event_types) -> None:
        self.events: list = []
        for event_type in event_types:
            bus.subscribe(event_type, self._record)

    async def _record(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]


@pytest.fixture
def recorder(fresh_event_bus) -> Callable[..., EventRecorder]:
    def _make(*event_types) -> EventRecorder:
        return EventRecorder(fresh_event_bus, *event_types)

    return _make


# ============================================================================
# Tracks
# ============================================================================


def make_track(
    title: str = "Song",
    *,
    kind: SourceKind = SourceKind.SEARCH,
    artist: str | None = None,
    duration: int | None = 180,
    ref: str | None = None,
    track_id: str | None = None,
) -> Track:
    if ref is None:
        ref = {
            SourceKind.SEARCH: f"https://www.youtube.com/watch?v={title[:11].ljust(11, 'x')}",
            SourceKind.DIRECT_URL: f"https://radio.example.com/{title}.mp3",
            SourceKind.STREAMING_SERVICE: "spotify:track:4uLU6hMCjMI75M1A2tKUQC",
        }[kind]
    return Track(
        id=TrackId(track_id or title),
        title=title,
        artist=artist,
        duration_seconds=duration,
        source_kind=kind,
        source_ref=ref,
    )


@pytest.fixture
def track_factory() -> Callable[..., Track]:
    return make_track


# ============================================================================
# Fakes for the session engine
# ============================================================================


def make_spec(kind: SourceKind = SourceKind.SEARCH, *names: str) -> PipelineSpec:
    stage_names = names or ("source", "ffmpeg")
    return PipelineSpec(
        stages=tuple(StageSpec(name=name, command=name) for name in stage_names),
        source_kind=kind,
    )


class FakeProvider(SourceProvider):
    """Provider whose behaviour is scripted per call."""

    def __init__(self, kind: SourceKind, *, configured: bool = True) -> None:
        self._kind = kind
        self.configured = configured
        self.error: BaseException | None = None
        self.calls: list[Track] = []
        self.gate: asyncio.Event | None = None

    @property
    def kind(self) -> SourceKind:  # type: ignore[override]
        return self._kind

    @property
    def is_configured(self) -> bool:
        return self.configured

    async def build_pipeline(self, track: Track) -> PipelineSpec:
        self.calls.append(track)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return make_spec(self._kind, f"{self._kind.value}-source", "ffmpeg")


class FakeResolver(TrackResolver):
    def __init__(self) -> None:
        self.search_queries: list[str] = []
        self.search_error: BaseException | None = None
        self.tracks: dict[str, Track] = {}

    async def resolve(self, query: str, *, prefer_fallback: bool = False) -> Track:
        track = self.tracks.get(query) or make_track(query)
        return track.with_fallback() if prefer_fallback else track

    async def resolve_search(self, query: str) -> Track:
        self.search_queries.append(query)
        if self.search_error is not None:
            raise self.search_error
        return make_track(query, kind=SourceKind.SEARCH)


class FakePipelineManager(PipelineManager):
    """Records starts and lets the test decide when each pipeline ends."""

    def __init__(self) -> None:
        self.started: list[PipelineSpec] = []
        self.cancelled: list[PipelineHandle] = []
        self.start_errors: list[BaseException] = []
        self.start_gate: asyncio.Event | None = None
        self._finish: dict[int, asyncio.Future[ExitOutcome]] = {}
        self.live: set[PipelineHandle] = set()
        self.max_live_per_session = 0

    async def start(
        self,
        spec: PipelineSpec,
        *,
        session_id: int,
        capture_path: Path | None = None,
    ) -> PipelineHandle:
        self.started.append(spec)
        if self.start_gate is not None:
            await self.start_gate.wait()
        if self.start_errors:
            raise self.start_errors.pop(0)

        handle = PipelineHandle(
            session_id=session_id,
            spec=spec,
            stages=[StageProcess(name=s.name, pid=1000 + i) for i, s in enumerate(spec.stages)],
            output=io.BytesIO(b"\x00" * 64),
            capture_path=capture_path,
        )
        self._finish[id(handle)] = asyncio.get_running_loop().create_future()
        self.live.add(handle)
        per_session = sum(1 for h in self.live if h.session_id == session_id)
        self.max_live_per_session = max(self.max_live_per_session, per_session)
        return handle

    def finish(self, handle: PipelineHandle, outcome: ExitOutcome | None = None) -> None:
        future = self._finish[id(handle)]
        if not future.done():
            future.set_result(outcome or ExitOutcome(success=True))

    async def wait(self, handle: PipelineHandle) -> ExitOutcome:
        return await asyncio.shield(self._finish[id(handle)])

    async def cancel(self, handle: PipelineHandle) -> None:
        if handle not in self.live:
            return
        self.live.discard(handle)
        self.cancelled.append(handle)
        handle.cancelled = True
        future = self._finish[id(handle)]
        if not future.done():
            future.set_result(ExitOutcome(success=False, cancelled=True))

    async def shutdown(self) -> None:
        for handle in list(self.live):
            await self.cancel(handle)


class FakeSink(AudioSink):
    def __init__(self) -> None:
        self.played: list[tuple[int, int]] = []
        self.paused = 0
        self.resumed = 0
        self.stopped = 0
        self.volumes: list[int] = []
        self.play_error: BaseException | None = None
        self.current: asyncio.Future[Exception | None] | None = None

    async def play(
        self,
        context_id: int,
        stream,
        *,
        volume: int,
        output_format: OutputFormat,
    ) -> asyncio.Future[Exception | None]:
        if self.play_error is not None:
            raise self.play_error
        self.played.append((context_id, volume))
        self.current = asyncio.get_running_loop().create_future()
        return self.current

    def finish(self, error: Exception | None = None) -> None:
        assert self.current is not None
        if not self.current.done():
            self.current.set_result(error)

    async def pause(self, context_id: int) -> None:
        self.paused += 1

    async def resume(self, context_id: int) -> None:
        self.resumed += 1

    async def stop(self, context_id: int) -> None:
        self.stopped += 1
        if self.current is not None and not self.current.done():
            self.current.set_result(None)

    def set_volume(self, context_id: int, volume: int) -> None:
        self.volumes.append(volume)


@pytest.fixture
def fake_pipelines() -> FakePipelineManager:
    return FakePipelineManager()


@pytest.fixture
def fake_sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def fake_resolver() -> FakeResolver:
    return FakeResolver()


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate()`` holds; fail the test on timeout."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


# ============================================================================
# Spotify Web API double
# ============================================================================


class FakeSpotifyApi:
    """In-memory accounts + Web API endpoints served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.token_grants: list[str] = []
        self.token_status = 200
        self.rejected_tokens: set[str] = set()
        self.devices: list[dict] = []
        self.hidden_device_polls = 0
        self.device_polls = 0
        self.play_response: httpx.Response | None = None
        self.play_requests: list[httpx.Request] = []
        self.tracks: dict[str, dict] = {}
        self.track_status: int | None = None
        self.search_items: list[dict] = []
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host == "accounts.spotify.com":
            return self._token(request)

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.rejected_tokens:
            return httpx.Response(401, json={"error": {"status": 401, "message": "expired"}})

        path = request.url.path.removeprefix("/v1")
        if path == "/me/player/devices":
            self.device_polls += 1
            visible = self.devices if self.device_polls > self.hidden_device_polls else []
            return httpx.Response(200, json={"devices": visible})
        if path == "/me/player/play":
            self.play_requests.append(request)
            return self.play_response or httpx.Response(204)
        if path.startswith("/tracks/"):
            if self.track_status is not None:
                return httpx.Response(self.track_status, json={"error": {"status": self.track_status}})
            track = self.tracks.get(path.removeprefix("/tracks/"))
            if track is None:
                return httpx.Response(404, json={"error": {"status": 404}})
            return httpx.Response(200, json=track)
        if path == "/search":
            return httpx.Response(200, json={"tracks": {"items": self.search_items}})
        return httpx.Response(404)

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = parse_qs(request.content.decode())
        grant = form["grant_type"][0]
        self.token_grants.append(grant)
        if self.token_status != 200:
            return httpx.Response(self.token_status, json={"error": "invalid_grant"})
        return httpx.Response(
            200,
            json={"access_token": f"{grant}-{len(self.token_grants)}", "expires_in": 3600},
        )

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))


def spotify_settings(**overrides) -> SpotifySettings:
    values = {
        "client_id": "client-id",
        "client_secret": "client-secret",
        "refresh_token": "refresh-token",
        "device_name": "Librespot-Wrapper",
        "device_wait_seconds": 0.25,
        "device_poll_interval_seconds": 0.0625,
    }
    values.update(overrides)
    return SpotifySettings(**values)


@pytest.fixture
def spotify_api() -> FakeSpotifyApi:
    return FakeSpotifyApi()

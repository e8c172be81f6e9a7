"""Playback Session actor - serializes every transition of one voice context.

Commands from users and lifecycle notices from pipelines are posted to a
mailbox and applied one at a time by a single task. Pipeline work (provider
preparation, spawning, waiting) runs in helper tasks that report back through
the mailbox; each report carries the generation it was started for, and
reports from an older generation are discarded.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from ...domain.music.entities import PlaybackSession, Track
from ...domain.music.value_objects import PlaybackState
from ...domain.shared.events import (
    EventBus,
    PipelineCompleted,
    PipelineFailed,
    PipelineStarted,
    SessionClosed,
    SessionStateChanged,
    TrackEnqueued,
    TrackFailed,
    get_event_bus,
)
from ...domain.shared.exceptions import (
    DomainError,
    FallbackFailedError,
    InvalidOperationError,
    PipelineError,
    StageCrashedError,
)
from ...domain.shared.messages import ErrorMessages, LogTemplates

if TYPE_CHECKING:
    from ...config.settings import SessionSettings
    from ...domain.music.pipeline import ExitOutcome, PipelineSpec
    from ..interfaces.audio_sink import AudioSink
    from ..interfaces.pipeline_manager import PipelineHandle, PipelineManager
    from .provider_selector import ProviderSelector

logger = logging.getLogger(__name__)

DEFAULT_DRAIN_TIMEOUT = 5.0


# ── Mailbox messages ────────────────────────────────────────────────


@dataclass
class _Command:
    action: Callable[[], Awaitable[Any]]
    reply: asyncio.Future[Any]


@dataclass
class _SpecBuilt:
    generation: int
    spec: PipelineSpec


@dataclass
class _PipelineReady:
    generation: int
    handle: PipelineHandle


@dataclass
class _StartFailed:
    generation: int
    error: BaseException


@dataclass
class _PipelineEnded:
    generation: int
    outcome: ExitOutcome
    sink_error: Exception | None = None


@dataclass
class _Close:
    reason: str
    reply: asyncio.Future[None] = field(default_factory=lambda: asyncio.get_running_loop().create_future())


class PlaybackSessionActor:
    """Owns one PlaybackSession and the pipeline currently feeding its sink."""

    def __init__(
        self,
        context_id: int,
        *,
        selector: ProviderSelector,
        pipelines: PipelineManager,
        sink: AudioSink,
        settings: SessionSettings | None = None,
        event_bus: EventBus | None = None,
        volume: int = 20,
        max_queue_size: int = PlaybackSession.MAX_QUEUE_SIZE,
    ) -> None:
        self._session = PlaybackSession(
            context_id=context_id, volume=volume, max_queue_size=max_queue_size
        )
        self._selector = selector
        self._pipelines = pipelines
        self._sink = sink
        self._drain_timeout = settings.drain_timeout_seconds if settings else DEFAULT_DRAIN_TIMEOUT
        self._event_bus = event_bus or get_event_bus()

        self._mailbox: asyncio.Queue[Any] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._closed = False

        self._generation = 0
        self._start_task: asyncio.Task[None] | None = None
        self._watch_task: asyncio.Task[None] | None = None
        self._handle: PipelineHandle | None = None
        self._sink_done: asyncio.Future[Exception | None] | None = None

    # ── Introspection ───────────────────────────────────────────────

    @property
    def context_id(self) -> int:
        return self._session.context_id

    @property
    def session(self) -> PlaybackSession:
        return self._session

    @property
    def state(self) -> PlaybackState:
        return self._session.state

    @property
    def handle(self) -> PipelineHandle | None:
        return self._handle

    @property
    def is_closed(self) -> bool:
        return self._closed

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run(), name=f"session-{self.context_id}")

    async def close(self, reason: str = "closed") -> None:
        """Stop playback, release every resource and end the actor loop."""
        if self._closed or self._loop_task is None:
            self._closed = True
            return
        self._closed = True
        message = _Close(reason)
        await self._mailbox.put(message)
        await message.reply
        await self._loop_task

    # ── Commands ────────────────────────────────────────────────────

    async def enqueue(self, track: Track) -> int:
        """Append ``track``; returns its zero-based queue position (0 = starts now)."""
        return await self._call(lambda: self._do_enqueue(track))

    async def skip(self) -> bool:
        return await self._call(self._do_skip)

    async def stop(self) -> bool:
        return await self._call(self._do_stop)

    async def pause(self) -> bool:
        return await self._call(self._do_pause)

    async def resume(self) -> bool:
        return await self._call(self._do_resume)

    async def set_volume(self, volume: int) -> int:
        return await self._call(lambda: self._do_set_volume(volume))

    async def adjust_volume(self, delta: int) -> int:
        return await self._call(lambda: self._do_set_volume(self._session.volume + delta))

    async def _call(self, action: Callable[[], Awaitable[Any]]) -> Any:
        if self._closed:
            raise InvalidOperationError(
                operation="command",
                current_state="closed",
                message=ErrorMessages.SESSION_CLOSED.format(context_id=self.context_id),
            )
        self.start()
        reply: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        await self._mailbox.put(_Command(action, reply))
        return await reply

    # ── Actor loop ──────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            message = await self._mailbox.get()
            if isinstance(message, _Close):
                try:
                    await self._do_close(message.reason)
                finally:
                    if not message.reply.done():
                        message.reply.set_result(None)
                return

            try:
                await self._dispatch(message)
            except Exception:
                logger.exception(LogTemplates.SESSION_LOOP_ERROR, self.context_id)

    async def _dispatch(self, message: Any) -> None:
        if isinstance(message, _Command):
            try:
                result = await message.action()
            except Exception as exc:
                if not message.reply.done():
                    message.reply.set_exception(exc)
            else:
                if not message.reply.done():
                    message.reply.set_result(result)
            return

        if message.generation != self._generation:
            logger.debug(
                LogTemplates.SESSION_STALE_MESSAGE,
                type(message).__name__.lstrip("_"),
                message.generation,
                self._generation,
                self.context_id,
            )
            if isinstance(message, _PipelineReady):
                await self._pipelines.cancel(message.handle)
            return

        if isinstance(message, _SpecBuilt):
            await self._on_spec_built(message.spec)
        elif isinstance(message, _PipelineReady):
            await self._on_pipeline_ready(message.handle)
        elif isinstance(message, _StartFailed):
            await self._on_start_failed(message.error)
        elif isinstance(message, _PipelineEnded):
            await self._on_pipeline_ended(message.outcome, message.sink_error)

    # ── Command handlers ────────────────────────────────────────────

    async def _do_enqueue(self, track: Track) -> int:
        session = self._session
        if session.is_idle and not session.queue:
            await self._begin(track)
            position = 0
        else:
            position = session.enqueue(track) + 1

        await self._event_bus.publish(
            TrackEnqueued(context_id=self.context_id, track_title=track.title, queue_position=position)
        )
        return position

    async def _do_skip(self) -> bool:
        state = self._session.state
        if not state.is_in_flight:
            return False

        await self._release_pipeline()
        if state in (PlaybackState.RESOLVING, PlaybackState.STARTING):
            await self._transition(PlaybackState.STOPPING)
            await self._transition(PlaybackState.IDLE)
        await self._advance()
        return True

    async def _do_stop(self) -> bool:
        had_work = self._session.has_tracks or not self._session.is_idle
        await self._release_pipeline()
        self._session.clear_queue()
        if not self._session.is_idle:
            await self._transition(PlaybackState.STOPPING)
            await self._transition(PlaybackState.IDLE)
        return had_work

    async def _do_pause(self) -> bool:
        previous = self._session.state
        if not self._session.pause():
            return False
        await self._sink.pause(self.context_id)
        await self._publish_state(previous)
        return True

    async def _do_resume(self) -> bool:
        previous = self._session.state
        if not self._session.resume():
            return False
        await self._sink.resume(self.context_id)
        await self._publish_state(previous)
        return True

    async def _do_set_volume(self, volume: int) -> int:
        applied = self._session.set_volume(volume)
        if self._session.state.is_active:
            self._sink.set_volume(self.context_id, applied)
        await self._publish_state(self._session.state)
        return applied

    async def _do_close(self, reason: str) -> None:
        await self._release_pipeline()
        self._session.clear_queue()
        if not self._session.is_idle:
            await self._transition(PlaybackState.STOPPING)
            await self._transition(PlaybackState.IDLE)
        await self._event_bus.publish(SessionClosed(context_id=self.context_id, reason=reason))
        logger.info(LogTemplates.SESSION_CLOSED, self.context_id, reason)

    # ── Track lifecycle ─────────────────────────────────────────────

    async def _begin(self, track: Track) -> None:
        previous = self._session.state
        self._session.begin_track(track)
        await self._publish_state(previous)

        self._generation += 1
        generation = self._generation
        self._start_task = asyncio.create_task(
            self._start_pipeline(generation, track),
            name=f"session-{self.context_id}-start-{generation}",
        )

    async def _start_pipeline(self, generation: int, track: Track) -> None:
        async def on_built(spec: PipelineSpec) -> None:
            await self._mailbox.put(_SpecBuilt(generation, spec))

        try:
            handle = await self._selector.start(
                track,
                self._pipelines,
                session_id=self.context_id,
                context_id=self.context_id,
                on_built=on_built,
            )
        except Exception as exc:
            await self._mailbox.put(_StartFailed(generation, exc))
        else:
            await self._mailbox.put(_PipelineReady(generation, handle))

    async def _on_spec_built(self, spec: PipelineSpec) -> None:
        if self._session.state == PlaybackState.RESOLVING:
            await self._transition(PlaybackState.STARTING)

    async def _on_pipeline_ready(self, handle: PipelineHandle) -> None:
        self._start_task = None
        if self._session.state == PlaybackState.RESOLVING:
            await self._transition(PlaybackState.STARTING)

        if self._handle is not None:
            await self._pipelines.cancel(self._handle)
        self._handle = handle

        if handle.output is None:
            await self._fail(PipelineError(ErrorMessages.NO_OUTPUT_STAGE, code="NO_OUTPUT"))
            return

        try:
            self._sink_done = await self._sink.play(
                self.context_id,
                handle.output,
                volume=self._session.volume,
                output_format=handle.spec.output_format,
            )
        except Exception as exc:
            await self._fail(exc)
            return

        previous = self._session.state
        self._session.mark_playing()
        await self._publish_state(previous)
        await self._event_bus.publish(
            PipelineStarted(
                context_id=self.context_id,
                generation=self._generation,
                source_kind=handle.spec.source_kind.value,
                is_fallback=handle.spec.is_fallback,
                stage_names=tuple(handle.spec.stage_names),
            )
        )

        generation = self._generation
        sink_done = self._sink_done
        self._watch_task = asyncio.create_task(
            self._watch(generation, handle, sink_done),
            name=f"session-{self.context_id}-watch-{generation}",
        )

    async def _on_start_failed(self, error: BaseException) -> None:
        self._start_task = None
        await self._fail(error)

    async def _watch(
        self,
        generation: int,
        handle: PipelineHandle,
        sink_done: asyncio.Future[Exception | None],
    ) -> None:
        """Wait for the pipeline and the sink to finish, then report to the mailbox."""
        waiter = asyncio.create_task(self._pipelines.wait(handle))
        sink_error: Exception | None = None
        try:
            done, _ = await asyncio.wait({waiter, sink_done}, return_when=asyncio.FIRST_COMPLETED)
            if sink_done in done and waiter not in done:
                sink_error = sink_done.result()
                if sink_error is None:
                    try:
                        async with asyncio.timeout(self._drain_timeout):
                            await asyncio.shield(waiter)
                    except TimeoutError:
                        pass
                if not waiter.done():
                    await self._pipelines.cancel(handle)
                outcome = await waiter
            else:
                outcome = waiter.result()
                if outcome.success:
                    try:
                        async with asyncio.timeout(self._drain_timeout):
                            sink_error = await asyncio.shield(sink_done)
                    except TimeoutError:
                        sink_error = None
        finally:
            if not waiter.done():
                waiter.cancel()

        await self._mailbox.put(_PipelineEnded(generation, outcome, sink_error))

    async def _on_pipeline_ended(self, outcome: ExitOutcome, sink_error: Exception | None) -> None:
        self._watch_task = None
        if sink_error is not None:
            await self._fail(
                PipelineError(str(sink_error), code="SINK_ERROR", diagnostics=outcome.diagnostics)
            )
            return
        if not outcome.success and not outcome.cancelled:
            await self._fail(
                StageCrashedError(
                    outcome.failed_stage or "?",
                    outcome.failed_exit_code if outcome.failed_exit_code is not None else -1,
                    outcome.diagnostics,
                )
            )
            return

        await self._release_pipeline()
        await self._event_bus.publish(
            PipelineCompleted(context_id=self.context_id, generation=self._generation)
        )
        await self._advance()

    async def _fail(self, error: BaseException) -> None:
        track = self._session.current_track
        title = track.title if track else ""
        code = error.code if isinstance(error, DomainError) else type(error).__name__
        message = error.message if isinstance(error, DomainError) else str(error)
        hint = error.hint if isinstance(error, DomainError) else None
        diagnostics = self._diagnostics_of(error)

        logger.warning(LogTemplates.SESSION_TRACK_FAILED, title, self.context_id, message)
        await self._release_pipeline()

        await self._transition(PlaybackState.ERROR)
        await self._event_bus.publish(
            PipelineFailed(
                context_id=self.context_id,
                generation=self._generation,
                error_code=code,
                message=message,
                diagnostics=diagnostics,
            )
        )
        await self._event_bus.publish(
            TrackFailed(
                context_id=self.context_id,
                track_title=title,
                error_code=code,
                message=message,
                hint=hint,
                diagnostics=diagnostics,
            )
        )
        await self._transition(PlaybackState.IDLE)
        await self._advance()

    @staticmethod
    def _diagnostics_of(error: BaseException) -> str:
        if isinstance(error, PipelineError):
            return error.diagnostics
        if isinstance(error, FallbackFailedError):
            for cause in (error.fallback, error.primary):
                if isinstance(cause, PipelineError) and cause.diagnostics:
                    return cause.diagnostics
        return ""

    async def _advance(self) -> None:
        next_track = self._session.dequeue()
        if next_track is not None:
            await self._begin(next_track)
        elif not self._session.is_idle:
            await self._transition(PlaybackState.IDLE)

    async def _release_pipeline(self) -> None:
        """Invalidate in-flight work and tear down the current pipeline, if any."""
        self._generation += 1

        start_task, self._start_task = self._start_task, None
        if start_task is not None and not start_task.done():
            start_task.cancel()
            await asyncio.gather(start_task, return_exceptions=True)

        watch_task, self._watch_task = self._watch_task, None
        if watch_task is not None and not watch_task.done():
            watch_task.cancel()
            await asyncio.gather(watch_task, return_exceptions=True)

        if self._sink_done is not None:
            self._sink_done = None
            await self._sink.stop(self.context_id)

        handle, self._handle = self._handle, None
        if handle is not None:
            await self._pipelines.cancel(handle)

    # ── State publication ───────────────────────────────────────────

    async def _transition(self, state: PlaybackState) -> None:
        previous = self._session.state
        self._session.transition_to(state)
        await self._publish_state(previous)

    async def _publish_state(self, previous: PlaybackState) -> None:
        session = self._session
        track = session.current_track
        if previous != session.state:
            logger.debug(LogTemplates.SESSION_TRANSITION, self.context_id, previous.value, session.state.value)
        await self._event_bus.publish(
            SessionStateChanged(
                context_id=self.context_id,
                revision=session.revision,
                state=session.state.value,
                previous_state=previous.value,
                track_title=track.title if track else None,
                track_artist=track.artist if track else None,
                thumbnail_url=track.thumbnail_url if track else None,
                duration_seconds=track.duration_seconds if track else None,
                volume=session.volume,
                elapsed_seconds=session.elapsed_seconds,
                queue_length=session.queue_length,
            )
        )

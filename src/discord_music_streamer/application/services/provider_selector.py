"""Provider selection policy with a single search fallback per Track."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from pathlib import Path
from typing import TYPE_CHECKING

from ...domain.music.value_objects import SourceKind
from ...domain.shared.events import EventBus, FallbackUsed, get_event_bus
from ...domain.shared.exceptions import (
    DomainError,
    FallbackFailedError,
    PipelineError,
    ProviderError,
    ProviderUnavailableError,
)
from ...domain.shared.messages import ErrorMessages, LogTemplates

if TYPE_CHECKING:
    from ...domain.music.entities import Track
    from ...domain.music.pipeline import PipelineSpec
    from ..interfaces.pipeline_manager import PipelineHandle, PipelineManager
    from ..interfaces.source_provider import SourceProvider
    from ..interfaces.track_resolver import TrackResolver

logger = logging.getLogger(__name__)

PREFER_FALLBACK_REASON = "fallback preferred"


class ProviderSelector:
    """Dispatches Tracks to the provider registered for their SourceKind.

    Streaming service Tracks are substituted by a search for the same
    title and artist when fallback is preferred, when the service is not
    configured, or when it fails to prepare or start. The substitution
    happens at most once; if the substitute fails too the two causes are
    raised together as ``FallbackFailedError``.
    """

    def __init__(
        self,
        providers: Iterable[SourceProvider],
        resolver: TrackResolver,
        *,
        prefer_fallback: bool = False,
        event_bus: EventBus | None = None,
    ) -> None:
        self._providers: dict[SourceKind, SourceProvider] = {p.kind: p for p in providers}
        self._resolver = resolver
        self._prefer_fallback = prefer_fallback
        self._event_bus = event_bus or get_event_bus()

    def provider_for(self, kind: SourceKind) -> SourceProvider:
        try:
            return self._providers[kind]
        except KeyError:
            raise ProviderUnavailableError(kind.value) from None

    async def first_choice(self, track: Track) -> PipelineSpec:
        """Build the pipeline of the Track's own provider, never substituting."""
        provider = self.provider_for(track.source_kind)
        if not provider.is_configured:
            raise ProviderUnavailableError(track.source_kind.value, ErrorMessages.SPOTIFY_NOT_CONFIGURED)
        return await provider.build_pipeline(track)

    async def build(self, track: Track, *, context_id: int | None = None) -> PipelineSpec:
        if track.source_kind != SourceKind.STREAMING_SERVICE:
            return await self.first_choice(track)

        if self._prefer_fallback or track.force_fallback:
            return await self._fallback(track, PREFER_FALLBACK_REASON, None, context_id)

        try:
            return await self.first_choice(track)
        except ProviderError as exc:
            return await self._fallback(track, exc.message, exc, context_id)

    async def start(
        self,
        track: Track,
        manager: PipelineManager,
        *,
        session_id: int,
        context_id: int | None = None,
        capture_path: Path | None = None,
        on_built: Callable[[PipelineSpec], Awaitable[None]] | None = None,
    ) -> PipelineHandle:
        """Build and start the Track's pipeline, falling back once if it cannot start.

        ``on_built`` is awaited once, after the first spec is built and before
        any process is spawned.
        """
        spec = await self.build(track, context_id=context_id)
        if on_built is not None:
            await on_built(spec)
        try:
            return await manager.start(spec, session_id=session_id, capture_path=capture_path)
        except PipelineError as exc:
            if spec.is_fallback or spec.source_kind != SourceKind.STREAMING_SERVICE:
                raise
            primary = exc

        substitute = await self._fallback(track, primary.message, primary, context_id)
        try:
            return await manager.start(substitute, session_id=session_id, capture_path=capture_path)
        except PipelineError as exc:
            logger.warning(LogTemplates.PROVIDER_FALLBACK_FAILED, track.title, exc)
            raise FallbackFailedError(primary, exc) from exc

    async def _fallback(
        self,
        track: Track,
        reason: str,
        cause: DomainError | None,
        context_id: int | None,
    ) -> PipelineSpec:
        logger.warning(LogTemplates.PROVIDER_FALLBACK, track.title, reason)
        try:
            substitute = await self._resolver.resolve_search(track.search_query)
            spec = await self.provider_for(SourceKind.SEARCH).build_pipeline(substitute)
        except DomainError as exc:
            logger.warning(LogTemplates.PROVIDER_FALLBACK_FAILED, track.title, exc)
            if cause is None:
                raise
            raise FallbackFailedError(cause, exc) from exc

        if context_id is not None:
            await self._event_bus.publish(
                FallbackUsed(context_id=context_id, track_title=track.title, reason=reason)
            )
        return spec.model_copy(update={"fallback_from": track.source_kind})

"""Port interface for the component that plays a pipeline's PCM output."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import BinaryIO

from discord_music_streamer.domain.music.pipeline import OutputFormat


class AudioSink(ABC):
    """Consumes raw PCM from a pipeline for one voice context."""

    @abstractmethod
    async def play(
        self,
        context_id: int,
        stream: BinaryIO,
        *,
        volume: int,
        output_format: OutputFormat,
    ) -> asyncio.Future[Exception | None]:
        """Start consuming ``stream``.

        The returned future resolves once the sink has stopped reading, with the
        playback error if there was one.
        """
        ...

    @abstractmethod
    async def pause(self, context_id: int) -> None: ...

    @abstractmethod
    async def resume(self, context_id: int) -> None: ...

    @abstractmethod
    async def stop(self, context_id: int) -> None: ...

    @abstractmethod
    def set_volume(self, context_id: int, volume: int) -> None:
        """Apply a volume percentage (0-100) to the live output."""
        ...

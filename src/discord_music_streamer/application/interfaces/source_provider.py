"""Port interface for source providers that turn Tracks into pipeline specs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, ClassVar

if TYPE_CHECKING:
    from ...domain.music.entities import Track
    from ...domain.music.pipeline import PipelineSpec
    from ...domain.music.value_objects import SourceKind


class SourceProvider(ABC):
    """Builds the subprocess pipeline that produces PCM audio for one source kind."""

    kind: ClassVar[SourceKind]

    @property
    def is_configured(self) -> bool:
        return True

    @abstractmethod
    async def build_pipeline(self, track: Track) -> PipelineSpec:
        """Prepare the source (auth, devices, ...) and describe its pipeline.

        Raises ``ProviderError`` subclasses when the source cannot be prepared.
        """
        ...

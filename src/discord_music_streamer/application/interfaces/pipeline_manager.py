"""Port interface for running subprocess pipelines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, BinaryIO

from discord_music_streamer.domain.shared.datetime_utils import utcnow

if TYPE_CHECKING:
    from ...domain.music.pipeline import ExitOutcome, PipelineSpec


@dataclass
class StageProcess:
    name: str
    pid: int
    started_at: datetime = field(default_factory=utcnow)
    last_exit_code: int | None = None


@dataclass(eq=False)
class PipelineHandle:
    """A running pipeline, owned by exactly one session."""

    session_id: int
    spec: PipelineSpec
    stages: list[StageProcess] = field(default_factory=list)
    output: BinaryIO | None = None
    capture_path: Path | None = None
    cancelled: bool = False

    def diagnostics(self) -> str:
        """Recent stderr output of every stage."""
        return ""


class PipelineManager(ABC):
    """Spawns, supervises and tears down subprocess pipelines."""

    @abstractmethod
    async def start(
        self,
        spec: PipelineSpec,
        *,
        session_id: int,
        capture_path: Path | None = None,
    ) -> PipelineHandle:
        """Spawn every stage and wait until the pipeline produces output.

        Raises ``SpawnFailedError`` or ``StartupTimeoutError``; on failure all
        stages already spawned are torn down before raising.
        """
        ...

    @abstractmethod
    async def cancel(self, handle: PipelineHandle) -> None:
        """Terminate every stage, escalating to a forced kill after the grace period."""
        ...

    @abstractmethod
    async def wait(self, handle: PipelineHandle) -> ExitOutcome:
        """Wait until the pipeline ends; a crashed stage tears down the rest."""
        ...

    @abstractmethod
    async def shutdown(self) -> None:
        """Cancel every pipeline still running."""
        ...

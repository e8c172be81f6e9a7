"""Value objects describing subprocess pipelines and how they ended."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from discord_music_streamer.domain.music.value_objects import SourceKind
from discord_music_streamer.domain.shared.types import NonEmptyStr, PositiveInt


class OutputFormat(BaseModel):
    """Raw PCM layout written by the last stage of a pipeline."""

    model_config = ConfigDict(frozen=True)

    sample_format: NonEmptyStr = "s16le"
    sample_rate: PositiveInt = 48_000
    channels: PositiveInt = 2

    @property
    def bytes_per_second(self) -> int:
        return self.sample_rate * self.channels * 2


class StageSpec(BaseModel):
    """One external process in a pipeline."""

    model_config = ConfigDict(frozen=True)

    name: NonEmptyStr
    command: NonEmptyStr
    args: tuple[str, ...] = ()
    stdin_from_previous: bool = False
    requires_auth: bool = False

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]


class PipelineSpec(BaseModel):
    """Ordered stages whose stdout feeds the next stage's stdin."""

    model_config = ConfigDict(frozen=True)

    stages: tuple[StageSpec, ...] = Field(min_length=1)
    source_kind: SourceKind
    output_format: OutputFormat = Field(default_factory=OutputFormat)
    fallback_from: SourceKind | None = None

    @property
    def is_fallback(self) -> bool:
        return self.fallback_from is not None

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]


class ExitOutcome(BaseModel):
    """Result of waiting on a pipeline."""

    model_config = ConfigDict(frozen=True)

    success: bool
    exit_codes: dict[str, int | None] = Field(default_factory=dict)
    failed_stage: str | None = None
    cancelled: bool = False
    diagnostics: str = ""

    @property
    def failed_exit_code(self) -> int | None:
        if self.failed_stage is None:
            return None
        return self.exit_codes.get(self.failed_stage)

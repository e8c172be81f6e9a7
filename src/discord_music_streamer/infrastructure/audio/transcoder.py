"""
FFmpeg Transcoder Stage

Builds the ffmpeg invocation that turns any input (a pipe from a previous
stage, or a remote URL) into raw PCM for the voice sink.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from discord_music_streamer.config.settings import AudioSettings
from discord_music_streamer.domain.music.pipeline import OutputFormat, StageSpec

PIPE_INPUT = "pipe:0"
PIPE_OUTPUT = "pipe:1"


@dataclass
class FFmpegConfig:
    """Configuration for the ffmpeg transcoding stage."""

    command: str = "ffmpeg"

    # Reconnection settings for network inputs
    reconnect: bool = True
    reconnect_streamed: bool = True
    reconnect_delay_max: int = 5

    disable_video: bool = True
    loglevel: str = "warning"
    output_format: OutputFormat = field(default_factory=OutputFormat)

    @classmethod
    def from_settings(cls, settings: AudioSettings) -> FFmpegConfig:
        return cls(
            command=settings.ffmpeg_command,
            output_format=OutputFormat(sample_rate=settings.sample_rate, channels=settings.channels),
        )

    def get_before_options(self) -> list[str]:
        """Input options that only apply to network sources."""
        opts: list[str] = []
        if self.reconnect:
            opts += ["-reconnect", "1"]
        if self.reconnect_streamed:
            opts += ["-reconnect_streamed", "1"]
        if self.reconnect_delay_max:
            opts += ["-reconnect_delay_max", str(self.reconnect_delay_max)]
        return opts

    def get_options(self) -> list[str]:
        """Output options producing interleaved signed 16-bit PCM."""
        fmt = self.output_format
        opts: list[str] = []
        if self.disable_video:
            opts.append("-vn")
        opts += [
            "-f", fmt.sample_format,
            "-acodec", f"pcm_{fmt.sample_format}",
            "-ar", str(fmt.sample_rate),
            "-ac", str(fmt.channels),
        ]
        return opts

    def build_args(self, source: str = PIPE_INPUT, *, network: bool = False) -> tuple[str, ...]:
        args = ["-hide_banner", "-loglevel", self.loglevel]
        if source != PIPE_INPUT:
            args.append("-nostdin")
        if network:
            args += self.get_before_options()
        args += ["-i", source]
        args += self.get_options()
        args.append(PIPE_OUTPUT)
        return tuple(args)

    def build_stage(self, source: str = PIPE_INPUT, *, network: bool = False) -> StageSpec:
        return StageSpec(
            name="ffmpeg",
            command=self.command,
            args=self.build_args(source, network=network),
            stdin_from_previous=source == PIPE_INPUT,
        )

"""Streamtest diagnostics: record a short sample of a source and probe it.

The sample is produced by the same pipeline playback would use for the
request, without fallback substitution, so a broken provider shows up as
a failed capture instead of silently playing something else.
"""

from __future__ import annotations

import asyncio
import json
import logging
import wave
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from ...domain.shared.datetime_utils import UtcDateTime
from ...domain.shared.exceptions import DomainError, StageCrashedError
from ...domain.shared.messages import LogTemplates

if TYPE_CHECKING:
    from ...config.settings import DiagnosticsSettings
    from ...domain.music.pipeline import OutputFormat
    from ..interfaces.pipeline_manager import PipelineManager
    from ..interfaces.track_resolver import TrackResolver
    from .provider_selector import ProviderSelector

logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n...[truncated]"


class StreamTestReport(BaseModel):
    """Outcome of one streamtest run; failures are data, never exceptions."""

    model_config = ConfigDict(frozen=True)

    query: str
    title: str | None = None
    source_kind: str | None = None
    stage_names: tuple[str, ...] = ()
    sample_path: Path | None = None
    captured_bytes: int = 0
    exit_codes: dict[str, int | None] = Field(default_factory=dict)
    error_code: str | None = None
    error: str | None = None
    stderr: str = ""
    probe: dict[str, Any] | None = None
    probe_error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.captured_bytes > 0

    def can_attach(self, limit_bytes: int) -> bool:
        return (
            self.sample_path is not None
            and self.sample_path.exists()
            and 0 < self.sample_path.stat().st_size <= limit_bytes
        )

    def render(self, max_chars: int) -> str:
        lines: list[str] = []
        if self.stage_names:
            lines.append("Pipeline: " + " | ".join(self.stage_names))
        if self.exit_codes:
            lines.append(
                "Exit codes: " + ", ".join(f"{name}={code}" for name, code in self.exit_codes.items())
            )
        if self.error:
            lines.append(f"Error ({self.error_code}): {self.error}")
        else:
            lines.append(f"Captured {self.captured_bytes} bytes")
        if self.probe is not None:
            lines.append("ffprobe:\n" + json.dumps(self.probe, indent=1))
        elif self.probe_error:
            lines.append(f"ffprobe failed: {self.probe_error}")
        if self.stderr:
            lines.append("stderr:\n" + self.stderr)

        text = "\n".join(lines)
        if len(text) > max_chars:
            return text[: max_chars - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER
        return text


class StreamTestService:
    def __init__(
        self,
        *,
        resolver: TrackResolver,
        selector: ProviderSelector,
        pipelines: PipelineManager,
        settings: DiagnosticsSettings,
    ) -> None:
        self._resolver = resolver
        self._selector = selector
        self._pipelines = pipelines
        self._settings = settings
        self._cleanup_tasks: dict[asyncio.Task[None], Path] = {}

    @property
    def settings(self) -> DiagnosticsSettings:
        return self._settings

    async def run(self, query: str, *, context_id: int = 0) -> StreamTestReport:
        report: dict[str, Any] = {"query": query}

        try:
            track = await self._resolver.resolve(query)
            report.update(title=track.display_title, source_kind=track.source_kind.value)
            spec = await self._selector.first_choice(track)
        except DomainError as exc:
            return StreamTestReport(**report, error_code=exc.code, error=exc.message)

        report["stage_names"] = tuple(spec.stage_names)
        stamp = UtcDateTime.now().file_stamp
        raw_path = Path(self._settings.capture_dir) / f"streamtest-{context_id}-{stamp}.pcm"
        logger.info(LogTemplates.STREAMTEST_STARTED, query, self._settings.capture_seconds, raw_path)

        try:
            handle = await self._pipelines.start(spec, session_id=context_id, capture_path=raw_path)
        except DomainError as exc:
            self._remove(raw_path)
            return StreamTestReport(
                **report,
                error_code=exc.code,
                error=exc.message,
                stderr=getattr(exc, "diagnostics", ""),
            )

        failure: DomainError | None = None
        try:
            async with asyncio.timeout(self._settings.capture_seconds):
                outcome = await self._pipelines.wait(handle)
            if not outcome.success and not outcome.cancelled:
                failure = StageCrashedError(
                    outcome.failed_stage or "?",
                    outcome.failed_exit_code if outcome.failed_exit_code is not None else -1,
                )
        except TimeoutError:
            pass
        finally:
            await self._pipelines.cancel(handle)

        report.update(
            exit_codes={stage.name: stage.last_exit_code for stage in handle.stages},
            stderr=handle.diagnostics(),
        )
        if failure is not None:
            report.update(error_code=failure.code, error=failure.message)

        captured = raw_path.stat().st_size if raw_path.exists() else 0
        report["captured_bytes"] = captured
        if captured == 0:
            self._remove(raw_path)
            return StreamTestReport(**report)

        wav_path = raw_path.with_suffix(".wav")
        await asyncio.to_thread(self._write_wav, raw_path, wav_path, spec.output_format)
        self._remove(raw_path)
        report["sample_path"] = wav_path

        probe, probe_error = await self.probe(wav_path)
        return StreamTestReport(**report, probe=probe, probe_error=probe_error)

    # ── ffprobe ─────────────────────────────────────────────────────

    async def probe(self, path: Path) -> tuple[dict[str, Any] | None, str | None]:
        try:
            process = await asyncio.create_subprocess_exec(
                self._settings.probe_command,
                "-hide_banner",
                "-loglevel", "error",
                "-show_format",
                "-show_streams",
                "-print_format", "json",
                str(path),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning(LogTemplates.STREAMTEST_PROBE_FAILED, path, exc)
            return None, str(exc)

        try:
            async with asyncio.timeout(self._settings.probe_timeout_seconds):
                stdout, stderr = await process.communicate()
        except TimeoutError:
            process.kill()
            await process.wait()
            message = f"timed out after {self._settings.probe_timeout_seconds:g}s"
            logger.warning(LogTemplates.STREAMTEST_PROBE_FAILED, path, message)
            return None, message

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip() or f"exit code {process.returncode}"
            logger.warning(LogTemplates.STREAMTEST_PROBE_FAILED, path, message)
            return None, message

        try:
            return json.loads(stdout), None
        except ValueError as exc:
            logger.warning(LogTemplates.STREAMTEST_PROBE_FAILED, path, exc)
            return None, str(exc)

    # ── Sample files ────────────────────────────────────────────────

    @staticmethod
    def _write_wav(raw_path: Path, wav_path: Path, output_format: OutputFormat) -> None:
        with wave.open(str(wav_path), "wb") as wav:
            wav.setnchannels(output_format.channels)
            wav.setsampwidth(2)
            wav.setframerate(output_format.sample_rate)
            wav.writeframes(raw_path.read_bytes())

    def schedule_cleanup(self, path: Path | None, delay: float | None = None) -> None:
        """Delete ``path`` after ``delay`` seconds (default from settings)."""
        if path is None:
            return
        task = asyncio.create_task(self._cleanup_later(path, delay))
        self._cleanup_tasks[task] = path
        task.add_done_callback(lambda t: self._cleanup_tasks.pop(t, None))

    async def _cleanup_later(self, path: Path, delay: float | None) -> None:
        try:
            await asyncio.sleep(self._settings.cleanup_delay_seconds if delay is None else delay)
        finally:
            self._remove(path)

    @staticmethod
    def _remove(path: Path) -> None:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning(LogTemplates.STREAMTEST_CLEANUP_FAILED, path, exc)

    async def shutdown(self) -> None:
        pending = dict(self._cleanup_tasks)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        # A task cancelled before its first step never reaches its finally block
        for path in pending.values():
            self._remove(path)
        self._cleanup_tasks.clear()

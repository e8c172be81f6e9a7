"""PipelineManager implementation built on asyncio subprocesses.

Each stage runs in its own process group so that a cancel reaches every
child the stage may fork (yt-dlp and the streaming helper both do). Stage
*i* writes into an ``os.pipe`` whose read end becomes stage *i+1*'s stdin;
the last stage writes into a pipe handed to the audio sink, or into a
capture file.
"""

from __future__ import annotations

import asyncio
import logging
import os
import select
import signal
import subprocess
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, Any

from discord_music_streamer.application.interfaces.pipeline_manager import (
    PipelineHandle,
    PipelineManager,
    StageProcess,
)
from discord_music_streamer.config.settings import PipelineSettings
from discord_music_streamer.domain.music.pipeline import ExitOutcome, PipelineSpec
from discord_music_streamer.domain.shared.datetime_utils import UtcDateTime
from discord_music_streamer.domain.shared.exceptions import (
    PipelineError,
    SpawnFailedError,
    StageCrashedError,
    StartupTimeoutError,
)
from discord_music_streamer.domain.shared.messages import ErrorMessages, LogTemplates

logger = logging.getLogger(__name__)
stderr_logger = logging.getLogger(f"{__name__}.stderr")

READINESS_POLL_SECONDS = 0.05
BROKEN_PIPE_EXIT_CODES = frozenset({-signal.SIGPIPE, 128 + signal.SIGPIPE})


class StderrRingBuffer:
    """Keeps the last ``max_lines`` stderr lines of every stage of a pipeline."""

    def __init__(self, max_lines: int, log_path: Path | None = None) -> None:
        self._lines: deque[str] = deque(maxlen=max_lines)
        self._log_path = log_path
        self._log_file: IO[str] | None = None

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def append(self, stage: str, line: str) -> None:
        entry = f"[{stage}] {line}"
        self._lines.append(entry)
        if self._log_path is not None:
            if self._log_file is None:
                self._log_path.parent.mkdir(parents=True, exist_ok=True)
                self._log_file = open(self._log_path, "a", encoding="utf-8")  # noqa: SIM115
            self._log_file.write(entry + "\n")
            self._log_file.flush()

    def render(self) -> str:
        return "\n".join(self._lines)

    def close(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None


@dataclass(eq=False)
class SubprocessPipelineHandle(PipelineHandle):
    processes: list[asyncio.subprocess.Process] = field(default_factory=list)
    stderr: StderrRingBuffer | None = None
    drain_tasks: list[asyncio.Task[None]] = field(default_factory=list)
    finalized: bool = False

    def diagnostics(self) -> str:
        return self.stderr.render() if self.stderr is not None else ""


class SubprocessPipelineManager(PipelineManager):
    def __init__(self, settings: PipelineSettings | None = None) -> None:
        self._settings = settings or PipelineSettings()
        self._live: set[SubprocessPipelineHandle] = set()

    @property
    def active_count(self) -> int:
        return len(self._live)

    # ── Start ───────────────────────────────────────────────────────

    async def start(
        self,
        spec: PipelineSpec,
        *,
        session_id: int,
        capture_path: Path | None = None,
    ) -> PipelineHandle:
        if not spec.stages:
            raise PipelineError(ErrorMessages.NO_OUTPUT_STAGE)

        handle = SubprocessPipelineHandle(
            session_id=session_id,
            spec=spec,
            capture_path=capture_path,
            stderr=StderrRingBuffer(self._settings.stderr_buffer_lines, self._log_path(session_id)),
        )
        self._live.add(handle)

        try:
            output_fd = await self._spawn_stages(handle)
            await self._wait_until_ready(handle, output_fd)
        except PipelineError as exc:
            await self._teardown(handle)
            exc.diagnostics = handle.diagnostics() or exc.diagnostics
            raise
        except BaseException:
            await self._teardown(handle)
            raise

        logger.info(LogTemplates.PIPELINE_STARTED, " | ".join(spec.stage_names), session_id)
        return handle

    async def _spawn_stages(self, handle: SubprocessPipelineHandle) -> int | None:
        """Spawn every stage; returns the read end of the sink pipe, if any."""
        stages = handle.spec.stages
        previous_read: int | None = None
        output_read: int | None = None

        try:
            for index, stage in enumerate(stages):
                is_last = index == len(stages) - 1

                stdin: Any = subprocess.DEVNULL
                if previous_read is not None:
                    if stage.stdin_from_previous:
                        stdin = previous_read
                    else:
                        os.close(previous_read)
                    previous_read = None

                capture_file: IO[bytes] | None = None
                if is_last and handle.capture_path is not None:
                    handle.capture_path.parent.mkdir(parents=True, exist_ok=True)
                    capture_file = open(handle.capture_path, "wb")  # noqa: SIM115
                    stdout: Any = capture_file.fileno()
                    next_read = None
                else:
                    next_read, stdout = os.pipe()

                try:
                    process = await self._spawn(stage.name, stage.argv, stdin, stdout, handle)
                except BaseException:
                    if next_read is not None:
                        os.close(next_read)
                    raise
                finally:
                    if isinstance(stdin, int) and stdin >= 0:
                        os.close(stdin)
                    if capture_file is not None:
                        capture_file.close()
                    elif isinstance(stdout, int):
                        os.close(stdout)

                if is_last:
                    output_read = next_read
                else:
                    previous_read = next_read

                handle.processes.append(process)
                handle.stages.append(StageProcess(name=stage.name, pid=process.pid))
                handle.drain_tasks.append(
                    asyncio.create_task(self._drain_stderr(stage.name, process, handle))
                )
                logger.debug(LogTemplates.PIPELINE_STAGE_SPAWNED, stage.name, process.pid, handle.session_id)
        except BaseException:
            for fd in (previous_read, output_read):
                if fd is not None:
                    os.close(fd)
            raise

        if output_read is not None:
            handle.output = os.fdopen(output_read, "rb")
        return output_read

    async def _spawn(
        self,
        name: str,
        argv: list[str],
        stdin: Any,
        stdout: Any,
        handle: SubprocessPipelineHandle,
    ) -> asyncio.subprocess.Process:
        timeout = self._settings.stage_spawn_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                return await asyncio.create_subprocess_exec(
                    *argv,
                    stdin=stdin,
                    stdout=stdout,
                    stderr=asyncio.subprocess.PIPE,
                    start_new_session=True,
                )
        except TimeoutError as exc:
            logger.error(LogTemplates.PIPELINE_SPAWN_FAILED, name, handle.session_id, "timed out")
            raise SpawnFailedError(name, f"timed out after {timeout:g}s", handle.diagnostics()) from exc
        except OSError as exc:
            logger.error(LogTemplates.PIPELINE_SPAWN_FAILED, name, handle.session_id, exc)
            raise SpawnFailedError(name, str(exc), handle.diagnostics()) from exc

    async def _wait_until_ready(self, handle: SubprocessPipelineHandle, output_fd: int | None) -> None:
        """Wait for the first output byte, failing early if a stage crashes first."""
        timeout = self._settings.startup_timeout_seconds
        try:
            async with asyncio.timeout(timeout):
                while True:
                    if self._output_ready(handle, output_fd):
                        return
                    self._raise_if_crashed(handle)
                    if all(p.returncode is not None for p in handle.processes):
                        return
                    await asyncio.sleep(READINESS_POLL_SECONDS)
        except TimeoutError as exc:
            logger.warning(LogTemplates.PIPELINE_STARTUP_TIMEOUT, handle.session_id, timeout)
            raise StartupTimeoutError(timeout, handle.diagnostics()) from exc

    @staticmethod
    def _output_ready(handle: SubprocessPipelineHandle, output_fd: int | None) -> bool:
        if output_fd is not None:
            readable, _, _ = select.select([output_fd], [], [], 0)
            return bool(readable)
        if handle.capture_path is not None and handle.capture_path.exists():
            return handle.capture_path.stat().st_size > 0
        return False

    @staticmethod
    def _raise_if_crashed(handle: SubprocessPipelineHandle) -> None:
        for stage, process in zip(handle.stages, handle.processes, strict=True):
            if process.returncode is not None and process.returncode != 0:
                stage.last_exit_code = process.returncode
                raise StageCrashedError(stage.name, process.returncode, handle.diagnostics())

    async def _drain_stderr(
        self, stage: str, process: asyncio.subprocess.Process, handle: SubprocessPipelineHandle
    ) -> None:
        if process.stderr is None or handle.stderr is None:
            return
        while True:
            raw = await process.stderr.readline()
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            handle.stderr.append(stage, line)
            if self._settings.verbose_logging:
                stderr_logger.debug(LogTemplates.PIPELINE_STDERR, handle.session_id, stage, line)

    def _log_path(self, session_id: int) -> Path | None:
        if not self._settings.verbose_logging:
            return None
        stamp = UtcDateTime.now().file_stamp
        return Path(self._settings.log_dir) / f"{session_id}-{stamp}.log"

    # ── Wait ────────────────────────────────────────────────────────

    async def wait(self, handle: PipelineHandle) -> ExitOutcome:
        assert isinstance(handle, SubprocessPipelineHandle)

        waiters = {
            asyncio.create_task(process.wait()): stage
            for stage, process in zip(handle.stages, handle.processes, strict=True)
        }
        pending = set(waiters)
        final_stage = handle.stages[-1]
        failed_stage: str | None = None

        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                for task in done:
                    stage = waiters[task]
                    stage.last_exit_code = task.result()
                    logger.debug(LogTemplates.PIPELINE_STAGE_EXITED, stage.name, stage.pid, stage.last_exit_code)
                    if stage.last_exit_code == 0 or failed_stage is not None or handle.cancelled:
                        continue
                    # Upstream stages die of SIGPIPE once the final stage stops reading
                    if stage is not final_stage and stage.last_exit_code in BROKEN_PIPE_EXIT_CODES:
                        continue
                    failed_stage = stage.name

                if failed_stage is not None and pending:
                    await self._terminate(handle)
        finally:
            for task in pending:
                task.cancel()

        await self._finish_draining(handle)

        exit_codes = {stage.name: stage.last_exit_code for stage in handle.stages}
        if handle.cancelled:
            return ExitOutcome(success=False, exit_codes=exit_codes, cancelled=True)
        if failed_stage is not None:
            return ExitOutcome(
                success=False,
                exit_codes=exit_codes,
                failed_stage=failed_stage,
                diagnostics=handle.diagnostics(),
            )
        return ExitOutcome(success=True, exit_codes=exit_codes)

    async def _finish_draining(self, handle: SubprocessPipelineHandle) -> None:
        if handle.drain_tasks:
            await asyncio.gather(*handle.drain_tasks, return_exceptions=True)

    # ── Cancel / teardown ───────────────────────────────────────────

    async def cancel(self, handle: PipelineHandle) -> None:
        assert isinstance(handle, SubprocessPipelineHandle)
        if handle.finalized:
            return
        if any(p.returncode is None for p in handle.processes):
            logger.info(LogTemplates.PIPELINE_CANCELLING, handle.session_id)
            handle.cancelled = True
        await self._teardown(handle)

    async def _teardown(self, handle: SubprocessPipelineHandle) -> None:
        await self._terminate(handle)
        await self._finish_draining(handle)
        self._finalize(handle)

    async def _terminate(self, handle: SubprocessPipelineHandle) -> None:
        """SIGTERM every stage's process group (last stage first), then SIGKILL stragglers."""
        running = [p for p in reversed(handle.processes) if p.returncode is None]
        if not running:
            return

        for process in running:
            self._signal_group(process, signal.SIGTERM)

        try:
            async with asyncio.timeout(self._settings.cancel_grace_seconds):
                await asyncio.gather(*(p.wait() for p in running))
        except TimeoutError:
            for process in running:
                if process.returncode is None:
                    logger.warning(LogTemplates.PIPELINE_FORCE_KILL, self._stage_name(handle, process), process.pid)
                    self._signal_group(process, signal.SIGKILL)
            await asyncio.gather(*(p.wait() for p in running))

        for stage, process in zip(handle.stages, handle.processes, strict=True):
            stage.last_exit_code = process.returncode

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: signal.Signals) -> None:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.send_signal(sig)

    @staticmethod
    def _stage_name(handle: SubprocessPipelineHandle, process: asyncio.subprocess.Process) -> str:
        for stage in handle.stages:
            if stage.pid == process.pid:
                return stage.name
        return "?"

    def _finalize(self, handle: SubprocessPipelineHandle) -> None:
        if handle.finalized:
            return
        handle.finalized = True
        if handle.output is not None:
            try:
                handle.output.close()
            except OSError as exc:
                logger.debug(LogTemplates.PIPELINE_CLEANUP_ERROR, "output", exc)
        if handle.stderr is not None:
            handle.stderr.close()
        self._live.discard(handle)

    async def shutdown(self) -> None:
        for handle in list(self._live):
            await self.cancel(handle)

"""Tests for SubprocessPipelineManager using real Python subprocesses."""

from __future__ import annotations

import signal
import sys
from pathlib import Path

import pytest
import pytest_asyncio

from discord_music_streamer.config.settings import PipelineSettings
from discord_music_streamer.domain.music.pipeline import PipelineSpec, StageSpec
from discord_music_streamer.domain.music.value_objects import SourceKind
from discord_music_streamer.domain.shared.exceptions import (
    SpawnFailedError,
    StageCrashedError,
    StartupTimeoutError,
)
from discord_music_streamer.infrastructure.audio.pipeline_manager import (
    StderrRingBuffer,
    SubprocessPipelineManager,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX only")

SESSION = 31337


def py_stage(name: str, code: str, *, stdin_from_previous: bool = False) -> StageSpec:
    return StageSpec(
        name=name,
        command=sys.executable,
        args=("-c", code),
        stdin_from_previous=stdin_from_previous,
    )


def spec_of(*stages: StageSpec) -> PipelineSpec:
    return PipelineSpec(stages=stages, source_kind=SourceKind.DIRECT_URL)


EMIT_AND_EXIT = "import sys; sys.stdout.buffer.write(b'pcm-bytes'); sys.stdout.flush()"
COPY_STDIN = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read()); sys.stdout.flush()"
EMIT_AND_HANG = "import sys, time; sys.stdout.write('x'); sys.stdout.flush(); time.sleep(60)"
HANG_SILENTLY = "import time; time.sleep(60)"
ECHO_ONE_AND_HANG = (
    "import sys, time; sys.stdout.buffer.write(sys.stdin.buffer.read(1)); sys.stdout.flush(); time.sleep(60)"
)
EMIT_FOREVER = (
    "import signal, sys\n"
    "signal.signal(signal.SIGPIPE, signal.SIG_DFL)\n"
    "while True:\n"
    "    sys.stdout.buffer.write(b'x' * 4096)\n"
    "    sys.stdout.flush()\n"
)
ECHO_ONE_AND_EXIT = "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read(1)); sys.stdout.flush()"


@pytest_asyncio.fixture
async def manager():
    mgr = SubprocessPipelineManager(
        PipelineSettings(startup_timeout_seconds=5.0, cancel_grace_seconds=1.0)
    )
    yield mgr
    await mgr.shutdown()


class TestStart:
    """Spawning stages and waiting for the first output byte."""

    @pytest.mark.asyncio
    async def test_two_stage_pipeline_streams_output(self, manager):
        spec = spec_of(
            py_stage("source", EMIT_AND_EXIT),
            py_stage("transcode", COPY_STDIN, stdin_from_previous=True),
        )

        handle = await manager.start(spec, session_id=SESSION)
        data = handle.output.read()
        outcome = await manager.wait(handle)

        assert data == b"pcm-bytes"
        assert outcome.success
        assert outcome.exit_codes == {"source": 0, "transcode": 0}
        assert [s.name for s in handle.stages] == ["source", "transcode"]
        assert manager.active_count == 1

        await manager.cancel(handle)
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_crashing_stage_fails_start_with_diagnostics(self, manager):
        spec = spec_of(
            py_stage("source", "import sys; sys.stderr.write('boom: 403 Forbidden\\n'); sys.exit(3)"),
            py_stage("transcode", HANG_SILENTLY, stdin_from_previous=True),
        )

        with pytest.raises(StageCrashedError) as exc_info:
            await manager.start(spec, session_id=SESSION)

        assert exc_info.value.stage == "source"
        assert exc_info.value.exit_code == 3
        assert "[source] boom: 403 Forbidden" in exc_info.value.diagnostics
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_missing_command_fails_spawn_and_tears_down(self, manager):
        spec = spec_of(
            py_stage("source", EMIT_AND_HANG),
            StageSpec(name="helper", command="/nonexistent/streaming-helper", stdin_from_previous=True),
        )

        with pytest.raises(SpawnFailedError) as exc_info:
            await manager.start(spec, session_id=SESSION)

        assert exc_info.value.stage == "helper"
        assert exc_info.value.code == "SPAWN_FAILED"
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_silent_pipeline_times_out(self):
        mgr = SubprocessPipelineManager(
            PipelineSettings(startup_timeout_seconds=0.3, cancel_grace_seconds=1.0)
        )

        with pytest.raises(StartupTimeoutError) as exc_info:
            await mgr.start(spec_of(py_stage("source", HANG_SILENTLY)), session_id=SESSION)

        assert exc_info.value.timeout == pytest.approx(0.3)
        assert mgr.active_count == 0

    @pytest.mark.asyncio
    async def test_capture_path_receives_output(self, manager, tmp_path: Path):
        capture = tmp_path / "nested" / "sample.raw"

        handle = await manager.start(
            spec_of(py_stage("source", EMIT_AND_EXIT)), session_id=SESSION, capture_path=capture
        )
        outcome = await manager.wait(handle)
        await manager.cancel(handle)

        assert outcome.success
        assert handle.output is None
        assert capture.read_bytes() == b"pcm-bytes"


class TestWait:
    @pytest.mark.asyncio
    async def test_stage_crash_after_start_tears_down_the_rest(self, manager):
        spec = spec_of(
            py_stage(
                "source",
                "import sys, time; sys.stdout.write('x'); sys.stdout.flush(); "
                "sys.stderr.write('connection reset\\n'); time.sleep(0.2); sys.exit(2)",
            ),
            py_stage("transcode", ECHO_ONE_AND_HANG, stdin_from_previous=True),
        )

        handle = await manager.start(spec, session_id=SESSION)
        outcome = await manager.wait(handle)

        assert not outcome.success
        assert not outcome.cancelled
        assert outcome.failed_stage == "source"
        assert outcome.failed_exit_code == 2
        assert outcome.exit_codes["transcode"] is not None
        assert "connection reset" in outcome.diagnostics

    @pytest.mark.asyncio
    async def test_broken_pipe_upstream_of_clean_exit_is_success(self, manager):
        """Should accept an upstream SIGPIPE once the final stage finished cleanly"""
        spec = spec_of(
            py_stage("source", EMIT_FOREVER),
            py_stage("transcode", ECHO_ONE_AND_EXIT, stdin_from_previous=True),
        )

        handle = await manager.start(spec, session_id=SESSION)
        data = handle.output.read()
        outcome = await manager.wait(handle)

        assert data == b"x"
        assert outcome.success
        assert outcome.failed_stage is None
        assert outcome.exit_codes == {"source": -signal.SIGPIPE, "transcode": 0}

    @pytest.mark.asyncio
    async def test_broken_pipe_upstream_of_failed_final_stage_is_failure(self, manager):
        spec = spec_of(
            py_stage("source", EMIT_FOREVER),
            py_stage(
                "transcode",
                "import sys; sys.stdout.buffer.write(sys.stdin.buffer.read(1)); sys.stdout.flush(); sys.exit(3)",
                stdin_from_previous=True,
            ),
        )

        handle = await manager.start(spec, session_id=SESSION)
        outcome = await manager.wait(handle)

        assert not outcome.success
        assert outcome.failed_stage == "transcode"
        assert outcome.failed_exit_code == 3


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_terminates_every_stage(self, manager):
        spec = spec_of(
            py_stage("source", EMIT_AND_HANG),
            py_stage("transcode", ECHO_ONE_AND_HANG, stdin_from_previous=True),
        )
        handle = await manager.start(spec, session_id=SESSION)

        await manager.cancel(handle)
        outcome = await manager.wait(handle)

        assert handle.cancelled
        assert outcome.cancelled
        assert all(p.returncode is not None for p in handle.processes)
        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_cancel_escalates_to_kill(self):
        mgr = SubprocessPipelineManager(PipelineSettings(cancel_grace_seconds=0.2))
        stubborn = (
            "import signal, sys, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "sys.stdout.write('x'); sys.stdout.flush(); time.sleep(60)"
        )
        handle = await mgr.start(spec_of(py_stage("helper", stubborn)), session_id=SESSION)

        await mgr.cancel(handle)

        assert handle.processes[0].returncode == -signal.SIGKILL

    @pytest.mark.asyncio
    async def test_cancel_twice_is_harmless(self, manager):
        handle = await manager.start(spec_of(py_stage("source", EMIT_AND_HANG)), session_id=SESSION)

        await manager.cancel(handle)
        await manager.cancel(handle)

        assert manager.active_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_cancels_all_pipelines(self, manager):
        handles = [
            await manager.start(spec_of(py_stage("source", EMIT_AND_HANG)), session_id=sid)
            for sid in (1, 2)
        ]

        await manager.shutdown()

        assert manager.active_count == 0
        assert all(h.cancelled for h in handles)


class TestStderrCapture:
    def test_ring_buffer_keeps_last_lines(self):
        buffer = StderrRingBuffer(max_lines=2)
        for i in range(5):
            buffer.append("ffmpeg", f"line {i}")

        assert buffer.render() == "[ffmpeg] line 3\n[ffmpeg] line 4"

    def test_ring_buffer_mirrors_to_log_file(self, tmp_path: Path):
        log_path = tmp_path / "logs" / "session.log"
        buffer = StderrRingBuffer(max_lines=10, log_path=log_path)

        buffer.append("helper", "device ready")
        buffer.close()

        assert log_path.read_text(encoding="utf-8") == "[helper] device ready\n"

    @pytest.mark.asyncio
    async def test_verbose_mode_writes_session_log(self, tmp_path: Path):
        mgr = SubprocessPipelineManager(
            PipelineSettings(verbose_logging=True, log_dir=str(tmp_path))
        )
        code = "import sys; sys.stderr.write('warming up\\n'); sys.stdout.write('x'); sys.stdout.flush()"

        handle = await mgr.start(spec_of(py_stage("source", code)), session_id=SESSION)
        await mgr.wait(handle)
        await mgr.cancel(handle)

        [log_file] = list(tmp_path.glob(f"{SESSION}-*.log"))
        assert "[source] warming up" in log_file.read_text(encoding="utf-8")

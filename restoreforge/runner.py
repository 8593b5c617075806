"""Single-job state machine driving an encoder engine.

The runner compiles the settings, launches the engine, turns its output into
progress/ETA, and decides when the job is finished. The engine's own success
status is not trusted as proof of an output file, so a sentinel line or a
successful exit starts a bounded poll that waits for the output file size
to settle.
"""

from __future__ import annotations

import asyncio
import os
import re
import threading
import time
from contextlib import nullcontext
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from .encode_settings import EncodeSettings
from .engine import DurationProbe, Engine, FileSystem, LineChannel, LocalFileSystem
from .errors import (
    EngineStatus,
    InternalFailureError,
    InvalidInputError,
    JobCancelledError,
    JobError,
    classify_status,
)
from .ffmpeg import predicted_output_name
from .logging import RunLogger
from .params import compile_settings
from .progress import ETA_DONE, ETA_PLACEHOLDER, ProgressUpdate, parse_line
from .settings import CompletionSettings


class JobPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETION_CHECKING = "completion_checking"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


ACTIVE_PHASES = frozenset({JobPhase.RUNNING, JobPhase.COMPLETION_CHECKING})
TERMINAL_PHASES = frozenset({JobPhase.COMPLETED, JobPhase.CANCELLED, JobPhase.FAILED})


class OutputMode(str, Enum):
    SAME = "same"
    CUSTOM = "custom"


@dataclass(slots=True)
class CompletionPolicy:
    """How long to wait for the output file once the encoder looks finished."""

    poll_interval: float = 0.5
    max_attempts: int = 20
    required_stable_checks: int = 1
    sentinel_pattern: str = r"^Done\.$"
    engine_grace: float = 5.0

    @classmethod
    def from_settings(cls, settings: CompletionSettings) -> "CompletionPolicy":
        return cls(
            poll_interval=settings.poll_interval,
            max_attempts=max(1, settings.max_attempts),
            required_stable_checks=max(1, settings.required_stable_checks),
            sentinel_pattern=settings.sentinel_pattern,
            engine_grace=max(0.0, settings.engine_grace),
        )


@dataclass(frozen=True, slots=True)
class JobSnapshot:
    phase: JobPhase
    progress: float
    fps: Optional[str]
    time_string: Optional[str]
    eta: str
    duration: float
    completed_output_path: Optional[str]
    error: Optional[JobError]
    log_lines: tuple[str, ...]

    @property
    def is_running(self) -> bool:
        return self.phase in ACTIVE_PHASES


@dataclass(slots=True)
class JobResult:
    """Outcome returned by :meth:`JobRunner.run`."""

    input_path: str
    phase: JobPhase
    output_path: Optional[str]
    error: Optional[JobError] = None

    @property
    def ok(self) -> bool:
        return self.phase is JobPhase.COMPLETED


def _looks_like_error(line: str) -> bool:
    lowered = line.lower()
    return "error" in lowered or "fail" in lowered


class JobState:
    """Observable state of one job.

    Every read and write holds the same lock, so observers on other threads
    never see a torn progress value or a half-appended log.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = JobPhase.IDLE
        self._progress = 0.0
        self._log: list[str] = []
        self._completed_output_path: Optional[str] = None
        self._error: Optional[JobError] = None
        self._fps: Optional[str] = None
        self._time_string: Optional[str] = None
        self._eta = ETA_PLACEHOLDER
        self._duration = 0.0
        self._last_line: Optional[str] = None
        self._last_error_line: Optional[str] = None

    # ---- reads -------------------------------------------------------------------
    @property
    def phase(self) -> JobPhase:
        with self._lock:
            return self._phase

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._phase in ACTIVE_PHASES

    @property
    def progress(self) -> float:
        with self._lock:
            return self._progress

    @property
    def duration(self) -> float:
        with self._lock:
            return self._duration

    @property
    def eta(self) -> str:
        with self._lock:
            return self._eta

    @property
    def completed_output_path(self) -> Optional[str]:
        with self._lock:
            return self._completed_output_path

    @property
    def error(self) -> Optional[JobError]:
        with self._lock:
            return self._error

    @property
    def log_lines(self) -> list[str]:
        with self._lock:
            return list(self._log)

    @property
    def log_text(self) -> str:
        with self._lock:
            return "\n".join(self._log)

    @property
    def failure_context(self) -> str:
        with self._lock:
            return self._last_error_line or self._last_line or "(no engine output)"

    def snapshot(self) -> JobSnapshot:
        with self._lock:
            return JobSnapshot(
                phase=self._phase,
                progress=self._progress,
                fps=self._fps,
                time_string=self._time_string,
                eta=self._eta,
                duration=self._duration,
                completed_output_path=self._completed_output_path,
                error=self._error,
                log_lines=tuple(self._log),
            )

    # ---- writes ------------------------------------------------------------------
    def append_log(self, *lines: str) -> None:
        with self._lock:
            self._log.extend(lines)

    def set_error(self, error: JobError) -> None:
        with self._lock:
            self._error = error

    def begin(self) -> None:
        with self._lock:
            self._phase = JobPhase.RUNNING
            self._progress = 0.0
            self._log = []
            self._completed_output_path = None
            self._error = None
            self._fps = None
            self._time_string = None
            self._eta = ETA_PLACEHOLDER
            self._duration = 0.0
            self._last_line = None
            self._last_error_line = None

    def latch_duration(self, seconds: float) -> bool:
        """Record ``seconds`` as the media duration unless one is already known."""

        with self._lock:
            if self._duration > 0 or not seconds or seconds <= 0:
                return False
            self._duration = float(seconds)
            return True

    def record_line(self, line: str, update: ProgressUpdate) -> None:
        with self._lock:
            self._log.append(line)
            self._last_line = line
            if _looks_like_error(line):
                self._last_error_line = line
            if update.new_duration and self._duration <= 0:
                self._duration = update.new_duration
            if self._phase not in ACTIVE_PHASES:
                return
            if update.progress is not None:
                self._progress = max(self._progress, min(1.0, update.progress))
            if update.fps is not None:
                self._fps = update.fps
            if update.time_string is not None:
                self._time_string = update.time_string
            if update.eta is not None:
                self._eta = update.eta

    def force_progress(self, value: float) -> None:
        with self._lock:
            if self._phase in ACTIVE_PHASES:
                self._progress = max(self._progress, min(1.0, value))

    def enter_completion_check(self) -> bool:
        with self._lock:
            if self._phase not in ACTIVE_PHASES:
                return False
            self._phase = JobPhase.COMPLETION_CHECKING
            return True

    def finish(
        self,
        phase: JobPhase,
        *,
        output_path: Optional[str] = None,
        error: Optional[JobError] = None,
        lines: tuple[str, ...] = (),
    ) -> bool:
        """Move to terminal ``phase`` if still active; returns whether it did."""

        with self._lock:
            if self._phase not in ACTIVE_PHASES:
                return False
            self._phase = phase
            self._log.extend(lines)
            if phase is JobPhase.COMPLETED:
                self._progress = 1.0
                self._eta = ETA_DONE
                self._completed_output_path = output_path
            else:
                self._completed_output_path = None
            self._error = error
            return True


class JobRunner:
    """Run one restore job at a time through an injected :class:`Engine`.

    Set :attr:`input_path`, :attr:`output_mode` and optionally
    :attr:`custom_output_dir`, then await :meth:`run`. Observers read
    :attr:`state` from any thread and may call :meth:`cancel` at any time.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        settings: Optional[EncodeSettings] = None,
        file_system: Optional[FileSystem] = None,
        duration_probe: Optional[DurationProbe] = None,
        policy: Optional[CompletionPolicy] = None,
        run_logger: Optional[RunLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.engine = engine
        self.settings = settings or EncodeSettings()
        self.file_system = file_system or LocalFileSystem()
        self.duration_probe = duration_probe
        self.policy = policy or CompletionPolicy()
        self.run_logger = run_logger
        self.input_path = ""
        self.output_mode = OutputMode.SAME
        self.custom_output_dir = ""
        self.state = JobState()
        self._sentinel = re.compile(self.policy.sentinel_pattern)
        self._clock = clock

        self._in_flight = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._loop_thread: Optional[int] = None
        self._done: Optional[asyncio.Event] = None
        self._engine_task: Optional[asyncio.Task] = None
        self._consumer_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._started_at = 0.0
        self._current_input = ""
        self._current_output: Optional[str] = None

    # ---- output naming -----------------------------------------------------------
    @staticmethod
    def predicted_output_name(input_path: str) -> str:
        return predicted_output_name(input_path)

    def output_folder(self) -> str:
        if self.output_mode == OutputMode.CUSTOM and self.custom_output_dir.strip():
            return self.custom_output_dir
        if not self.input_path:
            return ""
        return os.path.dirname(self.input_path)

    @property
    def output_path(self) -> Optional[str]:
        if not self.input_path:
            return None
        return os.path.join(self.output_folder(), predicted_output_name(self.input_path))

    # ---- logging -----------------------------------------------------------------
    def _log(self, *lines: str) -> None:
        self.state.append_log(*lines)
        if self.run_logger is not None:
            for line in lines:
                self.run_logger.log(line)

    def _result(self) -> JobResult:
        snapshot = self.state.snapshot()
        return JobResult(
            input_path=self._current_input or self.input_path,
            phase=snapshot.phase,
            output_path=snapshot.completed_output_path,
            error=snapshot.error,
        )

    # ---- lifecycle ---------------------------------------------------------------
    async def run(self) -> JobResult:
        """Process :attr:`input_path` and return once the job is terminal."""

        if self._in_flight:
            self._log("A job is already running; wait for it to finish or cancel it first.")
            return self._result()

        input_path = self.input_path or ""
        if not input_path.strip():
            self.state.set_error(InvalidInputError())
            self._log("ERROR: No input file selected.")
            if self.run_logger is not None:
                self.run_logger.log_error("No input file selected.")
            return self._result()

        self._in_flight = True
        self._loop = asyncio.get_running_loop()
        self._loop_thread = threading.get_ident()
        self._done = asyncio.Event()
        self._cancel_requested = False
        self._engine_task = self._consumer_task = self._poll_task = None
        self._current_input = input_path
        self._current_output = self.output_path
        self.state.begin()
        try:
            try:
                await self._start(input_path)
            except Exception as exc:
                self._fail(InternalFailureError(f"Could not start job: {type(exc).__name__}: {exc}"))
            await self._done.wait()
        finally:
            await self._teardown()
            self._in_flight = False
        return self._result()

    async def _start(self, input_path: str) -> None:
        if not self._exists(input_path):
            self._fail(InvalidInputError(f"Input file not found: {input_path}"))
            return

        folder = self.output_folder()
        self._log(
            f"Input: {input_path}",
            f"Output folder: {folder}",
            f"Expected output file: {predicted_output_name(input_path)}",
        )
        stacking = self.settings.stacking_summary()
        if stacking:
            self._log("Filter stacking detected, applying attenuation:", *(f"  - {line}" for line in stacking))

        await self._seed_duration(input_path)
        if self.state.phase not in ACTIVE_PHASES:
            return

        record = compile_settings(self.settings, folder)
        channel = LineChannel(self._loop)
        self._started_at = self._clock()
        self._consumer_task = asyncio.create_task(self._consume(channel))
        self._engine_task = asyncio.create_task(self._drive_engine(input_path, record, channel))

    async def _seed_duration(self, input_path: str) -> None:
        if self.duration_probe is None:
            return
        timer = self.run_logger.step("duration probe") if self.run_logger is not None else nullcontext()
        try:
            with timer:
                seconds = await self.duration_probe.probe(input_path)
        except Exception as exc:
            self._log(f"Warning: could not determine duration: {exc}")
            return
        if self.state.latch_duration(seconds):
            self._log(f"Duration: {seconds:.2f}s")

    async def _drive_engine(self, input_path: str, record, channel: LineChannel) -> None:
        status: int = EngineStatus.INTERNAL
        crash: Optional[BaseException] = None
        try:
            status = await self.engine.process(input_path, record, channel)
        except asyncio.CancelledError:
            channel.close()
            raise
        except Exception as exc:
            crash = exc
        channel.close()
        if self._consumer_task is not None:
            await asyncio.gather(self._consumer_task, return_exceptions=True)

        if crash is not None:
            self._fail(InternalFailureError(f"Engine raised {type(crash).__name__}: {crash}"))
            return
        self._on_engine_status(int(status))

    def _on_engine_status(self, status: int) -> None:
        if self.state.phase not in ACTIVE_PHASES:
            return
        if status == EngineStatus.OK:
            if self._poll_task is None or self._poll_task.done():
                self._start_completion_poll()
            return
        error = classify_status(status) or InternalFailureError()
        if isinstance(error, JobCancelledError):
            if self.state.finish(JobPhase.CANCELLED, error=error, lines=("--- Process Cancelled by Engine ---",)):
                self._after_terminal()
            return
        self._fail(error)

    async def _consume(self, channel: LineChannel) -> None:
        async for line in channel:
            if self._cancel_requested or self.state.phase not in ACTIVE_PHASES:
                break
            self._handle_line(line)

    def _handle_line(self, line: str) -> None:
        wall_elapsed = self._clock() - self._started_at
        update = parse_line(line, self.state.duration, wall_elapsed)
        self.state.record_line(line, update)
        if self.run_logger is not None:
            self.run_logger.log(line)
        if self._sentinel.search(line):
            if self.state.duration > 0:
                self.state.force_progress(1.0)
            self._start_completion_poll()

    # ---- completion detection ----------------------------------------------------
    def _start_completion_poll(self) -> None:
        if not self.state.enter_completion_check():
            return
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._poll_task = asyncio.create_task(self._completion_poll(self._current_output))

    def _exists(self, path: str) -> bool:
        try:
            return self.file_system.exists(path)
        except (OSError, ValueError):
            return False

    def _read_size(self, path: Optional[str]) -> Optional[int]:
        if not path or not self._exists(path):
            return None
        try:
            return self.file_system.size(path)
        except (OSError, ValueError):
            return None

    async def _completion_poll(self, path: Optional[str]) -> None:
        try:
            verified = await self._wait_for_output(path)
        except Exception as exc:
            self._log(f"Warning: output check failed: {exc}")
            verified = None
        self._complete(verified)

    async def _wait_for_output(self, path: Optional[str]) -> Optional[str]:
        """Return ``path`` once its size settles, or ``None`` if it never shows up."""

        policy = self.policy
        previous: Optional[int] = None
        stable = 0
        for _ in range(policy.max_attempts):
            await asyncio.sleep(policy.poll_interval)
            if self.state.phase not in ACTIVE_PHASES:
                return None
            size = self._read_size(path)
            if size is None or size <= 0:
                previous, stable = None, 0
                continue
            stable = stable + 1 if size == previous else 0
            previous = size
            if stable >= policy.required_stable_checks:
                return path
        size = self._read_size(path)
        return path if size is not None and size > 0 else None

    def _complete(self, path: Optional[str]) -> None:
        message = "Process Finished Successfully" if path else "Process Finished (output file not verified)"
        if self.state.finish(JobPhase.COMPLETED, output_path=path, lines=(message,)):
            if self.run_logger is not None:
                self.run_logger.log(message)
            self._after_terminal()

    def _fail(self, error: JobError) -> None:
        lines = (
            f"--- ERROR: {error.message} ---",
            f"Context: {self.state.failure_context}",
            f"Input: {self._current_input}",
        )
        if self.state.finish(JobPhase.FAILED, error=error, lines=lines):
            if self.run_logger is not None:
                self.run_logger.log_error(f"{error.message} ({self._current_input})")
            self._after_terminal()

    def _after_terminal(self) -> None:
        if self._done is not None:
            self._done.set()

    # ---- cancellation ------------------------------------------------------------
    def cancel(self) -> None:
        """Stop the current job. Safe to call repeatedly and from any thread."""

        if not self.state.finish(
            JobPhase.CANCELLED, error=JobCancelledError(), lines=("--- User Canceled Process ---",)
        ):
            return
        self._cancel_requested = True
        if self.run_logger is not None:
            self.run_logger.mark_cancelled()
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        if threading.get_ident() == self._loop_thread:
            self._signal_cancel()
        else:
            loop.call_soon_threadsafe(self._signal_cancel)

    def _signal_cancel(self) -> None:
        try:
            self.engine.cancel()
        except Exception as exc:
            self.state.append_log(f"Warning: engine did not accept cancel request: {exc}")
        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        self._after_terminal()

    async def _teardown(self) -> None:
        engine_task = self._engine_task
        if engine_task is not None and not engine_task.done() and self.state.phase is JobPhase.COMPLETED:
            # The output may still be flushing after an early sentinel.
            await asyncio.wait({engine_task}, timeout=self.policy.engine_grace)
        if engine_task is not None and not engine_task.done() and not self._cancel_requested:
            try:
                self.engine.cancel()
            except Exception as exc:
                self.state.append_log(f"Warning: engine did not accept cancel request: {exc}")
        pending = [
            task
            for task in (self._engine_task, self._consumer_task, self._poll_task)
            if task is not None and not task.done()
        ]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)


__all__ = [
    "ACTIVE_PHASES",
    "CompletionPolicy",
    "JobPhase",
    "JobResult",
    "JobRunner",
    "JobSnapshot",
    "JobState",
    "OutputMode",
    "TERMINAL_PHASES",
    "predicted_output_name",
]

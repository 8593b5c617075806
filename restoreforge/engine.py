"""Encoder engines and the collaborators a job runner talks to.

An engine receives an input path and a compiled :class:`ParameterRecord`,
streams its diagnostic output into a :class:`LineChannel` and returns an
:class:`~restoreforge.errors.EngineStatus` code. Engines are constructed
explicitly and handed to the runner, so several runners can own separate
engines and tests can substitute fakes.
"""

from __future__ import annotations

import asyncio
import codecs
import ctypes
import os
import re
import shlex
import threading
from pathlib import Path
from typing import AsyncIterator, Callable, Optional, Protocol, Union

from .errors import EngineStatus
from .ffmpeg import FFmpegTooling, output_file_for
from .params import ParameterRecord
from .settings import AppSettings

PathLike = Union[str, Path]

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class LineChannel:
    """Ordered queue of output lines between an engine and its consumer.

    ``push`` and ``feed`` must run on the event loop thread; foreign threads
    use ``push_threadsafe``. ``close`` ends the stream.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        self._loop = loop or asyncio.get_running_loop()
        self._queue: asyncio.Queue[Optional[str]] = asyncio.Queue()
        self._partial = ""
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, text: str) -> None:
        """Queue every non-blank line of ``text``; ``\\r`` counts as a line break."""

        if self._closed or not text:
            return
        for piece in _LINE_BREAK.split(text):
            if piece.strip():
                self._queue.put_nowait(piece)

    def feed(self, chunk: str) -> None:
        """Queue complete lines from a raw stream chunk and keep the trailing fragment."""

        if self._closed or not chunk:
            return
        pieces = _LINE_BREAK.split(self._partial + chunk)
        self._partial = pieces.pop()
        for piece in pieces:
            if piece.strip():
                self._queue.put_nowait(piece)

    def flush(self) -> None:
        partial, self._partial = self._partial, ""
        self.push(partial)

    def push_threadsafe(self, text: str) -> None:
        if self._loop.is_closed():
            return
        try:
            self._loop.call_soon_threadsafe(self.push, text)
        except RuntimeError:
            # Loop shut down between the check and the call.
            pass

    def close(self) -> None:
        if self._closed:
            return
        self.flush()
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is None:
            self._queue.put_nowait(None)
            raise StopAsyncIteration
        return item


class Engine(Protocol):
    async def process(self, input_path: PathLike, record: ParameterRecord, channel: LineChannel) -> int:
        ...

    def cancel(self) -> None:
        ...


class DurationProbe(Protocol):
    async def probe(self, path: PathLike) -> float:
        ...


class FileSystem(Protocol):
    def exists(self, path: PathLike) -> bool:
        ...

    def size(self, path: PathLike) -> Optional[int]:
        ...


class LocalFileSystem:
    """:class:`FileSystem` backed by the real disk."""

    def exists(self, path: PathLike) -> bool:
        # False for names the OS rejects (too long, embedded NUL).
        return os.path.exists(path)

    def size(self, path: PathLike) -> Optional[int]:
        try:
            return os.stat(path).st_size
        except (OSError, ValueError):
            return None


class FFprobeDurationProbe:
    """:class:`DurationProbe` that asks ffprobe in a worker thread."""

    def __init__(self, tooling: Optional[FFmpegTooling] = None) -> None:
        self.tooling = tooling or FFmpegTooling()

    async def probe(self, path: PathLike) -> float:
        return await asyncio.to_thread(self.tooling.probe_duration, Path(path))


def _record_outdir(record: ParameterRecord) -> Optional[str]:
    outdir = record.outdir.decode("utf-8", "surrogateescape")
    return outdir or None


class FFmpegEngine:
    """Run the restore chain as an ``ffmpeg`` subprocess."""

    def __init__(self, tooling: Optional[FFmpegTooling] = None, *, dry_run: bool = False) -> None:
        self.tooling = tooling or FFmpegTooling()
        self.dry_run = dry_run
        self._process: Optional[asyncio.subprocess.Process] = None
        self._cancelled = False

    async def process(self, input_path: PathLike, record: ParameterRecord, channel: LineChannel) -> int:
        self._cancelled = False
        source = Path(input_path)
        output = output_file_for(source, _record_outdir(record))
        command = self.tooling.build_command(source, output, record)
        channel.push(f"Processing: {source}")

        if self.dry_run:
            channel.push("CMD: " + shlex.join(command))
            return EngineStatus.OK
        if not os.path.exists(source):
            channel.push(f"Error: input file not found: {source}")
            return EngineStatus.IO
        try:
            output.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            channel.push(f"Error: cannot create output folder {output.parent}: {exc}")
            return EngineStatus.IO

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except FileNotFoundError:
            channel.push(f"Error: ffmpeg executable not found: {self.tooling.ffmpeg_bin}")
            return EngineStatus.FFMPEG_NOT_FOUND
        except OSError as exc:
            channel.push(f"Error: failed to start ffmpeg: {exc}")
            return EngineStatus.IO

        self._process = process
        decoder = codecs.getincrementaldecoder("utf-8")("replace")
        try:
            assert process.stdout is not None
            while True:
                chunk = await process.stdout.read(4096)
                if not chunk:
                    break
                channel.feed(decoder.decode(chunk))
            returncode = await process.wait()
        except asyncio.CancelledError:
            self._terminate(process)
            raise
        finally:
            self._process = None
        channel.feed(decoder.decode(b"", final=True))
        channel.flush()

        if self._cancelled:
            return EngineStatus.CANCELLED
        if returncode != 0:
            channel.push(f"Error: FFmpeg returned code {returncode}")
            return EngineStatus.INTERNAL
        channel.push("Done.")
        return EngineStatus.OK

    @staticmethod
    def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.terminate()
            except ProcessLookupError:
                pass

    def cancel(self) -> None:
        """Terminate the running ffmpeg process. Must be called on the loop thread."""

        self._cancelled = True
        process = self._process
        if process is not None:
            self._terminate(process)


LOG_CALLBACK = ctypes.CFUNCTYPE(None, ctypes.c_char_p)


class NativeEngine:
    """Drive ``libup60p`` through :mod:`ctypes`.

    The library keeps a single process-wide log callback and cancel flag, so
    only one :class:`NativeEngine` should be processing at a time.
    """

    def __init__(
        self,
        library_path: Optional[PathLike],
        *,
        dry_run: bool = False,
        loader: Callable[[str], ctypes.CDLL] = ctypes.CDLL,
    ) -> None:
        self.library_path = Path(library_path) if library_path else None
        self.dry_run = dry_run
        self._loader = loader
        self._lib: Optional[ctypes.CDLL] = None
        self._callback = LOG_CALLBACK(self._on_log)
        self._channel: Optional[LineChannel] = None
        self._lock = threading.Lock()

    def _on_log(self, message: Optional[bytes]) -> None:
        channel = self._channel
        if channel is None or not message:
            return
        channel.push_threadsafe(message.decode("utf-8", "replace"))

    def _load(self) -> tuple[ctypes.CDLL, int]:
        with self._lock:
            if self._lib is not None:
                return self._lib, EngineStatus.OK
            lib = self._loader(str(self.library_path))
            lib.up60p_init.argtypes = [ctypes.c_char_p, LOG_CALLBACK]
            lib.up60p_init.restype = ctypes.c_int
            lib.up60p_process_path.argtypes = [ctypes.c_char_p, ctypes.POINTER(ParameterRecord)]
            lib.up60p_process_path.restype = ctypes.c_int
            lib.up60p_set_dry_run.argtypes = [ctypes.c_int]
            lib.up60p_set_dry_run.restype = None
            lib.up60p_request_cancel.argtypes = []
            lib.up60p_request_cancel.restype = None
            status = int(lib.up60p_init(None, self._callback))
            if status == EngineStatus.OK:
                self._lib = lib
            return lib, status

    async def process(self, input_path: PathLike, record: ParameterRecord, channel: LineChannel) -> int:
        if self.library_path is None or not self.library_path.exists():
            channel.push(f"Error: native engine library not found: {self.library_path}")
            return EngineStatus.FFMPEG_NOT_FOUND
        self._channel = channel
        try:
            try:
                lib, status = self._load()
            except OSError as exc:
                channel.push(f"Error: failed to load native engine: {exc}")
                return EngineStatus.FFMPEG_NOT_FOUND
            if status != EngineStatus.OK:
                channel.push(f"ERROR: C engine initialization failed (code: {status})")
                return status
            lib.up60p_set_dry_run(1 if self.dry_run else 0)
            path = os.fsencode(str(input_path))
            return int(await asyncio.to_thread(lib.up60p_process_path, path, ctypes.byref(record)))
        finally:
            self._channel = None

    def cancel(self) -> None:
        lib = self._lib
        if lib is not None:
            lib.up60p_request_cancel()


def build_engine(settings: AppSettings) -> Engine:
    """Construct the engine selected by ``settings.engine.backend``."""

    config = settings.engine
    backend = (config.backend or "ffmpeg").strip().lower()
    if backend == "native":
        return NativeEngine(config.library_path, dry_run=config.dry_run)
    if backend == "ffmpeg":
        tooling = FFmpegTooling(config.ffmpeg_bin, config.ffprobe_bin)
        return FFmpegEngine(tooling, dry_run=config.dry_run)
    raise ValueError(f"Unknown engine backend: {config.backend!r}")


__all__ = [
    "DurationProbe",
    "Engine",
    "FFmpegEngine",
    "FFprobeDurationProbe",
    "FileSystem",
    "LineChannel",
    "LocalFileSystem",
    "NativeEngine",
    "build_engine",
]

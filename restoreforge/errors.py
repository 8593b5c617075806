"""Typed failures raised or reported by a restore job."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Optional


class EngineStatus(IntEnum):
    """Status codes returned by an encoder engine (``up60p_error`` in the native ABI)."""

    OK = 0
    INVALID_OPTIONS = 1
    FFMPEG_NOT_FOUND = 2
    IO = 3
    INTERNAL = 4
    CANCELLED = 5


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    ENGINE_NOT_AVAILABLE = "engine_not_available"
    IO_FAILURE = "io_failure"
    INTERNAL_FAILURE = "internal_failure"
    CANCELLED = "cancelled"
    UNKNOWN_STATUS = "unknown_status"


class JobError(RuntimeError):
    """Base class for everything that can end a job without an output."""

    kind: ErrorKind = ErrorKind.INTERNAL_FAILURE
    default_message = "Job failed."

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInputError(JobError):
    """The input path is empty or does not exist; the engine was never invoked."""

    kind = ErrorKind.INVALID_INPUT
    default_message = "No input file selected."


class EngineNotAvailableError(JobError):
    kind = ErrorKind.ENGINE_NOT_AVAILABLE
    default_message = "FFmpeg executable not found. Please check that ffmpeg is installed or configured."


class IOFailureError(JobError):
    kind = ErrorKind.IO_FAILURE
    default_message = "I/O error occurred. Check that the input file exists and the output folder is writable."


class InternalFailureError(JobError):
    kind = ErrorKind.INTERNAL_FAILURE
    default_message = "Internal error occurred."


class JobCancelledError(JobError):
    """User-initiated stop. Reported like an error but not a fault."""

    kind = ErrorKind.CANCELLED
    default_message = "Job cancelled by user."


class UnknownStatusError(JobError):
    """The engine returned a status code outside :class:`EngineStatus`."""

    kind = ErrorKind.UNKNOWN_STATUS

    def __init__(self, code: int, message: Optional[str] = None) -> None:
        self.code = int(code)
        super().__init__(message or f"Unknown error (code: {self.code})")


_STATUS_ERRORS: dict[int, type[JobError]] = {
    EngineStatus.INVALID_OPTIONS: InvalidInputError,
    EngineStatus.FFMPEG_NOT_FOUND: EngineNotAvailableError,
    EngineStatus.IO: IOFailureError,
    EngineStatus.INTERNAL: InternalFailureError,
    EngineStatus.CANCELLED: JobCancelledError,
}


def classify_status(code: int) -> Optional[JobError]:
    """Map an engine status code to a :class:`JobError`, or ``None`` for success."""

    if code == EngineStatus.OK:
        return None
    error_type = _STATUS_ERRORS.get(code)
    if error_type is None:
        return UnknownStatusError(code)
    if error_type is InvalidInputError:
        return InvalidInputError("The engine rejected the encode options.")
    return error_type()


__all__ = [
    "EngineNotAvailableError",
    "EngineStatus",
    "ErrorKind",
    "IOFailureError",
    "InternalFailureError",
    "InvalidInputError",
    "JobCancelledError",
    "JobError",
    "UnknownStatusError",
    "classify_status",
]

"""Per-job log files and the shared Rich console."""

from __future__ import annotations

import shutil
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional, TextIO
from uuid import uuid4

from rich.console import Console

from .config import LOGS_DIR

_console = Console()

LATEST_LOG_NAME = "restoreforge.log"


def get_console() -> Console:
    """Return the shared :class:`~rich.console.Console` instance."""

    return _console


def prune_logs(logs_dir: Path = LOGS_DIR, max_age_hours: int = 24) -> int:
    """Delete job logs older than ``max_age_hours`` and return how many went."""

    if not logs_dir.is_dir():
        return 0
    cutoff = time.time() - max_age_hours * 3600
    removed = 0
    for candidate in logs_dir.glob("*.log"):
        if candidate.name == LATEST_LOG_NAME:
            continue
        try:
            if candidate.stat().st_mtime < cutoff:
                candidate.unlink()
                removed += 1
        except OSError:
            continue
    return removed


class RunLogger:
    """File sink for one job.

    Every line the runner appends to its in-memory log is mirrored here,
    prefixed with the seconds since the job started. :meth:`close` records
    the outcome and copies the file to ``restoreforge.log`` so the most
    recent job is always at the same path.
    """

    def __init__(self, run_id: str, log_path: Path, *, clock: Callable[[], float] = time.monotonic) -> None:
        self.run_id = run_id
        self.path = log_path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.outcome = "completed"
        self.detail: Optional[str] = None
        self._clock = clock
        self._started = clock()
        self._handle: Optional[TextIO] = log_path.open("w", encoding="utf8")
        self._write(f"Job {run_id} started {datetime.now(timezone.utc):%Y-%m-%d %H:%M:%S} UTC")

    @classmethod
    def start(cls, logs_dir: Path = LOGS_DIR, max_age_hours: int = 24) -> "RunLogger":
        """Prune stale logs and open a new one named after the start time."""

        prune_logs(logs_dir, max_age_hours)
        run_id = f"{datetime.now(timezone.utc):%Y%m%d-%H%M%S}-{uuid4().hex[:8]}"
        return cls(run_id, logs_dir / f"{run_id}.log")

    @property
    def closed(self) -> bool:
        return self._handle is None

    def _write(self, message: str) -> None:
        if self._handle is None:
            return
        self._handle.write(f"[+{self._clock() - self._started:8.2f}s] {message}\n")
        self._handle.flush()

    def log(self, message: str) -> None:
        self._write(message)

    def log_error(self, message: str) -> None:
        """Record ``message`` and mark the job as failed."""

        self.outcome, self.detail = "failed", message
        self._write(f"ERROR: {message}")

    def mark_cancelled(self) -> None:
        self.outcome, self.detail = "cancelled", None
        self._write("CANCELLED by user")

    @contextmanager
    def step(self, label: str) -> Iterator[None]:
        """Time the enclosed block and log how long ``label`` took."""

        began = self._clock()
        try:
            yield
        except Exception as exc:
            self._write(f"{label} failed after {self._clock() - began:.2f}s: {exc}")
            raise
        self._write(f"{label} took {self._clock() - began:.2f}s")

    def close(self) -> None:
        if self._handle is None:
            return
        detail = f" ({self.detail})" if self.detail else ""
        self._write(f"Job {self.run_id} {self.outcome}{detail}")
        self._handle.close()
        self._handle = None
        try:
            shutil.copyfile(self.path, self.path.with_name(LATEST_LOG_NAME))
        except OSError as exc:
            _console.print(f"[yellow]Could not update {LATEST_LOG_NAME}: {exc}[/yellow]")


__all__ = [
    "LATEST_LOG_NAME",
    "RunLogger",
    "get_console",
    "prune_logs",
]

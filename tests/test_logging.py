from __future__ import annotations

import os
import time
from pathlib import Path

import pytest

from restoreforge.logging import LATEST_LOG_NAME, RunLogger, prune_logs


class TickClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def _age(path: Path, hours: float) -> None:
    stamp = time.time() - hours * 3600
    os.utime(path, (stamp, stamp))


def test_prune_logs_removes_only_stale_job_logs(tmp_path: Path) -> None:
    stale = tmp_path / "old.log"
    fresh = tmp_path / "new.log"
    latest = tmp_path / LATEST_LOG_NAME
    notes = tmp_path / "notes.txt"
    for path in (stale, fresh, latest, notes):
        path.write_text("x")
    for path in (stale, latest, notes):
        _age(path, 48)

    assert prune_logs(tmp_path, max_age_hours=24) == 1
    assert not stale.exists()
    assert fresh.exists()
    assert latest.exists()
    assert notes.exists()


def test_prune_logs_ignores_missing_directory(tmp_path: Path) -> None:
    assert prune_logs(tmp_path / "absent") == 0


def test_step_logs_elapsed_time(tmp_path: Path) -> None:
    clock = TickClock()
    logger = RunLogger("job", tmp_path / "job.log", clock=clock)

    with logger.step("duration probe"):
        clock.now = 1.5
    with pytest.raises(ValueError):
        with logger.step("compile"):
            clock.now = 2.0
            raise ValueError("bad record")
    logger.close()

    lines = (tmp_path / "job.log").read_text(encoding="utf8").splitlines()
    assert lines[1] == "[+    1.50s] duration probe took 1.50s"
    assert lines[2] == "[+    2.00s] compile failed after 0.50s: bad record"


def test_close_records_outcome_once(tmp_path: Path) -> None:
    logger = RunLogger("job", tmp_path / "job.log")
    logger.log_error("engine crashed")
    logger.close()
    logger.close()
    logger.log("late line")

    text = (tmp_path / "job.log").read_text(encoding="utf8")
    assert logger.closed
    assert text.count("Job job failed (engine crashed)") == 1
    assert "late line" not in text
    assert (tmp_path / LATEST_LOG_NAME).read_text(encoding="utf8") == text


def test_cancelled_outcome(tmp_path: Path) -> None:
    logger = RunLogger("job", tmp_path / "job.log")
    logger.mark_cancelled()
    logger.close()

    text = (tmp_path / "job.log").read_text(encoding="utf8")
    assert "CANCELLED by user" in text
    assert text.rstrip().endswith("Job job cancelled")


def test_start_prunes_and_names_log_by_time(tmp_path: Path) -> None:
    stale = tmp_path / "old.log"
    stale.write_text("x")
    _age(stale, 48)

    logger = RunLogger.start(tmp_path, max_age_hours=24)
    logger.close()

    assert not stale.exists()
    assert logger.path.parent == tmp_path
    assert logger.path.name == f"{logger.run_id}.log"
    assert logger.path.is_file()

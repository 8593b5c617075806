"""Stateless parsing of ffmpeg ``-stats`` output into progress and ETA."""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import Optional

ETA_PLACEHOLDER = "--:--"
ETA_DONE = "0:00"

_TIME_TOKEN = r"-?(?:\d+:)?(?:\d{1,2}:)?\d+(?:\.\d+)?"
_DURATION_RE = re.compile(r"Duration:\s*(" + _TIME_TOKEN + r")")
_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([0-9.]+|N/A)")
_TIME_RE = re.compile(r"time=\s*(" + _TIME_TOKEN + r"|N/A)")
_SPEED_RE = re.compile(r"speed=\s*([0-9.eE+-]+)x")


@dataclass(frozen=True, slots=True)
class ProgressUpdate:
    """Facts extracted from one line of encoder output; unset fields are ``None``."""

    new_duration: Optional[float] = None
    frame: Optional[int] = None
    fps: Optional[str] = None
    time_string: Optional[str] = None
    elapsed_seconds: Optional[float] = None
    progress: Optional[float] = None
    eta: Optional[str] = None
    speed: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.new_duration,
                self.frame,
                self.fps,
                self.time_string,
                self.elapsed_seconds,
                self.progress,
                self.eta,
                self.speed,
            )
        )


def parse_time_string(text: Optional[str]) -> Optional[float]:
    """Convert ``SS.cc``, ``M:SS.cc`` or ``H:MM:SS.cc`` into seconds.

    Hours are not bounded. Returns ``None`` for anything else.
    """

    if not text:
        return None
    token = text.strip()
    negative = token.startswith("-")
    if negative:
        token = token[1:]
    parts = token.split(":")
    if not 1 <= len(parts) <= 3 or any(not part for part in parts):
        return None
    try:
        seconds = float(parts[-1])
        minutes = int(parts[-2]) if len(parts) >= 2 else 0
        hours = int(parts[-3]) if len(parts) == 3 else 0
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0 or minutes < 0 or hours < 0:
        return None
    total = hours * 3600 + minutes * 60 + seconds
    return -total if negative else total


def format_time(seconds: float) -> str:
    """Format ``seconds`` as ``M:SS`` or ``H:MM:SS``, truncating fractions.

    Negative values keep a leading minus sign; NaN and infinities give ``--:--``.
    """

    try:
        value = float(seconds)
    except (TypeError, ValueError):
        return ETA_PLACEHOLDER
    if not math.isfinite(value):
        return ETA_PLACEHOLDER
    sign = "-" if value < 0 and int(abs(value)) > 0 else ""
    total = int(abs(value))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{sign}{hours}:{minutes:02d}:{secs:02d}"
    return f"{sign}{minutes}:{secs:02d}"


def _estimate_eta(
    elapsed: float, duration: float, wall_elapsed: Optional[float], speed: Optional[float]
) -> tuple[Optional[float], str]:
    remaining = duration - elapsed
    if remaining <= 0:
        return 1.0, ETA_DONE
    rate: Optional[float] = None
    if wall_elapsed is not None and wall_elapsed > 0 and elapsed > 0:
        rate = elapsed / wall_elapsed
    elif speed is not None and speed > 0:
        rate = speed
    if not rate or not math.isfinite(rate):
        return None, ETA_PLACEHOLDER
    return None, format_time(remaining / rate)


def parse_line(
    line: str,
    current_duration: float = 0.0,
    wall_elapsed: Optional[float] = None,
) -> ProgressUpdate:
    """Parse a single output line.

    ``current_duration`` is the media length known so far (0 when unknown),
    ``wall_elapsed`` the wall-clock seconds since the encode started. A
    ``Duration:`` found on the same line takes precedence over
    ``current_duration``. Lines that match nothing give an empty update.
    """

    if not line:
        return ProgressUpdate()

    new_duration: Optional[float] = None
    duration_match = _DURATION_RE.search(line)
    if duration_match:
        parsed = parse_time_string(duration_match.group(1))
        if parsed is not None and parsed > 0:
            new_duration = parsed

    frame_match = _FRAME_RE.search(line)
    fps_match = _FPS_RE.search(line)
    time_match = _TIME_RE.search(line)
    if not (frame_match and fps_match and time_match):
        return ProgressUpdate(new_duration=new_duration)

    time_string = time_match.group(1)
    elapsed = parse_time_string(time_string) if time_string != "N/A" else None
    speed: Optional[float] = None
    speed_match = _SPEED_RE.search(line)
    if speed_match:
        try:
            speed = float(speed_match.group(1))
        except ValueError:
            speed = None

    try:
        known = float(current_duration or 0.0)
    except (TypeError, ValueError):
        known = 0.0
    duration = new_duration or (known if math.isfinite(known) else 0.0)

    progress: Optional[float] = None
    eta = ETA_PLACEHOLDER
    if elapsed is not None and duration > 0:
        progress = min(1.0, max(0.0, elapsed / duration))
        forced, eta = _estimate_eta(elapsed, duration, wall_elapsed, speed)
        if forced is not None:
            progress = forced

    return ProgressUpdate(
        new_duration=new_duration,
        frame=int(frame_match.group(1)),
        fps=fps_match.group(1),
        time_string=time_string,
        elapsed_seconds=elapsed,
        progress=progress,
        eta=eta,
        speed=speed,
    )


__all__ = [
    "ETA_DONE",
    "ETA_PLACEHOLDER",
    "ProgressUpdate",
    "format_time",
    "parse_line",
    "parse_time_string",
]

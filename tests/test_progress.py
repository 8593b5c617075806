from __future__ import annotations

import math

import pytest

from restoreforge.progress import ETA_DONE, ETA_PLACEHOLDER, format_time, parse_line, parse_time_string

STATS_LINE = "frame=  240 fps= 48 q=28.0 size=    1024kB time=00:00:10.00 bitrate= 838.9kbits/s speed=2.00x"


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("12.5", 12.5),
        ("1:05.25", 65.25),
        ("01:02:03.50", 3723.5),
        ("100:00:00", 360000.0),
        ("-00:00:01.00", -1.0),
    ],
)
def test_parse_time_string_accepts_clock_forms(text: str, expected: float) -> None:
    assert parse_time_string(text) == pytest.approx(expected)


@pytest.mark.parametrize("text", [None, "", "N/A", "1:2:3:4", "::", "abc", "1::2"])
def test_parse_time_string_rejects_garbage(text) -> None:
    assert parse_time_string(text) is None


@pytest.mark.parametrize(
    ("seconds", "expected"),
    [
        (0, "0:00"),
        (5.9, "0:05"),
        (65, "1:05"),
        (3600, "1:00:00"),
        (3725.4, "1:02:05"),
        (-10, "-0:10"),
        (-0.5, "0:00"),
        (math.nan, ETA_PLACEHOLDER),
        (math.inf, ETA_PLACEHOLDER),
    ],
)
def test_format_time(seconds: float, expected: str) -> None:
    assert format_time(seconds) == expected


def test_duration_line_reports_new_duration_only() -> None:
    update = parse_line("  Duration: 00:01:40.00, start: 0.000000, bitrate: 1205 kb/s")

    assert update.new_duration == pytest.approx(100.0)
    assert update.progress is None
    assert update.frame is None


def test_stats_line_with_known_duration_yields_progress_and_eta() -> None:
    update = parse_line(STATS_LINE, current_duration=100.0, wall_elapsed=5.0)

    assert update.frame == 240
    assert update.fps == "48"
    assert update.time_string == "00:00:10.00"
    assert update.elapsed_seconds == pytest.approx(10.0)
    assert update.progress == pytest.approx(0.1)
    # 90 seconds of media left at 2x wall-clock rate
    assert update.eta == "0:45"
    assert update.speed == pytest.approx(2.0)


def test_speed_is_used_when_wall_clock_is_unknown() -> None:
    update = parse_line(STATS_LINE, current_duration=100.0)

    assert update.eta == "0:45"


def test_unknown_duration_gives_placeholder_eta() -> None:
    update = parse_line(STATS_LINE, current_duration=0.0, wall_elapsed=5.0)

    assert update.progress is None
    assert update.eta == ETA_PLACEHOLDER


def test_time_past_duration_forces_completion() -> None:
    update = parse_line(STATS_LINE, current_duration=8.0, wall_elapsed=5.0)

    assert update.progress == 1.0
    assert update.eta == ETA_DONE


def test_na_time_keeps_progress_unset() -> None:
    update = parse_line("frame=    0 fps=0.0 q=0.0 size=       0kB time=N/A bitrate=N/A speed=N/A", 100.0)

    assert update.time_string == "N/A"
    assert update.elapsed_seconds is None
    assert update.progress is None
    assert update.speed is None


def test_partial_stats_line_is_ignored() -> None:
    update = parse_line("frame=  240 fps= 48", current_duration=100.0)

    assert update.is_empty


def test_negative_time_clamps_progress_to_zero() -> None:
    update = parse_line("frame=    1 fps=0.0 time=-00:00:00.04 speed=N/A", 100.0, wall_elapsed=1.0)

    assert update.progress == 0.0


def test_plain_text_line_is_empty() -> None:
    assert parse_line("Stream #0:0: Video: h264").is_empty
    assert parse_line("").is_empty

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from bitacora.accounting import (
    active_subintervals,
    format_windows,
    parse_windows,
    split_active_minutes,
    split_interval_by_local_day,
    split_minutes_by_windows,
)
from bitacora.errors import ValidationError
from bitacora.models import MinuteSplit, Pause, StellarWindow

UTC = ZoneInfo("UTC")


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_parse_windows() -> None:
    assert parse_windows("00:00-02:00, 16:00-18:00") == (
        StellarWindow(0, 120),
        StellarWindow(960, 1080),
    )
    assert parse_windows("22:00-24:00") == (StellarWindow(1320, 1440),)
    assert parse_windows("") == ()


@pytest.mark.parametrize("spec", ["16:00", "25:00-26:00", "10:00-10:00", "aa:bb-cc:dd", "08:60-09:00"])
def test_parse_windows_rejects_malformed(spec: str) -> None:
    with pytest.raises(ValidationError):
        parse_windows(spec)


def test_format_windows_round_trips_spec() -> None:
    assert format_windows(parse_windows("0:00-2:00,16:00-18:00")) == "00:00-02:00,16:00-18:00"


def test_split_interval_crosses_local_midnight() -> None:
    tz = ZoneInfo("America/New_York")

    start_local = datetime(2026, 1, 1, 23, 50, tzinfo=tz)
    end_local = datetime(2026, 1, 2, 0, 10, tzinfo=tz)

    segments = split_interval_by_local_day(
        start_local.astimezone(timezone.utc),
        end_local.astimezone(timezone.utc),
        tz,
    )

    assert [(day, int((end - start).total_seconds())) for day, start, end in segments] == [
        (date(2026, 1, 1), 600),
        (date(2026, 1, 2), 600),
    ]


def test_split_interval_keeps_23_hour_dst_day() -> None:
    tz = ZoneInfo("America/New_York")
    start = datetime(2026, 3, 8, 0, 0, tzinfo=tz).astimezone(timezone.utc)
    end = datetime(2026, 3, 9, 0, 0, tzinfo=tz).astimezone(timezone.utc)

    segments = split_interval_by_local_day(start, end, tz)

    assert len(segments) == 1
    assert (segments[0][2] - segments[0][1]).total_seconds() == 23 * 3600


def test_split_between_normal_and_stellar_windows() -> None:
    windows = parse_windows("00:00-02:00,16:00-18:00")

    result = split_minutes_by_windows(utc(2026, 2, 1, 15, 0), utc(2026, 2, 1, 17, 0), UTC, windows)

    assert result == MinuteSplit(normal=60, stellar=60)


def test_degenerate_interval_is_zero() -> None:
    windows = parse_windows("16:00-18:00")
    start = utc(2026, 2, 1, 17, 0)

    assert split_minutes_by_windows(start, start, UTC, windows) == MinuteSplit()
    assert split_minutes_by_windows(start, utc(2026, 2, 1, 16, 0), UTC, windows) == MinuteSplit()


def test_window_wrapping_past_midnight() -> None:
    windows = parse_windows("22:00-02:00")

    result = split_minutes_by_windows(utc(2026, 2, 1, 21, 0), utc(2026, 2, 2, 3, 0), UTC, windows)

    assert result == MinuteSplit(normal=120, stellar=240)


def test_overlapping_windows_are_unioned() -> None:
    windows = parse_windows("16:00-18:00,17:00-19:00")

    result = split_minutes_by_windows(utc(2026, 2, 1, 15, 0), utc(2026, 2, 1, 20, 0), UTC, windows)

    assert result == MinuteSplit(normal=120, stellar=180)


def test_windows_follow_local_wall_clock_across_dst() -> None:
    tz = ZoneInfo("America/New_York")
    windows = parse_windows("16:00-18:00")
    start = datetime(2026, 3, 7, 23, 0, tzinfo=tz).astimezone(timezone.utc)
    end = datetime(2026, 3, 8, 23, 0, tzinfo=tz).astimezone(timezone.utc)

    result = split_minutes_by_windows(start, end, tz, windows)

    assert result == MinuteSplit(normal=23 * 60 - 120, stellar=120)


def test_split_floors_to_whole_minutes() -> None:
    windows = parse_windows("10:00-11:00")

    # 2m20s in total, 1m50s of it stellar.
    result = split_minutes_by_windows(utc(2026, 2, 1, 9, 59, 30), utc(2026, 2, 1, 10, 1, 50), UTC, windows)

    assert result == MinuteSplit(normal=1, stellar=1)


@pytest.mark.parametrize(
    ("start", "end"),
    [
        (utc(2026, 2, 1, 0, 0, 17), utc(2026, 2, 3, 19, 44, 59)),
        (utc(2026, 2, 1, 1, 59, 59), utc(2026, 2, 1, 16, 0, 1)),
        (utc(2026, 2, 1, 17, 30), utc(2026, 2, 1, 17, 30, 59)),
    ],
)
def test_normal_plus_stellar_equals_floored_duration(start: datetime, end: datetime) -> None:
    windows = parse_windows("00:00-02:00,16:00-18:00")

    result = split_minutes_by_windows(start, end, ZoneInfo("America/Mexico_City"), windows)

    assert result.total == int((end - start).total_seconds() // 60)


def test_active_subintervals_remove_pauses() -> None:
    pauses = [
        Pause(id=2, session_id=1, pause_start=utc(2026, 2, 1, 11, 0), pause_end=utc(2026, 2, 1, 11, 30)),
        Pause(id=1, session_id=1, pause_start=utc(2026, 2, 1, 10, 15), pause_end=utc(2026, 2, 1, 10, 45)),
    ]

    gaps = active_subintervals(utc(2026, 2, 1, 10, 0), utc(2026, 2, 1, 12, 0), pauses)

    assert gaps == [
        (utc(2026, 2, 1, 10, 0), utc(2026, 2, 1, 10, 15)),
        (utc(2026, 2, 1, 10, 45), utc(2026, 2, 1, 11, 0)),
        (utc(2026, 2, 1, 11, 30), utc(2026, 2, 1, 12, 0)),
    ]


def test_open_pause_extends_to_end() -> None:
    pauses = [Pause(id=1, session_id=1, pause_start=utc(2026, 2, 1, 10, 30))]

    gaps = active_subintervals(utc(2026, 2, 1, 10, 0), utc(2026, 2, 1, 12, 0), pauses)

    assert gaps == [(utc(2026, 2, 1, 10, 0), utc(2026, 2, 1, 10, 30))]


def test_split_active_minutes_sums_gaps() -> None:
    windows = parse_windows("16:00-18:00")
    pauses = [Pause(id=1, session_id=1, pause_start=utc(2026, 2, 1, 15, 30), pause_end=utc(2026, 2, 1, 16, 30))]

    result = split_active_minutes(utc(2026, 2, 1, 15, 0), utc(2026, 2, 1, 17, 0), pauses, UTC, windows)

    assert result == MinuteSplit(normal=30, stellar=30)

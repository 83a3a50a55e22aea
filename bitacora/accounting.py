from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .errors import ValidationError
from .models import MinuteSplit, Pause, StellarWindow

MINUTE = timedelta(minutes=1)
MINUTES_PER_DAY = 24 * 60

_WINDOW_RE = re.compile(r"^(\d{1,2}):(\d{2})\s*-\s*(\d{1,2}):(\d{2})$")


def parse_windows(spec: str) -> tuple[StellarWindow, ...]:
    """Parse ``"HH:MM-HH:MM,HH:MM-HH:MM"`` into stellar windows.

    An empty spec means no stellar time at all. ``24:00`` is accepted as an
    end so a window can run up to midnight; an end before the start wraps
    into the next day.
    """
    windows: list[StellarWindow] = []
    for part in spec.split(","):
        part = part.strip()
        if not part:
            continue
        match = _WINDOW_RE.match(part)
        if match is None:
            raise ValidationError(f"Invalid stellar window {part!r}, expected HH:MM-HH:MM")

        h1, m1, h2, m2 = (int(group) for group in match.groups())
        start = _minute_of_day(h1, m1, part, allow_midnight_end=False)
        end = _minute_of_day(h2, m2, part, allow_midnight_end=True)
        if start == end:
            raise ValidationError(f"Stellar window {part!r} is empty")
        windows.append(StellarWindow(start_minute=start, end_minute=end))
    return tuple(windows)


def _minute_of_day(hours: int, minutes: int, part: str, *, allow_midnight_end: bool) -> int:
    if allow_midnight_end and hours == 24 and minutes == 0:
        return MINUTES_PER_DAY
    if hours > 23 or minutes > 59:
        raise ValidationError(f"Invalid time of day in stellar window {part!r}")
    return hours * 60 + minutes


def format_windows(windows: Iterable[StellarWindow]) -> str:
    def fmt(minute: int) -> str:
        return f"{minute // 60:02}:{minute % 60:02}"

    return ",".join(f"{fmt(w.start_minute)}-{fmt(w.end_minute)}" for w in windows)


def _to_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


def _local_midnight_utc(day: date, tz: ZoneInfo) -> datetime:
    return datetime.combine(day, time.min, tzinfo=tz).astimezone(timezone.utc)


def split_interval_by_local_day(
    start_utc: datetime,
    end_utc: datetime,
    tz: ZoneInfo,
) -> list[tuple[date, datetime, datetime]]:
    """Cut ``[start, end)`` at local midnights.

    Midnights are resolved per calendar day, so a DST day yields a 23h or 25h
    segment instead of drifting on fixed 24h steps.
    """
    start = _to_utc(start_utc)
    end = _to_utc(end_utc)

    segments: list[tuple[date, datetime, datetime]] = []
    cursor = start

    while cursor < end:
        local_day = cursor.astimezone(tz).date()
        next_midnight_utc = _local_midnight_utc(local_day + timedelta(days=1), tz)

        chunk_end = min(end, next_midnight_utc)
        if chunk_end > cursor:
            segments.append((local_day, cursor, chunk_end))

        cursor = chunk_end

    return segments


def _window_instance(day: date, window: StellarWindow, tz: ZoneInfo) -> tuple[datetime, datetime]:
    """Place a recurring window on the wall clock of ``day``, in UTC."""
    start = _local_wall_time(day, window.start_minute, tz)
    end_day = day + timedelta(days=1) if window.wraps else day
    end = _local_wall_time(end_day, window.end_minute, tz)
    return start, end


def _local_wall_time(day: date, minute_of_day: int, tz: ZoneInfo) -> datetime:
    extra_days, minute = divmod(minute_of_day, MINUTES_PER_DAY)
    local = datetime.combine(day + timedelta(days=extra_days), time(minute // 60, minute % 60), tzinfo=tz)
    return local.astimezone(timezone.utc)


def _union_duration(intervals: list[tuple[datetime, datetime]]) -> timedelta:
    total = timedelta(0)
    current_start: datetime | None = None
    current_end: datetime | None = None

    for start, end in sorted(intervals):
        if current_end is None or start > current_end:
            if current_end is not None:
                total += current_end - current_start
            current_start, current_end = start, end
        elif end > current_end:
            current_end = end

    if current_end is not None:
        total += current_end - current_start
    return total


def split_minutes_by_windows(
    start_utc: datetime,
    end_utc: datetime,
    tz: ZoneInfo,
    windows: Sequence[StellarWindow],
) -> MinuteSplit:
    """Split ``[start, end)`` into normal and stellar whole minutes.

    Window instances are unioned before being measured, so overlapping
    windows never count the same minute twice, and
    ``normal + stellar == floor((end - start) / 1 minute)`` always holds.
    """
    start = _to_utc(start_utc)
    end = _to_utc(end_utc)
    if end <= start:
        return MinuteSplit()

    total_minutes = (end - start) // MINUTE

    overlaps: list[tuple[datetime, datetime]] = []
    for day, seg_start, seg_end in split_interval_by_local_day(start, end, tz):
        # Windows from the previous day may wrap into this one.
        for window_day in (day - timedelta(days=1), day):
            for window in windows:
                w_start, w_end = _window_instance(window_day, window, tz)
                lo = max(seg_start, w_start)
                hi = min(seg_end, w_end)
                if hi > lo:
                    overlaps.append((lo, hi))

    stellar = _union_duration(overlaps) // MINUTE
    return MinuteSplit(normal=total_minutes - stellar, stellar=stellar)


def active_subintervals(
    start_utc: datetime,
    end_utc: datetime,
    pauses: Iterable[Pause],
) -> list[tuple[datetime, datetime]]:
    """Remove every pause from ``[start, end)``.

    A pause without an end is treated as lasting until ``end``.
    """
    start = _to_utc(start_utc)
    end = _to_utc(end_utc)
    if end <= start:
        return []

    gaps: list[tuple[datetime, datetime]] = []
    cursor = start
    for pause in sorted(pauses, key=lambda item: item.pause_start):
        pause_start = max(start, _to_utc(pause.pause_start))
        pause_end = min(end, _to_utc(pause.pause_end) if pause.pause_end is not None else end)
        if pause_end <= pause_start:
            continue
        if pause_start > cursor:
            gaps.append((cursor, pause_start))
        cursor = max(cursor, pause_end)

    if cursor < end:
        gaps.append((cursor, end))
    return gaps


def split_active_minutes(
    start_utc: datetime,
    end_utc: datetime,
    pauses: Iterable[Pause],
    tz: ZoneInfo,
    windows: Sequence[StellarWindow],
) -> MinuteSplit:
    result = MinuteSplit()
    for gap_start, gap_end in active_subintervals(start_utc, end_utc, pauses):
        result += split_minutes_by_windows(gap_start, gap_end, tz, windows)
    return result

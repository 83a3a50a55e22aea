import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from bitacora.archiver import PeriodArchiver
from bitacora.config import ActiveSessionPolicy
from bitacora.export import CsvExporter
from bitacora.models import UserTotals
from bitacora.reporter import Reporter, build_leaderboard_lines, period_range

GUILD = "900"


@pytest.fixture
def reporter(db, service, clock) -> Reporter:
    return Reporter(db=db, sessions=service, clock=clock)


def test_period_range_week_starts_on_monday() -> None:
    tz = ZoneInfo("America/Mexico_City")
    now = datetime(2026, 2, 5, 18, 0, tzinfo=timezone.utc)  # Thursday, 12:00 local

    start, end = period_range("week", tz, now)

    assert start == datetime(2026, 2, 2, 0, 0, tzinfo=tz).astimezone(timezone.utc)
    assert end == now


def test_period_range_today_and_month() -> None:
    tz = ZoneInfo("UTC")
    now = datetime(2026, 2, 5, 18, 0, tzinfo=timezone.utc)

    assert period_range("today", tz, now)[0] == datetime(2026, 2, 5, tzinfo=timezone.utc)
    assert period_range("month", tz, now)[0] == datetime(2026, 2, 1, tzinfo=timezone.utc)
    with pytest.raises(ValueError):
        period_range("year", tz, now)


def test_compute_totals_clips_sessions_to_range(reporter, service, clock) -> None:
    service.start(GUILD, "1")
    clock.advance(hours=2)
    service.close(GUILD, "1")

    # Only 16:00-16:30 of the 15:00-17:00 session falls in the range.
    start = clock.now() - timedelta(hours=1)
    totals = reporter.compute_totals(GUILD, "1", start, start + timedelta(minutes=30))

    assert (totals.normal_minutes, totals.stellar_minutes) == (0, 30)


def test_compute_totals_includes_live_session_up_to_now(reporter, service, clock) -> None:
    service.start(GUILD, "1")
    clock.advance(minutes=90)

    totals = reporter.compute_totals(GUILD, "1", clock.now() - timedelta(days=1), clock.now() + timedelta(days=1))

    assert (totals.normal_minutes, totals.stellar_minutes) == (60, 30)


def test_compute_totals_for_unknown_user_is_empty(reporter) -> None:
    now = datetime(2026, 2, 2, tzinfo=timezone.utc)

    assert reporter.compute_totals(GUILD, "404", now, now + timedelta(days=1)) == UserTotals(user_id="404")


def test_top_sorted_by_coins_with_adjustments(reporter, service, clock) -> None:
    service.start(GUILD, "1")
    service.start(GUILD, "2")
    clock.advance(minutes=60)
    service.close(GUILD, "1")
    clock.advance(minutes=60)
    service.close(GUILD, "2")
    service.record_adjustment(GUILD, "1", 60, "event bonus")

    rows = reporter.top(GUILD, clock.now() - timedelta(days=1), clock.now() + timedelta(minutes=1))

    assert [row.user_id for row in rows] == ["2", "1"]
    assert rows[0].coins == Decimal("3.00")
    assert rows[1].coins == Decimal("2.00")
    assert rows[1].adjustment_minutes == 60


def test_top_includes_archived_sessions(reporter, db, service, clock, tmp_path) -> None:
    service.start(GUILD, "1")
    clock.advance(minutes=30)
    archiver = PeriodArchiver(
        db=db,
        sessions=service,
        exporter=CsvExporter(tmp_path),
        policy=ActiveSessionPolicy.FREEZE,
        clock=clock,
    )
    asyncio.run(archiver.archive_period(GUILD))
    clock.advance(minutes=30)

    rows = reporter.top(GUILD, clock.now() - timedelta(days=1), clock.now())

    # Frozen sessions stop counting at the archive boundary.
    assert [(row.user_id, row.normal_minutes) for row in rows] == [("1", 30)]


def test_all_time_uses_stored_minutes_plus_live_sessions(reporter, service, clock) -> None:
    service.start(GUILD, "1")
    clock.advance(minutes=60)
    service.close(GUILD, "1")
    service.start(GUILD, "1")
    clock.advance(minutes=30)
    service.record_adjustment(GUILD, "1", -10, "correction")

    [row] = reporter.all_time(GUILD)

    assert row.normal_minutes == 60
    assert row.stellar_minutes == 30
    assert row.adjustment_minutes == -10


def test_leaderboard_lines() -> None:
    rows = [UserTotals(user_id="1", normal_minutes=60, stellar_minutes=30)]

    assert build_leaderboard_lines(rows) == ["**1.** <@1> - 2.00 coins (normal 1.00h · stellar 0.50h)"]


def test_all_time_counts_frozen_open_sessions_up_to_the_archive(reporter, db, service, clock, tmp_path) -> None:
    service.start(GUILD, "1")
    clock.advance(minutes=60)
    archiver = PeriodArchiver(
        db=db,
        sessions=service,
        exporter=CsvExporter(tmp_path),
        policy=ActiveSessionPolicy.FREEZE,
        clock=clock,
    )
    asyncio.run(archiver.archive_period(GUILD))
    clock.advance(minutes=30)

    ranged = reporter.top(GUILD, clock.now() - timedelta(days=1), clock.now())
    [row] = reporter.all_time(GUILD)

    assert [(item.normal_minutes, item.stellar_minutes) for item in ranged] == [(60, 0)]
    assert (row.normal_minutes, row.stellar_minutes) == (60, 0)

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from .accounting import split_active_minutes
from .clock import Clock, SystemClock
from .db import Database
from .models import GuildConfig, MinuteSplit, Pause, Session, SessionStatus, UserTotals
from .rates import format_hours
from .sessions import SessionService

PERIODS = ("today", "week", "month")


def period_range(period: str, tz: ZoneInfo, now_utc: datetime) -> tuple[datetime, datetime]:
    """Return ``[start of period, now)`` in UTC. Weeks start on Monday."""
    now_local = now_utc.astimezone(tz)
    if period == "today":
        first_day = now_local.date()
    elif period == "week":
        first_day = now_local.date() - timedelta(days=now_local.weekday())
    elif period == "month":
        first_day = now_local.date().replace(day=1)
    else:
        raise ValueError(f"Unknown period: {period}")

    start = datetime.combine(first_day, time.min, tzinfo=tz).astimezone(timezone.utc)
    return start, now_utc.astimezone(timezone.utc)


def _clipped_split(
    session: Session,
    session_end: datetime,
    pauses: Iterable[Pause],
    config: GuildConfig,
    range_start: datetime,
    range_end: datetime,
) -> MinuteSplit:
    start = max(session.start_at, range_start)
    end = min(session_end, range_end)
    if end <= start:
        return MinuteSplit()
    return split_active_minutes(start, end, pauses, config.timezone, config.windows)


class Reporter:
    """Read-only totals and leaderboards over live and archived sessions."""

    def __init__(self, db: Database, sessions: SessionService, clock: Clock | None = None) -> None:
        self.db = db
        self.sessions = sessions
        self.clock = clock or SystemClock()

    def compute_totals(
        self,
        guild_id: str,
        user_id: str,
        range_start: datetime,
        range_end: datetime,
    ) -> UserTotals:
        totals = self._range_totals(guild_id, range_start, range_end, user_id=user_id)
        return totals.get(user_id, UserTotals(user_id=user_id))

    def top(self, guild_id: str, range_start: datetime, range_end: datetime, limit: int = 25) -> list[UserTotals]:
        return _rank(self._range_totals(guild_id, range_start, range_end).values(), limit)

    def all_time(self, guild_id: str, limit: int = 25) -> list[UserTotals]:
        """Stored minutes of every session ever, plus what active sessions earned so far."""
        config = self.sessions.guild_config(guild_id)
        now = self.clock.now()
        pauses = self.db.list_guild_pauses(guild_id)
        totals: dict[str, UserTotals] = {}

        def bucket(user_id: str) -> UserTotals:
            return totals.setdefault(user_id, UserTotals(user_id=user_id))

        for session in self.db.list_sessions(guild_id):
            bucket(session.user_id).add(MinuteSplit(session.normal_minutes, session.stellar_minutes))

        history_pauses = self.db.list_history_pauses(guild_id)
        for record in self.db.list_history(guild_id):
            session = record.session
            if session.end_at is None:
                # Frozen while still active: it earned minutes up to the archive.
                split = split_active_minutes(
                    session.start_at,
                    record.archived_at,
                    history_pauses.get(session.id, []),
                    config.timezone,
                    config.windows,
                )
            else:
                split = MinuteSplit(session.normal_minutes, session.stellar_minutes)
            bucket(session.user_id).add(split)

        for session in self.db.list_sessions(guild_id, statuses=[SessionStatus.OPEN, SessionStatus.PAUSED]):
            bucket(session.user_id).add(
                split_active_minutes(session.start_at, now, pauses.get(session.id, []), config.timezone, config.windows)
            )

        for adjustment in self.db.list_adjustments(guild_id):
            bucket(adjustment.user_id).adjustment_minutes += adjustment.minutes

        return _rank(totals.values(), limit)

    def _range_totals(
        self,
        guild_id: str,
        range_start: datetime,
        range_end: datetime,
        user_id: str | None = None,
    ) -> dict[str, UserTotals]:
        # Minutes are recomputed from intervals so sessions straddling the
        # range edges only contribute their in-range part.
        config = self.sessions.guild_config(guild_id)
        now = self.clock.now()
        totals: dict[str, UserTotals] = {}

        def bucket(uid: str) -> UserTotals:
            return totals.setdefault(uid, UserTotals(user_id=uid))

        live_pauses = self.db.list_guild_pauses(guild_id)
        for session in self.db.list_sessions(guild_id):
            if user_id is not None and session.user_id != user_id:
                continue
            session_end = session.end_at if session.end_at is not None else now
            split = _clipped_split(
                session, session_end, live_pauses.get(session.id, []), config, range_start, range_end
            )
            bucket(session.user_id).add(split)

        history_pauses = self.db.list_history_pauses(guild_id)
        for record in self.db.list_history(guild_id):
            session = record.session
            if user_id is not None and session.user_id != user_id:
                continue
            # Sessions frozen while still active stop counting at the archive.
            session_end = session.end_at if session.end_at is not None else record.archived_at
            split = _clipped_split(
                session, session_end, history_pauses.get(session.id, []), config, range_start, range_end
            )
            bucket(session.user_id).add(split)

        for adjustment in self.db.list_adjustments(guild_id, user_id):
            if range_start <= adjustment.created_at < range_end:
                bucket(adjustment.user_id).adjustment_minutes += adjustment.minutes

        return totals


def _rank(rows: Iterable[UserTotals], limit: int) -> list[UserTotals]:
    ranked = [
        row for row in rows if row.normal_minutes or row.stellar_minutes or row.adjustment_minutes
    ]
    ranked.sort(key=lambda item: (-item.coins, item.user_id))
    return ranked[:limit]


def build_leaderboard_lines(rows: list[UserTotals]) -> list[str]:
    return [
        f"**{index}.** <@{row.user_id}> - {row.coins} coins "
        f"(normal {format_hours(row.normal_minutes + row.adjustment_minutes)} · "
        f"stellar {format_hours(row.stellar_minutes)})"
        for index, row in enumerate(rows, start=1)
    ]

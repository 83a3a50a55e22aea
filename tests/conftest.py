from __future__ import annotations

from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from bitacora.accounting import parse_windows
from bitacora.config import GuildDefaults
from bitacora.db import Database
from bitacora.sessions import SessionService


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.current = start
        self.mono = 1000.0

    def now(self) -> datetime:
        return self.current

    def monotonic(self) -> float:
        return self.mono

    def advance(self, **kwargs) -> None:
        delta = timedelta(**kwargs)
        self.current += delta
        self.mono += delta.total_seconds()

    def jump_wall(self, **kwargs) -> None:
        """Move only the wall clock, as an NTP correction would."""
        self.current += timedelta(**kwargs)


class FakeNotifier:
    def __init__(self, direct_ok: bool = True, channel_ok: bool = True) -> None:
        self.direct_ok = direct_ok
        self.channel_ok = channel_ok
        self.direct: list[tuple[str, str, object]] = []
        self.channel: list[tuple[str, str, object, tuple]] = []

    async def send_direct(self, user_id, message, actions=None):
        self.direct.append((user_id, message, actions))
        return self.direct_ok

    async def send_to_channel(self, channel_id, message, actions=None, files=()):
        self.channel.append((channel_id, message, actions, tuple(files)))
        return self.channel_ok


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2026, 2, 2, 15, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def db():
    database = Database(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def defaults() -> GuildDefaults:
    return GuildDefaults(
        timezone=ZoneInfo("UTC"),
        windows=parse_windows("00:00-02:00,16:00-18:00"),
        ping_interval_minutes=120,
        ping_timeout_minutes=5,
    )


@pytest.fixture
def service(db, defaults, clock) -> SessionService:
    return SessionService(db=db, defaults=defaults, clock=clock)


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()

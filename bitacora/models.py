from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from zoneinfo import ZoneInfo

from .rates import coins


class SessionStatus(str, Enum):
    OPEN = "open"
    PAUSED = "paused"
    CLOSED = "closed"

    @property
    def is_active(self) -> bool:
        return self is not SessionStatus.CLOSED

    def can_become(self, target: SessionStatus) -> bool:
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.OPEN: frozenset({SessionStatus.PAUSED, SessionStatus.CLOSED}),
    SessionStatus.PAUSED: frozenset({SessionStatus.OPEN, SessionStatus.CLOSED}),
    SessionStatus.CLOSED: frozenset(),
}


@dataclass(frozen=True, slots=True)
class Session:
    id: int
    guild_id: str
    user_id: str
    status: SessionStatus
    start_at: datetime
    end_at: datetime | None = None
    normal_minutes: int = 0
    stellar_minutes: int = 0
    last_ping_at: datetime | None = None
    pending_ping: bool = False
    close_reason: str | None = None


@dataclass(frozen=True, slots=True)
class Pause:
    id: int
    session_id: int
    pause_start: datetime
    pause_end: datetime | None = None

    @property
    def is_open(self) -> bool:
        return self.pause_end is None


@dataclass(frozen=True, slots=True)
class StellarWindow:
    """Recurring daily window in local minutes since midnight.

    ``end_minute <= start_minute`` means the window wraps past midnight.
    """

    start_minute: int
    end_minute: int

    @property
    def wraps(self) -> bool:
        return self.end_minute <= self.start_minute


@dataclass(frozen=True, slots=True)
class GuildConfig:
    guild_id: str
    timezone: ZoneInfo
    windows: tuple[StellarWindow, ...]
    ping_interval_minutes: int
    ping_timeout_minutes: int
    panel_channel_id: str | None = None
    panel_message_id: str | None = None
    logs_channel_id: str | None = None


@dataclass(frozen=True, slots=True)
class Adjustment:
    id: int
    guild_id: str
    user_id: str
    minutes: int
    reason: str
    actor_id: str | None
    created_at: datetime


@dataclass(frozen=True, slots=True)
class HistoryRecord:
    session: Session
    archived_at: datetime


@dataclass(frozen=True, slots=True)
class MinuteSplit:
    normal: int = 0
    stellar: int = 0

    def __add__(self, other: MinuteSplit) -> MinuteSplit:
        return MinuteSplit(self.normal + other.normal, self.stellar + other.stellar)

    @property
    def total(self) -> int:
        return self.normal + self.stellar

    @property
    def coins(self) -> Decimal:
        return coins(self.normal, self.stellar)


@dataclass(frozen=True, slots=True)
class CloseResult:
    session: Session
    split: MinuteSplit


@dataclass(slots=True)
class UserTotals:
    user_id: str
    normal_minutes: int = 0
    stellar_minutes: int = 0
    adjustment_minutes: int = 0

    def add(self, split: MinuteSplit) -> None:
        self.normal_minutes += split.normal
        self.stellar_minutes += split.stellar

    @property
    def coins(self) -> Decimal:
        # Manual adjustments are paid at the normal rate.
        return coins(self.normal_minutes + self.adjustment_minutes, self.stellar_minutes)

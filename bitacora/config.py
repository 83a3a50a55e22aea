from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import time
from enum import Enum
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .accounting import parse_windows
from .errors import ValidationError
from .models import StellarWindow

DEFAULT_TIMEZONE = "America/Mexico_City"
DEFAULT_STELLAR_WINDOWS = "00:00-02:00,16:00-18:00"


class ActiveSessionPolicy(str, Enum):
    """What the weekly archive does with sessions still open or paused."""

    FREEZE = "freeze"
    DRAIN = "drain"
    DRAIN_AND_RESTART = "drain-restart"


@dataclass(frozen=True, slots=True)
class GuildDefaults:
    """Fallbacks for guilds that have not saved their own settings."""

    timezone: ZoneInfo
    windows: tuple[StellarWindow, ...]
    ping_interval_minutes: int = 120
    ping_timeout_minutes: int = 5


@dataclass(frozen=True, slots=True)
class Config:
    discord_token: str
    db_path: Path
    backup_dir: Path
    defaults: GuildDefaults
    role_ids: frozenset[int]
    nightly_backup_upload: bool
    archive_weekday: int
    archive_time: time
    nightly_backup_time: time
    active_session_policy: ActiveSessionPolicy


def _required_env(name: str) -> str:
    value = os.getenv(name)
    if not value:
        raise ValidationError(f"Missing required environment variable: {name}")
    return value.strip()


def _positive_int_env(name: str, default: int) -> int:
    raw = os.getenv(name, str(default)).strip()
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValidationError(f"Environment variable {name} must be an integer") from exc

    if parsed <= 0:
        raise ValidationError(f"Environment variable {name} must be positive")
    return parsed


def _bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _time_env(name: str, default: str) -> time:
    raw = os.getenv(name, default).strip()
    try:
        return time.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Environment variable {name} must be HH:MM") from exc


def parse_timezone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name.strip())
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Invalid timezone: {tz_name}") from exc


def parse_role_ids(raw: str) -> frozenset[int]:
    ids: set[int] = set()
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        if not part.isdigit():
            raise ValidationError(f"Invalid role id in BITACORA_ROLE_IDS: {part}")
        ids.add(int(part))
    return frozenset(ids)


def load_config() -> Config:
    weekday_raw = os.getenv("ARCHIVE_WEEKDAY", "4").strip()
    try:
        weekday = int(weekday_raw)
    except ValueError as exc:
        raise ValidationError("ARCHIVE_WEEKDAY must be an integer") from exc
    if not 0 <= weekday <= 6:
        raise ValidationError("ARCHIVE_WEEKDAY must be between 0 (Monday) and 6 (Sunday)")

    policy_raw = os.getenv("ACTIVE_SESSION_POLICY", ActiveSessionPolicy.DRAIN_AND_RESTART.value).strip()
    try:
        policy = ActiveSessionPolicy(policy_raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid ACTIVE_SESSION_POLICY: {policy_raw}") from exc

    defaults = GuildDefaults(
        timezone=parse_timezone(os.getenv("TIMEZONE", DEFAULT_TIMEZONE)),
        windows=parse_windows(os.getenv("STELLAR_WINDOWS", DEFAULT_STELLAR_WINDOWS)),
        ping_interval_minutes=_positive_int_env("PING_EVERY_MIN", 120),
        ping_timeout_minutes=_positive_int_env("PING_TIMEOUT_MIN", 5),
    )

    return Config(
        discord_token=_required_env("DISCORD_TOKEN"),
        db_path=Path(os.getenv("DB_PATH", "bitacora.db")),
        backup_dir=Path(os.getenv("BACKUP_DIR", "backups")),
        defaults=defaults,
        role_ids=parse_role_ids(os.getenv("BITACORA_ROLE_IDS", "")),
        nightly_backup_upload=_bool_env("NIGHTLY_BACKUP_UPLOAD"),
        archive_weekday=weekday,
        archive_time=_time_env("ARCHIVE_TIME", "17:00"),
        nightly_backup_time=_time_env("NIGHTLY_BACKUP_TIME", "03:30"),
        active_session_policy=policy,
    )

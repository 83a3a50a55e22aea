from __future__ import annotations

import csv
import json
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from .models import Adjustment, Pause, Session

SESSION_COLUMNS = (
    "id",
    "user_id",
    "status",
    "start_at",
    "end_at",
    "normal_minutes",
    "stellar_minutes",
    "close_reason",
)


@dataclass(frozen=True, slots=True)
class ArchiveSnapshot:
    guild_id: str
    taken_at: datetime
    sessions: list[Session]
    pauses: dict[int, list[Pause]] = field(default_factory=dict)
    adjustments: list[Adjustment] = field(default_factory=list)


def _slug(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_") or "guild"


class CsvExporter:
    """Writes archive and backup artifacts under ``backup_dir``."""

    def __init__(self, backup_dir: str | Path) -> None:
        self.backup_dir = Path(backup_dir)

    def export_archive(self, snapshot: ArchiveSnapshot, tz: ZoneInfo) -> Path:
        stamp = snapshot.taken_at.astimezone(tz).strftime("%Y-%m-%d_%H-%M")
        path = self.backup_dir / f"weekly_{snapshot.guild_id}_{stamp}.csv"
        self._write_sessions_csv(path, snapshot.sessions)
        return path

    def export_backup(self, snapshot: ArchiveSnapshot, tz: ZoneInfo, guild_name: str | None = None) -> list[Path]:
        day = snapshot.taken_at.astimezone(tz).date().isoformat()
        base = f"nightly_{_slug(guild_name or snapshot.guild_id)}_{day}"
        daily_dir = self.backup_dir / "daily"

        json_path = daily_dir / f"{base}.json"
        daily_dir.mkdir(parents=True, exist_ok=True)
        payload = {
            "guild_id": snapshot.guild_id,
            "server_name": guild_name,
            "created_at": snapshot.taken_at.isoformat(),
            "timezone": tz.key,
            "sessions": [_session_dict(session) for session in snapshot.sessions],
            "pauses": [_pause_dict(pause) for pauses in snapshot.pauses.values() for pause in pauses],
            "adjustments": [_adjustment_dict(item) for item in snapshot.adjustments],
        }
        json_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

        csv_path = daily_dir / f"{base}.csv"
        self._write_sessions_csv(csv_path, snapshot.sessions)
        return [json_path, csv_path]

    def _write_sessions_csv(self, path: Path, sessions: list[Session]) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", newline="", encoding="utf-8") as handle:
            writer = csv.DictWriter(handle, fieldnames=SESSION_COLUMNS)
            writer.writeheader()
            for session in sessions:
                row = _session_dict(session)
                writer.writerow({column: "" if row[column] is None else row[column] for column in SESSION_COLUMNS})


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _session_dict(session: Session) -> dict[str, object]:
    return {
        "id": session.id,
        "guild_id": session.guild_id,
        "user_id": session.user_id,
        "status": session.status.value,
        "start_at": session.start_at.isoformat(),
        "end_at": _iso_or_none(session.end_at),
        "normal_minutes": session.normal_minutes,
        "stellar_minutes": session.stellar_minutes,
        "last_ping_at": _iso_or_none(session.last_ping_at),
        "pending_ping": session.pending_ping,
        "close_reason": session.close_reason,
    }


def _pause_dict(pause: Pause) -> dict[str, object]:
    return {
        "id": pause.id,
        "session_id": pause.session_id,
        "pause_start": pause.pause_start.isoformat(),
        "pause_end": _iso_or_none(pause.pause_end),
    }


def _adjustment_dict(adjustment: Adjustment) -> dict[str, object]:
    return {
        "id": adjustment.id,
        "user_id": adjustment.user_id,
        "minutes": adjustment.minutes,
        "reason": adjustment.reason,
        "actor_id": adjustment.actor_id,
        "created_at": adjustment.created_at.isoformat(),
    }

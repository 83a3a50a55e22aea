from __future__ import annotations

import functools
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from .accounting import format_windows, parse_windows
from .config import GuildDefaults, parse_timezone
from .errors import ConflictError, PersistenceError
from .models import Adjustment, GuildConfig, HistoryRecord, MinuteSplit, Pause, Session, SessionStatus

_GUILD_CONFIG_COLUMNS = (
    "panel_channel_id",
    "panel_message_id",
    "logs_channel_id",
    "timezone",
    "stellar_windows",
    "ping_every_min",
    "ping_timeout_min",
)

_SESSION_COLUMNS = (
    "id, guild_id, user_id, status, start_at, end_at, normal_minutes, stellar_minutes, "
    "last_ping_at, pending_ping, close_reason"
)


_F = TypeVar("_F", bound=Callable[..., Any])


def _write(method: _F) -> _F:
    """Run a write as its own transaction, or join the caller's."""

    @functools.wraps(method)
    def wrapper(self: Database, *args: Any, **kwargs: Any) -> Any:
        with self.transaction():
            return method(self, *args, **kwargs)

    return wrapper  # type: ignore[return-value]


class Database:
    """SQLite access layer for sessions, pauses, adjustments and history.

    Writes commit immediately unless they run inside ``transaction()``, in
    which case the outermost block commits or rolls back all of them. A
    transaction holds the connection lock until it ends, so threads sharing
    the connection never interleave their writes.
    """

    def __init__(self, db_path: str | Path) -> None:
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._closed = False
        self._tx_depth = 0

    def close(self) -> None:
        if self._closed:
            return
        self._conn.close()
        self._closed = True

    def initialize(self) -> None:
        # guild_config: per-guild overrides of the environment defaults.
        # sessions/pauses: live accounting, reset by the weekly archive.
        # sessions_history/pauses_history: frozen snapshots written by the archive.
        # adjustments: append-only manual corrections.
        # meta: small key/value store for scheduler markers.
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS guild_config (
              guild_id TEXT PRIMARY KEY,
              panel_channel_id TEXT,
              panel_message_id TEXT,
              logs_channel_id TEXT,
              timezone TEXT,
              stellar_windows TEXT,
              ping_every_min INTEGER,
              ping_timeout_min INTEGER
            );

            CREATE TABLE IF NOT EXISTS sessions (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              guild_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              status TEXT NOT NULL,
              start_at TEXT NOT NULL,
              end_at TEXT,
              normal_minutes INTEGER NOT NULL DEFAULT 0,
              stellar_minutes INTEGER NOT NULL DEFAULT 0,
              last_ping_at TEXT,
              pending_ping INTEGER NOT NULL DEFAULT 0,
              close_reason TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_active
              ON sessions(guild_id, user_id) WHERE status IN ('open', 'paused');
            CREATE INDEX IF NOT EXISTS idx_sessions_guild_status ON sessions(guild_id, status);

            CREATE TABLE IF NOT EXISTS pauses (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              session_id INTEGER NOT NULL,
              pause_start TEXT NOT NULL,
              pause_end TEXT
            );

            CREATE UNIQUE INDEX IF NOT EXISTS idx_pauses_open
              ON pauses(session_id) WHERE pause_end IS NULL;
            CREATE INDEX IF NOT EXISTS idx_pauses_session ON pauses(session_id);

            CREATE TABLE IF NOT EXISTS adjustments (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              guild_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              minutes INTEGER NOT NULL,
              reason TEXT NOT NULL,
              actor_id TEXT,
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS sessions_history (
              history_id INTEGER PRIMARY KEY AUTOINCREMENT,
              id INTEGER NOT NULL,
              guild_id TEXT NOT NULL,
              user_id TEXT NOT NULL,
              status TEXT NOT NULL,
              start_at TEXT NOT NULL,
              end_at TEXT,
              normal_minutes INTEGER NOT NULL,
              stellar_minutes INTEGER NOT NULL,
              last_ping_at TEXT,
              pending_ping INTEGER NOT NULL,
              close_reason TEXT,
              archived_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_history_guild ON sessions_history(guild_id);

            CREATE TABLE IF NOT EXISTS pauses_history (
              id INTEGER NOT NULL,
              session_id INTEGER NOT NULL,
              pause_start TEXT NOT NULL,
              pause_end TEXT,
              archived_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS meta (
              key TEXT PRIMARY KEY,
              value TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[Database]:
        with self._lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._conn.rollback()
                raise
            else:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._commit()

    def _commit(self) -> None:
        try:
            self._conn.commit()
        except sqlite3.Error as exc:
            self._conn.rollback()
            raise PersistenceError(f"Commit failed: {exc}") from exc

    def _execute(self, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
        try:
            with self._lock:
                return self._conn.execute(sql, tuple(params))
        except sqlite3.IntegrityError as exc:
            raise ConflictError(f"Write rejected by constraint: {exc}") from exc
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    # Guild configuration

    def get_guild_config(self, guild_id: str, defaults: GuildDefaults) -> GuildConfig:
        row = self._execute("SELECT * FROM guild_config WHERE guild_id = ?", (guild_id,)).fetchone()
        if row is None:
            return GuildConfig(
                guild_id=guild_id,
                timezone=defaults.timezone,
                windows=defaults.windows,
                ping_interval_minutes=defaults.ping_interval_minutes,
                ping_timeout_minutes=defaults.ping_timeout_minutes,
            )

        return GuildConfig(
            guild_id=guild_id,
            timezone=parse_timezone(row["timezone"]) if row["timezone"] else defaults.timezone,
            windows=parse_windows(row["stellar_windows"]) if row["stellar_windows"] is not None else defaults.windows,
            ping_interval_minutes=row["ping_every_min"] or defaults.ping_interval_minutes,
            ping_timeout_minutes=row["ping_timeout_min"] or defaults.ping_timeout_minutes,
            panel_channel_id=row["panel_channel_id"],
            panel_message_id=row["panel_message_id"],
            logs_channel_id=row["logs_channel_id"],
        )

    @_write
    def update_guild_config(self, guild_id: str, **fields: Any) -> None:
        """Upsert only the given columns, leaving the others untouched."""
        unknown = set(fields) - set(_GUILD_CONFIG_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown guild config fields: {sorted(unknown)}")
        if "stellar_windows" in fields and not isinstance(fields["stellar_windows"], str):
            fields["stellar_windows"] = format_windows(fields["stellar_windows"])

        self._execute("INSERT OR IGNORE INTO guild_config (guild_id) VALUES (?)", (guild_id,))
        if fields:
            assignments = ", ".join(f"{column} = ?" for column in fields)
            self._execute(
                f"UPDATE guild_config SET {assignments} WHERE guild_id = ?",
                (*fields.values(), guild_id),
            )

    # Sessions

    @_write
    def create_session(self, guild_id: str, user_id: str, start_at: datetime) -> Session:
        cursor = self._execute(
            """
            INSERT INTO sessions (guild_id, user_id, status, start_at)
            VALUES (?, ?, ?, ?)
            """,
            (guild_id, user_id, SessionStatus.OPEN.value, _iso(start_at)),
        )
        return Session(
            id=int(cursor.lastrowid),
            guild_id=guild_id,
            user_id=user_id,
            status=SessionStatus.OPEN,
            start_at=_to_utc(start_at),
        )

    def get_session(self, session_id: int) -> Session | None:
        row = self._execute(f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return _session_from_row(row) if row is not None else None

    def get_active_session(self, guild_id: str, user_id: str) -> Session | None:
        row = self._execute(
            f"""
            SELECT {_SESSION_COLUMNS} FROM sessions
            WHERE guild_id = ? AND user_id = ? AND status IN ('open', 'paused')
            ORDER BY id DESC LIMIT 1
            """,
            (guild_id, user_id),
        ).fetchone()
        return _session_from_row(row) if row is not None else None

    def list_sessions(
        self,
        guild_id: str | None = None,
        statuses: Iterable[SessionStatus] | None = None,
    ) -> list[Session]:
        clauses: list[str] = []
        params: list[Any] = []
        if guild_id is not None:
            clauses.append("guild_id = ?")
            params.append(guild_id)
        if statuses is not None:
            values = [status.value for status in statuses]
            clauses.append(f"status IN ({', '.join('?' for _ in values)})")
            params.extend(values)

        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self._execute(f"SELECT {_SESSION_COLUMNS} FROM sessions {where} ORDER BY id", params).fetchall()
        return [_session_from_row(row) for row in rows]

    @_write
    def set_session_status(self, session_id: int, status: SessionStatus) -> None:
        self._execute("UPDATE sessions SET status = ? WHERE id = ?", (status.value, session_id))

    @_write
    def finish_session(self, session_id: int, end_at: datetime, split: MinuteSplit, reason: str) -> None:
        # The status guard makes a second close a no-op at the storage level too.
        cursor = self._execute(
            """
            UPDATE sessions
            SET status = ?, end_at = ?, close_reason = ?, pending_ping = 0,
                normal_minutes = normal_minutes + ?, stellar_minutes = stellar_minutes + ?
            WHERE id = ? AND status != ?
            """,
            (
                SessionStatus.CLOSED.value,
                _iso(end_at),
                reason,
                split.normal,
                split.stellar,
                session_id,
                SessionStatus.CLOSED.value,
            ),
        )
        if cursor.rowcount != 1:
            raise ConflictError(f"Session {session_id} could not be closed")

    @_write
    def record_ping(self, session_id: int, pinged_at: datetime, *, pending: bool) -> None:
        self._execute(
            "UPDATE sessions SET last_ping_at = ?, pending_ping = ? WHERE id = ?",
            (_iso(pinged_at), int(pending), session_id),
        )

    # Pauses

    @_write
    def create_pause(self, session_id: int, pause_start: datetime) -> Pause:
        cursor = self._execute(
            "INSERT INTO pauses (session_id, pause_start) VALUES (?, ?)",
            (session_id, _iso(pause_start)),
        )
        return Pause(id=int(cursor.lastrowid), session_id=session_id, pause_start=_to_utc(pause_start))

    def get_open_pause(self, session_id: int) -> Pause | None:
        row = self._execute(
            "SELECT * FROM pauses WHERE session_id = ? AND pause_end IS NULL",
            (session_id,),
        ).fetchone()
        return _pause_from_row(row) if row is not None else None

    @_write
    def end_pause(self, pause_id: int, pause_end: datetime) -> None:
        self._execute("UPDATE pauses SET pause_end = ? WHERE id = ?", (_iso(pause_end), pause_id))

    def list_pauses(self, session_id: int) -> list[Pause]:
        rows = self._execute(
            "SELECT * FROM pauses WHERE session_id = ? ORDER BY pause_start, id",
            (session_id,),
        ).fetchall()
        return [_pause_from_row(row) for row in rows]

    def list_guild_pauses(self, guild_id: str) -> dict[int, list[Pause]]:
        rows = self._execute(
            """
            SELECT p.* FROM pauses p
            JOIN sessions s ON s.id = p.session_id
            WHERE s.guild_id = ?
            ORDER BY p.pause_start, p.id
            """,
            (guild_id,),
        ).fetchall()
        grouped: dict[int, list[Pause]] = {}
        for row in rows:
            pause = _pause_from_row(row)
            grouped.setdefault(pause.session_id, []).append(pause)
        return grouped

    # Adjustments

    @_write
    def add_adjustment(
        self,
        guild_id: str,
        user_id: str,
        minutes: int,
        reason: str,
        actor_id: str | None,
        created_at: datetime,
    ) -> Adjustment:
        cursor = self._execute(
            """
            INSERT INTO adjustments (guild_id, user_id, minutes, reason, actor_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (guild_id, user_id, minutes, reason, actor_id, _iso(created_at)),
        )
        return Adjustment(
            id=int(cursor.lastrowid),
            guild_id=guild_id,
            user_id=user_id,
            minutes=minutes,
            reason=reason,
            actor_id=actor_id,
            created_at=_to_utc(created_at),
        )

    def list_adjustments(self, guild_id: str, user_id: str | None = None) -> list[Adjustment]:
        if user_id is None:
            rows = self._execute("SELECT * FROM adjustments WHERE guild_id = ? ORDER BY id", (guild_id,)).fetchall()
        else:
            rows = self._execute(
                "SELECT * FROM adjustments WHERE guild_id = ? AND user_id = ? ORDER BY id",
                (guild_id, user_id),
            ).fetchall()
        return [
            Adjustment(
                id=row["id"],
                guild_id=row["guild_id"],
                user_id=row["user_id"],
                minutes=row["minutes"],
                reason=row["reason"],
                actor_id=row["actor_id"],
                created_at=_parse_iso(row["created_at"]),
            )
            for row in rows
        ]

    # History

    @_write
    def snapshot_guild_sessions(self, guild_id: str, archived_at: datetime) -> int:
        """Copy every live session and its pauses of a guild into history."""
        stamp = _iso(archived_at)
        cursor = self._execute(
            f"""
            INSERT INTO sessions_history ({_SESSION_COLUMNS}, archived_at)
            SELECT {_SESSION_COLUMNS}, ? FROM sessions WHERE guild_id = ?
            """,
            (stamp, guild_id),
        )
        self._execute(
            """
            INSERT INTO pauses_history (id, session_id, pause_start, pause_end, archived_at)
            SELECT p.id, p.session_id, p.pause_start, p.pause_end, ?
            FROM pauses p JOIN sessions s ON s.id = p.session_id
            WHERE s.guild_id = ?
            """,
            (stamp, guild_id),
        )
        return cursor.rowcount

    @_write
    def delete_guild_sessions(self, guild_id: str) -> int:
        cursor = self._execute("DELETE FROM sessions WHERE guild_id = ?", (guild_id,))
        self._execute("DELETE FROM pauses WHERE session_id NOT IN (SELECT id FROM sessions)")
        return cursor.rowcount

    def list_history(self, guild_id: str) -> list[HistoryRecord]:
        rows = self._execute(
            f"SELECT {_SESSION_COLUMNS}, archived_at FROM sessions_history WHERE guild_id = ? ORDER BY history_id",
            (guild_id,),
        ).fetchall()
        return [HistoryRecord(session=_session_from_row(row), archived_at=_parse_iso(row["archived_at"])) for row in rows]

    def list_history_pauses(self, guild_id: str) -> dict[int, list[Pause]]:
        # AUTOINCREMENT never reuses session ids, so they stay unique in history.
        rows = self._execute(
            """
            SELECT ph.id, ph.session_id, ph.pause_start, ph.pause_end
            FROM pauses_history ph
            JOIN sessions_history sh ON sh.id = ph.session_id
            WHERE sh.guild_id = ?
            ORDER BY ph.pause_start, ph.id
            """,
            (guild_id,),
        ).fetchall()
        grouped: dict[int, list[Pause]] = {}
        for row in rows:
            pause = _pause_from_row(row)
            grouped.setdefault(pause.session_id, []).append(pause)
        return grouped

    def count_history(self, guild_id: str) -> int:
        row = self._execute("SELECT COUNT(*) AS n FROM sessions_history WHERE guild_id = ?", (guild_id,)).fetchone()
        return int(row["n"])

    # Meta

    def get_meta(self, key: str) -> str | None:
        row = self._execute("SELECT value FROM meta WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    @_write
    def set_meta(self, key: str, value: str) -> None:
        self._execute(
            """
            INSERT INTO meta (key, value)
            VALUES (?, ?)
            ON CONFLICT(key)
            DO UPDATE SET value=excluded.value
            """,
            (key, value),
        )


def _session_from_row(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        guild_id=row["guild_id"],
        user_id=row["user_id"],
        status=SessionStatus(row["status"]),
        start_at=_parse_iso(row["start_at"]),
        end_at=_parse_iso(row["end_at"]),
        normal_minutes=row["normal_minutes"],
        stellar_minutes=row["stellar_minutes"],
        last_ping_at=_parse_iso(row["last_ping_at"]),
        pending_ping=bool(row["pending_ping"]),
        close_reason=row["close_reason"],
    )


def _pause_from_row(row: sqlite3.Row) -> Pause:
    return Pause(
        id=row["id"],
        session_id=row["session_id"],
        pause_start=_parse_iso(row["pause_start"]),
        pause_end=_parse_iso(row["pause_end"]),
    )


def _parse_iso(value: str | None) -> datetime | None:
    """Parse an ISO timestamp and normalize to UTC."""
    if not value:
        return None

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        # Stored values should be timezone-aware; treat naive values as UTC for resilience.
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _to_utc(value: datetime) -> datetime:
    """Normalize a timezone-aware datetime to UTC for storage."""
    if value.tzinfo is None:
        raise ValueError("Datetime must be timezone-aware")
    return value.astimezone(timezone.utc)


def _iso(value: datetime) -> str:
    return _to_utc(value).isoformat()

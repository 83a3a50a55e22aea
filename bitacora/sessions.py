from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from .accounting import split_active_minutes
from .clock import Clock, SystemClock
from .config import GuildDefaults
from .db import Database
from .errors import AlreadyClosedError, ConflictError, InvalidStateError, SessionNotFoundError, ValidationError
from .models import Adjustment, CloseResult, GuildConfig, Session, SessionStatus

REASON_USER = "user-initiated"
REASON_FORCED = "forced"
REASON_TIMEOUT = "timeout"
REASON_FROM_PING = "user-initiated-from-ping"
REASON_ARCHIVED = "archived"


class SessionService:
    """Open/pause/resume/close lifecycle of service sessions.

    Every mutation for a guild runs under that guild's re-entrant lock and in
    a single database transaction, so a manual close racing a timeout close
    can only apply its minutes once.
    """

    def __init__(
        self,
        db: Database,
        defaults: GuildDefaults,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.defaults = defaults
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def guild_lock(self, guild_id: str) -> Iterator[None]:
        with self._locks_guard:
            lock = self._locks.setdefault(guild_id, threading.RLock())
        with lock:
            yield

    def guild_config(self, guild_id: str) -> GuildConfig:
        return self.db.get_guild_config(guild_id, self.defaults)

    def active_session(self, guild_id: str, user_id: str) -> Session | None:
        return self.db.get_active_session(guild_id, user_id)

    def start(self, guild_id: str, user_id: str) -> Session:
        with self.guild_lock(guild_id), self.db.transaction():
            if self.db.get_active_session(guild_id, user_id) is not None:
                raise ConflictError(f"User {user_id} already has an active session")
            session = self.db.create_session(guild_id, user_id, self.clock.now())

        self.logger.info("Session started: guild=%s user=%s id=%s", guild_id, user_id, session.id)
        return session

    def pause(self, guild_id: str, user_id: str) -> Session:
        with self.guild_lock(guild_id), self.db.transaction():
            session = self._require_active(guild_id, user_id)
            if not session.status.can_become(SessionStatus.PAUSED):
                raise InvalidStateError("Session is already paused")
            if self.db.get_open_pause(session.id) is not None:
                raise InvalidStateError("Session already has an open pause")

            self.db.create_pause(session.id, self.clock.now())
            self.db.set_session_status(session.id, SessionStatus.PAUSED)
            session = self.db.get_session(session.id)

        self.logger.info("Session paused: guild=%s user=%s id=%s", guild_id, user_id, session.id)
        return session

    def resume(self, guild_id: str, user_id: str) -> Session:
        with self.guild_lock(guild_id), self.db.transaction():
            session = self._require_active(guild_id, user_id)
            if session.status is not SessionStatus.PAUSED:
                raise InvalidStateError("Session is not paused")
            pause = self.db.get_open_pause(session.id)
            if pause is None:
                raise InvalidStateError("Session has no open pause")

            now = self.clock.now()
            self.db.end_pause(pause.id, now)
            self.db.set_session_status(session.id, SessionStatus.OPEN)
            # Coming back from a break counts as an answered liveness check.
            self.db.record_ping(session.id, now, pending=False)
            session = self.db.get_session(session.id)

        self.logger.info("Session resumed: guild=%s user=%s id=%s", guild_id, user_id, session.id)
        return session

    def close(self, guild_id: str, user_id: str, reason: str = REASON_USER) -> CloseResult:
        with self.guild_lock(guild_id):
            session = self._require_active(guild_id, user_id)
            return self.close_session(session.id, reason)

    def force_close(
        self,
        guild_id: str,
        user_id: str,
        reason: str = REASON_FORCED,
        actor_id: str | None = None,
    ) -> CloseResult:
        self.logger.info("Force close requested: guild=%s user=%s actor=%s", guild_id, user_id, actor_id)
        return self.close(guild_id, user_id, reason)

    def close_session(self, session_id: int, reason: str, at: datetime | None = None) -> CloseResult:
        """Close a session by id, accounting its active minutes exactly once.

        ``at`` defaults to the clock's current time.

        Raises ``AlreadyClosedError`` without touching anything when the
        session is already closed.
        """
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        with self.guild_lock(session.guild_id), self.db.transaction():
            # Re-read under the lock: another close may have won the race.
            session = self.db.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            if not session.status.can_become(SessionStatus.CLOSED):
                raise AlreadyClosedError(session_id)

            now = at or self.clock.now()
            open_pause = self.db.get_open_pause(session_id)
            if open_pause is not None:
                self.db.end_pause(open_pause.id, now)

            config = self.guild_config(session.guild_id)
            split = split_active_minutes(
                session.start_at,
                now,
                self.db.list_pauses(session_id),
                config.timezone,
                config.windows,
            )
            self.db.finish_session(session_id, now, split, reason)
            closed = self.db.get_session(session_id)

        self.logger.info(
            "Session closed: guild=%s user=%s id=%s reason=%s normal=%s stellar=%s",
            closed.guild_id,
            closed.user_id,
            closed.id,
            reason,
            split.normal,
            split.stellar,
        )
        return CloseResult(session=closed, split=split)

    def acknowledge_ping(self, session_id: int) -> Session:
        session = self.db.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        with self.guild_lock(session.guild_id), self.db.transaction():
            session = self.db.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session {session_id} not found")
            if not session.status.is_active:
                raise AlreadyClosedError(session_id)
            self.db.record_ping(session_id, self.clock.now(), pending=False)
            session = self.db.get_session(session_id)

        self.logger.debug("Ping acknowledged: id=%s", session_id)
        return session

    def record_adjustment(
        self,
        guild_id: str,
        user_id: str,
        minutes: int,
        reason: str,
        actor_id: str | None = None,
    ) -> Adjustment:
        if minutes == 0:
            raise ValidationError("Adjustment minutes must be non-zero")
        if not reason.strip():
            raise ValidationError("Adjustment reason is required")

        with self.guild_lock(guild_id):
            adjustment = self.db.add_adjustment(guild_id, user_id, minutes, reason.strip(), actor_id, self.clock.now())

        self.logger.info(
            "Adjustment recorded: guild=%s user=%s minutes=%+d actor=%s", guild_id, user_id, minutes, actor_id
        )
        return adjustment

    def _require_active(self, guild_id: str, user_id: str) -> Session:
        session = self.db.get_active_session(guild_id, user_id)
        if session is None:
            raise SessionNotFoundError(f"User {user_id} has no active session")
        return session

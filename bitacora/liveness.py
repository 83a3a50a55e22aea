from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from enum import Enum

from .clock import Clock, SystemClock
from .db import Database
from .errors import AlreadyClosedError
from .models import CloseResult, GuildConfig, Session, SessionStatus
from .notifications import DeliveryRoute, Notifier, PingActions, deliver_in_order
from .rates import format_hours
from .sessions import REASON_FROM_PING, REASON_TIMEOUT, SessionService

PING_MESSAGE = "Are you still on duty?"

SessionClosedHook = Callable[[CloseResult], Awaitable[None]]


class LivenessOutcome(str, Enum):
    NONE = "none"
    PINGED = "pinged"
    CLOSED = "closed"


class LivenessMonitor:
    """Pings open sessions periodically and closes the ones nobody answers.

    Paused sessions are exempt. A session has at most one outstanding ping:
    while ``pending_ping`` is set the only thing a sweep does is wait for the
    timeout.
    """

    def __init__(
        self,
        db: Database,
        sessions: SessionService,
        notifier: Notifier,
        clock: Clock | None = None,
        on_session_closed: SessionClosedHook | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.sessions = sessions
        self.notifier = notifier
        self.clock = clock or SystemClock()
        self.on_session_closed = on_session_closed
        self.logger = logger or logging.getLogger(__name__)
        # Monotonic stamps of pings sent by this process, keyed by session id.
        self._ping_marks: dict[int, float] = {}

    async def sweep(self, now: datetime | None = None) -> dict[int, LivenessOutcome]:
        """Check every open session once.

        Without ``now`` the sweep runs on the clock and times pings it sent
        itself on the monotonic source. An explicit ``now`` is taken as the
        only notion of time.
        """
        use_marks = now is None
        now = now or self.clock.now()
        open_sessions = self.db.list_sessions(statuses=[SessionStatus.OPEN])

        live_ids = {session.id for session in open_sessions}
        for stale_id in set(self._ping_marks) - live_ids:
            del self._ping_marks[stale_id]

        configs: dict[str, GuildConfig] = {}
        outcomes: dict[int, LivenessOutcome] = {}
        for session in open_sessions:
            if session.guild_id not in configs:
                configs[session.guild_id] = self.sessions.guild_config(session.guild_id)
            outcomes[session.id] = await self.check_session(
                session, configs[session.guild_id], now, use_marks=use_marks
            )
        return outcomes

    async def check_session(
        self,
        session: Session,
        config: GuildConfig,
        now: datetime,
        *,
        use_marks: bool = False,
    ) -> LivenessOutcome:
        if session.status is not SessionStatus.OPEN:
            return LivenessOutcome.NONE

        if session.pending_ping and session.last_ping_at is not None:
            if self._since_ping(session, now, use_marks) < timedelta(minutes=config.ping_timeout_minutes):
                return LivenessOutcome.NONE
            return await self._close_on_timeout(session, now)

        if session.last_ping_at is None or now - session.last_ping_at >= timedelta(
            minutes=config.ping_interval_minutes
        ):
            await self._ping(session, config, now)
            return LivenessOutcome.PINGED

        return LivenessOutcome.NONE

    def acknowledge(self, session_id: int) -> Session:
        session = self.sessions.acknowledge_ping(session_id)
        self._ping_marks.pop(session_id, None)
        return session

    async def close_now(self, session_id: int) -> CloseResult | None:
        """Close requested from a ping. Returns None if it was already closed."""
        try:
            result = self.sessions.close_session(session_id, REASON_FROM_PING)
        except AlreadyClosedError:
            self.logger.debug("Close-now ignored, session %s already closed", session_id)
            return None
        finally:
            self._ping_marks.pop(session_id, None)

        await self._after_close(result)
        return result

    def _since_ping(self, session: Session, now: datetime, use_marks: bool) -> timedelta:
        mark = self._ping_marks.get(session.id) if use_marks else None
        if mark is not None:
            return timedelta(seconds=self.clock.monotonic() - mark)
        return now - session.last_ping_at

    async def _ping(self, session: Session, config: GuildConfig, now: datetime) -> None:
        # State first: a failed delivery must not leave the session re-pinged every tick.
        self.db.record_ping(session.id, now, pending=True)
        self._ping_marks[session.id] = self.clock.monotonic()

        actions = PingActions(session.id)
        routes: list[DeliveryRoute] = [
            lambda: self.notifier.send_direct(session.user_id, PING_MESSAGE, actions),
        ]
        if config.logs_channel_id:
            routes.append(
                lambda: self.notifier.send_to_channel(
                    config.logs_channel_id, f"<@{session.user_id}> {PING_MESSAGE}", actions
                )
            )

        if await deliver_in_order(routes):
            self.logger.info("Liveness ping sent: guild=%s user=%s id=%s", session.guild_id, session.user_id, session.id)
        else:
            self.logger.warning(
                "Liveness ping undeliverable: guild=%s user=%s id=%s", session.guild_id, session.user_id, session.id
            )

    async def _close_on_timeout(self, session: Session, now: datetime) -> LivenessOutcome:
        fresh = self.db.get_session(session.id)
        if fresh is None or fresh.status is not SessionStatus.OPEN:
            return LivenessOutcome.NONE

        try:
            result = self.sessions.close_session(session.id, REASON_TIMEOUT, at=now)
        except AlreadyClosedError:
            self.logger.debug("Timeout close ignored, session %s already closed", session.id)
            return LivenessOutcome.NONE
        finally:
            self._ping_marks.pop(session.id, None)

        config = self.sessions.guild_config(result.session.guild_id)
        if config.logs_channel_id:
            await deliver_in_order(
                [
                    lambda: self.notifier.send_to_channel(
                        config.logs_channel_id,
                        f"Auto-closed for not answering: <@{result.session.user_id}> "
                        f"(+{format_hours(result.split.normal)} normal, +{format_hours(result.split.stellar)} stellar)",
                    )
                ]
            )
        await self._after_close(result)
        return LivenessOutcome.CLOSED

    async def _after_close(self, result: CloseResult) -> None:
        if self.on_session_closed is None:
            return
        try:
            await self.on_session_closed(result)
        except Exception:
            self.logger.exception("Session-closed hook failed for session %s", result.session.id)

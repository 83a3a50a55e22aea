from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol
from zoneinfo import ZoneInfo

from .clock import Clock, SystemClock
from .config import ActiveSessionPolicy
from .db import Database
from .errors import ArchivalError
from .export import ArchiveSnapshot
from .models import GuildConfig, Session, SessionStatus
from .notifications import Notifier, deliver_in_order
from .sessions import REASON_ARCHIVED, SessionService


class Exporter(Protocol):
    def export_archive(self, snapshot: ArchiveSnapshot, tz: ZoneInfo) -> Path: ...

    def export_backup(self, snapshot: ArchiveSnapshot, tz: ZoneInfo, guild_name: str | None = None) -> list[Path]: ...


@dataclass(frozen=True, slots=True)
class ArchiveResult:
    guild_id: str
    archived_at: datetime
    archived_count: int
    export_path: Path
    drained: list[Session] = field(default_factory=list)
    restarted: list[Session] = field(default_factory=list)


class PeriodArchiver:
    """Weekly snapshot-export-reset of a guild's live sessions.

    The whole run is one transaction under the guild lock: if the snapshot
    or the export fails nothing is deleted and nothing is written to history.
    """

    def __init__(
        self,
        db: Database,
        sessions: SessionService,
        exporter: Exporter,
        notifier: Notifier | None = None,
        policy: ActiveSessionPolicy = ActiveSessionPolicy.DRAIN_AND_RESTART,
        clock: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.db = db
        self.sessions = sessions
        self.exporter = exporter
        self.notifier = notifier
        self.policy = policy
        self.clock = clock or SystemClock()
        self.logger = logger or logging.getLogger(__name__)

    async def archive_period(self, guild_id: str) -> ArchiveResult:
        config = self.sessions.guild_config(guild_id)
        try:
            result = self._run_archive(guild_id, config)
        except ArchivalError as exc:
            self.logger.exception("Weekly archive failed for guild %s", guild_id)
            await self._report(config, f"Weekly archive failed, live data left untouched: {exc}")
            raise

        self.logger.info(
            "Weekly archive done: guild=%s archived=%d drained=%d restarted=%d file=%s",
            guild_id,
            result.archived_count,
            len(result.drained),
            len(result.restarted),
            result.export_path,
        )
        await self._report(
            config,
            f"Weekly backup generated ({result.archived_count} sessions archived)",
            files=[result.export_path],
        )
        return result

    async def backup(self, guild_id: str, guild_name: str | None = None, *, upload: bool = False) -> list[Path]:
        """Non-destructive nightly dump of sessions, pauses and adjustments."""
        config = self.sessions.guild_config(guild_id)
        with self.sessions.guild_lock(guild_id):
            snapshot = self._snapshot(guild_id, self.clock.now())

        try:
            paths = self.exporter.export_backup(snapshot, config.timezone, guild_name)
        except Exception as exc:
            raise ArchivalError(guild_id, f"nightly backup export failed: {exc}") from exc

        self.logger.info("Nightly backup written: guild=%s files=%s", guild_id, [str(path) for path in paths])
        if upload:
            day = snapshot.taken_at.astimezone(config.timezone).date().isoformat()
            await self._report(config, f"Nightly backup **{day}**", files=paths)
        return paths

    def _run_archive(self, guild_id: str, config: GuildConfig) -> ArchiveResult:
        now = self.clock.now()
        export_path: Path | None = None
        try:
            with self.sessions.guild_lock(guild_id), self.db.transaction():
                drained = self._drain(guild_id)
                snapshot = self._snapshot(guild_id, now)
                archived = self.db.snapshot_guild_sessions(guild_id, now)
                export_path = self.exporter.export_archive(snapshot, config.timezone)
                self.db.delete_guild_sessions(guild_id)
                restarted = self._restart(drained)
        except Exception as exc:
            # A rolled-back archive leaves no export behind.
            if export_path is not None:
                export_path.unlink(missing_ok=True)
            if isinstance(exc, ArchivalError):
                raise
            raise ArchivalError(guild_id, str(exc)) from exc

        return ArchiveResult(
            guild_id=guild_id,
            archived_at=now,
            archived_count=archived,
            export_path=export_path,
            drained=drained,
            restarted=restarted,
        )

    def _drain(self, guild_id: str) -> list[Session]:
        if self.policy is ActiveSessionPolicy.FREEZE:
            return []

        active = self.db.list_sessions(guild_id, statuses=[SessionStatus.OPEN, SessionStatus.PAUSED])
        for session in active:
            self.sessions.close_session(session.id, REASON_ARCHIVED)
        return active

    def _restart(self, drained: Sequence[Session]) -> list[Session]:
        if self.policy is not ActiveSessionPolicy.DRAIN_AND_RESTART:
            return []

        restarted: list[Session] = []
        for previous in drained:
            session = self.sessions.start(previous.guild_id, previous.user_id)
            if previous.status is SessionStatus.PAUSED:
                session = self.sessions.pause(previous.guild_id, previous.user_id)
            restarted.append(session)
        return restarted

    def _snapshot(self, guild_id: str, taken_at: datetime) -> ArchiveSnapshot:
        return ArchiveSnapshot(
            guild_id=guild_id,
            taken_at=taken_at,
            sessions=self.db.list_sessions(guild_id),
            pauses=self.db.list_guild_pauses(guild_id),
            adjustments=self.db.list_adjustments(guild_id),
        )

    async def _report(self, config: GuildConfig, message: str, files: Sequence[Path] = ()) -> None:
        if self.notifier is None or not config.logs_channel_id:
            return
        delivered = await deliver_in_order(
            [lambda: self.notifier.send_to_channel(config.logs_channel_id, message, files=files)]
        )
        if not delivered:
            self.logger.warning("Could not post archive report to guild %s", config.guild_id)

from __future__ import annotations

import logging
from datetime import datetime, time

import discord
from discord.ext import commands, tasks
from dotenv import load_dotenv

from .archiver import PeriodArchiver
from .clock import SystemClock
from .commands import register_commands
from .config import Config, load_config
from .db import Database
from .discord_notifier import DiscordNotifier, build_ping_view
from .errors import AlreadyClosedError, ArchivalError, ConflictError, SessionNotFoundError
from .export import CsvExporter
from .liveness import LivenessMonitor
from .models import CloseResult, Session, SessionStatus
from .notifications import PingActions, parse_ping_action
from .panel import PANEL_BUTTON_IDS, PANEL_PAUSE, PANEL_RESUME, PANEL_START, PANEL_STOP, refresh_panel
from .rates import format_hours
from .reporter import Reporter
from .sessions import SessionService

ARCHIVE_META_KEY = "last_weekly_archive:{guild_id}"
BACKUP_META_KEY = "last_nightly_backup:{guild_id}"


class BitacoraBot(commands.Bot):
    def __init__(self, config: Config, db: Database) -> None:
        intents = discord.Intents.none()
        intents.guilds = True
        intents.dm_messages = True

        super().__init__(command_prefix="!", intents=intents)

        self.config = config
        self.db = db
        self.clock = SystemClock()
        self.logger = logging.getLogger("bitacora-bot")

        self.notifier = DiscordNotifier(self)
        self.sessions = SessionService(db=db, defaults=config.defaults, clock=self.clock)
        self.reporter = Reporter(db=db, sessions=self.sessions, clock=self.clock)
        self.monitor = LivenessMonitor(
            db=db,
            sessions=self.sessions,
            notifier=self.notifier,
            clock=self.clock,
            on_session_closed=self._on_session_closed,
        )
        self.archiver = PeriodArchiver(
            db=db,
            sessions=self.sessions,
            exporter=CsvExporter(config.backup_dir),
            notifier=self.notifier,
            policy=config.active_session_policy,
            clock=self.clock,
        )

    async def setup_hook(self) -> None:
        # Register slash commands during startup and begin the background loops.
        register_commands(self)
        await self.tree.sync()
        self.liveness_loop.start()
        self.schedule_loop.start()

    async def on_ready(self) -> None:
        self.logger.info("Connected as %s (%s)", self.user, self.user.id if self.user else "unknown")
        for guild in self.guilds:
            await self.refresh_panel(str(guild.id))

    def active_sessions(self, guild_id: str) -> list[Session]:
        return self.db.list_sessions(guild_id, statuses=[SessionStatus.OPEN, SessionStatus.PAUSED])

    async def refresh_panel(self, guild_id: str) -> None:
        config = self.sessions.guild_config(guild_id)
        await refresh_panel(self, config, self.active_sessions(guild_id))

    async def send_log(self, guild_id: str, content: str) -> None:
        config = self.sessions.guild_config(guild_id)
        if config.logs_channel_id:
            await self.notifier.send_to_channel(config.logs_channel_id, content)

    async def _on_session_closed(self, result: CloseResult) -> None:
        await self.refresh_panel(result.session.guild_id)

    def _has_panel_access(self, member: discord.abc.User) -> bool:
        if not self.config.role_ids:
            return True
        if not isinstance(member, discord.Member):
            return False
        return any(role.id in self.config.role_ids for role in member.roles)

    async def on_interaction(self, interaction: discord.Interaction) -> None:
        # Slash commands go through the tree; only raw button presses land here.
        if interaction.type is not discord.InteractionType.component:
            return

        custom_id = (interaction.data or {}).get("custom_id", "")
        ping_action = parse_ping_action(custom_id)
        if ping_action is not None:
            await self._handle_ping_button(interaction, *ping_action)
        elif custom_id in PANEL_BUTTON_IDS:
            await self._handle_panel_button(interaction, custom_id)

    async def _handle_ping_button(self, interaction: discord.Interaction, action: str, session_id: int) -> None:
        session = self.db.get_session(session_id)
        if session is None or session.user_id != str(interaction.user.id):
            await interaction.response.send_message("Session not found.", ephemeral=True)
            return

        if action == "ack":
            try:
                self.monitor.acknowledge(session_id)
                content = "Great! Your service time keeps counting."
            except AlreadyClosedError:
                content = "That session is already closed."
        else:
            result = await self.monitor.close_now(session_id)
            content = "Session closed."
            if result is not None:
                await self.send_log(
                    result.session.guild_id,
                    f"Closed from ping: <@{result.session.user_id}> "
                    f"(+{format_hours(result.split.normal)} normal, +{format_hours(result.split.stellar)} stellar)",
                )

        await interaction.response.edit_message(
            content=content, view=build_ping_view(PingActions(session_id), disabled=True)
        )

    async def _handle_panel_button(self, interaction: discord.Interaction, custom_id: str) -> None:
        if interaction.guild_id is None:
            return
        if not self._has_panel_access(interaction.user):
            await interaction.response.send_message("You don't have access to the service log.", ephemeral=True)
            return

        guild_id = str(interaction.guild_id)
        user_id = str(interaction.user.id)
        mention = interaction.user.mention

        try:
            if custom_id == PANEL_START:
                self.sessions.start(guild_id, user_id)
                reply, log = "Your shift has started. Have a good one!", f"{mention} **started** service."
            elif custom_id == PANEL_STOP:
                result = self.sessions.close(guild_id, user_id)
                reply = "Shift closed. Thanks for your service!"
                log = (
                    f"{mention} **stopped** (+{format_hours(result.split.normal)} normal, "
                    f"+{format_hours(result.split.stellar)} stellar = **{result.split.coins} coins**)"
                )
            elif custom_id == PANEL_PAUSE:
                self.sessions.pause(guild_id, user_id)
                reply, log = "Break started.", f"{mention} started a **break**."
            else:
                self.sessions.resume(guild_id, user_id)
                reply, log = "Service resumed.", f"{mention} **resumed** service."
        except SessionNotFoundError:
            await interaction.response.send_message("You don't have an open shift.", ephemeral=True)
            return
        except AlreadyClosedError:
            await interaction.response.send_message("That shift was already closed.", ephemeral=True)
            return
        except ConflictError as exc:
            await interaction.response.send_message(_conflict_reply(custom_id, exc), ephemeral=True)
            return

        await interaction.response.send_message(reply, ephemeral=True)
        await self.send_log(guild_id, log)
        await self.refresh_panel(guild_id)

    @tasks.loop(minutes=1)
    async def liveness_loop(self) -> None:
        outcomes = await self.monitor.sweep()
        if outcomes:
            self.logger.debug("Liveness sweep checked %d sessions", len(outcomes))

    @tasks.loop(seconds=30)
    async def schedule_loop(self) -> None:
        now = self.clock.now()
        for guild in self.guilds:
            guild_id = str(guild.id)
            config = self.sessions.guild_config(guild_id)
            now_local = now.astimezone(config.timezone)

            if _in_slot(now_local, self.config.nightly_backup_time) and self._claim_slot(
                BACKUP_META_KEY.format(guild_id=guild_id), now_local
            ):
                try:
                    await self.archiver.backup(guild_id, guild.name, upload=self.config.nightly_backup_upload)
                except ArchivalError:
                    self.logger.exception("Nightly backup failed for guild %s", guild_id)

            if (
                now_local.weekday() == self.config.archive_weekday
                and _in_slot(now_local, self.config.archive_time)
                and self._claim_slot(ARCHIVE_META_KEY.format(guild_id=guild_id), now_local)
            ):
                try:
                    await self.archiver.archive_period(guild_id)
                except ArchivalError:
                    # Already logged and reported; other guilds still get archived.
                    continue
                await self.refresh_panel(guild_id)

    def _claim_slot(self, key: str, now_local: datetime) -> bool:
        # Guard against running twice during the same scheduled minute.
        day = now_local.date().isoformat()
        if self.db.get_meta(key) == day:
            return False
        self.db.set_meta(key, day)
        return True

    @liveness_loop.before_loop
    @schedule_loop.before_loop
    async def before_loops(self) -> None:
        await self.wait_until_ready()

    async def close(self) -> None:
        for loop in (self.liveness_loop, self.schedule_loop):
            if loop.is_running():
                loop.cancel()
        self.db.close()
        await super().close()


def _in_slot(now_local: datetime, slot: time) -> bool:
    return now_local.hour == slot.hour and now_local.minute == slot.minute


def _conflict_reply(custom_id: str, exc: ConflictError) -> str:
    if custom_id == PANEL_START:
        return "You already have an open shift."
    if custom_id == PANEL_PAUSE:
        return "You are already on a break."
    if custom_id == PANEL_RESUME:
        return "You are not on a break."
    return str(exc)


def configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )


def main() -> None:
    load_dotenv()
    configure_logging()

    config = load_config()
    db = Database(config.db_path)
    db.initialize()

    bot = BitacoraBot(config=config, db=db)
    bot.run(config.discord_token)


if __name__ == "__main__":
    main()

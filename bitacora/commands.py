from __future__ import annotations

from typing import Literal, Optional

import discord
from discord import app_commands

from .accounting import format_windows, parse_windows
from .config import parse_timezone
from .errors import ArchivalError, BitacoraError, SessionNotFoundError, ValidationError
from .panel import PANEL_COLOR, build_panel_embed, build_panel_view
from .rates import format_hours
from .reporter import build_leaderboard_lines, period_range

PERIOD_TITLES = {"today": "Top - Today", "week": "Top - This week", "month": "Top - This month"}


def register_commands(bot):
    """Register the /bitacora command group on the bot. Called once during setup."""
    group = app_commands.Group(name="bitacora", description="Service log commands", guild_only=True)
    admin = app_commands.checks.has_permissions(manage_guild=True)

    @group.command(name="panel", description="Publish the service panel in a channel")
    @app_commands.describe(channel="Target text channel")
    @admin
    async def panel(interaction: discord.Interaction, channel: discord.TextChannel):
        guild_id = str(interaction.guild_id)
        config = bot.sessions.guild_config(guild_id)
        sessions = bot.active_sessions(guild_id)

        message = await channel.send(embed=build_panel_embed(config, sessions), view=build_panel_view())
        bot.db.update_guild_config(guild_id, panel_channel_id=str(channel.id), panel_message_id=str(message.id))
        await interaction.response.send_message(f"Panel published in {channel.mention}.", ephemeral=True)

    @group.command(name="config", description="Configure logs channel, pings, timezone and stellar hours")
    @app_commands.describe(
        logs_channel="Channel for logs, backups and ping fallbacks",
        ping_every_min="Minutes between liveness pings (default 120)",
        ping_timeout_min="Minutes without an answer before auto-close (default 5)",
        timezone="IANA timezone, e.g. America/Mexico_City",
        stellar_windows="Stellar hours as HH:MM-HH:MM,HH:MM-HH:MM",
    )
    @admin
    async def config(
        interaction: discord.Interaction,
        logs_channel: Optional[discord.TextChannel] = None,
        ping_every_min: Optional[app_commands.Range[int, 1, 1440]] = None,
        ping_timeout_min: Optional[app_commands.Range[int, 1, 1440]] = None,
        timezone: Optional[str] = None,
        stellar_windows: Optional[str] = None,
    ):
        updates = {}
        try:
            if timezone is not None:
                updates["timezone"] = parse_timezone(timezone).key
            if stellar_windows is not None:
                updates["stellar_windows"] = format_windows(parse_windows(stellar_windows))
        except ValidationError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return

        if logs_channel is not None:
            updates["logs_channel_id"] = str(logs_channel.id)
        if ping_every_min is not None:
            updates["ping_every_min"] = ping_every_min
        if ping_timeout_min is not None:
            updates["ping_timeout_min"] = ping_timeout_min

        guild_id = str(interaction.guild_id)
        bot.db.update_guild_config(guild_id, **updates)
        await bot.refresh_panel(guild_id)
        await interaction.response.send_message("Configuration saved.", ephemeral=True)

    async def _adjust(interaction: discord.Interaction, member: discord.Member, minutes: int, reason: str):
        guild_id = str(interaction.guild_id)
        try:
            bot.sessions.record_adjustment(guild_id, str(member.id), minutes, reason, str(interaction.user.id))
        except ValidationError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return

        verb = "Added" if minutes > 0 else "Subtracted"
        await bot.send_log(
            guild_id,
            f"{verb} {abs(minutes)} min for {member.mention} by {interaction.user.mention}: {reason}",
        )
        await interaction.response.send_message(
            f"{verb} `{abs(minutes)}` minutes for {member.mention}.", ephemeral=True
        )

    @group.command(name="add", description="Add minutes to a user")
    @app_commands.describe(user="User", minutes="Minutes to add", reason="Reason")
    @admin
    async def add(
        interaction: discord.Interaction,
        user: discord.Member,
        minutes: app_commands.Range[int, 1, 100000],
        reason: str,
    ):
        await _adjust(interaction, user, minutes, reason)

    @group.command(name="subtract", description="Subtract minutes from a user")
    @app_commands.describe(user="User", minutes="Minutes to subtract", reason="Reason")
    @admin
    async def subtract(
        interaction: discord.Interaction,
        user: discord.Member,
        minutes: app_commands.Range[int, 1, 100000],
        reason: str,
    ):
        await _adjust(interaction, user, -minutes, reason)

    @group.command(name="force-close", description="Force-close a user's active session")
    @app_commands.describe(user="User")
    @admin
    async def force_close(interaction: discord.Interaction, user: discord.Member):
        guild_id = str(interaction.guild_id)
        try:
            result = bot.sessions.force_close(guild_id, str(user.id), actor_id=str(interaction.user.id))
        except SessionNotFoundError:
            await interaction.response.send_message(f"{user.mention} has no active session.", ephemeral=True)
            return

        await bot.send_log(
            guild_id,
            f"Force-closed {user.mention} by {interaction.user.mention} "
            f"(+{format_hours(result.split.normal)} normal, +{format_hours(result.split.stellar)} stellar)",
        )
        await bot.refresh_panel(guild_id)
        await interaction.response.send_message(f"Closed the session of {user.mention}.", ephemeral=True)

    @group.command(name="top", description="Show the leaderboard for a period")
    @app_commands.describe(period="today | week | month")
    async def top(interaction: discord.Interaction, period: Literal["today", "week", "month"]):
        await interaction.response.defer()
        guild_id = str(interaction.guild_id)
        config = bot.sessions.guild_config(guild_id)
        range_start, range_end = period_range(period, config.timezone, bot.clock.now())

        rows = bot.reporter.top(guild_id, range_start, range_end)
        if not rows:
            await interaction.followup.send("No data for that period.")
            return

        embed = discord.Embed(
            title=PERIOD_TITLES[period], description="\n".join(build_leaderboard_lines(rows)), color=PANEL_COLOR
        )
        await interaction.followup.send(embed=embed)

    @group.command(name="all", description="Show all-time totals")
    async def all_time(interaction: discord.Interaction):
        await interaction.response.defer()
        rows = bot.reporter.all_time(str(interaction.guild_id))
        if not rows:
            await interaction.followup.send("No records yet.")
            return

        embed = discord.Embed(
            title="Service Log - All-time totals",
            description="\n".join(build_leaderboard_lines(rows)),
            color=PANEL_COLOR,
        )
        await interaction.followup.send(embed=embed)

    @group.command(name="archive-now", description="Archive and reset this guild's sessions now")
    @admin
    async def archive_now(interaction: discord.Interaction):
        await interaction.response.defer(ephemeral=True)
        guild_id = str(interaction.guild_id)
        try:
            result = await bot.archiver.archive_period(guild_id)
        except ArchivalError as exc:
            await interaction.followup.send(f"Archive failed, nothing was deleted: `{exc}`", ephemeral=True)
            return

        await bot.refresh_panel(guild_id)
        await interaction.followup.send(
            f"Archived `{result.archived_count}` sessions to `{result.export_path.name}`.", ephemeral=True
        )

    @bot.tree.error
    async def on_app_command_error(interaction: discord.Interaction, error: app_commands.AppCommandError):
        if isinstance(error, app_commands.MissingPermissions):
            message = "You need the Manage Server permission for this command."
        elif isinstance(error, app_commands.CommandInvokeError) and isinstance(error.original, BitacoraError):
            message = f"Command failed: `{error.original}`"
        else:
            bot.logger.error("Unhandled command error", exc_info=error)
            message = "Something went wrong."

        if interaction.response.is_done():
            await interaction.followup.send(message, ephemeral=True)
        else:
            await interaction.response.send_message(message, ephemeral=True)

    bot.tree.add_command(group)

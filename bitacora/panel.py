from __future__ import annotations

import logging

import discord

from .accounting import format_windows
from .models import GuildConfig, Session, SessionStatus

PANEL_START = "bitacora_start"
PANEL_STOP = "bitacora_stop"
PANEL_PAUSE = "bitacora_pause"
PANEL_RESUME = "bitacora_resume"
PANEL_BUTTON_IDS = frozenset({PANEL_START, PANEL_STOP, PANEL_PAUSE, PANEL_RESUME})

PANEL_COLOR = 0xF7A8D8
MAX_LISTED_USERS = 20

logger = logging.getLogger(__name__)


def _mentions(user_ids: list[str]) -> str:
    if not user_ids:
        return "-"
    listed = " ".join(f"<@{user_id}>" for user_id in user_ids[:MAX_LISTED_USERS])
    extra = len(user_ids) - MAX_LISTED_USERS
    return f"{listed} +{extra} more" if extra > 0 else listed


def build_panel_embed(config: GuildConfig, sessions: list[Session]) -> discord.Embed:
    on_duty = [session.user_id for session in sessions if session.status is SessionStatus.OPEN]
    on_break = [session.user_id for session in sessions if session.status is SessionStatus.PAUSED]
    windows = format_windows(config.windows).replace(",", ", ") or "none"

    description = "\n".join(
        [
            "Use the buttons to **Start/Stop** your shift or take a **Break/Resume**.",
            f"- Daily stellar hours: **{windows}**",
            f"- Timezone: **{config.timezone.key}**",
            "",
            f"**On duty now:** {_mentions(on_duty)}",
            f"**On break:** {_mentions(on_break)}",
        ]
    )
    embed = discord.Embed(title="Service Log", description=description, color=PANEL_COLOR)
    embed.set_footer(text="Rate: 1 coin/h normal · 2 coins/h stellar")
    return embed


def build_panel_view() -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(discord.ui.Button(label="Start", style=discord.ButtonStyle.success, custom_id=PANEL_START))
    view.add_item(discord.ui.Button(label="Stop", style=discord.ButtonStyle.danger, custom_id=PANEL_STOP))
    view.add_item(discord.ui.Button(label="Break", style=discord.ButtonStyle.secondary, custom_id=PANEL_PAUSE))
    view.add_item(discord.ui.Button(label="Resume", style=discord.ButtonStyle.primary, custom_id=PANEL_RESUME))
    return view


async def refresh_panel(client: discord.Client, config: GuildConfig, sessions: list[Session]) -> bool:
    """Edit the guild's published panel in place. Returns False if it is gone."""
    if not config.panel_channel_id or not config.panel_message_id:
        return False

    try:
        channel = client.get_channel(int(config.panel_channel_id)) or await client.fetch_channel(
            int(config.panel_channel_id)
        )
        if not isinstance(channel, discord.TextChannel):
            return False
        message = await channel.fetch_message(int(config.panel_message_id))
        await message.edit(embed=build_panel_embed(config, sessions), view=build_panel_view())
    except discord.HTTPException as exc:
        logger.warning("Could not refresh panel for guild %s: %s", config.guild_id, exc)
        return False
    return True

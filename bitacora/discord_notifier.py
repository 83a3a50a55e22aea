from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path

import discord

from .notifications import PingActions


def build_ping_view(actions: PingActions, *, disabled: bool = False) -> discord.ui.View:
    view = discord.ui.View(timeout=None)
    view.add_item(
        discord.ui.Button(
            label="Yes, still on duty",
            style=discord.ButtonStyle.success,
            custom_id=actions.acknowledge_id,
            disabled=disabled,
        )
    )
    view.add_item(
        discord.ui.Button(
            label="Close now",
            style=discord.ButtonStyle.danger,
            custom_id=actions.close_id,
            disabled=disabled,
        )
    )
    return view


class DiscordNotifier:
    """Delivers core notifications as Discord DMs and channel messages."""

    def __init__(self, client: discord.Client, logger: logging.Logger | None = None) -> None:
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    async def send_direct(self, user_id: str, message: str, actions: PingActions | None = None) -> bool:
        try:
            user = self.client.get_user(int(user_id)) or await self.client.fetch_user(int(user_id))
            kwargs = {}
            if actions is not None:
                kwargs["view"] = build_ping_view(actions)
            await user.send(message, **kwargs)
        except discord.HTTPException as exc:
            # Closed DMs are common; the caller falls back to the log channel.
            self.logger.info("Direct message to user %s failed: %s", user_id, exc)
            return False
        return True

    async def send_to_channel(
        self,
        channel_id: str,
        message: str,
        actions: PingActions | None = None,
        files: Sequence[Path] = (),
    ) -> bool:
        try:
            channel = self.client.get_channel(int(channel_id)) or await self.client.fetch_channel(int(channel_id))
            if not isinstance(channel, discord.abc.Messageable):
                self.logger.warning("Channel %s cannot receive messages", channel_id)
                return False

            kwargs = {
                # Only the pinged member may be mentioned, never roles or everyone.
                "allowed_mentions": discord.AllowedMentions(everyone=False, roles=False, users=True),
            }
            if actions is not None:
                kwargs["view"] = build_ping_view(actions)
            if files:
                kwargs["files"] = [discord.File(str(path)) for path in files]
            await channel.send(message, **kwargs)
        except (discord.HTTPException, OSError) as exc:
            self.logger.warning("Message to channel %s failed: %s", channel_id, exc)
            return False
        return True

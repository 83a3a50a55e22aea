from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

PING_ACK_PREFIX = "ping_yes:"
PING_CLOSE_PREFIX = "ping_close:"

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PingActions:
    """The acknowledge and close-now affordances attached to a liveness ping."""

    session_id: int

    @property
    def acknowledge_id(self) -> str:
        return f"{PING_ACK_PREFIX}{self.session_id}"

    @property
    def close_id(self) -> str:
        return f"{PING_CLOSE_PREFIX}{self.session_id}"


def parse_ping_action(custom_id: str) -> tuple[str, int] | None:
    """Map a button id back to ``("ack" | "close", session_id)``."""
    for prefix, action in ((PING_ACK_PREFIX, "ack"), (PING_CLOSE_PREFIX, "close")):
        if custom_id.startswith(prefix):
            raw = custom_id[len(prefix):]
            if raw.isdigit():
                return action, int(raw)
    return None


class Notifier(Protocol):
    async def send_direct(self, user_id: str, message: str, actions: PingActions | None = None) -> bool: ...

    async def send_to_channel(
        self,
        channel_id: str,
        message: str,
        actions: PingActions | None = None,
        files: Sequence[Path] = (),
    ) -> bool: ...


DeliveryRoute = Callable[[], Awaitable[bool]]


async def deliver_in_order(routes: Sequence[DeliveryRoute]) -> bool:
    """Try each route until one reports success.

    A route that raises counts as a failed delivery; notifications never
    abort the state change that triggered them.
    """
    for route in routes:
        try:
            if await route():
                return True
        except Exception:
            logger.warning("Notification route failed", exc_info=True)
    return False

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

NORMAL_RATE = Decimal("1")
STELLAR_RATE = Decimal("2")
_CENTS = Decimal("0.01")


def coins(
    normal_minutes: int,
    stellar_minutes: int,
    normal_rate: Decimal | int = NORMAL_RATE,
    stellar_rate: Decimal | int = STELLAR_RATE,
) -> Decimal:
    """Convert minutes into coins, rounded half-up to two decimals."""
    raw = (Decimal(normal_minutes) * Decimal(normal_rate) + Decimal(stellar_minutes) * Decimal(stellar_rate)) / 60
    return raw.quantize(_CENTS, rounding=ROUND_HALF_UP)


def format_hours(minutes: int) -> str:
    """Render minutes as decimal hours, e.g. 90 -> ``1.50h``."""
    hours = (Decimal(minutes) / 60).quantize(_CENTS, rounding=ROUND_HALF_UP)
    return f"{hours}h"

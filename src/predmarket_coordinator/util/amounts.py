"""Fixed-point helpers for 6-decimal token amounts.

Ledger amounts travel as ints in the token's smallest unit. Decimal strings are
only used at the edges (user input, display).
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from typing import Any

from predmarket_coordinator.domain.errors import InvalidAmount

TOKEN_DECIMALS = 6
TOKEN_SCALE = 10**TOKEN_DECIMALS


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        number = value
    else:
        try:
            number = Decimal(str(value).strip())
        except (InvalidOperation, ValueError):
            return None
    if not number.is_finite():
        return None
    return number


def to_units(value: Any) -> int:
    """Convert a positive decimal amount to fixed-point units.

    Raises ``InvalidAmount`` for non-numeric, non-positive, or over-precise input.
    """
    number = to_decimal(value)
    if number is None:
        raise InvalidAmount(f"amount is not a number: {value!r}")
    if number <= 0:
        raise InvalidAmount(f"amount must be positive, got {value!r}")
    scaled = number.scaleb(TOKEN_DECIMALS)
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(f"amount has more than {TOKEN_DECIMALS} decimal places: {value!r}")
    return int(scaled)


def from_units(units: int) -> Decimal:
    return Decimal(units).scaleb(-TOKEN_DECIMALS)


def format_units(units: int | None, places: int = 2) -> str:
    if units is None:
        return "—"
    quantum = Decimal(1).scaleb(-places)
    return f"{from_units(units).quantize(quantum):,}"

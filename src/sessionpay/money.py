"""Amount conversion helpers using integer smallest-unit precision."""

from __future__ import annotations

from decimal import Decimal, ROUND_FLOOR


DEFAULT_DECIMALS = 6
DEFAULT_SYMBOL = "USDC"


def _unit(decimals: int) -> Decimal:
    return Decimal(10) ** decimals


def to_base_units(value: Decimal | float | int | str, decimals: int = DEFAULT_DECIMALS) -> int:
    """Convert a display amount to base units, rounding down (never overcharge)."""
    dec = Decimal(str(value)) * _unit(decimals)
    return int(dec.to_integral_value(rounding=ROUND_FLOOR))


def from_base_units(value: int, decimals: int = DEFAULT_DECIMALS) -> Decimal:
    """Convert integer base units to a Decimal display amount."""
    return (Decimal(value) / _unit(decimals)).quantize(Decimal(1).scaleb(-decimals))


def format_amount(value: int, decimals: int = DEFAULT_DECIMALS, symbol: str = DEFAULT_SYMBOL) -> str:
    """Format integer base units as a human-readable amount."""
    return f"{from_base_units(value, decimals)} {symbol}"


def ceiling_for(period_amount: int, periods: int) -> int:
    """Aggregate amount a delegate may move over a subscription's lifetime."""
    if period_amount <= 0 or periods <= 0:
        raise ValueError("period_amount and periods must be positive")
    return int(period_amount) * int(periods)

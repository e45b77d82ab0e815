"""Integer unit arithmetic: basis points, native-currency granularities, prices.

Nothing in here uses floating point. Native currency amounts exist in two
granularities: tinybars (10^8 per coin) are what the ledger stores, weibars
(10^18 per coin) are what RPC-facing callers send. One tinybar is exactly
10^10 weibars.
"""

from __future__ import annotations

from decimal import Decimal, InvalidOperation
from enum import Enum

from revaultron.errors import InvalidAmount

BASIS_POINTS = 10_000
MAX_VOLATILITY_BPS = 1_000_000
PRICE_DECIMALS = 18

NATIVE_DECIMALS = 8
TINYBARS_PER_HBAR = 10 ** NATIVE_DECIMALS
WEIBARS_PER_TINYBAR = 10 ** 10

# The zero address stands for the native currency wherever an asset id is expected.
NATIVE_ASSET = "0x" + "0" * 40


class NativeUnit(str, Enum):
    TINYBAR = "tinybar"
    WEIBAR = "weibar"


def is_native(asset: str) -> bool:
    return asset == NATIVE_ASSET


def to_tinybars(amount: int, unit: NativeUnit = NativeUnit.TINYBAR) -> int:
    """Convert a native amount to tinybars.

    Weibar amounts must be a whole number of tinybars; anything else would
    silently drop value.
    """
    if unit == NativeUnit.TINYBAR:
        return amount
    tinybars, remainder = divmod(amount, WEIBARS_PER_TINYBAR)
    if remainder:
        raise InvalidAmount(amount, reason="weibar amount is not a whole number of tinybars")
    return tinybars


def tinybars_to_weibars(tinybars: int) -> int:
    return tinybars * WEIBARS_PER_TINYBAR


def parse_hbar(text: str) -> int:
    """Parse a decimal coin amount such as ``"1.5"`` into tinybars."""
    try:
        value = Decimal(text.strip())
    except (InvalidOperation, AttributeError):
        raise InvalidAmount(text, reason="not a decimal amount") from None
    scaled = value * TINYBARS_PER_HBAR
    if scaled != scaled.to_integral_value():
        raise InvalidAmount(text, reason="more than 8 fractional digits")
    return int(scaled)


def format_tinybars(tinybars: int) -> str:
    sign = "-" if tinybars < 0 else ""
    whole, frac = divmod(abs(tinybars), TINYBARS_PER_HBAR)
    return f"{sign}{whole}.{frac:0{NATIVE_DECIMALS}d}"


def bps_of(part: int, total: int) -> int:
    """Share of ``part`` in ``total`` in basis points, rounded toward zero."""
    if total <= 0:
        return 0
    return part * BASIS_POINTS // total


def apply_bps(amount: int, bps: int) -> int:
    return amount * bps // BASIS_POINTS


def bps_to_percent(bps: int) -> str:
    whole, frac = divmod(bps, 100)
    return f"{whole}.{frac:02d}%"

"""Integer fixed-point helpers shared by the store, engine and gateway.

All values are plain ``int``. ``SCALE`` (1e18) represents 1.0; ``BPS`` (1e4)
represents 100% in configuration fractions.
"""

from __future__ import annotations

SCALE = 10**18
BPS = 10_000

# CR when liabilities are zero
CR_INFINITY = 2**256 - 1

# 1.0 未満で表現可能な最大値
PRICE_BELOW_PEG = SCALE - 1


def mul_div(a: int, b: int, denominator: int) -> int:
    """floor(a * b / denominator)."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div denominator is zero")
    return a * b // denominator


def mul_div_up(a: int, b: int, denominator: int) -> int:
    """ceil(a * b / denominator) for non-negative operands."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div_up denominator is zero")
    return -(-(a * b) // denominator)


def bps_of(amount: int, bps: int) -> int:
    """floor(amount * bps / 10000)."""
    return amount * bps // BPS


def bps_to_wad(bps: int) -> int:
    return bps * SCALE // BPS


def to_wad(amount: int, decimals: int) -> int:
    """Scale a reserve-unit amount up to 18 decimals."""
    if decimals > 18:
        return amount // 10 ** (decimals - 18)
    return amount * 10 ** (18 - decimals)


def from_wad(amount: int, decimals: int) -> int:
    """Scale an 18-decimal amount down to reserve units (rounds down)."""
    if decimals > 18:
        return amount * 10 ** (decimals - 18)
    return amount // 10 ** (18 - decimals)


def format_wad(value: int, places: int = 6) -> str:
    """Human-readable rendering for logs (``CR_INFINITY`` shows as inf)."""
    if value == CR_INFINITY:
        return "inf"
    sign = "-" if value < 0 else ""
    value = abs(value)
    whole, frac = divmod(value, SCALE)
    frac_str = f"{frac:018d}"[:places]
    return f"{sign}{whole}.{frac_str}"

"""Shared pricing helpers for the mint/redeem gateway.

Rounding always favours the reserve: the mint price rounds up (never
over-mint), the redeem price and payouts round down (never over-pay).
"""

from __future__ import annotations

from solvency.fixed_point import (
    BPS,
    PRICE_BELOW_PEG,
    SCALE,
    bps_of,
    from_wad,
    mul_div,
    mul_div_up,
    to_wad,
)


def apply_mint_spread(price: int, spread_bps: int) -> int:
    """Mint price + spread, rounded up. A below-peg price stays below peg."""
    effective = mul_div_up(price, BPS + spread_bps, BPS)
    if price < SCALE and effective >= SCALE:
        return PRICE_BELOW_PEG
    return effective


def apply_redeem_spread(price: int, spread_bps: int) -> int:
    """Redeem price − spread, rounded down."""
    return mul_div(price, BPS - spread_bps, BPS)


def compute_fee(amount: int, fee_bps: int, exempt: bool = False) -> int:
    if exempt:
        return 0
    return bps_of(amount, fee_bps)


def tokens_for_input(net_input: int, price: int, reserve_decimals: int) -> int:
    """Tokens minted for ``net_input`` reserve units at ``price``."""
    return mul_div(to_wad(net_input, reserve_decimals), SCALE, price)


def payout_for_tokens(token_amount: int, price: int, reserve_decimals: int) -> int:
    """Reserve units paid for ``token_amount`` tokens at ``price``."""
    return from_wad(mul_div(token_amount, price, SCALE), reserve_decimals)


def split_fee(fee: int, reserve_share_bps: int) -> tuple[int, int]:
    """Return (reserve_part, treasury_part)."""
    reserve_part = bps_of(fee, reserve_share_bps)
    return reserve_part, fee - reserve_part

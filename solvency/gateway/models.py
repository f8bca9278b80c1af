"""Quote and settlement records returned by the pricing gateway."""

from __future__ import annotations

from dataclasses import dataclass

from solvency.risk.models import Band


@dataclass(frozen=True)
class MintQuote:
    effective_price: int
    fee: int
    net_input: int  # reserve units
    output: int  # tokens (wad)
    band: Band


@dataclass(frozen=True)
class RefundQuote:
    effective_price: int
    gross: int  # reserve units
    fee: int
    net: int
    band: Band


@dataclass(frozen=True)
class Settlement:
    kind: str  # "mint" | "refund"
    account: str
    recipient: str
    amount_in: int
    amount_out: int
    fee: int
    effective_price: int
    band: Band

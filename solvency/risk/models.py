"""Solvency data models.

Band, per-band configuration, thresholds, attestation, rolling counters and
the snapshot / parameter bundles handed between components.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum, StrEnum


class Band(IntEnum):
    GREEN = 0   # 通常
    YELLOW = 1  # 準備金 warn 割れ (fee/spread 引き上げ)
    RED = 2     # floor / emergency 割れ (償還容量を絞る)


class CapType(StrEnum):
    MINT = "mint"
    REDEEM = "redeem"


@dataclass(frozen=True)
class BandConfig:
    """Pricing and capacity table for one band. Fractions are bps."""

    spread_bps: int = 0
    mint_fee_bps: int = 0
    redeem_fee_bps: int = 0
    oracle_staleness_sec: int = 3600
    floor_bps: int = 250
    alpha_bps: int = 1000
    skim_bps: int = 0
    mint_cap_bps: int = 0  # 0 = unlimited
    redeem_cap_bps: int = 0  # 0 = no base fraction


@dataclass(frozen=True)
class ReserveThresholds:
    """Band boundaries as bps of liabilities (emergency <= floor <= warn)."""

    warn_bps: int = 500
    floor_bps: int = 250
    emergency_bps: int = 100


@dataclass(frozen=True)
class Attestation:
    valuation: int
    haircut: int
    measurement_time: int
    submission_time: int


@dataclass
class RollingCounter:
    """Aggregate usage for one capacity type within one cycle.

    ``frozen_capacity`` is fixed on first use of the cycle; None = unlimited.
    """

    cycle_id: int = -1
    consumed: int = 0
    frozen_capacity: int | None = None


@dataclass(frozen=True)
class DerivedCaps:
    """Capacity fractions of liabilities in wad. mint 0 = unlimited."""

    mint_fraction_wad: int = 0
    redeem_fraction_wad: int = 0


@dataclass(frozen=True)
class SystemSnapshot:
    reserve_ratio_bps: int
    equity_buffer: int
    oracle_staleness: int | None  # 秒, None = oracle 未取得
    total_supply: int
    nav_per_token: int
    reserve_balance: int  # wad-scaled, treasury excluded
    collateral_ratio: int


@dataclass(frozen=True)
class SnapshotOverride:
    snapshot: SystemSnapshot
    set_at: int
    expires_at: int
    set_by: str

    def is_active(self, now: int) -> bool:
        return now < self.expires_at


@dataclass(frozen=True)
class ParameterBundle:
    """Price, fees and capacity verdict evaluated from one snapshot."""

    price: int
    spread_bps: int
    mint_fee_bps: int
    redeem_fee_bps: int
    capacity_passed: bool
    band: Band
    floor_bps: int
    total_supply: int
    reserve_balance: int

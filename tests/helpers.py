"""Shared test helpers. Import in test files: from tests.helpers import make_harness."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from solvency.auth import Role
from solvency.bootstrap import SolvencySystem, build_system
from solvency.connectors.memory import (
    AllowList,
    ManualClock,
    MemoryLedger,
    MemoryReserve,
    StaticPriceFeed,
)
from solvency.fixed_point import SCALE
from solvency.risk.models import Band, BandConfig
from solvency.risk.policy import PolicyConfig

ADMIN = "admin"
PUBLISHER = "attestor"
GUARDIAN = "guardian"
HOLDER = "holder"

UNIT = 10**6  # 1 reserve unit (6 decimals)


def default_policy(**overrides) -> PolicyConfig:
    """Same tables as the Settings defaults, independent of env/.env."""
    bands = {
        Band.GREEN: BandConfig(
            spread_bps=0, mint_fee_bps=5, redeem_fee_bps=10, oracle_staleness_sec=86400,
            floor_bps=250, alpha_bps=2000, skim_bps=1000,
        ),
        Band.YELLOW: BandConfig(
            spread_bps=10, mint_fee_bps=5, redeem_fee_bps=25, oracle_staleness_sec=3600,
            floor_bps=250, alpha_bps=1000, skim_bps=500, redeem_cap_bps=1000,
        ),
        Band.RED: BandConfig(
            spread_bps=50, mint_fee_bps=0, redeem_fee_bps=100, oracle_staleness_sec=900,
            floor_bps=100, alpha_bps=200, skim_bps=0, redeem_cap_bps=200,
        ),
    }
    return PolicyConfig(bands=bands).with_changes(**overrides)


@dataclass
class Harness:
    system: SolvencySystem
    ledger: MemoryLedger
    reserve: MemoryReserve
    feed: StaticPriceFeed
    clock: ManualClock
    allow: AllowList

    @property
    def engine(self):
        return self.system.engine

    @property
    def gateway(self):
        return self.system.gateway

    @property
    def attestation(self):
        return self.system.attestation

    @property
    def state(self):
        return self.system.state

    @property
    def telemetry(self):
        return self.system.telemetry


def make_harness(
    db_path: Path | None = None,
    policy: PolicyConfig | None = None,
    allow_all: bool = True,
) -> Harness:
    """In-memory control plane with admin/publisher/guardian roles granted."""
    policy = policy or default_policy()
    clock = ManualClock()
    ledger = MemoryLedger()
    reserve = MemoryReserve(treasury_account=policy.treasury_account)
    feed = StaticPriceFeed()
    allow = AllowList(allow_all=allow_all)
    system = build_system(
        ledger=ledger,
        reserve=reserve,
        price_feed=feed,
        access_check=allow,
        clock=clock,
        policy=policy,
        db_path=db_path,
    )
    system.access.grant(Role.ADMIN, ADMIN)
    system.access.grant(Role.PUBLISHER, PUBLISHER)
    system.access.grant(Role.GUARDIAN, GUARDIAN)
    return Harness(system, ledger, reserve, feed, clock, allow)


def seed(h: Harness, supply_tokens: int, reserve_units: int, holder: str = HOLDER) -> None:
    """Give ``holder`` the whole supply and put ``reserve_units`` into the reserve."""
    if supply_tokens:
        h.ledger.mint(holder, supply_tokens * SCALE)
    if reserve_units:
        h.reserve.fund("seed", reserve_units * UNIT)
        h.reserve.collect("seed", reserve_units * UNIT)
        h.reserve.record_deposit(reserve_units * UNIT)


def publish(h: Harness, valuation_tokens: int, haircut: int = SCALE, age: int = 60) -> int:
    """Publish a valuation measured ``age`` seconds ago. Returns the implied CR."""
    return h.attestation.publish(
        PUBLISHER, valuation_tokens * SCALE, haircut, h.clock.now() - age,
    )

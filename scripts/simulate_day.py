#!/usr/bin/env python3
"""Run one day of mint/refund traffic against in-memory collaborators.

Usage:
    # Fully collateralized: price pinned at 1.0
    python scripts/simulate_day.py

    # Off-system valuation worth 98% of supply, oracle at 0.99
    python scripts/simulate_day.py --valuation-pct 98 --oracle 0.99

    # Persist state/telemetry for scripts/solvency_status.py
    python scripts/simulate_day.py --db data/solvency.db
"""

from __future__ import annotations

import argparse
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from solvency.auth import Role
from solvency.bootstrap import build_system
from solvency.config import settings
from solvency.connectors.memory import (
    AllowList,
    ManualClock,
    MemoryLedger,
    MemoryReserve,
    StaticPriceFeed,
)
from solvency.errors import SolvencyError
from solvency.fixed_point import SCALE, format_wad
from solvency.logging_config import setup_logging
from solvency.risk.policy import PolicyConfig

PUBLISHER = "attestor"
USERS = ["alice", "bob", "carol"]


def main() -> int:
    parser = argparse.ArgumentParser(description="Simulate a day of mint/refund traffic")
    parser.add_argument("--supply", type=int, default=1_000_000, help="Initial token supply")
    parser.add_argument("--reserve-pct", type=float, default=8.0, help="On-system reserve %% of supply")
    parser.add_argument("--valuation-pct", type=float, default=95.0, help="Attested valuation %% of supply")
    parser.add_argument("--haircut", type=float, default=1.0)
    parser.add_argument("--oracle", type=float, default=0.0, help="Oracle price (0 = none)")
    parser.add_argument("--db", default=None)
    args = parser.parse_args()

    setup_logging(structured=settings.structured_logging)
    clock = ManualClock(int(time.time()))
    policy = PolicyConfig.from_settings(settings)
    ledger = MemoryLedger()
    reserve = MemoryReserve(treasury_account=policy.treasury_account)
    feed = StaticPriceFeed()
    system = build_system(
        ledger=ledger,
        reserve=reserve,
        price_feed=feed,
        access_check=AllowList(set(USERS)),
        clock=clock,
        policy=policy,
        db_path=args.db,
    )
    system.access.grant(Role.PUBLISHER, PUBLISHER)

    unit = 10**policy.reserve_decimals
    supply = args.supply * SCALE
    reserve_units = int(args.supply * args.reserve_pct / 100) * unit
    ledger.mint(USERS[0], supply)
    reserve.fund("seed", reserve_units)
    reserve.collect("seed", reserve_units)
    reserve.record_deposit(reserve_units)

    valuation = int(args.supply * args.valuation_pct / 100) * SCALE
    system.attestation.publish(PUBLISHER, valuation, int(args.haircut * SCALE), clock.now() - 60)
    if args.oracle > 0:
        feed.set_price(int(args.oracle * SCALE), clock.now())
    system.engine.sync_oracle_mode()

    band = system.engine.refresh_band()
    print(f"band={band.name} CR={format_wad(system.engine.get_collateral_ratio())} "
          f"price={format_wad(system.engine.get_price())}")

    for user in USERS:
        reserve.fund(user, 10_000 * unit)
    for i, user in enumerate(USERS * 2):
        clock.advance(3600)
        try:
            if i % 2 == 0:
                s = system.gateway.request_mint(user, user, 1_000 * unit)
            else:
                s = system.gateway.request_refund(USERS[0], user, 500 * SCALE)
            print(f"{s.kind:<6} {user:<6} in={s.amount_in} out={s.amount_out} fee={s.fee} "
                  f"price={format_wad(s.effective_price)} band={s.band.name}")
        except SolvencyError as e:
            print(f"{user:<6} rejected: {e.code} {e.message}")

    print(f"supply={format_wad(ledger.total_supply(), 2)} reserve={reserve.balance_of()} "
          f"treasury={reserve.treasury}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

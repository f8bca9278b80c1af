#!/usr/bin/env python3
"""Show persisted solvency state: band, derived caps, counters, telemetry.

Usage:
    # Current state + last 20 telemetry events
    python scripts/solvency_status.py --db data/solvency.db

    # Only band changes
    python scripts/solvency_status.py --db data/solvency.db --kind band_changed --limit 50

    # Include DB integrity check
    python scripts/solvency_status.py --db data/solvency.db --integrity
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from solvency.config import settings
from solvency.fixed_point import format_wad
from solvency.risk.health import check_integrity, check_local_health
from solvency.risk.models import Band
from solvency.store.db import (
    get_counters,
    get_state_summary,
    get_telemetry_events,
    load_policy_config,
)
from solvency.store.schema import DEFAULT_DB_PATH


def main() -> int:
    parser = argparse.ArgumentParser(description="Solvency control plane status")
    parser.add_argument("--db", default=settings.db_path or str(DEFAULT_DB_PATH))
    parser.add_argument("--kind", default=None, help="Filter telemetry by kind")
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--integrity", action="store_true", help="Run PRAGMA integrity_check")
    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"No database at {db_path}")
        return 1

    health = check_local_health(db_path)
    if args.integrity:
        health.update(check_integrity(db_path))
    if not health.ok:
        print("Health: " + "; ".join(health.messages))
        return 1

    summary = get_state_summary(db_path=db_path)
    if summary is None:
        print("No state persisted yet")
    else:
        print("=== State ===")
        print(f"  band:            {Band(summary.band).name}")
        print(f"  mint fraction:   {format_wad(summary.mint_fraction_wad)}")
        print(f"  redeem fraction: {format_wad(summary.redeem_fraction_wad)}")
        print(f"  in deficit:      {summary.in_deficit}")
        print(f"  oracle strict:   {summary.oracle_strict}")
        print(f"  updated at:      {summary.updated_at}")
        attested = get_telemetry_events(kind="attestation_published", limit=1, db_path=db_path)
        if attested:
            print(f"  attested CR:     {format_wad(attested[0].payload['implied_cr'])}")

    policy = load_policy_config(db_path=db_path)
    if policy is not None:
        t = policy.thresholds
        print("=== Policy ===")
        print(f"  thresholds (bps): warn={t.warn_bps} floor={t.floor_bps} emergency={t.emergency_bps}")
        print(
            f"  staleness: healthy={policy.healthy_staleness_sec}s "
            f"stressed={policy.stressed_staleness_sec}s"
        )
        print(f"  cycle offset: {policy.cycle_offset_sec}s  tx ceiling: {policy.tx_ceiling_bps}bps")

    counters = get_counters(db_path=db_path)
    if counters:
        print("=== Rolling counters ===")
        for c in counters:
            cap = "unlimited" if c.frozen_capacity is None else format_wad(c.frozen_capacity, 2)
            print(f"  {c.cap_type:<7} cycle={c.cycle_id} used={format_wad(c.consumed, 2)} cap={cap}")

    events = get_telemetry_events(kind=args.kind, limit=args.limit, db_path=db_path)
    print(f"=== Telemetry (latest {len(events)}) ===")
    for e in events:
        print(f"  #{e.id} {e.recorded_at} {e.kind} {e.payload}")
    return 0


if __name__ == "__main__":
    sys.exit(main())

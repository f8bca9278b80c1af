"""Tiered health checks.

| Check     | Content                                          |
|-----------|--------------------------------------------------|
| Local     | DB connection                                    |
| Solvency  | attestation freshness, band, oracle freshness    |
| Integrity | PRAGMA integrity_check (on request)              |
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

from solvency.fixed_point import format_wad
from solvency.risk.capacity_engine import CapacityPolicyEngine
from solvency.risk.models import Band

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """Aggregated health check result."""

    ok: bool = True
    checks: dict[str, bool] = field(default_factory=dict)
    messages: list[str] = field(default_factory=list)

    def update(self, other: "HealthStatus") -> None:
        self.checks.update(other.checks)
        self.messages.extend(other.messages)
        if not other.ok:
            self.ok = False


def check_local_health(db_path: Path | str) -> HealthStatus:
    """Check that the state DB accepts connections."""
    status = HealthStatus()
    try:
        conn = sqlite3.connect(str(db_path), timeout=5)
        conn.execute("SELECT 1")
        conn.close()
        status.checks["db_connection"] = True
    except sqlite3.Error as e:
        status.ok = False
        status.checks["db_connection"] = False
        status.messages.append(f"DB connection failed: {e}")
    return status


def check_integrity(db_path: Path | str) -> HealthStatus:
    status = HealthStatus()
    try:
        conn = sqlite3.connect(str(db_path), timeout=30)
        result = conn.execute("PRAGMA integrity_check").fetchone()
        conn.close()
        ok = result is not None and result[0] == "ok"
        status.checks["db_integrity"] = ok
        if not ok:
            status.ok = False
            status.messages.append(f"DB integrity check failed: {result}")
    except sqlite3.Error as e:
        status.ok = False
        status.checks["db_integrity"] = False
        status.messages.append(f"DB integrity check error: {e}")
    return status


def check_solvency_health(engine: CapacityPolicyEngine) -> HealthStatus:
    """Attestation freshness, band and oracle freshness from the live engine."""
    status = HealthStatus()
    snap = engine.compute_snapshot()
    store = engine.attestation_store

    # attestation 未提出は bootstrap 扱い (失敗にしない)
    if store.has_attestation:
        stale = store.is_stale()
        status.checks["attestation_fresh"] = not stale
        if stale:
            status.ok = False
            age, bound = store.staleness() or (0, 0)
            status.messages.append(f"Attestation stale: age={age}s bound={bound}s")

    status.checks["band_not_red"] = engine.band != Band.RED
    if engine.band == Band.RED:
        status.ok = False
        status.messages.append(
            f"Band RED: reserve_ratio={snap.reserve_ratio_bps}bps "
            f"CR={format_wad(snap.collateral_ratio)}"
        )

    window = engine.band_config().oracle_staleness_sec
    oracle_ok = snap.oracle_staleness is not None and snap.oracle_staleness <= window
    status.checks["oracle_fresh"] = oracle_ok
    if not oracle_ok:
        status.messages.append(f"Oracle stale or unavailable (age={snap.oracle_staleness})")
    return status


def check_health(
    engine: CapacityPolicyEngine,
    db_path: Path | str | None = None,
    integrity: bool = False,
) -> HealthStatus:
    status = check_solvency_health(engine)
    if db_path:
        status.update(check_local_health(db_path))
        if integrity:
            status.update(check_integrity(db_path))

    if not status.ok:
        logger.warning("Health check issues: %s", "; ".join(status.messages))
    return status

"""SQLite persistence for control-plane state, policy config and telemetry."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Sequence
from dataclasses import asdict, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from solvency.risk.models import (
    Attestation,
    Band,
    BandConfig,
    CapType,
    DerivedCaps,
    ReserveThresholds,
    RollingCounter,
    SnapshotOverride,
    SystemSnapshot,
)
from solvency.risk.policy import PolicyConfig
from solvency.store.models import CounterRow, StateSummary, TelemetryEvent
from solvency.store.schema import DEFAULT_DB_PATH, _connect

if TYPE_CHECKING:
    from solvency.risk.state import SystemState
    from solvency.telemetry import TelemetryRecord

# policy_params に保存するスカラー設定 (name, 型)
_POLICY_SCALARS: list[tuple[str, type]] = [
    ("healthy_staleness_sec", int),
    ("stressed_staleness_sec", int),
    ("cycle_offset_sec", int),
    ("day_length_sec", int),
    ("tx_ceiling_bps", int),
    ("fee_reserve_share_bps", int),
    ("override_ttl_sec", int),
    ("override_min_interval_sec", int),
    ("reserve_decimals", int),
    ("treasury_account", str),
    ("gateway_account", str),
    ("warn_bps", int),
    ("floor_bps", int),
    ("emergency_bps", int),
]

_THRESHOLD_KEYS = {"warn_bps", "floor_bps", "emergency_bps"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _opt_int(value: str | None) -> int | None:
    return None if value is None else int(value)


# ---------------------------------------------------------------------------
# System state
# ---------------------------------------------------------------------------


def save_system_state(state: SystemState, db_path: Path | str = DEFAULT_DB_PATH) -> None:
    """Write band, caps, counters, attestation and override in one transaction."""
    save_operation(state, db_path=db_path)


def save_operation(
    state: SystemState,
    records: Sequence[TelemetryRecord] = (),
    policy: PolicyConfig | None = None,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> None:
    """Commit the outcome of one operation atomically.

    State rows, the policy (when given) and the operation's telemetry rows are
    written on a single connection; any failure rolls the whole write back.
    """
    conn = _connect(db_path)
    try:
        _write_system_state(conn, state)
        if policy is not None:
            _write_policy_config(conn, policy)
        for record in records:
            _insert_telemetry(conn, record)
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        conn.close()


def _write_system_state(conn: sqlite3.Connection, state: SystemState) -> None:
    conn.execute(
        """INSERT INTO system_state
           (id, band, mint_fraction_wad, redeem_fraction_wad, in_deficit,
            oracle_strict, last_override_at, updated_at)
           VALUES (1, ?, ?, ?, ?, ?, ?, ?)
           ON CONFLICT(id) DO UPDATE SET
             band = excluded.band,
             mint_fraction_wad = excluded.mint_fraction_wad,
             redeem_fraction_wad = excluded.redeem_fraction_wad,
             in_deficit = excluded.in_deficit,
             oracle_strict = excluded.oracle_strict,
             last_override_at = excluded.last_override_at,
             updated_at = excluded.updated_at""",
        (
            int(state.band),
            str(state.derived_caps.mint_fraction_wad),
            str(state.derived_caps.redeem_fraction_wad),
            int(state.in_deficit),
            int(state.oracle_strict),
            state.last_override_at,
            _now_iso(),
        ),
    )

    if state.attestation is not None:
        a = state.attestation
        conn.execute(
            """INSERT INTO attestation_state
               (id, valuation, haircut, measurement_time, submission_time)
               VALUES (1, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 valuation = excluded.valuation,
                 haircut = excluded.haircut,
                 measurement_time = excluded.measurement_time,
                 submission_time = excluded.submission_time""",
            (str(a.valuation), str(a.haircut), a.measurement_time, a.submission_time),
        )

    for cap_type, counter in state.counters.items():
        frozen = None if counter.frozen_capacity is None else str(counter.frozen_capacity)
        conn.execute(
            """INSERT INTO rolling_counters (cap_type, cycle_id, consumed, frozen_capacity)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(cap_type) DO UPDATE SET
                 cycle_id = excluded.cycle_id,
                 consumed = excluded.consumed,
                 frozen_capacity = excluded.frozen_capacity""",
            (cap_type.value, counter.cycle_id, str(counter.consumed), frozen),
        )

    if state.override is None:
        conn.execute("DELETE FROM snapshot_override WHERE id = 1")
    else:
        o = state.override
        conn.execute(
            """INSERT INTO snapshot_override (id, snapshot_json, set_at, expires_at, set_by)
               VALUES (1, ?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                 snapshot_json = excluded.snapshot_json,
                 set_at = excluded.set_at,
                 expires_at = excluded.expires_at,
                 set_by = excluded.set_by""",
            (json.dumps(asdict(o.snapshot)), o.set_at, o.expires_at, o.set_by),
        )


def load_system_state(state: SystemState, db_path: Path | str = DEFAULT_DB_PATH) -> bool:
    """Populate ``state`` from the DB. Returns False when nothing was saved yet."""
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM system_state WHERE id = 1").fetchone()
        if row is None:
            return False
        state.band = Band(row["band"])
        state.derived_caps = DerivedCaps(
            mint_fraction_wad=int(row["mint_fraction_wad"]),
            redeem_fraction_wad=int(row["redeem_fraction_wad"]),
        )
        state.in_deficit = bool(row["in_deficit"])
        state.oracle_strict = bool(row["oracle_strict"])
        state.last_override_at = row["last_override_at"]

        a = conn.execute("SELECT * FROM attestation_state WHERE id = 1").fetchone()
        if a is not None:
            state.attestation = Attestation(
                valuation=int(a["valuation"]),
                haircut=int(a["haircut"]),
                measurement_time=a["measurement_time"],
                submission_time=a["submission_time"],
            )

        for c in conn.execute("SELECT * FROM rolling_counters").fetchall():
            state.counters[CapType(c["cap_type"])] = RollingCounter(
                cycle_id=c["cycle_id"],
                consumed=int(c["consumed"]),
                frozen_capacity=_opt_int(c["frozen_capacity"]),
            )

        o = conn.execute("SELECT * FROM snapshot_override WHERE id = 1").fetchone()
        state.override = None
        if o is not None:
            state.override = SnapshotOverride(
                snapshot=SystemSnapshot(**json.loads(o["snapshot_json"])),
                set_at=o["set_at"],
                expires_at=o["expires_at"],
                set_by=o["set_by"],
            )
        return True
    finally:
        conn.close()


def get_state_summary(db_path: Path | str = DEFAULT_DB_PATH) -> StateSummary | None:
    conn = _connect(db_path)
    try:
        row = conn.execute("SELECT * FROM system_state WHERE id = 1").fetchone()
        if row is None:
            return None
        return StateSummary(
            band=row["band"],
            mint_fraction_wad=int(row["mint_fraction_wad"]),
            redeem_fraction_wad=int(row["redeem_fraction_wad"]),
            in_deficit=bool(row["in_deficit"]),
            oracle_strict=bool(row["oracle_strict"]),
            last_override_at=row["last_override_at"],
            updated_at=row["updated_at"],
        )
    finally:
        conn.close()


def get_counters(db_path: Path | str = DEFAULT_DB_PATH) -> list[CounterRow]:
    conn = _connect(db_path)
    try:
        rows = conn.execute("SELECT * FROM rolling_counters ORDER BY cap_type").fetchall()
        return [
            CounterRow(
                cap_type=r["cap_type"],
                cycle_id=r["cycle_id"],
                consumed=int(r["consumed"]),
                frozen_capacity=_opt_int(r["frozen_capacity"]),
            )
            for r in rows
        ]
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Policy config
# ---------------------------------------------------------------------------


def save_policy_config(policy: PolicyConfig, db_path: Path | str = DEFAULT_DB_PATH) -> None:
    conn = _connect(db_path)
    try:
        _write_policy_config(conn, policy)
        conn.commit()
    finally:
        conn.close()


def _write_policy_config(conn: sqlite3.Connection, policy: PolicyConfig) -> None:
    cols = [f.name for f in fields(BandConfig)]
    placeholders = ", ".join("?" for _ in range(len(cols) + 1))
    for band, cfg in policy.bands.items():
        conn.execute(
            f"INSERT OR REPLACE INTO band_configs (band, {', '.join(cols)}) "
            f"VALUES ({placeholders})",
            (band.name, *(getattr(cfg, c) for c in cols)),
        )
    for key, _ in _POLICY_SCALARS:
        if key in _THRESHOLD_KEYS:
            value = getattr(policy.thresholds, key)
        else:
            value = getattr(policy, key)
        conn.execute(
            "INSERT OR REPLACE INTO policy_params (key, value) VALUES (?, ?)",
            (key, str(value)),
        )


def load_policy_config(db_path: Path | str = DEFAULT_DB_PATH) -> PolicyConfig | None:
    """Rebuild a PolicyConfig from the DB; None when no config was saved."""
    conn = _connect(db_path)
    try:
        band_rows = conn.execute("SELECT * FROM band_configs").fetchall()
        param_rows = conn.execute("SELECT key, value FROM policy_params").fetchall()
    finally:
        conn.close()
    if not band_rows:
        return None

    cols = [f.name for f in fields(BandConfig)]
    bands = {Band[r["band"]]: BandConfig(**{c: r[c] for c in cols}) for r in band_rows}
    params = {r["key"]: r["value"] for r in param_rows}

    defaults = PolicyConfig()
    scalars = {}
    thresholds = {}
    for key, cast in _POLICY_SCALARS:
        if key not in params:
            continue
        target = thresholds if key in _THRESHOLD_KEYS else scalars
        target[key] = cast(params[key])
    policy = defaults.with_changes(
        bands={**defaults.bands, **bands},
        thresholds=ReserveThresholds(**{**asdict(defaults.thresholds), **thresholds}),
        **scalars,
    )
    policy.validate()
    return policy


# ---------------------------------------------------------------------------
# Telemetry
# ---------------------------------------------------------------------------


def append_telemetry(record: TelemetryRecord, db_path: Path | str = DEFAULT_DB_PATH) -> int:
    conn = _connect(db_path)
    try:
        row_id = _insert_telemetry(conn, record)
        conn.commit()
        return row_id
    finally:
        conn.close()


def _insert_telemetry(conn: sqlite3.Connection, record: TelemetryRecord) -> int:
    cur = conn.execute(
        """INSERT INTO telemetry_events (kind, payload_json, recorded_at, created_at)
           VALUES (?, ?, ?, ?)""",
        (
            record.kind.value,
            json.dumps(record.payload, sort_keys=True, default=str),
            record.recorded_at,
            _now_iso(),
        ),
    )
    return cur.lastrowid  # type: ignore[return-value]


def get_telemetry_events(
    kind: str | None = None,
    limit: int = 100,
    db_path: Path | str = DEFAULT_DB_PATH,
) -> list[TelemetryEvent]:
    """Return telemetry events, newest first."""
    conn = _connect(db_path)
    try:
        if kind:
            rows = conn.execute(
                "SELECT * FROM telemetry_events WHERE kind = ? ORDER BY id DESC LIMIT ?",
                (kind, limit),
            ).fetchall()
        else:
            rows = conn.execute(
                "SELECT * FROM telemetry_events ORDER BY id DESC LIMIT ?", (limit,),
            ).fetchall()
        return [
            TelemetryEvent(
                id=r["id"],
                kind=r["kind"],
                payload=json.loads(r["payload_json"]),
                recorded_at=r["recorded_at"],
                created_at=r["created_at"],
            )
            for r in rows
        ]
    finally:
        conn.close()

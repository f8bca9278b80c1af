"""Database schema DDL and versioned migrations.

Persisted state is decoupled from the in-memory layout: each migration is a
plain function applied once, in order, and recorded in ``schema_version``.
Big integers (wad amounts exceed SQLite's 64-bit INTEGER) are stored as TEXT.
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "data" / "solvency.db"

SCHEMA_VERSION_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER PRIMARY KEY,
    applied_at  TEXT NOT NULL
);
"""

CORE_SQL = """
CREATE TABLE IF NOT EXISTS system_state (
    id                  INTEGER PRIMARY KEY CHECK (id = 1),
    band                INTEGER NOT NULL DEFAULT 0,
    mint_fraction_wad   TEXT NOT NULL DEFAULT '0',
    redeem_fraction_wad TEXT NOT NULL DEFAULT '0',
    in_deficit          INTEGER NOT NULL DEFAULT 0,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS attestation_state (
    id                  INTEGER PRIMARY KEY CHECK (id = 1),
    valuation           TEXT NOT NULL,
    haircut             TEXT NOT NULL,
    measurement_time    INTEGER NOT NULL,
    submission_time     INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS rolling_counters (
    cap_type            TEXT PRIMARY KEY,
    cycle_id            INTEGER NOT NULL,
    consumed            TEXT NOT NULL DEFAULT '0',
    frozen_capacity     TEXT
);

CREATE TABLE IF NOT EXISTS telemetry_events (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    kind            TEXT NOT NULL,
    payload_json    TEXT NOT NULL DEFAULT '{}',
    recorded_at     INTEGER NOT NULL,
    created_at      TEXT NOT NULL
);
"""

CONFIG_SQL = """
CREATE TABLE IF NOT EXISTS band_configs (
    band                    TEXT PRIMARY KEY,
    spread_bps              INTEGER NOT NULL,
    mint_fee_bps            INTEGER NOT NULL,
    redeem_fee_bps          INTEGER NOT NULL,
    oracle_staleness_sec    INTEGER NOT NULL,
    floor_bps               INTEGER NOT NULL,
    alpha_bps               INTEGER NOT NULL,
    skim_bps                INTEGER NOT NULL,
    mint_cap_bps            INTEGER NOT NULL,
    redeem_cap_bps          INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS policy_params (
    key     TEXT PRIMARY KEY,
    value   TEXT NOT NULL
);
"""

OVERRIDE_SQL = """
CREATE TABLE IF NOT EXISTS snapshot_override (
    id              INTEGER PRIMARY KEY CHECK (id = 1),
    snapshot_json   TEXT NOT NULL,
    set_at          INTEGER NOT NULL,
    expires_at      INTEGER NOT NULL,
    set_by          TEXT NOT NULL
);
"""

# v2 で system_state に追加したカラム (ALTER TABLE パターン)
_OVERRIDE_STATE_COLUMNS = [
    ("oracle_strict", "INTEGER NOT NULL DEFAULT 0"),
    ("last_override_at", "INTEGER"),
]


def _migrate_v1(conn: sqlite3.Connection) -> None:
    """Core state, counters, telemetry and the persisted config tables."""
    conn.executescript(CORE_SQL)
    conn.executescript(CONFIG_SQL)


def _migrate_v2(conn: sqlite3.Connection) -> None:
    """Snapshot override table and oracle/override columns on system_state."""
    conn.executescript(OVERRIDE_SQL)
    existing = {row[1] for row in conn.execute("PRAGMA table_info(system_state)").fetchall()}
    for col_name, col_def in _OVERRIDE_STATE_COLUMNS:
        if col_name not in existing:
            conn.execute(f"ALTER TABLE system_state ADD COLUMN {col_name} {col_def}")


def _migrate_v3(conn: sqlite3.Connection) -> None:
    """Indexes for telemetry queries."""
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_telemetry_kind ON telemetry_events(kind)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_telemetry_recorded_at ON telemetry_events(recorded_at)"
    )


MIGRATIONS: list[tuple[int, Callable[[sqlite3.Connection], None]]] = [
    (1, _migrate_v1),
    (2, _migrate_v2),
    (3, _migrate_v3),
]

LATEST_VERSION = MIGRATIONS[-1][0]


def get_schema_version(conn: sqlite3.Connection) -> int:
    conn.executescript(SCHEMA_VERSION_SQL)
    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    return row[0] or 0


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Apply every pending migration in order. Returns the resulting version."""
    current = get_schema_version(conn)
    for version, migrate in MIGRATIONS:
        if version <= current:
            continue
        migrate(conn)
        conn.execute(
            "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
            (version, datetime.now(timezone.utc).isoformat()),
        )
        conn.commit()
        current = version
    return current


def _connect(db_path: Path | str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Open (or create) the SQLite database and bring the schema up to date."""
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    apply_migrations(conn)
    return conn

"""Row models for the SQLite store (dataclasses only, no DB access)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass
class TelemetryEvent:
    id: int
    kind: str
    payload: dict[str, Any]
    recorded_at: int
    created_at: str


@dataclass
class CounterRow:
    cap_type: str
    cycle_id: int
    consumed: int
    frozen_capacity: int | None


@dataclass
class StateSummary:
    """Flat view of the persisted state for status reporting."""

    band: int
    mint_fraction_wad: int
    redeem_fraction_wad: int
    in_deficit: bool
    oracle_strict: bool
    last_override_at: int | None
    updated_at: str

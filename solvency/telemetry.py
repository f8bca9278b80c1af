"""Append-only structured telemetry.

Records are kept in memory, written to the ``solvency.telemetry`` logger with
the payload attached for JSONFormatter, and persisted to ``telemetry_events``
when a DB path is configured.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


class TelemetryKind(StrEnum):
    BAND_CHANGED = "band_changed"
    CAP_WINDOW_RESET = "cap_window_reset"
    CAP_USAGE = "cap_usage"
    ATTESTATION_PUBLISHED = "attestation_published"
    DERIVED_CAPS_UPDATED = "derived_caps_updated"
    DEFICIT_ENTERED = "deficit_entered"
    DEFICIT_ONGOING = "deficit_ongoing"
    RECOLLATERALIZED = "recollateralized"
    ORACLE_MODE_CHANGED = "oracle_mode_changed"
    SNAPSHOT_OVERRIDE_SET = "snapshot_override_set"
    SNAPSHOT_OVERRIDE_CLEARED = "snapshot_override_cleared"
    CONFIG_UPDATED = "config_updated"
    MINT_SETTLED = "mint_settled"
    REFUND_SETTLED = "refund_settled"


@dataclass(frozen=True)
class TelemetryRecord:
    kind: TelemetryKind
    recorded_at: int
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "recorded_at": self.recorded_at, **self.payload}


class TelemetryLog:
    def __init__(self, db_path: Path | str | None = None) -> None:
        self.db_path = db_path
        self.records: list[TelemetryRecord] = []

    def append(self, record: TelemetryRecord) -> None:
        self.publish(record)
        if self.db_path:
            from solvency.store.db import append_telemetry

            append_telemetry(record, db_path=self.db_path)

    def publish(self, record: TelemetryRecord) -> None:
        """Keep and log a record whose row, if any, is already written."""
        self.records.append(record)
        logger.info(
            "%s %s",
            record.kind.value,
            json.dumps(record.payload, sort_keys=True, default=str),
            extra={"telemetry": record.to_dict()},
        )

    def of_kind(self, kind: TelemetryKind) -> list[TelemetryRecord]:
        return [r for r in self.records if r.kind == kind]

    def last(self, kind: TelemetryKind) -> TelemetryRecord | None:
        matches = self.of_kind(kind)
        return matches[-1] if matches else None

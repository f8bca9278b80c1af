"""Single owned mutable state for the control plane.

Band, derived caps, rolling counters, the attestation and the snapshot
override all live here and are mutated only inside ``operation()``. The
outermost operation is a transaction: state is captured on entry, restored on
any exception, and telemetry staged during the operation is flushed only on
success. Entering any operation while a collaborator call is in flight
(``external_call()``) raises ReentrancyError.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from solvency.errors import ReentrancyError
from solvency.risk.models import (
    Attestation,
    Band,
    CapType,
    DerivedCaps,
    RollingCounter,
    SnapshotOverride,
)
from solvency.risk.policy import PolicyConfig
from solvency.telemetry import TelemetryKind, TelemetryLog, TelemetryRecord

logger = logging.getLogger(__name__)

_TRANSACTIONAL_FIELDS = (
    "band",
    "derived_caps",
    "counters",
    "attestation",
    "override",
    "last_override_at",
    "in_deficit",
    "oracle_strict",
    "policy",
)


class SystemState:
    def __init__(
        self,
        policy: PolicyConfig | None = None,
        telemetry: TelemetryLog | None = None,
        db_path: Path | str | None = None,
    ) -> None:
        self.policy = policy or PolicyConfig()
        self.band = Band.GREEN
        self.derived_caps = DerivedCaps()
        self.counters: dict[CapType, RollingCounter] = {c: RollingCounter() for c in CapType}
        self.attestation: Attestation | None = None
        self.override: SnapshotOverride | None = None
        self.last_override_at: int | None = None
        self.in_deficit = False
        self.oracle_strict = False

        self.telemetry = telemetry or TelemetryLog(db_path)
        self.db_path = db_path
        self._depth = 0
        self._active: str | None = None
        self._calling_out: str | None = None
        self._pending: list[TelemetryRecord] = []
        self._persisted_policy: PolicyConfig | None = None

    # --- guard ---

    @property
    def active_operation(self) -> str | None:
        return self._active

    @contextmanager
    def operation(self, name: str) -> Iterator[None]:
        if self._calling_out is not None:
            logger.error("Reentrancy blocked: %s during %s", name, self._calling_out)
            raise ReentrancyError(name, self._calling_out)

        outermost = self._depth == 0
        saved: dict[str, Any] = {}
        if outermost:
            saved = self._capture()
            self._active = name
            self._pending = []
        self._depth += 1
        try:
            yield
            if outermost:
                # DB 書き込みが失敗したら in-memory の結果も確定させない
                self._commit(self._pending)
        except BaseException:
            if outermost:
                self._restore(saved)
                logger.info("Rolled back %s", name)
            raise
        finally:
            self._depth -= 1
            if outermost:
                self._pending = []
                self._active = None

    @contextmanager
    def external_call(self, name: str) -> Iterator[None]:
        previous = self._calling_out
        self._calling_out = name
        try:
            yield
        finally:
            self._calling_out = previous

    # --- telemetry ---

    def emit(self, kind: TelemetryKind, now: int, **payload: Any) -> None:
        record = TelemetryRecord(kind=kind, recorded_at=now, payload=payload)
        if self._depth > 0:
            self._pending.append(record)
        else:
            self.telemetry.append(record)

    # --- persistence ---

    def persist(self, records: Sequence[TelemetryRecord] = ()) -> None:
        """Write state, a changed policy and ``records`` in one DB transaction."""
        if not self.db_path:
            return
        from solvency.store.db import save_operation

        policy = None if self.policy is self._persisted_policy else self.policy
        save_operation(self, records, policy=policy, db_path=self.db_path)
        self._persisted_policy = self.policy

    def _commit(self, pending: list[TelemetryRecord]) -> None:
        if self.db_path:
            self.persist(pending)
            for record in pending:
                self.telemetry.publish(record)
        else:
            for record in pending:
                self.telemetry.append(record)

    def mark_policy_persisted(self) -> None:
        self._persisted_policy = self.policy

    def _capture(self) -> dict[str, Any]:
        # counters だけが mutable、他は frozen dataclass か scalar
        saved = {name: getattr(self, name) for name in _TRANSACTIONAL_FIELDS}
        saved["counters"] = copy.deepcopy(self.counters)
        return saved

    def _restore(self, saved: dict[str, Any]) -> None:
        for name, value in saved.items():
            setattr(self, name, value)

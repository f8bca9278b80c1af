"""Collateral-ratio attestation store.

Holds the latest externally measured valuation V and haircut HC and derives

    CR = (scaled_reserve + HC × V) / liabilities

with ``CR_INFINITY`` when liabilities are zero. Staleness is judged against a
short "stressed" window while CR < 1.0 and a long "healthy" window otherwise.
"""

from __future__ import annotations

import logging

from solvency.auth import AccessController, Role
from solvency.connectors.base import Clock, Ledger, Reserve
from solvency.errors import StaleDataError, ValidationError
from solvency.fixed_point import CR_INFINITY, SCALE, format_wad, mul_div, to_wad
from solvency.risk.models import Attestation
from solvency.risk.state import SystemState
from solvency.telemetry import TelemetryKind

logger = logging.getLogger(__name__)


class AttestationStore:
    def __init__(self, state: SystemState, access: AccessController, clock: Clock) -> None:
        self._state = state
        self._access = access
        self._clock = clock
        self._ledger: Ledger | None = None
        self._reserve: Reserve | None = None

    def bind(self, ledger: Ledger, reserve: Reserve) -> None:
        self._ledger = ledger
        self._reserve = reserve

    @property
    def attestation(self) -> Attestation | None:
        return self._state.attestation

    @property
    def has_attestation(self) -> bool:
        return self._state.attestation is not None

    # --- reads ---

    def scaled_reserve(self) -> int:
        """Redemption reserve (treasury excluded) in wad."""
        return to_wad(self._require_reserve().balance_of(), self._state.policy.reserve_decimals)

    def total_supply(self) -> int:
        return self._require_ledger().total_supply()

    def implied_collateral_ratio(self, valuation: int, haircut: int) -> int:
        supply = self.total_supply()
        if supply == 0:
            return CR_INFINITY
        backing = self.scaled_reserve() + mul_div(haircut, valuation, SCALE)
        return mul_div(backing, SCALE, supply)

    def collateral_ratio(self) -> int:
        a = self._state.attestation
        if a is None:
            return self.implied_collateral_ratio(0, SCALE)
        return self.implied_collateral_ratio(a.valuation, a.haircut)

    def staleness_bound(self, collateral_ratio: int) -> int:
        policy = self._state.policy
        if collateral_ratio < SCALE:
            return policy.stressed_staleness_sec
        return policy.healthy_staleness_sec

    def staleness(self) -> tuple[int, int] | None:
        """(age, bound) of the current attestation; None before first publish."""
        a = self._state.attestation
        if a is None:
            return None
        age = self._clock.now() - a.measurement_time
        return age, self.staleness_bound(self.collateral_ratio())

    def is_stale(self) -> bool:
        info = self.staleness()
        if info is None:
            return True
        age, bound = info
        return age > bound

    def require_fresh(self) -> None:
        info = self.staleness()
        if info is None:
            raise StaleDataError("attestation", age=-1, bound=0)
        age, bound = info
        if age > bound:
            raise StaleDataError("attestation", age=age, bound=bound)

    # --- writes ---

    def publish(self, caller: str, valuation: int, haircut: int, measurement_time: int) -> int:
        """Commit a new (V, HC) measurement. Returns the implied CR."""
        with self._state.operation("publish_attestation"):
            self._access.require_role(caller, Role.PUBLISHER)
            now = self._clock.now()

            if not 0 < haircut <= SCALE:
                raise ValidationError(f"haircut {haircut} outside (0, {SCALE}]", field="haircut")
            if valuation < 0:
                raise ValidationError("valuation must be >= 0", field="valuation")
            if measurement_time > now:
                raise ValidationError(
                    f"measurement_time {measurement_time} is in the future (now={now})",
                    field="measurement_time",
                )
            prev = self._state.attestation
            if prev is not None and measurement_time <= prev.measurement_time:
                raise ValidationError(
                    f"measurement_time {measurement_time} not after {prev.measurement_time}",
                    field="measurement_time",
                )

            # 新しい (V, HC) から CR を出してから鮮度 window を選ぶ
            implied_cr = self.implied_collateral_ratio(valuation, haircut)
            bound = self.staleness_bound(implied_cr)
            age = now - measurement_time
            if age > bound:
                logger.warning(
                    "Attestation rejected: age=%ds > bound=%ds (implied CR=%s)",
                    age, bound, format_wad(implied_cr),
                )
                raise StaleDataError("attestation", age=age, bound=bound)

            self._state.attestation = Attestation(
                valuation=valuation,
                haircut=haircut,
                measurement_time=measurement_time,
                submission_time=now,
            )
            self._state.emit(
                TelemetryKind.ATTESTATION_PUBLISHED,
                now,
                valuation=valuation,
                haircut=haircut,
                measurement_time=measurement_time,
                submission_time=now,
                implied_cr=implied_cr,
            )
            logger.info(
                "Attestation published: V=%s HC=%s CR=%s",
                format_wad(valuation), format_wad(haircut), format_wad(implied_cr),
            )
            return implied_cr

    def _require_ledger(self) -> Ledger:
        if self._ledger is None:
            raise RuntimeError("AttestationStore is not bound to a ledger")
        return self._ledger

    def _require_reserve(self) -> Reserve:
        if self._reserve is None:
            raise RuntimeError("AttestationStore is not bound to a reserve")
        return self._reserve

"""Band state machine, collateral-aware pricing and rolling capacity.

evaluate_band() is the pure band function; CapacityPolicyEngine caches the
band and derived capacity fractions in SystemState, prices mint/redeem from
the attested CR and the oracle, and accounts rolling per-cycle capacity.
"""

from __future__ import annotations

import logging

from solvency.auth import AccessController, Role
from solvency.connectors.base import Clock, Ledger, PriceFeed
from solvency.errors import (
    CapacityExceededError,
    TransactionTooLargeError,
    ValidationError,
)
from solvency.fixed_point import (
    BPS,
    CR_INFINITY,
    PRICE_BELOW_PEG,
    SCALE,
    bps_of,
    bps_to_wad,
    format_wad,
    mul_div,
)
from solvency.risk.attestation import AttestationStore
from solvency.risk.models import (
    Band,
    BandConfig,
    CapType,
    DerivedCaps,
    ParameterBundle,
    ReserveThresholds,
    RollingCounter,
    SnapshotOverride,
    SystemSnapshot,
)
from solvency.risk.policy import (
    PolicyConfig,
    validate_band_config,
    validate_staleness,
    validate_thresholds,
)
from solvency.risk.state import SystemState
from solvency.telemetry import TelemetryKind

logger = logging.getLogger(__name__)


def evaluate_band(reserve_ratio_bps: int, thresholds: ReserveThresholds) -> tuple[Band, str]:
    """Pure function: band from reserve ratio. Returns (band, reason).

    Strict ``<`` everywhere and no hysteresis: a ratio sitting exactly on a
    threshold flips bands as soon as it moves by one unit.
    """
    if reserve_ratio_bps <= thresholds.emergency_bps:
        return Band.RED, f"reserve_ratio={reserve_ratio_bps}bps<=emergency={thresholds.emergency_bps}bps"
    if reserve_ratio_bps < thresholds.floor_bps:
        return Band.RED, f"reserve_ratio={reserve_ratio_bps}bps<floor={thresholds.floor_bps}bps"
    if reserve_ratio_bps < thresholds.warn_bps:
        return Band.YELLOW, f"reserve_ratio={reserve_ratio_bps}bps<warn={thresholds.warn_bps}bps"
    return Band.GREEN, f"reserve_ratio={reserve_ratio_bps}bps>=warn={thresholds.warn_bps}bps"


def derive_redeem_fraction(reserve: int, supply: int, cfg: BandConfig) -> int:
    """Redeem capacity as a wad fraction of liabilities.

    0 when the reserve is at or below the band floor (hard stop). Otherwise
    min(alpha × L, reserve − floor) / L, limited by the band's base fraction
    when one is configured, capped at 100%.
    """
    if supply == 0:
        return 0
    floor = bps_of(supply, cfg.floor_bps)
    if reserve <= floor:
        return 0
    headroom = min(bps_of(supply, cfg.alpha_bps), reserve - floor)
    fraction = mul_div(headroom, SCALE, supply)
    if cfg.redeem_cap_bps > 0:
        fraction = min(fraction, bps_to_wad(cfg.redeem_cap_bps))
    return min(fraction, SCALE)


def derive_mint_fraction(cfg: BandConfig) -> int:
    """Mint capacity fraction; mints never use the alpha/floor logic. 0 = unlimited."""
    return bps_to_wad(cfg.mint_cap_bps)


def compute_cycle_id(now: int, offset_sec: int, day_length_sec: int) -> int:
    """Local-day cycle index: resets align to local midnight, not UTC."""
    return (now + offset_sec) // day_length_sec


class CapacityPolicyEngine:
    def __init__(
        self,
        state: SystemState,
        access: AccessController,
        clock: Clock,
        attestation: AttestationStore,
    ) -> None:
        self._state = state
        self._access = access
        self._clock = clock
        self._attestation = attestation
        self._ledger: Ledger | None = None
        self._feed: PriceFeed | None = None

    def bind(self, ledger: Ledger, feed: PriceFeed) -> None:
        self._ledger = ledger
        self._feed = feed

    @property
    def attestation_store(self) -> AttestationStore:
        return self._attestation

    @property
    def band(self) -> Band:
        return self._state.band

    @property
    def policy(self) -> PolicyConfig:
        return self._state.policy

    @property
    def derived_caps(self) -> DerivedCaps:
        return self._state.derived_caps

    def band_config(self, band: Band | None = None) -> BandConfig:
        return self._state.policy.band(self._state.band if band is None else band)

    # ------------------------------------------------------------------
    # Snapshot / band
    # ------------------------------------------------------------------

    def compute_snapshot(self) -> SystemSnapshot:
        """Fresh snapshot from the collaborators (ignores any override)."""
        supply = self._require_ledger().total_supply()
        reserve = self._attestation.scaled_reserve()
        a = self._attestation.attestation
        backing = reserve + (mul_div(a.haircut, a.valuation, SCALE) if a else 0)

        if supply == 0:
            ratio_bps = CR_INFINITY
            cr = CR_INFINITY
            nav = SCALE
        else:
            ratio_bps = mul_div(reserve, BPS, supply)
            cr = mul_div(backing, SCALE, supply)
            nav = min(cr, SCALE)

        return SystemSnapshot(
            reserve_ratio_bps=ratio_bps,
            equity_buffer=backing - supply,
            oracle_staleness=self._oracle_age(),
            total_supply=supply,
            nav_per_token=nav,
            reserve_balance=reserve,
            collateral_ratio=cr,
        )

    def current_snapshot(self) -> SystemSnapshot:
        override = self._state.override
        if override is not None and override.is_active(self._clock.now()):
            return override.snapshot
        return self.compute_snapshot()

    def refresh_band(self) -> Band:
        """Re-evaluate the band and derived caps. Idempotent."""
        with self._state.operation("refresh_band"):
            now = self._clock.now()
            snap = self.current_snapshot()

            # supply 0 (bootstrap) では band を据え置く
            if snap.total_supply > 0:
                new_band, reason = evaluate_band(snap.reserve_ratio_bps, self.policy.thresholds)
                prev_band = self._state.band
                if new_band != prev_band:
                    self._state.band = new_band
                    self._state.emit(
                        TelemetryKind.BAND_CHANGED,
                        now,
                        previous_band=prev_band.name,
                        new_band=new_band.name,
                        reason=reason,
                    )
                    logger.warning("Band %s -> %s (%s)", prev_band.name, new_band.name, reason)

            self._update_derived_caps(snap, now)

            cfg = self.band_config()
            if snap.oracle_staleness is not None and snap.oracle_staleness > cfg.oracle_staleness_sec:
                logger.warning(
                    "Oracle age %ds exceeds %s window %ds",
                    snap.oracle_staleness, self._state.band.name, cfg.oracle_staleness_sec,
                )
            return self._state.band

    def _update_derived_caps(self, snap: SystemSnapshot, now: int) -> None:
        cfg = self.band_config()
        caps = DerivedCaps(
            mint_fraction_wad=derive_mint_fraction(cfg),
            redeem_fraction_wad=derive_redeem_fraction(
                snap.reserve_balance, snap.total_supply, cfg,
            ),
        )
        if caps != self._state.derived_caps:
            self._state.derived_caps = caps
            self._state.emit(
                TelemetryKind.DERIVED_CAPS_UPDATED,
                now,
                band=self._state.band.name,
                mint_fraction_wad=caps.mint_fraction_wad,
                redeem_fraction_wad=caps.redeem_fraction_wad,
            )

    # ------------------------------------------------------------------
    # Pricing
    # ------------------------------------------------------------------

    def get_collateral_ratio(self) -> int:
        return self._attestation.collateral_ratio()

    def get_price(self) -> int:
        """Collateral-aware price: 1.0 while CR >= 1.0, in [CR, 1.0) otherwise."""
        # 初回 attestation 前は peg (鮮度チェックなし)
        if not self._attestation.has_attestation:
            return SCALE
        cr = self._attestation.collateral_ratio()
        if cr >= SCALE:
            return SCALE

        self._attestation.require_fresh()
        price = cr
        oracle = self._fresh_oracle_price()
        if oracle is not None:
            price = max(oracle, cr)
        if price >= SCALE:
            price = PRICE_BELOW_PEG
        return price

    def _read_oracle(self) -> tuple[int, int] | None:
        """Latest usable (price, updated_at); None when unavailable."""
        if self._feed is None:
            return None
        try:
            price, updated_at = self._feed.latest_price()
        except OSError:
            logger.warning(
                "Price feed read failed, treating oracle as unavailable", exc_info=True,
            )
            return None
        if price <= 0 or updated_at <= 0:
            return None
        return price, updated_at

    def _oracle_age(self) -> int | None:
        reading = self._read_oracle()
        if reading is None:
            return None
        return self._clock.now() - reading[1]

    def _fresh_oracle_price(self) -> int | None:
        # strict mode フラグとは独立に timestamp で直接判定
        reading = self._read_oracle()
        if reading is None:
            return None
        price, updated_at = reading
        age = self._clock.now() - updated_at
        if age < 0 or age > self.policy.stressed_staleness_sec:
            return None
        return price

    def sync_oracle_mode(self) -> bool | None:
        """Turn oracle strict mode on while CR < 1.0. Returns the mode, None if skipped."""
        with self._state.operation("sync_oracle_mode"):
            if not self._attestation.has_attestation or self._read_oracle() is None:
                logger.debug("Oracle mode sync skipped (bootstrap)")
                return None

            now = self._clock.now()
            cr = self._attestation.collateral_ratio()
            strict = cr < SCALE
            with self._state.external_call("set_strict_mode"):
                self._require_feed().set_strict_mode(strict)
            if strict != self._state.oracle_strict:
                self._state.oracle_strict = strict
                self._state.emit(TelemetryKind.ORACLE_MODE_CHANGED, now, strict=strict)

            if strict:
                if not self._state.in_deficit:
                    self._state.in_deficit = True
                    self._state.emit(TelemetryKind.DEFICIT_ENTERED, now, collateral_ratio=cr)
                    logger.warning("Entered deficit: CR=%s", format_wad(cr))
                self._state.emit(TelemetryKind.DEFICIT_ONGOING, now, collateral_ratio=cr)
            elif self._state.in_deficit:
                self._state.in_deficit = False
                self._state.emit(TelemetryKind.RECOLLATERALIZED, now, collateral_ratio=cr)
                logger.info("Recollateralized: CR=%s", format_wad(cr))
            return strict

    # ------------------------------------------------------------------
    # Rolling capacity
    # ------------------------------------------------------------------

    def current_cycle_id(self) -> int:
        return compute_cycle_id(
            self._clock.now(), self.policy.cycle_offset_sec, self.policy.day_length_sec,
        )

    def _cycle_capacity(self, cap_type: CapType, supply: int) -> int | None:
        caps = self._state.derived_caps
        if cap_type == CapType.MINT:
            # supply 0 では mint を止めない (cold start)
            if caps.mint_fraction_wad == 0 or supply == 0:
                return None
            return mul_div(supply, caps.mint_fraction_wad, SCALE)
        return mul_div(supply, caps.redeem_fraction_wad, SCALE)

    def _counter_view(self, cap_type: CapType) -> RollingCounter:
        """Counter as it would look now, without resetting the stored one."""
        cycle_id = self.current_cycle_id()
        counter = self._state.counters[cap_type]
        if counter.cycle_id == cycle_id:
            return counter
        supply = self._require_ledger().total_supply()
        return RollingCounter(
            cycle_id=cycle_id,
            consumed=0,
            frozen_capacity=self._cycle_capacity(cap_type, supply),
        )

    def remaining_capacity(self, cap_type: CapType) -> int | None:
        """Tokens left in the current cycle; None = unlimited."""
        counter = self._counter_view(cap_type)
        if counter.frozen_capacity is None:
            return None
        return max(0, counter.frozen_capacity - counter.consumed)

    def check_capacity(self, cap_type: CapType, amount: int) -> int | None:
        """Raise if ``amount`` does not fit. Returns the remaining capacity."""
        if amount < 0:
            raise ValidationError("amount must be >= 0", field="amount")
        remaining = self.remaining_capacity(cap_type)
        if remaining is None or amount == 0:
            return remaining
        if amount > remaining:
            raise CapacityExceededError(cap_type.value, requested=amount, remaining=remaining)
        ceiling_bps = self.policy.tx_ceiling_bps
        if ceiling_bps > 0:
            limit = bps_of(remaining, ceiling_bps)
            if amount > limit:
                raise TransactionTooLargeError(cap_type.value, requested=amount, limit=limit)
        return remaining

    def record_usage(self, caller: str, cap_type: CapType, amount: int) -> int:
        """Consume capacity. Must run before supply changes. Returns the new total."""
        with self._state.operation("record_usage"):
            self._access.require_role(caller, Role.GATEWAY)
            now = self._clock.now()
            cycle_id = self.current_cycle_id()
            counter = self._state.counters[cap_type]
            if counter.cycle_id != cycle_id:
                supply = self._require_ledger().total_supply()
                counter = RollingCounter(
                    cycle_id=cycle_id,
                    consumed=0,
                    frozen_capacity=self._cycle_capacity(cap_type, supply),
                )
                self._state.counters[cap_type] = counter
                self._state.emit(
                    TelemetryKind.CAP_WINDOW_RESET,
                    now,
                    cap_type=cap_type.value,
                    cycle_id=cycle_id,
                    frozen_capacity=counter.frozen_capacity,
                )
                logger.info(
                    "%s cap window reset: cycle=%d capacity=%s",
                    cap_type.value, cycle_id, counter.frozen_capacity,
                )

            self.check_capacity(cap_type, amount)
            counter.consumed += amount
            self._state.emit(
                TelemetryKind.CAP_USAGE, now, cap_type=cap_type.value, new_total=counter.consumed,
            )
            return counter.consumed

    # ------------------------------------------------------------------
    # Parameter bundles
    # ------------------------------------------------------------------

    def get_mint_parameters(self, amount: int = 0) -> ParameterBundle:
        return self._bundle(CapType.MINT, amount)

    def get_refund_parameters(self, amount: int = 0) -> ParameterBundle:
        return self._bundle(CapType.REDEEM, amount)

    def _bundle(self, cap_type: CapType, amount: int) -> ParameterBundle:
        band = self._state.band
        cfg = self.band_config(band)
        price = self.get_price()
        capacity_passed = True
        if amount > 0:
            try:
                self.check_capacity(cap_type, amount)
            except (CapacityExceededError, TransactionTooLargeError):
                capacity_passed = False
        return ParameterBundle(
            price=price,
            spread_bps=cfg.spread_bps,
            mint_fee_bps=cfg.mint_fee_bps,
            redeem_fee_bps=cfg.redeem_fee_bps,
            capacity_passed=capacity_passed,
            band=band,
            floor_bps=cfg.floor_bps,
            total_supply=self._require_ledger().total_supply(),
            reserve_balance=self._attestation.scaled_reserve(),
        )

    def floor_amount(self, supply: int, band: Band | None = None) -> int:
        """Reserve floor in wad for the given liabilities."""
        return bps_of(supply, self.band_config(band).floor_bps)

    def distribution_skim(self, amount: int) -> int:
        """Share of a distribution the rewards collaborator must hold back."""
        return bps_of(amount, self.band_config().skim_bps)

    # ------------------------------------------------------------------
    # Emergency snapshot override
    # ------------------------------------------------------------------

    def set_snapshot_override(self, caller: str, snapshot: SystemSnapshot) -> SnapshotOverride:
        with self._state.operation("set_snapshot_override"):
            self._access.require_role(caller, Role.GUARDIAN)
            now = self._clock.now()
            last = self._state.last_override_at
            min_interval = self.policy.override_min_interval_sec
            if last is not None and now - last < min_interval:
                raise ValidationError(
                    f"snapshot override rate limited: {now - last}s < {min_interval}s",
                    field="override",
                )
            override = SnapshotOverride(
                snapshot=snapshot,
                set_at=now,
                expires_at=now + self.policy.override_ttl_sec,
                set_by=caller,
            )
            self._state.override = override
            self._state.last_override_at = now
            self._state.emit(
                TelemetryKind.SNAPSHOT_OVERRIDE_SET,
                now,
                set_by=caller,
                expires_at=override.expires_at,
                reserve_ratio_bps=snapshot.reserve_ratio_bps,
            )
            logger.warning("Snapshot override set by %s until %d", caller, override.expires_at)
            return override

    def clear_snapshot_override(self, caller: str) -> None:
        with self._state.operation("clear_snapshot_override"):
            self._access.require_role(caller, Role.GUARDIAN)
            if self._state.override is None:
                return
            self._state.override = None
            self._state.emit(
                TelemetryKind.SNAPSHOT_OVERRIDE_CLEARED, self._clock.now(), cleared_by=caller,
            )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    def set_band_config(self, caller: str, band: Band, cfg: BandConfig) -> None:
        validate_band_config(band, cfg)
        self._apply_policy(caller, self.policy.with_band(band, cfg), f"band.{band.name}")

    def set_thresholds(self, caller: str, thresholds: ReserveThresholds) -> None:
        validate_thresholds(thresholds)
        self._apply_policy(caller, self.policy.with_changes(thresholds=thresholds), "thresholds")

    def set_staleness_windows(self, caller: str, healthy_sec: int, stressed_sec: int) -> None:
        validate_staleness(healthy_sec, stressed_sec)
        self._apply_policy(
            caller,
            self.policy.with_changes(
                healthy_staleness_sec=healthy_sec, stressed_staleness_sec=stressed_sec,
            ),
            "staleness",
        )

    def set_cycle_offset(self, caller: str, offset_sec: int) -> None:
        self._apply_policy(
            caller, self.policy.with_changes(cycle_offset_sec=offset_sec), "cycle_offset_sec",
        )

    def set_tx_ceiling(self, caller: str, ceiling_bps: int) -> None:
        self._apply_policy(
            caller, self.policy.with_changes(tx_ceiling_bps=ceiling_bps), "tx_ceiling_bps",
        )

    def _apply_policy(self, caller: str, new_policy: PolicyConfig, field: str) -> None:
        with self._state.operation("update_policy"):
            self._access.require_role(caller, Role.ADMIN)
            new_policy.validate()
            self._state.policy = new_policy
            self._state.emit(
                TelemetryKind.CONFIG_UPDATED, self._clock.now(), field=field, updated_by=caller,
            )
            logger.info("Policy updated: %s by %s", field, caller)

    def _require_ledger(self) -> Ledger:
        if self._ledger is None:
            raise RuntimeError("CapacityPolicyEngine is not bound to a ledger")
        return self._ledger

    def _require_feed(self) -> PriceFeed:
        if self._feed is None:
            raise RuntimeError("CapacityPolicyEngine is not bound to a price feed")
        return self._feed

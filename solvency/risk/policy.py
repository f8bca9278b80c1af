"""Runtime policy configuration built from Settings and validated up front.

Nothing in the engine reads ``settings`` directly: it receives one
PolicyConfig, which is validated whole before it replaces the previous one.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

from solvency.config import BandSettings, Settings
from solvency.errors import ValidationError
from solvency.fixed_point import BPS
from solvency.risk.models import Band, BandConfig, ReserveThresholds


def _band_from_settings(band: BandSettings) -> BandConfig:
    return BandConfig(**band.model_dump())


def _default_bands() -> dict[Band, BandConfig]:
    return {b: BandConfig() for b in Band}


@dataclass(frozen=True)
class PolicyConfig:
    bands: dict[Band, BandConfig] = field(default_factory=_default_bands)
    thresholds: ReserveThresholds = field(default_factory=ReserveThresholds)
    healthy_staleness_sec: int = 172_800
    stressed_staleness_sec: int = 3_600
    cycle_offset_sec: int = 0
    day_length_sec: int = 86_400
    tx_ceiling_bps: int = 5_000
    fee_reserve_share_bps: int = 5_000
    override_ttl_sec: int = 3_600
    override_min_interval_sec: int = 21_600
    reserve_decimals: int = 6
    treasury_account: str = "treasury"
    gateway_account: str = "pricing-gateway"

    @classmethod
    def from_settings(cls, s: Settings) -> PolicyConfig:
        config = cls(
            bands={
                Band.GREEN: _band_from_settings(s.green),
                Band.YELLOW: _band_from_settings(s.yellow),
                Band.RED: _band_from_settings(s.red),
            },
            thresholds=ReserveThresholds(
                warn_bps=s.warn_bps,
                floor_bps=s.floor_bps,
                emergency_bps=s.emergency_bps,
            ),
            healthy_staleness_sec=s.healthy_staleness_sec,
            stressed_staleness_sec=s.stressed_staleness_sec,
            cycle_offset_sec=s.cycle_offset_sec,
            day_length_sec=s.day_length_sec,
            tx_ceiling_bps=s.tx_ceiling_bps,
            fee_reserve_share_bps=s.fee_reserve_share_bps,
            override_ttl_sec=s.override_ttl_sec,
            override_min_interval_sec=s.override_min_interval_sec,
            reserve_decimals=s.reserve_decimals,
            treasury_account=s.treasury_account,
            gateway_account=s.gateway_account,
        )
        config.validate()
        return config

    def band(self, band: Band) -> BandConfig:
        return self.bands[band]

    def validate(self) -> None:
        """Raise ValidationError on the first malformed field."""
        missing = [b.name for b in Band if b not in self.bands]
        if missing:
            raise ValidationError(f"band table missing {missing}", field="bands")
        for band, cfg in self.bands.items():
            validate_band_config(band, cfg)
        validate_thresholds(self.thresholds)
        validate_staleness(self.healthy_staleness_sec, self.stressed_staleness_sec)
        if self.day_length_sec <= 0:
            raise ValidationError("day_length_sec must be positive", field="day_length_sec")
        if not -self.day_length_sec < self.cycle_offset_sec < self.day_length_sec:
            raise ValidationError(
                "cycle_offset_sec must lie within one day", field="cycle_offset_sec",
            )
        _check_bps("tx_ceiling_bps", self.tx_ceiling_bps)
        _check_bps("fee_reserve_share_bps", self.fee_reserve_share_bps)
        if self.override_ttl_sec <= 0:
            raise ValidationError("override_ttl_sec must be positive", field="override_ttl_sec")
        if self.override_min_interval_sec < 0:
            raise ValidationError(
                "override_min_interval_sec must be >= 0", field="override_min_interval_sec",
            )
        if not 0 <= self.reserve_decimals <= 36:
            raise ValidationError("reserve_decimals out of range", field="reserve_decimals")
        if not self.treasury_account or not self.gateway_account:
            raise ValidationError("treasury and gateway accounts are required", field="accounts")

    def with_band(self, band: Band, cfg: BandConfig) -> PolicyConfig:
        bands = dict(self.bands)
        bands[band] = cfg
        return replace(self, bands=bands)

    def with_changes(self, **changes) -> PolicyConfig:
        return replace(self, **changes)


def validate_band_config(band: Band, cfg: BandConfig) -> None:
    prefix = band.name.lower()
    for name in (
        "spread_bps",
        "mint_fee_bps",
        "redeem_fee_bps",
        "floor_bps",
        "alpha_bps",
        "skim_bps",
        "mint_cap_bps",
        "redeem_cap_bps",
    ):
        _check_bps(f"{prefix}.{name}", getattr(cfg, name))
    # spread 100% は償還価格を 0 にするので不可
    if cfg.spread_bps >= BPS:
        raise ValidationError(f"{prefix}.spread_bps must be < {BPS}", field=f"{prefix}.spread_bps")
    if cfg.oracle_staleness_sec <= 0:
        raise ValidationError(
            f"{prefix}.oracle_staleness_sec must be positive",
            field=f"{prefix}.oracle_staleness_sec",
        )


def validate_thresholds(t: ReserveThresholds) -> None:
    for name in ("warn_bps", "floor_bps", "emergency_bps"):
        value = getattr(t, name)
        if value < 0:
            raise ValidationError(f"{name} must be >= 0", field=name)
    if not t.emergency_bps <= t.floor_bps <= t.warn_bps:
        raise ValidationError(
            f"thresholds must satisfy emergency <= floor <= warn "
            f"(got {t.emergency_bps}/{t.floor_bps}/{t.warn_bps})",
            field="thresholds",
        )


def validate_staleness(healthy: int, stressed: int) -> None:
    if stressed <= 0 or healthy <= 0:
        raise ValidationError("staleness windows must be positive", field="staleness")
    if stressed > healthy:
        raise ValidationError(
            f"stressed window {stressed}s exceeds healthy window {healthy}s",
            field="staleness",
        )


def _check_bps(name: str, value: int) -> None:
    if not 0 <= value <= BPS:
        raise ValidationError(f"{name}={value} outside [0, {BPS}]", field=name)

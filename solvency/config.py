from __future__ import annotations

from pydantic import BaseModel
from pydantic_settings import BaseSettings


class BandSettings(BaseModel):
    """Per-band pricing and capacity table (all fractions in bps)."""

    spread_bps: int = 0
    mint_fee_bps: int = 0
    redeem_fee_bps: int = 0
    oracle_staleness_sec: int = 3600
    floor_bps: int = 250
    alpha_bps: int = 1000  # redeem capacity = alpha × liabilities
    skim_bps: int = 0  # distribution skim for the rewards collaborator
    mint_cap_bps: int = 0  # 0 = unlimited
    redeem_cap_bps: int = 0  # 0 = base fraction 未設定


class Settings(BaseSettings):
    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
    }

    # === Band tables (GREEN__SPREAD_BPS=5 のように上書き可) ===
    green: BandSettings = BandSettings(
        spread_bps=0,
        mint_fee_bps=5,
        redeem_fee_bps=10,
        oracle_staleness_sec=86400,
        floor_bps=250,
        alpha_bps=2000,
        skim_bps=1000,
        mint_cap_bps=0,
        redeem_cap_bps=0,
    )
    yellow: BandSettings = BandSettings(
        spread_bps=10,
        mint_fee_bps=5,
        redeem_fee_bps=25,
        oracle_staleness_sec=3600,
        floor_bps=250,
        alpha_bps=1000,
        skim_bps=500,
        mint_cap_bps=0,
        redeem_cap_bps=1000,
    )
    red: BandSettings = BandSettings(
        spread_bps=50,
        mint_fee_bps=0,
        redeem_fee_bps=100,
        oracle_staleness_sec=900,
        floor_bps=100,
        alpha_bps=200,
        skim_bps=0,
        mint_cap_bps=0,
        redeem_cap_bps=200,
    )

    # === Reserve thresholds (bps of liabilities) ===
    warn_bps: int = 500
    floor_bps: int = 250
    emergency_bps: int = 100

    # === Attestation staleness ===
    healthy_staleness_sec: int = 172_800  # 48h (CR >= 1.0)
    stressed_staleness_sec: int = 3_600  # 1h (CR < 1.0)

    # === Rolling capacity ===
    cycle_offset_sec: int = 0  # ローカル深夜 0 時に合わせる (JST = 32400)
    day_length_sec: int = 86_400
    tx_ceiling_bps: int = 5_000  # 1 取引あたり残容量の最大 50%

    # === Fee routing ===
    fee_reserve_share_bps: int = 5_000  # 残りは treasury
    treasury_account: str = "treasury"
    gateway_account: str = "pricing-gateway"

    # === Emergency snapshot override ===
    override_ttl_sec: int = 3_600
    override_min_interval_sec: int = 21_600

    # === Units ===
    reserve_decimals: int = 6

    # === Storage / logging ===
    db_path: str = ""  # 空なら永続化しない
    structured_logging: bool = False


settings = Settings()

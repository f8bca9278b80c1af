"""Tests for the pricing gateway: quotes, settlement, slippage, liquidity, atomicity."""

from __future__ import annotations

import sqlite3

import pytest

from solvency.auth import Role
from solvency.errors import (
    AuthorizationError,
    CapacityExceededError,
    LiquidityError,
    ReentrancyError,
    SlippageError,
    TransactionTooLargeError,
    ValidationError,
)
from solvency.fixed_point import PRICE_BELOW_PEG, SCALE
from solvency.gateway.pricing import (
    apply_mint_spread,
    apply_redeem_spread,
    compute_fee,
    payout_for_tokens,
    split_fee,
    tokens_for_input,
)
from solvency.risk.models import Band, CapType
from solvency.store.db import get_counters, get_telemetry_events
from solvency.telemetry import TelemetryKind
from tests.helpers import ADMIN, HOLDER, UNIT, make_harness, publish, seed

S = SCALE


def _snapshot_balances(h) -> tuple:
    return (
        h.ledger.total_supply(),
        h.ledger.balance_of(HOLDER),
        h.reserve.reserve,
        h.reserve.treasury,
        dict(h.reserve.wallets),
        {c: (r.cycle_id, r.consumed) for c, r in h.state.counters.items()},
    )


# ---------------------------------------------------------------------------
# Pure pricing helpers
# ---------------------------------------------------------------------------


class TestPricingHelpers:
    def test_mint_spread_rounds_up(self):
        assert apply_mint_spread(S, 10) == 1_001_000_000_000_000_000
        assert apply_mint_spread(3, 1) == 4

    def test_mint_spread_keeps_below_peg(self):
        assert apply_mint_spread(999_500_000_000_000_000, 10) == PRICE_BELOW_PEG
        assert apply_mint_spread(99 * S // 100, 0) == 99 * S // 100

    def test_redeem_spread_rounds_down(self):
        assert apply_redeem_spread(S, 10) == 999 * S // 1000
        assert apply_redeem_spread(3, 1) == 2

    def test_fee(self):
        assert compute_fee(1_000 * UNIT, 5) == 500_000
        assert compute_fee(1_000 * UNIT, 5, exempt=True) == 0

    def test_tokens_for_input(self):
        assert tokens_for_input(UNIT, S, 6) == S
        assert tokens_for_input(UNIT, 99 * S // 100, 6) == 1_010_101_010_101_010_101

    def test_payout_for_tokens(self):
        assert payout_for_tokens(S, 999 * S // 1000, 6) == 999_000
        assert payout_for_tokens(1, S, 6) == 0

    def test_split_fee(self):
        assert split_fee(500_000, 5_000) == (250_000, 250_000)
        assert split_fee(3, 5_000) == (1, 2)
        assert split_fee(3, 10_000) == (3, 0)


# ---------------------------------------------------------------------------
# Mint
# ---------------------------------------------------------------------------


class TestMint:
    def test_mint_at_peg(self, green):
        green.reserve.fund("alice", 10_000 * UNIT)
        s = green.gateway.request_mint("alice", "alice", 1_000 * UNIT)

        assert s.kind == "mint"
        assert s.fee == 500_000
        assert s.effective_price == S
        assert s.amount_out == 999_500_000_000_000_000_000
        assert s.band == Band.GREEN
        assert green.ledger.balance_of("alice") == s.amount_out
        assert green.reserve.wallets["alice"] == 9_000 * UNIT
        # net + reserve half of the fee
        assert green.reserve.reserve == 100_000 * UNIT + 999_750_000
        assert green.reserve.treasury == 250_000
        assert green.reserve.custody == 0

        counter = green.state.counters[CapType.MINT]
        assert counter.consumed == s.amount_out
        assert counter.frozen_capacity is None
        assert len(green.telemetry.of_kind(TelemetryKind.MINT_SETTLED)) == 1

    def test_first_mint_bootstrap(self, harness):
        harness.reserve.fund("alice", 1_000 * UNIT)
        s = harness.gateway.request_mint("alice", "alice", 1_000 * UNIT)
        assert s.amount_out == 999_500_000_000_000_000_000
        assert harness.ledger.total_supply() == s.amount_out

    def test_mint_below_peg_gives_more_tokens(self, deficit):
        deficit.feed.set_price(99 * S // 100, deficit.clock.now())
        deficit.reserve.fund("alice", 1_000 * UNIT)
        s = deficit.gateway.request_mint("alice", "alice", 1_000 * UNIT)
        assert s.effective_price == 99 * S // 100
        assert s.amount_out == 999_500_000 * 10**12 * S // (99 * S // 100)
        assert s.amount_out > 999_500_000_000_000_000_000

    def test_band_refreshed_before_pricing(self, harness):
        seed(harness, 1_000_000, 30_000)
        publish(harness, 1_000_000)
        harness.reserve.fund("alice", 1_000 * UNIT)
        s = harness.gateway.request_mint("alice", "alice", 1_000 * UNIT)
        assert s.band == Band.YELLOW
        assert harness.engine.band == Band.YELLOW
        assert s.effective_price == 1_001_000_000_000_000_000
        assert s.amount_out == 999_500_000 * 10**12 * S // 1_001_000_000_000_000_000

    def test_steward_exempt(self, green):
        green.system.access.grant(Role.STEWARD, "alice")
        green.reserve.fund("alice", 1_000 * UNIT)
        s = green.gateway.request_mint("alice", "alice", 1_000 * UNIT)
        assert s.fee == 0
        assert s.amount_out == 1_000 * S
        assert green.reserve.treasury == 0

    def test_preview_matches_execution(self, green):
        green.reserve.fund("alice", 1_000 * UNIT)
        quote = green.gateway.preview_mint("alice", 1_000 * UNIT)
        s = green.gateway.request_mint("alice", "alice", 1_000 * UNIT)
        assert quote.output == s.amount_out
        assert quote.fee == s.fee
        assert quote.net_input == 999_500_000

    def test_non_positive_input(self, green):
        with pytest.raises(ValidationError):
            green.gateway.request_mint("alice", "alice", 0)

    def test_min_output_slippage(self, green):
        green.reserve.fund("alice", 1_000 * UNIT)
        before = _snapshot_balances(green)
        with pytest.raises(SlippageError) as exc_info:
            green.gateway.request_mint("alice", "alice", 1_000 * UNIT, min_output=1_000 * S)
        assert exc_info.value.field == "min_output"
        assert exc_info.value.actual == 999_500_000_000_000_000_000
        assert _snapshot_balances(green) == before

    def test_max_price_slippage(self, green):
        green.reserve.fund("alice", 1_000 * UNIT)
        with pytest.raises(SlippageError) as exc_info:
            green.gateway.request_mint("alice", "alice", 1_000 * UNIT, max_price=S - 1)
        assert exc_info.value.field == "max_price"
        green.gateway.request_mint("alice", "alice", 1_000 * UNIT, max_price=S)


# ---------------------------------------------------------------------------
# Refund
# ---------------------------------------------------------------------------


class TestRefund:
    def test_refund_at_peg(self, green):
        s = green.gateway.request_refund(HOLDER, "bob", 1_000 * S)

        assert s.kind == "refund"
        assert s.effective_price == S
        assert s.fee == 1_000_000
        assert s.amount_out == 999_000_000
        assert green.ledger.total_supply() == 999_000 * S
        assert green.reserve.wallets["bob"] == 999_000_000
        # treasury half leaves the reserve, reserve half stays
        assert green.reserve.treasury == 500_000
        assert green.reserve.reserve == 100_000 * UNIT - 999_500_000
        assert green.state.counters[CapType.REDEEM].consumed == 1_000 * S
        assert len(green.telemetry.of_kind(TelemetryKind.REFUND_SETTLED)) == 1

    def test_refund_below_peg(self, deficit):
        s = deficit.gateway.request_refund(HOLDER, HOLDER, 1_000 * S)
        assert s.effective_price == 98 * S // 100
        assert s.fee == 980_000
        assert s.amount_out == 979_020_000

    def test_min_price_slippage(self, green):
        before = _snapshot_balances(green)
        with pytest.raises(SlippageError) as exc_info:
            green.gateway.request_refund(HOLDER, HOLDER, 1_000 * S, min_price=S + 1)
        assert exc_info.value.field == "min_price"
        assert _snapshot_balances(green) == before

    def test_min_output_slippage(self, green):
        with pytest.raises(SlippageError) as exc_info:
            green.gateway.request_refund(HOLDER, HOLDER, 1_000 * S, min_output=1_000 * UNIT)
        assert exc_info.value.actual == 999_000_000

    def test_dust_rejected(self, green):
        with pytest.raises(ValidationError):
            green.gateway.request_refund(HOLDER, HOLDER, 1)

    def test_insufficient_balance(self, green):
        with pytest.raises(ValidationError) as exc_info:
            green.gateway.request_refund("bob", "bob", 1_000 * S)
        assert exc_info.value.field == "token_amount"

    def test_liquidity_floor(self, harness):
        seed(harness, 1_000_000, 30_000)
        publish(harness, 1_000_000)
        assert harness.engine.refresh_band() == Band.YELLOW
        before = _snapshot_balances(harness)

        with pytest.raises(LiquidityError) as exc_info:
            harness.gateway.request_refund(HOLDER, HOLDER, 6_000 * S)
        # 6000 × 0.999 = 5994 units vs 30k − 25k floor
        assert exc_info.value.requested == 5_994 * UNIT
        assert exc_info.value.available == 5_000 * UNIT

        assert _snapshot_balances(harness) == before
        assert harness.engine.band == Band.YELLOW
        assert harness.telemetry.of_kind(TelemetryKind.REFUND_SETTLED) == []
        assert harness.telemetry.of_kind(TelemetryKind.CAP_USAGE) == []

    def test_transaction_too_large(self, green):
        before = _snapshot_balances(green)
        with pytest.raises(TransactionTooLargeError):
            green.gateway.request_refund(HOLDER, HOLDER, 40_000 * S)
        assert _snapshot_balances(green) == before

    def test_capacity_exceeded(self, green):
        green.engine.set_tx_ceiling(ADMIN, 0)
        green.engine.record_usage(green.gateway.account, CapType.REDEEM, 70_000 * S)
        with pytest.raises(CapacityExceededError) as exc_info:
            green.gateway.request_refund(HOLDER, HOLDER, 10_000 * S)
        assert exc_info.value.remaining == 5_000 * S
        green.gateway.request_refund(HOLDER, HOLDER, 5_000 * S)

    def test_preview_refund(self, green):
        quote = green.gateway.preview_refund(HOLDER, 1_000 * S)
        assert quote.gross == 1_000 * UNIT
        assert quote.net == 999_000_000


# ---------------------------------------------------------------------------
# Access control / reentrancy
# ---------------------------------------------------------------------------


class TestAccess:
    def test_allowlist_checks_recipient(self):
        h = make_harness(allow_all=False)
        h.allow.add("alice")
        seed(h, 1_000_000, 100_000)
        h.reserve.fund("alice", 1_000 * UNIT)

        with pytest.raises(AuthorizationError) as exc_info:
            h.gateway.request_mint("alice", "mallory", 1_000 * UNIT)
        assert exc_info.value.account == "mallory"
        assert exc_info.value.role == "allowlist"

        h.gateway.request_mint("alice", "alice", 1_000 * UNIT)

    def test_allowlist_checks_caller(self):
        h = make_harness(allow_all=False)
        h.allow.add("bob")
        seed(h, 1_000_000, 100_000)
        with pytest.raises(AuthorizationError):
            h.gateway.request_refund(HOLDER, "bob", 1_000 * S)


class TestReentrancy:
    def test_ledger_hook_reentry_fails_only_the_hook(self, green):
        errors = []

        def hook(account, delta):
            try:
                green.engine.refresh_band()
            except ReentrancyError as e:
                errors.append(e)
                raise

        green.ledger.hooks.append(hook)
        supply = green.ledger.total_supply()
        green.reserve.fund("alice", 1_000 * UNIT)

        s = green.gateway.request_mint("alice", "alice", 1_000 * UNIT)

        assert [(e.operation, e.active) for e in errors] == [("refresh_band", "mint")]
        assert green.ledger.total_supply() == supply + s.amount_out
        assert green.ledger.balance_of("alice") == s.amount_out
        assert green.reserve.wallets["alice"] == 0
        assert green.reserve.custody == 0
        assert green.state.counters[CapType.MINT].consumed == s.amount_out
        assert green.state.active_operation is None
        assert len(green.telemetry.of_kind(TelemetryKind.MINT_SETTLED)) == 1

    def test_hook_cannot_mint_during_refund(self, green):
        errors = []

        def hook(account, delta):
            try:
                green.gateway.request_mint(account, account, 1_000 * UNIT)
            except ReentrancyError as e:
                errors.append(e)
                raise

        green.ledger.hooks.append(hook)
        green.reserve.fund(HOLDER, 1_000 * UNIT)

        s = green.gateway.request_refund(HOLDER, HOLDER, 1_000 * S)

        assert [(e.operation, e.active) for e in errors] == [("request_mint", "burn")]
        assert green.ledger.total_supply() == 999_000 * S
        assert green.ledger.balance_of(HOLDER) == 999_000 * S
        assert green.reserve.wallets[HOLDER] == 1_000 * UNIT + s.amount_out
        assert green.state.counters[CapType.MINT].cycle_id == -1
        assert green.state.counters[CapType.REDEEM].consumed == 1_000 * S

    def test_reserve_reentry_into_gateway(self, green, monkeypatch):
        original = green.reserve.collect

        def reentrant_collect(payer, amount):
            green.gateway.request_mint(payer, payer, amount)
            original(payer, amount)

        monkeypatch.setattr(green.reserve, "collect", reentrant_collect)
        green.reserve.fund("alice", 2_000 * UNIT)
        before = _snapshot_balances(green)
        with pytest.raises(ReentrancyError):
            green.gateway.request_mint("alice", "alice", 1_000 * UNIT)
        assert _snapshot_balances(green) == before
        assert green.reserve.custody == 0
        assert green.state.active_operation is None


class TestSettlementReversal:
    def test_failed_mint_returns_collected_input(self, green, monkeypatch):
        def paused(to, amount):
            raise ValueError("ledger paused")

        monkeypatch.setattr(green.ledger, "mint", paused)
        green.reserve.fund("alice", 1_000 * UNIT)
        before = _snapshot_balances(green)

        with pytest.raises(ValueError, match="ledger paused"):
            green.gateway.request_mint("alice", "alice", 1_000 * UNIT)

        assert _snapshot_balances(green) == before
        assert green.reserve.wallets["alice"] == 1_000 * UNIT
        assert green.reserve.custody == 0
        assert green.state.counters[CapType.MINT].cycle_id == -1
        assert green.telemetry.of_kind(TelemetryKind.MINT_SETTLED) == []

    def test_failed_payout_restores_burned_tokens(self, green, monkeypatch):
        def frozen(to, amount):
            raise ValueError("withdrawals frozen")

        monkeypatch.setattr(green.reserve, "queue_withdrawal", frozen)
        before = _snapshot_balances(green)

        with pytest.raises(ValueError, match="withdrawals frozen"):
            green.gateway.request_refund(HOLDER, HOLDER, 1_000 * S)

        assert _snapshot_balances(green) == before
        assert green.ledger.total_supply() == 1_000_000 * S
        assert green.state.counters[CapType.REDEEM].cycle_id == -1

    def test_failed_commit_reverses_mint(self, db_path, monkeypatch):
        h = make_harness(db_path=db_path)
        seed(h, 1_000_000, 100_000)
        publish(h, 950_000)
        h.engine.refresh_band()
        h.reserve.fund("alice", 1_000 * UNIT)
        before = _snapshot_balances(h)
        stored_counters = get_counters(db_path=db_path)
        stored_events = len(get_telemetry_events(db_path=db_path))

        def disk_full(conn, record):
            raise sqlite3.OperationalError("database or disk is full")

        monkeypatch.setattr("solvency.store.db._insert_telemetry", disk_full)
        with pytest.raises(sqlite3.OperationalError):
            h.gateway.request_mint("alice", "alice", 1_000 * UNIT)

        assert _snapshot_balances(h) == before
        assert h.reserve.custody == 0
        assert h.telemetry.of_kind(TelemetryKind.MINT_SETTLED) == []
        assert get_counters(db_path=db_path) == stored_counters
        assert len(get_telemetry_events(db_path=db_path)) == stored_events

    def test_failed_commit_reverses_refund(self, db_path, monkeypatch):
        h = make_harness(db_path=db_path)
        seed(h, 1_000_000, 100_000)
        publish(h, 950_000)
        h.engine.refresh_band()

        def disk_full(conn, record):
            raise sqlite3.OperationalError("database or disk is full")

        monkeypatch.setattr("solvency.store.db._insert_telemetry", disk_full)
        with pytest.raises(sqlite3.OperationalError):
            h.gateway.request_refund(HOLDER, HOLDER, 1_000 * S)

        assert h.ledger.total_supply() == 1_000_000 * S
        assert h.ledger.balance_of(HOLDER) == 1_000_000 * S
        assert h.reserve.reserve == 100_000 * UNIT
        assert h.reserve.treasury == 0
        assert h.reserve.wallets[HOLDER] == 0
        assert h.reserve.custody == 0
        assert h.state.counters[CapType.REDEEM].cycle_id == -1

"""Priced mint/redeem execution against the ledger and reserve.

Every entry point refreshes the band, takes one parameter bundle from the
engine, runs every check, and only then moves funds. Capacity usage is
recorded before the supply changes so that a new cycle freezes its cap on
the pre-operation liabilities.

Every ledger and reserve effect registers its inverse as it completes. If
anything later in the operation fails, including the final state commit, the
inverses run newest first, so the ledger and reserve never diverge from the
rolled-back counters.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import ExitStack
from typing import Any

from solvency.auth import AccessController, Role
from solvency.connectors.base import AccessCheck, Clock, Ledger, Reserve
from solvency.errors import (
    AuthorizationError,
    LiquidityError,
    SlippageError,
    ValidationError,
)
from solvency.fixed_point import format_wad, from_wad, to_wad
from solvency.gateway.models import MintQuote, RefundQuote, Settlement
from solvency.gateway.pricing import (
    apply_mint_spread,
    apply_redeem_spread,
    compute_fee,
    payout_for_tokens,
    split_fee,
    tokens_for_input,
)
from solvency.risk.capacity_engine import CapacityPolicyEngine
from solvency.risk.models import CapType, ParameterBundle
from solvency.risk.state import SystemState
from solvency.telemetry import TelemetryKind

logger = logging.getLogger(__name__)


class PricingGateway:
    def __init__(
        self,
        state: SystemState,
        access: AccessController,
        clock: Clock,
        engine: CapacityPolicyEngine,
    ) -> None:
        self._state = state
        self._access = access
        self._clock = clock
        self._engine = engine
        self._ledger: Ledger | None = None
        self._reserve: Reserve | None = None
        self._access_check: AccessCheck | None = None

    def bind(self, ledger: Ledger, reserve: Reserve, access_check: AccessCheck) -> None:
        self._ledger = ledger
        self._reserve = reserve
        self._access_check = access_check

    @property
    def account(self) -> str:
        return self._state.policy.gateway_account

    # ------------------------------------------------------------------
    # Quotes (pure, no mutation)
    # ------------------------------------------------------------------

    def _quote_mint(self, caller: str, input_amount: int, params: ParameterBundle) -> MintQuote:
        effective = apply_mint_spread(params.price, params.spread_bps)
        fee = compute_fee(
            input_amount, params.mint_fee_bps, exempt=self._access.has_role(caller, Role.STEWARD),
        )
        net = input_amount - fee
        output = tokens_for_input(net, effective, self._state.policy.reserve_decimals)
        return MintQuote(
            effective_price=effective, fee=fee, net_input=net, output=output, band=params.band,
        )

    def _quote_refund(
        self, caller: str, token_amount: int, params: ParameterBundle,
    ) -> RefundQuote:
        effective = apply_redeem_spread(params.price, params.spread_bps)
        gross = payout_for_tokens(token_amount, effective, self._state.policy.reserve_decimals)
        fee = compute_fee(
            gross, params.redeem_fee_bps, exempt=self._access.has_role(caller, Role.STEWARD),
        )
        return RefundQuote(
            effective_price=effective, gross=gross, fee=fee, net=gross - fee, band=params.band,
        )

    def preview_mint(self, caller: str, input_amount: int) -> MintQuote:
        """Quote a mint at the cached band without executing it."""
        return self._quote_mint(caller, input_amount, self._engine.get_mint_parameters(0))

    def preview_refund(self, caller: str, token_amount: int) -> RefundQuote:
        """Quote a refund at the cached band without executing it."""
        return self._quote_refund(caller, token_amount, self._engine.get_refund_parameters(0))

    # ------------------------------------------------------------------
    # Mint
    # ------------------------------------------------------------------

    def request_mint(
        self,
        caller: str,
        recipient: str,
        input_amount: int,
        min_output: int = 0,
        max_price: int | None = None,
    ) -> Settlement:
        """Pay ``input_amount`` reserve units, receive tokens at the CAP price."""
        with ExitStack() as undo:
            with self._state.operation("request_mint"):
                if input_amount <= 0:
                    raise ValidationError("input_amount must be positive", field="input_amount")
                self._engine.refresh_band()
                self._require_allowed(caller, recipient)

                # 金額確定前なので capacity チェックは後で実額で行う
                params = self._engine.get_mint_parameters(0)
                quote = self._quote_mint(caller, input_amount, params)

                if max_price is not None and quote.effective_price > max_price:
                    raise SlippageError("max_price", bound=max_price, actual=quote.effective_price)
                if quote.output == 0:
                    raise ValidationError(
                        "input too small to mint any tokens", field="input_amount",
                    )
                if quote.output < min_output:
                    raise SlippageError("min_output", bound=min_output, actual=quote.output)
                self._engine.check_capacity(CapType.MINT, quote.output)

                ledger = self._require_ledger()
                reserve = self._require_reserve()
                with self._state.external_call("collect"):
                    reserve.collect(caller, input_amount)
                undo.callback(self._compensate, "release", reserve.release, caller, input_amount)
                # supply 変更前に記録 (cycle cap を mint 前の値で凍結)
                self._engine.record_usage(self.account, CapType.MINT, quote.output)
                with self._state.external_call("mint"):
                    ledger.mint(recipient, quote.output)
                undo.callback(self._compensate, "burn", ledger.burn, recipient, quote.output)

                reserve_fee, treasury_fee = split_fee(
                    quote.fee, self._state.policy.fee_reserve_share_bps,
                )
                deposit = quote.net_input + reserve_fee
                with self._state.external_call("route_fee"):
                    if treasury_fee:
                        reserve.credit_treasury(treasury_fee)
                        undo.callback(
                            self._compensate, "debit_treasury",
                            reserve.debit_treasury, treasury_fee,
                        )
                    reserve.record_deposit(deposit)
                    undo.callback(
                        self._compensate, "reverse_deposit", reserve.reverse_deposit, deposit,
                    )

                settlement = Settlement(
                    kind="mint",
                    account=caller,
                    recipient=recipient,
                    amount_in=input_amount,
                    amount_out=quote.output,
                    fee=quote.fee,
                    effective_price=quote.effective_price,
                    band=quote.band,
                )
                self._emit_settlement(TelemetryKind.MINT_SETTLED, settlement)
            undo.pop_all()
        return settlement

    # ------------------------------------------------------------------
    # Refund
    # ------------------------------------------------------------------

    def request_refund(
        self,
        caller: str,
        recipient: str,
        token_amount: int,
        min_output: int = 0,
        min_price: int | None = None,
    ) -> Settlement:
        """Burn ``token_amount`` tokens, receive reserve units at the CAP price."""
        with ExitStack() as undo:
            with self._state.operation("request_refund"):
                if token_amount <= 0:
                    raise ValidationError("token_amount must be positive", field="token_amount")
                self._engine.refresh_band()
                self._require_allowed(caller, recipient)

                params = self._engine.get_refund_parameters(0)
                quote = self._quote_refund(caller, token_amount, params)

                if min_price is not None and quote.effective_price < min_price:
                    raise SlippageError("min_price", bound=min_price, actual=quote.effective_price)
                if quote.gross == 0:
                    raise ValidationError("token_amount too small to pay out", field="token_amount")
                if quote.net < min_output:
                    raise SlippageError("min_output", bound=min_output, actual=quote.net)

                ledger = self._require_ledger()
                if ledger.balance_of(caller) < token_amount:
                    raise ValidationError(
                        f"{caller} holds fewer than {token_amount} tokens", field="token_amount",
                    )

                # burn 前に floor 超過分の流動性を確認
                decimals = self._state.policy.reserve_decimals
                floor = self._engine.floor_amount(params.total_supply, params.band)
                available = max(0, params.reserve_balance - floor)
                if to_wad(quote.gross, decimals) > available:
                    logger.warning(
                        "Refund blocked by reserve floor: gross=%d available=%d",
                        quote.gross, from_wad(available, decimals),
                    )
                    raise LiquidityError(
                        requested=quote.gross, available=from_wad(available, decimals),
                    )

                self._engine.check_capacity(CapType.REDEEM, token_amount)

                reserve = self._require_reserve()
                self._engine.record_usage(self.account, CapType.REDEEM, token_amount)
                with self._state.external_call("burn"):
                    ledger.burn(caller, token_amount)
                undo.callback(self._compensate, "mint", ledger.mint, caller, token_amount)

                _, treasury_fee = split_fee(quote.fee, self._state.policy.fee_reserve_share_bps)
                treasury = self._state.policy.treasury_account
                with self._state.external_call("withdraw"):
                    reserve.queue_withdrawal(recipient, quote.net)
                    undo.callback(self._compensate, "reclaim", self._reclaim, recipient, quote.net)
                    # reserve 側の fee はそのまま準備金に残る
                    if treasury_fee:
                        reserve.queue_withdrawal(treasury, treasury_fee)
                        undo.callback(
                            self._compensate, "reclaim", self._reclaim, treasury, treasury_fee,
                        )

                settlement = Settlement(
                    kind="refund",
                    account=caller,
                    recipient=recipient,
                    amount_in=token_amount,
                    amount_out=quote.net,
                    fee=quote.fee,
                    effective_price=quote.effective_price,
                    band=quote.band,
                )
                self._emit_settlement(TelemetryKind.REFUND_SETTLED, settlement)
            undo.pop_all()
        return settlement

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _compensate(self, step: str, reverse: Callable[..., None], *args: Any) -> None:
        """Reverse a completed collaborator effect after the operation failed."""
        logger.warning("Reversing %s: %s", step, args)
        with self._state.external_call(step):
            reverse(*args)

    def _reclaim(self, to: str, amount: int) -> None:
        """Pull a payout back into the reserve."""
        reserve = self._require_reserve()
        if to == self._state.policy.treasury_account:
            reserve.debit_treasury(amount)
        else:
            reserve.collect(to, amount)
        reserve.record_deposit(amount)

    def _require_allowed(self, caller: str, recipient: str) -> None:
        check = self._access_check
        if check is None:
            raise RuntimeError("PricingGateway is not bound to an access check")
        for account in (caller, recipient):
            if not check.is_allowed(account):
                logger.warning("Access check rejected %s", account)
                raise AuthorizationError(account, "allowlist")

    def _emit_settlement(self, kind: TelemetryKind, s: Settlement) -> None:
        self._state.emit(
            kind,
            self._clock.now(),
            account=s.account,
            recipient=s.recipient,
            amount_in=s.amount_in,
            amount_out=s.amount_out,
            fee=s.fee,
            effective_price=s.effective_price,
            band=s.band.name,
        )
        logger.info(
            "%s settled: in=%d out=%d fee=%d price=%s band=%s",
            s.kind, s.amount_in, s.amount_out, s.fee, format_wad(s.effective_price), s.band.name,
        )

    def _require_ledger(self) -> Ledger:
        if self._ledger is None:
            raise RuntimeError("PricingGateway is not bound to a ledger")
        return self._ledger

    def _require_reserve(self) -> Reserve:
        if self._reserve is None:
            raise RuntimeError("PricingGateway is not bound to a reserve")
        return self._reserve

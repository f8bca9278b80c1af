"""In-memory collaborators for simulations and tests."""

from __future__ import annotations

import logging
import time
from collections import defaultdict

from solvency.connectors.base import BalanceHook

logger = logging.getLogger(__name__)


class SystemClock:
    def now(self) -> int:
        return int(time.time())


class ManualClock:
    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        self._now += seconds
        return self._now

    def set(self, ts: int) -> None:
        self._now = ts


class MemoryLedger:
    """Token ledger that notifies balance hooks after every change."""

    def __init__(self) -> None:
        self._balances: dict[str, int] = defaultdict(int)
        self._supply = 0
        self.hooks: list[BalanceHook] = []

    def total_supply(self) -> int:
        return self._supply

    def balance_of(self, account: str) -> int:
        return self._balances[account]

    def mint(self, to: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("mint amount must be >= 0")
        self._balances[to] += amount
        self._supply += amount
        self._notify(to, amount)

    def burn(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("burn amount must be >= 0")
        if self._balances[account] < amount:
            raise ValueError(f"burn exceeds balance of {account}")
        self._balances[account] -= amount
        self._supply -= amount
        self._notify(account, -amount)

    def _notify(self, account: str, delta: int) -> None:
        # 残高変更は確定済み。hook の失敗は hook 側の失敗として扱う
        for hook in list(self.hooks):
            try:
                hook(account, delta)
            except Exception:
                logger.warning(
                    "Balance hook failed for %s (delta=%d)", account, delta, exc_info=True,
                )


class MemoryReserve:
    """Reserve asset balances: payer wallets, custody, reserve and treasury."""

    def __init__(self, treasury_account: str = "treasury") -> None:
        self.wallets: dict[str, int] = defaultdict(int)
        self.reserve = 0
        self.treasury = 0
        self.custody = 0
        self.treasury_account = treasury_account

    def fund(self, account: str, amount: int) -> None:
        self.wallets[account] += amount

    def balance_of(self) -> int:
        return self.reserve

    def collect(self, payer: str, amount: int) -> None:
        if self.wallets[payer] < amount:
            raise ValueError(f"{payer} has insufficient reserve asset")
        self.wallets[payer] -= amount
        self.custody += amount

    def release(self, payer: str, amount: int) -> None:
        self._take_custody(amount)
        self.wallets[payer] += amount

    def record_deposit(self, amount: int) -> None:
        self._take_custody(amount)
        self.reserve += amount

    def reverse_deposit(self, amount: int) -> None:
        if self.reserve < amount:
            raise ValueError("reserve balance too low")
        self.reserve -= amount
        self.custody += amount

    def credit_treasury(self, amount: int) -> None:
        self._take_custody(amount)
        self.treasury += amount

    def debit_treasury(self, amount: int) -> None:
        if self.treasury < amount:
            raise ValueError("treasury balance too low")
        self.treasury -= amount
        self.custody += amount

    def queue_withdrawal(self, to: str, amount: int) -> None:
        # このコアの呼び出し元では即時払い出し
        if self.reserve < amount:
            raise ValueError("withdrawal exceeds reserve balance")
        self.reserve -= amount
        if to == self.treasury_account:
            self.treasury += amount
        else:
            self.wallets[to] += amount

    def _take_custody(self, amount: int) -> None:
        if self.custody < amount:
            raise ValueError("custody balance too low")
        self.custody -= amount


class StaticPriceFeed:
    def __init__(self, price: int = 0, updated_at: int = 0) -> None:
        self.price = price
        self.updated_at = updated_at
        self.strict = False

    def latest_price(self) -> tuple[int, int]:
        return self.price, self.updated_at

    def set_price(self, price: int, updated_at: int) -> None:
        self.price = price
        self.updated_at = updated_at

    def set_strict_mode(self, strict: bool) -> None:
        if strict != self.strict:
            logger.info("Price feed strict mode -> %s", strict)
        self.strict = strict


class AllowList:
    def __init__(self, accounts: set[str] | None = None, allow_all: bool = False) -> None:
        self.accounts = set(accounts or ())
        self.allow_all = allow_all

    def is_allowed(self, account: str) -> bool:
        return self.allow_all or account in self.accounts

    def add(self, account: str) -> None:
        self.accounts.add(account)

    def remove(self, account: str) -> None:
        self.accounts.discard(account)

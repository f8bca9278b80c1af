"""Collaborator contracts the control plane depends on.

Components hold only these narrow interfaces, never each other's concrete
classes, so the wiring in ``solvency.bootstrap`` is the only place that knows
every peer.
"""

from __future__ import annotations

from typing import Protocol


class Ledger(Protocol):
    """Fungible balance ledger of the value token (18 decimals).

    A call either applies and returns, or raises having applied nothing.
    Balance hooks run after the change is final and cannot undo it.
    """

    def total_supply(self) -> int: ...

    def balance_of(self, account: str) -> int: ...

    def mint(self, to: str, amount: int) -> None: ...

    def burn(self, account: str, amount: int) -> None: ...


class Reserve(Protocol):
    """Redemption reserve in reserve-asset units.

    ``balance_of`` excludes the treasury sub-account. ``collect`` moves funds
    from a payer into gateway custody; ``record_deposit`` and
    ``credit_treasury`` move custody funds into the reserve or treasury;
    ``release``, ``reverse_deposit`` and ``debit_treasury`` move funds back
    into custody or to the payer so a failed settlement can be unwound. As
    with the ledger, a call that raises has applied nothing.
    """

    def balance_of(self) -> int: ...

    def collect(self, payer: str, amount: int) -> None: ...

    def release(self, payer: str, amount: int) -> None: ...

    def record_deposit(self, amount: int) -> None: ...

    def reverse_deposit(self, amount: int) -> None: ...

    def credit_treasury(self, amount: int) -> None: ...

    def debit_treasury(self, amount: int) -> None: ...

    def queue_withdrawal(self, to: str, amount: int) -> None: ...


class PriceFeed(Protocol):
    def latest_price(self) -> tuple[int, int]:
        """Return (price in wad, updated_at epoch seconds).

        Raises OSError (ConnectionError, TimeoutError) when the source cannot
        be reached. Any other exception is a wiring bug and propagates.
        """
        ...

    def set_strict_mode(self, strict: bool) -> None: ...


class AccessCheck(Protocol):
    def is_allowed(self, account: str) -> bool: ...


class Clock(Protocol):
    def now(self) -> int: ...


class BalanceHook(Protocol):
    def __call__(self, account: str, delta: int) -> None: ...

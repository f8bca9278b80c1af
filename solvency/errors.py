"""Typed failures for every way a solvency operation can abort.

Every error carries a stable ``code`` so that callers can distinguish a
capacity problem (retry next cycle) from a slippage problem (resubmit with
different bounds) without parsing messages. Nothing inside the core retries.
"""

from __future__ import annotations

from typing import Any


class SolvencyError(Exception):
    """Base exception for all control-plane failures."""

    code = "SOLVENCY_ERROR"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class ValidationError(SolvencyError):
    """Malformed configuration or argument, rejected before any mutation."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str = ""):
        super().__init__(message, field=field)
        self.field = field


class StaleDataError(SolvencyError):
    """Oracle or attestation data is older than its allowed window."""

    code = "STALE_DATA"

    def __init__(self, source: str, age: int, bound: int):
        super().__init__(
            f"{source} data is stale: age={age}s > bound={bound}s",
            source=source, age=age, bound=bound,
        )
        self.source = source
        self.age = age
        self.bound = bound


class CapacityExceededError(SolvencyError):
    code = "CAPACITY_EXCEEDED"

    def __init__(self, cap_type: str, requested: int, remaining: int):
        super().__init__(
            f"{cap_type} capacity exceeded: requested={requested} remaining={remaining}",
            cap_type=cap_type, requested=requested, remaining=remaining,
        )
        self.cap_type = cap_type
        self.requested = requested
        self.remaining = remaining


class TransactionTooLargeError(SolvencyError):
    code = "TRANSACTION_TOO_LARGE"

    def __init__(self, cap_type: str, requested: int, limit: int):
        super().__init__(
            f"{cap_type} transaction too large: requested={requested} limit={limit}",
            cap_type=cap_type, requested=requested, limit=limit,
        )
        self.cap_type = cap_type
        self.requested = requested
        self.limit = limit


class LiquidityError(SolvencyError):
    """Redemption would take the reserve below its floor."""

    code = "INSUFFICIENT_LIQUIDITY"

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"insufficient liquidity above reserve floor: requested={requested} "
            f"available={available}",
            requested=requested, available=available,
        )
        self.requested = requested
        self.available = available


class SlippageError(SolvencyError):
    """A caller-supplied price or output bound was violated."""

    code = "SLIPPAGE"

    def __init__(self, field: str, bound: int, actual: int):
        super().__init__(
            f"slippage bound violated: {field} bound={bound} actual={actual}",
            field=field, bound=bound, actual=actual,
        )
        self.field = field
        self.bound = bound
        self.actual = actual


class AuthorizationError(SolvencyError):
    code = "UNAUTHORIZED"

    def __init__(self, account: str, role: str):
        super().__init__(f"account {account!r} lacks {role}", account=account, role=role)
        self.account = account
        self.role = role


class ReentrancyError(SolvencyError):
    code = "REENTRANCY"

    def __init__(self, operation: str, active: str):
        super().__init__(
            f"{operation} re-entered while {active} is calling out",
            operation=operation, active=active,
        )
        self.operation = operation
        self.active = active

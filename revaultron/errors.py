"""Error taxonomy for vault, volatility index and rebalance executor calls.

Every failure aborts the call it was raised from. The ``category`` attribute
tells callers (the authorized agents) how to react:

* ``PRECONDITION`` - the request itself is malformed or not permitted.
* ``BUSINESS_RULE`` - the request is well formed but a guard rejected it.
* ``EXTERNAL`` - a collaborator (token service, oracle, swap venue) failed.
* ``STALENESS`` - price data is too old to act on.

Nothing is retried internally; retry policy belongs to the caller.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict


class ErrorCategory(str, Enum):
    PRECONDITION = "precondition"
    BUSINESS_RULE = "business_rule"
    EXTERNAL = "external"
    STALENESS = "staleness"


class RevaultronError(Exception):
    """Base class. Subclasses set ``category`` and ``code``."""

    category: ErrorCategory = ErrorCategory.PRECONDITION
    code: str = "error"

    def __init__(self, message: str = "", **context: Any) -> None:
        super().__init__(message or self.code)
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "category": self.category.value,
            "message": str(self),
            **self.context,
        }


# ---------------------------------------------------------------------------
# Precondition errors
# ---------------------------------------------------------------------------


class Unauthorized(RevaultronError):
    code = "unauthorized"

    def __init__(self, principal: str, action: str) -> None:
        super().__init__(
            f"{principal!r} is not authorized to {action}",
            principal=principal,
            action=action,
        )
        self.principal = principal
        self.action = action


class InvalidAddress(RevaultronError):
    code = "invalid_address"

    def __init__(self, field_name: str) -> None:
        super().__init__(f"invalid address for {field_name}", field=field_name)
        self.field_name = field_name


class InvalidAmount(RevaultronError):
    code = "invalid_amount"

    def __init__(self, amount: Any, reason: str = "amount must be positive") -> None:
        super().__init__(f"{reason} (got {amount!r})", amount=amount)
        self.amount = amount


class InvalidConfiguration(RevaultronError):
    code = "invalid_configuration"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class ReentrantCall(RevaultronError):
    code = "reentrant_call"

    def __init__(self, target: str) -> None:
        super().__init__(f"re-entrant call into {target} rejected", target=target)


class InsufficientFee(RevaultronError):
    code = "insufficient_fee"

    def __init__(self, required: int, provided: int) -> None:
        super().__init__(
            f"fee of {required} required, {provided} provided",
            required=required,
            provided=provided,
        )
        self.required = required
        self.provided = provided


class FeedNotSupported(RevaultronError):
    code = "feed_not_supported"

    def __init__(self, feed: str) -> None:
        super().__init__(f"price feed {feed} is not supported", feed=feed)
        self.feed = feed


# ---------------------------------------------------------------------------
# Business-rule errors
# ---------------------------------------------------------------------------


class RebalanceNotNeeded(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "rebalance_not_needed"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class InsufficientBalance(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "insufficient_balance"

    def __init__(self, asset: str, required: int, available: int) -> None:
        super().__init__(
            f"insufficient balance of {asset}: required {required}, available {available}",
            asset=asset,
            required=required,
            available=available,
        )
        self.asset = asset
        self.required = required
        self.available = available


class TokenNotAssociated(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "token_not_associated"

    def __init__(self, asset: str) -> None:
        super().__init__(f"token {asset} is not associated", asset=asset)
        self.asset = asset


class TokenAlreadyAssociated(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "token_already_associated"

    def __init__(self, asset: str) -> None:
        super().__init__(f"token {asset} is already associated", asset=asset)
        self.asset = asset


class NonZeroBalance(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "non_zero_balance"

    def __init__(self, asset: str, balance: int) -> None:
        super().__init__(f"token {asset} still holds {balance}", asset=asset, balance=balance)
        self.asset = asset
        self.balance = balance


class VaultAlreadyExists(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "vault_already_exists"

    def __init__(self, owner: str) -> None:
        super().__init__(f"{owner} already owns a vault", owner=owner)
        self.owner = owner


class VaultNotFound(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "vault_not_found"

    def __init__(self, owner: str) -> None:
        super().__init__(f"{owner} has no vault", owner=owner)
        self.owner = owner


class NegativePrice(RevaultronError):
    category = ErrorCategory.BUSINESS_RULE
    code = "negative_price"

    def __init__(self, feed: str, price: int) -> None:
        super().__init__(f"feed {feed} reported negative price {price}", feed=feed, price=price)
        self.feed = feed
        self.price = price


# ---------------------------------------------------------------------------
# External-dependency errors
# ---------------------------------------------------------------------------


class ServiceCallFailed(RevaultronError):
    category = ErrorCategory.EXTERNAL
    code = "service_call_failed"

    def __init__(self, operation: str, status: int, reason: str = "") -> None:
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"{operation} failed with status {status}{detail}",
            operation=operation,
            status=status,
        )
        self.operation = operation
        self.status = status


class SwapFailed(RevaultronError):
    category = ErrorCategory.EXTERNAL
    code = "swap_failed"

    def __init__(self, reason: str) -> None:
        super().__init__(f"swap failed: {reason}")
        self.reason = reason


class OracleError(RevaultronError):
    category = ErrorCategory.EXTERNAL
    code = "oracle_error"

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


# ---------------------------------------------------------------------------
# Staleness errors
# ---------------------------------------------------------------------------


class StalePrice(RevaultronError):
    category = ErrorCategory.STALENESS
    code = "stale_price"

    def __init__(self, feed: str, age: int, max_age: int) -> None:
        super().__init__(
            f"price for {feed} is {age}s old (max {max_age}s)",
            feed=feed,
            age=age,
            max_age=max_age,
        )
        self.feed = feed
        self.age = age
        self.max_age = max_age

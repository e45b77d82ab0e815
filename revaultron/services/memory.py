"""In-memory token service, price oracle and swap venue.

Deterministic stand-ins for the external collaborators. They return the
same status codes and raise the same errors as the real services so the
vault, volatility index and executor can be exercised end to end without a
network. ``revaultron.simulation`` wires them into a local deployment.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Sequence, Set, Tuple

from revaultron.errors import InsufficientFee, OracleError, RevaultronError, StalePrice, SwapFailed
from revaultron.models import PriceQuote
from revaultron.services.base import PriceOracle, SwapVenue, TokenService
from revaultron.services.status import ResponseCode, describe, is_success
from revaultron.units import is_native

LOGGER = logging.getLogger(__name__)


def _system_clock() -> int:
    return int(time.time())


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class InMemoryTokenService(TokenService):
    """Balances, associations and allowances held in dictionaries.

    ``fail_next(operation, code)`` makes the next call of ``operation``
    (``"associate"``, ``"transfer"``, ``"balance_of"``, ...) return ``code``
    without side effects.
    """

    def __init__(self) -> None:
        self._tokens: Set[str] = set()
        self._balances: Dict[Tuple[str, str], int] = {}
        self._associations: Set[Tuple[str, str]] = set()
        self._allowances: Dict[Tuple[str, str, str], int] = {}
        self._native: Dict[str, int] = {}
        self._injected: Dict[str, int] = {}

    # -- setup helpers -------------------------------------------------------

    def create_token(self, asset: str) -> None:
        self._tokens.add(asset)

    def mint(self, asset: str, account: str, amount: int) -> None:
        """Credit ``amount`` and associate ``account`` if it is not already."""
        self._tokens.add(asset)
        self._associations.add((account, asset))
        key = (asset, account)
        self._balances[key] = self._balances.get(key, 0) + amount

    def credit_native(self, account: str, amount: int) -> None:
        self._native[account] = self._native.get(account, 0) + amount

    def fail_next(self, operation: str, code: int) -> None:
        self._injected[operation] = code

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        return self._allowances.get((asset, owner, spender), 0)

    def _take_injected(self, operation: str) -> Optional[int]:
        return self._injected.pop(operation, None)

    # -- TokenService --------------------------------------------------------

    def associate(self, account: str, asset: str) -> int:
        injected = self._take_injected("associate")
        if injected is not None:
            return injected
        if not account:
            return ResponseCode.INVALID_ACCOUNT_ID
        if asset not in self._tokens:
            return ResponseCode.INVALID_TOKEN_ID
        if (account, asset) in self._associations:
            return ResponseCode.TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT
        self._associations.add((account, asset))
        return ResponseCode.SUCCESS

    def dissociate(self, account: str, asset: str) -> int:
        injected = self._take_injected("dissociate")
        if injected is not None:
            return injected
        if (account, asset) not in self._associations:
            return ResponseCode.TOKEN_NOT_ASSOCIATED_TO_ACCOUNT
        if self._balances.get((asset, account), 0) != 0:
            return ResponseCode.TRANSACTION_REQUIRES_ZERO_TOKEN_BALANCES
        self._associations.discard((account, asset))
        self._balances.pop((asset, account), None)
        return ResponseCode.SUCCESS

    def transfer(self, asset: str, sender: str, recipient: str, amount: int, *, spender: str | None = None) -> int:
        injected = self._take_injected("transfer")
        if injected is not None:
            return injected
        if amount <= 0:
            return ResponseCode.INVALID_TRANSACTION_BODY
        if not sender or not recipient:
            return ResponseCode.INVALID_ACCOUNT_ID
        if asset not in self._tokens:
            return ResponseCode.INVALID_TOKEN_ID
        if (sender, asset) not in self._associations or (recipient, asset) not in self._associations:
            return ResponseCode.TOKEN_NOT_ASSOCIATED_TO_ACCOUNT
        allowance_key = None
        if spender is not None and spender != sender:
            allowance_key = (asset, sender, spender)
            allowed = self._allowances.get(allowance_key, 0)
            if allowed <= 0:
                return ResponseCode.SPENDER_DOES_NOT_HAVE_ALLOWANCE
            if allowed < amount:
                return ResponseCode.AMOUNT_EXCEEDS_ALLOWANCE
        balance = self._balances.get((asset, sender), 0)
        if balance < amount:
            return ResponseCode.INSUFFICIENT_TOKEN_BALANCE
        if allowance_key is not None:
            self._allowances[allowance_key] -= amount
        self._balances[(asset, sender)] = balance - amount
        self._balances[(asset, recipient)] = self._balances.get((asset, recipient), 0) + amount
        return ResponseCode.SUCCESS

    def balance_of(self, asset: str, account: str) -> tuple[int, int]:
        injected = self._take_injected("balance_of")
        if injected is not None:
            return injected, 0
        if asset not in self._tokens:
            return ResponseCode.INVALID_TOKEN_ID, 0
        return ResponseCode.SUCCESS, self._balances.get((asset, account), 0)

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> int:
        injected = self._take_injected("approve")
        if injected is not None:
            return injected
        if amount < 0:
            return ResponseCode.INVALID_TRANSACTION_BODY
        if asset not in self._tokens:
            return ResponseCode.INVALID_TOKEN_ID
        if (owner, asset) not in self._associations:
            return ResponseCode.TOKEN_NOT_ASSOCIATED_TO_ACCOUNT
        self._allowances[(asset, owner, spender)] = amount
        return ResponseCode.SUCCESS

    def is_associated(self, account: str, asset: str) -> bool:
        return (account, asset) in self._associations

    def native_balance(self, account: str) -> int:
        return self._native.get(account, 0)

    def transfer_native(self, sender: str, recipient: str, amount: int) -> int:
        injected = self._take_injected("transfer_native")
        if injected is not None:
            return injected
        if amount <= 0:
            return ResponseCode.INVALID_TRANSACTION_BODY
        if not sender or not recipient:
            return ResponseCode.INVALID_ACCOUNT_ID
        balance = self._native.get(sender, 0)
        if balance < amount:
            return ResponseCode.INSUFFICIENT_ACCOUNT_BALANCE
        self._native[sender] = balance - amount
        self._native[recipient] = self._native.get(recipient, 0) + amount
        return ResponseCode.SUCCESS


# ---------------------------------------------------------------------------
# Price oracle
# ---------------------------------------------------------------------------


def encode_price_update(
    feed: str,
    price: int,
    conf: int,
    expo: int,
    publish_time: int,
) -> bytes:
    """Payload format understood by ``ManualPriceOracle``."""
    return json.dumps(
        {"id": feed, "price": price, "conf": conf, "expo": expo, "publish_time": publish_time},
        sort_keys=True,
    ).encode("utf-8")


class ManualPriceOracle(PriceOracle):
    """Oracle whose prices arrive as JSON payloads from ``encode_price_update``."""

    def __init__(
        self,
        account: str,
        fee_per_update: int = 1,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.account = account
        self._fee_per_update = fee_per_update
        self._clock = clock or _system_clock
        self._prices: Dict[str, PriceQuote] = {}

    @property
    def fee_per_update(self) -> int:
        return self._fee_per_update

    def set_fee(self, fee_per_update: int) -> None:
        self._fee_per_update = fee_per_update

    def set_price(self, feed: str, price: int, conf: int, expo: int, publish_time: int | None = None) -> None:
        ts = publish_time if publish_time is not None else self._clock()
        self._prices[feed] = PriceQuote(price=price, conf=conf, expo=expo, publish_time=ts)

    def get_update_fee(self, payloads: Sequence[bytes]) -> int:
        return self._fee_per_update * len(payloads)

    def update_price_feeds(self, payloads: Sequence[bytes], fee_paid: int) -> None:
        required = self.get_update_fee(payloads)
        if fee_paid < required:
            raise InsufficientFee(required, fee_paid)
        parsed: list[tuple[str, PriceQuote]] = []
        for payload in payloads:
            try:
                body = json.loads(payload.decode("utf-8"))
                quote = PriceQuote(
                    price=int(body["price"]),
                    conf=int(body["conf"]),
                    expo=int(body["expo"]),
                    publish_time=int(body["publish_time"]),
                )
                parsed.append((str(body["id"]), quote))
            except (ValueError, KeyError, TypeError, UnicodeDecodeError) as exc:
                raise OracleError(f"malformed price update payload: {exc}") from exc
        for feed, quote in parsed:
            current = self._prices.get(feed)
            # Older updates never overwrite newer ones.
            if current is None or quote.publish_time >= current.publish_time:
                self._prices[feed] = quote

    def get_price_no_older_than(self, feed: str, max_age: int) -> PriceQuote:
        quote = self._prices.get(feed)
        if quote is None:
            raise OracleError(f"price feed {feed} not found")
        age = self._clock() - quote.publish_time
        if age > max_age:
            raise StalePrice(feed, age, max_age)
        return quote


# ---------------------------------------------------------------------------
# Swap venue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Rate:
    numerator: int
    denominator: int

    def apply(self, amount_in: int) -> int:
        return amount_in * self.numerator // self.denominator


class ManualSwapper(SwapVenue):
    """Fixed-rate venue with its own liquidity account.

    Rates are set per directed pair as ``amount_out = amount_in * num // den``.
    ``execution_haircut_bps`` makes fills come in below the quote, and
    ``fail_next`` makes the next swap raise ``SwapFailed``. ``on_swap`` is
    called after the input has been pulled and before the output is paid,
    which is where a hostile venue would try to re-enter its caller.
    """

    def __init__(
        self,
        token_service: TokenService,
        account: str,
        clock: Callable[[], int] | None = None,
        execution_haircut_bps: int = 0,
    ) -> None:
        self.account = account
        self._tokens = token_service
        self._clock = clock or _system_clock
        self._rates: Dict[Tuple[str, str], _Rate] = {}
        self._haircut_bps = execution_haircut_bps
        self._fail_reason: Optional[str] = None
        self.on_swap: Optional[Callable[[], None]] = None
        self.swap_count = 0

    def set_rate(self, asset_in: str, asset_out: str, numerator: int, denominator: int = 1) -> None:
        if numerator <= 0 or denominator <= 0:
            raise ValueError("rate terms must be positive")
        self._rates[(asset_in, asset_out)] = _Rate(numerator, denominator)

    def set_haircut(self, bps: int) -> None:
        self._haircut_bps = bps

    def fail_next(self, reason: str = "venue rejected swap") -> None:
        self._fail_reason = reason

    def pair_exists(self, asset_a: str, asset_b: str) -> bool:
        return (asset_a, asset_b) in self._rates or (asset_b, asset_a) in self._rates

    def quote_out(self, asset_in: str, asset_out: str, amount_in: int) -> int:
        rate = self._rates.get((asset_in, asset_out))
        if rate is None:
            raise SwapFailed(f"no rate for {asset_in} -> {asset_out}")
        return rate.apply(amount_in)

    def liquidity(self, asset: str) -> int:
        if is_native(asset):
            return self._tokens.native_balance(self.account)
        _, balance = self._tokens.balance_of(asset, self.account)
        return balance

    def swap_exact_input(
        self,
        payer: str,
        asset_in: str,
        asset_out: str,
        amount_in: int,
        min_out: int,
        recipient: str,
        deadline: int,
    ) -> int:
        if self._fail_reason is not None:
            reason, self._fail_reason = self._fail_reason, None
            raise SwapFailed(reason)
        if self._clock() > deadline:
            raise SwapFailed("deadline passed")
        if amount_in <= 0:
            raise SwapFailed("amount_in must be positive")

        quoted = self.quote_out(asset_in, asset_out, amount_in)
        amount_out = quoted - quoted * self._haircut_bps // 10_000
        if amount_out < min_out:
            raise SwapFailed(f"output {amount_out} below minimum {min_out}")
        if amount_out <= 0:
            raise SwapFailed("output rounds to zero")
        if self.liquidity(asset_out) < amount_out:
            raise SwapFailed(f"insufficient {asset_out} liquidity")

        self._move(asset_in, payer, self.account, amount_in, pull=True)
        try:
            if self.on_swap is not None:
                self.on_swap()
            self._move(asset_out, self.account, recipient, amount_out, pull=False)
        except RevaultronError:
            # Give the input back so the venue never keeps a half-done trade.
            self._move(asset_in, self.account, payer, amount_in, pull=False)
            raise

        self.swap_count += 1
        LOGGER.debug(
            "swap %s %s -> %s %s for %s",
            amount_in, asset_in, amount_out, asset_out, recipient,
        )
        return amount_out

    def _move(self, asset: str, sender: str, recipient: str, amount: int, *, pull: bool) -> None:
        if is_native(asset):
            status = self._tokens.transfer_native(sender, recipient, amount)
        else:
            spender = self.account if pull else None
            status = self._tokens.transfer(asset, sender, recipient, amount, spender=spender)
        if not is_success(status):
            raise SwapFailed(f"transfer of {asset} failed: {describe(status)}")

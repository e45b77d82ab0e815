"""Volatility and reference-price store gating rebalancing decisions.

Authorized updaters push a signed price-update payload together with an
externally computed volatility figure. The index pays the oracle's update
fee out of the value the caller sends, forwards the payload, reads the
resulting price back (rejecting it when older than the staleness window)
and stores one ``VolatilityRecord`` per feed. Overpaid fees are refunded.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Sequence

from revaultron.auth import AuthorizationTable, Permission, owned_table
from revaultron.config import MAX_STALENESS_CEILING_SECONDS
from revaultron.errors import (
    FeedNotSupported,
    InsufficientBalance,
    InsufficientFee,
    InvalidAddress,
    InvalidAmount,
    InvalidConfiguration,
    NegativePrice,
    RevaultronError,
    Unauthorized,
)
from revaultron.events import EventLog, EventType
from revaultron.guard import non_reentrant
from revaultron.metrics import MetricsRegistry
from revaultron.models import PriceQuote, VolatilityRecord
from revaultron.services.base import PriceOracle, TokenService
from revaultron.services.status import ResponseCode, ensure_success
from revaultron.units import MAX_VOLATILITY_BPS, NATIVE_ASSET, PRICE_DECIMALS

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_PRICE_STALENESS = 300


def normalize_price(price: int, expo: int, decimals: int = PRICE_DECIMALS) -> int:
    """Rescale ``price * 10**expo`` to an integer with ``decimals`` decimals.

    When the exponent is more negative than ``-decimals`` the value is divided
    down rather than multiplied, so no intermediate ever overflows a fixed
    width and the result truncates toward zero.
    """
    if price < 0:
        raise ValueError("price must be non-negative")
    shift = decimals + expo
    if shift >= 0:
        return price * 10 ** shift
    return price // 10 ** (-shift)


class VolatilityIndex:
    """Per-feed volatility records with updater authorization.

    Parameters
    ----------
    oracle:
        Upstream price oracle; charged a fee per update.
    token_service:
        Moves native currency for fee payment and refunds.
    owner:
        ADMIN principal. Always an authorized updater.
    account:
        The index's own account, which briefly holds fee payments.
    max_price_staleness:
        Maximum age in seconds of a price accepted from the oracle.
    """

    def __init__(
        self,
        oracle: PriceOracle,
        token_service: TokenService,
        owner: str,
        account: str,
        *,
        auth: AuthorizationTable | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], int] | None = None,
        max_price_staleness: int = DEFAULT_MAX_PRICE_STALENESS,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if not account:
            raise InvalidAddress("account")
        _check_staleness(max_price_staleness)
        self._oracle = oracle
        self._tokens = token_service
        self._owner = owner
        self._account = account
        self._clock = clock or (lambda: int(time.time()))
        self._auth = auth or owned_table(owner, name=f"volatility_index:{account}")
        self._events = event_log
        self._auth.attach(event_log, self._clock)
        self._auth.grant(owner, Permission.UPDATER)
        self._max_price_staleness = max_price_staleness
        self._metrics = metrics or MetricsRegistry()

        self._records: Dict[str, VolatilityRecord] = {}
        self._supported_feeds: List[str] = []

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def account(self) -> str:
        return self._account

    @property
    def oracle(self) -> PriceOracle:
        return self._oracle

    @property
    def max_price_staleness(self) -> int:
        return self._max_price_staleness

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    # ------------------------------------------------------------------
    # Updates
    # ------------------------------------------------------------------

    @non_reentrant
    def update_volatility(
        self,
        caller: str,
        payload: bytes,
        feed: str,
        volatility_bps: int,
        value: int,
    ) -> VolatilityRecord:
        self._auth.require(caller, Permission.UPDATER, "update volatility")
        if not payload:
            raise InvalidAmount(0, reason="price update payload is empty")
        if not feed:
            raise InvalidAddress("feed")
        _check_volatility(volatility_bps)

        [quote] = self._pay_and_fetch(caller, [payload], [feed], value)
        return self._store(feed, quote, volatility_bps)

    @non_reentrant
    def update_volatility_batch(
        self,
        caller: str,
        payloads: Sequence[bytes],
        feeds: Sequence[str],
        volatilities: Sequence[int],
        value: int,
    ) -> List[VolatilityRecord]:
        """All-or-nothing update of several feeds against one fee payment."""
        self._auth.require(caller, Permission.UPDATER, "update volatility")
        if not feeds or len(feeds) != len(volatilities):
            raise InvalidConfiguration("feeds and volatilities must be non-empty and of equal length")
        if not payloads or any(not p for p in payloads):
            raise InvalidAmount(0, reason="price update payload is empty")
        for feed in feeds:
            if not feed:
                raise InvalidAddress("feed")
        for volatility_bps in volatilities:
            _check_volatility(volatility_bps)

        # Every price is read before any record is written.
        quotes = self._pay_and_fetch(caller, list(payloads), list(feeds), value)
        return [
            self._store(feed, quote, volatility_bps)
            for feed, quote, volatility_bps in zip(feeds, quotes, volatilities)
        ]

    def _pay_and_fetch(
        self,
        caller: str,
        payloads: List[bytes],
        feeds: List[str],
        value: int,
    ) -> List[PriceQuote]:
        """Forward ``payloads`` and read a fresh quote for every feed.

        The oracle is only paid once every quote is within the staleness
        window; any failure before that returns ``value`` to the caller.
        """
        fee = self._oracle.get_update_fee(payloads)
        if value < fee:
            raise InsufficientFee(fee, value)
        if value > 0:
            ensure_success("transfer_native", self._tokens.transfer_native(caller, self._account, value))
        try:
            self._oracle.update_price_feeds(payloads, fee)
            quotes = [
                self._oracle.get_price_no_older_than(feed, self._max_price_staleness)
                for feed in feeds
            ]
            if fee > 0:
                ensure_success(
                    "transfer_native",
                    self._tokens.transfer_native(self._account, self._oracle.account, fee),
                )
        except RevaultronError:
            self._return_value(caller, value)
            raise
        refund = value - fee
        if refund > 0:
            ensure_success("transfer_native", self._tokens.transfer_native(self._account, caller, refund))
            self._emit(EventType.FEE_REFUNDED, recipient=caller, amount=refund)
        return quotes

    def _return_value(self, caller: str, value: int) -> None:
        if value <= 0:
            return
        status = self._tokens.transfer_native(self._account, caller, value)
        if status != ResponseCode.SUCCESS:
            LOGGER.critical(
                "could not return %d to %s after a rejected update (status %d); value held by %s",
                value,
                caller,
                status,
                self._account,
            )
            self._metrics.counter("volatility.refund_failures").increment(now=float(self._clock()))

    def _store(self, feed: str, quote: PriceQuote, volatility_bps: int) -> VolatilityRecord:
        now = self._clock()
        record = VolatilityRecord(
            volatility_bps=volatility_bps,
            price=quote.price,
            conf=quote.conf,
            expo=quote.expo,
            timestamp=now,
        )
        self._records[feed] = record
        if feed not in self._supported_feeds:
            self._supported_feeds.append(feed)
            LOGGER.info("volatility index now tracking feed %s", feed)
        self._metrics.counter("volatility.updates").increment(now=float(now))
        self._emit(
            EventType.VOLATILITY_UPDATED,
            feed=feed,
            volatility_bps=volatility_bps,
            price=quote.price,
            expo=quote.expo,
        )
        return record

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_volatility(self, feed: str) -> int:
        return self.get_volatility_data(feed).volatility_bps

    def get_volatility_data(self, feed: str) -> VolatilityRecord:
        record = self._records.get(feed)
        if record is None:
            raise FeedNotSupported(feed)
        return record

    def get_current_price(self, feed: str) -> tuple[int, int, int]:
        """``(price, conf, expo)`` of the last stored record."""
        record = self.get_volatility_data(feed)
        return record.price, record.conf, record.expo

    def get_normalized_price(self, feed: str) -> int:
        """Stored price as an 18-decimal integer."""
        record = self.get_volatility_data(feed)
        if record.price < 0:
            raise NegativePrice(feed, record.price)
        return normalize_price(record.price, record.expo)

    def get_last_update(self, feed: str) -> int:
        return self.get_volatility_data(feed).timestamp

    def is_volatility_stale(self, feed: str, threshold: int | None = None) -> bool:
        limit = self._max_price_staleness if threshold is None else threshold
        return self.get_volatility_data(feed).is_stale(self._clock(), limit)

    def is_supported(self, feed: str) -> bool:
        return feed in self._records

    def get_supported_feeds(self) -> List[str]:
        return list(self._supported_feeds)

    def get_supported_feed_count(self) -> int:
        return len(self._supported_feeds)

    def is_authorized_updater(self, principal: str) -> bool:
        return self._auth.has(principal, Permission.UPDATER)

    def get_hbar_balance(self) -> int:
        return self._tokens.native_balance(self._account)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @non_reentrant
    def authorize_updater(self, caller: str, updater: str) -> None:
        self._require_owner(caller, "authorize updaters")
        if not updater:
            raise InvalidAddress("updater")
        self._auth.grant(updater, Permission.UPDATER)

    @non_reentrant
    def revoke_updater(self, caller: str, updater: str) -> None:
        self._require_owner(caller, "revoke updaters")
        if updater == self._owner:
            raise InvalidConfiguration("the owner cannot revoke its own updater role")
        self._auth.revoke(updater, Permission.UPDATER)

    @non_reentrant
    def set_max_price_staleness(self, caller: str, seconds: int) -> None:
        self._require_owner(caller, "set max price staleness")
        _check_staleness(seconds)
        previous, self._max_price_staleness = self._max_price_staleness, seconds
        self._emit(EventType.CONFIG_CHANGED, setting="max_price_staleness", before=previous, after=seconds)

    @non_reentrant
    def remove_feed(self, caller: str, feed: str) -> None:
        self._require_owner(caller, "remove feeds")
        if feed not in self._records:
            raise FeedNotSupported(feed)
        index = self._supported_feeds.index(feed)
        # Swap-and-pop: the last feed takes the removed one's slot.
        self._supported_feeds[index] = self._supported_feeds[-1]
        self._supported_feeds.pop()
        del self._records[feed]
        self._emit(EventType.FEED_REMOVED, feed=feed)

    @non_reentrant
    def update_oracle(self, caller: str, oracle: PriceOracle) -> None:
        self._require_owner(caller, "replace the oracle")
        if oracle is None:
            raise InvalidAddress("oracle")
        self._oracle = oracle
        self._emit(EventType.ORACLE_UPDATED, oracle=getattr(oracle, "account", ""))

    @non_reentrant
    def withdraw_hbar(self, caller: str, amount: int, recipient: str) -> None:
        self._require_owner(caller, "withdraw native currency")
        if amount <= 0:
            raise InvalidAmount(amount)
        if not recipient:
            raise InvalidAddress("recipient")
        available = self._tokens.native_balance(self._account)
        if available < amount:
            raise InsufficientBalance(NATIVE_ASSET, amount, available)
        ensure_success("transfer_native", self._tokens.transfer_native(self._account, recipient, amount))

    def _require_owner(self, caller: str, action: str) -> None:
        if not self._auth.has(caller, Permission.ADMIN):
            raise Unauthorized(caller, action)

    def _emit(self, event_type: EventType, **data: object) -> None:
        if self._events is None:
            return
        self._events.emit(event_type, source=self._account, timestamp=self._clock(), **data)


def _check_volatility(volatility_bps: int) -> None:
    if volatility_bps < 0 or volatility_bps > MAX_VOLATILITY_BPS:
        raise InvalidConfiguration(
            f"volatility must be within 0..{MAX_VOLATILITY_BPS} bps, got {volatility_bps}"
        )


def _check_staleness(seconds: int) -> None:
    if seconds <= 0 or seconds > MAX_STALENESS_CEILING_SECONDS:
        raise InvalidConfiguration(
            f"max price staleness must be within 1..{MAX_STALENESS_CEILING_SECONDS}s, got {seconds}"
        )

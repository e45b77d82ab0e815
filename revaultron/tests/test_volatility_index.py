from __future__ import annotations

import logging

import pytest

from revaultron.errors import (
    FeedNotSupported,
    InsufficientBalance,
    InsufficientFee,
    InvalidAddress,
    InvalidAmount,
    InvalidConfiguration,
    NegativePrice,
    OracleError,
    StalePrice,
    Unauthorized,
)
from revaultron.events import EventLog, EventType
from revaultron.services.memory import InMemoryTokenService, ManualPriceOracle, encode_price_update
from revaultron.services.status import ResponseCode
from revaultron.simulation import SimulationClock
from revaultron.units import MAX_VOLATILITY_BPS
from revaultron.volatility_index import VolatilityIndex, normalize_price

ADMIN = "admin"
INDEX = "index"
FEED = "0xfeed01"
FEED_B = "0xfeed02"
FEED_C = "0xfeed03"
FEE = 5


def _make_index(staleness: int = 300):
    clock = SimulationClock()
    tokens = InMemoryTokenService()
    tokens.credit_native(ADMIN, 1_000)
    oracle = ManualPriceOracle("oracle", fee_per_update=FEE, clock=clock)
    log = EventLog()
    index = VolatilityIndex(
        oracle, tokens, ADMIN, INDEX,
        event_log=log, clock=clock, max_price_staleness=staleness,
    )
    return index, oracle, tokens, clock, log


def _payload(clock: SimulationClock, feed: str = FEED, price: int = 10 ** 9, expo: int = -8, age: int = 0) -> bytes:
    return encode_price_update(feed, price, 10 ** 6, expo, clock() - age)


# ------------------------------------------------------------------
# Price normalization
# ------------------------------------------------------------------


class TestNormalizePrice:
    def test_ten_dollars_at_expo_minus_eight(self) -> None:
        assert normalize_price(10 ** 9, -8) == 10 * 10 ** 18

    def test_positive_exponent(self) -> None:
        assert normalize_price(5, 2) == 5 * 10 ** 20

    def test_exponent_beyond_decimals_divides(self) -> None:
        assert normalize_price(123_456_789, -20) == 1_234_567
        assert normalize_price(99, -20) == 0

    def test_exact_eighteen(self) -> None:
        assert normalize_price(7, -18) == 7

    def test_negative_price_rejected(self) -> None:
        with pytest.raises(ValueError):
            normalize_price(-1, -8)


# ------------------------------------------------------------------
# Single updates
# ------------------------------------------------------------------


class TestUpdateVolatility:
    def test_update_stores_record_and_pays_fee(self) -> None:
        index, oracle, tokens, clock, log = _make_index()
        record = index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE)

        assert record.volatility_bps == 4000
        assert record.price == 10 ** 9
        assert record.expo == -8
        assert record.timestamp == clock()
        assert index.get_volatility(FEED) == 4000
        assert tokens.native_balance(ADMIN) == 1_000 - FEE
        assert tokens.native_balance(oracle.account) == FEE
        assert tokens.native_balance(INDEX) == 0
        event = log.last(EventType.VOLATILITY_UPDATED)
        assert event.data["feed"] == FEED
        assert event.data["volatility_bps"] == 4000

    def test_overpayment_refunded(self) -> None:
        index, _, tokens, clock, log = _make_index()
        index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=20)
        assert tokens.native_balance(ADMIN) == 1_000 - FEE
        assert log.last(EventType.FEE_REFUNDED).data == {"recipient": ADMIN, "amount": 15}

    def test_underpayment_rejected(self) -> None:
        index, _, tokens, clock, _ = _make_index()
        with pytest.raises(InsufficientFee) as excinfo:
            index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE - 1)
        assert excinfo.value.required == FEE
        assert tokens.native_balance(ADMIN) == 1_000
        assert not index.is_supported(FEED)

    def test_unauthorized_updater(self) -> None:
        index, _, _, clock, _ = _make_index()
        with pytest.raises(Unauthorized):
            index.update_volatility("mallory", _payload(clock), FEED, 4000, value=FEE)

    def test_input_validation(self) -> None:
        index, _, _, clock, _ = _make_index()
        with pytest.raises(InvalidAmount):
            index.update_volatility(ADMIN, b"", FEED, 4000, value=FEE)
        with pytest.raises(InvalidAddress):
            index.update_volatility(ADMIN, _payload(clock), "", 4000, value=FEE)
        with pytest.raises(InvalidConfiguration):
            index.update_volatility(ADMIN, _payload(clock), FEED, MAX_VOLATILITY_BPS + 1, value=FEE)

    def test_rejected_payload_refunds_in_full(self) -> None:
        index, _, tokens, _, _ = _make_index()
        with pytest.raises(OracleError):
            index.update_volatility(ADMIN, b"not a price update", FEED, 4000, value=FEE)
        assert tokens.native_balance(ADMIN) == 1_000
        assert tokens.native_balance(INDEX) == 0

    def test_stale_price_rejected(self) -> None:
        index, oracle, tokens, clock, log = _make_index(staleness=300)
        with pytest.raises(StalePrice) as excinfo:
            index.update_volatility(ADMIN, _payload(clock, age=301), FEED, 4000, value=FEE + 10)
        assert excinfo.value.age == 301
        assert not index.is_supported(FEED)
        assert tokens.native_balance(ADMIN) == 1_000
        assert tokens.native_balance(oracle.account) == 0
        assert tokens.native_balance(INDEX) == 0
        assert log.last(EventType.FEE_REFUNDED) is None

    def test_failed_return_is_logged(self, monkeypatch, caplog) -> None:
        index, oracle, tokens, clock, _ = _make_index()

        def rejecting(payloads, fee_paid):
            tokens.fail_next("transfer_native", ResponseCode.INSUFFICIENT_ACCOUNT_BALANCE)
            raise OracleError("update rejected")

        monkeypatch.setattr(oracle, "update_price_feeds", rejecting)
        with caplog.at_level(logging.CRITICAL, logger="revaultron.volatility_index"):
            with pytest.raises(OracleError):
                index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE)
        assert tokens.native_balance(INDEX) == FEE
        assert index.metrics.value("volatility.refund_failures") == 1
        assert any("could not return" in r.getMessage() for r in caplog.records)

    def test_feed_registered_once(self) -> None:
        index, _, _, clock, _ = _make_index()
        index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE)
        clock.advance(10)
        index.update_volatility(ADMIN, _payload(clock), FEED, 2500, value=FEE)
        assert index.get_supported_feeds() == [FEED]
        assert index.get_volatility(FEED) == 2500
        assert index.get_last_update(FEED) == clock()
        assert index.metrics.value("volatility.updates") == 2

    def test_authorized_updater_may_update(self) -> None:
        index, _, tokens, clock, _ = _make_index()
        tokens.credit_native("bot", 100)
        index.authorize_updater(ADMIN, "bot")
        index.update_volatility("bot", _payload(clock), FEED, 1234, value=FEE)
        assert index.get_volatility(FEED) == 1234


# ------------------------------------------------------------------
# Batch updates
# ------------------------------------------------------------------


class TestBatchUpdate:
    def test_batch_updates_all_feeds(self) -> None:
        index, _, tokens, clock, _ = _make_index()
        payloads = [_payload(clock, FEED), _payload(clock, FEED_B, price=2 * 10 ** 8)]
        records = index.update_volatility_batch(ADMIN, payloads, [FEED, FEED_B], [4000, 3000], value=2 * FEE)
        assert [r.volatility_bps for r in records] == [4000, 3000]
        assert index.get_supported_feed_count() == 2
        assert index.get_current_price(FEED_B)[0] == 2 * 10 ** 8
        assert tokens.native_balance(ADMIN) == 1_000 - 2 * FEE

    def test_batch_is_all_or_nothing(self) -> None:
        index, _, tokens, clock, _ = _make_index()
        payloads = [_payload(clock, FEED), _payload(clock, FEED_B, age=1_000)]
        with pytest.raises(StalePrice):
            index.update_volatility_batch(ADMIN, payloads, [FEED, FEED_B], [4000, 3000], value=2 * FEE)
        assert not index.is_supported(FEED)
        assert not index.is_supported(FEED_B)
        assert tokens.native_balance(ADMIN) == 1_000
        assert tokens.native_balance(INDEX) == 0

    def test_batch_length_mismatch(self) -> None:
        index, _, _, clock, _ = _make_index()
        with pytest.raises(InvalidConfiguration):
            index.update_volatility_batch(ADMIN, [_payload(clock)], [FEED, FEED_B], [4000], value=FEE)
        with pytest.raises(InvalidConfiguration):
            index.update_volatility_batch(ADMIN, [_payload(clock)], [], [], value=FEE)

    def test_batch_validates_every_volatility_first(self) -> None:
        index, _, tokens, clock, _ = _make_index()
        with pytest.raises(InvalidConfiguration):
            index.update_volatility_batch(
                ADMIN,
                [_payload(clock, FEED), _payload(clock, FEED_B)],
                [FEED, FEED_B],
                [4000, MAX_VOLATILITY_BPS + 1],
                value=2 * FEE,
            )
        assert tokens.native_balance(ADMIN) == 1_000


# ------------------------------------------------------------------
# Reads
# ------------------------------------------------------------------


class TestReads:
    def test_normalized_price(self) -> None:
        index, _, _, clock, _ = _make_index()
        index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE)
        assert index.get_normalized_price(FEED) == 10 * 10 ** 18

    def test_negative_price(self) -> None:
        index, _, _, clock, _ = _make_index()
        index.update_volatility(ADMIN, _payload(clock, price=-5), FEED, 4000, value=FEE)
        with pytest.raises(NegativePrice):
            index.get_normalized_price(FEED)

    def test_current_price_tuple(self) -> None:
        index, _, _, clock, _ = _make_index()
        index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE)
        assert index.get_current_price(FEED) == (10 ** 9, 10 ** 6, -8)

    def test_unknown_feed(self) -> None:
        index, _, _, _, _ = _make_index()
        with pytest.raises(FeedNotSupported):
            index.get_volatility(FEED)
        with pytest.raises(FeedNotSupported):
            index.get_volatility_data(FEED)

    def test_staleness(self) -> None:
        index, _, _, clock, _ = _make_index(staleness=300)
        index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=FEE)
        assert not index.is_volatility_stale(FEED)
        clock.advance(301)
        assert index.is_volatility_stale(FEED)
        assert not index.is_volatility_stale(FEED, threshold=1_000)


# ------------------------------------------------------------------
# Admin
# ------------------------------------------------------------------


class TestAdmin:
    def test_owner_is_updater(self) -> None:
        index, _, _, _, _ = _make_index()
        assert index.is_authorized_updater(ADMIN)

    def test_authorize_and_revoke(self) -> None:
        index, _, _, _, _ = _make_index()
        index.authorize_updater(ADMIN, "bot")
        assert index.is_authorized_updater("bot")
        index.revoke_updater(ADMIN, "bot")
        assert not index.is_authorized_updater("bot")

    def test_owner_cannot_revoke_self(self) -> None:
        index, _, _, _, _ = _make_index()
        with pytest.raises(InvalidConfiguration):
            index.revoke_updater(ADMIN, ADMIN)

    def test_non_owner_cannot_authorize(self) -> None:
        index, _, _, _, _ = _make_index()
        index.authorize_updater(ADMIN, "bot")
        with pytest.raises(Unauthorized):
            index.authorize_updater("bot", "friend")

    def test_set_max_price_staleness(self) -> None:
        index, _, _, _, log = _make_index()
        index.set_max_price_staleness(ADMIN, 600)
        assert index.max_price_staleness == 600
        assert log.last(EventType.CONFIG_CHANGED).data == {
            "setting": "max_price_staleness", "before": 300, "after": 600,
        }
        with pytest.raises(InvalidConfiguration):
            index.set_max_price_staleness(ADMIN, 0)
        with pytest.raises(InvalidConfiguration):
            index.set_max_price_staleness(ADMIN, 3_601)

    def test_constructor_rejects_bad_staleness(self) -> None:
        with pytest.raises(InvalidConfiguration):
            _make_index(staleness=3_601)

    def test_remove_feed_swaps_last_into_place(self) -> None:
        index, _, tokens, clock, log = _make_index()
        for feed in (FEED, FEED_B, FEED_C):
            index.update_volatility(ADMIN, _payload(clock, feed), feed, 4000, value=FEE)
        index.remove_feed(ADMIN, FEED)
        assert index.get_supported_feeds() == [FEED_C, FEED_B]
        assert not index.is_supported(FEED)
        assert log.last(EventType.FEED_REMOVED).data == {"feed": FEED}
        with pytest.raises(FeedNotSupported):
            index.remove_feed(ADMIN, FEED)

    def test_update_oracle(self) -> None:
        index, _, tokens, clock, _ = _make_index()
        replacement = ManualPriceOracle("oracle-2", fee_per_update=1, clock=clock)
        index.update_oracle(ADMIN, replacement)
        assert index.oracle is replacement
        index.update_volatility(ADMIN, _payload(clock), FEED, 4000, value=1)
        assert tokens.native_balance("oracle-2") == 1

    def test_withdraw_hbar(self) -> None:
        index, _, tokens, _, _ = _make_index()
        tokens.credit_native(INDEX, 50)
        assert index.get_hbar_balance() == 50
        index.withdraw_hbar(ADMIN, 30, "treasury")
        assert tokens.native_balance("treasury") == 30
        with pytest.raises(InsufficientBalance):
            index.withdraw_hbar(ADMIN, 21, "treasury")
        with pytest.raises(Unauthorized):
            index.withdraw_hbar("mallory", 1, "mallory")

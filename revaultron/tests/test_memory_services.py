from __future__ import annotations

import pytest

from revaultron.errors import InsufficientFee, OracleError, ServiceCallFailed, StalePrice, SwapFailed
from revaultron.services.memory import (
    InMemoryTokenService,
    ManualPriceOracle,
    ManualSwapper,
    encode_price_update,
)
from revaultron.services.status import ResponseCode, describe, ensure_success
from revaultron.simulation import SimulationClock
from revaultron.units import NATIVE_ASSET

TOKEN = "0x00000000000000000000000000000000000a11ce"
OTHER = "0x00000000000000000000000000000000000b0b00"
FEED = "0xfeed"


# ---------------------------------------------------------------------------
# Response codes
# ---------------------------------------------------------------------------


def test_ensure_success_raises_with_reason() -> None:
    ensure_success("transfer", ResponseCode.SUCCESS)
    with pytest.raises(ServiceCallFailed) as excinfo:
        ensure_success("transfer", ResponseCode.INSUFFICIENT_TOKEN_BALANCE)
    assert excinfo.value.status == 178
    assert excinfo.value.operation == "transfer"
    assert describe(9999) == "unknown status 9999"


# ---------------------------------------------------------------------------
# Token service
# ---------------------------------------------------------------------------


class TestTokenService:
    def test_associate_status_codes(self) -> None:
        tokens = InMemoryTokenService()
        assert tokens.associate("alice", TOKEN) == ResponseCode.INVALID_TOKEN_ID
        tokens.create_token(TOKEN)
        assert tokens.associate("alice", TOKEN) == ResponseCode.SUCCESS
        assert tokens.associate("alice", TOKEN) == ResponseCode.TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT
        assert tokens.associate("", TOKEN) == ResponseCode.INVALID_ACCOUNT_ID

    def test_dissociate_requires_zero_balance(self) -> None:
        tokens = InMemoryTokenService()
        tokens.mint(TOKEN, "alice", 5)
        assert tokens.dissociate("alice", TOKEN) == ResponseCode.TRANSACTION_REQUIRES_ZERO_TOKEN_BALANCES
        tokens.associate("bob", TOKEN)
        assert tokens.transfer(TOKEN, "alice", "bob", 5) == ResponseCode.SUCCESS
        assert tokens.dissociate("alice", TOKEN) == ResponseCode.SUCCESS
        assert not tokens.is_associated("alice", TOKEN)
        assert tokens.dissociate("alice", TOKEN) == ResponseCode.TOKEN_NOT_ASSOCIATED_TO_ACCOUNT

    def test_transfer_checks(self) -> None:
        tokens = InMemoryTokenService()
        tokens.mint(TOKEN, "alice", 100)
        assert tokens.transfer(TOKEN, "alice", "bob", 10) == ResponseCode.TOKEN_NOT_ASSOCIATED_TO_ACCOUNT
        tokens.associate("bob", TOKEN)
        assert tokens.transfer(TOKEN, "alice", "bob", 0) == ResponseCode.INVALID_TRANSACTION_BODY
        assert tokens.transfer(TOKEN, "alice", "bob", 101) == ResponseCode.INSUFFICIENT_TOKEN_BALANCE
        assert tokens.transfer(TOKEN, "alice", "bob", 40) == ResponseCode.SUCCESS
        assert tokens.balance_of(TOKEN, "alice") == (ResponseCode.SUCCESS, 60)
        assert tokens.balance_of(TOKEN, "bob") == (ResponseCode.SUCCESS, 40)

    def test_allowance_consumed_by_spender(self) -> None:
        tokens = InMemoryTokenService()
        tokens.mint(TOKEN, "alice", 100)
        tokens.associate("bob", TOKEN)
        assert tokens.transfer(TOKEN, "alice", "bob", 10, spender="venue") == ResponseCode.SPENDER_DOES_NOT_HAVE_ALLOWANCE
        assert tokens.approve(TOKEN, "alice", "venue", 30) == ResponseCode.SUCCESS
        assert tokens.transfer(TOKEN, "alice", "bob", 31, spender="venue") == ResponseCode.AMOUNT_EXCEEDS_ALLOWANCE
        assert tokens.transfer(TOKEN, "alice", "bob", 20, spender="venue") == ResponseCode.SUCCESS
        assert tokens.allowance(TOKEN, "alice", "venue") == 10
        assert tokens.approve(TOKEN, "alice", "venue", -1) == ResponseCode.INVALID_TRANSACTION_BODY

    def test_failure_injection_has_no_side_effects(self) -> None:
        tokens = InMemoryTokenService()
        tokens.mint(TOKEN, "alice", 100)
        tokens.associate("bob", TOKEN)
        tokens.fail_next("transfer", ResponseCode.INSUFFICIENT_TOKEN_BALANCE)
        assert tokens.transfer(TOKEN, "alice", "bob", 10) == ResponseCode.INSUFFICIENT_TOKEN_BALANCE
        assert tokens.balance_of(TOKEN, "alice")[1] == 100
        assert tokens.transfer(TOKEN, "alice", "bob", 10) == ResponseCode.SUCCESS

    def test_native_transfers(self) -> None:
        tokens = InMemoryTokenService()
        tokens.credit_native("alice", 50)
        assert tokens.transfer_native("alice", "bob", 51) == ResponseCode.INSUFFICIENT_ACCOUNT_BALANCE
        assert tokens.transfer_native("alice", "bob", 20) == ResponseCode.SUCCESS
        assert tokens.native_balance("alice") == 30
        assert tokens.native_balance("bob") == 20


# ---------------------------------------------------------------------------
# Price oracle
# ---------------------------------------------------------------------------


class TestPriceOracle:
    def test_update_requires_fee(self) -> None:
        clock = SimulationClock()
        oracle = ManualPriceOracle("oracle", fee_per_update=3, clock=clock)
        payloads = [encode_price_update(FEED, 100, 1, -2, clock.now)] * 2
        assert oracle.get_update_fee(payloads) == 6
        with pytest.raises(InsufficientFee):
            oracle.update_price_feeds(payloads, fee_paid=5)
        oracle.update_price_feeds(payloads, fee_paid=6)
        assert oracle.get_price_no_older_than(FEED, 60).price == 100

    def test_malformed_payload_rejected_atomically(self) -> None:
        clock = SimulationClock()
        oracle = ManualPriceOracle("oracle", fee_per_update=0, clock=clock)
        good = encode_price_update(FEED, 100, 1, -2, clock.now)
        with pytest.raises(OracleError):
            oracle.update_price_feeds([good, b"not json"], fee_paid=0)
        with pytest.raises(OracleError):
            oracle.get_price_no_older_than(FEED, 60)

    def test_older_update_never_overwrites_newer(self) -> None:
        clock = SimulationClock()
        oracle = ManualPriceOracle("oracle", fee_per_update=0, clock=clock)
        oracle.update_price_feeds([encode_price_update(FEED, 200, 1, -2, clock.now)], fee_paid=0)
        oracle.update_price_feeds([encode_price_update(FEED, 100, 1, -2, clock.now - 10)], fee_paid=0)
        assert oracle.get_price_no_older_than(FEED, 60).price == 200

    def test_stale_price(self) -> None:
        clock = SimulationClock()
        oracle = ManualPriceOracle("oracle", clock=clock)
        oracle.set_price(FEED, 100, 1, -2)
        clock.advance(61)
        with pytest.raises(StalePrice) as excinfo:
            oracle.get_price_no_older_than(FEED, 60)
        assert excinfo.value.age == 61


# ---------------------------------------------------------------------------
# Swap venue
# ---------------------------------------------------------------------------


def _make_swapper(haircut_bps: int = 0):
    clock = SimulationClock()
    tokens = InMemoryTokenService()
    swapper = ManualSwapper(tokens, "venue", clock=clock, execution_haircut_bps=haircut_bps)
    tokens.mint(TOKEN, "venue", 1_000_000)
    tokens.credit_native("venue", 1_000_000)
    tokens.mint(TOKEN, "trader", 1_000)
    tokens.credit_native("trader", 1_000)
    swapper.set_rate(TOKEN, NATIVE_ASSET, 2)
    swapper.set_rate(NATIVE_ASSET, TOKEN, 1, 2)
    return swapper, tokens, clock


class TestSwapper:
    def test_token_to_native_with_allowance(self) -> None:
        swapper, tokens, clock = _make_swapper()
        tokens.approve(TOKEN, "trader", "venue", 100)
        out = swapper.swap_exact_input("trader", TOKEN, NATIVE_ASSET, 100, 200, "trader", clock.now)
        assert out == 200
        assert tokens.native_balance("trader") == 1_200
        assert tokens.balance_of(TOKEN, "trader")[1] == 900
        assert swapper.swap_count == 1

    def test_pair_exists_in_either_direction(self) -> None:
        swapper, _, _ = _make_swapper()
        assert swapper.pair_exists(TOKEN, NATIVE_ASSET)
        assert swapper.pair_exists(NATIVE_ASSET, TOKEN)
        assert not swapper.pair_exists(TOKEN, OTHER)
        with pytest.raises(SwapFailed):
            swapper.quote_out(TOKEN, OTHER, 1)

    def test_min_out_enforced_with_haircut(self) -> None:
        swapper, tokens, clock = _make_swapper(haircut_bps=100)
        tokens.approve(TOKEN, "trader", "venue", 100)
        with pytest.raises(SwapFailed, match="below minimum"):
            swapper.swap_exact_input("trader", TOKEN, NATIVE_ASSET, 100, 200, "trader", clock.now)
        assert swapper.swap_exact_input("trader", TOKEN, NATIVE_ASSET, 100, 198, "trader", clock.now) == 198

    def test_deadline_and_injected_failure(self) -> None:
        swapper, _, clock = _make_swapper()
        with pytest.raises(SwapFailed, match="deadline"):
            swapper.swap_exact_input("trader", NATIVE_ASSET, TOKEN, 10, 0, "trader", clock.now - 1)
        swapper.fail_next("paused")
        with pytest.raises(SwapFailed, match="paused"):
            swapper.swap_exact_input("trader", NATIVE_ASSET, TOKEN, 10, 0, "trader", clock.now)

    def test_input_returned_when_hook_fails(self) -> None:
        swapper, tokens, clock = _make_swapper()

        def hostile() -> None:
            raise SwapFailed("callback reverted")

        swapper.on_swap = hostile
        with pytest.raises(SwapFailed, match="callback"):
            swapper.swap_exact_input("trader", NATIVE_ASSET, TOKEN, 100, 0, "trader", clock.now)
        assert tokens.native_balance("trader") == 1_000
        assert tokens.native_balance("venue") == 1_000_000
        assert swapper.swap_count == 0

    def test_missing_allowance_fails(self) -> None:
        swapper, tokens, clock = _make_swapper()
        with pytest.raises(SwapFailed, match="allowance"):
            swapper.swap_exact_input("trader", TOKEN, NATIVE_ASSET, 100, 0, "trader", clock.now)
        assert tokens.balance_of(TOKEN, "trader")[1] == 1_000

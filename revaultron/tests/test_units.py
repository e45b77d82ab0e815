from __future__ import annotations

import pytest

from revaultron.errors import InvalidAmount
from revaultron.units import (
    BASIS_POINTS,
    NATIVE_ASSET,
    NativeUnit,
    apply_bps,
    bps_of,
    bps_to_percent,
    format_tinybars,
    is_native,
    parse_hbar,
    tinybars_to_weibars,
    to_tinybars,
)


# ------------------------------------------------------------------
# Native granularities
# ------------------------------------------------------------------


class TestNativeUnits:
    def test_tinybar_passthrough(self) -> None:
        assert to_tinybars(1_000, NativeUnit.TINYBAR) == 1_000

    def test_weibar_divides_by_ten_to_the_ten(self) -> None:
        assert to_tinybars(10 ** 10, NativeUnit.WEIBAR) == 1
        # 10 coins sent as weibars land as 10 * 10^8 tinybars.
        assert to_tinybars(10 * 10 ** 18, NativeUnit.WEIBAR) == 10 * 10 ** 8

    def test_weibar_remainder_rejected(self) -> None:
        with pytest.raises(InvalidAmount):
            to_tinybars(10 ** 10 + 1, NativeUnit.WEIBAR)

    def test_tinybars_to_weibars(self) -> None:
        assert tinybars_to_weibars(3) == 3 * 10 ** 10

    def test_native_asset_is_zero_address(self) -> None:
        assert is_native(NATIVE_ASSET)
        assert NATIVE_ASSET == "0x" + "0" * 40
        assert not is_native("0x" + "0" * 39 + "1")


class TestParseAndFormat:
    def test_parse_whole_and_fractional(self) -> None:
        assert parse_hbar("1") == 100_000_000
        assert parse_hbar("1.5") == 150_000_000
        assert parse_hbar("0.00000001") == 1

    def test_parse_rejects_sub_tinybar_precision(self) -> None:
        with pytest.raises(InvalidAmount):
            parse_hbar("0.000000001")

    def test_parse_rejects_garbage(self) -> None:
        with pytest.raises(InvalidAmount):
            parse_hbar("ten")

    def test_format_pads_fraction(self) -> None:
        assert format_tinybars(150_000_000) == "1.50000000"
        assert format_tinybars(1) == "0.00000001"
        assert format_tinybars(-100_000_000) == "-1.00000000"


# ------------------------------------------------------------------
# Basis points
# ------------------------------------------------------------------


class TestBasisPoints:
    def test_bps_of_rounds_toward_zero(self) -> None:
        assert bps_of(1, 3) == 3333
        assert bps_of(2, 3) == 6666

    def test_bps_of_zero_total(self) -> None:
        assert bps_of(0, 0) == 0
        assert bps_of(5, 0) == 0

    def test_apply_bps(self) -> None:
        assert apply_bps(20_000, 1_000) == 2_000
        assert apply_bps(7, 5_000) == 3

    def test_bps_to_percent(self) -> None:
        assert bps_to_percent(BASIS_POINTS) == "100.00%"
        assert bps_to_percent(505) == "5.05%"

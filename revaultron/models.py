from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict


@dataclass(frozen=True)
class PriceQuote:
    """Oracle price as ``price * 10**expo`` with confidence ``conf``."""

    price: int
    conf: int
    expo: int
    publish_time: int


@dataclass(frozen=True)
class VolatilityRecord:
    volatility_bps: int
    price: int
    conf: int
    expo: int
    timestamp: int

    def age(self, now: int) -> int:
        return max(0, now - self.timestamp)

    def is_stale(self, now: int, threshold: int) -> bool:
        return now - self.timestamp > threshold


@dataclass(frozen=True)
class RebalanceRecord:
    vault: str
    asset_sold: str
    asset_bought: str
    amount_sold: int
    amount_bought: int
    volatility_bps: int
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault": self.vault,
            "asset_sold": self.asset_sold,
            "asset_bought": self.asset_bought,
            "amount_sold": self.amount_sold,
            "amount_bought": self.amount_bought,
            "volatility_bps": self.volatility_bps,
            "timestamp": self.timestamp,
        }


@dataclass(frozen=True)
class RebalanceCheck:
    needed: bool
    drift_bps: int

    def __iter__(self):
        # Allows ``needed, drift = executor.needs_rebalancing(...)``.
        yield self.needed
        yield self.drift_bps


@dataclass(frozen=True)
class AllocationSnapshot:
    """Two-asset allocation in a common value basis."""

    value_0: int
    value_1: int
    allocation_0_bps: int
    allocation_1_bps: int

    @property
    def total_value(self) -> int:
        return self.value_0 + self.value_1


@dataclass(frozen=True)
class SellPlan:
    """Output of sell-amount sizing for one execution."""

    asset_sell: str
    asset_buy: str
    excess_bps: int
    value_to_sell: int
    amount_to_sell: int
    available: int

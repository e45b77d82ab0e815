"""Local end-to-end deployment on the in-memory services.

Seeds accounts the way a testnet deployment is seeded: fund the user,
create a vault, deposit native currency (and optionally the quote token),
publish a price plus a volatility figure, and price the swapper from the
oracle. ``run_simulation`` then checks the vault and executes at most one
rebalance.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from revaultron.config import AppSettings, HBAR_USD_FEED
from revaultron.events import EventLog
from revaultron.executor import RebalanceExecutor
from revaultron.history_store import InMemoryHistory, RebalanceHistory, SqliteHistoryStore
from revaultron.metrics import MetricsRegistry, rebalance_alerts
from revaultron.models import RebalanceRecord
from revaultron.registry import VaultFactory
from revaultron.services.memory import (
    InMemoryTokenService,
    ManualPriceOracle,
    ManualSwapper,
    encode_price_update,
)
from revaultron.units import (
    BASIS_POINTS,
    NATIVE_ASSET,
    NATIVE_DECIMALS,
    PRICE_DECIMALS,
    TINYBARS_PER_HBAR,
)
from revaultron.vault import UserVault
from revaultron.volatility_index import VolatilityIndex, normalize_price

LOGGER = logging.getLogger(__name__)

SIMULATION_START = 1_700_000_000

# Native currency handed to the admin for oracle fees and to the user on top
# of their deposit.
_ADMIN_FUNDING = 10 * TINYBARS_PER_HBAR
_USER_HEADROOM = 100 * TINYBARS_PER_HBAR


def account_for(label: str) -> str:
    """Stable 20-byte hex account id for a named simulation participant."""
    return "0x" + hashlib.sha256(label.encode("utf-8")).hexdigest()[:40]


class SimulationClock:
    """Manually advanced clock; call it to read the current second."""

    def __init__(self, start: int = SIMULATION_START) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@dataclass
class LocalDeployment:
    clock: SimulationClock
    events: EventLog
    metrics: MetricsRegistry
    tokens: InMemoryTokenService
    oracle: ManualPriceOracle
    swapper: ManualSwapper
    index: VolatilityIndex
    executor: RebalanceExecutor
    factory: VaultFactory
    vault: UserVault
    history: RebalanceHistory
    admin: str
    user: str
    agent: str
    quote_token: str
    feed: str

    def close(self) -> None:
        self.history.close()


@dataclass(frozen=True)
class SimulationSummary:
    vault: str
    volatility_bps: int
    needed: bool
    drift_bps: int
    native_before: int
    native_after: int
    quote_before: int
    quote_after: int
    native_allocation_before_bps: int
    native_allocation_after_bps: int
    record: Optional[RebalanceRecord] = None
    metrics: Dict[str, float] = field(default_factory=dict)

    @property
    def executed(self) -> bool:
        return self.record is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vault": self.vault,
            "volatility_bps": self.volatility_bps,
            "needed": self.needed,
            "executed": self.executed,
            "drift_bps": self.drift_bps,
            "native_before": self.native_before,
            "native_after": self.native_after,
            "quote_before": self.quote_before,
            "quote_after": self.quote_after,
            "native_allocation_before_bps": self.native_allocation_before_bps,
            "native_allocation_after_bps": self.native_allocation_after_bps,
            "record": self.record.to_dict() if self.record is not None else None,
            "metrics": dict(self.metrics),
        }


def _set_swapper_rates(
    swapper: ManualSwapper,
    quote_token: str,
    price_mantissa: int,
    price_expo: int,
    value_decimals: int,
) -> None:
    # amount_out = tinybars * price * 10**value_decimals / (10**8 * 10**18), and its inverse.
    numerator = normalize_price(price_mantissa, price_expo) * 10 ** value_decimals
    denominator = 10 ** NATIVE_DECIMALS * 10 ** PRICE_DECIMALS
    swapper.set_rate(NATIVE_ASSET, quote_token, numerator, denominator)
    swapper.set_rate(quote_token, NATIVE_ASSET, denominator, numerator)


def build_local_deployment(settings: AppSettings | None = None) -> LocalDeployment:
    settings = settings or AppSettings()
    sim = settings.simulation
    clock = SimulationClock()
    events = EventLog()
    metrics = MetricsRegistry(alerts=rebalance_alerts())
    tokens = InMemoryTokenService()

    admin = account_for("admin")
    user = account_for("user")
    agent = settings.agents[0] if settings.agents else account_for("agent")
    quote_token = account_for("usdc")
    feed = settings.hermes.default_feed or HBAR_USD_FEED

    tokens.create_token(quote_token)
    tokens.credit_native(admin, _ADMIN_FUNDING)
    tokens.credit_native(user, sim.hbar_deposit_tinybars + settings.vault.creation_fee + _USER_HEADROOM)
    tokens.mint(quote_token, user, sim.usdc_deposit)

    oracle = ManualPriceOracle(
        account_for("oracle"),
        fee_per_update=settings.volatility.oracle_fee_per_update,
        clock=clock,
    )
    swapper = ManualSwapper(tokens, account_for("swapper"), clock=clock)
    tokens.mint(quote_token, swapper.account, sim.swapper_usdc_liquidity)
    tokens.credit_native(swapper.account, sim.swapper_hbar_liquidity)
    _set_swapper_rates(swapper, quote_token, sim.price_mantissa, sim.price_expo, settings.executor.value_decimals)

    index = VolatilityIndex(
        oracle,
        tokens,
        admin,
        account_for("volatility-index"),
        event_log=events,
        clock=clock,
        max_price_staleness=settings.volatility.max_price_staleness_seconds,
        metrics=metrics,
    )
    for updater in settings.updaters:
        index.authorize_updater(admin, updater)

    history: RebalanceHistory
    if sim.history_db_path:
        history = SqliteHistoryStore(sim.history_db_path)
    else:
        history = InMemoryHistory()
    executor = RebalanceExecutor(
        index,
        swapper,
        tokens,
        admin,
        account_for("executor"),
        event_log=events,
        clock=clock,
        settings=settings.executor,
        history=history,
        metrics=metrics,
    )
    for principal in {agent, *settings.agents}:
        executor.authorize_agent(admin, principal)

    factory = VaultFactory(
        tokens,
        admin,
        account_for("factory"),
        event_log=events,
        clock=clock,
        creation_fee=settings.vault.creation_fee,
        trusted_executors=[executor.account],
        auto_sync_threshold=settings.vault.auto_sync_threshold_seconds,
    )
    vault = factory.create_vault(user, value=settings.vault.creation_fee)
    vault.associate_token(user, quote_token)
    if sim.hbar_deposit_tinybars > 0:
        vault.deposit_hbar(user, sim.hbar_deposit_tinybars)
    if sim.usdc_deposit > 0:
        vault.deposit(user, quote_token, sim.usdc_deposit)

    oracle_conf = max(1, sim.price_mantissa // 1000)
    payload = encode_price_update(feed, sim.price_mantissa, oracle_conf, sim.price_expo, clock())
    index.update_volatility(admin, payload, feed, sim.volatility_bps, value=oracle.get_update_fee([payload]))

    LOGGER.info(
        "local deployment ready: vault=%s executor=%s index=%s",
        vault.address, executor.account, index.account,
    )
    return LocalDeployment(
        clock=clock,
        events=events,
        metrics=metrics,
        tokens=tokens,
        oracle=oracle,
        swapper=swapper,
        index=index,
        executor=executor,
        factory=factory,
        vault=vault,
        history=history,
        admin=admin,
        user=user,
        agent=agent,
        quote_token=quote_token,
        feed=feed,
    )


def _native_allocation(deployment: LocalDeployment) -> int:
    record = deployment.index.get_volatility_data(deployment.feed)
    allocation = deployment.executor.compute_allocation(
        deployment.vault, NATIVE_ASSET, deployment.quote_token, record
    )
    return allocation.allocation_0_bps


def run_simulation(settings: AppSettings | None = None) -> SimulationSummary:
    settings = settings or AppSettings()
    sim = settings.simulation
    deployment = build_local_deployment(settings)
    try:
        vault = deployment.vault
        executor = deployment.executor
        quote = deployment.quote_token
        target_native = sim.target_hbar_bps
        target_quote = BASIS_POINTS - target_native

        native_before = vault.get_balance(NATIVE_ASSET)
        quote_before = vault.get_balance(quote)
        allocation_before = _native_allocation(deployment)

        check = executor.needs_rebalancing(
            vault, NATIVE_ASSET, quote, target_native, target_quote,
            sim.volatility_threshold_bps, deployment.feed,
        )
        record = None
        if check.needed:
            if allocation_before > target_native:
                sell, buy, target_sell, target_buy = NATIVE_ASSET, quote, target_native, target_quote
            else:
                sell, buy, target_sell, target_buy = quote, NATIVE_ASSET, target_quote, target_native
            record = executor.execute_rebalance(
                deployment.agent, vault, sell, buy, target_sell, target_buy,
                sim.volatility_threshold_bps, deployment.feed,
            )
        else:
            LOGGER.info("vault %s within tolerance (drift %d bps)", vault.address, check.drift_bps)

        return SimulationSummary(
            vault=vault.address,
            volatility_bps=deployment.index.get_volatility(deployment.feed),
            needed=check.needed,
            drift_bps=check.drift_bps,
            native_before=native_before,
            native_after=vault.get_balance(NATIVE_ASSET),
            quote_before=quote_before,
            quote_after=vault.get_balance(quote),
            native_allocation_before_bps=allocation_before,
            native_allocation_after_bps=_native_allocation(deployment),
            record=record,
            metrics=deployment.metrics.snapshot(now=float(deployment.clock())).metrics,
        )
    finally:
        deployment.close()


__all__ = [
    "LocalDeployment",
    "SimulationClock",
    "SimulationSummary",
    "account_for",
    "build_local_deployment",
    "run_simulation",
]

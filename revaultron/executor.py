"""Volatility-gated two-asset rebalancing.

One ``execute_rebalance`` call is a single pass through:

1. agent authorization
2. address and target validation
3. volatility gate (market record read once, used throughout)
4. allocation of both assets in a common value basis
5. drift gate
6. sell sizing for the over-allocated side only
7. custody path checks and a quote whose minimum output is non-zero
8. withdrawal of the sell amount from the vault into executor custody
9. swap through the venue; on venue failure the withdrawn funds go back
   to the vault before the failure is re-raised
10. deposit of the proceeds into the vault; if that fails the proceeds
    are swapped back and the result returned to the vault
11. history record and completion event

Steps 1-7 are pure guards. Only failures after step 8 need compensation.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List

from revaultron.auth import AuthorizationTable, Permission, owned_table
from revaultron.config import MAX_DRIFT_CEILING_BPS, ExecutorSettings
from revaultron.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    InvalidConfiguration,
    NegativePrice,
    OracleError,
    RebalanceNotNeeded,
    RevaultronError,
    StalePrice,
    SwapFailed,
    TokenNotAssociated,
    Unauthorized,
)
from revaultron.events import EventLog, EventType
from revaultron.guard import non_reentrant
from revaultron.history_store import InMemoryHistory, RebalanceHistory
from revaultron.metrics import MetricsRegistry
from revaultron.models import AllocationSnapshot, RebalanceCheck, RebalanceRecord, SellPlan, VolatilityRecord
from revaultron.services.base import SwapVenue, TokenService
from revaultron.services.status import ResponseCode, ensure_success
from revaultron.units import BASIS_POINTS, NATIVE_DECIMALS, PRICE_DECIMALS, apply_bps, bps_of, is_native
from revaultron.vault import UserVault
from revaultron.volatility_index import VolatilityIndex, normalize_price

LOGGER = logging.getLogger(__name__)


def compute_drift(current_bps: int, target_bps: int) -> int:
    """Absolute distance between two allocations. Symmetric in its arguments."""
    return abs(current_bps - target_bps)


def compute_allocations(value_0: int, value_1: int) -> AllocationSnapshot:
    """Each side's share of the total in bps, both rounded toward zero.

    An empty vault has both allocations at zero.
    """
    total = value_0 + value_1
    return AllocationSnapshot(
        value_0=value_0,
        value_1=value_1,
        allocation_0_bps=bps_of(value_0, total),
        allocation_1_bps=bps_of(value_1, total),
    )


class RebalanceExecutor:
    """Executes rebalances for vaults that trust it.

    Parameters
    ----------
    volatility_index:
        Source of volatility and the reference price.
    swapper:
        Venue used to exchange the sell asset for the buy asset.
    token_service:
        Used for allowances and to associate the executor's own account.
    owner:
        ADMIN principal; manages agents and parameters.
    account:
        The executor's custody account. Vaults must list it as a trusted
        executor.
    settings:
        Drift ceiling, slippage, swap deadline and value basis.
    history:
        Where rebalance records are appended. Defaults to in-memory.
    """

    def __init__(
        self,
        volatility_index: VolatilityIndex,
        swapper: SwapVenue,
        token_service: TokenService,
        owner: str,
        account: str,
        *,
        auth: AuthorizationTable | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], int] | None = None,
        settings: ExecutorSettings | None = None,
        history: RebalanceHistory | None = None,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        if volatility_index is None:
            raise InvalidAddress("volatility_index")
        if swapper is None:
            raise InvalidAddress("swapper")
        if not account:
            raise InvalidAddress("account")
        self._settings = settings or ExecutorSettings()
        _check_drift(self._settings.max_drift_bps)
        _check_slippage(self._settings.slippage_bps)

        self._index = volatility_index
        self._swapper = swapper
        self._tokens = token_service
        self._owner = owner
        self._account = account
        self._clock = clock or (lambda: int(time.time()))
        self._auth = auth or owned_table(owner, name=f"executor:{account}")
        self._events = event_log
        self._auth.attach(event_log, self._clock)
        self._history = history or InMemoryHistory()
        self._metrics = metrics or MetricsRegistry()

        self._max_drift_bps = self._settings.max_drift_bps
        self._slippage_bps = self._settings.slippage_bps

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def account(self) -> str:
        return self._account

    @property
    def max_drift_bps(self) -> int:
        return self._max_drift_bps

    @property
    def slippage_bps(self) -> int:
        return self._slippage_bps

    @property
    def volatility_index(self) -> VolatilityIndex:
        return self._index

    @property
    def swapper(self) -> SwapVenue:
        return self._swapper

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    # ------------------------------------------------------------------
    # Read-only probe
    # ------------------------------------------------------------------

    def needs_rebalancing(
        self,
        vault: UserVault,
        asset_0: str,
        asset_1: str,
        target_0: int,
        target_1: int,
        volatility_threshold: int,
        feed: str,
    ) -> RebalanceCheck:
        """Volatility gate, allocation and drift gate without side effects.

        Returns ``(False, 0)`` when volatility is below the threshold,
        otherwise whether the larger of the two drifts reaches the
        configured maximum, together with that drift.
        """
        _check_addresses(vault, asset_0, asset_1)
        _check_targets(target_0, target_1)
        record = self._read_market(feed)
        if record.volatility_bps < volatility_threshold:
            return RebalanceCheck(needed=False, drift_bps=0)
        allocation = self.compute_allocation(vault, asset_0, asset_1, record)
        drift = max(
            compute_drift(allocation.allocation_0_bps, target_0),
            compute_drift(allocation.allocation_1_bps, target_1),
        )
        return RebalanceCheck(needed=drift >= self._max_drift_bps, drift_bps=drift)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @non_reentrant
    def execute_rebalance(
        self,
        caller: str,
        vault: UserVault,
        asset_sell: str,
        asset_buy: str,
        target_sell: int,
        target_buy: int,
        volatility_threshold: int,
        feed: str,
    ) -> RebalanceRecord:
        if not self._auth.has(caller, Permission.AGENT):
            raise Unauthorized(caller, "execute rebalances")
        _check_addresses(vault, asset_sell, asset_buy)
        _check_targets(target_sell, target_buy)

        record = self._read_market(feed)
        if record.volatility_bps < volatility_threshold:
            self._skip(vault, "volatility below threshold", record.volatility_bps)
            raise RebalanceNotNeeded(
                f"volatility {record.volatility_bps} bps below threshold {volatility_threshold} bps"
            )

        allocation = self.compute_allocation(vault, asset_sell, asset_buy, record)
        drift_sell = compute_drift(allocation.allocation_0_bps, target_sell)
        drift_buy = compute_drift(allocation.allocation_1_bps, target_buy)
        self._metrics.gauge("rebalance.last_drift_bps").set(max(drift_sell, drift_buy))
        if drift_sell < self._max_drift_bps and drift_buy < self._max_drift_bps:
            self._skip(vault, "drift below maximum", record.volatility_bps)
            raise RebalanceNotNeeded(
                f"drift {max(drift_sell, drift_buy)} bps below maximum {self._max_drift_bps} bps"
            )

        plan = self.compute_sell_plan(vault, asset_sell, asset_buy, target_sell, allocation, record)
        if plan.amount_to_sell <= 0:
            raise InsufficientBalance(asset_sell, plan.amount_to_sell, plan.available)

        self._check_custody_path(vault, asset_sell, asset_buy)
        min_out = self._quote_min_output(plan)

        self._withdraw(vault, asset_sell, plan.amount_to_sell)
        amount_bought = self._swap_or_return(vault, plan, min_out, record)
        self._deposit_or_unwind(vault, plan, amount_bought, record)

        now = self._clock()
        result = RebalanceRecord(
            vault=vault.address,
            asset_sold=asset_sell,
            asset_bought=asset_buy,
            amount_sold=plan.amount_to_sell,
            amount_bought=amount_bought,
            volatility_bps=record.volatility_bps,
            timestamp=now,
        )
        index = self._history.append(result)
        self._metrics.counter("rebalance.executed").increment(now=float(now))
        self._metrics.gauge("rebalance.last_volatility_bps").set(record.volatility_bps, now=float(now))
        self._emit(
            EventType.REBALANCE_EXECUTED,
            vault=vault.address,
            asset_sold=asset_sell,
            asset_bought=asset_buy,
            amount_sold=plan.amount_to_sell,
            amount_bought=amount_bought,
            volatility_bps=record.volatility_bps,
            record_index=index,
        )
        LOGGER.info(
            "rebalanced vault %s: sold %d %s for %d %s at volatility %d bps",
            vault.address, plan.amount_to_sell, asset_sell, amount_bought, asset_buy,
            record.volatility_bps,
        )
        return result

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    def compute_allocation(
        self,
        vault: UserVault,
        asset_0: str,
        asset_1: str,
        record: VolatilityRecord,
    ) -> AllocationSnapshot:
        value_0 = self.value_of(asset_0, vault.get_balance(asset_0), record)
        value_1 = self.value_of(asset_1, vault.get_balance(asset_1), record)
        return compute_allocations(value_0, value_1)

    def compute_sell_plan(
        self,
        vault: UserVault,
        asset_sell: str,
        asset_buy: str,
        target_sell: int,
        allocation: AllocationSnapshot,
        record: VolatilityRecord,
    ) -> SellPlan:
        """Size the sale of ``asset_sell``; zero when it is not over-allocated.

        ``allocation`` must have ``asset_sell`` as its first asset.
        """
        available = vault.get_balance(asset_sell)
        excess = allocation.allocation_0_bps - target_sell
        if excess <= 0:
            return SellPlan(asset_sell, asset_buy, 0, 0, 0, available)
        value_to_sell = apply_bps(allocation.total_value, excess)
        amount = self.amount_for_value(asset_sell, value_to_sell, record)
        return SellPlan(
            asset_sell=asset_sell,
            asset_buy=asset_buy,
            excess_bps=excess,
            value_to_sell=value_to_sell,
            amount_to_sell=min(amount, available),
            available=available,
        )

    def value_of(self, asset: str, amount: int, record: VolatilityRecord) -> int:
        """Value of ``amount`` in the common basis (``value_decimals`` units).

        Fungible assets count at face value in their smallest unit; the
        native asset is priced through the record's normalized price.
        """
        if not is_native(asset):
            return amount
        price = self._native_price(record)
        return (
            amount * price * 10 ** self._settings.value_decimals
            // (10 ** NATIVE_DECIMALS * 10 ** PRICE_DECIMALS)
        )

    def amount_for_value(self, asset: str, value: int, record: VolatilityRecord) -> int:
        """Inverse of ``value_of``, rounded toward zero."""
        if not is_native(asset):
            return value
        price = self._native_price(record)
        return (
            value * 10 ** NATIVE_DECIMALS * 10 ** PRICE_DECIMALS
            // (price * 10 ** self._settings.value_decimals)
        )

    def min_output(self, quoted: int) -> int:
        return quoted * (BASIS_POINTS - self._slippage_bps) // BASIS_POINTS

    def _native_price(self, record: VolatilityRecord) -> int:
        if record.price < 0:
            raise NegativePrice("native", record.price)
        price = normalize_price(record.price, record.expo)
        if price == 0:
            raise OracleError("reference price is zero")
        return price

    def _read_market(self, feed: str) -> VolatilityRecord:
        if not feed:
            raise InvalidAddress("feed")
        record = self._index.get_volatility_data(feed)
        if self._settings.require_fresh_volatility:
            now = self._clock()
            max_age = self._index.max_price_staleness
            if record.is_stale(now, max_age):
                LOGGER.warning("volatility record for %s is %ds old", feed, record.age(now))
                raise StalePrice(feed, record.age(now), max_age)
        return record

    # ------------------------------------------------------------------
    # Custody steps
    # ------------------------------------------------------------------

    def _check_custody_path(self, vault: UserVault, asset_sell: str, asset_buy: str) -> None:
        """Everything that can be checked before funds leave the vault."""
        if not vault.is_trusted_executor(self._account):
            raise Unauthorized(self._account, f"move funds of vault {vault.address}")
        if not is_native(asset_buy) and not vault.is_token_associated(asset_buy):
            raise TokenNotAssociated(asset_buy)
        if not self._swapper.pair_exists(asset_sell, asset_buy):
            raise SwapFailed(f"no pool for {asset_sell} -> {asset_buy}")
        venue = self._swapper.account
        for asset in (asset_sell, asset_buy):
            if not is_native(asset) and not self._tokens.is_associated(venue, asset):
                raise SwapFailed(f"venue {venue} is not associated with {asset}")
        for asset in (asset_sell, asset_buy):
            self._ensure_associated(asset)

    def _quote_min_output(self, plan: SellPlan) -> int:
        quoted = self._swapper.quote_out(plan.asset_sell, plan.asset_buy, plan.amount_to_sell)
        min_out = self.min_output(quoted)
        if min_out <= 0:
            raise SwapFailed(
                f"{plan.amount_to_sell} {plan.asset_sell} quotes to no {plan.asset_buy} (quoted {quoted})"
            )
        return min_out

    def _ensure_associated(self, asset: str) -> None:
        if is_native(asset) or self._tokens.is_associated(self._account, asset):
            return
        status = self._tokens.associate(self._account, asset)
        if status != ResponseCode.TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT:
            ensure_success("associate", status)

    def _withdraw(self, vault: UserVault, asset: str, amount: int) -> None:
        if is_native(asset):
            vault.withdraw_hbar(self._account, amount, self._account)
        else:
            vault.withdraw_to(self._account, asset, amount, self._account)

    def _swap(self, asset_in: str, asset_out: str, amount_in: int, min_out: int) -> int:
        if not is_native(asset_in):
            ensure_success(
                "approve",
                self._tokens.approve(asset_in, self._account, self._swapper.account, amount_in),
            )
        return self._swapper.swap_exact_input(
            payer=self._account,
            asset_in=asset_in,
            asset_out=asset_out,
            amount_in=amount_in,
            min_out=min_out,
            recipient=self._account,
            deadline=self._clock() + self._settings.swap_deadline_seconds,
        )

    def _revoke(self, asset: str) -> None:
        if not is_native(asset):
            self._tokens.approve(asset, self._account, self._swapper.account, 0)

    def _swap_or_return(
        self,
        vault: UserVault,
        plan: SellPlan,
        min_out: int,
        record: VolatilityRecord,
    ) -> int:
        try:
            return self._swap(plan.asset_sell, plan.asset_buy, plan.amount_to_sell, min_out)
        except RevaultronError as exc:
            self._return_funds(vault, plan, record, exc)
            raise

    def _return_funds(
        self,
        vault: UserVault,
        plan: SellPlan,
        record: VolatilityRecord,
        cause: RevaultronError,
    ) -> None:
        LOGGER.warning(
            "swap of %d %s failed for vault %s (%s); returning funds",
            plan.amount_to_sell, plan.asset_sell, vault.address, cause,
        )
        self._revoke(plan.asset_sell)
        try:
            self._deposit_proceeds(vault, plan.asset_sell, plan.amount_to_sell)
        except RevaultronError:
            LOGGER.critical(
                "could not return %d %s to vault %s; funds remain with executor %s",
                plan.amount_to_sell, plan.asset_sell, vault.address, self._account,
            )
            raise
        self._metrics.counter("rebalance.swap_failures").increment()
        self._report_failure(vault, plan, plan.amount_to_sell, record, cause)

    def _deposit_or_unwind(
        self,
        vault: UserVault,
        plan: SellPlan,
        amount_bought: int,
        record: VolatilityRecord,
    ) -> None:
        try:
            self._deposit_proceeds(vault, plan.asset_buy, amount_bought)
        except RevaultronError as exc:
            self._unwind(vault, plan, amount_bought, record, exc)
            raise

    def _unwind(
        self,
        vault: UserVault,
        plan: SellPlan,
        amount_bought: int,
        record: VolatilityRecord,
        cause: RevaultronError,
    ) -> None:
        """Sell undeposited proceeds back and return the result to the vault."""
        LOGGER.warning(
            "depositing %d %s into vault %s failed (%s); unwinding the swap",
            amount_bought, plan.asset_buy, vault.address, cause,
        )
        try:
            quoted = self._swapper.quote_out(plan.asset_buy, plan.asset_sell, amount_bought)
            recovered = self._swap(plan.asset_buy, plan.asset_sell, amount_bought, self.min_output(quoted))
            self._deposit_proceeds(vault, plan.asset_sell, recovered)
        except RevaultronError:
            self._revoke(plan.asset_buy)
            LOGGER.critical(
                "could not unwind rebalance of vault %s after %d %s was sold; funds remain with executor %s",
                vault.address, plan.amount_to_sell, plan.asset_sell, self._account,
            )
            raise
        if recovered < plan.amount_to_sell:
            LOGGER.warning(
                "unwind of vault %s recovered %d of %d %s",
                vault.address, recovered, plan.amount_to_sell, plan.asset_sell,
            )
        self._metrics.counter("rebalance.unwinds").increment()
        self._report_failure(vault, plan, recovered, record, cause)

    def _report_failure(
        self,
        vault: UserVault,
        plan: SellPlan,
        returned: int,
        record: VolatilityRecord,
        cause: RevaultronError,
    ) -> None:
        self._emit(
            EventType.FUNDS_RETURNED,
            vault=vault.address,
            asset=plan.asset_sell,
            amount=returned,
        )
        self._emit(
            EventType.REBALANCE_FAILED,
            vault=vault.address,
            asset_sold=plan.asset_sell,
            asset_bought=plan.asset_buy,
            reason=str(cause),
            volatility_bps=record.volatility_bps,
        )

    def _deposit_proceeds(self, vault: UserVault, asset: str, amount: int) -> None:
        if is_native(asset):
            vault.deposit_hbar(self._account, amount)
        else:
            vault.deposit(self._account, asset, amount)

    def _skip(self, vault: UserVault, reason: str, volatility_bps: int) -> None:
        self._metrics.counter("rebalance.skipped").increment()
        LOGGER.debug("rebalance of %s skipped: %s (volatility %d bps)", vault.address, reason, volatility_bps)

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @non_reentrant
    def authorize_agent(self, caller: str, agent: str) -> None:
        self._require_owner(caller, "authorize agents")
        if not agent:
            raise InvalidAddress("agent")
        self._auth.grant(agent, Permission.AGENT)

    @non_reentrant
    def revoke_agent(self, caller: str, agent: str) -> None:
        self._require_owner(caller, "revoke agents")
        self._auth.revoke(agent, Permission.AGENT)

    def is_authorized_agent(self, principal: str) -> bool:
        return self._auth.has(principal, Permission.AGENT)

    @non_reentrant
    def set_max_drift(self, caller: str, max_drift_bps: int) -> None:
        self._require_owner(caller, "set max drift")
        _check_drift(max_drift_bps)
        previous, self._max_drift_bps = self._max_drift_bps, max_drift_bps
        self._emit(EventType.CONFIG_CHANGED, setting="max_drift_bps", before=previous, after=max_drift_bps)

    @non_reentrant
    def set_slippage(self, caller: str, slippage_bps: int) -> None:
        self._require_owner(caller, "set slippage")
        _check_slippage(slippage_bps)
        previous, self._slippage_bps = self._slippage_bps, slippage_bps
        self._emit(EventType.CONFIG_CHANGED, setting="slippage_bps", before=previous, after=slippage_bps)

    @non_reentrant
    def update_volatility_index(self, caller: str, volatility_index: VolatilityIndex) -> None:
        self._require_owner(caller, "replace the volatility index")
        if volatility_index is None:
            raise InvalidAddress("volatility_index")
        self._index = volatility_index
        self._emit(EventType.CONFIG_CHANGED, setting="volatility_index", after=volatility_index.account)

    @non_reentrant
    def update_swapper(self, caller: str, swapper: SwapVenue) -> None:
        self._require_owner(caller, "replace the swapper")
        if swapper is None:
            raise InvalidAddress("swapper")
        self._swapper = swapper
        self._emit(EventType.CONFIG_CHANGED, setting="swapper", after=getattr(swapper, "account", ""))

    @non_reentrant
    def emergency_withdraw(self, caller: str, asset: str, amount: int, recipient: str) -> None:
        """Owner-only release of funds stranded in executor custody."""
        self._require_owner(caller, "withdraw executor funds")
        if amount <= 0:
            raise InvalidAmount(amount)
        if not recipient:
            raise InvalidAddress("recipient")
        if is_native(asset):
            ensure_success("transfer_native", self._tokens.transfer_native(self._account, recipient, amount))
        else:
            ensure_success("transfer", self._tokens.transfer(asset, self._account, recipient, amount))
        LOGGER.warning("emergency withdrawal of %d %s from executor to %s", amount, asset, recipient)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def rebalance_history(self, index: int) -> RebalanceRecord:
        return self._history.get(index)

    def get_rebalance_history(self, vault: UserVault | str) -> List[RebalanceRecord]:
        address = vault if isinstance(vault, str) else vault.address
        return self._history.for_vault(address)

    def get_rebalance_count(self) -> int:
        return self._history.count()

    def get_hbar_balance(self) -> int:
        return self._tokens.native_balance(self._account)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_owner(self, caller: str, action: str) -> None:
        if not self._auth.has(caller, Permission.ADMIN):
            raise Unauthorized(caller, action)

    def _emit(self, event_type: EventType, **data: object) -> None:
        if self._events is None:
            return
        self._events.emit(event_type, source=self._account, timestamp=self._clock(), **data)


def _check_addresses(vault: UserVault | None, asset_a: str, asset_b: str) -> None:
    if vault is None or not getattr(vault, "address", ""):
        raise InvalidAddress("vault")
    if not asset_a:
        raise InvalidAddress("asset_0")
    if not asset_b:
        raise InvalidAddress("asset_1")
    if asset_a == asset_b:
        raise InvalidAddress("asset_1")


def _check_targets(target_a: int, target_b: int) -> None:
    if target_a < 0 or target_b < 0 or target_a + target_b != BASIS_POINTS:
        raise InvalidConfiguration(
            f"target allocations must be non-negative and sum to {BASIS_POINTS} bps, got {target_a}+{target_b}"
        )


def _check_drift(max_drift_bps: int) -> None:
    if max_drift_bps <= 0 or max_drift_bps > MAX_DRIFT_CEILING_BPS:
        raise InvalidConfiguration(
            f"max drift must be within 1..{MAX_DRIFT_CEILING_BPS} bps, got {max_drift_bps}"
        )


def _check_slippage(slippage_bps: int) -> None:
    if slippage_bps < 0 or slippage_bps > BASIS_POINTS:
        raise InvalidConfiguration(f"slippage must be within 0..{BASIS_POINTS} bps, got {slippage_bps}")

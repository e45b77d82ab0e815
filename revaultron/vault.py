"""Per-user vault ledger for the native currency and fungible assets.

The vault keeps its own *tracked* balance per asset next to the
*authoritative* balance reported by the token service. The two can diverge
when someone transfers tokens to the vault directly instead of going through
``deposit``. Balance-sensitive operations re-sync an asset first whenever its
last sync is older than the auto-sync threshold; ``sync_token_balance``
forces tracked == authoritative at any time.

The native currency is held directly by the vault account and has no tracked
balance.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Dict, List, Sequence

from revaultron.auth import AuthorizationTable, Permission, owned_table
from revaultron.errors import (
    InsufficientBalance,
    InvalidAddress,
    InvalidAmount,
    NonZeroBalance,
    ServiceCallFailed,
    TokenAlreadyAssociated,
    TokenNotAssociated,
    Unauthorized,
)
from revaultron.events import EventLog, EventType
from revaultron.guard import non_reentrant
from revaultron.services.base import TokenService
from revaultron.services.status import ensure_success
from revaultron.units import NATIVE_ASSET, NativeUnit, is_native, to_tinybars

LOGGER = logging.getLogger(__name__)

DEFAULT_AUTO_SYNC_THRESHOLD = 300

_OWNER_OR_EXECUTOR = (Permission.ADMIN, Permission.EXECUTOR)


class UserVault:
    """One vault per owner, created by a ``VaultFactory``.

    Parameters
    ----------
    owner:
        Principal that owns the vault and holds ADMIN in its table.
    factory:
        Account of the registry that created the vault. Immutable.
    token_service:
        Authoritative asset accounting.
    address:
        The vault's own account on the token service.
    auto_sync_threshold:
        Seconds after which a tracked balance is considered out of date.
    """

    def __init__(
        self,
        owner: str,
        factory: str,
        token_service: TokenService,
        address: str,
        *,
        auth: AuthorizationTable | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], int] | None = None,
        auto_sync_threshold: int = DEFAULT_AUTO_SYNC_THRESHOLD,
    ) -> None:
        if not owner:
            raise InvalidAddress("owner")
        if not address:
            raise InvalidAddress("address")
        self._owner = owner
        self._factory = factory
        self._tokens = token_service
        self._address = address
        self._clock = clock or (lambda: int(time.time()))
        self._auth = auth or owned_table(owner, name=f"vault:{address}")
        self._events = event_log
        self._auth.attach(event_log, self._clock)
        self._auto_sync_threshold = auto_sync_threshold

        self._token_balances: Dict[str, int] = {}
        self._token_associated: Dict[str, bool] = {}
        self._supported_tokens: List[str] = []
        self._last_sync: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def owner(self) -> str:
        return self._owner

    @property
    def factory(self) -> str:
        return self._factory

    @property
    def address(self) -> str:
        return self._address

    @property
    def auto_sync_threshold(self) -> int:
        return self._auto_sync_threshold

    def is_trusted_executor(self, principal: str) -> bool:
        return self._auth.has(principal, Permission.EXECUTOR)

    # ------------------------------------------------------------------
    # Association
    # ------------------------------------------------------------------

    @non_reentrant
    def associate_token(self, caller: str, asset: str) -> None:
        self._require_owner(caller, "associate tokens")
        self._associate(asset)

    @non_reentrant
    def associate_tokens(self, caller: str, assets: Sequence[str]) -> None:
        self._require_owner(caller, "associate tokens")
        if not assets:
            raise InvalidAmount(0, reason="at least one token is required")
        for asset in assets:
            self._check_associable(asset)
        if len(set(assets)) != len(assets):
            raise TokenAlreadyAssociated(next(a for a in assets if assets.count(a) > 1))
        done: List[str] = []
        try:
            for asset in assets:
                self._associate(asset)
                done.append(asset)
        except ServiceCallFailed:
            for asset in reversed(done):
                self._tokens.dissociate(self._address, asset)
                self._forget(asset)
            raise

    @non_reentrant
    def dissociate_token(self, caller: str, asset: str) -> None:
        """Dissociate an asset whose balance is exactly zero after a forced sync."""
        self._require_owner(caller, "dissociate tokens")
        self._require_associated(asset)
        balance = self._sync(asset)
        if balance != 0:
            raise NonZeroBalance(asset, balance)
        ensure_success("dissociate", self._tokens.dissociate(self._address, asset))
        self._forget(asset)
        self._emit(EventType.TOKEN_DISSOCIATED, asset=asset)

    @non_reentrant
    def remove_token(self, caller: str, asset: str) -> None:
        """Drop an empty asset from the supported list without dissociating it."""
        self._require_owner(caller, "remove tokens")
        if asset not in self._supported_tokens:
            raise TokenNotAssociated(asset)
        tracked = self._token_balances.get(asset, 0)
        if tracked != 0:
            raise NonZeroBalance(asset, tracked)
        self._supported_tokens.remove(asset)
        self._emit(EventType.TOKEN_REMOVED, asset=asset)

    def _check_associable(self, asset: str) -> None:
        if not asset or is_native(asset):
            raise InvalidAddress("asset")
        if self._token_associated.get(asset):
            raise TokenAlreadyAssociated(asset)

    def _associate(self, asset: str) -> None:
        self._check_associable(asset)
        ensure_success("associate", self._tokens.associate(self._address, asset))
        self._token_associated[asset] = True
        if asset not in self._supported_tokens:
            self._supported_tokens.append(asset)
        self._token_balances.setdefault(asset, 0)
        self._last_sync[asset] = self._clock()
        self._emit(EventType.TOKEN_ASSOCIATED, asset=asset)

    def _forget(self, asset: str) -> None:
        self._token_associated.pop(asset, None)
        self._token_balances.pop(asset, None)
        self._last_sync.pop(asset, None)
        if asset in self._supported_tokens:
            self._supported_tokens.remove(asset)

    # ------------------------------------------------------------------
    # Fungible assets
    # ------------------------------------------------------------------

    @non_reentrant
    def deposit(self, caller: str, asset: str, amount: int) -> None:
        """Move ``amount`` of ``asset`` from the caller's account into the vault."""
        self._auth.require_any(caller, _OWNER_OR_EXECUTOR, "deposit into vault")
        if amount <= 0:
            raise InvalidAmount(amount)
        self._require_associated(asset)
        self._auto_sync(asset)

        ensure_success("transfer", self._tokens.transfer(asset, caller, self._address, amount))
        self._token_balances[asset] = self._token_balances.get(asset, 0) + amount
        self._last_sync[asset] = self._clock()
        self._emit(EventType.DEPOSITED, asset=asset, amount=amount, sender=caller)

    @non_reentrant
    def withdraw_to(self, caller: str, asset: str, amount: int, recipient: str) -> None:
        self._auth.require_any(caller, _OWNER_OR_EXECUTOR, "withdraw from vault")
        if amount <= 0:
            raise InvalidAmount(amount)
        if not recipient:
            raise InvalidAddress("recipient")
        self._require_associated(asset)
        self._auto_sync(asset)

        available = self._authoritative_balance(asset)
        if available < amount:
            raise InsufficientBalance(asset, amount, available)
        ensure_success("transfer", self._tokens.transfer(asset, self._address, recipient, amount))
        self._token_balances[asset] = self._token_balances.get(asset, 0) - amount
        self._emit(EventType.WITHDRAWN, asset=asset, amount=amount, recipient=recipient)

    @non_reentrant
    def emergency_recover(self, caller: str, asset: str, amount: int, to: str) -> None:
        """Owner escape hatch for stuck funds. Skips tracked-balance checks."""
        self._require_owner(caller, "recover funds")
        if amount <= 0:
            raise InvalidAmount(amount)
        if not to:
            raise InvalidAddress("to")
        if is_native(asset):
            ensure_success("transfer_native", self._tokens.transfer_native(self._address, to, amount))
        else:
            ensure_success("transfer", self._tokens.transfer(asset, self._address, to, amount))
            if self._token_associated.get(asset):
                self._sync(asset)
        LOGGER.warning("emergency recovery of %d %s from vault %s to %s", amount, asset, self._address, to)
        self._emit(EventType.EMERGENCY_RECOVERY, asset=asset, amount=amount, recipient=to)

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    @non_reentrant
    def sync_token_balance(self, caller: str, asset: str) -> int:
        self._auth.require_any(caller, _OWNER_OR_EXECUTOR, "sync balances")
        self._require_associated(asset)
        return self._sync(asset)

    @non_reentrant
    def sync_all_tokens(self, caller: str) -> Dict[str, int]:
        self._auth.require_any(caller, _OWNER_OR_EXECUTOR, "sync balances")
        return {
            asset: self._sync(asset)
            for asset in list(self._supported_tokens)
            if self._token_associated.get(asset)
        }

    def needs_sync(self, asset: str) -> bool:
        last = self._last_sync.get(asset)
        if last is None:
            return True
        return self._clock() - last > self._auto_sync_threshold

    def _auto_sync(self, asset: str) -> None:
        if self.needs_sync(asset):
            self._sync(asset)

    def _sync(self, asset: str) -> int:
        before = self._token_balances.get(asset, 0)
        after = self._authoritative_balance(asset)
        self._token_balances[asset] = after
        self._last_sync[asset] = self._clock()
        if before != after:
            LOGGER.warning(
                "vault %s tracked %s balance %d differed from token service %d; synced",
                self._address, asset, before, after,
            )
        self._emit(EventType.BALANCE_SYNCED, asset=asset, before=before, after=after)
        return after

    def _authoritative_balance(self, asset: str) -> int:
        status, balance = self._tokens.balance_of(asset, self._address)
        ensure_success("balance_of", status)
        return balance

    # ------------------------------------------------------------------
    # Native currency
    # ------------------------------------------------------------------

    @non_reentrant
    def deposit_hbar(self, caller: str, amount: int, unit: NativeUnit = NativeUnit.TINYBAR) -> int:
        """Anyone may fund the vault with native currency. Returns tinybars received."""
        tinybars = to_tinybars(amount, unit)
        if tinybars <= 0:
            raise InvalidAmount(amount)
        ensure_success("transfer_native", self._tokens.transfer_native(caller, self._address, tinybars))
        self._emit(EventType.HBAR_DEPOSITED, amount=tinybars, sender=caller)
        return tinybars

    @non_reentrant
    def withdraw_hbar(
        self,
        caller: str,
        amount: int,
        recipient: str,
        unit: NativeUnit = NativeUnit.TINYBAR,
    ) -> int:
        self._auth.require_any(caller, _OWNER_OR_EXECUTOR, "withdraw native currency")
        if not recipient:
            raise InvalidAddress("recipient")
        tinybars = to_tinybars(amount, unit)
        if tinybars <= 0:
            raise InvalidAmount(amount)
        available = self._tokens.native_balance(self._address)
        if available < tinybars:
            raise InsufficientBalance(NATIVE_ASSET, tinybars, available)
        ensure_success("transfer_native", self._tokens.transfer_native(self._address, recipient, tinybars))
        self._emit(EventType.HBAR_WITHDRAWN, amount=tinybars, recipient=recipient)
        return tinybars

    def get_hbar_balance(self) -> int:
        return self._tokens.native_balance(self._address)

    # ------------------------------------------------------------------
    # Trusted executors
    # ------------------------------------------------------------------

    @non_reentrant
    def add_trusted_executor(self, caller: str, executor: str) -> None:
        self._require_owner_or_factory(caller)
        if not executor:
            raise InvalidAddress("executor")
        if self._auth.grant(executor, Permission.EXECUTOR):
            self._emit(EventType.EXECUTOR_TRUSTED, executor=executor)

    @non_reentrant
    def remove_trusted_executor(self, caller: str, executor: str) -> None:
        self._require_owner_or_factory(caller)
        if self._auth.revoke(executor, Permission.EXECUTOR):
            self._emit(EventType.EXECUTOR_UNTRUSTED, executor=executor)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_balance(self, asset: str) -> int:
        """Authoritative balance from the token service."""
        if is_native(asset):
            return self.get_hbar_balance()
        self._require_associated(asset)
        return self._authoritative_balance(asset)

    def get_tracked_balance(self, asset: str) -> int:
        """The ledger's own view; may lag the authoritative balance between syncs."""
        if is_native(asset):
            return self.get_hbar_balance()
        return self._token_balances.get(asset, 0)

    def get_last_sync_timestamp(self, asset: str) -> int:
        return self._last_sync.get(asset, 0)

    def is_token_associated(self, asset: str) -> bool:
        return bool(self._token_associated.get(asset))

    def is_token_supported(self, asset: str) -> bool:
        return asset in self._supported_tokens

    def get_all_supported_tokens(self) -> List[str]:
        return list(self._supported_tokens)

    def get_supported_token_count(self) -> int:
        return len(self._supported_tokens)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _require_owner(self, caller: str, action: str) -> None:
        self._auth.require(caller, Permission.ADMIN, action)

    def _require_owner_or_factory(self, caller: str) -> None:
        if caller == self._factory and self._factory:
            return
        if not self._auth.has(caller, Permission.ADMIN):
            raise Unauthorized(caller, "manage trusted executors")

    def _require_associated(self, asset: str) -> None:
        if not asset:
            raise InvalidAddress("asset")
        if not self._token_associated.get(asset):
            raise TokenNotAssociated(asset)

    def _emit(self, event_type: EventType, **data: object) -> None:
        if self._events is None:
            return
        self._events.emit(event_type, source=self._address, timestamp=self._clock(), **data)

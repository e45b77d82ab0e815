"""Vault factory: one vault per owner, creation fees, executor trust.

Vault addresses are derived deterministically from the factory account, the
owner and a creation nonce, so a re-created deployment yields the same
addresses in the same order.
"""

from __future__ import annotations

import hashlib
import logging
import time
from typing import Callable, Dict, Iterable, List

from revaultron.auth import AuthorizationTable, Permission, owned_table
from revaultron.errors import (
    InsufficientFee,
    InvalidAddress,
    InvalidAmount,
    Unauthorized,
    VaultAlreadyExists,
    VaultNotFound,
)
from revaultron.events import EventLog, EventType
from revaultron.guard import non_reentrant
from revaultron.services.base import TokenService
from revaultron.services.status import ensure_success
from revaultron.vault import DEFAULT_AUTO_SYNC_THRESHOLD, UserVault

LOGGER = logging.getLogger(__name__)


def derive_vault_address(factory: str, owner: str, nonce: int) -> str:
    digest = hashlib.sha256(f"{factory}:{owner}:{nonce}".encode("utf-8")).hexdigest()
    return "0x" + digest[:40]


class VaultFactory:
    """Creates and indexes ``UserVault`` instances.

    The factory's admin sets the creation fee, collects accumulated fees and
    manages the executors that every vault trusts.
    """

    def __init__(
        self,
        token_service: TokenService,
        admin: str,
        account: str,
        *,
        auth: AuthorizationTable | None = None,
        event_log: EventLog | None = None,
        clock: Callable[[], int] | None = None,
        creation_fee: int = 0,
        trusted_executors: Iterable[str] = (),
        auto_sync_threshold: int = DEFAULT_AUTO_SYNC_THRESHOLD,
    ) -> None:
        if not account:
            raise InvalidAddress("account")
        if creation_fee < 0:
            raise InvalidAmount(creation_fee, reason="creation fee cannot be negative")
        self._tokens = token_service
        self._admin = admin
        self._account = account
        self._clock = clock or (lambda: int(time.time()))
        self._auth = auth or owned_table(admin, name=f"factory:{account}")
        self._events = event_log
        self._auth.attach(event_log, self._clock)
        self._creation_fee = creation_fee
        self._auto_sync_threshold = auto_sync_threshold
        self._trusted_executors: List[str] = []
        for executor in trusted_executors:
            if not executor:
                raise InvalidAddress("executor")
            if executor not in self._trusted_executors:
                self._trusted_executors.append(executor)

        self._vaults_by_owner: Dict[str, UserVault] = {}
        self._vaults_by_address: Dict[str, UserVault] = {}
        self._order: List[str] = []
        self._nonce = 0

    @property
    def account(self) -> str:
        return self._account

    @property
    def admin(self) -> str:
        return self._admin

    @property
    def creation_fee(self) -> int:
        return self._creation_fee

    @property
    def trusted_executors(self) -> List[str]:
        return list(self._trusted_executors)

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    @non_reentrant
    def create_vault(self, caller: str, value: int = 0) -> UserVault:
        """Create a vault owned by ``caller``.

        ``value`` is native currency sent along with the call; it must cover
        the creation fee. Only the fee is collected, so an overpayment never
        leaves the caller's account.
        """
        if not caller:
            raise InvalidAddress("owner")
        if caller in self._vaults_by_owner:
            raise VaultAlreadyExists(caller)
        if value < 0:
            raise InvalidAmount(value)
        if value < self._creation_fee:
            raise InsufficientFee(self._creation_fee, value)

        if self._creation_fee > 0:
            ensure_success(
                "transfer_native",
                self._tokens.transfer_native(caller, self._account, self._creation_fee),
            )

        address = derive_vault_address(self._account, caller, self._nonce)
        self._nonce += 1
        vault = UserVault(
            caller,
            self._account,
            self._tokens,
            address,
            event_log=self._events,
            clock=self._clock,
            auto_sync_threshold=self._auto_sync_threshold,
        )
        for executor in self._trusted_executors:
            vault.add_trusted_executor(self._account, executor)

        self._vaults_by_owner[caller] = vault
        self._vaults_by_address[address] = vault
        self._order.append(caller)
        LOGGER.info("created vault %s for %s", address, caller)
        self._emit(EventType.VAULT_CREATED, owner=caller, vault=address, fee=self._creation_fee)
        return vault

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get_vault(self, owner: str) -> UserVault:
        vault = self._vaults_by_owner.get(owner)
        if vault is None:
            raise VaultNotFound(owner)
        return vault

    def has_vault(self, owner: str) -> bool:
        return owner in self._vaults_by_owner

    def is_valid_vault(self, vault: UserVault | str) -> bool:
        """True when ``vault`` (object or address) was created here and is still registered."""
        address = vault if isinstance(vault, str) else vault.address
        registered = self._vaults_by_address.get(address)
        if registered is None:
            return False
        return isinstance(vault, str) or registered is vault

    def get_vault_count(self) -> int:
        return len(self._order)

    def get_vaults(self, offset: int, limit: int) -> List[UserVault]:
        if offset < 0 or limit < 0:
            raise InvalidAmount(min(offset, limit), reason="offset and limit must be non-negative")
        owners = self._order[offset:offset + limit]
        return [self._vaults_by_owner[owner] for owner in owners]

    def get_all_vaults(self) -> List[UserVault]:
        return [self._vaults_by_owner[owner] for owner in self._order]

    # ------------------------------------------------------------------
    # Admin
    # ------------------------------------------------------------------

    @non_reentrant
    def set_creation_fee(self, caller: str, fee: int) -> None:
        self._require_admin(caller, "set the creation fee")
        if fee < 0:
            raise InvalidAmount(fee, reason="creation fee cannot be negative")
        previous, self._creation_fee = self._creation_fee, fee
        self._emit(EventType.CONFIG_CHANGED, setting="creation_fee", before=previous, after=fee)

    @non_reentrant
    def withdraw_fees(self, caller: str, recipient: str) -> int:
        self._require_admin(caller, "withdraw fees")
        if not recipient:
            raise InvalidAddress("recipient")
        amount = self._tokens.native_balance(self._account)
        if amount <= 0:
            raise InvalidAmount(amount, reason="no fees to withdraw")
        ensure_success("transfer_native", self._tokens.transfer_native(self._account, recipient, amount))
        self._emit(EventType.FEES_WITHDRAWN, recipient=recipient, amount=amount)
        return amount

    @non_reentrant
    def remove_vault(self, caller: str, owner: str) -> None:
        """Unregister ``owner``'s vault. The vault itself and its funds are untouched."""
        self._require_admin(caller, "remove vaults")
        vault = self._vaults_by_owner.pop(owner, None)
        if vault is None:
            raise VaultNotFound(owner)
        self._vaults_by_address.pop(vault.address, None)
        self._order.remove(owner)
        LOGGER.warning("vault %s of %s removed from registry", vault.address, owner)
        self._emit(EventType.VAULT_REMOVED, owner=owner, vault=vault.address)

    @non_reentrant
    def trust_executor(self, caller: str, executor: str) -> None:
        """Trust ``executor`` on every registered vault and on vaults created later."""
        self._require_admin(caller, "manage trusted executors")
        if not executor:
            raise InvalidAddress("executor")
        if executor not in self._trusted_executors:
            self._trusted_executors.append(executor)
        for vault in self.get_all_vaults():
            vault.add_trusted_executor(self._account, executor)

    @non_reentrant
    def untrust_executor(self, caller: str, executor: str) -> None:
        self._require_admin(caller, "manage trusted executors")
        if executor in self._trusted_executors:
            self._trusted_executors.remove(executor)
        for vault in self.get_all_vaults():
            vault.remove_trusted_executor(self._account, executor)

    def _require_admin(self, caller: str, action: str) -> None:
        if not self._auth.has(caller, Permission.ADMIN):
            raise Unauthorized(caller, action)

    def _emit(self, event_type: EventType, **data: object) -> None:
        if self._events is None:
            return
        self._events.emit(event_type, source=self._account, timestamp=self._clock(), **data)

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Sequence

from revaultron.models import PriceQuote


class TokenService(ABC):
    """Association, balances, allowances and transfers of fungible assets.

    Methods return a ``ResponseCode`` status instead of raising; callers turn
    non-success codes into ``ServiceCallFailed``. Native currency moves
    through ``transfer_native`` and is never associated.
    """

    @abstractmethod
    def associate(self, account: str, asset: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def dissociate(self, account: str, asset: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def transfer(self, asset: str, sender: str, recipient: str, amount: int, *, spender: str | None = None) -> int:
        """Move ``amount`` of ``asset``. A ``spender`` other than ``sender`` consumes allowance."""
        raise NotImplementedError

    @abstractmethod
    def balance_of(self, asset: str, account: str) -> tuple[int, int]:
        """Returns ``(status, balance)``."""
        raise NotImplementedError

    @abstractmethod
    def approve(self, asset: str, owner: str, spender: str, amount: int) -> int:
        raise NotImplementedError

    @abstractmethod
    def is_associated(self, account: str, asset: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def native_balance(self, account: str) -> int:
        raise NotImplementedError

    @abstractmethod
    def transfer_native(self, sender: str, recipient: str, amount: int) -> int:
        raise NotImplementedError


class PriceOracle(ABC):
    """Pull oracle: callers pay to push signed payloads, then read prices."""

    account: str

    @abstractmethod
    def get_update_fee(self, payloads: Sequence[bytes]) -> int:
        raise NotImplementedError

    @abstractmethod
    def update_price_feeds(self, payloads: Sequence[bytes], fee_paid: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def get_price_no_older_than(self, feed: str, max_age: int) -> PriceQuote:
        """Raises ``StalePrice`` when the latest price is older than ``max_age``."""
        raise NotImplementedError


class SwapVenue(ABC):
    """Exchange venue for one asset against another. Failures raise ``SwapFailed``."""

    account: str

    @abstractmethod
    def quote_out(self, asset_in: str, asset_out: str, amount_in: int) -> int:
        raise NotImplementedError

    @abstractmethod
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
        raise NotImplementedError

    def pair_exists(self, asset_a: str, asset_b: str) -> bool:
        return False

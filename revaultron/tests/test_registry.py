from __future__ import annotations

import pytest

from revaultron.errors import (
    InsufficientFee,
    InvalidAmount,
    ServiceCallFailed,
    Unauthorized,
    VaultAlreadyExists,
    VaultNotFound,
)
from revaultron.events import EventLog, EventType
from revaultron.registry import VaultFactory, derive_vault_address
from revaultron.services.memory import InMemoryTokenService
from revaultron.services.status import ResponseCode
from revaultron.simulation import SimulationClock

ADMIN = "admin"
FACTORY = "factory"
EXECUTOR = "executor"


def _make_factory(fee: int = 0, executors=(EXECUTOR,)):
    tokens = InMemoryTokenService()
    log = EventLog()
    factory = VaultFactory(
        tokens, ADMIN, FACTORY,
        event_log=log, clock=SimulationClock(),
        creation_fee=fee, trusted_executors=executors,
    )
    return factory, tokens, log


class TestCreateVault:
    def test_create_and_lookup(self) -> None:
        factory, _, log = _make_factory()
        vault = factory.create_vault("alice")

        assert vault.owner == "alice"
        assert vault.factory == FACTORY
        assert factory.get_vault("alice") is vault
        assert factory.has_vault("alice")
        assert factory.is_valid_vault(vault)
        assert factory.is_valid_vault(vault.address)
        assert factory.get_vault_count() == 1
        assert log.last(EventType.VAULT_CREATED).data["owner"] == "alice"

    def test_one_vault_per_owner(self) -> None:
        factory, _, _ = _make_factory()
        factory.create_vault("alice")
        with pytest.raises(VaultAlreadyExists):
            factory.create_vault("alice")

    def test_addresses_are_deterministic_and_distinct(self) -> None:
        first, _, _ = _make_factory()
        second, _, _ = _make_factory()
        a1 = first.create_vault("alice").address
        b1 = first.create_vault("bob").address
        a2 = second.create_vault("alice").address
        assert a1 == a2 == derive_vault_address(FACTORY, "alice", 0)
        assert a1 != b1
        assert a1.startswith("0x") and len(a1) == 42

    def test_new_vaults_trust_configured_executors(self) -> None:
        factory, _, _ = _make_factory()
        vault = factory.create_vault("alice")
        assert vault.is_trusted_executor(EXECUTOR)

    def test_only_the_fee_is_collected(self) -> None:
        factory, tokens, _ = _make_factory(fee=100)
        tokens.credit_native("alice", 1_000)
        factory.create_vault("alice", value=250)
        assert tokens.native_balance("alice") == 900
        assert tokens.native_balance(FACTORY) == 100

    def test_fee_must_be_covered(self) -> None:
        factory, tokens, _ = _make_factory(fee=100)
        tokens.credit_native("alice", 1_000)
        with pytest.raises(InsufficientFee):
            factory.create_vault("alice", value=99)
        assert not factory.has_vault("alice")
        assert tokens.native_balance("alice") == 1_000

    def test_failed_fee_transfer_creates_nothing(self) -> None:
        factory, tokens, _ = _make_factory(fee=100)
        tokens.credit_native("alice", 1_000)
        tokens.fail_next("transfer_native", ResponseCode.INSUFFICIENT_ACCOUNT_BALANCE)
        with pytest.raises(ServiceCallFailed):
            factory.create_vault("alice", value=250)
        assert not factory.has_vault("alice")
        assert tokens.native_balance("alice") == 1_000
        assert tokens.native_balance(FACTORY) == 0


class TestLookup:
    def test_unknown_owner(self) -> None:
        factory, _, _ = _make_factory()
        with pytest.raises(VaultNotFound):
            factory.get_vault("nobody")
        assert not factory.has_vault("nobody")
        assert not factory.is_valid_vault("0xdeadbeef")

    def test_pagination(self) -> None:
        factory, _, _ = _make_factory()
        owners = ["alice", "bob", "carol", "dave"]
        for owner in owners:
            factory.create_vault(owner)
        assert [v.owner for v in factory.get_vaults(1, 2)] == ["bob", "carol"]
        assert [v.owner for v in factory.get_vaults(3, 10)] == ["dave"]
        assert factory.get_vaults(10, 5) == []
        assert [v.owner for v in factory.get_all_vaults()] == owners
        with pytest.raises(InvalidAmount):
            factory.get_vaults(-1, 2)


class TestAdmin:
    def test_set_creation_fee(self) -> None:
        factory, _, _ = _make_factory()
        factory.set_creation_fee(ADMIN, 50)
        assert factory.creation_fee == 50
        with pytest.raises(Unauthorized):
            factory.set_creation_fee("alice", 0)
        with pytest.raises(InvalidAmount):
            factory.set_creation_fee(ADMIN, -1)

    def test_withdraw_fees(self) -> None:
        factory, tokens, log = _make_factory(fee=100)
        tokens.credit_native("alice", 100)
        factory.create_vault("alice", value=100)
        assert factory.withdraw_fees(ADMIN, "treasury") == 100
        assert tokens.native_balance("treasury") == 100
        assert log.last(EventType.FEES_WITHDRAWN).data == {"recipient": "treasury", "amount": 100}
        with pytest.raises(InvalidAmount):
            factory.withdraw_fees(ADMIN, "treasury")

    def test_remove_vault_unregisters_only(self) -> None:
        factory, _, _ = _make_factory()
        vault = factory.create_vault("alice")
        factory.remove_vault(ADMIN, "alice")
        assert not factory.has_vault("alice")
        assert not factory.is_valid_vault(vault)
        assert factory.get_vault_count() == 0
        assert vault.owner == "alice"
        with pytest.raises(VaultNotFound):
            factory.remove_vault(ADMIN, "alice")
        # The owner may create a fresh vault afterwards.
        assert factory.create_vault("alice").address != vault.address

    def test_trust_and_untrust_executor(self) -> None:
        factory, _, _ = _make_factory(executors=())
        vault = factory.create_vault("alice")
        factory.trust_executor(ADMIN, "exec-2")
        assert vault.is_trusted_executor("exec-2")
        assert factory.create_vault("bob").is_trusted_executor("exec-2")
        factory.untrust_executor(ADMIN, "exec-2")
        assert not vault.is_trusted_executor("exec-2")
        assert factory.trusted_executors == []
        with pytest.raises(Unauthorized):
            factory.trust_executor("alice", "alice")

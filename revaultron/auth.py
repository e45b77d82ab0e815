"""Explicit authorization table: principal -> set of permissions.

Each component receives its table at construction and consults it on every
call. There is no process-wide admin; a component's owner is whoever holds
``Permission.ADMIN`` in the table it was given.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Dict, List, Optional, Set

from revaultron.errors import InvalidAddress, Unauthorized
from revaultron.events import EventLog, EventType

LOGGER = logging.getLogger(__name__)


class Permission(str, Enum):
    ADMIN = "admin"
    AGENT = "agent"          # may trigger rebalancing
    UPDATER = "updater"      # may push volatility updates
    EXECUTOR = "executor"    # trusted to move funds out of / into a vault


class AuthorizationTable:
    """Grants are additive and only end through ``revoke``."""

    def __init__(
        self,
        grants: Dict[str, Set[Permission]] | None = None,
        *,
        name: str = "auth",
        event_log: EventLog | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._grants: Dict[str, Set[Permission]] = {
            principal: set(perms) for principal, perms in (grants or {}).items()
        }
        self._name = name
        self._event_log = event_log
        self._clock = clock

    @property
    def name(self) -> str:
        return self._name

    def attach(self, event_log: EventLog | None, clock: Callable[[], int]) -> None:
        """Route grant/revoke events to a component's log and clock."""
        if self._event_log is None:
            self._event_log = event_log
        if self._clock is None:
            self._clock = clock

    def has(self, principal: str, permission: Permission) -> bool:
        return permission in self._grants.get(principal, ())

    def require(self, principal: str, permission: Permission, action: str = "") -> None:
        if not self.has(principal, permission):
            raise Unauthorized(principal, action or permission.value)

    def require_any(self, principal: str, permissions: tuple[Permission, ...], action: str) -> None:
        if not any(self.has(principal, p) for p in permissions):
            raise Unauthorized(principal, action)

    def grant(self, principal: str, permission: Permission) -> bool:
        """Returns False when the grant already existed."""
        if not principal:
            raise InvalidAddress("principal")
        perms = self._grants.setdefault(principal, set())
        if permission in perms:
            return False
        perms.add(permission)
        self._emit(EventType.PERMISSION_GRANTED, principal, permission)
        return True

    def revoke(self, principal: str, permission: Permission) -> bool:
        perms = self._grants.get(principal)
        if not perms or permission not in perms:
            return False
        perms.discard(permission)
        if not perms:
            self._grants.pop(principal, None)
        self._emit(EventType.PERMISSION_REVOKED, principal, permission)
        return True

    def principals_with(self, permission: Permission) -> List[str]:
        return sorted(p for p, perms in self._grants.items() if permission in perms)

    def permissions_of(self, principal: str) -> Set[Permission]:
        return set(self._grants.get(principal, ()))

    def _emit(self, event_type: EventType, principal: str, permission: Permission) -> None:
        LOGGER.debug("%s %s %s on %s", event_type.value, principal, permission.value, self._name)
        if self._event_log is None:
            return
        now = self._clock() if self._clock is not None else 0
        self._event_log.emit(
            event_type,
            source=self._name,
            timestamp=now,
            principal=principal,
            permission=permission.value,
        )


def owned_table(
    owner: str,
    *,
    name: str,
    extra: Optional[Dict[str, Set[Permission]]] = None,
) -> AuthorizationTable:
    """Table whose only initial grant is ADMIN to ``owner`` (plus ``extra``)."""
    if not owner:
        raise InvalidAddress("owner")
    grants: Dict[str, Set[Permission]] = {owner: {Permission.ADMIN}}
    for principal, perms in (extra or {}).items():
        grants.setdefault(principal, set()).update(perms)
    return AuthorizationTable(grants, name=name)

"""Audit events emitted by vaults, the volatility index and the executor.

Events are appended to an in-process ``EventLog`` and echoed to the module
logger. Subscribers (exporters, tests) register a callback and receive every
event synchronously after it is appended.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

LOGGER = logging.getLogger(__name__)


class EventType(str, Enum):
    TOKEN_ASSOCIATED = "token_associated"
    TOKEN_DISSOCIATED = "token_dissociated"
    TOKEN_REMOVED = "token_removed"
    DEPOSITED = "deposited"
    WITHDRAWN = "withdrawn"
    HBAR_DEPOSITED = "hbar_deposited"
    HBAR_WITHDRAWN = "hbar_withdrawn"
    BALANCE_SYNCED = "balance_synced"
    EMERGENCY_RECOVERY = "emergency_recovery"
    EXECUTOR_TRUSTED = "executor_trusted"
    EXECUTOR_UNTRUSTED = "executor_untrusted"
    VOLATILITY_UPDATED = "volatility_updated"
    FEED_REMOVED = "feed_removed"
    ORACLE_UPDATED = "oracle_updated"
    FEE_REFUNDED = "fee_refunded"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_REVOKED = "permission_revoked"
    CONFIG_CHANGED = "config_changed"
    REBALANCE_EXECUTED = "rebalance_executed"
    REBALANCE_FAILED = "rebalance_failed"
    FUNDS_RETURNED = "funds_returned"
    VAULT_CREATED = "vault_created"
    VAULT_REMOVED = "vault_removed"
    FEES_WITHDRAWN = "fees_withdrawn"


@dataclass(frozen=True)
class Event:
    event_type: EventType
    source: str
    timestamp: int
    data: Dict[str, Any] = field(default_factory=dict)


class EventLog:
    """Append-only event sink shared by the components of one deployment."""

    def __init__(self) -> None:
        self._events: List[Event] = []
        self._subscribers: List[Callable[[Event], None]] = []

    def emit(
        self,
        event_type: EventType,
        source: str,
        timestamp: int,
        **data: Any,
    ) -> Event:
        event = Event(event_type=event_type, source=source, timestamp=timestamp, data=data)
        self._events.append(event)
        LOGGER.info("%s source=%s %s", event_type.value, source, data)
        for callback in self._subscribers:
            callback(event)
        return event

    def subscribe(self, callback: Callable[[Event], None]) -> None:
        self._subscribers.append(callback)

    def filter(self, event_type: EventType, source: Optional[str] = None) -> List[Event]:
        return [
            e for e in self._events
            if e.event_type == event_type and (source is None or e.source == source)
        ]

    def last(self, event_type: EventType | None = None) -> Event | None:
        for event in reversed(self._events):
            if event_type is None or event.event_type == event_type:
                return event
        return None

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self):
        return iter(list(self._events))

    def clear(self) -> None:
        self._events.clear()

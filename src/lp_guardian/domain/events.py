"""
Domain Events.

Events are immutable records of things that happened in the domain.
They are delivered synchronously to subscribers of the store that raised them
(audit sinks, alerting), never used for control flow.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """Base class for all domain events."""

    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def event_type(self) -> str:
        return self.__class__.__name__


@dataclass(frozen=True, slots=True)
class TradeQuarantined(DomainEvent):
    """Emitted when a PnL record fails its invariant check in permissive mode."""

    trade_id: str = ""
    entity: str = ""
    violation_type: str = ""
    net_pnl_usd: Decimal = Decimal("0")
    delta: Decimal = Decimal("0")


@dataclass(frozen=True, slots=True)
class PortfolioInconsistent(DomainEvent):
    """Emitted when tracked positions do not explain reported capital."""

    error_type: str = ""
    mismatch_usd: Decimal = Decimal("0")
    consecutive_violations: int = 0


EventHandler = Callable[[DomainEvent], None]

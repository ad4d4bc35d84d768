"""
Position Fee State Store.

Tracks fees accrued and rebalances per open trade, and derives the rolling
cost-amortization requirement from them:

    base      = entry * (entry_fee_rate + exit_fee_rate + slippage_rate)
    rebalance = rebalances * entry * (entry_fee_rate + exit_fee_rate) * share
    required  = (base + rebalance) * safety_multiplier
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from lp_guardian.config.settings import ExitGateSettings
from lp_guardian.domain.models import PositionFeeState
from lp_guardian.observability.logging import get_logger
from lp_guardian.utils.decimals import safe_decimal

logger = get_logger(__name__)


def cost_amortization_requirement(
    entry_notional_usd: Decimal,
    rebalance_count: int,
    settings: ExitGateSettings,
) -> Decimal:
    """Fees a position must accrue before leaving it is not a net loss."""
    round_trip = settings.entry_fee_rate + settings.exit_fee_rate
    base = entry_notional_usd * (round_trip + settings.slippage_rate)
    rebalance = rebalance_count * entry_notional_usd * round_trip * settings.rebalance_cost_share
    return (base + rebalance) * settings.cost_safety_multiplier


class FeeStateStore:
    """Trade-id keyed fee state. Created on open, deleted on close."""

    def __init__(
        self,
        settings: ExitGateSettings | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or ExitGateSettings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._states: dict[str, PositionFeeState] = {}

    def __len__(self) -> int:
        return len(self._states)

    def open(
        self,
        trade_id: str,
        entry_notional_usd: Decimal,
        entry_time: datetime | None = None,
    ) -> PositionFeeState:
        now = self._clock()
        state = PositionFeeState(
            trade_id=trade_id,
            entry_time=entry_time or now,
            entry_notional_usd=entry_notional_usd,
            last_update=now,
        )
        self._states[trade_id] = state
        return state

    def record_fees(self, trade_id: str, fees_usd: Any) -> PositionFeeState | None:
        """Add accrued fees. Raw telemetry values that do not parse add nothing."""
        state = self._states.get(trade_id)
        if state is None:
            logger.debug(f"Fee update for unknown trade {trade_id} ignored")
            return None
        state.cumulative_fees_usd += safe_decimal(fees_usd)
        state.last_update = self._clock()
        return state

    def record_rebalance(self, trade_id: str) -> PositionFeeState | None:
        state = self._states.get(trade_id)
        if state is None:
            logger.debug(f"Rebalance for unknown trade {trade_id} ignored")
            return None
        state.rebalance_count += 1
        state.last_update = self._clock()
        return state

    def get(self, trade_id: str) -> PositionFeeState | None:
        return self._states.get(trade_id)

    def close(self, trade_id: str) -> PositionFeeState | None:
        return self._states.pop(trade_id, None)

    def cost_requirement(self, trade_id: str) -> Decimal | None:
        state = self._states.get(trade_id)
        if state is None:
            return None
        return cost_amortization_requirement(
            state.entry_notional_usd, state.rebalance_count, self.settings
        )

    def fees_per_hour(self, trade_id: str, now: datetime | None = None) -> Decimal | None:
        state = self._states.get(trade_id)
        if state is None:
            return None
        held_seconds = Decimal(str(((now or self._clock()) - state.entry_time).total_seconds()))
        if held_seconds <= 0:
            return Decimal("0")
        return state.cumulative_fees_usd * Decimal("3600") / held_seconds

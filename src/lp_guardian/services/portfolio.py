"""
Portfolio Consistency Checker.

Once per cycle: the sum of tracked position notionals must explain the
deployed capital reported by the capital manager.

    sum      = Σ position.notional_usd
    mismatch = |sum - reported|
    consistent if mismatch <= max_mismatch_usd OR mismatch_pct <= max_mismatch_pct

Inconsistencies are always logged with the full position breakdown and only
raise in STRICT mode.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from decimal import Decimal

from lp_guardian.config.settings import PortfolioSettings
from lp_guardian.domain.errors import PortfolioConsistencyError
from lp_guardian.domain.events import EventHandler, PortfolioInconsistent
from lp_guardian.domain.models import (
    ConsistencyErrorType,
    PortfolioConsistencyResult,
    PortfolioSnapshot,
    PositionForConsistency,
    StrictnessMode,
)
from lp_guardian.observability.logging import LOG_TAG_PORTFOLIO, get_logger
from lp_guardian.observability.metrics import record_portfolio_check

logger = get_logger(__name__)


class PortfolioConsistencyChecker:
    """Compares tracked positions against reported deployed capital."""

    def __init__(
        self,
        settings: PortfolioSettings | None = None,
        mode: StrictnessMode = StrictnessMode.STRICT,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or PortfolioSettings()
        self.mode = mode
        self._clock = clock or (lambda: datetime.now(UTC))
        self._history: deque[PortfolioConsistencyResult] = deque(maxlen=self.settings.history_size)
        self._last_result: PortfolioConsistencyResult | None = None
        self._consecutive_violations = 0
        self._handlers: list[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        self._handlers.append(handler)

    @property
    def consecutive_violations(self) -> int:
        return self._consecutive_violations

    @property
    def last_result(self) -> PortfolioConsistencyResult | None:
        return self._last_result

    def check(
        self,
        positions: Iterable[PositionForConsistency],
        reported_deployed_usd: Decimal,
    ) -> PortfolioConsistencyResult:
        """
        Run the consistency check on a point-in-time copy of the positions.

        Raises:
            PortfolioConsistencyError: inconsistent and mode is STRICT
        """
        snapshot_positions = tuple(positions)
        total = sum((p.notional_usd for p in snapshot_positions), Decimal("0"))
        mismatch = abs(total - reported_deployed_usd)

        if reported_deployed_usd > 0:
            mismatch_pct = mismatch / reported_deployed_usd
        else:
            mismatch_pct = Decimal("1") if total > 0 else Decimal("0")

        consistent = (
            mismatch <= self.settings.max_mismatch_usd
            or mismatch_pct <= self.settings.max_mismatch_pct
        )

        snapshot = PortfolioSnapshot(
            sum_of_positions_usd=total,
            reported_deployed_usd=reported_deployed_usd,
            mismatch_usd=mismatch,
            mismatch_pct=mismatch_pct,
            position_count=len(snapshot_positions),
            consistent=consistent,
            timestamp=self._clock(),
        )

        error_type: ConsistencyErrorType | None = None
        error_message: str | None = None
        if not consistent:
            if total < reported_deployed_usd:
                error_type = ConsistencyErrorType.ORPHAN_CAPITAL
                error_message = (
                    f"Reported deployed ${reported_deployed_usd:.2f} exceeds positions "
                    f"${total:.2f}: capital without a position"
                )
            elif total > reported_deployed_usd:
                error_type = ConsistencyErrorType.MISSING_POSITIONS
                error_message = (
                    f"Positions ${total:.2f} exceed reported deployed "
                    f"${reported_deployed_usd:.2f}: capital not accounted for"
                )
            else:
                error_type = ConsistencyErrorType.MISMATCH
                error_message = f"Portfolio mismatch ${mismatch:.2f}"

        result = PortfolioConsistencyResult(
            consistent=consistent,
            snapshot=snapshot,
            error_type=error_type,
            error_message=error_message,
            positions=snapshot_positions,
        )

        self._history.append(result)
        self._last_result = result

        if consistent:
            self._consecutive_violations = 0
            record_portfolio_check(True, mismatch, 0)
            return result

        self._consecutive_violations += 1
        record_portfolio_check(False, mismatch, self._consecutive_violations, error_type.value)
        self._log_violation(result)
        self._publish(result)

        if self.mode == StrictnessMode.STRICT:
            raise PortfolioConsistencyError(
                error_message,
                error_type=error_type.value,
                mismatch_usd=mismatch,
            )
        return result

    def _log_violation(self, result: PortfolioConsistencyResult) -> None:
        s = result.snapshot
        breakdown = "\n".join(
            f"    {p.name or p.address[:8]} ({p.address}): ${p.notional_usd:.2f}"
            for p in result.positions
        )
        logger.error(
            f"{LOG_TAG_PORTFOLIO} CONSISTENCY VIOLATION {result.error_type.value} "
            f"(#{self._consecutive_violations} consecutive)\n"
            f"  positions={s.position_count} sum=${s.sum_of_positions_usd:.2f} "
            f"reported=${s.reported_deployed_usd:.2f}\n"
            f"  mismatch=${s.mismatch_usd:.2f} ({s.mismatch_pct * 100:.2f}%) "
            f"tolerance=${self.settings.max_mismatch_usd} / {self.settings.max_mismatch_pct * 100:.2f}%\n"
            f"  breakdown:\n{breakdown or '    (no positions)'}",
            extra={"error_code": result.error_type.value},
        )

    def _publish(self, result: PortfolioConsistencyResult) -> None:
        event = PortfolioInconsistent(
            error_type=result.error_type.value if result.error_type else "",
            mismatch_usd=result.snapshot.mismatch_usd,
            consecutive_violations=self._consecutive_violations,
        )
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Event handler failed for {event.event_type}: {e}")

    def history(self, limit: int | None = None) -> tuple[PortfolioConsistencyResult, ...]:
        """Oldest first; the most recent `limit` results when given."""
        items = tuple(self._history)
        return items[-limit:] if limit else items

    def is_consistent(self) -> bool:
        """True until a check says otherwise."""
        return self._last_result.consistent if self._last_result else True

    def reset(self) -> None:
        self._history.clear()
        self._last_result = None
        self._consecutive_violations = 0

"""
Exit Cycle Coordinator.

Owns the stateful stores and runs one scan cycle:

  1. evaluate every open position through the exit gate
  2. log decisions, throttled by the cooldown status carried in each decision
  3. check portfolio consistency on a point-in-time snapshot

Authorized exits are then settled with close_position(), which computes the
canonical PnL exactly once per trade, applies it to capital and releases the
position's fee state and cooldowns.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from lp_guardian.config.settings import Settings
from lp_guardian.domain.errors import ValidationError
from lp_guardian.domain.hold_policy import HoldPolicyDecision, describe_policy, evaluate_hold_policy
from lp_guardian.domain.models import (
    CanonicalPnLInput,
    CanonicalPnLRecord,
    CapitalApplication,
    EntityClass,
    ExitGateDecision,
    PnLDbFields,
    PortfolioConsistencyResult,
    PositionFeeState,
    PositionForConsistency,
)
from lp_guardian.domain.reasons import ExitReason
from lp_guardian.observability.logging import LOG_TAG_EXIT_GATE, get_logger
from lp_guardian.observability.metrics import record_gate_decision, track_gate_evaluation
from lp_guardian.services.cooldown import CooldownTracker
from lp_guardian.services.exit_gate import CycleCounters, ExitGateInput, ExitGatePipeline
from lp_guardian.services.fee_state import FeeStateStore
from lp_guardian.services.ledger import CanonicalPnLLedger
from lp_guardian.services.portfolio import PortfolioConsistencyChecker
from lp_guardian.utils.decimals import safe_decimal

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExitOutcome:
    """Everything downstream needs after a position is closed."""

    record: CanonicalPnLRecord
    capital: CapitalApplication
    db_fields: PnLDbFields | None


@dataclass
class CycleReport:
    decisions: dict[str, ExitGateDecision] = field(default_factory=dict)
    consistency: PortfolioConsistencyResult | None = None
    counters: CycleCounters = field(default_factory=CycleCounters)
    cooldowns_pruned: int = 0

    @property
    def allowed_trade_ids(self) -> list[str]:
        return [trade_id for trade_id, d in self.decisions.items() if d.allowed]


class ExitCycleCoordinator:
    """Single-threaded driver that ties the exit-decision components together."""

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(UTC))
        mode = settings.strictness_mode

        self.cooldowns = CooldownTracker(settings.cooldown, clock=clock)
        self.fee_states = FeeStateStore(settings.exit_gate, clock=clock)
        self.pipeline = ExitGatePipeline(settings, self.cooldowns, self.fee_states, clock=clock)
        self.ledger = CanonicalPnLLedger(settings.ledger, mode, clock=clock)
        self.portfolio = PortfolioConsistencyChecker(settings.portfolio, mode, clock=clock)

        # Trades whose close is running. Quarantine handlers run inside the ledger
        # before the record is cached, so a handler that closes the same trade
        # would otherwise compute its PnL twice.
        self._exits_in_progress: set[str] = set()

    def log_policy(self) -> None:
        """Log the emergency / hold policy once at startup."""
        policy = self.settings.hold_policy
        logger.info(f"{LOG_TAG_EXIT_GATE} mode={self.settings.strictness_mode.value}")
        for line in describe_policy(
            policy.min_hold_table(),
            min_tvl_usd=policy.min_tvl_usd,
            tvl_threshold_pct=policy.tvl_collapse_threshold_pct,
        ):
            logger.info(f"{LOG_TAG_EXIT_GATE} {line}")

    # =========================================================================
    # Position lifecycle
    # =========================================================================

    def open_position(
        self,
        trade_id: str,
        entry_notional_usd: Decimal,
        entry_time: datetime | None = None,
    ) -> PositionFeeState:
        return self.fee_states.open(trade_id, entry_notional_usd, entry_time)

    def close_position(
        self,
        inp: CanonicalPnLInput,
        current_capital_usd: Decimal,
    ) -> ExitOutcome:
        """
        Settle an authorized exit.

        The canonical PnL is computed at most once per trade: a repeated close
        for a trade that already has a record returns that record untouched
        and applies nothing.

        Raises:
            ValidationError: close already in progress (re-entered from a
                quarantine handler), or invalid PnL input
            InvariantViolationError: invariant failure in STRICT mode
        """
        trade_id = inp.trade_id
        if trade_id in self._exits_in_progress:
            raise ValidationError(f"Exit already in progress for {trade_id}", trade_id=trade_id)

        existing = self.ledger.get(trade_id)
        if existing is not None:
            logger.warning(f"{LOG_TAG_EXIT_GATE} {trade_id} already settled, not recomputing PnL")
            return ExitOutcome(
                record=existing,
                capital=CapitalApplication(
                    new_capital_usd=current_capital_usd,
                    adjustment_usd=Decimal("0"),
                    applied=False,
                    reason="ALREADY_SETTLED",
                ),
                db_fields=self.ledger.get_db_fields(trade_id),
            )

        self._exits_in_progress.add(trade_id)
        try:
            record = self.ledger.compute(inp)
            capital = self.ledger.apply_to_capital(trade_id, current_capital_usd)
            outcome = ExitOutcome(
                record=record,
                capital=capital,
                db_fields=self.ledger.get_db_fields(trade_id),
            )
        finally:
            self._exits_in_progress.discard(trade_id)

        self.fee_states.close(trade_id)
        self.cooldowns.clear(inp.entity)
        return outcome

    # =========================================================================
    # Exposed operations
    # =========================================================================

    def evaluate_exit_gate(self, inp: ExitGateInput, now: datetime | None = None) -> ExitGateDecision:
        with track_gate_evaluation():
            decision = self.pipeline.evaluate(inp, now)
        record_gate_decision(decision.category.value, decision.allowed)
        self._log_decision(inp, decision)
        return decision

    def evaluate_hold_policy(
        self,
        trade_id: str,
        reason: str | ExitReason,
        *,
        current_tvl_usd: Any,
        entry_tvl_usd: Any,
        decay_windows_observed: int,
        entity_class: EntityClass = EntityClass.UNCLASSIFIED,
        now: datetime | None = None,
    ) -> HoldPolicyDecision | None:
        """
        Run the combined hold policy for an open position.

        Entry time, fees per hour and the cost to pay back come from the
        fee-state store; thresholds come from settings.hold_policy. TVL values
        are raw telemetry and unparseable values count as zero.

        Returns None when the trade has no fee state.
        """
        state = self.fee_states.get(trade_id)
        if state is None:
            logger.debug(f"{LOG_TAG_EXIT_GATE} No fee state for {trade_id}, hold policy skipped")
            return None

        now = now or self._clock()
        policy = self.settings.hold_policy
        decision = evaluate_hold_policy(
            entry_time=state.entry_time,
            reason=reason,
            entry_cost_usd=self.fee_states.cost_requirement(trade_id),
            current_fees_per_hour=self.fee_states.fees_per_hour(trade_id, now),
            decay_windows_observed=decay_windows_observed,
            current_tvl=safe_decimal(current_tvl_usd),
            entry_tvl=safe_decimal(entry_tvl_usd),
            entity_class=entity_class,
            now=now,
            min_hold_table=policy.min_hold_table(),
            target_payback_hours=policy.target_payback_hours,
            required_decay_windows=policy.fee_velocity_decay_windows,
            min_tvl_usd=policy.min_tvl_usd,
            tvl_threshold_pct=policy.tvl_collapse_threshold_pct,
        )
        logger.debug(
            f"{LOG_TAG_EXIT_GATE} hold policy {trade_id}: {decision.category.value} "
            f"allowed={decision.allowed} {decision.reason}",
            extra={"trade_id": trade_id, "category": decision.category.value, "reason": decision.reason},
        )
        return decision

    def compute_canonical_pnl(self, inp: CanonicalPnLInput) -> CanonicalPnLRecord:
        return self.ledger.compute(inp)

    def get_db_fields(self, trade_id: str) -> PnLDbFields | None:
        return self.ledger.get_db_fields(trade_id)

    def apply_to_capital(self, trade_id: str, current_capital_usd: Decimal) -> CapitalApplication:
        return self.ledger.apply_to_capital(trade_id, current_capital_usd)

    def check_portfolio_consistency(
        self,
        positions: Iterable[PositionForConsistency],
        reported_deployed_usd: Decimal,
    ) -> PortfolioConsistencyResult:
        return self.portfolio.check(tuple(positions), reported_deployed_usd)

    # =========================================================================
    # Cycle
    # =========================================================================

    def run_cycle(
        self,
        signals: Iterable[ExitGateInput],
        positions: Iterable[PositionForConsistency],
        reported_deployed_usd: Decimal,
        now: datetime | None = None,
    ) -> CycleReport:
        """Evaluate every exit signal, then check the portfolio once."""
        self.pipeline.start_cycle()
        report = CycleReport()

        for inp in signals:
            report.decisions[inp.trade_id] = self.evaluate_exit_gate(inp, now)

        report.consistency = self.check_portfolio_consistency(positions, reported_deployed_usd)
        report.cooldowns_pruned = self.cooldowns.prune_expired(now)
        report.counters = self.pipeline.counters

        c = report.counters
        if c.evaluated:
            logger.info(
                f"{LOG_TAG_EXIT_GATE} cycle: evaluated={c.evaluated} allowed={c.allowed} "
                f"suppressed={c.suppressed} emergency={c.emergency}"
            )
        return report

    def _log_decision(self, inp: ExitGateInput, decision: ExitGateDecision) -> None:
        name = inp.entity_name or inp.entity
        details = decision.details
        extra = {
            "trade_id": inp.trade_id,
            "entity": inp.entity,
            "category": decision.category.value,
            "reason": decision.reason,
        }

        if decision.allowed:
            log = logger.warning if decision.category.is_emergency() else logger.info
            log(
                f"{LOG_TAG_EXIT_GATE} ALLOW {name} [{decision.category.value}] {decision.reason} "
                f"| hold={details.get('hold_time_min')}m tier={details.get('tier')}",
                extra=extra,
            )
            return

        cooldown = details.get("cooldown", {})
        message = (
            f"{LOG_TAG_EXIT_GATE} DENY {name} [{decision.category.value}] {decision.reason} "
            f"| hold={details.get('hold_time_min')}m min_hold={details.get('min_hold_min')}m "
            f"tier={details.get('tier')}"
        )
        if cooldown.get("on_cooldown"):
            message += f" | suppressed x{cooldown.get('suppression_count')}"

        if cooldown.get("should_log", True):
            logger.info(message, extra=extra)
        else:
            logger.debug(message, extra=extra)

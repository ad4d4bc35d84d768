"""
Exit Gate Pipeline.

Priority-ordered decision for one exit signal on one open position.
First match wins:

   1. True emergency reason                  -> allow  TRUE_EMERGENCY
   2. TVL collapse                           -> allow  TRUE_EMERGENCY
   3. Volume collapse                        -> allow  TRUE_EMERGENCY
   4. Emergency override (all conditions)    -> allow  EMERGENCY_OVERRIDE
   5. Rotation to a better-ranked pool       -> allow  ROTATION
   6. Health-triggered exit, min hold met    -> allow  HARMONIC
   7. Noise signal                           -> deny   SUPPRESSED_NOISE
   8. Bootstrap probe window                 -> deny   SUPPRESSED_BOOTSTRAP
   9. Min hold not met                       -> deny   SUPPRESSED_MIN_HOLD
  10. Cost amortization (informational only)
  11. Not on the valid-exit list             -> deny   BLOCKED
  12. Otherwise                              -> allow  COST_AMORTIZED / ALLOWED

Every deny registers with the CooldownTracker. The pipeline never logs: the
decision carries the cooldown status so the caller can throttle its output.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

from lp_guardian.config.settings import Settings
from lp_guardian.domain.amortization import (
    AmortizationGateInput,
    AmortizationGateResult,
    compute_amortization_gate,
)
from lp_guardian.domain.hold_policy import check_min_hold, check_tvl_collapse
from lp_guardian.domain.models import (
    EntityClass,
    ExitCategory,
    ExitGateDecision,
    SuppressionCause,
)
from lp_guardian.domain.reasons import ExitReason
from lp_guardian.services.cooldown import CooldownTracker
from lp_guardian.services.fee_state import FeeStateStore, cost_amortization_requirement
from lp_guardian.utils.decimals import elapsed_ms, ms_to_minutes


@dataclass(frozen=True)
class ExitGateInput:
    """Signals for one position at one cycle, already resolved by telemetry."""

    trade_id: str
    entity: str
    reason: ExitReason
    entry_time: datetime
    entry_notional_usd: Decimal
    entity_class: EntityClass = EntityClass.UNCLASSIFIED
    entity_name: str = ""

    # Cost amortization
    fees_accrued_usd: Decimal = Decimal("0")
    base_cost_target_usd: Decimal | None = None
    rebalance_count: int = 0

    # Liquidity (None = unknown)
    current_tvl_usd: Decimal | None = None
    entry_tvl_usd: Decimal | None = None
    current_volume_usd: Decimal | None = None
    entry_volume_usd: Decimal | None = None

    # Activity
    fee_velocity_usd_per_hour: Decimal | None = None
    expected_fee_velocity_usd_per_hour: Decimal | None = None
    zero_activity_minutes: int = 0

    # Health
    health_score: Decimal | None = None
    bad_samples: int = 0
    bad_samples_required: int = 0
    health_exit_triggered: bool = False

    # Rotation
    fee_yield_pct: Decimal | None = None
    entropy_collapsed: bool = False
    rank_delta: int = 0

    # Live telemetry for the decay weakness gate
    velocity_ratio: Decimal | None = None
    entropy_ratio: Decimal | None = None
    mtm_unrealized_pnl_pct: Decimal | None = None

    @property
    def is_health_case(self) -> bool:
        return self.health_exit_triggered or self.reason.is_health


@dataclass
class CycleCounters:
    """Decision counts for one scan cycle."""

    evaluated: int = 0
    allowed: int = 0
    suppressed: int = 0
    emergency: int = 0
    by_category: dict[str, int] = field(default_factory=dict)


class ExitGatePipeline:
    """Evaluates exit signals against the priority-ordered gate."""

    def __init__(
        self,
        settings: Settings,
        cooldowns: CooldownTracker,
        fee_states: FeeStateStore | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.gate = settings.exit_gate
        self.policy = settings.hold_policy
        self.decay_config = settings.amortization.to_decay_config()
        self.cooldowns = cooldowns
        self.fee_states = fee_states
        self._clock = clock or (lambda: datetime.now(UTC))
        self._min_hold_table = self.policy.min_hold_table()
        self._counters = CycleCounters()

    # =========================================================================
    # Cycle bookkeeping
    # =========================================================================

    @property
    def counters(self) -> CycleCounters:
        return self._counters

    def start_cycle(self) -> CycleCounters:
        """Reset per-cycle counters; returns the previous cycle's counts."""
        previous = self._counters
        self._counters = CycleCounters()
        return previous

    def _count(self, decision: ExitGateDecision) -> None:
        c = self._counters
        c.evaluated += 1
        if decision.allowed:
            c.allowed += 1
        else:
            c.suppressed += 1
        if decision.category.is_emergency():
            c.emergency += 1
        key = decision.category.value
        c.by_category[key] = c.by_category.get(key, 0) + 1

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate(self, inp: ExitGateInput, now: datetime | None = None) -> ExitGateDecision:
        now = now or self._clock()
        decision = self._decide(inp, now)
        self._count(decision)
        return decision

    def _decide(self, inp: ExitGateInput, now: datetime) -> ExitGateDecision:
        gate = self.gate
        reason = inp.reason
        hold_ms = elapsed_ms(inp.entry_time, now)
        hold_min = ms_to_minutes(hold_ms)
        details: dict[str, Any] = {
            "hold_time_min": hold_min.quantize(Decimal("0.1")),
            "tier": inp.entity_class.value,
            "reason_kind": reason.kind.value,
            "health_case": inp.is_health_case,
        }

        # 1. True emergency
        if reason.is_true_emergency:
            return self._allow(ExitCategory.TRUE_EMERGENCY, f"TRUE_EMERGENCY: {reason}", details)

        # 2. TVL collapse
        if inp.current_tvl_usd is not None:
            tvl = check_tvl_collapse(
                inp.current_tvl_usd,
                inp.entry_tvl_usd or Decimal("0"),
                min_tvl_usd=self.policy.min_tvl_usd,
                threshold_pct=self.policy.tvl_collapse_threshold_pct,
            )
            details["tvl_drop_pct"] = tvl.drop_pct
            if tvl.is_collapse:
                return self._allow(ExitCategory.TRUE_EMERGENCY, f"TVL_COLLAPSE: {tvl.reason}", details)

        # 3. Volume collapse
        if inp.current_volume_usd is not None and inp.entry_volume_usd:
            volume_drop = (inp.entry_volume_usd - inp.current_volume_usd) / inp.entry_volume_usd
            details["volume_drop_pct"] = volume_drop
            if volume_drop >= gate.volume_collapse_threshold_pct:
                return self._allow(
                    ExitCategory.TRUE_EMERGENCY,
                    f"VOLUME_COLLAPSE: {volume_drop * 100:.0f}% >= "
                    f"{gate.volume_collapse_threshold_pct * 100:.0f}%",
                    details,
                )

        # 4. Emergency override (bypasses min hold)
        if hold_min >= gate.override_min_hold_minutes:
            signals = self._override_signals(inp)
            details["override_signals"] = signals
            if all(signals.values()):
                return self._allow(
                    ExitCategory.EMERGENCY_OVERRIDE,
                    f"EMERGENCY_OVERRIDE: fee velocity, zero activity "
                    f"{inp.zero_activity_minutes}m, health {inp.health_score}",
                    details,
                )

        # 5. Rotation
        if gate.rotation_enabled and hold_min >= gate.rotation_min_hold_minutes:
            negligible_yield = (
                inp.fee_yield_pct is not None and inp.fee_yield_pct < gate.rotation_fee_yield_floor
            )
            better_alternative = inp.rank_delta >= gate.rotation_rank_delta_threshold
            if negligible_yield and inp.entropy_collapsed and better_alternative:
                return self._allow(
                    ExitCategory.ROTATION,
                    f"ROTATION_REPLACEMENT: yield {inp.fee_yield_pct} < {gate.rotation_fee_yield_floor}, "
                    f"rank delta {inp.rank_delta}",
                    details,
                )

        min_hold = check_min_hold(
            inp.entry_time,
            reason,
            inp.entity_class,
            now=now,
            min_hold_table=self._min_hold_table,
        )
        details["min_hold_min"] = min_hold.min_hold_minutes

        # 6. Health-triggered exit, only once min hold is met
        if inp.is_health_case and min_hold.allowed:
            return self._allow(ExitCategory.HARMONIC, f"HARMONIC_EXIT_TRIGGERED: {reason}", details)

        # 7. Noise
        if reason.is_not_emergency and not inp.is_health_case:
            return self._deny(
                inp,
                ExitCategory.SUPPRESSED_NOISE,
                SuppressionCause.NOISE_SIGNAL,
                f"NOISE_SIGNAL: {reason} is not an emergency",
                details,
                now,
            )

        # 8. Bootstrap probe window
        if gate.bootstrap_enabled and hold_min < gate.bootstrap_minutes:
            return self._deny(
                inp,
                ExitCategory.SUPPRESSED_BOOTSTRAP,
                SuppressionCause.BOOTSTRAP_MODE,
                f"BOOTSTRAP_MODE: {hold_min:.1f}m < {gate.bootstrap_minutes}m probe window",
                details,
                now,
            )

        # 9. Min hold
        if not min_hold.allowed:
            return self._deny(
                inp,
                ExitCategory.SUPPRESSED_MIN_HOLD,
                SuppressionCause.MIN_HOLD_NOT_MET,
                min_hold.reason,
                details,
                now,
            )

        # 10. Cost amortization (informational only)
        amortization = self._amortization(inp, hold_ms)
        details["amortization"] = {
            "allow_exit": amortization.allow_exit,
            "effective_cost_target_usd": amortization.effective_cost_target_usd,
            "reason": amortization.reason,
            **amortization.debug.to_dict(),
        }

        # 11. Valid exit list
        if not reason.is_valid_exit and not inp.is_health_case:
            return self._deny(
                inp,
                ExitCategory.BLOCKED,
                SuppressionCause.INVALID_EXIT_TYPE,
                f"INVALID_EXIT_TYPE: {reason} is not a valid exit",
                details,
                now,
            )

        # 12. Allowed
        if amortization.allow_exit:
            return self._allow(ExitCategory.COST_AMORTIZED, f"{amortization.reason}: {reason}", details)
        return self._allow(ExitCategory.ALLOWED, f"ALLOWED: {reason}", details)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _override_signals(self, inp: ExitGateInput) -> dict[str, bool]:
        gate = self.gate
        velocity_collapsed = (
            inp.fee_velocity_usd_per_hour is not None
            and inp.expected_fee_velocity_usd_per_hour is not None
            and inp.expected_fee_velocity_usd_per_hour > 0
            and inp.fee_velocity_usd_per_hour
            < inp.expected_fee_velocity_usd_per_hour * gate.override_fee_velocity_floor_ratio
        )
        return {
            "fee_velocity_collapsed": velocity_collapsed,
            "zero_activity": inp.zero_activity_minutes >= gate.override_zero_activity_minutes,
            "health_below_floor": (
                inp.health_score is not None and inp.health_score < gate.override_health_floor
            ),
        }

    def _amortization(self, inp: ExitGateInput, hold_ms: int) -> AmortizationGateResult:
        fees = inp.fees_accrued_usd
        base = inp.base_cost_target_usd
        state = self.fee_states.get(inp.trade_id) if self.fee_states else None
        if state is not None:
            fees = max(fees, state.cumulative_fees_usd)
            if base is None:
                base = cost_amortization_requirement(
                    state.entry_notional_usd, state.rebalance_count, self.gate
                )
        if base is None:
            base = cost_amortization_requirement(
                inp.entry_notional_usd, inp.rebalance_count, self.gate
            )

        return compute_amortization_gate(
            AmortizationGateInput(
                base_cost_target_usd=base,
                fees_accrued_usd=fees,
                hold_time_ms=hold_ms,
                notional_usd=inp.entry_notional_usd,
                health_score=inp.health_score if inp.health_score is not None else Decimal("1"),
                bad_samples=inp.bad_samples,
                bad_samples_required=inp.bad_samples_required,
                harmonic_exit_triggered=inp.is_health_case,
                velocity_ratio=inp.velocity_ratio,
                entropy_ratio=inp.entropy_ratio,
                mtm_unrealized_pnl_pct=inp.mtm_unrealized_pnl_pct,
            ),
            self.decay_config,
        )

    @staticmethod
    def _allow(category: ExitCategory, reason: str, details: dict[str, Any]) -> ExitGateDecision:
        return ExitGateDecision(allowed=True, category=category, reason=reason, details=details)

    def _deny(
        self,
        inp: ExitGateInput,
        category: ExitCategory,
        cause: SuppressionCause,
        reason: str,
        details: dict[str, Any],
        now: datetime,
    ) -> ExitGateDecision:
        status = self.cooldowns.check(inp.entity, inp.reason, now)
        self.cooldowns.record(inp.entity, inp.reason, cause, now)
        details["suppression_cause"] = cause.value
        details["cooldown"] = {
            "on_cooldown": status.on_cooldown,
            "should_log": status.should_log,
            "suppression_count": status.suppression_count,
            "remaining_ms": status.remaining_ms,
        }
        return ExitGateDecision(allowed=False, category=category, reason=reason, details=details)

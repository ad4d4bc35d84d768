"""
Emergency / Minimum-Hold Policy.

Pure functions that decide whether an exit reason is an existential threat
(bypasses every gate) or ordinary noise (must respect the minimum hold).

TRUE EMERGENCIES (bypass min hold):
  - Pool migration / deprecation / closure
  - TVL collapse (drop past threshold or below an absolute floor)
  - Decimals / mint inconsistency
  - On-chain failure or revert loop
  - Rug pull / freeze or mint authority signals
  - Ledger / capital / infrastructure failure

NOT EMERGENCIES (respect min hold):
  - Score / MHI drops, regime changes, velocity dips
  - Fee bleed, harmonic and microstructure signals
  - Ranking-based kill signals, temporary slowdowns
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum

from lp_guardian.domain.models import EntityClass
from lp_guardian.domain.reasons import ExitReason
from lp_guardian.utils.decimals import elapsed_ms, ms_to_minutes

# =============================================================================
# Defaults
# =============================================================================
MIN_HOLD_MINUTES: dict[EntityClass, int] = {
    EntityClass.CLASS_A: 90,
    EntityClass.CLASS_B: 60,
    EntityClass.UNCLASSIFIED: 60,
}
TARGET_PAYBACK_HOURS = Decimal("4")
REQUIRED_DECAY_WINDOWS = 3
MIN_TVL_USD = Decimal("10000")
TVL_COLLAPSE_THRESHOLD_PCT = Decimal("0.50")


class PolicyCategory(str, Enum):
    """Which check of the combined policy produced the outcome."""

    TVL_COLLAPSE = "TVL_COLLAPSE"
    TRUE_EMERGENCY = "TRUE_EMERGENCY"
    MIN_HOLD = "MIN_HOLD"
    FEE_AMORTIZATION = "FEE_AMORTIZATION"


@dataclass(frozen=True)
class MinHoldResult:
    allowed: bool
    hold_time_minutes: Decimal
    min_hold_minutes: int
    reason: str


@dataclass(frozen=True)
class FeeAmortizationResult:
    allowed: bool
    fees_per_hour: Decimal
    entry_cost_usd: Decimal
    required_fees_per_hour: Decimal
    decay_windows_observed: int
    decay_windows_required: int
    reason: str


@dataclass(frozen=True)
class TvlCollapseResult:
    is_collapse: bool
    drop_pct: Decimal
    reason: str


@dataclass(frozen=True)
class HoldPolicyDecision:
    """Outcome of the combined policy evaluation."""

    allowed: bool
    category: PolicyCategory
    reason: str
    tvl_check: TvlCollapseResult
    min_hold_check: MinHoldResult | None = None
    fee_amortization_check: FeeAmortizationResult | None = None


# =============================================================================
# Classification
# =============================================================================


def is_true_emergency(reason: str | ExitReason) -> bool:
    """Reason is an existential threat to the position."""
    return ExitReason.parse(reason).is_true_emergency


def is_not_emergency(reason: str | ExitReason) -> bool:
    """Reason is a signal that must never bypass the minimum hold."""
    return ExitReason.parse(reason).is_not_emergency


def min_hold_minutes_for(
    entity_class: EntityClass,
    table: dict[EntityClass, int] | None = None,
) -> int:
    table = table or MIN_HOLD_MINUTES
    return table.get(entity_class, table.get(EntityClass.UNCLASSIFIED, 60))


# =============================================================================
# Checks
# =============================================================================


def check_min_hold(
    entry_time: datetime,
    reason: str | ExitReason,
    entity_class: EntityClass = EntityClass.UNCLASSIFIED,
    *,
    now: datetime | None = None,
    min_hold_table: dict[EntityClass, int] | None = None,
) -> MinHoldResult:
    """
    HARD RULE: no exit of any kind before the class minimum hold,
    except a true emergency.
    """
    now = now or datetime.now(UTC)
    hold_time_minutes = ms_to_minutes(elapsed_ms(entry_time, now))
    min_hold = min_hold_minutes_for(entity_class, min_hold_table)

    if is_true_emergency(reason):
        return MinHoldResult(True, hold_time_minutes, min_hold, "TRUE_EMERGENCY_BYPASS")

    if hold_time_minutes < min_hold:
        return MinHoldResult(
            False,
            hold_time_minutes,
            min_hold,
            f"MIN_HOLD_NOT_MET: {hold_time_minutes:.1f}m < {min_hold}m",
        )

    return MinHoldResult(True, hold_time_minutes, min_hold, "MIN_HOLD_SATISFIED")


def check_fee_amortization_gate(
    entry_cost_usd: Decimal,
    current_fees_per_hour: Decimal,
    decay_windows_observed: int,
    *,
    target_payback_hours: Decimal = TARGET_PAYBACK_HOURS,
    required_decay_windows: int = REQUIRED_DECAY_WINDOWS,
) -> FeeAmortizationResult:
    """
    Allow a fee-driven exit only after fee velocity has stayed below the
    payback requirement for enough consecutive windows.
    """
    required = entry_cost_usd / target_payback_hours

    def result(allowed: bool, reason: str) -> FeeAmortizationResult:
        return FeeAmortizationResult(
            allowed=allowed,
            fees_per_hour=current_fees_per_hour,
            entry_cost_usd=entry_cost_usd,
            required_fees_per_hour=required,
            decay_windows_observed=decay_windows_observed,
            decay_windows_required=required_decay_windows,
            reason=reason,
        )

    if current_fees_per_hour >= required:
        return result(
            False,
            f"FEE_VELOCITY_OK: ${current_fees_per_hour:.4f}/h >= ${required:.4f}/h required",
        )
    if decay_windows_observed < required_decay_windows:
        return result(
            False,
            f"DECAY_WINDOWS_INSUFFICIENT: {decay_windows_observed}/{required_decay_windows} windows",
        )
    return result(True, "FEE_VELOCITY_DECAYED_CONSISTENTLY")


def check_tvl_collapse(
    current_tvl: Decimal,
    entry_tvl: Decimal,
    *,
    min_tvl_usd: Decimal = MIN_TVL_USD,
    threshold_pct: Decimal = TVL_COLLAPSE_THRESHOLD_PCT,
) -> TvlCollapseResult:
    """Collapse if TVL is under the absolute floor or dropped past the threshold."""
    drop_pct = (entry_tvl - current_tvl) / entry_tvl if entry_tvl > 0 else Decimal("0")

    if current_tvl < min_tvl_usd:
        return TvlCollapseResult(
            True, drop_pct, f"TVL_BELOW_MINIMUM: ${current_tvl:.0f} < ${min_tvl_usd:.0f}"
        )
    if drop_pct >= threshold_pct:
        return TvlCollapseResult(
            True,
            drop_pct,
            f"TVL_DROPPED: {drop_pct * 100:.0f}% >= {threshold_pct * 100:.0f}% threshold",
        )
    return TvlCollapseResult(False, drop_pct, "TVL_STABLE")


# =============================================================================
# Combined Policy
# =============================================================================


def evaluate_hold_policy(
    *,
    entry_time: datetime,
    reason: str | ExitReason,
    entry_cost_usd: Decimal,
    current_fees_per_hour: Decimal,
    decay_windows_observed: int,
    current_tvl: Decimal,
    entry_tvl: Decimal,
    entity_class: EntityClass = EntityClass.UNCLASSIFIED,
    now: datetime | None = None,
    min_hold_table: dict[EntityClass, int] | None = None,
    target_payback_hours: Decimal = TARGET_PAYBACK_HOURS,
    required_decay_windows: int = REQUIRED_DECAY_WINDOWS,
    min_tvl_usd: Decimal = MIN_TVL_USD,
    tvl_threshold_pct: Decimal = TVL_COLLAPSE_THRESHOLD_PCT,
) -> HoldPolicyDecision:
    """
    TVL collapse -> true emergency -> minimum hold -> fee amortization.

    Short-circuits on the first decisive check and reports which one it was.
    """
    reason = ExitReason.parse(reason)

    tvl = check_tvl_collapse(
        current_tvl, entry_tvl, min_tvl_usd=min_tvl_usd, threshold_pct=tvl_threshold_pct
    )
    if tvl.is_collapse:
        return HoldPolicyDecision(True, PolicyCategory.TVL_COLLAPSE, tvl.reason, tvl)

    if reason.is_true_emergency:
        return HoldPolicyDecision(
            True, PolicyCategory.TRUE_EMERGENCY, f"TRUE_EMERGENCY: {reason}", tvl
        )

    min_hold = check_min_hold(
        entry_time, reason, entity_class, now=now, min_hold_table=min_hold_table
    )
    if not min_hold.allowed:
        return HoldPolicyDecision(
            False, PolicyCategory.MIN_HOLD, min_hold.reason, tvl, min_hold_check=min_hold
        )

    fee_gate = check_fee_amortization_gate(
        entry_cost_usd,
        current_fees_per_hour,
        decay_windows_observed,
        target_payback_hours=target_payback_hours,
        required_decay_windows=required_decay_windows,
    )
    return HoldPolicyDecision(
        allowed=fee_gate.allowed,
        category=PolicyCategory.FEE_AMORTIZATION,
        reason="FEE_VELOCITY_DECAY_EXIT" if fee_gate.allowed else fee_gate.reason,
        tvl_check=tvl,
        min_hold_check=min_hold,
        fee_amortization_check=fee_gate,
    )


def describe_policy(
    min_hold_table: dict[EntityClass, int] | None = None,
    *,
    min_tvl_usd: Decimal = MIN_TVL_USD,
    tvl_threshold_pct: Decimal = TVL_COLLAPSE_THRESHOLD_PCT,
) -> list[str]:
    """Human-readable policy summary, logged once at startup."""
    table = min_hold_table or MIN_HOLD_MINUTES
    return [
        "TRUE EMERGENCIES (bypass min hold):",
        "  - Pool migration/deprecation",
        f"  - TVL collapse (>{tvl_threshold_pct * 100:.0f}% drop or <${min_tvl_usd:.0f})",
        "  - Decimals/mint inconsistency",
        "  - On-chain failure/revert loop",
        "  - Rug pull / freeze authority used",
        "MIN HOLD BY CLASS: "
        + ", ".join(f"{cls.value}={minutes}m" for cls, minutes in table.items()),
        "NOT EMERGENCIES (respect min hold):",
        "  - Score/MHI drops",
        "  - Regime changes",
        "  - Velocity dips",
        "  - Fee velocity underperformance",
        "  - Any ranking-based signal",
        "  - Temporary slowdowns (noise)",
    ]

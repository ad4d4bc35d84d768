"""
Cost Amortization Decay: time-based relaxation of the cost target.

A position is normally held until accrued fees clear the cost of entering and
leaving it. When the position is clearly failing that target should relax over
time, so capital is not trapped behind a number it can no longer reach.

DECAY POLICY:
  - Never decay before min_decay_age (60 minutes)
  - Never reduce the target below the absolute floor
  - Never reduce more than 85% (min_base_target_pct = 15%)
  - Missing telemetry decays slower, never faster

WEAKNESS GATE (decay only if ALL true):
  - a forced/health exit signal has already triggered
  - health_score <= 0.50 OR bad_samples >= bad_samples_required
  - at least one live signal degraded (velocity ratio, entropy ratio, MTM drift);
    with no live signal at all the gate holds at the slower half-life

DECAY FUNCTION:
  t = hold_time - min_decay_age
  decay_factor = max(min_base_target_pct, 0.5 ** (t / half_life))
  effective = max(floor, base * decay_factor)
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from lp_guardian.utils.decimals import MS_PER_MINUTE, ms_to_minutes

ONE = Decimal("1")
HALF = Decimal("0.5")

REASON_COST_AMORTIZED = "COST_AMORTIZED"
REASON_DECAY_OVERRIDE = "AMORT_DECAY_OVERRIDE"
REASON_NOT_AMORTIZED = "COST_NOT_AMORTIZED"


@dataclass(frozen=True)
class DecayConfig:
    """Decay tuning. Durations in minutes, floors in USD / fractions."""

    enabled: bool = True
    min_decay_age_minutes: int = 60
    halflife_strong_minutes: int = 120
    halflife_weak_minutes: int = 240
    floor_usd_min: Decimal = Decimal("0.15")
    floor_notional_bps: Decimal = Decimal("0.5")
    min_base_target_pct: Decimal = Decimal("0.15")
    weakness_health_threshold: Decimal = Decimal("0.50")
    weakness_velocity_threshold: Decimal = Decimal("0.20")
    weakness_entropy_threshold: Decimal = Decimal("0.35")
    weakness_mtm_pnl_pct_threshold: Decimal = Decimal("-0.0020")

    @property
    def min_decay_age_ms(self) -> int:
        return self.min_decay_age_minutes * MS_PER_MINUTE

    @property
    def floor_notional_fraction(self) -> Decimal:
        return self.floor_notional_bps / Decimal("10000")


@dataclass(frozen=True)
class AmortizationGateInput:
    base_cost_target_usd: Decimal
    fees_accrued_usd: Decimal
    hold_time_ms: int
    notional_usd: Decimal
    health_score: Decimal = ONE
    bad_samples: int = 0
    bad_samples_required: int = 0
    # Forced/health exit already triggered upstream
    harmonic_exit_triggered: bool = False
    # Live telemetry, None when unknown
    velocity_ratio: Decimal | None = None
    entropy_ratio: Decimal | None = None
    mtm_unrealized_pnl_pct: Decimal | None = None


@dataclass(frozen=True)
class AmortizationGateDebug:
    base_cost_target_usd: Decimal
    decay_factor: Decimal
    decay_age_min: Decimal
    weakness_gate: bool
    half_life_min: int
    telemetry_known: bool
    weakness_signals: tuple[str, ...]
    floor_usd: Decimal
    amort_decay_applied: bool
    hold_time_min: Decimal
    health_score: Decimal

    def to_dict(self) -> dict[str, Any]:
        return {
            "base_cost_target_usd": self.base_cost_target_usd,
            "decay_factor": self.decay_factor,
            "decay_age_min": self.decay_age_min,
            "weakness_gate": self.weakness_gate,
            "half_life_min": self.half_life_min,
            "telemetry_known": self.telemetry_known,
            "weakness_signals": list(self.weakness_signals),
            "floor_usd": self.floor_usd,
            "amort_decay_applied": self.amort_decay_applied,
            "hold_time_min": self.hold_time_min,
            "health_score": self.health_score,
        }


@dataclass(frozen=True)
class AmortizationGateResult:
    allow_exit: bool
    effective_cost_target_usd: Decimal
    reason: str
    debug: AmortizationGateDebug


@dataclass(frozen=True)
class WeaknessGate:
    satisfied: bool
    signals: tuple[str, ...]
    telemetry_known: bool


def evaluate_weakness_gate(inp: AmortizationGateInput, config: DecayConfig) -> WeaknessGate:
    signals: list[str] = []
    telemetry_known = False

    if inp.velocity_ratio is not None:
        telemetry_known = True
        if inp.velocity_ratio <= config.weakness_velocity_threshold:
            signals.append(f"velocityRatio={inp.velocity_ratio:.2f}")
    if inp.entropy_ratio is not None:
        telemetry_known = True
        if inp.entropy_ratio <= config.weakness_entropy_threshold:
            signals.append(f"entropyRatio={inp.entropy_ratio:.2f}")
    if inp.mtm_unrealized_pnl_pct is not None:
        telemetry_known = True
        if inp.mtm_unrealized_pnl_pct <= config.weakness_mtm_pnl_pct_threshold:
            signals.append(f"mtmPnlPct={inp.mtm_unrealized_pnl_pct * 100:.2f}%")

    health_poor = inp.health_score <= config.weakness_health_threshold
    bad_samples_met = inp.bad_samples_required > 0 and inp.bad_samples >= inp.bad_samples_required
    if health_poor:
        signals.append(f"health={inp.health_score:.2f}")
    if bad_samples_met:
        signals.append(f"badSamples={inp.bad_samples}/{inp.bad_samples_required}")

    telemetry_weak = any(
        s.startswith(("velocityRatio", "entropyRatio", "mtmPnlPct")) for s in signals
    )
    satisfied = (
        inp.harmonic_exit_triggered
        and (health_poor or bad_samples_met)
        and (telemetry_weak or not telemetry_known)
    )
    return WeaknessGate(bool(satisfied), tuple(signals), telemetry_known)


def compute_amortization_gate(
    inp: AmortizationGateInput,
    config: DecayConfig | None = None,
) -> AmortizationGateResult:
    """Decide whether accrued fees clear the (possibly decayed) cost target."""
    config = config or DecayConfig()
    hold_time_min = ms_to_minutes(inp.hold_time_ms)
    floor_usd = max(config.floor_usd_min, config.floor_notional_fraction * inp.notional_usd)

    if not config.enabled:
        allow = inp.fees_accrued_usd >= inp.base_cost_target_usd
        reason = REASON_COST_AMORTIZED if allow else REASON_NOT_AMORTIZED
        return AmortizationGateResult(
            allow_exit=allow,
            effective_cost_target_usd=inp.base_cost_target_usd,
            reason=f"{reason} (decay disabled)",
            debug=AmortizationGateDebug(
                base_cost_target_usd=inp.base_cost_target_usd,
                decay_factor=ONE,
                decay_age_min=Decimal("0"),
                weakness_gate=False,
                half_life_min=config.halflife_weak_minutes,
                telemetry_known=False,
                weakness_signals=(),
                floor_usd=floor_usd,
                amort_decay_applied=False,
                hold_time_min=hold_time_min,
                health_score=inp.health_score,
            ),
        )

    gate = evaluate_weakness_gate(inp, config)
    decay_factor = ONE
    half_life_min = config.halflife_weak_minutes
    decay_age_ms = max(0, inp.hold_time_ms - config.min_decay_age_ms)

    if inp.hold_time_ms >= config.min_decay_age_ms and gate.satisfied:
        if gate.telemetry_known:
            half_life_min = config.halflife_strong_minutes
        half_life_ms = Decimal(half_life_min * MS_PER_MINUTE)
        decay_factor = HALF ** (Decimal(decay_age_ms) / half_life_ms)
        decay_factor = max(config.min_base_target_pct, decay_factor)

    amort_decay_applied = decay_factor < ONE
    effective = max(floor_usd, inp.base_cost_target_usd * decay_factor)
    allow = inp.fees_accrued_usd >= effective

    if not allow:
        reason = REASON_NOT_AMORTIZED
    elif amort_decay_applied and inp.fees_accrued_usd < inp.base_cost_target_usd:
        reason = REASON_DECAY_OVERRIDE
    else:
        reason = REASON_COST_AMORTIZED

    return AmortizationGateResult(
        allow_exit=allow,
        effective_cost_target_usd=effective,
        reason=reason,
        debug=AmortizationGateDebug(
            base_cost_target_usd=inp.base_cost_target_usd,
            decay_factor=decay_factor,
            decay_age_min=ms_to_minutes(decay_age_ms),
            weakness_gate=gate.satisfied,
            half_life_min=half_life_min,
            telemetry_known=gate.telemetry_known,
            weakness_signals=gate.signals,
            floor_usd=floor_usd,
            amort_decay_applied=amort_decay_applied,
            hold_time_min=hold_time_min,
            health_score=inp.health_score,
        ),
    )

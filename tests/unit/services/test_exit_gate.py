"""
Unit tests for the exit gate pipeline.

Priority order is absolute: the first matching stage decides.
"""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from lp_guardian.config.settings import ExitGateSettings, Settings
from lp_guardian.domain.models import EntityClass, ExitCategory
from lp_guardian.domain.reasons import ExitReason
from lp_guardian.services.cooldown import CooldownTracker
from lp_guardian.services.exit_gate import ExitGateInput, ExitGatePipeline
from lp_guardian.services.fee_state import FeeStateStore

pytestmark = pytest.mark.unit


def build_pipeline(settings: Settings, clock) -> ExitGatePipeline:
    return ExitGatePipeline(
        settings,
        CooldownTracker(settings.cooldown, clock=clock),
        FeeStateStore(settings.exit_gate, clock=clock),
        clock=clock,
    )


@pytest.fixture
def pipeline(settings, clock) -> ExitGatePipeline:
    return build_pipeline(settings, clock)


@pytest.fixture
def no_bootstrap(clock) -> ExitGatePipeline:
    """Bootstrap probe window disabled so later stages are reachable."""
    settings = Settings(env="test", exit_gate=ExitGateSettings(bootstrap_enabled=False))
    return build_pipeline(settings, clock)


@pytest.fixture
def signal(base_time: datetime):
    def make(reason: str, held_minutes: float, **overrides) -> ExitGateInput:
        params = dict(
            trade_id="trade-1",
            entity="pool-a",
            reason=ExitReason.parse(reason),
            entry_time=base_time - timedelta(minutes=held_minutes),
            entry_notional_usd=Decimal("1000"),
        )
        params.update(overrides)
        return ExitGateInput(**params)

    return make


class TestEmergencies:
    """Stages 1-4 bypass every hold rule."""

    def test_emergency_beats_noise_in_same_reason(self, pipeline, signal):
        decision = pipeline.evaluate(signal("SCORE_DROP_AND_RUG_PULL", 1))
        assert decision.allowed
        assert decision.category == ExitCategory.TRUE_EMERGENCY

    @pytest.mark.parametrize(
        "raw",
        [
            "HARMONIC_EXIT_TRIGGERED + POOL_MIGRATION",
            "EMERGENCY_OVERRIDE: TVL_COLLAPSE_80PCT",
            "ROTATION aborted: RUG_PULL detected",
            "FEE_VELOCITY_DECAY / FREEZE_AUTHORITY",
            "KILL_SWITCH_MARKET_FAILURE after ONCHAIN_REVERT",
            "MHI_DROP with LEDGER_CORRUPTION",
        ],
    )
    def test_emergency_token_wins_over_any_other_token(self, pipeline, signal, raw):
        decision = pipeline.evaluate(signal(raw, 5))
        assert decision.allowed
        assert decision.category == ExitCategory.TRUE_EMERGENCY

    def test_tvl_collapse_with_noise_reason(self, pipeline, signal):
        decision = pipeline.evaluate(
            signal("SCORE_DROP", 5, current_tvl_usd=Decimal("4000"), entry_tvl_usd=Decimal("10000"))
        )
        assert decision.category == ExitCategory.TRUE_EMERGENCY
        assert decision.reason.startswith("TVL_COLLAPSE")
        assert decision.details["tvl_drop_pct"] == Decimal("0.6")

    def test_volume_collapse(self, pipeline, signal):
        decision = pipeline.evaluate(
            signal("VELOCITY_DIP", 5, current_volume_usd=Decimal("200"), entry_volume_usd=Decimal("1000"))
        )
        assert decision.category == ExitCategory.TRUE_EMERGENCY
        assert decision.reason.startswith("VOLUME_COLLAPSE")

    def test_emergency_override_requires_all_conditions(self, pipeline, signal):
        overrides = dict(
            fee_velocity_usd_per_hour=Decimal("0.1"),
            expected_fee_velocity_usd_per_hour=Decimal("1"),
            zero_activity_minutes=12,
            health_score=Decimal("0.30"),
        )
        decision = pipeline.evaluate(signal("FEE_VELOCITY_LOW", 15, **overrides))
        assert decision.allowed
        assert decision.category == ExitCategory.EMERGENCY_OVERRIDE

        overrides["health_score"] = Decimal("0.50")
        decision = pipeline.evaluate(signal("FEE_VELOCITY_LOW", 15, **overrides))
        assert not decision.allowed
        assert decision.category == ExitCategory.SUPPRESSED_NOISE
        assert decision.details["override_signals"]["health_below_floor"] is False

    def test_emergency_override_waits_for_minimum_hold(self, pipeline, signal):
        decision = pipeline.evaluate(
            signal(
                "FEE_VELOCITY_LOW",
                5,
                fee_velocity_usd_per_hour=Decimal("0"),
                expected_fee_velocity_usd_per_hour=Decimal("1"),
                zero_activity_minutes=30,
                health_score=Decimal("0.1"),
            )
        )
        assert decision.category == ExitCategory.SUPPRESSED_NOISE


class TestRotationAndHealth:
    def test_rotation(self, pipeline, signal):
        decision = pipeline.evaluate(
            signal(
                "SCORE_DROP",
                45,
                fee_yield_pct=Decimal("0.0001"),
                entropy_collapsed=True,
                rank_delta=3,
            )
        )
        assert decision.allowed
        assert decision.category == ExitCategory.ROTATION

    def test_rotation_needs_better_alternative(self, pipeline, signal):
        decision = pipeline.evaluate(
            signal("SCORE_DROP", 45, fee_yield_pct=Decimal("0.0001"), entropy_collapsed=True, rank_delta=1)
        )
        assert decision.category == ExitCategory.SUPPRESSED_NOISE

    def test_health_exit_after_min_hold(self, pipeline, signal):
        decision = pipeline.evaluate(signal("HARMONIC_EXIT_TRIGGERED", 70))
        assert decision.allowed
        assert decision.category == ExitCategory.HARMONIC

    def test_health_flag_upgrades_noise_reason(self, pipeline, signal):
        decision = pipeline.evaluate(signal("MHI_DROP", 70, health_exit_triggered=True))
        assert decision.category == ExitCategory.HARMONIC

    def test_health_exit_before_min_hold_falls_through(self, pipeline, no_bootstrap, signal):
        assert pipeline.evaluate(signal("HARMONIC_EXIT_TRIGGERED", 30)).category == (
            ExitCategory.SUPPRESSED_BOOTSTRAP
        )
        assert no_bootstrap.evaluate(signal("HARMONIC_EXIT_TRIGGERED", 30)).category == (
            ExitCategory.SUPPRESSED_MIN_HOLD
        )

    def test_class_a_uses_longer_min_hold(self, pipeline, signal):
        decision = pipeline.evaluate(
            signal("HARMONIC_EXIT_TRIGGERED", 70, entity_class=EntityClass.CLASS_A)
        )
        assert not decision.allowed
        assert decision.details["min_hold_min"] == 90


class TestSuppression:
    def test_noise_is_suppressed_at_any_age(self, pipeline, signal):
        decision = pipeline.evaluate(signal("SCORE_DROP", 500))
        assert not decision.allowed
        assert decision.category == ExitCategory.SUPPRESSED_NOISE
        assert decision.details["suppression_cause"] == "NOISE_SIGNAL"

    def test_bootstrap_window(self, pipeline, signal):
        decision = pipeline.evaluate(signal("VOLUME_COLLAPSE", 100))
        assert decision.category == ExitCategory.SUPPRESSED_BOOTSTRAP

    def test_min_hold_not_met(self, no_bootstrap, signal):
        decision = no_bootstrap.evaluate(signal("VOLUME_COLLAPSE", 30))
        assert decision.category == ExitCategory.SUPPRESSED_MIN_HOLD
        assert decision.reason.startswith("MIN_HOLD_NOT_MET")

    def test_unknown_reason_is_blocked(self, no_bootstrap, signal):
        decision = no_bootstrap.evaluate(signal("mystery", 120))
        assert decision.category == ExitCategory.BLOCKED
        assert "amortization" in decision.details

    def test_denials_register_cooldown(self, pipeline, signal):
        decisions = [pipeline.evaluate(signal("SCORE_DROP", 500)) for _ in range(4)]
        assert decisions[0].details["cooldown"]["on_cooldown"] is False
        fourth = decisions[3].details["cooldown"]
        assert fourth["on_cooldown"] is True
        assert fourth["suppression_count"] == 3

    def test_equivalent_reason_shares_cooldown(self, pipeline, signal):
        pipeline.evaluate(signal("SCORE_DROP", 500))
        decision = pipeline.evaluate(signal("TIER4_SCORE_DROP", 500))
        assert decision.details["cooldown"]["on_cooldown"] is True


class TestAllowed:
    def test_valid_exit_without_amortization_is_allowed(self, no_bootstrap, signal):
        decision = no_bootstrap.evaluate(signal("BINS_INACTIVE", 120))
        assert decision.allowed
        assert decision.category == ExitCategory.ALLOWED
        assert decision.details["amortization"]["allow_exit"] is False

    def test_amortized_exit(self, no_bootstrap, signal):
        decision = no_bootstrap.evaluate(signal("BINS_INACTIVE", 120, fees_accrued_usd=Decimal("20")))
        assert decision.category == ExitCategory.COST_AMORTIZED

    def test_cost_target_from_fee_state(self, no_bootstrap, signal):
        no_bootstrap.fee_states.open("trade-1", Decimal("1000"))
        no_bootstrap.fee_states.record_rebalance("trade-1")
        decision = no_bootstrap.evaluate(signal("BINS_INACTIVE", 120))
        assert decision.details["amortization"]["base_cost_target_usd"] == Decimal("13.75")

    def test_explicit_cost_target_wins(self, no_bootstrap, signal):
        decision = no_bootstrap.evaluate(
            signal("BINS_INACTIVE", 120, base_cost_target_usd=Decimal("2"))
        )
        assert decision.details["amortization"]["base_cost_target_usd"] == Decimal("2")


class TestCounters:
    def test_start_cycle_resets(self, pipeline, signal):
        pipeline.evaluate(signal("RUG_PULL", 1))
        pipeline.evaluate(signal("SCORE_DROP", 500))

        previous = pipeline.start_cycle()
        assert previous.evaluated == 2
        assert previous.allowed == 1
        assert previous.suppressed == 1
        assert previous.emergency == 1
        assert previous.by_category == {"TRUE_EMERGENCY": 1, "SUPPRESSED_NOISE": 1}
        assert pipeline.counters.evaluated == 0

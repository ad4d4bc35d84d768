"""
Unit tests for the Canonical PnL Ledger.

The ledger is the only place PnL is computed; capital may only move from a
valid cached record.
"""

from decimal import Decimal

import pytest

from lp_guardian.config.settings import LedgerSettings
from lp_guardian.domain.errors import (
    InvariantViolationError,
    NotionalTooSmallError,
    ValidationError,
)
from lp_guardian.domain.events import TradeQuarantined
from lp_guardian.domain.models import CanonicalPnLInput, StrictnessMode
from lp_guardian.domain.results import Err, Ok
from lp_guardian.services.ledger import CanonicalPnLLedger

pytestmark = pytest.mark.unit


def pnl_input(trade_id: str = "trade-001", **overrides) -> CanonicalPnLInput:
    params = dict(
        trade_id=trade_id,
        entity="pool-sol-usdc",
        entry_notional_usd=Decimal("1000"),
        exit_notional_usd=Decimal("1050"),
        entry_fees_usd=Decimal("2"),
        exit_fees_usd=Decimal("2"),
        entry_slippage_usd=Decimal("1"),
        exit_slippage_usd=Decimal("1"),
    )
    params.update(overrides)
    return CanonicalPnLInput(**params)


@pytest.fixture
def ledger(clock) -> CanonicalPnLLedger:
    return CanonicalPnLLedger(LedgerSettings(), StrictnessMode.STRICT, clock=clock)


@pytest.fixture
def permissive_ledger(clock) -> CanonicalPnLLedger:
    return CanonicalPnLLedger(LedgerSettings(), StrictnessMode.PERMISSIVE, clock=clock)


class TestCompute:
    """Tests for the canonical formulas."""

    def test_worked_example(self, ledger: CanonicalPnLLedger):
        record = ledger.compute(pnl_input())
        assert record.gross_pnl_usd == Decimal("50")
        assert record.total_fees_usd == Decimal("4")
        assert record.total_slippage_usd == Decimal("2")
        assert record.net_pnl_usd == Decimal("44")
        assert record.net_pnl_pct == Decimal("0.044")
        assert record.invariant_valid

    @pytest.mark.parametrize(
        "exit_notional,fees,slippage",
        [
            ("950", "3.5", "0.25"),
            ("1000", "0", "0"),
            ("1234.5678", "1.111", "0.009"),
        ],
    )
    def test_net_identity_is_exact(self, ledger, exit_notional, fees, slippage):
        record = ledger.compute(
            pnl_input(
                exit_notional_usd=Decimal(exit_notional),
                exit_fees_usd=Decimal(fees),
                exit_slippage_usd=Decimal(slippage),
            )
        )
        assert record.net_pnl_usd == (
            record.gross_pnl_usd - record.total_fees_usd - record.total_slippage_usd
        )
        assert record.net_pnl_pct == record.net_pnl_usd / record.entry_notional_usd

    def test_idempotent_arithmetic(self, ledger: CanonicalPnLLedger, clock):
        first = ledger.compute(pnl_input())
        clock.advance(seconds=5)
        second = ledger.compute(pnl_input())
        assert first.db_fields() == second.db_fields()
        assert first.computed_at != second.computed_at

    def test_evaluate_returns_ok(self, ledger: CanonicalPnLLedger):
        result = ledger.evaluate(pnl_input())
        assert isinstance(result, Ok)
        assert result.is_ok
        assert ledger.exists("trade-001")


class TestValidation:
    def test_notional_below_minimum_raises(self, ledger: CanonicalPnLLedger):
        with pytest.raises(NotionalTooSmallError) as exc:
            ledger.compute(pnl_input(entry_notional_usd=Decimal("0.001")))
        assert exc.value.error_code == "NOTIONAL_TOO_SMALL"
        assert not ledger.exists("trade-001")

    def test_zero_notional_raises(self, ledger: CanonicalPnLLedger):
        with pytest.raises(NotionalTooSmallError):
            ledger.compute(pnl_input(entry_notional_usd=Decimal("0")))

    @pytest.mark.parametrize("bad", [Decimal("NaN"), Decimal("Infinity")])
    def test_non_finite_input_raises(self, ledger: CanonicalPnLLedger, bad: Decimal):
        with pytest.raises(ValidationError):
            ledger.compute(pnl_input(exit_notional_usd=bad))


class TestInvariant:
    """Cross-check against an independently observed capital delta."""

    def test_strict_mode_returns_err_and_caches_nothing(self, ledger: CanonicalPnLLedger):
        result = ledger.evaluate(pnl_input(observed_capital_delta_usd=Decimal("30")))
        assert isinstance(result, Err)
        assert result.error.violation_type == "CAPITAL_DELTA_MISMATCH"
        assert not ledger.exists("trade-001")

    def test_strict_compute_raises(self, ledger: CanonicalPnLLedger):
        with pytest.raises(InvariantViolationError):
            ledger.compute(pnl_input(observed_capital_delta_usd=Decimal("30")))

    def test_observed_delta_within_tolerance_is_valid(self, ledger: CanonicalPnLLedger):
        record = ledger.compute(pnl_input(observed_capital_delta_usd=Decimal("44.5")))
        assert record.invariant_valid

    def test_without_observed_delta_record_is_valid(self, ledger: CanonicalPnLLedger):
        """Net and pct are exact by construction; only the observed delta can disagree."""
        result = ledger.evaluate(pnl_input())
        assert isinstance(result, Ok)
        assert result.value.invariant_valid
        assert ledger.stats()["violations"] == 0

    def test_permissive_mode_quarantines_and_flags(self, permissive_ledger: CanonicalPnLLedger):
        events = []
        permissive_ledger.subscribe(events.append)

        result = permissive_ledger.evaluate(pnl_input(observed_capital_delta_usd=Decimal("30")))

        assert isinstance(result, Ok)
        assert not result.value.invariant_valid
        assert permissive_ledger.exists("trade-001")
        assert [q.trade_id for q in permissive_ledger.quarantined()] == ["trade-001"]
        assert len(events) == 1
        assert isinstance(events[0], TradeQuarantined)
        assert events[0].violation_type == "CAPITAL_DELTA_MISMATCH"

    def test_quarantine_is_bounded(self, clock):
        ledger = CanonicalPnLLedger(
            LedgerSettings(max_quarantined=2), StrictnessMode.PERMISSIVE, clock=clock
        )
        for i in range(3):
            ledger.compute(pnl_input(f"trade-{i}", observed_capital_delta_usd=Decimal("0")))
        assert [q.trade_id for q in ledger.quarantined()] == ["trade-1", "trade-2"]
        assert ledger.stats()["violations"] == 3

    def test_failing_handler_does_not_break_quarantine(self, permissive_ledger):
        def boom(event):
            raise RuntimeError("sink down")

        permissive_ledger.subscribe(boom)
        record = permissive_ledger.compute(pnl_input(observed_capital_delta_usd=Decimal("0")))
        assert not record.invariant_valid


class TestCapital:
    """apply_to_capital only ever moves capital from a valid record."""

    def test_applies_valid_record(self, ledger: CanonicalPnLLedger):
        ledger.compute(pnl_input())
        result = ledger.apply_to_capital("trade-001", Decimal("10000"))
        assert result.applied
        assert result.new_capital_usd == Decimal("10044")
        assert result.reason == "APPLIED"

    def test_missing_record_leaves_capital_unchanged(self, ledger: CanonicalPnLLedger):
        result = ledger.apply_to_capital("unknown", Decimal("10000"))
        assert not result.applied
        assert result.new_capital_usd == Decimal("10000")
        assert result.reason == "NO_CANONICAL_RECORD"

    def test_invalid_record_leaves_capital_unchanged(self, permissive_ledger):
        permissive_ledger.compute(pnl_input(observed_capital_delta_usd=Decimal("0")))
        result = permissive_ledger.apply_to_capital("trade-001", Decimal("10000"))
        assert not result.applied
        assert result.adjustment_usd == Decimal("0")
        assert result.new_capital_usd == Decimal("10000")
        assert result.reason == "INVARIANT_INVALID"

    def test_capital_adjustment_without_record(self, ledger: CanonicalPnLLedger):
        adjustment = ledger.capital_adjustment("unknown")
        assert adjustment.adjustment_usd == Decimal("0")
        assert not adjustment.can_apply


class TestAccessors:
    def test_db_fields_are_exactly_five(self, ledger: CanonicalPnLLedger):
        ledger.compute(pnl_input())
        fields = ledger.get_db_fields("trade-001").to_dict()
        assert set(fields) == {
            "gross_pnl_usd",
            "net_pnl_usd",
            "net_pnl_pct",
            "total_fees_usd",
            "total_slippage_usd",
        }
        assert fields["net_pnl_usd"] == Decimal("44")

    def test_db_fields_missing_is_none(self, ledger: CanonicalPnLLedger):
        assert ledger.get_db_fields("unknown") is None

    def test_clear_removes_record(self, ledger: CanonicalPnLLedger):
        ledger.compute(pnl_input())
        assert ledger.clear("trade-001")
        assert ledger.get("trade-001") is None
        assert not ledger.clear("trade-001")

    def test_format_for_log(self, ledger: CanonicalPnLLedger):
        ledger.compute(pnl_input())
        line = ledger.format_for_log("trade-001")
        assert "net=$44.0000" in line
        assert "4.40%" in line
        assert ledger.format_for_log("unknown").endswith("NO_CANONICAL_RECORD")

    def test_sanity_warning_for_outsized_gain(self, ledger: CanonicalPnLLedger):
        record = ledger.compute(pnl_input(exit_notional_usd=Decimal("2500")))
        warnings = ledger.validate_reasonable(record)
        assert any("gain" in w for w in warnings)

"""
Unit tests for exit reason classification.

Raw reason strings are classified once into an ExitReasonKind; the pattern
table is the single source of truth for that mapping.
"""

import pytest

from lp_guardian.domain.reasons import (
    CooldownBucket,
    ExitReason,
    ExitReasonKind,
    ReasonGroup,
    classify_exit_reason,
    normalize_reason_text,
    reason_group,
)

pytestmark = pytest.mark.unit


class TestNormalize:
    def test_uppercases_and_replaces_separators(self):
        assert normalize_reason_text("tvl collapse-50%") == "TVL_COLLAPSE_50_"

    def test_strips_whitespace(self):
        assert normalize_reason_text("  score_drop  ") == "SCORE_DROP"


class TestClassify:
    """Tests for classify_exit_reason."""

    @pytest.mark.parametrize(
        "kind", [k for k in ExitReasonKind if k != ExitReasonKind.UNKNOWN]
    )
    def test_every_kind_classifies_from_its_own_name(self, kind: ExitReasonKind):
        """The table must not shadow any kind with a shorter pattern."""
        assert classify_exit_reason(kind.value) == kind

    def test_embedded_pattern_with_suffix(self):
        assert classify_exit_reason("TVL_COLLAPSE_50PCT") == ExitReasonKind.TVL_COLLAPSE

    def test_free_text_is_normalized_first(self):
        assert classify_exit_reason("Score drop (tier4)") == ExitReasonKind.SCORE_DROP
        assert classify_exit_reason("rug pull detected") == ExitReasonKind.RUG_PULL

    def test_specific_pattern_beats_contained_pattern(self):
        """KILL_SWITCH_MARKET_FAILURE is structural even though it contains KILL_SWITCH."""
        assert classify_exit_reason("KILL_SWITCH_MARKET_FAILURE") == ExitReasonKind.KILL_SWITCH_MARKET_FAILURE
        assert classify_exit_reason("KILL_SWITCH") == ExitReasonKind.KILL_SWITCH

    @pytest.mark.parametrize(
        "raw, kind",
        [
            ("HARMONIC_EXIT_TRIGGERED + POOL_MIGRATION", ExitReasonKind.POOL_MIGRATION),
            ("EMERGENCY_OVERRIDE: TVL_COLLAPSE_80PCT", ExitReasonKind.TVL_COLLAPSE),
            ("ROTATION aborted: RUG_PULL detected", ExitReasonKind.RUG_PULL),
            ("FEE_VELOCITY_DECAY / FREEZE_AUTHORITY", ExitReasonKind.FREEZE_AUTHORITY),
            ("SCORE_DROP then DB_SYNC_FAILURE", ExitReasonKind.DB_SYNC_FAILURE),
        ],
    )
    def test_any_emergency_token_classifies_as_emergency(self, raw: str, kind: ExitReasonKind):
        reason = ExitReason.parse(raw)
        assert reason.kind == kind
        assert reason.is_true_emergency
        assert not reason.is_not_emergency

    def test_empty_and_unmatched_are_unknown(self):
        assert classify_exit_reason("") == ExitReasonKind.UNKNOWN
        assert classify_exit_reason("something odd happened") == ExitReasonKind.UNKNOWN


class TestGroups:
    @pytest.mark.parametrize(
        "raw",
        [
            "POOL_MIGRATION",
            "POOL_DEPRECATED",
            "TVL_COLLAPSE",
            "LIQUIDITY_COLLAPSE",
            "DECIMALS_CORRUPTION",
            "MINT_MISMATCH",
            "ONCHAIN_REVERT_LOOP",
            "RUG_PULL",
            "FREEZE_AUTHORITY_USED",
            "LEDGER_CORRUPTION",
        ],
    )
    def test_true_emergencies(self, raw: str):
        reason = ExitReason.parse(raw)
        assert reason.is_true_emergency
        assert not reason.is_not_emergency
        assert reason.is_valid_exit

    @pytest.mark.parametrize(
        "raw",
        [
            "SCORE_DROP",
            "TIER4_SCORE_DROP",
            "MHI_DROP",
            "REGIME_FLIP",
            "VELOCITY_DIP",
            "FEE_BLEED",
            "MICROSTRUCTURE_EXIT",
            "KILL_SWITCH",
            "TEMPORARY_SLOWDOWN",
        ],
    )
    def test_noise_never_emergency(self, raw: str):
        reason = ExitReason.parse(raw)
        assert reason.group == ReasonGroup.NOISE
        assert reason.is_not_emergency
        assert not reason.is_true_emergency
        assert not reason.is_valid_exit

    def test_health_trigger_is_valid_exit_but_plain_harmonic_is_not(self):
        triggered = ExitReason.parse("HARMONIC_EXIT_TRIGGERED")
        plain = ExitReason.parse("HARMONIC_EXIT")
        assert triggered.is_health and plain.is_health
        assert triggered.is_valid_exit
        assert not plain.is_valid_exit

    def test_structural_reasons_are_valid_but_not_emergencies(self):
        reason = ExitReason.parse("VOLUME_COLLAPSE")
        assert reason_group(reason.kind) == ReasonGroup.STRUCTURAL
        assert reason.is_valid_exit
        assert not reason.is_true_emergency
        assert not reason.is_not_emergency

    def test_unknown_is_neither_list(self):
        reason = ExitReason.parse("mystery")
        assert not reason.is_true_emergency
        assert not reason.is_not_emergency
        assert not reason.is_valid_exit


class TestCooldownKey:
    def test_score_variants_share_one_bucket(self):
        keys = {ExitReason.parse(r).cooldown_key for r in ("SCORE_DROP", "TIER4_SCORE_DROP", "MHI_DROP")}
        assert keys == {CooldownBucket.SCORE_EXIT.value}

    def test_health_reasons_have_their_own_bucket(self):
        keys = {ExitReason.parse(r).cooldown_key for r in ("HARMONIC_EXIT", "HARMONIC_EXIT_TRIGGERED")}
        assert keys == {CooldownBucket.HEALTH_EXIT.value}
        assert ExitReason.parse("SCORE_DROP").cooldown_key != CooldownBucket.HEALTH_EXIT.value

    def test_velocity_variants_share_one_bucket(self):
        keys = {ExitReason.parse(r).cooldown_key for r in ("VELOCITY_DIP", "SWAP_VELOCITY_LOW")}
        assert keys == {CooldownBucket.VELOCITY_EXIT.value}

    def test_amortization_text_maps_to_amortization_bucket(self):
        reason = ExitReason.parse("COST_NOT_AMORTIZED")
        assert reason.cooldown_bucket == CooldownBucket.AMORTIZATION_EXIT

    def test_unbucketed_known_kind_uses_kind(self):
        assert ExitReason.parse("TVL_COLLAPSE_50PCT").cooldown_key == "TVL_COLLAPSE"

    def test_unknown_uses_normalized_text(self):
        assert ExitReason.parse("weird reason").cooldown_key == "WEIRD_REASON"


class TestParse:
    def test_parse_passes_through_classified_reason(self):
        reason = ExitReason.parse("SCORE_DROP")
        assert ExitReason.parse(reason) is reason

    def test_str_is_normalized_text(self):
        assert str(ExitReason.parse("score drop")) == "SCORE_DROP"

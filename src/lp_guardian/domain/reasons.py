"""
Exit Reason Classification.

Raw exit reason strings come from many signal producers ("TVL_COLLAPSE_50PCT",
"Score drop (tier4)", "HARMONIC_EXIT_TRIGGERED", ...). They are classified ONCE,
at the boundary, into a closed ExitReasonKind. Everything downstream switches on
the enum and never re-parses text.

REASON_PATTERNS is the single source of truth for the mapping. Patterns are
matched as substrings of the normalized text, in table order, so more specific
patterns must come before the shorter patterns they contain.

Emergency patterns lead the table: a reason carrying any emergency token is an
emergency, whatever else the text says ("EMERGENCY_OVERRIDE: TVL_COLLAPSE_80PCT"
is a TVL collapse).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum


class ReasonGroup(str, Enum):
    """Policy group an exit reason belongs to."""

    TRUE_EMERGENCY = "TRUE_EMERGENCY"  # existential threat, bypasses everything
    STRUCTURAL = "STRUCTURAL"  # valid exit, still subject to hold rules
    HEALTH = "HEALTH"  # composite health/harmonic signal
    NOISE = "NOISE"  # non-actionable, never bypasses min hold
    UNKNOWN = "UNKNOWN"


class ExitReasonKind(str, Enum):
    # --- true emergencies ---
    POOL_MIGRATION = "POOL_MIGRATION"
    POOL_DEPRECATED = "POOL_DEPRECATED"
    POOL_CLOSED = "POOL_CLOSED"
    TVL_COLLAPSE = "TVL_COLLAPSE"
    LIQUIDITY_DRAIN = "LIQUIDITY_DRAIN"
    MINT_MISMATCH = "MINT_MISMATCH"
    DECIMALS_ERROR = "DECIMALS_ERROR"
    ONCHAIN_REVERT = "ONCHAIN_REVERT"
    TRANSACTION_FAILURE = "TRANSACTION_FAILURE"
    RUG_PULL = "RUG_PULL"
    FREEZE_AUTHORITY = "FREEZE_AUTHORITY"
    MINT_AUTHORITY_ACTIVE = "MINT_AUTHORITY_ACTIVE"
    CAPITAL_ERROR = "CAPITAL_ERROR"
    LEDGER_CORRUPTION = "LEDGER_CORRUPTION"
    DB_SYNC_FAILURE = "DB_SYNC_FAILURE"

    # --- structural (valid exits that are not emergencies) ---
    VOLUME_COLLAPSE = "VOLUME_COLLAPSE"
    LIQUIDITY_DISAPPEARS = "LIQUIDITY_DISAPPEARS"
    BINS_INACTIVE = "BINS_INACTIVE"
    KILL_SWITCH_MARKET_FAILURE = "KILL_SWITCH_MARKET_FAILURE"
    EMERGENCY_OVERRIDE = "EMERGENCY_OVERRIDE"
    ROTATION_REPLACEMENT = "ROTATION_REPLACEMENT"
    FEE_VELOCITY_DECAY = "FEE_VELOCITY_DECAY"

    # --- health ---
    HARMONIC_EXIT_TRIGGERED = "HARMONIC_EXIT_TRIGGERED"
    HARMONIC_EXIT = "HARMONIC_EXIT"

    # --- noise ---
    TIER4_SCORE_DROP = "TIER4_SCORE_DROP"
    SHORT_TERM_SCORE_DECAY = "SHORT_TERM_SCORE_DECAY"
    SCORE_DECAY = "SCORE_DECAY"
    SCORE_DROP = "SCORE_DROP"
    MHI_DROP = "MHI_DROP"
    REGIME_FLIP = "REGIME_FLIP"
    CHAOS_REGIME = "CHAOS_REGIME"
    TIER4_CHAOS = "TIER4_CHAOS"
    MARKET_CRASH = "MARKET_CRASH"
    REGIME_BASED_EXIT = "REGIME_BASED_EXIT"
    FEE_VELOCITY_LOW = "FEE_VELOCITY_LOW"
    SWAP_VELOCITY_LOW = "SWAP_VELOCITY_LOW"
    VELOCITY_DIP = "VELOCITY_DIP"
    VELOCITY_COLLAPSE = "VELOCITY_COLLAPSE"
    FEE_BLEED = "FEE_BLEED"
    BLEED_EXIT = "BLEED_EXIT"
    FEE_INTENSITY_COLLAPSE = "FEE_INTENSITY_COLLAPSE"
    MICROSTRUCTURE_EXIT = "MICROSTRUCTURE_EXIT"
    ENTROPY_BASED_EXIT = "ENTROPY_BASED_EXIT"
    KILL_SWITCH = "KILL_SWITCH"
    TEMPORARY_SLOWDOWN = "TEMPORARY_SLOWDOWN"
    EV_NEGATIVE_BOOTSTRAP = "EV_NEGATIVE_BOOTSTRAP"
    ENTROPY_DROP_TEMPORARY = "ENTROPY_DROP_TEMPORARY"
    OSCILLATION_PAUSE = "OSCILLATION_PAUSE"

    UNKNOWN = "UNKNOWN"


K = ExitReasonKind

# (pattern, kind) in match order. Longer patterns precede their substrings.
REASON_PATTERNS: tuple[tuple[str, ExitReasonKind], ...] = (
    # True emergencies first: any emergency token wins
    ("POOL_MIGRATION", K.POOL_MIGRATION),
    ("POOL_DEPRECATED", K.POOL_DEPRECATED),
    ("POOL_CLOSED", K.POOL_CLOSED),
    ("TVL_COLLAPSE", K.TVL_COLLAPSE),
    ("LIQUIDITY_DRAIN", K.LIQUIDITY_DRAIN),
    ("LIQUIDITY_COLLAPSE", K.LIQUIDITY_DRAIN),
    ("MINT_MISMATCH", K.MINT_MISMATCH),
    ("MINT_CORRUPTION", K.MINT_MISMATCH),
    ("DECIMALS_ERROR", K.DECIMALS_ERROR),
    ("DECIMALS_CORRUPTION", K.DECIMALS_ERROR),
    ("ONCHAIN_REVERT", K.ONCHAIN_REVERT),
    ("TRANSACTION_FAILURE", K.TRANSACTION_FAILURE),
    ("RUG_PULL", K.RUG_PULL),
    ("FREEZE_AUTHORITY", K.FREEZE_AUTHORITY),
    ("MINT_AUTHORITY", K.MINT_AUTHORITY_ACTIVE),
    ("CAPITAL_ERROR", K.CAPITAL_ERROR),
    ("LEDGER_CORRUPTION", K.LEDGER_CORRUPTION),
    ("DB_SYNC_FAILURE", K.DB_SYNC_FAILURE),
    # Reasons that embed a noise or health word must beat it
    ("EMERGENCY_OVERRIDE", K.EMERGENCY_OVERRIDE),
    ("KILL_SWITCH_MARKET_FAILURE", K.KILL_SWITCH_MARKET_FAILURE),
    ("HARMONIC_EXIT_TRIGGERED", K.HARMONIC_EXIT_TRIGGERED),
    ("ROTATION", K.ROTATION_REPLACEMENT),
    ("FEE_VELOCITY_DECAY", K.FEE_VELOCITY_DECAY),
    # Structural
    ("VOLUME_COLLAPSE", K.VOLUME_COLLAPSE),
    ("LIQUIDITY_DISAPPEARS", K.LIQUIDITY_DISAPPEARS),
    ("BINS_INACTIVE", K.BINS_INACTIVE),
    # Health
    ("HARMONIC", K.HARMONIC_EXIT),
    # Noise
    ("TIER4_SCORE_DROP", K.TIER4_SCORE_DROP),
    ("SHORT_TERM_SCORE_DECAY", K.SHORT_TERM_SCORE_DECAY),
    ("SCORE_DECAY", K.SCORE_DECAY),
    ("SCORE_DROP", K.SCORE_DROP),
    ("MHI_DROP", K.MHI_DROP),
    ("REGIME_FLIP", K.REGIME_FLIP),
    ("CHAOS_REGIME", K.CHAOS_REGIME),
    ("TIER4_CHAOS", K.TIER4_CHAOS),
    ("MARKET_CRASH", K.MARKET_CRASH),
    ("REGIME_BASED", K.REGIME_BASED_EXIT),
    ("FEE_VELOCITY_LOW", K.FEE_VELOCITY_LOW),
    ("SWAP_VELOCITY_LOW", K.SWAP_VELOCITY_LOW),
    ("VELOCITY_DIP", K.VELOCITY_DIP),
    ("VELOCITY_COLLAPSE", K.VELOCITY_COLLAPSE),
    ("FEE_BLEED", K.FEE_BLEED),
    ("BLEED_EXIT", K.BLEED_EXIT),
    ("FEE_INTENSITY_COLLAPSE", K.FEE_INTENSITY_COLLAPSE),
    ("MICROSTRUCTURE", K.MICROSTRUCTURE_EXIT),
    ("ENTROPY_BASED", K.ENTROPY_BASED_EXIT),
    ("ENTROPY_DROP_TEMPORARY", K.ENTROPY_DROP_TEMPORARY),
    ("KILL_SWITCH", K.KILL_SWITCH),
    ("TEMPORARY_SLOWDOWN", K.TEMPORARY_SLOWDOWN),
    ("EV_NEGATIVE_BOOTSTRAP", K.EV_NEGATIVE_BOOTSTRAP),
    ("OSCILLATION_PAUSE", K.OSCILLATION_PAUSE),
)

_GROUPS: dict[ExitReasonKind, ReasonGroup] = {
    **{
        k: ReasonGroup.TRUE_EMERGENCY
        for k in (
            K.POOL_MIGRATION,
            K.POOL_DEPRECATED,
            K.POOL_CLOSED,
            K.TVL_COLLAPSE,
            K.LIQUIDITY_DRAIN,
            K.MINT_MISMATCH,
            K.DECIMALS_ERROR,
            K.ONCHAIN_REVERT,
            K.TRANSACTION_FAILURE,
            K.RUG_PULL,
            K.FREEZE_AUTHORITY,
            K.MINT_AUTHORITY_ACTIVE,
            K.CAPITAL_ERROR,
            K.LEDGER_CORRUPTION,
            K.DB_SYNC_FAILURE,
        )
    },
    **{
        k: ReasonGroup.STRUCTURAL
        for k in (
            K.VOLUME_COLLAPSE,
            K.LIQUIDITY_DISAPPEARS,
            K.BINS_INACTIVE,
            K.KILL_SWITCH_MARKET_FAILURE,
            K.EMERGENCY_OVERRIDE,
            K.ROTATION_REPLACEMENT,
            K.FEE_VELOCITY_DECAY,
        )
    },
    K.HARMONIC_EXIT_TRIGGERED: ReasonGroup.HEALTH,
    K.HARMONIC_EXIT: ReasonGroup.HEALTH,
    K.UNKNOWN: ReasonGroup.UNKNOWN,
}
# Every other kind is noise
for _kind in ExitReasonKind:
    _GROUPS.setdefault(_kind, ReasonGroup.NOISE)


class CooldownBucket(str, Enum):
    """Coarse buckets that share one cooldown window."""

    SCORE_EXIT = "SCORE_EXIT"
    HEALTH_EXIT = "HEALTH_EXIT"
    VELOCITY_EXIT = "VELOCITY_EXIT"
    REGIME_EXIT = "REGIME_EXIT"
    AMORTIZATION_EXIT = "AMORTIZATION_EXIT"


_BUCKETS: dict[ExitReasonKind, CooldownBucket] = {
    **{
        k: CooldownBucket.SCORE_EXIT
        for k in (
            K.TIER4_SCORE_DROP,
            K.SHORT_TERM_SCORE_DECAY,
            K.SCORE_DECAY,
            K.SCORE_DROP,
            K.MHI_DROP,
            K.MICROSTRUCTURE_EXIT,
            K.ENTROPY_BASED_EXIT,
        )
    },
    K.HARMONIC_EXIT: CooldownBucket.HEALTH_EXIT,
    K.HARMONIC_EXIT_TRIGGERED: CooldownBucket.HEALTH_EXIT,
    **{
        k: CooldownBucket.VELOCITY_EXIT
        for k in (
            K.FEE_VELOCITY_LOW,
            K.SWAP_VELOCITY_LOW,
            K.VELOCITY_DIP,
            K.VELOCITY_COLLAPSE,
            K.FEE_INTENSITY_COLLAPSE,
            K.TEMPORARY_SLOWDOWN,
        )
    },
    **{
        k: CooldownBucket.REGIME_EXIT
        for k in (
            K.REGIME_FLIP,
            K.CHAOS_REGIME,
            K.TIER4_CHAOS,
            K.MARKET_CRASH,
            K.REGIME_BASED_EXIT,
        )
    },
}

_NON_WORD = re.compile(r"[^A-Z0-9_]")


def normalize_reason_text(raw: str) -> str:
    """Upper-case and replace anything outside [A-Z0-9_] with '_'."""
    return _NON_WORD.sub("_", raw.strip().upper())


def classify_exit_reason(raw: str) -> ExitReasonKind:
    """Map a raw reason string to its kind using REASON_PATTERNS."""
    text = normalize_reason_text(raw)
    if not text:
        return ExitReasonKind.UNKNOWN
    for pattern, kind in REASON_PATTERNS:
        if pattern in text:
            return kind
    return ExitReasonKind.UNKNOWN


def reason_group(kind: ExitReasonKind) -> ReasonGroup:
    return _GROUPS[kind]


@dataclass(frozen=True)
class ExitReason:
    """A classified exit reason: the closed kind plus the normalized source text."""

    kind: ExitReasonKind
    text: str

    @classmethod
    def parse(cls, raw: str | ExitReason) -> ExitReason:
        if isinstance(raw, ExitReason):
            return raw
        return cls(kind=classify_exit_reason(raw), text=normalize_reason_text(raw))

    @property
    def group(self) -> ReasonGroup:
        return _GROUPS[self.kind]

    @property
    def is_true_emergency(self) -> bool:
        return self.group == ReasonGroup.TRUE_EMERGENCY

    @property
    def is_not_emergency(self) -> bool:
        return self.group in (ReasonGroup.NOISE, ReasonGroup.HEALTH)

    @property
    def is_health(self) -> bool:
        return self.group == ReasonGroup.HEALTH

    @property
    def is_valid_exit(self) -> bool:
        """On the curated valid-exit allow-list."""
        return self.group in (ReasonGroup.TRUE_EMERGENCY, ReasonGroup.STRUCTURAL) or (
            self.kind == ExitReasonKind.HARMONIC_EXIT_TRIGGERED
        )

    @property
    def cooldown_bucket(self) -> CooldownBucket | None:
        bucket = _BUCKETS.get(self.kind)
        if bucket is not None:
            return bucket
        if "AMORTIZ" in self.text or "PAYBACK" in self.text:
            return CooldownBucket.AMORTIZATION_EXIT
        return None

    @property
    def cooldown_key(self) -> str:
        """Key shared by semantically equivalent reasons."""
        bucket = self.cooldown_bucket
        if bucket is not None:
            return bucket.value
        if self.kind != ExitReasonKind.UNKNOWN:
            return self.kind.value
        return self.text or ExitReasonKind.UNKNOWN.value

    def __str__(self) -> str:
        return self.text or self.kind.value
    # Structural reasons that embed a noise word must beat it

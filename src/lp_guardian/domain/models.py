"""
Canonical Domain Models.

All financial calculations use Decimal for precision.
PnL records are the single source of truth for realized profit/loss.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import Any

# =============================================================================
# ENUMS
# =============================================================================


class StrictnessMode(str, Enum):
    """How invariant failures are surfaced."""

    STRICT = "strict"  # hard failure (development)
    PERMISSIVE = "permissive"  # quarantine and flag (production)

    @classmethod
    def from_string(cls, value: str) -> StrictnessMode:
        normalized = value.lower().strip()
        if normalized in ("strict", "dev", "development"):
            return cls.STRICT
        if normalized in ("permissive", "prod", "production"):
            return cls.PERMISSIVE
        raise ValueError(f"Unknown strictness mode: {value}")


class ExitCategory(str, Enum):
    """Category tag carried by every exit gate decision."""

    TRUE_EMERGENCY = "TRUE_EMERGENCY"
    EMERGENCY_OVERRIDE = "EMERGENCY_OVERRIDE"
    ROTATION = "ROTATION"
    HARMONIC = "HARMONIC"
    COST_AMORTIZED = "COST_AMORTIZED"
    SUPPRESSED_MIN_HOLD = "SUPPRESSED_MIN_HOLD"
    SUPPRESSED_NOISE = "SUPPRESSED_NOISE"
    SUPPRESSED_BOOTSTRAP = "SUPPRESSED_BOOTSTRAP"
    BLOCKED = "BLOCKED"
    ALLOWED = "ALLOWED"

    def is_suppression(self) -> bool:
        return self in (
            ExitCategory.SUPPRESSED_MIN_HOLD,
            ExitCategory.SUPPRESSED_NOISE,
            ExitCategory.SUPPRESSED_BOOTSTRAP,
            ExitCategory.BLOCKED,
        )

    def is_emergency(self) -> bool:
        return self in (ExitCategory.TRUE_EMERGENCY, ExitCategory.EMERGENCY_OVERRIDE)


class SuppressionCause(str, Enum):
    """Why a deny path registered a cooldown."""

    NOISE_SIGNAL = "NOISE_SIGNAL"
    BOOTSTRAP_MODE = "BOOTSTRAP_MODE"
    MIN_HOLD_NOT_MET = "MIN_HOLD_NOT_MET"
    COST_NOT_AMORTIZED = "COST_NOT_AMORTIZED"
    FEE_AMORTIZATION_BLOCKED = "FEE_AMORTIZATION_BLOCKED"
    INVALID_EXIT_TYPE = "INVALID_EXIT_TYPE"

    def is_extended(self) -> bool:
        """Causes that hold the longest cooldown window."""
        return self in (
            SuppressionCause.COST_NOT_AMORTIZED,
            SuppressionCause.MIN_HOLD_NOT_MET,
            SuppressionCause.FEE_AMORTIZATION_BLOCKED,
        )


class EntityClass(str, Enum):
    """Coarse pool category used to select minimum hold durations."""

    CLASS_A = "A"
    CLASS_B = "B"
    UNCLASSIFIED = "UNCLASSIFIED"

    @classmethod
    def from_string(cls, value: str | None) -> EntityClass:
        if not value:
            return cls.UNCLASSIFIED
        normalized = value.upper().strip()
        if normalized in ("A", "CLASS_A", "TIER_A"):
            return cls.CLASS_A
        if normalized in ("B", "CLASS_B", "TIER_B"):
            return cls.CLASS_B
        return cls.UNCLASSIFIED


class ConsistencyErrorType(str, Enum):
    """Direction of a portfolio capital mismatch."""

    MISMATCH = "MISMATCH"
    MISSING_POSITIONS = "MISSING_POSITIONS"  # positions explain more than reported
    ORPHAN_CAPITAL = "ORPHAN_CAPITAL"  # reported capital with no position behind it


# =============================================================================
# CANONICAL PNL
# =============================================================================


@dataclass(frozen=True)
class CanonicalPnLInput:
    """Raw execution figures for one closed trade (all USD)."""

    trade_id: str
    entity: str
    entry_notional_usd: Decimal
    exit_notional_usd: Decimal
    entry_fees_usd: Decimal = Decimal("0")
    exit_fees_usd: Decimal = Decimal("0")
    entry_slippage_usd: Decimal = Decimal("0")
    exit_slippage_usd: Decimal = Decimal("0")
    # Independently observed capital delta (e.g. wallet balance before/after).
    # When present the invariant check compares against it.
    observed_capital_delta_usd: Decimal | None = None


@dataclass(frozen=True)
class CanonicalPnLRecord:
    """Immutable realized PnL for one trade. Created once by the ledger."""

    trade_id: str
    entity: str
    entry_notional_usd: Decimal
    exit_notional_usd: Decimal
    entry_fees_usd: Decimal
    exit_fees_usd: Decimal
    entry_slippage_usd: Decimal
    exit_slippage_usd: Decimal
    gross_pnl_usd: Decimal
    total_fees_usd: Decimal
    total_slippage_usd: Decimal
    net_pnl_usd: Decimal
    net_pnl_pct: Decimal
    computed_at: datetime
    invariant_valid: bool = True

    def db_fields(self) -> PnLDbFields:
        return PnLDbFields(
            gross_pnl_usd=self.gross_pnl_usd,
            net_pnl_usd=self.net_pnl_usd,
            net_pnl_pct=self.net_pnl_pct,
            total_fees_usd=self.total_fees_usd,
            total_slippage_usd=self.total_slippage_usd,
        )


@dataclass(frozen=True)
class PnLDbFields:
    """The only PnL fields persistence may write."""

    gross_pnl_usd: Decimal
    net_pnl_usd: Decimal
    net_pnl_pct: Decimal
    total_fees_usd: Decimal
    total_slippage_usd: Decimal

    def to_dict(self) -> dict[str, Decimal]:
        return {
            "gross_pnl_usd": self.gross_pnl_usd,
            "net_pnl_usd": self.net_pnl_usd,
            "net_pnl_pct": self.net_pnl_pct,
            "total_fees_usd": self.total_fees_usd,
            "total_slippage_usd": self.total_slippage_usd,
        }


@dataclass(frozen=True)
class QuarantinedTrade:
    """A trade whose PnL failed its invariant check in permissive mode."""

    trade_id: str
    entity: str
    input: CanonicalPnLInput
    record: CanonicalPnLRecord
    violation_type: str
    quarantined_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class CapitalAdjustment:
    """Net PnL that may be applied to capital, or zero with a reason."""

    adjustment_usd: Decimal
    can_apply: bool
    reason: str


@dataclass(frozen=True)
class CapitalApplication:
    """Outcome of applying a trade's canonical PnL to capital."""

    new_capital_usd: Decimal
    adjustment_usd: Decimal
    applied: bool
    reason: str


# =============================================================================
# EXIT GATE
# =============================================================================


@dataclass(frozen=True)
class ExitGateDecision:
    """Final categorized decision for one exit evaluation."""

    allowed: bool
    category: ExitCategory
    reason: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def suppressed(self) -> bool:
        return not self.allowed


@dataclass
class PositionFeeState:
    """Per-trade fee accrual tracked between open and close."""

    trade_id: str
    entry_time: datetime
    entry_notional_usd: Decimal
    cumulative_fees_usd: Decimal = Decimal("0")
    rebalance_count: int = 0
    last_update: datetime = field(default_factory=lambda: datetime.now(UTC))


# =============================================================================
# COOLDOWN
# =============================================================================


@dataclass
class CooldownEntry:
    """Suppression window for one (entity, reason bucket)."""

    entity: str
    bucket: str
    cause: SuppressionCause | None
    suppressed_until: datetime
    suppression_count: int
    first_triggered: datetime
    last_triggered: datetime


@dataclass(frozen=True)
class CooldownCheck:
    """Result of looking up a cooldown."""

    on_cooldown: bool
    should_log: bool
    remaining_ms: int = 0
    suppression_count: int = 0


# =============================================================================
# PORTFOLIO
# =============================================================================


@dataclass(frozen=True)
class PositionForConsistency:
    """Minimal view of an open position for the capital check."""

    address: str
    name: str
    notional_usd: Decimal


@dataclass(frozen=True)
class PortfolioSnapshot:
    """Point-in-time capital comparison."""

    sum_of_positions_usd: Decimal
    reported_deployed_usd: Decimal
    mismatch_usd: Decimal
    mismatch_pct: Decimal
    position_count: int
    consistent: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(frozen=True)
class PortfolioConsistencyResult:
    """Outcome of one portfolio consistency check."""

    consistent: bool
    snapshot: PortfolioSnapshot
    error_type: ConsistencyErrorType | None = None
    error_message: str | None = None
    positions: tuple[PositionForConsistency, ...] = ()

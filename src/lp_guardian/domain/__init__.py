"""
Domain Layer: Core decision entities, value objects, and rules.

This layer has NO dependencies on config, logging or metrics.
All types here are canonical and used throughout the application.
"""

from lp_guardian.domain.amortization import (
    AmortizationGateInput,
    AmortizationGateResult,
    DecayConfig,
    compute_amortization_gate,
)
from lp_guardian.domain.errors import (
    DomainError,
    InvariantViolationError,
    NotionalTooSmallError,
    PortfolioConsistencyError,
    ValidationError,
)
from lp_guardian.domain.events import (
    DomainEvent,
    PortfolioInconsistent,
    TradeQuarantined,
)
from lp_guardian.domain.hold_policy import (
    check_fee_amortization_gate,
    check_min_hold,
    check_tvl_collapse,
    describe_policy,
    evaluate_hold_policy,
    is_not_emergency,
    is_true_emergency,
)
from lp_guardian.domain.models import (
    CanonicalPnLInput,
    CanonicalPnLRecord,
    CapitalAdjustment,
    CapitalApplication,
    ConsistencyErrorType,
    CooldownCheck,
    CooldownEntry,
    EntityClass,
    ExitCategory,
    ExitGateDecision,
    PnLDbFields,
    PortfolioConsistencyResult,
    PortfolioSnapshot,
    PositionFeeState,
    PositionForConsistency,
    QuarantinedTrade,
    StrictnessMode,
    SuppressionCause,
)
from lp_guardian.domain.reasons import (
    ExitReason,
    ExitReasonKind,
    ReasonGroup,
    classify_exit_reason,
)
from lp_guardian.domain.results import Err, Ok, Result

__all__ = [
    # Enums
    "StrictnessMode",
    "ExitCategory",
    "SuppressionCause",
    "EntityClass",
    "ConsistencyErrorType",
    "ExitReasonKind",
    "ReasonGroup",
    # Models
    "CanonicalPnLInput",
    "CanonicalPnLRecord",
    "PnLDbFields",
    "QuarantinedTrade",
    "CapitalAdjustment",
    "CapitalApplication",
    "ExitGateDecision",
    "PositionFeeState",
    "CooldownEntry",
    "CooldownCheck",
    "PositionForConsistency",
    "PortfolioSnapshot",
    "PortfolioConsistencyResult",
    "ExitReason",
    # Results
    "Ok",
    "Err",
    "Result",
    # Rules
    "classify_exit_reason",
    "is_true_emergency",
    "is_not_emergency",
    "check_min_hold",
    "check_fee_amortization_gate",
    "check_tvl_collapse",
    "evaluate_hold_policy",
    "describe_policy",
    "DecayConfig",
    "AmortizationGateInput",
    "AmortizationGateResult",
    "compute_amortization_gate",
    # Events
    "DomainEvent",
    "TradeQuarantined",
    "PortfolioInconsistent",
    # Errors
    "DomainError",
    "ValidationError",
    "NotionalTooSmallError",
    "InvariantViolationError",
    "PortfolioConsistencyError",
]

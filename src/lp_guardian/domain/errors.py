"""
Domain Error Taxonomy.

All domain-specific exceptions with clear categorization.

Business denials (min hold not met, noise suppression, ...) are NOT errors:
they are returned as ExitGateDecision outcomes.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any


class DomainError(Exception):
    """
    Base class for all domain errors.

    Includes structured error info for logging and debugging.
    """

    error_code: str = "DOMAIN_ERROR"

    def __init__(
        self,
        message: str,
        *,
        trade_id: str | None = None,
        entity: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.trade_id = trade_id
        self.entity = entity
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to dict for logging."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "trade_id": self.trade_id,
            "entity": self.entity,
            "details": self.details,
        }


# =============================================================================
# Validation Errors
# =============================================================================


class ValidationError(DomainError):
    """Invalid input or state."""

    error_code = "VALIDATION_ERROR"


class NotionalTooSmallError(ValidationError):
    """Entry notional below the configured minimum (division guard)."""

    error_code = "NOTIONAL_TOO_SMALL"

    def __init__(
        self,
        message: str,
        *,
        entry_notional_usd: Decimal,
        min_entry_notional_usd: Decimal,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.entry_notional_usd = entry_notional_usd
        self.min_entry_notional_usd = min_entry_notional_usd
        self.details["entry_notional_usd"] = str(entry_notional_usd)
        self.details["min_entry_notional_usd"] = str(min_entry_notional_usd)


# =============================================================================
# Invariant Errors
# =============================================================================


class InvariantViolationError(DomainError):
    """Canonical PnL failed its arithmetic cross-check (strict mode only)."""

    error_code = "PNL_INVARIANT_VIOLATION"

    def __init__(
        self,
        message: str,
        *,
        violation_type: str,
        delta: Decimal,
        tolerance: Decimal,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.violation_type = violation_type
        self.delta = delta
        self.tolerance = tolerance
        self.details["violation_type"] = violation_type
        self.details["delta"] = str(delta)
        self.details["tolerance"] = str(tolerance)


class PortfolioConsistencyError(DomainError):
    """Tracked positions do not explain reported deployed capital (strict mode only)."""

    error_code = "PORTFOLIO_CONSISTENCY_VIOLATION"

    def __init__(
        self,
        message: str,
        *,
        error_type: str,
        mismatch_usd: Decimal,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.error_type = error_type
        self.mismatch_usd = mismatch_usd
        self.details["error_type"] = error_type
        self.details["mismatch_usd"] = str(mismatch_usd)

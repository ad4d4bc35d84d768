"""
Prometheus metrics for observability.

Provides metrics for monitoring exit gate decisions, canonical PnL
computation, cooldown suppression and portfolio consistency.

Usage:
    from lp_guardian.observability.metrics import record_gate_decision

    record_gate_decision(category="SUPPRESSED_NOISE", allowed=False)
"""

from __future__ import annotations

import time
from collections.abc import Generator
from contextlib import contextmanager
from decimal import Decimal
from typing import Any

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Metric Definitions
# =============================================================================

# Exit gate
exit_gate_decisions_total = Counter(
    "lp_guardian_exit_gate_decisions_total",
    "Total exit gate decisions",
    ["category", "allowed"],
)

exit_gate_evaluation_seconds = Histogram(
    "lp_guardian_exit_gate_evaluation_seconds",
    "Duration of one exit gate evaluation in seconds",
    buckets=(0.0001, 0.0005, 0.001, 0.005, 0.01, 0.05, 0.1),
)

# Canonical PnL
pnl_computations_total = Counter(
    "lp_guardian_pnl_computations_total",
    "Canonical PnL computations",
    ["outcome"],  # outcome: valid, quarantined, rejected
)

quarantined_trades_total = Counter(
    "lp_guardian_quarantined_trades_total",
    "Trades quarantined after a PnL invariant violation",
    ["violation_type"],
)

net_pnl_usd = Histogram(
    "lp_guardian_net_pnl_usd",
    "Canonical net PnL per closed trade in USD",
    buckets=(-100, -50, -20, -10, -5, -1, 0, 1, 5, 10, 20, 50, 100, 200, 500),
)

capital_applications_total = Counter(
    "lp_guardian_capital_applications_total",
    "Attempts to apply canonical PnL to capital",
    ["applied"],
)

# Cooldown
cooldown_suppressions_total = Counter(
    "lp_guardian_cooldown_suppressions_total",
    "Exit suppressions registered with the cooldown tracker",
    ["bucket"],
)

cooldown_tracked_entities = Gauge(
    "lp_guardian_cooldown_tracked_entities",
    "Entities with at least one cooldown entry",
)

# Portfolio
portfolio_violations_total = Counter(
    "lp_guardian_portfolio_violations_total",
    "Portfolio consistency violations",
    ["error_type"],
)

portfolio_mismatch_usd = Gauge(
    "lp_guardian_portfolio_mismatch_usd",
    "Absolute mismatch between tracked positions and reported deployed capital",
)

portfolio_consecutive_violations = Gauge(
    "lp_guardian_portfolio_consecutive_violations",
    "Consecutive inconsistent portfolio checks",
)


# =============================================================================
# Helper Functions
# =============================================================================


def record_gate_decision(category: str, allowed: bool) -> None:
    """
    Record an exit gate decision.

    Args:
        category: Decision category (e.g., "TRUE_EMERGENCY", "SUPPRESSED_NOISE")
        allowed: Whether the exit was authorized
    """
    exit_gate_decisions_total.labels(category=category, allowed=str(allowed).lower()).inc()


@contextmanager
def track_gate_evaluation() -> Generator[dict[str, Any], None, None]:
    """
    Context manager to time one exit gate evaluation.

    Usage:
        with track_gate_evaluation():
            decision = pipeline.evaluate(inp)
    """
    start_time = time.perf_counter()
    ctx: dict[str, Any] = {}
    try:
        yield ctx
    finally:
        exit_gate_evaluation_seconds.observe(time.perf_counter() - start_time)


def record_pnl_computation(outcome: str, net_pnl: Decimal | None = None) -> None:
    """
    Record a canonical PnL computation.

    Args:
        outcome: "valid", "quarantined" or "rejected"
        net_pnl: Net PnL in USD (observed for valid records only)
    """
    pnl_computations_total.labels(outcome=outcome).inc()
    if net_pnl is not None and outcome == "valid":
        net_pnl_usd.observe(float(net_pnl))


def record_quarantine(violation_type: str) -> None:
    quarantined_trades_total.labels(violation_type=violation_type).inc()


def record_capital_application(applied: bool) -> None:
    capital_applications_total.labels(applied=str(applied).lower()).inc()


def record_cooldown_suppression(bucket: str) -> None:
    cooldown_suppressions_total.labels(bucket=bucket).inc()


def update_cooldown_entities(count: int) -> None:
    cooldown_tracked_entities.set(count)


def record_portfolio_check(
    consistent: bool,
    mismatch_usd: Decimal,
    consecutive_violations: int,
    error_type: str | None = None,
) -> None:
    """
    Record the outcome of a portfolio consistency check.

    Args:
        consistent: Whether tracked positions explain reported capital
        mismatch_usd: Absolute mismatch in USD
        consecutive_violations: Current consecutive violation count
        error_type: Mismatch direction when inconsistent
    """
    portfolio_mismatch_usd.set(float(mismatch_usd))
    portfolio_consecutive_violations.set(consecutive_violations)
    if not consistent:
        portfolio_violations_total.labels(error_type=error_type or "MISMATCH").inc()

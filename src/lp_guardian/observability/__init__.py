"""Observability: logging, metrics."""

from lp_guardian.observability.logging import (
    LOG_TAG_COOLDOWN,
    LOG_TAG_EXIT_GATE,
    LOG_TAG_PNL,
    LOG_TAG_PORTFOLIO,
    get_logger,
    setup_logging,
)
from lp_guardian.observability.metrics import (
    record_capital_application,
    record_cooldown_suppression,
    record_gate_decision,
    record_pnl_computation,
    record_portfolio_check,
    record_quarantine,
    track_gate_evaluation,
    update_cooldown_entities,
)

__all__ = [
    # Logging
    "setup_logging",
    "get_logger",
    "LOG_TAG_EXIT_GATE",
    "LOG_TAG_PNL",
    "LOG_TAG_PORTFOLIO",
    "LOG_TAG_COOLDOWN",
    # Metrics helpers
    "record_gate_decision",
    "record_pnl_computation",
    "record_quarantine",
    "record_capital_application",
    "record_cooldown_suppression",
    "record_portfolio_check",
    "track_gate_evaluation",
    "update_cooldown_entities",
]

"""
Services: stateful components that own the exit-decision state.

Each service is driven by the ExitCycleCoordinator; state is only mutated
through the methods documented on each class.
"""

from lp_guardian.services.cooldown import CooldownTracker
from lp_guardian.services.cycle import CycleReport, ExitCycleCoordinator, ExitOutcome
from lp_guardian.services.exit_gate import CycleCounters, ExitGateInput, ExitGatePipeline
from lp_guardian.services.fee_state import FeeStateStore, cost_amortization_requirement
from lp_guardian.services.ledger import CanonicalPnLLedger
from lp_guardian.services.portfolio import PortfolioConsistencyChecker

__all__ = [
    "CanonicalPnLLedger",
    "CooldownTracker",
    "CycleCounters",
    "CycleReport",
    "ExitCycleCoordinator",
    "ExitGateInput",
    "ExitGatePipeline",
    "ExitOutcome",
    "FeeStateStore",
    "PortfolioConsistencyChecker",
    "cost_amortization_requirement",
]

"""
Canonical PnL Ledger.

The ONLY place realized profit/loss is computed. Every capital update, log
line and persisted record reads from the record cached here.

    gross = exit_notional - entry_notional
    net   = gross - total_fees - total_slippage
    pct   = net / entry_notional

net and pct are exact by construction, so the invariant check needs an
independent figure: when the caller supplies the observed capital delta (for
example the wallet balance change), net PnL must match it within tolerance.
Without one the record is valid. Failure handling depends on StrictnessMode:
  - STRICT: Err(InvariantViolationError), nothing cached
  - PERMISSIVE: Ok(record with invariant_valid=False), quarantined and cached
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from datetime import UTC, datetime
from decimal import Decimal

from lp_guardian.config.settings import LedgerSettings
from lp_guardian.domain.errors import (
    InvariantViolationError,
    NotionalTooSmallError,
    ValidationError,
)
from lp_guardian.domain.events import DomainEvent, EventHandler, TradeQuarantined
from lp_guardian.domain.models import (
    CanonicalPnLInput,
    CanonicalPnLRecord,
    CapitalAdjustment,
    CapitalApplication,
    PnLDbFields,
    QuarantinedTrade,
    StrictnessMode,
)
from lp_guardian.domain.results import Err, Ok, Result
from lp_guardian.observability.logging import LOG_TAG_PNL, get_logger
from lp_guardian.observability.metrics import (
    record_capital_application,
    record_pnl_computation,
    record_quarantine,
)

logger = get_logger(__name__)

VIOLATION_CAPITAL_DELTA_MISMATCH = "CAPITAL_DELTA_MISMATCH"


class CanonicalPnLLedger:
    """
    Trade-id keyed store of canonical PnL records.

    Owned by the caller; one instance per process is expected but nothing here
    is global.
    """

    def __init__(
        self,
        settings: LedgerSettings | None = None,
        mode: StrictnessMode = StrictnessMode.STRICT,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self.settings = settings or LedgerSettings()
        self.mode = mode
        self._clock = clock or (lambda: datetime.now(UTC))

        self._records: dict[str, CanonicalPnLRecord] = {}
        self._quarantine: deque[QuarantinedTrade] = deque(maxlen=self.settings.max_quarantined)
        self._handlers: list[EventHandler] = []

        self._computations = 0
        self._violations = 0

    def subscribe(self, handler: EventHandler) -> None:
        """Register a handler for out-of-band quarantine events."""
        self._handlers.append(handler)

    # =========================================================================
    # Computation
    # =========================================================================

    def evaluate(self, inp: CanonicalPnLInput) -> Result[CanonicalPnLRecord, InvariantViolationError]:
        """
        Compute canonical PnL for a trade.

        Raises:
            ValidationError: non-finite input
            NotionalTooSmallError: entry notional below the configured minimum
        """
        self._validate_input(inp)

        gross = inp.exit_notional_usd - inp.entry_notional_usd
        total_fees = inp.entry_fees_usd + inp.exit_fees_usd
        total_slippage = inp.entry_slippage_usd + inp.exit_slippage_usd
        net = gross - total_fees - total_slippage
        pct = net / inp.entry_notional_usd

        violation_type, delta = self._cross_check(inp, net)
        self._computations += 1

        record = CanonicalPnLRecord(
            trade_id=inp.trade_id,
            entity=inp.entity,
            entry_notional_usd=inp.entry_notional_usd,
            exit_notional_usd=inp.exit_notional_usd,
            entry_fees_usd=inp.entry_fees_usd,
            exit_fees_usd=inp.exit_fees_usd,
            entry_slippage_usd=inp.entry_slippage_usd,
            exit_slippage_usd=inp.exit_slippage_usd,
            gross_pnl_usd=gross,
            total_fees_usd=total_fees,
            total_slippage_usd=total_slippage,
            net_pnl_usd=net,
            net_pnl_pct=pct,
            computed_at=self._clock(),
            invariant_valid=violation_type is None,
        )

        if violation_type is None:
            self._records[inp.trade_id] = record
            record_pnl_computation("valid", net)
            logger.info(f"{LOG_TAG_PNL} {self._format(record)}")
            for warning in self.validate_reasonable(record):
                logger.warning(f"{LOG_TAG_PNL} Sanity check {inp.trade_id}: {warning}")
            return Ok(record)

        self._violations += 1
        error = InvariantViolationError(
            f"PnL invariant violated for {inp.trade_id}: {violation_type} "
            f"(delta={delta:.6f} > tolerance={self.settings.invariant_tolerance})",
            violation_type=violation_type,
            delta=delta,
            tolerance=self.settings.invariant_tolerance,
            trade_id=inp.trade_id,
            entity=inp.entity,
        )

        if self.mode == StrictnessMode.STRICT:
            record_pnl_computation("rejected")
            logger.error(f"{LOG_TAG_PNL} {error.message}", extra={"trade_id": inp.trade_id})
            return Err(error)

        self._quarantine_trade(inp, record, violation_type, delta)
        self._records[inp.trade_id] = record
        record_pnl_computation("quarantined")
        return Ok(record)

    def compute(self, inp: CanonicalPnLInput) -> CanonicalPnLRecord:
        """Compute and return the record; raises the violation in strict mode."""
        return self.evaluate(inp).unwrap()

    def _validate_input(self, inp: CanonicalPnLInput) -> None:
        values = (
            inp.entry_notional_usd,
            inp.exit_notional_usd,
            inp.entry_fees_usd,
            inp.exit_fees_usd,
            inp.entry_slippage_usd,
            inp.exit_slippage_usd,
        )
        if not all(isinstance(v, Decimal) and v.is_finite() for v in values):
            record_pnl_computation("rejected")
            raise ValidationError(
                f"Non-finite PnL input for {inp.trade_id}",
                trade_id=inp.trade_id,
                entity=inp.entity,
            )

        minimum = self.settings.min_entry_notional_usd
        if inp.entry_notional_usd < minimum:
            record_pnl_computation("rejected")
            raise NotionalTooSmallError(
                f"Entry notional ${inp.entry_notional_usd} below minimum ${minimum} for {inp.trade_id}",
                entry_notional_usd=inp.entry_notional_usd,
                min_entry_notional_usd=minimum,
                trade_id=inp.trade_id,
                entity=inp.entity,
            )

    def _cross_check(self, inp: CanonicalPnLInput, net: Decimal) -> tuple[str | None, Decimal]:
        observed = inp.observed_capital_delta_usd
        if observed is None:
            return None, Decimal("0")

        delta = abs(net - observed) / inp.entry_notional_usd
        if delta > self.settings.invariant_tolerance:
            return VIOLATION_CAPITAL_DELTA_MISMATCH, delta
        return None, delta

    def _quarantine_trade(
        self,
        inp: CanonicalPnLInput,
        record: CanonicalPnLRecord,
        violation_type: str,
        delta: Decimal,
    ) -> None:
        self._quarantine.append(
            QuarantinedTrade(
                trade_id=inp.trade_id,
                entity=inp.entity,
                input=inp,
                record=record,
                violation_type=violation_type,
                quarantined_at=self._clock(),
            )
        )
        record_quarantine(violation_type)
        logger.error(
            f"{LOG_TAG_PNL} QUARANTINED {inp.trade_id} ({inp.entity}): {violation_type} "
            f"delta={delta:.6f} tolerance={self.settings.invariant_tolerance} | {self._format(record)}",
            extra={"trade_id": inp.trade_id, "entity": inp.entity},
        )
        self._publish(
            TradeQuarantined(
                trade_id=inp.trade_id,
                entity=inp.entity,
                violation_type=violation_type,
                net_pnl_usd=record.net_pnl_usd,
                delta=delta,
            )
        )

    def _publish(self, event: DomainEvent) -> None:
        for handler in self._handlers:
            try:
                handler(event)
            except Exception as e:
                logger.warning(f"Event handler failed for {event.event_type}: {e}")

    # =========================================================================
    # Accessors
    # =========================================================================

    def get(self, trade_id: str) -> CanonicalPnLRecord | None:
        return self._records.get(trade_id)

    def exists(self, trade_id: str) -> bool:
        return trade_id in self._records

    def get_db_fields(self, trade_id: str) -> PnLDbFields | None:
        """The five persist-eligible fields, or None if no record exists."""
        record = self._records.get(trade_id)
        return record.db_fields() if record else None

    def capital_adjustment(self, trade_id: str) -> CapitalAdjustment:
        record = self._records.get(trade_id)
        if record is None:
            return CapitalAdjustment(Decimal("0"), False, "NO_CANONICAL_RECORD")
        if not record.invariant_valid:
            return CapitalAdjustment(Decimal("0"), False, "INVARIANT_INVALID")
        return CapitalAdjustment(record.net_pnl_usd, True, "OK")

    def apply_to_capital(self, trade_id: str, current_capital_usd: Decimal) -> CapitalApplication:
        """Apply net PnL to capital only from a valid canonical record."""
        adjustment = self.capital_adjustment(trade_id)
        record_capital_application(adjustment.can_apply)

        if not adjustment.can_apply:
            logger.warning(
                f"{LOG_TAG_PNL} Capital NOT updated for {trade_id}: {adjustment.reason}",
                extra={"trade_id": trade_id, "reason": adjustment.reason},
            )
            return CapitalApplication(
                new_capital_usd=current_capital_usd,
                adjustment_usd=Decimal("0"),
                applied=False,
                reason=adjustment.reason,
            )

        new_capital = current_capital_usd + adjustment.adjustment_usd
        logger.info(
            f"{LOG_TAG_PNL} Capital {trade_id}: ${current_capital_usd:.2f} -> ${new_capital:.2f} "
            f"({adjustment.adjustment_usd:+.2f})"
        )
        return CapitalApplication(
            new_capital_usd=new_capital,
            adjustment_usd=adjustment.adjustment_usd,
            applied=True,
            reason="APPLIED",
        )

    def quarantined(self) -> tuple[QuarantinedTrade, ...]:
        """Oldest first."""
        return tuple(self._quarantine)

    def stats(self) -> dict[str, int]:
        return {
            "computations": self._computations,
            "violations": self._violations,
            "cached": len(self._records),
            "quarantined": len(self._quarantine),
        }

    def clear(self, trade_id: str) -> bool:
        return self._records.pop(trade_id, None) is not None

    def clear_all(self) -> None:
        self._records.clear()
        self._quarantine.clear()
        self._computations = 0
        self._violations = 0

    # =========================================================================
    # Formatting / Sanity
    # =========================================================================

    def format_for_log(self, trade_id: str) -> str:
        record = self._records.get(trade_id)
        if record is None:
            return f"[{trade_id}] NO_CANONICAL_RECORD"
        return self._format(record)

    @staticmethod
    def _format(record: CanonicalPnLRecord) -> str:
        flag = "" if record.invariant_valid else " INVALID"
        return (
            f"[{record.trade_id}] {record.entity} gross=${record.gross_pnl_usd:.4f} "
            f"fees=${record.total_fees_usd:.4f} slip=${record.total_slippage_usd:.4f} "
            f"net=${record.net_pnl_usd:.4f} ({record.net_pnl_pct * 100:.2f}%){flag}"
        )

    def validate_reasonable(self, record: CanonicalPnLRecord) -> list[str]:
        """Sanity warnings. Never blocks, never raises."""
        warnings: list[str] = []

        implied_pct = record.net_pnl_usd / record.entry_notional_usd
        if record.net_pnl_pct != 0:
            discrepancy = abs(implied_pct - record.net_pnl_pct) / abs(record.net_pnl_pct)
            if discrepancy > self.settings.reasonable_pct_discrepancy:
                warnings.append(f"implied pct {implied_pct:.4%} vs recorded {record.net_pnl_pct:.4%}")

        if record.net_pnl_pct > self.settings.reasonable_max_gain_pct:
            warnings.append(f"gain {record.net_pnl_pct:.2%} exceeds {self.settings.reasonable_max_gain_pct:.0%}")

        if record.gross_pnl_usd != 0:
            ratio = record.total_fees_usd / abs(record.gross_pnl_usd)
            if ratio > self.settings.reasonable_max_fee_to_gross:
                warnings.append(f"fees are {ratio:.1f}x gross PnL")

        return warnings

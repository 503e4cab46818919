"""Control plane agent - runs one scan cycle through the control plane."""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from agents.base import BaseAgent
from config.settings import AppConfig
from core.aggression_scaler import RegimeMultipliers
from core.capital_concentration import (
    ConcentrationDecision,
    ExtendedTrancheRequest,
    TrancheRequest,
)
from core.control_plane import ControlPlane
from core.exit_hysteresis import SuppressionDecision
from core.regime_tracker import RegimeUpdate
from models.enums import MarketRegime, ReEvaluationAction
from models.exit_reason import ExitReason, coerce_exit_reason
from models.positions import ExitIntentMetrics, MTMValuation, PositionForSuppression


class ExitAction(str, Enum):
    """What the exit executor should do with a candidate this cycle."""
    EXECUTE = "EXECUTE"
    SUPPRESSED = "SUPPRESSED"
    SHORT_CIRCUITED = "SHORT_CIRCUITED"
    COOLDOWN_EXTENDED = "COOLDOWN_EXTENDED"
    BLOCKED = "BLOCKED"  # Exit lock held or attempt cooldown active


@dataclass
class ExitCandidate:
    """Exit condition raised by an exit-trigger evaluator."""
    position: PositionForSuppression
    mtm: MTMValuation
    reason: Union[ExitReason, str]
    metrics: Optional[ExitIntentMetrics] = None


@dataclass
class EntryRequest:
    """Entry or tranche request from the sizing pipeline."""
    request: TrancheRequest
    base_size_usd: float


@dataclass
class ScanCycle:
    """Signals supplied for one scan cycle."""
    regime_signal: Union[MarketRegime, str]
    total_equity_usd: Optional[float] = None
    exit_candidates: List[ExitCandidate] = field(default_factory=list)
    entry_requests: List[EntryRequest] = field(default_factory=list)


@dataclass
class ExitOutcome:
    position_id: str
    action: ExitAction
    reason: ExitReason
    decision: Optional[SuppressionDecision] = None
    detail: str = ""


@dataclass
class EntryOutcome:
    pool_address: str
    scaled_base_size_usd: float
    decision: ConcentrationDecision


@dataclass
class CycleReport:
    """Everything the control plane decided in one cycle."""
    correlation_id: str
    regime_update: RegimeUpdate
    multipliers: RegimeMultipliers
    exits: List[ExitOutcome] = field(default_factory=list)
    entries: List[EntryOutcome] = field(default_factory=list)

    @property
    def exits_to_execute(self) -> List[ExitOutcome]:
        return [e for e in self.exits if e.action == ExitAction.EXECUTE]

    @property
    def admitted_entries(self) -> List[EntryOutcome]:
        return [e for e in self.entries if e.decision.allowed]


class ControlPlaneAgent(BaseAgent):
    """
    Per-cycle facade over the control plane.

    Order per cycle: equity update, regime update, multipliers, exit
    candidates, entry requests. Execution results come back through
    on_exit_executed / on_exit_failed / on_tranche_filled.
    """

    def __init__(self, control_plane: ControlPlane, config: Optional[AppConfig] = None):
        super().__init__(config or control_plane.config)
        self.control_plane = control_plane
        self._last_cycle_at: Optional[datetime] = None

    def process(self, cycle: ScanCycle) -> CycleReport:
        """Run one scan cycle."""
        cp = self.control_plane
        correlation_id = self.start_cycle()
        self._last_cycle_at = cp.clock.now()
        cp.concentration.reset_cycle_stats()

        if cycle.total_equity_usd is not None:
            cp.concentration.update_equity(cycle.total_equity_usd)

        regime_update = cp.regime_tracker.update_regime(cycle.regime_signal)
        if regime_update.flipped:
            self.log_info(
                f"Regime now {regime_update.regime.value} (was {regime_update.previous_regime.value})",
                event="cycle_regime_flip", regime=regime_update.regime.value
            )
        multipliers = cp.aggression_scaler.get_multipliers()

        report = CycleReport(
            correlation_id=correlation_id,
            regime_update=regime_update,
            multipliers=multipliers
        )
        for candidate in cycle.exit_candidates:
            report.exits.append(self._evaluate_exit(candidate))
        for entry in cycle.entry_requests:
            report.entries.append(self._evaluate_entry(entry, multipliers))

        self.log_debug(
            f"Cycle done: regime={multipliers.regime.value} size={multipliers.size_multiplier:.2f}x "
            f"exits={len(report.exits_to_execute)}/{len(report.exits)} "
            f"entries={len(report.admitted_entries)}/{len(report.entries)}"
        )
        return report

    def _evaluate_exit(self, candidate: ExitCandidate) -> ExitOutcome:
        cp = self.control_plane
        position = candidate.position
        position_id = position.position_id

        reason = coerce_exit_reason(candidate.reason)
        forced = cp.mtm_monitor.observe(position, candidate.mtm)
        if forced is not None:
            reason = forced

        # Risk exits bypass the short-circuit so a suppressed noise intent
        # can never hide them
        if not reason.is_risk and cp.exit_latch.should_short_circuit(position_id):
            return ExitOutcome(position_id, ExitAction.SHORT_CIRCUITED, reason)

        cp.exit_latch.latch(position_id, reason, candidate.metrics)

        if not reason.is_risk:
            re_eval = cp.exit_latch.check_re_evaluation(position_id, candidate.metrics)
            if re_eval.action == ReEvaluationAction.EXTEND_COOLDOWN:
                return ExitOutcome(position_id, ExitAction.COOLDOWN_EXTENDED, reason,
                                   detail=re_eval.reason)
            if re_eval.action == ReEvaluationAction.WAIT:
                return ExitOutcome(position_id, ExitAction.SHORT_CIRCUITED, reason,
                                   detail=re_eval.reason)

        decision = cp.exit_gate.should_suppress_noise_exit(position, candidate.mtm, reason)
        if decision.suppressed:
            cp.exit_latch.set_suppressed(position_id, decision.suppress_reason.to_suppression_type())
            return ExitOutcome(position_id, ExitAction.SUPPRESSED, reason, decision, decision.detail)

        can_attempt, why = cp.exit_gate.can_attempt_exit(position_id)
        if not can_attempt:
            return ExitOutcome(position_id, ExitAction.BLOCKED, reason, decision, why)

        cp.exit_gate.mark_exit_in_progress(position_id)
        attempt = cp.exit_gate.record_exit_attempt(position_id)
        self.log_info(
            f"Exit approved for {position.display_name}: {reason} (attempt {attempt})",
            event="exit_approved", position_id=position_id, exit_reason=reason.code.value
        )
        return ExitOutcome(position_id, ExitAction.EXECUTE, reason, decision, why)

    def _evaluate_entry(self, entry: EntryRequest, multipliers: RegimeMultipliers) -> EntryOutcome:
        scaled = entry.base_size_usd * multipliers.size_multiplier
        decision = self.control_plane.concentration.evaluate_concentration(entry.request, scaled)
        return EntryOutcome(
            pool_address=entry.request.pool_address,
            scaled_base_size_usd=scaled,
            decision=decision
        )

    # ------------------------------------------------------------------
    # Execution feedback
    # ------------------------------------------------------------------

    def on_exit_executed(
        self,
        position_id: str,
        pool_address: Optional[str] = None,
        size_usd: Optional[float] = None,
        tranche_id: Optional[str] = None
    ) -> float:
        """
        Clear per-position state after a confirmed exit.

        Returns:
            USD released from the concentration engine (0 if no pool given)
        """
        cp = self.control_plane
        cp.exit_latch.clear(position_id)
        cp.exit_gate.forget_position(position_id)
        cp.mtm_monitor.forget(position_id)
        if pool_address is None:
            return 0.0
        return cp.concentration.record_exit(pool_address, size_usd=size_usd, tranche_id=tranche_id)

    def on_exit_failed(self, position_id: str) -> None:
        """Release the exit lock; the attempt cooldown still applies."""
        self.control_plane.exit_gate.clear_exit_in_progress(position_id)
        self.log_warning(f"Exit failed for {position_id}", position_id=position_id)

    def on_tranche_filled(self, request: TrancheRequest, tranche_id: str, size_usd: float) -> bool:
        """Record a filled entry/tranche with the signals it was admitted on."""
        ev_usd = fee_intensity = None
        if isinstance(request, ExtendedTrancheRequest):
            ev_usd = request.ev_usd
            fee_intensity = request.fee_intensity
        return self.control_plane.concentration.record_deployment(
            pool_address=request.pool_address,
            tranche_id=tranche_id,
            size_usd=size_usd,
            aggression_level=request.aggression_level,
            ods_value=request.ods_value,
            ev_usd=ev_usd,
            fee_intensity=fee_intensity
        )

    def health_check(self) -> Dict[str, Any]:
        health = super().health_check()
        cp = self.control_plane
        health.update({
            "regime": cp.regime_tracker.current_regime.value,
            "regime_stable": cp.regime_tracker.is_stable(),
            "exit_intents": len(cp.exit_latch),
            "total_deployed_pct": cp.concentration.total_deployed_pct(),
            "invariant_violations": cp.invariants.violation_count,
        })
        if self._last_cycle_at is not None:
            interval = timedelta(seconds=self.config.loop_interval_seconds)
            health["last_cycle_at"] = self._last_cycle_at.isoformat()
            health["cycle_overdue"] = cp.clock.now() - self._last_cycle_at > 2 * interval
        return health

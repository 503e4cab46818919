"""
Exit Intent Latch - per-position memory of a detected exit condition.

    LATCHED -> SUPPRESSED -> (cooldown expiry) -> re-evaluate
        -> SUPPRESSED again (extended) | RESOLVED
    PENDING_REEVAL once the extension ceiling is reached.

While an intent is suppressed and its cooldown is active, callers must
skip exit evaluation for that position entirely (should_short_circuit).
Expiry is detected lazily on the next call; there is no timer.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Union
import logging

from config.settings import ExitIntentConfig
from models.enums import (
    ExitIntentState,
    ExitReasonCategory,
    ReEvaluationAction,
    SuppressionType,
)
from models.exit_reason import ExitReason, coerce_exit_reason
from models.positions import ExitIntentMetrics
from models.validation import validate_identifier
from utils.clock import Clock, SystemClock
from utils.invariants import InvariantChecker, LoggingInvariantChecker

logger = logging.getLogger(__name__)

# Absorbs float error when a metric moves by exactly a threshold
THRESHOLD_EPSILON = 1e-9


@dataclass
class ExitIntent:
    """Latched exit condition for one position."""
    position_id: str
    reason: ExitReason
    category: ExitReasonCategory
    detected_at: datetime
    detection_metrics: ExitIntentMetrics = field(default_factory=ExitIntentMetrics)
    state: ExitIntentState = ExitIntentState.LATCHED
    suppressed: bool = False
    suppression_type: Optional[SuppressionType] = None
    suppressed_until: Optional[datetime] = None
    cooldown_extensions: int = 0
    was_ever_suppressed: bool = False


@dataclass(frozen=True)
class ReEvaluationResult:
    """Outcome of check_re_evaluation()."""
    action: ReEvaluationAction
    reason: str
    changed_metrics: List[str] = field(default_factory=list)
    forced: bool = False
    cooldown_extensions: int = 0

    @property
    def should_re_evaluate(self) -> bool:
        return self.action == ReEvaluationAction.RE_EVALUATE


class ExitIntentLatch:
    """Owns the exit-intent map (at most one intent per position)."""

    def __init__(
        self,
        config: Optional[ExitIntentConfig] = None,
        clock: Optional[Clock] = None,
        invariants: Optional[InvariantChecker] = None
    ):
        self.config = config or ExitIntentConfig()
        self.clock = clock or SystemClock()
        self.invariants = invariants or LoggingInvariantChecker()
        self._intents: Dict[str, ExitIntent] = {}

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def latch(
        self,
        position_id: str,
        reason: Union[ExitReason, str],
        metrics: Optional[ExitIntentMetrics] = None
    ) -> bool:
        """
        Latch an exit condition.

        Returns:
            True if a new intent was created, False if the same reason was
            already latched for this position
        """
        position_id = validate_identifier(position_id, "position_id")
        reason = coerce_exit_reason(reason)

        existing = self._intents.get(position_id)
        if existing is not None and existing.reason.text == reason.text:
            return False

        self._intents[position_id] = ExitIntent(
            position_id=position_id,
            reason=reason,
            category=reason.category,
            detected_at=self.clock.now(),
            detection_metrics=metrics or ExitIntentMetrics()
        )
        logger.info(
            f"🔒 Exit intent latched for {position_id}: {reason} [{reason.category.value}]"
            + (f" (replaces '{existing.reason}')" if existing else ""),
            extra={"event": "exit_intent_latched", "position_id": position_id,
                   "exit_reason": reason.code.value, "category": reason.category.value}
        )
        return True

    def set_suppressed(
        self,
        position_id: str,
        suppression_type: SuppressionType,
        cooldown: Optional[timedelta] = None
    ) -> bool:
        """
        Move an intent to SUPPRESSED and start its cooldown.

        Args:
            position_id: Position whose intent is suppressed
            suppression_type: Why the exit was suppressed
            cooldown: Override for the category cooldown

        Returns:
            True if the intent is now suppressed
        """
        intent = self._intents.get(position_id)
        if intent is None:
            logger.warning(f"⚠️ set_suppressed for {position_id} without a latched intent")
            return False

        if not self.invariants.check(
            not intent.reason.is_risk,
            "risk_exit_never_suppressed",
            f"Refusing to suppress risk exit for {position_id}: {intent.reason}",
            position_id=position_id,
            exit_reason=intent.reason.code.value
        ):
            return False

        if cooldown is None:
            cooldown = self.config.cooldown_for(intent.category)
        first_time = not intent.was_ever_suppressed

        intent.state = ExitIntentState.SUPPRESSED
        intent.suppressed = True
        intent.suppression_type = suppression_type
        intent.suppressed_until = self.clock.now() + cooldown
        intent.was_ever_suppressed = True

        if first_time:
            logger.info(
                f"🔕 Exit suppressed for {position_id} ({suppression_type.value}), "
                f"cooldown {cooldown.total_seconds():.0f}s",
                extra={"event": "exit_intent_suppressed", "position_id": position_id,
                       "suppression_type": suppression_type.value,
                       "cooldown_seconds": cooldown.total_seconds()}
            )
        return True

    def should_short_circuit(self, position_id: str) -> bool:
        """
        True iff the position's intent is suppressed and its cooldown is active.

        Callers must then skip all exit evaluation for this position this cycle.
        """
        intent = self._intents.get(position_id)
        if intent is None or not intent.suppressed or intent.suppressed_until is None:
            return False
        return self.clock.now() < intent.suppressed_until

    def check_re_evaluation(
        self,
        position_id: str,
        current_metrics: Optional[ExitIntentMetrics] = None
    ) -> ReEvaluationResult:
        """
        Decide whether a suppressed intent whose cooldown expired is evaluated again.

        Re-evaluation happens when a metric changed materially since
        detection, or unconditionally once max_cooldown_extensions
        extensions have been granted. Otherwise the cooldown is extended.
        """
        intent = self._intents.get(position_id)
        if intent is None:
            return ReEvaluationResult(ReEvaluationAction.RE_EVALUATE, "no_intent")
        if intent.state == ExitIntentState.PENDING_REEVAL:
            return ReEvaluationResult(
                ReEvaluationAction.RE_EVALUATE, "pending_reeval", forced=True,
                cooldown_extensions=intent.cooldown_extensions
            )
        if not intent.suppressed:
            return ReEvaluationResult(ReEvaluationAction.RE_EVALUATE, "not_suppressed")
        if self.should_short_circuit(position_id):
            return ReEvaluationResult(
                ReEvaluationAction.WAIT, "cooldown_active",
                cooldown_extensions=intent.cooldown_extensions
            )

        current = current_metrics or ExitIntentMetrics()
        changed = self._material_changes(intent.detection_metrics, current)
        if changed:
            intent.state = ExitIntentState.LATCHED
            intent.suppressed = False
            intent.detection_metrics = current
            logger.info(
                f"🔓 Re-evaluating exit for {position_id}: {', '.join(changed)} changed",
                extra={"event": "exit_intent_reevaluate", "position_id": position_id,
                       "changed_metrics": ",".join(changed)}
            )
            return ReEvaluationResult(
                ReEvaluationAction.RE_EVALUATE, "material_change", changed_metrics=changed,
                cooldown_extensions=intent.cooldown_extensions
            )

        cooldown = self.config.cooldown_for(intent.category)
        if cooldown <= timedelta(0):
            intent.state = ExitIntentState.LATCHED
            intent.suppressed = False
            return ReEvaluationResult(
                ReEvaluationAction.RE_EVALUATE, "no_cooldown",
                cooldown_extensions=intent.cooldown_extensions
            )

        if intent.cooldown_extensions >= self.config.max_cooldown_extensions:
            intent.state = ExitIntentState.PENDING_REEVAL
            intent.suppressed = False
            logger.warning(
                f"⏰ Exit intent for {position_id} hit {intent.cooldown_extensions} cooldown "
                f"extensions; forcing re-evaluation",
                extra={"event": "exit_intent_forced_reeval", "position_id": position_id,
                       "cooldown_extensions": intent.cooldown_extensions}
            )
            return ReEvaluationResult(
                ReEvaluationAction.RE_EVALUATE, "extension_limit", forced=True,
                cooldown_extensions=intent.cooldown_extensions
            )

        intent.cooldown_extensions += 1
        intent.suppressed_until = self.clock.now() + cooldown
        log = logger.debug if self.config.silent_cooldown else logger.info
        log(
            f"Exit cooldown extended for {position_id} "
            f"({intent.cooldown_extensions}/{self.config.max_cooldown_extensions})",
            extra={"event": "exit_intent_extended", "position_id": position_id,
                   "cooldown_extensions": intent.cooldown_extensions}
        )
        return ReEvaluationResult(
            ReEvaluationAction.EXTEND_COOLDOWN, "no_material_change",
            cooldown_extensions=intent.cooldown_extensions
        )

    def clear(self, position_id: str) -> Optional[ExitIntent]:
        """Remove an intent (exit executed or manual reset); returns it as RESOLVED."""
        intent = self._intents.pop(position_id, None)
        if intent is None:
            return None
        intent.state = ExitIntentState.RESOLVED
        intent.suppressed = False
        logger.info(
            f"✅ Exit intent resolved for {position_id} ({intent.reason})",
            extra={"event": "exit_intent_resolved", "position_id": position_id,
                   "was_ever_suppressed": intent.was_ever_suppressed}
        )
        return intent

    def clear_all(self) -> int:
        count = len(self._intents)
        self._intents.clear()
        if count:
            logger.warning(f"⚠️ Cleared {count} exit intent(s)")
        return count

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get(self, position_id: str) -> Optional[ExitIntent]:
        return self._intents.get(position_id)

    def state_of(self, position_id: str) -> Optional[ExitIntentState]:
        intent = self._intents.get(position_id)
        return intent.state if intent else None

    def has_intent(self, position_id: str) -> bool:
        return position_id in self._intents

    def __len__(self) -> int:
        return len(self._intents)

    def summary(self) -> Dict[str, object]:
        """Counts by state and category, suppressed and in-cooldown totals."""
        by_state: Dict[str, int] = {}
        by_category: Dict[str, int] = {}
        suppressed = 0
        in_cooldown = 0
        for position_id, intent in self._intents.items():
            by_state[intent.state.value] = by_state.get(intent.state.value, 0) + 1
            by_category[intent.category.value] = by_category.get(intent.category.value, 0) + 1
            if intent.suppressed:
                suppressed += 1
            if self.should_short_circuit(position_id):
                in_cooldown += 1
        return {
            "total": len(self._intents),
            "by_state": by_state,
            "by_category": by_category,
            "suppressed": suppressed,
            "in_cooldown": in_cooldown,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _material_changes(
        self,
        detected: Optional[ExitIntentMetrics],
        current: ExitIntentMetrics
    ) -> List[str]:
        """Names of the metrics that changed materially; missing values are skipped."""
        if detected is None:
            return []
        cfg = self.config
        changed = []

        if detected.regime is not None and current.regime is not None \
                and detected.regime != current.regime:
            changed.append("regime")

        if detected.fees_accrued_usd is not None and current.fees_accrued_usd is not None:
            if detected.fees_accrued_usd <= 0:
                if current.fees_accrued_usd > 0:
                    changed.append("fees")
            else:
                increase = (current.fees_accrued_usd - detected.fees_accrued_usd) / detected.fees_accrued_usd
                if increase >= cfg.fee_increase_pct - THRESHOLD_EPSILON:
                    changed.append("fees")

        if detected.tier_score and current.tier_score is not None and detected.tier_score > 0:
            degradation = (detected.tier_score - current.tier_score) / detected.tier_score
            if degradation >= cfg.tier_score_degradation_pct - THRESHOLD_EPSILON:
                changed.append("tier_score")

        if detected.health_score is not None and current.health_score is not None:
            if current.health_score - detected.health_score >= cfg.health_score_improvement - THRESHOLD_EPSILON:
                changed.append("health_score")

        return changed

"""
Exit Hysteresis / Cost-Amortization Gate.

Risk exits always pass. Noise (and unclassified) exits are suppressed
until the position has been held for the minimum hold time and the
accrued fees cover the round-trip cost target:

    cost_target = (entry_fees + exit_fees + slippage) * cost_amortization_factor

Also tracks per-position exit attempts (cooldown + in-progress lock) and
the MTM staleness escape hatch that forces an exit when valuation is stuck.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional, Set, Tuple, Union
import logging

from config.settings import ExitHysteresisConfig
from models.enums import ExitClass, SuppressReason
from models.exit_reason import ExitReason, ExitReasonCode, coerce_exit_reason
from models.positions import MTMValuation, PositionForSuppression
from utils.clock import Clock, SystemClock
from utils.rate_limiter import LogRateLimiter

logger = logging.getLogger(__name__)

# Fee comparisons are in USD; anything below this is float noise
USD_EPSILON = 1e-9


@dataclass(frozen=True)
class SuppressionDecision:
    """Result of should_suppress_noise_exit()."""
    suppressed: bool
    suppress_reason: SuppressReason
    exit_reason: ExitReason
    exit_class: ExitClass
    hold_time_seconds: float = 0.0
    fees_accrued_usd: float = 0.0
    cost_target_usd: float = 0.0
    detail: str = ""


@dataclass
class ExitAttempt:
    """Per-position exit attempt bookkeeping."""
    count: int = 0
    last_attempt_at: Optional[datetime] = None


@dataclass
class SuppressionStats:
    """Gate counters since the last reset."""
    evaluated: int = 0
    risk_passthrough: int = 0
    suppressed_min_hold: int = 0
    suppressed_cost: int = 0
    allowed: int = 0
    by_exit_code: Dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {
            "evaluated": self.evaluated,
            "risk_passthrough": self.risk_passthrough,
            "suppressed_min_hold": self.suppressed_min_hold,
            "suppressed_cost": self.suppressed_cost,
            "allowed": self.allowed,
            "by_exit_code": dict(self.by_exit_code),
        }


class ExitHysteresisGate:
    """Final gate before an exit transaction is submitted."""

    def __init__(
        self,
        config: Optional[ExitHysteresisConfig] = None,
        clock: Optional[Clock] = None,
        rate_limiter: Optional[LogRateLimiter] = None
    ):
        self.config = config or ExitHysteresisConfig()
        self.clock = clock or SystemClock()
        self.rate_limiter = rate_limiter or LogRateLimiter(
            interval_seconds=self.config.suppression_log_interval_seconds,
            name="exit_suppression",
            clock=self.clock
        )
        self._attempts: Dict[str, ExitAttempt] = {}
        self._in_progress: Set[str] = set()
        self._stats = SuppressionStats()

    # ------------------------------------------------------------------
    # Suppression decision
    # ------------------------------------------------------------------

    def estimate_cost_target(self, position: PositionForSuppression, mtm: MTMValuation) -> float:
        """Round-trip cost target; missing inputs fall back to configured rates."""
        cfg = self.config
        entry_fees = position.entry_fees_usd
        if entry_fees is None:
            entry_fees = position.entry_notional_usd * cfg.default_entry_fee_rate
        exit_fees = position.expected_exit_fees_usd
        if exit_fees is None:
            exit_fees = mtm.mtm_value_usd * cfg.default_exit_fee_rate
        slippage = position.slippage_total_usd
        if slippage is None:
            slippage = position.entry_notional_usd * cfg.default_slippage_rate
        return (entry_fees + exit_fees + slippage) * cfg.cost_amortization_factor

    def should_suppress_noise_exit(
        self,
        position: PositionForSuppression,
        mtm: MTMValuation,
        exit_reason: Union[ExitReason, str]
    ) -> SuppressionDecision:
        """
        Decide whether an exit must be suppressed.

        Args:
            position: Position being exited
            mtm: Current mark-to-market valuation
            exit_reason: Tagged reason, or a legacy reason string

        Returns:
            SuppressionDecision; risk exits are never suppressed
        """
        reason = coerce_exit_reason(exit_reason)
        exit_class = reason.exit_class
        self._stats.evaluated += 1
        self._stats.by_exit_code[reason.code.value] = self._stats.by_exit_code.get(reason.code.value, 0) + 1

        if exit_class == ExitClass.RISK:
            self._stats.risk_passthrough += 1
            return SuppressionDecision(
                suppressed=False,
                suppress_reason=SuppressReason.NONE,
                exit_reason=reason,
                exit_class=exit_class,
                fees_accrued_usd=mtm.fees_accrued_usd,
                detail="risk exit"
            )

        hold_time = self.clock.now() - position.entry_time
        if hold_time < self.config.min_hold_noise_exit:
            self._stats.suppressed_min_hold += 1
            remaining = self.config.min_hold_noise_exit - hold_time
            decision = SuppressionDecision(
                suppressed=True,
                suppress_reason=SuppressReason.MIN_HOLD,
                exit_reason=reason,
                exit_class=exit_class,
                hold_time_seconds=hold_time.total_seconds(),
                fees_accrued_usd=mtm.fees_accrued_usd,
                detail=f"held {hold_time.total_seconds() / 60:.1f}m, "
                       f"{remaining.total_seconds() / 60:.1f}m to minimum hold"
            )
            self._log_suppression(position, decision)
            return decision

        cost_target = self.estimate_cost_target(position, mtm)
        if mtm.fees_accrued_usd + USD_EPSILON < cost_target:
            self._stats.suppressed_cost += 1
            decision = SuppressionDecision(
                suppressed=True,
                suppress_reason=SuppressReason.COST_NOT_AMORTIZED,
                exit_reason=reason,
                exit_class=exit_class,
                hold_time_seconds=hold_time.total_seconds(),
                fees_accrued_usd=mtm.fees_accrued_usd,
                cost_target_usd=cost_target,
                detail=f"fees ${mtm.fees_accrued_usd:.2f} < target ${cost_target:.2f}"
            )
            self._log_suppression(position, decision)
            return decision

        self._stats.allowed += 1
        return SuppressionDecision(
            suppressed=False,
            suppress_reason=SuppressReason.NONE,
            exit_reason=reason,
            exit_class=exit_class,
            hold_time_seconds=hold_time.total_seconds(),
            fees_accrued_usd=mtm.fees_accrued_usd,
            cost_target_usd=cost_target,
            detail="costs amortized"
        )

    def can_exit_proceed(self, exit_reason: Union[ExitReason, str], hold_time: timedelta) -> bool:
        """Quick pre-filter: risk exits always, noise exits only after minimum hold."""
        reason = coerce_exit_reason(exit_reason)
        if reason.is_risk:
            return True
        return hold_time >= self.config.min_hold_noise_exit

    def _log_suppression(self, position: PositionForSuppression, decision: SuppressionDecision) -> None:
        key = f"{position.position_id}:{decision.suppress_reason.value}"
        if not self.rate_limiter.should_log(key, decision.detail):
            return
        logger.info(
            f"🛑 Exit suppressed [{decision.suppress_reason.value}] {position.display_name}: "
            f"{decision.exit_reason} ({decision.detail})",
            extra={"event": "exit_suppressed", "position_id": position.position_id,
                   "suppress_reason": decision.suppress_reason.value,
                   "exit_reason": decision.exit_reason.code.value,
                   "fees_accrued_usd": decision.fees_accrued_usd,
                   "cost_target_usd": decision.cost_target_usd}
        )

    # ------------------------------------------------------------------
    # Exit attempts and locks
    # ------------------------------------------------------------------

    def can_attempt_exit(self, position_id: str) -> Tuple[bool, str]:
        """Check the in-progress lock and the per-position attempt cooldown."""
        if position_id in self._in_progress:
            return False, "exit already in progress"
        attempt = self._attempts.get(position_id)
        if attempt is None or attempt.last_attempt_at is None:
            return True, "first attempt"
        elapsed = self.clock.now() - attempt.last_attempt_at
        if elapsed < self.config.exit_attempt_cooldown:
            remaining = self.config.exit_attempt_cooldown - elapsed
            return False, f"exit attempt cooldown ({remaining.total_seconds():.0f}s remaining)"
        return True, f"attempt #{attempt.count + 1}"

    def record_exit_attempt(self, position_id: str) -> int:
        """Count an exit attempt; returns the attempt number."""
        attempt = self._attempts.setdefault(position_id, ExitAttempt())
        attempt.count += 1
        attempt.last_attempt_at = self.clock.now()
        if attempt.count >= self.config.exit_attempt_warning_count:
            logger.warning(
                f"⚠️ {attempt.count} exit attempts for {position_id} without confirmation",
                extra={"event": "exit_attempts_repeated", "position_id": position_id,
                       "attempts": attempt.count}
            )
        return attempt.count

    def mark_exit_in_progress(self, position_id: str) -> bool:
        """Take the exit lock; False if another caller already holds it."""
        if position_id in self._in_progress:
            return False
        self._in_progress.add(position_id)
        return True

    def clear_exit_in_progress(self, position_id: str) -> None:
        self._in_progress.discard(position_id)

    def is_exit_in_progress(self, position_id: str) -> bool:
        return position_id in self._in_progress

    def attempts(self, position_id: str) -> int:
        attempt = self._attempts.get(position_id)
        return attempt.count if attempt else 0

    def forget_position(self, position_id: str) -> None:
        """Drop all per-position state once the exit is confirmed."""
        self._attempts.pop(position_id, None)
        self._in_progress.discard(position_id)
        self.rate_limiter.forget(f"{position_id}:")

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> Dict[str, object]:
        data = self._stats.as_dict()
        data["exits_in_progress"] = len(self._in_progress)
        data["log_lines_swallowed"] = self.rate_limiter.get_stats()["suppressed_total"]
        return data

    def reset_stats(self) -> None:
        self._stats = SuppressionStats()


@dataclass
class _StalenessTrack:
    last_value: Optional[float] = None
    unchanged_cycles: int = 0
    reported: bool = False


class MtmStalenessMonitor:
    """
    Forces an exit when a position's MTM value stops moving.

    Counts consecutive observations, after the minimum hold time, where the
    valuation is invalid or unchanged. At `mtm_stuck_cycle_threshold` it
    returns the risk reason MTM_ERROR_EXIT so cost-amortization suppression
    cannot trap a position behind a stuck valuation feed.
    """

    def __init__(self, config: Optional[ExitHysteresisConfig] = None, clock: Optional[Clock] = None):
        self.config = config or ExitHysteresisConfig()
        self.clock = clock or SystemClock()
        self._tracks: Dict[str, _StalenessTrack] = {}

    def observe(self, position: PositionForSuppression, mtm: MTMValuation) -> Optional[ExitReason]:
        """Record one valuation; returns a forced-exit reason once the feed is stuck."""
        track = self._tracks.setdefault(position.position_id, _StalenessTrack())
        hold_time = self.clock.now() - position.entry_time

        unchanged = (
            track.last_value is not None
            and abs(mtm.mtm_value_usd - track.last_value) <= self.config.mtm_unchanged_epsilon_usd
        )
        track.last_value = mtm.mtm_value_usd

        if hold_time < self.config.min_hold_noise_exit:
            track.unchanged_cycles = 0
            return None
        if unchanged or not mtm.is_valid:
            track.unchanged_cycles += 1
        else:
            track.unchanged_cycles = 0
            track.reported = False
            return None

        if track.unchanged_cycles < self.config.mtm_stuck_cycle_threshold:
            return None

        if not track.reported:
            logger.error(
                f"🚨 MTM for {position.display_name} unchanged for {track.unchanged_cycles} cycles; "
                f"forcing exit",
                extra={"event": "mtm_stuck", "position_id": position.position_id,
                       "unchanged_cycles": track.unchanged_cycles}
            )
            track.reported = True
        return ExitReason.of(ExitReasonCode.MTM_ERROR_EXIT, "valuation stuck")

    def stuck_cycles(self, position_id: str) -> int:
        track = self._tracks.get(position_id)
        return track.unchanged_cycles if track else 0

    def forget(self, position_id: str) -> None:
        self._tracks.pop(position_id, None)

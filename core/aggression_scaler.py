"""
Aggression Scaler - regime-dependent sizing and exit-sensitivity multipliers.

Decision ladder per call:
1. Within the flip cooldown the size multiplier is forced to the NEUTRAL entry.
2. While the regime is not stable, multipliers above 1.0 are dampened toward
   1.0; multipliers at or below 1.0 pass through (reducing risk is never delayed).
3. Once stable the table applies unmodified.
"""
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Deque, Dict, List, Optional
import logging

from config.settings import AggressionConfig
from core.regime_tracker import RegimeTracker
from models.enums import MarketRegime, ScalingStatus
from utils.clock import Clock

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RegimeMultipliers:
    """Multipliers for the current cycle plus stability metadata."""
    regime: MarketRegime
    size_multiplier: float
    bin_width_multiplier: float
    exit_sensitivity_multiplier: float
    score_decay_tolerance: float
    is_fully_applied: bool
    is_dampened: bool
    in_cooldown: bool
    scaling_blocked: bool
    is_stable: bool
    consecutive_cycles: int
    time_in_regime_seconds: float


@dataclass(frozen=True)
class SizeAdjustment:
    """One applied size adjustment, kept for observability."""
    base_size: float
    adjusted_size: float
    multiplier: float
    status: ScalingStatus
    regime: MarketRegime
    timestamp: datetime


class AggressionScaler:
    """Derives multipliers from the regime tracker; no state besides history."""

    def __init__(
        self,
        tracker: RegimeTracker,
        config: Optional[AggressionConfig] = None,
        clock: Optional[Clock] = None
    ):
        self.tracker = tracker
        self.config = config or AggressionConfig()
        self.clock = clock or tracker.clock
        self._history: Deque[SizeAdjustment] = deque(maxlen=self.config.max_adjustment_history)

    def dampen(self, raw: float) -> float:
        """Pull a multiplier above 1.0 toward 1.0; leave decreases untouched."""
        if raw <= 1.0:
            return raw
        return 1.0 + (raw - 1.0) * self.config.first_flip_dampening_factor

    def get_multipliers(self) -> RegimeMultipliers:
        """Compute this cycle's multipliers."""
        cfg = self.config
        regime = self.tracker.current_regime
        state = self.tracker.snapshot()
        stable = self.tracker.is_stable()

        size = cfg.size_multipliers[regime]
        bin_width = cfg.bin_width_multipliers[regime]
        exit_sensitivity = cfg.exit_sensitivity_multipliers[regime]
        tolerance = cfg.score_decay_tolerance[regime]

        since_flip = self.tracker.time_since_last_flip()
        in_cooldown = since_flip is not None and since_flip < cfg.flip_cooldown
        if in_cooldown:
            size = cfg.size_multipliers[MarketRegime.NEUTRAL]

        dampened = False
        scaling_blocked = False

        if not stable:
            raw = (size, bin_width, exit_sensitivity)
            size, bin_width, exit_sensitivity = (self.dampen(v) for v in raw)
            dampened = (size, bin_width, exit_sensitivity) != raw
        elif max(size, bin_width, exit_sensitivity) > 1.0 and not self.tracker.is_stable():
            # Re-check before returning an undampened increase
            size = cfg.size_multipliers[MarketRegime.NEUTRAL]
            bin_width = cfg.bin_width_multipliers[MarketRegime.NEUTRAL]
            exit_sensitivity = cfg.exit_sensitivity_multipliers[MarketRegime.NEUTRAL]
            scaling_blocked = True
            logger.warning(
                f"🚫 Scaling blocked: {regime.value} failed stability re-check, using NEUTRAL",
                extra={"event": "scaling_blocked", "regime": regime.value}
            )

        return RegimeMultipliers(
            regime=regime,
            size_multiplier=size,
            bin_width_multiplier=bin_width,
            exit_sensitivity_multiplier=exit_sensitivity,
            score_decay_tolerance=tolerance,
            is_fully_applied=stable and not in_cooldown and not scaling_blocked,
            is_dampened=dampened,
            in_cooldown=in_cooldown,
            scaling_blocked=scaling_blocked,
            is_stable=stable,
            consecutive_cycles=state.consecutive_cycles,
            time_in_regime_seconds=self.tracker.time_in_regime().total_seconds()
        )

    def adjusted_size(self, base_size: float) -> SizeAdjustment:
        """Apply the size multiplier to a base position size."""
        mult = self.get_multipliers()
        if mult.in_cooldown:
            status = ScalingStatus.COOLDOWN
        elif mult.scaling_blocked:
            status = ScalingStatus.NEUTRAL
        elif mult.is_dampened:
            status = ScalingStatus.DAMPENED
        else:
            status = ScalingStatus.FULL

        adjustment = SizeAdjustment(
            base_size=base_size,
            adjusted_size=base_size * mult.size_multiplier,
            multiplier=mult.size_multiplier,
            status=status,
            regime=mult.regime,
            timestamp=self.clock.now()
        )
        self._history.append(adjustment)
        return adjustment

    def adjusted_exit_threshold(self, base_threshold: float) -> float:
        return base_threshold * self.get_multipliers().exit_sensitivity_multiplier

    def adjusted_bin_width(self, base_bins: int) -> int:
        """Scale a bin count; never below one bin."""
        return max(1, round(base_bins * self.get_multipliers().bin_width_multiplier))

    def is_score_decay_tolerable(self, entry_score: float, current_score: float) -> bool:
        """True if the score has not decayed beyond the regime's tolerance."""
        if entry_score <= 0:
            return True
        decay = (entry_score - current_score) / entry_score
        return decay <= self.get_multipliers().score_decay_tolerance

    def history(self) -> List[SizeAdjustment]:
        return list(self._history)

    def summary(self) -> Dict[str, object]:
        """Log and return a one-line view of the current scaling."""
        mult = self.get_multipliers()
        logger.info(
            f"📊 Aggression: {mult.regime.value} size={mult.size_multiplier:.2f}x "
            f"bins={mult.bin_width_multiplier:.2f}x exit={mult.exit_sensitivity_multiplier:.2f}x "
            f"stable={mult.is_stable} cooldown={mult.in_cooldown} dampened={mult.is_dampened}"
        )
        return {
            "regime": mult.regime.value,
            "size_multiplier": mult.size_multiplier,
            "bin_width_multiplier": mult.bin_width_multiplier,
            "exit_sensitivity_multiplier": mult.exit_sensitivity_multiplier,
            "score_decay_tolerance": mult.score_decay_tolerance,
            "is_stable": mult.is_stable,
            "in_cooldown": mult.in_cooldown,
            "is_dampened": mult.is_dampened,
            "adjustments_recorded": len(self._history),
        }

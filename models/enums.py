"""Enums for control plane models."""
from enum import Enum


class MarketRegime(str, Enum):
    """Coarse market regime classification."""
    BEAR = "BEAR"
    NEUTRAL = "NEUTRAL"
    BULL = "BULL"

    @classmethod
    def from_string(cls, value: str) -> "MarketRegime":
        """Convert string to MarketRegime."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Invalid regime: {value}. Must be one of BEAR, NEUTRAL, BULL")


class AggressionLevel(str, Enum):
    """Aggression ladder level (A0 = baseline, A4 = maximum)."""
    A0 = "A0"
    A1 = "A1"
    A2 = "A2"
    A3 = "A3"
    A4 = "A4"

    @property
    def rank(self) -> int:
        return int(self.value[1])

    @classmethod
    def from_string(cls, value: str) -> "AggressionLevel":
        """Convert string to AggressionLevel."""
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValueError(f"Invalid aggression level: {value}. Must be A0-A4")


class ExitClass(str, Enum):
    """Safety class of an exit reason."""
    RISK = "RISK"  # Must always execute
    NOISE = "NOISE"  # May be debounced
    UNKNOWN = "UNKNOWN"  # Unclassified, treated as noise-eligible


class ExitReasonCategory(str, Enum):
    """Exit reason category, used to pick the suppression cooldown."""
    HARMONIC = "HARMONIC"
    MICROSTRUCTURE = "MICROSTRUCTURE"
    TIER4_STRUCTURAL = "TIER4_STRUCTURAL"
    COST_AMORTIZATION = "COST_AMORTIZATION"
    REGIME = "REGIME"
    RECOVERY = "RECOVERY"
    UNKNOWN = "UNKNOWN"


class ExitIntentState(str, Enum):
    """Exit intent state machine states."""
    LATCHED = "LATCHED"  # Exit condition detected, not yet suppressed
    SUPPRESSED = "SUPPRESSED"  # Exit suppressed, in cooldown
    PENDING_REEVAL = "PENDING_REEVAL"  # Extension ceiling hit, must re-evaluate
    RESOLVED = "RESOLVED"  # Exit executed or cleared


class SuppressionType(str, Enum):
    """Why an exit intent was suppressed."""
    COST_NOT_AMORTIZED = "COST_NOT_AMORTIZED"
    MIN_HOLD_TIME = "MIN_HOLD_TIME"
    VSH_SUPPRESSION = "VSH_SUPPRESSION"
    OTHER = "OTHER"


class SuppressReason(str, Enum):
    """Outcome reason of the exit hysteresis gate."""
    MIN_HOLD = "MIN_HOLD"
    COST_NOT_AMORTIZED = "COST_NOT_AMORTIZED"
    NONE = "NONE"

    def to_suppression_type(self) -> SuppressionType:
        if self == SuppressReason.MIN_HOLD:
            return SuppressionType.MIN_HOLD_TIME
        if self == SuppressReason.COST_NOT_AMORTIZED:
            return SuppressionType.COST_NOT_AMORTIZED
        return SuppressionType.OTHER


class ReEvaluationAction(str, Enum):
    """What the exit loop should do after a re-evaluation check."""
    RE_EVALUATE = "RE_EVALUATE"
    EXTEND_COOLDOWN = "EXTEND_COOLDOWN"
    WAIT = "WAIT"  # Still in cooldown


class TrancheBlockReason(str, Enum):
    """Reason a tranche was refused by the concentration engine."""
    AGGRESSION_LEVEL_LOW = "aggression_level_low"
    POOL_COOLDOWN = "pool_cooldown"
    MAX_TRANCHES = "max_tranches"
    TIME_BETWEEN_TRANCHES = "time_between_tranches"
    ODS_BELOW_THRESHOLD = "ods_below_threshold"
    SPIKE_EXPIRED = "spike_expired"
    EXTENDED_INPUTS_REQUIRED = "extended_inputs_required"
    ODS_DECAYING = "ods_decaying"
    EV_NOT_IMPROVING = "ev_not_improving"
    NO_VSH_OR_FEE_INTENSITY = "no_vsh_or_fee_intensity"
    ADVERSE_SELECTION = "adverse_selection"
    LOW_FEE_RATE = "low_fee_rate"

    @property
    def triggers_cooldown(self) -> bool:
        """Density, EV and fee-intensity failures put the pool on cooldown."""
        return self in (
            TrancheBlockReason.ODS_DECAYING,
            TrancheBlockReason.EV_NOT_IMPROVING,
            TrancheBlockReason.NO_VSH_OR_FEE_INTENSITY,
        )


class RegimeUpdateOutcome(str, Enum):
    """What one regime observation did to the tracker."""
    CONFIRMED = "CONFIRMED"  # Signal matched the committed regime
    PENDING = "PENDING"  # Differing signal, confirmation still building
    PENDING_CANCELLED = "PENDING_CANCELLED"  # Signal returned to the committed regime
    DWELL_BLOCKED = "DWELL_BLOCKED"  # Confirmed but minimum dwell not elapsed
    COMMITTED = "COMMITTED"  # Flip committed


class ScalingStatus(str, Enum):
    """How a size multiplier was applied."""
    FULL = "FULL"
    DAMPENED = "DAMPENED"
    COOLDOWN = "COOLDOWN"
    NEUTRAL = "NEUTRAL"

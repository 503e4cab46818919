"""
Exit reasons as tagged values.

Exit-trigger evaluators should construct an ExitReason from an
ExitReasonCode. Free-text reasons from older callers go through
ExitReason.from_legacy(), the only place keyword matching happens.
"""
import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple, Union

from models.enums import ExitClass, ExitReasonCategory


class ExitReasonCode(str, Enum):
    """Every exit reason the exit-trigger evaluators can raise."""
    # Risk exits: never suppressed
    KILL_SWITCH = "KILL_SWITCH"
    CHAOS_REGIME_FLIP = "CHAOS_REGIME_FLIP"
    FEE_BLEED_ACTIVE = "FEE_BLEED_ACTIVE"
    LEDGER_ERROR = "LEDGER_ERROR"
    EMERGENCY = "EMERGENCY"
    MARKET_CRASH = "MARKET_CRASH"
    INSUFFICIENT_CAPITAL = "INSUFFICIENT_CAPITAL"
    STOP_LOSS = "STOP_LOSS"
    FORCE_EXIT = "FORCE_EXIT"
    MTM_ERROR_EXIT = "MTM_ERROR_EXIT"
    RECOVERY_EXIT = "RECOVERY_EXIT"
    INVARIANT_FAILURE = "INVARIANT_FAILURE"

    # Noise exits: may be debounced
    HARMONIC = "HARMONIC"
    MICROSTRUCTURE = "MICROSTRUCTURE"
    SCORE_DROP = "SCORE_DROP"
    FEE_INTENSITY_COLLAPSE = "FEE_INTENSITY_COLLAPSE"
    MIGRATION_REVERSAL = "MIGRATION_REVERSAL"
    BIN_OFFSET = "BIN_OFFSET"
    HOLD_TIMEOUT = "HOLD_TIMEOUT"
    PROFIT_TAKE = "PROFIT_TAKE"
    REBALANCE = "REBALANCE"
    VSH_EXIT = "VSH_EXIT"

    UNCLASSIFIED = "UNCLASSIFIED"


RISK_CODES = frozenset({
    ExitReasonCode.KILL_SWITCH,
    ExitReasonCode.CHAOS_REGIME_FLIP,
    ExitReasonCode.FEE_BLEED_ACTIVE,
    ExitReasonCode.LEDGER_ERROR,
    ExitReasonCode.EMERGENCY,
    ExitReasonCode.MARKET_CRASH,
    ExitReasonCode.INSUFFICIENT_CAPITAL,
    ExitReasonCode.STOP_LOSS,
    ExitReasonCode.FORCE_EXIT,
    ExitReasonCode.MTM_ERROR_EXIT,
    ExitReasonCode.RECOVERY_EXIT,
    ExitReasonCode.INVARIANT_FAILURE,
})

CODE_CATEGORIES: Dict[ExitReasonCode, ExitReasonCategory] = {
    ExitReasonCode.HARMONIC: ExitReasonCategory.HARMONIC,
    ExitReasonCode.MICROSTRUCTURE: ExitReasonCategory.MICROSTRUCTURE,
    ExitReasonCode.FEE_INTENSITY_COLLAPSE: ExitReasonCategory.MICROSTRUCTURE,
    ExitReasonCode.BIN_OFFSET: ExitReasonCategory.MICROSTRUCTURE,
    ExitReasonCode.SCORE_DROP: ExitReasonCategory.TIER4_STRUCTURAL,
    ExitReasonCode.MIGRATION_REVERSAL: ExitReasonCategory.TIER4_STRUCTURAL,
    ExitReasonCode.CHAOS_REGIME_FLIP: ExitReasonCategory.REGIME,
    ExitReasonCode.MTM_ERROR_EXIT: ExitReasonCategory.RECOVERY,
    ExitReasonCode.RECOVERY_EXIT: ExitReasonCategory.RECOVERY,
}

# Legacy keyword tables. Matched against the upper-cased reason with every
# character outside A-Z and "_" replaced by "_". Risk is checked first.
RISK_KEYWORDS: Tuple[Tuple[str, ExitReasonCode], ...] = (
    ("KILL_SWITCH", ExitReasonCode.KILL_SWITCH),
    ("REGIME_FLIP", ExitReasonCode.CHAOS_REGIME_FLIP),
    ("CHAOS", ExitReasonCode.CHAOS_REGIME_FLIP),
    ("FEE_BLEED", ExitReasonCode.FEE_BLEED_ACTIVE),
    ("BLEED_EXIT", ExitReasonCode.FEE_BLEED_ACTIVE),
    ("LEDGER_ERROR", ExitReasonCode.LEDGER_ERROR),
    ("EMERGENCY", ExitReasonCode.EMERGENCY),
    ("MARKET_CRASH", ExitReasonCode.MARKET_CRASH),
    ("INSUFFICIENT_CAPITAL", ExitReasonCode.INSUFFICIENT_CAPITAL),
    ("CAPITAL_ERROR", ExitReasonCode.INSUFFICIENT_CAPITAL),
    ("STOP_LOSS", ExitReasonCode.STOP_LOSS),
    ("FORCE_EXIT", ExitReasonCode.FORCE_EXIT),
    ("FORCED_EXIT", ExitReasonCode.FORCE_EXIT),
    ("MTM_ERROR", ExitReasonCode.MTM_ERROR_EXIT),
    ("RECOVERY_EXIT", ExitReasonCode.RECOVERY_EXIT),
    ("RESTART_RECONCILE", ExitReasonCode.RECOVERY_EXIT),
    ("INVARIANT_FAILURE", ExitReasonCode.INVARIANT_FAILURE),
)

NOISE_KEYWORDS: Tuple[Tuple[str, ExitReasonCode], ...] = (
    ("HARMONIC", ExitReasonCode.HARMONIC),
    ("MICROSTRUCTURE", ExitReasonCode.MICROSTRUCTURE),
    ("SCORE_DROP", ExitReasonCode.SCORE_DROP),
    ("FEE_INTENSITY_COLLAPSE", ExitReasonCode.FEE_INTENSITY_COLLAPSE),
    ("MIGRATION_REVERSAL", ExitReasonCode.MIGRATION_REVERSAL),
    ("BIN_OFFSET", ExitReasonCode.BIN_OFFSET),
    ("HOLD_TIMEOUT", ExitReasonCode.HOLD_TIMEOUT),
    ("PROFIT_TAKE", ExitReasonCode.PROFIT_TAKE),
    ("REBALANCE", ExitReasonCode.REBALANCE),
    ("VSH_EXIT", ExitReasonCode.VSH_EXIT),
)

# Category keywords, matched against the lower-cased text in order.
CATEGORY_KEYWORDS: Tuple[Tuple[Tuple[str, ...], ExitReasonCategory], ...] = (
    (("harmonic", "health", "badsample"), ExitReasonCategory.HARMONIC),
    (("microstructure", "fee_intensity", "swap_velocity", "bin_offset"), ExitReasonCategory.MICROSTRUCTURE),
    (("tier4", "score_drop", "migration"), ExitReasonCategory.TIER4_STRUCTURAL),
    (("cost", "amortiz"), ExitReasonCategory.COST_AMORTIZATION),
    (("regime",), ExitReasonCategory.REGIME),
    (("recovery", "reconcile", "mtm_error"), ExitReasonCategory.RECOVERY),
)


def _normalize(text: str) -> str:
    return re.sub(r"[^A-Z_]", "_", text.upper())


def classify_category(text: str) -> ExitReasonCategory:
    """Keyword category for free-text reasons."""
    lowered = text.lower().replace("-", "_").replace(" ", "_")
    for keywords, category in CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ExitReasonCategory.UNKNOWN


def code_from_legacy(text: str) -> ExitReasonCode:
    """Map a free-text reason to a code; risk keywords win over noise keywords."""
    normalized = _normalize(text)
    for keyword, code in RISK_KEYWORDS:
        if keyword in normalized:
            return code
    for keyword, code in NOISE_KEYWORDS:
        if keyword in normalized:
            return code
    return ExitReasonCode.UNCLASSIFIED


@dataclass(frozen=True)
class ExitReason:
    """
    Exit reason as produced by an exit-trigger evaluator.

    Attributes:
        code: Tagged reason
        text: Original / descriptive text (used in logs and as latch key)
        category: Cooldown category
    """
    code: ExitReasonCode
    text: str
    category: ExitReasonCategory

    @classmethod
    def of(cls, code: ExitReasonCode, detail: str = "") -> "ExitReason":
        """Build a reason from its code."""
        text = f"{code.value}: {detail}" if detail else code.value
        category = CODE_CATEGORIES.get(code)
        if category is None:
            category = classify_category(text)
        return cls(code=code, text=text, category=category)

    @classmethod
    def from_legacy(cls, text: str) -> "ExitReason":
        """Compatibility shim for free-text reasons."""
        code = code_from_legacy(text)
        category = CODE_CATEGORIES.get(code) or classify_category(text)
        return cls(code=code, text=text, category=category)

    @property
    def exit_class(self) -> ExitClass:
        if self.code in RISK_CODES:
            return ExitClass.RISK
        if self.code == ExitReasonCode.UNCLASSIFIED:
            return ExitClass.UNKNOWN
        return ExitClass.NOISE

    @property
    def is_risk(self) -> bool:
        return self.exit_class == ExitClass.RISK

    def __str__(self) -> str:
        return self.text


def coerce_exit_reason(reason: Union[ExitReason, str]) -> ExitReason:
    """Accept either a tagged reason or a legacy string."""
    if isinstance(reason, ExitReason):
        return reason
    return ExitReason.from_legacy(reason)

"""Position, valuation and metrics snapshots supplied by external collaborators."""
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from models.enums import MarketRegime


@dataclass
class PositionForSuppression:
    """Open position as seen by the exit hysteresis gate."""
    position_id: str
    pool_address: str
    entry_time: datetime
    entry_notional_usd: float
    pool_name: str = ""
    entry_fees_usd: Optional[float] = None
    expected_exit_fees_usd: Optional[float] = None
    slippage_total_usd: Optional[float] = None

    @property
    def display_name(self) -> str:
        return self.pool_name or self.pool_address[:8]


@dataclass
class MTMValuation:
    """Mark-to-market valuation of an open position."""
    mtm_value_usd: float
    fees_accrued_usd: float
    computed_at: Optional[datetime] = None
    is_valid: bool = True


@dataclass(frozen=True)
class ExitIntentMetrics:
    """
    Metrics snapshot captured when an exit condition is detected.

    Compared against later snapshots to decide whether anything changed
    materially while the exit was suppressed. Missing fields are skipped
    in the comparison.
    """
    regime: Optional[MarketRegime] = None
    fees_accrued_usd: Optional[float] = None
    tier_score: Optional[float] = None
    health_score: Optional[float] = None
    bad_samples: Optional[int] = None

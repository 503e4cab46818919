"""
Regime Stability Tracker - turns a noisy per-cycle regime signal into a
committed regime.

A flip commits only when the same differing signal has been seen on
`confirmation_cycles` consecutive cycles AND at least `min_dwell_seconds`
have passed since the previous flip. The dwell guard is a hard block: no
signal pattern can bypass it.
"""
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional, Union
import logging

from config.settings import RegimeConfig
from models.enums import MarketRegime, RegimeUpdateOutcome
from utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

# Flips beyond this count with a regime that never re-confirmed are reported
OSCILLATION_FLIP_THRESHOLD = 3


@dataclass(frozen=True)
class RegimeState:
    """Committed regime state."""
    current_regime: MarketRegime
    regime_entered_at: datetime
    previous_regime: Optional[MarketRegime] = None
    consecutive_cycles: int = 0
    last_flip_time: Optional[datetime] = None
    total_flips: int = 0


@dataclass(frozen=True)
class InputHysteresisState:
    """Pending (not yet committed) regime candidate."""
    pending_regime: Optional[MarketRegime] = None
    pending_cycles: int = 0
    last_signaled_regime: Optional[MarketRegime] = None


@dataclass(frozen=True)
class RegimeUpdate:
    """Result of feeding one regime observation to the tracker."""
    outcome: RegimeUpdateOutcome
    signal: MarketRegime
    regime: MarketRegime  # Committed regime after the update
    previous_regime: Optional[MarketRegime] = None
    pending_regime: Optional[MarketRegime] = None
    pending_cycles: int = 0
    dwell_remaining: Optional[timedelta] = None

    @property
    def flipped(self) -> bool:
        return self.outcome == RegimeUpdateOutcome.COMMITTED


class RegimeTracker:
    """
    Owns the process-wide RegimeState and InputHysteresisState.

    Both states are only ever replaced through update_regime() / reset();
    readers get immutable snapshots.
    """

    def __init__(
        self,
        config: Optional[RegimeConfig] = None,
        clock: Optional[Clock] = None,
        initial_regime: MarketRegime = MarketRegime.NEUTRAL
    ):
        self.config = config or RegimeConfig()
        self.clock = clock or SystemClock()
        self._initial_regime = initial_regime
        self._state = RegimeState(current_regime=initial_regime, regime_entered_at=self.clock.now())
        self._pending = InputHysteresisState()
        self._dwell_block_logged = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def current_regime(self) -> MarketRegime:
        return self._state.current_regime

    def snapshot(self) -> RegimeState:
        """Immutable copy of the committed regime state."""
        return self._state

    def pending(self) -> InputHysteresisState:
        """Immutable copy of the hysteresis state."""
        return self._pending

    def time_in_regime(self) -> timedelta:
        return self.clock.now() - self._state.regime_entered_at

    def time_since_last_flip(self) -> Optional[timedelta]:
        """Time since the last committed flip, or None if no flip has happened."""
        if self._state.last_flip_time is None:
            return None
        return self.clock.now() - self._state.last_flip_time

    def is_stable(self) -> bool:
        """
        Two-factor stability: enough re-confirmations AND enough wall-clock
        time in the regime. Either alone is gameable by irregular cadence.
        """
        return (
            self._state.consecutive_cycles >= self.config.min_cycles_for_stability
            and self.time_in_regime() >= self.config.stability_window
        )

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_regime(self, signal: Union[MarketRegime, str]) -> RegimeUpdate:
        """
        Consume one regime observation.

        Args:
            signal: Regime reported by the classifier this cycle

        Returns:
            RegimeUpdate describing what happened
        """
        if not isinstance(signal, MarketRegime):
            signal = MarketRegime.from_string(signal)

        state = self._state
        pending = self._pending

        if signal == state.current_regime:
            self._state = replace(state, consecutive_cycles=state.consecutive_cycles + 1)
            if pending.pending_regime is not None:
                logger.info(
                    f"↩️ Regime candidate {pending.pending_regime.value} cancelled after "
                    f"{pending.pending_cycles} cycle(s); signal back to {signal.value}",
                    extra={"event": "regime_pending_cancelled",
                           "pending_regime": pending.pending_regime.value,
                           "pending_cycles": pending.pending_cycles}
                )
                self._clear_pending(signal)
                return self._result(RegimeUpdateOutcome.PENDING_CANCELLED, signal)
            self._pending = replace(pending, last_signaled_regime=signal)
            return self._result(RegimeUpdateOutcome.CONFIRMED, signal)

        if signal == pending.pending_regime:
            self._pending = replace(
                pending, pending_cycles=pending.pending_cycles + 1, last_signaled_regime=signal
            )
        else:
            self._pending = InputHysteresisState(
                pending_regime=signal, pending_cycles=1, last_signaled_regime=signal
            )
            self._dwell_block_logged = False
            logger.debug(
                f"Regime candidate {signal.value} (committed: {state.current_regime.value})",
                extra={"event": "regime_pending", "pending_regime": signal.value}
            )

        if self._pending.pending_cycles < self.config.confirmation_cycles:
            return self._result(RegimeUpdateOutcome.PENDING, signal)

        dwell_remaining = self._dwell_remaining()
        if dwell_remaining is not None:
            if not self._dwell_block_logged:
                logger.info(
                    f"⏳ Regime flip to {signal.value} confirmed but dwell guard active "
                    f"({dwell_remaining.total_seconds():.0f}s remaining)",
                    extra={"event": "regime_dwell_blocked", "pending_regime": signal.value,
                           "dwell_remaining_seconds": dwell_remaining.total_seconds()}
                )
                self._dwell_block_logged = True
            return self._result(RegimeUpdateOutcome.DWELL_BLOCKED, signal, dwell_remaining)

        self._commit(signal)
        return self._result(RegimeUpdateOutcome.COMMITTED, signal)

    def reset(self, regime: Optional[MarketRegime] = None) -> None:
        """Reset to a fresh state. Bootstrap and tests only."""
        regime = regime or self._initial_regime
        logger.warning(f"⚠️ Regime tracker reset to {regime.value}")
        self._state = RegimeState(current_regime=regime, regime_entered_at=self.clock.now())
        self._pending = InputHysteresisState()
        self._dwell_block_logged = False

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _dwell_remaining(self) -> Optional[timedelta]:
        since_flip = self.time_since_last_flip()
        if since_flip is None or since_flip >= self.config.min_dwell:
            return None
        return self.config.min_dwell - since_flip

    def _commit(self, signal: MarketRegime) -> None:
        now = self.clock.now()
        old = self._state

        if (old.total_flips + 1 > OSCILLATION_FLIP_THRESHOLD
                and old.consecutive_cycles <= 1):
            logger.error(
                f"🚨 Regime oscillation: leaving {old.current_regime.value} after "
                f"{old.consecutive_cycles} cycle(s), {old.total_flips + 1} flips total",
                extra={"event": "regime_oscillation", "total_flips": old.total_flips + 1}
            )

        self._state = RegimeState(
            current_regime=signal,
            regime_entered_at=now,
            previous_regime=old.current_regime,
            consecutive_cycles=1,
            last_flip_time=now,
            total_flips=old.total_flips + 1
        )
        self._clear_pending(signal)

        logger.info(
            f"🔄 Regime flip committed: {old.current_regime.value} → {signal.value} "
            f"(flip #{self._state.total_flips})",
            extra={"event": "regime_committed", "from_regime": old.current_regime.value,
                   "to_regime": signal.value, "total_flips": self._state.total_flips}
        )

    def _clear_pending(self, last_signal: MarketRegime) -> None:
        self._pending = InputHysteresisState(last_signaled_regime=last_signal)
        self._dwell_block_logged = False

    def _result(
        self,
        outcome: RegimeUpdateOutcome,
        signal: MarketRegime,
        dwell_remaining: Optional[timedelta] = None
    ) -> RegimeUpdate:
        return RegimeUpdate(
            outcome=outcome,
            signal=signal,
            regime=self._state.current_regime,
            previous_regime=self._state.previous_regime,
            pending_regime=self._pending.pending_regime,
            pending_cycles=self._pending.pending_cycles,
            dwell_remaining=dwell_remaining
        )

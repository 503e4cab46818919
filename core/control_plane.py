"""
Process-wide control plane: owns exactly one instance of every state store.

Components never reach into each other's state; cross-component reads go
through their public accessors (e.g. the scaler reads tracker.is_stable()).
"""
from typing import Optional
import logging

from config.settings import AppConfig, get_config
from core.aggression_scaler import AggressionScaler
from core.capital_concentration import CapitalConcentrationEngine
from core.exit_hysteresis import ExitHysteresisGate, MtmStalenessMonitor
from core.exit_intent_latch import ExitIntentLatch
from core.regime_tracker import RegimeTracker
from utils.clock import Clock, SystemClock
from utils.exceptions import ControlPlaneStateError
from utils.invariants import InvariantChecker, make_invariant_checker

logger = logging.getLogger(__name__)


class ControlPlane:
    """Regime tracker, scaler, exit latch/gate and CCE around one clock."""

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        clock: Optional[Clock] = None,
        invariants: Optional[InvariantChecker] = None
    ):
        self.config = config or get_config()
        self.clock = clock or SystemClock()
        self.invariants = invariants or make_invariant_checker(self.config.strict_invariants)

        self.regime_tracker = RegimeTracker(self.config.regime, self.clock)
        self.aggression_scaler = AggressionScaler(self.regime_tracker, self.config.aggression, self.clock)
        self.exit_latch = ExitIntentLatch(self.config.exit_intent, self.clock, self.invariants)
        self.exit_gate = ExitHysteresisGate(self.config.exit_hysteresis, self.clock)
        self.mtm_monitor = MtmStalenessMonitor(self.config.exit_hysteresis, self.clock)
        self.concentration = CapitalConcentrationEngine(
            self.config.concentration, self.clock, self.invariants
        )

        logger.info(
            f"Control plane initialized (strict_invariants={self.invariants.strict}, "
            f"regime={self.regime_tracker.current_regime.value})"
        )


_control_plane: Optional[ControlPlane] = None


def init_control_plane(
    config: Optional[AppConfig] = None,
    clock: Optional[Clock] = None,
    invariants: Optional[InvariantChecker] = None
) -> ControlPlane:
    """
    Create the process-wide control plane.

    Raises:
        ControlPlaneStateError: If one already exists
    """
    global _control_plane
    if _control_plane is not None:
        raise ControlPlaneStateError(
            "Control plane already initialized; call reset_control_plane() first"
        )
    _control_plane = ControlPlane(config, clock, invariants)
    return _control_plane


def get_control_plane() -> ControlPlane:
    """Get the process-wide control plane, creating it on first use."""
    global _control_plane
    if _control_plane is None:
        _control_plane = ControlPlane()
    return _control_plane


def reset_control_plane() -> None:
    """Discard the process-wide control plane (tests / bootstrap)."""
    global _control_plane
    if _control_plane is not None:
        logger.warning("⚠️ Control plane reset")
    _control_plane = None

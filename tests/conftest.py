"""Pytest configuration and shared fixtures."""
import pytest
from datetime import datetime, timedelta

from config.settings import AppConfig, LogLevel, reset_config
from core.aggression_scaler import AggressionScaler
from core.capital_concentration import CapitalConcentrationEngine, TrancheRequest
from core.control_plane import ControlPlane, reset_control_plane
from core.exit_hysteresis import ExitHysteresisGate, MtmStalenessMonitor
from core.exit_intent_latch import ExitIntentLatch
from core.regime_tracker import RegimeTracker
from models.enums import AggressionLevel, MarketRegime
from models.positions import MTMValuation, PositionForSuppression
from utils.clock import ManualClock
from utils.invariants import StrictInvariantChecker

START = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables and drop process-wide singletons."""
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("STRICT_INVARIANTS", "true")
    monkeypatch.delenv("DEV_MODE", raising=False)
    reset_config()
    reset_control_plane()
    yield
    reset_config()
    reset_control_plane()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=START)


@pytest.fixture
def mock_config() -> AppConfig:
    """Default configuration with fatal invariant checks."""
    return AppConfig(log_level=LogLevel.DEBUG, strict_invariants=True)


@pytest.fixture
def invariants() -> StrictInvariantChecker:
    return StrictInvariantChecker()


@pytest.fixture
def tracker(mock_config, clock) -> RegimeTracker:
    return RegimeTracker(mock_config.regime, clock)


@pytest.fixture
def scaler(tracker, mock_config, clock) -> AggressionScaler:
    return AggressionScaler(tracker, mock_config.aggression, clock)


@pytest.fixture
def latch(mock_config, clock, invariants) -> ExitIntentLatch:
    return ExitIntentLatch(mock_config.exit_intent, clock, invariants)


@pytest.fixture
def gate(mock_config, clock) -> ExitHysteresisGate:
    return ExitHysteresisGate(mock_config.exit_hysteresis, clock)


@pytest.fixture
def mtm_monitor(mock_config, clock) -> MtmStalenessMonitor:
    return MtmStalenessMonitor(mock_config.exit_hysteresis, clock)


@pytest.fixture
def cce(mock_config, clock, invariants) -> CapitalConcentrationEngine:
    """Concentration engine with $100k equity."""
    return CapitalConcentrationEngine(
        mock_config.concentration, clock, invariants, total_equity_usd=100_000.0
    )


@pytest.fixture
def control_plane(mock_config, clock) -> ControlPlane:
    return ControlPlane(config=mock_config, clock=clock)


@pytest.fixture
def position_factory(clock):
    """Build a position entered `held` ago with $1 of each round-trip cost."""
    def make(position_id: str = "pos-1", held: timedelta = timedelta(minutes=11), **kwargs):
        defaults = dict(
            position_id=position_id,
            pool_address="PoolAddr1111111111",
            entry_time=clock.now() - held,
            entry_notional_usd=1_000.0,
            pool_name="SOL-USDC",
            entry_fees_usd=1.0,
            expected_exit_fees_usd=1.0,
            slippage_total_usd=1.0,
        )
        defaults.update(kwargs)
        return PositionForSuppression(**defaults)
    return make


@pytest.fixture
def mtm_factory():
    def make(fees: float = 0.0, value: float = 1_000.0, is_valid: bool = True):
        return MTMValuation(mtm_value_usd=value, fees_accrued_usd=fees, is_valid=is_valid)
    return make


@pytest.fixture
def tranche_request():
    def make(pool: str = "PoolA", level: AggressionLevel = AggressionLevel.A2,
             ods: float = 3.0, spike: bool = True) -> TrancheRequest:
        return TrancheRequest(pool_address=pool, aggression_level=level,
                              ods_value=ods, spike_active=spike)
    return make


@pytest.fixture
def feed(tracker, clock):
    """Feed the same signal for several cycles, advancing the clock before each."""
    def run(signal: MarketRegime, cycles: int, step: timedelta = timedelta(seconds=60)):
        results = []
        for _ in range(cycles):
            clock.advance(step)
            results.append(tracker.update_regime(signal))
        return results
    return run

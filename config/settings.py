"""Configuration management for the control plane."""
import os
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, Optional
from dotenv import load_dotenv

from models.enums import AggressionLevel, ExitReasonCategory, MarketRegime
from utils.exceptions import ConfigurationError

# Load environment variables once at module level
load_dotenv()


class LogLevel(str, Enum):
    """Logging levels."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower() == "true"


def parse_regime_table(raw: str, name: str) -> Dict[MarketRegime, float]:
    """
    Parse a "BEAR=0.7,NEUTRAL=1.0,BULL=1.3" string into a per-regime table.

    Raises:
        ConfigurationError: If a regime is missing or a value is not a number
    """
    table: Dict[MarketRegime, float] = {}
    for part in raw.split(","):
        if not part.strip():
            continue
        if "=" not in part:
            raise ConfigurationError(f"{name}: expected REGIME=value, got {part!r}", setting=name)
        key, value = part.split("=", 1)
        try:
            table[MarketRegime.from_string(key)] = float(value)
        except ValueError as e:
            raise ConfigurationError(f"{name}: {e}", setting=name)

    missing = [r.value for r in MarketRegime if r not in table]
    if missing:
        raise ConfigurationError(f"{name}: missing regimes {missing}", setting=name)
    return table


def _regime_table_from_env(name: str, default: Dict[MarketRegime, float]) -> Dict[MarketRegime, float]:
    raw = os.getenv(name)
    if not raw:
        return dict(default)
    return parse_regime_table(raw, name)


@dataclass
class RegimeConfig:
    """Regime stability tracker configuration."""
    confirmation_cycles: int = 3  # Consecutive differing signals before a flip commits
    min_dwell_seconds: int = 300  # Hard minimum between two committed flips
    stability_window_seconds: int = 300  # Time in regime before it counts as stable
    min_cycles_for_stability: int = 3  # Re-confirmations before it counts as stable

    def __post_init__(self):
        if self.confirmation_cycles < 1:
            raise ConfigurationError(
                f"confirmation_cycles must be >= 1, got {self.confirmation_cycles}"
            )
        for name in ("min_dwell_seconds", "stability_window_seconds", "min_cycles_for_stability"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} cannot be negative", setting=name)

    @property
    def min_dwell(self) -> timedelta:
        return timedelta(seconds=self.min_dwell_seconds)

    @property
    def stability_window(self) -> timedelta:
        return timedelta(seconds=self.stability_window_seconds)

    @classmethod
    def from_env(cls) -> "RegimeConfig":
        """Load regime config from environment variables."""
        return cls(
            confirmation_cycles=int(os.getenv("REGIME_CONFIRMATION_CYCLES", "3")),
            min_dwell_seconds=int(os.getenv("REGIME_MIN_DWELL_SECONDS", "300")),
            stability_window_seconds=int(os.getenv("REGIME_STABILITY_WINDOW_SECONDS", "300")),
            min_cycles_for_stability=int(os.getenv("REGIME_MIN_CYCLES_FOR_STABILITY", "3"))
        )


# Regime-dependent sizing is currently flat; the table shape stays so it can
# be switched back on through configuration.
DEFAULT_SIZE_MULTIPLIERS = {MarketRegime.BEAR: 1.0, MarketRegime.NEUTRAL: 1.0, MarketRegime.BULL: 1.0}
DEFAULT_BIN_WIDTH_MULTIPLIERS = {MarketRegime.BEAR: 1.0, MarketRegime.NEUTRAL: 1.0, MarketRegime.BULL: 1.0}
DEFAULT_EXIT_SENSITIVITY_MULTIPLIERS = {MarketRegime.BEAR: 1.0, MarketRegime.NEUTRAL: 1.0, MarketRegime.BULL: 1.25}
DEFAULT_SCORE_DECAY_TOLERANCE = {MarketRegime.BEAR: 0.10, MarketRegime.NEUTRAL: 0.20, MarketRegime.BULL: 0.30}


@dataclass
class AggressionConfig:
    """Aggression scaler configuration."""
    flip_cooldown_seconds: int = 120  # Size forced to NEUTRAL right after a flip
    first_flip_dampening_factor: float = 0.85
    size_multipliers: Dict[MarketRegime, float] = field(
        default_factory=lambda: dict(DEFAULT_SIZE_MULTIPLIERS)
    )
    bin_width_multipliers: Dict[MarketRegime, float] = field(
        default_factory=lambda: dict(DEFAULT_BIN_WIDTH_MULTIPLIERS)
    )
    exit_sensitivity_multipliers: Dict[MarketRegime, float] = field(
        default_factory=lambda: dict(DEFAULT_EXIT_SENSITIVITY_MULTIPLIERS)
    )
    score_decay_tolerance: Dict[MarketRegime, float] = field(
        default_factory=lambda: dict(DEFAULT_SCORE_DECAY_TOLERANCE)
    )
    max_adjustment_history: int = 100

    def __post_init__(self):
        if not 0.0 <= self.first_flip_dampening_factor <= 1.0:
            raise ConfigurationError(
                f"first_flip_dampening_factor must be between 0 and 1, "
                f"got {self.first_flip_dampening_factor}"
            )
        if self.flip_cooldown_seconds < 0:
            raise ConfigurationError("flip_cooldown_seconds cannot be negative")
        for name in ("size_multipliers", "bin_width_multipliers",
                     "exit_sensitivity_multipliers", "score_decay_tolerance"):
            table = getattr(self, name)
            missing = [r.value for r in MarketRegime if r not in table]
            if missing:
                raise ConfigurationError(f"{name} missing regimes {missing}", setting=name)
            if any(v < 0 for v in table.values()):
                raise ConfigurationError(f"{name} cannot contain negative values", setting=name)

    @property
    def flip_cooldown(self) -> timedelta:
        return timedelta(seconds=self.flip_cooldown_seconds)

    @classmethod
    def from_env(cls) -> "AggressionConfig":
        """Load aggression config from environment variables."""
        return cls(
            flip_cooldown_seconds=int(os.getenv("AGGRESSION_FLIP_COOLDOWN_SECONDS", "120")),
            first_flip_dampening_factor=float(os.getenv("AGGRESSION_FIRST_FLIP_DAMPENING", "0.85")),
            size_multipliers=_regime_table_from_env(
                "AGGRESSION_SIZE_MULTIPLIERS", DEFAULT_SIZE_MULTIPLIERS),
            bin_width_multipliers=_regime_table_from_env(
                "AGGRESSION_BIN_WIDTH_MULTIPLIERS", DEFAULT_BIN_WIDTH_MULTIPLIERS),
            exit_sensitivity_multipliers=_regime_table_from_env(
                "AGGRESSION_EXIT_SENSITIVITY_MULTIPLIERS", DEFAULT_EXIT_SENSITIVITY_MULTIPLIERS),
            score_decay_tolerance=_regime_table_from_env(
                "AGGRESSION_SCORE_DECAY_TOLERANCE", DEFAULT_SCORE_DECAY_TOLERANCE)
        )


@dataclass
class ExitIntentConfig:
    """Exit intent latch configuration."""
    harmonic_cooldown_seconds: int = 900  # Also used for MICROSTRUCTURE
    tier4_structural_cooldown_seconds: int = 300
    cost_amortization_cooldown_seconds: int = 900
    regime_cooldown_seconds: int = 300
    recovery_cooldown_seconds: int = 0  # Recovery exits happen at startup
    default_cooldown_seconds: int = 900
    max_cooldown_extensions: int = 3
    silent_cooldown: bool = True  # No log line per cooldown extension
    # Material-change thresholds for re-evaluation
    fee_increase_pct: float = 0.20
    tier_score_degradation_pct: float = 0.10
    health_score_improvement: float = 0.15

    def __post_init__(self):
        for name in ("harmonic_cooldown_seconds", "tier4_structural_cooldown_seconds",
                     "cost_amortization_cooldown_seconds", "regime_cooldown_seconds",
                     "recovery_cooldown_seconds", "default_cooldown_seconds",
                     "max_cooldown_extensions"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} cannot be negative", setting=name)

    def cooldown_for(self, category: ExitReasonCategory) -> timedelta:
        """Suppression cooldown for an exit category."""
        seconds = {
            ExitReasonCategory.HARMONIC: self.harmonic_cooldown_seconds,
            ExitReasonCategory.MICROSTRUCTURE: self.harmonic_cooldown_seconds,
            ExitReasonCategory.TIER4_STRUCTURAL: self.tier4_structural_cooldown_seconds,
            ExitReasonCategory.COST_AMORTIZATION: self.cost_amortization_cooldown_seconds,
            ExitReasonCategory.REGIME: self.regime_cooldown_seconds,
            ExitReasonCategory.RECOVERY: self.recovery_cooldown_seconds,
        }.get(category, self.default_cooldown_seconds)
        return timedelta(seconds=seconds)

    @classmethod
    def from_env(cls) -> "ExitIntentConfig":
        """Load exit intent config from environment variables."""
        suppress_cooldown = int(os.getenv("EXIT_SUPPRESS_COOLDOWN_SECONDS", "900"))
        return cls(
            harmonic_cooldown_seconds=suppress_cooldown,
            cost_amortization_cooldown_seconds=suppress_cooldown,
            default_cooldown_seconds=suppress_cooldown,
            tier4_structural_cooldown_seconds=int(os.getenv("EXIT_TIER4_COOLDOWN_SECONDS", "300")),
            regime_cooldown_seconds=int(os.getenv("EXIT_REGIME_COOLDOWN_SECONDS", "300")),
            max_cooldown_extensions=int(os.getenv("EXIT_MAX_COOLDOWN_EXTENSIONS", "3")),
            silent_cooldown=_env_bool("EXIT_SILENT_COOLDOWN", "true")
        )


@dataclass
class ExitHysteresisConfig:
    """Exit hysteresis / cost-amortization gate configuration."""
    min_hold_seconds_noise_exit: int = 600  # 10 minutes
    cost_amortization_factor: float = 1.10  # Fees must cover 110% of round-trip costs
    default_entry_fee_rate: float = 0.003
    default_exit_fee_rate: float = 0.003
    default_slippage_rate: float = 0.002  # Entry + exit combined
    exit_attempt_cooldown_seconds: int = 120
    exit_attempt_warning_count: int = 3
    mtm_stuck_cycle_threshold: int = 50
    mtm_unchanged_epsilon_usd: float = 1e-6
    suppression_log_interval_seconds: int = 60

    def __post_init__(self):
        if self.cost_amortization_factor < 1.0:
            raise ConfigurationError(
                f"cost_amortization_factor must be >= 1.0, got {self.cost_amortization_factor}"
            )
        if self.min_hold_seconds_noise_exit < 0:
            raise ConfigurationError("min_hold_seconds_noise_exit cannot be negative")
        if self.mtm_stuck_cycle_threshold < 1:
            raise ConfigurationError("mtm_stuck_cycle_threshold must be >= 1")

    @property
    def min_hold_noise_exit(self) -> timedelta:
        return timedelta(seconds=self.min_hold_seconds_noise_exit)

    @property
    def exit_attempt_cooldown(self) -> timedelta:
        return timedelta(seconds=self.exit_attempt_cooldown_seconds)

    @classmethod
    def from_env(cls) -> "ExitHysteresisConfig":
        """Load exit hysteresis config from environment variables."""
        return cls(
            min_hold_seconds_noise_exit=int(os.getenv("EXIT_MIN_HOLD_SECONDS_NOISE", "600")),
            cost_amortization_factor=float(os.getenv("EXIT_COST_AMORTIZATION_FACTOR", "1.10")),
            exit_attempt_cooldown_seconds=int(os.getenv("EXIT_ATTEMPT_COOLDOWN_SECONDS", "120")),
            mtm_stuck_cycle_threshold=int(os.getenv("MTM_STUCK_CYCLE_THRESHOLD", "50")),
            suppression_log_interval_seconds=int(os.getenv("EXIT_SUPPRESS_LOG_INTERVAL_SECONDS", "60"))
        )


DEFAULT_CONCENTRATION_MULTIPLIERS = {
    AggressionLevel.A0: 1.0,
    AggressionLevel.A1: 1.0,
    AggressionLevel.A2: 1.5,
    AggressionLevel.A3: 2.0,
    AggressionLevel.A4: 2.5,
}


@dataclass
class ConcentrationConfig:
    """Capital concentration engine configuration (fractions of total equity)."""
    max_total_deployed_pct: float = 0.25
    max_per_pool_hard_cap_pct: float = 0.18
    base_per_pool_cap_pct: float = 0.075
    concentration_multipliers: Dict[AggressionLevel, float] = field(
        default_factory=lambda: dict(DEFAULT_CONCENTRATION_MULTIPLIERS)
    )
    min_tranche_level: AggressionLevel = AggressionLevel.A2
    max_tranches_per_pool: int = 3
    min_seconds_between_tranches: int = 300
    min_ods_for_tranche: float = 2.0
    # Tranche 2/3 gates
    max_ods_decay_for_tranche: float = 0.15
    min_ev_improvement_pct: float = 0.05
    min_fee_intensity_for_tranche: float = 0.03
    max_adverse_selection_penalty: float = 0.08
    min_expected_fee_rate_usd_hour: float = 0.50
    tranche_block_cooldown_seconds: int = 600
    invariant_tolerance: float = 0.001  # 0.1% float tolerance on caps

    def __post_init__(self):
        for name in ("max_total_deployed_pct", "max_per_pool_hard_cap_pct", "base_per_pool_cap_pct",
                     "max_ods_decay_for_tranche", "min_ev_improvement_pct",
                     "min_fee_intensity_for_tranche", "max_adverse_selection_penalty"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be between 0 and 1, got {value}", setting=name)
        if self.max_per_pool_hard_cap_pct > self.max_total_deployed_pct:
            raise ConfigurationError(
                f"Per-pool hard cap {self.max_per_pool_hard_cap_pct:.1%} exceeds "
                f"portfolio cap {self.max_total_deployed_pct:.1%}"
            )
        missing = [lvl.value for lvl in AggressionLevel if lvl not in self.concentration_multipliers]
        if missing:
            raise ConfigurationError(f"concentration_multipliers missing levels {missing}")
        if self.max_tranches_per_pool < 1:
            raise ConfigurationError("max_tranches_per_pool must be >= 1")

    @property
    def min_time_between_tranches(self) -> timedelta:
        return timedelta(seconds=self.min_seconds_between_tranches)

    @property
    def tranche_block_cooldown(self) -> timedelta:
        return timedelta(seconds=self.tranche_block_cooldown_seconds)

    @classmethod
    def from_env(cls) -> "ConcentrationConfig":
        """Load concentration config from environment variables."""
        return cls(
            max_total_deployed_pct=float(os.getenv("CCE_MAX_TOTAL_DEPLOYED_PCT", "0.25")),
            max_per_pool_hard_cap_pct=float(os.getenv("CCE_MAX_PER_POOL_HARD_CAP_PCT", "0.18")),
            base_per_pool_cap_pct=float(os.getenv("CCE_BASE_PER_POOL_CAP_PCT", "0.075")),
            max_tranches_per_pool=int(os.getenv("CCE_MAX_TRANCHES_PER_POOL", "3")),
            min_seconds_between_tranches=int(os.getenv("CCE_MIN_SECONDS_BETWEEN_TRANCHES", "300")),
            min_ods_for_tranche=float(os.getenv("CCE_MIN_ODS_FOR_TRANCHE", "2.0")),
            tranche_block_cooldown_seconds=int(os.getenv("CCE_TRANCHE_BLOCK_COOLDOWN_SECONDS", "600"))
        )


@dataclass
class AppConfig:
    """Main application configuration."""
    log_level: LogLevel = LogLevel.INFO
    strict_invariants: bool = False  # Fatal invariant checks (dev/test builds)
    loop_interval_seconds: int = 60  # Expected scan cycle period
    regime: RegimeConfig = field(default_factory=RegimeConfig)
    aggression: AggressionConfig = field(default_factory=AggressionConfig)
    exit_intent: ExitIntentConfig = field(default_factory=ExitIntentConfig)
    exit_hysteresis: ExitHysteresisConfig = field(default_factory=ExitHysteresisConfig)
    concentration: ConcentrationConfig = field(default_factory=ConcentrationConfig)

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load all configuration from environment variables."""
        log_level = LogLevel(
            os.getenv("LOG_LEVEL", "INFO").upper()
        )
        strict = _env_bool("STRICT_INVARIANTS") or _env_bool("DEV_MODE")

        return cls(
            log_level=log_level,
            strict_invariants=strict,
            loop_interval_seconds=int(os.getenv("LOOP_INTERVAL_SECONDS", "60")),
            regime=RegimeConfig.from_env(),
            aggression=AggressionConfig.from_env(),
            exit_intent=ExitIntentConfig.from_env(),
            exit_hysteresis=ExitHysteresisConfig.from_env(),
            concentration=ConcentrationConfig.from_env()
        )


# Global config instance (lazy-loaded)
_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Get the global application configuration."""
    global _config
    if _config is None:
        _config = AppConfig.from_env()
    return _config


def reset_config() -> None:
    """Drop the cached global configuration (tests)."""
    global _config
    _config = None

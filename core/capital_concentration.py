"""
Capital Concentration Engine (CCE) - admission control for additional
capital ("tranches") into a pool.

Caps are fractions of total equity:
    target_pool_cap(level) = min(base_per_pool_cap * multiplier[level], hard_cap)
    total deployed <= max_total_deployed

Tranches 2 and 3 need an ExtendedTrancheRequest: the extra decay / EV /
fee-intensity / adverse-selection / fee-rate checks cannot run on a basic
request, so a basic request for a follow-up tranche is blocked.
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
import logging
import math

import pandas as pd

from config.settings import ConcentrationConfig
from models.enums import AggressionLevel, TrancheBlockReason
from models.validation import validate_equity, validate_identifier, validate_usd_amount
from utils.clock import Clock, SystemClock
from utils.exceptions import ControlPlaneStateError
from utils.invariants import InvariantChecker, LoggingInvariantChecker
from utils.rate_limiter import LogRateLimiter

logger = logging.getLogger(__name__)

# Pools at or below this many USD are considered fully closed
DUST_USD = 1e-6


@dataclass(frozen=True)
class TrancheRequest:
    """Signals available for any entry or tranche decision."""
    pool_address: str
    aggression_level: AggressionLevel
    ods_value: float
    spike_active: bool


@dataclass(frozen=True)
class ExtendedTrancheRequest(TrancheRequest):
    """Additional signals required for the second and third tranche."""
    ev_usd: float
    fee_intensity: float
    vsh_eligible: bool
    adverse_selection_penalty: float
    expected_fee_rate_usd_hour: float


@dataclass(frozen=True)
class TrancheDecision:
    """Whether another tranche may be added to a pool."""
    allowed: bool
    tranche_number: int  # 1-based number of the tranche being requested
    target_cap_pct: float
    block_reason: Optional[TrancheBlockReason] = None
    detail: str = ""


@dataclass(frozen=True)
class ConcentrationDecision:
    """Admissible size for an entry/tranche after caps are applied."""
    allowed: bool
    pool_address: str
    aggression_level: AggressionLevel
    base_size_usd: float
    allowed_size_usd: float
    final_size_usd: float
    target_cap_pct: float
    clamp_reasons: List[str] = field(default_factory=list)
    tranche: Optional[TrancheDecision] = None
    block_reason: Optional[TrancheBlockReason] = None


@dataclass
class TrancheRecord:
    """One capital commitment into a pool."""
    tranche_id: str
    size_usd: float
    entered_at: datetime
    aggression_level: AggressionLevel
    ods_value: float
    ev_usd: Optional[float] = None
    fee_intensity: Optional[float] = None


@dataclass
class PoolConcentrationState:
    """Deployment state of one pool."""
    pool_address: str
    total_deployed_usd: float = 0.0
    tranches: List[TrancheRecord] = field(default_factory=list)
    last_tranche_at: Optional[datetime] = None
    peak_ods: float = 0.0


@dataclass
class TrancheCycleStats:
    """Per-cycle tranche telemetry."""
    tranches_added: int = 0
    blocks: Dict[str, int] = field(default_factory=dict)
    ev_deltas_1_to_2: List[float] = field(default_factory=list)


class CapitalConcentrationEngine:
    """Owns the pool-deployment map and enforces per-pool and portfolio caps."""

    def __init__(
        self,
        config: Optional[ConcentrationConfig] = None,
        clock: Optional[Clock] = None,
        invariants: Optional[InvariantChecker] = None,
        total_equity_usd: Optional[float] = None,
        rate_limiter: Optional[LogRateLimiter] = None
    ):
        self.config = config or ConcentrationConfig()
        self.clock = clock or SystemClock()
        self.invariants = invariants or LoggingInvariantChecker()
        self.rate_limiter = rate_limiter or LogRateLimiter(name="tranche_blocks", clock=self.clock)
        self._equity: Optional[float] = None
        self._pools: Dict[str, PoolConcentrationState] = {}
        self._pool_cooldowns: Dict[str, datetime] = {}
        self._tranche_pools: Dict[str, str] = {}  # tranche_id -> pool, until the pool closes
        self._cycle_stats = TrancheCycleStats()
        if total_equity_usd is not None:
            self.update_equity(total_equity_usd)

    # ------------------------------------------------------------------
    # Equity and caps
    # ------------------------------------------------------------------

    @property
    def total_equity_usd(self) -> Optional[float]:
        return self._equity

    def update_equity(self, total_equity_usd: float) -> None:
        """
        Set total equity from the portfolio ledger.

        A drop in equity can push existing deployment over a cap without any
        deployment happening; that drift is reported, not treated as a breach,
        and only blocks further deployment into the affected pools.
        """
        self._equity = validate_equity(total_equity_usd)
        for pool in self._pools.values():
            pct = pool.total_deployed_usd / self._equity
            if pct > self.config.max_per_pool_hard_cap_pct + self.config.invariant_tolerance:
                logger.warning(
                    f"⚠️ Pool {pool.pool_address[:8]} drifted to {pct:.2%} of equity "
                    f"(hard cap {self.config.max_per_pool_hard_cap_pct:.1%}) after equity update",
                    extra={"event": "concentration_drift", "pool_address": pool.pool_address,
                           "pool_pct": pct}
                )
        total_pct = self.total_deployed_usd / self._equity
        if total_pct > self.config.max_total_deployed_pct + self.config.invariant_tolerance:
            logger.warning(
                f"⚠️ Total deployment drifted to {total_pct:.2%} of equity "
                f"(cap {self.config.max_total_deployed_pct:.1%})",
                extra={"event": "concentration_drift", "total_pct": total_pct}
            )

    def target_pool_cap_pct(self, level: AggressionLevel) -> float:
        cfg = self.config
        return min(cfg.base_per_pool_cap_pct * cfg.concentration_multipliers[level],
                   cfg.max_per_pool_hard_cap_pct)

    @property
    def total_deployed_usd(self) -> float:
        return sum(pool.total_deployed_usd for pool in self._pools.values())

    def pool_deployed_usd(self, pool_address: str) -> float:
        pool = self._pools.get(pool_address)
        return pool.total_deployed_usd if pool else 0.0

    def pool_deployed_pct(self, pool_address: str) -> float:
        if not self._equity:
            return 0.0
        return self.pool_deployed_usd(pool_address) / self._equity

    def total_deployed_pct(self) -> float:
        if not self._equity:
            return 0.0
        return self.total_deployed_usd / self._equity

    # ------------------------------------------------------------------
    # Tranche gating
    # ------------------------------------------------------------------

    def can_add_tranche(self, request: TrancheRequest) -> TrancheDecision:
        """
        Gate one more tranche into a pool.

        Blocks are returned, never raised. Density, EV and fee-intensity
        failures also place the pool on a block cooldown.
        """
        cfg = self.config
        now = self.clock.now()
        pool = self._pools.get(request.pool_address)
        tranche_count = len(pool.tranches) if pool else 0
        tranche_number = tranche_count + 1
        target_cap = self.target_pool_cap_pct(request.aggression_level)

        if pool is not None:
            pool.peak_ods = max(pool.peak_ods, request.ods_value)

        def block(reason: TrancheBlockReason, detail: str) -> TrancheDecision:
            return self._block(request, tranche_number, target_cap, reason, detail)

        if request.aggression_level.rank < cfg.min_tranche_level.rank:
            return block(TrancheBlockReason.AGGRESSION_LEVEL_LOW,
                         f"{request.aggression_level.value} < {cfg.min_tranche_level.value}")

        cooldown_until = self._pool_cooldowns.get(request.pool_address)
        if cooldown_until is not None:
            if now < cooldown_until:
                return block(TrancheBlockReason.POOL_COOLDOWN,
                             f"until {cooldown_until.isoformat()}")
            del self._pool_cooldowns[request.pool_address]

        if tranche_count >= cfg.max_tranches_per_pool:
            return block(TrancheBlockReason.MAX_TRANCHES,
                         f"{tranche_count}/{cfg.max_tranches_per_pool} tranches")

        if pool is not None and pool.last_tranche_at is not None:
            elapsed = now - pool.last_tranche_at
            if elapsed < cfg.min_time_between_tranches:
                return block(TrancheBlockReason.TIME_BETWEEN_TRANCHES,
                             f"{elapsed.total_seconds():.0f}s since last tranche")

        if request.ods_value < cfg.min_ods_for_tranche:
            return block(TrancheBlockReason.ODS_BELOW_THRESHOLD,
                         f"ODS {request.ods_value:.2f} < {cfg.min_ods_for_tranche:.2f}")

        if not request.spike_active:
            return block(TrancheBlockReason.SPIKE_EXPIRED, "no active density spike")

        if tranche_count >= 1:
            if not isinstance(request, ExtendedTrancheRequest):
                return block(TrancheBlockReason.EXTENDED_INPUTS_REQUIRED,
                             f"tranche {tranche_number} needs extended inputs")

            if pool.peak_ods > 0:
                decay = (pool.peak_ods - request.ods_value) / pool.peak_ods
                if decay > cfg.max_ods_decay_for_tranche:
                    return block(TrancheBlockReason.ODS_DECAYING,
                                 f"ODS {decay:.1%} below peak {pool.peak_ods:.2f}")

            prior_ev = pool.tranches[-1].ev_usd
            if prior_ev is not None:
                required_ev = prior_ev + abs(prior_ev) * cfg.min_ev_improvement_pct
                if request.ev_usd < required_ev:
                    return block(TrancheBlockReason.EV_NOT_IMPROVING,
                                 f"EV ${request.ev_usd:.2f} < required ${required_ev:.2f}")

            if not request.vsh_eligible and request.fee_intensity < cfg.min_fee_intensity_for_tranche:
                return block(TrancheBlockReason.NO_VSH_OR_FEE_INTENSITY,
                             f"fee intensity {request.fee_intensity:.2%}, no VSH")

            if request.adverse_selection_penalty > cfg.max_adverse_selection_penalty:
                return block(TrancheBlockReason.ADVERSE_SELECTION,
                             f"penalty {request.adverse_selection_penalty:.2%}")

            if request.expected_fee_rate_usd_hour < cfg.min_expected_fee_rate_usd_hour:
                return block(TrancheBlockReason.LOW_FEE_RATE,
                             f"${request.expected_fee_rate_usd_hour:.2f}/h")

        return TrancheDecision(allowed=True, tranche_number=tranche_number, target_cap_pct=target_cap)

    def _block(
        self,
        request: TrancheRequest,
        tranche_number: int,
        target_cap: float,
        reason: TrancheBlockReason,
        detail: str
    ) -> TrancheDecision:
        stats = self._cycle_stats.blocks
        stats[reason.value] = stats.get(reason.value, 0) + 1

        if reason.triggers_cooldown:
            until = self.clock.now() + self.config.tranche_block_cooldown
            self._pool_cooldowns[request.pool_address] = until
            detail = f"{detail}; pool cooldown until {until.isoformat()}"

        if self.rate_limiter.should_log(f"{request.pool_address}:{reason.value}", detail):
            logger.info(
                f"🚫 Tranche {tranche_number} blocked for {request.pool_address[:8]}: "
                f"{reason.value} ({detail})",
                extra={"event": "tranche_blocked", "pool_address": request.pool_address,
                       "block_reason": reason.value, "tranche_number": tranche_number}
            )
        return TrancheDecision(
            allowed=False,
            tranche_number=tranche_number,
            target_cap_pct=target_cap,
            block_reason=reason,
            detail=detail
        )

    # ------------------------------------------------------------------
    # Sizing
    # ------------------------------------------------------------------

    def evaluate_concentration(self, request: TrancheRequest, base_size_usd: float) -> ConcentrationDecision:
        """
        Admissible size for an entry (first tranche) or follow-up tranche.

        allowed = base * multiplier[level], clamped to the remaining per-pool
        capacity and then the remaining portfolio capacity, then floored to
        whole dollars. A first entry into a pool is not subject to tranche gating.
        """
        base_size_usd = validate_usd_amount(base_size_usd, "base_size_usd")
        level = request.aggression_level
        target_cap = self.target_pool_cap_pct(level)
        allowed_size = float(math.floor(base_size_usd * self.config.concentration_multipliers[level]))

        def decision(final: float, clamps: List[str], tranche: Optional[TrancheDecision] = None,
                     block_reason: Optional[TrancheBlockReason] = None) -> ConcentrationDecision:
            return ConcentrationDecision(
                allowed=final > 0 and block_reason is None,
                pool_address=request.pool_address,
                aggression_level=level,
                base_size_usd=base_size_usd,
                allowed_size_usd=allowed_size,
                final_size_usd=final,
                target_cap_pct=target_cap,
                clamp_reasons=clamps,
                tranche=tranche,
                block_reason=block_reason
            )

        if self._equity is None:
            # Without equity no cap can be computed; admit nothing
            return decision(0.0, ["equity_unknown"])

        pool = self._pools.get(request.pool_address)
        tranche = None
        if pool is not None and pool.tranches:
            tranche = self.can_add_tranche(request)
            if not tranche.allowed:
                return decision(0.0, [], tranche, tranche.block_reason)

        clamps: List[str] = []
        size = allowed_size

        pool_room = max(0.0, target_cap * self._equity - self.pool_deployed_usd(request.pool_address))
        if size > pool_room:
            size = pool_room
            clamps.append(f"per_pool_cap:{target_cap:.2%}")

        portfolio_room = max(0.0, self.config.max_total_deployed_pct * self._equity - self.total_deployed_usd)
        if size > portfolio_room:
            size = portfolio_room
            clamps.append(f"portfolio_cap:{self.config.max_total_deployed_pct:.2%}")

        # DUST_USD absorbs float error in the cap arithmetic before flooring
        size = float(math.floor(size + DUST_USD))

        if clamps:
            logger.debug(
                f"Entry for {request.pool_address[:8]} clamped ${allowed_size:,.2f} → ${size:,.2f} "
                f"({', '.join(clamps)})"
            )
        return decision(size, clamps, tranche)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def record_deployment(
        self,
        pool_address: str,
        tranche_id: str,
        size_usd: float,
        aggression_level: AggressionLevel,
        ods_value: float = 0.0,
        ev_usd: Optional[float] = None,
        fee_intensity: Optional[float] = None
    ) -> bool:
        """
        Record a filled tranche.

        Idempotent on tranche_id. A deployment that would breach the per-pool
        hard cap or the portfolio cap is refused and leaves state unchanged.

        Returns:
            True if the tranche was recorded
        """
        pool_address = validate_identifier(pool_address, "pool_address")
        tranche_id = validate_identifier(tranche_id, "tranche_id")
        size_usd = validate_usd_amount(size_usd, "size_usd", allow_zero=False)
        if self._equity is None:
            raise ControlPlaneStateError("Total equity must be set before recording deployments")

        if tranche_id in self._tranche_pools:
            logger.debug(f"Tranche {tranche_id} already recorded; ignoring")
            return False

        cfg = self.config
        new_pool_pct = (self.pool_deployed_usd(pool_address) + size_usd) / self._equity
        new_total_pct = (self.total_deployed_usd + size_usd) / self._equity

        if not self.invariants.check(
            new_pool_pct <= cfg.max_per_pool_hard_cap_pct + cfg.invariant_tolerance,
            "pool_hard_cap",
            f"Deployment {tranche_id} would put {pool_address[:8]} at {new_pool_pct:.2%} "
            f"(hard cap {cfg.max_per_pool_hard_cap_pct:.1%})",
            pool_address=pool_address, tranche_id=tranche_id, pool_pct=new_pool_pct
        ):
            return False
        if not self.invariants.check(
            new_total_pct <= cfg.max_total_deployed_pct + cfg.invariant_tolerance,
            "portfolio_cap",
            f"Deployment {tranche_id} would put total at {new_total_pct:.2%} "
            f"(cap {cfg.max_total_deployed_pct:.1%})",
            pool_address=pool_address, tranche_id=tranche_id, total_pct=new_total_pct
        ):
            return False

        now = self.clock.now()
        pool = self._pools.get(pool_address)
        if pool is None:
            pool = PoolConcentrationState(pool_address=pool_address)
            self._pools[pool_address] = pool

        pool.tranches.append(TrancheRecord(
            tranche_id=tranche_id,
            size_usd=size_usd,
            entered_at=now,
            aggression_level=aggression_level,
            ods_value=ods_value,
            ev_usd=ev_usd,
            fee_intensity=fee_intensity
        ))
        pool.total_deployed_usd += size_usd
        pool.last_tranche_at = now
        pool.peak_ods = max(pool.peak_ods, ods_value)
        self._tranche_pools[tranche_id] = pool_address

        if len(pool.tranches) > 1:
            self._cycle_stats.tranches_added += 1
        if len(pool.tranches) == 2 and pool.tranches[0].ev_usd is not None and ev_usd is not None:
            self._cycle_stats.ev_deltas_1_to_2.append(ev_usd - pool.tranches[0].ev_usd)

        logger.info(
            f"➕ Tranche {len(pool.tranches)} recorded for {pool_address[:8]}: ${size_usd:,.2f} "
            f"({self.pool_deployed_pct(pool_address):.2%} of equity, "
            f"total {self.total_deployed_pct():.2%})",
            extra={"event": "tranche_recorded", "pool_address": pool_address,
                   "tranche_id": tranche_id, "size_usd": size_usd,
                   "aggression_level": aggression_level.value}
        )
        self.assert_invariants()
        return True

    def record_exit(
        self,
        pool_address: str,
        size_usd: Optional[float] = None,
        tranche_id: Optional[str] = None
    ) -> float:
        """
        Release capital from a pool.

        With a tranche_id, that tranche is removed (idempotent). Otherwise
        size_usd is released as a partial close, or the whole pool when
        size_usd is None. The pool is removed once nothing is deployed.

        Returns:
            USD released
        """
        pool = self._pools.get(pool_address)
        if pool is None:
            logger.debug(f"record_exit for unknown pool {pool_address[:8]}; ignoring")
            return 0.0

        if tranche_id is not None:
            record = next((t for t in pool.tranches if t.tranche_id == tranche_id), None)
            if record is None:
                logger.debug(f"Tranche {tranche_id} already exited; ignoring")
                return 0.0
            pool.tranches.remove(record)
            released = min(record.size_usd, pool.total_deployed_usd)
        elif size_usd is None:
            released = pool.total_deployed_usd
            pool.tranches.clear()
        else:
            released = min(validate_usd_amount(size_usd, "size_usd"), pool.total_deployed_usd)

        pool.total_deployed_usd -= released
        if pool.total_deployed_usd <= DUST_USD:
            self._forget_pool(pool_address)
            logger.info(
                f"➖ Pool {pool_address[:8]} fully closed (${released:,.2f} released)",
                extra={"event": "pool_closed", "pool_address": pool_address, "released_usd": released}
            )
        else:
            logger.info(
                f"➖ Released ${released:,.2f} from {pool_address[:8]} "
                f"(${pool.total_deployed_usd:,.2f} remaining)",
                extra={"event": "tranche_exited", "pool_address": pool_address,
                       "released_usd": released}
            )
        self.assert_invariants()
        return released

    def assert_invariants(self) -> bool:
        """Check both caps for every pool; strict checkers raise on failure."""
        if not self._equity:
            return True
        cfg = self.config
        ok = True
        for pool in self._pools.values():
            pct = pool.total_deployed_usd / self._equity
            ok &= self.invariants.check(
                0.0 <= pct <= cfg.max_per_pool_hard_cap_pct + cfg.invariant_tolerance,
                "pool_hard_cap",
                f"Pool {pool.pool_address[:8]} at {pct:.2%} of equity",
                pool_address=pool.pool_address, pool_pct=pct
            )
        total_pct = self.total_deployed_usd / self._equity
        ok &= self.invariants.check(
            0.0 <= total_pct <= cfg.max_total_deployed_pct + cfg.invariant_tolerance,
            "portfolio_cap",
            f"Total deployment at {total_pct:.2%} of equity",
            total_pct=total_pct
        )
        return ok

    def _forget_pool(self, pool_address: str) -> None:
        del self._pools[pool_address]
        self._pool_cooldowns.pop(pool_address, None)
        for tranche_id in [t for t, p in self._tranche_pools.items() if p == pool_address]:
            del self._tranche_pools[tranche_id]

    def clear(self) -> None:
        """Drop all deployment state (tests / bootstrap)."""
        self._pools.clear()
        self._pool_cooldowns.clear()
        self._tranche_pools.clear()
        self._cycle_stats = TrancheCycleStats()

    # ------------------------------------------------------------------
    # Queries and telemetry
    # ------------------------------------------------------------------

    def get_pool(self, pool_address: str) -> Optional[PoolConcentrationState]:
        return self._pools.get(pool_address)

    def current_tranche_index(self, pool_address: str) -> int:
        """Number of open tranches in the pool (0 if none)."""
        pool = self._pools.get(pool_address)
        return len(pool.tranches) if pool else 0

    def prior_tranche_ev(self, pool_address: str) -> Optional[float]:
        pool = self._pools.get(pool_address)
        if not pool or not pool.tranches:
            return None
        return pool.tranches[-1].ev_usd

    def is_pool_on_cooldown(self, pool_address: str) -> bool:
        until = self._pool_cooldowns.get(pool_address)
        return until is not None and self.clock.now() < until

    def deployment_summary(self) -> Dict[str, object]:
        return {
            "total_equity_usd": self._equity,
            "total_deployed_usd": self.total_deployed_usd,
            "total_deployed_pct": self.total_deployed_pct(),
            "pool_count": len(self._pools),
            "pools": {
                address: {
                    "deployed_usd": pool.total_deployed_usd,
                    "deployed_pct": self.pool_deployed_pct(address),
                    "tranches": len(pool.tranches),
                    "peak_ods": pool.peak_ods,
                }
                for address, pool in self._pools.items()
            },
        }

    def tranche_stats(self) -> Dict[str, object]:
        stats = self._cycle_stats
        deltas = stats.ev_deltas_1_to_2
        return {
            "tranches_added": stats.tranches_added,
            "blocks": dict(stats.blocks),
            "avg_ev_delta_1_to_2": sum(deltas) / len(deltas) if deltas else None,
        }

    def reset_cycle_stats(self) -> None:
        """Start a new cycle: fresh telemetry, expired pool cooldowns dropped."""
        self._cycle_stats = TrancheCycleStats()
        now = self.clock.now()
        for address in [a for a, until in self._pool_cooldowns.items() if until <= now]:
            del self._pool_cooldowns[address]

    def tranche_frame(self) -> pd.DataFrame:
        """Open tranches as a DataFrame (one row per tranche)."""
        columns = [
            "pool_address", "tranche_number", "tranche_id", "size_usd", "entered_at",
            "aggression_level", "ods_value", "ev_usd", "fee_intensity", "pool_deployed_pct",
        ]
        rows = []
        for address, pool in self._pools.items():
            for number, record in enumerate(pool.tranches, start=1):
                rows.append({
                    "pool_address": address,
                    "tranche_number": number,
                    "tranche_id": record.tranche_id,
                    "size_usd": record.size_usd,
                    "entered_at": record.entered_at,
                    "aggression_level": record.aggression_level.value,
                    "ods_value": record.ods_value,
                    "ev_usd": record.ev_usd,
                    "fee_intensity": record.fee_intensity,
                    "pool_deployed_pct": self.pool_deployed_pct(address),
                })
        return pd.DataFrame(rows, columns=columns)

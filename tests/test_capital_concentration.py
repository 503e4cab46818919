"""Tests for the capital concentration engine."""
import random
import pytest

from core.capital_concentration import CapitalConcentrationEngine, ExtendedTrancheRequest
from models.enums import AggressionLevel, TrancheBlockReason
from utils.exceptions import ControlPlaneStateError, InvariantViolationError, ValidationError
from utils.invariants import LoggingInvariantChecker

POOL = "PoolA"


def extended(pool=POOL, level=AggressionLevel.A3, ods=3.0, spike=True, ev=110.0,
             fee_intensity=0.05, vsh=False, adverse=0.02, fee_rate=1.0):
    return ExtendedTrancheRequest(
        pool_address=pool, aggression_level=level, ods_value=ods, spike_active=spike,
        ev_usd=ev, fee_intensity=fee_intensity, vsh_eligible=vsh,
        adverse_selection_penalty=adverse, expected_fee_rate_usd_hour=fee_rate
    )


@pytest.fixture
def seeded(cce, clock):
    """Pool with one $5k tranche (EV $100, ODS 3.0) entered five minutes ago."""
    cce.record_deployment(POOL, "t1", 5_000.0, AggressionLevel.A3, ods_value=3.0, ev_usd=100.0)
    clock.advance(minutes=5)
    return cce


@pytest.mark.unit
class TestCaps:
    """Target caps per aggression level."""

    @pytest.mark.parametrize("level, expected", [
        (AggressionLevel.A0, 0.075),
        (AggressionLevel.A1, 0.075),
        (AggressionLevel.A2, 0.1125),
        (AggressionLevel.A3, 0.15),
        (AggressionLevel.A4, 0.18),
    ])
    def test_target_pool_cap(self, cce, level, expected):
        assert cce.target_pool_cap_pct(level) == pytest.approx(expected)


@pytest.mark.unit
class TestTrancheGating:
    """Gates for adding a tranche."""

    def test_aggression_level_low(self, cce, tranche_request):
        decision = cce.can_add_tranche(tranche_request(level=AggressionLevel.A1, ods=3.0))
        assert not decision.allowed
        assert decision.block_reason == TrancheBlockReason.AGGRESSION_LEVEL_LOW

    def test_ods_below_threshold(self, cce, tranche_request):
        decision = cce.can_add_tranche(tranche_request(level=AggressionLevel.A2, ods=1.0))
        assert decision.block_reason == TrancheBlockReason.ODS_BELOW_THRESHOLD

    def test_first_tranche_allowed(self, cce, tranche_request):
        decision = cce.can_add_tranche(tranche_request(level=AggressionLevel.A2, ods=3.0, spike=True))
        assert decision.allowed
        assert decision.tranche_number == 1
        assert decision.target_cap_pct == pytest.approx(0.1125)

    def test_spike_expired(self, cce, tranche_request):
        decision = cce.can_add_tranche(tranche_request(spike=False))
        assert decision.block_reason == TrancheBlockReason.SPIKE_EXPIRED

    def test_basic_request_for_second_tranche_needs_extended_inputs(self, seeded, tranche_request):
        decision = seeded.can_add_tranche(tranche_request(level=AggressionLevel.A3))
        assert decision.block_reason == TrancheBlockReason.EXTENDED_INPUTS_REQUIRED
        assert decision.tranche_number == 2

    def test_second_tranche_allowed_with_extended_inputs(self, seeded):
        decision = seeded.can_add_tranche(extended())
        assert decision.allowed
        assert decision.tranche_number == 2

    def test_time_between_tranches(self, cce, clock):
        cce.record_deployment(POOL, "t1", 5_000.0, AggressionLevel.A3, ods_value=3.0, ev_usd=100.0)
        clock.advance(minutes=4)
        decision = cce.can_add_tranche(extended())
        assert decision.block_reason == TrancheBlockReason.TIME_BETWEEN_TRANCHES

    def test_max_tranches(self, cce, clock):
        for i in range(3):
            cce.record_deployment(POOL, f"t{i}", 1_000.0, AggressionLevel.A4, ods_value=3.0)
            clock.advance(minutes=6)
        decision = cce.can_add_tranche(extended(level=AggressionLevel.A4))
        assert decision.block_reason == TrancheBlockReason.MAX_TRANCHES

    @pytest.mark.parametrize("kwargs, reason", [
        (dict(ods=2.5), TrancheBlockReason.ODS_DECAYING),
        (dict(ev=104.0), TrancheBlockReason.EV_NOT_IMPROVING),
        (dict(fee_intensity=0.01, vsh=False), TrancheBlockReason.NO_VSH_OR_FEE_INTENSITY),
        (dict(adverse=0.09), TrancheBlockReason.ADVERSE_SELECTION),
        (dict(fee_rate=0.40), TrancheBlockReason.LOW_FEE_RATE),
    ])
    def test_extended_checks(self, seeded, kwargs, reason):
        decision = seeded.can_add_tranche(extended(**kwargs))
        assert not decision.allowed
        assert decision.block_reason == reason

    def test_vsh_substitutes_for_fee_intensity(self, seeded):
        assert seeded.can_add_tranche(extended(fee_intensity=0.0, vsh=True)).allowed

    def test_ev_improvement_with_negative_prior(self, cce, clock):
        cce.record_deployment(POOL, "t1", 1_000.0, AggressionLevel.A3, ods_value=3.0, ev_usd=-10.0)
        clock.advance(minutes=5)
        # Required: -10 + 10 * 0.05 = -9.5
        assert not cce.can_add_tranche(extended(ev=-9.6)).allowed
        clock.advance(minutes=11)
        assert cce.can_add_tranche(extended(ev=-9.5)).allowed

    def test_peak_ods_tracks_observations(self, seeded):
        seeded.can_add_tranche(extended(ods=4.0))
        assert seeded.get_pool(POOL).peak_ods == 4.0
        decision = seeded.can_add_tranche(extended(ods=3.3))
        # 17.5% below the 4.0 peak
        assert decision.block_reason == TrancheBlockReason.ODS_DECAYING

    @pytest.mark.parametrize("kwargs, cooldown", [
        (dict(ods=2.5), True),
        (dict(ev=100.0), True),
        (dict(fee_intensity=0.0), True),
        (dict(adverse=0.5), False),
        (dict(fee_rate=0.0), False),
    ])
    def test_block_cooldown(self, seeded, clock, kwargs, cooldown):
        seeded.can_add_tranche(extended(**kwargs))
        assert seeded.is_pool_on_cooldown(POOL) is cooldown
        decision = seeded.can_add_tranche(extended())
        if cooldown:
            assert decision.block_reason == TrancheBlockReason.POOL_COOLDOWN
            clock.advance(minutes=10)
            assert seeded.can_add_tranche(extended()).allowed
        else:
            assert decision.allowed

    def test_cycle_reset_drops_expired_cooldowns(self, seeded, clock):
        seeded.can_add_tranche(extended(ods=2.5))
        seeded.reset_cycle_stats()
        assert POOL in seeded._pool_cooldowns
        clock.advance(minutes=10)
        seeded.reset_cycle_stats()
        assert seeded._pool_cooldowns == {}

    def test_block_reasons_counted(self, cce, tranche_request):
        cce.can_add_tranche(tranche_request(level=AggressionLevel.A0))
        cce.can_add_tranche(tranche_request(level=AggressionLevel.A0))
        cce.can_add_tranche(tranche_request(ods=0.5))
        assert cce.tranche_stats()["blocks"] == {"aggression_level_low": 2, "ods_below_threshold": 1}
        cce.reset_cycle_stats()
        assert cce.tranche_stats()["blocks"] == {}


@pytest.mark.unit
class TestEvaluateConcentration:
    """Sizing with per-pool and portfolio clamps."""

    def test_multiplier_applied(self, cce, tranche_request):
        decision = cce.evaluate_concentration(tranche_request(level=AggressionLevel.A2), 5_000.0)
        assert decision.allowed
        assert decision.allowed_size_usd == 7_500.0
        assert decision.final_size_usd == 7_500.0
        assert decision.clamp_reasons == []

    def test_allowed_size_floored(self, cce, tranche_request):
        decision = cce.evaluate_concentration(tranche_request(level=AggressionLevel.A2), 1_000.5)
        assert decision.allowed_size_usd == 1_500.0

    def test_clamped_to_pool_cap(self, cce, tranche_request):
        decision = cce.evaluate_concentration(tranche_request(level=AggressionLevel.A2), 10_000.0)
        assert decision.final_size_usd == pytest.approx(11_250.0)
        assert decision.clamp_reasons == ["per_pool_cap:11.25%"]

    def test_clamped_to_portfolio_cap(self, cce, clock, tranche_request):
        cce.record_deployment("PoolB", "b1", 15_000.0, AggressionLevel.A3)
        cce.record_deployment("PoolC", "c1", 6_000.0, AggressionLevel.A2)
        decision = cce.evaluate_concentration(tranche_request(level=AggressionLevel.A2), 5_000.0)
        assert decision.final_size_usd == pytest.approx(4_000.0)
        assert decision.clamp_reasons == ["portfolio_cap:25.00%"]

    def test_final_size_floored_after_clamp(self, cce, tranche_request):
        cce.update_equity(100_001.0)
        decision = cce.evaluate_concentration(tranche_request(level=AggressionLevel.A2), 10_000.0)
        # Pool room is $11,250.1125
        assert decision.clamp_reasons == ["per_pool_cap:11.25%"]
        assert decision.final_size_usd == 11_250.0

    def test_first_entry_ignores_tranche_gating(self, cce, tranche_request):
        decision = cce.evaluate_concentration(tranche_request(level=AggressionLevel.A0, ods=0.0, spike=False), 2_000.0)
        assert decision.allowed
        assert decision.tranche is None
        assert decision.final_size_usd == 2_000.0

    def test_follow_up_tranche_gated(self, seeded, tranche_request):
        decision = seeded.evaluate_concentration(tranche_request(level=AggressionLevel.A3), 2_000.0)
        assert not decision.allowed
        assert decision.final_size_usd == 0.0
        assert decision.block_reason == TrancheBlockReason.EXTENDED_INPUTS_REQUIRED

    def test_follow_up_tranche_clamped_to_remaining_room(self, seeded):
        # A3 cap is 15% = $15k; $5k already deployed
        decision = seeded.evaluate_concentration(extended(), 8_000.0)
        assert decision.tranche.allowed
        assert decision.final_size_usd == pytest.approx(10_000.0)
        assert decision.clamp_reasons == ["per_pool_cap:15.00%"]

    def test_unknown_equity_admits_nothing(self, mock_config, clock, invariants, tranche_request):
        engine = CapitalConcentrationEngine(mock_config.concentration, clock, invariants)
        decision = engine.evaluate_concentration(tranche_request(), 1_000.0)
        assert not decision.allowed
        assert decision.clamp_reasons == ["equity_unknown"]


@pytest.mark.unit
class TestDeploymentRecords:
    """record_deployment / record_exit bookkeeping and invariants."""

    def test_record_deployment(self, cce):
        assert cce.record_deployment(POOL, "t1", 5_000.0, AggressionLevel.A2, ods_value=2.5)
        assert cce.pool_deployed_pct(POOL) == pytest.approx(0.05)
        assert cce.total_deployed_pct() == pytest.approx(0.05)
        assert cce.current_tranche_index(POOL) == 1
        assert cce.get_pool(POOL).peak_ods == 2.5

    def test_record_deployment_idempotent(self, cce):
        assert cce.record_deployment(POOL, "t1", 5_000.0, AggressionLevel.A2)
        assert not cce.record_deployment(POOL, "t1", 5_000.0, AggressionLevel.A2)
        assert cce.pool_deployed_usd(POOL) == 5_000.0

    def test_hard_cap_breach_is_fatal_in_strict_mode(self, cce):
        cce.record_deployment(POOL, "t1", 15_000.0, AggressionLevel.A4)
        with pytest.raises(InvariantViolationError) as exc_info:
            cce.record_deployment(POOL, "t2", 4_000.0, AggressionLevel.A4)
        assert exc_info.value.invariant == "pool_hard_cap"
        assert cce.pool_deployed_usd(POOL) == 15_000.0

    def test_hard_cap_breach_refused_in_production(self, mock_config, clock):
        checker = LoggingInvariantChecker()
        engine = CapitalConcentrationEngine(mock_config.concentration, clock, checker, 100_000.0)
        engine.record_deployment(POOL, "t1", 15_000.0, AggressionLevel.A4)
        assert not engine.record_deployment(POOL, "t2", 4_000.0, AggressionLevel.A4)
        assert engine.pool_deployed_usd(POOL) == 15_000.0
        assert [v.invariant for v in checker.violations] == ["pool_hard_cap"]

    def test_tolerance_allows_float_noise(self, cce):
        assert cce.record_deployment(POOL, "t1", 18_050.0, AggressionLevel.A4)

    def test_portfolio_cap_breach(self, cce):
        cce.record_deployment("PoolB", "b1", 18_000.0, AggressionLevel.A4)
        with pytest.raises(InvariantViolationError) as exc_info:
            cce.record_deployment("PoolC", "c1", 8_000.0, AggressionLevel.A4)
        assert exc_info.value.invariant == "portfolio_cap"

    def test_pool_hard_cap_never_exceeded_for_random_sequences(self, mock_config, clock):
        rng = random.Random(11)
        engine = CapitalConcentrationEngine(
            mock_config.concentration, clock, LoggingInvariantChecker(), 100_000.0
        )
        for i in range(500):
            if rng.random() < 0.6:
                engine.record_deployment(POOL, f"t{i}", rng.uniform(100, 9_000), AggressionLevel.A4)
            else:
                engine.record_exit(POOL, size_usd=rng.uniform(0, 6_000))
            assert engine.pool_deployed_pct(POOL) <= 0.18 + 0.001

    def test_record_exit_by_tranche_is_idempotent(self, seeded, clock):
        seeded.record_deployment(POOL, "t2", 3_000.0, AggressionLevel.A3, ods_value=3.0)
        assert seeded.record_exit(POOL, tranche_id="t1") == 5_000.0
        assert seeded.record_exit(POOL, tranche_id="t1") == 0.0
        assert seeded.pool_deployed_usd(POOL) == 3_000.0
        assert seeded.current_tranche_index(POOL) == 1

    def test_partial_then_full_close_removes_pool(self, seeded):
        assert seeded.record_exit(POOL, size_usd=2_000.0) == 2_000.0
        assert seeded.pool_deployed_usd(POOL) == 3_000.0
        assert seeded.record_exit(POOL, size_usd=10_000.0) == 3_000.0
        assert seeded.get_pool(POOL) is None
        assert seeded.total_deployed_usd == 0.0

    def test_full_close_resets_peak_ods(self, seeded):
        seeded.can_add_tranche(extended(ods=6.0))
        seeded.record_exit(POOL)
        seeded.record_deployment(POOL, "t9", 1_000.0, AggressionLevel.A3, ods_value=2.0)
        assert seeded.get_pool(POOL).peak_ods == 2.0

    def test_exited_tranche_id_ignored_while_pool_open(self, seeded):
        seeded.record_deployment(POOL, "t2", 3_000.0, AggressionLevel.A3, ods_value=3.0)
        seeded.record_exit(POOL, tranche_id="t1")
        assert not seeded.record_deployment(POOL, "t1", 5_000.0, AggressionLevel.A3)
        assert seeded.pool_deployed_usd(POOL) == 3_000.0

    def test_pool_close_forgets_tranche_ids_and_cooldown(self, seeded):
        seeded.can_add_tranche(extended(ods=2.5))
        assert seeded.is_pool_on_cooldown(POOL)
        seeded.record_exit(POOL)
        assert not seeded.is_pool_on_cooldown(POOL)
        assert seeded._tranche_pools == {}
        assert seeded.record_deployment(POOL, "t1", 1_000.0, AggressionLevel.A3)

    def test_record_exit_unknown_pool(self, cce):
        assert cce.record_exit("nope", size_usd=10.0) == 0.0

    def test_invalid_inputs(self, cce):
        with pytest.raises(ValidationError):
            cce.record_deployment(POOL, "t1", -5.0, AggressionLevel.A2)
        with pytest.raises(ValidationError):
            cce.record_deployment("", "t1", 5.0, AggressionLevel.A2)
        with pytest.raises(ValidationError):
            cce.update_equity(0.0)

    def test_record_without_equity(self, mock_config, clock, invariants):
        engine = CapitalConcentrationEngine(mock_config.concentration, clock, invariants)
        with pytest.raises(ControlPlaneStateError):
            engine.record_deployment(POOL, "t1", 100.0, AggressionLevel.A2)

    def test_equity_drop_drift_is_warning_not_violation(self, cce, caplog):
        cce.record_deployment(POOL, "t1", 18_000.0, AggressionLevel.A4)
        cce.update_equity(50_000.0)
        assert "drifted" in caplog.text
        assert cce.invariants.violations == []
        assert cce.pool_deployed_pct(POOL) == pytest.approx(0.36)


@pytest.mark.unit
class TestTelemetry:
    """Summaries, stats and the tranche frame."""

    def test_tranche_frame(self, seeded):
        seeded.record_deployment(POOL, "t2", 2_000.0, AggressionLevel.A3, ods_value=3.1, ev_usd=110.0)
        seeded.record_deployment("PoolB", "b1", 1_000.0, AggressionLevel.A1)
        frame = seeded.tranche_frame()
        assert len(frame) == 3
        assert list(frame[frame.pool_address == POOL].tranche_number) == [1, 2]
        assert frame.size_usd.sum() == pytest.approx(8_000.0)
        assert frame.loc[frame.tranche_id == "t2", "pool_deployed_pct"].iloc[0] == pytest.approx(0.07)

    def test_empty_tranche_frame_has_columns(self, cce):
        frame = cce.tranche_frame()
        assert frame.empty
        assert "tranche_id" in frame.columns

    def test_tranche_stats_ev_delta(self, seeded):
        seeded.record_deployment(POOL, "t2", 2_000.0, AggressionLevel.A3, ods_value=3.0, ev_usd=112.0)
        stats = seeded.tranche_stats()
        assert stats["tranches_added"] == 1
        assert stats["avg_ev_delta_1_to_2"] == pytest.approx(12.0)
        assert seeded.prior_tranche_ev(POOL) == 112.0

    def test_deployment_summary(self, seeded):
        summary = seeded.deployment_summary()
        assert summary["pool_count"] == 1
        assert summary["pools"][POOL]["tranches"] == 1
        assert summary["total_deployed_pct"] == pytest.approx(0.05)

    def test_clear(self, seeded):
        seeded.clear()
        assert seeded.total_deployed_usd == 0.0
        assert seeded.record_deployment(POOL, "t1", 1_000.0, AggressionLevel.A2)

"""Tests for the aggression scaler."""
import logging
import pytest

from config.settings import AggressionConfig
from core.aggression_scaler import AggressionScaler
from models.enums import MarketRegime, ScalingStatus


def _table(bear, neutral, bull):
    return {MarketRegime.BEAR: bear, MarketRegime.NEUTRAL: neutral, MarketRegime.BULL: bull}


@pytest.fixture
def active_config() -> AggressionConfig:
    """Regime-dependent tables switched on."""
    return AggressionConfig(
        size_multipliers=_table(0.7, 1.0, 1.4),
        bin_width_multipliers=_table(0.8, 1.0, 1.2),
        exit_sensitivity_multipliers=_table(1.0, 1.0, 1.25),
    )


@pytest.fixture
def active_scaler(tracker, active_config, clock) -> AggressionScaler:
    return AggressionScaler(tracker, active_config, clock)


@pytest.mark.unit
class TestDefaultTables:
    """Currently-flat tables."""

    def test_neutral_defaults(self, scaler):
        mult = scaler.get_multipliers()
        assert mult.regime == MarketRegime.NEUTRAL
        assert mult.size_multiplier == 1.0
        assert mult.bin_width_multiplier == 1.0
        assert mult.exit_sensitivity_multiplier == 1.0
        assert mult.score_decay_tolerance == 0.20

    def test_bull_exit_sensitivity_dampened_while_unstable(self, scaler, feed):
        feed(MarketRegime.BULL, 3)
        results = feed(MarketRegime.BULL, 3)  # 3 minutes in regime, past the flip cooldown
        assert results[-1].regime == MarketRegime.BULL
        mult = scaler.get_multipliers()
        assert not mult.is_stable
        assert mult.exit_sensitivity_multiplier == pytest.approx(1.0 + 0.25 * 0.85)
        assert mult.is_dampened


@pytest.mark.unit
class TestFlipCooldown:
    """Size forced to NEUTRAL right after a flip."""

    def test_size_forced_to_neutral_in_cooldown(self, active_scaler, feed):
        feed(MarketRegime.BEAR, 3)
        mult = active_scaler.get_multipliers()
        assert mult.regime == MarketRegime.BEAR
        assert mult.in_cooldown
        assert mult.size_multiplier == 1.0
        assert not mult.is_fully_applied

    def test_cooldown_ends_after_two_minutes(self, active_scaler, feed, clock):
        feed(MarketRegime.BEAR, 3)
        clock.advance(minutes=2)
        mult = active_scaler.get_multipliers()
        assert not mult.in_cooldown
        # Size decrease is never dampened
        assert mult.size_multiplier == 0.7

    def test_no_cooldown_before_first_flip(self, active_scaler):
        assert not active_scaler.get_multipliers().in_cooldown


@pytest.mark.unit
class TestDampening:
    """Asymmetric dampening while the regime is not stable."""

    def test_increase_dampened_decrease_passthrough(self, tracker, clock, feed):
        config = AggressionConfig(
            flip_cooldown_seconds=0,
            size_multipliers=_table(0.7, 1.0, 1.4),
            bin_width_multipliers=_table(0.8, 1.0, 1.2),
        )
        scaler = AggressionScaler(tracker, config, clock)

        feed(MarketRegime.BULL, 3)
        bull = scaler.get_multipliers()
        assert bull.size_multiplier == pytest.approx(1.0 + 0.4 * 0.85)
        assert bull.bin_width_multiplier == pytest.approx(1.0 + 0.2 * 0.85)
        assert bull.is_dampened

        clock.advance(minutes=5)
        feed(MarketRegime.BEAR, 3)
        bear = scaler.get_multipliers()
        assert not bear.is_stable
        assert bear.size_multiplier == 0.7
        assert bear.bin_width_multiplier == 0.8
        assert not bear.is_dampened

    @pytest.mark.parametrize("raw", [0.5, 0.99, 1.0, 1.01, 1.5, 2.0, 3.0])
    def test_dampen_formula(self, scaler, raw):
        result = scaler.dampen(raw)
        if raw > 1.0:
            assert result == pytest.approx(1.0 + (raw - 1.0) * 0.85)
        else:
            assert result == raw

    def test_full_multiplier_once_stable(self, active_scaler, feed):
        feed(MarketRegime.BULL, 3)
        feed(MarketRegime.BULL, 5)
        mult = active_scaler.get_multipliers()
        assert mult.is_stable
        assert mult.size_multiplier == 1.4
        assert mult.is_fully_applied
        assert not mult.scaling_blocked

    def test_stability_recheck_blocks_scaling(self, active_scaler, feed, mocker):
        feed(MarketRegime.BULL, 3)
        feed(MarketRegime.BULL, 5)
        mocker.patch.object(active_scaler.tracker, "is_stable", side_effect=[True, False])
        mult = active_scaler.get_multipliers()
        assert mult.scaling_blocked
        assert mult.size_multiplier == 1.0
        assert mult.exit_sensitivity_multiplier == 1.0
        assert not mult.is_fully_applied


@pytest.mark.unit
class TestScalerHelpers:
    """Size, threshold, bin width and score-decay helpers."""

    def test_adjusted_size_status(self, active_scaler, feed, clock):
        feed(MarketRegime.BULL, 3)
        assert active_scaler.adjusted_size(100.0).status == ScalingStatus.COOLDOWN

        clock.advance(minutes=2)
        adjustment = active_scaler.adjusted_size(100.0)
        assert adjustment.status == ScalingStatus.DAMPENED
        assert adjustment.adjusted_size == pytest.approx(134.0)

        feed(MarketRegime.BULL, 5)
        assert active_scaler.adjusted_size(100.0).status == ScalingStatus.FULL

    def test_adjustment_history_bounded(self, tracker, clock):
        scaler = AggressionScaler(tracker, AggressionConfig(max_adjustment_history=5), clock)
        for i in range(12):
            scaler.adjusted_size(float(i))
        history = scaler.history()
        assert len(history) == 5
        assert history[0].base_size == 7.0

    def test_adjusted_bin_width_never_below_one(self, tracker, clock, feed):
        config = AggressionConfig(bin_width_multipliers=_table(0.1, 1.0, 1.0))
        scaler = AggressionScaler(tracker, config, clock)
        feed(MarketRegime.BEAR, 3)
        assert scaler.adjusted_bin_width(4) == 1
        assert scaler.adjusted_bin_width(20) == 2

    def test_adjusted_exit_threshold(self, scaler):
        assert scaler.adjusted_exit_threshold(0.5) == 0.5

    def test_score_decay_tolerance(self, scaler):
        # NEUTRAL tolerates 20% decay
        assert scaler.is_score_decay_tolerable(100.0, 81.0)
        assert not scaler.is_score_decay_tolerable(100.0, 79.0)
        assert scaler.is_score_decay_tolerable(0.0, -5.0)

    def test_summary(self, scaler, caplog):
        with caplog.at_level(logging.INFO):
            summary = scaler.summary()
        assert summary["regime"] == "NEUTRAL"
        assert "Aggression" in caplog.text

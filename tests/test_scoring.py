"""
Lifecycle scoring tests - normalisation, stage selection, weighting and momentum bonus.
"""

import pytest

from adloop.core.schema import LifecycleStage, MetricSnapshot
from adloop.core.policy import default_stages
from adloop.core.scoring import (
    LifecycleScorer,
    normalize_higher_is_better,
    normalize_lower_is_better,
    select_stage,
)

SCALING_ONLY = [LifecycleStage('Scaling', 0, 1000, {'roas': 0.7, 'ctr': 0.1})]
BASELINES = {'roas': 1.5, 'ctr': 0.01}


@pytest.fixture
def scorer():
    return LifecycleScorer()


class TestNormalization:
    """Test metric normalisation to 0-100."""

    def test_baseline_scores_sixty(self):
        assert normalize_higher_is_better(1.5, 1.5) == 60.0
        assert normalize_lower_is_better(20.0, 20.0) == 60.0
        assert normalize_higher_is_better(0.01, 0.01) == 60.0

    def test_higher_is_better(self):
        assert normalize_higher_is_better(3.0, 1.5) == 100.0  # capped
        assert normalize_higher_is_better(0.75, 1.5) == pytest.approx(30.0)
        assert normalize_higher_is_better(0.0, 1.5) == 0.0

    def test_lower_is_better(self):
        assert normalize_lower_is_better(10.0, 20.0) == 100.0  # capped
        assert normalize_lower_is_better(40.0, 20.0) == pytest.approx(30.0)
        assert normalize_lower_is_better(0.0, 20.0) == 100.0

    def test_zero_baseline(self):
        assert normalize_higher_is_better(1.0, 0.0) == 100.0
        assert normalize_lower_is_better(1.0, 0.0) == 0.0


class TestStageSelection:
    """Test spend-based lifecycle stage selection."""

    @pytest.mark.parametrize("spend,expected", [
        (0, 'Cold Start'),
        (4.99, 'Cold Start'),
        (5, 'Exploration'),
        (30, 'Scaling'),
        (250, 'Maturity'),
    ])
    def test_default_stages(self, spend, expected):
        assert select_stage(spend, default_stages()).name == expected

    def test_spend_beyond_last_stage(self):
        stages = [LifecycleStage('Only', 0, 10, {'roas': 1.0})]
        assert select_stage(500, stages).name == 'Only'

    def test_no_stages(self):
        with pytest.raises(ValueError):
            select_stage(10, [])


class TestLifecycleScorer:
    """Test the composite score."""

    def test_base_score_without_history(self, scorer):
        """roas 3.0 and ctr 0.02 are both 2x baseline -> 0.7*100 + 0.1*100 = 80."""
        snapshot = MetricSnapshot(spend=50, roas=3.0, ctr=0.02)
        result = scorer.score(snapshot, {}, SCALING_ONLY, BASELINES)

        assert result.stage == 'Scaling'
        assert result.base_score == pytest.approx(80.0)
        assert result.momentum_bonus == 0.0
        assert result.final_score == pytest.approx(80.0)
        assert result.metric_contributions['roas'] == pytest.approx(70.0)

    def test_positive_momentum(self, scorer):
        snapshot = MetricSnapshot(spend=50, roas=3.0, ctr=0.02)
        history = {'roas': [2.0, 2.5, 3.0], 'ctr': [0.01, 0.015, 0.02]}

        result = scorer.score(snapshot, history, SCALING_ONLY, BASELINES, momentum_sensitivity=1.0)

        # EMA(0.3): roas -> 2.0, 2.15, 2.405 ; ctr -> 0.01, 0.0115, 0.01405
        assert result.slopes['roas'] == pytest.approx(0.2025)
        assert result.slopes['ctr'] == pytest.approx(0.002025)
        assert result.momentum_bonus == pytest.approx(0.204525)
        assert result.final_score == pytest.approx(80.0 * 1.204525)

    def test_momentum_ignores_unweighted_metrics(self, scorer):
        """Trends on metrics the stage does not weight are recorded but not scored."""
        snapshot = MetricSnapshot(spend=50, roas=3.0, ctr=0.02)
        history = {'hook_rate': [0.1, 0.2, 0.3, 0.4]}

        result = scorer.score(snapshot, history, SCALING_ONLY, BASELINES, momentum_sensitivity=1.0)

        assert 'hook_rate' in result.slopes
        assert result.momentum_bonus == 0.0

    def test_single_point_history_has_no_momentum(self, scorer):
        snapshot = MetricSnapshot(spend=50, roas=3.0, ctr=0.02)
        result = scorer.score(snapshot, {'roas': [3.0]}, SCALING_ONLY, BASELINES, momentum_sensitivity=1.0)
        assert result.slopes == {}
        assert result.final_score == pytest.approx(80.0)

    def test_final_score_is_clamped(self, scorer):
        stages = [LifecycleStage('All', 0, 1000, {
            'ctr': 0.2, 'roas': 0.2, 'cpa': 0.2, 'hook_rate': 0.2, 'atc_rate': 0.2
        })]
        snapshot = MetricSnapshot(spend=10, roas=1.0, ctr=0.01, cpa=30, hook_rate=0.2, atc_rate=0.04)
        falling = [10.0, 5.0, 1.0]
        history = {'ctr': falling, 'roas': falling, 'hook_rate': falling, 'atc_rate': falling,
                   'cpa': [1.0, 5.0, 10.0]}

        result = scorer.score(snapshot, history, stages, momentum_sensitivity=10.0)

        assert result.momentum_bonus == pytest.approx(-2.5)
        assert result.final_score == 0.0

    def test_sliding_window(self):
        """Only the newest `window` points count."""
        scorer = LifecycleScorer(window=3)
        snapshot = MetricSnapshot(spend=50, roas=3.0, ctr=0.02)

        long_history = scorer.score(snapshot, {'roas': [9.0, 9.0, 9.0, 1.0, 2.0, 3.0]}, SCALING_ONLY, BASELINES)
        short_history = scorer.score(snapshot, {'roas': [1.0, 2.0, 3.0]}, SCALING_ONLY, BASELINES)

        assert long_history.slopes['roas'] == pytest.approx(short_history.slopes['roas'])

    def test_tiktok_cold_start_boosts_hook_rate(self, scorer):
        """cpm 2x baseline (30), ctr 0 (0), hook rate 2x baseline (100)."""
        snapshot = MetricSnapshot(spend=1, cpm=40.0, ctr=0.0, hook_rate=0.5)

        facebook = scorer.score(snapshot, {}, default_stages(), platform='facebook')
        tiktok = scorer.score(snapshot, {}, default_stages(), platform='tiktok')

        assert facebook.base_score == pytest.approx(0.4 * 30 + 0.2 * 100)
        assert tiktok.base_score == pytest.approx((0.4 * 30 + 0.24 * 100) / 1.04)
        assert tiktok.base_score > facebook.base_score

    def test_metric_scores_cover_all_metrics(self, scorer):
        scores = scorer.metric_scores(MetricSnapshot(spend=10))
        assert set(scores) == {'cpm', 'ctr', 'cpc', 'cpa', 'roas', 'hook_rate', 'atc_rate'}

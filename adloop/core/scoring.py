"""
Lifecycle scoring - turns current metrics and their recent trend into one 0-100 health score.

Cost metrics dominate early lifecycle stages and return metrics dominate later
ones; each stage carries its own weight map.
"""

from typing import Dict, List, Mapping, Optional, Sequence

from .config import EMA_ALPHA, MOMENTUM_SENSITIVITY, TREND_WINDOW
from .schema import LifecycleStage, MetricSnapshot, ScoringResult
from .trend import TrendAnalyzer, trend_analyzer

BASELINE_SCORE = 60.0

HIGHER_IS_BETTER = ('ctr', 'roas', 'hook_rate', 'atc_rate')
LOWER_IS_BETTER = ('cpm', 'cpc', 'cpa')

# metric -> favourable direction of travel
MOMENTUM_METRICS = (
    ('ctr', 1),
    ('cpa', -1),
    ('roas', 1),
    ('hook_rate', 1),
    ('atc_rate', 1),
)

DEFAULT_BASELINES = {
    'cpm': 20.0,
    'ctr': 0.01,
    'cpc': 1.0,
    'cpa': 20.0,
    'roas': 1.5,
    'hook_rate': 0.25,
    'atc_rate': 0.05,
}

PLATFORM_EMA_ALPHA = {
    'facebook': EMA_ALPHA,
    'tiktok': 0.2,
}


def normalize_higher_is_better(value: float, baseline: float) -> float:
    """value == baseline scores 60, 2x baseline 100 (capped), 0.5x baseline 30."""
    if value == 0:
        return 0.0
    if baseline == 0:
        return 100.0
    return min(100.0, (value / baseline) * BASELINE_SCORE)


def normalize_lower_is_better(value: float, baseline: float) -> float:
    """value == baseline scores 60, half the baseline 100 (capped), 2x baseline 30."""
    if value == 0:
        return 100.0  # no observed cost
    if baseline == 0:
        return 0.0
    return max(0.0, min(100.0, (baseline / value) * BASELINE_SCORE))


def select_stage(spend: float, stages: Sequence[LifecycleStage]) -> LifecycleStage:
    """Stage whose [min_spend, max_spend) contains spend; the last stage otherwise."""
    if not stages:
        raise ValueError("At least one lifecycle stage is required")

    for stage in stages:
        if stage.contains(spend):
            return stage
    return stages[-1]


class LifecycleScorer:
    """Composite health score from stage-weighted sub-scores and a momentum bonus."""

    def __init__(self, trend: TrendAnalyzer = None, window: int = TREND_WINDOW):
        self.trend = trend or trend_analyzer
        self.window = window

    def metric_scores(self, snapshot: MetricSnapshot, baselines: Mapping[str, float] = None) -> Dict[str, float]:
        """Normalize every known metric to a 0-100 sub-score."""
        merged = dict(DEFAULT_BASELINES)
        if baselines:
            merged.update(baselines)

        scores = {}
        for metric in HIGHER_IS_BETTER:
            scores[metric] = normalize_higher_is_better(snapshot.get(metric), merged[metric])
        for metric in LOWER_IS_BETTER:
            scores[metric] = normalize_lower_is_better(snapshot.get(metric), merged[metric])
        return scores

    def score(
        self,
        snapshot: MetricSnapshot,
        history: Mapping[str, Sequence[float]],
        stages: Sequence[LifecycleStage],
        baselines: Mapping[str, float] = None,
        momentum_sensitivity: float = MOMENTUM_SENSITIVITY,
        platform: str = 'facebook',
    ) -> ScoringResult:
        """
        Score one entity.

        Args:
            snapshot: Current metrics
            history: metric name -> series (oldest -> newest); only the newest
                ``window`` points are used
            stages: Lifecycle stages ordered by spend
            baselines: metric name -> value that scores exactly 60
            momentum_sensitivity: Scale applied to trend slopes
            platform: 'facebook' or 'tiktok' (tiktok smooths harder and boosts hook rate at cold start)
        """
        stage = select_stage(snapshot.spend, stages)
        weights = self._effective_weights(stage, platform)
        sub_scores = self.metric_scores(snapshot, baselines)

        base_score = 0.0
        contributions: Dict[str, float] = {}
        for metric, weight in weights.items():
            contribution = sub_scores.get(metric, 0.0) * weight
            base_score += contribution
            contributions[metric] = contribution

        alpha = PLATFORM_EMA_ALPHA.get(platform, EMA_ALPHA)
        slopes: Dict[str, float] = {}
        momentum_bonus = 0.0

        # Plain sum across eligible metrics, not an average
        for metric, direction in MOMENTUM_METRICS:
            series = self._window(history, metric)
            if len(series) < 2:
                continue

            slope = self.trend.slope(self.trend.smooth(series, alpha))
            slopes[metric] = slope

            if stage.weights.get(metric, 0) > 0:
                momentum_bonus += self.trend.momentum_multiplier(slope, direction, momentum_sensitivity)

        final_score = max(0.0, min(100.0, base_score * (1 + momentum_bonus)))

        return ScoringResult(
            final_score=final_score,
            base_score=base_score,
            momentum_bonus=momentum_bonus,
            stage=stage.name,
            metric_contributions=contributions,
            slopes=slopes
        )

    def _window(self, history: Optional[Mapping[str, Sequence[float]]], metric: str) -> List[float]:
        if not history:
            return []
        series = history.get(metric) or []
        return [float(v) for v in list(series)[-self.window:]]

    @staticmethod
    def _effective_weights(stage: LifecycleStage, platform: str) -> Dict[str, float]:
        weights = dict(stage.weights)
        if platform == 'tiktok' and stage.name == 'Cold Start' and weights.get('hook_rate') is not None:
            weights['hook_rate'] *= 1.2
            total = sum(weights.values())
            if total > 0:
                weights = {k: v / total for k, v in weights.items()}
        return weights


# Global scorer instance
lifecycle_scorer = LifecycleScorer()

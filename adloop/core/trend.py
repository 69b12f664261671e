"""
Trend analysis - metric smoothing (EMA) and momentum estimation (slope / acceleration).

All functions are pure and safe to call from any thread.
"""

from typing import List, Sequence

import numpy as np

from .config import EMA_ALPHA, MOMENTUM_SENSITIVITY

MAX_MOMENTUM = 0.5


class TrendAnalyzer:
    """Smooths a metric series and estimates its direction and velocity."""

    def smooth(self, series: Sequence[float], alpha: float = EMA_ALPHA) -> List[float]:
        """
        Exponential moving average of a series (oldest -> newest).

        ema[0] = series[0]; ema[i] = alpha * series[i] + (1 - alpha) * ema[i - 1]

        Args:
            series: Raw metric values, oldest first
            alpha: Smoothing factor in (0, 1]; smaller is smoother
        """
        if not 0 < alpha <= 1:
            raise ValueError(f"alpha must be in (0, 1]: {alpha}")

        if len(series) == 0:
            return []

        result = [float(series[0])]
        for value in series[1:]:
            result.append(alpha * float(value) + (1 - alpha) * result[-1])
        return result

    def slope(self, series: Sequence[float]) -> float:
        """Ordinary least-squares slope of (index, value) pairs; 0 when undefined."""
        n = len(series)
        if n < 2:
            return 0.0

        x = np.arange(n, dtype=float)
        y = np.asarray(series, dtype=float)
        x_centered = x - x.mean()

        den = float(np.dot(x_centered, x_centered))
        if den == 0:
            return 0.0

        return float(np.dot(x_centered, y - y.mean()) / den)

    def momentum_multiplier(self, slope: float, direction: int, sensitivity: float = MOMENTUM_SENSITIVITY) -> float:
        """
        Score adjustment for a trend, clamped to [-0.5, 0.5].

        Positive when the metric moves in the favourable direction
        (direction=+1 for higher-is-better, -1 for lower-is-better).
        """
        if direction not in (1, -1):
            raise ValueError(f"direction must be +1 or -1: {direction}")

        momentum = slope * direction * sensitivity
        return max(-MAX_MOMENTUM, min(MAX_MOMENTUM, momentum))

    def acceleration(self, series: Sequence[float]) -> float:
        """
        Second derivative estimate: slope of the newer half minus slope of the older half.

        A negative value on an improving metric means its momentum is fading.
        """
        if len(series) < 3:
            return 0.0

        mid = len(series) // 2
        older = self.slope(series[:mid + 1])
        newer = self.slope(series[mid:])
        return newer - older


# Global analyzer instance
trend_analyzer = TrendAnalyzer()


def calculate_ema(series: Sequence[float], alpha: float = EMA_ALPHA) -> List[float]:
    """Exponential moving average of a series."""
    return trend_analyzer.smooth(series, alpha)


def calculate_slope(series: Sequence[float]) -> float:
    """Least-squares slope of a series."""
    return trend_analyzer.slope(series)


def trend_multiplier(slope: float, direction: int, sensitivity: float = MOMENTUM_SENSITIVITY) -> float:
    """Clamped momentum multiplier for a slope."""
    return trend_analyzer.momentum_multiplier(slope, direction, sensitivity)

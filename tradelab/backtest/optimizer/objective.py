"""
Objective functions for parameter search.
"""

from dataclasses import dataclass

import numpy as np

from ...errors import InvalidInputError
from ..metrics import PerformanceMetrics, finite_or_cap, json_number

PROFIT_FACTOR_CAP = 5.0


@dataclass(frozen=True)
class MetricsSummary:
    """Headline metrics kept alongside every search result."""
    total_return_percent: float
    sharpe_ratio: float
    max_drawdown_percent: float
    win_rate: float  # percent
    profit_factor: float
    calmar_ratio: float
    total_trades: int

    @classmethod
    def from_metrics(cls, metrics: PerformanceMetrics) -> "MetricsSummary":
        return cls(
            total_return_percent=metrics.total_return_percent,
            sharpe_ratio=metrics.sharpe_ratio,
            max_drawdown_percent=metrics.max_drawdown_percent,
            win_rate=metrics.win_rate,
            profit_factor=metrics.profit_factor,
            calmar_ratio=metrics.calmar_ratio,
            total_trades=metrics.total_trades,
        )

    def to_dict(self) -> dict:
        return {
            "total_return_percent": self.total_return_percent,
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown_percent": self.max_drawdown_percent,
            "win_rate": self.win_rate,
            "profit_factor": json_number(self.profit_factor),
            "calmar_ratio": self.calmar_ratio,
            "total_trades": self.total_trades,
        }


def composite_score(metrics: PerformanceMetrics) -> float:
    """
    Weighted blend of return, risk-adjusted return, hit rate and edge.

    Components:
    - 0.30 x total return as a fraction
    - 0.25 x Sharpe / 3, clipped to [-1, 1]
    - 0.15 x win rate as a fraction
    - 0.30 x profit factor capped at 5
    - minus 0.5 x max drawdown as a fraction

    Args:
        metrics: PerformanceMetrics from a backtest run.

    Returns:
        Composite score (higher is better).
    """
    normalized_return = metrics.total_return_percent / 100
    normalized_sharpe = float(np.clip(metrics.sharpe_ratio / 3, -1.0, 1.0))
    win_rate = metrics.win_rate / 100
    profit_factor = finite_or_cap(metrics.profit_factor, PROFIT_FACTOR_CAP)
    drawdown_penalty = metrics.max_drawdown_percent / 100

    return (
        0.30 * normalized_return
        + 0.25 * normalized_sharpe
        + 0.15 * win_rate
        + 0.30 * profit_factor
        - 0.5 * drawdown_penalty
    )


def return_score(metrics: PerformanceMetrics) -> float:
    return metrics.total_return_percent


def sharpe_score(metrics: PerformanceMetrics) -> float:
    return metrics.sharpe_ratio


def calmar_score(metrics: PerformanceMetrics) -> float:
    return metrics.calmar_ratio


def profit_factor_score(metrics: PerformanceMetrics) -> float:
    """Profit factor capped at 5 so one lucky trade cannot dominate."""
    return finite_or_cap(metrics.profit_factor, PROFIT_FACTOR_CAP)


class ObjectiveFunction:
    """
    Maps a backtest's metrics to the scalar a search maximizes.
    """

    SCORE_FUNCTIONS = {
        "composite": composite_score,
        "return": return_score,
        "sharpe": sharpe_score,
        "calmar": calmar_score,
        "profit_factor": profit_factor_score,
    }

    def __init__(self, objective_type: str = "composite"):
        """
        Initialize objective function.

        Args:
            objective_type: One of SCORE_FUNCTIONS.
        """
        if objective_type not in self.SCORE_FUNCTIONS:
            raise InvalidInputError(
                f"Unknown objective type: {objective_type}. "
                f"Valid options: {list(self.SCORE_FUNCTIONS.keys())}",
                "objective"
            )

        self.objective_type = objective_type
        self.score_fn = self.SCORE_FUNCTIONS[objective_type]

    def calculate_score(self, metrics: PerformanceMetrics) -> float:
        """
        Calculate search score for given metrics.

        Args:
            metrics: PerformanceMetrics from a backtest run.

        Returns:
            Score (higher is better).
        """
        return float(self.score_fn(metrics))

    def __call__(self, metrics: PerformanceMetrics) -> float:
        return self.calculate_score(metrics)

"""
Overfitting and robustness diagnostics for search results.
"""

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

import numpy as np

# Report as overfitted above this confidence
OVERFITTING_CONFIDENCE = 0.6
# Perturbed runs must keep this share of the original score to count as robust
ROBUSTNESS_THRESHOLD = 0.8


@dataclass(frozen=True)
class OverfittingReport:
    is_overfitted: bool
    confidence: float
    indicators: Tuple[str, ...] = field(default_factory=tuple)

    def to_dict(self) -> dict:
        return {
            "is_overfitted": self.is_overfitted,
            "confidence": self.confidence,
            "indicators": list(self.indicators),
        }


@dataclass(frozen=True)
class RobustnessReport:
    parameters: dict
    original_score: float
    perturbed_scores: Tuple[float, ...]
    robustness_score: float
    failures: int = 0

    @property
    def is_robust(self) -> bool:
        return self.robustness_score > ROBUSTNESS_THRESHOLD

    def to_dict(self) -> dict:
        return {
            "parameters": dict(self.parameters),
            "original_score": self.original_score,
            "perturbed_scores": list(self.perturbed_scores),
            "robustness_score": self.robustness_score,
            "is_robust": self.is_robust,
            "failures": self.failures,
        }


def detect_overfitting(results: Sequence) -> OverfittingReport:
    """
    Heuristic overfitting check over ranked search results.

    Indicators (weights in parentheses):
    - best fitness more than 2 standard deviations above the mean (0.3)
    - high spread in win rate or return across results (0.2)
    - more than half of the best parameters sit at the searched extremes (0.3)
    - best result trades less than half as often as the average (0.2)

    Args:
        results: OptimizationResults ranked best first.

    Returns:
        OverfittingReport; overfitted when confidence exceeds 0.6.
    """
    if len(results) < 2:
        return OverfittingReport(False, 0.0, ("Insufficient data",))

    indicators: List[str] = []
    score = 0.0
    best = results[0]

    fitness = np.array([r.fitness for r in results], dtype=float)
    mean_fitness = float(fitness.mean())
    std_fitness = float(fitness.std())
    if std_fitness > 0 and (best.fitness - mean_fitness) / std_fitness > 2:
        indicators.append("Best result is unusually good compared to others")
        score += 0.3

    win_rates = np.array([r.summary.win_rate / 100 for r in results], dtype=float)
    returns = np.array([r.summary.total_return_percent / 100 for r in results], dtype=float)
    if win_rates.std() > 0.2 or returns.std() > abs(mean_fitness) * 0.5:
        indicators.append("High variability in results suggests overfitting")
        score += 0.2

    varying = 0
    extreme = 0
    for name, value in best.searched_parameters.items():
        values = [r.searched_parameters[name] for r in results]
        low, high = min(values), max(values)
        if low == high:
            continue
        varying += 1
        if value in (low, high):
            extreme += 1
    if varying and extreme > varying * 0.5:
        indicators.append("Best parameters are at extreme values")
        score += 0.3

    average_trades = float(np.mean([r.summary.total_trades for r in results]))
    if best.summary.total_trades < average_trades * 0.5:
        indicators.append("Best result has unusually few trades")
        score += 0.2

    confidence = min(score, 1.0)
    return OverfittingReport(
        is_overfitted=confidence > OVERFITTING_CONFIDENCE,
        confidence=confidence,
        indicators=tuple(indicators),
    )


def robustness_ratio(original_score: float, perturbed_scores: Sequence[float]) -> float:
    """Mean perturbed score over the original score, 0 when undefined."""
    if not perturbed_scores or original_score == 0:
        return 0.0
    return float(np.mean(perturbed_scores)) / original_score

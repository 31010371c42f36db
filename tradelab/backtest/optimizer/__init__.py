"""
Parameter search: grid, random, genetic and Optuna-driven Bayesian.
"""

from .config import OptimizerConfig
from .parameter_space import ParameterRange, ParameterSpace
from .objective import MetricsSummary, ObjectiveFunction, composite_score
from .optimizer import OptimizationResult, ParameterSearchEngine

__all__ = [
    "OptimizerConfig",
    "ParameterRange",
    "ParameterSpace",
    "MetricsSummary",
    "ObjectiveFunction",
    "composite_score",
    "OptimizationResult",
    "ParameterSearchEngine",
]

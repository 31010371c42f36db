"""
Backtesting and parameter-search framework.

Replays a strategy over historical bars, scores the result, and searches,
validates and compares strategy parameters.

Components:
- BacktestConfig: Simulation settings (capital, costs, risk exits)
- BacktestEngine: Core simulation loop over a validated bar series
- PositionLedger: Cash, open positions and closed trades for one run
- ParameterSearchEngine: Grid, random, genetic and Bayesian search
- WalkForwardValidator: Rolling in-sample search with out-of-sample checks
- StrategyComparator: Ranking, correlation, Monte Carlo and sensitivity
- AnalysisRunner: Orchestrates the complete analysis

Usage:
    from tradelab.backtest import BacktestConfig, BacktestEngine, to_series
    from tradelab.strategy import create_momentum_strategy

    engine = BacktestEngine(BacktestConfig(initial_capital=10000.0), create_momentum_strategy)
    result = engine.run(to_series(rows), {"short_window": 5, "long_window": 20})
    print(result.metrics.sharpe_ratio)
"""

from .comparison import (
    BenchmarkComparison,
    ComparisonConfig,
    MonteCarloResult,
    StrategyComparator,
    StrategyComparison,
    StrategyVariant,
    monte_carlo_permutation,
)
from .config import BacktestConfig
from .data import Bar, to_series, validate_series
from .engine import BacktestEngine, BacktestResult
from .executor import CancellationToken, run_batch
from .ledger import PositionLedger
from .metrics import UNBOUNDED, PerformanceMetrics, calculate_metrics
from .position import ExitReason, Position, PositionSide, Trade
from .runner import AnalysisRunner, FullAnalysisResult
from .walk_forward import WalkForwardConfig, WalkForwardResult, WalkForwardValidator

__all__ = [
    # Config
    "BacktestConfig",

    # Data
    "Bar",
    "to_series",
    "validate_series",

    # Engine
    "BacktestEngine",
    "BacktestResult",
    "PositionLedger",
    "Position",
    "PositionSide",
    "ExitReason",
    "Trade",

    # Metrics
    "PerformanceMetrics",
    "calculate_metrics",
    "UNBOUNDED",

    # Execution
    "CancellationToken",
    "run_batch",

    # Validation and comparison
    "WalkForwardConfig",
    "WalkForwardResult",
    "WalkForwardValidator",
    "ComparisonConfig",
    "StrategyVariant",
    "StrategyComparator",
    "StrategyComparison",
    "BenchmarkComparison",
    "MonteCarloResult",
    "monte_carlo_permutation",

    # Runner
    "AnalysisRunner",
    "FullAnalysisResult",
]

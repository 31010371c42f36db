"""
Cross-strategy comparison.

Runs several strategy variants over identical data and reports ranking,
return correlation, portfolio risk, Monte Carlo permutation significance,
parameter sensitivity and a buy-and-hold benchmark comparison.
"""

import math
from dataclasses import dataclass, field, fields
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..errors import InvalidInputError, SimulationFailure
from ..observability.logger import get_logger
from .data import Bar, validate_series
from .engine import BacktestEngine, BacktestResult
from .executor import CancellationToken, run_batch
from .metrics import (
    TRADING_PERIODS_PER_YEAR,
    finite_or_cap,
    is_flat,
    json_number,
    per_step_returns,
    sharpe_ratio,
)
from .optimizer.objective import PROFIT_FACTOR_CAP

logger = get_logger(__name__)

# Ranking weights
RETURN_WEIGHT = 0.30
RISK_WEIGHT = 0.25
CONSISTENCY_WEIGHT = 0.20
ROBUSTNESS_WEIGHT = 0.25

# Stand-in for unbounded ratios when averaging
RATIO_CAP = 100.0


@dataclass(frozen=True)
class ComparisonConfig:
    """Configuration for strategy comparison."""

    monte_carlo_runs: int = 1000
    sensitivity_range: float = 0.20  # +/- fraction of each parameter
    sensitivity_step: float = 0.05
    run_sensitivity: bool = True
    seed: Optional[int] = 42
    n_jobs: int = 1
    backend: str = "process"

    def __post_init__(self):
        """Validate configuration."""
        if self.monte_carlo_runs < 1:
            raise InvalidInputError("monte_carlo_runs must be at least 1", "monte_carlo_runs")
        if not 0 <= self.sensitivity_range < 1:
            raise InvalidInputError("sensitivity_range must be in [0, 1)", "sensitivity_range")
        if self.sensitivity_step <= 0:
            raise InvalidInputError("sensitivity_step must be positive", "sensitivity_step")
        if self.n_jobs == 0 or self.n_jobs < -1:
            raise InvalidInputError("n_jobs must be -1 or a positive integer", "n_jobs")
        if self.backend not in ("process", "thread"):
            raise InvalidInputError("backend must be 'process' or 'thread'", "backend")

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class StrategyVariant:
    """A named strategy configuration to compare."""
    name: str
    parameters: Dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class StrategyPerformance:
    name: str
    parameters: Dict[str, float]
    backtest: BacktestResult

    @property
    def returns(self) -> np.ndarray:
        return self.backtest.returns

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "parameters": dict(self.parameters),
            "metrics": self.backtest.metrics.to_dict(),
        }


@dataclass(frozen=True)
class StrategyRanking:
    name: str
    rank: int
    total_score: float
    return_score: float
    risk_score: float
    consistency_score: float
    robustness_score: float

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class PortfolioMetrics:
    """Equal-weight blend of the compared strategies."""
    total_return_percent: float
    annualized_return: float
    sharpe_ratio: float
    sortino_ratio: float
    calmar_ratio: float
    max_drawdown_percent: float  # worst of the members
    win_rate: float
    profit_factor: float  # members capped at 5
    var_95: float
    cvar_95: float
    ulcer_index: float

    def to_dict(self) -> dict:
        return {f.name: json_number(getattr(self, f.name)) for f in fields(self)}


@dataclass(frozen=True)
class RiskComparison:
    correlation_matrix: Tuple[Tuple[float, ...], ...]
    individual_risks: Tuple[float, ...]  # max drawdown percent per strategy
    average_correlation: float
    portfolio_risk: float
    diversification_benefit: float
    portfolio_metrics: PortfolioMetrics

    def to_dict(self) -> dict:
        return {
            "correlation_matrix": [list(row) for row in self.correlation_matrix],
            "individual_risks": list(self.individual_risks),
            "average_correlation": self.average_correlation,
            "portfolio_risk": self.portfolio_risk,
            "diversification_benefit": self.diversification_benefit,
            "portfolio_metrics": self.portfolio_metrics.to_dict(),
        }


@dataclass(frozen=True)
class MonteCarloResult:
    strategy: str
    original_return: float  # cumulative percent
    p_value: float
    confidence_95: Tuple[float, float]
    confidence_99: Tuple[float, float]
    mean_simulated_return: float
    runs: int
    # Max drawdown is path dependent, unlike the compounded return
    original_max_drawdown: float = 0.0  # percent
    drawdown_p_value: float = 1.0  # share of shuffles with a shallower drawdown
    drawdown_confidence_95: Tuple[float, float] = (0.0, 0.0)

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "original_return": self.original_return,
            "p_value": self.p_value,
            "confidence_95": list(self.confidence_95),
            "confidence_99": list(self.confidence_99),
            "mean_simulated_return": self.mean_simulated_return,
            "runs": self.runs,
            "original_max_drawdown": self.original_max_drawdown,
            "drawdown_p_value": self.drawdown_p_value,
            "drawdown_confidence_95": list(self.drawdown_confidence_95),
        }


@dataclass(frozen=True)
class SensitivityAnalysis:
    strategy: str
    parameter: str
    values: Tuple[float, ...]
    returns: Tuple[float, ...]  # total return percent per value, 0 for failed runs
    sensitivity: float  # |pearson(values, returns)|
    stability: float  # 1 / (1 + stdev(returns))

    def to_dict(self) -> dict:
        return {
            "strategy": self.strategy,
            "parameter": self.parameter,
            "values": list(self.values),
            "returns": list(self.returns),
            "sensitivity": self.sensitivity,
            "stability": self.stability,
        }


@dataclass(frozen=True)
class RobustnessComparison:
    strategies: Tuple[str, ...]
    white_reality_check: Tuple[float, ...]  # share of positive per-bar returns
    monte_carlo: Tuple[MonteCarloResult, ...]
    sensitivity: Tuple[SensitivityAnalysis, ...]

    def to_dict(self) -> dict:
        return {
            "strategies": list(self.strategies),
            "white_reality_check": list(self.white_reality_check),
            "monte_carlo": [m.to_dict() for m in self.monte_carlo],
            "sensitivity": [s.to_dict() for s in self.sensitivity],
        }


@dataclass(frozen=True)
class StrategyComparison:
    strategies: Tuple[StrategyPerformance, ...]
    correlation: Tuple[Tuple[float, ...], ...]
    ranking: Tuple[StrategyRanking, ...]
    risk_metrics: RiskComparison
    robustness: RobustnessComparison
    failures: Tuple[SimulationFailure, ...] = ()
    cancelled: bool = False

    def get(self, name: str) -> StrategyPerformance:
        for strategy in self.strategies:
            if strategy.name == name:
                return strategy
        raise KeyError(name)

    def to_dict(self) -> dict:
        return {
            "strategies": [s.to_dict() for s in self.strategies],
            "correlation": [list(row) for row in self.correlation],
            "ranking": [r.to_dict() for r in self.ranking],
            "risk_metrics": self.risk_metrics.to_dict(),
            "robustness": self.robustness.to_dict(),
            "failures": [f.to_dict() for f in self.failures],
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True)
class StrategyBenchmarkComparison:
    strategy: str
    alpha: float  # total return percent over the benchmark's
    beta: float
    information_ratio: float
    tracking_error: float
    outperformance: bool
    risk_adjusted_outperformance: bool

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class BenchmarkComparison:
    benchmark_return: float
    benchmark_sharpe: float
    benchmark_max_drawdown: float
    comparisons: Tuple[StrategyBenchmarkComparison, ...]
    outperforming_strategies: int
    risk_adjusted_outperforming: int
    average_alpha: float
    average_beta: float
    average_information_ratio: float

    def to_dict(self) -> dict:
        return {
            "benchmark_return": self.benchmark_return,
            "benchmark_sharpe": self.benchmark_sharpe,
            "benchmark_max_drawdown": self.benchmark_max_drawdown,
            "comparisons": [c.to_dict() for c in self.comparisons],
            "outperforming_strategies": self.outperforming_strategies,
            "risk_adjusted_outperforming": self.risk_adjusted_outperforming,
            "average_alpha": self.average_alpha,
            "average_beta": self.average_beta,
            "average_information_ratio": self.average_information_ratio,
        }


# =========================================================================
# Statistics
# =========================================================================

def pearson_correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation over the common prefix, 0 when undefined."""
    n = min(len(x), len(y))
    if n < 2:
        return 0.0
    a = np.asarray(x[:n], dtype=float)
    b = np.asarray(y[:n], dtype=float)
    if is_flat(a) or is_flat(b):
        return 0.0
    a = a - a.mean()
    b = b - b.mean()
    denominator = math.sqrt(float(np.sum(a * a)) * float(np.sum(b * b)))
    if denominator == 0:
        return 0.0
    return float(np.sum(a * b)) / denominator


def normalize_score(value: float, values: Sequence[float]) -> float:
    """Min-max normalisation, 0.5 when all values are equal."""
    low, high = min(values), max(values)
    if high == low:
        return 0.5
    return (value - low) / (high - low)


def cumulative_return(returns: Sequence[float]) -> float:
    """Compounded return in percent."""
    return (float(np.prod(1 + np.asarray(returns, dtype=float))) - 1) * 100


def path_max_drawdown(returns: Sequence[float]) -> float:
    """Deepest peak-to-trough fall, in percent, of a compounded return path."""
    equity = np.concatenate(([1.0], np.cumprod(1 + np.asarray(returns, dtype=float))))
    peaks = np.maximum.accumulate(equity)
    return float(np.max((peaks - equity) / peaks) * 100)


def shuffle_returns(returns: Sequence[float], rng: np.random.Generator) -> np.ndarray:
    """Random permutation of a return sequence."""
    return rng.permutation(np.asarray(returns, dtype=float))


def monte_carlo_permutation(
    name: str,
    returns: Sequence[float],
    runs: int,
    seed: Optional[int] = None
) -> MonteCarloResult:
    """
    Permutation test of a per-bar return sequence.

    p-value is the share of shuffles whose cumulative return beats the
    actual one. Compounding ignores order, so every shuffle lands on the
    actual return up to rounding (hence the tolerance) and the p-value is 0
    for any non-empty sequence. The drawdown statistics carry the ordering
    information. Bands are the 2.5/97.5 and 0.5/99.5 percentiles of the
    sorted simulations.
    """
    rng = np.random.default_rng(seed)
    if len(returns) == 0:
        return MonteCarloResult(name, 0.0, 1.0, (0.0, 0.0), (0.0, 0.0), 0.0, runs)

    actual = cumulative_return(returns)
    actual_drawdown = path_max_drawdown(returns)

    shuffles = [shuffle_returns(returns, rng) for _ in range(runs)]
    simulations = np.sort([cumulative_return(s) for s in shuffles])
    drawdowns = np.sort([path_max_drawdown(s) for s in shuffles])

    tolerance = 1e-9 * max(1.0, abs(actual))
    better = int(np.sum(simulations > actual + tolerance))
    shallower = int(np.sum(drawdowns < actual_drawdown - 1e-9))

    def at(values: np.ndarray, fraction: float) -> float:
        return float(values[min(runs - 1, int(math.floor(fraction * runs)))])

    return MonteCarloResult(
        strategy=name,
        original_return=actual,
        p_value=better / runs,
        confidence_95=(at(simulations, 0.025), at(simulations, 0.975)),
        confidence_99=(at(simulations, 0.005), at(simulations, 0.995)),
        mean_simulated_return=float(simulations.mean()),
        runs=runs,
        original_max_drawdown=actual_drawdown,
        drawdown_p_value=shallower / runs,
        drawdown_confidence_95=(at(drawdowns, 0.025), at(drawdowns, 0.975)),
    )


def portfolio_risk(individual_risks: Sequence[float], average_correlation: float) -> float:
    """sqrt(mean_risk^2 * (1 + (n - 1) * avg_corr)), floored at 0."""
    n = len(individual_risks)
    if n == 0:
        return 0.0
    mean_risk = float(np.mean(individual_risks))
    return math.sqrt(max(0.0, mean_risk * mean_risk * (1 + (n - 1) * average_correlation)))


def average_off_diagonal(matrix: Sequence[Sequence[float]]) -> float:
    values = [matrix[i][j] for i in range(len(matrix)) for j in range(i + 1, len(matrix))]
    return float(np.mean(values)) if values else 0.0


def _sensitivity_stability(returns: Sequence[float]) -> float:
    if len(returns) < 2:
        return 0.0
    return 1.0 / (1.0 + float(np.std(returns)))


def _run_variant(task: Tuple[BacktestEngine, Sequence[Bar], Dict[str, float]]) -> BacktestResult:
    engine, series, parameters = task
    return engine.run(series, parameters)


class StrategyComparator:
    """
    Runs strategy variants over identical data and compares them.
    """

    def __init__(
        self,
        engine: BacktestEngine,
        series: Sequence[Bar],
        config: Optional[ComparisonConfig] = None
    ):
        validate_series(series)
        self.engine = engine
        self.series = list(series)
        self.config = config or ComparisonConfig()

    def compare(
        self,
        strategies: Sequence[StrategyVariant],
        cancel_token: Optional[CancellationToken] = None
    ) -> StrategyComparison:
        """
        Compare strategy variants.

        Args:
            strategies: Variants with unique names.
            cancel_token: Optional cooperative cancellation flag.

        Returns:
            StrategyComparison. Variants whose backtest raised are listed in
            `failures` and left out of every statistic.
        """
        if not strategies:
            raise InvalidInputError("At least one strategy is required", "strategies")
        names = [s.name for s in strategies]
        if len(set(names)) != len(names):
            raise InvalidInputError("Strategy names must be unique", "strategies")

        logger.info(f"Comparing {len(strategies)} strategies", strategies=names)

        batch = run_batch(
            _run_variant,
            [(self.engine, self.series, dict(s.parameters)) for s in strategies],
            n_jobs=self.config.n_jobs,
            backend=self.config.backend,
            cancel_token=cancel_token,
        )

        performances: List[StrategyPerformance] = []
        failures: List[SimulationFailure] = []
        for outcome in batch.outcomes:
            variant = strategies[outcome.index]
            if outcome.ok:
                performances.append(StrategyPerformance(variant.name, dict(variant.parameters), outcome.value))
            else:
                failures.append(SimulationFailure.from_exception(variant.parameters, outcome.error, outcome.index))
                logger.error(
                    f"Backtest failed for strategy {variant.name}: {outcome.error}",
                    strategy=variant.name,
                    error_type=type(outcome.error).__name__,
                )

        correlation = self.correlation_matrix(performances)
        sensitivity: List[SensitivityAnalysis] = []
        if self.config.run_sensitivity and not batch.cancelled:
            sensitivity = self.sensitivity_analysis(performances, cancel_token)

        comparison = StrategyComparison(
            strategies=tuple(performances),
            correlation=correlation,
            ranking=tuple(self.rank(performances)),
            risk_metrics=self.risk_comparison(performances, correlation),
            robustness=RobustnessComparison(
                strategies=tuple(p.name for p in performances),
                white_reality_check=tuple(self.white_reality_check(p) for p in performances),
                monte_carlo=tuple(self.monte_carlo(p) for p in performances),
                sensitivity=tuple(sensitivity),
            ),
            failures=tuple(failures),
            cancelled=batch.cancelled or bool(cancel_token and cancel_token.cancelled),
        )

        logger.info(
            "Strategy comparison completed",
            best=comparison.ranking[0].name if comparison.ranking else None,
            failures=len(failures),
        )
        return comparison

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @staticmethod
    def correlation_matrix(performances: Sequence[StrategyPerformance]) -> Tuple[Tuple[float, ...], ...]:
        returns = [p.returns for p in performances]
        n = len(returns)
        return tuple(
            tuple(1.0 if i == j else pearson_correlation(returns[i], returns[j]) for j in range(n))
            for i in range(n)
        )

    @staticmethod
    def rank(performances: Sequence[StrategyPerformance]) -> List[StrategyRanking]:
        """Composite ranking; ties keep input order."""
        if not performances:
            return []
        metrics = [p.backtest.metrics for p in performances]
        total_returns = [m.total_return_percent for m in metrics]
        drawdowns = [m.max_drawdown_percent for m in metrics]
        win_rates = [m.win_rate for m in metrics]
        sharpes = [m.sharpe_ratio for m in metrics]

        scored = []
        for index, (p, m) in enumerate(zip(performances, metrics)):
            return_score = normalize_score(m.total_return_percent, total_returns)
            risk_score = 1 - normalize_score(m.max_drawdown_percent, drawdowns)
            consistency_score = normalize_score(m.win_rate, win_rates)
            robustness_score = normalize_score(m.sharpe_ratio, sharpes)
            total = (
                RETURN_WEIGHT * return_score
                + RISK_WEIGHT * risk_score
                + CONSISTENCY_WEIGHT * consistency_score
                + ROBUSTNESS_WEIGHT * robustness_score
            )
            scored.append((index, p.name, total, return_score, risk_score, consistency_score, robustness_score))

        scored.sort(key=lambda s: (-s[2], s[0]))
        return [
            StrategyRanking(
                name=name,
                rank=rank,
                total_score=total,
                return_score=ret,
                risk_score=risk,
                consistency_score=consistency,
                robustness_score=robustness,
            )
            for rank, (_, name, total, ret, risk, consistency, robustness) in enumerate(scored, start=1)
        ]

    @staticmethod
    def risk_comparison(
        performances: Sequence[StrategyPerformance],
        correlation: Sequence[Sequence[float]]
    ) -> RiskComparison:
        risks = [p.backtest.metrics.max_drawdown_percent for p in performances]
        average_correlation = average_off_diagonal(correlation)
        risk = portfolio_risk(risks, average_correlation)
        worst = max(risks, default=0.0)

        return RiskComparison(
            correlation_matrix=tuple(tuple(row) for row in correlation),
            individual_risks=tuple(risks),
            average_correlation=average_correlation,
            portfolio_risk=risk,
            diversification_benefit=1 - risk / worst if worst > 0 else 0.0,
            portfolio_metrics=StrategyComparator.portfolio_metrics(performances),
        )

    @staticmethod
    def portfolio_metrics(performances: Sequence[StrategyPerformance]) -> PortfolioMetrics:
        metrics = [p.backtest.metrics for p in performances]
        if not metrics:
            return PortfolioMetrics(0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0)

        def mean(attr: str, cap: Optional[float] = None) -> float:
            values = [getattr(m, attr) for m in metrics]
            if cap is not None:
                values = [finite_or_cap(v, cap) for v in values]
            return float(np.mean(values))

        return PortfolioMetrics(
            total_return_percent=mean("total_return_percent"),
            annualized_return=mean("annualized_return"),
            sharpe_ratio=mean("sharpe_ratio"),
            sortino_ratio=mean("sortino_ratio", cap=RATIO_CAP),
            calmar_ratio=mean("calmar_ratio"),
            max_drawdown_percent=max(m.max_drawdown_percent for m in metrics),
            win_rate=mean("win_rate"),
            profit_factor=mean("profit_factor", cap=PROFIT_FACTOR_CAP),
            var_95=mean("var_95"),
            cvar_95=mean("cvar_95"),
            ulcer_index=mean("ulcer_index"),
        )

    @staticmethod
    def white_reality_check(performance: StrategyPerformance) -> float:
        returns = performance.returns
        if returns.size == 0:
            return 0.0
        return float(np.sum(returns > 0)) / returns.size

    def monte_carlo(self, performance: StrategyPerformance) -> MonteCarloResult:
        return monte_carlo_permutation(
            performance.name, performance.returns, self.config.monte_carlo_runs, seed=self.config.seed
        )

    def sensitivity_values(self, value: float) -> List[float]:
        steps = int(round(self.config.sensitivity_range / self.config.sensitivity_step))
        return [value * (1 + i * self.config.sensitivity_step) for i in range(-steps, steps + 1)]

    def sensitivity_analysis(
        self,
        performances: Sequence[StrategyPerformance],
        cancel_token: Optional[CancellationToken] = None
    ) -> List[SensitivityAnalysis]:
        """
        Vary each numeric parameter over +/- sensitivity_range and record returns.

        Failed runs count as a 0% return.
        """
        jobs = []
        tasks = []
        for p in performances:
            for name, value in p.parameters.items():
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    continue
                values = self.sensitivity_values(float(value))
                jobs.append((p.name, name, values, len(tasks)))
                for v in values:
                    params = dict(p.parameters)
                    params[name] = v
                    tasks.append((self.engine, self.series, params))

        if not tasks:
            return []

        batch = run_batch(
            _run_variant,
            tasks,
            n_jobs=self.config.n_jobs,
            backend=self.config.backend,
            cancel_token=cancel_token,
        )
        returns_by_index: Dict[int, float] = {
            o.index: o.value.total_return_percent if o.ok else 0.0 for o in batch.outcomes
        }

        results = []
        for strategy, parameter, values, offset in jobs:
            returns = [returns_by_index.get(offset + i, 0.0) for i in range(len(values))]
            results.append(SensitivityAnalysis(
                strategy=strategy,
                parameter=parameter,
                values=tuple(values),
                returns=tuple(returns),
                sensitivity=abs(pearson_correlation(values, returns)),
                stability=_sensitivity_stability(returns),
            ))
        return results

    # ------------------------------------------------------------------
    # Benchmark
    # ------------------------------------------------------------------

    def buy_and_hold_equity(self) -> np.ndarray:
        start = self.series[0].close
        capital = self.engine.config.initial_capital
        return np.array([bar.close / start * capital for bar in self.series], dtype=float)

    def compare_to_benchmark(self, comparison: StrategyComparison) -> BenchmarkComparison:
        """
        Compare each strategy against buy-and-hold over the same series.

        Beta falls back to 1 when the benchmark has no variance.
        """
        equity = self.buy_and_hold_equity()
        benchmark_returns = per_step_returns(equity)
        benchmark_return = (equity[-1] / equity[0] - 1) * 100
        peaks = np.maximum.accumulate(equity)
        benchmark_drawdown = float(np.max((peaks - equity) / peaks) * 100)
        benchmark_sharpe = sharpe_ratio(benchmark_returns)

        comparisons = []
        for performance in comparison.strategies:
            returns = performance.returns
            n = min(returns.size, benchmark_returns.size)
            strategy_r = returns[:n]
            bench_r = benchmark_returns[:n]

            if not is_flat(bench_r):
                covariance = float(np.mean((strategy_r - strategy_r.mean()) * (bench_r - bench_r.mean())))
                beta = covariance / float(np.var(bench_r))
            else:
                beta = 1.0

            tracking_error = math.sqrt(float(np.var(strategy_r - bench_r)) * TRADING_PERIODS_PER_YEAR) if n else 0.0
            alpha = performance.backtest.total_return_percent - benchmark_return

            comparisons.append(StrategyBenchmarkComparison(
                strategy=performance.name,
                alpha=alpha,
                beta=beta,
                information_ratio=alpha / tracking_error if tracking_error > 0 else 0.0,
                tracking_error=tracking_error,
                outperformance=alpha > 0,
                risk_adjusted_outperformance=performance.backtest.metrics.sharpe_ratio > benchmark_sharpe,
            ))

        def average(attr: str) -> float:
            return float(np.mean([getattr(c, attr) for c in comparisons])) if comparisons else 0.0

        return BenchmarkComparison(
            benchmark_return=benchmark_return,
            benchmark_sharpe=benchmark_sharpe,
            benchmark_max_drawdown=benchmark_drawdown,
            comparisons=tuple(comparisons),
            outperforming_strategies=sum(1 for c in comparisons if c.outperformance),
            risk_adjusted_outperforming=sum(1 for c in comparisons if c.risk_adjusted_outperformance),
            average_alpha=average("alpha"),
            average_beta=average("beta"),
            average_information_ratio=average("information_ratio"),
        )

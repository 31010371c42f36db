"""
Analysis runner - orchestrates the full backtesting workflow.
"""

from dataclasses import dataclass, field, fields
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import TradeLabError
from ..observability.logger import configure_logging, get_logger
from ..strategy.base_strategy import StrategyFactory
from .comparison import ComparisonConfig, StrategyComparator, StrategyComparison, StrategyVariant
from .config import BacktestConfig
from .data import Bar, validate_series
from .engine import BacktestEngine, BacktestResult
from .executor import CancellationToken
from .metrics import PerformanceMetrics, finite_or_cap
from .optimizer.config import OptimizerConfig
from .optimizer.objective import PROFIT_FACTOR_CAP
from .optimizer.optimizer import OptimizationResult, ParameterSearchEngine
from .optimizer.parameter_space import ParameterSpace
from .walk_forward import WalkForwardConfig, WalkForwardResult, WalkForwardValidator

logger = get_logger(__name__)

# Achievement below this percent of a target triggers a recommendation
ACHIEVEMENT_THRESHOLD = 80.0
CONSISTENCY_THRESHOLD = 0.7
ROBUSTNESS_THRESHOLD = 0.6
MIN_PROFIT_FACTOR = 1.5
MIN_TRADES = 10
MAX_TRADES = 1000


@dataclass(frozen=True)
class PerformanceTargets:
    annual_return_percent: float = 15.0
    max_drawdown_percent: float = 10.0
    win_rate: float = 55.0
    sharpe_ratio: float = 1.5

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class TargetAnalysis:
    """
    How close the optimised run comes to each target.

    Achievements are percentages capped at 100; the drawdown achievement
    treats drawdowns under 0.1% as 0.1%.
    """
    targets: PerformanceTargets
    achievements: Dict[str, float]
    overall_score: float
    improvement: Dict[str, float]
    robustness: float = 0.0
    stability: float = 0.0

    def to_dict(self) -> dict:
        return {
            "targets": self.targets.to_dict(),
            "achievements": dict(self.achievements),
            "overall_score": self.overall_score,
            "improvement": dict(self.improvement),
            "robustness": self.robustness,
            "stability": self.stability,
        }


@dataclass(frozen=True)
class FullAnalysisResult:
    baseline_backtest: BacktestResult
    optimization_results: Tuple[OptimizationResult, ...]
    optimized_backtest: BacktestResult
    comparison: StrategyComparison
    target_analysis: TargetAnalysis
    recommendations: Tuple[str, ...] = field(default_factory=tuple)
    walk_forward: Optional[WalkForwardResult] = None

    @property
    def improvement_percent(self) -> float:
        return self.optimized_backtest.total_return_percent - self.baseline_backtest.total_return_percent

    def to_dict(self) -> dict:
        return {
            "baseline_backtest": self.baseline_backtest.metrics.to_dict(),
            "optimization_results": [r.to_dict() for r in self.optimization_results],
            "optimized_backtest": self.optimized_backtest.metrics.to_dict(),
            "optimized_parameters": dict(self.optimized_backtest.parameters),
            "comparison": self.comparison.to_dict(),
            "target_analysis": self.target_analysis.to_dict(),
            "recommendations": list(self.recommendations),
            "walk_forward": self.walk_forward.to_dict() if self.walk_forward else None,
        }


def analyze_targets(
    optimized: PerformanceMetrics,
    baseline: PerformanceMetrics,
    walk_forward: Optional[WalkForwardResult] = None,
    targets: PerformanceTargets = PerformanceTargets()
) -> TargetAnalysis:
    """Score the optimised metrics against the targets and the baseline."""
    annual_percent = optimized.annualized_return * 100
    achievements = {
        "annual_return": min(100.0, annual_percent / targets.annual_return_percent * 100),
        "max_drawdown": min(100.0, targets.max_drawdown_percent / max(optimized.max_drawdown_percent, 0.1) * 100),
        "win_rate": min(100.0, optimized.win_rate / targets.win_rate * 100),
        "sharpe_ratio": min(100.0, optimized.sharpe_ratio / targets.sharpe_ratio * 100),
    }
    improvement = {
        "annual_return": annual_percent - baseline.annualized_return * 100,
        "max_drawdown": baseline.max_drawdown_percent - optimized.max_drawdown_percent,
        "win_rate": optimized.win_rate - baseline.win_rate,
        "sharpe_ratio": optimized.sharpe_ratio - baseline.sharpe_ratio,
    }
    return TargetAnalysis(
        targets=targets,
        achievements=achievements,
        overall_score=sum(achievements.values()) / len(achievements),
        improvement=improvement,
        robustness=walk_forward.robustness.robustness_score if walk_forward else 0.0,
        stability=walk_forward.stability.consistency_score if walk_forward else 0.0,
    )


def generate_recommendations(
    metrics: PerformanceMetrics,
    target_analysis: TargetAnalysis,
    walk_forward: Optional[WalkForwardResult] = None
) -> List[str]:
    achievements = target_analysis.achievements
    recommendations = []

    if achievements["annual_return"] < ACHIEVEMENT_THRESHOLD:
        recommendations.append(
            "Consider more aggressive position sizing or alternative entry/exit criteria to improve returns"
        )
    if achievements["max_drawdown"] < ACHIEVEMENT_THRESHOLD:
        recommendations.append("Implement stricter risk management rules to reduce maximum drawdown")
    if achievements["win_rate"] < ACHIEVEMENT_THRESHOLD:
        recommendations.append(
            "Refine entry signals to improve win rate, for example with additional confirmation indicators"
        )
    if achievements["sharpe_ratio"] < ACHIEVEMENT_THRESHOLD:
        recommendations.append("Focus on risk-adjusted returns, for example with volatility-based position sizing")

    if walk_forward is not None:
        if walk_forward.stability.consistency_score < CONSISTENCY_THRESHOLD:
            recommendations.append("Strategy shows parameter instability; consider more robust parameter ranges")
        if walk_forward.robustness.robustness_score < ROBUSTNESS_THRESHOLD:
            recommendations.append("Strategy may be overfit; consider simpler models or longer optimization periods")

    if finite_or_cap(metrics.profit_factor, PROFIT_FACTOR_CAP) < MIN_PROFIT_FACTOR:
        recommendations.append("Profit factor is low; adjust risk-reward ratio or filter trades more selectively")
    if metrics.total_trades < MIN_TRADES:
        recommendations.append("Low trade frequency; consider shorter timeframes or more sensitive signals")
    if metrics.total_trades > MAX_TRADES:
        recommendations.append("High trade frequency; check the impact of commission and slippage")

    return recommendations


class AnalysisRunner:
    """
    Orchestrates the complete analysis of one strategy.

    Coordinates:
    - Baseline backtest
    - Parameter search and the optimised backtest
    - Baseline vs optimised comparison
    - Optional walk-forward validation
    - Target scoring and recommendations
    """

    def __init__(
        self,
        backtest_config: BacktestConfig,
        strategy_factory: StrategyFactory,
        optimizer_config: Optional[OptimizerConfig] = None,
        comparison_config: Optional[ComparisonConfig] = None,
        targets: Optional[PerformanceTargets] = None
    ):
        self.engine = BacktestEngine(backtest_config, strategy_factory)
        self.optimizer_config = optimizer_config or OptimizerConfig()
        self.comparison_config = comparison_config or ComparisonConfig()
        self.targets = targets or PerformanceTargets()

    @classmethod
    def from_settings(cls, settings, strategy_factory: StrategyFactory) -> "AnalysisRunner":
        """Build a runner from a loaded `Settings` instance and apply its logging section."""
        configure_logging(level=settings.logging.level, format_type=settings.logging.format)
        return cls(
            backtest_config=settings.backtest.to_backtest_config(),
            strategy_factory=strategy_factory,
            optimizer_config=settings.optimizer.to_optimizer_config(),
            comparison_config=settings.comparison.to_comparison_config(),
        )

    def run_full_analysis(
        self,
        series: Sequence[Bar],
        base_parameters: Optional[Mapping[str, float]],
        parameter_space: ParameterSpace,
        walk_forward: Optional[WalkForwardConfig] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> FullAnalysisResult:
        """
        Run the complete analysis.

        Args:
            series: Bars sorted by timestamp.
            base_parameters: Baseline strategy parameters.
            parameter_space: Ranges to search.
            walk_forward: Window layout; walk-forward is skipped when None.
            cancel_token: Optional cooperative cancellation flag.

        Returns:
            FullAnalysisResult.

        Raises:
            InvalidInputError: If the series or any config is invalid.
            TradeLabError: If the search yields no successful evaluation.
        """
        validate_series(series)
        base = dict(base_parameters or {})
        logger.info("Starting full analysis", bars=len(series), parameters=parameter_space.names)

        baseline = self.engine.run(series, base)
        logger.info("Baseline backtest completed", total_return_percent=baseline.total_return_percent)

        search = ParameterSearchEngine(self.engine, series, self.optimizer_config)
        results = search.search(base, parameter_space, cancel_token=cancel_token)
        if not results:
            raise TradeLabError(
                f"Parameter search produced no successful evaluations ({len(search.failures)} failures)"
            )
        best = results[0]
        optimized = best.backtest
        logger.info("Parameter optimization completed", best_params=best.searched_parameters)

        comparator = StrategyComparator(self.engine, series, self.comparison_config)
        comparison = comparator.compare(
            [StrategyVariant("Baseline", base), StrategyVariant("Optimized", dict(best.parameters))],
            cancel_token=cancel_token,
        )

        wf_result = None
        if walk_forward is not None:
            validator = WalkForwardValidator(self.engine, series, self.optimizer_config)
            wf_result = validator.validate(base, parameter_space, walk_forward, cancel_token=cancel_token)

        target_analysis = analyze_targets(optimized.metrics, baseline.metrics, wf_result, self.targets)
        recommendations = generate_recommendations(optimized.metrics, target_analysis, wf_result)

        result = FullAnalysisResult(
            baseline_backtest=baseline,
            optimization_results=tuple(results),
            optimized_backtest=optimized,
            comparison=comparison,
            target_analysis=target_analysis,
            recommendations=tuple(recommendations),
            walk_forward=wf_result,
        )

        logger.info(
            "Full analysis completed",
            baseline_return=baseline.total_return_percent,
            optimized_return=optimized.total_return_percent,
            improvement=result.improvement_percent,
            target_score=target_analysis.overall_score,
        )
        return result

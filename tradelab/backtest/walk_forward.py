"""
Walk-forward validation.

Slides a fixed window across the series. In each window the leading
`optimization_periods` bars are searched for the best parameters, which are
then run once, untouched, on the following `test_periods` bars.
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..errors import InvalidInputError
from ..observability.logger import get_logger
from .comparison import monte_carlo_permutation
from .data import Bar, validate_series
from .engine import BacktestEngine, BacktestResult
from .executor import CancellationToken
from .metrics import finite_or_cap
from .optimizer.config import OBJECTIVES, SEARCH_METHODS, OptimizerConfig
from .optimizer.objective import PROFIT_FACTOR_CAP
from .optimizer.optimizer import OptimizationResult, ParameterSearchEngine
from .optimizer.parameter_space import ParameterSpace

logger = get_logger(__name__)

MONTE_CARLO_RUNS = 1000


@dataclass(frozen=True)
class WalkForwardConfig:
    """Configuration for walk-forward validation."""

    window_size: int = 500
    step_size: int = 100
    min_periods: int = 20  # shorter slices are skipped
    optimization_periods: int = 400
    test_periods: int = 100

    # Search method/objective per window (None = optimizer config default)
    method: Optional[str] = None
    objective: Optional[str] = None

    # In-sample returns (percent) closer to zero than this flag the degradation
    degradation_epsilon: float = 0.01

    def __post_init__(self):
        """Validate configuration."""
        for name in ("window_size", "step_size", "min_periods", "optimization_periods", "test_periods"):
            if getattr(self, name) < 1:
                raise InvalidInputError(f"{name} must be positive", name)

        if self.optimization_periods + self.test_periods > self.window_size:
            raise InvalidInputError(
                "optimization_periods + test_periods must not exceed window_size", "window_size"
            )

        if self.method is not None and self.method not in SEARCH_METHODS:
            raise InvalidInputError(f"method must be one of {list(SEARCH_METHODS)}", "method")

        if self.objective is not None and self.objective not in OBJECTIVES:
            raise InvalidInputError(f"objective must be one of {list(OBJECTIVES)}", "objective")

        if self.degradation_epsilon < 0:
            raise InvalidInputError("degradation_epsilon must be non-negative", "degradation_epsilon")

    def segment_count(self, series_length: int) -> int:
        """Number of windows that fit, before any skipping."""
        if series_length < self.window_size:
            return 0
        return (series_length - self.window_size) // self.step_size + 1

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class Period:
    """Half-open bar index range [start, end) with its boundary timestamps."""
    start: int
    end: int
    start_time: datetime
    end_time: datetime  # timestamp of the last bar inside the range

    @property
    def length(self) -> int:
        return self.end - self.start

    def to_dict(self) -> dict:
        return {
            "start": self.start,
            "end": self.end,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
        }


@dataclass(frozen=True)
class WalkForwardSegment:
    index: int
    optimization_period: Period
    test_period: Period
    best_parameters: Dict[str, float]
    in_sample_result: OptimizationResult
    out_of_sample_result: BacktestResult
    degradation: float
    degradation_flagged: bool = False

    @property
    def in_sample_return(self) -> float:
        return self.in_sample_result.backtest.total_return_percent

    @property
    def out_of_sample_return(self) -> float:
        return self.out_of_sample_result.total_return_percent

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "optimization_period": self.optimization_period.to_dict(),
            "test_period": self.test_period.to_dict(),
            "best_parameters": dict(self.best_parameters),
            "in_sample_return_percent": self.in_sample_return,
            "out_of_sample_return_percent": self.out_of_sample_return,
            "in_sample_fitness": self.in_sample_result.fitness,
            "out_of_sample_metrics": self.out_of_sample_result.metrics.to_dict(),
            "degradation": self.degradation,
            "degradation_flagged": self.degradation_flagged,
        }


@dataclass(frozen=True)
class StabilityMetrics:
    parameter_stability: float = 0.0
    performance_stability: float = 0.0
    return_stability: float = 0.0
    drawdown_stability: float = 0.0
    consistency_score: float = 0.0

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class RobustnessMetrics:
    robustness_score: float = 0.0
    overfitting_index: float = 0.0
    mean_degradation: float = 0.0
    flagged_segments: int = 0
    monte_carlo_p_value: float = 1.0
    monte_carlo_drawdown_p_value: float = 1.0

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class AggregateMetrics:
    """Out-of-sample metrics averaged across segments."""
    total_return_percent: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown_percent: float = 0.0
    win_rate: float = 0.0
    profit_factor: float = 0.0  # each segment capped at 5
    total_trades: float = 0.0
    in_sample_return_percent: float = 0.0

    def to_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class WalkForwardResult:
    segments: Tuple[WalkForwardSegment, ...]
    overall_metrics: AggregateMetrics
    stability: StabilityMetrics
    robustness: RobustnessMetrics
    skipped_windows: int = 0
    cancelled: bool = False

    def to_dict(self) -> dict:
        return {
            "segments": [s.to_dict() for s in self.segments],
            "overall_metrics": self.overall_metrics.to_dict(),
            "stability": self.stability.to_dict(),
            "robustness": self.robustness.to_dict(),
            "skipped_windows": self.skipped_windows,
            "cancelled": self.cancelled,
        }


def degradation(in_sample_return: float, out_of_sample_return: float) -> float:
    """Relative drop from in-sample to out-of-sample return, 0 when in-sample is 0."""
    if in_sample_return == 0:
        return 0.0
    return (in_sample_return - out_of_sample_return) / abs(in_sample_return)


def _inverse_dispersion(values: Sequence[float]) -> float:
    """1 / (1 + population stdev)."""
    if not values:
        return 0.0
    return 1.0 / (1.0 + float(np.std(np.asarray(values, dtype=float))))


class WalkForwardValidator:
    """
    Rolling in-sample search with out-of-sample confirmation.
    """

    def __init__(
        self,
        engine: BacktestEngine,
        series: Sequence[Bar],
        optimizer_config: Optional[OptimizerConfig] = None
    ):
        validate_series(series)
        self.engine = engine
        self.series = list(series)
        self.optimizer_config = optimizer_config or OptimizerConfig()

    def validate(
        self,
        base_config: Optional[Mapping[str, float]],
        parameter_space: ParameterSpace,
        window: WalkForwardConfig,
        cancel_token: Optional[CancellationToken] = None
    ) -> WalkForwardResult:
        """
        Run walk-forward validation.

        Args:
            base_config: Fixed strategy parameters.
            parameter_space: Ranges searched in every window.
            window: Window layout.
            cancel_token: Optional cooperative cancellation flag.

        Returns:
            WalkForwardResult with per-segment results and aggregates.
        """
        n = len(self.series)
        expected = window.segment_count(n)
        if expected == 0:
            logger.warning(
                "Series shorter than one walk-forward window",
                series_length=n,
                window_size=window.window_size,
            )

        logger.info(
            f"Starting walk-forward validation over {expected} windows",
            series_length=n,
            window_size=window.window_size,
            step_size=window.step_size,
        )

        segments: List[WalkForwardSegment] = []
        skipped = 0
        cancelled = False

        for start in range(0, n - window.window_size + 1, window.step_size):
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                break

            opt_start, opt_end = start, start + window.optimization_periods
            test_start, test_end = opt_end, min(opt_end + window.test_periods, n)

            if test_end - test_start < window.min_periods:
                logger.warning(
                    "Skipping walk-forward window with too few bars",
                    window_start=start,
                    in_sample=opt_end - opt_start,
                    out_of_sample=test_end - test_start,
                    min_periods=window.min_periods,
                )
                skipped += 1
                continue

            segment, was_cancelled = self._run_segment(
                len(segments), opt_start, opt_end, test_start, test_end,
                base_config, parameter_space, window, cancel_token
            )
            if was_cancelled:
                cancelled = True
            if segment is None:
                skipped += 1
            else:
                segments.append(segment)
            if cancelled:
                break

        result = WalkForwardResult(
            segments=tuple(segments),
            overall_metrics=self._aggregate(segments),
            stability=self._stability(segments, parameter_space),
            robustness=self._robustness(segments),
            skipped_windows=skipped,
            cancelled=cancelled,
        )

        logger.info(
            "Walk-forward validation completed",
            segments=len(segments),
            skipped=skipped,
            cancelled=cancelled,
            consistency=result.stability.consistency_score,
            robustness=result.robustness.robustness_score,
        )
        return result

    def _period(self, start: int, end: int) -> Period:
        return Period(
            start=start,
            end=end,
            start_time=self.series[start].timestamp,
            end_time=self.series[end - 1].timestamp,
        )

    def _run_segment(
        self,
        index: int,
        opt_start: int,
        opt_end: int,
        test_start: int,
        test_end: int,
        base_config: Optional[Mapping[str, float]],
        parameter_space: ParameterSpace,
        window: WalkForwardConfig,
        cancel_token: Optional[CancellationToken]
    ) -> Tuple[Optional[WalkForwardSegment], bool]:
        search = ParameterSearchEngine(
            self.engine, self.series[opt_start:opt_end], self.optimizer_config
        )
        results = search.search(
            base_config,
            parameter_space,
            method=window.method,
            objective=window.objective,
            cancel_token=cancel_token,
        )
        if not results:
            logger.warning(
                "No successful evaluations in window, skipping",
                segment=index,
                failures=len(search.failures),
            )
            return None, search.cancelled

        best = results[0]
        try:
            out_of_sample = self.engine.run(self.series[test_start:test_end], best.parameters)
        except Exception as e:
            logger.error(
                f"Out-of-sample run failed for segment {index}: {e}",
                segment=index,
                error_type=type(e).__name__,
            )
            return None, search.cancelled

        in_return = best.backtest.total_return_percent
        out_return = out_of_sample.total_return_percent
        value = degradation(in_return, out_return)
        flagged = abs(in_return) < window.degradation_epsilon
        if flagged:
            logger.warning(
                "Near-zero in-sample return makes degradation unreliable",
                segment=index,
                in_sample_return=in_return,
                degradation=value,
            )

        logger.info(
            f"Segment {index} completed. Degradation: {value * 100:.2f}%",
            segment=index,
            in_sample_return=in_return,
            out_of_sample_return=out_return,
            best_params=best.searched_parameters,
        )

        segment = WalkForwardSegment(
            index=index,
            optimization_period=self._period(opt_start, opt_end),
            test_period=self._period(test_start, test_end),
            best_parameters=dict(best.searched_parameters),
            in_sample_result=best,
            out_of_sample_result=out_of_sample,
            degradation=value,
            degradation_flagged=flagged,
        )
        return segment, search.cancelled

    # ------------------------------------------------------------------
    # Aggregation
    # ------------------------------------------------------------------

    @staticmethod
    def _aggregate(segments: Sequence[WalkForwardSegment]) -> AggregateMetrics:
        if not segments:
            return AggregateMetrics()
        oos = [s.out_of_sample_result.metrics for s in segments]
        return AggregateMetrics(
            total_return_percent=float(np.mean([m.total_return_percent for m in oos])),
            sharpe_ratio=float(np.mean([m.sharpe_ratio for m in oos])),
            max_drawdown_percent=float(np.mean([m.max_drawdown_percent for m in oos])),
            win_rate=float(np.mean([m.win_rate for m in oos])),
            profit_factor=float(np.mean([finite_or_cap(m.profit_factor, PROFIT_FACTOR_CAP) for m in oos])),
            total_trades=float(np.mean([m.total_trades for m in oos])),
            in_sample_return_percent=float(np.mean([s.in_sample_return for s in segments])),
        )

    @staticmethod
    def _stability(segments: Sequence[WalkForwardSegment], space: ParameterSpace) -> StabilityMetrics:
        if not segments:
            return StabilityMetrics()

        parameter_stability = float(np.mean([
            _inverse_dispersion([s.best_parameters[name] for s in segments])
            for name in space.names
        ]))
        return_stability = _inverse_dispersion([s.out_of_sample_return for s in segments])
        drawdown_stability = _inverse_dispersion(
            [s.out_of_sample_result.metrics.max_drawdown_percent for s in segments]
        )
        performance_stability = sum(1 for s in segments if s.out_of_sample_return > 0) / len(segments)

        return StabilityMetrics(
            parameter_stability=parameter_stability,
            performance_stability=performance_stability,
            return_stability=return_stability,
            drawdown_stability=drawdown_stability,
            consistency_score=(parameter_stability + return_stability + drawdown_stability) / 3,
        )

    def _robustness(self, segments: Sequence[WalkForwardSegment]) -> RobustnessMetrics:
        if not segments:
            return RobustnessMetrics()

        mean_degradation = float(np.mean([s.degradation for s in segments]))
        returns = np.concatenate([s.out_of_sample_result.returns for s in segments])
        monte_carlo = monte_carlo_permutation(
            "walk_forward", returns, MONTE_CARLO_RUNS, seed=self.optimizer_config.seed
        )

        return RobustnessMetrics(
            robustness_score=sum(1 for s in segments if s.out_of_sample_return > 0) / len(segments),
            overfitting_index=max(0.0, mean_degradation) / 100,
            mean_degradation=mean_degradation,
            flagged_segments=sum(1 for s in segments if s.degradation_flagged),
            monte_carlo_p_value=monte_carlo.p_value,
            monte_carlo_drawdown_p_value=monte_carlo.drawdown_p_value,
        )

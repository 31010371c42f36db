"""
Unit tests for strategy comparison.
"""

import math
import pytest
import numpy as np
from datetime import datetime, timedelta, timezone

from tradelab.backtest.comparison import (
    ComparisonConfig,
    StrategyComparator,
    StrategyVariant,
    monte_carlo_permutation,
    normalize_score,
    path_max_drawdown,
    pearson_correlation,
    portfolio_risk,
    shuffle_returns,
)
from tradelab.backtest.config import BacktestConfig
from tradelab.backtest.data import Bar
from tradelab.backtest.engine import BacktestEngine
from tradelab.errors import InvalidInputError
from tradelab.strategy.momentum_strategy import MomentumStrategy, create_momentum_strategy


START = datetime(2024, 1, 1, tzinfo=timezone.utc)

# Thresholds no momentum reading reaches
IDLE = {"buy_threshold": 10.0, "sell_threshold": 10.0}


def wave_series(n: int = 150):
    bars = []
    for i in range(n):
        close = 100 + 10 * math.sin(i / 6) + 0.05 * i
        bars.append(Bar(
            timestamp=START + timedelta(hours=i),
            open=close,
            high=close * 1.002,
            low=close * 0.998,
            close=close,
            volume=5.0,
        ))
    return bars


def fragile_factory(params):
    if params.get("short_window") == 13:
        raise RuntimeError("unsupported window")
    return MomentumStrategy(params)


def make_comparator(factory=create_momentum_strategy, **config) -> StrategyComparator:
    values = dict(monte_carlo_runs=50, run_sensitivity=False, seed=1)
    values.update(config)
    engine = BacktestEngine(BacktestConfig(), factory)
    return StrategyComparator(engine, wave_series(), ComparisonConfig(**values))


class TestStatistics:
    """Tests for comparison statistics."""

    def test_pearson_correlation(self):
        x = [1.0, 2.0, 3.0, 4.0]
        assert pearson_correlation(x, x) == pytest.approx(1.0)
        assert pearson_correlation(x, [-v for v in x]) == pytest.approx(-1.0)
        assert pearson_correlation(x, [2.0] * 4) == 0.0
        assert pearson_correlation([1.0], [1.0]) == 0.0
        assert pearson_correlation(x, [0.001] * 4) == 0.0

    def test_normalize_score(self):
        assert normalize_score(5.0, [5.0, 5.0]) == 0.5
        assert normalize_score(2.0, [0.0, 2.0, 4.0]) == pytest.approx(0.5)
        assert normalize_score(4.0, [0.0, 2.0, 4.0]) == pytest.approx(1.0)

    def test_portfolio_risk(self):
        assert portfolio_risk([10.0, 10.0], 1.0) == pytest.approx(math.sqrt(200.0))
        assert portfolio_risk([10.0, 10.0], 0.0) == pytest.approx(10.0)
        assert portfolio_risk([10.0, 10.0, 10.0], -1.0) == 0.0
        assert portfolio_risk([], 0.5) == 0.0

    def test_path_max_drawdown(self):
        assert path_max_drawdown([0.1, -0.5, 0.2]) == pytest.approx(50.0)
        assert path_max_drawdown([0.01, 0.02]) == 0.0


class TestMonteCarlo:
    """Tests for the permutation test."""

    def test_shuffles_preserve_sum_and_variance(self):
        rng = np.random.default_rng(4)
        returns = rng.normal(0.001, 0.02, 250)
        for _ in range(20):
            shuffled = shuffle_returns(returns, rng)
            assert shuffled.sum() == pytest.approx(returns.sum())
            assert shuffled.var() == pytest.approx(returns.var())
            assert sorted(shuffled) == sorted(returns)

    def test_seeded_and_bounded(self):
        returns = np.random.default_rng(2).normal(0.0, 0.01, 100)
        first = monte_carlo_permutation("s", returns, 200, seed=9)
        second = monte_carlo_permutation("s", returns, 200, seed=9)

        assert first == second
        assert 0.0 <= first.p_value <= 1.0
        assert 0.0 <= first.drawdown_p_value <= 1.0
        low95, high95 = first.drawdown_confidence_95
        assert low95 <= high95

    def test_compounded_return_is_order_invariant(self):
        returns = np.random.default_rng(2).normal(0.0, 0.01, 100)
        result = monte_carlo_permutation("s", returns, 100, seed=1)

        assert result.p_value == 0.0
        assert result.confidence_95[0] == pytest.approx(result.original_return)
        assert result.confidence_99[1] == pytest.approx(result.original_return)

    def test_empty_returns(self):
        result = monte_carlo_permutation("s", [], 100, seed=1)
        assert result.p_value == 1.0
        assert result.original_return == 0.0


class TestStrategyComparator:
    """Tests for strategy comparison runs."""

    def test_identical_variants_tie_by_input_order(self):
        comparison = make_comparator().compare([
            StrategyVariant("first", {"short_window": 5}),
            StrategyVariant("second", {"short_window": 5}),
        ])

        assert [r.name for r in comparison.ranking] == ["first", "second"]
        assert [r.rank for r in comparison.ranking] == [1, 2]
        assert comparison.ranking[0].total_score == pytest.approx(comparison.ranking[1].total_score)
        assert comparison.ranking[0].return_score == 0.5

    def test_correlation_matrix_shape(self):
        comparison = make_comparator().compare([
            StrategyVariant("a", {"short_window": 3}),
            StrategyVariant("b", {"short_window": 5}),
            StrategyVariant("c", IDLE),
        ])

        matrix = comparison.correlation
        assert len(matrix) == 3
        for i in range(3):
            assert matrix[i][i] == 1.0
            for j in range(3):
                assert matrix[i][j] == pytest.approx(matrix[j][i])
                assert -1.0 - 1e-9 <= matrix[i][j] <= 1.0 + 1e-9
        # An idle strategy has flat equity, so no correlation is defined
        assert matrix[0][2] == 0.0

    def test_ranking_scores_bounded(self):
        comparison = make_comparator().compare([
            StrategyVariant("a", {"short_window": 3}),
            StrategyVariant("b", {"short_window": 5, "long_window": 30}),
            StrategyVariant("c", IDLE),
        ])
        ranks = sorted(r.rank for r in comparison.ranking)
        assert ranks == [1, 2, 3]
        totals = [r.total_score for r in comparison.ranking]
        assert totals == sorted(totals, reverse=True)
        for r in comparison.ranking:
            assert 0.0 <= r.total_score <= 1.0

    def test_failed_variant_excluded(self):
        comparison = make_comparator(factory=fragile_factory).compare([
            StrategyVariant("ok", {"short_window": 5}),
            StrategyVariant("broken", {"short_window": 13}),
        ])

        assert [s.name for s in comparison.strategies] == ["ok"]
        assert len(comparison.failures) == 1
        assert comparison.failures[0].error_type == "RuntimeError"
        assert [r.name for r in comparison.ranking] == ["ok"]
        with pytest.raises(KeyError):
            comparison.get("broken")

    def test_invalid_variants_rejected(self):
        comparator = make_comparator()
        with pytest.raises(InvalidInputError):
            comparator.compare([])
        with pytest.raises(InvalidInputError):
            comparator.compare([StrategyVariant("a"), StrategyVariant("a")])

    def test_risk_and_robustness(self):
        comparison = make_comparator().compare([
            StrategyVariant("a", {"short_window": 3}),
            StrategyVariant("b", {"short_window": 5}),
        ])

        risk = comparison.risk_metrics
        assert risk.portfolio_risk >= 0.0
        assert risk.diversification_benefit <= 1.0
        assert len(risk.individual_risks) == 2
        assert risk.portfolio_metrics.max_drawdown_percent == max(risk.individual_risks)

        robustness = comparison.robustness
        assert len(robustness.monte_carlo) == 2
        assert all(0.0 <= w <= 1.0 for w in robustness.white_reality_check)
        assert robustness.sensitivity == ()

    def test_sensitivity_analysis(self):
        comparison = make_comparator(run_sensitivity=True).compare([
            StrategyVariant("a", {"short_window": 5, "long_window": 20}),
        ])

        sensitivity = comparison.robustness.sensitivity
        assert [s.parameter for s in sensitivity] == ["short_window", "long_window"]
        for s in sensitivity:
            assert len(s.values) == 9
            assert s.values[4] == pytest.approx(s.values[0] / 0.8)
            assert 0.0 <= s.sensitivity <= 1.0
            assert 0.0 < s.stability <= 1.0

    def test_compare_to_benchmark(self):
        comparator = make_comparator()
        comparison = comparator.compare([StrategyVariant("idle", IDLE)])
        benchmark = comparator.compare_to_benchmark(comparison)

        series = comparator.series
        expected = (series[-1].close / series[0].close - 1) * 100
        assert benchmark.benchmark_return == pytest.approx(expected)

        idle = benchmark.comparisons[0]
        assert idle.alpha == pytest.approx(-expected)
        assert idle.beta == pytest.approx(0.0)
        assert idle.tracking_error > 0
        assert idle.outperformance == (idle.alpha > 0)

    def test_to_dict(self):
        comparison = make_comparator().compare([StrategyVariant("a", {"short_window": 5})])
        data = comparison.to_dict()
        assert data["ranking"][0]["name"] == "a"
        assert data["cancelled"] is False

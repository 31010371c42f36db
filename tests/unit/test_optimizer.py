"""
Unit tests for parameter search.
"""

import math
import pytest
import numpy as np
from datetime import datetime, timedelta, timezone

from tradelab.backtest.config import BacktestConfig
from tradelab.backtest.data import Bar
from tradelab.backtest.engine import BacktestEngine
from tradelab.backtest.executor import CancellationToken
from tradelab.backtest.metrics import PerformanceMetrics, UNBOUNDED
from tradelab.backtest.optimizer.config import OptimizerConfig
from tradelab.backtest.optimizer.genetic import crossover, elite_indices, mutate, next_generation, tournament_select
from tradelab.backtest.optimizer.objective import ObjectiveFunction, composite_score, profit_factor_score
from tradelab.backtest.optimizer.optimizer import ParameterSearchEngine, rank_results
from tradelab.backtest.optimizer.overfitting import detect_overfitting, robustness_ratio
from tradelab.backtest.optimizer.parameter_space import ParameterRange, ParameterSpace, apply_base, params_key
from tradelab.errors import InvalidInputError
from tradelab.strategy.momentum_strategy import MomentumStrategy, create_momentum_strategy


START = datetime(2024, 1, 1, tzinfo=timezone.utc)


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


def window_space() -> ParameterSpace:
    return ParameterSpace([
        ParameterRange("short_window", 3, 7, 2, "int"),
        ParameterRange("long_window", 15, 25, 10, "int"),
    ])


def make_search(config=None, factory=create_momentum_strategy, series=None) -> ParameterSearchEngine:
    engine = BacktestEngine(BacktestConfig(), factory)
    return ParameterSearchEngine(engine, series or wave_series(), config or OptimizerConfig())


def fragile_factory(params):
    if params["short_window"] == 5:
        raise RuntimeError("unstable window")
    return MomentumStrategy(params)


class TestParameterRange:
    """Tests for parameter ranges."""

    def test_values_include_max(self):
        r = ParameterRange("x", 1.0, 2.0, 0.3)
        assert r.values() == pytest.approx([1.0, 1.3, 1.6, 1.9, 2.0])

    def test_values_land_on_max(self):
        assert ParameterRange("x", 0, 10, 5, "int").values() == [0, 5, 10]

    def test_single_value_when_min_equals_max(self):
        assert ParameterRange("x", 3.0, 3.0, 1.0).values() == [3.0]

    def test_invalid_ranges_rejected(self):
        with pytest.raises(InvalidInputError):
            ParameterRange("x", 2.0, 1.0, 0.5)
        with pytest.raises(InvalidInputError):
            ParameterRange("x", 1.0, 2.0, 0.0)
        with pytest.raises(InvalidInputError):
            ParameterRange("x", 1.0, 2.0, 0.5, "str")

    def test_snap_clamps_and_rounds(self):
        r = ParameterRange("x", 0.0, 1.0, 0.25)
        assert r.snap(0.3) == pytest.approx(0.25)
        assert r.snap(5.0) == pytest.approx(1.0)
        assert r.snap(-1.0) == pytest.approx(0.0)


class TestParameterSpace:
    """Tests for parameter spaces."""

    def test_empty_space_rejected(self):
        with pytest.raises(InvalidInputError):
            ParameterSpace([])

    def test_duplicate_names_rejected(self):
        with pytest.raises(InvalidInputError):
            ParameterSpace([ParameterRange("x", 0, 1, 1), ParameterRange("x", 0, 1, 1)])

    def test_grid_is_cartesian_product(self):
        space = window_space()
        grid = list(space.grid())
        assert space.grid_size == 6
        assert len(grid) == 6
        assert grid[0] == {"short_window": 3, "long_window": 15}
        assert grid[1] == {"short_window": 3, "long_window": 25}

    def test_from_dict(self):
        space = ParameterSpace.from_dict({"x": {"min": 0, "max": 1, "step": 0.5}})
        assert space.names == ["x"]
        assert space["x"].values() == [0.0, 0.5, 1.0]

    def test_boundary_detection(self):
        space = window_space()
        assert space.is_at_boundary("short_window", 3)
        assert not space.is_at_boundary("short_window", 5)

    def test_helpers(self):
        assert params_key({"b": 1, "a": 2}) == (("a", 2), ("b", 1))
        assert apply_base({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}


class TestObjective:
    """Tests for objective functions."""

    def test_unknown_objective_rejected(self):
        with pytest.raises(InvalidInputError):
            ObjectiveFunction("unknown")

    def test_profit_factor_capped(self):
        metrics = PerformanceMetrics(profit_factor=UNBOUNDED)
        assert profit_factor_score(metrics) == 5.0

    def test_composite_score(self):
        metrics = PerformanceMetrics(
            total_return_percent=10.0,
            sharpe_ratio=1.5,
            win_rate=60.0,
            profit_factor=2.0,
            max_drawdown_percent=5.0,
        )
        expected = 0.30 * 0.10 + 0.25 * 0.5 + 0.15 * 0.60 + 0.30 * 2.0 - 0.5 * 0.05
        assert composite_score(metrics) == pytest.approx(expected)

    def test_objective_callable(self):
        metrics = PerformanceMetrics(total_return_percent=12.5)
        assert ObjectiveFunction("return")(metrics) == 12.5


class TestOptimizerConfig:
    """Tests for optimizer config validation."""

    def test_invalid_method(self):
        with pytest.raises(InvalidInputError):
            OptimizerConfig(method="annealing")

    def test_elite_larger_than_population(self):
        with pytest.raises(InvalidInputError):
            OptimizerConfig(population_size=4, elite_size=5)

    def test_invalid_n_jobs(self):
        with pytest.raises(InvalidInputError):
            OptimizerConfig(n_jobs=0)


class TestGeneticOperators:
    """Tests for genetic operators."""

    def test_elite_indices_in_population_order(self):
        assert elite_indices([0.1, 0.9, 0.5, 0.9], 2) == [1, 3]

    def test_tournament_ties_go_to_lower_index(self):
        population = [{"x": 0}, {"x": 1}]
        rng = np.random.default_rng(0)
        assert tournament_select(population, [1.0, 1.0], tournament_size=50, rng=rng) == {"x": 0}
        assert tournament_select(population, [0.5, 1.0], tournament_size=50, rng=rng) == {"x": 1}

    def test_crossover_rates(self):
        rng = np.random.default_rng(0)
        a, b = {"x": 1, "y": 2}, {"x": 3, "y": 4}
        assert crossover(a, b, 0.0, rng) == (a, b)
        assert crossover(a, b, 1.0, rng) == (b, a)

    def test_mutation_stays_in_range(self):
        space = window_space()
        rng = np.random.default_rng(3)
        individual = {"short_window": 7, "long_window": 25}
        assert mutate(individual, space, 0.0, rng) == individual
        for _ in range(50):
            mutated = mutate(individual, space, 1.0, rng)
            assert 3 <= mutated["short_window"] <= 7
            assert mutated["long_window"] in (15, 25)

    def test_all_elites_keeps_population(self):
        space = window_space()
        population = [{"short_window": 3, "long_window": 15}, {"short_window": 7, "long_window": 25}]
        rng = np.random.default_rng(0)
        children = next_generation(population, [0.2, 0.1], space, 2, 3, 0.8, 0.5, rng)
        assert children == population


class TestParameterSearchEngine:
    """Tests for the search engine."""

    def test_grid_single_combination(self):
        space = ParameterSpace([ParameterRange("short_window", 5, 5, 1, "int")])
        results = make_search().search({}, space)
        assert len(results) == 1
        assert results[0].searched_parameters == {"short_window": 5}

    def test_grid_results_ranked(self):
        results = make_search().search({"momentum_period": 8}, window_space())
        assert len(results) == 6
        fitness = [r.fitness for r in results]
        assert fitness == sorted(fitness, reverse=True)
        assert all(r.parameters["momentum_period"] == 8 for r in results)
        assert results == rank_results(results)

    def test_failures_are_isolated(self):
        search = make_search(factory=fragile_factory)
        results = search.search({}, window_space())

        assert len(results) == 4
        assert len(search.failures) == 2
        failure = search.failures[0]
        assert failure.error_type == "RuntimeError"
        assert failure.parameters["short_window"] == 5
        assert failure.evaluation_index == 2
        assert all(r.searched_parameters["short_window"] != 5 for r in results)

    def test_cancellation_returns_partial_results(self):
        token = CancellationToken()

        def cancelling_factory(params):
            token.cancel()
            return MomentumStrategy(params)

        search = make_search(factory=cancelling_factory)
        results = search.search({}, window_space(), cancel_token=token)

        assert search.cancelled
        assert len(results) == 1

    def test_random_search_is_seeded(self):
        config = OptimizerConfig(method="random", n_random_samples=5, seed=11)
        first = make_search(config).search({}, window_space())
        second = make_search(config).search({}, window_space())
        assert [r.searched_parameters for r in first] == [r.searched_parameters for r in second]
        assert len(first) == 5

    def test_genetic_search_with_all_elites(self):
        config = OptimizerConfig(
            method="genetic", population_size=4, elite_size=4,
            max_generations=3, convergence_generations=10,
        )
        search = make_search(config)
        results = search.search({}, window_space())

        assert search.generations_run == 3
        history = search.population_history
        assert len(history) == 3
        assert history[1] == history[0]
        assert history[2] == history[0]
        keys = [params_key(r.searched_parameters) for r in results]
        assert len(keys) == len(set(keys))

    def test_genetic_search_converges(self):
        config = OptimizerConfig(
            method="genetic", population_size=6, elite_size=6,
            max_generations=50, convergence_generations=2,
        )
        search = make_search(config)
        search.search({}, window_space())
        assert search.generations_run == 3

    def test_bayesian_search(self):
        config = OptimizerConfig(method="bayesian", n_trials=6, seed=5)
        space = window_space()
        results = make_search(config).search({}, space)

        assert 1 <= len(results) <= 6
        for r in results:
            assert r.searched_parameters["short_window"] in space["short_window"].values()
            assert r.searched_parameters["long_window"] in space["long_window"].values()

    def test_unknown_method_rejected(self):
        with pytest.raises(InvalidInputError):
            make_search().search({}, window_space(), method="annealing")

    def test_empty_series_rejected(self):
        engine = BacktestEngine(BacktestConfig(), create_momentum_strategy)
        with pytest.raises(InvalidInputError):
            ParameterSearchEngine(engine, [])

    def test_thread_backend_matches_sequential(self):
        sequential = make_search().search({}, window_space())
        threaded = make_search(OptimizerConfig(n_jobs=2, backend="thread")).search({}, window_space())
        assert [r.searched_parameters for r in threaded] == [r.searched_parameters for r in sequential]
        assert [r.fitness for r in threaded] == [r.fitness for r in sequential]

    def test_robustness_test(self):
        search = make_search()
        report = search.robustness_test({"short_window": 5, "long_window": 20}, n_samples=4)
        assert len(report.perturbed_scores) + report.failures == 4
        assert report.to_dict()["is_robust"] == report.is_robust


class TestOverfitting:
    """Tests for overfitting heuristics."""

    def test_insufficient_results(self):
        report = detect_overfitting([])
        assert not report.is_overfitted
        assert report.indicators == ("Insufficient data",)

    def test_report_on_search_results(self):
        results = make_search().search({}, window_space())
        report = make_search().detect_overfitting(results)
        assert 0.0 <= report.confidence <= 1.0
        assert report.is_overfitted == (report.confidence > 0.6)

    def test_robustness_ratio(self):
        assert robustness_ratio(2.0, [1.0, 2.0, 3.0]) == pytest.approx(1.0)
        assert robustness_ratio(0.0, [1.0]) == 0.0
        assert robustness_ratio(1.0, []) == 0.0

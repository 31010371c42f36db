"""
Parameter search engine.

Runs grid, random, genetic or optuna-driven searches over a strategy's
parameter space by repeatedly calling the backtest engine. Evaluations fan
out through the batch executor; failed evaluations are recorded and skipped.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Union

import numpy as np
import optuna

from ...errors import InvalidInputError, SimulationFailure
from ...observability.logger import get_logger
from ..data import Bar, validate_series
from ..engine import BacktestEngine, BacktestResult
from ..executor import CancellationToken, TaskOutcome, run_batch
from .config import OptimizerConfig
from .genetic import initial_population, next_generation
from .objective import MetricsSummary, ObjectiveFunction
from .overfitting import OverfittingReport, RobustnessReport, detect_overfitting, robustness_ratio
from .parameter_space import ParameterSpace, apply_base, params_key

logger = get_logger(__name__)

ROBUSTNESS_SAMPLES = 20


@dataclass(frozen=True)
class OptimizationResult:
    """One evaluated parameter set."""
    parameters: Dict[str, float]  # full strategy config used for the run
    searched_parameters: Dict[str, float]
    fitness: float
    backtest: BacktestResult
    summary: MetricsSummary
    evaluation_index: int

    def to_dict(self, include_backtest: bool = False) -> dict:
        """Serialize result to dictionary."""
        data = {
            "parameters": dict(self.parameters),
            "searched_parameters": dict(self.searched_parameters),
            "fitness": self.fitness,
            "summary": self.summary.to_dict(),
            "evaluation_index": self.evaluation_index,
        }
        if include_backtest:
            data["backtest"] = self.backtest.to_dict()
        return data


@dataclass(frozen=True)
class _EvaluationTask:
    engine: BacktestEngine
    series: Sequence[Bar]
    parameters: Dict[str, float]
    searched: Dict[str, float]
    objective: ObjectiveFunction
    index: int


def _evaluate(task: _EvaluationTask) -> OptimizationResult:
    """Run one backtest and score it. Module level so process pools can pickle it."""
    backtest = task.engine.run(task.series, task.parameters)
    return OptimizationResult(
        parameters=dict(task.parameters),
        searched_parameters=dict(task.searched),
        fitness=task.objective.calculate_score(backtest.metrics),
        backtest=backtest,
        summary=MetricsSummary.from_metrics(backtest.metrics),
        evaluation_index=task.index,
    )


Evaluation = Union[OptimizationResult, SimulationFailure]


def rank_results(results: Sequence[OptimizationResult]) -> List[OptimizationResult]:
    """Descending fitness, ties by evaluation order."""
    return sorted(results, key=lambda r: (-r.fitness, r.evaluation_index))


class ParameterSearchEngine:
    """
    Searches a parameter space for the best-scoring strategy config.

    Keeps the failures and (for genetic search) the population history of
    its most recent search.
    """

    def __init__(
        self,
        engine: BacktestEngine,
        series: Sequence[Bar],
        config: Optional[OptimizerConfig] = None
    ):
        """
        Initialize the search engine.

        Args:
            engine: Backtest engine used for every evaluation.
            series: Price series every evaluation runs on.
            config: Optimizer configuration.

        Raises:
            InvalidInputError: If the series is empty or malformed.
        """
        validate_series(series)
        self.engine = engine
        self.series = list(series)
        self.config = config or OptimizerConfig()

        self.failures: List[SimulationFailure] = []
        self.population_history: List[List[Dict[str, float]]] = []
        self.generations_run = 0
        self.cancelled = False
        self._next_index = 0
        self._method = self.config.method
        self._best_fitness = -math.inf

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def search(
        self,
        base_config: Optional[Mapping[str, float]],
        parameter_space: ParameterSpace,
        method: Optional[str] = None,
        objective: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None
    ) -> List[OptimizationResult]:
        """
        Search the parameter space.

        Args:
            base_config: Fixed strategy parameters the searched ones overlay.
            parameter_space: Validated parameter ranges.
            method: "grid", "random", "genetic" or "bayesian" (config default).
            objective: Objective name (config default).
            cancel_token: Optional cooperative cancellation flag.

        Returns:
            Successful results ranked by descending fitness. Partial when
            cancelled (see `self.cancelled`).
        """
        method = method or self.config.method
        objective_fn = ObjectiveFunction(objective or self.config.objective)

        searches: Dict[str, Callable[..., List[OptimizationResult]]] = {
            "grid": self._grid_search,
            "random": self._random_search,
            "genetic": self._genetic_search,
            "bayesian": self._bayesian_search,
        }
        if method not in searches:
            raise InvalidInputError(
                f"Unknown search method: {method}. Valid options: {list(searches)}", "method"
            )

        self._reset()
        self._method = method
        logger.info(
            f"Starting {method} search",
            method=method,
            objective=objective_fn.objective_type,
            parameters=parameter_space.names,
        )

        results = searches[method](dict(base_config or {}), parameter_space, objective_fn, cancel_token)
        ranked = rank_results(results)

        logger.info(
            f"{method} search completed",
            method=method,
            evaluations=self._next_index,
            results=len(ranked),
            failures=len(self.failures),
            cancelled=self.cancelled,
            best_fitness=ranked[0].fitness if ranked else None,
            best_params=ranked[0].searched_parameters if ranked else None,
        )
        return ranked

    def detect_overfitting(self, results: Sequence[OptimizationResult]) -> OverfittingReport:
        return detect_overfitting(results)

    def robustness_test(
        self,
        parameters: Mapping[str, float],
        base_config: Optional[Mapping[str, float]] = None,
        perturbation: float = 0.1,
        objective: Optional[str] = None,
        n_samples: int = ROBUSTNESS_SAMPLES
    ) -> RobustnessReport:
        """
        Score seeded random perturbations of a parameter set.

        Each numeric parameter is scaled by a factor drawn uniformly from
        [1 - perturbation, 1 + perturbation].

        Returns:
            RobustnessReport; robust when perturbed runs keep over 80% of
            the original score on average.
        """
        objective_fn = ObjectiveFunction(objective or self.config.objective)
        rng = np.random.default_rng(self.config.seed)
        base = dict(base_config or {})

        original = self.engine.run(self.series, apply_base(base, dict(parameters)))
        original_score = objective_fn.calculate_score(original.metrics)

        perturbed_sets = []
        for _ in range(n_samples):
            perturbed = {
                name: value * (1 + rng.uniform(-perturbation, perturbation))
                for name, value in parameters.items()
            }
            perturbed_sets.append(perturbed)

        evaluations = self._evaluate_batch(perturbed_sets, base, objective_fn, None)
        scores = [e.fitness for e in evaluations if isinstance(e, OptimizationResult)]
        failures = len(evaluations) - len(scores)

        report = RobustnessReport(
            parameters=dict(parameters),
            original_score=original_score,
            perturbed_scores=tuple(scores),
            robustness_score=robustness_ratio(original_score, scores),
            failures=failures,
        )
        logger.info(
            f"Robustness test completed. Robustness score: {report.robustness_score:.3f}",
            robust=report.is_robust,
            failures=failures,
        )
        return report

    # ------------------------------------------------------------------
    # Search methods
    # ------------------------------------------------------------------

    def _grid_search(
        self,
        base: Dict[str, float],
        space: ParameterSpace,
        objective: ObjectiveFunction,
        cancel_token: Optional[CancellationToken]
    ) -> List[OptimizationResult]:
        logger.info(f"Grid search over {space.grid_size} combinations", combinations=space.grid_size)
        evaluations = self._evaluate_batch(list(space.grid()), base, objective, cancel_token)
        return _successes(evaluations)

    def _random_search(
        self,
        base: Dict[str, float],
        space: ParameterSpace,
        objective: ObjectiveFunction,
        cancel_token: Optional[CancellationToken]
    ) -> List[OptimizationResult]:
        rng = np.random.default_rng(self.config.seed)
        samples = [space.sample(rng) for _ in range(self.config.n_random_samples)]
        evaluations = self._evaluate_batch(samples, base, objective, cancel_token)
        return _successes(evaluations)

    def _genetic_search(
        self,
        base: Dict[str, float],
        space: ParameterSpace,
        objective: ObjectiveFunction,
        cancel_token: Optional[CancellationToken]
    ) -> List[OptimizationResult]:
        config = self.config
        rng = np.random.default_rng(config.seed)
        population = initial_population(space, config.population_size, rng)

        cache: Dict[tuple, Evaluation] = {}
        best = -math.inf
        stale = 0

        for generation in range(config.max_generations):
            self.population_history.append([dict(p) for p in population])
            self.generations_run = generation + 1

            # Memoised: identical individuals are evaluated once
            unseen: List[Dict[str, float]] = []
            for individual in population:
                key = params_key(individual)
                if key not in cache and all(params_key(u) != key for u in unseen):
                    unseen.append(individual)
            for evaluation in self._evaluate_batch(unseen, base, objective, cancel_token):
                cache[params_key(_searched(evaluation))] = evaluation

            if self.cancelled:
                break

            fitness = [cache[params_key(p)].fitness for p in population]
            generation_best = max(fitness)
            logger.debug(
                f"Generation {generation + 1}: best fitness {generation_best:.4f}",
                generation=generation + 1,
                best_fitness=generation_best,
                average_fitness=float(np.mean([f for f in fitness if math.isfinite(f)] or [0.0])),
            )

            if generation_best > best + config.convergence_threshold:
                best = generation_best
                stale = 0
            else:
                stale += 1
                if stale >= config.convergence_generations:
                    logger.info(
                        f"Genetic search converged after {generation + 1} generations",
                        generations=generation + 1,
                        best_fitness=best,
                    )
                    break

            if generation == config.max_generations - 1:
                break

            population = next_generation(
                population,
                fitness,
                space,
                elite_size=config.elite_size,
                tournament_size=config.tournament_size,
                crossover_rate=config.crossover_rate,
                mutation_rate=config.mutation_rate,
                rng=rng,
            )

        return _successes(cache.values())

    def _bayesian_search(
        self,
        base: Dict[str, float],
        space: ParameterSpace,
        objective: ObjectiveFunction,
        cancel_token: Optional[CancellationToken]
    ) -> List[OptimizationResult]:
        """TPE search with optuna; repeated suggestions reuse earlier evaluations."""
        optuna.logging.set_verbosity(optuna.logging.WARNING)
        cache: Dict[tuple, Evaluation] = {}

        def trial_objective(trial: optuna.Trial) -> float:
            if cancel_token is not None and cancel_token.cancelled:
                self.cancelled = True
                trial.study.stop()
                raise optuna.TrialPruned()

            params = space.suggest(trial)
            key = params_key(params)
            if key not in cache:
                cache[key] = self._evaluate_batch([params], base, objective, None)[0]

            evaluation = cache[key]
            if isinstance(evaluation, SimulationFailure):
                raise optuna.TrialPruned()
            trial.set_user_attr("total_return_percent", evaluation.summary.total_return_percent)
            trial.set_user_attr("total_trades", evaluation.summary.total_trades)
            return evaluation.fitness

        study = optuna.create_study(
            direction="maximize",
            sampler=optuna.samplers.TPESampler(seed=self.config.seed),
        )
        study.optimize(trial_objective, n_trials=self.config.n_trials, n_jobs=1)

        return _successes(cache.values())

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self.failures = []
        self.population_history = []
        self.generations_run = 0
        self.cancelled = False
        self._next_index = 0
        self._best_fitness = -math.inf

    def _evaluate_batch(
        self,
        param_sets: Sequence[Dict[str, float]],
        base: Dict[str, float],
        objective: ObjectiveFunction,
        cancel_token: Optional[CancellationToken]
    ) -> List[Evaluation]:
        """
        Evaluate parameter sets, returning one evaluation per completed task
        in submission order.

        Evaluation indexes continue across batches of the same search.
        """
        if not param_sets:
            return []

        start = self._next_index
        self._next_index += len(param_sets)
        tasks = [
            _EvaluationTask(
                engine=self.engine,
                series=self.series,
                parameters=apply_base(base, params),
                searched=dict(params),
                objective=objective,
                index=start + offset,
            )
            for offset, params in enumerate(param_sets)
        ]

        completed = 0
        total = len(tasks)
        interval = self.config.progress_interval

        def on_outcome(outcome: TaskOutcome) -> None:
            nonlocal completed
            completed += 1
            if outcome.ok and outcome.value.fitness > self._best_fitness:
                self._best_fitness = outcome.value.fitness
                logger.debug(
                    "New best parameters",
                    fitness=self._best_fitness,
                    params=outcome.value.searched_parameters,
                )
            if total > 1 and (completed % interval == 0 or completed == total):
                logger.search_progress(self._method, completed, total, self._best_fitness)

        batch = run_batch(
            _evaluate,
            tasks,
            n_jobs=self.config.n_jobs,
            backend=self.config.backend,
            cancel_token=cancel_token,
            on_outcome=on_outcome,
        )
        if batch.cancelled:
            self.cancelled = True

        evaluations: List[Evaluation] = []
        for outcome in batch.outcomes:
            task = tasks[outcome.index]
            if outcome.ok:
                evaluations.append(outcome.value)
                continue
            failure = SimulationFailure.from_exception(task.searched, outcome.error, task.index)
            self.failures.append(failure)
            logger.error(
                f"Backtest failed for parameters {task.searched}: {outcome.error}",
                error_type=failure.error_type,
                evaluation_index=task.index,
            )
            evaluations.append(failure)
        return evaluations


def _successes(evaluations) -> List[OptimizationResult]:
    return [e for e in evaluations if isinstance(e, OptimizationResult)]


def _searched(evaluation: Evaluation) -> Dict[str, float]:
    if isinstance(evaluation, OptimizationResult):
        return evaluation.searched_parameters
    return evaluation.parameters

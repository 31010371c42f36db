"""
Optimizer configuration dataclass.
"""

from dataclasses import dataclass, fields
from typing import Optional

from ...errors import InvalidInputError

SEARCH_METHODS = ("grid", "random", "genetic", "bayesian")
OBJECTIVES = ("composite", "return", "sharpe", "calmar", "profit_factor")


@dataclass(frozen=True)
class OptimizerConfig:
    """Configuration for parameter search."""

    # Search method and objective
    method: str = "grid"  # "grid", "random", "genetic", "bayesian"
    objective: str = "composite"

    # Random search
    n_random_samples: int = 100

    # Genetic search
    population_size: int = 50
    max_generations: int = 100
    mutation_rate: float = 0.1
    crossover_rate: float = 0.8
    elite_size: int = 5
    tournament_size: int = 3
    convergence_threshold: float = 0.001
    convergence_generations: int = 10  # generations without improvement before stopping

    # Bayesian (optuna TPE) search
    n_trials: int = 100

    # Reproducibility and parallelism
    seed: Optional[int] = 42
    n_jobs: int = 1  # Parallel jobs (1 = sequential, -1 = all cores)
    backend: str = "process"  # "process" or "thread"

    # Log progress every N evaluations
    progress_interval: int = 50

    def __post_init__(self):
        """Validate configuration."""
        if self.method not in SEARCH_METHODS:
            raise InvalidInputError(f"method must be one of {list(SEARCH_METHODS)}", "method")

        if self.objective not in OBJECTIVES:
            raise InvalidInputError(f"objective must be one of {list(OBJECTIVES)}", "objective")

        if self.n_random_samples < 1:
            raise InvalidInputError("n_random_samples must be at least 1", "n_random_samples")

        if self.population_size < 2:
            raise InvalidInputError("population_size must be at least 2", "population_size")

        if self.max_generations < 1:
            raise InvalidInputError("max_generations must be at least 1", "max_generations")

        if not 0 <= self.elite_size <= self.population_size:
            raise InvalidInputError("elite_size must be between 0 and population_size", "elite_size")

        for name in ("mutation_rate", "crossover_rate"):
            if not 0 <= getattr(self, name) <= 1:
                raise InvalidInputError(f"{name} must be between 0 and 1", name)

        if self.tournament_size < 1:
            raise InvalidInputError("tournament_size must be at least 1", "tournament_size")

        if self.convergence_threshold < 0:
            raise InvalidInputError("convergence_threshold must be non-negative", "convergence_threshold")

        if self.convergence_generations < 1:
            raise InvalidInputError("convergence_generations must be at least 1", "convergence_generations")

        if self.n_trials < 1:
            raise InvalidInputError("n_trials must be at least 1", "n_trials")

        if self.n_jobs == 0 or self.n_jobs < -1:
            raise InvalidInputError("n_jobs must be -1 or a positive integer", "n_jobs")

        if self.backend not in ("process", "thread"):
            raise InvalidInputError("backend must be 'process' or 'thread'", "backend")

    def to_dict(self) -> dict:
        """Serialize config to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "OptimizerConfig":
        """Deserialize config from dictionary."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

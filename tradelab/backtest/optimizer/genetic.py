"""
Genetic operators for parameter search.

All randomness comes from the numpy Generator passed in, so a seeded search
is reproducible.
"""

from typing import Dict, List, Sequence, Tuple

import numpy as np

from .parameter_space import ParameterSpace

# Gaussian mutation scale and clip, as fractions of a parameter's range
MUTATION_SIGMA = 0.05
MUTATION_CLIP = 0.10

Individual = Dict[str, float]


def initial_population(space: ParameterSpace, size: int, rng: np.random.Generator) -> List[Individual]:
    """Uniform random individuals snapped to the step grid."""
    return [space.snap(space.sample(rng)) for _ in range(size)]


def tournament_select(
    population: Sequence[Individual],
    fitness: Sequence[float],
    tournament_size: int,
    rng: np.random.Generator
) -> Individual:
    """
    Best of `tournament_size` individuals drawn with replacement.

    Ties go to the lower population index.
    """
    contenders = rng.integers(0, len(population), size=tournament_size)
    winner = min(contenders, key=lambda i: (-fitness[i], i))
    return population[int(winner)]


def crossover(
    parent1: Individual,
    parent2: Individual,
    crossover_rate: float,
    rng: np.random.Generator
) -> Tuple[Individual, Individual]:
    """Uniform crossover: each parameter is swapped with probability crossover_rate."""
    child1 = dict(parent1)
    child2 = dict(parent2)
    for name in parent1:
        if rng.random() < crossover_rate:
            child1[name], child2[name] = parent2[name], parent1[name]
    return child1, child2


def mutate(
    individual: Individual,
    space: ParameterSpace,
    mutation_rate: float,
    rng: np.random.Generator
) -> Individual:
    """
    Per-parameter Gaussian mutation.

    The step is N(0, 5% of range) clipped to +/-10% of range, then the value
    is clamped to bounds and snapped to the step grid.
    """
    mutated = dict(individual)
    for r in space.ranges:
        if rng.random() >= mutation_rate:
            continue
        limit = MUTATION_CLIP * r.span
        delta = float(np.clip(rng.normal(0.0, MUTATION_SIGMA * r.span), -limit, limit)) if r.span > 0 else 0.0
        mutated[r.name] = r.snap(mutated[r.name] + delta)
    return mutated


def elite_indices(fitness: Sequence[float], elite_size: int) -> List[int]:
    """Indices of the top `elite_size` individuals, in population order."""
    ranked = sorted(range(len(fitness)), key=lambda i: (-fitness[i], i))
    return sorted(ranked[:elite_size])


def next_generation(
    population: Sequence[Individual],
    fitness: Sequence[float],
    space: ParameterSpace,
    elite_size: int,
    tournament_size: int,
    crossover_rate: float,
    mutation_rate: float,
    rng: np.random.Generator
) -> List[Individual]:
    """
    Breed the next population.

    Elites carry over unchanged and in their original order, so a population
    made entirely of elites is left as is.
    """
    size = len(population)
    elites = [dict(population[i]) for i in elite_indices(fitness, elite_size)]

    children: List[Individual] = []
    while len(elites) + len(children) < size:
        parent1 = tournament_select(population, fitness, tournament_size, rng)
        parent2 = tournament_select(population, fitness, tournament_size, rng)
        child1, child2 = crossover(parent1, parent2, crossover_rate, rng)
        children.append(mutate(child1, space, mutation_rate, rng))
        children.append(mutate(child2, space, mutation_rate, rng))

    return elites + children[:size - len(elites)]

"""
Parameter space definitions for strategy search.
"""

import itertools
import math
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

import numpy as np
import optuna

from ...errors import InvalidInputError

# Tolerance when deciding whether stepping from min landed on max
_STEP_EPSILON = 1e-9


@dataclass(frozen=True)
class ParameterRange:
    """Definition of a numeric parameter range."""
    name: str
    min: float
    max: float
    step: float
    param_type: str = "float"  # "float" or "int"

    def __post_init__(self):
        """Validate range."""
        if not self.name:
            raise InvalidInputError("Parameter name must not be empty", "name")
        if self.param_type not in ("float", "int"):
            raise InvalidInputError(
                f"{self.name}: param_type must be 'float' or 'int'", self.name
            )
        if self.min > self.max:
            raise InvalidInputError(f"{self.name}: min {self.min} > max {self.max}", self.name)
        if not self.step > 0:
            raise InvalidInputError(f"{self.name}: step must be positive", self.name)

    @property
    def span(self) -> float:
        return self.max - self.min

    def values(self) -> List[float]:
        """
        Grid values from min to max by step, inclusive of both ends.

        max is appended when stepping does not land on it exactly.
        """
        count = int(math.floor(self.span / self.step + _STEP_EPSILON))
        values = [self._cast(self.min + i * self.step) for i in range(count + 1)]
        if self.max - (self.min + count * self.step) > _STEP_EPSILON * max(1.0, abs(self.max)):
            values.append(self._cast(self.max))
        # int casting can collapse neighbours
        return list(dict.fromkeys(values))

    def clamp(self, value: float) -> float:
        return min(self.max, max(self.min, value))

    def snap(self, value: float) -> float:
        """Clamp into range and round to the nearest step from min."""
        value = self.clamp(value)
        steps = round((value - self.min) / self.step)
        return self._cast(self.clamp(self.min + steps * self.step))

    def sample(self, rng: np.random.Generator) -> float:
        """Uniform draw within the range (ints rounded)."""
        if self.span == 0:
            return self._cast(self.min)
        return self._cast(rng.uniform(self.min, self.max))

    def suggest(self, trial: "optuna.Trial") -> float:
        """Sample from an optuna trial on the step grid."""
        if self.param_type == "int":
            step = max(1, int(round(self.step)))
            high = int(self.min) + ((int(self.max) - int(self.min)) // step) * step
            return trial.suggest_int(self.name, int(self.min), high, step=step)
        high = self.min + math.floor(self.span / self.step + _STEP_EPSILON) * self.step
        return trial.suggest_float(self.name, self.min, high, step=self.step)

    def _cast(self, value: float) -> float:
        if self.param_type == "int":
            return int(round(value))
        return round(float(value), 12)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "min": self.min,
            "max": self.max,
            "step": self.step,
            "param_type": self.param_type,
        }


class ParameterSpace:
    """
    Ordered set of parameter ranges.

    Validated on construction, so a bad space fails before any simulation.
    """

    def __init__(self, ranges: Sequence[ParameterRange]):
        """
        Initialize parameter space.

        Args:
            ranges: Parameter ranges; names must be unique.

        Raises:
            InvalidInputError: If empty or names repeat.
        """
        if not ranges:
            raise InvalidInputError("Parameter space is empty", "parameter_space")

        names = [r.name for r in ranges]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise InvalidInputError(f"Duplicate parameter names: {duplicates}", "parameter_space")

        self.ranges: List[ParameterRange] = list(ranges)
        self._ranges_by_name = {r.name: r for r in self.ranges}

    @classmethod
    def from_dict(cls, data: Dict[str, dict]) -> "ParameterSpace":
        """Build from {name: {min, max, step, param_type}}."""
        return cls([
            ParameterRange(
                name=name,
                min=spec["min"],
                max=spec["max"],
                step=spec["step"],
                param_type=spec.get("param_type", "float"),
            )
            for name, spec in data.items()
        ])

    def __len__(self) -> int:
        return len(self.ranges)

    def __getitem__(self, name: str) -> ParameterRange:
        return self._ranges_by_name[name]

    @property
    def names(self) -> List[str]:
        return [r.name for r in self.ranges]

    @property
    def grid_size(self) -> int:
        size = 1
        for r in self.ranges:
            size *= len(r.values())
        return size

    def grid(self) -> Iterator[Dict[str, float]]:
        """Cartesian product of every range's grid values, first range outermost."""
        for combo in itertools.product(*(r.values() for r in self.ranges)):
            yield dict(zip(self.names, combo))

    def sample(self, rng: np.random.Generator) -> Dict[str, float]:
        return {r.name: r.sample(rng) for r in self.ranges}

    def suggest(self, trial: "optuna.Trial") -> Dict[str, float]:
        return {r.name: r.suggest(trial) for r in self.ranges}

    def snap(self, params: Dict[str, float]) -> Dict[str, float]:
        return {r.name: r.snap(params[r.name]) for r in self.ranges}

    def is_at_boundary(self, name: str, value: float) -> bool:
        r = self._ranges_by_name[name]
        return r.span > 0 and (value <= r.min or value >= r.max)

    def get_param_info(self) -> Dict[str, dict]:
        """Get information about all parameters."""
        return {r.name: r.to_dict() for r in self.ranges}


def params_key(params: Dict[str, float]) -> tuple:
    """Hashable identity of a parameter set."""
    return tuple(sorted(params.items()))


def apply_base(base_config: Optional[Dict[str, float]], params: Dict[str, float]) -> Dict[str, float]:
    """Overlay searched parameters on a base strategy config."""
    merged = dict(base_config or {})
    merged.update(params)
    return merged

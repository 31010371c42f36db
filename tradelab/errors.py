"""
Error types for the backtest and search core.

Only structurally invalid input is raised. Failed evaluations inside a
batch are recorded as SimulationFailure values and the batch continues.
"""

from dataclasses import dataclass
from typing import Dict, Optional


class TradeLabError(Exception):
    """Base class for tradelab errors."""


class InvalidInputError(TradeLabError, ValueError):
    """Raised for empty/unsorted series, malformed bars and invalid configs."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


class LedgerStateError(TradeLabError):
    """Raised when a closed position is mutated."""


@dataclass(frozen=True)
class SimulationFailure:
    """A parameter combination whose backtest raised during a batch."""
    parameters: Dict[str, float]
    error_type: str
    message: str
    evaluation_index: int
    fitness: float = float("-inf")

    @classmethod
    def from_exception(
        cls,
        parameters: Dict[str, float],
        error: BaseException,
        evaluation_index: int
    ) -> "SimulationFailure":
        """Build a failure record from a caught exception."""
        return cls(
            parameters=dict(parameters),
            error_type=type(error).__name__,
            message=str(error),
            evaluation_index=evaluation_index,
        )

    def to_dict(self) -> dict:
        """Serialize failure to dictionary."""
        return {
            "parameters": dict(self.parameters),
            "error_type": self.error_type,
            "message": self.message,
            "evaluation_index": self.evaluation_index,
        }

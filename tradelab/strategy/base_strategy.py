"""
Strategy oracle interface for backtesting.

A strategy sees one read-only snapshot per bar and answers with a
Decision. Any rolling state lives inside the strategy instance; the engine
builds a fresh instance per run so identical inputs replay identically.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Callable, Mapping


class Action(Enum):
    """Strategy decision types."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class Decision:
    """Strategy output for one bar."""
    action: Action
    price: float
    amount: float = 0.0  # 0 = let the engine size the position
    reason: str = ""

    @property
    def is_actionable(self) -> bool:
        return self.action is not Action.HOLD

    @classmethod
    def hold(cls, price: float, reason: str = "") -> "Decision":
        return cls(action=Action.HOLD, price=price, amount=0.0, reason=reason)


@dataclass(frozen=True)
class MarketSnapshot:
    """Read-only market view derived from a single bar."""
    pair: str
    timestamp: datetime
    bar_index: int
    open: float
    high: float
    low: float
    close: float
    volume: float

    @property
    def last(self) -> float:
        return self.close


class BaseStrategy(ABC):
    """
    Abstract base class for backtest strategies.

    Subclasses receive their parameters at construction and must not read
    global state, so that a run is a pure function of (parameters, series).
    """

    def __init__(self, name: str, parameters: Mapping[str, float]):
        """
        Initialize strategy.

        Args:
            name: Strategy name for identification.
            parameters: Read-only parameter mapping for this run.
        """
        self.name = name
        self.parameters = MappingProxyType(dict(parameters))

    @abstractmethod
    def decide(self, snapshot: MarketSnapshot) -> Decision:
        """
        Consume one bar and return a decision.

        Args:
            snapshot: Market snapshot for the current bar.

        Returns:
            Decision for this bar.
        """

    def reset(self) -> None:
        """Reset accumulated state."""

    def param(self, name: str, default: float) -> float:
        """Read a numeric parameter with a fallback."""
        return float(self.parameters.get(name, default))

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"


StrategyFactory = Callable[[Mapping[str, float]], BaseStrategy]

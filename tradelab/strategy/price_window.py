"""
Bounded rolling window of recent prices and volumes.

Each strategy instance owns its window; nothing here is module state.
"""

from collections import deque
from typing import Deque, List, Optional

import numpy as np


class PriceWindow:
    """Fixed-capacity ring buffer of (price, volume) observations."""

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._prices: Deque[float] = deque(maxlen=capacity)
        self._volumes: Deque[float] = deque(maxlen=capacity)

    def __len__(self) -> int:
        return len(self._prices)

    @property
    def is_full(self) -> bool:
        return len(self._prices) == self.capacity

    def push(self, price: float, volume: float = 0.0) -> None:
        """Append an observation, evicting the oldest when full."""
        self._prices.append(price)
        self._volumes.append(volume)

    def prices(self, last: Optional[int] = None) -> List[float]:
        """Most recent prices, oldest first."""
        values = list(self._prices)
        return values if last is None else values[-last:]

    def volumes(self, last: Optional[int] = None) -> List[float]:
        values = list(self._volumes)
        return values if last is None else values[-last:]

    def mean(self, period: int) -> float:
        """
        Simple moving average over the last `period` prices.

        Falls back to the latest price when fewer observations exist.
        """
        if not self._prices:
            return 0.0
        if len(self._prices) < period:
            return self._prices[-1]
        return float(np.mean(self.prices(period)))

    def momentum(self, period: int) -> float:
        """Fractional change between the latest price and `period` bars back."""
        if len(self._prices) < period:
            return 0.0
        previous = self._prices[-period]
        if previous == 0:
            return 0.0
        return (self._prices[-1] - previous) / previous

    def volatility(self, period: int) -> float:
        """Coefficient of variation of the last `period` prices."""
        if len(self._prices) < period:
            return 0.0
        window = np.asarray(self.prices(period), dtype=float)
        mean = window.mean()
        if mean == 0:
            return 0.0
        return float(window.std() / mean)

    def clear(self) -> None:
        self._prices.clear()
        self._volumes.clear()

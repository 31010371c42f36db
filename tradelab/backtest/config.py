"""
Backtest configuration dataclass.
"""

from dataclasses import dataclass, fields, replace
from typing import Mapping, Optional

from ..errors import InvalidInputError

# Strategy parameters with these names also override the engine config
RISK_OVERRIDE_KEYS = ("stop_loss_percent", "take_profit_percent", "position_size_fraction")


@dataclass(frozen=True)
class BacktestConfig:
    """Configuration for backtesting."""

    # Trading pair label carried into snapshots and logs
    pair: str = "BTC/USD"

    # Capital and costs (fractions, 0.001 = 0.1%)
    initial_capital: float = 10000.0
    commission_rate: float = 0.001
    slippage_rate: float = 0.0005

    # Default exits attached to every new position (None or 0 disables)
    stop_loss_percent: Optional[float] = 0.02
    take_profit_percent: Optional[float] = 0.04

    # Position limits
    max_open_positions: int = 3
    min_trade_size: float = 0.0  # minimum notional in quote currency
    position_size_fraction: float = 0.1
    allow_short: bool = True

    def __post_init__(self):
        """Validate configuration."""
        if self.initial_capital <= 0:
            raise InvalidInputError("initial_capital must be positive", "initial_capital")

        if not 0 <= self.commission_rate < 1:
            raise InvalidInputError("commission_rate must be in [0, 1)", "commission_rate")

        if not 0 <= self.slippage_rate < 1:
            raise InvalidInputError("slippage_rate must be in [0, 1)", "slippage_rate")

        for name in ("stop_loss_percent", "take_profit_percent"):
            value = getattr(self, name)
            if value is not None and not 0 <= value < 1:
                raise InvalidInputError(f"{name} must be in [0, 1) or None", name)

        if self.max_open_positions < 1:
            raise InvalidInputError("max_open_positions must be at least 1", "max_open_positions")

        if self.min_trade_size < 0:
            raise InvalidInputError("min_trade_size must be non-negative", "min_trade_size")

        if not 0 < self.position_size_fraction <= 1:
            raise InvalidInputError(
                "position_size_fraction must be in (0, 1]", "position_size_fraction"
            )

    @property
    def stop_loss_enabled(self) -> bool:
        return bool(self.stop_loss_percent)

    @property
    def take_profit_enabled(self) -> bool:
        return bool(self.take_profit_percent)

    def with_overrides(self, parameters: Mapping[str, float]) -> "BacktestConfig":
        """
        Apply strategy parameters that name engine risk settings.

        Returns self unchanged when no override key is present.
        """
        overrides = {k: float(parameters[k]) for k in RISK_OVERRIDE_KEYS if k in parameters}
        if not overrides:
            return self
        return replace(self, **overrides)

    def to_dict(self) -> dict:
        """Serialize config to dictionary."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: dict) -> "BacktestConfig":
        """Deserialize config from dictionary."""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

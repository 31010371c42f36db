"""
Strategy oracles consumed by the backtest engine.
"""

from .base_strategy import Action, BaseStrategy, Decision, MarketSnapshot, StrategyFactory
from .momentum_strategy import MomentumStrategy, create_momentum_strategy
from .price_window import PriceWindow

__all__ = [
    "Action",
    "BaseStrategy",
    "Decision",
    "MarketSnapshot",
    "StrategyFactory",
    "MomentumStrategy",
    "create_momentum_strategy",
    "PriceWindow",
]

"""
Moving-average momentum strategy.

Entry conditions (all must be met):
- Short MA above long MA for a buy (below for a sell)
- Momentum over `momentum_period` bars beyond the buy/sell threshold
- Volatility under `max_volatility` (buys only)
- Bar volume at least `min_volume`

Sizing is left to the engine unless `trade_amount` is set.
"""

from typing import Mapping

from .base_strategy import Action, BaseStrategy, Decision, MarketSnapshot
from .price_window import PriceWindow

DEFAULT_PARAMETERS = {
    "short_window": 5,
    "long_window": 20,
    "momentum_period": 10,
    "buy_threshold": 0.02,
    "sell_threshold": 0.02,
    "max_volatility": 0.1,
    "min_volume": 0.0,
    "trade_amount": 0.0,
}


class MomentumStrategy(BaseStrategy):
    """
    Trend-following strategy on a bounded price window.

    Emits nothing until `momentum_period` observations have been seen.
    """

    def __init__(self, parameters: Mapping[str, float] = None):
        merged = dict(DEFAULT_PARAMETERS)
        merged.update(parameters or {})
        super().__init__(name="momentum", parameters=merged)

        self.short_window = max(1, int(round(self.param("short_window", 5))))
        self.long_window = max(self.short_window, int(round(self.param("long_window", 20))))
        self.momentum_period = max(2, int(round(self.param("momentum_period", 10))))
        self.buy_threshold = self.param("buy_threshold", 0.02)
        self.sell_threshold = self.param("sell_threshold", 0.02)
        self.max_volatility = self.param("max_volatility", 0.1)
        self.min_volume = self.param("min_volume", 0.0)
        self.trade_amount = self.param("trade_amount", 0.0)

        self.window = PriceWindow(max(self.long_window, self.momentum_period))

    def decide(self, snapshot: MarketSnapshot) -> Decision:
        self.window.push(snapshot.close, snapshot.volume)

        if len(self.window) < self.momentum_period:
            return Decision.hold(snapshot.close, "Insufficient price history")

        short_ma = self.window.mean(self.short_window)
        long_ma = self.window.mean(self.long_window)
        momentum = self.window.momentum(self.momentum_period)
        volatility = self.window.volatility(self.momentum_period)

        if snapshot.volume < self.min_volume:
            return Decision.hold(snapshot.close, "Volume below minimum")

        if short_ma > long_ma and momentum > self.buy_threshold and volatility < self.max_volatility:
            return Decision(
                action=Action.BUY,
                price=snapshot.close,
                amount=self.trade_amount,
                reason=f"Bullish: short MA {short_ma:.4f} > long MA {long_ma:.4f}, momentum {momentum:.4f}",
            )

        if short_ma < long_ma and momentum < -self.sell_threshold:
            return Decision(
                action=Action.SELL,
                price=snapshot.close,
                amount=self.trade_amount,
                reason=f"Bearish: short MA {short_ma:.4f} < long MA {long_ma:.4f}, momentum {momentum:.4f}",
            )

        return Decision.hold(snapshot.close, "No clear trend detected")

    def reset(self) -> None:
        self.window.clear()


def create_momentum_strategy(parameters: Mapping[str, float]) -> MomentumStrategy:
    """Picklable factory for worker pools."""
    return MomentumStrategy(parameters)

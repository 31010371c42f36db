"""
Position ledger: cash, open positions and closed trades for one run.
"""

from collections import Counter
from datetime import datetime
from typing import Dict, List, Optional

from ..observability.logger import get_logger
from .position import ExitReason, Position, PositionSide, Trade

logger = get_logger(__name__)


class PositionLedger:
    """
    Cash and position bookkeeping.

    Opening debits cash by the collateral plus commission. Closing credits
    the position's market value at the fill minus commission. Open lots on
    a side are closed oldest first.
    """

    def __init__(self, pair: str, initial_capital: float):
        self.pair = pair
        self.initial_capital = initial_capital
        self.cash = initial_capital
        self.open_positions: List[Position] = []
        self.trades: List[Trade] = []
        self.rejections: Counter = Counter()
        self._next_id = 1

    @property
    def open_count(self) -> int:
        return len(self.open_positions)

    @property
    def rejected_orders(self) -> int:
        return sum(self.rejections.values())

    def oldest_open(self, side: PositionSide) -> Optional[Position]:
        """Oldest open position on `side`, or None."""
        for position in self.open_positions:
            if position.side is side:
                return position
        return None

    def open_position(
        self,
        side: PositionSide,
        amount: float,
        price: float,
        commission: float,
        slippage: float,
        timestamp: datetime,
        bar_index: int,
        stop_loss: Optional[float] = None,
        take_profit: Optional[float] = None
    ) -> Position:
        """Record a new open position and debit cash."""
        position = Position(
            id=self._next_id,
            pair=self.pair,
            side=side,
            amount=amount,
            entry_price=price,
            entry_time=timestamp,
            entry_bar=bar_index,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_commission=commission,
            entry_slippage=slippage,
        )
        self._next_id += 1
        self.cash -= amount * price + commission
        self.open_positions.append(position)

        logger.trade(
            "open", self.pair, side.value, price, amount,
            position_id=position.id, bar=bar_index, cash=self.cash
        )
        return position

    def close_position(
        self,
        position: Position,
        price: float,
        commission: float,
        slippage: float,
        timestamp: datetime,
        bar_index: int,
        reason: ExitReason
    ) -> Trade:
        """Close an open position, credit cash and append the trade."""
        trade = position.close(
            exit_price=price,
            exit_time=timestamp,
            exit_bar=bar_index,
            exit_commission=commission,
            exit_slippage=slippage,
            reason=reason,
        )
        self.cash += position.market_value(price) - commission
        self.open_positions.remove(position)
        self.trades.append(trade)

        logger.trade(
            "close", self.pair, position.side.value, price, position.amount,
            position_id=position.id, bar=bar_index, reason=reason.value,
            profit=trade.profit, cash=self.cash
        )
        return trade

    def record_rejection(self, reason: str, side: PositionSide, **kwargs) -> None:
        """Count a silently rejected order."""
        self.rejections[reason] += 1
        logger.rejection(self.pair, side.value, reason, **kwargs)

    def equity(self, price: float) -> float:
        """Cash plus mark-to-market of all open positions."""
        return self.cash + sum(p.market_value(price) for p in self.open_positions)

    def rejection_summary(self) -> Dict[str, int]:
        return dict(self.rejections)

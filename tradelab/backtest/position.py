"""
Simulated position and closed-trade records for backtesting.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional, Tuple

from ..errors import LedgerStateError
from .data import Bar


class PositionSide(Enum):
    LONG = "long"
    SHORT = "short"


class PositionStatus(Enum):
    OPEN = "open"
    CLOSED = "closed"


class ExitReason(Enum):
    """Why a position was closed."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    SIGNAL = "signal"
    END_OF_TEST = "end_of_test"


@dataclass(frozen=True)
class Trade:
    """Immutable record of a closed position."""
    id: int
    pair: str
    side: PositionSide
    amount: float
    entry_price: float
    exit_price: float
    entry_time: datetime
    exit_time: datetime
    entry_bar: int
    exit_bar: int
    commission: float  # entry + exit
    slippage: float  # quote-currency cost of slippage on both legs
    profit: float
    profit_percent: float
    exit_reason: ExitReason

    @property
    def is_winning(self) -> bool:
        return self.profit > 0

    @property
    def is_losing(self) -> bool:
        return self.profit < 0

    @property
    def holding_bars(self) -> int:
        return self.exit_bar - self.entry_bar

    @property
    def holding_period(self) -> timedelta:
        return self.exit_time - self.entry_time

    def to_dict(self) -> dict:
        """Serialize trade to dictionary."""
        return {
            "id": self.id,
            "pair": self.pair,
            "side": self.side.value,
            "amount": self.amount,
            "entry_price": self.entry_price,
            "exit_price": self.exit_price,
            "entry_time": self.entry_time.isoformat(),
            "exit_time": self.exit_time.isoformat(),
            "entry_bar": self.entry_bar,
            "exit_bar": self.exit_bar,
            "commission": self.commission,
            "slippage": self.slippage,
            "profit": self.profit,
            "profit_percent": self.profit_percent,
            "exit_reason": self.exit_reason.value,
            "is_winning": self.is_winning,
            "holding_bars": self.holding_bars,
        }


@dataclass
class Position:
    """
    Simulated open position.

    Only the engine mutates a position, and only while it is open. Closing
    produces a Trade; any later mutation raises LedgerStateError.
    """
    id: int
    pair: str
    side: PositionSide
    amount: float
    entry_price: float
    entry_time: datetime
    entry_bar: int
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    entry_commission: float = 0.0
    entry_slippage: float = 0.0
    status: PositionStatus = PositionStatus.OPEN
    exit_price: Optional[float] = None
    exit_time: Optional[datetime] = None
    realized_pnl: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN

    @property
    def is_long(self) -> bool:
        return self.side is PositionSide.LONG

    @property
    def collateral(self) -> float:
        """Cash locked at entry, excluding commission."""
        return self.amount * self.entry_price

    def gross_pnl(self, price: float) -> float:
        """Price P&L before commissions at the given price."""
        if self.is_long:
            return (price - self.entry_price) * self.amount
        return (self.entry_price - price) * self.amount

    def market_value(self, price: float) -> float:
        """
        Mark-to-market value at `price`.

        Longs are worth amount * price. Shorts return their collateral plus
        unrealized P&L, i.e. amount * (2 * entry - price).
        """
        return self.collateral + self.gross_pnl(price)

    def check_exit(self, bar: Bar) -> Optional[Tuple[ExitReason, float]]:
        """
        Check intrabar stop-loss and take-profit against the bar range.

        Stop-loss wins when both levels are inside the bar. The returned
        price is the trigger level, or the bar open when the bar gapped
        through it.

        Returns:
            (reason, trigger_price) or None.
        """
        if not self.is_open:
            return None

        if self.is_long:
            if self.stop_loss is not None and bar.low <= self.stop_loss:
                return ExitReason.STOP_LOSS, min(self.stop_loss, bar.open)
            if self.take_profit is not None and bar.high >= self.take_profit:
                return ExitReason.TAKE_PROFIT, max(self.take_profit, bar.open)
        else:
            if self.stop_loss is not None and bar.high >= self.stop_loss:
                return ExitReason.STOP_LOSS, max(self.stop_loss, bar.open)
            if self.take_profit is not None and bar.low <= self.take_profit:
                return ExitReason.TAKE_PROFIT, min(self.take_profit, bar.open)
        return None

    def close(
        self,
        exit_price: float,
        exit_time: datetime,
        exit_bar: int,
        exit_commission: float,
        exit_slippage: float,
        reason: ExitReason
    ) -> Trade:
        """
        Close the position and build its trade record.

        Args:
            exit_price: Fill price after slippage.
            exit_time: Bar timestamp of the exit.
            exit_bar: Bar index of the exit.
            exit_commission: Commission charged on the exit leg.
            exit_slippage: Slippage cost on the exit leg.
            reason: Exit reason.

        Returns:
            Trade record.

        Raises:
            LedgerStateError: If the position is already closed.
        """
        if not self.is_open:
            raise LedgerStateError(f"Position {self.id} is already closed")

        commission = self.entry_commission + exit_commission
        profit = self.gross_pnl(exit_price) - commission
        notional = self.collateral

        self.exit_price = exit_price
        self.exit_time = exit_time
        self.realized_pnl = profit
        self.status = PositionStatus.CLOSED

        return Trade(
            id=self.id,
            pair=self.pair,
            side=self.side,
            amount=self.amount,
            entry_price=self.entry_price,
            exit_price=exit_price,
            entry_time=self.entry_time,
            exit_time=exit_time,
            entry_bar=self.entry_bar,
            exit_bar=exit_bar,
            commission=commission,
            slippage=self.entry_slippage + exit_slippage,
            profit=profit,
            profit_percent=(profit / notional * 100) if notional > 0 else 0.0,
            exit_reason=reason,
        )

    def __setattr__(self, name, value):
        # Closed positions are frozen; dataclass __init__ runs before status exists
        if getattr(self, "status", None) is PositionStatus.CLOSED:
            raise LedgerStateError(f"Position {self.id} is closed and cannot be modified")
        super().__setattr__(name, value)

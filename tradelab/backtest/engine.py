"""
Backtest engine for simulating trading strategies on historical data.
"""

from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from ..observability.logger import get_logger
from ..strategy.base_strategy import Action, BaseStrategy, Decision, MarketSnapshot, StrategyFactory
from .config import BacktestConfig
from .data import Bar, validate_series
from .ledger import PositionLedger
from .metrics import (
    DrawdownPeriod,
    DrawdownPoint,
    EquityPoint,
    MonthlyReturn,
    PerformanceMetrics,
    calculate_metrics,
    drawdown_curve,
    drawdown_periods,
    monthly_returns,
    per_step_returns,
)
from .position import ExitReason, Position, PositionSide, Trade

logger = get_logger(__name__)


@dataclass(frozen=True)
class BacktestResult:
    """Results from a backtest run."""
    config: BacktestConfig
    parameters: Mapping[str, float]
    trades: Tuple[Trade, ...]
    equity_curve: Tuple[EquityPoint, ...]
    drawdown_curve: Tuple[DrawdownPoint, ...]
    drawdown_periods: Tuple[DrawdownPeriod, ...]
    monthly_returns: Tuple[MonthlyReturn, ...]
    metrics: PerformanceMetrics
    initial_balance: float
    final_balance: float
    start_time: datetime
    end_time: datetime
    bars_processed: int
    rejected_orders: int = 0
    rejection_reasons: Mapping[str, int] = field(default_factory=dict)

    @property
    def total_return(self) -> float:
        return self.metrics.total_return

    @property
    def total_return_percent(self) -> float:
        return self.metrics.total_return_percent

    @property
    def returns(self) -> np.ndarray:
        """Per-bar simple returns of the equity curve."""
        return per_step_returns([p.equity for p in self.equity_curve])

    def to_dict(self) -> dict:
        """Serialize result to dictionary."""
        return {
            "config": self.config.to_dict(),
            "parameters": dict(self.parameters),
            "trades": [t.to_dict() for t in self.trades],
            "equity_curve": [p.to_dict() for p in self.equity_curve],
            "drawdown_curve": [p.to_dict() for p in self.drawdown_curve],
            "drawdown_periods": [p.to_dict() for p in self.drawdown_periods],
            "monthly_returns": [m.to_dict() for m in self.monthly_returns],
            "metrics": self.metrics.to_dict(),
            "initial_balance": self.initial_balance,
            "final_balance": self.final_balance,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "bars_processed": self.bars_processed,
            "rejected_orders": self.rejected_orders,
            "rejection_reasons": dict(self.rejection_reasons),
        }


class BacktestEngine:
    """
    Core backtest simulation engine.

    Replays bars one by one through a strategy built fresh for every run.
    The engine itself holds no per-run state, so one instance can serve
    concurrent runs from a thread pool.
    """

    def __init__(self, config: BacktestConfig, strategy_factory: StrategyFactory):
        """
        Initialize the backtest engine.

        Args:
            config: Backtest configuration.
            strategy_factory: Builds a strategy from a parameter mapping.
        """
        self.config = config
        self.strategy_factory = strategy_factory

    def run(self, series: Sequence[Bar], parameters: Optional[Mapping[str, float]] = None) -> BacktestResult:
        """
        Run the backtest on a price series.

        Args:
            series: Bars sorted by timestamp.
            parameters: Strategy parameters for this run.

        Returns:
            BacktestResult with trades, curves and metrics.

        Raises:
            InvalidInputError: If the series is empty, unsorted or malformed.
        """
        validate_series(series)

        params = MappingProxyType(dict(parameters or {}))
        config = self.config.with_overrides(params)
        strategy = self.strategy_factory(params)

        simulation = _Simulation(config, strategy)
        for index, bar in enumerate(series):
            simulation.process_bar(index, bar, is_last=index == len(series) - 1)

        result = simulation.build_result(series, params)
        logger.debug(
            f"Backtest complete: {result.metrics.total_trades} trades, "
            f"return {result.total_return_percent:.2f}%",
            pair=config.pair,
            bars=len(series),
            trades=result.metrics.total_trades,
            rejected_orders=result.rejected_orders,
        )
        return result


class _Simulation:
    """Mutable state of a single run."""

    def __init__(self, config: BacktestConfig, strategy: BaseStrategy):
        self.config = config
        self.strategy = strategy
        self.ledger = PositionLedger(config.pair, config.initial_capital)
        self.equity_curve: List[EquityPoint] = []
        self.peak_equity = config.initial_capital

    def process_bar(self, index: int, bar: Bar, is_last: bool) -> None:
        snapshot = MarketSnapshot(
            pair=self.config.pair,
            timestamp=bar.timestamp,
            bar_index=index,
            open=bar.open,
            high=bar.high,
            low=bar.low,
            close=bar.close,
            volume=bar.volume,
        )
        decision = self.strategy.decide(snapshot)
        if decision.is_actionable:
            self._handle_decision(decision, bar, index)

        self._check_exits(bar, index)

        if is_last:
            self._close_all(bar, index)

        self._record_equity(bar)

    # ------------------------------------------------------------------
    # Signal handling
    # ------------------------------------------------------------------

    def _handle_decision(self, decision: Decision, bar: Bar, index: int) -> None:
        price = decision.price if decision.price > 0 else bar.close

        if decision.action is Action.BUY:
            short = self.ledger.oldest_open(PositionSide.SHORT)
            if short is not None:
                self._close_with_slippage(short, price, bar, index, ExitReason.SIGNAL)
            else:
                self._try_open(PositionSide.LONG, price, decision.amount, bar, index)

        elif decision.action is Action.SELL:
            long = self.ledger.oldest_open(PositionSide.LONG)
            if long is not None:
                self._close_with_slippage(long, price, bar, index, ExitReason.SIGNAL)
            elif self.config.allow_short:
                self._try_open(PositionSide.SHORT, price, decision.amount, bar, index)

    def _try_open(
        self,
        side: PositionSide,
        price: float,
        requested_amount: float,
        bar: Bar,
        index: int
    ) -> Optional[Position]:
        config = self.config
        ledger = self.ledger

        # Buyers pay up, sellers receive down
        if side is PositionSide.LONG:
            execution_price = price * (1 + config.slippage_rate)
        else:
            execution_price = price * (1 - config.slippage_rate)

        if ledger.open_count >= config.max_open_positions:
            ledger.record_rejection("max_open_positions", side, bar=index, open=ledger.open_count)
            return None

        if requested_amount > 0:
            amount = requested_amount
        else:
            amount = ledger.cash * config.position_size_fraction / execution_price

        notional = amount * execution_price
        if notional <= 0 or notional < config.min_trade_size:
            ledger.record_rejection("below_min_trade_size", side, bar=index, notional=notional)
            return None

        commission = notional * config.commission_rate
        if notional + commission > ledger.cash:
            ledger.record_rejection(
                "insufficient_funds", side, bar=index, required=notional + commission, cash=ledger.cash
            )
            return None

        stop_loss = take_profit = None
        if side is PositionSide.LONG:
            if config.stop_loss_enabled:
                stop_loss = execution_price * (1 - config.stop_loss_percent)
            if config.take_profit_enabled:
                take_profit = execution_price * (1 + config.take_profit_percent)
        else:
            if config.stop_loss_enabled:
                stop_loss = execution_price * (1 + config.stop_loss_percent)
            if config.take_profit_enabled:
                take_profit = execution_price * (1 - config.take_profit_percent)

        return ledger.open_position(
            side=side,
            amount=amount,
            price=execution_price,
            commission=commission,
            slippage=amount * abs(execution_price - price),
            timestamp=bar.timestamp,
            bar_index=index,
            stop_loss=stop_loss,
            take_profit=take_profit,
        )

    # ------------------------------------------------------------------
    # Exits
    # ------------------------------------------------------------------

    def _close_with_slippage(
        self,
        position: Position,
        price: float,
        bar: Bar,
        index: int,
        reason: ExitReason
    ) -> Trade:
        # Closing a long sells, closing a short buys
        if position.is_long:
            fill = price * (1 - self.config.slippage_rate)
        else:
            fill = price * (1 + self.config.slippage_rate)
        return self._close(position, fill, abs(fill - price) * position.amount, bar, index, reason)

    def _close(
        self,
        position: Position,
        fill: float,
        slippage: float,
        bar: Bar,
        index: int,
        reason: ExitReason
    ) -> Trade:
        return self.ledger.close_position(
            position,
            price=fill,
            commission=position.amount * fill * self.config.commission_rate,
            slippage=slippage,
            timestamp=bar.timestamp,
            bar_index=index,
            reason=reason,
        )

    def _check_exits(self, bar: Bar, index: int) -> None:
        """Intrabar stop-loss / take-profit for positions opened before this bar."""
        for position in list(self.ledger.open_positions):
            if position.entry_bar >= index:
                continue
            triggered = position.check_exit(bar)
            if triggered is None:
                continue
            reason, trigger_price = triggered
            self._close_with_slippage(position, trigger_price, bar, index, reason)

    def _close_all(self, bar: Bar, index: int) -> None:
        """Force-close at the final close, without slippage."""
        for position in list(self.ledger.open_positions):
            self._close(position, bar.close, 0.0, bar, index, ExitReason.END_OF_TEST)

    # ------------------------------------------------------------------
    # Equity
    # ------------------------------------------------------------------

    def _record_equity(self, bar: Bar) -> None:
        equity = self.ledger.equity(bar.close)
        if equity > self.peak_equity:
            self.peak_equity = equity

        drawdown = self.peak_equity - equity
        drawdown_percent = drawdown / self.peak_equity * 100 if self.peak_equity > 0 else 0.0

        self.equity_curve.append(EquityPoint(
            timestamp=bar.timestamp,
            equity=equity,
            drawdown=drawdown,
            drawdown_percent=drawdown_percent,
        ))

    def build_result(self, series: Sequence[Bar], parameters: Mapping[str, float]) -> BacktestResult:
        initial = self.config.initial_capital
        trades = tuple(self.ledger.trades)
        metrics = calculate_metrics(self.equity_curve, trades, initial)
        reasons: Dict[str, int] = self.ledger.rejection_summary()

        return BacktestResult(
            config=self.config,
            parameters=dict(parameters),
            trades=trades,
            equity_curve=tuple(self.equity_curve),
            drawdown_curve=tuple(drawdown_curve(self.equity_curve)),
            drawdown_periods=tuple(drawdown_periods(self.equity_curve, initial)),
            monthly_returns=tuple(monthly_returns(self.equity_curve, initial)),
            metrics=metrics,
            initial_balance=initial,
            final_balance=self.equity_curve[-1].equity,
            start_time=series[0].timestamp,
            end_time=series[-1].timestamp,
            bars_processed=len(series),
            rejected_orders=self.ledger.rejected_orders,
            rejection_reasons=reasons,
        )

"""
Unit tests for the backtest engine, position ledger and positions.
"""

import pytest
from datetime import datetime, timedelta, timezone

from tradelab.backtest.config import BacktestConfig
from tradelab.backtest.data import Bar
from tradelab.backtest.engine import BacktestEngine
from tradelab.backtest.ledger import PositionLedger
from tradelab.backtest.position import ExitReason, Position, PositionSide
from tradelab.errors import InvalidInputError, LedgerStateError
from tradelab.strategy.base_strategy import Action, BaseStrategy, Decision


START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_bar(i: int, close: float, open_=None, high=None, low=None) -> Bar:
    open_ = close if open_ is None else open_
    return Bar(
        timestamp=START + timedelta(hours=i),
        open=open_,
        high=max(open_, close) if high is None else high,
        low=min(open_, close) if low is None else low,
        close=close,
        volume=1.0,
    )


def flat_series(n: int, price: float = 100.0):
    return [make_bar(i, price) for i in range(n)]


def rising_series(n: int, start: float = 100.0, step: float = 1.0):
    return [make_bar(i, start + i * step) for i in range(n)]


class ScriptedStrategy(BaseStrategy):
    """Emits the scripted action on the given bar indexes, HOLD otherwise."""

    def __init__(self, script, amount: float = 0.0):
        super().__init__(name="scripted", parameters={})
        self.script = script
        self.amount = amount

    def decide(self, snapshot):
        action = self.script.get(snapshot.bar_index)
        if action is None:
            return Decision.hold(snapshot.close)
        return Decision(action=action, price=snapshot.close, amount=self.amount)


def scripted(script, amount: float = 0.0):
    return lambda params: ScriptedStrategy(script, amount)


def frictionless(**overrides) -> BacktestConfig:
    values = dict(
        commission_rate=0.0,
        slippage_rate=0.0,
        stop_loss_percent=None,
        take_profit_percent=None,
    )
    values.update(overrides)
    return BacktestConfig(**values)


class TestBacktestConfig:
    """Tests for config validation."""

    def test_defaults_valid(self):
        config = BacktestConfig()
        assert config.stop_loss_enabled
        assert config.take_profit_enabled

    def test_zero_disables_exits(self):
        config = BacktestConfig(stop_loss_percent=0.0, take_profit_percent=None)
        assert not config.stop_loss_enabled
        assert not config.take_profit_enabled

    @pytest.mark.parametrize("field_name,value", [
        ("initial_capital", 0.0),
        ("commission_rate", -0.1),
        ("slippage_rate", 1.5),
        ("stop_loss_percent", 1.0),
        ("max_open_positions", 0),
        ("min_trade_size", -1.0),
        ("position_size_fraction", 0.0),
    ])
    def test_invalid_values_rejected(self, field_name, value):
        with pytest.raises(InvalidInputError) as excinfo:
            BacktestConfig(**{field_name: value})
        assert excinfo.value.field_name == field_name

    def test_with_overrides_applies_risk_keys_only(self):
        config = BacktestConfig()
        updated = config.with_overrides({"stop_loss_percent": 0.05, "short_window": 7})
        assert updated.stop_loss_percent == 0.05
        assert updated.take_profit_percent == config.take_profit_percent
        assert config.with_overrides({"short_window": 7}) is config

    def test_from_dict_ignores_unknown_keys(self):
        config = BacktestConfig.from_dict({"initial_capital": 500.0, "unknown": 1})
        assert config.initial_capital == 500.0


class TestPosition:
    """Tests for the position state machine."""

    def _position(self, side=PositionSide.LONG, stop=None, take=None) -> Position:
        return Position(
            id=1, pair="BTC/USD", side=side, amount=2.0, entry_price=100.0,
            entry_time=START, entry_bar=0, stop_loss=stop, take_profit=take,
            entry_commission=1.0,
        )

    def test_long_profit_includes_both_commissions(self):
        position = self._position()
        trade = position.close(110.0, START, 3, 1.5, 0.0, ExitReason.SIGNAL)
        assert trade.profit == pytest.approx((110.0 - 100.0) * 2.0 - 2.5)
        assert trade.is_winning
        assert trade.holding_bars == 3

    def test_short_profit_sign_flipped(self):
        position = self._position(side=PositionSide.SHORT)
        trade = position.close(110.0, START, 1, 0.0, 0.0, ExitReason.SIGNAL)
        assert trade.profit == pytest.approx((100.0 - 110.0) * 2.0 - 1.0)
        assert trade.is_losing
        assert not trade.is_winning

    def test_short_market_value(self):
        position = self._position(side=PositionSide.SHORT)
        assert position.market_value(90.0) == pytest.approx(2.0 * (2 * 100.0 - 90.0))

    def test_closed_position_is_immutable(self):
        position = self._position()
        position.close(100.0, START, 1, 0.0, 0.0, ExitReason.SIGNAL)
        with pytest.raises(LedgerStateError):
            position.amount = 5.0
        with pytest.raises(LedgerStateError):
            position.close(100.0, START, 2, 0.0, 0.0, ExitReason.SIGNAL)

    def test_stop_loss_takes_priority(self):
        position = self._position(stop=98.0, take=104.0)
        bar = make_bar(1, 100.0, open_=100.0, high=105.0, low=97.0)
        assert position.check_exit(bar) == (ExitReason.STOP_LOSS, 98.0)

    def test_gap_through_stop_fills_at_open(self):
        position = self._position(stop=98.0)
        bar = make_bar(1, 94.5, open_=95.0, high=95.0, low=94.0)
        assert position.check_exit(bar) == (ExitReason.STOP_LOSS, 95.0)

    def test_short_take_profit(self):
        position = self._position(side=PositionSide.SHORT, stop=102.0, take=96.0)
        bar = make_bar(1, 96.5, open_=99.0, high=99.5, low=95.0)
        assert position.check_exit(bar) == (ExitReason.TAKE_PROFIT, 96.0)


class TestPositionLedger:
    """Tests for ledger cash accounting."""

    def test_open_and_close_round_trip(self):
        ledger = PositionLedger("BTC/USD", 1000.0)
        position = ledger.open_position(
            PositionSide.LONG, amount=2.0, price=100.0, commission=1.0,
            slippage=0.0, timestamp=START, bar_index=0,
        )
        assert ledger.cash == pytest.approx(1000.0 - 200.0 - 1.0)
        assert ledger.equity(110.0) == pytest.approx(799.0 + 220.0)

        trade = ledger.close_position(
            position, price=110.0, commission=1.0, slippage=0.0,
            timestamp=START, bar_index=1, reason=ExitReason.SIGNAL,
        )
        assert ledger.open_count == 0
        assert ledger.cash == pytest.approx(1000.0 + trade.profit)

    def test_oldest_open_is_fifo(self):
        ledger = PositionLedger("BTC/USD", 1000.0)
        first = ledger.open_position(PositionSide.LONG, 1.0, 100.0, 0.0, 0.0, START, 0)
        ledger.open_position(PositionSide.LONG, 1.0, 101.0, 0.0, 0.0, START, 1)
        assert ledger.oldest_open(PositionSide.LONG) is first
        assert ledger.oldest_open(PositionSide.SHORT) is None

    def test_rejections_counted_by_reason(self):
        ledger = PositionLedger("BTC/USD", 1000.0)
        ledger.record_rejection("insufficient_funds", PositionSide.LONG)
        ledger.record_rejection("insufficient_funds", PositionSide.LONG)
        assert ledger.rejected_orders == 2
        assert ledger.rejection_summary() == {"insufficient_funds": 2}


class TestBacktestEngine:
    """Scenario tests for the engine."""

    def test_no_signals_no_trades(self):
        engine = BacktestEngine(BacktestConfig(), scripted({}))
        result = engine.run(flat_series(100))

        assert result.trades == ()
        assert result.total_return == 0
        assert result.metrics.max_drawdown == 0
        assert result.metrics.sharpe_ratio == 0
        assert result.bars_processed == 100

    def test_equity_curve_matches_series(self):
        series = rising_series(30)
        engine = BacktestEngine(BacktestConfig(), scripted({1: Action.BUY, 10: Action.SELL}))
        result = engine.run(series)

        assert len(result.equity_curve) == len(series)
        assert len(result.drawdown_curve) == len(series)
        peak = result.initial_balance
        for point in result.equity_curve:
            assert point.drawdown >= 0
            if point.equity >= peak:
                peak = point.equity
                assert point.drawdown == 0

    def test_buy_and_hold_closes_at_end_of_test(self):
        series = rising_series(50)
        engine = BacktestEngine(frictionless(commission_rate=0.001), scripted({1: Action.BUY}))
        result = engine.run(series)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason is ExitReason.END_OF_TEST
        assert trade.exit_price == series[-1].close
        assert trade.entry_bar == 1
        assert trade.exit_bar == len(series) - 1
        assert trade.is_winning
        expected = (trade.exit_price - trade.entry_price) * trade.amount - trade.commission
        assert trade.profit == pytest.approx(expected)
        assert result.final_balance == pytest.approx(result.initial_balance + trade.profit)

    def test_short_round_trip(self):
        series = [make_bar(0, 100.0), make_bar(1, 95.0), make_bar(2, 90.0), make_bar(3, 90.0)]
        engine = BacktestEngine(frictionless(), scripted({0: Action.SELL, 2: Action.BUY}))
        result = engine.run(series)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.side is PositionSide.SHORT
        assert trade.amount == pytest.approx(10.0)
        assert trade.profit == pytest.approx(100.0)
        assert trade.exit_reason is ExitReason.SIGNAL
        assert result.final_balance == pytest.approx(10100.0)

    def test_shorting_disabled(self):
        engine = BacktestEngine(frictionless(allow_short=False), scripted({0: Action.SELL}))
        result = engine.run(flat_series(5))
        assert result.trades == ()
        assert result.rejected_orders == 0

    def test_slippage_moves_fills_against_trader(self):
        config = frictionless(slippage_rate=0.01)
        engine = BacktestEngine(config, scripted({0: Action.BUY, 2: Action.SELL}))
        result = engine.run(flat_series(4))

        trade = result.trades[0]
        assert trade.entry_price == pytest.approx(101.0)
        assert trade.exit_price == pytest.approx(99.0)
        assert trade.profit < 0
        assert trade.slippage > 0

    def test_stop_loss_exit(self):
        series = [
            make_bar(0, 100.0),
            make_bar(1, 99.0, open_=100.0, high=100.0, low=97.0),
            make_bar(2, 99.0),
        ]
        engine = BacktestEngine(frictionless(stop_loss_percent=0.02), scripted({0: Action.BUY}))
        result = engine.run(series)

        trade = result.trades[0]
        assert trade.exit_reason is ExitReason.STOP_LOSS
        assert trade.exit_price == pytest.approx(98.0)
        assert trade.exit_bar == 1

    def test_take_profit_exit_on_bar_high(self):
        series = [
            make_bar(0, 100.0),
            make_bar(1, 103.0, open_=101.0, high=105.0, low=100.5),
            make_bar(2, 103.0),
        ]
        engine = BacktestEngine(frictionless(take_profit_percent=0.04), scripted({0: Action.BUY}))
        result = engine.run(series)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason is ExitReason.TAKE_PROFIT
        assert trade.exit_price == pytest.approx(104.0)
        assert trade.exit_bar == 1
        assert trade.profit > 0

    def test_take_profit_gap_fills_at_open(self):
        series = [
            make_bar(0, 100.0),
            make_bar(1, 108.0, open_=107.0, high=109.0, low=106.0),
        ]
        engine = BacktestEngine(frictionless(take_profit_percent=0.04), scripted({0: Action.BUY}))
        trade = engine.run(series).trades[0]

        assert trade.exit_reason is ExitReason.TAKE_PROFIT
        assert trade.exit_price == pytest.approx(107.0)

    def test_stop_loss_wins_when_bar_spans_both_levels(self):
        series = [
            make_bar(0, 100.0),
            make_bar(1, 101.0, open_=100.0, high=106.0, low=97.0),
            make_bar(2, 101.0),
        ]
        engine = BacktestEngine(
            frictionless(stop_loss_percent=0.02, take_profit_percent=0.04),
            scripted({0: Action.BUY}),
        )
        result = engine.run(series)

        assert len(result.trades) == 1
        trade = result.trades[0]
        assert trade.exit_reason is ExitReason.STOP_LOSS
        assert trade.exit_price == pytest.approx(98.0)
        assert trade.exit_bar == 1

    def test_exit_not_checked_on_entry_bar(self):
        series = [
            make_bar(0, 100.0, open_=100.0, high=100.0, low=90.0),
            make_bar(1, 100.0),
        ]
        engine = BacktestEngine(frictionless(stop_loss_percent=0.02), scripted({0: Action.BUY}))
        result = engine.run(series)

        assert result.trades[0].exit_reason is ExitReason.END_OF_TEST

    def test_max_open_positions_rejection(self):
        engine = BacktestEngine(
            frictionless(max_open_positions=1), scripted({0: Action.BUY, 1: Action.BUY})
        )
        result = engine.run(flat_series(3))

        assert len(result.trades) == 1
        assert result.rejected_orders == 1
        assert result.rejection_reasons == {"max_open_positions": 1}

    def test_min_trade_size_rejection(self):
        engine = BacktestEngine(frictionless(min_trade_size=2000.0), scripted({0: Action.BUY}))
        result = engine.run(flat_series(3))
        assert result.trades == ()
        assert result.rejection_reasons == {"below_min_trade_size": 1}

    def test_insufficient_funds_rejection(self):
        engine = BacktestEngine(frictionless(), scripted({0: Action.BUY}, amount=1000.0))
        result = engine.run(flat_series(3))
        assert result.trades == ()
        assert result.rejection_reasons == {"insufficient_funds": 1}

    def test_risk_parameters_override_config(self):
        series = [
            make_bar(0, 100.0),
            make_bar(1, 99.0, open_=100.0, high=100.0, low=97.0),
            make_bar(2, 99.0),
        ]
        engine = BacktestEngine(frictionless(stop_loss_percent=0.02), scripted({0: Action.BUY}))
        result = engine.run(series, {"stop_loss_percent": 0.05})

        assert result.trades[0].exit_reason is ExitReason.END_OF_TEST
        assert result.config.stop_loss_percent == 0.05

    def test_runs_are_deterministic(self):
        series = rising_series(40)
        engine = BacktestEngine(BacktestConfig(), scripted({2: Action.BUY, 20: Action.SELL}))
        first = engine.run(series)
        second = engine.run(series)
        assert first.to_dict() == second.to_dict()

    def test_invalid_series_rejected(self):
        engine = BacktestEngine(BacktestConfig(), scripted({}))
        with pytest.raises(InvalidInputError):
            engine.run([])

    def test_result_serializes(self):
        engine = BacktestEngine(frictionless(), scripted({1: Action.BUY}))
        data = engine.run(rising_series(10)).to_dict()
        assert data["bars_processed"] == 10
        assert data["trades"][0]["exit_reason"] == "end_of_test"

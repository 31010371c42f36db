"""
Performance metrics for backtest results.

Pure functions over an equity curve and a closed-trade list. Every ratio
has an explicit fallback so no metric is ever NaN: empty or zero-variance
inputs give 0, and ratios with a zero denominator but a real edge give
UNBOUNDED.
"""

import math
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .position import Trade

TRADING_PERIODS_PER_YEAR = 252
RISK_FREE_RATE = 0.02

# Relative tolerance below which a standard deviation counts as zero
FLAT_TOLERANCE = 1e-12

# Sentinel for ratios with no downside (e.g. profit factor with no losers)
UNBOUNDED = math.inf


def finite_or_cap(value: float, cap: float) -> float:
    """Clamp UNBOUNDED (and any value beyond +/-cap) into [-cap, cap]."""
    if math.isnan(value):
        return 0.0
    return max(-cap, min(cap, value))


def json_number(value: float) -> Union[float, str]:
    """Render UNBOUNDED as the string "infinite" for JSON output."""
    if math.isinf(value):
        return "infinite" if value > 0 else "-infinite"
    return value


@dataclass(frozen=True)
class EquityPoint:
    """Portfolio value at one bar close."""
    timestamp: datetime
    equity: float
    drawdown: float
    drawdown_percent: float

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "equity": self.equity,
            "drawdown": self.drawdown,
            "drawdown_percent": self.drawdown_percent,
        }


@dataclass(frozen=True)
class DrawdownPoint:
    timestamp: datetime
    drawdown: float
    drawdown_percent: float
    underwater: bool

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp.isoformat(),
            "drawdown": self.drawdown,
            "drawdown_percent": self.drawdown_percent,
            "underwater": self.underwater,
        }


@dataclass(frozen=True)
class DrawdownPeriod:
    """A contiguous run of bars below the last equity peak."""
    start_time: datetime
    start_index: int
    peak_equity: float
    trough_equity: float
    trough_time: datetime
    duration: int  # bars spent below the peak

    @property
    def depth(self) -> float:
        return self.peak_equity - self.trough_equity

    @property
    def depth_percent(self) -> float:
        return self.depth / self.peak_equity * 100 if self.peak_equity > 0 else 0.0

    @property
    def is_recovered(self) -> bool:
        return False

    def to_dict(self) -> dict:
        return {
            "start_time": self.start_time.isoformat(),
            "start_index": self.start_index,
            "peak_equity": self.peak_equity,
            "trough_equity": self.trough_equity,
            "trough_time": self.trough_time.isoformat(),
            "depth": self.depth,
            "depth_percent": self.depth_percent,
            "duration": self.duration,
            "recovered": self.is_recovered,
            "recovery_time": None,
        }


@dataclass(frozen=True)
class RecoveredDrawdown(DrawdownPeriod):
    """Drawdown that ended when equity regained its peak."""
    recovery_time: datetime = None
    recovery_index: int = 0

    @property
    def is_recovered(self) -> bool:
        return True

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["recovery_time"] = self.recovery_time.isoformat()
        data["recovery_index"] = self.recovery_index
        return data


@dataclass(frozen=True)
class OngoingDrawdown(DrawdownPeriod):
    """Drawdown still open at the end of the series."""

    @property
    def recovery_time(self) -> None:
        return None


@dataclass(frozen=True)
class MonthlyReturn:
    period: str  # "YYYY-MM"
    start_equity: float
    end_equity: float

    @property
    def return_value(self) -> float:
        return self.end_equity - self.start_equity

    @property
    def return_percent(self) -> float:
        if self.start_equity <= 0:
            return 0.0
        return self.return_value / self.start_equity * 100

    def to_dict(self) -> dict:
        return {
            "period": self.period,
            "start_equity": self.start_equity,
            "end_equity": self.end_equity,
            "return": self.return_value,
            "return_percent": self.return_percent,
        }


@dataclass(frozen=True)
class PerformanceMetrics:
    """Scalar metric set of one backtest."""
    total_return: float = 0.0
    total_return_percent: float = 0.0
    annualized_return: float = 0.0
    annualized_volatility: float = 0.0

    total_trades: int = 0
    winning_trades: int = 0
    losing_trades: int = 0
    win_rate: float = 0.0  # percent
    profit_factor: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0  # magnitude
    largest_win: float = 0.0
    largest_loss: float = 0.0  # magnitude
    expectancy: float = 0.0
    average_holding_bars: float = 0.0
    longest_win_streak: int = 0
    longest_loss_streak: int = 0
    total_commission: float = 0.0

    sharpe_ratio: float = 0.0
    sortino_ratio: float = 0.0
    calmar_ratio: float = 0.0
    var_95: float = 0.0
    var_99: float = 0.0
    cvar_95: float = 0.0
    cvar_99: float = 0.0
    ulcer_index: float = 0.0

    max_drawdown: float = 0.0
    max_drawdown_percent: float = 0.0
    max_drawdown_duration: int = 0
    max_run_up: float = 0.0
    max_run_up_percent: float = 0.0
    recovery_factor: float = 0.0

    skewness: float = 0.0
    kurtosis: float = 0.0
    gain_to_pain_ratio: float = 0.0
    sterling_ratio: float = 0.0
    burke_ratio: float = 0.0
    martin_ratio: float = 0.0

    def to_dict(self) -> dict:
        """Serialize metrics; UNBOUNDED values become "infinite"."""
        return {f.name: json_number(getattr(self, f.name)) for f in fields(self)}


# =========================================================================
# Return statistics
# =========================================================================

def per_step_returns(equities: Sequence[float]) -> np.ndarray:
    """
    Simple returns between consecutive equity values.

    Steps whose previous equity is <= 0 are skipped.
    """
    values = np.asarray(equities, dtype=float)
    if values.size < 2:
        return np.array([], dtype=float)
    previous = values[:-1]
    current = values[1:]
    mask = previous > 0
    return (current[mask] - previous[mask]) / previous[mask]


def annualized_return(returns: np.ndarray) -> float:
    if returns.size == 0:
        return 0.0
    return float(np.mean(returns) * TRADING_PERIODS_PER_YEAR)


def annualized_volatility(returns: np.ndarray) -> float:
    """Population standard deviation annualized by sqrt(252)."""
    if returns.size == 0:
        return 0.0
    return float(np.std(returns) * math.sqrt(TRADING_PERIODS_PER_YEAR))


def is_flat(values: np.ndarray) -> bool:
    """True for an empty sequence or one whose stdev is rounding noise."""
    if values.size == 0:
        return True
    scale = max(1.0, float(np.max(np.abs(values))))
    return bool(np.isclose(float(np.std(values)), 0.0, rtol=0.0, atol=FLAT_TOLERANCE * scale))


def sharpe_ratio(returns: np.ndarray, risk_free_rate: float = RISK_FREE_RATE) -> float:
    if is_flat(returns):
        return 0.0
    return (annualized_return(returns) - risk_free_rate) / annualized_volatility(returns)


def sortino_ratio(returns: np.ndarray, risk_free_rate: float = RISK_FREE_RATE) -> float:
    """
    Excess annualized return over annualized downside deviation.

    0 for no returns or a constant series; UNBOUNDED when there are no
    negative returns, or when all negative returns are identical and the
    excess return is positive.
    """
    if is_flat(returns):
        return 0.0

    numerator = annualized_return(returns) - risk_free_rate
    negative = returns[returns < 0]
    if negative.size == 0:
        return UNBOUNDED

    if is_flat(negative):
        return UNBOUNDED if numerator > 0 else 0.0
    return numerator / float(np.std(negative) * math.sqrt(TRADING_PERIODS_PER_YEAR))


def calmar_ratio(annual_return: float, max_drawdown_fraction: float) -> float:
    if max_drawdown_fraction <= 0:
        return 0.0
    return annual_return / max_drawdown_fraction


def _tail_rank(n: int, confidence: float) -> int:
    # Rounding keeps (1 - 0.95) * 20 at rank 1 rather than 2
    return max(1, math.ceil(round((1 - confidence) * n, 9)))


def value_at_risk(returns: np.ndarray, confidence: float) -> float:
    """Nearest-rank lower-tail return at `1 - confidence` (a loss is negative)."""
    if returns.size == 0:
        return 0.0
    ordered = np.sort(returns)
    return float(ordered[_tail_rank(ordered.size, confidence) - 1])


def conditional_value_at_risk(returns: np.ndarray, confidence: float) -> float:
    """Mean of the tail up to and including the VaR rank."""
    if returns.size == 0:
        return 0.0
    ordered = np.sort(returns)
    return float(np.mean(ordered[:_tail_rank(ordered.size, confidence)]))


def skewness(returns: np.ndarray) -> float:
    if is_flat(returns):
        return 0.0
    return float(np.mean(((returns - returns.mean()) / np.std(returns)) ** 3))


def kurtosis(returns: np.ndarray) -> float:
    """Excess kurtosis."""
    if is_flat(returns):
        return 0.0
    return float(np.mean(((returns - returns.mean()) / np.std(returns)) ** 4) - 3)


def gain_to_pain_ratio(returns: np.ndarray) -> float:
    pain = abs(float(returns[returns < 0].sum())) if returns.size else 0.0
    if pain == 0:
        return 0.0
    return float(returns[returns > 0].sum()) / pain


# =========================================================================
# Drawdown statistics
# =========================================================================

def drawdown_curve(equity_curve: Sequence[EquityPoint]) -> List[DrawdownPoint]:
    return [
        DrawdownPoint(
            timestamp=p.timestamp,
            drawdown=p.drawdown,
            drawdown_percent=p.drawdown_percent,
            underwater=p.drawdown > 0,
        )
        for p in equity_curve
    ]


def drawdown_periods(
    equity_curve: Sequence[EquityPoint],
    initial_capital: float
) -> List[DrawdownPeriod]:
    """
    Split the curve into drawdown periods.

    The running peak starts at the initial capital. A period ends on the
    first bar whose equity regains the peak; one still open at the end is
    reported as OngoingDrawdown.
    """
    periods: List[DrawdownPeriod] = []
    peak = initial_capital
    start: Optional[int] = None
    trough_index = 0

    for i, point in enumerate(equity_curve):
        if point.equity >= peak:
            if start is not None:
                periods.append(RecoveredDrawdown(
                    start_time=equity_curve[start].timestamp,
                    start_index=start,
                    peak_equity=peak,
                    trough_equity=equity_curve[trough_index].equity,
                    trough_time=equity_curve[trough_index].timestamp,
                    duration=i - start,
                    recovery_time=point.timestamp,
                    recovery_index=i,
                ))
                start = None
            peak = point.equity
        else:
            if start is None:
                start = i
                trough_index = i
            elif point.equity < equity_curve[trough_index].equity:
                trough_index = i

    if start is not None:
        periods.append(OngoingDrawdown(
            start_time=equity_curve[start].timestamp,
            start_index=start,
            peak_equity=peak,
            trough_equity=equity_curve[trough_index].equity,
            trough_time=equity_curve[trough_index].timestamp,
            duration=len(equity_curve) - start,
        ))

    return periods


def ulcer_index(drawdown_percents: Sequence[float]) -> float:
    values = np.asarray(drawdown_percents, dtype=float)
    if values.size == 0:
        return 0.0
    return float(math.sqrt(np.mean(values ** 2)))


def max_run_up(equities: Sequence[float], initial_capital: float) -> Tuple[float, float]:
    """
    Largest rise above the running trough.

    Returns:
        (absolute, percent of the trough).
    """
    trough = initial_capital
    best = 0.0
    best_pct = 0.0
    for equity in equities:
        trough = min(trough, equity)
        rise = equity - trough
        if rise > best:
            best = rise
            best_pct = rise / trough * 100 if trough > 0 else 0.0
    return best, best_pct


def monthly_returns(
    equity_curve: Sequence[EquityPoint],
    initial_capital: float
) -> List[MonthlyReturn]:
    """Calendar-month returns, the first month measured from initial capital."""
    months: Dict[str, float] = {}
    for point in equity_curve:
        months[point.timestamp.strftime("%Y-%m")] = point.equity

    result = []
    previous = initial_capital
    for period in sorted(months):
        result.append(MonthlyReturn(period=period, start_equity=previous, end_equity=months[period]))
        previous = months[period]
    return result


# =========================================================================
# Trade statistics
# =========================================================================

def profit_factor(trades: Sequence[Trade]) -> float:
    gross_profit = sum(t.profit for t in trades if t.profit > 0)
    gross_loss = abs(sum(t.profit for t in trades if t.profit < 0))
    if gross_loss == 0:
        return UNBOUNDED if gross_profit > 0 else 0.0
    return gross_profit / gross_loss


def streaks(trades: Sequence[Trade]) -> Tuple[int, int]:
    """
    Longest consecutive winning and losing runs.

    Break-even trades end both runs.
    """
    longest_win = longest_loss = 0
    wins = losses = 0
    for trade in trades:
        if trade.profit > 0:
            wins += 1
            losses = 0
        elif trade.profit < 0:
            losses += 1
            wins = 0
        else:
            wins = losses = 0
        longest_win = max(longest_win, wins)
        longest_loss = max(longest_loss, losses)
    return longest_win, longest_loss


# =========================================================================
# Aggregate
# =========================================================================

def calculate_metrics(
    equity_curve: Sequence[EquityPoint],
    trades: Sequence[Trade],
    initial_capital: float
) -> PerformanceMetrics:
    """
    Compute the full metric set for one run.

    Args:
        equity_curve: One point per bar.
        trades: Closed trades in exit order.
        initial_capital: Starting capital.

    Returns:
        PerformanceMetrics.
    """
    equities = [p.equity for p in equity_curve]
    final_equity = equities[-1] if equities else initial_capital
    total_return = final_equity - initial_capital
    total_return_percent = total_return / initial_capital * 100

    returns = per_step_returns(equities)
    annual = annualized_return(returns)

    max_dd = max((p.drawdown for p in equity_curve), default=0.0)
    max_dd_pct = max((p.drawdown_percent for p in equity_curve), default=0.0)
    periods = drawdown_periods(equity_curve, initial_capital)
    dd_percents = [p.drawdown_percent for p in equity_curve]
    ulcer = ulcer_index(dd_percents)
    run_up, run_up_pct = max_run_up(equities, initial_capital)

    winners = [t.profit for t in trades if t.profit > 0]
    losers = [abs(t.profit) for t in trades if t.profit < 0]
    n_trades = len(trades)
    win_fraction = len(winners) / n_trades if n_trades else 0.0
    average_win = float(np.mean(winners)) if winners else 0.0
    average_loss = float(np.mean(losers)) if losers else 0.0
    longest_win, longest_loss = streaks(trades)

    dd_squared = float(np.sum(np.asarray(dd_percents, dtype=float) ** 2)) if dd_percents else 0.0

    return PerformanceMetrics(
        total_return=total_return,
        total_return_percent=total_return_percent,
        annualized_return=annual,
        annualized_volatility=annualized_volatility(returns),
        total_trades=n_trades,
        winning_trades=len(winners),
        losing_trades=len(losers),
        win_rate=win_fraction * 100,
        profit_factor=profit_factor(trades),
        average_win=average_win,
        average_loss=average_loss,
        largest_win=max(winners, default=0.0),
        largest_loss=max(losers, default=0.0),
        expectancy=win_fraction * average_win - (1 - win_fraction) * average_loss if n_trades else 0.0,
        average_holding_bars=float(np.mean([t.holding_bars for t in trades])) if trades else 0.0,
        longest_win_streak=longest_win,
        longest_loss_streak=longest_loss,
        total_commission=sum(t.commission for t in trades),
        sharpe_ratio=sharpe_ratio(returns),
        sortino_ratio=sortino_ratio(returns),
        calmar_ratio=calmar_ratio(annual, max_dd_pct / 100),
        var_95=value_at_risk(returns, 0.95),
        var_99=value_at_risk(returns, 0.99),
        cvar_95=conditional_value_at_risk(returns, 0.95),
        cvar_99=conditional_value_at_risk(returns, 0.99),
        ulcer_index=ulcer,
        max_drawdown=max_dd,
        max_drawdown_percent=max_dd_pct,
        max_drawdown_duration=max((p.duration for p in periods), default=0),
        max_run_up=run_up,
        max_run_up_percent=run_up_pct,
        recovery_factor=total_return / max_dd if max_dd > 0 else 0.0,
        skewness=skewness(returns),
        kurtosis=kurtosis(returns),
        gain_to_pain_ratio=gain_to_pain_ratio(returns),
        sterling_ratio=total_return_percent / (max_dd_pct + 10) if max_dd_pct > 0 else 0.0,
        burke_ratio=total_return_percent / math.sqrt(dd_squared) if dd_squared > 0 else 0.0,
        martin_ratio=total_return_percent / ulcer if ulcer > 0 else 0.0,
    )

"""
Price series primitives for backtesting.

Historical data arrives from an external fetcher already in memory. This
module only models bars and validates the series contract the engine relies
on: non-empty, strictly increasing timestamps, and low <= open/close <= high.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable, List, Mapping, Sequence, Union

from ..errors import InvalidInputError


@dataclass(frozen=True)
class Bar:
    """OHLCV candle."""
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    @classmethod
    def from_dict(cls, data: Mapping) -> "Bar":
        """
        Build a bar from a mapping.

        Timestamps may be datetimes, ISO strings, or epoch values
        (seconds, or milliseconds when larger than 1e11).
        """
        return cls(
            timestamp=_parse_timestamp(data["timestamp"]),
            open=float(data["open"]),
            high=float(data["high"]),
            low=float(data["low"]),
            close=float(data["close"]),
            volume=float(data.get("volume", 0.0)),
        )

    def to_dict(self) -> dict:
        """Serialize bar to dictionary."""
        return {
            "timestamp": self.timestamp.isoformat(),
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
        }


def _as_utc(value: datetime) -> datetime:
    """Naive timestamps are read as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_timestamp(value: Union[datetime, str, int, float]) -> datetime:
    if isinstance(value, datetime):
        return _as_utc(value)
    if isinstance(value, str):
        try:
            return _as_utc(datetime.fromisoformat(value))
        except ValueError as e:
            raise InvalidInputError(f"Invalid timestamp {value!r}: {e}", "timestamp") from e
    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    raise InvalidInputError(f"Unsupported timestamp type: {type(value).__name__}", "timestamp")


def validate_series(series: Sequence[Bar]) -> None:
    """
    Check the engine's input contract.

    Raises:
        InvalidInputError: If the series is empty, out of order, or holds
            a bar whose open/close lie outside its high/low range.
    """
    if not series:
        raise InvalidInputError("Price series is empty", "series")

    aware = series[0].timestamp.tzinfo is not None
    previous = None
    for index, bar in enumerate(series):
        if (bar.timestamp.tzinfo is not None) != aware:
            raise InvalidInputError(
                f"Bar {index} mixes naive and timezone-aware timestamps", "series"
            )
        if bar.low > bar.high:
            raise InvalidInputError(
                f"Bar {index} has low {bar.low} above high {bar.high}", "series"
            )
        if not (bar.low <= bar.open <= bar.high and bar.low <= bar.close <= bar.high):
            raise InvalidInputError(
                f"Bar {index} open/close outside [low, high]", "series"
            )
        if bar.close <= 0:
            raise InvalidInputError(f"Bar {index} has non-positive close {bar.close}", "series")
        if previous is not None and bar.timestamp <= previous.timestamp:
            raise InvalidInputError(
                f"Timestamps must be strictly increasing (bar {index}: "
                f"{bar.timestamp.isoformat()} <= {previous.timestamp.isoformat()})",
                "series"
            )
        previous = bar


def to_series(records: Iterable[Union[Bar, Mapping]]) -> List[Bar]:
    """Convert mappings to bars and validate the result."""
    series = [r if isinstance(r, Bar) else Bar.from_dict(r) for r in records]
    validate_series(series)
    return series

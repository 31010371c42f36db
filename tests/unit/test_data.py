"""
Unit tests for price series primitives.
"""

import pytest
from datetime import datetime, timedelta, timezone

from tradelab.backtest.data import Bar, to_series, validate_series
from tradelab.errors import InvalidInputError


START = datetime(2024, 1, 1, tzinfo=timezone.utc)


def make_bar(i: int, close: float = 100.0, **overrides) -> Bar:
    values = dict(
        timestamp=START + timedelta(hours=i),
        open=close,
        high=close * 1.01,
        low=close * 0.99,
        close=close,
        volume=10.0,
    )
    values.update(overrides)
    return Bar(**values)


class TestBar:
    """Tests for Bar conversion."""

    def test_from_dict_iso_timestamp(self):
        bar = Bar.from_dict({
            "timestamp": "2024-01-01T00:00:00+00:00",
            "open": "100", "high": 101, "low": 99, "close": 100.5,
        })
        assert bar.timestamp == START
        assert bar.open == 100.0
        assert bar.volume == 0.0

    def test_from_dict_epoch_seconds_and_millis(self):
        seconds = Bar.from_dict({"timestamp": 1704067200, "open": 1, "high": 1, "low": 1, "close": 1})
        millis = Bar.from_dict({"timestamp": 1704067200000, "open": 1, "high": 1, "low": 1, "close": 1})
        assert seconds.timestamp == START
        assert millis.timestamp == START

    def test_unsupported_timestamp_type(self):
        with pytest.raises(InvalidInputError):
            Bar.from_dict({"timestamp": [1], "open": 1, "high": 1, "low": 1, "close": 1})

    def test_to_dict_round_trips_fields(self):
        bar = make_bar(0)
        data = bar.to_dict()
        assert data["timestamp"] == START.isoformat()
        assert Bar.from_dict(data) == bar


class TestValidateSeries:
    """Tests for the series contract."""

    def test_valid_series(self):
        validate_series([make_bar(i) for i in range(5)])

    def test_empty_series_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_series([])

    def test_unsorted_timestamps_rejected(self):
        series = [make_bar(1), make_bar(0)]
        with pytest.raises(InvalidInputError):
            validate_series(series)

    def test_duplicate_timestamps_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_series([make_bar(0), make_bar(0)])

    def test_low_above_high_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_series([make_bar(0, high=98.0, low=99.0, open=98.5, close=98.5)])

    def test_close_outside_range_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_series([make_bar(0, close=105.0, high=101.0, open=100.0)])

    def test_non_positive_close_rejected(self):
        with pytest.raises(InvalidInputError):
            validate_series([make_bar(0, close=0.0, open=0.0, high=0.0, low=0.0)])

    def test_invalid_input_is_value_error(self):
        with pytest.raises(ValueError):
            validate_series([])

    def test_to_series_converts_mappings(self):
        rows = [make_bar(i).to_dict() for i in range(3)]
        series = to_series(rows)
        assert len(series) == 3
        assert all(isinstance(b, Bar) for b in series)

    def test_naive_and_aware_strings_share_utc(self):
        rows = [
            {"timestamp": "2024-01-01T00:00:00", "open": 1, "high": 1, "low": 1, "close": 1},
            {"timestamp": "2024-01-01T01:00:00+00:00", "open": 1, "high": 1, "low": 1, "close": 1},
        ]
        series = to_series(rows)
        assert series[0].timestamp == START
        assert series[0].timestamp.tzinfo is not None

    def test_mixed_timezone_awareness_rejected(self):
        naive = make_bar(1, timestamp=datetime(2024, 1, 1, 1))
        with pytest.raises(InvalidInputError):
            validate_series([make_bar(0), naive])

    def test_malformed_timestamp_string_rejected(self):
        with pytest.raises(InvalidInputError):
            Bar.from_dict({"timestamp": "yesterday", "open": 1, "high": 1, "low": 1, "close": 1})

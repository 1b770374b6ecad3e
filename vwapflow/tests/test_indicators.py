import math

import pytest

from vwapflow.strategy.indicators import (
    Candle,
    atr,
    candles_from_klines,
    mean_std,
    true_ranges,
    zscore,
)


def _steady(n: int, start: float = 100.0):
    # each candle: range 2 around close, close rises by 1
    return [Candle(high=start + i + 1, low=start + i - 1, close=start + i) for i in range(n)]


def test_first_true_range_is_zero():
    trs = true_ranges(_steady(3))
    assert trs[0] == 0.0
    assert trs[1:] == [2.0, 2.0]


def test_atr_uses_last_14_true_ranges():
    candles = _steady(14)
    # gap candle: prev close 113, high 120 -> TR 7
    candles.append(Candle(high=120.0, low=118.0, close=119.0))
    assert atr(candles, 14) == pytest.approx((13 * 2.0 + 7.0) / 14)


def test_atr_needs_period_plus_one_candles():
    with pytest.raises(ValueError, match="not_enough_data"):
        atr(_steady(14), 14)


def test_candles_from_binance_klines():
    klines = [[0, "1.0", "2.5", "0.5", "1.5", "10", 59999]]
    assert candles_from_klines(klines) == [Candle(high=2.5, low=0.5, close=1.5)]


def test_mean_std_is_population():
    avg, std = mean_std([2, 4, 4, 4, 5, 5, 7, 9])
    assert avg == 5
    assert std == 2


def test_zscore_zero_variance_is_zero():
    assert zscore(10.0, 10.0, 0.0) == 0.0
    assert zscore(12.0, 10.0, 2.0) == 1.0
    assert math.isclose(zscore(7.0, 10.0, 2.0), -1.5)


def test_constant_series_has_zero_std():
    avg, std = mean_std([80123.456] * 30)
    assert std == 0.0
    assert zscore(80123.456, avg, std) == 0.0

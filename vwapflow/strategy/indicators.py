from __future__ import annotations

import statistics
from dataclasses import dataclass
from typing import Iterable, List, Sequence


@dataclass(frozen=True)
class Candle:
    high: float
    low: float
    close: float


def candles_from_klines(klines: list) -> List[Candle]:
    """
    Binance kline format:
    [openTime, open, high, low, close, volume, closeTime, ...]
    """
    return [Candle(high=float(k[2]), low=float(k[3]), close=float(k[4])) for k in klines]


def true_ranges(candles: Sequence[Candle]) -> List[float]:
    """First candle has no previous close and contributes 0."""
    out: List[float] = []
    for i, c in enumerate(candles):
        if i == 0:
            out.append(0.0)
            continue
        prev_close = candles[i - 1].close
        out.append(max(c.high - c.low, abs(c.high - prev_close), abs(c.low - prev_close)))
    return out


def atr(candles: Sequence[Candle], period: int = 14) -> float:
    if len(candles) < period + 1:
        raise ValueError("not_enough_data")
    trs = true_ranges(candles)
    return sum(trs[-period:]) / float(period)


def mean_std(values: Iterable[float]) -> tuple[float, float]:
    """
    Population mean and standard deviation.
    pstdev sums squared deviations exactly, so a constant series has std == 0.0.
    """
    vals = [float(v) for v in values]
    if not vals:
        raise ValueError("not_enough_data")
    return statistics.fmean(vals), statistics.pstdev(vals)


def zscore(value: float, avg: float, std: float) -> float:
    if std == 0:
        return 0.0
    return (value - avg) / std


def sign(x: float) -> float:
    if x > 0:
        return 1.0
    if x < 0:
        return -1.0
    return 0.0

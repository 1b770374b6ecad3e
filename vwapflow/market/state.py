from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Deque, Optional, Sequence

from vwapflow.strategy.indicators import Candle, atr, mean_std, zscore

ATR_PERIOD = 14
OI_HISTORY_LEN = 60
OI_MIN_SAMPLES = 30


def utc_date(ts_ms: int) -> date:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).date()


@dataclass
class VwapAccumulator:
    value: float = 0.0
    prev_value: float = 0.0
    cum_pv: float = 0.0
    cum_vol: float = 0.0
    day: Optional[date] = None  # UTC session day


@dataclass
class OpenInterestState:
    current: Optional[float] = None
    delta: float = 0.0
    history: Deque[float] = field(default_factory=lambda: deque(maxlen=OI_HISTORY_LEN))
    mean: float = 0.0
    std: float = 0.0
    zscore: float = 0.0


@dataclass
class MarketState:
    price: float = 0.0
    prev_price: float = 0.0
    atr: float = 0.0
    vwap: VwapAccumulator = field(default_factory=VwapAccumulator)
    oi: OpenInterestState = field(default_factory=OpenInterestState)
    funding_rate: float = 0.0
    flow_buy: float = 0.0
    flow_sell: float = 0.0


@dataclass(frozen=True)
class MarketSnapshot:
    """Immutable view of what the scorer reads."""

    price: float
    prev_price: float
    vwap: float
    vwap_prev: float
    flow_buy: float
    flow_sell: float
    funding_rate: float
    oi_delta: float
    oi_zscore: float
    atr: float


class MarketStateAggregator:
    """Rolling indicators fed by stream ticks and periodic REST polls. No I/O."""

    def __init__(self, state: MarketState | None = None):
        self.state = state or MarketState()

    def reset(self) -> None:
        self.state = MarketState()

    # ---------------- stream ----------------

    def on_trade(self, price: float, qty: float, is_maker_sell: bool, event_time_ms: int) -> None:
        st = self.state
        price = float(price)
        qty = float(qty)

        if st.price == 0:
            st.prev_price = price
        else:
            st.prev_price = st.price
        st.price = price

        vw = st.vwap
        day = utc_date(event_time_ms)
        if day != vw.day:
            vw.cum_pv = 0.0
            vw.cum_vol = 0.0
            vw.day = day

        vw.prev_value = vw.value
        vw.cum_pv += price * qty
        vw.cum_vol += qty
        if vw.cum_vol > 0:
            vw.value = vw.cum_pv / vw.cum_vol

        if is_maker_sell:
            st.flow_sell += qty
        else:
            st.flow_buy += qty

    def on_mark_price(self, funding_rate: float) -> None:
        self.state.funding_rate = float(funding_rate)

    def reset_flow(self) -> None:
        self.state.flow_buy = 0.0
        self.state.flow_sell = 0.0

    # ---------------- polls ----------------

    def refresh_atr(self, candles: Sequence[Candle]) -> float:
        value = atr(candles, ATR_PERIOD)
        self.state.atr = value
        return value

    def refresh_open_interest(self, current_oi: float) -> float:
        oi = self.state.oi
        current_oi = float(current_oi)

        previous = oi.current if oi.current is not None else current_oi
        oi.delta = current_oi - previous
        oi.current = current_oi

        oi.history.append(current_oi)
        if len(oi.history) >= OI_MIN_SAMPLES:
            oi.mean, oi.std = mean_std(oi.history)
            oi.zscore = zscore(current_oi, oi.mean, oi.std)
        return oi.zscore

    # ---------------- views ----------------

    @property
    def oi_samples(self) -> int:
        return len(self.state.oi.history)

    def is_warm(self) -> bool:
        return self.state.price > 0 and self.oi_samples >= OI_MIN_SAMPLES

    @property
    def flow_ratio(self) -> float:
        return self.state.flow_buy / (self.state.flow_sell or 1.0)

    def snapshot(self) -> MarketSnapshot:
        st = self.state
        return MarketSnapshot(
            price=st.price,
            prev_price=st.prev_price,
            vwap=st.vwap.value,
            vwap_prev=st.vwap.prev_value,
            flow_buy=st.flow_buy,
            flow_sell=st.flow_sell,
            funding_rate=st.funding_rate,
            oi_delta=st.oi.delta,
            oi_zscore=st.oi.zscore,
            atr=st.atr,
        )

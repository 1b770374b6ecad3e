from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List

from vwapflow.market.state import MarketSnapshot
from vwapflow.strategy.indicators import sign

VWAP_DEVIATION = 0.001
MOMENTUM = 0.0002
FLOW_LONG_RATIO = 1.8
FLOW_SHORT_RATIO = 0.5
FUNDING_SCALE = 0.0015
FUNDING_CAP = 1.5
TREND_SLOPE = 0.00015

MIN_FACTORS = 3
RANGE_MIN_TOTAL = 9.0
RR_BONUS_TOTAL = 10.0
RR_BONUS = 0.5


class Side(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class Regime(str, Enum):
    TREND = "TREND"
    RANGE = "RANGE"


@dataclass(frozen=True)
class ScoreResult:
    long_score: float
    short_score: float
    factors: int
    regime: Regime
    flow_ratio: float = 0.0
    funding_bias: float = 0.0
    vwap_slope: float = 0.0
    reasons: List[str] = field(default_factory=list)

    @property
    def total(self) -> float:
        return max(self.long_score, self.short_score)

    @property
    def side(self) -> Side:
        # strict comparison: a tie resolves to SELL
        return Side.BUY if self.long_score > self.short_score else Side.SELL


def score_market(snap: MarketSnapshot) -> ScoreResult:
    if snap.price <= 0 or snap.vwap <= 0:
        return ScoreResult(0.0, 0.0, 0, Regime.RANGE, reasons=["no_data"])

    long_score = 0.0
    short_score = 0.0
    factors = 0
    reasons: List[str] = []

    price_delta = snap.price - snap.prev_price

    # 1) distance from session VWAP
    if abs(snap.price - snap.vwap) / snap.vwap > VWAP_DEVIATION:
        if snap.price > snap.vwap:
            long_score += 3
            reasons.append("above_vwap")
        else:
            short_score += 3
            reasons.append("below_vwap")
        factors += 1

    # 2) tick momentum
    if abs(price_delta / snap.price) > MOMENTUM:
        if price_delta > 0:
            long_score += 2
            reasons.append("momentum_up")
        else:
            short_score += 2
            reasons.append("momentum_down")
        factors += 1

    # 3) aggressor flow
    flow_ratio = snap.flow_buy / (snap.flow_sell or 1.0)
    if flow_ratio > FLOW_LONG_RATIO:
        long_score += 2
        factors += 1
        reasons.append("buy_flow")
    elif flow_ratio < FLOW_SHORT_RATIO:
        short_score += 2
        factors += 1
        reasons.append("sell_flow")

    # 4) funding (continuous, not a factor)
    funding_bias = sign(-snap.funding_rate) * min(
        FUNDING_CAP, abs(snap.funding_rate) / FUNDING_SCALE
    )
    long_score += funding_bias
    short_score -= funding_bias

    # 5) new open interest confirming the move
    if snap.oi_delta > 0:
        if price_delta > 0:
            long_score += 1
            reasons.append("oi_confirms_up")
        elif price_delta < 0:
            short_score += 1
            reasons.append("oi_confirms_down")

    vwap_slope = (snap.vwap - snap.vwap_prev) / snap.price
    regime = Regime.TREND if abs(vwap_slope) > TREND_SLOPE else Regime.RANGE

    return ScoreResult(
        long_score=long_score,
        short_score=short_score,
        factors=factors,
        regime=regime,
        flow_ratio=flow_ratio,
        funding_bias=funding_bias,
        vwap_slope=vwap_slope,
        reasons=reasons,
    )


def is_entry_candidate(result: ScoreResult, min_score: float) -> bool:
    if result.factors < MIN_FACTORS:
        return False
    if result.regime != Regime.TREND and result.total < RANGE_MIN_TOTAL:
        return False
    return result.total >= min_score


def reward_ratio(result: ScoreResult, basic_rr: float, conviction_rr: float) -> float:
    rr = conviction_rr if result.regime == Regime.TREND else basic_rr
    if result.total >= RR_BONUS_TOTAL:
        rr += RR_BONUS
    return rr

from __future__ import annotations

from dataclasses import dataclass

from vwapflow.exchange.binance.filters import round_price_to_tick


@dataclass(frozen=True)
class Bracket:
    exit_side: str
    stop_price: float
    take_profit_price: float


def exit_side_for(side: str) -> str:
    return "SELL" if side.upper() == "BUY" else "BUY"


def bracket_prices(
    side: str,
    entry_price: float,
    stop_distance: float,
    rr: float,
    tick_size,
) -> Bracket:
    """
    SL/TP anchored on the actual fill price, each rounded to the nearest tick.
      BUY:  SL = entry - dist,  TP = entry + dist * rr
      SELL: SL = entry + dist,  TP = entry - dist * rr
    """
    side_u = side.upper()
    if side_u == "BUY":
        sl = entry_price - stop_distance
        tp = entry_price + stop_distance * rr
    elif side_u == "SELL":
        sl = entry_price + stop_distance
        tp = entry_price - stop_distance * rr
    else:
        raise ValueError(f"Invalid side: {side}")

    bracket = Bracket(
        exit_side=exit_side_for(side_u),
        stop_price=round_price_to_tick(sl, tick_size),
        take_profit_price=round_price_to_tick(tp, tick_size),
    )
    _validate_sl_tp(side_u, entry_price, bracket.stop_price, bracket.take_profit_price)
    return bracket


def _validate_sl_tp(
    side: str,
    entry_price: float,
    stop_loss: float,
    take_profit: float,
) -> None:
    """
    Validate SL/TP invariants.
    BUY (long):   stop_loss < entry_price < take_profit
    SELL (short): take_profit < entry_price < stop_loss
    Raises ValueError if invalid.
    """
    side_u = (side or "").upper()

    if side_u in ("BUY", "LONG"):
        if not (stop_loss < entry_price < take_profit):
            raise ValueError("Invalid SL/TP for LONG")
        return

    if side_u in ("SELL", "SHORT"):
        if not (take_profit < entry_price < stop_loss):
            raise ValueError("Invalid SL/TP for SHORT")
        return

    raise ValueError(f"Invalid side: {side}")


def actual_risk(entry_price: float, stop_price: float, qty: float) -> float:
    return abs(entry_price - stop_price) * qty

# vwapflow/symbols/sizing.py
from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict

from vwapflow.exchange.binance.filters import round_qty


def _d(x: Any) -> Decimal:
    return Decimal(str(x))


@dataclass
class SizeResult:
    qty: float
    risk_amount: float
    stop_distance: float
    reason: str
    details: Dict[str, Any]


def size_from_risk(
    *,
    balance: float,
    risk_fraction: float,
    stop_distance: float,
    step_size: Any,
    min_qty: Any = "0",
) -> SizeResult:
    """
    Fixed-fractional sizing: the stop distance decides the quantity so that a
    stop-out loses about balance * risk_fraction.

      qty = floor((balance * risk_fraction / stop_distance) / step) * step
    """
    bal = _d(balance)
    risk_amount = bal * _d(risk_fraction)
    dist = _d(stop_distance)
    step = _d(step_size)
    min_q = _d(min_qty)

    details: Dict[str, Any] = {
        "balance": float(bal),
        "risk_fraction": float(risk_fraction),
        "step_size": str(step),
    }

    if dist <= 0:
        return SizeResult(0.0, float(risk_amount), float(dist), "invalid_stop_distance", details)

    if risk_amount <= 0:
        return SizeResult(0.0, float(risk_amount), float(dist), "no_balance", details)

    raw_qty = risk_amount / dist
    qty_dec = round_qty(raw_qty, step) if step > 0 else raw_qty
    details.update({"raw_qty": str(raw_qty), "qty_rounded": str(qty_dec)})

    if qty_dec <= 0 or (min_q > 0 and qty_dec < min_q):
        details["min_qty"] = str(min_q)
        return SizeResult(0.0, float(risk_amount), float(dist), "qty_below_min_qty", details)

    return SizeResult(float(qty_dec), float(risk_amount), float(dist), "ok", details)

from __future__ import annotations

from enum import Enum
from typing import Dict, List

QTY_EPSILON = 1e-12


class ExitReason(str, Enum):
    TAKE_PROFIT = "TP"
    STOP_LOSS = "SL"


def trades_since(trades: List[Dict], symbol: str, start_ms: int) -> List[Dict]:
    """userTrades fills for symbol at/after start_ms with a non-zero qty."""
    symbol = symbol.upper()
    out = []
    for t in trades:
        if (t.get("symbol") or "").upper() != symbol:
            continue
        if int(t.get("time", 0) or 0) < int(start_ms):
            continue
        if abs(float(t.get("qty", 0) or 0)) <= QTY_EPSILON:
            continue
        out.append(t)
    return out


def realized_pnl_from_user_trades(trades: List[Dict]) -> float:
    """
    Binance futures userTrades includes 'realizedPnl' as string per fill.
    Sum it to get realized pnl over the window.
    """
    total = 0.0
    for t in trades:
        rp = t.get("realizedPnl")
        if rp is None:
            continue
        total += float(rp)
    return total


def pnl_in_r(pnl: float, actual_risk: float) -> float:
    if actual_risk <= 0:
        return 0.0
    return float(pnl) / float(actual_risk)


def classify_exit(pnl_r: float) -> ExitReason:
    # sign-based: which bracket leg filled is not observed directly
    return ExitReason.TAKE_PROFIT if pnl_r >= 0 else ExitReason.STOP_LOSS

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP


@dataclass(frozen=True)
class SymbolFilters:
    """Quantity and price increments for one symbol (from exchangeInfo)."""

    symbol: str
    step_size: Decimal
    min_qty: Decimal
    tick_size: Decimal

    @classmethod
    def from_symbol_info(cls, info: dict) -> "SymbolFilters":
        symbol = info.get("symbol", "")
        by_type = {f.get("filterType"): f for f in info.get("filters", [])}

        lot = by_type.get("LOT_SIZE")
        if lot is None:
            raise ValueError(f"LOT_SIZE filter not found for {symbol}")
        price = by_type.get("PRICE_FILTER")
        if price is None:
            raise ValueError(f"PRICE_FILTER not found for {symbol}")

        return cls(
            symbol=symbol,
            step_size=Decimal(lot["stepSize"]),
            min_qty=Decimal(lot.get("minQty", "0")),
            tick_size=Decimal(price["tickSize"]),
        )


def extract_filters(exchange_info: dict, symbol: str) -> SymbolFilters:
    wanted = symbol.upper()
    for info in exchange_info.get("symbols", []):
        if info.get("symbol") == wanted:
            return SymbolFilters.from_symbol_info(info)
    raise ValueError(f"Symbol not found in exchangeInfo: {wanted}")


def _dec(x) -> Decimal:
    return x if isinstance(x, Decimal) else Decimal(str(x))


def _snap(value, increment, rounding) -> Decimal:
    inc = _dec(increment)
    return (_dec(value) / inc).to_integral_value(rounding=rounding) * inc


def round_qty(qty: float, step_size) -> Decimal:
    """Quantity floored to a whole number of steps (never oversizes)."""
    return _snap(qty, step_size, ROUND_DOWN)


def round_price(px: float, tick_size) -> Decimal:
    """Price moved to the NEAREST tick, half-up. Bracket triggers use this."""
    return _snap(px, tick_size, ROUND_HALF_UP)


def _to_float(value: Decimal, increment) -> float:
    # trim to the increment's decimal places so 0.1 * 3 style tails never reach the API
    places = max(0, -_dec(increment).as_tuple().exponent)
    return float(value.quantize(Decimal(1).scaleb(-places)))


def round_price_to_tick(price: float, tick_size) -> float:
    return _to_float(round_price(price, tick_size), tick_size)

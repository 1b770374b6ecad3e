from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Union


@dataclass(frozen=True)
class TradeEvent:
    price: float
    qty: float
    is_maker_sell: bool  # buyer was the maker -> aggressive sell
    event_time_ms: int


@dataclass(frozen=True)
class MarkPriceEvent:
    mark_price: float
    funding_rate: float
    event_time_ms: int


StreamEvent = Union[TradeEvent, MarkPriceEvent]


def parse_stream_message(raw: Any) -> StreamEvent | None:
    """
    Binance futures raw-stream payloads:
      aggTrade:  {"e":"aggTrade","p":"...","q":"...","m":true,"T":...}
      markPrice: {"e":"markPriceUpdate","p":"...","r":"...","E":...}
    Subscription acks and unknown events return None.
    Combined-stream envelopes ({"stream":..,"data":{..}}) are unwrapped.
    """
    msg = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
    if not isinstance(msg, dict):
        return None
    if "data" in msg and isinstance(msg["data"], dict):
        msg = msg["data"]

    et = msg.get("e")
    if et == "aggTrade":
        return TradeEvent(
            price=float(msg["p"]),
            qty=float(msg["q"]),
            is_maker_sell=bool(msg.get("m", False)),
            event_time_ms=int(msg["T"]),
        )
    if et in ("markPriceUpdate", "markPrice"):
        return MarkPriceEvent(
            mark_price=float(msg.get("p", 0.0) or 0.0),
            funding_rate=float(msg.get("r", 0.0) or 0.0),
            event_time_ms=int(msg.get("E", 0) or 0),
        )
    return None

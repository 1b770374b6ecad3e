import json

from vwapflow.exchange.binance.stream import BinanceMarketStream
from vwapflow.market.events import MarkPriceEvent, TradeEvent, parse_stream_message

AGG = {"e": "aggTrade", "E": 1, "s": "BTCUSDT", "p": "43000.5", "q": "0.010", "m": True, "T": 1700000000000}


def test_agg_trade():
    ev = parse_stream_message(json.dumps(AGG))
    assert ev == TradeEvent(price=43000.5, qty=0.01, is_maker_sell=True, event_time_ms=1700000000000)


def test_combined_stream_envelope():
    ev = parse_stream_message({"stream": "btcusdt@aggTrade", "data": AGG})
    assert isinstance(ev, TradeEvent)


def test_mark_price_update():
    raw = {"e": "markPriceUpdate", "E": 5, "s": "BTCUSDT", "p": "43001.1", "r": "0.00010000", "T": 6}
    ev = parse_stream_message(raw)
    assert ev == MarkPriceEvent(mark_price=43001.1, funding_rate=0.0001, event_time_ms=5)


def test_subscription_ack_and_unknown_are_ignored():
    assert parse_stream_message('{"result": null, "id": 1}') is None
    assert parse_stream_message({"e": "depthUpdate"}) is None
    assert parse_stream_message("[]") is None


def test_subscribe_message():
    s = BinanceMarketStream("wss://fstream.binance.com/ws/", "BTCUSDT", lambda e: None, lambda: None)
    msg = json.loads(s.subscribe_message())
    assert msg["method"] == "SUBSCRIBE"
    assert msg["params"] == ["btcusdt@aggTrade", "btcusdt@markPrice"]
    assert s.ws_base_url == "wss://fstream.binance.com/ws"


def test_handler_errors_do_not_escape_callback():
    seen = []

    def handler(ev):
        seen.append(ev)
        raise RuntimeError("boom")

    s = BinanceMarketStream("wss://x", "BTCUSDT", handler, lambda: None)
    s._on_message(None, json.dumps(AGG))
    s._on_message(None, "not json")
    assert len(seen) == 1


def test_on_closed_skipped_after_deliberate_close():
    closed = []

    class _WS:
        def run_forever(self, **kw):
            return None

        def close(self):
            pass

    s = BinanceMarketStream("wss://x", "BTCUSDT", lambda e: None, lambda: closed.append(1))
    s._ws = _WS()
    s._run()
    assert closed == [1]

    s.close()
    s._run()
    assert closed == [1]

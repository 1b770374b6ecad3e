from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

import websocket  # websocket-client

from vwapflow.market.events import StreamEvent, parse_stream_message

log = logging.getLogger("vwapflow.stream")


class BinanceMarketStream:
    """
    aggTrade + markPrice subscription for one symbol.

    Runs WebSocketApp.run_forever in a daemon thread. Reconnect policy is the
    owner's job: on_closed fires once when the socket is gone for good.
    """

    def __init__(
        self,
        ws_base_url: str,
        symbol: str,
        on_event: Callable[[StreamEvent], None],
        on_closed: Callable[[], None],
    ):
        self.ws_base_url = ws_base_url.rstrip("/")
        self.symbol = symbol.lower()
        self.on_event = on_event
        self.on_closed = on_closed

        self._ws: Optional[websocket.WebSocketApp] = None
        self._thread: Optional[threading.Thread] = None
        self._closing = False

    def subscribe_message(self) -> str:
        return json.dumps(
            {
                "method": "SUBSCRIBE",
                "params": [f"{self.symbol}@aggTrade", f"{self.symbol}@markPrice"],
                "id": 1,
            }
        )

    # ---------------- callbacks ----------------

    def _on_open(self, ws) -> None:
        ws.send(self.subscribe_message())
        log.info("stream open, subscribed %s@aggTrade %s@markPrice", self.symbol, self.symbol)

    def _on_message(self, ws, message) -> None:
        try:
            event = parse_stream_message(message)
        except (ValueError, KeyError, TypeError) as e:
            log.warning("stream parse error: %s", e)
            return
        if event is None:
            return
        try:
            self.on_event(event)
        except Exception:
            log.exception("stream handler failed")

    def _on_error(self, ws, err) -> None:
        log.warning("stream error: %s", err)

    def _run(self) -> None:
        try:
            self._ws.run_forever(ping_interval=20, ping_timeout=10)
        except Exception:
            log.exception("stream run_forever crashed")
        finally:
            log.info("stream closed")
            if not self._closing:
                self.on_closed()

    # ---------------- lifecycle ----------------

    def start(self) -> None:
        self._closing = False
        self._ws = websocket.WebSocketApp(
            self.ws_base_url,
            on_open=self._on_open,
            on_message=self._on_message,
            on_error=self._on_error,
        )
        self._thread = threading.Thread(target=self._run, name="market-stream", daemon=True)
        self._thread.start()

    def close(self) -> None:
        self._closing = True
        if self._ws is not None:
            try:
                self._ws.close()
            except Exception as e:
                log.debug("stream close error: %s", e)

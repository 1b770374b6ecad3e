from __future__ import annotations

import logging
import random
import time

import requests

from vwapflow.exchange.binance.filters import SymbolFilters, extract_filters
from vwapflow.exchange.binance.signing import signed_query

log = logging.getLogger("vwapflow.binance")

REQUEST_TIMEOUT_S = 15
TIMESTAMP_ERROR_CODE = -1021
UNKNOWN_ORDER_CODE = -2013


class BinanceAPIError(RuntimeError):
    retryable: bool = False


class BinanceTransportError(BinanceAPIError):
    """Timeouts, connection drops, 5xx and rate limits that outlived the retries.

    The request may or may not have reached the matching engine.
    """

    retryable = True


class BinanceHTTPError(BinanceAPIError):
    """The exchange answered and rejected the request (4xx)."""

    def __init__(self, status_code: int, code: int | None, msg: str, method: str, path: str):
        super().__init__(f"Binance HTTP {status_code} {method} {path}: code={code} msg={msg}")
        self.status_code = status_code
        self.code = code
        self.msg = msg


def _error_fields(r: requests.Response) -> tuple[int | None, str]:
    try:
        data = r.json()
    except ValueError:
        return None, r.text
    if isinstance(data, dict):
        code = data.get("code")
        return (int(code) if code is not None else None), str(data.get("msg", ""))
    return None, r.text


class BinanceFuturesClient:
    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: str,
        recv_window: int = 5000,
    ):
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.recv_window = recv_window

        # local->server clock offset (ms), positive when local clock is behind
        self._time_offset_ms: int = 0

    # ------------------------------------------------------------------
    # request helper
    # ------------------------------------------------------------------
    def _backoff(self, attempt: int, retry_after: str | None = None) -> None:
        sleep_s = float(retry_after) if retry_after else 0.4 * (2**attempt)
        sleep_s += random.uniform(0, 0.2)
        time.sleep(min(sleep_s, 10.0))

    def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        *,
        signed: bool = False,
        max_retries: int = 4,
    ):
        """
        Retries transport errors, rate limits and 5xx up to max_retries times.
        4xx rejections raise BinanceHTTPError immediately, except a single
        clock resync + resend on a signed timestamp error.
        """
        url = f"{self.base_url}{path}"
        headers: dict = {}
        if signed:
            if not self.api_key or not self.api_secret:
                raise ValueError("Missing BINANCE_API_KEY or BINANCE_API_SECRET in .env")
            headers["X-MBX-APIKEY"] = self.api_key

        attempt = 0
        resynced = False
        last_err: object = None

        while attempt <= max_retries:
            query_params = dict(params or {})
            if signed:
                query_params["timestamp"] = int(time.time() * 1000) + int(self._time_offset_ms)
                query_params["recvWindow"] = self.recv_window
                req_url = f"{url}?{signed_query(self.api_secret, query_params)}"
                req_params = None
            else:
                req_url = url
                req_params = query_params

            try:
                r = requests.request(
                    method,
                    req_url,
                    params=req_params,
                    headers=headers,
                    timeout=REQUEST_TIMEOUT_S,
                )
            except requests.RequestException as e:
                # timeouts, resets, broken chunked bodies: the outcome is unknown
                last_err = e
                attempt += 1
                if attempt <= max_retries:
                    self._backoff(attempt)
                continue

            # Rate limit / temp ban
            if r.status_code in (418, 429):
                last_err = f"HTTP {r.status_code}"
                attempt += 1
                if attempt <= max_retries:
                    self._backoff(attempt, r.headers.get("Retry-After"))
                continue

            # Server errors: outcome unknown
            if r.status_code >= 500:
                last_err = f"HTTP {r.status_code}"
                attempt += 1
                if attempt <= max_retries:
                    self._backoff(attempt)
                continue

            if r.status_code >= 400:
                code, msg = _error_fields(r)
                if signed and code == TIMESTAMP_ERROR_CODE and not resynced:
                    # rejected before matching, safe to resend once
                    resynced = True
                    self.sync_time()
                    continue
                raise BinanceHTTPError(r.status_code, code, msg, method, path)

            if not r.content:
                return None
            try:
                return r.json()
            except ValueError as e:
                # the request was processed, only the body is unreadable
                raise BinanceTransportError(
                    f"Binance returned an unreadable body: {method} {path} (HTTP {r.status_code})"
                ) from e

        raise BinanceTransportError(
            f"Binance request failed after {max_retries + 1} attempt(s): {method} {path} ({last_err})"
        )

    # ---------------- TIME SYNC (PUBLIC) ----------------

    def sync_time(self) -> int:
        """
        Computes and stores local->server time offset.
        Positive offset means local clock is behind server.
        """
        local_ms = int(time.time() * 1000)
        data = self._request("GET", "/fapi/v1/time", max_retries=2)
        self._time_offset_ms = int(data["serverTime"]) - local_ms
        return self._time_offset_ms

    # ---------------- PUBLIC ----------------

    def exchange_info(self) -> dict:
        return self._request("GET", "/fapi/v1/exchangeInfo")

    def symbol_filters(self, symbol: str) -> SymbolFilters:
        return extract_filters(self.exchange_info(), symbol)

    def klines(self, symbol: str, interval: str = "1m", limit: int = 100) -> list:
        params = {"symbol": symbol.upper(), "interval": interval, "limit": limit}
        return self._request("GET", "/fapi/v1/klines", params=params)

    def open_interest(self, symbol: str) -> float:
        data = self._request("GET", "/fapi/v1/openInterest", params={"symbol": symbol.upper()})
        return float(data["openInterest"])

    # ---------------- ACCOUNT ----------------

    def account(self) -> dict:
        return self._request("GET", "/fapi/v2/account", signed=True)

    def wallet_balance(self) -> float:
        return float(self.account()["totalWalletBalance"])

    def set_leverage(self, symbol: str, leverage: int) -> dict:
        # idempotent on the exchange side, so retrying is fine
        return self._request(
            "POST",
            "/fapi/v1/leverage",
            {"symbol": symbol.upper(), "leverage": int(leverage)},
            signed=True,
            max_retries=2,
        )

    def position_risk(self, symbol: str) -> list:
        data = self._request(
            "GET", "/fapi/v2/positionRisk", {"symbol": symbol.upper()}, signed=True
        )
        return data if isinstance(data, list) else []

    def get_position_amt(self, symbol: str) -> float:
        # pick the entry with the largest absolute positionAmt (hedge mode returns two)
        best = 0.0
        for p in self.position_risk(symbol):
            if (p.get("symbol") or "").upper() != symbol.upper():
                continue
            amt = float(p.get("positionAmt", "0") or "0")
            if abs(amt) > abs(best):
                best = amt
        return best

    def user_trades(
        self,
        symbol: str,
        start_time_ms: int | None = None,
        limit: int = 100,
    ) -> list:
        params: dict = {"symbol": symbol.upper(), "limit": limit}
        if start_time_ms is not None:
            params["startTime"] = int(start_time_ms)
        data = self._request("GET", "/fapi/v1/userTrades", params, signed=True)
        return data if isinstance(data, list) else []

    # ---------------- ORDERS ----------------

    def place_market_order(
        self, symbol: str, side: str, quantity: float, client_order_id: str
    ) -> dict:
        """
        Never retried here: a resend after an unknown outcome could double the
        position. Callers resolve BinanceTransportError via get_order(client_order_id).
        """
        return self._request(
            "POST",
            "/fapi/v1/order",
            {
                "symbol": symbol.upper(),
                "side": side,
                "type": "MARKET",
                "quantity": quantity,
                "newClientOrderId": client_order_id,
                "newOrderRespType": "RESULT",
            },
            signed=True,
            max_retries=0,
        )

    def get_order(self, symbol: str, *, client_order_id: str) -> dict | None:
        """Returns None when the exchange has no order with that client id."""
        try:
            return self._request(
                "GET",
                "/fapi/v1/order",
                {"symbol": symbol.upper(), "origClientOrderId": client_order_id},
                signed=True,
            )
        except BinanceHTTPError as e:
            if e.code == UNKNOWN_ORDER_CODE:
                return None
            raise

    def _place_close_position_trigger(
        self, symbol: str, side: str, order_type: str, stop_price: float
    ) -> dict:
        # closePosition=true is reduce-only and sized to the whole position;
        # Binance rejects an explicit reduceOnly alongside it.
        return self._request(
            "POST",
            "/fapi/v1/order",
            {
                "symbol": symbol.upper(),
                "side": side,
                "type": order_type,
                "stopPrice": stop_price,
                "closePosition": "true",
                "workingType": "MARK_PRICE",
                "priceProtect": "TRUE",
            },
            signed=True,
            max_retries=0,
        )

    def place_stop_market(self, symbol: str, side: str, stop_price: float) -> dict:
        return self._place_close_position_trigger(symbol, side, "STOP_MARKET", stop_price)

    def place_take_profit_market(self, symbol: str, side: str, stop_price: float) -> dict:
        return self._place_close_position_trigger(
            symbol, side, "TAKE_PROFIT_MARKET", stop_price
        )

    def open_orders(self, symbol: str) -> list:
        data = self._request(
            "GET", "/fapi/v1/openOrders", {"symbol": symbol.upper()}, signed=True
        )
        return data if isinstance(data, list) else []

    def cancel_all_orders(self, symbol: str) -> dict:
        return self._request(
            "DELETE", "/fapi/v1/allOpenOrders", {"symbol": symbol.upper()}, signed=True
        )

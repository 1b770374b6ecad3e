from decimal import Decimal

import pytest
import requests

from vwapflow.core.config import Settings
from vwapflow.exchange.binance.client import BinanceHTTPError, BinanceTransportError
from vwapflow.exchange.binance.filters import SymbolFilters
from vwapflow.execution.executor import ExecutionCoordinator, PositionPhase
from vwapflow.risk.gate import RiskGovernor
from vwapflow.risk.realized_pnl import ExitReason

T0 = 1_700_000_000_000
FILTERS = SymbolFilters("BTCUSDT", Decimal("0.001"), Decimal("0.001"), Decimal("0.1"))


def _settings(mode: str = "live") -> Settings:
    return Settings(
        EXECUTION_MODE=mode,
        BINANCE_ENV="testnet",
        BINANCE_API_KEY="k",
        BINANCE_API_SECRET="s",
        SYMBOL="BTCUSDT",
        SL_ATR_MULT=1.0,
    )


class _FakeClient:
    """Minimal fake Binance client for entry / reconcile tests."""

    def __init__(self, *, fill_price: float = 100000.0):
        self.fill_price = fill_price
        self.position_amt = 0.0
        self.trades = []
        self.balance = 10000.0
        self.market_orders = []
        self.stops = []
        self.tps = []
        self.cancel_calls = 0
        self.open = []
        self.lookups = []
        self.entry_error = None
        self.lookup_result = "filled"
        self.stop_error = None
        self.on_submit = None

    def _filled(self, side, qty, cid):
        return {
            "status": "FILLED",
            "side": side,
            "avgPrice": str(self.fill_price),
            "executedQty": str(qty),
            "clientOrderId": cid,
        }

    # --- orders ---
    def place_market_order(self, symbol, side, quantity, client_order_id):
        self.market_orders.append((side, quantity, client_order_id))
        if self.on_submit is not None:
            self.on_submit()
        if self.entry_error is not None:
            raise self.entry_error
        self.position_amt = quantity if side == "BUY" else -quantity
        return self._filled(side, quantity, client_order_id)

    def get_order(self, symbol, *, client_order_id):
        self.lookups.append(client_order_id)
        if self.lookup_result is None:
            return None
        side, qty, _ = self.market_orders[-1]
        return self._filled(side, qty, client_order_id)

    def place_stop_market(self, symbol, side, stop_price):
        if self.stop_error is not None:
            raise self.stop_error
        self.stops.append((side, stop_price))
        self.open.append({"type": "STOP_MARKET"})
        return {"type": "STOP_MARKET", "stopPrice": stop_price}

    def place_take_profit_market(self, symbol, side, stop_price):
        self.tps.append((side, stop_price))
        self.open.append({"type": "TAKE_PROFIT_MARKET"})
        return {"type": "TAKE_PROFIT_MARKET", "stopPrice": stop_price}

    def open_orders(self, symbol):
        return list(self.open)

    def cancel_all_orders(self, symbol):
        self.cancel_calls += 1
        self.open = []
        return {"code": 200}

    # --- account ---
    def get_position_amt(self, symbol):
        return self.position_amt

    def user_trades(self, symbol, start_time_ms=None, limit=100):
        return list(self.trades)

    def wallet_balance(self):
        return self.balance


class _Notes(list):
    def __call__(self, text):
        self.append(text)


def _coordinator(client, *, mode="live", filters=FILTERS, notes=None):
    gov = RiskGovernor(
        max_drawdown_pct=6.0,
        max_consecutive_losses=4,
        daily_loss_limit_r=3.0,
        cooldown_seconds=60,
    )
    gov.sync_balance(10000.0)
    return ExecutionCoordinator(
        client,
        gov,
        settings=_settings(mode),
        filters=filters,
        notify=notes,
        clock=lambda: T0,
    )


def _enter(coord, side="BUY"):
    return coord.enter(side, 2.5, 9.0, {"regime": "TREND"}, atr=100.0)


def test_entry_places_market_then_brackets_from_fill():
    client = _FakeClient()
    notes = _Notes()
    coord = _coordinator(client, notes=notes)

    r = _enter(coord)

    assert r.action == "ORDER_PLACED"
    assert client.market_orders[0][:2] == ("BUY", 0.5)
    assert client.stops == [("SELL", 99900.0)]
    assert client.tps == [("SELL", 100250.0)]
    assert coord.phase == PositionPhase.OPEN
    assert coord.position.actual_risk == pytest.approx(50.0)
    assert coord.position.protected is True
    assert coord.governor.last_entry_ms == T0
    assert any("ENTRY BUY" in n for n in notes)


def test_sell_entry_brackets():
    client = _FakeClient()
    coord = _coordinator(client)

    r = _enter(coord, "SELL")

    assert r.action == "ORDER_PLACED"
    assert client.stops == [("BUY", 100100.0)]
    assert client.tps == [("BUY", 99750.0)]


def test_paper_mode_never_sends_orders():
    client = _FakeClient()
    coord = _coordinator(client, mode="paper")

    r = _enter(coord)

    assert r.action == "PAPER_ONLY"
    assert r.details["qty"] == 0.5
    assert client.market_orders == []
    assert coord.phase == PositionPhase.FLAT
    assert coord.governor.last_entry_ms == T0


def test_second_entry_while_pending_is_skipped():
    client = _FakeClient()
    coord = _coordinator(client)
    inner = []
    # a tick arriving while the entry order is in flight
    client.on_submit = lambda: inner.append(_enter(coord))

    r = _enter(coord)

    assert r.action == "ORDER_PLACED"
    assert inner[0].action == "SKIPPED_POSITION_ACTIVE"
    assert inner[0].details["phase"] == "PENDING_ENTRY"
    assert len(client.market_orders) == 1


def test_entry_blocked_when_open():
    client = _FakeClient()
    coord = _coordinator(client)
    _enter(coord)

    r = _enter(coord)
    assert r.action == "SKIPPED_POSITION_ACTIVE"
    assert len(client.market_orders) == 1


def test_entry_blocked_when_halted():
    client = _FakeClient()
    coord = _coordinator(client)
    coord.governor.on_trade_closed(-3.0)

    r = _enter(coord)
    assert r.action == "BLOCKED_RISK"
    assert client.market_orders == []


def test_entry_without_filters():
    coord = _coordinator(_FakeClient(), filters=None)
    r = _enter(coord)
    assert r.action == "NO_TRADE"
    assert r.details["reason"] == "filters_not_loaded"


def test_entry_qty_below_min():
    coord = _coordinator(_FakeClient())
    r = coord.enter("BUY", 2.5, 9.0, {}, atr=1_000_000.0)
    assert r.action == "NO_TRADE_INVALID_QTY"
    assert coord.phase == PositionPhase.FLAT


def test_unknown_outcome_resolved_by_lookup():
    client = _FakeClient()
    client.entry_error = BinanceTransportError("timeout")
    coord = _coordinator(client)

    r = _enter(coord)

    assert r.action == "ORDER_PLACED"
    assert client.lookups == [client.market_orders[0][2]]
    assert len(client.market_orders) == 1
    assert coord.phase == PositionPhase.OPEN


def test_unknown_outcome_not_found_returns_to_flat():
    client = _FakeClient()
    client.entry_error = BinanceTransportError("timeout")
    client.lookup_result = None
    coord = _coordinator(client)

    r = _enter(coord)

    assert r.action == "ENTRY_NOT_FILLED"
    assert coord.phase == PositionPhase.FLAT
    assert client.stops == []


def test_rejected_entry_returns_to_flat():
    client = _FakeClient()
    client.entry_error = BinanceHTTPError(400, -2019, "Margin is insufficient.", "POST", "/fapi/v1/order")
    coord = _coordinator(client)

    r = _enter(coord)

    assert r.action == "ORDER_FAILED"
    assert coord.phase == PositionPhase.FLAT
    assert client.lookups == []


def test_protection_failure_keeps_position_and_alerts():
    client = _FakeClient()
    client.stop_error = BinanceHTTPError(
        400, -2021, "Order would immediately trigger.", "POST", "/fapi/v1/order"
    )
    notes = _Notes()
    coord = _coordinator(client, notes=notes)

    r = _enter(coord)

    assert r.action == "ORDER_PLACED"
    assert r.details["protection"]["protected"] is False
    assert coord.phase == PositionPhase.OPEN
    assert coord.position.protected is False
    assert any("PROTECTION FAILED" in n for n in notes)

    # next reconcile pass re-places the missing legs while exposure remains
    client.stop_error = None
    assert coord.reconcile() is None
    assert client.stops == [("SELL", 99900.0)]
    assert len(client.tps) == 1
    assert coord.position.protected is True


def test_ensure_protection_only_replaces_missing_leg():
    client = _FakeClient()
    coord = _coordinator(client)
    _enter(coord)
    client.open = [{"type": "TAKE_PROFIT_MARKET"}]

    out = coord.ensure_protection()

    assert out["status"] == "repaired"
    assert "sl" in out and "tp" not in out
    assert len(client.tps) == 1


def test_reconcile_noop_while_exposed():
    client = _FakeClient()
    coord = _coordinator(client)
    _enter(coord)
    assert coord.reconcile() is None
    assert coord.phase == PositionPhase.OPEN


def test_reconcile_take_profit():
    client = _FakeClient()
    coord = _coordinator(client)
    coord.governor.performance.consecutive_losses = 2
    _enter(coord)

    client.position_amt = 0.0
    client.balance = 10075.0
    client.trades = [
        {"symbol": "BTCUSDT", "time": T0 - 1, "qty": "1", "realizedPnl": "999"},
        {"symbol": "BTCUSDT", "time": T0 + 5, "qty": "0.5", "realizedPnl": "0"},
        {"symbol": "BTCUSDT", "time": T0 + 9, "qty": "0.5", "realizedPnl": "75"},
    ]

    res = coord.reconcile()

    assert res is not None
    assert res.pnl == 75.0
    assert res.pnl_r == pytest.approx(1.5)
    assert res.reason == ExitReason.TAKE_PROFIT
    assert coord.phase == PositionPhase.FLAT
    assert coord.position is None
    assert client.cancel_calls == 1
    assert coord.governor.performance.consecutive_losses == 0
    assert coord.governor.performance.balance == 10075.0


def test_reconcile_stop_loss_counts_daily_loss():
    client = _FakeClient()
    coord = _coordinator(client)
    _enter(coord)

    client.position_amt = 0.0
    client.trades = [{"symbol": "BTCUSDT", "time": T0 + 9, "qty": "0.5", "realizedPnl": "-50"}]

    res = coord.reconcile()

    assert res.reason == ExitReason.STOP_LOSS
    assert res.pnl_r == pytest.approx(-1.0)
    assert coord.governor.budget.daily_loss_r == pytest.approx(1.0)
    assert coord.governor.performance.consecutive_losses == 1


def test_unexpected_submit_error_releases_pending():
    client = _FakeClient()
    client.entry_error = requests.exceptions.ChunkedEncodingError("connection broken")
    coord = _coordinator(client)

    with pytest.raises(requests.exceptions.ChunkedEncodingError):
        _enter(coord)
    assert coord.phase == PositionPhase.FLAT
    assert coord.position is None

    client.entry_error = None
    r = _enter(coord)
    assert r.action == "ORDER_PLACED"
    assert coord.phase == PositionPhase.OPEN


def test_untracked_exchange_position_blocks_entries():
    client = _FakeClient()
    client.position_amt = 0.5
    notes = _Notes()
    coord = _coordinator(client, notes=notes)

    assert coord.reconcile() is None
    assert coord.external_amt == 0.5
    assert any("UNTRACKED POSITION" in n for n in notes)

    r = _enter(coord)
    assert r.action == "SKIPPED_EXTERNAL_POSITION"
    assert r.details["position_amt"] == 0.5
    assert client.market_orders == []
    assert coord.phase == PositionPhase.FLAT

    # closed by hand on the exchange
    client.position_amt = 0.0
    coord.reconcile()
    assert coord.external_amt == 0.0
    assert _enter(coord).action == "ORDER_PLACED"


def test_dust_exposure_does_not_block():
    client = _FakeClient()
    client.position_amt = 1e-9
    coord = _coordinator(client)

    assert coord.sync_exposure() == 0.0
    assert _enter(coord).action == "ORDER_PLACED"


def test_paper_mode_ignores_exchange_exposure():
    client = _FakeClient()
    client.position_amt = 0.5
    coord = _coordinator(client, mode="paper")

    assert coord.sync_exposure() == 0.0
    assert _enter(coord).action == "PAPER_ONLY"

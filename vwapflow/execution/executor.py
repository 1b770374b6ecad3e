from __future__ import annotations

import logging
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from vwapflow.exchange.binance.client import (
    BinanceAPIError,
    BinanceFuturesClient,
    BinanceTransportError,
)
from vwapflow.exchange.binance.filters import SymbolFilters
from vwapflow.execution.exit_rules import Bracket, actual_risk, bracket_prices
from vwapflow.risk.gate import RiskGovernor
from vwapflow.risk.realized_pnl import (
    ExitReason,
    classify_exit,
    pnl_in_r,
    realized_pnl_from_user_trades,
    trades_since,
)
from vwapflow.symbols.sizing import SizeResult, size_from_risk

log = logging.getLogger("vwapflow.execution")

EXPOSURE_EPSILON = 1e-6


def now_ms() -> int:
    return int(time.time() * 1000)


class PositionPhase(str, Enum):
    FLAT = "FLAT"
    PENDING_ENTRY = "PENDING_ENTRY"
    OPEN = "OPEN"


@dataclass
class Position:
    side: str
    entry_price: float
    qty: float
    opened_ms: int
    stop_price: float
    take_profit_price: float
    actual_risk: float  # |fill - stop| * qty, the 1R basis for PnL
    score: float
    rr: float
    metrics: Dict[str, Any] = field(default_factory=dict)
    protected: bool = False
    client_order_id: Optional[str] = None

    @property
    def exit_side(self) -> str:
        return "SELL" if self.side == "BUY" else "BUY"


# =========================
# Results
# =========================
@dataclass
class ExecResult:
    action: str
    details: dict


@dataclass
class ReconcileResult:
    pnl: float
    pnl_r: float
    reason: ExitReason
    position: Position
    balance: Optional[float]


# =========================
# Execution coordinator
# =========================
class ExecutionCoordinator:
    """
    FLAT -> PENDING_ENTRY -> OPEN -> FLAT for a single symbol.

    The phase check and the PENDING_ENTRY marker are written under `lock`
    before any network call, so two ticks can never both pass the
    "no position" check. Exits happen through exchange-side brackets and
    are only observed by reconcile().
    """

    def __init__(
        self,
        client: BinanceFuturesClient,
        governor: RiskGovernor,
        *,
        settings,
        filters: Optional[SymbolFilters] = None,
        lock=None,
        audit=None,
        notify: Optional[Callable[[str], None]] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.governor = governor
        self.settings = settings
        self.symbol = settings.SYMBOL
        self.filters = filters
        self.lock = lock if lock is not None else threading.RLock()
        self.audit = audit
        self.notify = notify
        self.clock = clock

        self.phase = PositionPhase.FLAT
        self.position: Optional[Position] = None
        # exchange exposure seen while locally FLAT (restart, lost fill); blocks entries
        self.external_amt: float = 0.0

    # ---------------- INTERNAL HELPERS ----------------

    def _notify(self, text: str) -> None:
        if self.notify is not None:
            self.notify(text)

    def _audit_warn(self, action: str, details: dict) -> None:
        if self.audit is not None:
            self.audit.event(event_type="WARN", action=action, details=details)

    def _release_pending(self) -> None:
        with self.lock:
            if self.phase == PositionPhase.PENDING_ENTRY:
                self.phase = PositionPhase.FLAT

    def _submit_entry(self, side: str, qty: float, client_order_id: str) -> Optional[dict]:
        """
        Single submission attempt. On an unknown outcome the order is looked up
        by its client id instead of being resent.
        """
        try:
            return self.client.place_market_order(self.symbol, side, qty, client_order_id)
        except BinanceTransportError as e:
            log.warning("entry outcome unknown (%s), looking up %s", e, client_order_id)
            return self.client.get_order(self.symbol, client_order_id=client_order_id)

    def _place_brackets(self, bracket: Bracket) -> dict:
        sl = self.client.place_stop_market(self.symbol, bracket.exit_side, bracket.stop_price)
        tp = self.client.place_take_profit_market(
            self.symbol, bracket.exit_side, bracket.take_profit_price
        )
        return {"sl": sl, "tp": tp}

    # ---------------- ENTRY ----------------

    def enter(
        self,
        side: str,
        rr: float,
        score: float,
        metrics: Dict[str, Any],
        *,
        atr: float,
    ) -> ExecResult:
        side = getattr(side, "value", side).upper()
        if side not in {"BUY", "SELL"}:
            return ExecResult("NO_TRADE", {"reason": "unsupported_side", "side": side})

        with self.lock:
            if self.phase != PositionPhase.FLAT:
                return ExecResult("SKIPPED_POSITION_ACTIVE", {"phase": self.phase.value})

            if self.governor.is_halted():
                return ExecResult("BLOCKED_RISK", {"reason": "halted"})

            if self.filters is None:
                return ExecResult("NO_TRADE", {"reason": "filters_not_loaded"})

            stop_distance = float(atr) * float(self.settings.SL_ATR_MULT)
            size = size_from_risk(
                balance=self.governor.performance.balance,
                risk_fraction=self.settings.RISK_PER_TRADE,
                stop_distance=stop_distance,
                step_size=self.filters.step_size,
                min_qty=self.filters.min_qty,
            )
            if size.reason != "ok":
                return ExecResult(
                    "NO_TRADE_INVALID_QTY",
                    {"sizing_reason": size.reason, "stop_distance": stop_distance, **size.details},
                )

            if not self.settings.is_live:
                # paper fills count as entries for the cooldown
                self.governor.on_trade_opened(self.clock())
                return ExecResult(
                    "PAPER_ONLY",
                    {"side": side, "qty": size.qty, "rr": rr, "score": score, **metrics},
                )

            if abs(self.external_amt) >= EXPOSURE_EPSILON:
                return ExecResult(
                    "SKIPPED_EXTERNAL_POSITION", {"position_amt": self.external_amt}
                )

            client_order_id = f"vwf-{uuid.uuid4().hex[:24]}"
            self.phase = PositionPhase.PENDING_ENTRY

        # network calls run outside the lock; PENDING_ENTRY never outlives this call
        try:
            return self._open_from_pending(
                side, size, stop_distance, rr, score, metrics, client_order_id
            )
        finally:
            self._release_pending()

    def _open_from_pending(
        self,
        side: str,
        size: SizeResult,
        stop_distance: float,
        rr: float,
        score: float,
        metrics: Dict[str, Any],
        client_order_id: str,
    ) -> ExecResult:
        try:
            order = self._submit_entry(side, size.qty, client_order_id)
        except BinanceAPIError as e:
            log.error("entry order failed: %s", e)
            self._audit_warn("ENTRY_FAILED", {"side": side, "qty": size.qty, "error": str(e)})
            return ExecResult("ORDER_FAILED", {"side": side, "qty": size.qty, "error": str(e)})

        if not order or order.get("status") != "FILLED":
            status = order.get("status") if order else None
            self._audit_warn("ENTRY_NOT_FILLED", {"side": side, "qty": size.qty, "status": status})
            return ExecResult("ENTRY_NOT_FILLED", {"side": side, "qty": size.qty, "status": status})

        entry_price = float(order["avgPrice"])
        qty = float(order.get("executedQty") or size.qty)
        opened_ms = self.clock()

        # --- protection orders (SL / TP) from the actual fill ---
        bracket: Optional[Bracket] = None
        protection: dict = {}
        protected = False
        try:
            bracket = bracket_prices(side, entry_price, stop_distance, rr, self.filters.tick_size)
            protection = self._place_brackets(bracket)
            protected = True
        except (ValueError, BinanceAPIError) as e:
            log.error("bracket placement failed after fill: %s", e)
            self._audit_warn("PROTECTION_FAILED", {"side": side, "error": str(e)})
            self._notify(f"⚠️ *PROTECTION FAILED* {side} {qty} @ {entry_price}: {e}")

        if bracket is not None:
            stop_price, tp_price = bracket.stop_price, bracket.take_profit_price
        else:
            sign = -1.0 if side == "BUY" else 1.0
            stop_price = entry_price + sign * stop_distance
            tp_price = entry_price - sign * stop_distance * rr

        position = Position(
            side=side,
            entry_price=entry_price,
            qty=qty,
            opened_ms=opened_ms,
            stop_price=stop_price,
            take_profit_price=tp_price,
            actual_risk=actual_risk(entry_price, stop_price, qty),
            score=score,
            rr=rr,
            metrics=dict(metrics),
            protected=protected,
            client_order_id=client_order_id,
        )

        with self.lock:
            self.position = position
            self.phase = PositionPhase.OPEN
            self.governor.on_trade_opened(opened_ms)

        if self.audit is not None:
            self.audit.trade(
                "ENTRY",
                {
                    "side": side,
                    "score": score,
                    "rr": rr,
                    "entryPrice": entry_price,
                    "qty": qty,
                    "stopPrice": stop_price,
                    "takeProfitPrice": tp_price,
                    "actualRisk": position.actual_risk,
                    "plannedRisk": size.risk_amount,
                    **metrics,
                },
            )
        self._notify(
            f"🟢 *ENTRY {side}*\nScore: {score:.1f} | RR: 1:{rr}\nRegime: {metrics.get('regime', '-')}"
        )

        return ExecResult(
            "ORDER_PLACED",
            {
                "side": side,
                "qty": qty,
                "entry_price": entry_price,
                "order": order,
                "protection": {
                    **protection,
                    "sl_price": stop_price,
                    "tp_price": tp_price,
                    "protected": protected,
                },
                "sizing": asdict(size),
            },
        )

    # ---------------- PROTECTION REPAIR ----------------

    def ensure_protection(self) -> dict:
        """Re-place whichever bracket leg is missing for the open position."""
        with self.lock:
            pos = self.position
            if self.phase != PositionPhase.OPEN or pos is None:
                return {"status": "flat"}

        opens = self.client.open_orders(self.symbol)
        types = {o.get("type") for o in opens}
        placed = {}

        if "STOP_MARKET" not in types:
            placed["sl"] = self.client.place_stop_market(self.symbol, pos.exit_side, pos.stop_price)
        if "TAKE_PROFIT_MARKET" not in types:
            placed["tp"] = self.client.place_take_profit_market(
                self.symbol, pos.exit_side, pos.take_profit_price
            )

        with self.lock:
            pos.protected = True

        if placed:
            self._audit_warn("PROTECTION_REPAIRED", {"placed": sorted(placed)})
            return {"status": "repaired", **placed}
        return {"status": "ok"}

    # ---------------- RECONCILIATION ----------------

    def sync_exposure(self) -> float:
        """
        Exchange truth for a locally FLAT coordinator. Exposure we did not open
        (left over from a previous process, or a fill whose lookup failed)
        blocks new entries until it is closed on the exchange.
        """
        if not self.settings.is_live:
            return 0.0
        with self.lock:
            if self.phase != PositionPhase.FLAT:
                return self.external_amt

        amt = self.client.get_position_amt(self.symbol)
        if abs(amt) < EXPOSURE_EPSILON:
            amt = 0.0

        with self.lock:
            if self.phase != PositionPhase.FLAT:
                return self.external_amt
            before = self.external_amt
            self.external_amt = amt

        if amt and not before:
            log.warning("untracked exchange position %s %s, entries blocked", self.symbol, amt)
            self._audit_warn("EXTERNAL_POSITION", {"position_amt": amt})
            self._notify(f"⚠️ *UNTRACKED POSITION* {self.symbol} amt={amt}: entries blocked")
        elif before and not amt:
            log.info("untracked exchange position closed, entries allowed")
        return amt

    def reconcile(self) -> Optional[ReconcileResult]:
        """
        Poll exchange exposure. When it is gone while a position is recorded
        locally, derive the realized outcome from userTrades and go FLAT.
        While FLAT, refresh the untracked-exposure guard instead.
        """
        with self.lock:
            pos = self.position
            phase = self.phase
        if phase == PositionPhase.FLAT:
            self.sync_exposure()
            return None
        if phase != PositionPhase.OPEN or pos is None:
            return None

        amt = self.client.get_position_amt(self.symbol)
        if abs(amt) >= EXPOSURE_EPSILON:
            if not pos.protected:
                self.ensure_protection()
            return None

        trades = self.client.user_trades(self.symbol, start_time_ms=pos.opened_ms)
        relevant = trades_since(trades, self.symbol, pos.opened_ms)
        pnl = realized_pnl_from_user_trades(relevant)
        pnl_r = pnl_in_r(pnl, pos.actual_risk)
        reason = classify_exit(pnl_r)

        balance: Optional[float] = None
        try:
            balance = self.client.wallet_balance()
        except BinanceAPIError as e:
            log.warning("balance refresh after exit failed: %s", e)

        with self.lock:
            if balance is not None:
                self.governor.sync_balance(balance)
            self.governor.on_trade_closed(pnl_r)

        # leftover bracket leg; already-cancelled is fine
        try:
            self.client.cancel_all_orders(self.symbol)
        except BinanceAPIError as e:
            log.info("cancel residual orders: %s", e)

        with self.lock:
            self.position = None
            self.phase = PositionPhase.FLAT

        daily_loss_r = self.governor.budget.daily_loss_r
        bal_now = self.governor.performance.balance

        if self.audit is not None:
            self.audit.trade(
                "EXIT",
                {
                    **asdict(pos),
                    "pnlUSDT": pnl,
                    "pnlR": pnl_r,
                    "reason": reason.value,
                    "fills": len(relevant),
                    "finalBalance": bal_now,
                },
            )
        self._notify(
            f"🔴 *EXIT CONFIRMED* ({reason.value})\nPnL: {pnl_r:.2f}R\n"
            f"Daily Loss: {daily_loss_r:.2f}R\nBal: ${bal_now:.2f}"
        )

        return ReconcileResult(pnl=pnl, pnl_r=pnl_r, reason=reason, position=pos, balance=balance)

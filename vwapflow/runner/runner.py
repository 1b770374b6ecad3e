from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import asdict
from typing import Any, Callable, Dict, Optional

from vwapflow.exchange.binance.client import BinanceFuturesClient
from vwapflow.exchange.binance.stream import BinanceMarketStream
from vwapflow.execution.executor import (
    ExecResult,
    ExecutionCoordinator,
    PositionPhase,
    now_ms,
)
from vwapflow.market.events import MarkPriceEvent, StreamEvent, TradeEvent
from vwapflow.market.state import OI_MIN_SAMPLES, MarketStateAggregator, utc_date
from vwapflow.ops.scheduler import TaskGroup
from vwapflow.risk.gate import RiskGovernor
from vwapflow.runner.models import EngineContext
from vwapflow.strategy.indicators import candles_from_klines
from vwapflow.strategy.scorer import is_entry_candidate, reward_ratio, score_market

log = logging.getLogger("vwapflow.runner")

KLINE_LIMIT = 100


class Engine:
    """
    Wires stream events, periodic refresh tasks and the decision core.

    trade tick -> aggregator -> scorer -> governor -> coordinator.enter
    reconcile task -> coordinator.reconcile -> governor.on_trade_closed
    """

    def __init__(
        self,
        client: BinanceFuturesClient,
        settings,
        *,
        audit=None,
        store=None,
        notify: Optional[Callable[[str], None]] = None,
        stream_factory: Callable[..., Any] = BinanceMarketStream,
        clock: Callable[[], int] = now_ms,
    ):
        self.client = client
        self.settings = settings
        self.symbol = settings.SYMBOL
        self.audit = audit
        self.store = store
        self.notify = notify
        self.stream_factory = stream_factory
        self.clock = clock
        self.run_id = str(uuid.uuid4())

        lock = threading.RLock()
        governor = RiskGovernor.from_settings(settings, notify=notify, audit=audit)
        coordinator = ExecutionCoordinator(
            client,
            governor,
            settings=settings,
            lock=lock,
            audit=audit,
            notify=notify,
            clock=clock,
        )
        self.ctx = EngineContext(
            aggregator=MarketStateAggregator(),
            governor=governor,
            coordinator=coordinator,
            lock=lock,
        )

        if self.store is not None:
            saved = self.store.load_risk(self.symbol)
            if saved:
                governor.restore(saved)

        self.tasks: Optional[TaskGroup] = None
        self.stream = None
        self.running = False
        self._boot_stop = threading.Event()
        self._boot_thread: Optional[threading.Thread] = None
        self._restart_timer: Optional[threading.Timer] = None

    # ---------------- persistence ----------------

    def _persist_risk(self) -> None:
        if self.store is None:
            return
        with self.ctx.lock:
            snap = self.ctx.governor.snapshot()
        try:
            self.store.save_risk(self.symbol, snap)
        except Exception as e:
            log.warning("risk state not persisted: %s", e)

    def reset_risk(self) -> dict:
        with self.ctx.lock:
            self.ctx.governor.reset(utc_date(self.clock()))
            snap = self.ctx.governor.snapshot()
        if self.store is not None:
            self.store.reset_risk(self.symbol)
            self.store.save_risk(self.symbol, snap)
        if self.audit is not None:
            self.audit.event(event_type="RISK_RESET", action="OPERATOR_RESET", details=snap)
        return snap

    # ---------------- stream handlers ----------------

    def handle_event(self, event: StreamEvent) -> Optional[ExecResult]:
        if isinstance(event, TradeEvent):
            return self.on_trade(event)
        if isinstance(event, MarkPriceEvent):
            with self.ctx.lock:
                self.ctx.aggregator.on_mark_price(event.funding_rate)
        return None

    def on_trade(self, event: TradeEvent) -> Optional[ExecResult]:
        with self.ctx.lock:
            self.ctx.ticks += 1
            self.ctx.aggregator.on_trade(
                event.price, event.qty, event.is_maker_sell, event.event_time_ms
            )
            intent = self.evaluate(self.clock())

        if intent is None:
            return None

        res = self.ctx.coordinator.enter(**intent)
        level = logging.DEBUG if res.action.startswith("SKIPPED") else logging.INFO
        log.log(level, "entry %s: %s", res.action, {k: v for k, v in res.details.items() if k != "order"})
        if res.action == "ORDER_PLACED":
            self._persist_risk()
        return res

    def evaluate(self, now: int) -> Optional[Dict[str, Any]]:
        """
        One strategy pass over the current state. Caller holds the lock.
        Returns the keyword arguments for coordinator.enter, or None.
        """
        gov = self.ctx.governor
        agg = self.ctx.aggregator

        if gov.on_daily_rollover(utc_date(now)):
            self._persist_risk()

        was_halted = gov.budget.halted
        if gov.is_halted():
            if not was_halted:
                self._persist_risk()
            return None

        if not agg.is_warm():
            return None

        snap = agg.snapshot()
        result = score_market(snap)
        self.ctx.last_score = result

        if self.ctx.coordinator.phase != PositionPhase.FLAT:
            return None
        if not gov.can_enter(now):
            return None
        if not is_entry_candidate(result, self.settings.MIN_SCORE):
            return None

        rr = reward_ratio(result, self.settings.BASIC_RR, self.settings.CONVICTION_RR)
        metrics = {
            "atrPct": snap.atr / snap.price,
            "funding": snap.funding_rate,
            "oiZ": snap.oi_zscore,
            "flow": result.flow_ratio,
            "regime": result.regime.value,
            "fundingBias": result.funding_bias,
            "factors": result.factors,
            "reasons": list(result.reasons),
        }
        return {
            "side": result.side.value,
            "rr": rr,
            "score": result.total,
            "metrics": metrics,
            "atr": snap.atr,
        }

    # ---------------- periodic tasks ----------------

    def refresh_atr(self) -> float:
        klines = self.client.klines(self.symbol, "1m", KLINE_LIMIT)
        candles = candles_from_klines(klines)
        with self.ctx.lock:
            return self.ctx.aggregator.refresh_atr(candles)

    def refresh_open_interest(self) -> float:
        oi = self.client.open_interest(self.symbol)
        with self.ctx.lock:
            return self.ctx.aggregator.refresh_open_interest(oi)

    def sync_balance(self) -> float:
        if not self.settings.is_live and not self.settings.BINANCE_API_KEY:
            balance = float(self.settings.PAPER_BALANCE)
        else:
            balance = self.client.wallet_balance()
        with self.ctx.lock:
            self.ctx.governor.sync_balance(balance)
        self._persist_risk()
        return balance

    def reset_flow(self) -> None:
        with self.ctx.lock:
            self.ctx.aggregator.reset_flow()

    def reconcile(self) -> None:
        res = self.ctx.coordinator.reconcile()
        if res is not None:
            log.info("position closed %s pnl=%.4f (%.2fR)", res.reason.value, res.pnl, res.pnl_r)
            self._persist_risk()

    def log_status(self) -> None:
        s = self.status_snapshot()
        score = s["score"] or {}
        log.info(
            "[%s %s] price=%.1f atr=%.2f oiZ=%.2f L=%.1f S=%.1f regime=%s bal=%.2f dailyLoss=%.2fR phase=%s",
            s["status"],
            s["progress"],
            s["price"],
            s["atr"],
            s["oi_zscore"],
            score.get("long", 0.0),
            score.get("short", 0.0),
            score.get("regime", "-"),
            s["balance"],
            s["daily_loss_r"],
            s["phase"],
        )

    def _build_tasks(self) -> TaskGroup:
        s = self.settings
        tasks = TaskGroup()
        tasks.add("flow_reset", s.FLOW_RESET_SECONDS, self.reset_flow)
        tasks.add("atr_refresh", s.ATR_REFRESH_SECONDS, self.refresh_atr)
        tasks.add("oi_refresh", s.OI_REFRESH_SECONDS, self.refresh_open_interest, run_immediately=True)
        tasks.add("balance_sync", s.BALANCE_SYNC_SECONDS, self.sync_balance)
        tasks.add("reconcile", s.RECONCILE_SECONDS, self.reconcile)
        tasks.add("status", s.STATUS_SECONDS, self.log_status)
        return tasks

    # ---------------- lifecycle ----------------

    def initialize(self) -> None:
        """Full (re)initialization. Raises on failure; caller retries."""
        self._teardown()

        self.client.sync_time()
        self.sync_balance()
        self.refresh_atr()
        if self.settings.is_live:
            self.client.set_leverage(self.symbol, self.settings.LEVERAGE)
        filters = self.client.symbol_filters(self.symbol)
        with self.ctx.lock:
            self.ctx.coordinator.filters = filters
        # the exchange may still hold a position this process does not know about
        self.ctx.coordinator.sync_exposure()

        self.stream = self.stream_factory(
            self.settings.BINANCE_WS_BASE_URL,
            self.symbol,
            self.handle_event,
            self._on_stream_closed,
        )
        self.stream.start()

        self.tasks = self._build_tasks()
        self.tasks.start()

        if self.audit is not None:
            self.audit.event(
                event_type="RUN_START",
                action="INITIALIZED",
                details={"mode": self.settings.EXECUTION_MODE, "env": self.settings.BINANCE_ENV},
            )
        print(f"[RUN] engine online run_id={self.run_id} symbol={self.symbol}")
        if self.notify is not None:
            self.notify(f"✅ vwapflow engine online ({self.symbol}, {self.settings.EXECUTION_MODE})")

    def _boot_loop(self) -> None:
        while self.running and not self._boot_stop.is_set():
            try:
                self.initialize()
                return
            except Exception as e:
                log.error("init failed: %s: %s", type(e).__name__, e)
                print(f"[RUN] init error, retrying in {self.settings.INIT_RETRY_SECONDS}s: {e}")
                self._teardown()
            self._boot_stop.wait(self.settings.INIT_RETRY_SECONDS)

    def _boot(self) -> None:
        self._boot_thread = threading.Thread(target=self._boot_loop, name="engine-boot", daemon=True)
        self._boot_thread.start()

    def start(self) -> None:
        if self.running:
            return
        self.running = True
        self._boot_stop.clear()
        self._boot()

    def _on_stream_closed(self) -> None:
        if not self.running:
            return
        delay = self.settings.RECONNECT_DELAY_SECONDS
        log.warning("stream lost, reinitializing in %ss", delay)
        if self.tasks is not None:
            self.tasks.stop()
            self.tasks = None
        self.stream = None
        self._restart_timer = threading.Timer(delay, self._restart)
        self._restart_timer.daemon = True
        self._restart_timer.start()

    def _restart(self) -> None:
        if not self.running:
            return
        # indicators are rebuilt from scratch; risk counters and position survive
        with self.ctx.lock:
            self.ctx.aggregator.reset()
            self.ctx.last_score = None
        self._boot()

    def _teardown(self) -> None:
        if self.tasks is not None:
            self.tasks.stop()
            self.tasks = None
        if self.stream is not None:
            self.stream.close()
            self.stream = None

    def stop(self) -> None:
        self.running = False
        self._boot_stop.set()
        if self._restart_timer is not None:
            self._restart_timer.cancel()
        self._teardown()
        self._persist_risk()
        if self.audit is not None:
            self.audit.event(event_type="RUN_STOP", action="STOPPED", details={})
        print(f"[RUN] engine stopped run_id={self.run_id}")

    # ---------------- status projection ----------------

    def status_snapshot(self) -> Dict[str, Any]:
        with self.ctx.lock:
            agg = self.ctx.aggregator
            st = agg.state
            gov = self.ctx.governor
            coord = self.ctx.coordinator
            score = self.ctx.last_score
            return {
                "symbol": self.symbol,
                "mode": self.settings.EXECUTION_MODE,
                "running": self.running,
                "status": "live" if agg.is_warm() else "warming_up",
                "progress": f"{min(agg.oi_samples, OI_MIN_SAMPLES)}/{OI_MIN_SAMPLES}",
                "ticks": self.ctx.ticks,
                "price": st.price,
                "vwap": st.vwap.value,
                "atr": st.atr,
                "atr_pct": (st.atr / st.price * 100.0) if st.price else 0.0,
                "oi_zscore": st.oi.zscore,
                "oi_delta_dir": "up" if st.oi.delta > 0 else "down",
                "funding_rate": st.funding_rate,
                "flow_ratio": agg.flow_ratio,
                "score": (
                    {
                        "long": score.long_score,
                        "short": score.short_score,
                        "total": score.total,
                        "side": score.side.value,
                        "regime": score.regime.value,
                        "factors": score.factors,
                    }
                    if score is not None
                    else None
                ),
                "balance": gov.performance.balance,
                "peak_balance": gov.performance.peak_balance,
                "drawdown_pct": gov.performance.drawdown_pct,
                "consecutive_losses": gov.performance.consecutive_losses,
                "daily_loss_r": gov.budget.daily_loss_r,
                "halted": gov.budget.halted,
                "phase": coord.phase.value,
                "external_position_amt": coord.external_amt,
                "position": asdict(coord.position) if coord.position is not None else None,
            }

import logging
from dataclasses import asdict

import uvicorn
from fastapi import FastAPI

from vwapflow.core.config import settings
from vwapflow.exchange.binance.client import BinanceFuturesClient
from vwapflow.ops.notify import TelegramNotifier
from vwapflow.persistence.audit import Audit
from vwapflow.persistence.db import DB
from vwapflow.persistence.state_store import StateStore
from vwapflow.runner.runner import Engine

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="VWAP Flow Bot")
engine_instance: Engine | None = None


def get_engine() -> Engine:
    global engine_instance

    if engine_instance is None:
        client = BinanceFuturesClient(
            api_key=settings.BINANCE_API_KEY,
            api_secret=settings.BINANCE_API_SECRET,
            base_url=settings.BINANCE_FAPI_BASE_URL,
            recv_window=settings.BINANCE_RECV_WINDOW,
        )
        db = DB(settings.DB_PATH)
        engine_instance = Engine(
            client,
            settings,
            audit=Audit(db, settings.TRADE_LOG_PATH, symbol=settings.SYMBOL),
            store=StateStore(db),
            notify=TelegramNotifier.from_settings(settings),
        )
        engine_instance.audit.run_id = engine_instance.run_id

    return engine_instance


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    try:
        warnings = settings.validate_runtime()
        for w in warnings:
            print(f"[CONFIG WARNING] {w}")
    except Exception as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        print(str(e))
        raise


@app.on_event("startup")
async def _startup_engine():
    if settings.AUTO_START:
        get_engine().start()
        print(f"[RUN] auto-start symbol={settings.SYMBOL} mode={settings.EXECUTION_MODE}")


@app.on_event("shutdown")
async def _shutdown_engine():
    if engine_instance is not None and engine_instance.running:
        engine_instance.stop()


@app.get("/")
def root():
    return {
        "status": "ok",
        "exchange": f"binance-futures-{settings.BINANCE_ENV}",
        "symbol": settings.SYMBOL,
        "mode": settings.EXECUTION_MODE,
        "api_key_loaded": bool(settings.BINANCE_API_KEY),
        "api_secret_loaded": bool(settings.BINANCE_API_SECRET),
    }


@app.get("/status")
def status():
    return get_engine().status_snapshot()


@app.get("/risk")
def risk():
    engine = get_engine()
    with engine.ctx.lock:
        d = engine.ctx.governor.decision(engine.clock())
    return asdict(d)


@app.post("/risk/reset")
def risk_reset():
    snap = get_engine().reset_risk()
    return {"status": "reset", **snap}


@app.get("/position")
def position():
    engine = get_engine()
    with engine.ctx.lock:
        coord = engine.ctx.coordinator
        pos = asdict(coord.position) if coord.position is not None else None
        return {"phase": coord.phase.value, "position": pos}


@app.post("/position/protect")
def position_protect():
    return get_engine().ctx.coordinator.ensure_protection()


@app.post("/runner/start")
def runner_start():
    engine = get_engine()
    if engine.running:
        return {"status": "already_running", "run_id": engine.run_id}
    engine.start()
    return {"status": "started", "run_id": engine.run_id}


@app.post("/runner/stop")
def runner_stop():
    engine = get_engine()
    if not engine.running:
        return {"status": "not_running", "run_id": engine.run_id}
    engine.stop()
    return {"status": "stopped", "run_id": engine.run_id}


@app.get("/logs/events/tail")
def logs_events_tail(limit: int = 50):
    if limit < 1:
        limit = 1
    if limit > 500:
        limit = 500

    engine = get_engine()
    events = engine.audit.tail(limit)[::-1]
    return {"count": len(events), "events": events}


def run() -> None:
    uvicorn.run("vwapflow.main:app", host=settings.HTTP_HOST, port=settings.HTTP_PORT)


if __name__ == "__main__":
    run()

import json

from vwapflow.persistence.audit import Audit
from vwapflow.persistence.db import DB
from vwapflow.persistence.state_store import StateStore


def test_risk_state_upsert_and_reset(tmp_path):
    store = StateStore(DB(str(tmp_path / "bot.db")))
    assert store.load_risk("BTCUSDT") is None

    snap = {
        "day": "2024-01-01",
        "daily_loss_r": 1.5,
        "halted": False,
        "consecutive_losses": 2,
        "last_entry_ms": 123,
    }
    store.save_risk("btcusdt", snap)
    store.save_risk("BTCUSDT", {**snap, "halted": True, "consecutive_losses": 4})

    row = store.load_risk("BTCUSDT")
    assert row == {**snap, "halted": True, "consecutive_losses": 4}

    store.reset_risk("BTCUSDT")
    assert store.load_risk("BTCUSDT") is None


def test_trade_record_goes_to_db_and_jsonl(tmp_path):
    db = DB(str(tmp_path / "bot.db"))
    log_path = tmp_path / "logs" / "trade_logs.jsonl"
    audit = Audit(db, str(log_path), symbol="BTCUSDT", run_id="run-1")

    audit.trade("ENTRY", {"side": "BUY", "qty": 0.5})
    audit.trade("EXIT", {"pnlR": 1.5, "reason": "TP"})

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    first = json.loads(lines[0])
    assert first["type"] == "ENTRY"
    assert first["symbol"] == "BTCUSDT"
    assert first["side"] == "BUY"
    assert "timestamp" in first

    events = audit.tail(10)
    assert [e["action"] for e in events] == ["EXIT", "ENTRY"]
    assert events[0]["event_type"] == "TRADE"
    assert events[0]["run_id"] == "run-1"
    assert events[0]["details"] == {"pnlR": 1.5, "reason": "TP"}


def test_event_is_best_effort(tmp_path):
    db = DB(str(tmp_path / "bot.db"))
    audit = Audit(db, str(tmp_path / "t.jsonl"))
    db.path = str(tmp_path / "missing-dir" / "x.db")

    # no exception even though the database file cannot be opened
    audit.event("WARN", "TEST", {"a": 1})

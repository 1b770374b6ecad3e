# vwapflow/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from vwapflow.persistence.db import DB, utc_now_iso

log = logging.getLogger("vwapflow.audit")


class Audit:
    """
    DB audit is the source of truth.
    Trade ENTRY/EXIT records are additionally appended to a JSONL file
    (one object per line) for offline analysis.
    """

    def __init__(
        self,
        db: DB,
        jsonl_path: str = "logs/trade_logs.jsonl",
        *,
        symbol: Optional[str] = None,
        run_id: Optional[str] = None,
    ):
        self.db = db
        self.jsonl_path = Path(jsonl_path)
        self.symbol = symbol
        self.run_id = run_id

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            log.warning("cannot create %s: %s", self.jsonl_path.parent, e)

    def event(
        self,
        event_type: str,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Operational event. Best-effort: never breaks the trading loop."""
        try:
            self._insert(event_type, action, details)
        except Exception as e:
            log.warning("audit event %s not stored: %s", event_type, e)

    def trade(self, kind: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        One structured ENTRY/EXIT record. Write errors propagate to the caller.
        """
        entry = {"type": kind, "timestamp": utc_now_iso(), "symbol": self.symbol, **record}
        self._insert("TRADE", kind, record)
        self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
        with self.jsonl_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT timestamp_utc, run_id, symbol, event_type, action, details_json
                FROM events ORDER BY id DESC LIMIT ?
                """,
                (int(limit),),
            ).fetchall()
        out = []
        for r in rows:
            out.append(
                {
                    "timestamp_utc": r["timestamp_utc"],
                    "run_id": r["run_id"],
                    "symbol": r["symbol"],
                    "event_type": r["event_type"],
                    "action": r["action"],
                    "details": json.loads(r["details_json"] or "{}"),
                }
            )
        return out

    def _insert(
        self, event_type: str, action: Optional[str], details: Optional[Dict[str, Any]]
    ) -> None:
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, run_id, symbol, event_type, action, details_json)
                VALUES (?,?,?,?,?,?)
                """,
                (utc_now_iso(), self.run_id, self.symbol, event_type, action, payload),
            )

# vwapflow/persistence/state_store.py

from __future__ import annotations

from typing import Optional

from vwapflow.persistence.db import DB, utc_now_iso


class StateStore:
    def __init__(self, db: DB):
        self.db = db

    def load_risk(self, symbol: str) -> Optional[dict]:
        with self.db.connect() as conn:
            row = conn.execute(
                """
                SELECT day, daily_loss_r, halted, consecutive_losses, last_entry_ms
                FROM risk_state WHERE symbol = ?
                """,
                (symbol.upper(),),
            ).fetchone()

        if not row:
            return None

        return {
            "day": row["day"],
            "daily_loss_r": float(row["daily_loss_r"]),
            "halted": bool(row["halted"]),
            "consecutive_losses": int(row["consecutive_losses"]),
            "last_entry_ms": int(row["last_entry_ms"] or 0),
        }

    def save_risk(self, symbol: str, snap: dict) -> None:
        """UPSERT governor counters (safe across restarts)."""
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO risk_state(
                    symbol, day, daily_loss_r, halted, consecutive_losses, last_entry_ms, updated_at
                )
                VALUES (?,?,?,?,?,?,?)
                ON CONFLICT(symbol) DO UPDATE SET
                    day=excluded.day,
                    daily_loss_r=excluded.daily_loss_r,
                    halted=excluded.halted,
                    consecutive_losses=excluded.consecutive_losses,
                    last_entry_ms=excluded.last_entry_ms,
                    updated_at=excluded.updated_at
                """,
                (
                    symbol.upper(),
                    str(snap["day"]),
                    float(snap.get("daily_loss_r", 0.0)),
                    1 if snap.get("halted") else 0,
                    int(snap.get("consecutive_losses", 0)),
                    int(snap.get("last_entry_ms", 0)),
                    utc_now_iso(),
                ),
            )

    def reset_risk(self, symbol: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM risk_state WHERE symbol = ?", (symbol.upper(),))

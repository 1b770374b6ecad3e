from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


SCHEMA = """
-- append-only audit log (operational events + ENTRY/EXIT trade records)
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp_utc TEXT NOT NULL,
    run_id TEXT,
    symbol TEXT,
    event_type TEXT NOT NULL,
    action TEXT,
    details_json TEXT
);
CREATE INDEX IF NOT EXISTS idx_events_time ON events(timestamp_utc);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);

-- risk governor counters, one row per symbol
CREATE TABLE IF NOT EXISTS risk_state (
    symbol TEXT PRIMARY KEY,
    day TEXT NOT NULL,
    daily_loss_r REAL NOT NULL,
    halted INTEGER NOT NULL,
    consecutive_losses INTEGER NOT NULL,
    last_entry_ms INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);
"""


class DB:
    """
    SQLite access for audit events and persisted risk state.
    Every connect() is a short-lived connection committed on success,
    so stream, task and HTTP threads can share one DB object.
    """

    def __init__(self, path: str = "data/bot.db"):
        self.path = path
        Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

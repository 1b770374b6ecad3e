from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timezone


def utc_today() -> date:
    return datetime.now(timezone.utc).date()


@dataclass
class PerformanceState:
    balance: float = 0.0
    peak_balance: float = 0.0
    drawdown_pct: float = 0.0  # peak-relative, in percent
    consecutive_losses: int = 0

    def sync_balance(self, balance: float) -> None:
        self.balance = float(balance)
        self.peak_balance = max(self.peak_balance, self.balance)
        if self.peak_balance > 0:
            self.drawdown_pct = (self.peak_balance - self.balance) / self.peak_balance * 100.0


@dataclass
class RiskBudget:
    last_reset_date: date
    daily_loss_r: float = 0.0
    halted: bool = False  # sticky; see RiskGovernor.on_daily_rollover

    def add_loss(self, pnl_r: float) -> None:
        self.daily_loss_r += abs(float(pnl_r))

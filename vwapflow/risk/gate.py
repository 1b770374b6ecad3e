from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Callable, List, Optional

from vwapflow.risk.budget import PerformanceState, RiskBudget, utc_today

log = logging.getLogger("vwapflow.risk")


@dataclass
class RiskDecision:
    allowed: bool
    reason: str
    halted: bool
    breaches: List[str] = field(default_factory=list)
    daily_loss_r: float = 0.0
    consecutive_losses: int = 0
    drawdown_pct: float = 0.0


class RiskGovernor:
    """
    Single source of truth for whether new entries may be opened.

    Three independent breakers (drawdown, consecutive losses, daily loss in R)
    trip a sticky halt. The halt clears only on UTC day rollover and only if
    drawdown is back under its threshold; the other two breakers are not
    rechecked at that moment. They are rechecked on the next is_halted()
    call, which re-halts if either is still breached.
    """

    def __init__(
        self,
        *,
        max_drawdown_pct: float,
        max_consecutive_losses: int,
        daily_loss_limit_r: float,
        cooldown_seconds: int,
        notify: Optional[Callable[[str], None]] = None,
        audit=None,
        today: Optional[date] = None,
    ):
        self.max_drawdown_pct = float(max_drawdown_pct)
        self.max_consecutive_losses = int(max_consecutive_losses)
        self.daily_loss_limit_r = float(daily_loss_limit_r)
        self.cooldown_ms = int(cooldown_seconds) * 1000
        self.notify = notify
        self.audit = audit

        self.performance = PerformanceState()
        self.budget = RiskBudget(last_reset_date=today or utc_today())
        self.last_entry_ms: int = 0

    @classmethod
    def from_settings(cls, s, **kwargs) -> "RiskGovernor":
        return cls(
            max_drawdown_pct=s.MAX_DRAWDOWN_PCT,
            max_consecutive_losses=s.MAX_CONSECUTIVE_LOSS,
            daily_loss_limit_r=s.DAILY_LOSS_LIMIT_R,
            cooldown_seconds=s.TRADE_COOLDOWN_SECONDS,
            **kwargs,
        )

    # ---------------- breakers ----------------

    def breaches(self) -> List[str]:
        out: List[str] = []
        if self.performance.drawdown_pct >= self.max_drawdown_pct:
            out.append("max_drawdown_reached")
        if self.performance.consecutive_losses >= self.max_consecutive_losses:
            out.append("max_consecutive_losses_reached")
        if self.budget.daily_loss_r >= self.daily_loss_limit_r:
            out.append("daily_loss_limit_reached")
        return out

    def is_halted(self) -> bool:
        tripped = self.breaches()
        if tripped and not self.budget.halted:
            self.budget.halted = True
            self._on_halt(tripped)
        return self.budget.halted

    def _on_halt(self, tripped: List[str]) -> None:
        log.warning("risk halt: %s", ",".join(tripped))
        if self.audit is not None:
            self.audit.event(
                event_type="RISK_HALT",
                action="ENTRIES_BLOCKED",
                details={
                    "breaches": tripped,
                    "drawdown_pct": self.performance.drawdown_pct,
                    "consecutive_losses": self.performance.consecutive_losses,
                    "daily_loss_r": self.budget.daily_loss_r,
                },
            )
        if self.notify is not None:
            self.notify("🛑 SYSTEM HALTED: Risk Limit Reached (" + ", ".join(tripped) + ")")

    # ---------------- lifecycle hooks ----------------

    def on_daily_rollover(self, today: date) -> bool:
        """Returns True when a rollover actually happened."""
        if self.budget.last_reset_date == today:
            return False
        self.budget.daily_loss_r = 0.0
        self.budget.last_reset_date = today
        if self.budget.halted and self.performance.drawdown_pct < self.max_drawdown_pct:
            self.budget.halted = False
            log.info("risk halt cleared on day rollover %s", today)
        return True

    def on_trade_opened(self, ts_ms: int) -> None:
        self.last_entry_ms = int(ts_ms)

    def on_trade_closed(self, pnl_r: float) -> None:
        if pnl_r < 0:
            self.budget.add_loss(pnl_r)
            self.performance.consecutive_losses += 1
        else:
            self.performance.consecutive_losses = 0

    def sync_balance(self, balance: float) -> None:
        self.performance.sync_balance(balance)

    def reset(self, today: Optional[date] = None) -> None:
        """Operator override: clear all breakers and rebase peak to the current balance."""
        self.budget = RiskBudget(last_reset_date=today or utc_today())
        self.performance.consecutive_losses = 0
        self.performance.peak_balance = self.performance.balance
        self.performance.drawdown_pct = 0.0
        self.last_entry_ms = 0
        log.info("risk state reset by operator")

    # ---------------- gate ----------------

    def cooldown_ok(self, now_ms: int) -> bool:
        if self.cooldown_ms <= 0 or self.last_entry_ms <= 0:
            return True
        return (int(now_ms) - self.last_entry_ms) >= self.cooldown_ms

    def decision(self, now_ms: int) -> RiskDecision:
        halted = self.is_halted()
        if halted:
            reason = "halted"
        elif not self.cooldown_ok(now_ms):
            reason = "cooldown"
        else:
            reason = "ok"
        return RiskDecision(
            allowed=reason == "ok",
            reason=reason,
            halted=halted,
            breaches=self.breaches(),
            daily_loss_r=self.budget.daily_loss_r,
            consecutive_losses=self.performance.consecutive_losses,
            drawdown_pct=self.performance.drawdown_pct,
        )

    def can_enter(self, now_ms: int) -> bool:
        return self.decision(now_ms).allowed

    # ---------------- persistence ----------------

    def snapshot(self) -> dict:
        return {
            "day": self.budget.last_reset_date.isoformat(),
            "daily_loss_r": self.budget.daily_loss_r,
            "halted": self.budget.halted,
            "consecutive_losses": self.performance.consecutive_losses,
            "last_entry_ms": self.last_entry_ms,
        }

    def restore(self, row: dict) -> None:
        self.budget.last_reset_date = date.fromisoformat(str(row["day"]))
        self.budget.daily_loss_r = float(row.get("daily_loss_r", 0.0) or 0.0)
        self.budget.halted = bool(row.get("halted", False))
        self.performance.consecutive_losses = int(row.get("consecutive_losses", 0) or 0)
        self.last_entry_ms = int(row.get("last_entry_ms", 0) or 0)

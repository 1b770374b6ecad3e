# vwapflow/runner/models.py
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Optional

from vwapflow.execution.executor import ExecutionCoordinator
from vwapflow.market.state import MarketStateAggregator
from vwapflow.risk.gate import RiskGovernor
from vwapflow.strategy.scorer import ScoreResult


@dataclass
class EngineContext:
    """
    Everything the decision loop mutates. Stream callbacks and periodic
    tasks run on different threads; they hold `lock` while touching any
    of these and release it around network I/O.
    """

    aggregator: MarketStateAggregator
    governor: RiskGovernor
    coordinator: ExecutionCoordinator
    lock: threading.RLock = field(default_factory=threading.RLock)
    last_score: Optional[ScoreResult] = None
    ticks: int = 0

from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional

log = logging.getLogger("vwapflow.scheduler")


class PeriodicTask:
    """
    Calls fn every interval_s seconds until the shared stop event is set.
    A failing run is logged and skipped; the next tick retries naturally.
    """

    def __init__(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], object],
        stop: threading.Event,
        *,
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval_s = float(interval_s)
        self.fn = fn
        self.stop = stop
        self.run_immediately = run_immediately
        self.runs = 0
        self.failures = 0
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> bool:
        try:
            self.fn()
            self.runs += 1
            return True
        except Exception as e:
            self.failures += 1
            log.warning("task %s failed: %s: %s", self.name, type(e).__name__, e)
            return False

    def _loop(self) -> None:
        if self.run_immediately and not self.stop.is_set():
            self.run_once()
        while not self.stop.wait(self.interval_s):
            self.run_once()

    def start(self) -> None:
        self._thread = threading.Thread(target=self._loop, name=f"task-{self.name}", daemon=True)
        self._thread.start()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout)


class TaskGroup:
    """A set of PeriodicTasks sharing one cancellation token."""

    def __init__(self) -> None:
        self.stop_event = threading.Event()
        self.tasks: List[PeriodicTask] = []

    def add(
        self,
        name: str,
        interval_s: float,
        fn: Callable[[], object],
        *,
        run_immediately: bool = False,
    ) -> PeriodicTask:
        task = PeriodicTask(name, interval_s, fn, self.stop_event, run_immediately=run_immediately)
        self.tasks.append(task)
        return task

    def start(self) -> None:
        for t in self.tasks:
            t.start()

    def stop(self, timeout: float = 5.0) -> None:
        self.stop_event.set()
        for t in self.tasks:
            if t._thread is not threading.current_thread():
                t.join(timeout)

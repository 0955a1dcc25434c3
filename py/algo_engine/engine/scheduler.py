from __future__ import annotations

import threading
from datetime import datetime, timedelta
from typing import Any, Callable

from algo_engine.engine.dispatcher import OrderDispatcher, QueuedOrder
from algo_engine.engine.evaluation import StrategyEvaluator
from algo_engine.engine.registry import RunningStrategy, StrategyRegistry
from algo_engine.engine.schedule import compute_next_run
from algo_engine.errors import ValidationError
from algo_engine.observability.context import traced
from algo_engine.observability.events import write_structured_log
from algo_engine.storage.paths import RuntimePaths
from algo_engine.storage.sqlite_store import touch_strategy_last_run


class Ticker:
    """Runs ``callback`` every ``interval`` seconds on a daemon thread until stopped."""

    def __init__(self, name: str, interval: float, callback: Callable[[], Any], paths: RuntimePaths) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._callback = callback
        self._paths = paths
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self._callback()
            except Exception as exc:  # keep the loop alive; the failure is logged
                write_structured_log(
                    self._paths,
                    f"{self.name}.error",
                    {"error": str(exc), "error_type": type(exc).__name__},
                )
            if self._stop.wait(self.interval):
                break

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None


class Scheduler:
    def __init__(
        self,
        paths: RuntimePaths,
        registry: StrategyRegistry,
        evaluator: StrategyEvaluator,
        dispatcher: OrderDispatcher,
        interval: timedelta,
        clock: Callable[[], datetime],
    ) -> None:
        self._paths = paths
        self._registry = registry
        self._evaluator = evaluator
        self._dispatcher = dispatcher
        self._interval = interval
        self._clock = clock

    @property
    def interval(self) -> timedelta:
        return self._interval

    def tick(self, now: datetime | None = None) -> dict[str, Any]:
        now = now or self._clock()
        evaluated = 0
        failed = 0
        queued = 0
        with traced("tick"):
            for entry in self._registry.due(now):
                try:
                    queued += len(self.run_entry(entry, now))
                    evaluated += 1
                except Exception as exc:
                    failed += 1
                    write_structured_log(
                        self._paths,
                        "strategy.evaluation_error",
                        {
                            "strategy_id": entry.strategy_id,
                            "user_id": entry.user_id,
                            "error": str(exc),
                            "error_type": type(exc).__name__,
                        },
                    )
            summary = {"at": now.isoformat(), "evaluated": evaluated, "failed": failed, "orders_queued": queued}
            if evaluated or failed:
                write_structured_log(self._paths, "scheduler.tick", summary)
        return summary

    def _advance(self, entry: RunningStrategy, now: datetime) -> None:
        """Record the run and move ``next_run``; an entry with no upcoming session is parked."""
        entry.last_run = now
        try:
            entry.next_run = compute_next_run(
                entry.strategy,
                now,
                self._interval,
                square_off_pending=entry.square_off_pending,
            )
        except ValidationError as exc:
            entry.is_active = False
            write_structured_log(
                self._paths,
                "strategy.schedule_error",
                {"strategy_id": entry.strategy_id, "user_id": entry.user_id, "error": str(exc)},
            )

    def run_entry(self, entry: RunningStrategy, now: datetime) -> list[QueuedOrder]:
        """Evaluate one strategy and enqueue its orders; the schedule advances even when evaluation fails."""
        with entry.lock:
            if not entry.is_active or entry.strategy_id not in self._registry:
                return []
            try:
                orders = self._evaluator.evaluate(entry, now)
            except Exception:
                self._advance(entry, now)
                raise
            self._advance(entry, now)
            self._dispatcher.enqueue_many(orders)
        touch_strategy_last_run(self._paths, entry.strategy_id, now.isoformat())
        if orders:
            write_structured_log(
                self._paths,
                "strategy.orders_queued",
                {
                    "strategy_id": entry.strategy_id,
                    "user_id": entry.user_id,
                    "count": len(orders),
                    "sides": [order.side for order in orders],
                },
            )
        return orders

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from algo_engine.brokers.base import BrokerAdapter, OrderRequest
from algo_engine.errors import AlreadyActive, NotActive
from algo_engine.strategy.models import Strategy


@dataclass
class RunningStrategy:
    strategy: Strategy
    user_id: str
    client: BrokerAdapter
    next_run: datetime
    last_run: datetime | None = None
    is_active: bool = True
    entry_day: date | None = None
    # time-based legs entered on entry_day, squared off at square_off_time
    open_orders: list[OrderRequest] = field(default_factory=list)
    # indicator-based holdings keyed by instrument id
    positions: dict[str, OrderRequest] = field(default_factory=dict)
    trade_cycles: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def strategy_id(self) -> str:
        return self.strategy.id

    @property
    def square_off_pending(self) -> bool:
        return bool(self.open_orders or self.positions)

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy_id": self.strategy.id,
            "name": self.strategy.name,
            "kind": self.strategy.kind.value,
            "broker": self.strategy.broker.value,
            "user_id": self.user_id,
            "is_active": self.is_active,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "next_run": self.next_run.isoformat(),
            "open_legs": len(self.open_orders),
            "open_positions": sorted(self.positions),
        }


class StrategyRegistry:
    """In-memory projection of the strategies the scheduler is running."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: dict[str, RunningStrategy] = {}

    def add(self, entry: RunningStrategy) -> None:
        with self._lock:
            if entry.strategy_id in self._entries:
                raise AlreadyActive(f"strategy already active: {entry.strategy_id}")
            self._entries[entry.strategy_id] = entry

    def remove(self, strategy_id: str) -> RunningStrategy:
        with self._lock:
            entry = self._entries.pop(strategy_id, None)
        if entry is None:
            raise NotActive(f"strategy not active: {strategy_id}")
        return entry

    def get(self, strategy_id: str) -> RunningStrategy | None:
        with self._lock:
            return self._entries.get(strategy_id)

    def __contains__(self, strategy_id: object) -> bool:
        with self._lock:
            return strategy_id in self._entries

    def snapshot(self) -> list[RunningStrategy]:
        with self._lock:
            return list(self._entries.values())

    def due(self, now: datetime) -> list[RunningStrategy]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.is_active and entry.next_run <= now]

    def for_user(self, user_id: str) -> list[RunningStrategy]:
        with self._lock:
            return [entry for entry in self._entries.values() if entry.user_id == user_id]

    def user_ids(self) -> set[str]:
        with self._lock:
            return {entry.user_id for entry in self._entries.values()}

    def size(self) -> int:
        with self._lock:
            return len(self._entries)

    def clear(self) -> list[RunningStrategy]:
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        return entries

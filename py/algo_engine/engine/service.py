from __future__ import annotations

import threading
from concurrent.futures import Future
from datetime import datetime, timedelta, timezone
from functools import partial
from typing import Any, Callable, Sequence
from zoneinfo import ZoneInfo

from algo_engine.backtest.metrics import summarize_pnls
from algo_engine.backtest.simulator import SimulationConfig, run_backtest
from algo_engine.brokers.base import BrokerAdapter, BrokerConnection
from algo_engine.brokers.factory import build_adapter
from algo_engine.config import EngineSettings
from algo_engine.engine.dispatcher import OrderDispatcher
from algo_engine.engine.evaluation import StrategyEvaluator
from algo_engine.engine.indicators import validate_conditions
from algo_engine.engine.registry import RunningStrategy, StrategyRegistry
from algo_engine.engine.scheduler import Scheduler, Ticker
from algo_engine.errors import (
    AlreadyActive,
    BrokerFailure,
    InternalInvariantViolation,
    NoBrokerConnection,
    NotActive,
    NotFound,
    ValidationError,
)
from algo_engine.observability.context import reset_trace_id, set_trace_id, traced
from algo_engine.observability.events import write_structured_log
from algo_engine.storage import duckdb_store, sqlite_store
from algo_engine.storage.duckdb_store import Bar
from algo_engine.strategy.instruments import resolve_instrument
from algo_engine.strategy.lifecycle import can_transition, next_status
from algo_engine.strategy.models import Strategy, StrategyStatus

AdapterFactory = Callable[[BrokerConnection, float], BrokerAdapter]


class TradingEngine:
    """Runtime owner of the registry, scheduler and order dispatcher."""

    def __init__(
        self,
        settings: EngineSettings,
        clock: Callable[[], datetime] | None = None,
        adapter_factory: AdapterFactory = build_adapter,
    ) -> None:
        self.settings = settings
        self.paths = settings.runtime_paths
        self._tz = ZoneInfo(settings.timezone)
        self._clock = clock or self._local_now
        self._adapter_factory = adapter_factory
        self._clients: dict[tuple[str, str], BrokerAdapter] = {}
        self._clients_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._initialized = False
        self._running = False

        self.registry = StrategyRegistry()
        self.evaluator = StrategyEvaluator(self._load_history, settings.indicator_lookback)
        self.dispatcher = OrderDispatcher(self.paths, self._client_for, settings.dispatch_workers)
        self.scheduler = Scheduler(
            self.paths,
            self.registry,
            self.evaluator,
            self.dispatcher,
            interval=timedelta(seconds=settings.tick_seconds),
            clock=self._clock,
        )
        self._tick_loop = Ticker("scheduler", settings.tick_seconds, self.scheduler.tick, self.paths)
        self._drain_loop = Ticker("dispatcher", settings.drain_seconds, self.drain_orders, self.paths)

    def _local_now(self) -> datetime:
        return datetime.now(timezone.utc).astimezone(self._tz).replace(tzinfo=None)

    def now(self) -> datetime:
        return self._clock()

    def _load_history(self, symbol: str, until: datetime, limit: int) -> Sequence[Bar]:
        return duckdb_store.load_bars_before(self.paths, symbol, until, limit, inclusive=True)

    # broker clients

    def _client_for(self, user_id: str, broker: str) -> BrokerAdapter | None:
        key = (user_id, broker)
        with self._clients_lock:
            client = self._clients.get(key)
        if client is not None:
            return client
        record = sqlite_store.get_broker_connection(self.paths, user_id, broker)
        if record is None:
            return None
        client = self._adapter_factory(BrokerConnection.from_record(record), self.settings.broker_timeout_seconds)
        with self._clients_lock:
            return self._clients.setdefault(key, client)

    def _require_client(self, user_id: str, broker: str) -> BrokerAdapter:
        client = self._client_for(user_id, broker)
        if client is None:
            raise NoBrokerConnection(f"no connected {broker} broker for user {user_id}")
        return client

    def _any_client(self, user_id: str) -> tuple[str, BrokerAdapter]:
        with self._clients_lock:
            for (owner, broker), client in self._clients.items():
                if owner == user_id:
                    return broker, client
        record = sqlite_store.get_broker_connection(self.paths, user_id)
        if record is None:
            raise NoBrokerConnection(f"no connected broker for user {user_id}")
        return record["broker"], self._require_client(user_id, record["broker"])

    def _forget_client(self, user_id: str, broker: str) -> None:
        with self._clients_lock:
            self._clients.pop((user_id, broker), None)

    def connect_broker(
        self,
        user_id: str,
        broker: str,
        credentials: dict[str, Any],
        sandbox: bool = False,
    ) -> dict[str, Any]:
        connection = BrokerConnection(user_id=user_id, broker=broker, credentials=credentials, sandbox=sandbox)
        client = self._adapter_factory(connection, self.settings.broker_timeout_seconds)
        sqlite_store.upsert_broker_connection(self.paths, user_id, broker, credentials, sandbox=sandbox)
        with self._clients_lock:
            self._clients[(user_id, broker)] = client
        sqlite_store.append_audit_event(self.paths, "broker.connect", {"user_id": user_id, "broker": broker})
        return {"connected": True, "user_id": user_id, "broker": broker, "sandbox": sandbox}

    def check_broker_connection(self, user_id: str, broker: str | None = None) -> dict[str, Any]:
        record = sqlite_store.get_broker_connection(self.paths, user_id, broker)
        if record is None:
            raise NoBrokerConnection(f"no connected broker for user {user_id}")
        client = self._require_client(user_id, record["broker"])
        try:
            result = client.test_connection()
        except BrokerFailure as exc:
            sqlite_store.mark_broker_connection_unhealthy(self.paths, user_id, record["broker"], str(exc))
            self._forget_client(user_id, record["broker"])
            sqlite_store.append_audit_event(
                self.paths,
                "broker.unhealthy",
                {"user_id": user_id, "broker": record["broker"], "error": exc.to_dict()},
            )
            raise
        return result

    # engine lifecycle

    def initialize(self) -> dict[str, Any]:
        with self._lifecycle_lock:
            sqlite_store.init_db(self.paths)
            duckdb_store.init_db(self.paths)
            connections = 0
            for record in sqlite_store.list_broker_connections(self.paths):
                try:
                    self._client_for(record["user_id"], record["broker"])
                    connections += 1
                except ValueError as exc:
                    write_structured_log(
                        self.paths,
                        "engine.connection_error",
                        {"user_id": record["user_id"], "broker": record["broker"], "error": str(exc)},
                    )
            loaded = 0
            for strategy in sqlite_store.list_strategies(self.paths, status=StrategyStatus.ACTIVE):
                try:
                    self._activate(strategy)
                    loaded += 1
                except (NotFound, ValidationError, InternalInvariantViolation) as exc:
                    write_structured_log(
                        self.paths,
                        "strategy.restore_error",
                        {"strategy_id": strategy.id, "error": str(exc), "error_type": type(exc).__name__},
                    )
            self._initialized = True
        write_structured_log(self.paths, "engine.initialized", {"strategies": loaded, "connections": connections})
        return {"initialized": True, "strategies_loaded": loaded, "connections": connections}

    def start(self) -> dict[str, Any]:
        if not self._initialized:
            self.initialize()
        with self._lifecycle_lock:
            self._tick_loop.start()
            self._drain_loop.start()
            self._running = True
        sqlite_store.append_audit_event(self.paths, "engine.start", {"active_strategies": self.registry.size()})
        return self.get_engine_status()

    def stop(self) -> dict[str, Any]:
        with self._lifecycle_lock:
            self._tick_loop.stop(timeout=self.settings.tick_seconds)
            self._drain_loop.stop(timeout=self.settings.drain_seconds)
            self._running = False
        if self._initialized:
            sqlite_store.append_audit_event(self.paths, "engine.stop", {"active_strategies": self.registry.size()})
        return self.get_engine_status()

    def close(self) -> None:
        self.stop()
        self.dispatcher.shutdown(wait=True)

    def drain_orders(self) -> list[Future]:
        """Hand each idle user's next order to the worker pool and return without waiting on brokers."""
        with traced("drain") as trace_id:
            futures = self.dispatcher.drain()
        for future in futures:
            future.add_done_callback(partial(self._report_dispatch_failure, trace_id))
        return futures

    def _report_dispatch_failure(self, trace_id: str, future: Future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is None:
            return
        token = set_trace_id(trace_id)
        try:
            write_structured_log(
                self.paths,
                "order.dispatch_error",
                {"error": str(exc), "error_type": type(exc).__name__},
            )
        finally:
            reset_trace_id(token)

    def get_engine_status(self) -> dict[str, Any]:
        with self._clients_lock:
            users = {user_id for user_id, _ in self._clients}
        return {
            "running": self._running,
            "initialized": self._initialized,
            "active_strategy_count": self.registry.size(),
            "connected_user_count": len(users),
            "order_queue_count": self.dispatcher.pending_count(),
            "tick_seconds": self.settings.tick_seconds,
            "drain_seconds": self.settings.drain_seconds,
        }

    # strategy lifecycle

    def _check_runnable(self, strategy: Strategy) -> None:
        if not strategy.owner_id:
            write_structured_log(
                self.paths,
                "strategy.invariant_violation",
                {"strategy_id": strategy.id, "error": "strategy has no owner"},
            )
            raise InternalInvariantViolation(f"strategy {strategy.id} has no owner")
        if not strategy.trading_days.any_enabled():
            raise ValidationError(f"strategy {strategy.id} has no trading days enabled")
        if strategy.is_time_based:
            if not strategy.order_legs:
                raise ValidationError(f"time-based strategy {strategy.id} has no order legs")
            if not (strategy.security_id or strategy.instrument):
                raise ValidationError(f"time-based strategy {strategy.id} has no instrument")
            return
        if not strategy.instruments:
            raise ValidationError(f"indicator strategy {strategy.id} has no instruments")
        if not strategy.entry_conditions:
            raise ValidationError(f"indicator strategy {strategy.id} has no entry conditions")
        validate_conditions(strategy.entry_conditions)
        for item in strategy.instruments:
            resolve_instrument(item.instrument_id, item.symbol)

    def _activate(self, strategy: Strategy) -> tuple[RunningStrategy, bool]:
        self._check_runnable(strategy)
        existing = self.registry.get(strategy.id)
        if existing is not None:
            with existing.lock:
                if not existing.is_active:
                    existing.is_active = True
                    existing.next_run = self._clock()
            return existing, True
        client = self._require_client(strategy.owner_id, strategy.broker.value)
        entry = RunningStrategy(
            strategy=strategy.model_copy(update={"status": StrategyStatus.ACTIVE}),
            user_id=strategy.owner_id,
            client=client,
            next_run=self._clock(),
        )
        try:
            self.registry.add(entry)
        except AlreadyActive:
            return self.registry.get(strategy.id) or entry, True
        return entry, False

    def start_strategy(self, strategy_id: str) -> dict[str, Any]:
        strategy = sqlite_store.get_strategy(self.paths, strategy_id)
        target = next_status(strategy.status, "start")
        entry, already_active = self._activate(strategy)
        if strategy.status != target:
            sqlite_store.set_strategy_status(self.paths, strategy_id, target)
        sqlite_store.append_audit_event(
            self.paths,
            "strategy.start",
            {"strategy_id": strategy_id, "user_id": entry.user_id, "already_active": already_active},
        )
        return {
            "activated": True,
            "strategy_id": strategy_id,
            "already_active": already_active,
            "next_run": entry.next_run.isoformat(),
        }

    def stop_strategy(self, strategy_id: str) -> dict[str, Any]:
        strategy = sqlite_store.get_strategy(self.paths, strategy_id)
        try:
            entry: RunningStrategy | None = self.registry.remove(strategy_id)
        except NotActive:
            entry = None
        if entry is not None:
            # waits for an in-progress evaluation of this strategy
            with entry.lock:
                entry.is_active = False
        if strategy.status != StrategyStatus.STOPPED and can_transition(strategy.status, "stop"):
            sqlite_store.set_strategy_status(self.paths, strategy_id, StrategyStatus.STOPPED)
        sqlite_store.append_audit_event(
            self.paths,
            "strategy.stop",
            {"strategy_id": strategy_id, "was_active": entry is not None},
        )
        return {"stopped": True, "strategy_id": strategy_id, "was_active": entry is not None}

    def pause_strategy(self, strategy_id: str) -> dict[str, Any]:
        strategy = sqlite_store.get_strategy(self.paths, strategy_id)
        target = next_status(strategy.status, "pause")
        entry = self.registry.get(strategy_id)
        if entry is not None:
            with entry.lock:
                entry.is_active = False
        if strategy.status != target:
            sqlite_store.set_strategy_status(self.paths, strategy_id, target)
        sqlite_store.append_audit_event(self.paths, "strategy.pause", {"strategy_id": strategy_id})
        return {"paused": True, "strategy_id": strategy_id}

    def resume_strategy(self, strategy_id: str) -> dict[str, Any]:
        strategy = sqlite_store.get_strategy(self.paths, strategy_id)
        target = next_status(strategy.status, "resume")
        entry, _ = self._activate(strategy)
        if strategy.status != target:
            sqlite_store.set_strategy_status(self.paths, strategy_id, target)
        sqlite_store.append_audit_event(self.paths, "strategy.resume", {"strategy_id": strategy_id})
        return {"resumed": True, "strategy_id": strategy_id, "next_run": entry.next_run.isoformat()}

    def execute_strategy(self, strategy_id: str) -> dict[str, Any]:
        entry = self.registry.get(strategy_id)
        if entry is None:
            raise NotFound(f"strategy not active: {strategy_id}")
        now = self._clock()
        with traced("execute"):
            orders = self.scheduler.run_entry(entry, now)
        return {
            "strategy_id": strategy_id,
            "orders_queued": len(orders),
            "next_run": entry.next_run.isoformat(),
        }

    # queries

    def get_active_strategies(self, user_id: str) -> list[dict[str, Any]]:
        return [entry.to_dict() for entry in self.registry.for_user(user_id)]

    def get_user_portfolio(self, user_id: str) -> dict[str, Any]:
        broker, client = self._any_client(user_id)
        return {
            "user_id": user_id,
            "broker": broker,
            "positions": client.get_positions(),
            "holdings": client.get_holdings(),
            "funds": client.get_funds(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    def get_strategy_performance(self, strategy_id: str) -> dict[str, Any]:
        sqlite_store.get_strategy(self.paths, strategy_id)
        orders = sqlite_store.list_orders(self.paths, strategy_id=strategy_id, limit=10000)
        trades = sqlite_store.list_trades(self.paths, strategy_id, limit=10000)
        realized = summarize_pnls(trade["realized_pnl"] for trade in trades if trade["realized_pnl"] is not None)
        total = len(orders)
        submitted = sum(1 for order in orders if order["status"] == "submitted")
        return {
            "strategy_id": strategy_id,
            "total_orders": total,
            "successful_orders": submitted,
            "failed_orders": sum(1 for order in orders if order["status"] == "failed"),
            "rejected_orders": sum(1 for order in orders if order["status"] == "rejected"),
            "entries": sum(1 for trade in trades if trade["side"] == "entry"),
            "exits": sum(1 for trade in trades if trade["side"] == "exit"),
            "success_rate": round(submitted / total * 100.0, 2) if total else 0.0,
            **realized,
        }

    def requeue_order(self, order_id: str) -> dict[str, Any]:
        order = self.dispatcher.requeue(order_id)
        sqlite_store.append_audit_event(
            self.paths,
            "order.requeue",
            {"order_id": order_id, "user_id": order.user_id, "strategy_id": order.strategy_id},
        )
        return {
            "requeued": True,
            "order_id": order_id,
            "user_id": order.user_id,
            "pending": self.dispatcher.pending_count(order.user_id),
        }

    def run_backtest(
        self,
        strategy_id: str,
        user_id: str | None = None,
        period: str = "1m",
        initial_capital: float = 100000.0,
    ) -> dict[str, Any]:
        config = SimulationConfig(
            initial_capital=initial_capital,
            volatility=self.settings.volatility,
            liquidity=self.settings.liquidity,
            warmup_bars=self.settings.indicator_lookback,
        )
        result = run_backtest(self.paths, strategy_id, user_id=user_id, period=period, config=config)
        return result.to_dict()

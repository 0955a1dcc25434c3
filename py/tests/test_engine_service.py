from __future__ import annotations

import sqlite3
import tempfile
import threading
import time
import unittest
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any
from unittest.mock import patch

from algo_engine.brokers.base import BrokerConnection, OrderAck, OrderRequest
from algo_engine.config import EngineSettings
from algo_engine.engine.dispatcher import QueuedOrder
from algo_engine.engine.service import TradingEngine
from algo_engine.errors import BrokerFailure, InternalInvariantViolation, NoBrokerConnection, NotFound, ValidationError
from algo_engine.observability.events import read_structured_log
from algo_engine.storage import sqlite_store
from algo_engine.strategy.models import Strategy, StrategyStatus


class _FakeAdapter:
    name = "dhan"

    def __init__(self, connection: BrokerConnection) -> None:
        self.connection = connection
        self.placed: list[OrderRequest] = []
        self.healthy = True

    def place_order(self, request: OrderRequest) -> OrderAck:
        self.placed.append(request)
        return OrderAck(broker=self.name, order_id=f"D{len(self.placed)}", status="PENDING", raw={})

    def cancel_order(self, order_id: str) -> dict[str, Any]:
        return {"order_id": order_id, "status": "CANCELLED"}

    def get_positions(self) -> list[dict[str, Any]]:
        return [{"securityId": "13", "netQty": 50}]

    def get_order_book(self) -> list[dict[str, Any]]:
        return []

    def get_holdings(self) -> list[dict[str, Any]]:
        return []

    def get_funds(self) -> dict[str, Any]:
        return {"availableBalance": 250000.0}

    def test_connection(self) -> dict[str, Any]:
        if not self.healthy:
            raise BrokerFailure("dhan", "http_error", "token expired", status_code=401)
        return {"connected": True, "broker": "dhan"}


class _GatedAdapter(_FakeAdapter):
    def __init__(self, connection: BrokerConnection) -> None:
        super().__init__(connection)
        self.started = threading.Event()
        self.release = threading.Event()

    def place_order(self, request: OrderRequest) -> OrderAck:
        self.started.set()
        self.release.wait(10)
        return super().place_order(request)


def _strategy(strategy_id: str = "strat-1", **overrides: object) -> Strategy:
    payload: dict[str, object] = {
        "id": strategy_id,
        "owner_id": "user-1",
        "name": "Nifty straddle",
        "kind": "time_based",
        "broker": "dhan",
        "instrument": "nifty-50-idx-nse",
        "security_id": "13",
        "exchange_segment": "NSE_FNO",
        "start_time": "09:15",
        "square_off_time": "15:15",
        "order_legs": [{"action": "BUY", "quantity": 50}],
    }
    payload.update(overrides)
    return Strategy.model_validate(payload)


class TradingEngineTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.now = datetime(2024, 3, 4, 9, 15)
        self.adapters: list[_FakeAdapter] = []
        settings = EngineSettings(home=Path(self._tmp.name), tick_seconds=60.0, drain_seconds=1.0, dispatch_workers=2)
        self.engine = TradingEngine(settings, clock=lambda: self.now, adapter_factory=self._build_adapter)
        self.engine.initialize()
        self.paths = self.engine.paths

    def tearDown(self) -> None:
        self.engine.close()
        self._tmp.cleanup()

    def _build_adapter(self, connection: BrokerConnection, timeout_seconds: float) -> _FakeAdapter:
        adapter = _FakeAdapter(connection)
        self.adapters.append(adapter)
        return adapter

    def _drain(self) -> list[dict[str, Any]]:
        return [future.result(timeout=5) for future in self.engine.drain_orders()]

    def _connect(self, user_id: str = "user-1") -> _FakeAdapter:
        self.engine.connect_broker(user_id, "dhan", {"client_id": "1000", "access_token": "token-abcdefgh-1234"})
        return self.adapters[-1]

    def test_start_is_idempotent(self) -> None:
        self._connect()
        sqlite_store.save_strategy(self.paths, _strategy())

        first = self.engine.start_strategy("strat-1")
        second = self.engine.start_strategy("strat-1")

        self.assertFalse(first["already_active"])
        self.assertTrue(second["already_active"])
        self.assertEqual(self.engine.registry.size(), 1)
        self.assertEqual(sqlite_store.get_strategy(self.paths, "strat-1").status, StrategyStatus.ACTIVE)
        self.assertEqual(first["next_run"], self.now.isoformat())

    def test_stop_is_idempotent(self) -> None:
        self._connect()
        sqlite_store.save_strategy(self.paths, _strategy())
        self.engine.start_strategy("strat-1")

        first = self.engine.stop_strategy("strat-1")
        second = self.engine.stop_strategy("strat-1")

        self.assertTrue(first["was_active"])
        self.assertFalse(second["was_active"])
        self.assertEqual(self.engine.registry.size(), 0)
        self.assertEqual(sqlite_store.get_strategy(self.paths, "strat-1").status, StrategyStatus.STOPPED)
        with self.assertRaises(NotFound):
            self.engine.execute_strategy("strat-1")

    def test_start_without_broker_connection_fails(self) -> None:
        sqlite_store.save_strategy(self.paths, _strategy())
        with self.assertRaises(NoBrokerConnection):
            self.engine.start_strategy("strat-1")
        self.assertEqual(self.engine.registry.size(), 0)
        self.assertEqual(sqlite_store.get_strategy(self.paths, "strat-1").status, StrategyStatus.DRAFT)

    def test_start_rejects_unrunnable_strategies(self) -> None:
        self._connect()
        sqlite_store.save_strategy(self.paths, _strategy("strat-ownerless", owner_id=""))
        sqlite_store.save_strategy(self.paths, _strategy("strat-legless", order_legs=[]))

        with self.assertRaises(InternalInvariantViolation):
            self.engine.start_strategy("strat-ownerless")
        with self.assertRaises(ValidationError):
            self.engine.start_strategy("strat-legless")
        self.assertEqual(self.engine.registry.size(), 0)
        self.assertEqual(len(read_structured_log(self.paths, "strategy.invariant_violation")), 1)

    def test_entry_and_square_off_flow_through_dispatcher(self) -> None:
        adapter = self._connect()
        sqlite_store.save_strategy(self.paths, _strategy())
        self.engine.start_strategy("strat-1")

        executed = self.engine.execute_strategy("strat-1")
        self.assertEqual(executed["orders_queued"], 1)
        self.assertEqual(executed["next_run"], datetime(2024, 3, 4, 15, 15).isoformat())
        [entry_result] = self._drain()
        self.assertEqual(entry_result["status"], "submitted")

        self.now = datetime(2024, 3, 4, 15, 15)
        summary = self.engine.scheduler.tick()
        self.assertEqual(summary["orders_queued"], 1)
        self._drain()

        self.assertEqual([request.transaction_type for request in adapter.placed], ["BUY", "SELL"])
        self.assertEqual(self.engine.registry.get("strat-1").next_run, datetime(2024, 3, 5, 9, 15))
        performance = self.engine.get_strategy_performance("strat-1")
        self.assertEqual(performance["total_orders"], 2)
        self.assertEqual(performance["successful_orders"], 2)
        self.assertEqual(performance["entries"], 1)
        self.assertEqual(performance["exits"], 1)
        self.assertEqual(performance["success_rate"], 100.0)

    def test_paused_strategy_is_skipped_until_resumed(self) -> None:
        self._connect()
        sqlite_store.save_strategy(self.paths, _strategy())
        self.engine.start_strategy("strat-1")

        self.engine.pause_strategy("strat-1")
        self.assertEqual(self.engine.scheduler.tick()["evaluated"], 0)
        self.assertEqual(sqlite_store.get_strategy(self.paths, "strat-1").status, StrategyStatus.PAUSED)

        self.engine.resume_strategy("strat-1")
        self.assertEqual(self.engine.scheduler.tick()["evaluated"], 1)
        self.assertEqual(sqlite_store.get_strategy(self.paths, "strat-1").status, StrategyStatus.ACTIVE)

    def test_initialize_restores_active_strategies(self) -> None:
        self._connect()
        sqlite_store.save_strategy(self.paths, _strategy(status="active"))
        sqlite_store.save_strategy(self.paths, _strategy("strat-orphan", owner_id="user-9", status="active"))

        restored = TradingEngine(
            self.engine.settings,
            clock=lambda: self.now,
            adapter_factory=self._build_adapter,
        )
        try:
            summary = restored.initialize()
            self.assertEqual(summary["strategies_loaded"], 1)
            self.assertEqual(summary["connections"], 1)
            self.assertEqual(
                [item["strategy_id"] for item in restored.get_active_strategies("user-1")],
                ["strat-1"],
            )
            errors = read_structured_log(self.paths, "strategy.restore_error")
            self.assertEqual([row["strategy_id"] for row in errors], ["strat-orphan"])
        finally:
            restored.close()

    def test_unhealthy_connection_is_marked_and_dropped(self) -> None:
        adapter = self._connect()
        self.assertTrue(self.engine.check_broker_connection("user-1")["connected"])

        adapter.healthy = False
        with self.assertRaises(BrokerFailure):
            self.engine.check_broker_connection("user-1")
        self.assertIsNone(sqlite_store.get_broker_connection(self.paths, "user-1"))
        events = sqlite_store.list_audit_events(self.paths, event_type="broker.unhealthy")
        self.assertEqual(events[0]["payload"]["error"]["status_code"], 401)

    def test_portfolio_and_status(self) -> None:
        self._connect()
        portfolio = self.engine.get_user_portfolio("user-1")
        self.assertEqual(portfolio["broker"], "dhan")
        self.assertEqual(portfolio["funds"]["availableBalance"], 250000.0)
        with self.assertRaises(NoBrokerConnection):
            self.engine.get_user_portfolio("user-2")

        status = self.engine.get_engine_status()
        self.assertTrue(status["initialized"])
        self.assertFalse(status["running"])
        self.assertEqual(status["connected_user_count"], 1)
        self.assertEqual(status["order_queue_count"], 0)

    def test_engine_start_and_stop_threads(self) -> None:
        started = self.engine.start()
        self.assertTrue(started["running"])
        stopped = self.engine.stop()
        self.assertFalse(stopped["running"])
        events = [row["event_type"] for row in sqlite_store.list_audit_events(self.paths)]
        self.assertIn("engine.start", events)
        self.assertIn("engine.stop", events)

    def test_slow_broker_does_not_hold_up_other_users(self) -> None:
        adapters: dict[str, _FakeAdapter] = {}

        def build(connection: BrokerConnection, timeout_seconds: float) -> _FakeAdapter:
            adapter = _GatedAdapter(connection) if connection.user_id == "alice" else _FakeAdapter(connection)
            adapters[connection.user_id] = adapter
            return adapter

        def queued(user_id: str) -> QueuedOrder:
            request = OrderRequest(
                transaction_type="BUY",
                exchange_segment="NSE_FNO",
                product_type="INTRADAY",
                order_type="MARKET",
                security_id="13",
                quantity=50,
            )
            return QueuedOrder(user_id=user_id, strategy_id=f"strat-{user_id}", broker="dhan", request=request)

        engine = TradingEngine(
            replace(self.engine.settings, drain_seconds=0.05),
            clock=lambda: self.now,
            adapter_factory=build,
        )
        credentials = {"client_id": "1000", "access_token": "token-abcdefgh-1234"}
        engine.connect_broker("alice", "dhan", credentials)
        engine.connect_broker("bob", "dhan", credentials)
        alice = adapters["alice"]
        bob = adapters["bob"]
        try:
            engine.dispatcher.enqueue(queued("alice"))
            engine.dispatcher.enqueue_many([queued("bob") for _ in range(3)])
            engine.start()

            self.assertTrue(alice.started.wait(5))  # type: ignore[attr-defined]
            deadline = time.monotonic() + 5
            while len(bob.placed) < 3 and time.monotonic() < deadline:
                time.sleep(0.02)

            self.assertEqual(len(bob.placed), 3)
            self.assertEqual(alice.placed, [])
        finally:
            alice.release.set()  # type: ignore[attr-defined]
            engine.close()
        self.assertEqual(len(alice.placed), 1)
        self.assertEqual(len(sqlite_store.list_orders(self.paths, user_id="bob")), 3)

    def test_dispatch_failure_is_logged_with_drain_trace(self) -> None:
        self._connect()
        sqlite_store.save_strategy(self.paths, _strategy())
        self.engine.start_strategy("strat-1")
        self.engine.execute_strategy("strat-1")

        with patch.object(sqlite_store, "_insert_trade", side_effect=sqlite3.OperationalError("disk I/O error")):
            [future] = self.engine.drain_orders()
            self.engine.close()

        self.assertIsInstance(future.exception(), sqlite3.OperationalError)
        [row] = read_structured_log(self.paths, "order.dispatch_error")
        self.assertEqual(row["error_type"], "OperationalError")
        self.assertTrue(row["trace_id"].startswith("drain-"))
        self.assertEqual(sqlite_store.list_orders(self.paths, strategy_id="strat-1"), [])

    def test_credentials_are_redacted_in_audit_log(self) -> None:
        self._connect()
        connection = sqlite_store.get_broker_connection(self.paths, "user-1")
        self.assertEqual(connection["credentials"]["access_token"], "token-abcdefgh-1234")
        for event in sqlite_store.list_audit_events(self.paths):
            self.assertNotIn("token-abcdefgh-1234", str(event["payload"]))


if __name__ == "__main__":
    unittest.main()

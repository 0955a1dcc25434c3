from __future__ import annotations

import sqlite3
import tempfile
import threading
import unittest
from pathlib import Path
from typing import Any
from unittest.mock import patch

from algo_engine.brokers.base import OrderAck, OrderRequest, validate_order_request
from algo_engine.engine.dispatcher import OrderDispatcher, QueuedOrder
from algo_engine.errors import BrokerFailure, ValidationError
from algo_engine.observability.events import read_structured_log
from algo_engine.storage import sqlite_store
from algo_engine.storage.paths import RuntimePaths


def _request(**overrides: Any) -> OrderRequest:
    payload: dict[str, Any] = {
        "transaction_type": "BUY",
        "exchange_segment": "NSE_FNO",
        "product_type": "INTRADAY",
        "order_type": "MARKET",
        "security_id": "43125",
        "quantity": 50,
    }
    payload.update(overrides)
    return OrderRequest(**payload)


class _RecordingAdapter:
    name = "dhan"

    def __init__(self, failure: Exception | None = None) -> None:
        self.failure = failure
        self.placed: list[OrderRequest] = []

    def place_order(self, request: OrderRequest) -> OrderAck:
        validate_order_request(request)
        if self.failure is not None:
            raise self.failure
        self.placed.append(request)
        return OrderAck(broker=self.name, order_id=f"B-{len(self.placed)}", status="TRANSIT", raw={"orderStatus": "TRANSIT"})


class _BlockingAdapter(_RecordingAdapter):
    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def place_order(self, request: OrderRequest) -> OrderAck:
        self.started.set()
        self.release.wait(5)
        return super().place_order(request)


class OrderDispatcherTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.paths = RuntimePaths(root=Path(self._tmp.name))
        sqlite_store.init_db(self.paths)
        self.clients: dict[tuple[str, str], _RecordingAdapter] = {}
        self.dispatcher = OrderDispatcher(self.paths, lambda user, broker: self.clients.get((user, broker)), max_workers=4)

    def tearDown(self) -> None:
        self.dispatcher.shutdown(wait=True)
        self._tmp.cleanup()

    def _order(self, user_id: str, **request: Any) -> QueuedOrder:
        return QueuedOrder(user_id=user_id, strategy_id=f"strat-{user_id}", broker="dhan", request=_request(**request))

    def _drain(self) -> list[dict[str, Any]]:
        return [future.result(timeout=5) for future in self.dispatcher.drain()]

    def test_failure_for_one_user_does_not_affect_another(self) -> None:
        self.clients[("alice", "dhan")] = _RecordingAdapter(
            failure=BrokerFailure("dhan", "http_error", "gateway timeout", status_code=504)
        )
        healthy = _RecordingAdapter()
        self.clients[("bob", "dhan")] = healthy
        self.dispatcher.enqueue(self._order("alice"))
        self.dispatcher.enqueue(self._order("bob"))

        results = {row["user_id"]: row for row in self._drain()}

        self.assertEqual(results["alice"]["status"], "failed")
        self.assertEqual(results["alice"]["error_code"], "http_error")
        self.assertEqual(results["bob"]["status"], "submitted")
        self.assertEqual(results["bob"]["broker_order_id"], "B-1")
        self.assertEqual(len(healthy.placed), 1)
        self.assertEqual(len(read_structured_log(self.paths, "order.error")), 1)
        self.assertEqual(len(read_structured_log(self.paths, "order.submitted")), 1)

    def test_invalid_request_is_rejected_without_broker_call(self) -> None:
        adapter = _RecordingAdapter()
        self.clients[("alice", "dhan")] = adapter
        self.dispatcher.enqueue(self._order("alice", quantity=0, exchange_segment="NYSE"))

        [result] = self._drain()

        self.assertEqual(result["status"], "rejected")
        self.assertEqual(result["error_code"], "validation_error")
        self.assertEqual(adapter.placed, [])
        stored = sqlite_store.get_order(self.paths, result["order_id"])
        fields = {item["field"] for item in stored["response"]["errors"]}
        self.assertEqual(fields, {"quantity", "exchange_segment"})

    def test_missing_connection_is_recorded(self) -> None:
        self.dispatcher.enqueue(self._order("carol"))
        [result] = self._drain()
        self.assertEqual(result["status"], "failed")
        self.assertEqual(result["error_code"], "no_broker_connection")

    def test_one_order_in_flight_per_user(self) -> None:
        blocking = _BlockingAdapter()
        self.clients[("alice", "dhan")] = blocking
        self.dispatcher.enqueue_many([self._order("alice"), self._order("alice", transaction_type="SELL")])

        first = self.dispatcher.drain()
        self.assertEqual(len(first), 1)
        self.assertTrue(blocking.started.wait(5))
        self.assertEqual(self.dispatcher.drain(), [])
        self.assertEqual(self.dispatcher.pending_count("alice"), 1)
        self.assertEqual(self.dispatcher.in_flight_users(), {"alice"})

        blocking.release.set()
        first[0].result(timeout=5)
        second = self._drain()
        self.assertEqual(len(second), 1)
        self.assertEqual([request.transaction_type for request in blocking.placed], ["BUY", "SELL"])
        self.assertEqual(self.dispatcher.pending_count(), 0)

    def test_requeue_failed_order_only(self) -> None:
        self.clients[("alice", "dhan")] = _RecordingAdapter(failure=BrokerFailure("dhan", "DH-905", "bad input"))
        self.dispatcher.enqueue(self._order("alice"))
        [failed] = self._drain()

        retried = self.dispatcher.requeue(failed["order_id"])
        self.assertEqual(retried.attempt_of, failed["order_id"])
        self.assertEqual(self.dispatcher.pending_count("alice"), 1)

        self.clients[("alice", "dhan")] = _RecordingAdapter()
        [accepted] = self._drain()
        self.assertEqual(accepted["status"], "submitted")
        self.assertEqual(sqlite_store.get_order(self.paths, accepted["order_id"])["attempt_of"], failed["order_id"])
        with self.assertRaises(ValidationError):
            self.dispatcher.requeue(accepted["order_id"])

    def test_trade_rows_carry_context(self) -> None:
        self.clients[("alice", "dhan")] = _RecordingAdapter()
        self.dispatcher.enqueue(
            QueuedOrder(
                user_id="alice",
                strategy_id="strat-alice",
                broker="dhan",
                request=_request(transaction_type="SELL"),
                side="exit",
                exit_reason="Square-off",
            )
        )
        self._drain()
        [trade] = sqlite_store.list_trades(self.paths, "strat-alice")
        self.assertEqual(trade["side"], "exit")
        self.assertEqual(trade["exit_reason"], "Square-off")
        self.assertEqual(trade["status"], "transit")

    def test_order_row_is_rolled_back_when_trade_insert_fails(self) -> None:
        self.clients[("alice", "dhan")] = _RecordingAdapter()
        self.dispatcher.enqueue(self._order("alice"))

        with patch.object(sqlite_store, "_insert_trade", side_effect=sqlite3.OperationalError("disk I/O error")):
            [future] = self.dispatcher.drain()
            with self.assertRaises(sqlite3.OperationalError):
                future.result(timeout=5)

        self.assertEqual(sqlite_store.list_orders(self.paths), [])
        self.assertEqual(sqlite_store.list_trades(self.paths, "strat-alice"), [])
        self.assertEqual(self.dispatcher.in_flight_users(), set())

    def test_enqueue_after_shutdown_fails(self) -> None:
        self.dispatcher.shutdown(wait=True)
        with self.assertRaises(RuntimeError):
            self.dispatcher.enqueue(self._order("alice"))


if __name__ == "__main__":
    unittest.main()

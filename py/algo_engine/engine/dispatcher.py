from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from algo_engine.brokers.base import BrokerAdapter, OrderAck, OrderRequest
from algo_engine.errors import BrokerFailure, NoBrokerConnection, NotFound, OrderValidationError, ValidationError
from algo_engine.observability.context import get_trace_id, reset_trace_id, set_trace_id
from algo_engine.observability.events import write_structured_log
from algo_engine.storage.paths import RuntimePaths
from algo_engine.storage.sqlite_store import get_order, save_order_with_trade

ClientResolver = Callable[[str, str], "BrokerAdapter | None"]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class QueuedOrder:
    user_id: str
    strategy_id: str
    broker: str
    request: OrderRequest
    side: str = "entry"
    entry_condition: str | None = None
    exit_reason: str | None = None
    stop_loss: float | None = None
    target: float | None = None
    attempt_of: str | None = None
    enqueued_at: str = field(default_factory=_utc_now)

    def context(self) -> dict[str, Any]:
        return {
            "side": self.side,
            "entry_condition": self.entry_condition,
            "exit_reason": self.exit_reason,
            "stop_loss": self.stop_loss,
            "target": self.target,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "QueuedOrder":
        context = record.get("context") or {}
        return cls(
            user_id=record["user_id"],
            strategy_id=record["strategy_id"],
            broker=record["broker"],
            request=OrderRequest.from_dict(record["request"]),
            side=context.get("side") or "entry",
            entry_condition=context.get("entry_condition"),
            exit_reason=context.get("exit_reason"),
            stop_loss=context.get("stop_loss"),
            target=context.get("target"),
            attempt_of=record["order_id"],
        )


class OrderDispatcher:
    """Per-user FIFO queues drained onto a bounded worker pool.

    At most one order per user is in flight at any time, so a slow broker
    only delays its own user and an adapter is never called concurrently.
    """

    def __init__(self, paths: RuntimePaths, client_for: ClientResolver, max_workers: int = 8) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._paths = paths
        self._client_for = client_for
        self._lock = threading.Lock()
        self._queues: dict[str, deque[QueuedOrder]] = {}
        self._in_flight: set[str] = set()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="order-dispatch")
        self._closed = False

    def enqueue(self, order: QueuedOrder) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("dispatcher is shut down")
            self._queues.setdefault(order.user_id, deque()).append(order)

    def enqueue_many(self, orders: list[QueuedOrder]) -> int:
        for order in orders:
            self.enqueue(order)
        return len(orders)

    def pending_count(self, user_id: str | None = None) -> int:
        with self._lock:
            if user_id is not None:
                return len(self._queues.get(user_id, ()))
            return sum(len(queue) for queue in self._queues.values())

    def in_flight_users(self) -> set[str]:
        with self._lock:
            return set(self._in_flight)

    def drain(self) -> list[Future]:
        """Submit the head of every idle user's queue; return the submission futures."""
        trace_id = get_trace_id()
        futures: list[Future] = []
        with self._lock:
            if self._closed:
                return futures
            for user_id in list(self._queues):
                queue = self._queues[user_id]
                if not queue:
                    del self._queues[user_id]
                    continue
                if user_id in self._in_flight:
                    continue
                order = queue.popleft()
                if not queue:
                    del self._queues[user_id]
                self._in_flight.add(user_id)
                futures.append(self._executor.submit(self._submit, order, trace_id))
        return futures

    def _release(self, user_id: str) -> None:
        with self._lock:
            self._in_flight.discard(user_id)

    def _submit(self, order: QueuedOrder, trace_id: str) -> dict[str, Any]:
        token = set_trace_id(trace_id)
        try:
            return self._place(order)
        finally:
            self._release(order.user_id)
            reset_trace_id(token)

    def _place(self, order: QueuedOrder) -> dict[str, Any]:
        ack: OrderAck | None = None
        status = "submitted"
        error_code: str | None = None
        error_message: str | None = None
        response: Any = None
        try:
            client = self._client_for(order.user_id, order.broker)
            if client is None:
                raise NoBrokerConnection(f"no connected {order.broker} broker for user {order.user_id}")
            ack = client.place_order(order.request)
            response = ack.raw
        except OrderValidationError as exc:
            status, error_code, error_message = "rejected", "validation_error", str(exc)
            response = {"errors": exc.errors}
        except BrokerFailure as exc:
            status, error_code, error_message = "failed", exc.code, exc.message
            response = exc.response if isinstance(exc.response, dict) else None
        except NotFound as exc:
            status, error_code, error_message = "failed", exc.code, str(exc)
        except Exception as exc:  # worker boundary: the failure is recorded on the order row
            status, error_code, error_message = "failed", "internal_error", f"{type(exc).__name__}: {exc}"

        order_id, _ = save_order_with_trade(
            self._paths,
            {
                "user_id": order.user_id,
                "strategy_id": order.strategy_id,
                "broker": order.broker,
                "broker_order_id": ack.order_id if ack else None,
                "status": status,
                "request": order.request.to_dict(),
                "context": order.context(),
                "response": response,
                "error_code": error_code,
                "error_message": error_message,
                "attempt_of": order.attempt_of,
                "enqueued_at": order.enqueued_at,
            },
            {
                "user_id": order.user_id,
                "strategy_id": order.strategy_id,
                "broker": order.broker,
                "security_id": order.request.security_id,
                "side": order.side,
                "transaction_type": order.request.transaction_type,
                "quantity": order.request.quantity,
                "status": (ack.status.lower() if ack and ack.status else status),
                "entry_condition": order.entry_condition,
                "exit_reason": order.exit_reason,
                "stop_loss": order.stop_loss,
                "target": order.target,
                "average_price": ack.average_price if ack else None,
                "filled_quantity": ack.filled_quantity if ack else None,
                "payload": {"trading_symbol": order.request.trading_symbol, "error_code": error_code},
            },
        )
        result = {
            "order_id": order_id,
            "user_id": order.user_id,
            "strategy_id": order.strategy_id,
            "broker": order.broker,
            "broker_order_id": ack.order_id if ack else None,
            "status": status,
            "error_code": error_code,
            "error_message": error_message,
        }
        write_structured_log(self._paths, "order.submitted" if error_code is None else "order.error", result)
        return result

    def requeue(self, order_id: str) -> QueuedOrder:
        record = get_order(self._paths, order_id)
        if record["status"] == "submitted":
            raise ValidationError(f"order {order_id} was accepted by the broker and cannot be requeued")
        order = QueuedOrder.from_record(record)
        self.enqueue(order)
        write_structured_log(
            self._paths,
            "order.requeued",
            {"order_id": order_id, "user_id": order.user_id, "strategy_id": order.strategy_id},
        )
        return order

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait, cancel_futures=True)

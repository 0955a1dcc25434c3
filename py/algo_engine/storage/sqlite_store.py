from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Optional

from algo_engine.errors import NotFound
from algo_engine.observability.context import get_trace_id
from algo_engine.security import open_credentials, redact_payload, seal_credentials
from algo_engine.storage.paths import RuntimePaths
from algo_engine.strategy.models import Strategy, StrategyStatus


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@contextmanager
def connect(paths: RuntimePaths) -> Generator[sqlite3.Connection, None, None]:
    paths.ensure()
    conn = sqlite3.connect(paths.sqlite_path, timeout=30.0)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(paths: RuntimePaths) -> None:
    with connect(paths) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS strategies (
                id TEXT PRIMARY KEY,
                owner_id TEXT NOT NULL,
                name TEXT NOT NULL,
                kind TEXT NOT NULL,
                broker TEXT NOT NULL,
                status TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                last_run_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS broker_connections (
                user_id TEXT NOT NULL,
                broker TEXT NOT NULL,
                credentials_json TEXT NOT NULL,
                is_connected INTEGER NOT NULL,
                is_active INTEGER NOT NULL,
                sandbox INTEGER NOT NULL DEFAULT 0,
                profile_json TEXT,
                last_error TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (user_id, broker)
            );

            CREATE TABLE IF NOT EXISTS orders (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                strategy_id TEXT NOT NULL,
                broker TEXT NOT NULL,
                broker_order_id TEXT,
                status TEXT NOT NULL,
                request_json TEXT NOT NULL,
                context_json TEXT NOT NULL,
                response_json TEXT,
                error_code TEXT,
                error_message TEXT,
                attempt_of TEXT,
                enqueued_at TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS trades (
                id TEXT PRIMARY KEY,
                order_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                strategy_id TEXT NOT NULL,
                broker TEXT NOT NULL,
                security_id TEXT NOT NULL,
                side TEXT NOT NULL,
                transaction_type TEXT NOT NULL,
                quantity INTEGER NOT NULL,
                status TEXT NOT NULL,
                entry_condition TEXT,
                exit_reason TEXT,
                stop_loss REAL,
                target REAL,
                average_price REAL,
                filled_quantity INTEGER,
                realized_pnl REAL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS backtest_results (
                id TEXT PRIMARY KEY,
                strategy_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                strategy_name TEXT NOT NULL,
                instrument TEXT NOT NULL,
                period TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                summary_json TEXT NOT NULL,
                trades_json TEXT NOT NULL,
                equity_curve_json TEXT NOT NULL,
                run_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_orders_strategy ON orders (strategy_id);
            CREATE INDEX IF NOT EXISTS idx_trades_strategy ON trades (strategy_id);
            CREATE INDEX IF NOT EXISTS idx_backtest_results_strategy ON backtest_results (strategy_id, user_id);
            """
        )
        conn.commit()


def _strategy_from_row(row: sqlite3.Row) -> Strategy:
    payload = json.loads(row["payload_json"])
    payload["status"] = row["status"]
    payload["last_run_at"] = row["last_run_at"]
    return Strategy.model_validate(payload)


def save_strategy(paths: RuntimePaths, strategy: Strategy) -> None:
    now = _utc_now()
    payload = strategy.model_dump(mode="json")
    with connect(paths) as conn:
        conn.execute(
            """
            INSERT INTO strategies
              (id, owner_id, name, kind, broker, status, payload_json, last_run_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id)
            DO UPDATE SET
              owner_id = excluded.owner_id,
              name = excluded.name,
              kind = excluded.kind,
              broker = excluded.broker,
              status = excluded.status,
              payload_json = excluded.payload_json,
              updated_at = excluded.updated_at
            """,
            (
                strategy.id,
                strategy.owner_id,
                strategy.name,
                strategy.kind.value,
                strategy.broker.value,
                strategy.status.value,
                json.dumps(payload),
                strategy.last_run_at,
                now,
                now,
            ),
        )
        conn.commit()


def get_strategy(paths: RuntimePaths, strategy_id: str) -> Strategy:
    with connect(paths) as conn:
        row = conn.execute(
            "SELECT payload_json, status, last_run_at FROM strategies WHERE id = ?",
            (strategy_id,),
        ).fetchone()
    if row is None:
        raise NotFound(f"strategy not found: {strategy_id}")
    return _strategy_from_row(row)


def list_strategies(
    paths: RuntimePaths,
    status: StrategyStatus | str | None = None,
    owner_id: str | None = None,
) -> list[Strategy]:
    clauses: list[str] = []
    params: list[Any] = []
    if status is not None:
        clauses.append("status = ?")
        params.append(StrategyStatus(status).value)
    if owner_id is not None:
        clauses.append("owner_id = ?")
        params.append(owner_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect(paths) as conn:
        rows = conn.execute(
            f"SELECT payload_json, status, last_run_at FROM strategies {where} ORDER BY created_at ASC",
            tuple(params),
        ).fetchall()
    return [_strategy_from_row(row) for row in rows]


def set_strategy_status(paths: RuntimePaths, strategy_id: str, status: StrategyStatus | str) -> None:
    with connect(paths) as conn:
        cursor = conn.execute(
            "UPDATE strategies SET status = ?, updated_at = ? WHERE id = ?",
            (StrategyStatus(status).value, _utc_now(), strategy_id),
        )
        conn.commit()
    if cursor.rowcount == 0:
        raise NotFound(f"strategy not found: {strategy_id}")


def touch_strategy_last_run(paths: RuntimePaths, strategy_id: str, run_at: str | None = None) -> str:
    stamp = run_at or _utc_now()
    with connect(paths) as conn:
        cursor = conn.execute(
            "UPDATE strategies SET last_run_at = ?, updated_at = ? WHERE id = ?",
            (stamp, _utc_now(), strategy_id),
        )
        conn.commit()
    if cursor.rowcount == 0:
        raise NotFound(f"strategy not found: {strategy_id}")
    return stamp


def upsert_broker_connection(
    paths: RuntimePaths,
    user_id: str,
    broker: str,
    credentials: dict[str, Any],
    is_connected: bool = True,
    is_active: bool = True,
    sandbox: bool = False,
    profile: dict[str, Any] | None = None,
) -> None:
    if not user_id:
        raise ValueError("user_id is required")
    if not broker:
        raise ValueError("broker is required")
    serialized = seal_credentials(credentials)
    now = _utc_now()
    with connect(paths) as conn:
        conn.execute(
            """
            INSERT INTO broker_connections
              (user_id, broker, credentials_json, is_connected, is_active, sandbox, profile_json, last_error, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
            ON CONFLICT(user_id, broker)
            DO UPDATE SET
              credentials_json = excluded.credentials_json,
              is_connected = excluded.is_connected,
              is_active = excluded.is_active,
              sandbox = excluded.sandbox,
              profile_json = excluded.profile_json,
              last_error = NULL,
              updated_at = excluded.updated_at
            """,
            (
                user_id,
                broker,
                serialized,
                int(is_connected),
                int(is_active),
                int(sandbox),
                json.dumps(profile or {}),
                now,
                now,
            ),
        )
        conn.commit()


def _connection_from_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "user_id": row["user_id"],
        "broker": row["broker"],
        "credentials": open_credentials(str(row["credentials_json"])),
        "is_connected": bool(row["is_connected"]),
        "is_active": bool(row["is_active"]),
        "sandbox": bool(row["sandbox"]),
        "profile": json.loads(row["profile_json"]) if row["profile_json"] else {},
        "last_error": row["last_error"],
        "updated_at": row["updated_at"],
    }


def get_broker_connection(paths: RuntimePaths, user_id: str, broker: str | None = None) -> Optional[dict[str, Any]]:
    """Return the connected, active broker connection for a user, if any."""
    query = """
        SELECT * FROM broker_connections
        WHERE user_id = ? AND is_connected = 1 AND is_active = 1
    """
    params: tuple[Any, ...] = (user_id,)
    if broker:
        query += " AND broker = ?"
        params = (user_id, broker)
    query += " ORDER BY updated_at DESC LIMIT 1"
    with connect(paths) as conn:
        row = conn.execute(query, params).fetchone()
    if row is None:
        return None
    return _connection_from_row(row)


def list_broker_connections(paths: RuntimePaths, connected_only: bool = True) -> list[dict[str, Any]]:
    query = "SELECT * FROM broker_connections"
    if connected_only:
        query += " WHERE is_connected = 1 AND is_active = 1"
    query += " ORDER BY user_id ASC, broker ASC"
    with connect(paths) as conn:
        rows = conn.execute(query).fetchall()
    return [_connection_from_row(row) for row in rows]


def mark_broker_connection_unhealthy(paths: RuntimePaths, user_id: str, broker: str, error: str) -> None:
    with connect(paths) as conn:
        conn.execute(
            """
            UPDATE broker_connections
            SET is_connected = 0, last_error = ?, updated_at = ?
            WHERE user_id = ? AND broker = ?
            """,
            (error, _utc_now(), user_id, broker),
        )
        conn.commit()


def _insert_order(conn: sqlite3.Connection, order_id: str, record: dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO orders (
            id, user_id, strategy_id, broker, broker_order_id, status, request_json, context_json,
            response_json, error_code, error_message, attempt_of, enqueued_at, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            order_id,
            record["user_id"],
            record["strategy_id"],
            record["broker"],
            record.get("broker_order_id"),
            record["status"],
            json.dumps(record["request"]),
            json.dumps(record.get("context", {})),
            json.dumps(redact_payload(record["response"])) if record.get("response") is not None else None,
            record.get("error_code"),
            record.get("error_message"),
            record.get("attempt_of"),
            record.get("enqueued_at") or _utc_now(),
            _utc_now(),
        ),
    )


def _order_from_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "order_id": row["id"],
        "user_id": row["user_id"],
        "strategy_id": row["strategy_id"],
        "broker": row["broker"],
        "broker_order_id": row["broker_order_id"],
        "status": row["status"],
        "request": json.loads(row["request_json"]),
        "context": json.loads(row["context_json"]),
        "response": json.loads(row["response_json"]) if row["response_json"] else None,
        "error_code": row["error_code"],
        "error_message": row["error_message"],
        "attempt_of": row["attempt_of"],
        "enqueued_at": row["enqueued_at"],
        "created_at": row["created_at"],
    }


def get_order(paths: RuntimePaths, order_id: str) -> dict[str, Any]:
    with connect(paths) as conn:
        row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    if row is None:
        raise NotFound(f"order not found: {order_id}")
    return _order_from_row(row)


def list_orders(
    paths: RuntimePaths,
    strategy_id: str | None = None,
    user_id: str | None = None,
    limit: int = 500,
) -> list[dict[str, Any]]:
    if limit <= 0:
        raise ValueError("limit must be positive")
    clauses: list[str] = []
    params: list[Any] = []
    if strategy_id:
        clauses.append("strategy_id = ?")
        params.append(strategy_id)
    if user_id:
        clauses.append("user_id = ?")
        params.append(user_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with connect(paths) as conn:
        rows = conn.execute(
            f"SELECT * FROM orders {where} ORDER BY created_at ASC LIMIT ?",
            (*params, limit),
        ).fetchall()
    return [_order_from_row(row) for row in rows]


def _insert_trade(conn: sqlite3.Connection, trade_id: str, record: dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO trades (
            id, order_id, user_id, strategy_id, broker, security_id, side, transaction_type, quantity, status,
            entry_condition, exit_reason, stop_loss, target, average_price, filled_quantity, realized_pnl,
            payload_json, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            trade_id,
            record["order_id"],
            record["user_id"],
            record["strategy_id"],
            record["broker"],
            record["security_id"],
            record["side"],
            record["transaction_type"],
            int(record["quantity"]),
            record["status"],
            record.get("entry_condition"),
            record.get("exit_reason"),
            record.get("stop_loss"),
            record.get("target"),
            record.get("average_price"),
            record.get("filled_quantity"),
            record.get("realized_pnl"),
            json.dumps(record.get("payload", {})),
            _utc_now(),
        ),
    )


def save_order_with_trade(paths: RuntimePaths, order: dict[str, Any], trade: dict[str, Any]) -> tuple[str, str]:
    """Insert a submission attempt and its trade row atomically; the trade is linked to the new order id."""
    order_id = str(order.get("id") or uuid.uuid4())
    trade_id = str(uuid.uuid4())
    with connect(paths) as conn:
        _insert_order(conn, order_id, order)
        _insert_trade(conn, trade_id, {**trade, "order_id": order_id})
        conn.commit()
    return order_id, trade_id


def list_trades(paths: RuntimePaths, strategy_id: str, limit: int = 1000) -> list[dict[str, Any]]:
    if limit <= 0:
        raise ValueError("limit must be positive")
    with connect(paths) as conn:
        rows = conn.execute(
            "SELECT * FROM trades WHERE strategy_id = ? ORDER BY created_at ASC LIMIT ?",
            (strategy_id, limit),
        ).fetchall()
    return [
        {
            "trade_id": row["id"],
            "order_id": row["order_id"],
            "user_id": row["user_id"],
            "strategy_id": row["strategy_id"],
            "broker": row["broker"],
            "security_id": row["security_id"],
            "side": row["side"],
            "transaction_type": row["transaction_type"],
            "quantity": int(row["quantity"]),
            "status": row["status"],
            "entry_condition": row["entry_condition"],
            "exit_reason": row["exit_reason"],
            "stop_loss": row["stop_loss"],
            "target": row["target"],
            "average_price": row["average_price"],
            "filled_quantity": row["filled_quantity"],
            "realized_pnl": row["realized_pnl"],
            "payload": json.loads(row["payload_json"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]


def _insert_backtest_result(conn: sqlite3.Connection, result_id: str, result: dict[str, Any], run_at: str) -> None:
    conn.execute(
        """
        INSERT INTO backtest_results (
            id, strategy_id, user_id, strategy_name, instrument, period, window_start, window_end,
            summary_json, trades_json, equity_curve_json, run_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            result_id,
            result["strategy_id"],
            result["user_id"],
            result["strategy_name"],
            result["instrument"],
            result["period"],
            result["window_start"],
            result["window_end"],
            json.dumps(result["summary"]),
            json.dumps(result["trades"]),
            json.dumps(result["equity_curve"]),
            run_at,
        ),
    )


def save_backtest_run(paths: RuntimePaths, result: dict[str, Any]) -> tuple[str, str]:
    """Store a finished backtest and stamp the strategy's ``last_run_at`` in one transaction."""
    result_id = str(result.get("result_id") or uuid.uuid4())
    run_at = result.get("run_at") or _utc_now()
    with connect(paths) as conn:
        cursor = conn.execute(
            "UPDATE strategies SET last_run_at = ?, updated_at = ? WHERE id = ?",
            (run_at, _utc_now(), result["strategy_id"]),
        )
        if cursor.rowcount == 0:
            raise NotFound(f"strategy not found: {result['strategy_id']}")
        _insert_backtest_result(conn, result_id, result, run_at)
        conn.commit()
    return result_id, run_at


def _backtest_from_row(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "result_id": row["id"],
        "strategy_id": row["strategy_id"],
        "user_id": row["user_id"],
        "strategy_name": row["strategy_name"],
        "instrument": row["instrument"],
        "period": row["period"],
        "window_start": row["window_start"],
        "window_end": row["window_end"],
        "summary": json.loads(row["summary_json"]),
        "trades": json.loads(row["trades_json"]),
        "equity_curve": json.loads(row["equity_curve_json"]),
        "run_at": row["run_at"],
    }


def get_backtest_result(paths: RuntimePaths, result_id: str) -> dict[str, Any]:
    with connect(paths) as conn:
        row = conn.execute("SELECT * FROM backtest_results WHERE id = ?", (result_id,)).fetchone()
    if row is None:
        raise NotFound(f"backtest result not found: {result_id}")
    return _backtest_from_row(row)


def list_backtest_results(
    paths: RuntimePaths,
    strategy_id: str,
    user_id: str | None = None,
    limit: int = 20,
) -> list[dict[str, Any]]:
    if limit <= 0:
        raise ValueError("limit must be positive")
    if user_id:
        query = "SELECT * FROM backtest_results WHERE strategy_id = ? AND user_id = ? ORDER BY run_at DESC LIMIT ?"
        params: tuple[Any, ...] = (strategy_id, user_id, limit)
    else:
        query = "SELECT * FROM backtest_results WHERE strategy_id = ? ORDER BY run_at DESC LIMIT ?"
        params = (strategy_id, limit)
    with connect(paths) as conn:
        rows = conn.execute(query, params).fetchall()
    return [_backtest_from_row(row) for row in rows]


def append_audit_event(paths: RuntimePaths, event_type: str, payload: dict[str, Any]) -> None:
    merged_payload = redact_payload(dict(payload))
    merged_payload.setdefault("trace_id", get_trace_id())
    with connect(paths) as conn:
        conn.execute(
            "INSERT INTO audit_events (event_type, payload_json, created_at) VALUES (?, ?, ?)",
            (event_type, json.dumps(merged_payload, default=str), _utc_now()),
        )
        conn.commit()


def list_audit_events(
    paths: RuntimePaths,
    event_type: Optional[str] = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    if limit <= 0:
        raise ValueError("limit must be positive")
    if event_type:
        query = "SELECT id, event_type, payload_json, created_at FROM audit_events WHERE event_type = ? ORDER BY id ASC LIMIT ?"
        params: tuple[Any, ...] = (event_type, limit)
    else:
        query = "SELECT id, event_type, payload_json, created_at FROM audit_events ORDER BY id ASC LIMIT ?"
        params = (limit,)
    with connect(paths) as conn:
        rows = conn.execute(query, params).fetchall()
    return [
        {
            "id": int(row["id"]),
            "event_type": row["event_type"],
            "payload": json.loads(row["payload_json"]),
            "created_at": row["created_at"],
        }
        for row in rows
    ]

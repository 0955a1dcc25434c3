from __future__ import annotations

import os
import time
import uuid
from pathlib import Path
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from algo_engine.config import load_engine_settings_from_env
from algo_engine.data.importer import import_bars_file
from algo_engine.engine.service import TradingEngine
from algo_engine.errors import BrokerFailure, NotFound
from algo_engine.observability.context import reset_trace_id, set_trace_id
from algo_engine.observability.events import read_structured_log_stats, write_structured_log
from algo_engine.storage import duckdb_store, sqlite_store
from algo_engine.storage.paths import RuntimePaths
from algo_engine.strategy.models import Strategy


def _runtime_paths() -> RuntimePaths:
    root = Path(os.environ.get("ALGO_ENGINE_HOME", ".algoengine"))
    return RuntimePaths(root=root)


class ImportRequest(BaseModel):
    path: str
    session_open: str | None = Field(default=None, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")


class BacktestRequest(BaseModel):
    user_id: str | None = None
    period: str = "1m"
    initial_capital: float = Field(default=100000.0, gt=0)


class BrokerConnectRequest(BaseModel):
    broker: str
    credentials: dict[str, Any]
    sandbox: bool = False


app = FastAPI(title="Algo Engine API", version="0.1.0")


@app.middleware("http")
async def trace_logging_middleware(request, call_next):  # type: ignore[no-untyped-def]
    trace_id = request.headers.get("x-trace-id") or uuid.uuid4().hex
    token = set_trace_id(trace_id)
    started = time.perf_counter()
    paths = _runtime_paths()
    write_structured_log(paths, "request.start", {"method": request.method, "path": request.url.path})
    status_code = 500
    try:
        response = await call_next(request)
        status_code = int(response.status_code)
        response.headers["x-trace-id"] = trace_id
        return response
    except Exception as exc:  # noqa: BLE001
        write_structured_log(
            paths,
            "request.error",
            {"method": request.method, "path": request.url.path, "error": str(exc)},
        )
        raise
    finally:
        duration_ms = (time.perf_counter() - started) * 1000.0
        write_structured_log(
            paths,
            "request.end",
            {
                "method": request.method,
                "path": request.url.path,
                "status_code": status_code,
                "duration_ms": round(duration_ms, 3),
            },
        )
        reset_trace_id(token)


@app.on_event("startup")
def startup() -> None:
    paths = _runtime_paths()
    paths.ensure()
    sqlite_store.init_db(paths)
    duckdb_store.init_db(paths)
    settings = load_engine_settings_from_env()
    engine = TradingEngine(settings)
    engine.initialize()
    if settings.autostart:
        engine.start()
    app.state.engine = engine


@app.on_event("shutdown")
def shutdown() -> None:
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.close()
        app.state.engine = None


def _engine() -> TradingEngine:
    engine = getattr(app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="trading engine is not initialized")
    return engine


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail={"code": exc.code, "message": str(exc)})
    if isinstance(exc, BrokerFailure):
        return HTTPException(status_code=502, detail=exc.to_dict())
    if isinstance(exc, ValueError):
        return HTTPException(status_code=400, detail={"code": getattr(exc, "code", "invalid_request"), "message": str(exc)})
    return HTTPException(status_code=500, detail={"code": "internal_error", "message": f"{type(exc).__name__}: {exc}"})


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/strategies")
def save_strategy(strategy: Strategy) -> dict[str, Any]:
    paths = _runtime_paths()
    sqlite_store.save_strategy(paths, strategy)
    sqlite_store.append_audit_event(
        paths,
        "strategy.save",
        {"strategy_id": strategy.id, "owner_id": strategy.owner_id, "kind": strategy.kind.value},
    )
    return {"strategy_id": strategy.id, "status": strategy.status.value}


@app.get("/v1/strategies")
def list_strategies(owner_id: str | None = None, status: str | None = None) -> dict[str, Any]:
    try:
        strategies = sqlite_store.list_strategies(_runtime_paths(), status=status, owner_id=owner_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"strategies": [item.model_dump(mode="json") for item in strategies], "count": len(strategies)}


@app.get("/v1/strategies/{strategy_id}")
def get_strategy(strategy_id: str) -> dict[str, Any]:
    try:
        return sqlite_store.get_strategy(_runtime_paths(), strategy_id).model_dump(mode="json")
    except NotFound as exc:
        raise _http_error(exc) from exc


@app.post("/v1/strategies/{strategy_id}/start")
def start_strategy(strategy_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.start_strategy(strategy_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/strategies/{strategy_id}/stop")
def stop_strategy(strategy_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.stop_strategy(strategy_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/strategies/{strategy_id}/pause")
def pause_strategy(strategy_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.pause_strategy(strategy_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/strategies/{strategy_id}/resume")
def resume_strategy(strategy_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.resume_strategy(strategy_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/strategies/{strategy_id}/execute")
def execute_strategy(strategy_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.execute_strategy(strategy_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/strategies/{strategy_id}/backtest")
def run_backtest(strategy_id: str, request: BacktestRequest) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.run_backtest(
            strategy_id,
            user_id=request.user_id,
            period=request.period,
            initial_capital=request.initial_capital,
        )
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/v1/strategies/{strategy_id}/backtests")
def list_backtests(strategy_id: str, user_id: str | None = None, limit: int = 20) -> dict[str, Any]:
    if limit <= 0:
        raise HTTPException(status_code=400, detail="limit must be positive")
    results = sqlite_store.list_backtest_results(_runtime_paths(), strategy_id, user_id=user_id, limit=limit)
    return {"results": results, "count": len(results)}


@app.get("/v1/strategies/{strategy_id}/performance")
def strategy_performance(strategy_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.get_strategy_performance(strategy_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/v1/strategies/{strategy_id}/orders")
def strategy_orders(strategy_id: str, limit: int = 200) -> dict[str, Any]:
    if limit <= 0:
        raise HTTPException(status_code=400, detail="limit must be positive")
    orders = sqlite_store.list_orders(_runtime_paths(), strategy_id=strategy_id, limit=limit)
    return {"orders": orders, "count": len(orders)}


@app.get("/v1/engine/status")
def engine_status() -> dict[str, Any]:
    return _engine().get_engine_status()


@app.post("/v1/engine/start")
def engine_start() -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.start()
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/engine/stop")
def engine_stop() -> dict[str, Any]:
    return _engine().stop()


@app.post("/v1/users/{user_id}/brokers")
def connect_broker(user_id: str, request: BrokerConnectRequest) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.connect_broker(user_id, request.broker, request.credentials, sandbox=request.sandbox)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/v1/users/{user_id}/brokers/check")
def check_broker(user_id: str, broker: str | None = None) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.check_broker_connection(user_id, broker)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.get("/v1/users/{user_id}/strategies/active")
def active_strategies(user_id: str) -> dict[str, Any]:
    strategies = _engine().get_active_strategies(user_id)
    return {"user_id": user_id, "strategies": strategies, "count": len(strategies)}


@app.get("/v1/users/{user_id}/portfolio")
def user_portfolio(user_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.get_user_portfolio(user_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/orders/{order_id}/requeue")
def requeue_order(order_id: str) -> dict[str, Any]:
    engine = _engine()
    try:
        return engine.requeue_order(order_id)
    except Exception as exc:
        raise _http_error(exc) from exc


@app.post("/v1/data/import")
def import_data(request: ImportRequest) -> dict[str, Any]:
    paths = _runtime_paths()
    try:
        result = import_bars_file(Path(request.path), paths, session_open=request.session_open)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "source_path": result.source_path,
        "rows_read": result.rows_read,
        "rows_inserted": result.rows_inserted,
        "dataset_hash": result.dataset_hash,
    }


@app.get("/v1/audit/events")
def audit_events(event_type: str | None = None, limit: int = 100) -> dict[str, Any]:
    if limit <= 0:
        raise HTTPException(status_code=400, detail="limit must be positive")
    events = sqlite_store.list_audit_events(_runtime_paths(), event_type=event_type, limit=10000)
    return {"events": events[-limit:], "count": min(len(events), limit)}


@app.get("/v1/observability/stats")
def observability_stats() -> dict[str, Any]:
    return read_structured_log_stats(_runtime_paths())

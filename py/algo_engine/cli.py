from __future__ import annotations

import argparse
import dataclasses
import json
import threading
from pathlib import Path

from algo_engine.backtest.simulator import SimulationConfig, run_backtest
from algo_engine.config import load_engine_settings_from_env
from algo_engine.data.importer import import_bars_file
from algo_engine.engine.service import TradingEngine
from algo_engine.storage import sqlite_store
from algo_engine.storage.paths import RuntimePaths
from algo_engine.strategy.models import Strategy


def cmd_import(args: argparse.Namespace) -> None:
    paths = RuntimePaths(root=Path(args.runtime_home))
    result = import_bars_file(Path(args.path), paths, session_open=args.session_open)
    print(json.dumps(result.__dict__, indent=2))


def cmd_save_strategy(args: argparse.Namespace) -> None:
    paths = RuntimePaths(root=Path(args.runtime_home))
    sqlite_store.init_db(paths)
    strategy = Strategy.model_validate_json(Path(args.path).read_text(encoding="utf-8"))
    sqlite_store.save_strategy(paths, strategy)
    print(json.dumps({"strategy_id": strategy.id, "status": strategy.status.value}, indent=2))


def cmd_backtest(args: argparse.Namespace) -> None:
    paths = RuntimePaths(root=Path(args.runtime_home))
    sqlite_store.init_db(paths)
    settings = load_engine_settings_from_env()
    config = SimulationConfig(
        initial_capital=args.initial_capital,
        volatility=settings.volatility,
        liquidity=settings.liquidity,
        warmup_bars=settings.indicator_lookback,
    )
    result = run_backtest(paths, args.strategy_id, user_id=args.user_id, period=args.period, config=config)
    print(
        json.dumps(
            {
                "result_id": result.result_id,
                "strategy_id": result.strategy_id,
                "window_start": result.window_start.isoformat(),
                "window_end": result.window_end.isoformat(),
                "summary": result.summary.to_dict(),
            },
            indent=2,
        )
    )


def cmd_run_engine(args: argparse.Namespace) -> None:
    settings = dataclasses.replace(load_engine_settings_from_env(), home=Path(args.runtime_home))
    engine = TradingEngine(settings)
    print(json.dumps(engine.start(), indent=2))
    stop = threading.Event()
    try:
        while not stop.wait(settings.tick_seconds):
            print(json.dumps(engine.get_engine_status()))
    except KeyboardInterrupt:
        pass
    finally:
        engine.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="algo-engine")
    parser.add_argument("--runtime-home", default=".algoengine")
    sub = parser.add_subparsers(required=True)

    import_cmd = sub.add_parser("import-bars")
    import_cmd.add_argument("path")
    import_cmd.add_argument("--session-open", default=None, help="HH:MM stamp for date-only bars")
    import_cmd.set_defaults(func=cmd_import)

    strategy_cmd = sub.add_parser("save-strategy")
    strategy_cmd.add_argument("path", help="strategy JSON document")
    strategy_cmd.set_defaults(func=cmd_save_strategy)

    backtest_cmd = sub.add_parser("backtest")
    backtest_cmd.add_argument("strategy_id")
    backtest_cmd.add_argument("--user-id", default=None)
    backtest_cmd.add_argument("--period", default="1m", choices=["1m", "3m", "6m", "1y"])
    backtest_cmd.add_argument("--initial-capital", type=float, default=100000.0)
    backtest_cmd.set_defaults(func=cmd_backtest)

    engine_cmd = sub.add_parser("run-engine")
    engine_cmd.set_defaults(func=cmd_run_engine)

    return parser


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    args.func(args)


if __name__ == "__main__":
    main()

from __future__ import annotations

import contextlib
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from algo_engine.cli import build_parser
from algo_engine.storage import sqlite_store
from algo_engine.storage.paths import RuntimePaths


def _run(argv: list[str]) -> dict:
    args = build_parser().parse_args(argv)
    out = io.StringIO()
    with contextlib.redirect_stdout(out):
        args.func(args)
    return json.loads(out.getvalue())


class CliTests(unittest.TestCase):
    def test_import_save_and_backtest(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            root = Path(tmp_dir)
            home = str(root / "home")
            bars_path = root / "nifty.csv"
            bars_path.write_text(
                "\n".join(
                    [
                        "timestamp,symbol,open,high,low,close,volume",
                        "2024-03-04,NIFTY 50,22000,22050,21950,22020,0",
                        "2024-03-05,NIFTY 50,22020,22080,21990,22040,0",
                    ]
                ),
                encoding="utf-8",
            )
            strategy_path = root / "strategy.json"
            strategy_path.write_text(
                json.dumps(
                    {
                        "id": "strat-cli",
                        "owner_id": "user-1",
                        "name": "CLI straddle",
                        "kind": "time_based",
                        "broker": "dhan",
                        "instrument": "nifty-50-idx-nse",
                        "order_legs": [{"action": "BUY", "quantity": 50}],
                    }
                ),
                encoding="utf-8",
            )

            imported = _run(["--runtime-home", home, "import-bars", str(bars_path), "--session-open", "09:15"])
            self.assertEqual(imported["rows_inserted"], 2)

            saved = _run(["--runtime-home", home, "save-strategy", str(strategy_path)])
            self.assertEqual(saved, {"strategy_id": "strat-cli", "status": "draft"})

            with patch.dict(os.environ, {}, clear=True):
                result = _run(["--runtime-home", home, "backtest", "strat-cli", "--period", "1m"])
            self.assertEqual(result["strategy_id"], "strat-cli")
            self.assertEqual(result["window_end"], "2024-03-05T09:15:00")
            self.assertEqual(len(sqlite_store.list_backtest_results(RuntimePaths(root=Path(home)), "strat-cli")), 1)

    def test_backtest_rejects_unknown_period(self) -> None:
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                build_parser().parse_args(["backtest", "strat-1", "--period", "2w"])


if __name__ == "__main__":
    unittest.main()

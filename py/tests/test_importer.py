import tempfile
import unittest
from datetime import datetime
from pathlib import Path


class ImporterTests(unittest.TestCase):
    def test_import_bars_requires_columns(self) -> None:
        from algo_engine.data.importer import import_bars_file
        from algo_engine.storage.paths import RuntimePaths

        with tempfile.TemporaryDirectory() as tmp_dir:
            root = Path(tmp_dir)
            csv_path = root / "bad.csv"
            csv_path.write_text("timestamp,symbol,open,high,close,volume\n", encoding="utf-8")
            paths = RuntimePaths(root=root)

            with self.assertRaisesRegex(ValueError, "missing required columns"):
                import_bars_file(csv_path, paths)

    def test_import_bars_rejects_unknown_suffix(self) -> None:
        from algo_engine.data.importer import import_bars_file
        from algo_engine.storage.paths import RuntimePaths

        with tempfile.TemporaryDirectory() as tmp_dir:
            root = Path(tmp_dir)
            json_path = root / "bars.json"
            json_path.write_text("[]", encoding="utf-8")

            with self.assertRaisesRegex(ValueError, "only .csv and .parquet"):
                import_bars_file(json_path, RuntimePaths(root=root))
            with self.assertRaisesRegex(ValueError, "input file not found"):
                import_bars_file(root / "missing.csv", RuntimePaths(root=root))

    def test_import_bars_success_and_reimport_skips_duplicates(self) -> None:
        from algo_engine.data.importer import import_bars_file
        from algo_engine.storage.duckdb_store import query_bar_count
        from algo_engine.storage.paths import RuntimePaths
        from algo_engine.storage.sqlite_store import list_audit_events

        with tempfile.TemporaryDirectory() as tmp_dir:
            root = Path(tmp_dir)
            csv_path = root / "ok.csv"
            csv_path.write_text(
                "\n".join(
                    [
                        "timestamp,symbol,open,high,low,close,volume",
                        "2024-03-04 09:15:00,NIFTY 50,22000,22040,21980,22010,1000",
                        "2024-03-04 09:16:00,NIFTY 50,22010,22050,22000,22030,1100",
                    ]
                ),
                encoding="utf-8",
            )
            paths = RuntimePaths(root=root)
            first = import_bars_file(csv_path, paths)
            second = import_bars_file(csv_path, paths)

            self.assertEqual(first.rows_read, 2)
            self.assertEqual(first.rows_inserted, 2)
            self.assertEqual(second.rows_inserted, 0)
            self.assertEqual(first.dataset_hash, second.dataset_hash)
            self.assertEqual(query_bar_count(paths, "NIFTY 50"), 2)
            self.assertEqual(len(list_audit_events(paths, event_type="data.import")), 2)

    def test_date_only_bars_move_to_session_open(self) -> None:
        from algo_engine.data.importer import import_bars_file
        from algo_engine.storage.duckdb_store import load_bars
        from algo_engine.storage.paths import RuntimePaths

        with tempfile.TemporaryDirectory() as tmp_dir:
            root = Path(tmp_dir)
            csv_path = root / "daily.csv"
            csv_path.write_text(
                "\n".join(
                    [
                        "timestamp,symbol,open,high,low,close,volume",
                        "2024-03-04,SENSEX,72000,72100,71900,72050,0",
                        "2024-03-05,SENSEX,72050,72200,71950,72100,0",
                    ]
                ),
                encoding="utf-8",
            )
            paths = RuntimePaths(root=root)
            import_bars_file(csv_path, paths, session_open="09:15")

            bars = load_bars(paths, "SENSEX", datetime(2024, 3, 1), datetime(2024, 3, 31))
            self.assertEqual(
                [bar.timestamp for bar in bars],
                [datetime(2024, 3, 4, 9, 15), datetime(2024, 3, 5, 9, 15)],
            )
            self.assertEqual(bars[1].close, 72100.0)


if __name__ == "__main__":
    unittest.main()

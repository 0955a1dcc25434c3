from __future__ import annotations

import json
import tempfile
import unittest
from pathlib import Path

from algo_engine.observability.context import get_trace_id, reset_trace_id, set_trace_id, traced
from algo_engine.observability.events import read_structured_log, read_structured_log_stats, write_structured_log
from algo_engine.storage import sqlite_store
from algo_engine.storage.paths import RuntimePaths


class ObservabilityTests(unittest.TestCase):
    def test_append_audit_event_injects_trace_id(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            paths = RuntimePaths(root=Path(tmp_dir))
            sqlite_store.init_db(paths)
            token = set_trace_id("trace-test-123")
            try:
                sqlite_store.append_audit_event(paths, "test.event", {"value": 1})
            finally:
                reset_trace_id(token)
            events = sqlite_store.list_audit_events(paths, event_type="test.event")
            self.assertEqual(len(events), 1)
            self.assertEqual(events[0]["payload"]["trace_id"], "trace-test-123")

    def test_structured_log_writer_emits_jsonl_row(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            paths = RuntimePaths(root=Path(tmp_dir))
            token = set_trace_id("trace-log-xyz")
            try:
                write_structured_log(paths, "order.submitted", {"order_id": "o-1", "access_token": "abcdefghijkl"})
            finally:
                reset_trace_id(token)
            rows = paths.structured_log_path.read_text(encoding="utf-8").strip().splitlines()
            self.assertEqual(len(rows), 1)
            obj = json.loads(rows[0])
            self.assertEqual(obj["event_type"], "order.submitted")
            self.assertEqual(obj["trace_id"], "trace-log-xyz")
            self.assertEqual(obj["access_token"], "abcd...ijkl")

    def test_traced_binds_prefixed_id_and_restores(self) -> None:
        before = get_trace_id()
        with traced("tick") as trace_id:
            self.assertTrue(trace_id.startswith("tick-"))
            self.assertEqual(get_trace_id(), trace_id)
        self.assertEqual(get_trace_id(), before)

    def test_log_stats_count_requests_and_errors(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            paths = RuntimePaths(root=Path(tmp_dir))
            write_structured_log(paths, "request.end", {"duration_ms": 4.0})
            write_structured_log(paths, "request.end", {"duration_ms": 6.0})
            write_structured_log(paths, "strategy.evaluation_error", {"strategy_id": "s"})
            write_structured_log(paths, "order.error", {"order_id": "o"})

            stats = read_structured_log_stats(paths)
            self.assertEqual(stats["request_count"], 2)
            self.assertEqual(stats["error_count"], 2)
            self.assertEqual(stats["avg_request_duration_ms"], 5.0)
            self.assertEqual(len(read_structured_log(paths, "order.error")), 1)

    def test_missing_log_reads_empty(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            paths = RuntimePaths(root=Path(tmp_dir) / "fresh")
            self.assertEqual(read_structured_log(paths), [])
            self.assertEqual(read_structured_log_stats(paths)["request_count"], 0)


if __name__ == "__main__":
    unittest.main()

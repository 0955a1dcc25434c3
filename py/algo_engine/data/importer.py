from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import duckdb

from algo_engine.storage import duckdb_store, sqlite_store
from algo_engine.storage.paths import RuntimePaths
from algo_engine.strategy.models import parse_clock

REQUIRED_COLUMNS = ["timestamp", "symbol", "open", "high", "low", "close", "volume"]


@dataclass(frozen=True)
class ImportResult:
    source_path: str
    rows_read: int
    rows_inserted: int
    dataset_hash: str


def _hash_file(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            h.update(chunk)
    return h.hexdigest()


def _ensure_supported_input(path: Path) -> None:
    if not path.exists():
        raise ValueError(f"input file not found: {path}")
    if path.suffix.lower() not in {".csv", ".parquet"}:
        raise ValueError("only .csv and .parquet bar files are supported")


def _relation_for_file(path: Path) -> str:
    if path.suffix.lower() == ".csv":
        return f"read_csv_auto('{path.as_posix()}', header=true)"
    return f"read_parquet('{path.as_posix()}')"


def _validate_columns(relation_sql: str) -> None:
    with duckdb.connect() as conn:
        columns = [row[0] for row in conn.execute(f"SELECT * FROM {relation_sql} LIMIT 0").description]
    missing = [column for column in REQUIRED_COLUMNS if column not in columns]
    if missing:
        raise ValueError(f"missing required columns: {missing}")


def import_bars_file(
    path: Path,
    runtime_paths: RuntimePaths,
    session_open: str | None = None,
) -> ImportResult:
    """Load OHLCV bars from CSV/Parquet into ``market_bars``.

    Timestamps are stored as exchange-local wall-clock time. When
    ``session_open`` (``HH:MM``) is given, date-only bars stamped at midnight
    are moved to that time so they fall inside a strategy's trading window.
    Keys already present are skipped, so re-importing a file is harmless.
    """
    path = path.resolve()
    _ensure_supported_input(path)
    relation = _relation_for_file(path)
    _validate_columns(relation)

    ts_sql = "CAST(timestamp AS TIMESTAMP)"
    if session_open:
        clock = parse_clock(session_open)
        shift_minutes = clock.hour * 60 + clock.minute
        ts_sql = (
            f"CASE WHEN CAST(CAST(timestamp AS TIMESTAMP) AS TIME) = TIME '00:00:00' "
            f"THEN CAST(timestamp AS TIMESTAMP) + INTERVAL {shift_minutes} MINUTE "
            f"ELSE CAST(timestamp AS TIMESTAMP) END"
        )

    dataset_hash = _hash_file(path)
    duckdb_store.init_db(runtime_paths)
    sqlite_store.init_db(runtime_paths)

    now = datetime.now(timezone.utc).replace(tzinfo=None)
    with duckdb.connect(str(runtime_paths.duckdb_path)) as conn:
        rows_read = int(conn.execute(f"SELECT COUNT(*) FROM {relation}").fetchone()[0])
        before = conn.execute("SELECT COUNT(*) FROM market_bars").fetchone()[0]
        conn.execute(
            f"""
            INSERT INTO market_bars (timestamp, symbol, open, high, low, close, volume, source, ingested_at)
            SELECT DISTINCT ON (i.symbol, i.ts)
                i.ts, i.symbol, i.open, i.high, i.low, i.close, i.volume, CAST(? AS VARCHAR), CAST(? AS TIMESTAMP)
            FROM (
                SELECT
                    {ts_sql} AS ts,
                    CAST(symbol AS VARCHAR) AS symbol,
                    CAST(open AS DOUBLE) AS open,
                    CAST(high AS DOUBLE) AS high,
                    CAST(low AS DOUBLE) AS low,
                    CAST(close AS DOUBLE) AS close,
                    CAST(volume AS DOUBLE) AS volume
                FROM {relation}
            ) AS i
            WHERE NOT EXISTS (
                SELECT 1 FROM market_bars m WHERE m.symbol = i.symbol AND m.timestamp = i.ts
            )
            """,
            [str(path), now],
        )
        after = conn.execute("SELECT COUNT(*) FROM market_bars").fetchone()[0]

    rows_inserted = int(after - before)
    if rows_read <= 0:
        raise ValueError(f"no rows found in {path}")

    sqlite_store.append_audit_event(
        runtime_paths,
        "data.import",
        {
            "source_path": str(path),
            "rows_read": rows_read,
            "rows_inserted": rows_inserted,
            "dataset_hash": dataset_hash,
        },
    )
    return ImportResult(
        source_path=str(path),
        rows_read=rows_read,
        rows_inserted=rows_inserted,
        dataset_hash=dataset_hash,
    )

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Iterable

import duckdb

from algo_engine.storage.paths import RuntimePaths


@dataclass(frozen=True)
class Bar:
    symbol: str
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


def _connect(paths: RuntimePaths) -> duckdb.DuckDBPyConnection:
    paths.ensure()
    return duckdb.connect(str(paths.duckdb_path))


def init_db(paths: RuntimePaths) -> None:
    with _connect(paths) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS market_bars (
                timestamp TIMESTAMP NOT NULL,
                symbol VARCHAR NOT NULL,
                open DOUBLE NOT NULL,
                high DOUBLE NOT NULL,
                low DOUBLE NOT NULL,
                close DOUBLE NOT NULL,
                volume DOUBLE NOT NULL,
                source VARCHAR NOT NULL,
                ingested_at TIMESTAMP NOT NULL
            )
            """
        )


def _row_to_bar(row: tuple) -> Bar:
    return Bar(
        symbol=str(row[0]),
        timestamp=row[1],
        open=float(row[2]),
        high=float(row[3]),
        low=float(row[4]),
        close=float(row[5]),
        volume=float(row[6]),
    )


def insert_bars(paths: RuntimePaths, bars: Iterable[Bar], source: str = "manual") -> int:
    """Append bars, ignoring any (symbol, timestamp) key that already exists."""
    rows = [
        (bar.timestamp, bar.symbol, bar.open, bar.high, bar.low, bar.close, bar.volume)
        for bar in bars
    ]
    if not rows:
        return 0
    now = datetime.now(timezone.utc).replace(tzinfo=None)
    with _connect(paths) as conn:
        before = conn.execute("SELECT COUNT(*) FROM market_bars").fetchone()[0]
        conn.execute(
            """
            CREATE TEMP TABLE incoming_bars (
                timestamp TIMESTAMP, symbol VARCHAR, open DOUBLE, high DOUBLE, low DOUBLE, close DOUBLE, volume DOUBLE
            )
            """
        )
        conn.executemany("INSERT INTO incoming_bars VALUES (?, ?, ?, ?, ?, ?, ?)", rows)
        conn.execute(
            """
            INSERT INTO market_bars (timestamp, symbol, open, high, low, close, volume, source, ingested_at)
            SELECT DISTINCT ON (i.symbol, i.timestamp)
                i.timestamp, i.symbol, i.open, i.high, i.low, i.close, i.volume, CAST(? AS VARCHAR), CAST(? AS TIMESTAMP)
            FROM incoming_bars i
            WHERE NOT EXISTS (
                SELECT 1 FROM market_bars m WHERE m.symbol = i.symbol AND m.timestamp = i.timestamp
            )
            """,
            [source, now],
        )
        after = conn.execute("SELECT COUNT(*) FROM market_bars").fetchone()[0]
    return int(after - before)


def latest_bar_timestamp(paths: RuntimePaths, symbol: str) -> datetime | None:
    with _connect(paths) as conn:
        row = conn.execute(
            "SELECT MAX(timestamp) FROM market_bars WHERE symbol = ?",
            [symbol],
        ).fetchone()
    if row is None or row[0] is None:
        return None
    return row[0]


def load_bars(paths: RuntimePaths, symbol: str, start: datetime, end: datetime) -> list[Bar]:
    with _connect(paths) as conn:
        rows = conn.execute(
            """
            SELECT symbol, timestamp, open, high, low, close, volume
            FROM market_bars
            WHERE symbol = ?
              AND timestamp BETWEEN ? AND ?
            ORDER BY timestamp ASC
            """,
            [symbol, start, end],
        ).fetchall()
    return [_row_to_bar(row) for row in rows]


def load_bars_before(paths: RuntimePaths, symbol: str, before: datetime, limit: int, inclusive: bool = False) -> list[Bar]:
    """Trailing history ending at ``before``, returned oldest first."""
    if limit <= 0:
        raise ValueError("limit must be positive")
    op = "<=" if inclusive else "<"
    with _connect(paths) as conn:
        rows = conn.execute(
            f"""
            SELECT symbol, timestamp, open, high, low, close, volume
            FROM market_bars
            WHERE symbol = ? AND timestamp {op} ?
            ORDER BY timestamp DESC
            LIMIT ?
            """,
            [symbol, before, limit],
        ).fetchall()
    return [_row_to_bar(row) for row in reversed(rows)]


def query_bar_count(paths: RuntimePaths, symbol: str) -> int:
    with _connect(paths) as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS c FROM market_bars WHERE symbol = ?", (symbol,)
        ).fetchone()
    return int(row[0])

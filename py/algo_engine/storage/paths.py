from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class RuntimePaths:
    root: Path = Path(".algoengine")

    @property
    def sqlite_path(self) -> Path:
        return self.root / "engine.sqlite"

    @property
    def duckdb_path(self) -> Path:
        return self.root / "bars.duckdb"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def structured_log_path(self) -> Path:
        return self.logs_dir / "structured.log"

    def ensure(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)
        self.logs_dir.mkdir(parents=True, exist_ok=True)

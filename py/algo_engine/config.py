from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from algo_engine.storage.paths import RuntimePaths

LIQUIDITY_LEVELS = ("high", "normal", "low", "very_low")


@dataclass(frozen=True)
class EngineSettings:
    home: Path = Path(".algoengine")
    tick_seconds: float = 60.0
    drain_seconds: float = 5.0
    broker_timeout_seconds: float = 10.0
    dispatch_workers: int = 8
    timezone: str = "Asia/Kolkata"
    volatility: float = 0.2
    liquidity: str = "normal"
    indicator_lookback: int = 200
    autostart: bool = False

    @property
    def runtime_paths(self) -> RuntimePaths:
        return RuntimePaths(root=self.home)


def _read_int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"invalid {name}: {raw}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _read_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"invalid {name}: {raw}") from exc
    if value <= 0:
        raise ValueError(f"{name} must be positive")
    return value


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name, "").strip().lower()
    if not raw:
        return default
    if raw in {"1", "true", "yes", "on"}:
        return True
    if raw in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"invalid {name}: {raw}")


def load_engine_settings_from_env() -> EngineSettings:
    liquidity = os.environ.get("ALGO_ENGINE_LIQUIDITY", "normal").strip().lower() or "normal"
    if liquidity not in LIQUIDITY_LEVELS:
        raise ValueError(f"invalid ALGO_ENGINE_LIQUIDITY: {liquidity}; expected one of {', '.join(LIQUIDITY_LEVELS)}")
    return EngineSettings(
        home=Path(os.environ.get("ALGO_ENGINE_HOME", ".algoengine")),
        tick_seconds=_read_float_env("ALGO_ENGINE_TICK_SECONDS", 60.0),
        drain_seconds=_read_float_env("ALGO_ENGINE_DRAIN_SECONDS", 5.0),
        broker_timeout_seconds=_read_float_env("ALGO_ENGINE_BROKER_TIMEOUT_SECONDS", 10.0),
        dispatch_workers=_read_int_env("ALGO_ENGINE_DISPATCH_WORKERS", 8),
        timezone=os.environ.get("ALGO_ENGINE_TIMEZONE", "Asia/Kolkata").strip() or "Asia/Kolkata",
        volatility=_read_float_env("ALGO_ENGINE_VOLATILITY", 0.2),
        liquidity=liquidity,
        indicator_lookback=_read_int_env("ALGO_ENGINE_INDICATOR_LOOKBACK", 200),
        autostart=_read_bool_env("ALGO_ENGINE_AUTOSTART", False),
    )

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class ExitReason(str, Enum):
    SQUARE_OFF = "Square-off"
    STOP_LOSS = "StopLoss hit"
    TARGET = "Target hit"
    ENTRY_CONDITION_MET = "Entry condition met"


@dataclass
class SimulatedTrade:
    symbol: str
    quantity: int
    entry_price: float
    theoretical_price: float
    entry_time: datetime
    instrument_type: str
    entry_costs: float
    slippage: float = 0.0
    strike_price: float | None = None
    time_to_expiry: float = 0.0
    stop_loss: float = 0.0
    target: float = 0.0
    entry_reason: str = ExitReason.ENTRY_CONDITION_MET.value
    exit_price: float | None = None
    exit_time: datetime | None = None
    exit_costs: float = 0.0
    pnl: float = 0.0
    reason: str = "Open"

    @property
    def direction(self) -> int:
        return 1 if self.quantity > 0 else -1

    @property
    def is_open(self) -> bool:
        return self.exit_time is None

    def close(self, exit_price: float, exit_time: datetime, exit_costs: float, reason: ExitReason) -> float:
        self.exit_price = exit_price
        self.exit_time = exit_time
        self.exit_costs = exit_costs
        self.reason = reason.value
        self.pnl = (exit_price - self.entry_price) * self.quantity - self.entry_costs - exit_costs
        return self.pnl

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["entry_time"] = self.entry_time.isoformat()
        payload["exit_time"] = self.exit_time.isoformat() if self.exit_time else None
        payload["total_costs"] = round(self.entry_costs + self.exit_costs, 4)
        return payload


@dataclass(frozen=True)
class EquityCurvePoint:
    date: str
    equity: float

    def to_dict(self) -> dict[str, Any]:
        return {"date": self.date, "equity": round(self.equity, 2)}


@dataclass(frozen=True)
class BacktestSummary:
    initial_capital: float
    final_equity: float
    total_return_pct: float
    total_pnl: float
    total_trades: int
    closed_legs: int
    winning_legs: int
    losing_legs: int
    win_rate: float
    sharpe_ratio: float
    max_drawdown_pct: float
    max_drawdown_date: str | None
    peak_equity: float
    max_consecutive_wins: int
    max_consecutive_losses: int
    total_transaction_costs: float
    total_slippage: float
    net_return_pct: float

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class BacktestResult:
    strategy_id: str
    user_id: str
    strategy_name: str
    instrument: str
    period: str
    window_start: datetime
    window_end: datetime
    summary: BacktestSummary
    trades: list[SimulatedTrade] = field(default_factory=list)
    equity_curve: list[EquityCurvePoint] = field(default_factory=list)
    result_id: str | None = None
    run_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "result_id": self.result_id,
            "strategy_id": self.strategy_id,
            "user_id": self.user_id,
            "strategy_name": self.strategy_name,
            "instrument": self.instrument,
            "period": self.period,
            "window_start": self.window_start.isoformat(),
            "window_end": self.window_end.isoformat(),
            "summary": self.summary.to_dict(),
            "trades": [trade.to_dict() for trade in self.trades],
            "equity_curve": [point.to_dict() for point in self.equity_curve],
            "run_at": self.run_at,
        }

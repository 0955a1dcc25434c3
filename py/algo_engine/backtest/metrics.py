from __future__ import annotations

import math
from typing import Iterable, Sequence

TRADING_DAYS_PER_YEAR = 252


class PerformanceTracker:
    """Running drawdown and win/loss streak bookkeeping over an equity series."""

    def __init__(self, initial_equity: float) -> None:
        self.initial_equity = float(initial_equity)
        self.peak_equity = float(initial_equity)
        self.max_drawdown_pct = 0.0
        self.max_drawdown_date: str | None = None
        self.consecutive_wins = 0
        self.consecutive_losses = 0
        self.max_consecutive_wins = 0
        self.max_consecutive_losses = 0
        self.closed_trades = 0
        self.winning_trades = 0
        self.losing_trades = 0

    def update_equity(self, equity: float, day: str) -> None:
        if equity > self.peak_equity:
            self.peak_equity = equity
        if self.peak_equity <= 0:
            return
        drawdown = (self.peak_equity - equity) / self.peak_equity * 100.0
        if drawdown > self.max_drawdown_pct:
            self.max_drawdown_pct = drawdown
            self.max_drawdown_date = day

    def record_trade(self, pnl: float) -> None:
        self.closed_trades += 1
        if pnl > 0:
            self.winning_trades += 1
            self.consecutive_wins += 1
            self.consecutive_losses = 0
        elif pnl < 0:
            self.losing_trades += 1
            self.consecutive_losses += 1
            self.consecutive_wins = 0
        self.max_consecutive_wins = max(self.max_consecutive_wins, self.consecutive_wins)
        self.max_consecutive_losses = max(self.max_consecutive_losses, self.consecutive_losses)

    @property
    def win_rate(self) -> float:
        return win_rate(self.winning_trades, self.closed_trades)


def win_rate(winning: int, closed: int) -> float:
    if closed <= 0:
        return 0.0
    return winning / closed * 100.0


def period_returns(equity: Sequence[float]) -> list[float]:
    returns: list[float] = []
    for previous, current in zip(equity, equity[1:]):
        if previous == 0:
            continue
        returns.append((current - previous) / previous)
    return returns


def sharpe_ratio(returns: Iterable[float], periods_per_year: int = TRADING_DAYS_PER_YEAR) -> float:
    """Annualised mean/stddev of per-period returns; population stddev, 0 when flat."""
    values = list(returns)
    if not values:
        return 0.0
    mean = sum(values) / len(values)
    variance = sum((value - mean) ** 2 for value in values) / len(values)
    std = math.sqrt(variance)
    if std == 0:
        return 0.0
    return mean / std * math.sqrt(periods_per_year)


def summarize_pnls(pnls: Iterable[float]) -> dict[str, float | int]:
    tracker = PerformanceTracker(0.0)
    total = 0.0
    for pnl in pnls:
        total += pnl
        tracker.record_trade(pnl)
    return {
        "closed_trades": tracker.closed_trades,
        "winning_trades": tracker.winning_trades,
        "losing_trades": tracker.losing_trades,
        "total_pnl": round(total, 2),
        "win_rate": round(tracker.win_rate, 2),
        "max_consecutive_wins": tracker.max_consecutive_wins,
        "max_consecutive_losses": tracker.max_consecutive_losses,
    }

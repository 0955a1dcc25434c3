from __future__ import annotations

from datetime import datetime
from typing import Callable, Sequence

from algo_engine.brokers.base import OrderRequest
from algo_engine.engine.dispatcher import QueuedOrder
from algo_engine.engine.indicators import evaluate_conditions, validate_conditions
from algo_engine.engine.registry import RunningStrategy
from algo_engine.engine.schedule import is_trading_day, within_window
from algo_engine.errors import ValidationError
from algo_engine.storage.duckdb_store import Bar
from algo_engine.strategy.instruments import resolve_instrument
from algo_engine.strategy.models import (
    OrderLeg,
    ProductClass,
    Strategy,
    StrategyInstrument,
    TradeAction,
    TransactionPolicy,
    parse_clock,
)

BarSource = Callable[[str, datetime, int], Sequence[Bar]]

PRODUCT_TYPES = {
    ProductClass.MIS: "INTRADAY",
    ProductClass.NRML: "MARGIN",
    ProductClass.CNC: "CNC",
    ProductClass.BTST: "CNC",
}

SQUARE_OFF = "Square-off"


def _reverse(action: str) -> str:
    return TradeAction.SELL.value if action == TradeAction.BUY.value else TradeAction.BUY.value


def _policy_action(policy: TransactionPolicy) -> str:
    if policy == TransactionPolicy.ONLY_SHORT:
        return TradeAction.SELL.value
    return TradeAction.BUY.value


def leg_order_request(strategy: Strategy, leg: OrderLeg) -> OrderRequest:
    security_id = strategy.security_id or strategy.instrument or ""
    with_stop = leg.stop_loss_value > 0
    return OrderRequest(
        transaction_type=leg.action.value,
        exchange_segment=strategy.exchange_segment,
        product_type=PRODUCT_TYPES[strategy.order_type],
        order_type="STOP_LOSS_MARKET" if with_stop else "MARKET",
        security_id=security_id,
        quantity=leg.quantity,
        trigger_price=leg.stop_loss_value if with_stop else 0.0,
        trading_symbol=strategy.trading_symbol or security_id,
        stop_loss=leg.stop_loss_value,
        square_off=leg.take_profit_value,
        trailing_stop_loss=leg.trail_profit_by,
    )


def exit_request(entry: OrderRequest) -> OrderRequest:
    return OrderRequest(
        transaction_type=_reverse(entry.transaction_type),
        exchange_segment=entry.exchange_segment,
        product_type=entry.product_type,
        order_type="MARKET",
        security_id=entry.security_id,
        quantity=entry.quantity,
        trading_symbol=entry.trading_symbol,
    )


class StrategyEvaluator:
    """Turns one scheduler wake-up of a running strategy into broker orders.

    The evaluator mutates the entry's intraday state (entered legs, open
    positions); callers hold the entry's lock.
    """

    def __init__(self, bar_source: BarSource, lookback: int = 200) -> None:
        self._bar_source = bar_source
        self._lookback = lookback

    def evaluate(self, entry: RunningStrategy, now: datetime) -> list[QueuedOrder]:
        if entry.strategy.is_time_based:
            return self._evaluate_time_based(entry, now)
        return self._evaluate_indicator_based(entry, now)

    def _queued(self, entry: RunningStrategy, request: OrderRequest, side: str, **context) -> QueuedOrder:
        return QueuedOrder(
            user_id=entry.user_id,
            strategy_id=entry.strategy.id,
            broker=entry.strategy.broker.value,
            request=request,
            side=side,
            **context,
        )

    def _square_off_due(self, entry: RunningStrategy, now: datetime) -> bool:
        if entry.entry_day is None:
            return False
        return now.date() != entry.entry_day or now.time() >= entry.strategy.square_off_clock

    def _evaluate_time_based(self, entry: RunningStrategy, now: datetime) -> list[QueuedOrder]:
        strategy = entry.strategy
        if not strategy.order_legs:
            raise ValidationError(f"time-based strategy {strategy.id} has no order legs")

        if entry.open_orders:
            if not self._square_off_due(entry, now):
                return []
            orders = [
                self._queued(entry, exit_request(request), "exit", exit_reason=SQUARE_OFF)
                for request in entry.open_orders
            ]
            entry.open_orders = []
            return orders

        if not is_trading_day(strategy, now.date()) or not within_window(strategy, now):
            return []
        if entry.entry_day == now.date() or now.time() >= strategy.square_off_clock:
            return []
        max_cycles = strategy.risk_management.max_trade_cycle
        if max_cycles is not None and entry.trade_cycles >= max_cycles:
            return []

        orders: list[QueuedOrder] = []
        for leg in strategy.order_legs:
            request = leg_order_request(strategy, leg)
            entry.open_orders.append(request)
            orders.append(
                self._queued(
                    entry,
                    request,
                    "entry",
                    entry_condition=f"time {strategy.start_time}",
                    stop_loss=leg.stop_loss_value or None,
                    target=leg.take_profit_value or None,
                )
            )
        entry.entry_day = now.date()
        entry.trade_cycles += 1
        return orders

    def _instrument_request(self, strategy: Strategy, instrument: StrategyInstrument, action: str) -> OrderRequest:
        ref = resolve_instrument(instrument.instrument_id, instrument.symbol)
        security_id = instrument.security_id or ref.broker_token
        return OrderRequest(
            transaction_type=action,
            exchange_segment=strategy.exchange_segment,
            product_type=PRODUCT_TYPES[strategy.order_type],
            order_type="MARKET",
            security_id=security_id,
            quantity=instrument.quantity,
            trading_symbol=instrument.symbol or ref.symbol,
        )

    def _entries_closed(self, strategy: Strategy, now: datetime) -> bool:
        cutoff = strategy.risk_management.no_trade_after_time
        if cutoff and now.time() >= parse_clock(cutoff):
            return True
        return now.time() >= strategy.square_off_clock

    def _evaluate_indicator_based(self, entry: RunningStrategy, now: datetime) -> list[QueuedOrder]:
        strategy = entry.strategy
        if not strategy.instruments:
            raise ValidationError(f"indicator strategy {strategy.id} has no instruments")
        validate_conditions(strategy.entry_conditions)

        if entry.positions and self._square_off_due(entry, now):
            orders = [
                self._queued(entry, exit_request(request), "exit", exit_reason=SQUARE_OFF)
                for request in entry.positions.values()
            ]
            entry.positions = {}
            return orders

        if not is_trading_day(strategy, now.date()) or not within_window(strategy, now):
            return []

        description = " AND ".join(condition.describe() for condition in strategy.entry_conditions)
        orders: list[QueuedOrder] = []
        for instrument in strategy.instruments:
            ref = resolve_instrument(instrument.instrument_id, instrument.symbol)
            bars = self._bar_source(ref.symbol, now, self._lookback)
            met = evaluate_conditions(strategy.entry_conditions, bars)
            held = entry.positions.get(instrument.instrument_id)
            if held is None and met and not self._entries_closed(strategy, now):
                request = self._instrument_request(strategy, instrument, _policy_action(strategy.transaction_type))
                entry.positions[instrument.instrument_id] = request
                entry.entry_day = now.date()
                orders.append(self._queued(entry, request, "entry", entry_condition=description))
            elif held is not None and not met:
                del entry.positions[instrument.instrument_id]
                orders.append(self._queued(entry, exit_request(held), "exit", exit_reason=SQUARE_OFF))
        return orders

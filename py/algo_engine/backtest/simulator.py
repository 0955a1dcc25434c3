from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from algo_engine.backtest.metrics import PerformanceTracker, period_returns, sharpe_ratio
from algo_engine.backtest.models import BacktestResult, BacktestSummary, EquityCurvePoint, ExitReason, SimulatedTrade
from algo_engine.engine.indicators import evaluate_conditions, required_history, validate_conditions
from algo_engine.engine.schedule import is_eligible
from algo_engine.errors import DataUnavailable, ValidationError
from algo_engine.observability.events import write_structured_log
from algo_engine.pricing.charges import flat_costs, transaction_costs
from algo_engine.pricing.options import (
    expiry_for,
    fill_with_slippage,
    is_valid_strike,
    option_symbol,
    quote_option,
    select_strike,
    years_to_expiry,
)
from algo_engine.storage.duckdb_store import Bar, latest_bar_timestamp, load_bars, load_bars_before
from algo_engine.storage.paths import RuntimePaths
from algo_engine.storage.sqlite_store import (
    append_audit_event,
    get_strategy,
    save_backtest_run,
)
from algo_engine.strategy.instruments import InstrumentRef, resolve_instrument
from algo_engine.strategy.models import (
    InstrumentKind,
    LevelUnit,
    OrderLeg,
    RiskUnit,
    Strategy,
    TradeAction,
    TransactionPolicy,
)

PERIOD_MONTHS = {"1m": 1, "3m": 3, "6m": 6, "1y": 12}
MIN_YEARS_TO_EXPIRY = 1.0 / 365.0


@dataclass(frozen=True)
class SimulationConfig:
    initial_capital: float = 100000.0
    volatility: float = 0.2
    liquidity: str = "normal"
    indicator_cost_rate: float = 0.001
    warmup_bars: int = 200


@dataclass
class _Portfolio:
    cash: float
    trades: list[SimulatedTrade] = field(default_factory=list)
    total_costs: float = 0.0
    total_slippage: float = 0.0

    def open(self, trade: SimulatedTrade) -> None:
        self.cash -= trade.quantity * trade.entry_price + trade.entry_costs
        self.total_costs += trade.entry_costs
        self.total_slippage += abs(trade.slippage)

    def close(
        self,
        trade: SimulatedTrade,
        exit_price: float,
        exit_time: datetime,
        exit_costs: float,
        reason: ExitReason,
        tracker: PerformanceTracker,
        slippage: float = 0.0,
    ) -> None:
        trade.close(exit_price, exit_time, exit_costs, reason)
        self.cash += trade.quantity * exit_price - exit_costs
        self.total_costs += exit_costs
        self.total_slippage += abs(slippage)
        self.trades.append(trade)
        tracker.record_trade(trade.pnl)


def _subtract_months(moment: datetime, months: int) -> datetime:
    month_index = moment.year * 12 + (moment.month - 1) - months
    year, month = divmod(month_index, 12)
    month += 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def resolve_replay_window(period: str, latest: datetime) -> tuple[datetime, datetime]:
    months = PERIOD_MONTHS.get(period)
    if months is None:
        raise ValidationError(f"invalid period: {period}; expected one of {', '.join(PERIOD_MONTHS)}")
    return _subtract_months(latest, months), latest


def _level(value: float, unit: LevelUnit, entry_price: float) -> float:
    if unit == LevelUnit.PERCENTAGE:
        return entry_price * value / 100.0
    return value


def _risk_level(value: float, unit: RiskUnit, entry_price: float, quantity: int) -> float:
    if unit == RiskUnit.PERCENTAGE:
        return entry_price * value / 100.0
    if unit == RiskUnit.AMOUNT:
        return value / abs(quantity)
    return value


def _reverse(action: TradeAction) -> TradeAction:
    return TradeAction.SELL if action == TradeAction.BUY else TradeAction.BUY


def _extremes(bar: Bar, leg: OrderLeg) -> tuple[float, float]:
    """(adverse, favourable) underlying prices for the leg over the bar."""
    rises_with_underlying = leg.instrument_type != InstrumentKind.PE
    if (leg.direction > 0) == rises_with_underlying:
        return bar.low, bar.high
    return bar.high, bar.low


class _LegPricer:
    def __init__(self, symbol: str, config: SimulationConfig) -> None:
        self.symbol = symbol
        self.config = config

    def exit_fill(self, leg: OrderLeg, underlying: float, strike: float | None, years: float) -> tuple[float, float]:
        side = _reverse(leg.action)
        if strike is None:
            return fill_with_slippage(underlying, leg.quantity, side, self.config.liquidity)
        quote = quote_option(
            underlying,
            strike,
            years,
            leg.instrument_type,
            leg.quantity,
            side,
            volatility=self.config.volatility,
            liquidity=self.config.liquidity,
        )
        return quote.fill_price, quote.slippage

    def enter(self, leg: OrderLeg, bar: Bar, paths: RuntimePaths | None) -> SimulatedTrade | None:
        if leg.instrument_type in (InstrumentKind.FUT, InstrumentKind.EQ):
            fill, slip = fill_with_slippage(bar.open, leg.quantity, leg.action, self.config.liquidity)
            root = self.symbol.replace(" ", "").upper()
            return SimulatedTrade(
                symbol=f"{root}FUT" if leg.instrument_type == InstrumentKind.FUT else root,
                quantity=leg.quantity * leg.direction,
                entry_price=fill,
                theoretical_price=bar.open,
                entry_time=bar.timestamp,
                instrument_type=leg.instrument_type.value,
                entry_costs=transaction_costs(abs(leg.quantity * fill)),
                slippage=slip,
                stop_loss=leg.stop_loss_value,
                target=leg.take_profit_value,
                entry_reason="Entry",
            )

        strike = select_strike(
            bar.open,
            self.symbol,
            leg.strike_price_selection,
            leg.instrument_type,
            leg.strike_price_reference,
        )
        expiry = expiry_for(leg.expiry, bar.timestamp)
        years = years_to_expiry(bar.timestamp, expiry)
        reason = None
        if not is_valid_strike(strike, self.symbol):
            reason = "invalid_strike"
        elif years < MIN_YEARS_TO_EXPIRY:
            reason = "too_close_to_expiry"
        if reason is not None:
            if paths is not None:
                write_structured_log(
                    paths,
                    "backtest.leg_skipped",
                    {
                        "symbol": self.symbol,
                        "at": bar.timestamp.isoformat(),
                        "strike": strike,
                        "expiry": expiry.isoformat(),
                        "reason": reason,
                    },
                )
            return None

        quote = quote_option(
            bar.open,
            strike,
            years,
            leg.instrument_type,
            leg.quantity,
            leg.action,
            volatility=self.config.volatility,
            liquidity=self.config.liquidity,
        )
        return SimulatedTrade(
            symbol=option_symbol(self.symbol, expiry, strike, leg.instrument_type),
            quantity=leg.quantity * leg.direction,
            entry_price=quote.fill_price,
            theoretical_price=quote.theoretical_price,
            entry_time=bar.timestamp,
            instrument_type=leg.instrument_type.value,
            entry_costs=transaction_costs(abs(leg.quantity * quote.fill_price)),
            slippage=quote.slippage,
            strike_price=float(strike),
            time_to_expiry=years,
            stop_loss=leg.stop_loss_value,
            target=leg.take_profit_value,
            entry_reason="Entry",
        )


def simulate_time_based(
    strategy: Strategy,
    symbol: str,
    bars: Sequence[Bar],
    config: SimulationConfig,
    paths: RuntimePaths | None = None,
) -> tuple[_Portfolio, PerformanceTracker, list[EquityCurvePoint]]:
    portfolio = _Portfolio(cash=config.initial_capital)
    tracker = PerformanceTracker(config.initial_capital)
    curve: list[EquityCurvePoint] = []
    pricer = _LegPricer(symbol, config)

    for bar in bars:
        day = bar.timestamp.date().isoformat()
        if is_eligible(strategy, bar.timestamp):
            for leg in strategy.order_legs:
                trade = pricer.enter(leg, bar, paths)
                if trade is None:
                    continue
                portfolio.open(trade)
                strike = trade.strike_price
                years = trade.time_to_expiry
                adverse, favourable = _extremes(bar, leg)
                adverse_fill, adverse_slip = pricer.exit_fill(leg, adverse, strike, years)
                favourable_fill, favourable_slip = pricer.exit_fill(leg, favourable, strike, years)
                exit_price, slip = pricer.exit_fill(leg, bar.close, strike, years)
                reason = ExitReason.SQUARE_OFF
                stop = _level(leg.stop_loss_value, leg.stop_loss_type, trade.entry_price)
                target = _level(leg.take_profit_value, leg.take_profit_type, trade.entry_price)
                if leg.stop_loss_value > 0 and (adverse_fill - trade.entry_price) * leg.direction <= -stop:
                    exit_price, slip, reason = adverse_fill, adverse_slip, ExitReason.STOP_LOSS
                elif leg.take_profit_value > 0 and (favourable_fill - trade.entry_price) * leg.direction >= target:
                    exit_price, slip, reason = favourable_fill, favourable_slip, ExitReason.TARGET
                exit_costs = transaction_costs(abs(trade.quantity * exit_price))
                portfolio.close(trade, exit_price, bar.timestamp, exit_costs, reason, tracker, slip)
        tracker.update_equity(portfolio.cash, day)
        curve.append(EquityCurvePoint(date=day, equity=portfolio.cash))
    return portfolio, tracker, curve


def _index_bars(bars: Sequence[Bar]) -> dict[datetime, int]:
    return {bar.timestamp: index for index, bar in enumerate(bars)}


def simulate_indicator_based(
    strategy: Strategy,
    timeline: Sequence[Bar],
    histories: dict[str, Sequence[Bar]],
    config: SimulationConfig,
) -> tuple[_Portfolio, PerformanceTracker, list[EquityCurvePoint]]:
    """Replay ``timeline`` bars; ``histories`` maps instrument id to warm-up plus window bars."""
    portfolio = _Portfolio(cash=config.initial_capital)
    tracker = PerformanceTracker(config.initial_capital)
    curve: list[EquityCurvePoint] = []
    indexes = {key: _index_bars(bars) for key, bars in histories.items()}
    risk = strategy.risk_management
    direction = -1 if strategy.transaction_type == TransactionPolicy.ONLY_SHORT else 1
    open_trades: dict[str, SimulatedTrade] = {}
    last_close: dict[str, float] = {}

    for bar in timeline:
        day = bar.timestamp.date().isoformat()
        eligible = is_eligible(strategy, bar.timestamp)
        for instrument in strategy.instruments:
            key = instrument.instrument_id
            position = indexes[key].get(bar.timestamp)
            if position is None:
                continue
            history = histories[key][: position + 1]
            current = history[-1]
            last_close[key] = current.close
            if not eligible:
                continue
            met = evaluate_conditions(strategy.entry_conditions, history)
            trade = open_trades.get(key)
            if trade is not None:
                adverse = current.low if trade.direction > 0 else current.high
                favourable = current.high if trade.direction > 0 else current.low
                exit_price, reason = None, None
                if risk.stop_loss_on_each_script > 0:
                    stop = _risk_level(risk.stop_loss_on_each_script, risk.target_sl_type, trade.entry_price, trade.quantity)
                    if (adverse - trade.entry_price) * trade.direction <= -stop:
                        exit_price, reason = trade.entry_price - stop * trade.direction, ExitReason.STOP_LOSS
                if reason is None and risk.target_on_each_script > 0:
                    target = _risk_level(risk.target_on_each_script, risk.target_sl_type, trade.entry_price, trade.quantity)
                    if (favourable - trade.entry_price) * trade.direction >= target:
                        exit_price, reason = trade.entry_price + target * trade.direction, ExitReason.TARGET
                if reason is None and not met:
                    exit_price, reason = current.close, ExitReason.SQUARE_OFF
                if reason is not None and exit_price is not None:
                    costs = flat_costs(trade.quantity * exit_price, config.indicator_cost_rate)
                    portfolio.close(trade, exit_price, current.timestamp, costs, reason, tracker)
                    del open_trades[key]
                continue
            if met:
                quantity = instrument.quantity * direction
                trade = SimulatedTrade(
                    symbol=instrument.symbol or resolve_instrument(key, instrument.symbol).symbol,
                    quantity=quantity,
                    entry_price=current.close,
                    theoretical_price=current.close,
                    entry_time=current.timestamp,
                    instrument_type=InstrumentKind.EQ.value,
                    entry_costs=flat_costs(quantity * current.close, config.indicator_cost_rate),
                    stop_loss=risk.stop_loss_on_each_script,
                    target=risk.target_on_each_script,
                    entry_reason=ExitReason.ENTRY_CONDITION_MET.value,
                )
                portfolio.open(trade)
                open_trades[key] = trade
        equity = portfolio.cash + sum(trade.quantity * last_close.get(key, trade.entry_price) for key, trade in open_trades.items())
        tracker.update_equity(equity, day)
        curve.append(EquityCurvePoint(date=day, equity=equity))

    if open_trades and timeline:
        end = timeline[-1].timestamp
        for key, trade in list(open_trades.items()):
            price = last_close.get(key, trade.entry_price)
            costs = flat_costs(trade.quantity * price, config.indicator_cost_rate)
            portfolio.close(trade, price, end, costs, ExitReason.SQUARE_OFF, tracker)
        open_trades.clear()
        curve[-1] = EquityCurvePoint(date=curve[-1].date, equity=portfolio.cash)
        tracker.update_equity(portfolio.cash, curve[-1].date)
    return portfolio, tracker, curve


def _summarize(
    strategy: Strategy,
    portfolio: _Portfolio,
    tracker: PerformanceTracker,
    curve: list[EquityCurvePoint],
    initial_capital: float,
) -> BacktestSummary:
    final_equity = portfolio.cash
    total_return = (final_equity - initial_capital) / initial_capital * 100.0
    closed = len(portfolio.trades)
    if strategy.is_time_based and strategy.order_legs:
        total_trades = round(closed / len(strategy.order_legs))
    else:
        total_trades = closed
    returns = period_returns([point.equity for point in curve])
    return BacktestSummary(
        initial_capital=initial_capital,
        final_equity=round(final_equity, 2),
        total_return_pct=round(total_return, 2),
        total_pnl=round(sum(trade.pnl for trade in portfolio.trades), 2),
        total_trades=total_trades,
        closed_legs=closed,
        winning_legs=tracker.winning_trades,
        losing_legs=tracker.losing_trades,
        win_rate=round(tracker.win_rate, 2),
        sharpe_ratio=round(sharpe_ratio(returns), 2),
        max_drawdown_pct=round(tracker.max_drawdown_pct, 2),
        max_drawdown_date=tracker.max_drawdown_date,
        peak_equity=round(tracker.peak_equity, 2),
        max_consecutive_wins=tracker.max_consecutive_wins,
        max_consecutive_losses=tracker.max_consecutive_losses,
        total_transaction_costs=round(portfolio.total_costs, 2),
        total_slippage=round(portfolio.total_slippage, 2),
        net_return_pct=round(total_return - portfolio.total_costs / initial_capital * 100.0, 2),
    )


def _check_shape(strategy: Strategy) -> list[InstrumentRef]:
    if not strategy.trading_days.any_enabled():
        raise ValidationError(f"strategy {strategy.id} has no trading days enabled")
    if strategy.is_time_based:
        if not strategy.order_legs:
            raise ValidationError(f"time-based strategy {strategy.id} has no order legs")
        return [resolve_instrument(strategy.instrument, strategy.trading_symbol)]
    if not strategy.instruments:
        raise ValidationError(f"indicator strategy {strategy.id} has no instruments")
    if not strategy.entry_conditions:
        raise ValidationError(f"indicator strategy {strategy.id} has no entry conditions")
    validate_conditions(strategy.entry_conditions)
    return [resolve_instrument(item.instrument_id, item.symbol) for item in strategy.instruments]


def run_backtest(
    paths: RuntimePaths,
    strategy: Strategy | str,
    user_id: str | None = None,
    period: str = "1m",
    config: SimulationConfig | None = None,
    persist: bool = True,
) -> BacktestResult:
    config = config or SimulationConfig()
    if isinstance(strategy, str):
        strategy = get_strategy(paths, strategy)
    if config.initial_capital <= 0:
        raise ValidationError("initial_capital must be positive")
    user_id = (user_id or strategy.owner_id or "").strip()
    if not user_id:
        raise ValidationError("user_id is required")

    refs = _check_shape(strategy)
    primary = refs[0]
    latest = latest_bar_timestamp(paths, primary.symbol)
    if latest is None:
        raise DataUnavailable(f"no bars stored for {primary.symbol}")
    start, end = resolve_replay_window(period, latest)
    timeline = load_bars(paths, primary.symbol, start, end)
    if not timeline:
        raise DataUnavailable(f"no bars for {primary.symbol} between {start.isoformat()} and {end.isoformat()}")

    if strategy.is_time_based:
        portfolio, tracker, curve = simulate_time_based(strategy, primary.symbol, timeline, config, paths)
        instrument_label = primary.symbol
    else:
        warmup = max(config.warmup_bars, required_history(strategy.entry_conditions))
        histories: dict[str, Sequence[Bar]] = {}
        for item, ref in zip(strategy.instruments, refs):
            window = timeline if ref.symbol == primary.symbol else load_bars(paths, ref.symbol, start, end)
            histories[item.instrument_id] = load_bars_before(paths, ref.symbol, start, warmup) + list(window)
        portfolio, tracker, curve = simulate_indicator_based(strategy, timeline, histories, config)
        instrument_label = ", ".join(ref.symbol for ref in refs)

    result = BacktestResult(
        strategy_id=strategy.id,
        user_id=user_id,
        strategy_name=strategy.name,
        instrument=instrument_label,
        period=period,
        window_start=start,
        window_end=end,
        summary=_summarize(strategy, portfolio, tracker, curve, config.initial_capital),
        trades=portfolio.trades,
        equity_curve=curve,
    )
    if not persist:
        return result

    result.result_id, result.run_at = save_backtest_run(paths, result.to_dict())
    append_audit_event(
        paths,
        "backtest.run",
        {
            "strategy_id": strategy.id,
            "user_id": user_id,
            "result_id": result.result_id,
            "period": period,
            "trades": len(result.trades),
        },
    )
    write_structured_log(
        paths,
        "backtest.completed",
        {
            "strategy_id": strategy.id,
            "result_id": result.result_id,
            "bars": len(timeline),
            "final_equity": result.summary.final_equity,
        },
    )
    return result

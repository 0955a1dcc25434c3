from __future__ import annotations

from datetime import date, datetime, time, timedelta

from algo_engine.errors import ValidationError
from algo_engine.strategy.models import Strategy


def _minute(moment: datetime | time) -> time:
    clock = moment.time() if isinstance(moment, datetime) else moment
    return clock.replace(second=0, microsecond=0)


def is_trading_day(strategy: Strategy, day: date) -> bool:
    return strategy.trading_days.allows(day.weekday())


def within_window(strategy: Strategy, moment: datetime | time) -> bool:
    """True when the wall-clock minute lies in [start_time, square_off_time]."""
    clock = _minute(moment)
    return strategy.start_clock <= clock <= strategy.square_off_clock


def is_eligible(strategy: Strategy, moment: datetime) -> bool:
    return is_trading_day(strategy, moment.date()) and within_window(strategy, moment)


def session_bounds(strategy: Strategy, day: date) -> tuple[datetime, datetime]:
    return (
        datetime.combine(day, strategy.start_clock),
        datetime.combine(day, strategy.square_off_clock),
    )


def next_session_start(strategy: Strategy, after: datetime) -> datetime:
    if not strategy.trading_days.any_enabled():
        raise ValidationError(f"strategy {strategy.id} has no trading days enabled")
    for offset in range(0, 8):
        day = after.date() + timedelta(days=offset)
        if not is_trading_day(strategy, day):
            continue
        start, _ = session_bounds(strategy, day)
        if start > after:
            return start
    raise ValidationError(f"strategy {strategy.id} has no upcoming session")


def compute_next_run(
    strategy: Strategy,
    now: datetime,
    interval: timedelta,
    square_off_pending: bool = False,
) -> datetime:
    """Next evaluation time after a run at ``now``.

    Time-based strategies wake at each session start, plus the session's
    square-off time while entered legs are open. Indicator strategies are
    re-evaluated every ``interval`` inside the window, with the square-off
    minute always included.
    """
    today_allowed = is_trading_day(strategy, now.date())
    start, square_off = session_bounds(strategy, now.date())

    if square_off_pending:
        if today_allowed and now < square_off:
            if strategy.is_time_based:
                return square_off
            return min(now + interval, square_off)
        return now + interval

    if strategy.is_time_based:
        return next_session_start(strategy, now)

    if today_allowed and start <= now < square_off:
        return min(now + interval, square_off)
    if today_allowed and now < start:
        return start
    return next_session_start(strategy, now)

from __future__ import annotations

import calendar
import math
import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from algo_engine.errors import ValidationError
from algo_engine.strategy.models import ExpiryClass, InstrumentKind, StrikeReference, TradeAction

DEFAULT_STRIKE_INCREMENT = 50
STRIKE_INCREMENTS: dict[str, int] = {
    "NIFTY": 50,
    "NIFTY50": 50,
    "NIFTY 50": 50,
    "FINNIFTY": 50,
    "NIFTY FINANCIAL": 50,
    "NIFTY FIN SERVICE": 50,
    "BANKNIFTY": 100,
    "NIFTY BANK": 100,
    "SENSEX": 100,
}

EXPIRY_WEEKDAY = 3  # Thursday
EXPIRY_CUTOFF = time(hour=15, minute=30)
QUARTER_END_MONTHS = (3, 6, 9, 12)
DAYS_PER_YEAR = 365.0
MIN_PRICE = 0.1

LIQUIDITY_MULTIPLIERS = {"high": 1.0, "normal": 1.05, "low": 1.15, "very_low": 1.3}
SLIPPAGE_BASE_RATES = {"high": 0.001, "normal": 0.002, "low": 0.005, "very_low": 0.01}

_SELECTION = re.compile(r"^(ITM|OTM)\s+(\d+(?:\.\d+)?)$")


@dataclass(frozen=True)
class OptionQuote:
    intrinsic_value: float
    time_value: float
    theoretical_price: float
    market_price: float
    slippage: float
    fill_price: float


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def strike_increment(symbol: str) -> int:
    return STRIKE_INCREMENTS.get(symbol.strip().upper(), DEFAULT_STRIKE_INCREMENT)


def atm_strike(underlying_price: float, symbol: str) -> int:
    increment = strike_increment(symbol)
    return _round_half_up(underlying_price / increment) * increment


def select_strike(
    underlying_price: float,
    symbol: str,
    selection: str,
    option_type: InstrumentKind | str = InstrumentKind.CE,
    reference: StrikeReference | str = StrikeReference.ATM_POINTS,
) -> int:
    """Resolve an ``ATM`` / ``ITM N`` / ``OTM N`` selection to a strike.

    For calls ITM lies below the ATM strike and OTM above it; puts mirror
    that. Under ``ATM %`` the offset N is a percentage of the underlying,
    rounded to the strike increment.
    """
    reference = StrikeReference(reference)
    if reference not in (StrikeReference.ATM_POINTS, StrikeReference.ATM_PERCENT):
        raise ValidationError(f"strike reference {reference.value} requires an option chain and is not supported")
    atm = atm_strike(underlying_price, symbol)
    text = selection.strip().upper()
    if text == "ATM":
        return atm
    match = _SELECTION.match(text)
    if match is None:
        raise ValidationError(f"invalid strike selection: {selection}")
    side, raw_offset = match.group(1), float(match.group(2))
    if reference == StrikeReference.ATM_PERCENT:
        increment = strike_increment(symbol)
        offset = _round_half_up(underlying_price * raw_offset / 100.0 / increment) * increment
    else:
        offset = int(raw_offset) if raw_offset.is_integer() else raw_offset
    below = side == "ITM"
    if InstrumentKind(option_type) == InstrumentKind.PE:
        below = not below
    return atm - offset if below else atm + offset


def is_valid_strike(strike: float, symbol: str) -> bool:
    return strike > 0 and strike % strike_increment(symbol) == 0


def weekly_expiry(trade_time: datetime) -> date:
    day = trade_time.date()
    weekday = day.weekday()
    if weekday < EXPIRY_WEEKDAY:
        return day + timedelta(days=EXPIRY_WEEKDAY - weekday)
    if weekday > EXPIRY_WEEKDAY:
        return day + timedelta(days=7 - (weekday - EXPIRY_WEEKDAY))
    if trade_time.time() < EXPIRY_CUTOFF:
        return day
    return day + timedelta(days=7)


def _last_thursday(year: int, month: int) -> date:
    last_day = date(year, month, calendar.monthrange(year, month)[1])
    return last_day - timedelta(days=(last_day.weekday() - EXPIRY_WEEKDAY) % 7)


def _expired(expiry: date, trade_time: datetime) -> bool:
    day = trade_time.date()
    return expiry < day or (expiry == day and trade_time.time() >= EXPIRY_CUTOFF)


def monthly_expiry(trade_time: datetime) -> date:
    year, month = trade_time.year, trade_time.month
    expiry = _last_thursday(year, month)
    if _expired(expiry, trade_time):
        year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        expiry = _last_thursday(year, month)
    return expiry


def quarterly_expiry(trade_time: datetime) -> date:
    year = trade_time.year
    for month in QUARTER_END_MONTHS:
        if month < trade_time.month:
            continue
        expiry = _last_thursday(year, month)
        if not _expired(expiry, trade_time):
            return expiry
    return _last_thursday(year + 1, QUARTER_END_MONTHS[0])


def expiry_for(expiry_class: ExpiryClass | str, trade_time: datetime) -> date:
    expiry_class = ExpiryClass(expiry_class)
    if expiry_class == ExpiryClass.MONTHLY:
        return monthly_expiry(trade_time)
    if expiry_class == ExpiryClass.QUARTERLY:
        return quarterly_expiry(trade_time)
    return weekly_expiry(trade_time)


def years_to_expiry(trade_time: datetime, expiry: date) -> float:
    return (expiry - trade_time.date()).days / DAYS_PER_YEAR


def intrinsic_value(underlying_price: float, strike: float, option_type: InstrumentKind | str) -> float:
    if InstrumentKind(option_type) == InstrumentKind.CE:
        return max(0.0, underlying_price - strike)
    return max(0.0, strike - underlying_price)


def _moneyness_multiplier(moneyness: float, option_type: InstrumentKind) -> float:
    if option_type == InstrumentKind.CE:
        if moneyness > 1.1:
            return 0.3
        if moneyness > 1.05:
            return 0.6
        if moneyness > 0.95:
            return 1.0
        if moneyness > 0.9:
            return 0.8
        return 0.4
    if moneyness < 0.9:
        return 0.3
    if moneyness < 0.95:
        return 0.6
    if moneyness < 1.05:
        return 1.0
    if moneyness < 1.1:
        return 0.8
    return 0.4


def time_value(
    underlying_price: float,
    strike: float,
    years: float,
    volatility: float,
    option_type: InstrumentKind | str,
) -> float:
    if years <= 0:
        return 0.0
    base = volatility * underlying_price * 0.01 * math.sqrt(years)
    value = base * _moneyness_multiplier(underlying_price / strike, InstrumentKind(option_type))
    return max(MIN_PRICE, value)


def theoretical_price(
    underlying_price: float,
    strike: float,
    years: float,
    volatility: float,
    option_type: InstrumentKind | str,
) -> float:
    value = intrinsic_value(underlying_price, strike, option_type) + time_value(
        underlying_price, strike, years, volatility, option_type
    )
    return max(MIN_PRICE, value)


def liquidity_multiplier(liquidity: str) -> float:
    return LIQUIDITY_MULTIPLIERS.get(liquidity, LIQUIDITY_MULTIPLIERS["normal"])


def slippage_amount(price: float, quantity: int, liquidity: str) -> float:
    rate = SLIPPAGE_BASE_RATES.get(liquidity, SLIPPAGE_BASE_RATES["normal"])
    quantity_factor = min(2.0, 1.0 + (abs(quantity) - 1) * 0.1)
    return price * rate * quantity_factor


def fill_with_slippage(market_price: float, quantity: int, side: TradeAction | str, liquidity: str) -> tuple[float, float]:
    slip = slippage_amount(market_price, quantity, liquidity)
    if TradeAction(side) == TradeAction.BUY:
        return max(MIN_PRICE, market_price + slip), slip
    return max(MIN_PRICE, market_price - slip), slip


def quote_option(
    underlying_price: float,
    strike: float,
    years: float,
    option_type: InstrumentKind | str,
    quantity: int,
    side: TradeAction | str,
    volatility: float = 0.2,
    liquidity: str = "normal",
) -> OptionQuote:
    intrinsic = intrinsic_value(underlying_price, strike, option_type)
    extrinsic = time_value(underlying_price, strike, years, volatility, option_type)
    theoretical = theoretical_price(underlying_price, strike, years, volatility, option_type)
    market = theoretical * liquidity_multiplier(liquidity)
    fill, slip = fill_with_slippage(market, quantity, side, liquidity)
    return OptionQuote(
        intrinsic_value=intrinsic,
        time_value=extrinsic,
        theoretical_price=theoretical,
        market_price=market,
        slippage=slip,
        fill_price=fill,
    )


def option_symbol(underlying: str, expiry: date, strike: float, option_type: InstrumentKind | str) -> str:
    root = underlying.replace(" ", "").upper()
    if root.endswith("50"):
        root = root[:-2]
    strike_text = str(int(strike)) if float(strike).is_integer() else f"{strike:g}"
    month = calendar.month_abbr[expiry.month].upper()
    return f"{root}{expiry.day:02d}{month}{expiry.year % 100:02d}{strike_text}{InstrumentKind(option_type).value}"

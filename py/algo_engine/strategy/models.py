from __future__ import annotations

from datetime import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator

_CLOCK_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"
_WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")


class StrategyKind(str, Enum):
    TIME_BASED = "time_based"
    INDICATOR_BASED = "indicator_based"


class StrategyStatus(str, Enum):
    DRAFT = "draft"
    ACTIVE = "active"
    PAUSED = "paused"
    STOPPED = "stopped"
    COMPLETED = "completed"
    BACKTESTED = "backtested"


class BrokerName(str, Enum):
    ANGEL = "angel"
    DHAN = "dhan"


class TradeAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class InstrumentKind(str, Enum):
    CE = "CE"
    PE = "PE"
    FUT = "FUT"
    EQ = "EQ"


class ExpiryClass(str, Enum):
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    QUARTERLY = "Quarterly"


class StrikeReference(str, Enum):
    ATM_POINTS = "ATM pt"
    ATM_PERCENT = "ATM %"
    CLOSEST_PREMIUM = "CP"
    PREMIUM_AT_LEAST = "CP >="
    PREMIUM_AT_MOST = "CP <="


class LevelUnit(str, Enum):
    PRICE = "On Price"
    PERCENTAGE = "On Percentage"
    POINTS = "On Points"


class ProfitTrailing(str, Enum):
    NONE = "No Trailing"
    LOCK_FIX_PROFIT = "Lock Fix Profit"
    TRAIL_PROFIT = "Trail Profit"
    LOCK_AND_TRAIL = "Lock and Trail"


class ProductClass(str, Enum):
    MIS = "MIS"
    NRML = "NRML"
    CNC = "CNC"
    BTST = "BTST"


class TransactionPolicy(str, Enum):
    BOTH_SIDE = "Both Side"
    ONLY_LONG = "Only Long"
    ONLY_SHORT = "Only Short"


class RiskUnit(str, Enum):
    PERCENTAGE = "percentage"
    AMOUNT = "amount"
    POINTS = "points"


class TradingDays(BaseModel):
    monday: bool = True
    tuesday: bool = True
    wednesday: bool = True
    thursday: bool = True
    friday: bool = True
    saturday: bool = False
    sunday: bool = False

    def allows(self, weekday: int) -> bool:
        return bool(getattr(self, _WEEKDAYS[weekday]))

    def any_enabled(self) -> bool:
        return any(getattr(self, day) for day in _WEEKDAYS)


class OrderLeg(BaseModel):
    action: TradeAction
    quantity: int = Field(ge=1)
    instrument_type: InstrumentKind = InstrumentKind.CE
    expiry: ExpiryClass = ExpiryClass.WEEKLY
    strike_price_reference: StrikeReference = StrikeReference.ATM_POINTS
    strike_price_selection: str = Field(default="ATM", pattern=r"^(ATM|ITM \d+|OTM \d+)$")
    stop_loss_value: float = Field(default=0.0, ge=0)
    stop_loss_type: LevelUnit = LevelUnit.POINTS
    take_profit_value: float = Field(default=0.0, ge=0)
    take_profit_type: LevelUnit = LevelUnit.POINTS
    profit_trailing: ProfitTrailing = ProfitTrailing.NONE
    profit_reaches: float = Field(default=0.0, ge=0)
    lock_profit_at: float = Field(default=0.0, ge=0)
    every_increase_of: float = Field(default=0.0, ge=0)
    trail_profit_by: float = Field(default=0.0, ge=0)

    @property
    def direction(self) -> int:
        return 1 if self.action == TradeAction.BUY else -1


class EntryCondition(BaseModel):
    indicator1: str = Field(min_length=1)
    comparator: str = Field(min_length=1)
    indicator2: str = Field(min_length=1)
    value: float | None = None
    period: int | None = Field(default=None, ge=1)

    def describe(self) -> str:
        right = self.indicator2
        if self.value is not None and self.indicator2.lower() == "number":
            right = f"{self.value:g}"
        elif self.period:
            right = f"{self.indicator2}({self.period})"
        return f"{self.indicator1} {self.comparator} {right}"


class StrategyInstrument(BaseModel):
    instrument_id: str = Field(min_length=1)
    quantity: int = Field(default=1, ge=1)
    symbol: str | None = None
    name: str | None = None
    security_id: str | None = None


class RiskManagement(BaseModel):
    target_on_each_script: float = Field(default=0.0, ge=0)
    stop_loss_on_each_script: float = Field(default=0.0, ge=0)
    target_sl_type: RiskUnit = RiskUnit.PERCENTAGE
    max_trade_cycle: int | None = Field(default=None, ge=1)
    no_trade_after_time: str | None = Field(default=None, pattern=_CLOCK_PATTERN)


class Strategy(BaseModel):
    id: str = Field(min_length=1)
    owner_id: str = ""
    name: str = ""
    kind: StrategyKind
    broker: BrokerName = BrokerName.DHAN
    status: StrategyStatus = StrategyStatus.DRAFT
    instrument: str | None = None
    security_id: str | None = None
    trading_symbol: str | None = None
    exchange_segment: str = "NSE_EQ"
    order_type: ProductClass = ProductClass.MIS
    order_legs: list[OrderLeg] = Field(default_factory=list)
    instruments: list[StrategyInstrument] = Field(default_factory=list)
    entry_conditions: list[EntryCondition] = Field(default_factory=list)
    transaction_type: TransactionPolicy = TransactionPolicy.BOTH_SIDE
    start_time: str = Field(default="09:15", pattern=_CLOCK_PATTERN)
    square_off_time: str = Field(default="15:15", pattern=_CLOCK_PATTERN)
    trading_days: TradingDays = Field(default_factory=TradingDays)
    risk_management: RiskManagement = Field(default_factory=RiskManagement)
    last_run_at: str | None = None

    @field_validator("owner_id", "name", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value

    @property
    def start_clock(self) -> time:
        return parse_clock(self.start_time)

    @property
    def square_off_clock(self) -> time:
        return parse_clock(self.square_off_time)

    @property
    def is_time_based(self) -> bool:
        return self.kind == StrategyKind.TIME_BASED


def parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(hour=int(hours), minute=int(minutes))

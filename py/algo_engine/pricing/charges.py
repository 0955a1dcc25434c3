from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChargeSchedule:
    brokerage_bps: float = 3.0
    brokerage_floor: float = 20.0
    stt_bps: float = 5.0
    exchange_txn_bps: float = 1.0
    sebi_bps: float = 0.01
    stamp_bps: float = 1.5
    stamp_floor: float = 1.0


@dataclass(frozen=True)
class ChargeBreakdown:
    notional: float
    brokerage: float
    stt: float
    exchange: float
    sebi: float
    stamp: float

    @property
    def total(self) -> float:
        return self.brokerage + self.stt + self.exchange + self.sebi + self.stamp

    def to_dict(self) -> dict[str, float]:
        return {
            "notional": self.notional,
            "brokerage": self.brokerage,
            "stt": self.stt,
            "exchange": self.exchange,
            "sebi": self.sebi,
            "stamp": self.stamp,
            "total": self.total,
        }


DEFAULT_SCHEDULE = ChargeSchedule()


def charge_breakdown(notional: float, schedule: ChargeSchedule = DEFAULT_SCHEDULE) -> ChargeBreakdown:
    if notional < 0:
        raise ValueError("notional must be non-negative")
    return ChargeBreakdown(
        notional=notional,
        brokerage=max(schedule.brokerage_floor, notional * schedule.brokerage_bps / 10000.0),
        stt=notional * schedule.stt_bps / 10000.0,
        exchange=notional * schedule.exchange_txn_bps / 10000.0,
        sebi=notional * schedule.sebi_bps / 10000.0,
        stamp=max(schedule.stamp_floor, notional * schedule.stamp_bps / 10000.0),
    )


def transaction_costs(notional: float, schedule: ChargeSchedule = DEFAULT_SCHEDULE) -> float:
    return charge_breakdown(notional, schedule).total


def flat_costs(notional: float, rate: float = 0.001) -> float:
    return abs(notional) * rate

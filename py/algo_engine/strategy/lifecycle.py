from __future__ import annotations

from algo_engine.errors import ValidationError
from algo_engine.strategy.models import StrategyStatus

_TRANSITIONS: dict[str, dict[StrategyStatus, StrategyStatus]] = {
    "start": {
        StrategyStatus.DRAFT: StrategyStatus.ACTIVE,
        StrategyStatus.STOPPED: StrategyStatus.ACTIVE,
        StrategyStatus.BACKTESTED: StrategyStatus.ACTIVE,
        StrategyStatus.PAUSED: StrategyStatus.ACTIVE,
        StrategyStatus.ACTIVE: StrategyStatus.ACTIVE,
    },
    "stop": {
        StrategyStatus.ACTIVE: StrategyStatus.STOPPED,
        StrategyStatus.PAUSED: StrategyStatus.STOPPED,
        StrategyStatus.STOPPED: StrategyStatus.STOPPED,
    },
    "pause": {
        StrategyStatus.ACTIVE: StrategyStatus.PAUSED,
        StrategyStatus.PAUSED: StrategyStatus.PAUSED,
    },
    "resume": {
        StrategyStatus.PAUSED: StrategyStatus.ACTIVE,
        StrategyStatus.ACTIVE: StrategyStatus.ACTIVE,
    },
}


def next_status(current: StrategyStatus | str, action: str) -> StrategyStatus:
    if action not in _TRANSITIONS:
        raise ValidationError(f"unknown lifecycle action: {action}")
    status = StrategyStatus(current)
    allowed = _TRANSITIONS[action]
    if status not in allowed:
        raise ValidationError(f"cannot {action} a strategy in status {status.value}")
    return allowed[status]


def can_transition(current: StrategyStatus | str, action: str) -> bool:
    try:
        next_status(current, action)
    except ValidationError:
        return False
    return True

from __future__ import annotations

import unittest
from datetime import datetime, time, timedelta

from algo_engine.engine.registry import RunningStrategy, StrategyRegistry
from algo_engine.engine.schedule import compute_next_run, is_eligible, next_session_start, within_window
from algo_engine.errors import AlreadyActive, NotActive, ValidationError
from algo_engine.strategy.lifecycle import can_transition, next_status
from algo_engine.strategy.models import Strategy, StrategyStatus

FIVE_MINUTES = timedelta(minutes=5)


def _strategy(kind: str = "time_based", **overrides: object) -> Strategy:
    payload: dict[str, object] = {
        "id": f"strat-{kind}",
        "owner_id": "user-1",
        "kind": kind,
        "instrument": "nifty-50-idx-nse",
        "start_time": "09:15",
        "square_off_time": "15:15",
        "order_legs": [{"action": "BUY", "quantity": 1}],
    }
    payload.update(overrides)
    return Strategy.model_validate(payload)


class WindowTests(unittest.TestCase):
    def test_window_is_inclusive_at_minute_granularity(self) -> None:
        strategy = _strategy()
        self.assertTrue(within_window(strategy, time(9, 15)))
        self.assertTrue(within_window(strategy, datetime(2024, 3, 4, 15, 15, 30)))
        self.assertFalse(within_window(strategy, datetime(2024, 3, 4, 15, 16)))
        self.assertFalse(within_window(strategy, datetime(2024, 3, 4, 9, 14, 59)))

    def test_weekend_is_not_eligible_by_default(self) -> None:
        strategy = _strategy()
        self.assertTrue(is_eligible(strategy, datetime(2024, 3, 8, 10, 0)))
        self.assertFalse(is_eligible(strategy, datetime(2024, 3, 9, 10, 0)))

    def test_empty_day_mask_has_no_session(self) -> None:
        strategy = _strategy(
            trading_days={"monday": False, "tuesday": False, "wednesday": False, "thursday": False, "friday": False}
        )
        with self.assertRaises(ValidationError):
            next_session_start(strategy, datetime(2024, 3, 4, 8, 0))


class NextRunTests(unittest.TestCase):
    def test_time_based_wakes_at_next_session_start(self) -> None:
        strategy = _strategy()
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 8, 0), FIVE_MINUTES),
            datetime(2024, 3, 4, 9, 15),
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 9, 15), FIVE_MINUTES),
            datetime(2024, 3, 5, 9, 15),
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 8, 16, 0), FIVE_MINUTES),
            datetime(2024, 3, 11, 9, 15),
        )

    def test_time_based_with_open_legs_wakes_at_square_off(self) -> None:
        strategy = _strategy()
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 9, 15), FIVE_MINUTES, square_off_pending=True),
            datetime(2024, 3, 4, 15, 15),
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 15, 15), FIVE_MINUTES, square_off_pending=True),
            datetime(2024, 3, 4, 15, 20),
        )

    def test_indicator_strategy_polls_inside_window(self) -> None:
        strategy = _strategy(
            "indicator_based",
            instruments=[{"instrument_id": "RELIANCE-NSE-EQUITY"}],
            entry_conditions=[{"indicator1": "close", "comparator": ">", "indicator2": "number", "value": 1}],
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 10, 0), FIVE_MINUTES),
            datetime(2024, 3, 4, 10, 5),
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 15, 13), FIVE_MINUTES),
            datetime(2024, 3, 4, 15, 15),
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 8, 0), FIVE_MINUTES),
            datetime(2024, 3, 4, 9, 15),
        )
        self.assertEqual(
            compute_next_run(strategy, datetime(2024, 3, 4, 15, 15), FIVE_MINUTES),
            datetime(2024, 3, 5, 9, 15),
        )


class LifecycleTests(unittest.TestCase):
    def test_transitions(self) -> None:
        self.assertEqual(next_status(StrategyStatus.DRAFT, "start"), StrategyStatus.ACTIVE)
        self.assertEqual(next_status("active", "pause"), StrategyStatus.PAUSED)
        self.assertEqual(next_status("paused", "resume"), StrategyStatus.ACTIVE)
        self.assertEqual(next_status("paused", "stop"), StrategyStatus.STOPPED)
        self.assertFalse(can_transition(StrategyStatus.DRAFT, "stop"))
        self.assertFalse(can_transition(StrategyStatus.STOPPED, "resume"))

    def test_invalid_transition_raises(self) -> None:
        with self.assertRaises(ValidationError):
            next_status(StrategyStatus.DRAFT, "pause")
        with self.assertRaises(ValidationError):
            next_status(StrategyStatus.ACTIVE, "archive")


class RegistryTests(unittest.TestCase):
    def _entry(self, strategy_id: str, next_run: datetime, user_id: str = "user-1") -> RunningStrategy:
        return RunningStrategy(
            strategy=_strategy(id=strategy_id, owner_id=user_id),
            user_id=user_id,
            client=object(),  # type: ignore[arg-type]
            next_run=next_run,
        )

    def test_add_remove_and_duplicates(self) -> None:
        registry = StrategyRegistry()
        registry.add(self._entry("a", datetime(2024, 3, 4, 9, 15)))
        with self.assertRaises(AlreadyActive):
            registry.add(self._entry("a", datetime(2024, 3, 4, 9, 15)))
        self.assertEqual(registry.size(), 1)
        self.assertIn("a", registry)
        registry.remove("a")
        with self.assertRaises(NotActive):
            registry.remove("a")
        self.assertEqual(registry.size(), 0)

    def test_due_skips_inactive_and_future_entries(self) -> None:
        registry = StrategyRegistry()
        now = datetime(2024, 3, 4, 10, 0)
        registry.add(self._entry("due", now))
        registry.add(self._entry("later", now + FIVE_MINUTES))
        paused = self._entry("paused", now, user_id="user-2")
        paused.is_active = False
        registry.add(paused)

        self.assertEqual([entry.strategy_id for entry in registry.due(now)], ["due"])
        self.assertEqual(len(registry.for_user("user-1")), 2)
        self.assertEqual(registry.user_ids(), {"user-1", "user-2"})


if __name__ == "__main__":
    unittest.main()

"""
Condition Evaluator

Decides whether a workflow's trigger fires for a given market snapshot and
wallet balance. Dispatch is by trigger type; anything unrecognized simply
doesn't fire, so one malformed or legacy rule never blocks the rest of the
set.
"""

import numpy as np
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Callable, Dict

from market_data import MarketSnapshot, DEFAULT_TOKEN


EQUALS_TOLERANCE = 0.01
TIME_INTERVAL_PROBABILITY = 0.3


class TriggerType(Enum):
    PRICE_THRESHOLD = "price_threshold"
    BALANCE_THRESHOLD = "balance_threshold"
    TIME_INTERVAL = "time_interval"
    NETWORK_ACTIVITY = "network_activity"
    USER_ONBOARDING = "user_onboarding"
    TRANSACTION_COUNT = "transaction_count"


class TriggerCondition(Enum):
    ABOVE = "above"
    BELOW = "below"
    EQUALS = "equals"
    EVERY = "every"


def _parse(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def _naive_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment
    return moment.astimezone(timezone.utc).replace(tzinfo=None)


def _compare(actual: float, op: Optional[TriggerCondition], expected: float, allow_equals: bool = False) -> bool:
    if op == TriggerCondition.ABOVE:
        return actual > expected
    elif op == TriggerCondition.BELOW:
        return actual < expected
    elif op == TriggerCondition.EQUALS and allow_equals:
        return abs(actual - expected) < EQUALS_TOLERANCE
    return False


class ConditionEvaluator:
    """
    Evaluates trigger predicates.

    time_interval triggers have two modes:
      - "random": fire with a fixed probability, drawn from the injected rng
      - "elapsed": fire when trigger_value seconds have passed since the
        rule last executed (or it never has)
    """

    def __init__(
        self,
        rng: Optional[np.random.Generator] = None,
        time_interval_probability: float = TIME_INTERVAL_PROBABILITY,
        time_interval_mode: str = "random",
        default_token: str = DEFAULT_TOKEN,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if not 0 <= time_interval_probability <= 1:
            raise ValueError("time_interval_probability must be within [0, 1]")
        if time_interval_mode not in ("random", "elapsed"):
            raise ValueError(f"Unknown time_interval_mode {time_interval_mode!r}")

        self.rng = rng if rng is not None else np.random.default_rng()
        self.time_interval_probability = time_interval_probability
        self.time_interval_mode = time_interval_mode
        self.default_token = default_token
        self.clock = clock or datetime.utcnow

        self._handlers: Dict[TriggerType, Callable] = {
            TriggerType.PRICE_THRESHOLD: self._check_price,
            TriggerType.BALANCE_THRESHOLD: self._check_balance,
            TriggerType.NETWORK_ACTIVITY: self._check_network_activity,
            TriggerType.USER_ONBOARDING: self._check_onboarding,
            TriggerType.TRANSACTION_COUNT: self._check_transaction_count,
            TriggerType.TIME_INTERVAL: self._check_time_interval,
        }

    def fires(self, rule, snapshot: MarketSnapshot, balance: float) -> bool:
        trigger = _parse(TriggerType, rule.trigger_type)
        handler = self._handlers.get(trigger)
        if handler is None:
            return False

        try:
            threshold = float(rule.trigger_value)
        except (TypeError, ValueError):
            return False

        op = _parse(TriggerCondition, rule.trigger_condition)
        return bool(handler(rule, op, threshold, snapshot, balance or 0))

    # ─────────────────────────────────────────────────────────
    # Per-trigger checks
    # ─────────────────────────────────────────────────────────

    def _check_price(self, rule, op, threshold, snapshot, balance) -> bool:
        price = snapshot.token_prices.get(rule.trigger_token or self.default_token, 0)
        return _compare(price, op, threshold, allow_equals=True)

    def _check_balance(self, rule, op, threshold, snapshot, balance) -> bool:
        return _compare(balance, op, threshold)

    def _check_network_activity(self, rule, op, threshold, snapshot, balance) -> bool:
        return _compare(snapshot.network_activity, op, threshold)

    def _check_onboarding(self, rule, op, threshold, snapshot, balance) -> bool:
        # Operator is ignored for onboarding triggers
        return snapshot.new_users >= threshold

    def _check_transaction_count(self, rule, op, threshold, snapshot, balance) -> bool:
        return op == TriggerCondition.ABOVE and snapshot.transaction_count > threshold

    def _check_time_interval(self, rule, op, threshold, snapshot, balance) -> bool:
        if self.time_interval_mode == "elapsed":
            if not rule.last_executed_at:
                return True
            try:
                last = datetime.fromisoformat(rule.last_executed_at.replace("Z", "+00:00"))
            except (AttributeError, TypeError, ValueError):
                return True
            # Compare as naive UTC; stored timestamps may carry an offset
            last = _naive_utc(last)
            now = _naive_utc(self.clock())
            return (now - last).total_seconds() >= threshold

        return self.rng.random() >= 1 - self.time_interval_probability


_default_evaluator = None


def fires(rule, snapshot: MarketSnapshot, balance: float) -> bool:
    """Evaluate with a shared default evaluator."""
    global _default_evaluator
    if _default_evaluator is None:
        _default_evaluator = ConditionEvaluator()
    return _default_evaluator.fires(rule, snapshot, balance)


def describe_trigger(rule) -> str:
    """Human-readable trigger label stored on the execution record."""
    return f"{rule.trigger_type}: {rule.trigger_condition} {rule.trigger_value}"

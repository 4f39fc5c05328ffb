"""
Reward Calculator

Fixed per-action reward rates for fired workflows.
"""

import math
from enum import Enum
from typing import Dict


class ActionType(Enum):
    STAKE = "stake"
    UNSTAKE = "unstake"
    TRANSFER = "transfer"
    SWAP = "swap"
    DISTRIBUTE_REWARDS = "distribute_rewards"
    BRIDGE = "bridge"
    NOTIFY = "notify"


REWARD_RATES: Dict[str, float] = {
    ActionType.STAKE.value: 0.10,
    ActionType.DISTRIBUTE_REWARDS.value: 0.05,
    ActionType.TRANSFER.value: 0.02,
    ActionType.SWAP.value: 0.03,
    ActionType.BRIDGE.value: 0.08,
    ActionType.UNSTAKE.value: 0.0,
    ActionType.NOTIFY.value: 0.0,
}


def _clean_amount(amount) -> float:
    if amount is None or isinstance(amount, bool):
        return 0.0
    try:
        value = float(amount)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value) or math.isinf(value) or value < 0:
        return 0.0
    return value


def calculate_reward(action_type, amount=None) -> float:
    """
    Reward for one firing: amount * rate(action_type).

    Missing or invalid amounts count as 0 and unknown actions earn nothing,
    so the result is never negative and this never raises.
    """
    if isinstance(action_type, ActionType):
        action_type = action_type.value
    rate = REWARD_RATES.get(action_type, 0.0) if isinstance(action_type, str) else 0.0
    return _clean_amount(amount) * rate


def describe_action(rule) -> str:
    """Human-readable action label stored on the execution record."""
    return f"{rule.action_type}: {rule.action_amount} {rule.action_token}"

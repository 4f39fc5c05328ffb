"""Shared fixtures: in-memory store, fixed market snapshot, rule builders."""

import numpy as np
import pytest

from market_data import MarketSnapshot, FixedMarketDataSource
from workflow_engine import WorkflowEngine
from workflow_store import WorkflowStore, WorkflowRule

WALLET = "0xabc0000000000000000000000000000000000001"
OTHER_WALLET = "0xdef0000000000000000000000000000000000002"


def make_rule(**overrides) -> WorkflowRule:
    """Unsaved rule for pure evaluator tests."""
    data = dict(
        id="wf-1",
        wallet_address=WALLET,
        name="Test Rule",
        trigger_type="price_threshold",
        trigger_condition="above",
        trigger_value=2.0,
        trigger_token="RLO",
        action_type="stake",
        action_amount=100,
        action_token="RLO",
    )
    data.update(overrides)
    return WorkflowRule(**data)


def rule_data(**overrides) -> dict:
    """Input payload for store.insert_rule."""
    data = dict(
        name="Auto-Stake",
        trigger_type="balance_threshold",
        trigger_condition="above",
        trigger_value=1000,
        action_type="stake",
        action_amount=100,
        action_token="RLO",
    )
    data.update(overrides)
    return data


@pytest.fixture
def snapshot() -> MarketSnapshot:
    return MarketSnapshot(
        token_prices={"RLO": 2.5, "STK": 0.85, "RWD": 1.2, "ETH": 2500.0},
        network_activity=100,
        new_users=10,
        transaction_count=300,
    )


@pytest.fixture
def market(snapshot) -> FixedMarketDataSource:
    return FixedMarketDataSource(snapshot)


@pytest.fixture
def store():
    s = WorkflowStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def engine(store, market) -> WorkflowEngine:
    return WorkflowEngine(store, market_source=market)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)

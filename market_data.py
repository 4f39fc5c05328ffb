"""
Market Data Source

Produces simulated market snapshots for the Rialo testnet dashboard.
There is no real oracle: every call draws a fresh sample around fixed
base prices, plus synthetic network metrics.
"""

import numpy as np
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional


DEFAULT_TOKEN = "RLO"

BASE_PRICES: Dict[str, float] = {
    "RLO": 2.45,
    "STK": 0.85,
    "RWD": 1.20,
    "ETH": 2500.0,
}

# Full width of the jitter band: price = base + (u - 0.5) * jitter
PRICE_JITTER: Dict[str, float] = {
    "RLO": 0.5,
    "STK": 0.2,
    "RWD": 0.3,
    "ETH": 200.0,
}

NETWORK_ACTIVITY_RANGE = (50, 150)     # [low, high)
NEW_USERS_RANGE = (0, 20)
TRANSACTION_COUNT_RANGE = (100, 600)


@dataclass
class MarketSnapshot:
    """One simulated market sample, shared by every rule in a pass"""
    token_prices: Dict[str, float]
    network_activity: int
    new_users: int
    transaction_count: int
    captured_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def price_of(self, token: Optional[str]) -> float:
        return self.token_prices.get(token or DEFAULT_TOKEN, 0)

    def to_dict(self) -> Dict:
        """Wire shape consumed by the dashboard."""
        return {
            "tokenPrices": dict(self.token_prices),
            "networkActivity": self.network_activity,
            "newUsers": self.new_users,
            "transactionCount": self.transaction_count,
            "capturedAt": self.captured_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "MarketSnapshot":
        return cls(
            token_prices={k: float(v) for k, v in (data.get("tokenPrices") or {}).items()},
            network_activity=int(data.get("networkActivity", 0)),
            new_users=int(data.get("newUsers", 0)),
            transaction_count=int(data.get("transactionCount", 0)),
            captured_at=data.get("capturedAt") or datetime.utcnow().isoformat(),
        )


class MarketDataSource:
    """
    Randomized market data generator.

    The randomness source is an injectable numpy Generator so tests can
    seed it and pin exact samples.
    """

    def __init__(
        self,
        rng: Optional[np.random.Generator] = None,
        base_prices: Optional[Dict[str, float]] = None,
        jitter: Optional[Dict[str, float]] = None,
    ):
        self.rng = rng if rng is not None else np.random.default_rng()
        self.base_prices = dict(base_prices or BASE_PRICES)
        self.jitter = dict(jitter or PRICE_JITTER)

    def _price(self, token: str) -> float:
        base = self.base_prices[token]
        width = self.jitter.get(token, 0.0)
        return float(base + (self.rng.random() - 0.5) * width)

    def snapshot(self) -> MarketSnapshot:
        return MarketSnapshot(
            token_prices={token: self._price(token) for token in self.base_prices},
            network_activity=int(self.rng.integers(*NETWORK_ACTIVITY_RANGE)),
            new_users=int(self.rng.integers(*NEW_USERS_RANGE)),
            transaction_count=int(self.rng.integers(*TRANSACTION_COUNT_RANGE)),
        )


class FixedMarketDataSource:
    """Always returns the same snapshot. Used for demos and tests."""

    def __init__(self, snapshot: MarketSnapshot):
        self._snapshot = snapshot
        self.calls = 0

    def snapshot(self) -> MarketSnapshot:
        self.calls += 1
        return self._snapshot

"""
Workflow Evaluation Engine

Reads a wallet's active workflows, evaluates every trigger against one
shared market snapshot, and for each rule that fires:
  - computes the reward
  - appends an execution record
  - advances the rule's counters

Architecture:
  [Scheduler / API] → evaluate(owner, balance)
  [MarketDataSource] → one snapshot per pass
  [ConditionEvaluator] → fires?
  [Reward table] → reward
  [WorkflowStore] → execution record + counters

Consistency: writes are per rule. If the store fails halfway through a
pass, the error propagates and rules processed earlier in the same pass
keep their advanced counters (at-least-once, not atomic across rules).
Callers must not run two passes for the same owner concurrently; the
engine has no cross-call locking of its own.
"""

import threading
import uuid
import time
from datetime import datetime
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Callable

import numpy as np

from market_data import MarketDataSource, MarketSnapshot
from conditions import ConditionEvaluator, describe_trigger
from rewards import calculate_reward, describe_action
from workflow_store import ExecutionRecord, ExecutionResult, WorkflowRule


# ─────────────────────────────────────────────────────────────────
# Results
# ─────────────────────────────────────────────────────────────────

@dataclass
class EvaluationResult:
    """One fired workflow. Rules that did not fire are never reported."""
    workflow_id: str
    name: str
    reward: float
    action: str
    executed: bool = True


@dataclass
class EvaluationReport:
    """Outcome of one evaluation pass."""
    evaluation_id: str
    owner: str
    results: List[EvaluationResult]
    market_data: MarketSnapshot
    evaluated: int = 0          # active rules considered
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    latency_ms: float = 0.0

    @property
    def total_reward(self) -> float:
        return sum(r.reward for r in self.results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "evaluation_id": self.evaluation_id,
            "wallet_address": self.owner,
            "results": [asdict(r) for r in self.results],
            "marketData": self.market_data.to_dict(),
            "evaluated": self.evaluated,
            "timestamp": self.timestamp,
            "latency_ms": self.latency_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EvaluationReport":
        return cls(
            evaluation_id=data.get("evaluation_id") or str(uuid.uuid4()),
            owner=data.get("wallet_address", ""),
            results=[
                EvaluationResult(
                    workflow_id=r["workflow_id"],
                    name=r["name"],
                    reward=float(r.get("reward") or 0),
                    action=r["action"],
                    executed=r.get("executed", True),
                )
                for r in data.get("results") or []
            ],
            market_data=MarketSnapshot.from_dict(data.get("marketData") or {}),
            evaluated=data.get("evaluated", 0),
            timestamp=data.get("timestamp") or datetime.utcnow().isoformat(),
            latency_ms=data.get("latency_ms", 0.0),
        )


# ─────────────────────────────────────────────────────────────────
# Engine
# ─────────────────────────────────────────────────────────────────

def _validate_inputs(owner_wallet, balance) -> float:
    if not isinstance(owner_wallet, str) or not owner_wallet.strip():
        raise ValueError("wallet_address is required")
    if balance is None:
        return 0.0
    if isinstance(balance, bool):
        raise ValueError("user_balance must be a number")
    try:
        return float(balance)
    except (TypeError, ValueError):
        raise ValueError(f"user_balance must be a number, got {balance!r}")


class WorkflowEngine:
    """Evaluates one wallet's workflows per call."""

    def __init__(
        self,
        store,
        market_source=None,
        evaluator: Optional[ConditionEvaluator] = None,
        audit=None,
        config: Optional[Dict[str, Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[np.random.Generator] = None,
    ):
        """
        `rng` seeds the default market source and evaluator together, so
        one seed reproduces both prices and time_interval firings.
        """
        self.config = {**self._default_config(), **(config or {})}
        self.store = store
        self.market_source = market_source or MarketDataSource(rng=rng)
        self.clock = clock or datetime.utcnow
        self.evaluator = evaluator or ConditionEvaluator(
            rng=rng,
            time_interval_probability=self.config["time_interval_probability"],
            time_interval_mode=self.config["time_interval_mode"],
            default_token=self.config["default_token"],
            clock=self.clock,
        )
        self.audit = audit

        self.total_evaluations = 0
        self.total_firings = 0
        self.total_rewards = 0.0
        self.total_errors = 0
        # The API runs passes for different wallets in parallel
        self._stats_lock = threading.Lock()

    @staticmethod
    def _default_config() -> Dict[str, Any]:
        return {
            "default_token": "RLO",
            "time_interval_mode": "random",   # or "elapsed"
            "time_interval_probability": 0.3,
        }

    def _fire(self, rule: WorkflowRule, snapshot: MarketSnapshot) -> EvaluationResult:
        """Record one firing: execution record first, then counters."""
        reward = calculate_reward(rule.action_type, rule.action_amount)
        now = self.clock().isoformat()

        self.store.insert_execution(ExecutionRecord(
            id=str(uuid.uuid4()),
            workflow_id=rule.id,
            executed_at=now,
            trigger_met=describe_trigger(rule),
            action_taken=describe_action(rule),
            result=ExecutionResult.SUCCESS.value,
            rewards_earned=reward,
            details={"marketData": snapshot.to_dict(), "timestamp": now},
        ))

        self.store.update_rule_counters(
            rule.id,
            execution_count=(rule.execution_count or 0) + 1,
            rewards_generated=(rule.rewards_generated or 0) + reward,
            last_executed_at=now,
        )

        return EvaluationResult(
            workflow_id=rule.id,
            name=rule.name,
            reward=reward,
            action=rule.action_type,
        )

    def evaluate(self, owner_wallet: str, balance: float = 0) -> EvaluationReport:
        """
        Run one evaluation pass for a wallet.

        Raises ValueError for bad input (before touching the store). Store
        errors propagate unchanged.
        """
        balance = _validate_inputs(owner_wallet, balance)
        start_time = time.time()
        evaluation_id = str(uuid.uuid4())
        with self._stats_lock:
            self.total_evaluations += 1

        try:
            rules = self.store.list_active_rules(owner_wallet)
            snapshot = self.market_source.snapshot()

            results: List[EvaluationResult] = []
            for rule in rules:
                if self.evaluator.fires(rule, snapshot, balance):
                    results.append(self._fire(rule, snapshot))
        except Exception as e:
            with self._stats_lock:
                self.total_errors += 1
            print(f"❌ Workflow evaluation failed for {owner_wallet[:10]}: {e}")
            if self.audit:
                self.audit.log({
                    "event": "EVALUATION_ERROR",
                    "evaluation_id": evaluation_id,
                    "wallet_address": owner_wallet,
                    "error": str(e),
                })
            raise

        with self._stats_lock:
            self.total_firings += len(results)
            self.total_rewards += sum(r.reward for r in results)

        report = EvaluationReport(
            evaluation_id=evaluation_id,
            owner=owner_wallet,
            results=results,
            market_data=snapshot,
            evaluated=len(rules),
            latency_ms=round((time.time() - start_time) * 1000, 2),
        )

        if self.audit:
            self.audit.log({
                "event": "EVALUATION_COMPLETE",
                "evaluation_id": evaluation_id,
                "wallet_address": owner_wallet,
                "balance": balance,
                "evaluated": report.evaluated,
                "fired": [r.name for r in results],
                "total_reward": report.total_reward,
                "marketData": snapshot.to_dict(),
            })

        return report

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            return {
                "evaluations": self.total_evaluations,
                "firings": self.total_firings,
                "total_rewards": round(self.total_rewards, 6),
                "errors": self.total_errors,
                "firings_per_evaluation": self.total_firings / max(self.total_evaluations, 1),
                "config": dict(self.config),
            }

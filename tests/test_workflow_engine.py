"""Tests for the workflow evaluation engine."""

import json
import sqlite3
import threading

import numpy as np
import pytest

from audit import AuditFile
from conditions import ConditionEvaluator
from market_data import MarketDataSource
from workflow_engine import WorkflowEngine, EvaluationReport
from workflow_store import WorkflowStore

from conftest import WALLET, OTHER_WALLET, rule_data


class RecordingStore:
    """Wraps a real store and records every write call."""

    def __init__(self, inner, fail_on_execution=None):
        self.inner = inner
        self.writes = []
        self.reads = 0
        self.fail_on_execution = fail_on_execution

    def list_active_rules(self, owner):
        self.reads += 1
        return self.inner.list_active_rules(owner)

    def insert_execution(self, record):
        self.writes.append(("insert_execution", record.workflow_id))
        if self.fail_on_execution is not None and len(
            [w for w in self.writes if w[0] == "insert_execution"]
        ) == self.fail_on_execution:
            raise sqlite3.OperationalError("database is locked")
        return self.inner.insert_execution(record)

    def update_rule_counters(self, rule_id, **counters):
        self.writes.append(("update_rule_counters", rule_id))
        return self.inner.update_rule_counters(rule_id, **counters)


class SpyEvaluator(ConditionEvaluator):
    """Always fires and remembers which snapshot each rule saw."""

    def __init__(self):
        super().__init__()
        self.seen = []

    def fires(self, rule, snapshot, balance):
        self.seen.append((rule.id, id(snapshot), snapshot.price_of(rule.trigger_token)))
        return True


# ---------------------------------------------------------------------------
# Scenarios
# ---------------------------------------------------------------------------


def test_balance_rule_end_to_end(store, engine):
    rule = store.insert_rule(WALLET, rule_data(
        trigger_type="balance_threshold", trigger_condition="above", trigger_value=1000,
        action_type="stake", action_amount=100,
    ))

    report = engine.evaluate(WALLET, 5000)

    assert len(report.results) == 1
    result = report.results[0]
    assert result.workflow_id == rule.id
    assert result.name == "Auto-Stake"
    assert result.executed is True
    assert result.action == "stake"
    assert result.reward == pytest.approx(10.0)

    records = store.list_executions(WALLET)
    assert len(records) == 1
    assert records[0].result == "success"
    assert records[0].rewards_earned == pytest.approx(10.0)
    assert records[0].trigger_met == "balance_threshold: above 1000.0"
    assert records[0].action_taken == "stake: 100.0 RLO"
    assert records[0].details["marketData"]["networkActivity"] == 100

    updated = store.get_rule(rule.id)
    assert updated.execution_count == 1
    assert updated.rewards_generated == pytest.approx(10.0)
    assert updated.last_executed_at is not None


def test_non_firing_rules_are_absent(store, engine):
    fired = store.insert_rule(WALLET, rule_data(name="fires", trigger_value=1000))
    quiet = store.insert_rule(WALLET, rule_data(name="quiet", trigger_value=10_000))

    report = engine.evaluate(WALLET, 5000)

    assert [r.workflow_id for r in report.results] == [fired.id]
    assert report.evaluated == 2
    assert store.get_rule(quiet.id).execution_count == 0
    assert store.count_executions(quiet.id) == 0


def test_no_active_rules_returns_empty_without_writes(store, market):
    paused = store.insert_rule(WALLET, rule_data())
    store.update_rule_status(paused.id, "paused")
    recording = RecordingStore(store)
    engine = WorkflowEngine(recording, market_source=market)

    report = engine.evaluate(WALLET, 5000)

    assert report.results == []
    assert report.market_data is not None
    assert recording.writes == []
    assert store.count_executions() == 0


def test_unknown_wallet_returns_fresh_snapshot(store, rng):
    engine = WorkflowEngine(store, market_source=MarketDataSource(rng=rng))
    report = engine.evaluate("0xnobody", 0)
    assert report.results == []
    assert 50 <= report.market_data.network_activity < 150


def test_counters_are_monotonic_across_calls(store, engine):
    rule = store.insert_rule(WALLET, rule_data(action_type="bridge", action_amount=500))

    rewards = []
    for _ in range(5):
        report = engine.evaluate(WALLET, 5000)
        rewards.extend(r.reward for r in report.results)

    updated = store.get_rule(rule.id)
    assert updated.execution_count == 5
    assert updated.rewards_generated == pytest.approx(sum(rewards))
    assert updated.rewards_generated == pytest.approx(200.0)
    assert store.count_executions(rule.id) == 5


def test_one_snapshot_per_pass(store):
    source = MarketDataSource(rng=np.random.default_rng(3))
    calls = []
    original = source.snapshot

    def counting_snapshot():
        calls.append(1)
        return original()

    source.snapshot = counting_snapshot
    spy = SpyEvaluator()
    engine = WorkflowEngine(store, market_source=source, evaluator=spy)
    store.insert_rule(WALLET, rule_data(name="a", trigger_type="price_threshold", trigger_token="RLO"))
    store.insert_rule(WALLET, rule_data(name="b", trigger_type="price_threshold", trigger_token="RLO"))

    report = engine.evaluate(WALLET, 0)

    assert len(calls) == 1
    assert len(spy.seen) == 2
    (_, snap_a, price_a), (_, snap_b, price_b) = spy.seen
    assert snap_a == snap_b
    assert price_a == price_b == report.market_data.token_prices["RLO"]


def test_rng_seeds_market_and_time_interval_draws():
    def fired_per_pass(seed):
        store = WorkflowStore(":memory:")
        for i in range(20):
            store.insert_rule(WALLET, rule_data(
                name=f"t{i}", trigger_type="time_interval", trigger_condition="every", trigger_value=60,
            ))
        engine = WorkflowEngine(store, rng=np.random.default_rng(seed))
        passes = []
        for _ in range(5):
            report = engine.evaluate(WALLET, 0)
            passes.append((sorted(r.name for r in report.results), report.market_data.token_prices["RLO"]))
        store.close()
        return passes

    first = fired_per_pass(7)
    assert first == fired_per_pass(7)
    assert any(names for names, _ in first)


def test_other_owners_rules_are_never_evaluated(store, engine):
    store.insert_rule(OTHER_WALLET, rule_data())
    report = engine.evaluate(WALLET, 5000)
    assert report.results == []
    assert store.count_executions() == 0


def test_unknown_kinds_do_not_block_other_rules(store, engine):
    store.insert_rule(WALLET, rule_data(name="legacy", trigger_type="moon_phase"))
    odd_action = store.insert_rule(WALLET, rule_data(name="odd action", action_type="teleport"))
    good = store.insert_rule(WALLET, rule_data(name="good"))

    report = engine.evaluate(WALLET, 5000)

    fired = {r.workflow_id: r for r in report.results}
    assert set(fired) == {odd_action.id, good.id}
    assert fired[odd_action.id].reward == 0
    assert fired[good.id].reward == pytest.approx(10.0)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("owner", ["", "   ", None, 42])
def test_missing_owner_is_rejected_before_store_access(store, market, owner):
    recording = RecordingStore(store)
    engine = WorkflowEngine(recording, market_source=market)

    with pytest.raises(ValueError):
        engine.evaluate(owner, 100)
    assert recording.reads == 0
    assert market.calls == 0


def test_non_numeric_balance_is_rejected(store, market):
    recording = RecordingStore(store)
    engine = WorkflowEngine(recording, market_source=market)
    with pytest.raises(ValueError):
        engine.evaluate(WALLET, "lots")
    assert recording.reads == 0


def test_missing_balance_counts_as_zero(store, engine):
    store.insert_rule(WALLET, rule_data(trigger_condition="below", trigger_value=1))
    report = engine.evaluate(WALLET, None)
    assert len(report.results) == 1


def test_store_failure_propagates_and_keeps_earlier_writes(store, market):
    first = store.insert_rule(WALLET, rule_data(name="first"))
    second = store.insert_rule(WALLET, rule_data(name="second"))
    engine = WorkflowEngine(RecordingStore(store, fail_on_execution=2), market_source=market)

    with pytest.raises(sqlite3.OperationalError):
        engine.evaluate(WALLET, 5000)

    # Not atomic across rules: the first rule's firing stays committed
    assert store.get_rule(first.id).execution_count == 1
    assert store.get_rule(second.id).execution_count == 0
    assert store.count_executions() == 1
    assert engine.get_stats()["errors"] == 1


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def test_report_dict_shape(store, engine):
    store.insert_rule(WALLET, rule_data())
    data = engine.evaluate(WALLET, 5000).to_dict()

    assert data["success"] is True
    assert data["results"][0]["executed"] is True
    assert set(data["marketData"]) >= {"tokenPrices", "networkActivity", "newUsers", "transactionCount"}

    restored = EvaluationReport.from_dict(data)
    assert restored.results[0].name == "Auto-Stake"
    assert restored.market_data.network_activity == 100


def test_stats_accumulate(store, engine):
    store.insert_rule(WALLET, rule_data())
    engine.evaluate(WALLET, 5000)
    engine.evaluate(WALLET, 0)

    stats = engine.get_stats()
    assert stats["evaluations"] == 2
    assert stats["firings"] == 1
    assert stats["total_rewards"] == pytest.approx(10.0)


def test_stats_are_consistent_under_parallel_passes(store, market):
    wallets = [f"0xparallel{i}" for i in range(8)]
    for wallet in wallets:
        store.insert_rule(wallet, rule_data())
    engine = WorkflowEngine(store, market_source=market)

    def run(wallet):
        for _ in range(25):
            engine.evaluate(wallet, 5000)

    threads = [threading.Thread(target=run, args=(w,)) for w in wallets]
    for t in threads:
        t.start()
    for t in threads:
        t.join(30)

    stats = engine.get_stats()
    assert stats["evaluations"] == 200
    assert stats["firings"] == 200
    assert stats["total_rewards"] == pytest.approx(2000.0)
    assert store.count_executions() == 200


def test_audit_file_records_passes(store, market, tmp_path):
    audit = AuditFile(str(tmp_path / "audit.jsonl"), verbose=False)
    engine = WorkflowEngine(store, market_source=market, audit=audit)
    store.insert_rule(WALLET, rule_data())

    engine.evaluate(WALLET, 5000)

    lines = (tmp_path / "audit.jsonl").read_text().strip().splitlines()
    entry = json.loads(lines[-1])
    assert entry["event"] == "EVALUATION_COMPLETE"
    assert entry["fired"] == ["Auto-Stake"]
    assert audit.read()[0]["wallet_address"] == WALLET

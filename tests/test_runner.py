import sys

import requests

import runner
from client import WorkflowEngineError
from workflow_store import WorkflowStore, DEFAULT_WORKFLOWS

from conftest import rule_data


def _run(monkeypatch, *argv):
    monkeypatch.setattr(sys, "argv", ["runner", *argv])
    runner.main()


def test_single_run_seeds_and_evaluates(tmp_path, monkeypatch, capsys):
    db_path = tmp_path / "rialo.db"
    audit_path = tmp_path / "audit.jsonl"

    _run(monkeypatch, "--db", str(db_path), "--audit", str(audit_path), "--seed", "7", "--balance", "5000")

    out = capsys.readouterr().out
    assert "MINI-RIALO WORKFLOW ENGINE" in out
    assert "Passes: 1" in out

    store = WorkflowStore(str(db_path))
    rules = store.list_rules(runner.DEMO_WALLET)
    assert len(rules) == len(DEFAULT_WORKFLOWS)
    # Balance 5000 is above the seeded 1000 threshold
    assert store.count_executions() >= 1
    store.close()
    assert audit_path.exists()


def _fired_time_interval_rules(tmp_path, monkeypatch, name, seed):
    db_path = tmp_path / f"{name}.db"
    store = WorkflowStore(str(db_path))
    for i in range(20):
        store.insert_rule(runner.DEMO_WALLET, rule_data(
            name=f"t{i}", trigger_type="time_interval", trigger_condition="every", trigger_value=60,
        ))
    store.close()

    _run(monkeypatch, "--db", str(db_path), "--seed", str(seed))

    store = WorkflowStore(str(db_path))
    fired = sorted(r.name for r in store.list_rules(runner.DEMO_WALLET) if r.execution_count)
    store.close()
    return fired


def test_same_seed_reproduces_time_interval_firings(tmp_path, monkeypatch):
    first = _fired_time_interval_rules(tmp_path, monkeypatch, "a", seed=7)
    second = _fired_time_interval_rules(tmp_path, monkeypatch, "b", seed=7)

    assert first == second


class _FailingClient:
    def __init__(self, error):
        self.error = error

    def __call__(self, base_url):
        return self

    def evaluate(self, owner, balance):
        raise self.error


def test_remote_errors_are_reported_not_raised(monkeypatch, capsys):
    for error in (WorkflowEngineError(409, "Evaluation already in progress for this wallet"),
                  requests.ConnectionError("connection refused")):
        monkeypatch.setattr(runner, "WorkflowEngineClient", _FailingClient(error))
        _run(monkeypatch, "--remote", "http://rialo.test")

        out = capsys.readouterr().out
        assert "❌ Remote evaluation failed" in out

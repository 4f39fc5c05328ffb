"""Tests for the HTTP client, with the requests session stubbed out."""

import json

import pytest

from client import WorkflowEngineClient, WorkflowEngineError


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else (json.dumps(payload) if payload is not None else "")

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeSession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def request(self, method, url, params=None, json=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "timeout": timeout})
        return self.response


REPORT = {
    "success": True,
    "evaluation_id": "eval-123",
    "wallet_address": "0xabc",
    "results": [{"workflow_id": "wf-1", "name": "Auto-Stake", "executed": True, "reward": 10.0, "action": "stake"}],
    "marketData": {
        "tokenPrices": {"RLO": 2.5},
        "networkActivity": 90,
        "newUsers": 4,
        "transactionCount": 250,
        "capturedAt": "2026-01-01T00:00:00",
    },
    "evaluated": 3,
    "timestamp": "2026-01-01T00:00:00",
    "latency_ms": 1.5,
}


def _client(response):
    client = WorkflowEngineClient("http://rialo.test/", timeout=3)
    client.session = FakeSession(response)
    return client


def test_evaluate_parses_report():
    client = _client(FakeResponse(payload=REPORT))

    report = client.evaluate("0xabc", 5000)

    call = client.session.calls[0]
    assert call["method"] == "POST"
    assert call["url"] == "http://rialo.test/api/workflows/evaluate"
    assert call["json"] == {"wallet_address": "0xabc", "user_balance": 5000}
    assert call["timeout"] == 3

    assert report.evaluation_id == "eval-123"
    assert report.results[0].reward == 10.0
    assert report.market_data.token_prices["RLO"] == 2.5
    assert report.market_data.network_activity == 90


def test_error_detail_is_surfaced():
    client = _client(FakeResponse(400, {"detail": "wallet_address is required"}))
    with pytest.raises(WorkflowEngineError) as exc_info:
        client.evaluate("", 0)
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail == "wallet_address is required"


def test_error_without_json_body():
    client = _client(FakeResponse(502, payload=None, text="Bad Gateway"))
    with pytest.raises(WorkflowEngineError) as exc_info:
        client.health()
    assert exc_info.value.detail == "Bad Gateway"


def test_management_calls_build_expected_requests():
    client = _client(FakeResponse(payload={"status": "deleted", "id": "wf-1"}))

    client.list_workflows("0xabc")
    client.create_workflow("0xabc", {"name": "x"})
    client.set_status("wf-1", "paused")
    client.delete_workflow("wf-1")
    client.recent_executions("0xabc", limit=5)
    client.recent_executions()

    calls = [(c["method"], c["url"].replace("http://rialo.test", "")) for c in client.session.calls]
    assert calls == [
        ("GET", "/api/workflows"),
        ("POST", "/api/workflows"),
        ("PATCH", "/api/workflows/wf-1"),
        ("DELETE", "/api/workflows/wf-1"),
        ("GET", "/api/executions"),
        ("GET", "/api/executions"),
    ]
    assert client.session.calls[1]["json"] == {"name": "x", "wallet_address": "0xabc"}
    assert client.session.calls[2]["json"] == {"status": "paused"}
    assert client.session.calls[4]["params"] == {"limit": 5, "wallet_address": "0xabc"}
    assert client.session.calls[5]["params"] == {"limit": 20}

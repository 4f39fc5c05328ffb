"""
Workflow Engine Client

Talks to a running workflow API over HTTP. Exposes the same
evaluate(owner, balance) call as WorkflowEngine, so a WorkflowScheduler can
drive a remote engine exactly like a local one.
"""

import requests
from typing import Optional, Dict, Any, List

from workflow_engine import EvaluationReport


class WorkflowEngineError(Exception):
    """Non-2xx response from the workflow API."""

    def __init__(self, status_code: int, detail: str):
        super().__init__(f"API error {status_code}: {detail}")
        self.status_code = status_code
        self.detail = detail


class WorkflowEngineClient:

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 10):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _request(self, method: str, endpoint: str, params: dict = None, json_body: dict = None) -> Any:
        url = f"{self.base_url}{endpoint}"
        response = self.session.request(method, url, params=params, json=json_body, timeout=self.timeout)

        if not response.ok:
            try:
                detail = response.json().get("detail", response.text)
            except ValueError:
                detail = response.text
            raise WorkflowEngineError(response.status_code, str(detail))

        return response.json() if response.text else {}

    def evaluate(self, owner_wallet: str, balance: float = 0) -> EvaluationReport:
        data = self._request("POST", "/api/workflows/evaluate", json_body={
            "wallet_address": owner_wallet,
            "user_balance": balance,
        })
        return EvaluationReport.from_dict(data)

    def list_workflows(self, owner_wallet: str) -> List[Dict[str, Any]]:
        return self._request("GET", "/api/workflows", params={"wallet_address": owner_wallet})

    def create_workflow(self, owner_wallet: str, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/api/workflows", json_body={**data, "wallet_address": owner_wallet})

    def set_status(self, workflow_id: str, status: str) -> Dict[str, Any]:
        return self._request("PATCH", f"/api/workflows/{workflow_id}", json_body={"status": status})

    def delete_workflow(self, workflow_id: str) -> Dict[str, Any]:
        return self._request("DELETE", f"/api/workflows/{workflow_id}")

    def recent_executions(self, owner_wallet: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        params = {"limit": limit}
        if owner_wallet:
            params["wallet_address"] = owner_wallet
        return self._request("GET", "/api/executions", params=params)

    def health(self) -> Dict[str, Any]:
        return self._request("GET", "/health")

"""
Mini-Rialo Workflow API

FastAPI backend the dashboard calls to evaluate and manage workflows.
"""

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from typing import Optional, Dict, Any, Set
from datetime import datetime
import threading

from audit import AuditFile
from config import load_config
from workflow_engine import WorkflowEngine
from workflow_store import WorkflowStore, WorkflowRule

# ============================================
# PYDANTIC MODELS
# ============================================

class EvaluateRequest(BaseModel):
    wallet_address: Optional[str] = None
    user_balance: Optional[float] = 0


class EvaluationResultResponse(BaseModel):
    workflow_id: str
    name: str
    executed: bool = True
    reward: float
    action: str


class MarketDataResponse(BaseModel):
    tokenPrices: Dict[str, float]
    networkActivity: int
    newUsers: int
    transactionCount: int
    capturedAt: Optional[str] = None


class EvaluateResponse(BaseModel):
    success: bool = True
    evaluation_id: str
    wallet_address: str
    results: list[EvaluationResultResponse]
    marketData: MarketDataResponse
    evaluated: int
    timestamp: str
    latency_ms: float


class CreateWorkflowRequest(BaseModel):
    wallet_address: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    trigger_type: Optional[str] = None
    trigger_condition: Optional[str] = None
    trigger_value: Optional[float] = None
    trigger_token: Optional[str] = None
    action_type: Optional[str] = None
    action_amount: Optional[float] = None
    action_recipient: Optional[str] = None
    action_token: Optional[str] = None
    tokens_staked: Optional[float] = None


class StatusUpdateRequest(BaseModel):
    status: str


class WorkflowResponse(BaseModel):
    id: str
    wallet_address: str
    name: str
    description: Optional[str] = None
    status: str
    trigger_type: str
    trigger_condition: str
    trigger_value: float
    trigger_token: Optional[str] = None
    action_type: str
    action_amount: Optional[float] = None
    action_recipient: Optional[str] = None
    action_token: Optional[str] = None
    tokens_staked: float = 0
    rewards_generated: float = 0
    execution_count: int = 0
    last_executed_at: Optional[str] = None
    created_at: str


class ExecutionResponse(BaseModel):
    id: str
    workflow_id: str
    executed_at: str
    trigger_met: str
    action_taken: str
    result: str
    rewards_earned: float = 0
    transaction_hash: Optional[str] = None


def rule_to_response(rule: WorkflowRule) -> WorkflowResponse:
    data = rule.to_dict()
    data.pop("updated_at", None)
    return WorkflowResponse(**data)


# ============================================
# FASTAPI APP
# ============================================

def create_app(
    store: Optional[WorkflowStore] = None,
    engine: Optional[WorkflowEngine] = None,
    config: Optional[Dict[str, Any]] = None,
) -> FastAPI:
    settings = load_config(config)

    app = FastAPI(
        title="Mini-Rialo Workflow Engine",
        description="Evaluates automated DeFi workflows against simulated Rialo market data",
        version="1.0.0",
    )

    # CORS - allow dashboard to call API
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Lazy-init (created on first request)
    _state: Dict[str, Any] = {"store": store, "engine": engine}
    # Wallets with a pass in flight; entries leave when the pass ends
    _inflight: Set[str] = set()
    _inflight_guard = threading.Lock()
    app.state.inflight_wallets = _inflight

    def get_store() -> WorkflowStore:
        if _state["store"] is None:
            if _state["engine"] is not None:
                _state["store"] = _state["engine"].store
            else:
                _state["store"] = WorkflowStore(settings["db_path"])
                print(f"✓ Workflow store at {settings['db_path']}")
        return _state["store"]

    def get_engine() -> WorkflowEngine:
        if _state["engine"] is None:
            audit = AuditFile(settings["audit_path"]) if settings["audit_path"] else None
            _state["engine"] = WorkflowEngine(get_store(), audit=audit, config=settings)
        return _state["engine"]

    def claim_owner(owner: str) -> bool:
        with _inflight_guard:
            if owner in _inflight:
                return False
            _inflight.add(owner)
            return True

    def release_owner(owner: str):
        with _inflight_guard:
            _inflight.discard(owner)

    def run_evaluation(wallet_address: Optional[str], user_balance: Optional[float]) -> Dict[str, Any]:
        if not wallet_address:
            raise HTTPException(status_code=400, detail="wallet_address is required")

        # Same-owner passes must not overlap or counters get double-counted
        if not claim_owner(wallet_address):
            raise HTTPException(status_code=409, detail="Evaluation already in progress for this wallet")
        try:
            report = get_engine().evaluate(wallet_address, user_balance or 0)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))
        finally:
            release_owner(wallet_address)

        return report.to_dict()

    def create_workflow(wallet_address: Optional[str], data: Dict[str, Any]) -> WorkflowResponse:
        if not wallet_address:
            raise HTTPException(status_code=400, detail="wallet_address is required")
        try:
            rule = get_store().insert_rule(wallet_address, data)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return rule_to_response(rule)

    # ============================================
    # ROUTES
    # ============================================

    @app.get("/")
    def root():
        return {
            "name": "Mini-Rialo Workflow Engine",
            "version": "1.0.0",
            "status": "running",
            "endpoints": {
                "evaluate": "/api/workflows/evaluate",
                "workflows": "/api/workflows",
                "executions": "/api/executions",
                "market": "/api/market",
                "health": "/health",
            },
        }

    @app.get("/health")
    def health():
        return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}

    @app.post("/api/workflows/evaluate", response_model=EvaluateResponse)
    def evaluate(body: EvaluateRequest):
        """
        Evaluate every active workflow for a wallet against one market snapshot.

        - **wallet_address**: owner whose rules are evaluated
        - **user_balance**: wallet balance used by balance triggers
        """
        return run_evaluation(body.wallet_address, body.user_balance)

    @app.post("/functions/workflow-engine")
    def workflow_engine_function(body: Dict[str, Any]):
        """Action-dispatch endpoint kept for older dashboard builds."""
        action = body.get("action")
        if action == "evaluate":
            return run_evaluation(body.get("wallet_address"), body.get("user_balance"))
        if action == "create":
            workflow = create_workflow(body.get("wallet_address"), body)
            return {"success": True, "workflow": workflow}
        raise HTTPException(status_code=400, detail="Invalid action")

    @app.get("/api/workflows", response_model=list[WorkflowResponse])
    def list_workflows(wallet_address: str, seed: bool = True):
        """Rules for a wallet, newest first. First visit seeds the default set."""
        store = get_store()
        rules = store.list_rules(wallet_address)
        if not rules and seed:
            rules = store.seed_default_workflows(wallet_address)
        return [rule_to_response(r) for r in rules]

    @app.post("/api/workflows", response_model=WorkflowResponse)
    def post_workflow(body: CreateWorkflowRequest):
        return create_workflow(body.wallet_address, body.model_dump())

    @app.get("/api/workflows/{workflow_id}", response_model=WorkflowResponse)
    def get_workflow(workflow_id: str):
        rule = get_store().get_rule(workflow_id)
        if rule is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return rule_to_response(rule)

    @app.patch("/api/workflows/{workflow_id}", response_model=WorkflowResponse)
    def update_workflow_status(workflow_id: str, body: StatusUpdateRequest):
        try:
            rule = get_store().update_rule_status(workflow_id, body.status)
        except KeyError:
            raise HTTPException(status_code=404, detail="Workflow not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return rule_to_response(rule)

    @app.delete("/api/workflows/{workflow_id}")
    def delete_workflow(workflow_id: str):
        if not get_store().delete_rule(workflow_id):
            raise HTTPException(status_code=404, detail="Workflow not found")
        return {"status": "deleted", "id": workflow_id}

    @app.get("/api/executions", response_model=list[ExecutionResponse])
    def list_executions(wallet_address: Optional[str] = None, limit: int = 20):
        limit = max(1, min(limit, 100))
        return [ExecutionResponse(**{k: v for k, v in e.to_dict().items() if k != "details"})
                for e in get_store().list_executions(wallet_address, limit=limit)]

    @app.get("/api/market", response_model=MarketDataResponse)
    def market():
        """A fresh simulated snapshot (not used by any evaluation)."""
        return get_engine().market_source.snapshot().to_dict()

    @app.get("/api/stats")
    def stats():
        return get_engine().get_stats()

    return app


app = create_app()


# ============================================
# RUN
# ============================================

if __name__ == "__main__":
    import uvicorn
    port = load_config()["port"]
    uvicorn.run(app, host="0.0.0.0", port=port)

"""
Workflow Store

SQLite persistence for workflow rules and their execution log, plus a
best-effort change feed the dashboard session uses to keep its local rule
cache fresh.

The evaluation engine only relies on the narrow contract:
    list_active_rules(owner)
    insert_execution(record)
    update_rule_counters(rule_id, ...)
    subscribe_to_changes(owner, on_insert, on_update, on_delete)
"""

import sqlite3
import json
import math
import threading
import uuid
from datetime import datetime
from pathlib import Path
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any, List, Callable
from enum import Enum


class RuleStatus(Enum):
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class ExecutionResult(Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PENDING = "pending"


@dataclass
class WorkflowRule:
    """A user-owned automation: if <trigger> then <action>."""
    id: str
    wallet_address: str
    name: str
    trigger_type: str
    trigger_condition: str
    trigger_value: float
    action_type: str
    status: str = RuleStatus.ACTIVE.value
    description: Optional[str] = None
    trigger_token: Optional[str] = None
    action_amount: Optional[float] = None
    action_recipient: Optional[str] = None
    action_token: Optional[str] = None
    tokens_staked: float = 0
    rewards_generated: float = 0
    execution_count: int = 0
    last_executed_at: Optional[str] = None
    created_at: str = field(default_factory=lambda: datetime.utcnow().isoformat())
    updated_at: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == RuleStatus.ACTIVE.value

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> "WorkflowRule":
        data = dict(row)
        return cls(
            id=data["id"],
            wallet_address=data["wallet_address"],
            name=data["name"],
            description=data.get("description"),
            status=data["status"],
            trigger_type=data["trigger_type"],
            trigger_condition=data["trigger_condition"],
            trigger_value=data["trigger_value"],
            trigger_token=data.get("trigger_token"),
            action_type=data["action_type"],
            action_amount=data.get("action_amount"),
            action_recipient=data.get("action_recipient"),
            action_token=data.get("action_token"),
            tokens_staked=data.get("tokens_staked") or 0,
            rewards_generated=data.get("rewards_generated") or 0,
            execution_count=data.get("execution_count") or 0,
            last_executed_at=data.get("last_executed_at"),
            created_at=data["created_at"],
            updated_at=data.get("updated_at"),
        )


@dataclass(frozen=True)
class ExecutionRecord:
    """Immutable log entry for one firing."""
    id: str
    workflow_id: str
    executed_at: str
    trigger_met: str
    action_taken: str
    result: str = ExecutionResult.SUCCESS.value
    rewards_earned: float = 0
    transaction_hash: Optional[str] = None
    details: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_row(cls, row) -> "ExecutionRecord":
        data = dict(row)
        return cls(
            id=data["id"],
            workflow_id=data["workflow_id"],
            executed_at=data["executed_at"],
            trigger_met=data["trigger_met"],
            action_taken=data["action_taken"],
            result=data["result"],
            rewards_earned=data.get("rewards_earned") or 0,
            transaction_hash=data.get("transaction_hash"),
            details=json.loads(data["details"]) if data.get("details") else None,
        )


# Rialo-specific defaults seeded the first time a wallet shows up with no rules
DEFAULT_WORKFLOWS: List[Dict[str, Any]] = [
    {
        "name": "Auto-Stake Rewards",
        "description": "Automatically stake RLO when balance exceeds threshold",
        "trigger_type": "balance_threshold",
        "trigger_condition": "above",
        "trigger_value": 1000,
        "trigger_token": "RLO",
        "action_type": "stake",
        "action_amount": 100,
        "action_token": "RLO",
        "tokens_staked": 1500,
    },
    {
        "name": "Price Alert Buy",
        "description": "Buy RLO when price drops below target",
        "trigger_type": "price_threshold",
        "trigger_condition": "below",
        "trigger_value": 2.0,
        "trigger_token": "RLO",
        "action_type": "swap",
        "action_amount": 100,
        "action_token": "RLO",
        "tokens_staked": 2000,
    },
    {
        "name": "Network Activity Bridge",
        "description": "Bridge tokens when network activity is high",
        "trigger_type": "network_activity",
        "trigger_condition": "above",
        "trigger_value": 80,
        "action_type": "bridge",
        "action_amount": 500,
        "action_token": "RLO",
        "tokens_staked": 3500,
    },
]

_RULE_FIELDS = (
    "name", "description", "trigger_type", "trigger_condition", "trigger_value",
    "trigger_token", "action_type", "action_amount", "action_recipient",
    "action_token", "tokens_staked",
)


def _as_number(value, name: str, required: bool = False) -> Optional[float]:
    if value is None or value == "":
        if required:
            raise ValueError(f"{name} is required")
        return None
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {value!r}")
    if math.isnan(number) or math.isinf(number):
        raise ValueError(f"{name} must be finite")
    return number


def validate_rule_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Normalize user input for a new rule.

    Only structural problems are rejected. Unknown trigger or action kinds
    are stored as-is; the evaluator treats them as "never fires".
    """
    if not isinstance(data, dict):
        raise ValueError("Workflow data must be an object")

    clean = {k: data.get(k) for k in _RULE_FIELDS}
    for key in ("name", "trigger_type", "trigger_condition", "action_type"):
        value = clean.get(key)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"{key} is required")
        clean[key] = value.strip()

    clean["trigger_value"] = _as_number(clean["trigger_value"], "trigger_value", required=True)
    clean["action_amount"] = _as_number(clean["action_amount"], "action_amount")
    clean["tokens_staked"] = _as_number(clean["tokens_staked"], "tokens_staked") or 0

    status = data.get("status", RuleStatus.ACTIVE.value)
    if status not in [s.value for s in RuleStatus]:
        raise ValueError(f"Invalid status {status!r}")
    clean["status"] = status
    return clean


class Subscription:
    """Handle for a change-feed registration."""

    def __init__(self, store: "WorkflowStore", owner: str,
                 on_insert: Optional[Callable] = None,
                 on_update: Optional[Callable] = None,
                 on_delete: Optional[Callable] = None,
                 on_execution: Optional[Callable] = None):
        self.store = store
        self.owner = owner
        self.on_insert = on_insert
        self.on_update = on_update
        self.on_delete = on_delete
        self.on_execution = on_execution
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self.store._remove_subscription(self)


class WorkflowStore:
    """SQLite-backed rule and execution storage."""

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        # Shared between the API threadpool and the scheduler thread
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._subscriptions: List[Subscription] = []
        self.init_schema()

    def close(self):
        with self._lock:
            self.conn.close()

    def init_schema(self):
        """Create tables if they don't exist."""
        with self._lock:
            cursor = self.conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    wallet_address TEXT NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    trigger_type TEXT NOT NULL,
                    trigger_condition TEXT NOT NULL,
                    trigger_value REAL NOT NULL,
                    trigger_token TEXT,
                    action_type TEXT NOT NULL,
                    action_amount REAL,
                    action_recipient TEXT,
                    action_token TEXT,
                    tokens_staked REAL DEFAULT 0,
                    rewards_generated REAL DEFAULT 0,
                    execution_count INTEGER DEFAULT 0,
                    last_executed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS workflow_executions (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL,
                    executed_at TEXT NOT NULL,
                    trigger_met TEXT NOT NULL,
                    action_taken TEXT NOT NULL,
                    result TEXT NOT NULL,  -- 'success', 'failed', 'pending'
                    rewards_earned REAL DEFAULT 0,
                    transaction_hash TEXT,
                    details TEXT,  -- JSON: market data the firing was decided on
                    FOREIGN KEY (workflow_id) REFERENCES workflows(id)
                )
            """)

            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_workflows_wallet ON workflows (wallet_address, status)"
            )
            cursor.execute(
                "CREATE INDEX IF NOT EXISTS idx_executions_workflow ON workflow_executions (workflow_id)"
            )
            self.conn.commit()

    # ─────────────────────────────────────────────────────────
    # Rules
    # ─────────────────────────────────────────────────────────

    def list_active_rules(self, owner: str) -> List[WorkflowRule]:
        """Active rules for one wallet, in the store's natural (creation) order."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT * FROM workflows
                WHERE wallet_address = ? AND status = ?
                ORDER BY created_at ASC, rowid ASC
            """, (owner, RuleStatus.ACTIVE.value))
            return [WorkflowRule.from_row(row) for row in cursor.fetchall()]

    def list_rules(self, owner: str) -> List[WorkflowRule]:
        """All rules for a wallet, newest first."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                SELECT * FROM workflows
                WHERE wallet_address = ?
                ORDER BY created_at DESC, rowid DESC
            """, (owner,))
            return [WorkflowRule.from_row(row) for row in cursor.fetchall()]

    def get_rule(self, rule_id: str) -> Optional[WorkflowRule]:
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("SELECT * FROM workflows WHERE id = ?", (rule_id,))
            row = cursor.fetchone()
            return WorkflowRule.from_row(row) if row else None

    def _insert_rule_row(self, owner: str, clean: Dict[str, Any]) -> WorkflowRule:
        rule = WorkflowRule(
            id=str(uuid.uuid4()),
            wallet_address=owner,
            **clean,
        )
        rule.updated_at = rule.created_at
        self.conn.execute("""
            INSERT INTO workflows (
                id, wallet_address, name, description, status,
                trigger_type, trigger_condition, trigger_value, trigger_token,
                action_type, action_amount, action_recipient, action_token,
                tokens_staked, rewards_generated, execution_count,
                last_executed_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            rule.id,
            rule.wallet_address,
            rule.name,
            rule.description,
            rule.status,
            rule.trigger_type,
            rule.trigger_condition,
            rule.trigger_value,
            rule.trigger_token,
            rule.action_type,
            rule.action_amount,
            rule.action_recipient,
            rule.action_token,
            rule.tokens_staked,
            rule.rewards_generated,
            rule.execution_count,
            rule.last_executed_at,
            rule.created_at,
            rule.updated_at,
        ))
        return rule

    def insert_rule(self, owner: str, data: Dict[str, Any]) -> WorkflowRule:
        return self.insert_rules(owner, [data])[0]

    def _write_rules(self, owner: str, items: List[Dict[str, Any]]) -> List[WorkflowRule]:
        """Validate and insert in one transaction. The caller emits."""
        if not owner:
            raise ValueError("wallet_address is required")
        cleaned = [validate_rule_data(item) for item in items]

        with self._lock:
            try:
                rules = [self._insert_rule_row(owner, clean) for clean in cleaned]
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise
        return rules

    def insert_rules(self, owner: str, items: List[Dict[str, Any]]) -> List[WorkflowRule]:
        """Insert several rules in one transaction."""
        rules = self._write_rules(owner, items)
        for rule in rules:
            self._emit("insert", owner, rule)
        return rules

    def seed_default_workflows(self, owner: str) -> List[WorkflowRule]:
        """Give a brand-new wallet the default rule set. No-op if it has any rules."""
        with self._lock:
            existing = self.list_rules(owner)
            if existing:
                return existing
            created = self._write_rules(owner, DEFAULT_WORKFLOWS)
            rules = self.list_rules(owner)

        for rule in created:
            self._emit("insert", owner, rule)
        return rules

    def update_rule_status(self, rule_id: str, status: str) -> WorkflowRule:
        if isinstance(status, RuleStatus):
            status = status.value
        if status not in [s.value for s in RuleStatus]:
            raise ValueError(f"Invalid status {status!r}")

        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute(
                "UPDATE workflows SET status = ?, updated_at = ? WHERE id = ?",
                (status, datetime.utcnow().isoformat(), rule_id),
            )
            self.conn.commit()
            if cursor.rowcount == 0:
                raise KeyError(f"Workflow {rule_id} not found")
            rule = self.get_rule(rule_id)

        self._emit("update", rule.wallet_address, rule)
        return rule

    def delete_rule(self, rule_id: str) -> bool:
        with self._lock:
            rule = self.get_rule(rule_id)
            if rule is None:
                return False
            self.conn.execute("DELETE FROM workflows WHERE id = ?", (rule_id,))
            self.conn.commit()

        self._emit("delete", rule.wallet_address, rule)
        return True

    def update_rule_counters(
        self,
        rule_id: str,
        execution_count: int,
        rewards_generated: float,
        last_executed_at: str,
    ) -> Optional[WorkflowRule]:
        """Write absolute counter values. Returns None if the rule is gone."""
        with self._lock:
            cursor = self.conn.cursor()
            cursor.execute("""
                UPDATE workflows
                SET execution_count = ?, rewards_generated = ?,
                    last_executed_at = ?, updated_at = ?
                WHERE id = ?
            """, (execution_count, rewards_generated, last_executed_at, last_executed_at, rule_id))
            self.conn.commit()
            if cursor.rowcount == 0:
                return None
            rule = self.get_rule(rule_id)

        self._emit("update", rule.wallet_address, rule)
        return rule

    # ─────────────────────────────────────────────────────────
    # Executions
    # ─────────────────────────────────────────────────────────

    def insert_execution(self, record: ExecutionRecord) -> ExecutionRecord:
        with self._lock:
            self.conn.execute("""
                INSERT INTO workflow_executions (
                    id, workflow_id, executed_at, trigger_met, action_taken,
                    result, rewards_earned, transaction_hash, details
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.workflow_id,
                record.executed_at,
                record.trigger_met,
                record.action_taken,
                record.result,
                record.rewards_earned,
                record.transaction_hash,
                json.dumps(record.details, default=str) if record.details is not None else None,
            ))
            self.conn.commit()
            owner_row = self.conn.execute(
                "SELECT wallet_address FROM workflows WHERE id = ?", (record.workflow_id,)
            ).fetchone()

        if owner_row:
            self._emit("execution", owner_row["wallet_address"], record)
        return record

    def list_executions(self, owner: Optional[str] = None, limit: int = 20) -> List[ExecutionRecord]:
        """Most recent executions, newest first. Scoped to one wallet if given."""
        with self._lock:
            cursor = self.conn.cursor()
            if owner:
                cursor.execute("""
                    SELECT e.* FROM workflow_executions e
                    JOIN workflows w ON e.workflow_id = w.id
                    WHERE w.wallet_address = ?
                    ORDER BY e.executed_at DESC, e.rowid DESC
                    LIMIT ?
                """, (owner, limit))
            else:
                cursor.execute("""
                    SELECT * FROM workflow_executions
                    ORDER BY executed_at DESC, rowid DESC
                    LIMIT ?
                """, (limit,))
            return [ExecutionRecord.from_row(row) for row in cursor.fetchall()]

    def count_executions(self, workflow_id: Optional[str] = None) -> int:
        with self._lock:
            if workflow_id:
                row = self.conn.execute(
                    "SELECT COUNT(*) FROM workflow_executions WHERE workflow_id = ?", (workflow_id,)
                ).fetchone()
            else:
                row = self.conn.execute("SELECT COUNT(*) FROM workflow_executions").fetchone()
            return row[0]

    # ─────────────────────────────────────────────────────────
    # Change feed
    # ─────────────────────────────────────────────────────────

    def subscribe_to_changes(
        self,
        owner: str,
        on_insert: Optional[Callable[[WorkflowRule], None]] = None,
        on_update: Optional[Callable[[WorkflowRule], None]] = None,
        on_delete: Optional[Callable[[WorkflowRule], None]] = None,
        on_execution: Optional[Callable[[ExecutionRecord], None]] = None,
    ) -> Subscription:
        subscription = Subscription(self, owner, on_insert, on_update, on_delete, on_execution)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _emit(self, event: str, owner: str, payload):
        """Fan a change out to subscribers. Called after the store lock is released."""
        with self._lock:
            targets = [s for s in self._subscriptions if s.active and s.owner == owner]

        for subscription in targets:
            callback = getattr(subscription, f"on_{event}")
            if callback is None:
                continue
            try:
                callback(payload)
            except Exception as e:
                # The feed is best-effort; a broken listener never fails the write
                print(f"⚠️ Change listener error ({event}): {e}")

"""
Workflow Scheduler

Session-side driver for the evaluation engine. While a wallet session is
connected it:
  1. keeps a local cache of the wallet's rules (seeded on first sight)
  2. evaluates periodically and on demand through one entry point
  3. merges each pass's results into the cache and notifies the user
  4. follows the store's change feed to stay fresh

Only one evaluation per session can be in flight. A manual run that lands
while the periodic tick is still evaluating (or vice versa) is dropped,
so a firing can never be counted twice by overlapping passes.

The cache is a projection, not the source of truth.
"""

import threading
from dataclasses import replace
from datetime import datetime
from typing import Optional, Dict, List, Callable, Any

from notifications import NotificationCenter, NotificationType, format_execution_message
from workflow_store import WorkflowRule, ExecutionRecord, RuleStatus


_STATUS_NOTICES = {
    RuleStatus.ACTIVE.value: (NotificationType.SUCCESS, "Workflow Activated"),
    RuleStatus.PAUSED.value: (NotificationType.INFO, "Workflow Paused"),
    RuleStatus.COMPLETED.value: (NotificationType.SUCCESS, "Workflow Completed"),
}


class WorkflowScheduler:

    def __init__(
        self,
        engine,
        store,
        owner: str,
        balance_provider: Optional[Callable[[], float]] = None,
        notifications: Optional[NotificationCenter] = None,
        interval_seconds: float = 30,
        demo_balance: float = 5000,
        executions_limit: int = 20,
    ):
        if not owner:
            raise ValueError("owner wallet is required")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")

        self.engine = engine
        self.store = store
        self.owner = owner
        self.balance_provider = balance_provider or (lambda: demo_balance)
        self.notifications = notifications or NotificationCenter()
        self.interval_seconds = interval_seconds
        self.executions_limit = executions_limit

        self._rules: List[WorkflowRule] = []
        self._executions: List[ExecutionRecord] = []
        self._pending_status: Dict[str, str] = {}
        self._cache_lock = threading.RLock()
        self._inflight = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._subscription = None

        self.passes_completed = 0
        self.passes_failed = 0
        self.passes_suppressed = 0

    # ─────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_evaluating(self) -> bool:
        return self._inflight.locked()

    def start(self, periodic: bool = True):
        """Session connect: load rules, follow the change feed, start the timer."""
        if self._subscription is None:
            self.refresh()
            self._subscription = self.store.subscribe_to_changes(
                self.owner,
                on_insert=self._on_rule_insert,
                on_update=self._on_rule_update,
                on_delete=self._on_rule_delete,
                on_execution=self._on_execution,
            )

        if periodic and not self.is_running:
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"workflow-scheduler-{self.owner[:10]}",
                daemon=True,
            )
            self._thread.start()
            print(f"🔄 Evaluating workflows for {self.owner[:10]} every {self.interval_seconds}s")

    def stop(self):
        """Session disconnect: stop the timer and drop the feed and cache."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=self.interval_seconds + 5)
        self._thread = None

        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

        with self._cache_lock:
            self._rules = []
            self._executions = []
            self._pending_status = {}

    def _run_loop(self):
        while not self._stop_event.wait(self.interval_seconds):
            self.evaluate_now(manual=False)

    # ─────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────

    def evaluate_now(self, balance: Optional[float] = None, manual: bool = True):
        """
        Run one pass unless one is already in flight.

        Returns the EvaluationReport, or None when the call was suppressed
        or the pass failed.
        """
        if not self._inflight.acquire(blocking=False):
            self.passes_suppressed += 1
            return None

        try:
            with self._cache_lock:
                baseline = {r.id: r.execution_count for r in self._rules}

            try:
                user_balance = self.balance_provider() if balance is None else balance
                report = self.engine.evaluate(self.owner, user_balance)
            except Exception as e:
                # Cache stays as it was; the next tick tries again
                self.passes_failed += 1
                print(f"❌ Error evaluating workflows: {e}")
                self.notifications.add(
                    NotificationType.ERROR,
                    "Workflow Evaluation Failed",
                    "Could not evaluate workflows. Will retry on the next cycle.",
                )
                return None

            self._merge_results(report.results, baseline)
            self.passes_completed += 1

            for result in report.results:
                if result.executed:
                    self.notifications.add(
                        NotificationType.SUCCESS,
                        "Workflow Executed",
                        format_execution_message(result),
                    )

            if manual and not report.results:
                self.notifications.add(
                    NotificationType.INFO,
                    "No Workflows Triggered",
                    "No workflow conditions met at this time",
                )

            return report
        finally:
            self._inflight.release()

    def _merge_results(self, results, baseline: Dict[str, int]):
        """
        Fold fired results into the cache.

        The change feed may already have delivered the new counters for a
        rule during the pass; those rules are left alone. Status is never
        touched here.
        """
        fired = {r.workflow_id: r for r in results if r.executed}
        if not fired:
            return

        now = datetime.utcnow().isoformat()
        with self._cache_lock:
            merged = []
            for rule in self._rules:
                result = fired.get(rule.id)
                already_applied = rule.execution_count > baseline.get(rule.id, rule.execution_count)
                if result is not None and not already_applied:
                    rule = replace(
                        rule,
                        execution_count=(rule.execution_count or 0) + 1,
                        rewards_generated=(rule.rewards_generated or 0) + (result.reward or 0),
                        last_executed_at=now,
                    )
                merged.append(rule)
            self._rules = merged

    # ─────────────────────────────────────────────────────────
    # Rule management
    # ─────────────────────────────────────────────────────────

    @property
    def rules(self) -> List[WorkflowRule]:
        with self._cache_lock:
            return [replace(r) for r in self._rules]

    @property
    def executions(self) -> List[ExecutionRecord]:
        with self._cache_lock:
            return list(self._executions)

    def get_rule(self, rule_id: str) -> Optional[WorkflowRule]:
        with self._cache_lock:
            for rule in self._rules:
                if rule.id == rule_id:
                    return replace(rule)
        return None

    def refresh(self) -> List[WorkflowRule]:
        """Reload rules and recent executions. New wallets get the default set."""
        rules = self.store.list_rules(self.owner)
        if not rules:
            rules = self.store.seed_default_workflows(self.owner)
        executions = self.store.list_executions(self.owner, limit=self.executions_limit)

        with self._cache_lock:
            self._rules = rules
            self._executions = executions
        return self.rules

    def create_rule(self, data: Dict[str, Any]) -> Optional[WorkflowRule]:
        try:
            rule = self.store.insert_rule(self.owner, data)
        except Exception as e:
            print(f"❌ Error creating workflow: {e}")
            self.notifications.add(NotificationType.ERROR, "Failed to Create Workflow", "Please try again")
            return None

        self._on_rule_insert(rule)
        self.notifications.add(
            NotificationType.SUCCESS,
            "Workflow Created",
            f'"{rule.name}" is now active and monitoring conditions',
        )
        return rule

    def set_rule_status(self, rule_id: str, status: str) -> Optional[WorkflowRule]:
        """
        Optimistic status toggle.

        The cache changes immediately; if the store rejects the write the
        previous status is put back by an explicit compensating step.
        """
        if isinstance(status, RuleStatus):
            status = status.value

        previous = self._apply_local_status(rule_id, status)
        try:
            updated = self.store.update_rule_status(rule_id, status)
        except Exception as e:
            print(f"❌ Error updating workflow: {e}")
            self._revert_local_status(rule_id, previous)
            self.notifications.add(NotificationType.ERROR, "Failed to Update Workflow", "Status change was reverted")
            return None
        finally:
            with self._cache_lock:
                self._pending_status.pop(rule_id, None)

        notice_type, title = _STATUS_NOTICES.get(status, (NotificationType.INFO, "Workflow Updated"))
        self.notifications.add(notice_type, title, updated.name)
        return updated

    def _apply_local_status(self, rule_id: str, status: str) -> Optional[str]:
        with self._cache_lock:
            previous = None
            updated = []
            for rule in self._rules:
                if rule.id == rule_id:
                    previous = rule.status
                    rule = replace(rule, status=status)
                updated.append(rule)
            self._rules = updated
            self._pending_status[rule_id] = status
            return previous

    def _revert_local_status(self, rule_id: str, previous: Optional[str]):
        """Compensating action for a failed optimistic status change."""
        with self._cache_lock:
            self._rules = [
                replace(r, status=previous or RuleStatus.PAUSED.value) if r.id == rule_id else r
                for r in self._rules
            ]

    def delete_rule(self, rule_id: str) -> bool:
        cached = self.get_rule(rule_id)
        try:
            deleted = self.store.delete_rule(rule_id)
        except Exception as e:
            print(f"❌ Error deleting workflow: {e}")
            return False

        self._remove_cached(rule_id)
        if deleted:
            self.notifications.add(
                NotificationType.INFO, "Workflow Deleted", cached.name if cached else "Workflow removed"
            )
        return deleted

    # ─────────────────────────────────────────────────────────
    # Change feed reconciliation
    # ─────────────────────────────────────────────────────────

    def _on_rule_insert(self, rule: WorkflowRule):
        if rule.wallet_address != self.owner:
            return
        with self._cache_lock:
            if any(r.id == rule.id for r in self._rules):
                return
            self._rules = [rule] + self._rules

    def _on_rule_update(self, rule: WorkflowRule):
        if rule.wallet_address != self.owner:
            return
        with self._cache_lock:
            pending = self._pending_status.get(rule.id)
            if pending is not None:
                rule = replace(rule, status=pending)
            self._rules = [rule if r.id == rule.id else r for r in self._rules]

    def _on_rule_delete(self, rule: WorkflowRule):
        self._remove_cached(rule.id)

    def _remove_cached(self, rule_id: str):
        with self._cache_lock:
            self._rules = [r for r in self._rules if r.id != rule_id]

    def _on_execution(self, record: ExecutionRecord):
        with self._cache_lock:
            if any(e.id == record.id for e in self._executions):
                return
            self._executions = ([record] + self._executions)[: self.executions_limit]

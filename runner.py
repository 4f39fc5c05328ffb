"""
Mini-Rialo Runner: headless dashboard session

Usage:
  python runner.py                          # seed + evaluate once
  python runner.py --loop 30                # evaluate every 30 seconds
  python runner.py --serve --port 8000      # run the HTTP API
  python runner.py --remote http://host:8000  # evaluate against a running API

Environment variables:
  RIALO_DB_PATH         - SQLite file (default: data/rialo.db)
  RIALO_AUDIT_PATH      - JSONL audit trail (default: disabled)
  RIALO_DEMO_BALANCE    - Balance passed to balance triggers (default: 5000)
"""

import argparse
import time

import numpy as np
import requests
from rich.console import Console
from rich.table import Table

from audit import AuditFile
from client import WorkflowEngineClient, WorkflowEngineError
from config import load_config
from notifications import NotificationCenter, console_listener
from scheduler import WorkflowScheduler
from workflow_engine import WorkflowEngine
from workflow_store import WorkflowStore

DEMO_WALLET = "0x7a16ff8270133f063aab6c9977183d9e72835428"

console = Console()


def print_rules(rules):
    table = Table(title="Workflows")
    table.add_column("Name", style="cyan", max_width=28)
    table.add_column("Status", style="green")
    table.add_column("Trigger", style="yellow")
    table.add_column("Action", style="magenta")
    table.add_column("Runs", style="blue")
    table.add_column("Rewards", style="blue")

    for r in rules:
        table.add_row(
            r.name[:28],
            r.status,
            f"{r.trigger_type} {r.trigger_condition} {r.trigger_value:g}",
            f"{r.action_type} {r.action_amount or 0:g}",
            str(r.execution_count),
            f"{r.rewards_generated:.2f}",
        )
    console.print(table)


def print_executions(executions):
    if not executions:
        return
    table = Table(title="Recent Executions")
    table.add_column("When", style="dim")
    table.add_column("Trigger", style="yellow")
    table.add_column("Action", style="magenta")
    table.add_column("Result", style="green")
    table.add_column("Reward", style="blue")

    for e in executions:
        table.add_row(
            e.executed_at[:19],
            e.trigger_met,
            e.action_taken,
            e.result,
            f"{e.rewards_earned:.2f}",
        )
    console.print(table)


def print_report(report):
    prices = report.market_data.token_prices
    console.print(
        f"\n📊 Market: " + " | ".join(f"{k} {v:,.2f}" for k, v in prices.items())
        + f" | activity {report.market_data.network_activity}"
        + f" | new users {report.market_data.new_users}"
        + f" | txs {report.market_data.transaction_count}"
    )
    if not report.results:
        console.print("   No workflow conditions met at this time")
        return
    for r in report.results:
        console.print(f"   ⚡ [bold green]{r.name}[/] → {r.action} (+{r.reward:.2f} rewards)")


def main():
    parser = argparse.ArgumentParser(description="Mini-Rialo workflow runner")
    parser.add_argument("--wallet", default=DEMO_WALLET, help="Owner wallet address")
    parser.add_argument("--balance", type=float, default=None, help="Wallet balance for balance triggers")
    parser.add_argument("--loop", type=float, default=0, help="Evaluate every N seconds (0 = run once)")
    parser.add_argument("--serve", action="store_true", help="Run the HTTP API")
    parser.add_argument("--port", type=int, default=None, help="API port (default: $PORT or 8000)")
    parser.add_argument("--db", default=None, help="SQLite path (default: $RIALO_DB_PATH)")
    parser.add_argument("--audit", default=None, help="JSONL audit path")
    parser.add_argument("--seed", type=int, default=None, help="Seed for the simulated market and time_interval triggers")
    parser.add_argument("--remote", default=None, help="Base URL of a running workflow API")
    args = parser.parse_args()

    settings = load_config({
        "db_path": args.db,
        "audit_path": args.audit,
        "port": args.port,
        "demo_balance": args.balance,
    })
    balance = settings["demo_balance"]

    print("=" * 60)
    print("⚙️  MINI-RIALO WORKFLOW ENGINE")
    print("   Triggers → Rewards → Execution log")
    print("=" * 60)

    if args.remote:
        client = WorkflowEngineClient(args.remote)
        try:
            report = client.evaluate(args.wallet, balance)
        except (WorkflowEngineError, requests.RequestException) as e:
            print(f"❌ Remote evaluation failed: {e}")
            return
        print_report(report)
        return

    store = WorkflowStore(settings["db_path"])
    audit = AuditFile(settings["audit_path"]) if settings["audit_path"] else None
    # One generator drives prices and time_interval draws
    rng = np.random.default_rng(args.seed)
    engine = WorkflowEngine(store, audit=audit, config=settings, rng=rng)

    if args.serve:
        import uvicorn
        from api import create_app
        app = create_app(store=store, engine=engine, config=settings)
        print(f"\n🌐 Starting server on port {settings['port']}...")
        uvicorn.run(app, host="0.0.0.0", port=settings["port"])
        return

    notifications = NotificationCenter(listener=console_listener)
    scheduler = WorkflowScheduler(
        engine,
        store,
        args.wallet,
        balance_provider=lambda: balance,
        notifications=notifications,
        interval_seconds=args.loop or settings["eval_interval_seconds"],
    )

    try:
        if args.loop > 0:
            scheduler.start(periodic=True)
            print_rules(scheduler.rules)
            print("   Press Ctrl+C to stop\n")
            while True:
                time.sleep(args.loop)
                print_rules(scheduler.rules)
        else:
            scheduler.start(periodic=False)
            report = scheduler.evaluate_now()
            if report is not None:
                print_report(report)
            print_rules(scheduler.rules)
            print_executions(scheduler.executions)
    except KeyboardInterrupt:
        print("\n\n⏹️  Stopped by user.")
    finally:
        scheduler.stop()
        store.close()

    stats = engine.get_stats()
    print(f"\n🔐 Passes: {stats['evaluations']} | Firings: {stats['firings']} | Rewards: {stats['total_rewards']:.2f}")


if __name__ == "__main__":
    main()
